# Copyright 2025 Stack AV Co.
# SPDX-License-Identifier: Apache-2.0

"""PyTorch reference implementation of non-max suppression."""

import torch

from boxsieve import envs
from boxsieve.logger import init_logger
from boxsieve.ops.vision.nms_metadata import BoxFormat, create_nms_metadata

logger = init_logger(__name__)


def normalize_boxes(boxes: torch.Tensor, box_format: BoxFormat, flip_boxes: bool) -> torch.Tensor:
    """Convert boxes to float32 (x1, y1, x2, y2) with the min corner first.

    Args:
        boxes: Tensor of shape (N, 4) in `box_format`.
        box_format: Corner convention of `boxes`.
        flip_boxes: Whether to reorder corners given in mixed order.

    Returns:
        Tensor of shape (N, 4) in (x1, y1, x2, y2) format.
    """
    boxes = boxes.to(torch.float32)

    if box_format == BoxFormat.YXYX:
        boxes = boxes[:, [1, 0, 3, 2]]

    if flip_boxes:
        min_corner = torch.minimum(boxes[:, :2], boxes[:, 2:])
        max_corner = torch.maximum(boxes[:, :2], boxes[:, 2:])
        boxes = torch.cat([min_corner, max_corner], dim=1)

    return boxes.contiguous()


def box_iou(boxes1: torch.Tensor, boxes2: torch.Tensor) -> torch.Tensor:
    """Calculate IoU between two sets of boxes.

    IoU is defined as 0 for pairs whose union area is not positive (e.g. two zero-area boxes).

    Args:
        boxes1: Tensor of shape (N, 4) in (x1, y1, x2, y2) format.
        boxes2: Tensor of shape (M, 4) in (x1, y1, x2, y2) format.

    Returns:
        Tensor of shape (N, M) containing IoU values.
    """
    # Calculate areas
    area1 = (boxes1[:, 2] - boxes1[:, 0]) * (boxes1[:, 3] - boxes1[:, 1])  # (N,)
    area2 = (boxes2[:, 2] - boxes2[:, 0]) * (boxes2[:, 3] - boxes2[:, 1])  # (M,)

    # Expand dimensions for broadcasting
    boxes1_expanded = boxes1.unsqueeze(1)  # (N, 1, 4)
    boxes2_expanded = boxes2.unsqueeze(0)  # (1, M, 4)

    # Calculate intersection coordinates
    inter_x1 = torch.max(boxes1_expanded[:, :, 0], boxes2_expanded[:, :, 0])  # (N, M)
    inter_y1 = torch.max(boxes1_expanded[:, :, 1], boxes2_expanded[:, :, 1])  # (N, M)
    inter_x2 = torch.min(boxes1_expanded[:, :, 2], boxes2_expanded[:, :, 2])  # (N, M)
    inter_y2 = torch.min(boxes1_expanded[:, :, 3], boxes2_expanded[:, :, 3])  # (N, M)

    # Calculate intersection area
    inter_w = torch.clamp(inter_x2 - inter_x1, min=0.0)
    inter_h = torch.clamp(inter_y2 - inter_y1, min=0.0)
    inter_area = inter_w * inter_h  # (N, M)

    # Calculate union area
    area1_expanded = area1.unsqueeze(1)  # (N, 1)
    area2_expanded = area2.unsqueeze(0)  # (1, M)
    union_area = area1_expanded + area2_expanded - inter_area  # (N, M)

    # Calculate IoU, zero where the union is empty
    return torch.where(union_area > 0.0, inter_area / union_area, torch.zeros_like(union_area))


def _sort_candidates(scores: torch.Tensor, score_threshold: float) -> torch.Tensor:
    """Drop low-scoring boxes and order the rest by decreasing score.

    Ties are broken by original index, ascending.

    Args:
        scores: Tensor of shape (N,).
        score_threshold: Boxes with score <= score_threshold are dropped.

    Returns:
        Tensor of original indices of the surviving boxes, best first.
    """
    candidate_indices = torch.nonzero(scores > score_threshold).squeeze(1)
    _, order = torch.sort(scores[candidate_indices], dim=0, stable=True, descending=True)
    return candidate_indices[order]


def _nms_pytorch_iterative(
    boxes: torch.Tensor, sorted_indices: torch.Tensor, iou_threshold: float, max_output_size: int
) -> torch.Tensor:
    """Greedy NMS that recomputes overlaps against the remaining candidates after each pick.

    Args:
        boxes: Tensor of shape (N, 4) in (x1, y1, x2, y2) format.
        sorted_indices: Candidate indices into `boxes`, best first.
        iou_threshold: Discards all overlapping boxes with IoU > iou_threshold.
        max_output_size: Stop once this many boxes are kept.

    Returns:
        Tensor: int64 tensor with the kept indices, in selection order.
    """
    # Keep track of which boxes to keep
    keep: list[int] = []

    # Process boxes in order of decreasing score
    while sorted_indices.numel() > 0 and len(keep) < max_output_size:
        # Take the box with highest score
        current_idx = sorted_indices[0]
        keep.append(int(current_idx))

        if sorted_indices.numel() == 1:
            break

        # Get remaining boxes
        remaining_indices = sorted_indices[1:]
        current_box = boxes[current_idx].unsqueeze(0)  # (1, 4)
        remaining_boxes = boxes[remaining_indices]  # (K, 4)

        # Calculate IoU between current box and all remaining boxes
        ious = box_iou(current_box, remaining_boxes).squeeze(0)  # (K,)

        # Keep only boxes with IoU below threshold
        sorted_indices = remaining_indices[ious <= iou_threshold]

    return torch.tensor(keep, dtype=torch.long, device=boxes.device)


def _nms_pytorch_vectorized(
    boxes: torch.Tensor, sorted_indices: torch.Tensor, iou_threshold: float, max_output_size: int
) -> torch.Tensor:
    """
    Vectorized implementation of NMS that pre-computes all IoUs.

    This version is more memory-intensive but can be faster for medium-sized inputs
    by reducing the number of iterations.

    Args:
        boxes: Tensor of shape (N, 4) in (x1, y1, x2, y2) format.
        sorted_indices: Candidate indices into `boxes`, best first.
        iou_threshold: Discards all overlapping boxes with IoU > iou_threshold.
        max_output_size: Stop once this many boxes are kept.

    Returns:
        Tensor: int64 tensor with the kept indices, in selection order.
    """
    num_candidates = sorted_indices.numel()

    # Pre-compute all pairwise IoUs, rows/columns in sorted order
    sorted_boxes = boxes[sorted_indices]
    conflicts = box_iou(sorted_boxes, sorted_boxes) > iou_threshold  # (K, K)

    # Initialize keep mask
    keep_mask = torch.ones(num_candidates, dtype=torch.bool, device=boxes.device)
    num_kept = 0

    for i in range(num_candidates):
        if num_kept == max_output_size:
            keep_mask[i:] = False
            break

        if not keep_mask[i]:
            continue

        num_kept += 1

        # Only boxes with lower scores (higher positions in sorted order) can be suppressed
        keep_mask[i + 1 :] &= ~conflicts[i, i + 1 :]

    return sorted_indices[keep_mask]


def _nms_torchvision(
    boxes: torch.Tensor, sorted_indices: torch.Tensor, iou_threshold: float, max_output_size: int
) -> torch.Tensor:
    from torchvision.ops.boxes import nms as nms_torchvision  # type: ignore[import-untyped]

    # Scores only need to preserve the order we already established
    num_candidates = sorted_indices.numel()
    rank_scores = torch.arange(num_candidates, 0, -1, dtype=torch.float32, device=boxes.device)

    # torchvision compares float32 IoUs against a double threshold
    iou_threshold = float(torch.tensor(iou_threshold, dtype=torch.float32))

    keep = nms_torchvision(boxes[sorted_indices], rank_scores, iou_threshold)
    return sorted_indices[keep[:max_output_size]]


def nms(
    boxes: torch.Tensor,
    scores: torch.Tensor,
    iou_threshold: float,
    score_threshold: float = float("-inf"),
    max_output_size: int | None = None,
    *,
    box_format: BoxFormat | str = BoxFormat.XYXY,
    flip_boxes: bool = True,
    vectorize: bool = False,
) -> torch.Tensor:
    """
    Performs non-maximum suppression (NMS) on the boxes according
    to their intersection-over-union (IoU).

    NMS iteratively removes lower scoring boxes which have an
    IoU greater than ``iou_threshold`` with another (higher scoring)
    box. Boxes with the same score are visited in order of their index.

    Args:
        boxes (Tensor[N, 4])): boxes to perform NMS on, in ``box_format``.
        scores (Tensor[N]): scores for each one of the boxes
        iou_threshold (float): discards all overlapping boxes with IoU > iou_threshold
        score_threshold (float): discards all boxes with score <= score_threshold
        max_output_size (int, optional): maximum number of boxes to keep
        box_format (str): ``"xyxy"`` or ``"yxyx"``
        flip_boxes (bool): whether to reorder box corners given in mixed order
        vectorize (bool): whether to enable vectorized NMS implementation

    Returns:
        Tensor: int64 tensor with the indices of the elements that have been kept
        by NMS, sorted in decreasing order of scores
    """
    metadata = create_nms_metadata(
        boxes, scores, iou_threshold, score_threshold, max_output_size, box_format=box_format, flip_boxes=flip_boxes
    )

    boxes = normalize_boxes(boxes, metadata.box_format, metadata.flip_boxes)
    sorted_indices = _sort_candidates(scores.to(torch.float32), metadata.score_threshold)

    logger.debug(
        "Reference NMS: %d boxes, %d above score threshold, max_output_size=%d",
        metadata.num_boxes,
        sorted_indices.numel(),
        metadata.max_output_size,
    )

    if envs.BOXSIEVE_ENABLE_TORCHVISION:
        return _nms_torchvision(boxes, sorted_indices, metadata.iou_threshold, metadata.max_output_size)

    if vectorize:
        return _nms_pytorch_vectorized(boxes, sorted_indices, metadata.iou_threshold, metadata.max_output_size)

    return _nms_pytorch_iterative(boxes, sorted_indices, metadata.iou_threshold, metadata.max_output_size)
