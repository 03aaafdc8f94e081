# Copyright 2025 Stack AV Co.
# SPDX-License-Identifier: Apache-2.0

"""Non-Maximum Suppression (NMS) operation."""

import enum
from dataclasses import dataclass

import torch
import triton

from boxsieve import envs
from boxsieve.errors import CapacityExceededError, InvalidArgumentError, ResourceExhaustedError
from boxsieve.kernels.vision.nms import (
    MASK_WORD_BITS,
    SUPPORTED_TILE_SIZES,
    MaskBackend,
    nms_launcher,
    normalize_boxes_launcher,
)
from boxsieve.logger import init_logger
from boxsieve.ops.vision.nms_metadata import BoxFormat, NmsMetadata, create_nms_metadata

logger = init_logger(__name__)


class ExecutionTarget(enum.Enum):
    """Which engine runs an NMS call."""

    SEQUENTIAL = enum.auto()
    PARALLEL = enum.auto()


@dataclass
class NmsResult:
    """Padded NMS output.

    `selected_indices` has one slot per allowed output; slots past `num_valid` hold -1.
    """

    selected_indices: torch.Tensor
    num_valid: int

    @property
    def indices(self) -> torch.Tensor:
        """Valid indices only."""
        return self.selected_indices[: self.num_valid]


def _resolve_tile_size(tile_size: int | None) -> int:
    if tile_size is None:
        tile_size = envs.BOXSIEVE_NMS_TILE_SIZE

    # Power of two for tl.arange, and small enough to fit in one mask word
    if tile_size not in SUPPORTED_TILE_SIZES or tile_size > MASK_WORD_BITS:
        msg = f"tile_size {tile_size} not in list of supported tile sizes: {SUPPORTED_TILE_SIZES}"
        raise InvalidArgumentError(msg)

    return tile_size


def _resolve_backend(backend: MaskBackend | str | None, device: torch.device) -> MaskBackend:
    if backend is None:
        backend = envs.BOXSIEVE_NMS_MASK_BACKEND

    if isinstance(backend, str):
        if backend == "auto":
            return MaskBackend.TRITON if device.type in ("cuda", "xpu") else MaskBackend.TORCH

        try:
            backend = MaskBackend(backend)
        except ValueError as err:
            supported = ["auto"] + [b.value for b in MaskBackend]
            msg = f"backend '{backend}' not in list of supported backends: {supported}"
            raise InvalidArgumentError(msg) from err

    if backend == MaskBackend.TRITON and device.type not in ("cuda", "xpu"):
        msg = f"Triton mask backend requires boxes on a GPU device (got {device = })"
        raise InvalidArgumentError(msg)

    return backend


def _check_capacity(num_candidates: int, num_tiles: int) -> None:
    """Check the candidate count against the parallel engine's limits.

    Raises:
        CapacityExceededError if the number of boxes or tiles is too large.
    """
    max_num_boxes = envs.BOXSIEVE_NMS_MAX_NUM_BOXES
    if num_candidates > max_num_boxes:
        msg = f"Number of candidate boxes ({num_candidates}) exceeds supported maximum ({max_num_boxes})"
        raise CapacityExceededError(msg)

    max_num_tiles = envs.BOXSIEVE_NMS_MAX_NUM_TILES
    if num_tiles > max_num_tiles:
        msg = f"Number of tiles ({num_tiles}) exceeds supported maximum ({max_num_tiles})"
        raise CapacityExceededError(msg)


def _allocate_suppression_mask(num_boxes: int, num_tiles: int, device: torch.device) -> torch.Tensor:
    """Allocate the zero-initialized suppression mask.

    Raises:
        ResourceExhaustedError if the allocation fails.
    """
    try:
        return torch.zeros((num_boxes, num_tiles), dtype=torch.int64, device=device)
    except (torch.OutOfMemoryError, MemoryError) as err:
        num_bytes = num_boxes * num_tiles * 8
        msg = f"Could not allocate suppression mask of shape ({num_boxes}, {num_tiles}) ({num_bytes} bytes) on {device}"
        raise ResourceExhaustedError(msg) from err


def _allocate_selected_indices(output_size: int, device: torch.device) -> torch.Tensor:
    """Allocate the -1 filled output buffer.

    Raises:
        ResourceExhaustedError if the allocation fails.
    """
    try:
        return torch.full((output_size,), -1, dtype=torch.long, device=device)
    except (RuntimeError, MemoryError) as err:
        # Also covers sizes torch cannot represent, not only out-of-memory
        msg = f"Could not allocate output buffer of {output_size} indices on {device}"
        raise ResourceExhaustedError(msg) from err


def _sort_candidates(scores: torch.Tensor, score_threshold: float) -> torch.Tensor:
    """Original indices of boxes with score > score_threshold, best first, ties by index."""
    candidate_indices = torch.nonzero(scores > score_threshold).squeeze(1)
    _, order = torch.sort(scores[candidate_indices], dim=0, stable=True, descending=True)
    return candidate_indices[order]


def _nms_parallel(
    boxes: torch.Tensor,
    scores: torch.Tensor,
    metadata: NmsMetadata,
    tile_size: int,
    backend: MaskBackend,
    pad_output: bool,
) -> NmsResult:
    device = boxes.device

    sorted_indices = _sort_candidates(scores.to(torch.float32), metadata.score_threshold)
    num_candidates = sorted_indices.numel()
    num_tiles = triton.cdiv(num_candidates, tile_size)

    _check_capacity(num_candidates, num_tiles)

    # No more than num_candidates boxes can be kept
    max_output_size = min(metadata.max_output_size, num_candidates)
    output_size = metadata.max_output_size if pad_output else max_output_size
    selected_indices = _allocate_selected_indices(output_size, device)

    if max_output_size == 0:
        return NmsResult(selected_indices, 0)

    # Corner normalization of the sorted candidates
    sorted_boxes = torch.empty((num_candidates, 4), dtype=torch.float32, device=device)
    normalize_boxes_launcher(
        boxes[sorted_indices].contiguous(),
        sorted_boxes,
        swap_xy=metadata.box_format == BoxFormat.YXYX,
        flip_boxes=metadata.flip_boxes,
        backend=backend,
    )

    suppression_mask = _allocate_suppression_mask(num_candidates, num_tiles, device)

    num_workers = envs.BOXSIEVE_NMS_NUM_WORKERS or None

    num_valid = nms_launcher(
        sorted_boxes=sorted_boxes,
        suppression_mask=suppression_mask,
        selected_indices=selected_indices,
        iou_threshold=metadata.iou_threshold,
        max_output_size=max_output_size,
        tile_size=tile_size,
        backend=backend,
        num_workers=num_workers,
    )

    # Map sorted positions back to original indices
    selected_indices[:num_valid] = sorted_indices[selected_indices[:num_valid]]

    return NmsResult(selected_indices, num_valid)


def _run_parallel(
    boxes: torch.Tensor,
    scores: torch.Tensor,
    iou_threshold: float,
    score_threshold: float,
    max_output_size: int | None,
    *,
    box_format: BoxFormat | str,
    flip_boxes: bool,
    tile_size: int | None,
    backend: MaskBackend | str | None,
    pad_output: bool,
) -> NmsResult:
    metadata = create_nms_metadata(
        boxes, scores, iou_threshold, score_threshold, max_output_size, box_format=box_format, flip_boxes=flip_boxes
    )
    tile_size = _resolve_tile_size(tile_size)
    resolved_backend = _resolve_backend(backend, boxes.device)

    logger.debug(
        "Parallel NMS: %d boxes, max_output_size=%d, tile_size=%d, backend=%s",
        metadata.num_boxes,
        metadata.max_output_size,
        tile_size,
        resolved_backend.value,
    )

    return _nms_parallel(boxes, scores, metadata, tile_size, resolved_backend, pad_output)


def nms_padded(
    boxes: torch.Tensor,
    scores: torch.Tensor,
    iou_threshold: float,
    score_threshold: float = float("-inf"),
    max_output_size: int | None = None,
    *,
    box_format: BoxFormat | str = BoxFormat.XYXY,
    flip_boxes: bool = True,
    tile_size: int | None = None,
    backend: MaskBackend | str | None = None,
) -> NmsResult:
    """
    Performs bitmask non-maximum suppression (NMS), returning an output padded to ``max_output_size``.

    Args:
        boxes (Tensor[N, 4])): boxes to perform NMS on, in ``box_format``.
        scores (Tensor[N]): scores for each one of the boxes
        iou_threshold (float): discards all overlapping boxes with IoU > iou_threshold
        score_threshold (float): discards all boxes with score <= score_threshold
        max_output_size (int, optional): maximum number of boxes to keep, defaults to N
        box_format (str): ``"xyxy"`` or ``"yxyx"``
        flip_boxes (bool): whether to reorder box corners given in mixed order
        tile_size (int, optional): boxes per tile, one of 8, 16, 32, 64. Defaults to
            ``BOXSIEVE_NMS_TILE_SIZE``. Affects speed only, never the result.
        backend (str, optional): ``"triton"``, ``"torch"`` or ``"auto"``. Defaults to
            ``BOXSIEVE_NMS_MASK_BACKEND``.

    Raises:
        InvalidArgumentError: if inputs violate the call contract.
        CapacityExceededError: if there are too many candidate boxes.
        ResourceExhaustedError: if the suppression mask or the padded output cannot be allocated.

    Returns:
        NmsResult: int64 tensor of length ``max_output_size`` with kept indices sorted in decreasing
        order of scores followed by -1 padding, and the number of kept indices.
    """
    return _run_parallel(
        boxes,
        scores,
        iou_threshold,
        score_threshold,
        max_output_size,
        box_format=box_format,
        flip_boxes=flip_boxes,
        tile_size=tile_size,
        backend=backend,
        pad_output=True,
    )


def nms(
    boxes: torch.Tensor,
    scores: torch.Tensor,
    iou_threshold: float,
    score_threshold: float = float("-inf"),
    max_output_size: int | None = None,
    *,
    box_format: BoxFormat | str = BoxFormat.XYXY,
    flip_boxes: bool = True,
    tile_size: int | None = None,
    backend: MaskBackend | str | None = None,
    target: ExecutionTarget = ExecutionTarget.PARALLEL,
) -> torch.Tensor:
    """
    Performs non-maximum suppression (NMS) on the boxes according
    to their intersection-over-union (IoU).

    NMS iteratively removes lower scoring boxes which have an
    IoU greater than ``iou_threshold`` with another (higher scoring)
    box. Boxes with the same score are visited in order of their index,
    so both execution targets return identical results.

    Args:
        boxes (Tensor[N, 4])): boxes to perform NMS on, in ``box_format``.
        scores (Tensor[N]): scores for each one of the boxes
        iou_threshold (float): discards all overlapping boxes with IoU > iou_threshold
        score_threshold (float): discards all boxes with score <= score_threshold
        max_output_size (int, optional): maximum number of boxes to keep, defaults to N
        box_format (str): ``"xyxy"`` or ``"yxyx"``
        flip_boxes (bool): whether to reorder box corners given in mixed order
        tile_size (int, optional): boxes per tile for the parallel engine
        backend (str, optional): suppression mask backend for the parallel engine
        target (ExecutionTarget): sequential reference or parallel bitmask engine

    Returns:
        Tensor: int64 tensor with the indices of the elements that have been kept
        by NMS, sorted in decreasing order of scores
    """
    if target == ExecutionTarget.SEQUENTIAL:
        from boxsieve.reference.vision.nms import nms as nms_reference

        return nms_reference(
            boxes,
            scores,
            iou_threshold,
            score_threshold,
            max_output_size,
            box_format=box_format,
            flip_boxes=flip_boxes,
        )

    return _run_parallel(
        boxes,
        scores,
        iou_threshold,
        score_threshold,
        max_output_size,
        box_format=box_format,
        flip_boxes=flip_boxes,
        tile_size=tile_size,
        backend=backend,
        pad_output=False,
    ).indices
