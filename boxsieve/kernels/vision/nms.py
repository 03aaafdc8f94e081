# Copyright 2025 Stack AV Co.
# SPDX-License-Identifier: Apache-2.0

"""Triton implementation of bitmask Non-Maximum Suppression (NMS).

Kernel based on CUDA torchvision NMS implementation:
https://github.com/pytorch/vision/blob/0721867e42841171254c7acaa45fbaf8ee16d3d7/torchvision/csrc/ops/cuda/nms_kernel.cu

Boxes arrive sorted by score. The pairwise overlap test is split into square tiles and every
(row tile, column tile) pair is evaluated independently, producing one packed int64 word per box
and column tile. Picking the kept boxes from those words is a single sequential scan on the host.
"""

import enum
from concurrent.futures import ThreadPoolExecutor
from typing import Final

import numpy as np
import torch
import triton
import triton.language as tl

from boxsieve.logger import init_logger

logger = init_logger(__name__)

# Bits per suppression mask word (int64)
MASK_WORD_BITS: Final = 64

SUPPORTED_TILE_SIZES: Final = (8, 16, 32, 64)


class MaskBackend(enum.Enum):
    """Where the suppression mask is computed."""

    TRITON = "triton"
    TORCH = "torch"


@triton.autotune(  # type: ignore[misc]
    configs=[
        triton.Config({"cxpr_block_size": 128}),
        triton.Config({"cxpr_block_size": 256}),
        triton.Config({"cxpr_block_size": 512}),
        triton.Config({"cxpr_block_size": 1024}),
    ],
    key=["num_boxes"],
)
@triton.jit  # type: ignore[misc]
def _normalize_boxes_kernel(
    # Tensors
    boxes_ptr: tl.tensor,  # [N, 4]
    output_ptr: tl.tensor,  # [N, 4]
    # Scalars
    num_boxes: int,
    # Strides
    boxes_stride: int,
    output_stride: int,
    # Constexprs
    cxpr_swap_xy: tl.constexpr,
    cxpr_flip_boxes: tl.constexpr,
    cxpr_block_size: tl.constexpr,
) -> None:
    """Convert boxes to float32 (x1, y1, x2, y2) with the min corner first.

    Args:
        boxes_ptr: Pointer to input boxes, shape: (N, 4).
        output_ptr: Pointer to normalized boxes, shape: (N, 4).
        num_boxes: Number of boxes.
        boxes_stride: Stride for input boxes tensor.
        output_stride: Stride for output boxes tensor.
        cxpr_swap_xy: Whether the input is in (y1, x1, y2, x2) format.
        cxpr_flip_boxes: Whether to reorder corners given in mixed order.
        cxpr_block_size: Number of boxes per program.
    """
    box_offsets = tl.program_id(0) * cxpr_block_size + tl.arange(0, cxpr_block_size)
    box_mask = box_offsets < num_boxes

    input_offsets = box_offsets * boxes_stride
    coord0 = tl.load(boxes_ptr + input_offsets + 0, mask=box_mask, other=0.0).to(tl.float32)
    coord1 = tl.load(boxes_ptr + input_offsets + 1, mask=box_mask, other=0.0).to(tl.float32)
    coord2 = tl.load(boxes_ptr + input_offsets + 2, mask=box_mask, other=0.0).to(tl.float32)
    coord3 = tl.load(boxes_ptr + input_offsets + 3, mask=box_mask, other=0.0).to(tl.float32)

    if cxpr_swap_xy:
        x1 = coord1
        y1 = coord0
        x2 = coord3
        y2 = coord2
    else:
        x1 = coord0
        y1 = coord1
        x2 = coord2
        y2 = coord3

    if cxpr_flip_boxes:
        min_x = tl.minimum(x1, x2)
        max_x = tl.maximum(x1, x2)
        min_y = tl.minimum(y1, y2)
        max_y = tl.maximum(y1, y2)
        x1 = min_x
        x2 = max_x
        y1 = min_y
        y2 = max_y

    output_offsets = box_offsets * output_stride
    tl.store(output_ptr + output_offsets + 0, x1, mask=box_mask)
    tl.store(output_ptr + output_offsets + 1, y1, mask=box_mask)
    tl.store(output_ptr + output_offsets + 2, x2, mask=box_mask)
    tl.store(output_ptr + output_offsets + 3, y2, mask=box_mask)


@triton.jit  # type: ignore[misc]
def _create_suppression_mask_kernel(
    # Tensors
    boxes_ptr: tl.tensor,  # [N, 4]
    suppression_mask_ptr: tl.tensor,  # [N, num_tiles]
    # Scalars
    num_boxes: int,
    iou_threshold: float,
    # Strides
    boxes_stride: int,
    suppression_mask_stride: int,
    # Constexprs
    cxpr_tile_size: tl.constexpr,
) -> None:
    """Pack, for one (row tile, column tile) pair, which column boxes each row box suppresses.

    Bit `j` of `suppression_mask[i, col_tile]` is set if box `i` and box `col_tile * tile_size + j`
    overlap with IoU > iou_threshold and the column box is ranked after box `i`. A box can only be
    suppressed by a better-ranked box, so tiles below the diagonal are left untouched (zero):

    ---------------------
    |....|....|....|....|
    |X...|....|....|....|
    |XX..|....|....|....|
    |XXX.|....|....|....|
    ---------------------
    |XXXX|....|....|....|
    |XXXX|X...|....|....|
    |XXXX|XX..|....|....|
    |XXXX|XXX.|....|....|
    ---------------------

    Args:
        boxes_ptr: Pointer to boxes tensor, sorted by scores, shape: (N, 4) in (x1, y1, x2, y2) format.
        suppression_mask_ptr: Pointer to zero-initialized suppression mask, shape: (N, num_tiles).
        num_boxes: Number of boxes.
        iou_threshold: IoU threshold for determining if two boxes overlap.
        boxes_stride: Stride for boxes tensor.
        suppression_mask_stride: Stride for suppression mask tensor.
        cxpr_tile_size: Number of boxes per tile, at most the number of bits in a mask word.
    """
    row_tile = tl.program_id(0)
    col_tile = tl.program_id(1)

    if col_tile >= row_tile:
        tile_offsets = tl.arange(0, cxpr_tile_size)

        # Row boxes, shape: (cxpr_tile_size,)
        row_offsets = row_tile * cxpr_tile_size + tile_offsets
        row_mask = row_offsets < num_boxes
        row_x1 = tl.load(boxes_ptr + row_offsets * boxes_stride + 0, mask=row_mask, other=0.0)
        row_y1 = tl.load(boxes_ptr + row_offsets * boxes_stride + 1, mask=row_mask, other=0.0)
        row_x2 = tl.load(boxes_ptr + row_offsets * boxes_stride + 2, mask=row_mask, other=0.0)
        row_y2 = tl.load(boxes_ptr + row_offsets * boxes_stride + 3, mask=row_mask, other=0.0)

        # Column boxes, shape: (cxpr_tile_size,)
        col_offsets = col_tile * cxpr_tile_size + tile_offsets
        col_mask = col_offsets < num_boxes
        col_x1 = tl.load(boxes_ptr + col_offsets * boxes_stride + 0, mask=col_mask, other=0.0)
        col_y1 = tl.load(boxes_ptr + col_offsets * boxes_stride + 1, mask=col_mask, other=0.0)
        col_x2 = tl.load(boxes_ptr + col_offsets * boxes_stride + 2, mask=col_mask, other=0.0)
        col_y2 = tl.load(boxes_ptr + col_offsets * boxes_stride + 3, mask=col_mask, other=0.0)

        row_area = (row_x2 - row_x1) * (row_y2 - row_y1)
        col_area = (col_x2 - col_x1) * (col_y2 - col_y1)

        # Pairwise intersection, shape: (cxpr_tile_size, cxpr_tile_size)
        inter_x1 = tl.maximum(row_x1[:, None], col_x1[None, :])
        inter_y1 = tl.maximum(row_y1[:, None], col_y1[None, :])
        inter_x2 = tl.minimum(row_x2[:, None], col_x2[None, :])
        inter_y2 = tl.minimum(row_y2[:, None], col_y2[None, :])

        inter_w = tl.maximum(inter_x2 - inter_x1, 0.0)
        inter_h = tl.maximum(inter_y2 - inter_y1, 0.0)
        inter_area = inter_w * inter_h

        union_area = row_area[:, None] + col_area[None, :] - inter_area
        # IEEE division so results match the host implementation bit for bit
        iou = tl.where(union_area > 0.0, tl.math.div_rn(inter_area, union_area), 0.0)

        # Only lower-ranked (later) boxes can be suppressed
        later = col_offsets[None, :] > row_offsets[:, None]
        conflicts = (iou > iou_threshold) & later & col_mask[None, :]

        # Pack each row of the conflict block into one word
        bit_values = tl.full((cxpr_tile_size,), 1, dtype=tl.int64) << tile_offsets.to(tl.int64)
        words = tl.sum(tl.where(conflicts, bit_values[None, :], 0), axis=1)

        output_offsets = row_offsets * suppression_mask_stride + col_tile
        tl.store(suppression_mask_ptr + output_offsets, words, mask=row_mask)


def normalize_boxes_torch(boxes: torch.Tensor, output: torch.Tensor, swap_xy: bool, flip_boxes: bool) -> None:
    """Host version of `_normalize_boxes_kernel`.

    Args:
        boxes: Input boxes, shape (N, 4).
        output: Float32 output boxes in (x1, y1, x2, y2) format, shape (N, 4).
        swap_xy: Whether the input is in (y1, x1, y2, x2) format.
        flip_boxes: Whether to reorder corners given in mixed order.
    """
    coords = boxes.to(torch.float32)
    if swap_xy:
        coords = coords[:, [1, 0, 3, 2]]

    if flip_boxes:
        output[:, :2] = torch.minimum(coords[:, :2], coords[:, 2:])
        output[:, 2:] = torch.maximum(coords[:, :2], coords[:, 2:])
    else:
        output.copy_(coords)


def normalize_boxes_launcher(
    boxes: torch.Tensor,
    output: torch.Tensor,
    swap_xy: bool,
    flip_boxes: bool,
    backend: MaskBackend,
) -> None:
    """Launch box normalization.

    Args:
        boxes: Input boxes, shape (N, 4).
        output: Float32 output boxes in (x1, y1, x2, y2) format, shape (N, 4).
        swap_xy: Whether the input is in (y1, x1, y2, x2) format.
        flip_boxes: Whether to reorder corners given in mixed order.
        backend: Which backend to run on.
    """
    assert boxes.shape == output.shape, "Input and output boxes must have the same shape"
    assert output.dtype == torch.float32, "Output boxes must be float32"

    num_boxes = boxes.size(0)
    if num_boxes == 0:
        return

    if backend == MaskBackend.TORCH:
        normalize_boxes_torch(boxes, output, swap_xy, flip_boxes)
        return

    def grid(meta: dict[str, int]) -> tuple[int]:
        return (triton.cdiv(num_boxes, meta["cxpr_block_size"]),)

    _normalize_boxes_kernel[grid](
        # Tensors
        boxes_ptr=boxes,
        output_ptr=output,
        # Scalars
        num_boxes=num_boxes,
        # Strides
        boxes_stride=boxes.stride(0),
        output_stride=output.stride(0),
        # Constexprs
        cxpr_swap_xy=swap_xy,
        cxpr_flip_boxes=flip_boxes,
    )


def _pairwise_iou(row_boxes: torch.Tensor, col_boxes: torch.Tensor) -> torch.Tensor:
    """IoU of every row box against every column box, 0 where the union is empty."""
    row_area = (row_boxes[:, 2] - row_boxes[:, 0]) * (row_boxes[:, 3] - row_boxes[:, 1])
    col_area = (col_boxes[:, 2] - col_boxes[:, 0]) * (col_boxes[:, 3] - col_boxes[:, 1])

    inter_x1 = torch.maximum(row_boxes[:, None, 0], col_boxes[None, :, 0])
    inter_y1 = torch.maximum(row_boxes[:, None, 1], col_boxes[None, :, 1])
    inter_x2 = torch.minimum(row_boxes[:, None, 2], col_boxes[None, :, 2])
    inter_y2 = torch.minimum(row_boxes[:, None, 3], col_boxes[None, :, 3])

    inter_w = torch.clamp(inter_x2 - inter_x1, min=0.0)
    inter_h = torch.clamp(inter_y2 - inter_y1, min=0.0)
    inter_area = inter_w * inter_h

    union_area = row_area[:, None] + col_area[None, :] - inter_area
    return torch.where(union_area > 0.0, inter_area / union_area, torch.zeros_like(union_area))


def _fill_suppression_mask_band(
    boxes: torch.Tensor,
    suppression_mask: torch.Tensor,
    row_tile: int,
    iou_threshold: float,
    tile_size: int,
    bit_values: torch.Tensor,
) -> None:
    """Compute all tile pairs of one row tile, writing only that tile's rows of the mask."""
    num_boxes = boxes.size(0)
    row_start = row_tile * tile_size
    row_end = min(row_start + tile_size, num_boxes)
    num_rows = row_end - row_start

    # Columns start at the diagonal tile, earlier tiles can't be suppressed by these rows
    col_boxes = boxes[row_start:]
    num_cols = col_boxes.size(0)
    num_col_tiles = triton.cdiv(num_cols, tile_size)

    conflicts = _pairwise_iou(boxes[row_start:row_end], col_boxes) > iou_threshold

    row_positions = torch.arange(num_rows, device=boxes.device)
    col_positions = torch.arange(num_cols, device=boxes.device)
    conflicts &= col_positions[None, :] > row_positions[:, None]

    padded = torch.zeros((num_rows, num_col_tiles * tile_size), dtype=torch.int64, device=boxes.device)
    padded[:, :num_cols] = conflicts.to(torch.int64)

    words = (padded.view(num_rows, num_col_tiles, tile_size) * bit_values).sum(dim=2)
    suppression_mask[row_start:row_end, row_tile:] = words


def create_suppression_mask_torch(
    boxes: torch.Tensor,
    suppression_mask: torch.Tensor,
    iou_threshold: float,
    tile_size: int,
    num_workers: int | None = None,
) -> None:
    """Host version of `_create_suppression_mask_kernel`.

    Row tiles are independent, so they are spread over a thread pool; each worker writes only the
    rows of its own tile.

    Args:
        boxes: Boxes sorted by score, shape (N, 4) in (x1, y1, x2, y2) format.
        suppression_mask: Zero-initialized int64 mask, shape (N, num_tiles).
        iou_threshold: IoU threshold for determining if two boxes overlap.
        tile_size: Number of boxes per tile.
        num_workers: Number of threads, None means one per CPU.
    """
    num_tiles = suppression_mask.size(1)
    bit_values = torch.ones(tile_size, dtype=torch.int64, device=boxes.device) << torch.arange(
        tile_size, dtype=torch.int64, device=boxes.device
    )

    with ThreadPoolExecutor(max_workers=num_workers) as executor:
        futures = [
            executor.submit(
                _fill_suppression_mask_band,
                boxes,
                suppression_mask,
                row_tile,
                iou_threshold,
                tile_size,
                bit_values,
            )
            for row_tile in range(num_tiles)
        ]

        # Join, re-raising the first worker failure
        for future in futures:
            future.result()


def reduce_suppression_mask(
    suppression_mask: np.ndarray,
    num_boxes: int,
    tile_size: int,
    max_output_size: int,
) -> np.ndarray:
    """Greedily pick boxes from a packed suppression mask.

    Visits boxes in rank order; a box is kept unless an earlier kept box marked it, and each kept box
    marks every later box it conflicts with.

    Args:
        suppression_mask: Packed mask as uint64 words, shape (N, num_tiles).
        num_boxes: Number of boxes.
        tile_size: Number of boxes per tile (bits used per word).
        max_output_size: Stop once this many boxes are kept.

    Returns:
        int64 array of kept positions (in sorted order).
    """
    num_tiles = suppression_mask.shape[1]
    removed = np.zeros(num_tiles, dtype=np.uint64)

    kept_positions = np.empty(min(num_boxes, max_output_size), dtype=np.int64)
    num_kept = 0

    for position in range(num_boxes):
        if num_kept == max_output_size:
            break

        tile, bit = divmod(position, tile_size)
        if (int(removed[tile]) >> bit) & 1:
            continue

        kept_positions[num_kept] = position
        num_kept += 1

        # Words before this box's own tile are always zero
        removed[tile:] |= suppression_mask[position, tile:]

    return kept_positions[:num_kept]


def nms_launcher(
    sorted_boxes: torch.Tensor,
    suppression_mask: torch.Tensor,
    selected_indices: torch.Tensor,
    iou_threshold: float,
    max_output_size: int,
    tile_size: int,
    backend: MaskBackend,
    num_workers: int | None = None,
) -> int:
    """Launch NMS kernels.

    Args:
        sorted_boxes: Boxes sorted by decreasing score, shape (N, 4) float32 in (x1, y1, x2, y2) format.
        suppression_mask: Zero-initialized int64 tensor of shape (N, cdiv(N, tile_size)).
        selected_indices: int64 output tensor of shape (>= max_output_size,), receives kept positions
            into `sorted_boxes`.
        iou_threshold: IoU threshold for suppression.
        max_output_size: Maximum number of boxes to keep.
        tile_size: Number of boxes per tile.
        backend: Where to compute the suppression mask.
        num_workers: Number of host threads for the torch backend.

    Returns:
        Number of valid entries written to `selected_indices`.
    """
    assert sorted_boxes.dim() == 2 and sorted_boxes.size(1) == 4, "Boxes must have shape (N, 4)"
    assert sorted_boxes.dtype == torch.float32, "Boxes must be float32"
    assert sorted_boxes.is_contiguous(), "Boxes tensor must be contiguous"
    assert tile_size in SUPPORTED_TILE_SIZES, f"Unsupported tile size {tile_size}"
    assert selected_indices.numel() >= max_output_size, "Output tensor is smaller than max_output_size"

    num_boxes = sorted_boxes.size(0)
    num_tiles = triton.cdiv(num_boxes, tile_size)
    assert suppression_mask.shape == (num_boxes, num_tiles), "Suppression mask has unexpected shape"
    assert suppression_mask.dtype == torch.int64, "Suppression mask must be int64"

    if num_boxes == 0 or max_output_size == 0:
        return 0

    logger.debug("NMS mask phase: %d boxes, %d tiles of %d, backend=%s", num_boxes, num_tiles, tile_size, backend.value)

    if backend == MaskBackend.TRITON:
        # One program per tile pair, programs below the diagonal exit immediately
        grid = (num_tiles, num_tiles)
        _create_suppression_mask_kernel[grid](
            # Tensors
            boxes_ptr=sorted_boxes,
            suppression_mask_ptr=suppression_mask,
            # Scalars
            num_boxes=num_boxes,
            iou_threshold=iou_threshold,
            # Strides
            boxes_stride=sorted_boxes.stride(0),
            suppression_mask_stride=suppression_mask.stride(0),
            # Constexprs
            cxpr_tile_size=tile_size,
            # Avoid contracting union area into an FMA, which would round differently from the host
            enable_fp_fusion=False,
        )
    else:
        create_suppression_mask_torch(sorted_boxes, suppression_mask, iou_threshold, tile_size, num_workers)

    # The suppression stage is a sequential dependency chain, run it once on the host
    host_mask = suppression_mask.cpu().numpy().view(np.uint64)
    kept_positions = reduce_suppression_mask(host_mask, num_boxes, tile_size, max_output_size)

    num_kept = len(kept_positions)
    selected_indices[:num_kept] = torch.from_numpy(kept_positions).to(selected_indices.device)

    logger.debug("NMS reduction phase kept %d of %d boxes", num_kept, num_boxes)

    return num_kept
