# Copyright 2025 Stack AV Co.
# SPDX-License-Identifier: Apache-2.0

"""Argument checking shared by the sequential and parallel NMS engines."""

import enum
import math
from dataclasses import dataclass
from typing import Final

import torch

from boxsieve.errors import InvalidArgumentError


class BoxFormat(enum.Enum):
    """Corner convention of the input boxes."""

    # (x1, y1, x2, y2)
    XYXY = "xyxy"
    # (y1, x1, y2, x2)
    YXYX = "yxyx"


@dataclass
class NmsMetadata:
    """Wrapper class holding validated scalar parameters of one NMS call."""

    num_boxes: int
    iou_threshold: float
    score_threshold: float
    max_output_size: int
    box_format: BoxFormat
    flip_boxes: bool


def _check_boxes_and_scores(boxes: torch.Tensor, scores: torch.Tensor) -> None:
    """Check size and dtype compatibility of boxes and scores.

    Args:
        boxes: Boxes tensor, expected shape (N, 4).
        scores: Scores tensor, expected shape (N,).

    Raises:
        InvalidArgumentError if shapes, dtypes or devices are mismatched.
    """
    expected_box_coords: Final = 4

    if boxes.dim() != 2 or boxes.size(1) != expected_box_coords:
        msg = f"Boxes tensor has unexpected shape ({boxes.shape = }), expected (N, {expected_box_coords})"
        raise InvalidArgumentError(msg)

    if scores.dim() != 1:
        msg = f"Scores tensor has unexpected shape ({scores.shape = }), expected 1-D tensor"
        raise InvalidArgumentError(msg)

    if boxes.size(0) != scores.size(0):
        msg = f"Number of boxes ({boxes.size(0)}) and scores ({scores.size(0)}) must match"
        raise InvalidArgumentError(msg)

    if not boxes.is_floating_point() or not scores.is_floating_point():
        msg = f"Boxes and scores must be floating point ({boxes.dtype = }, {scores.dtype = })"
        raise InvalidArgumentError(msg)

    if boxes.device != scores.device:
        msg = f"Boxes and scores must live on the same device ({boxes.device = }, {scores.device = })"
        raise InvalidArgumentError(msg)

    # Non-finite corners have no well-defined min/max ordering
    if boxes.numel() > 0 and not bool(torch.isfinite(boxes).all()):
        msg = "Boxes tensor contains non-finite coordinates"
        raise InvalidArgumentError(msg)


def _parse_box_format(box_format: BoxFormat | str) -> BoxFormat:
    if isinstance(box_format, BoxFormat):
        return box_format

    try:
        return BoxFormat(box_format.lower())
    except ValueError as err:
        supported = [fmt.value for fmt in BoxFormat]
        msg = f"box_format '{box_format}' not in list of supported formats: {supported}"
        raise InvalidArgumentError(msg) from err


def create_nms_metadata(
    boxes: torch.Tensor,
    scores: torch.Tensor,
    iou_threshold: float,
    score_threshold: float,
    max_output_size: int | None,
    box_format: BoxFormat | str = BoxFormat.XYXY,
    flip_boxes: bool = True,
) -> NmsMetadata:
    """Verify sizes, dtypes and thresholds of an NMS call and deduce metadata parameters.

    Args:
        boxes: Boxes tensor of shape (N, 4).
        scores: Scores tensor of shape (N,).
        iou_threshold: Boxes overlapping with IoU > iou_threshold conflict, must be in [0, 1].
        score_threshold: Boxes with score <= score_threshold are discarded, -inf disables filtering.
        max_output_size: Maximum number of indices to return, None means no limit.
        box_format: Corner convention of the boxes.
        flip_boxes: Whether to normalize corner ordering before computing overlaps.

    Raises:
        InvalidArgumentError if any argument violates the call contract.

    Returns:
        Validated NmsMetadata.
    """
    _check_boxes_and_scores(boxes, scores)

    iou_threshold = float(iou_threshold)
    if math.isnan(iou_threshold) or not 0.0 <= iou_threshold <= 1.0:
        msg = f"iou_threshold must be in [0, 1] (got {iou_threshold})"
        raise InvalidArgumentError(msg)

    score_threshold = float(score_threshold)
    if math.isnan(score_threshold):
        msg = "score_threshold must not be NaN"
        raise InvalidArgumentError(msg)

    num_boxes = boxes.size(0)

    if max_output_size is None:
        max_output_size = num_boxes
    elif max_output_size < 0:
        msg = f"max_output_size must be non-negative (got {max_output_size})"
        raise InvalidArgumentError(msg)

    return NmsMetadata(
        num_boxes=num_boxes,
        iou_threshold=iou_threshold,
        score_threshold=score_threshold,
        max_output_size=int(max_output_size),
        box_format=_parse_box_format(box_format),
        flip_boxes=flip_boxes,
    )
