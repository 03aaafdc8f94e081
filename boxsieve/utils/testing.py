# Copyright 2025 Stack AV Co.
# SPDX-License-Identifier: Apache-2.0

"""Input generation shared by tests and benchmarks."""

import random

import numpy as np
import torch


def seed_everything(seed: int) -> None:
    """Seed the Python, NumPy and PyTorch random number generators.

    Args:
        seed: Seed value.
    """
    random.seed(seed)
    np.random.seed(seed)
    torch.manual_seed(seed)
    if torch.cuda.is_available():
        torch.cuda.manual_seed_all(seed)


def create_tensors_with_iou(num_boxes: int, iou_thresh: float) -> tuple[torch.Tensor, torch.Tensor]:
    """Create random (x1, y1, x2, y2) boxes and scores, with the last box barely overlapping the first.

    Args:
        num_boxes: Number of boxes to create, at least 2.
        iou_thresh: IoU threshold the last box should (barely) exceed against the first box.

    Returns:
        Tuple of boxes, shape (num_boxes, 4), and scores, shape (num_boxes,).
    """
    # force last box to have a pre-defined iou with the first box
    # let b0 be [x0, y0, x1, y1], and b1 be [x0, y0, x1 + d, y1],
    # then, in order to satisfy ops.iou(b0, b1) == iou_thresh,
    # we need to have d = (x1 - x0) * (1 - iou_thresh) / iou_thresh
    # Adjust the threshold upward a bit with the intent of creating
    # at least one box that exceeds (barely) the threshold and so
    # should be suppressed.
    boxes = torch.rand(num_boxes, 4) * 100
    boxes[:, 2:] += boxes[:, :2]
    boxes[-1, :] = boxes[0, :]
    x0, y0, x1, y1 = boxes[-1].tolist()
    iou_thresh += 1e-5
    boxes[-1, 2] += (x1 - x0) * (1 - iou_thresh) / iou_thresh
    scores = torch.rand(num_boxes)
    return boxes, scores
