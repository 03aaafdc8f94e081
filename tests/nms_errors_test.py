# Copyright 2025 Stack AV Co.
# SPDX-License-Identifier: Apache-2.0

"""Test NMS argument checking, capacity limits and configuration."""

from collections.abc import Callable
from typing import Any

import pytest
import torch

from boxsieve import envs
from boxsieve.errors import CapacityExceededError, InvalidArgumentError, ResourceExhaustedError
from boxsieve.ops.vision import nms as nms_module
from boxsieve.ops.vision.nms import nms_padded
from boxsieve.ops.vision.nms import nms as nms_boxsieve
from boxsieve.reference.vision.nms import nms as nms_ref

_ENGINES: list[Callable[..., Any]] = [nms_ref, nms_boxsieve]


def _boxes_and_scores(num_boxes: int = 3) -> tuple[torch.Tensor, torch.Tensor]:
    boxes = torch.tensor([[10.0 * i, 0.0, 10.0 * i + 5.0, 5.0] for i in range(num_boxes)])
    scores = torch.linspace(1.0, 0.1, num_boxes)
    return boxes, scores


@pytest.mark.parametrize("nms_fn", _ENGINES)
def test_mismatched_lengths(nms_fn: Callable[..., Any]) -> None:
    boxes, scores = _boxes_and_scores()

    with pytest.raises(InvalidArgumentError, match="must match"):
        nms_fn(boxes, scores[:2], 0.5)


@pytest.mark.parametrize("nms_fn", _ENGINES)
def test_wrong_box_shape(nms_fn: Callable[..., Any]) -> None:
    boxes, scores = _boxes_and_scores()

    with pytest.raises(InvalidArgumentError):
        nms_fn(boxes[:, :3], scores, 0.5)

    with pytest.raises(InvalidArgumentError):
        nms_fn(boxes, scores[:, None], 0.5)


@pytest.mark.parametrize("nms_fn", _ENGINES)
@pytest.mark.parametrize("bad_value", [float("nan"), float("inf"), float("-inf")])
def test_non_finite_coordinates(nms_fn: Callable[..., Any], bad_value: float) -> None:
    boxes, scores = _boxes_and_scores()
    boxes[1, 2] = bad_value

    with pytest.raises(InvalidArgumentError, match="non-finite"):
        nms_fn(boxes, scores, 0.5)


@pytest.mark.parametrize("nms_fn", _ENGINES)
@pytest.mark.parametrize("iou_threshold", [-0.1, 1.5, float("nan")])
def test_iou_threshold_out_of_range(nms_fn: Callable[..., Any], iou_threshold: float) -> None:
    boxes, scores = _boxes_and_scores()

    with pytest.raises(InvalidArgumentError, match="iou_threshold"):
        nms_fn(boxes, scores, iou_threshold)


@pytest.mark.parametrize("nms_fn", _ENGINES)
def test_invalid_score_threshold_and_output_size(nms_fn: Callable[..., Any]) -> None:
    boxes, scores = _boxes_and_scores()

    with pytest.raises(InvalidArgumentError, match="score_threshold"):
        nms_fn(boxes, scores, 0.5, float("nan"))

    with pytest.raises(InvalidArgumentError, match="max_output_size"):
        nms_fn(boxes, scores, 0.5, 0.0, -1)


@pytest.mark.parametrize("nms_fn", _ENGINES)
def test_unknown_box_format(nms_fn: Callable[..., Any]) -> None:
    boxes, scores = _boxes_and_scores()

    with pytest.raises(InvalidArgumentError, match="box_format"):
        nms_fn(boxes, scores, 0.5, box_format="xywh")


def test_errors_are_value_errors() -> None:
    """Test that argument errors can be caught as ValueError."""
    boxes, scores = _boxes_and_scores()

    with pytest.raises(ValueError):
        nms_boxsieve(boxes, scores, 2.0)


@pytest.mark.parametrize("tile_size", [0, 12, 128])
def test_unsupported_tile_size(tile_size: int) -> None:
    boxes, scores = _boxes_and_scores()

    with pytest.raises(InvalidArgumentError, match="tile_size"):
        nms_boxsieve(boxes, scores, 0.5, tile_size=tile_size)


def test_unknown_backend() -> None:
    boxes, scores = _boxes_and_scores()

    with pytest.raises(InvalidArgumentError, match="backend"):
        nms_boxsieve(boxes, scores, 0.5, backend="opencl")


def test_triton_backend_rejects_host_tensors() -> None:
    boxes, scores = _boxes_and_scores()

    with pytest.raises(InvalidArgumentError, match="GPU"):
        nms_boxsieve(boxes, scores, 0.5, backend="triton")


def test_capacity_exceeded_num_boxes(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BOXSIEVE_NMS_MAX_NUM_BOXES", "4")
    boxes, scores = _boxes_and_scores(5)

    with pytest.raises(CapacityExceededError, match="candidate boxes"):
        nms_boxsieve(boxes, scores, 0.5)

    # The limit applies to boxes that survive score filtering
    keep = nms_boxsieve(boxes, scores, 0.5, score_threshold=float(scores[4]))
    assert keep.tolist() == [0, 1, 2, 3]


def test_capacity_exceeded_num_tiles(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BOXSIEVE_NMS_MAX_NUM_TILES", "1")
    boxes, scores = _boxes_and_scores(9)

    with pytest.raises(CapacityExceededError, match="tiles"):
        nms_boxsieve(boxes, scores, 0.5, tile_size=8)

    keep = nms_boxsieve(boxes, scores, 0.5, tile_size=16)
    assert keep.numel() == 9


def test_resource_exhausted(monkeypatch: pytest.MonkeyPatch) -> None:
    boxes, scores = _boxes_and_scores()

    def _fail_allocation(*args: Any, **kwargs: Any) -> torch.Tensor:
        raise MemoryError("simulated allocation failure")

    monkeypatch.setattr(nms_module.torch, "zeros", _fail_allocation)

    with pytest.raises(ResourceExhaustedError, match="suppression mask"):
        nms_padded(boxes, scores, 0.5, backend="torch")


def test_large_max_output_size() -> None:
    """Test that an output budget far above the box count behaves like an unbounded one."""
    boxes, scores = _boxes_and_scores()
    max_output_size = 2**62

    expected = nms_ref(boxes, scores, 0.5, max_output_size=max_output_size)
    actual = nms_boxsieve(boxes, scores, 0.5, max_output_size=max_output_size, backend="torch")

    assert expected.tolist() == [0, 1, 2]
    torch.testing.assert_close(actual, expected)


def test_padded_output_too_large() -> None:
    boxes, scores = _boxes_and_scores()

    with pytest.raises(ResourceExhaustedError, match="output buffer"):
        nms_padded(boxes, scores, 0.5, max_output_size=2**62, backend="torch")


def test_env_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in envs.environment_variables:
        monkeypatch.delenv(name, raising=False)

    assert envs.BOXSIEVE_ENABLE_TORCHVISION is False
    assert envs.BOXSIEVE_NMS_TILE_SIZE == 32
    assert envs.BOXSIEVE_NMS_MAX_NUM_BOXES == 32768
    assert envs.BOXSIEVE_NMS_MAX_NUM_TILES == 4096
    assert envs.BOXSIEVE_NMS_NUM_WORKERS == 0
    assert envs.BOXSIEVE_NMS_MASK_BACKEND == "auto"
    assert envs.BOXSIEVE_LOGGING_LEVEL == "WARNING"


def test_env_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BOXSIEVE_NMS_TILE_SIZE", "16")
    monkeypatch.setenv("BOXSIEVE_NMS_MASK_BACKEND", " Torch ")
    monkeypatch.setenv("BOXSIEVE_ENABLE_TORCHVISION", "true")

    assert envs.BOXSIEVE_NMS_TILE_SIZE == 16
    assert envs.BOXSIEVE_NMS_MASK_BACKEND == "torch"
    assert envs.BOXSIEVE_ENABLE_TORCHVISION is True


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("BOXSIEVE_NMS_TILE_SIZE", "abc"),
        ("BOXSIEVE_NMS_MAX_NUM_BOXES", "0"),
        ("BOXSIEVE_NMS_NUM_WORKERS", "-1"),
        ("BOXSIEVE_NMS_MASK_BACKEND", "opencl"),
        ("BOXSIEVE_LOGGING_LEVEL", "LOUD"),
    ],
)
def test_env_invalid_values(monkeypatch: pytest.MonkeyPatch, name: str, value: str) -> None:
    monkeypatch.setenv(name, value)

    with pytest.raises(InvalidArgumentError, match=name):
        getattr(envs, name)


def test_env_unknown_attribute() -> None:
    with pytest.raises(AttributeError):
        _ = envs.BOXSIEVE_DOES_NOT_EXIST


def test_torchvision_reference_matches(monkeypatch: pytest.MonkeyPatch) -> None:
    """Test that the torchvision-backed reference keeps the same boxes."""
    pytest.importorskip("torchvision")

    torch.manual_seed(0)
    boxes = torch.rand(300, 4) * 100
    boxes[:, 2:] += boxes[:, :2]
    scores = torch.rand(300)

    expected = nms_ref(boxes, scores, 0.5, 0.2, 50)

    monkeypatch.setenv("BOXSIEVE_ENABLE_TORCHVISION", "1")
    actual = nms_ref(boxes, scores, 0.5, 0.2, 50)

    torch.testing.assert_close(actual, expected)


def test_torchvision_reference_threshold_boundary(monkeypatch: pytest.MonkeyPatch) -> None:
    """Test that an IoU exactly at a threshold not representable in float32 doesn't conflict."""
    pytest.importorskip("torchvision")

    # IoU is exactly 10 / 100
    boxes = torch.tensor([[0.0, 0.0, 10.0, 10.0], [0.0, 0.0, 1.0, 10.0]])
    scores = torch.tensor([0.9, 0.8])

    assert nms_ref(boxes, scores, 0.1).tolist() == [0, 1]
    assert nms_boxsieve(boxes, scores, 0.1, backend="torch").tolist() == [0, 1]

    monkeypatch.setenv("BOXSIEVE_ENABLE_TORCHVISION", "1")
    assert nms_ref(boxes, scores, 0.1).tolist() == [0, 1]
