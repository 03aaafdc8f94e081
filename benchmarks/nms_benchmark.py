# Copyright 2025 Stack AV Co.
# SPDX-License-Identifier: Apache-2.0

"""NMS benchmark."""

import sys
from collections.abc import Callable
from typing import Any, Final

import click
import torch

from boxsieve.ops.vision.nms import nms as nms_boxsieve
from boxsieve.platforms import current_platform
from boxsieve.reference.vision.nms import nms as nms_ref
from boxsieve.utils.benchmark import BenchmarkMetadata, BenchmarkResult, benchmark_it
from boxsieve.utils.testing import create_tensors_with_iou, seed_everything


@click.command()
@click.option(
    "--num-boxes",
    required=False,
    type=int,
    default=1000,
    help="Number of boxes to create",
)
@click.option(
    "--iou-threshold",
    required=False,
    type=float,
    default=0.2,
    help="IoU threshold for boxes to be kept",
)
@click.option(
    "--score-threshold",
    required=False,
    type=float,
    default=float("-inf"),
    help="Boxes with a score at or below this value are discarded",
)
@click.option(
    "--max-output-size",
    required=False,
    type=int,
    default=None,
    help="Maximum number of boxes to keep (default: all)",
)
@click.option(
    "--tile-size",
    required=False,
    type=click.Choice(["8", "16", "32", "64"]),
    default="32",
    help="Boxes per tile in the parallel engine",
)
@click.option(
    "--backend",
    required=False,
    type=click.Choice(["auto", "triton", "torch"]),
    default="auto",
    help="Suppression mask backend for the parallel engine",
)
@click.option(
    "--vectorize-ref",
    is_flag=True,
    help="Flag to also benchmark the vectorized reference implementation",
)
@click.option(
    "--torchvision-ref",
    is_flag=True,
    help="Flag to also benchmark torchvision's NMS",
)
@click.option(
    "--iteration-time-ms",
    required=False,
    type=int,
    default=10000,
    help="Time in milliseconds to run benchmark",
)
@click.option(
    "--warmup-time-ms",
    required=False,
    type=int,
    default=1000,
    help="Time in milliseconds to warmup before recording times",
)
@click.option(
    "--verbose",
    is_flag=True,
    help="Flag for printing verbose output",
)
@click.option(
    "--gpu",
    required=False,
    type=str,
    default=current_platform.device,
    help="Device to run on",
)
@click.option(
    "--csv",
    is_flag=True,
    help="Flag for printing results in CSV format",
)
def main(
    num_boxes: int,
    iou_threshold: float,
    score_threshold: float,
    max_output_size: int | None,
    tile_size: str,
    backend: str,
    vectorize_ref: bool,
    torchvision_ref: bool,
    iteration_time_ms: int,
    warmup_time_ms: int,
    verbose: bool,
    gpu: str,
    csv: bool,
) -> None:
    """Benchmark NMS.

    Args:
        num_boxes: Number of boxes to create.
        iou_threshold: IoU threshold for boxes to be kept.
        score_threshold: Boxes with a score at or below this value are discarded.
        max_output_size: Maximum number of boxes to keep.
        tile_size: Boxes per tile in the parallel engine.
        backend: Suppression mask backend for the parallel engine.
        vectorize_ref: Flag to also benchmark the vectorized reference implementation.
        torchvision_ref: Flag to also benchmark torchvision's NMS.
        iteration_time_ms: Time in milliseconds to run benchmark.
        warmup_time_ms: Time in milliseconds to warmup before recording times.
        verbose: Flag to indicate whether or not to print verbose output.
        gpu: Which gpu to run on.
        csv: Flag to indicate whether or not to print results in CSV format.
    """
    seed: Final = 0
    seed_everything(seed)

    device: Final = torch.device(gpu)
    torch.set_default_device(device)

    metadata = BenchmarkMetadata(
        platform=current_platform.name(),
        params={
            "num_boxes": num_boxes,
            "iou_threshold": iou_threshold,
            "score_threshold": score_threshold,
            "max_output_size": max_output_size,
            "tile_size": tile_size,
            "backend": backend,
        },
    )

    boxes, scores = create_tensors_with_iou(num_boxes, iou_threshold)

    def _run_ref(vectorize: bool = False) -> torch.Tensor:
        return nms_ref(boxes, scores, iou_threshold, score_threshold, max_output_size, vectorize=vectorize)

    def _run_boxsieve() -> torch.Tensor:
        return nms_boxsieve(
            boxes, scores, iou_threshold, score_threshold, max_output_size, tile_size=int(tile_size), backend=backend
        )

    # Accuracy check, results must match exactly (same indices, same order)
    reference_output = _run_ref()
    boxsieve_output = _run_boxsieve()

    if not torch.equal(reference_output, boxsieve_output):
        print("WARNING: Reference and boxsieve results differ!", file=sys.stderr)
        print(f"Ref kept: {len(reference_output)}, boxsieve kept: {len(boxsieve_output)}", file=sys.stderr)

        if verbose:
            print(f"Reference output: {reference_output}", file=sys.stderr)
            print(f"boxsieve output: {boxsieve_output}", file=sys.stderr)
    else:
        print(f"Reference vs boxsieve: Results matched ({len(reference_output)} kept) :)", file=sys.stderr)

    def _bench(fn: Callable[[], Any], tag: str) -> BenchmarkResult:
        return benchmark_it(
            fn,
            tag=tag,
            metadata=metadata,
            iteration_time_ms=iteration_time_ms,
            warmup_time_ms=warmup_time_ms,
        )

    baseline_result = _bench(_run_ref, "PyTorch Reference")
    boxsieve_result = _bench(_run_boxsieve, "boxsieve")

    extra_results = []
    if vectorize_ref:
        extra_results.append(_bench(lambda: _run_ref(vectorize=True), "PyTorch Reference (Vectorized)"))

    if torchvision_ref:
        from torchvision.ops.boxes import nms as nms_torchvision  # type: ignore[import-untyped]

        extra_results.append(_bench(lambda: nms_torchvision(boxes, scores, iou_threshold), "torchvision"))

    boxsieve_result.print_parameters(csv=csv)
    boxsieve_result.print_results(baseline=baseline_result, csv=csv)
    baseline_result.print_results(csv=csv)
    for result in extra_results:
        result.print_results(baseline=baseline_result, csv=csv)


if __name__ == "__main__":
    main()
