# Copyright 2025 Stack AV Co.
# SPDX-License-Identifier: Apache-2.0

"""Errors raised by the NMS engines."""


class NmsError(Exception):
    """Base class for all NMS errors."""


class InvalidArgumentError(NmsError, ValueError):
    """Raised when inputs violate the call contract (shapes, thresholds, coordinates)."""


class CapacityExceededError(NmsError, RuntimeError):
    """Raised when the input exceeds the structural limits of the parallel engine."""


class ResourceExhaustedError(NmsError, RuntimeError):
    """Raised when working memory for the suppression mask cannot be allocated."""
