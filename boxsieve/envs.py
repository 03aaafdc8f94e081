# Copyright 2025 Stack AV Co.
# SPDX-License-Identifier: Apache-2.0

"""Environment variables."""

import os
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, Final

from boxsieve.errors import InvalidArgumentError

if TYPE_CHECKING:
    BOXSIEVE_ENABLE_TORCHVISION: bool
    BOXSIEVE_LOGGING_LEVEL: str
    BOXSIEVE_NMS_MASK_BACKEND: str
    BOXSIEVE_NMS_MAX_NUM_BOXES: int
    BOXSIEVE_NMS_MAX_NUM_TILES: int
    BOXSIEVE_NMS_NUM_WORKERS: int
    BOXSIEVE_NMS_TILE_SIZE: int

_SUPPORTED_MASK_BACKENDS: Final = ("auto", "torch", "triton")
_SUPPORTED_LOGGING_LEVELS: Final = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG", "NOTSET")


def _get_bool(name: str, default: str = "0") -> bool:
    return os.environ.get(name, default).strip().lower() in ("1", "true")


def _get_int(name: str, default: int, min_value: int = 0) -> int:
    raw_value = os.environ.get(name)
    if raw_value is None or not raw_value.strip():
        return default

    try:
        value = int(raw_value)
    except ValueError as err:
        msg = f"Environment variable {name}={raw_value!r} is not an integer"
        raise InvalidArgumentError(msg) from err

    if value < min_value:
        msg = f"Environment variable {name}={value} must be >= {min_value}"
        raise InvalidArgumentError(msg)

    return value


def _get_mask_backend() -> str:
    backend = os.environ.get("BOXSIEVE_NMS_MASK_BACKEND", "auto").strip().lower()
    if backend not in _SUPPORTED_MASK_BACKENDS:
        msg = f"BOXSIEVE_NMS_MASK_BACKEND={backend!r} not in list of supported backends: {_SUPPORTED_MASK_BACKENDS}"
        raise InvalidArgumentError(msg)
    return backend


def _get_logging_level() -> str:
    level = os.environ.get("BOXSIEVE_LOGGING_LEVEL", "WARNING").strip().upper()
    if level not in _SUPPORTED_LOGGING_LEVELS:
        msg = f"BOXSIEVE_LOGGING_LEVEL={level!r} not in list of supported levels: {_SUPPORTED_LOGGING_LEVELS}"
        raise InvalidArgumentError(msg)
    return level


environment_variables: dict[str, Callable[[], Any]] = {
    # Route the sequential reference through torchvision's NMS
    "BOXSIEVE_ENABLE_TORCHVISION": lambda: _get_bool("BOXSIEVE_ENABLE_TORCHVISION"),
    # Level of the `boxsieve` logger
    "BOXSIEVE_LOGGING_LEVEL": _get_logging_level,
    # Which backend computes the suppression mask: "triton", "torch" or "auto"
    "BOXSIEVE_NMS_MASK_BACKEND": _get_mask_backend,
    # Maximum number of candidate boxes (after score filtering) for the parallel engine
    "BOXSIEVE_NMS_MAX_NUM_BOXES": lambda: _get_int("BOXSIEVE_NMS_MAX_NUM_BOXES", 32768, min_value=1),
    # Maximum number of tiles addressable by the suppression mask
    "BOXSIEVE_NMS_MAX_NUM_TILES": lambda: _get_int("BOXSIEVE_NMS_MAX_NUM_TILES", 4096, min_value=1),
    # Number of host threads computing the suppression mask, 0 means one per CPU
    "BOXSIEVE_NMS_NUM_WORKERS": lambda: _get_int("BOXSIEVE_NMS_NUM_WORKERS", 0),
    # Default number of boxes per tile (bits per mask word in use)
    "BOXSIEVE_NMS_TILE_SIZE": lambda: _get_int("BOXSIEVE_NMS_TILE_SIZE", 32, min_value=1),
}


def __getattr__(name: str) -> Any:
    # lazy evaluation of environment variables
    if name in environment_variables:
        return environment_variables[name]()
    error_msg = f"module {__name__!r} has no attribute {name!r}"
    raise AttributeError(error_msg)


def __dir__() -> list[str]:
    return list(environment_variables.keys())
