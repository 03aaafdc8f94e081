# Copyright 2025 Stack AV Co.
# SPDX-License-Identifier: Apache-2.0

"""Logging configuration."""

import logging
from typing import Final

from boxsieve import envs

_ROOT_LOGGER_NAME: Final = "boxsieve"
_FORMAT: Final = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
_DATE_FORMAT: Final = "%Y-%m-%d %H:%M:%S"

_root_logger_configured = False


def _configure_root_logger() -> None:
    """Attach a stream handler to the package root logger, once."""
    global _root_logger_configured  # noqa: PLW0603
    if _root_logger_configured:
        return

    root_logger = logging.getLogger(_ROOT_LOGGER_NAME)
    root_logger.setLevel(envs.BOXSIEVE_LOGGING_LEVEL)

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(fmt=_FORMAT, datefmt=_DATE_FORMAT))
    root_logger.addHandler(handler)
    root_logger.propagate = False

    _root_logger_configured = True


def init_logger(name: str) -> logging.Logger:
    """Get a logger below the `boxsieve` root logger.

    Args:
        name: Name of the logger, usually `__name__`.

    Returns:
        Configured logger.
    """
    _configure_root_logger()
    return logging.getLogger(name)
