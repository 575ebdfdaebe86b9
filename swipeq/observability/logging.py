"""
Logging setup for swipeq.

A single stream handler sits on the ``swipeq`` package logger and module
loggers inherit its level. The level comes from ``settings.LOG_LEVEL``
unless configure_logging() is given one (the CLI's ``--log-level``). The
root logger is left untouched so an embedding application keeps its own
configuration.
"""

from __future__ import annotations

import logging
from typing import Final

from swipeq.infrastructure.settings import LOG_LEVEL

PACKAGE_LOGGER: Final[str] = "swipeq"
_FORMAT: Final[str] = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

_handler: logging.Handler | None = None


def _parse_level(level: str | int | None) -> int:
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName((level or LOG_LEVEL).upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def configure_logging(level: str | int | None = None) -> logging.Logger:
    """Attach the package handler once and set the package level."""
    global _handler

    package_logger = logging.getLogger(PACKAGE_LOGGER)
    if _handler is None:
        _handler = logging.StreamHandler()
        _handler.setFormatter(logging.Formatter(_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
        package_logger.addHandler(_handler)
    package_logger.setLevel(_parse_level(level))
    return package_logger


def get_logger(name: str) -> logging.Logger:
    """Return a module logger; configures the package logger on first use."""
    if _handler is None:
        configure_logging()
    return logging.getLogger(name)
