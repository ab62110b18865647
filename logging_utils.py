"""Centralized logging configuration for the lecture portal."""

from __future__ import annotations

import logging
from logging import Logger
from typing import Iterable, Union


DEFAULT_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def resolve_level(level: Union[int, str]) -> int:
    """Translate ``"debug"``/``"INFO"``/``20`` style values to a logging level."""

    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(str(level).strip().upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def configure_logging(
    level: Union[int, str] = logging.INFO, *, handlers: Iterable[logging.Handler] | None = None
) -> Logger:
    """Set the root level and attach handlers.

    Without explicit ``handlers`` a console handler is attached only when the
    root logger has none yet, so calling this again never duplicates output.
    """

    logger = logging.getLogger()
    logger.setLevel(resolve_level(level))

    if handlers is None:
        if not logger.handlers:
            stream_handler = logging.StreamHandler()
            stream_handler.setFormatter(logging.Formatter(DEFAULT_LOG_FORMAT))
            logger.addHandler(stream_handler)
    else:
        for handler in handlers:
            logger.addHandler(handler)

    return logger


__all__ = ["configure_logging", "resolve_level", "DEFAULT_LOG_FORMAT"]
