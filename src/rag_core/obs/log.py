"""Logging setup shared by the service entrypoint and scripts."""

from __future__ import annotations

import logging
import sys

_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
_ROOT_LOGGER = "rag_core"


def configure_logging(level: int | str = logging.INFO) -> logging.Logger:
    """Attach one stderr handler to the package logger.

    Safe to call repeatedly; later calls only change the level.
    """
    if isinstance(level, str):
        level = getattr(logging, level.upper())

    logger = logging.getLogger(_ROOT_LOGGER)
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(_FORMAT))
        logger.addHandler(handler)
    logger.setLevel(level)
    return logger
