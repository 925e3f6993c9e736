"""loguru setup for the API process."""

from __future__ import annotations

import sys
from loguru import logger


def setup_logging(level: str = "INFO", json: bool = False) -> None:
    logger.remove()
    fmt = "{time:YYYY-MM-DD HH:mm:ss} | {level} | {name}:{line} | {message}"
    if json:
        logger.add(sys.stdout, level=level, serialize=True, backtrace=False)
        return
    logger.add(
        sys.stdout,
        format=fmt,
        level=level,
        colorize=True,
        backtrace=False,
    )


__all__ = ["setup_logging"]
