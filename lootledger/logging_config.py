"""loguru setup."""

from __future__ import annotations

import sys

from loguru import logger


def setup_logging(level: str = "INFO", json: bool = False) -> None:
    logger.remove()
    logger.add(
        sys.stdout,
        format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {name} | {message}",
        level=level.upper(),
        colorize=not json,
        serialize=json,
        backtrace=False,
        enqueue=True,
    )


__all__ = ["setup_logging"]
