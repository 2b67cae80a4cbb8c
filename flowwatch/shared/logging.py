"""Loguru sink configuration for CLI and scheduler processes."""

from __future__ import annotations

import sys

from loguru import logger

_HUMAN_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level> {extra}"
)


def configure_logging(level: str = "INFO", json_logs: bool = False) -> None:
    """Replace loguru's default sink with a single stderr sink."""

    logger.remove()
    if json_logs:
        logger.add(sys.stderr, level=level.upper(), serialize=True)
    else:
        logger.add(sys.stderr, level=level.upper(), format=_HUMAN_FORMAT)
    logger.debug("Logging configured", level=level.upper(), json_logs=json_logs)
