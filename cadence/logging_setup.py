from __future__ import annotations

import sys

from loguru import logger

from cadence.models import LoggingConfig


def setup_logging(config: LoggingConfig) -> None:
    logger.remove()
    if config.serialize:
        # Structured logger
        logger.add(sys.stdout, level=config.level, backtrace=False, diagnose=False, serialize=True)
    else:
        logger.add(sys.stdout, level=config.level, backtrace=True, diagnose=False, colorize=True)
    logger.debug("logging configured at {}", config.level)
