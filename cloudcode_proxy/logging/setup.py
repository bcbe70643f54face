"""Logging configuration for the gateway."""

import logging
import sys
from typing import Union

LOGGER_NAME = "cloudcode-proxy"


def setup_logging(level: Union[int, str] = logging.INFO) -> logging.Logger:
    """Set up logging with proper handlers and formatters.

    Args:
        level: Level for the gateway logger, as a number or a name
            such as ``"DEBUG"``.
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)

    # Clear any existing handlers
    logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)

    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    console_handler.setFormatter(formatter)

    logger.addHandler(console_handler)

    # Propagate to the root logger so host applications and pytest see records
    logger.propagate = True

    return logger
