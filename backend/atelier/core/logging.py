# backend/atelier/core/logging.py
"""
Logging setup for the commission engine.

All engine and API modules log under the "atelier" namespace:

    2026-10-19 10:15:30 [INFO    ] atelier.engine.proposals - proposal 12 pendingArtist -> pendingClient

Usage:
    # at startup (main.py, scripts)
    setup_logging(settings.LOG_LEVEL)

    # in modules
    logger = get_logger(__name__)
"""

import logging
import sys
from typing import Union

APP_LOGGER = "atelier"


def setup_logging(log_level: Union[int, str] = logging.INFO) -> logging.Logger:
    """Configure the console handler for the application logger (idempotent)."""
    if isinstance(log_level, str):
        log_level = logging.getLevelName(log_level.upper())
        if not isinstance(log_level, int):
            log_level = logging.INFO

    logger = logging.getLogger(APP_LOGGER)
    logger.setLevel(log_level)
    logger.propagate = False

    # re-configuration replaces handlers instead of stacking them
    logger.handlers.clear()

    formatter = logging.Formatter(
        fmt="%(asctime)s [%(levelname)-8s] %(name)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    logger.debug("Logging configured at level %s", logging.getLevelName(log_level))
    return logger


def get_logger(name: str) -> logging.Logger:
    """
    Child logger under the application namespace.

    `name` is usually __name__; modules already inside the `atelier`
    package keep their dotted path as-is.
    """
    if name == APP_LOGGER or name.startswith(APP_LOGGER + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{APP_LOGGER}.{name}")
