"""Centralized logging helpers for the payment core."""
from __future__ import annotations

import logging
from typing import Optional

from pythonjsonlogger import jsonlogger

# Chatty third-party loggers capped so request traces stay readable.
NOISY_LOGGERS = ("apscheduler", "httpx", "httpcore", "sqlalchemy.engine")


def setup_logging(level: Optional[str] = None) -> None:
    """Configure root logging with a JSON formatter.

    ``level`` defaults to the ``LOG_LEVEL`` setting.
    """

    if level is None:
        from paycore.config import get_settings

        level = get_settings().LOG_LEVEL

    root_logger = logging.getLogger()
    # Remove existing handlers to avoid duplicate logs when reloading.
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
    root_logger.setLevel(level.upper())

    handler = logging.StreamHandler()
    formatter = jsonlogger.JsonFormatter(
        "%(asctime)s %(levelname)s %(name)s %(message)s",
        json_default=str,
    )
    handler.setFormatter(formatter)
    root_logger.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(logging.WARNING, root_logger.level))


def get_logger(name: str, level: Optional[str] = None) -> logging.Logger:
    """Return a logger configured with the shared root settings."""

    logger = logging.getLogger(name)
    if level is not None:
        logger.setLevel(level.upper())
    return logger


__all__ = ["setup_logging", "get_logger", "NOISY_LOGGERS"]
