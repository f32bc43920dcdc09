"""Centralized logging configuration for the catalog admin application."""

from __future__ import annotations

import logging
import os
from logging import Logger
from pathlib import Path
from typing import Iterable, Optional


DEFAULT_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_LEVEL_ENV = "CATALOG_ADMIN_LOG_LEVEL"

# Third-party clients that log every request at INFO.
_QUIET_LOGGERS = ("botocore", "boto3", "s3transfer", "urllib3", "httpx", "openai")
_INSTALLED_MARKER = "_catalog_admin_handler"


def resolve_log_level(value: Optional[str] = None, default: int = logging.INFO) -> int:
    """Return the level named by *value* or ``$CATALOG_ADMIN_LOG_LEVEL``."""

    name = (value if value is not None else os.environ.get(LOG_LEVEL_ENV, "")).strip().upper()
    if not name:
        return default
    if name.isdigit():
        return int(name)
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else default


def configure_logging(
    level: Optional[int] = None, *, handlers: Iterable[logging.Handler] | None = None
) -> Logger:
    """Configure the root logger.

    Handlers installed by an earlier call are replaced, so commands may call
    this more than once per process.
    """

    logger = logging.getLogger()
    effective_level = resolve_log_level() if level is None else level
    logger.setLevel(effective_level)

    for existing in list(logger.handlers):
        if getattr(existing, _INSTALLED_MARKER, False):
            logger.removeHandler(existing)
            existing.close()

    if handlers is None:
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(logging.Formatter(DEFAULT_LOG_FORMAT))
        handlers = [stream_handler]
    for handler in handlers:
        setattr(handler, _INSTALLED_MARKER, True)
        logger.addHandler(handler)

    for noisy in _QUIET_LOGGERS:
        logging.getLogger(noisy).setLevel(max(effective_level, logging.WARNING))

    return logger


def get_log_file_path(storage_root: Path) -> Path:
    """Return the default path for the application log file."""

    return storage_root / "catalog_admin.log"


__all__ = [
    "DEFAULT_LOG_FORMAT",
    "LOG_LEVEL_ENV",
    "configure_logging",
    "get_log_file_path",
    "resolve_log_level",
]
