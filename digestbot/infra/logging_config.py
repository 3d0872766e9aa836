"""Process-wide logging setup.

``configure_logging()`` runs once from ``main()``. Level comes from LOG_LEVEL,
an optional size-rotated file from LOG_FILE. HTTP, Telegram and scheduler
libraries are held at WARNING so per-request chatter does not drown the
digest and trigger events.
"""

from __future__ import annotations

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
LOG_FILE_MAX_BYTES = 5 * 1024 * 1024
LOG_FILE_BACKUPS = 3
THIRD_PARTY_LOGGERS = ("httpx", "httpcore", "telegram", "telegram.ext", "apscheduler", "caldav")


def level_from_env() -> int:
    name = os.environ.get("LOG_LEVEL", "INFO").strip().upper()
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.INFO


def _file_handler(log_file: str, formatter: logging.Formatter) -> logging.Handler | None:
    path = Path(log_file)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(
            path,
            maxBytes=LOG_FILE_MAX_BYTES,
            backupCount=LOG_FILE_BACKUPS,
            encoding="utf-8",
        )
    except OSError as exc:
        logging.getLogger(__name__).warning("Log file unavailable: path=%s error=%s", log_file, exc)
        return None
    handler.setFormatter(formatter)
    return handler


def configure_logging(*, level: int | None = None, log_file: str | None = None) -> None:
    """Replace the root handlers with stderr (and optionally a rotating file).

    Args:
        level: overrides LOG_LEVEL.
        log_file: overrides LOG_FILE; an empty string disables file output.
    """
    if level is None:
        level = level_from_env()
    if log_file is None:
        log_file = os.environ.get("LOG_FILE", "").strip()

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)
    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.setLevel(level)

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(formatter)
    root.addHandler(console)
    if log_file:
        handler = _file_handler(log_file, formatter)
        if handler is not None:
            root.addHandler(handler)

    for name in THIRD_PARTY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
