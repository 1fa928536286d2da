"""Process-wide logging setup: console output plus size-bounded log files.

The package ships no entry point, so nothing here runs on import. A host process
that embeds the pipeline calls ``configure_runtime_logging()`` once at startup;
library modules only log through ``logging.getLogger(__name__)``.
"""

from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path

_DEFAULT_LOG_PATH = "work/logs/story_continuity.log"
_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
_configured = False


def _bounded_int(name: str, fallback: int, *, low: int, high: int) -> int:
    raw = os.environ.get(name, "").strip()
    try:
        parsed = int(raw) if raw else fallback
    except ValueError:
        parsed = fallback
    return min(high, max(low, parsed))


def configure_runtime_logging(*, force: bool = False) -> Path:
    """Install console and rotating-file handlers on the root logger.

    Later calls do nothing unless ``force`` is set. Returns the log file path.
    """
    global _configured
    log_path = Path(
        os.environ.get("STORY_CONTINUITY_LOG_PATH", "").strip() or _DEFAULT_LOG_PATH
    )
    if _configured and not force:
        return log_path

    level_name = os.environ.get("STORY_CONTINUITY_LOG_LEVEL", "").strip().upper()
    level = logging.getLevelName(level_name) if level_name else logging.INFO
    if not isinstance(level, int):
        level = logging.INFO
    max_bytes = _bounded_int(
        "STORY_CONTINUITY_LOG_MAX_BYTES",
        5 * 1024 * 1024,
        low=64 * 1024,
        high=100 * 1024 * 1024,
    )
    backup_count = _bounded_int("STORY_CONTINUITY_LOG_BACKUP_COUNT", 10, low=1, high=120)

    log_path.parent.mkdir(parents=True, exist_ok=True)
    formatter = logging.Formatter(fmt=_FORMAT, datefmt="%Y-%m-%dT%H:%M:%S%z")
    console = logging.StreamHandler()
    rotating = RotatingFileHandler(
        filename=log_path,
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
        existing.close()
    for handler in (console, rotating):
        handler.setFormatter(formatter)
        root.addHandler(handler)
    root.setLevel(level)

    _configured = True
    logging.getLogger(__name__).debug(
        "logging.configured path=%s level=%s max_bytes=%s backups=%s",
        log_path,
        logging.getLevelName(level),
        max_bytes,
        backup_count,
    )
    return log_path
