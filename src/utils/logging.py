"""Shared logging configuration and logger factory for pipeline workers.

Messages are short event names (``job_completed``) and context travels in
``extra``. The console shows ``extra`` as key=value pairs; the rotating file
under ``log/`` gets one JSON object per line.
"""

from __future__ import annotations

import json
import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict

_PROJECT_ROOT = Path(__file__).resolve().parents[2]
_LOG_FILE_NAME = "frame_pipeline.log"
_LINE_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
_MAX_LOG_BYTES = 10 * 1024 * 1024
_LOG_BACKUPS = 5

_RECORD_KEYS = frozenset(logging.makeLogRecord({}).__dict__) | {"stack_info", "asctime", "message"}


def _extra_fields(record: logging.LogRecord) -> Dict[str, Any]:
    """Attributes added to ``record`` through ``extra=``."""

    return {key: value for key, value in record.__dict__.items() if key not in _RECORD_KEYS}


class _JsonLineFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **_extra_fields(record),
        }
        if record.exc_info:
            entry["exc_info"] = self.formatException(record.exc_info)
        # Paths, enums and similar values fall back to str().
        return json.dumps(entry, ensure_ascii=False, sort_keys=True, default=str)


class _KeyValueFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = _extra_fields(record)
        if not fields:
            return line
        return line + " | " + " ".join(f"{key}={fields[key]!r}" for key in sorted(fields))


def _level_from_env() -> int:
    level = logging.getLevelName(os.getenv("FRAME_PIPELINE_LOG_LEVEL", "INFO").strip().upper())
    return level if isinstance(level, int) else logging.INFO


def _log_dir() -> Path:
    override = os.getenv("FRAME_PIPELINE_LOG_DIR")
    return Path(override).expanduser() if override else _PROJECT_ROOT / "log"


def _configure_root_logger() -> None:
    """Install console and file handlers on the root logger, once per process."""

    root = logging.getLogger()
    if root.handlers:
        return
    root.setLevel(_level_from_env())

    console = logging.StreamHandler()
    console.setFormatter(_KeyValueFormatter(_LINE_FORMAT))
    root.addHandler(console)

    log_dir = _log_dir()
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        rotating = RotatingFileHandler(
            log_dir / _LOG_FILE_NAME,
            maxBytes=_MAX_LOG_BYTES,
            backupCount=_LOG_BACKUPS,
            encoding="utf-8",
        )
    except OSError as exc:
        # Read-only deployments only get console output.
        root.warning("file_logging_unavailable", extra={"log_root": str(log_dir), "error": str(exc)})
        return
    rotating.setFormatter(_JsonLineFormatter(_LINE_FORMAT))
    root.addHandler(rotating)


class _MergingAdapter(logging.LoggerAdapter):
    """Adapter whose base ``extra`` is combined with each call's ``extra``."""

    def process(self, msg: Any, kwargs: Any) -> tuple[Any, Any]:
        kwargs["extra"] = {**(self.extra or {}), **(kwargs.get("extra") or {})}
        return msg, kwargs


def get_logger(name: str, extra: Dict[str, Any] | None = None) -> logging.LoggerAdapter:
    """Return a structured logger adapter for ``name``.

    The first call configures the root handlers. ``extra`` (typically
    ``{"component": ...}``) is attached to every record the adapter emits.
    """

    _configure_root_logger()
    return _MergingAdapter(logging.getLogger(name), extra or {})


__all__ = ["get_logger"]
