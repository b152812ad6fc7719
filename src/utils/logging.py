"""Shared logging configuration and logger factory."""

from __future__ import annotations

import json
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict


_PROJECT_ROOT = Path(__file__).resolve().parents[2]
_DEFAULT_LOG_DIR = _PROJECT_ROOT / "log"
_LOG_FILE_NAME = "media_archive.log"
_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def _record_extras(record: logging.LogRecord, ignore: set[str]) -> Dict[str, Any]:
    standard_keys = set(logging.makeLogRecord({}).__dict__.keys())
    skip = standard_keys | ignore
    return {key: value for key, value in record.__dict__.items() if key not in skip}


class _StructuredFormatter(logging.Formatter):
    """Formatter that renders records as single-line JSON objects (JSONL-friendly)."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "event": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        payload.update(_record_extras(record, {"stack_info", "message", "asctime"}))

        try:
            return json.dumps(payload, ensure_ascii=False, sort_keys=True)
        except TypeError:
            # Extra fields such as Paths are not JSON-serializable.
            safe_payload: Dict[str, Any] = {
                key: (value if isinstance(value, (str, int, float, bool, type(None))) else str(value))
                for key, value in payload.items()
            }
            return json.dumps(safe_payload, ensure_ascii=False, sort_keys=True)


class _ConsoleFormatter(logging.Formatter):
    """Console formatter that appends ``extra`` fields as key=value pairs."""

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        extras = _record_extras(record, {"stack_info", "asctime", "message"})
        if not extras:
            return base

        parts = [f"{key}={value!r}" for key, value in sorted(extras.items())]
        return f"{base} | " + " ".join(parts)


def configure_logging(level: str | int = logging.INFO, log_dir: Path | str | None = None, *, force: bool = False) -> None:
    """Install console and rotating JSONL file handlers on the root logger.

    Subsequent calls are no-ops unless ``force`` is set, in which case the
    existing root handlers are replaced. File logging is optional: when the
    log directory cannot be created only the console handler is installed.
    """

    root = logging.getLogger()
    if root.handlers and not force:
        return

    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    root.setLevel(level)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(_ConsoleFormatter(_FORMAT))
    root.addHandler(console_handler)

    target_dir = Path(log_dir) if log_dir is not None else _DEFAULT_LOG_DIR
    try:
        target_dir.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            target_dir / _LOG_FILE_NAME,
            maxBytes=10 * 1024 * 1024,
            backupCount=5,
            encoding="utf-8",
        )
    except OSError as exc:
        root.warning("file_logging_unavailable", extra={"log_dir": str(target_dir), "error": str(exc)})
        return

    file_handler.setFormatter(_StructuredFormatter(_FORMAT))
    root.addHandler(file_handler)


class _ContextAdapter(logging.LoggerAdapter):
    """Adapter that merges its base ``extra`` with per-call ``extra`` fields."""

    def process(self, msg: Any, kwargs: Any) -> tuple[Any, Any]:
        call_extra = kwargs.get("extra") or {}
        kwargs["extra"] = {**(self.extra or {}), **call_extra}
        return msg, kwargs


def get_logger(name: str, extra: Dict[str, Any] | None = None) -> logging.LoggerAdapter:
    """Return a structured logger adapter for the given name.

    The first call configures the root logger with defaults when nothing has
    configured it yet. ``extra`` is attached to every record emitted through
    the returned adapter, e.g. ``{"component": "archive"}``.
    """

    configure_logging()
    logger = logging.getLogger(name)
    return _ContextAdapter(logger, extra or {})


__all__ = ["configure_logging", "get_logger"]
