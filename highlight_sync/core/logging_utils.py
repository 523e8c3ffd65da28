from __future__ import annotations

import datetime as dt
import json
import logging
import sys
import uuid
from enum import Enum
from typing import Any

from loguru import logger as loguru_logger

UTC = dt.UTC

# Attributes present on every LogRecord; anything else came in through ``extra``.
_STANDARD_FIELDS = frozenset(
    {
        "args",
        "msg",
        "name",
        "levelno",
        "levelname",
        "pathname",
        "filename",
        "module",
        "exc_info",
        "exc_text",
        "stack_info",
        "lineno",
        "funcName",
        "created",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "processName",
        "process",
        "taskName",
        "getMessage",
        "message",
    }
)

_TIMING_FIELDS = frozenset(
    {
        "duration_seconds",
        "delay_seconds",
        "wait_seconds",
        "elapsed_seconds",
    }
)

# What a sync log line is about: the library, item, annotation or remote book.
_SUBJECT_FIELDS = frozenset(
    {
        "library_id",
        "item_key",
        "parent_key",
        "annotation_key",
        "book_id",
        "chunk",
        "path",
    }
)

_ERROR_FIELDS = frozenset({"error", "error_type", "status_code", "retry_after"})


class SyncJsonFormatter(logging.Formatter):
    """Render a record as one JSON object.

    The event name is the message. ``extra`` fields are sorted into
    ``subject`` (what the line is about), ``counts`` (integer counters),
    ``timing`` and ``error``; anything else lands in ``fields``.
    """

    def __init__(self, include_location: bool = True) -> None:
        super().__init__()
        self.include_location = include_location

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": dt.datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "event": record.getMessage(),
        }
        correlation_id = getattr(record, "correlation_id", None)
        if correlation_id:
            payload["correlation_id"] = correlation_id

        if self.include_location:
            payload["location"] = f"{record.module}:{record.funcName}:{record.lineno}"

        groups: dict[str, dict[str, Any]] = {}
        for key, value in record.__dict__.items():
            if key.startswith("_") or key in _STANDARD_FIELDS or key == "correlation_id":
                continue
            groups.setdefault(self._group_for(key, value), {})[key] = value
        for name in ("subject", "counts", "timing", "error", "fields"):
            if name in groups:
                payload[name] = groups[name]

        if record.exc_info:
            exc_type, exc_value, _ = record.exc_info
            payload.setdefault("error", {}).update(
                {
                    "exception": exc_type.__name__ if exc_type else None,
                    "message": str(exc_value) if exc_value else None,
                    "traceback": self.formatException(record.exc_info),
                }
            )
        if record.stack_info:
            payload["stack_trace"] = record.stack_info

        return json.dumps(
            payload, ensure_ascii=False, default=self._json_serializer, separators=(",", ":")
        )

    @staticmethod
    def _group_for(key: str, value: Any) -> str:
        if key in _SUBJECT_FIELDS:
            return "subject"
        if key in _TIMING_FIELDS:
            return "timing"
        if key in _ERROR_FIELDS:
            return "error"
        if isinstance(value, int) and not isinstance(value, bool):
            return "counts"
        return "fields"

    @staticmethod
    def _json_serializer(obj: Any) -> Any:
        if isinstance(obj, Enum):
            return obj.value
        if isinstance(obj, dt.datetime):
            return obj.isoformat()
        if isinstance(obj, (set, frozenset, tuple)):
            return list(obj)
        return str(obj)


class _LoguruInterceptHandler(logging.Handler):
    """Forward stdlib records (with their ``extra`` fields) into loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        level_to_use: int | str
        try:
            level_to_use = loguru_logger.level(record.levelname).name
        except ValueError:
            level_to_use = record.levelno

        extra = {
            key: value
            for key, value in record.__dict__.items()
            if not key.startswith("_") and key not in _STANDARD_FIELDS
        }
        loguru_logger.bind(**extra).opt(depth=6, exception=record.exc_info).log(
            level_to_use, record.getMessage()
        )


def setup_json_logging(
    level: str = "INFO",
    include_location: bool = True,
    use_loguru: bool = True,
    log_file: str | None = None,
    max_file_size: str = "50 MB",
    retention: str = "14 days",
) -> None:
    """Configure structured JSON logging for the sync engine.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        include_location: Include file/line information in logs
        use_loguru: Route stdlib logging through loguru sinks
        log_file: Optional log file path for persistent logging
        max_file_size: Rotation size per log file (loguru format)
        retention: Log retention period (loguru format)
    """
    lvl = getattr(logging, level.upper(), logging.INFO)

    if use_loguru:
        loguru_logger.remove()
        loguru_logger.add(
            sys.stdout,
            level=level.upper(),
            serialize=True,
            enqueue=True,
            backtrace=True,
            diagnose=False,
        )
        if log_file:
            loguru_logger.add(
                log_file,
                level=level.upper(),
                serialize=True,
                rotation=max_file_size,
                retention=retention,
                compression="gz",
                enqueue=True,
            )

        root = logging.getLogger()
        root.handlers.clear()
        root.setLevel(lvl)
        root.addHandler(_LoguruInterceptHandler())

        for noisy_logger in ("httpx", "httpcore"):
            logging.getLogger(noisy_logger).setLevel(logging.WARNING)

        loguru_logger.info(
            "sync_logging_configured",
            backend="loguru",
            log_level=level,
            log_file=log_file,
            retention=retention,
        )
        return

    root = logging.getLogger()
    root.setLevel(lvl)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(SyncJsonFormatter(include_location=include_location))
    root.handlers.clear()
    root.addHandler(console_handler)

    if log_file:
        from logging.handlers import RotatingFileHandler

        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=50 * 1024 * 1024,
            backupCount=5,
        )
        file_handler.setFormatter(SyncJsonFormatter(include_location=include_location))
        root.addHandler(file_handler)

    for noisy_logger in ("httpx", "httpcore"):
        logging.getLogger(noisy_logger).setLevel(logging.WARNING)

    logging.info(
        "sync_logging_configured",
        extra={"backend": "stdlib", "log_level": level, "log_file": log_file},
    )


def generate_correlation_id() -> str:
    """Generate a short correlation ID for tracing one sync run across logs."""
    return uuid.uuid4().hex[:12]


def truncate_log_content(content: str | None, max_length: int = 200) -> str | None:
    """Truncate highlight text before it lands in a log line."""
    if not content:
        return content
    if len(content) <= max_length:
        return content
    if max_length > 20:
        truncate_at = max_length - 15
        truncated = content[:truncate_at]
        last_space = truncated.rfind(" ", max(0, truncate_at - 50))
        if last_space > truncate_at - 100:
            truncated = truncated[:last_space]
        return truncated + "... [truncated]"
    return content[:max_length] + "..."


__all__ = [
    "SyncJsonFormatter",
    "generate_correlation_id",
    "setup_json_logging",
    "truncate_log_content",
]
