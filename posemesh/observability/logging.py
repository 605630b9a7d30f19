"""
Structured Logging: JSON Lines Tagged with Session and Phase

Every module logs through a plain ``logging.getLogger(__name__)``. The
session key and phase of the write being handled are carried in a
ContextVar, set with ``log_context``, and picked up by JsonFormatter so
each line can be traced back to one recording without threading the key
through every log call.

Usage:
    setup_logging(LogLevel.INFO, json_output=True)

    with log_context(session_key=str(key), phase="warmup"):
        logger.warning("Batch write rejected")
        # {"@timestamp": ..., "level": "WARNING", "session_key": "...",
        #  "phase": "warmup", "message": "Batch write rejected", ...}
"""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from enum import IntEnum
from typing import Any, Optional, TextIO


class LogLevel(IntEnum):
    """Log level enumeration."""
    DEBUG = 10
    INFO = 20
    WARNING = 30
    ERROR = 40
    CRITICAL = 50


# Fields shared by every record emitted inside a log_context block
_session_fields: ContextVar[dict[str, Any]] = ContextVar("posemesh_log_fields", default={})

# Attributes every logging.LogRecord has; anything else came in via extra=
_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys()
) | {"message", "asctime", "taskName"}


class JsonFormatter(logging.Formatter):
    """
    One JSON object per line.

    ``session_key`` and ``phase`` come first after the standard fields;
    other context values and ``extra=`` keys follow.
    """

    def format(self, record: logging.LogRecord) -> str:
        fields = dict(_session_fields.get())
        fields.update(
            (key, value) for key, value in vars(record).items() if key not in _RECORD_ATTRS
        )

        data: dict[str, Any] = {
            "@timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
        }
        for name in ("session_key", "phase"):
            value = fields.pop(name, None)
            if value is not None:
                data[name] = str(value)
        data["message"] = record.getMessage()
        data.update(fields)
        if record.exc_info:
            data["exception"] = self.formatException(record.exc_info)

        return json.dumps(data, default=str)


class _LogContext:
    """Adds fields to every record logged while the block is active."""

    __slots__ = ("_fields", "_token")

    def __init__(self, fields: dict[str, Any]) -> None:
        self._fields = fields
        self._token: Optional[Token] = None

    def __enter__(self) -> _LogContext:
        merged = {**_session_fields.get(), **self._fields}
        self._token = _session_fields.set(merged)
        return self

    def __exit__(self, *args: Any) -> None:
        if self._token is not None:
            _session_fields.reset(self._token)
            self._token = None


def log_context(**fields: Any) -> _LogContext:
    """
    Tag log records with ``fields`` (typically session_key and phase).

    Nested blocks merge; inner values win. asyncio tasks created inside a
    block inherit its fields.
    """
    return _LogContext(fields)


def setup_logging(
    level: LogLevel = LogLevel.INFO,
    json_output: bool = True,
    stream: Optional[TextIO] = None,
) -> None:
    """
    Configure root logger for structured logging.

    Args:
        level: Minimum log level
        json_output: Use JSON formatting
        stream: Output stream (default: stderr)
    """
    root = logging.getLogger()
    root.setLevel(level.value)

    root.handlers.clear()

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setLevel(level.value)

    if json_output:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
        ))

    root.addHandler(handler)

    # Suppress noisy loggers
    logging.getLogger("asyncio").setLevel(logging.WARNING)
    logging.getLogger("redis").setLevel(logging.WARNING)
