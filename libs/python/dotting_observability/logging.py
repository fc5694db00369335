"""JSON logging with per-task context binding."""

from __future__ import annotations

import json
import logging
import logging.config
import os
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Mapping


_LOG_CONTEXT: ContextVar[Dict[str, Any]] = ContextVar("dotting_log_context", default={})

_TRUTHY = {"1", "true", "t", "yes", "y", "on"}


class ContextFilter(logging.Filter):
    """Copy fields bound with :func:`log_context` onto every record."""

    def __init__(self, service_name: str) -> None:
        super().__init__()
        self.service_name = service_name

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: D401 - inherited docstring
        bound = _LOG_CONTEXT.get()
        for key, value in bound.items():
            if not hasattr(record, key):
                setattr(record, key, value)
        if getattr(record, "service", None) is None:
            record.service = self.service_name
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per line; Korean text is kept readable."""

    _STANDARD_ATTRS = frozenset(
        logging.LogRecord("", 0, "", 0, "", None, None).__dict__.keys()
    ) | {"message", "asctime"}

    _PRIORITY_FIELDS = (
        "service",
        "compilation_id",
        "session_id",
        "phase",
        "error_code",
        "provider",
        "route",
        "method",
        "status_code",
        "prompt_tokens",
        "completion_tokens",
        "latency_ms",
        "cost_usd",
    )

    def format(self, record: logging.LogRecord) -> str:  # noqa: D401 - inherited docstring
        payload: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for key in self._PRIORITY_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                payload[key] = value

        for key, value in record.__dict__.items():
            if key in self._STANDARD_ATTRS or key in payload or key.startswith("_"):
                continue
            if self._is_json_safe(value):
                payload[key] = value

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        if record.stack_info:
            payload["stack"] = self.formatStack(record.stack_info)
        return json.dumps(payload, ensure_ascii=False, default=str)

    @staticmethod
    def _is_json_safe(value: Any) -> bool:
        try:
            json.dumps(value)
        except (TypeError, ValueError):
            return False
        return True


def setup_logging(
    service_name: str,
    level: str | int | None = None,
    *,
    capture_warnings: bool | None = None,
) -> None:
    """Configure JSON logging on stdout for the current process.

    ``level`` falls back to ``LOG_LEVEL`` and then ``INFO``. Calling this again
    replaces the handlers, so it is safe at every service startup.
    """

    resolved_level = level or os.getenv("LOG_LEVEL", "INFO").upper()
    handlers = ["default"]
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "json": {"()": "dotting_observability.logging.JsonFormatter"},
            },
            "filters": {
                "context": {
                    "()": "dotting_observability.logging.ContextFilter",
                    "service_name": service_name,
                }
            },
            "handlers": {
                "default": {
                    "class": "logging.StreamHandler",
                    "stream": sys.stdout,
                    "formatter": "json",
                    "filters": ["context"],
                }
            },
            "root": {"level": resolved_level, "handlers": handlers},
            "loggers": {
                name: {"handlers": handlers, "level": resolved_level, "propagate": False}
                for name in ("uvicorn", "uvicorn.error", "uvicorn.access")
            },
        }
    )

    if capture_warnings is None:
        capture_warnings = os.getenv("DOTTING_CAPTURE_WARNINGS", "").lower() in _TRUTHY
    if capture_warnings:
        logging.captureWarnings(True)


def current_log_context() -> Mapping[str, Any]:
    """Return a read-only snapshot of the fields bound right now."""

    return dict(_LOG_CONTEXT.get())


@contextmanager
def log_context(**kwargs: Any) -> Iterator[None]:
    """Bind fields to every log record emitted inside the block.

    Passing ``None`` for a key unbinds it for the duration of the block.
    """

    updated = dict(_LOG_CONTEXT.get())
    for key, value in kwargs.items():
        if value is None:
            updated.pop(key, None)
        else:
            updated[key] = value
    token = _LOG_CONTEXT.set(updated)
    try:
        yield
    finally:
        _LOG_CONTEXT.reset(token)
