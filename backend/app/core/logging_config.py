"""
Structured logging configuration.

Provides:
    • JSON lines in production, coloured one-liners in development
    • Request context (request_id, endpoint, method, client_ip) stamped onto
      every record by ContextFilter, so formatters never touch the contextvar
    • SOS fields lifted from ``extra=`` (session_id, contact_id, channel,
      state, intent_kind) next to the usual timing fields

Usage:
    from backend.app.core.logging_config import setup_logging, get_logger

    setup_logging()
    logger = get_logger(__name__)
    logger.info("Alert active", extra={"session_id": 3, "state": "active"})
"""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from backend.app.core.config import settings

_request_context: ContextVar[Dict[str, Any]] = ContextVar(
    "request_context", default={}
)

CONTEXT_FIELDS = ("request_id", "endpoint", "method", "client_ip")
EXTRA_FIELDS = (
    "session_id", "contact_id", "channel", "state", "intent_kind",
    "duration_ms", "status_code",
)

# Marks the handler installed by setup_logging so re-runs replace only it
_HANDLER_NAME = "safety-companion"


def set_request_context(**kwargs: Any) -> None:
    """Bind request-scoped fields; call with no arguments to clear."""
    _request_context.set(kwargs)


def get_request_context() -> Dict[str, Any]:
    return _request_context.get()


class ContextFilter(logging.Filter):
    """Copy the current request context onto the record."""

    def filter(self, record: logging.LogRecord) -> bool:
        ctx = get_request_context()
        for key in CONTEXT_FIELDS:
            if not hasattr(record, key):
                setattr(record, key, ctx.get(key))
        return True


# ── JSON Formatter (Production) ──

class JSONFormatter(logging.Formatter):
    """One JSON object per line for log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}.{record.funcName}:{record.lineno}",
        }
        for key in CONTEXT_FIELDS + EXTRA_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                entry[key] = value
        if record.exc_info and record.exc_info[1]:
            exc = record.exc_info[1]
            entry["exception"] = {"type": type(exc).__name__, "message": str(exc)}
        return json.dumps(entry, default=str)


# ── Pretty Formatter (Development) ──

class PrettyFormatter(logging.Formatter):
    """Coloured console output; SOS session and channel shown as tags."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, self.RESET)
        line = (
            f"{color}{self.formatTime(record, '%H:%M:%S')} "
            f"{record.levelname:8s}{self.RESET}{self._tags(record)} "
            f"{record.name}: {record.getMessage()}"
        )
        if record.exc_info and record.exc_info[1]:
            exc = record.exc_info[1]
            line += f"\n  {type(exc).__name__}: {exc}"
        return line

    @staticmethod
    def _tags(record: logging.LogRecord) -> str:
        tags = []
        request_id: Optional[str] = getattr(record, "request_id", None)
        if request_id:
            tags.append(request_id[:8])
        session_id = getattr(record, "session_id", None)
        if session_id is not None:
            tags.append(f"sos#{session_id}")
        channel = getattr(record, "channel", None)
        if channel:
            tags.append(str(channel))
        return "".join(f" [{t}]" for t in tags)


# ── Setup ──

def setup_logging(level: Optional[str] = None, json_output: Optional[bool] = None) -> None:
    """
    Install the service log handler on the root logger.

    Defaults come from settings: LOG_LEVEL, and JSON output in production.
    Handlers installed by others (pytest's caplog, uvicorn) are left alone.
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO))

    for existing in list(root.handlers):
        if existing.get_name() == _HANDLER_NAME:
            root.removeHandler(existing)

    use_json = settings.is_production if json_output is None else json_output
    handler = logging.StreamHandler(sys.stdout)
    handler.set_name(_HANDLER_NAME)
    handler.addFilter(ContextFilter())
    handler.setFormatter(JSONFormatter() if use_json else PrettyFormatter())
    root.addHandler(handler)

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
