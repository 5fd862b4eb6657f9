"""
Structured logging configuration.

Provides:
    • JSON-formatted logs for production (machine-parseable)
    • Pretty console logs for development (human-readable)
    • Request-scoped context (request_id, client_ip, endpoint)
    • Delivery fields passed through ``extra=`` (queue_id, channel, ...)

Usage:
    setup_logging()
    logger = logging.getLogger(__name__)
    logger.info("Entry delivered", extra={"queue_id": 42, "channel": "email"})
"""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict

from backend.app.core.config import settings

_request_context: ContextVar[Dict[str, Any]] = ContextVar(
    "request_context", default={}
)

# Delivery attributes lifted off the LogRecord, in display order
DELIVERY_FIELDS = (
    "queue_id", "channel", "state", "retry_count", "priority",
    "claimed",
)
# Top-level attributes (access-log middleware, dispatch timing)
TOP_LEVEL_FIELDS = ("status_code", "endpoint", "duration_ms")


def set_request_context(**kwargs: Any) -> None:
    """Set request-scoped log context (call from middleware)."""
    _request_context.set(kwargs)


def get_request_context() -> Dict[str, Any]:
    return _request_context.get()


def delivery_fields(record: logging.LogRecord) -> Dict[str, Any]:
    """Delivery attributes the caller attached, skipping ones left unset."""
    return {
        key: getattr(record, key)
        for key in DELIVERY_FIELDS
        if getattr(record, key, None) is not None
    }


# ── JSON Formatter (Production) ──

class JSONFormatter(logging.Formatter):
    """One JSON object per line for log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "source": f"{record.module}:{record.lineno}",
        }

        ctx = get_request_context()
        if ctx:
            entry["request"] = ctx

        delivery = delivery_fields(record)
        if delivery:
            entry["delivery"] = delivery

        for key in TOP_LEVEL_FIELDS:
            if hasattr(record, key):
                entry[key] = getattr(record, key)

        if record.exc_info and record.exc_info[1]:
            entry["exception"] = {
                "type": type(record.exc_info[1]).__name__,
                "message": str(record.exc_info[1]),
            }

        return json.dumps(entry, default=str)


# ── Pretty Formatter (Development) ──

class PrettyFormatter(logging.Formatter):
    """Coloured one-line format; delivery fields trail the message."""

    LEVEL_COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelno, self.RESET)
        head = f"{color}{self.formatTime(record, '%H:%M:%S')} {record.levelname:8s}{self.RESET}"

        request_id = get_request_context().get("request_id")
        if request_id:
            head += f" [{request_id[:8]}]"

        line = f"{head} {record.name}: {record.getMessage()}"

        delivery = delivery_fields(record)
        queue_id = delivery.pop("queue_id", None)
        tail = [f"#{queue_id}"] if queue_id is not None else []
        tail += [f"{k}={v}" for k, v in delivery.items()]
        if tail:
            line += f"  ({' '.join(tail)})"

        if record.exc_info and record.exc_info[1]:
            line += f"\n  {type(record.exc_info[1]).__name__}: {record.exc_info[1]}"
        return line


# ── Setup ──

def setup_logging() -> None:
    """Install one stdout handler on the root logger, JSON in production."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter() if settings.is_production else PrettyFormatter())
    root.addHandler(handler)

    for noisy in ("uvicorn.access", "httpx", "httpcore", "apscheduler.executors.default"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
