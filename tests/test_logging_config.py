"""
Tests for the log formatters.

Covers:
    - JSONFormatter groups delivery extras under "delivery"
    - Request context and timing fields in JSON output
    - PrettyFormatter trails the queue id and channel after the message

Run with: pytest tests/test_logging_config.py -v
"""

import json
import logging
import sys

import pytest

from backend.app.core.logging_config import (
    JSONFormatter,
    PrettyFormatter,
    delivery_fields,
    set_request_context,
)


def _make_record(msg="#42 delivered via email", level=logging.INFO, **extra) -> logging.LogRecord:
    return logging.makeLogRecord({
        "name": "backend.app.notifications.worker",
        "levelno": level,
        "levelname": logging.getLevelName(level),
        "msg": msg,
        **extra,
    })


@pytest.fixture(autouse=True)
def _clear_context():
    set_request_context()
    yield
    set_request_context()


class TestJSONFormatter:
    """Production output."""

    def test_delivery_fields_grouped(self):
        record = _make_record(queue_id=42, channel="email", retry_count=1, duration_ms=12.5)
        entry = json.loads(JSONFormatter().format(record))

        assert entry["message"] == "#42 delivered via email"
        assert entry["level"] == "INFO"
        assert entry["delivery"] == {"queue_id": 42, "channel": "email", "retry_count": 1}
        assert entry["duration_ms"] == 12.5
        assert "request" not in entry

    def test_request_context(self):
        set_request_context(request_id="abc123", endpoint="/api/v1/notifications/queue")
        entry = json.loads(JSONFormatter().format(_make_record(status_code=200)))

        assert entry["request"]["request_id"] == "abc123"
        assert entry["status_code"] == 200
        assert "delivery" not in entry

    def test_exception(self):
        try:
            raise RuntimeError("smtp down")
        except RuntimeError:
            record = _make_record(level=logging.ERROR, exc_info=sys.exc_info())
        entry = json.loads(JSONFormatter().format(record))
        assert entry["exception"] == {"type": "RuntimeError", "message": "smtp down"}


class TestPrettyFormatter:
    """Development output."""

    def test_trailing_fields(self):
        line = PrettyFormatter().format(_make_record(queue_id=42, channel="email"))
        assert "#42 delivered via email" in line
        assert line.endswith("(#42 channel=email)")

    def test_request_id_prefix(self):
        set_request_context(request_id="0123456789abcdef")
        line = PrettyFormatter().format(_make_record())
        assert "[01234567]" in line
        assert "(" not in line.split(": ", 1)[1]

    def test_unset_fields_skipped(self):
        assert delivery_fields(_make_record(queue_id=None, channel="sms")) == {"channel": "sms"}
