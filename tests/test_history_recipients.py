"""
Tests for the delivery history log and recipient resolution.

Covers:
    - record(): metadata, delivered_at only for delivered attempts
    - list(): newest first, channel / status filters, pagination bounds
    - summary(): counts and delivery / error rates, time window
    - recent_errors() and cleanup()
    - RecipientResolver precedence: preference → account email → variables

Run with: pytest tests/test_history_recipients.py -v
"""

from datetime import datetime, timedelta

import pytest

from backend.app.core.errors import RecipientUnresolvedError
from backend.app.notifications.history import MAX_PAGE_SIZE, HistoryLog
from backend.app.notifications.models import HistoryStatus, QueueEntry
from backend.app.notifications.orm import UserNotificationPreferenceRow, UserRow
from backend.app.notifications.recipients import RecipientResolver


T0 = datetime(2026, 6, 1, 12, 0, 0)


def _make_entry(entry_id=1, channel="email", user_id=None, variables=None, **kw) -> QueueEntry:
    return QueueEntry(
        id=entry_id,
        channel_type=channel,
        subject=kw.pop("subject", "Heat advisory"),
        body=kw.pop("body", "Highs near 40°C"),
        user_id=user_id,
        variables=variables or {},
        **kw,
    )


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: History
# ═══════════════════════════════════════════════════════════════════════════

@pytest.fixture
def history(session_factory):
    return HistoryLog(session_factory)


class TestHistoryRecord:
    """Appending attempts."""

    async def test_delivered(self, history):
        await history.record(_make_entry(priority=8), HistoryStatus.DELIVERED, duration_ms=12.34, now=T0)
        item = (await history.list()).items[0]
        assert item.status == HistoryStatus.DELIVERED
        assert item.delivered_at == T0
        assert item.sent_at == T0
        assert item.metadata == {"retry_count": 0, "priority": 8, "duration_ms": 12.3}

    async def test_failed_has_no_delivered_at(self, history):
        await history.record(_make_entry(retry_count=2), "failed", error="HTTP 500", now=T0)
        item = (await history.list()).items[0]
        assert item.delivered_at is None
        assert item.error_message == "HTTP 500"
        assert item.metadata["retry_count"] == 2


class TestHistoryList:
    """Pagination and filters."""

    async def test_newest_first_and_filters(self, history):
        await history.record(_make_entry(1, "email"), "delivered", now=T0)
        await history.record(_make_entry(2, "slack"), "failed", error="x", now=T0 + timedelta(minutes=1))
        await history.record(_make_entry(3, "email"), "dead_letter", error="y", now=T0 + timedelta(minutes=2))

        page = await history.list()
        assert [i.queue_id for i in page.items] == [3, 2, 1]
        assert page.total == 3

        assert [i.queue_id for i in (await history.list(channel_type="email")).items] == [3, 1]
        assert [i.queue_id for i in (await history.list(status=HistoryStatus.FAILED)).items] == [2]

        page = await history.list(limit=1, offset=1)
        assert [i.queue_id for i in page.items] == [2]
        assert page.total == 3

    async def test_page_size_bounds(self, history):
        page = await history.list(limit=10_000, offset=-5)
        assert page.limit == MAX_PAGE_SIZE
        assert page.offset == 0
        assert page.to_dict()["items"] == []


class TestHistorySummary:
    """Rates and windows."""

    async def test_rates(self, history):
        for i in range(3):
            await history.record(_make_entry(i, "email"), "delivered", now=T0)
        await history.record(_make_entry(9, "slack"), "failed", error="boom", now=T0)

        summary = await history.summary()
        assert summary["total_attempts"] == 4
        assert summary["by_status"] == {"delivered": 3, "failed": 1}
        assert summary["by_channel"] == {"email": {"delivered": 3}, "slack": {"failed": 1}}
        assert summary["delivery_rate_percent"] == 75.0
        assert summary["error_rate_percent"] == 25.0

    async def test_empty(self, history):
        summary = await history.summary()
        assert summary["total_attempts"] == 0
        assert summary["delivery_rate_percent"] == 0.0
        assert summary["error_rate_percent"] == 0.0

    async def test_window(self, history):
        await history.record(_make_entry(1), "failed", error="old", now=T0 - timedelta(days=2))
        await history.record(_make_entry(2), "delivered", now=T0)
        summary = await history.summary(since=T0 - timedelta(hours=1))
        assert summary["total_attempts"] == 1
        assert summary["delivery_rate_percent"] == 100.0

    async def test_recent_errors(self, history):
        await history.record(_make_entry(1), "delivered", now=T0)
        await history.record(_make_entry(2), "failed", error="a", now=T0 + timedelta(seconds=1))
        await history.record(_make_entry(3), "dead_letter", error="b", now=T0 + timedelta(seconds=2))
        errors = await history.recent_errors()
        assert [i.queue_id for i in errors] == [3, 2]


class TestHistoryCleanup:
    """Retention."""

    async def test_cleanup(self, history):
        now = T0 + timedelta(days=100)
        await history.record(_make_entry(1), "delivered", now=now - timedelta(days=95))
        await history.record(_make_entry(2), "failed", error="x", now=now - timedelta(days=91))
        await history.record(_make_entry(3), "delivered", now=now - timedelta(days=5))

        assert await history.cleanup(90, now=now) == 2
        assert [i.queue_id for i in (await history.list()).items] == [3]


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Recipient resolution
# ═══════════════════════════════════════════════════════════════════════════

@pytest.fixture
async def resolver(session_factory):
    async with session_factory() as session:
        session.add_all([
            UserRow(id=1, username="ana", email="ana@example.com"),
            UserRow(id=2, username="ben", email=None),
        ])
        await session.flush()
        session.add_all([
            UserNotificationPreferenceRow(user_id=1, channel_type="email", enabled=True,
                                          config={"address": "ana.alerts@example.com"}),
            UserNotificationPreferenceRow(user_id=1, channel_type="telegram", enabled=True,
                                          config={"address": "424242"}),
            UserNotificationPreferenceRow(user_id=1, channel_type="twilio", enabled=False,
                                          config={"address": "+15550009999"}),
            UserNotificationPreferenceRow(user_id=2, channel_type="slack", enabled=True, config={}),
        ])
        await session.commit()
    return RecipientResolver(session_factory)


class TestRecipientResolver:
    """Resolution order."""

    async def test_preference_wins(self, resolver):
        assert await resolver.resolve(_make_entry(user_id=1, channel="email")) == "ana.alerts@example.com"
        assert await resolver.resolve(_make_entry(user_id=1, channel="telegram")) == "424242"

    async def test_disabled_preference_skipped(self, resolver):
        entry = _make_entry(user_id=1, channel="twilio", variables={"recipient": "+15550001111"})
        assert await resolver.resolve(entry) == "+15550001111"

    async def test_account_email_for_email_channel(self, session_factory, resolver):
        async with session_factory() as session:
            session.add(UserRow(id=3, username="cat", email="cat@example.com"))
            await session.commit()
        assert await resolver.resolve(_make_entry(user_id=3, channel="email")) == "cat@example.com"

    async def test_account_email_not_used_for_other_channels(self, resolver):
        with pytest.raises(RecipientUnresolvedError):
            await resolver.resolve(_make_entry(user_id=3, channel="slack"))

    async def test_variables_fallback(self, resolver):
        entry = _make_entry(user_id=2, channel="slack", variables={"recipient": " #ops "})
        assert await resolver.resolve(entry) == "#ops"

    async def test_no_user(self, resolver):
        assert await resolver.resolve(_make_entry(variables={"recipient": "x@example.com"})) == "x@example.com"

    async def test_unresolved(self, resolver):
        with pytest.raises(RecipientUnresolvedError) as exc_info:
            await resolver.resolve(_make_entry(user_id=2, channel="email"))
        assert exc_info.value.details == {"channel": "email", "user_id": 2}
