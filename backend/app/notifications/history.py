"""
history.py — Append-only delivery attempt log and its summaries.

One row per attempt, never updated. Rows leave the table only through the
retention sweep (``cleanup``).

    record()        append one attempt outcome
    list()          paginated, newest first, optional channel / status filter
    summary()       per-status and per-channel counts + delivery / error rate
    recent_errors() latest failed or dead-lettered attempts
    cleanup()       delete attempts older than the retention window
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.app.core.database import session_scope
from backend.app.notifications.models import (
    HistoryItem,
    HistoryPage,
    HistoryStatus,
    QueueEntry,
    utcnow,
)
from backend.app.notifications.orm import NotificationHistoryRow

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 500


def _to_item(row: NotificationHistoryRow) -> HistoryItem:
    return HistoryItem(
        id=row.id,
        queue_id=row.queue_id,
        user_id=row.user_id,
        channel_type=row.channel_type,
        status=HistoryStatus(row.status),
        subject=row.subject or "",
        sent_at=row.sent_at,
        delivered_at=row.delivered_at,
        error_message=row.error_message,
        metadata=dict(row.meta or {}),
    )


class HistoryLog:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def record(
        self,
        entry: QueueEntry,
        status: Union[str, HistoryStatus],
        error: Optional[str] = None,
        duration_ms: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> int:
        now = now or utcnow()
        status = HistoryStatus(status)
        metadata: Dict[str, Any] = {"retry_count": entry.retry_count, "priority": entry.priority}
        if duration_ms is not None:
            metadata["duration_ms"] = round(duration_ms, 1)

        row = NotificationHistoryRow(
            queue_id=entry.id,
            user_id=entry.user_id,
            channel_type=entry.channel_type,
            status=status.value,
            subject=entry.subject,
            body=entry.body,
            sent_at=now,
            delivered_at=now if status is HistoryStatus.DELIVERED else None,
            error_message=error,
            meta=metadata,
        )
        async with session_scope(self._session_factory, "record_history") as session:
            session.add(row)
            await session.flush()
            return row.id

    async def list(
        self,
        channel_type: Optional[str] = None,
        status: Optional[Union[str, HistoryStatus]] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> HistoryPage:
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        offset = max(0, offset)
        row = NotificationHistoryRow

        filters = []
        if channel_type:
            filters.append(row.channel_type == channel_type)
        if status:
            filters.append(row.status == HistoryStatus(status).value)

        async with session_scope(self._session_factory, "list_history") as session:
            total = (await session.execute(
                select(func.count()).select_from(row).where(*filters)
            )).scalar_one()
            rows = (await session.execute(
                select(row)
                .where(*filters)
                .order_by(row.sent_at.desc(), row.id.desc())
                .limit(limit)
                .offset(offset)
            )).scalars().all()

        return HistoryPage(items=[_to_item(r) for r in rows], total=total, limit=limit, offset=offset)

    async def recent_errors(self, limit: int = 20) -> List[HistoryItem]:
        row = NotificationHistoryRow
        async with session_scope(self._session_factory, "recent_errors") as session:
            rows = (await session.execute(
                select(row)
                .where(row.status.in_([HistoryStatus.FAILED.value, HistoryStatus.DEAD_LETTER.value]))
                .order_by(row.sent_at.desc(), row.id.desc())
                .limit(limit)
            )).scalars().all()
        return [_to_item(r) for r in rows]

    async def summary(self, since: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Attempt counts by status and by channel, with rates in percent.

        ``delivery_rate_percent`` is delivered attempts over all attempts in
        the window; ``error_rate_percent`` is its complement.
        """
        row = NotificationHistoryRow
        filters = [row.sent_at >= since] if since else []

        async with session_scope(self._session_factory, "history_summary") as session:
            by_status = {
                s: c for s, c in (await session.execute(
                    select(row.status, func.count()).where(*filters).group_by(row.status)
                )).all()
            }
            by_channel: Dict[str, Dict[str, int]] = {}
            for channel, s, c in (await session.execute(
                select(row.channel_type, row.status, func.count())
                .where(*filters)
                .group_by(row.channel_type, row.status)
            )).all():
                by_channel.setdefault(channel, {})[s] = c

        total = sum(by_status.values())
        delivered = by_status.get(HistoryStatus.DELIVERED.value, 0)
        delivery_rate = round(100.0 * delivered / total, 2) if total else 0.0
        return {
            "since": since.isoformat() if since else None,
            "total_attempts": total,
            "by_status": by_status,
            "by_channel": by_channel,
            "delivery_rate_percent": delivery_rate,
            "error_rate_percent": round(100.0 - delivery_rate, 2) if total else 0.0,
        }

    async def cleanup(self, retention_days: int, now: Optional[datetime] = None) -> int:
        cutoff = (now or utcnow()) - timedelta(days=retention_days)
        stmt = (
            delete(NotificationHistoryRow)
            .where(NotificationHistoryRow.sent_at < cutoff)
            .execution_options(synchronize_session=False)
        )
        async with session_scope(self._session_factory, "cleanup_history") as session:
            deleted = (await session.execute(stmt)).rowcount

        logger.info("History cleanup removed %d attempts older than %d days", deleted, retention_days)
        return deleted
