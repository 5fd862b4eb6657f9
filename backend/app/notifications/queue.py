"""
queue.py — Durable delivery queue over ``notification_queue``.

═══════════════════════════════════════════════════════════════════════════
ATOMIC CLAIM
═══════════════════════════════════════════════════════════════════════════

Selection and the flip to ``sending`` happen in one statement:

    UPDATE notification_queue
       SET state = 'sending', updated_at = :now
     WHERE id IN (SELECT id FROM notification_queue
                   WHERE state IN ('created', 'queued', 'failed')
                     AND (next_retry_at IS NULL OR next_retry_at <= :now)
                   ORDER BY priority DESC, created_at ASC, id ASC
                   LIMIT :n
                   FOR UPDATE SKIP LOCKED)
       AND state IN ('created', 'queued', 'failed')
    RETURNING *

Two overlapping ticks can therefore never both receive the same row: the
second one simply gets fewer (or zero) rows back. ``SKIP LOCKED`` keeps
PostgreSQL ticks from blocking each other; SQLite serialises writers and
ignores the locking clause.

Outcome transitions (``mark_delivered`` / ``mark_failed``) are conditional
on ``state = 'sending'`` so a row released or requeued in the meantime is
never overwritten.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.app.core.database import session_scope
from backend.app.notifications.models import (
    CLAIMABLE_STATES,
    TERMINAL_STATES,
    DeliveryState,
    QueueEntry,
    QueueStats,
    utcnow,
)
from backend.app.notifications.orm import NotificationQueueRow
from backend.app.notifications.retry import BackoffStrategy, next_retry_at

logger = logging.getLogger(__name__)

DEFAULT_PRIORITY = 5
MAX_ERROR_LENGTH = 2000

_CLAIMABLE = [s.value for s in CLAIMABLE_STATES]
_TERMINAL = [s.value for s in TERMINAL_STATES]


def _to_entry(row: Any) -> QueueEntry:
    """Build a QueueEntry from an ORM row or a RETURNING mapping."""
    get = row.get if isinstance(row, Mapping) else lambda k: getattr(row, k)
    return QueueEntry(
        id=get("id"),
        user_id=get("user_id"),
        channel_type=get("channel_type"),
        template_id=get("template_id"),
        priority=get("priority"),
        state=DeliveryState(get("state")),
        subject=get("subject") or "",
        body=get("body"),
        variables=dict(get("variables") or {}),
        retry_count=get("retry_count"),
        max_retries=get("max_retries"),
        next_retry_at=get("next_retry_at"),
        delivered_at=get("delivered_at"),
        failed_at=get("failed_at"),
        error_message=get("error_message"),
        created_at=get("created_at"),
        updated_at=get("updated_at"),
    )


def _eligible(now: datetime):
    row = NotificationQueueRow
    return (
        row.state.in_(_CLAIMABLE),
        or_(row.next_retry_at.is_(None), row.next_retry_at <= now),
    )


class DeliveryQueue:
    """Queue operations; every method is one short transaction."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    # ── Enqueue ─────────────────────────────────────────────────────────────

    async def enqueue(
        self,
        user_id: Optional[int],
        channel_type: str,
        subject: str,
        body: str,
        priority: int = DEFAULT_PRIORITY,
        variables: Optional[Dict[str, Any]] = None,
        *,
        max_retries: int = 3,
        template_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> int:
        """
        Insert a ``created`` entry and return its id.

        Neither the channel nor the recipient is checked here; both are
        resolved at dispatch time so entries can be queued for channels
        that are not configured yet.
        """
        now = now or utcnow()
        row = NotificationQueueRow(
            user_id=user_id,
            channel_type=channel_type,
            template_id=template_id,
            priority=priority,
            state=DeliveryState.CREATED.value,
            subject=subject,
            body=body,
            variables=dict(variables or {}),
            retry_count=0,
            max_retries=max_retries,
            created_at=now,
            updated_at=now,
        )
        async with session_scope(self._session_factory, "enqueue") as session:
            session.add(row)
            await session.flush()
            entry_id = row.id

        logger.info(
            "Enqueued #%d for %s (priority %d)", entry_id, channel_type, priority,
            extra={"queue_id": entry_id, "channel": channel_type, "priority": priority},
        )
        return entry_id

    # ── Claim ───────────────────────────────────────────────────────────────

    async def claim_batch(self, limit: int, now: Optional[datetime] = None) -> List[QueueEntry]:
        """
        Atomically move up to ``limit`` eligible entries to ``sending``.

        Returned entries are in selection order (priority DESC, then FIFO).
        An empty list means nothing was eligible or another tick won.
        """
        if limit <= 0:
            return []
        now = now or utcnow()
        row = NotificationQueueRow

        eligible_ids = (
            select(row.id)
            .where(*_eligible(now))
            .order_by(row.priority.desc(), row.created_at.asc(), row.id.asc())
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        stmt = (
            update(row)
            .where(row.id.in_(eligible_ids), row.state.in_(_CLAIMABLE))
            .values(state=DeliveryState.SENDING.value, updated_at=now)
            .returning(*row.__table__.c)
            .execution_options(synchronize_session=False)
        )
        async with session_scope(self._session_factory, "claim_batch") as session:
            claimed = [_to_entry(m) for m in (await session.execute(stmt)).mappings().all()]

        # RETURNING order is unspecified
        claimed.sort(key=lambda e: (-e.priority, e.created_at or now, e.id))
        if claimed:
            logger.debug("Claimed %d entries", len(claimed), extra={"claimed": len(claimed)})
        return claimed

    # ── Outcomes ────────────────────────────────────────────────────────────

    async def mark_delivered(self, entry_id: int, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        row = NotificationQueueRow
        stmt = (
            update(row)
            .where(row.id == entry_id, row.state == DeliveryState.SENDING.value)
            .values(
                state=DeliveryState.DELIVERED.value,
                delivered_at=now,
                next_retry_at=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        async with session_scope(self._session_factory, "mark_delivered") as session:
            result = await session.execute(stmt)

        if result.rowcount == 0:
            logger.warning("#%d was not in 'sending' when marked delivered", entry_id,
                           extra={"queue_id": entry_id})
            return False
        logger.info("#%d delivered", entry_id, extra={"queue_id": entry_id, "state": "delivered"})
        return True

    async def mark_failed(
        self,
        entry_id: int,
        error: str,
        strategy: Union[str, BackoffStrategy] = BackoffStrategy.EXPONENTIAL,
        now: Optional[datetime] = None,
    ) -> Optional[QueueEntry]:
        """
        Consume one retry for a ``sending`` entry.

        ``failed`` with a scheduled ``next_retry_at`` while retries remain,
        ``dead_letter`` once ``retry_count`` reaches ``max_retries``.
        Returns the updated entry, or None if it was no longer ``sending``.
        """
        now = now or utcnow()
        error = (error or "unknown error")[:MAX_ERROR_LENGTH]
        async with session_scope(self._session_factory, "mark_failed") as session:
            row = (await session.execute(
                select(NotificationQueueRow)
                .where(
                    NotificationQueueRow.id == entry_id,
                    NotificationQueueRow.state == DeliveryState.SENDING.value,
                )
                .with_for_update()
            )).scalar_one_or_none()
            if row is None:
                logger.warning("#%d was not in 'sending' when marked failed", entry_id,
                               extra={"queue_id": entry_id})
                return None

            row.retry_count = min(row.retry_count + 1, row.max_retries)
            row.error_message = error
            row.updated_at = now
            if row.retry_count >= row.max_retries:
                row.state = DeliveryState.DEAD_LETTER.value
                row.next_retry_at = None
                row.failed_at = now
            else:
                row.state = DeliveryState.FAILED.value
                row.next_retry_at = next_retry_at(strategy, row.retry_count, now)
            await session.flush()
            entry = _to_entry(row)

        extra = {"queue_id": entry_id, "retry_count": entry.retry_count, "state": entry.state.value}
        if entry.state is DeliveryState.DEAD_LETTER:
            logger.error("#%d dead-lettered after %d attempts: %s", entry_id, entry.retry_count, error,
                         extra=extra)
        else:
            logger.warning("#%d failed (retry %d/%d, next at %s): %s", entry_id, entry.retry_count,
                           entry.max_retries, entry.next_retry_at.isoformat(), error, extra=extra)
        return entry

    # ── Reads ───────────────────────────────────────────────────────────────

    async def get(self, entry_id: int) -> Optional[QueueEntry]:
        async with session_scope(self._session_factory, "get_entry") as session:
            row = await session.get(NotificationQueueRow, entry_id)
            return _to_entry(row) if row is not None else None

    async def list_entries(
        self,
        state: Optional[Union[str, DeliveryState]] = None,
        channel_type: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[QueueEntry]:
        """Newest first."""
        row = NotificationQueueRow
        stmt = select(row)
        if state:
            stmt = stmt.where(row.state == DeliveryState(state).value)
        if channel_type:
            stmt = stmt.where(row.channel_type == channel_type)
        stmt = stmt.order_by(row.created_at.desc(), row.id.desc()).limit(limit).offset(offset)

        async with session_scope(self._session_factory, "list_entries") as session:
            return [_to_entry(r) for r in (await session.execute(stmt)).scalars().all()]

    async def stats(self, now: Optional[datetime] = None) -> QueueStats:
        now = now or utcnow()
        row = NotificationQueueRow
        async with session_scope(self._session_factory, "queue_stats") as session:
            by_state = {
                state: count for state, count in
                (await session.execute(select(row.state, func.count()).group_by(row.state))).all()
            }
            by_channel = {
                channel: count for channel, count in
                (await session.execute(
                    select(row.channel_type, func.count())
                    .where(row.state.not_in(_TERMINAL))
                    .group_by(row.channel_type)
                )).all()
            }
            pending = (await session.execute(
                select(func.count()).select_from(row).where(*_eligible(now))
            )).scalar_one()

        return QueueStats(
            by_state=by_state,
            by_channel=by_channel,
            pending=pending,
            dead_letters=by_state.get(DeliveryState.DEAD_LETTER.value, 0),
        )

    # ── Maintenance ─────────────────────────────────────────────────────────

    async def cleanup_delivered(self, retention_days: int, now: Optional[datetime] = None) -> int:
        """Delete ``delivered`` rows older than the window; other states are kept."""
        cutoff = (now or utcnow()) - timedelta(days=retention_days)
        row = NotificationQueueRow
        stmt = (
            delete(row)
            .where(row.state == DeliveryState.DELIVERED.value, row.delivered_at < cutoff)
            .execution_options(synchronize_session=False)
        )
        async with session_scope(self._session_factory, "cleanup_delivered") as session:
            deleted = (await session.execute(stmt)).rowcount

        logger.info("Queue cleanup removed %d delivered entries older than %d days", deleted, retention_days)
        return deleted

    async def requeue_dead_letters(self, ids: Iterable[int], now: Optional[datetime] = None) -> int:
        """
        Move ``dead_letter`` entries back to ``queued`` with counters reset.

        Ids that are not dead letters (already requeued, delivered, unknown)
        are left alone, so repeating a request is a no-op.
        """
        ids = sorted(set(ids))
        if not ids:
            return 0
        now = now or utcnow()
        row = NotificationQueueRow
        stmt = (
            update(row)
            .where(row.id.in_(ids), row.state == DeliveryState.DEAD_LETTER.value)
            .values(
                state=DeliveryState.QUEUED.value,
                retry_count=0,
                next_retry_at=None,
                error_message=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        async with session_scope(self._session_factory, "requeue_dead_letters") as session:
            count = (await session.execute(stmt)).rowcount

        logger.info("Requeued %d of %d dead-letter entries", count, len(ids))
        return count

    async def release_stale_claims(
        self,
        older_than: timedelta,
        now: Optional[datetime] = None,
        exclude: Iterable[int] = (),
    ) -> int:
        """
        Return entries stuck in ``sending`` (e.g. after a crash) to ``queued``.

        No retry is consumed; the next tick claims them again. Ids in
        ``exclude`` are claims this process still owns and are left alone.
        """
        cutoff = (now or utcnow()) - older_than
        held = list(exclude)
        row = NotificationQueueRow
        conditions = [row.state == DeliveryState.SENDING.value, row.updated_at < cutoff]
        if held:
            conditions.append(row.id.notin_(held))
        stmt = (
            update(row)
            .where(*conditions)
            .values(state=DeliveryState.QUEUED.value, updated_at=now or utcnow())
            .execution_options(synchronize_session=False)
        )
        async with session_scope(self._session_factory, "release_stale_claims") as session:
            count = (await session.execute(stmt)).rowcount

        if count:
            logger.warning("Released %d stale 'sending' entries", count)
        return count
