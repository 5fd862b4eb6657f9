"""
channel_manager.py — Persistent channel state and health tracking.

Owns the ``notification_channels`` table and mediates between the queue and
the live channel implementations held by a ChannelRegistry.

═══════════════════════════════════════════════════════════════════════════
HEALTH TRANSITIONS
═══════════════════════════════════════════════════════════════════════════

    enable()            enabled=true,  state=enabled
    disable()           enabled=false, state=disabled
    test() start        state=testing
    test() ok           enabled=true, state=enabled, failure_count=0
    test() error        state=failed, failure_count+1
    record_success()    failure_count=0  (state failed → enabled/disabled)
    record_failure()    failure_count+1  (state → failed once count ≥ 5)

Every mutation is a single-row UPDATE; counters are incremented in SQL so
concurrent dispatches for the same channel never lose an increment.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Mapping, Optional, Type

from sqlalchemy import case, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.app.core.database import session_scope
from backend.app.core.errors import ChannelSendError, NotFoundError
from backend.app.notifications.channels.base import NotificationChannel
from backend.app.notifications.models import (
    FAILURE_THRESHOLD,
    ChannelHealth,
    ChannelStats,
    utcnow,
)
from backend.app.notifications.orm import NotificationChannelRow
from backend.app.notifications.registry import (
    CHANNEL_DEFINITIONS,
    ChannelRegistry,
    get_definition,
    validate_channel_config,
)

logger = logging.getLogger(__name__)


class ChannelManager:
    """Catalog rows, health counters and the implementation registry."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        registry: Optional[ChannelRegistry] = None,
        *,
        test_timeout_seconds: float = 30.0,
    ):
        self._session_factory = session_factory
        self.registry = registry if registry is not None else ChannelRegistry()
        self.test_timeout_seconds = test_timeout_seconds

    # ── Setup ───────────────────────────────────────────────────────────────

    async def initialize_channels(self) -> int:
        """Insert a disabled row for every catalog entry not yet present."""
        async with session_scope(self._session_factory, "initialize_channels") as session:
            existing = set((await session.execute(select(NotificationChannelRow.channel_type))).scalars())
            created = 0
            for definition in CHANNEL_DEFINITIONS:
                if definition.type in existing:
                    continue
                session.add(NotificationChannelRow(
                    channel_type=definition.type,
                    channel_name=definition.name,
                    enabled=False,
                    state=ChannelHealth.DISABLED.value,
                    config={},
                ))
                created += 1

        if created:
            logger.info("Initialised %d notification channel rows", created)
        return created

    def register_implementation(self, channel: NotificationChannel) -> None:
        self.registry.register(channel)
        logger.info("Registered channel implementation: %s", channel.get_type())

    def get_implementation(self, channel_type: str) -> NotificationChannel:
        return self.registry.get(channel_type)

    async def apply_stored_configs(
        self,
        factories: Optional[Mapping[str, Type[NotificationChannel]]] = None,
    ) -> int:
        """
        Overlay configuration saved through the admin API onto live channels.

        Registered implementations get the stored keys merged into their
        config. Types that are not registered yet but have a factory are
        constructed from the stored config when it is complete.
        """
        async with session_scope(self._session_factory, "apply_stored_configs") as session:
            rows = (await session.execute(select(NotificationChannelRow))).scalars().all()
            stored = {r.channel_type: dict(r.config or {}) for r in rows if r.config}

        applied = 0
        for channel_type, config in stored.items():
            if channel_type in self.registry:
                self.registry.get(channel_type).config.update(config)
                applied += 1
            elif factories and channel_type in factories:
                channel = factories[channel_type](config)
                if channel.is_enabled():
                    self.register_implementation(channel)
                    applied += 1
        return applied

    # ── Operator actions ────────────────────────────────────────────────────

    async def enable(self, channel_type: str) -> None:
        await self._update(channel_type, "enable", enabled=True, state=ChannelHealth.ENABLED.value)
        logger.info("Channel enabled: %s", channel_type, extra={"channel": channel_type})

    async def disable(self, channel_type: str) -> None:
        await self._update(channel_type, "disable", enabled=False, state=ChannelHealth.DISABLED.value)
        logger.info("Channel disabled: %s", channel_type, extra={"channel": channel_type})

    async def test(self, channel_type: str, recipient: str) -> None:
        """
        Send a test message through the channel and record the outcome.

        The channel's own error is always re-raised; a failure to persist
        the outcome is logged and never replaces it.
        """
        channel = self.get_implementation(channel_type)
        await self._update(channel_type, "test", state=ChannelHealth.TESTING.value)

        try:
            await asyncio.wait_for(channel.test(recipient), timeout=self.test_timeout_seconds)
        except asyncio.TimeoutError:
            error = ChannelSendError(channel_type, f"test timed out after {self.test_timeout_seconds:.0f}s")
            await self._record_test_failure(channel_type, str(error))
            raise error from None
        except Exception as exc:
            await self._record_test_failure(channel_type, str(exc))
            raise

        now = utcnow()
        await self._update(
            channel_type,
            "test",
            enabled=True,
            state=ChannelHealth.ENABLED.value,
            last_test_at=now,
            last_test_result="success",
            last_success_at=now,
            last_error=None,
            failure_count=0,
        )
        logger.info("Channel test passed: %s", channel_type, extra={"channel": channel_type})

    async def _record_test_failure(self, channel_type: str, message: str) -> None:
        logger.warning("Channel test failed: %s: %s", channel_type, message, extra={"channel": channel_type})
        now = utcnow()
        try:
            await self._update(
                channel_type,
                "test",
                state=ChannelHealth.FAILED.value,
                last_test_at=now,
                last_test_result="failed",
                last_error=message,
                failure_count=NotificationChannelRow.failure_count + 1,
            )
        except Exception as exc:
            logger.error("Could not record test failure for %s: %s", channel_type, exc)

    # ── Outcome recording (called by the delivery worker) ──────────────────

    async def record_success(self, channel_type: str) -> None:
        row = NotificationChannelRow
        stmt = (
            update(row)
            .execution_options(synchronize_session=False)
            .where(row.channel_type == channel_type)
            .values(
                last_success_at=utcnow(),
                failure_count=0,
                state=case(
                    (row.state != ChannelHealth.FAILED.value, row.state),
                    (row.enabled.is_(True), ChannelHealth.ENABLED.value),
                    else_=ChannelHealth.DISABLED.value,
                ),
                updated_at=utcnow(),
            )
        )
        async with session_scope(self._session_factory, "record_success") as session:
            await session.execute(stmt)

    async def record_failure(self, channel_type: str, message: str) -> None:
        row = NotificationChannelRow
        # Right-hand side sees the pre-update count
        stmt = (
            update(row)
            .execution_options(synchronize_session=False)
            .where(row.channel_type == channel_type)
            .values(
                last_error=message,
                failure_count=row.failure_count + 1,
                state=case(
                    (row.failure_count + 1 >= FAILURE_THRESHOLD, ChannelHealth.FAILED.value),
                    else_=row.state,
                ),
                updated_at=utcnow(),
            )
            .returning(row.failure_count)
        )
        async with session_scope(self._session_factory, "record_failure") as session:
            count = (await session.execute(stmt)).scalar_one_or_none()

        if count == FAILURE_THRESHOLD:
            logger.error(
                "Channel %s tripped to failed after %d consecutive failures",
                channel_type, count, extra={"channel": channel_type},
            )

    # ── Reads ───────────────────────────────────────────────────────────────

    async def stats(self, channel_type: str) -> ChannelStats:
        async with session_scope(self._session_factory, "channel_stats") as session:
            row = (await session.execute(
                select(NotificationChannelRow).where(NotificationChannelRow.channel_type == channel_type)
            )).scalar_one_or_none()
        if row is None:
            raise NotFoundError("channel", channel_type=channel_type)
        return self._to_stats(row)

    async def list_channels(self) -> List[ChannelStats]:
        async with session_scope(self._session_factory, "list_channels") as session:
            rows = (await session.execute(
                select(NotificationChannelRow).order_by(NotificationChannelRow.channel_type)
            )).scalars().all()
        return [self._to_stats(r) for r in rows]

    async def list_enabled(self) -> List[str]:
        async with session_scope(self._session_factory, "list_enabled") as session:
            result = await session.execute(
                select(NotificationChannelRow.channel_type)
                .where(
                    NotificationChannelRow.enabled.is_(True),
                    NotificationChannelRow.state == ChannelHealth.ENABLED.value,
                )
                .order_by(NotificationChannelRow.channel_type)
            )
            return list(result.scalars())

    async def get_config(self, channel_type: str) -> Dict[str, Any]:
        async with session_scope(self._session_factory, "get_config") as session:
            row = (await session.execute(
                select(NotificationChannelRow).where(NotificationChannelRow.channel_type == channel_type)
            )).scalar_one_or_none()
        if row is None:
            raise NotFoundError("channel", channel_type=channel_type)
        return dict(row.config or {})

    # ── Configuration ──────────────────────────────────────────────────────

    async def update_config(self, channel_type: str, config: Mapping[str, Any]) -> Dict[str, Any]:
        """
        Validate and persist a channel's configuration.

        The catalog definition's schema is checked first, then the
        implementation's own ``validate_config`` when one is registered.
        The live implementation picks the new values up immediately.
        """
        definition = get_definition(channel_type)
        if definition is None and channel_type not in self.registry:
            raise NotFoundError("channel", channel_type=channel_type)

        cleaned = validate_channel_config(definition, config) if definition else dict(config)
        channel = self.registry.get(channel_type) if channel_type in self.registry else None
        if channel is not None:
            channel.validate_config(cleaned)

        await self._update(channel_type, "update_config", config=cleaned)
        if channel is not None:
            channel.config = dict(cleaned)

        logger.info("Channel config updated: %s", channel_type, extra={"channel": channel_type})
        return cleaned

    # ── Internals ───────────────────────────────────────────────────────────

    async def _update(self, channel_type: str, operation: str, **values: Any) -> None:
        values.setdefault("updated_at", utcnow())
        stmt = (
            update(NotificationChannelRow)
            .execution_options(synchronize_session=False)
            .where(NotificationChannelRow.channel_type == channel_type)
            .values(**values)
        )
        async with session_scope(self._session_factory, operation) as session:
            result = await session.execute(stmt)
        if result.rowcount == 0:
            raise NotFoundError("channel", channel_type=channel_type)

    def _to_stats(self, row: NotificationChannelRow) -> ChannelStats:
        return ChannelStats(
            channel_type=row.channel_type,
            channel_name=row.channel_name,
            implemented=row.channel_type in self.registry,
            enabled=bool(row.enabled),
            state=ChannelHealth(row.state),
            failure_count=row.failure_count or 0,
            last_test_at=row.last_test_at,
            last_success_at=row.last_success_at,
            last_error=row.last_error,
        )
