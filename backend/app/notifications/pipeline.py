"""
pipeline.py — Wiring for the notification delivery pipeline.

NotificationPipeline builds the collaborators once from a session factory
and a policy and exposes the operations the rest of the service uses:

    enqueue()               Enqueue API for alert / weather producers
    process_queue()         one worker pass (manual trigger)
    tick()                  scheduled pass; releases abandoned claims first
    queue_stats() / history() / history_summary()
    requeue_dead_letters()  operator recovery
    run_retention()         daily sweep of delivered rows and old history

Usage:
    pipeline = NotificationPipeline(get_session_factory())
    for channel in build_default_channels(settings):
        pipeline.register_channel(channel)
    await pipeline.start()
    await pipeline.enqueue(user_id=7, channel_type="email",
                           subject="Flood watch", body="...", priority=8)
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.app.core.config import Settings, get_settings
from backend.app.notifications.channel_manager import ChannelManager
from backend.app.notifications.channels import (
    IMPLEMENTATIONS,
    DiscordChannel,
    EmailChannel,
    GotifyChannel,
    NotificationChannel,
    PushoverChannel,
    SlackChannel,
    TelegramChannel,
    TwilioSMSChannel,
    WebhookChannel,
)
from backend.app.notifications.history import HistoryLog
from backend.app.notifications.models import HistoryPage, QueueStats
from backend.app.notifications.policy import DeliveryPolicy, load_policy
from backend.app.notifications.queue import DEFAULT_PRIORITY, DeliveryQueue
from backend.app.notifications.recipients import RecipientResolver
from backend.app.notifications.registry import ChannelRegistry
from backend.app.notifications.worker import DeliveryWorker

logger = logging.getLogger(__name__)


def build_default_channels(settings: Optional[Settings] = None) -> List[NotificationChannel]:
    """Channels whose credentials are present in the environment."""
    s = settings or get_settings()
    candidates: List[NotificationChannel] = [
        EmailChannel({
            "host": s.SMTP_HOST,
            "port": s.SMTP_PORT,
            "username": s.SMTP_USER,
            "password": s.SMTP_PASSWORD,
            "from_address": s.SMTP_FROM_ADDRESS,
            "use_tls": s.SMTP_USE_TLS,
        }),
        WebhookChannel({"url": s.WEBHOOK_URL}),
        SlackChannel({"webhook_url": s.SLACK_WEBHOOK_URL}),
        DiscordChannel({"webhook_url": s.DISCORD_WEBHOOK_URL}),
        TelegramChannel({"bot_token": s.TELEGRAM_BOT_TOKEN}),
        TwilioSMSChannel({
            "account_sid": s.TWILIO_ACCOUNT_SID,
            "auth_token": s.TWILIO_AUTH_TOKEN,
            "from_number": s.TWILIO_FROM_NUMBER,
        }),
        GotifyChannel({"url": s.GOTIFY_URL, "token": s.GOTIFY_TOKEN}),
        PushoverChannel({"app_token": s.PUSHOVER_APP_TOKEN}),
    ]
    channels = [c for c in candidates if c.is_enabled()]
    logger.info(
        "Channels configured from environment: %s",
        ", ".join(c.get_type() for c in channels) or "none",
    )
    return channels


class NotificationPipeline:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        policy: Optional[DeliveryPolicy] = None,
        *,
        registry: Optional[ChannelRegistry] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.session_factory = session_factory
        self._base_policy = policy or DeliveryPolicy.from_settings(self.settings)
        self.policy = self._base_policy
        self.registry = registry if registry is not None else ChannelRegistry()

        self.manager = ChannelManager(
            session_factory, self.registry, test_timeout_seconds=self.policy.send_timeout_seconds,
        )
        self.queue = DeliveryQueue(session_factory)
        self.history_log = HistoryLog(session_factory)
        self.resolver = RecipientResolver(session_factory)
        self.worker = DeliveryWorker(
            self.queue, self.manager, self.history_log, self.resolver, self.policy,
        )

    # ── Lifecycle ───────────────────────────────────────────────────────────

    def register_channel(self, channel: NotificationChannel) -> None:
        self.manager.register_implementation(channel)

    async def start(self) -> None:
        """Seed channel rows, apply stored channel configs, load the policy."""
        await self.manager.initialize_channels()
        await self.manager.apply_stored_configs(IMPLEMENTATIONS)
        await self.reload_policy()

    async def reload_policy(self) -> DeliveryPolicy:
        self.policy = await load_policy(self.session_factory, self._base_policy)
        await self.worker.update_policy(self.policy)
        self.manager.test_timeout_seconds = self.policy.send_timeout_seconds
        return self.policy

    async def shutdown(self) -> None:
        await self.worker.drain()

    # ── Enqueue API ─────────────────────────────────────────────────────────

    async def enqueue(
        self,
        user_id: Optional[int],
        channel_type: str,
        subject: str,
        body: str,
        priority: int = DEFAULT_PRIORITY,
        variables: Optional[Dict[str, Any]] = None,
        template_id: Optional[int] = None,
    ) -> int:
        return await self.queue.enqueue(
            user_id,
            channel_type,
            subject,
            body,
            priority,
            variables,
            max_retries=self.policy.max_retries,
            template_id=template_id,
        )

    # ── Worker / operator operations ────────────────────────────────────────

    async def process_queue(self, now: Optional[datetime] = None) -> int:
        return await self.worker.process_queue(now)

    async def tick(self) -> int:
        """Scheduled tick: release abandoned claims, then process the queue."""
        await self.queue.release_stale_claims(
            timedelta(minutes=self.settings.NOTIFY_STALE_CLAIM_MINUTES),
            exclude=self.worker.held_ids,
        )
        return await self.worker.process_queue()

    async def queue_stats(self) -> QueueStats:
        return await self.queue.stats()

    async def history(
        self,
        channel_type: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> HistoryPage:
        return await self.history_log.list(channel_type, status, limit, offset)

    async def history_summary(self, since: Optional[datetime] = None) -> Dict[str, Any]:
        return await self.history_log.summary(since)

    async def requeue_dead_letters(self, ids: Iterable[int]) -> int:
        return await self.queue.requeue_dead_letters(ids)

    async def run_retention(self, now: Optional[datetime] = None) -> Dict[str, int]:
        s = self.settings
        result = {
            "queue_deleted": await self.queue.cleanup_delivered(s.NOTIFY_RETENTION_DAYS, now),
            "history_deleted": await self.history_log.cleanup(s.NOTIFY_HISTORY_RETENTION_DAYS, now),
        }
        logger.info("Retention sweep: %s", result)
        return result
