"""
scheduler.py — Periodic drivers for the delivery pipeline (APScheduler).

    notifications-process   every NOTIFY_PROCESS_INTERVAL_SECONDS
                            release stale claims, then one worker pass
    notifications-cleanup   daily at NOTIFY_CLEANUP_HOUR_UTC:00 UTC
                            delete old delivered rows and old history

The worker never schedules itself; this module is the only place ticks
come from besides the manual ``POST /queue/process`` endpoint.
"""

from __future__ import annotations

import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from backend.app.core.config import Settings, get_settings
from backend.app.core.errors import StoreUnavailableError
from backend.app.notifications.pipeline import NotificationPipeline

logger = logging.getLogger(__name__)

PROCESS_JOB_ID = "notifications-process"
CLEANUP_JOB_ID = "notifications-cleanup"


class NotificationScheduler:
    def __init__(self, pipeline: NotificationPipeline, settings: Optional[Settings] = None):
        self.pipeline = pipeline
        self.settings = settings or get_settings()
        self._scheduler: Optional[AsyncIOScheduler] = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self) -> None:
        if self._scheduler is not None:
            return
        self._scheduler = AsyncIOScheduler(timezone="UTC")
        self._scheduler.add_job(
            self._process,
            trigger=IntervalTrigger(seconds=self.settings.NOTIFY_PROCESS_INTERVAL_SECONDS),
            id=PROCESS_JOB_ID,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self._scheduler.add_job(
            self._cleanup,
            trigger=CronTrigger(hour=self.settings.NOTIFY_CLEANUP_HOUR_UTC, minute=0, timezone="UTC"),
            id=CLEANUP_JOB_ID,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self._scheduler.start()
        logger.info(
            "Notification scheduler started (every %ds, cleanup %02d:00 UTC)",
            self.settings.NOTIFY_PROCESS_INTERVAL_SECONDS, self.settings.NOTIFY_CLEANUP_HOUR_UTC,
        )

    def shutdown(self) -> None:
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
            logger.info("Notification scheduler stopped")

    def job_ids(self) -> list:
        if self._scheduler is None:
            return []
        return sorted(job.id for job in self._scheduler.get_jobs())

    async def _process(self) -> None:
        try:
            await self.pipeline.tick()
        except StoreUnavailableError as exc:
            # Nothing was claimed; the next tick tries again
            logger.warning("Queue tick skipped: %s", exc.message)

    async def _cleanup(self) -> None:
        try:
            await self.pipeline.run_retention()
        except StoreUnavailableError as exc:
            logger.warning("Retention sweep skipped: %s", exc.message)
