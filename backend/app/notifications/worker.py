"""
worker.py — Delivery worker: claim, dispatch, route outcomes.

═══════════════════════════════════════════════════════════════════════════
ONE TICK
═══════════════════════════════════════════════════════════════════════════

    process_queue()
        │
        ├─ budget = min(batch_size, rate-limit headroom)
        ├─ claim_batch(budget)            atomic: eligible → sending
        └─ one task per entry ───────────► returns len(claimed) immediately
                                              │
              ┌───────────────────────────────┘
              ▼   (at most queue_workers run at once)
        registry.get(type)          ChannelNotFoundError      ┐
        resolver.resolve(entry)     RecipientUnresolvedError  ├─► failure
        wait_for(channel.send, T)   ChannelSendError/timeout  ┘
              │
              ├─ success → mark_delivered · history(delivered) · record_success
              └─ failure → mark_failed    · history(failed|dead_letter) · record_failure

The caller (scheduler) never waits for sends. Entries still running when
the next tick fires are in ``sending`` and the claim skips them, so ticks
need no join. StoreUnavailableError from the claim propagates to the caller;
inside a dispatch it is logged and the entry stays ``sending`` until the
stale-claim sweep releases it.

Claimed ids stay in ``held_ids`` from the claim until their task ends,
including the time spent waiting for a worker slot; the stale-claim sweep
skips them. The slot limit is read from the current policy on every
acquire, so a reload that changes ``queue_workers`` never lets old and new
waiters run side by side.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Callable, Deque, FrozenSet, Optional, Set

from backend.app.core.errors import DeliveryError
from backend.app.notifications.channel_manager import ChannelManager
from backend.app.notifications.history import HistoryLog
from backend.app.notifications.models import DeliveryState, HistoryStatus, QueueEntry
from backend.app.notifications.policy import DeliveryPolicy
from backend.app.notifications.queue import DeliveryQueue
from backend.app.notifications.recipients import RecipientResolver

logger = logging.getLogger(__name__)

RATE_WINDOW_SECONDS = 60.0


class DeliveryWorker:
    def __init__(
        self,
        queue: DeliveryQueue,
        manager: ChannelManager,
        history: HistoryLog,
        resolver: RecipientResolver,
        policy: DeliveryPolicy,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.queue = queue
        self.manager = manager
        self.history = history
        self.resolver = resolver
        self.policy = policy
        self._clock = clock
        self._slots = asyncio.Condition()
        self._active = 0
        self._claim_lock = asyncio.Lock()
        self._tasks: Set[asyncio.Task] = set()
        self._held: Set[int] = set()
        self._dispatched: Deque[float] = deque()

    # ── Policy ──────────────────────────────────────────────────────────────

    async def update_policy(self, policy: DeliveryPolicy) -> None:
        """Applies to the next claim and the next free slot; running sends finish as they are."""
        self.policy = policy
        async with self._slots:
            self._slots.notify_all()

    # ── Worker slots ────────────────────────────────────────────────────────

    @asynccontextmanager
    async def _worker_slot(self) -> AsyncIterator[None]:
        async with self._slots:
            await self._slots.wait_for(lambda: self._active < self.policy.queue_workers)
            self._active += 1
        try:
            yield
        finally:
            async with self._slots:
                self._active -= 1
                self._slots.notify_all()

    # ── Rate limiting ───────────────────────────────────────────────────────

    def _rate_budget(self) -> int:
        limit = self.policy.rate_limit_per_min
        if limit <= 0:
            return self.policy.batch_size
        cutoff = self._clock() - RATE_WINDOW_SECONDS
        while self._dispatched and self._dispatched[0] <= cutoff:
            self._dispatched.popleft()
        return max(0, limit - len(self._dispatched))

    def _note_dispatches(self, count: int) -> None:
        if self.policy.rate_limit_per_min <= 0:
            return
        stamp = self._clock()
        self._dispatched.extend([stamp] * count)

    # ── Tick ────────────────────────────────────────────────────────────────

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    @property
    def held_ids(self) -> FrozenSet[int]:
        """Entries claimed by this worker whose dispatch has not finished."""
        return frozenset(self._held)

    async def process_queue(self, now: Optional[datetime] = None) -> int:
        """
        Claim a batch and start dispatching it.

        Returns the number of entries claimed without waiting for any send
        to finish. Store errors from the claim propagate.
        """
        async with self._claim_lock:
            limit = min(self.policy.batch_size, self._rate_budget())
            if limit <= 0:
                logger.info("Rate limit reached (%d/min); skipping tick", self.policy.rate_limit_per_min)
                return 0
            entries = await self.queue.claim_batch(limit, now)
            self._note_dispatches(len(entries))
            self._held.update(entry.id for entry in entries)

        for entry in entries:
            task = asyncio.create_task(self._run(entry), name=f"deliver-{entry.id}")
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        if entries:
            logger.info("Dispatching %d entries", len(entries), extra={"claimed": len(entries)})
        return len(entries)

    async def drain(self) -> None:
        """Wait for every in-flight dispatch (shutdown, tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ── Per-entry dispatch ──────────────────────────────────────────────────

    async def _run(self, entry: QueueEntry) -> None:
        try:
            async with self._worker_slot():
                await self._dispatch(entry)
        except Exception:
            logger.exception(
                "Dispatch of #%d aborted; entry left in 'sending'", entry.id,
                extra={"queue_id": entry.id, "channel": entry.channel_type},
            )
        finally:
            self._held.discard(entry.id)

    async def _dispatch(self, entry: QueueEntry) -> None:
        started = time.perf_counter()

        try:
            channel = self.manager.get_implementation(entry.channel_type)
            recipient = await self.resolver.resolve(entry)
        except DeliveryError as exc:
            await self._on_failure(entry, exc.message, started)
            return

        metadata = {**entry.variables, "queue_id": entry.id, "priority": entry.priority}
        timeout = self.policy.send_timeout_seconds
        try:
            await asyncio.wait_for(
                channel.send(recipient, entry.subject, entry.body, metadata),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            await self._on_failure(entry, f"{entry.channel_type} send timed out after {timeout:g}s", started)
            return
        except DeliveryError as exc:
            await self._on_failure(entry, exc.message, started)
            return
        except Exception as exc:
            # Channel raised something it did not map to ChannelSendError
            logger.warning(
                "Unexpected %s from %s channel", type(exc).__name__, entry.channel_type,
                exc_info=True, extra={"queue_id": entry.id, "channel": entry.channel_type},
            )
            await self._on_failure(entry, f"{type(exc).__name__}: {exc}", started)
            return

        await self._on_success(entry, started)

    async def _on_success(self, entry: QueueEntry, started: float) -> None:
        duration_ms = (time.perf_counter() - started) * 1000
        await self.queue.mark_delivered(entry.id)
        await self.history.record(entry, HistoryStatus.DELIVERED, duration_ms=duration_ms)
        await self.manager.record_success(entry.channel_type)
        logger.info(
            "#%d delivered via %s in %.0fms", entry.id, entry.channel_type, duration_ms,
            extra={"queue_id": entry.id, "channel": entry.channel_type, "duration_ms": round(duration_ms, 1)},
        )

    async def _on_failure(self, entry: QueueEntry, message: str, started: float) -> None:
        duration_ms = (time.perf_counter() - started) * 1000
        updated = await self.queue.mark_failed(entry.id, message, self.policy.retry_backoff)
        if updated is None:
            # Row left 'sending' under us (released or requeued); the outcome no longer applies
            logger.info(
                "#%d no longer claimed; dropping failure outcome: %s", entry.id, message,
                extra={"queue_id": entry.id, "channel": entry.channel_type},
            )
            return
        status = (
            HistoryStatus.DEAD_LETTER
            if updated.state is DeliveryState.DEAD_LETTER
            else HistoryStatus.FAILED
        )
        await self.history.record(updated, status, error=message, duration_ms=duration_ms)
        await self.manager.record_failure(entry.channel_type, message)
