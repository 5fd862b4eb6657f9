"""
policy.py — Process-wide delivery policy.

Defaults come from the NOTIFY_* settings; the ``settings`` key/value table
overrides them when the policy is (re)loaded:

    notifications.retry_max            → max_retries
    notifications.queue_workers        → queue_workers
    notifications.batch_size           → batch_size
    notifications.rate_limit_per_min   → rate_limit_per_min
    notifications.retry_backoff        → retry_backoff  (linear | exponential)
    notifications.send_timeout         → send_timeout_seconds

Malformed stored values are logged and ignored so a bad admin edit can never
stop the worker. ``max_retries`` is snapshotted onto each entry at enqueue
time, so reloading never changes entries already in the queue.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.app.core.config import Settings, get_settings
from backend.app.core.database import session_scope
from backend.app.notifications.orm import SettingRow
from backend.app.notifications.retry import BackoffStrategy

logger = logging.getLogger(__name__)

SETTINGS_PREFIX = "notifications."


@dataclass(frozen=True)
class DeliveryPolicy:
    max_retries: int = 3
    queue_workers: int = 5
    batch_size: int = 100
    rate_limit_per_min: int = 60  # 0 = unlimited
    retry_backoff: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    send_timeout_seconds: float = 30.0

    def __post_init__(self):
        if self.max_retries < 1:
            raise ValueError("max_retries must be >= 1")
        if self.queue_workers < 1:
            raise ValueError("queue_workers must be >= 1")
        if self.batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if self.rate_limit_per_min < 0:
            raise ValueError("rate_limit_per_min must be >= 0")
        if self.send_timeout_seconds <= 0:
            raise ValueError("send_timeout_seconds must be > 0")

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "DeliveryPolicy":
        s = settings or get_settings()
        return cls(
            max_retries=s.NOTIFY_RETRY_MAX,
            queue_workers=s.NOTIFY_QUEUE_WORKERS,
            batch_size=s.NOTIFY_BATCH_SIZE,
            rate_limit_per_min=s.NOTIFY_RATE_LIMIT_PER_MIN,
            retry_backoff=BackoffStrategy.parse(s.NOTIFY_RETRY_BACKOFF),
            send_timeout_seconds=s.NOTIFY_SEND_TIMEOUT_SECONDS,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max_retries": self.max_retries,
            "queue_workers": self.queue_workers,
            "batch_size": self.batch_size,
            "rate_limit_per_min": self.rate_limit_per_min,
            "retry_backoff": self.retry_backoff.value,
            "send_timeout_seconds": self.send_timeout_seconds,
        }


# setting key suffix → (policy field, parser)
_KEYS: Dict[str, Tuple[str, Callable[[str], Any]]] = {
    "retry_max":          ("max_retries", int),
    "queue_workers":      ("queue_workers", int),
    "batch_size":         ("batch_size", int),
    "rate_limit_per_min": ("rate_limit_per_min", int),
    "retry_backoff":      ("retry_backoff", BackoffStrategy.parse),
    "send_timeout":       ("send_timeout_seconds", float),
}


def apply_overrides(base: DeliveryPolicy, stored: Dict[str, Optional[str]]) -> DeliveryPolicy:
    """Overlay ``notifications.*`` key/value pairs onto ``base``, one field at a time."""
    policy = base
    for key, raw in stored.items():
        if not key.startswith(SETTINGS_PREFIX) or raw is None:
            continue
        known = _KEYS.get(key[len(SETTINGS_PREFIX):])
        if known is None:
            continue
        field_name, parse = known
        try:
            policy = replace(policy, **{field_name: parse(raw.strip())})
        except ValueError as exc:
            logger.warning("Ignoring setting %s=%r: %s", key, raw, exc)
    return policy


async def load_policy(
    session_factory: async_sessionmaker[AsyncSession],
    base: Optional[DeliveryPolicy] = None,
) -> DeliveryPolicy:
    """Read the settings table and return the effective policy."""
    async with session_scope(session_factory, "load_policy") as session:
        result = await session.execute(
            select(SettingRow.key, SettingRow.value).where(SettingRow.key.like(f"{SETTINGS_PREFIX}%"))
        )
        stored = {k: v for k, v in result.all()}

    policy = apply_overrides(base or DeliveryPolicy.from_settings(), stored)
    logger.info(
        "Delivery policy: retries=%d workers=%d batch=%d rate=%d/min backoff=%s",
        policy.max_retries, policy.queue_workers, policy.batch_size,
        policy.rate_limit_per_min, policy.retry_backoff.value,
    )
    return policy
