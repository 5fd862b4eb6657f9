"""
Tests for the backoff strategies and the delivery policy.

Covers:
    - Exponential and linear delay sequences, including the 60-minute cap
    - Monotonic delays for both strategies
    - Strategy parsing
    - DeliveryPolicy validation and settings defaults
    - Settings-table overrides, with malformed values ignored
    - load_policy() against a real settings table

Run with: pytest tests/test_retry_policy.py -v
"""

from datetime import datetime, timedelta

import pytest

from backend.app.core.config import Settings
from backend.app.notifications.orm import SettingRow
from backend.app.notifications.policy import DeliveryPolicy, apply_overrides, load_policy
from backend.app.notifications.retry import (
    MAX_BACKOFF_MINUTES,
    BackoffStrategy,
    compute_backoff_minutes,
    next_retry_at,
)


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Backoff
# ═══════════════════════════════════════════════════════════════════════════

class TestBackoff:
    """Delay per retry for each strategy."""

    def test_exponential_sequence(self):
        delays = [compute_backoff_minutes(BackoffStrategy.EXPONENTIAL, n) for n in range(1, 8)]
        assert delays == [2, 4, 8, 16, 32, 60, 60]

    def test_linear_sequence(self):
        delays = [compute_backoff_minutes(BackoffStrategy.LINEAR, n) for n in range(1, 8)]
        assert delays == [5, 10, 15, 20, 25, 30, 35]

    def test_linear_capped(self):
        assert compute_backoff_minutes("linear", 12) == 60
        assert compute_backoff_minutes("linear", 100) == MAX_BACKOFF_MINUTES

    def test_exponential_huge_count_capped(self):
        assert compute_backoff_minutes("exponential", 10_000) == MAX_BACKOFF_MINUTES

    @pytest.mark.parametrize("strategy", list(BackoffStrategy))
    def test_monotonic(self, strategy):
        delays = [compute_backoff_minutes(strategy, n) for n in range(0, 30)]
        assert delays == sorted(delays)
        assert max(delays) <= MAX_BACKOFF_MINUTES

    def test_next_retry_at_offsets_now(self):
        now = datetime(2026, 3, 1, 12, 0)
        assert next_retry_at("exponential", 3, now) == now + timedelta(minutes=8)

    def test_parse_is_case_insensitive(self):
        assert BackoffStrategy.parse(" Linear ") is BackoffStrategy.LINEAR
        assert BackoffStrategy.parse(BackoffStrategy.EXPONENTIAL) is BackoffStrategy.EXPONENTIAL

    def test_parse_rejects_unknown(self):
        with pytest.raises(ValueError):
            BackoffStrategy.parse("fibonacci")


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Policy
# ═══════════════════════════════════════════════════════════════════════════

class TestDeliveryPolicy:
    """Defaults, validation and overrides."""

    def test_defaults(self):
        policy = DeliveryPolicy()
        assert policy.max_retries == 3
        assert policy.queue_workers == 5
        assert policy.batch_size == 100
        assert policy.rate_limit_per_min == 60
        assert policy.retry_backoff is BackoffStrategy.EXPONENTIAL

    def test_from_settings(self):
        s = Settings(NOTIFY_RETRY_MAX=7, NOTIFY_RETRY_BACKOFF="linear", NOTIFY_RATE_LIMIT_PER_MIN=0)
        policy = DeliveryPolicy.from_settings(s)
        assert policy.max_retries == 7
        assert policy.retry_backoff is BackoffStrategy.LINEAR
        assert policy.rate_limit_per_min == 0

    @pytest.mark.parametrize("kwargs", [
        {"max_retries": 0},
        {"queue_workers": 0},
        {"batch_size": 0},
        {"rate_limit_per_min": -1},
        {"send_timeout_seconds": 0},
    ])
    def test_invalid_values_rejected(self, kwargs):
        with pytest.raises(ValueError):
            DeliveryPolicy(**kwargs)

    def test_overrides_applied(self):
        policy = apply_overrides(DeliveryPolicy(), {
            "notifications.retry_max": "5",
            "notifications.retry_backoff": "linear",
            "notifications.send_timeout": "2.5",
            "unrelated.key": "x",
        })
        assert policy.max_retries == 5
        assert policy.retry_backoff is BackoffStrategy.LINEAR
        assert policy.send_timeout_seconds == 2.5

    def test_malformed_override_ignored(self):
        policy = apply_overrides(DeliveryPolicy(), {
            "notifications.batch_size": "lots",
            "notifications.queue_workers": "0",
            "notifications.retry_backoff": "fibonacci",
            "notifications.rate_limit_per_min": "10",
        })
        assert policy.batch_size == 100
        assert policy.queue_workers == 5
        assert policy.retry_backoff is BackoffStrategy.EXPONENTIAL
        assert policy.rate_limit_per_min == 10

    def test_to_dict(self):
        d = DeliveryPolicy(retry_backoff=BackoffStrategy.LINEAR).to_dict()
        assert d["retry_backoff"] == "linear"
        assert set(d) == {
            "max_retries", "queue_workers", "batch_size",
            "rate_limit_per_min", "retry_backoff", "send_timeout_seconds",
        }


class TestLoadPolicy:
    """Settings table round trip."""

    async def test_reads_settings_table(self, session_factory):
        async with session_factory() as session:
            session.add_all([
                SettingRow(key="notifications.retry_max", value="6"),
                SettingRow(key="notifications.batch_size", value="not-a-number"),
                SettingRow(key="site.title", value="Weather"),
            ])
            await session.commit()

        policy = await load_policy(session_factory, DeliveryPolicy(batch_size=20))
        assert policy.max_retries == 6
        assert policy.batch_size == 20

    async def test_empty_table_keeps_base(self, session_factory):
        base = DeliveryPolicy(queue_workers=2)
        assert await load_policy(session_factory, base) == base
