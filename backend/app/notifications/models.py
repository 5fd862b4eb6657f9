"""
models.py — Shared data structures for the notification delivery pipeline.

Defines:
    • ChannelHealth   — live state of a configured channel
    • DeliveryState   — queue entry state machine
    • HistoryStatus   — outcome recorded per delivery attempt
    • ConfigField / ChannelDefinition — static catalog entries
    • QueueEntry      — detached snapshot of a queue row handed to workers
    • ChannelStats / QueueStats / HistoryPage — admin read models

═══════════════════════════════════════════════════════════════════════════
QUEUE ENTRY STATE MACHINE
═══════════════════════════════════════════════════════════════════════════

    created ──┐
    queued  ──┼──(claim)──► sending ──► delivered              (terminal)
    failed  ──┘                │
        ▲                      ├──► failed  (retry_count < max, next_retry_at set)
        └──────────────────────┘
                               └──► dead_letter                 (terminal*)

    * an operator requeue moves dead_letter → queued with counters reset.

═══════════════════════════════════════════════════════════════════════════
CHANNEL HEALTH
═══════════════════════════════════════════════════════════════════════════

``enabled`` is operator intent, ``state`` is observed health. After five
consecutive failures ``state`` trips to FAILED while ``enabled`` stays as
configured; one recorded success clears the counter.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


# ═══════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════

class ChannelHealth(str, Enum):
    """Observed state of a configured channel."""
    DISABLED = "disabled"
    ENABLED  = "enabled"
    TESTING  = "testing"
    FAILED   = "failed"


class DeliveryState(str, Enum):
    """Queue entry lifecycle."""
    CREATED     = "created"
    QUEUED      = "queued"
    SENDING     = "sending"
    DELIVERED   = "delivered"
    FAILED      = "failed"
    DEAD_LETTER = "dead_letter"


class HistoryStatus(str, Enum):
    """Outcome of one delivery attempt."""
    DELIVERED   = "delivered"
    FAILED      = "failed"
    DEAD_LETTER = "dead_letter"


class FieldKind(str, Enum):
    """Input kind of a channel configuration field."""
    TEXT     = "text"
    PASSWORD = "password"
    NUMBER   = "number"
    BOOLEAN  = "boolean"
    SELECT   = "select"
    URL      = "url"


# States the worker may pick up
CLAIMABLE_STATES: Tuple[DeliveryState, ...] = (
    DeliveryState.CREATED,
    DeliveryState.QUEUED,
    DeliveryState.FAILED,
)

TERMINAL_STATES: Tuple[DeliveryState, ...] = (
    DeliveryState.DELIVERED,
    DeliveryState.DEAD_LETTER,
)

# Consecutive failures that trip a channel to FAILED
FAILURE_THRESHOLD = 5

DEFAULT_EMAIL_CHANNEL = "email"


def utcnow() -> datetime:
    """Naive UTC timestamp, matching what the store round-trips."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ═══════════════════════════════════════════════════════════════════════════
# Catalog
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ConfigField:
    """One configuration input of a channel definition."""
    key: str
    label: str
    kind: FieldKind = FieldKind.TEXT
    required: bool = False
    default: Optional[str] = None
    placeholder: str = ""
    help_text: str = ""
    options: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "key": self.key,
            "label": self.label,
            "type": self.kind.value,
            "required": self.required,
            "default_value": self.default,
            "placeholder": self.placeholder,
            "help_text": self.help_text,
        }
        if self.options:
            d["options"] = list(self.options)
        return d


@dataclass(frozen=True)
class ChannelDefinition:
    """Static catalog entry describing a channel type and its config schema."""
    type: str
    name: str
    category: str
    description: str = ""
    config_fields: Tuple[ConfigField, ...] = ()

    def get_field(self, key: str) -> Optional[ConfigField]:
        for f in self.config_fields:
            if f.key == key:
                return f
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "name": self.name,
            "category": self.category,
            "description": self.description,
            "config_fields": [f.to_dict() for f in self.config_fields],
        }


# ═══════════════════════════════════════════════════════════════════════════
# Read models
# ═══════════════════════════════════════════════════════════════════════════

def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class QueueEntry:
    """
    Detached copy of a ``notification_queue`` row.

    Workers receive these from the atomic claim so no ORM session has to
    stay open across the network call to the channel.
    """
    id: int
    channel_type: str
    subject: str
    body: str
    priority: int = 5
    state: DeliveryState = DeliveryState.CREATED
    user_id: Optional[int] = None
    template_id: Optional[int] = None
    variables: Dict[str, Any] = field(default_factory=dict)
    retry_count: int = 0
    max_retries: int = 3
    next_retry_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "channel_type": self.channel_type,
            "template_id": self.template_id,
            "priority": self.priority,
            "state": self.state.value,
            "subject": self.subject,
            "body": self.body,
            "variables": self.variables,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "next_retry_at": _iso(self.next_retry_at),
            "delivered_at": _iso(self.delivered_at),
            "failed_at": _iso(self.failed_at),
            "error_message": self.error_message,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


@dataclass
class ChannelStats:
    """Health snapshot for one configured channel."""
    channel_type: str
    enabled: bool
    state: ChannelHealth
    failure_count: int = 0
    last_test_at: Optional[datetime] = None
    last_success_at: Optional[datetime] = None
    last_error: Optional[str] = None
    channel_name: str = ""
    implemented: bool = False

    @property
    def dispatchable(self) -> bool:
        return self.implemented and self.enabled and self.state == ChannelHealth.ENABLED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "channel_type": self.channel_type,
            "channel_name": self.channel_name,
            "implemented": self.implemented,
            "enabled": self.enabled,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "last_test_at": _iso(self.last_test_at),
            "last_success_at": _iso(self.last_success_at),
            "last_error": self.last_error,
        }


@dataclass
class QueueStats:
    """Aggregate queue counters for the operator dashboard."""
    by_state: Dict[str, int] = field(default_factory=dict)
    by_channel: Dict[str, int] = field(default_factory=dict)
    pending: int = 0
    dead_letters: int = 0

    @property
    def total(self) -> int:
        return sum(self.by_state.values())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "by_state": self.by_state,
            "by_channel": self.by_channel,
            "pending": self.pending,
            "dead_letters": self.dead_letters,
        }


@dataclass
class HistoryItem:
    id: int
    queue_id: Optional[int]
    user_id: Optional[int]
    channel_type: str
    status: HistoryStatus
    subject: str
    sent_at: datetime
    delivered_at: Optional[datetime] = None
    error_message: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "queue_id": self.queue_id,
            "user_id": self.user_id,
            "channel_type": self.channel_type,
            "status": self.status.value,
            "subject": self.subject,
            "sent_at": _iso(self.sent_at),
            "delivered_at": _iso(self.delivered_at),
            "error_message": self.error_message,
            "metadata": self.metadata,
        }


@dataclass
class HistoryPage:
    items: List[HistoryItem]
    total: int
    limit: int
    offset: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "items": [i.to_dict() for i in self.items],
            "total": self.total,
            "limit": self.limit,
            "offset": self.offset,
        }
