"""
ORM tables for the notification pipeline.

    notification_channels          one row per catalog channel type (health + config)
    notification_queue             one row per notification to deliver
    notification_history           one row per delivery attempt (append-only)
    user_notification_preferences  per-user, per-channel address overrides
    users                          read-only here; owned by the account layer
    settings                       runtime key/value policy store
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from backend.app.core.database import Base


class NotificationChannelRow(Base):
    __tablename__ = "notification_channels"

    id = Column(Integer, primary_key=True, index=True)
    channel_type = Column(String(64), unique=True, nullable=False)
    channel_name = Column(String(128), nullable=False)
    enabled = Column(Boolean, default=False, nullable=False)
    state = Column(String(16), default="disabled", nullable=False)  # disabled | enabled | testing | failed
    config = Column(JSON, nullable=True)
    last_test_at = Column(DateTime, nullable=True)
    last_test_result = Column(String(16), nullable=True)
    last_error = Column(Text, nullable=True)
    last_success_at = Column(DateTime, nullable=True)
    failure_count = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class NotificationQueueRow(Base):
    __tablename__ = "notification_queue"
    __table_args__ = (
        # Serves the claim query: eligible states ordered by priority, then age
        Index("idx_nq_claim", "state", "priority", "created_at"),
        Index("idx_nq_retry", "next_retry_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=True, index=True)
    channel_type = Column(String(64), nullable=False, index=True)
    template_id = Column(Integer, nullable=True)
    priority = Column(Integer, default=5, nullable=False)
    state = Column(String(16), default="created", nullable=False)
    subject = Column(Text, nullable=True)
    body = Column(Text, nullable=False)
    variables = Column(JSON, nullable=True)
    retry_count = Column(Integer, default=0, nullable=False)
    max_retries = Column(Integer, default=3, nullable=False)
    next_retry_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)
    failed_at = Column(DateTime, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class NotificationHistoryRow(Base):
    __tablename__ = "notification_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    queue_id = Column(Integer, nullable=True, index=True)
    user_id = Column(Integer, nullable=True, index=True)
    channel_type = Column(String(64), nullable=False)
    status = Column(String(16), nullable=False, index=True)
    subject = Column(Text, nullable=True)
    body = Column(Text, nullable=True)
    sent_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    delivered_at = Column(DateTime, nullable=True)
    error_message = Column(Text, nullable=True)
    # "metadata" is reserved on declarative classes
    meta = Column("metadata", JSON, nullable=True)


class UserRow(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True)
    username = Column(String(64), unique=True, nullable=False)
    email = Column(String(255), nullable=True)


class UserNotificationPreferenceRow(Base):
    __tablename__ = "user_notification_preferences"
    __table_args__ = (UniqueConstraint("user_id", "channel_type"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    channel_type = Column(String(64), nullable=False)
    enabled = Column(Boolean, default=True, nullable=False)
    config = Column(JSON, nullable=True)  # {"address": "..."}


class SettingRow(Base):
    __tablename__ = "settings"

    key = Column(String(128), primary_key=True)
    value = Column(Text, nullable=True)
