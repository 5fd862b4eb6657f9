"""
recipients.py — Turn a queue entry into a channel-specific address.

Resolution order:
    1. the user's enabled preference for this channel, if it has an address
    2. for the default email channel, the user's account email
    3. ``variables["recipient"]``
    4. RecipientUnresolvedError (a delivery failure; consumes a retry)

Steps 1-2 only apply to entries that reference a user.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.app.core.database import session_scope
from backend.app.core.errors import RecipientUnresolvedError
from backend.app.notifications.models import DEFAULT_EMAIL_CHANNEL, QueueEntry
from backend.app.notifications.orm import UserNotificationPreferenceRow, UserRow

logger = logging.getLogger(__name__)


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


class RecipientResolver:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        default_email_channel: str = DEFAULT_EMAIL_CHANNEL,
    ):
        self._session_factory = session_factory
        self.default_email_channel = default_email_channel

    async def resolve(self, entry: QueueEntry) -> str:
        if entry.user_id is not None:
            address = await self._from_user(entry.user_id, entry.channel_type)
            if address:
                return address

        address = _text(entry.variables.get("recipient"))
        if address:
            return address

        raise RecipientUnresolvedError(entry.channel_type, entry.user_id)

    async def _from_user(self, user_id: int, channel_type: str) -> Optional[str]:
        pref = UserNotificationPreferenceRow
        async with session_scope(self._session_factory, "resolve_recipient") as session:
            config = (await session.execute(
                select(pref.config)
                .where(
                    pref.user_id == user_id,
                    pref.channel_type == channel_type,
                    pref.enabled.is_(True),
                )
                .limit(1)
            )).scalar_one_or_none()

            address = _text((config or {}).get("address")) if isinstance(config, dict) else None
            if address:
                return address

            if channel_type == self.default_email_channel:
                email = (await session.execute(
                    select(UserRow.email).where(UserRow.id == user_id)
                )).scalar_one_or_none()
                if _text(email):
                    logger.debug("Using account email for user %d", user_id)
                    return _text(email)

        return None
