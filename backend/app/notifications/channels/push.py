"""
push.py — Push notification channels (Gotify, Pushover).

Both map queue priority onto the provider's own priority scale so that
severe-weather entries (high queue priority) surface as urgent pushes.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

from backend.app.core.errors import ChannelSendError
from backend.app.notifications.channels.base import HTTPChannel

logger = logging.getLogger(__name__)

PUSHOVER_API = "https://api.pushover.net/1/messages.json"


def _queue_priority(metadata: Optional[Mapping[str, Any]]) -> int:
    try:
        return int((metadata or {}).get("priority", 5))
    except (TypeError, ValueError):
        return 5


class GotifyChannel(HTTPChannel):
    channel_type = "gotify"
    display_name = "Gotify"
    required_keys = ("url", "token")

    async def send(
        self,
        recipient: str,
        subject: str,
        body: str,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self._require_enabled()
        # Gotify priorities run 0-10, same range as ours
        priority = max(0, min(10, _queue_priority(metadata)))
        await self._post(
            f"{self.config['url'].rstrip('/')}/message",
            params={"token": self.config["token"]},
            json={"title": subject, "message": body, "priority": priority},
        )
        logger.info("[GOTIFY] Pushed '%s' (priority %d)", subject, priority)


class PushoverChannel(HTTPChannel):
    channel_type = "pushover"
    display_name = "Pushover"
    required_keys = ("app_token",)

    async def send(
        self,
        recipient: str,
        subject: str,
        body: str,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self._require_enabled()
        if not recipient:
            raise ChannelSendError(self.channel_type, "no pushover user key")

        queue_priority = _queue_priority(metadata)
        # Pushover: -2 lowest … 1 high (2 needs retry/expire params, never used here)
        if queue_priority >= 8:
            priority = 1
        elif queue_priority <= 2:
            priority = -1
        else:
            priority = 0

        await self._post(
            self.config.get("api_url", PUSHOVER_API),
            data={
                "token": self.config["app_token"],
                "user": recipient,
                "title": subject,
                "message": body,
                "priority": priority,
            },
        )
        logger.info("[PUSHOVER] → %s: '%s'", recipient, subject)
