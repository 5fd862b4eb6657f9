"""
chat.py — Chat-app channels (Slack, Discord, Telegram).

    Slack     incoming webhook    POST {text}
    Discord   channel webhook     POST {content, username}
    Telegram  Bot API             POST /bot<token>/sendMessage {chat_id, text}

For the two webhook services the webhook URL already identifies the
destination, so ``recipient`` is informational. Telegram needs a chat id,
which is what recipient resolution produces for that channel.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

from backend.app.core.errors import ChannelSendError
from backend.app.notifications.channels.base import HTTPChannel

logger = logging.getLogger(__name__)

DISCORD_MAX_CONTENT = 2000
TELEGRAM_API = "https://api.telegram.org"


def _format_text(subject: str, body: str) -> str:
    return f"*{subject}*\n{body}" if subject else body


class SlackChannel(HTTPChannel):
    channel_type = "slack"
    display_name = "Slack"
    required_keys = ("webhook_url",)

    async def send(
        self,
        recipient: str,
        subject: str,
        body: str,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self._require_enabled()
        payload = {"text": _format_text(subject, body)}
        if self.config.get("channel"):
            payload["channel"] = self.config["channel"]
        await self._post(self.config["webhook_url"], json=payload)
        logger.info("[SLACK] Posted '%s'", subject)


class DiscordChannel(HTTPChannel):
    channel_type = "discord"
    display_name = "Discord"
    required_keys = ("webhook_url",)

    async def send(
        self,
        recipient: str,
        subject: str,
        body: str,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self._require_enabled()
        content = f"**{subject}**\n{body}" if subject else body
        if len(content) > DISCORD_MAX_CONTENT:
            content = content[: DISCORD_MAX_CONTENT - 3] + "..."
        await self._post(
            self.config["webhook_url"],
            json={"content": content, "username": self.config.get("username", "Weather Alerts")},
        )
        logger.info("[DISCORD] Posted '%s'", subject)


class TelegramChannel(HTTPChannel):
    channel_type = "telegram"
    display_name = "Telegram"
    required_keys = ("bot_token",)

    async def send(
        self,
        recipient: str,
        subject: str,
        body: str,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self._require_enabled()
        chat_id = recipient or self.config.get("chat_id")
        if not chat_id:
            raise ChannelSendError(self.channel_type, "no chat_id to deliver to")

        base = self.config.get("api_base", TELEGRAM_API).rstrip("/")
        response = await self._post(
            f"{base}/bot{self.config['bot_token']}/sendMessage",
            json={"chat_id": chat_id, "text": _format_text(subject, body), "parse_mode": "Markdown"},
        )
        # The Bot API answers 200 with {"ok": false} for some rejections
        data = response.json()
        if not data.get("ok", False):
            raise ChannelSendError(
                self.channel_type, f"telegram rejected message: {data.get('description', 'unknown error')}",
            )
        logger.info("[TELEGRAM] → chat %s: '%s'", chat_id, subject)
