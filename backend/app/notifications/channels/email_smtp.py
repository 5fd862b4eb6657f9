"""
email_smtp.py — Email delivery channel over SMTP.

Delivery mechanism:
    • smtplib with optional STARTTLS and login
    • plain text message built with email.message.EmailMessage
    • smtplib is blocking, so each send runs in a worker thread

Email is the default channel: entries for a known user fall back to the
user's primary address when no per-channel preference is stored.
"""

from __future__ import annotations

import asyncio
import logging
import smtplib
from email.message import EmailMessage
from typing import Any, Mapping, Optional

from backend.app.core.errors import ChannelSendError, ConfigValidationError
from backend.app.notifications.channels.base import NotificationChannel

logger = logging.getLogger(__name__)


class EmailChannel(NotificationChannel):
    """SMTP email channel."""

    channel_type = "email"
    display_name = "Email (SMTP)"
    required_keys = ("host", "port", "from_address")
    timeout_seconds = 20.0

    def _build_message(self, recipient: str, subject: str, body: str) -> EmailMessage:
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = self.config["from_address"]
        msg["To"] = recipient
        msg.set_content(body)
        return msg

    def _deliver(self, msg: EmailMessage) -> None:
        host = self.config["host"]
        port = int(self.config.get("port", 587))
        with smtplib.SMTP(host, port, timeout=self.timeout_seconds) as client:
            if _truthy(self.config.get("use_tls", True)):
                client.starttls()
            username = self.config.get("username")
            if username:
                client.login(username, self.config.get("password", ""))
            client.send_message(msg)

    async def send(
        self,
        recipient: str,
        subject: str,
        body: str,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self._require_enabled()
        if "@" not in recipient:
            raise ChannelSendError(self.channel_type, f"invalid email address: {recipient!r}")

        msg = self._build_message(recipient, subject, body)
        try:
            await asyncio.to_thread(self._deliver, msg)
        except (smtplib.SMTPException, OSError) as exc:
            raise ChannelSendError(self.channel_type, f"failed to send email: {exc}") from exc

        logger.info("[EMAIL] → %s: Subject='%s'", recipient, subject)

    def validate_config(self, config: Mapping[str, Any]) -> None:
        super().validate_config(config)
        try:
            port = int(config["port"])
        except (TypeError, ValueError):
            raise ConfigValidationError(self.channel_type, "port must be a number", field="port")
        if not 0 < port < 65536:
            raise ConfigValidationError(self.channel_type, "port out of range", field="port")


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)
