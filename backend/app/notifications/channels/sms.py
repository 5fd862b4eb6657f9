"""
sms.py — SMS delivery via the Twilio REST API.

    App → POST /2010-04-01/Accounts/{sid}/Messages.json → Carrier → Handset

Body is trimmed to fit a single GSM-7 segment where possible; longer text
is sent as a concatenated message by the gateway.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Mapping, Optional

from backend.app.core.errors import ChannelSendError, ConfigValidationError
from backend.app.notifications.channels.base import HTTPChannel

logger = logging.getLogger(__name__)

SMS_MAX_GSM7 = 160
SMS_MAX_SEGMENTS = 4
TWILIO_API = "https://api.twilio.com/2010-04-01"

_E164 = re.compile(r"^\+[1-9]\d{6,14}$")


def format_sms(subject: str, body: str) -> str:
    """Compose the SMS text, capped at SMS_MAX_SEGMENTS segments."""
    text = f"[{subject}] {body}" if subject else body
    limit = SMS_MAX_GSM7 * SMS_MAX_SEGMENTS
    if len(text) > limit:
        text = text[: limit - 3] + "..."
    return text


class TwilioSMSChannel(HTTPChannel):
    channel_type = "twilio"
    display_name = "Twilio SMS"
    required_keys = ("account_sid", "auth_token", "from_number")

    async def send(
        self,
        recipient: str,
        subject: str,
        body: str,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self._require_enabled()
        if not _E164.match(recipient or ""):
            raise ChannelSendError(self.channel_type, f"invalid phone number: {recipient!r}")

        sid = self.config["account_sid"]
        text = format_sms(subject, body)
        base = self.config.get("api_base", TWILIO_API).rstrip("/")
        await self._post(
            f"{base}/Accounts/{sid}/Messages.json",
            data={"To": recipient, "From": self.config["from_number"], "Body": text},
            auth=(sid, self.config["auth_token"]),
        )
        logger.info(
            "[SMS] → %s: %d chars, %d segment(s)",
            recipient, len(text), 1 + (len(text) - 1) // SMS_MAX_GSM7,
        )

    def validate_config(self, config: Mapping[str, Any]) -> None:
        super().validate_config(config)
        if not _E164.match(str(config["from_number"])):
            raise ConfigValidationError(
                self.channel_type, "from_number must be E.164 (+15551234567)", field="from_number",
            )
