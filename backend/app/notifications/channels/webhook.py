"""
webhook.py — Generic JSON webhook channel.

POSTs a JSON document to the configured URL:

    {
      "recipient": "...",
      "subject":   "...",
      "body":      "...",
      "metadata":  {...}
    }

Any 2xx response is a successful delivery. The recipient is passed through
untouched so receivers can route on it (e.g. a Zapier / n8n workflow).
"""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

from backend.app.core.errors import ConfigValidationError
from backend.app.notifications.channels.base import HTTPChannel

logger = logging.getLogger(__name__)


class WebhookChannel(HTTPChannel):
    channel_type = "webhook"
    display_name = "Generic Webhook"
    required_keys = ("url",)

    async def send(
        self,
        recipient: str,
        subject: str,
        body: str,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self._require_enabled()
        headers = {"Content-Type": "application/json"}
        secret = self.config.get("secret")
        if secret:
            headers["X-Webhook-Secret"] = str(secret)

        await self._post(
            self.config["url"],
            json={
                "recipient": recipient,
                "subject": subject,
                "body": body,
                "metadata": dict(metadata or {}),
            },
            headers=headers,
        )
        logger.info("[WEBHOOK] → %s (%s)", self.config["url"], recipient)

    def validate_config(self, config: Mapping[str, Any]) -> None:
        super().validate_config(config)
        if not str(config["url"]).startswith(("http://", "https://")):
            raise ConfigValidationError(self.channel_type, "url must be http(s)", field="url")
