"""
base.py — The contract every delivery channel implements.

A channel is a strategy object: it owns its own configuration and nothing
else. Retry, health tracking and history live in the worker / manager, so
a channel only has to answer "did this one send succeed?" by returning
normally or raising.

    get_type()           catalog key ("email", "slack", ...)
    get_name()           display name
    is_enabled()         has enough configuration to attempt delivery
    send(...)            deliver one message; raise ChannelSendError on failure
    test(recipient)      deliver a fixed test message
    validate_config(c)   raise ConfigValidationError when c is unusable
"""

from __future__ import annotations

import abc
import logging
from typing import Any, Dict, Mapping, Optional

import httpx

from backend.app.core.errors import ChannelSendError, ConfigValidationError

logger = logging.getLogger(__name__)

TEST_SUBJECT = "Weather notification test"
TEST_BODY = "This is a test notification. If you received it, the channel is configured correctly."


class NotificationChannel(abc.ABC):
    """Abstract delivery channel."""

    channel_type: str = ""
    display_name: str = ""
    required_keys: tuple = ()

    def __init__(self, config: Optional[Mapping[str, Any]] = None):
        self.config: Dict[str, Any] = dict(config or {})

    def get_type(self) -> str:
        return self.channel_type

    def get_name(self) -> str:
        return self.display_name or self.channel_type

    def is_enabled(self) -> bool:
        return all(self.config.get(k) not in (None, "") for k in self.required_keys)

    @abc.abstractmethod
    async def send(
        self,
        recipient: str,
        subject: str,
        body: str,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> None:
        ...

    async def test(self, recipient: str) -> None:
        await self.send(recipient, TEST_SUBJECT, TEST_BODY, {"test": True})

    def validate_config(self, config: Mapping[str, Any]) -> None:
        for key in self.required_keys:
            if config.get(key) in (None, ""):
                raise ConfigValidationError(
                    self.channel_type, f"missing required field: {key}", field=key,
                )

    def _require_enabled(self) -> None:
        if not self.is_enabled():
            raise ChannelSendError(
                self.channel_type,
                f"{self.channel_type} channel not enabled: configuration incomplete",
            )

    def __repr__(self) -> str:
        return f"<{type(self).__name__} type={self.channel_type!r}>"


class HTTPChannel(NotificationChannel):
    """
    Base for channels that talk to an HTTP API.

    An ``httpx.AsyncClient`` may be injected (tests pass one built on
    ``httpx.MockTransport``); otherwise a short-lived client is opened per
    call with the channel's timeout.
    """

    timeout_seconds: float = 15.0

    def __init__(
        self,
        config: Optional[Mapping[str, Any]] = None,
        *,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(config)
        self._client = client

    async def _post(self, url: str, **kwargs: Any) -> httpx.Response:
        try:
            if self._client is not None:
                response = await self._client.post(url, **kwargs)
            else:
                async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                    response = await client.post(url, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise ChannelSendError(
                self.channel_type,
                f"{self.channel_type} returned HTTP {exc.response.status_code}",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.HTTPError as exc:
            raise ChannelSendError(
                self.channel_type, f"{self.channel_type} request failed: {exc}",
            ) from exc

        logger.debug("[%s] POST %s → %d", self.channel_type.upper(), url, response.status_code)
        return response
