"""
Tests for the channel implementations.

HTTP channels run against httpx.MockTransport, email against a patched
smtplib.SMTP, so nothing leaves the process.

Covers:
    - Base contract: is_enabled, validate_config, test() message
    - Webhook payload, secret header, HTTP error mapping
    - Slack / Discord / Telegram payloads, Telegram ok=false rejection
    - Twilio form post, basic auth, E.164 check
    - Gotify and Pushover priority mapping
    - Email via SMTP with STARTTLS + login, error mapping

Run with: pytest tests/test_channels.py -v
"""

import base64
import json
import smtplib
from unittest.mock import MagicMock, patch
from urllib.parse import parse_qs

import httpx
import pytest

from backend.app.core.errors import ChannelSendError, ConfigValidationError
from backend.app.notifications.channels import (
    DiscordChannel,
    EmailChannel,
    GotifyChannel,
    PushoverChannel,
    SlackChannel,
    TelegramChannel,
    TwilioSMSChannel,
    WebhookChannel,
)
from backend.app.notifications.channels.base import TEST_BODY, TEST_SUBJECT
from backend.app.notifications.channels.sms import format_sms


# ═══════════════════════════════════════════════════════════════════════════
# Helpers
# ═══════════════════════════════════════════════════════════════════════════

def _make_client(requests, status_code=200, payload=None):
    """AsyncClient whose transport records each request and answers with a fixed response."""
    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(status_code, json=payload if payload is not None else {"ok": True})
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _form(request: httpx.Request) -> dict:
    return {k: v[0] for k, v in parse_qs(request.content.decode()).items()}


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Base contract
# ═══════════════════════════════════════════════════════════════════════════

class TestChannelContract:
    """Shared NotificationChannel behaviour."""

    def test_is_enabled_requires_all_keys(self):
        assert not WebhookChannel({}).is_enabled()
        assert not WebhookChannel({"url": ""}).is_enabled()
        assert WebhookChannel({"url": "https://example.com"}).is_enabled()

    def test_type_and_name(self):
        channel = SlackChannel({})
        assert channel.get_type() == "slack"
        assert channel.get_name() == "Slack"

    async def test_send_when_not_configured(self):
        with pytest.raises(ChannelSendError, match="not enabled"):
            await WebhookChannel({}).send("x", "s", "b")

    def test_validate_config_missing_key(self):
        with pytest.raises(ConfigValidationError):
            TwilioSMSChannel().validate_config({"account_sid": "AC1", "auth_token": "t"})

    async def test_test_sends_fixed_message(self):
        requests = []
        async with _make_client(requests) as client:
            channel = WebhookChannel({"url": "https://hooks.example.com/in"}, client=client)
            await channel.test("ops")
        body = json.loads(requests[0].content)
        assert body["subject"] == TEST_SUBJECT
        assert body["body"] == TEST_BODY
        assert body["metadata"] == {"test": True}


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Webhook
# ═══════════════════════════════════════════════════════════════════════════

class TestWebhookChannel:
    """Generic JSON webhook."""

    async def test_payload_and_secret(self):
        requests = []
        async with _make_client(requests) as client:
            channel = WebhookChannel(
                {"url": "https://hooks.example.com/in", "secret": "s3cret"}, client=client,
            )
            await channel.send("ops", "Flood watch", "River rising", {"queue_id": 4})

        request = requests[0]
        assert str(request.url) == "https://hooks.example.com/in"
        assert request.headers["X-Webhook-Secret"] == "s3cret"
        assert json.loads(request.content) == {
            "recipient": "ops",
            "subject": "Flood watch",
            "body": "River rising",
            "metadata": {"queue_id": 4},
        }

    async def test_http_error_mapped(self):
        async with _make_client([], status_code=500) as client:
            channel = WebhookChannel({"url": "https://hooks.example.com/in"}, client=client)
            with pytest.raises(ChannelSendError) as exc_info:
                await channel.send("ops", "s", "b")
        assert "HTTP 500" in exc_info.value.message
        assert exc_info.value.details["status_code"] == 500

    async def test_transport_error_mapped(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            channel = WebhookChannel({"url": "https://hooks.example.com/in"}, client=client)
            with pytest.raises(ChannelSendError, match="request failed"):
                await channel.send("ops", "s", "b")

    def test_validate_config_scheme(self):
        with pytest.raises(ConfigValidationError):
            WebhookChannel().validate_config({"url": "hooks.example.com"})
        WebhookChannel().validate_config({"url": "http://hooks.example.com"})


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: Chat apps
# ═══════════════════════════════════════════════════════════════════════════

class TestChatChannels:
    """Slack, Discord, Telegram."""

    async def test_slack_payload(self):
        requests = []
        async with _make_client(requests) as client:
            channel = SlackChannel(
                {"webhook_url": "https://hooks.slack.com/services/T/B/x", "channel": "#weather"},
                client=client,
            )
            await channel.send("", "Heat advisory", "Stay hydrated")
        assert json.loads(requests[0].content) == {
            "text": "*Heat advisory*\nStay hydrated",
            "channel": "#weather",
        }

    async def test_discord_truncates(self):
        requests = []
        async with _make_client(requests) as client:
            channel = DiscordChannel({"webhook_url": "https://discord.com/api/webhooks/1/x"}, client=client)
            await channel.send("", "Storm", "x" * 5000)
        payload = json.loads(requests[0].content)
        assert len(payload["content"]) == 2000
        assert payload["content"].endswith("...")
        assert payload["username"] == "Weather Alerts"

    async def test_telegram_posts_to_bot_api(self):
        requests = []
        async with _make_client(requests, payload={"ok": True, "result": {}}) as client:
            channel = TelegramChannel({"bot_token": "123:abc"}, client=client)
            await channel.send("998877", "Frost", "Cover plants")
        request = requests[0]
        assert str(request.url) == "https://api.telegram.org/bot123:abc/sendMessage"
        assert json.loads(request.content)["chat_id"] == "998877"

    async def test_telegram_falls_back_to_config_chat(self):
        requests = []
        async with _make_client(requests) as client:
            channel = TelegramChannel({"bot_token": "123:abc", "chat_id": "-100"}, client=client)
            await channel.send("", "Frost", "Cover plants")
        assert json.loads(requests[0].content)["chat_id"] == "-100"

    async def test_telegram_without_chat(self):
        with pytest.raises(ChannelSendError, match="chat_id"):
            await TelegramChannel({"bot_token": "123:abc"}).send("", "s", "b")

    async def test_telegram_rejection(self):
        async with _make_client([], payload={"ok": False, "description": "chat not found"}) as client:
            channel = TelegramChannel({"bot_token": "123:abc"}, client=client)
            with pytest.raises(ChannelSendError, match="chat not found"):
                await channel.send("1", "s", "b")


# ═══════════════════════════════════════════════════════════════════════════
# Section 4: SMS
# ═══════════════════════════════════════════════════════════════════════════

class TestTwilioSMS:
    """Twilio Messages API."""

    CONFIG = {"account_sid": "AC123", "auth_token": "tok", "from_number": "+15550001111"}

    async def test_form_post_with_basic_auth(self):
        requests = []
        async with _make_client(requests, status_code=201, payload={"sid": "SM1"}) as client:
            channel = TwilioSMSChannel(self.CONFIG, client=client)
            await channel.send("+447700900123", "Gale", "Winds 80 km/h")

        request = requests[0]
        assert str(request.url) == "https://api.twilio.com/2010-04-01/Accounts/AC123/Messages.json"
        assert _form(request) == {"To": "+447700900123", "From": "+15550001111", "Body": "[Gale] Winds 80 km/h"}
        expected = "Basic " + base64.b64encode(b"AC123:tok").decode()
        assert request.headers["Authorization"] == expected

    async def test_invalid_number(self):
        with pytest.raises(ChannelSendError, match="invalid phone number"):
            await TwilioSMSChannel(self.CONFIG).send("0770 090", "s", "b")

    def test_validate_from_number(self):
        with pytest.raises(ConfigValidationError):
            TwilioSMSChannel().validate_config({**self.CONFIG, "from_number": "555-0001"})

    def test_format_sms_caps_length(self):
        text = format_sms("Alert", "y" * 1000)
        assert len(text) == 640
        assert text.startswith("[Alert] ")
        assert format_sms("", "short") == "short"


# ═══════════════════════════════════════════════════════════════════════════
# Section 5: Push
# ═══════════════════════════════════════════════════════════════════════════

class TestPushChannels:
    """Gotify and Pushover."""

    async def test_gotify_priority_clamped(self):
        requests = []
        async with _make_client(requests) as client:
            channel = GotifyChannel({"url": "https://gotify.example.com/", "token": "T"}, client=client)
            await channel.send("", "Tornado", "Take shelter", {"priority": 15})

        request = requests[0]
        assert request.url.path == "/message"
        assert request.url.params["token"] == "T"
        assert json.loads(request.content) == {"title": "Tornado", "message": "Take shelter", "priority": 10}

    @pytest.mark.parametrize("queue_priority,expected", [(9, "1"), (5, "0"), (1, "-1")])
    async def test_pushover_priority_mapping(self, queue_priority, expected):
        requests = []
        async with _make_client(requests, payload={"status": 1}) as client:
            channel = PushoverChannel({"app_token": "A"}, client=client)
            await channel.send("user-key", "Fog", "Low visibility", {"priority": queue_priority})

        form = _form(requests[0])
        assert form["priority"] == expected
        assert form["user"] == "user-key"
        assert form["token"] == "A"

    async def test_pushover_needs_user_key(self):
        with pytest.raises(ChannelSendError, match="user key"):
            await PushoverChannel({"app_token": "A"}).send("", "s", "b")


# ═══════════════════════════════════════════════════════════════════════════
# Section 6: Email
# ═══════════════════════════════════════════════════════════════════════════

class TestEmailChannel:
    """SMTP delivery through a patched smtplib."""

    CONFIG = {
        "host": "smtp.example.com",
        "port": 587,
        "username": "alerts",
        "password": "pw",
        "from_address": "alerts@example.com",
        "use_tls": True,
    }

    async def test_sends_with_tls_and_login(self):
        with patch("backend.app.notifications.channels.email_smtp.smtplib.SMTP") as smtp_cls:
            client = smtp_cls.return_value.__enter__.return_value
            await EmailChannel(self.CONFIG).send("user@example.com", "Hail", "Park indoors")

        smtp_cls.assert_called_once_with("smtp.example.com", 587, timeout=EmailChannel.timeout_seconds)
        client.starttls.assert_called_once()
        client.login.assert_called_once_with("alerts", "pw")
        msg = client.send_message.call_args[0][0]
        assert msg["To"] == "user@example.com"
        assert msg["Subject"] == "Hail"

    async def test_no_login_without_username(self):
        config = {**self.CONFIG, "username": "", "use_tls": "false"}
        with patch("backend.app.notifications.channels.email_smtp.smtplib.SMTP") as smtp_cls:
            client = smtp_cls.return_value.__enter__.return_value
            await EmailChannel(config).send("user@example.com", "Hail", "Park indoors")
        client.starttls.assert_not_called()
        client.login.assert_not_called()

    async def test_smtp_error_mapped(self):
        with patch("backend.app.notifications.channels.email_smtp.smtplib.SMTP") as smtp_cls:
            client = smtp_cls.return_value.__enter__.return_value
            client.send_message.side_effect = smtplib.SMTPRecipientsRefused({})
            with pytest.raises(ChannelSendError, match="failed to send email"):
                await EmailChannel(self.CONFIG).send("user@example.com", "s", "b")

    async def test_rejects_bad_address(self):
        smtp = MagicMock()
        with patch("backend.app.notifications.channels.email_smtp.smtplib.SMTP", smtp):
            with pytest.raises(ChannelSendError, match="invalid email"):
                await EmailChannel(self.CONFIG).send("not-an-address", "s", "b")
        smtp.assert_not_called()

    def test_validate_port(self):
        with pytest.raises(ConfigValidationError):
            EmailChannel().validate_config({**self.CONFIG, "port": 70000})
        with pytest.raises(ConfigValidationError):
            EmailChannel().validate_config({**self.CONFIG, "port": "abc"})
