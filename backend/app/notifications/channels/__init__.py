"""
channels — Per-channel delivery backends.

Each channel class implements NotificationChannel:
    send(recipient, subject, body, metadata) → None or raises ChannelSendError

Channels are stateless apart from their own configuration. Retry logic
lives in the delivery worker, health tracking in the channel manager.
"""

from backend.app.notifications.channels.base import HTTPChannel, NotificationChannel
from backend.app.notifications.channels.chat import DiscordChannel, SlackChannel, TelegramChannel
from backend.app.notifications.channels.email_smtp import EmailChannel
from backend.app.notifications.channels.push import GotifyChannel, PushoverChannel
from backend.app.notifications.channels.sms import TwilioSMSChannel
from backend.app.notifications.channels.webhook import WebhookChannel

# Implementations shipped with the service, by catalog key
IMPLEMENTATIONS = {
    cls.channel_type: cls
    for cls in (
        EmailChannel,
        WebhookChannel,
        SlackChannel,
        DiscordChannel,
        TelegramChannel,
        TwilioSMSChannel,
        GotifyChannel,
        PushoverChannel,
    )
}

__all__ = [
    "NotificationChannel",
    "HTTPChannel",
    "EmailChannel",
    "WebhookChannel",
    "SlackChannel",
    "DiscordChannel",
    "TelegramChannel",
    "TwilioSMSChannel",
    "GotifyChannel",
    "PushoverChannel",
    "IMPLEMENTATIONS",
]
