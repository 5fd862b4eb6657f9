"""
registry.py — Channel catalog and in-process implementation registry.

Two distinct things live here:

    CHANNEL_DEFINITIONS   static catalog of every channel type the service
                          can advertise, with the config schema that drives
                          the admin configuration form.
    ChannelRegistry       the live type → implementation lookup. Only types
                          with a registered implementation can actually be
                          dispatched; the rest are catalog placeholders.

The registry is an ordinary object built at startup and handed to the
channel manager and the delivery worker. Nothing here is a module global
apart from the immutable catalog.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple
from urllib.parse import urlparse

from backend.app.core.errors import ChannelNotFoundError, ConfigValidationError
from backend.app.notifications.channels.base import NotificationChannel
from backend.app.notifications.models import ChannelDefinition, ConfigField, FieldKind

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Catalog
# ═══════════════════════════════════════════════════════════════════════════

def _placeholder(type_: str, name: str, category: str, description: str) -> ChannelDefinition:
    return ChannelDefinition(type=type_, name=name, category=category, description=description)


_EMAIL = ChannelDefinition(
    type="email",
    name="Email (SMTP)",
    category="email",
    description="Send notifications via email using SMTP",
    config_fields=(
        ConfigField("host", "SMTP Host", FieldKind.TEXT, required=True, placeholder="smtp.gmail.com"),
        ConfigField("port", "SMTP Port", FieldKind.NUMBER, required=True, default="587"),
        ConfigField("username", "Username", FieldKind.TEXT),
        ConfigField("password", "Password", FieldKind.PASSWORD),
        ConfigField("from_address", "From Address", FieldKind.TEXT, required=True,
                    placeholder="alerts@example.com"),
        ConfigField("use_tls", "Use TLS", FieldKind.BOOLEAN, default="true"),
    ),
)

_WEBHOOK = ChannelDefinition(
    type="webhook",
    name="Generic Webhook",
    category="webhook",
    description="Send notifications to custom webhook URL",
    config_fields=(
        ConfigField("url", "Webhook URL", FieldKind.URL, required=True,
                    placeholder="https://example.com/hooks/weather"),
        ConfigField("secret", "Shared Secret", FieldKind.PASSWORD,
                    help_text="Sent as the X-Webhook-Secret header"),
    ),
)

_SLACK = ChannelDefinition(
    type="slack",
    name="Slack",
    category="messaging",
    description="Send notifications to Slack channels",
    config_fields=(
        ConfigField("webhook_url", "Incoming Webhook URL", FieldKind.URL, required=True,
                    placeholder="https://hooks.slack.com/services/..."),
        ConfigField("channel", "Channel Override", FieldKind.TEXT, placeholder="#weather"),
    ),
)

_DISCORD = ChannelDefinition(
    type="discord",
    name="Discord",
    category="messaging",
    description="Send notifications to Discord servers",
    config_fields=(
        ConfigField("webhook_url", "Webhook URL", FieldKind.URL, required=True,
                    placeholder="https://discord.com/api/webhooks/..."),
        ConfigField("username", "Bot Username", FieldKind.TEXT, default="Weather Alerts"),
    ),
)

_TELEGRAM = ChannelDefinition(
    type="telegram",
    name="Telegram",
    category="messaging",
    description="Send notifications via Telegram bot",
    config_fields=(
        ConfigField("bot_token", "Bot Token", FieldKind.PASSWORD, required=True),
        ConfigField("chat_id", "Default Chat ID", FieldKind.TEXT,
                    help_text="Used when a user has no chat id of their own"),
    ),
)

_TWILIO = ChannelDefinition(
    type="twilio",
    name="Twilio SMS",
    category="sms",
    description="Send SMS via Twilio",
    config_fields=(
        ConfigField("account_sid", "Account SID", FieldKind.TEXT, required=True),
        ConfigField("auth_token", "Auth Token", FieldKind.PASSWORD, required=True),
        ConfigField("from_number", "From Number", FieldKind.TEXT, required=True,
                    placeholder="+15551234567"),
    ),
)

_GOTIFY = ChannelDefinition(
    type="gotify",
    name="Gotify",
    category="push",
    description="Send push notifications via Gotify",
    config_fields=(
        ConfigField("url", "Server URL", FieldKind.URL, required=True, placeholder="https://gotify.example.com"),
        ConfigField("token", "Application Token", FieldKind.PASSWORD, required=True),
    ),
)

_PUSHOVER = ChannelDefinition(
    type="pushover",
    name="Pushover",
    category="push",
    description="Send push notifications via Pushover",
    config_fields=(
        ConfigField("app_token", "Application Token", FieldKind.PASSWORD, required=True),
    ),
)


CHANNEL_DEFINITIONS: Tuple[ChannelDefinition, ...] = (
    # Email
    _EMAIL,
    # Messaging
    _SLACK,
    _DISCORD,
    _TELEGRAM,
    _placeholder("whatsapp", "WhatsApp Business", "messaging", "Send notifications via WhatsApp Business API"),
    _placeholder("msteams", "Microsoft Teams", "messaging", "Send notifications to Teams channels"),
    _placeholder("rocketchat", "Rocket.Chat", "messaging", "Send notifications to Rocket.Chat"),
    _placeholder("mattermost", "Mattermost", "messaging", "Send notifications to Mattermost"),
    _placeholder("matrix", "Matrix", "messaging", "Send notifications via Matrix protocol"),
    # SMS
    _TWILIO,
    _placeholder("nexmo", "Vonage (Nexmo) SMS", "sms", "Send SMS via Vonage"),
    _placeholder("aws_sns", "AWS SNS", "sms", "Send SMS via Amazon SNS"),
    _placeholder("plivo", "Plivo SMS", "sms", "Send SMS via Plivo"),
    _placeholder("messagebird", "MessageBird SMS", "sms", "Send SMS via MessageBird"),
    # Push
    _placeholder("fcm", "Firebase Cloud Messaging", "push", "Send push notifications via FCM"),
    _placeholder("apns", "Apple Push Notification", "push", "Send push notifications to iOS devices"),
    _placeholder("onesignal", "OneSignal", "push", "Send push notifications via OneSignal"),
    _PUSHOVER,
    _placeholder("pushbullet", "Pushbullet", "push", "Send notifications via Pushbullet"),
    _GOTIFY,
    # Webhooks
    _WEBHOOK,
    _placeholder("zapier", "Zapier", "webhook", "Trigger Zapier workflows"),
    _placeholder("ifttt", "IFTTT", "webhook", "Trigger IFTTT applets"),
    _placeholder("n8n", "n8n", "webhook", "Trigger n8n workflows"),
    # Voice
    _placeholder("twilio_voice", "Twilio Voice", "voice", "Make voice calls via Twilio"),
    _placeholder("aws_connect", "AWS Connect", "voice", "Make voice calls via Amazon Connect"),
    # Collaboration
    _placeholder("jira", "Jira", "collaboration", "Create Jira tickets"),
    _placeholder("trello", "Trello", "collaboration", "Create Trello cards"),
    _placeholder("asana", "Asana", "collaboration", "Create Asana tasks"),
    _placeholder("github", "GitHub Issues", "collaboration", "Create GitHub issues"),
    _placeholder("gitlab", "GitLab Issues", "collaboration", "Create GitLab issues"),
    # Monitoring
    _placeholder("pagerduty", "PagerDuty", "monitoring", "Create PagerDuty incidents"),
    _placeholder("opsgenie", "Opsgenie", "monitoring", "Create Opsgenie alerts"),
    _placeholder("datadog", "Datadog", "monitoring", "Send events to Datadog"),
    _placeholder("newrelic", "New Relic", "monitoring", "Send events to New Relic"),
    _placeholder("splunk", "Splunk", "monitoring", "Send events to Splunk"),
    _placeholder("elastic", "Elasticsearch", "monitoring", "Index notifications in Elasticsearch"),
    # Social
    _placeholder("twitter", "Twitter", "social", "Post notifications to Twitter"),
    _placeholder("mastodon", "Mastodon", "social", "Post notifications to Mastodon"),
)

_BY_TYPE: Dict[str, ChannelDefinition] = {d.type: d for d in CHANNEL_DEFINITIONS}


def get_definition(channel_type: str) -> Optional[ChannelDefinition]:
    return _BY_TYPE.get(channel_type)


def definitions_by_category(category: Optional[str] = None) -> Dict[str, List[ChannelDefinition]]:
    """Group catalog entries by category, preserving catalog order."""
    grouped: Dict[str, List[ChannelDefinition]] = {}
    for definition in CHANNEL_DEFINITIONS:
        if category and definition.category != category:
            continue
        grouped.setdefault(definition.category, []).append(definition)
    return grouped


# ═══════════════════════════════════════════════════════════════════════════
# Config schema validation
# ═══════════════════════════════════════════════════════════════════════════

_TRUE = {"true", "1", "yes", "on"}
_FALSE = {"false", "0", "no", "off"}


def _coerce(definition: ChannelDefinition, f: ConfigField, value: Any) -> Any:
    if f.kind == FieldKind.NUMBER:
        try:
            number = float(value)
        except (TypeError, ValueError):
            raise ConfigValidationError(definition.type, f"{f.key} must be a number", field=f.key)
        return int(number) if number.is_integer() else number

    if f.kind == FieldKind.BOOLEAN:
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in _TRUE:
            return True
        if text in _FALSE:
            return False
        raise ConfigValidationError(definition.type, f"{f.key} must be a boolean", field=f.key)

    if f.kind == FieldKind.SELECT:
        if f.options and str(value) not in f.options:
            raise ConfigValidationError(
                definition.type, f"{f.key} must be one of {', '.join(f.options)}", field=f.key,
            )
        return str(value)

    if f.kind == FieldKind.URL:
        parsed = urlparse(str(value))
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ConfigValidationError(definition.type, f"{f.key} must be an http(s) URL", field=f.key)
        return str(value)

    return value if isinstance(value, str) else str(value)


def validate_channel_config(
    definition: ChannelDefinition,
    config: Mapping[str, Any],
) -> Dict[str, Any]:
    """
    Check ``config`` against the definition's field list.

    Returns a normalised copy: defaults filled in, numbers and booleans
    coerced. Keys the definition does not declare are kept untouched so
    implementations can accept optional extras (e.g. ``api_base``).

    Raises:
        ConfigValidationError: on the first missing or malformed field.
    """
    cleaned: Dict[str, Any] = dict(config)
    for f in definition.config_fields:
        value = cleaned.get(f.key)
        if value in (None, ""):
            if f.default is not None:
                value = f.default
            elif f.required:
                raise ConfigValidationError(definition.type, f"missing required field: {f.key}", field=f.key)
            else:
                cleaned.pop(f.key, None)
                continue
        cleaned[f.key] = _coerce(definition, f, value)
    return cleaned


# ═══════════════════════════════════════════════════════════════════════════
# Implementation registry
# ═══════════════════════════════════════════════════════════════════════════

class ChannelRegistry:
    """Live ``channel_type → NotificationChannel`` lookup."""

    def __init__(self, channels: Optional[List[NotificationChannel]] = None):
        self._channels: Dict[str, NotificationChannel] = {}
        for channel in channels or []:
            self.register(channel)

    def register(self, channel: NotificationChannel) -> None:
        channel_type = channel.get_type()
        if channel_type in self._channels:
            logger.info("Replacing channel implementation for '%s'", channel_type)
        if channel_type not in _BY_TYPE:
            logger.warning("Registering '%s' which has no catalog definition", channel_type)
        self._channels[channel_type] = channel

    def unregister(self, channel_type: str) -> None:
        self._channels.pop(channel_type, None)

    def get(self, channel_type: str) -> NotificationChannel:
        try:
            return self._channels[channel_type]
        except KeyError:
            raise ChannelNotFoundError(channel_type) from None

    def types(self) -> List[str]:
        return sorted(self._channels)

    def __contains__(self, channel_type: object) -> bool:
        return channel_type in self._channels

    def __iter__(self) -> Iterator[NotificationChannel]:
        return iter(list(self._channels.values()))

    def __len__(self) -> int:
        return len(self._channels)
