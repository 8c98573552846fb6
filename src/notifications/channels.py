"""Notification Delivery Channels.

Concrete senders for each delivery channel. Every sender runs in demo mode
(logs instead of calling the provider) when its credentials aren't configured.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Protocol, runtime_checkable

from src.notifications.config import NotificationChannel, RecipientKind
from src.notifications.models import NotificationMessage

logger = logging.getLogger(__name__)


@dataclass
class ChannelResult:
    """Result of a channel delivery attempt."""
    channel: NotificationChannel = NotificationChannel.IN_APP
    success: bool = False
    provider_message_id: str = ""
    error: str = ""
    delivered_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    def to_dict(self) -> dict:
        return {
            "channel": self.channel.value,
            "success": self.success,
            "provider_message_id": self.provider_message_id,
            "error": self.error,
        }


@runtime_checkable
class ChannelSender(Protocol):
    """Protocol for channel senders."""

    @property
    def kind(self) -> NotificationChannel: ...

    async def send(self, message: NotificationMessage) -> ChannelResult: ...

    def is_configured(self) -> bool: ...


class EmailSender:
    """Email sender (demo mode)."""

    def __init__(self, smtp_host: str = "", from_address: str = "noreply@localhost"):
        self._demo = not bool(smtp_host)
        self.from_address = from_address

    @property
    def kind(self) -> NotificationChannel:
        return NotificationChannel.EMAIL

    def is_configured(self) -> bool:
        return not self._demo

    async def send(self, message: NotificationMessage) -> ChannelResult:
        to = message.recipient.address_for(self.kind)
        logger.info("[EMAIL] to=%s subject=%s", to, message.subject)
        return ChannelResult(channel=self.kind, success=True,
                             provider_message_id=f"email_{message.message_id}")


class InAppSender:
    """In-app sender; keeps delivered messages per recipient identifier."""

    def __init__(self, max_per_recipient: int = 100):
        self.max_per_recipient = max_per_recipient
        self._inbox: dict[str, list[NotificationMessage]] = {}

    @property
    def kind(self) -> NotificationChannel:
        return NotificationChannel.IN_APP

    def is_configured(self) -> bool:
        return True

    async def send(self, message: NotificationMessage) -> ChannelResult:
        box = self._inbox.setdefault(message.recipient.identifier, [])
        box.append(message)
        del box[:-self.max_per_recipient]
        return ChannelResult(channel=self.kind, success=True,
                             provider_message_id=f"inapp_{message.message_id}")

    def inbox(self, identifier: str) -> list[NotificationMessage]:
        return list(self._inbox.get(identifier, []))


class SlackSender:
    """Slack webhook sender (demo mode)."""

    def __init__(self, webhook_url: str = ""):
        self._demo = not bool(webhook_url)

    @property
    def kind(self) -> NotificationChannel:
        return NotificationChannel.SLACK

    def is_configured(self) -> bool:
        return not self._demo

    async def send(self, message: NotificationMessage) -> ChannelResult:
        logger.info("[SLACK] to=%s %s", message.recipient.address_for(self.kind), message.subject)
        return ChannelResult(channel=self.kind, success=True,
                             provider_message_id=f"slack_{message.message_id}")


class WebhookSender:
    """Generic HTTP webhook sender (demo mode)."""

    def __init__(self, default_url: str = ""):
        self._demo = not bool(default_url)
        self.default_url = default_url

    @property
    def kind(self) -> NotificationChannel:
        return NotificationChannel.WEBHOOK

    def is_configured(self) -> bool:
        return not self._demo

    def resolve_url(self, message: NotificationMessage) -> str:
        """Webhook recipients carry their own URL; everyone else uses the default."""
        recipient = message.recipient
        if recipient.kind == RecipientKind.WEBHOOK or not self.default_url:
            return recipient.address_for(self.kind)
        return self.default_url

    async def send(self, message: NotificationMessage) -> ChannelResult:
        url = self.resolve_url(message)
        logger.info("[WEBHOOK] url=%s trigger=%s", url, message.trigger.value)
        return ChannelResult(channel=self.kind, success=True,
                             provider_message_id=f"webhook_{message.message_id}")


class SMSSender:
    """SMS sender (demo mode)."""

    def __init__(self, account_sid: str = ""):
        self._demo = not bool(account_sid)

    @property
    def kind(self) -> NotificationChannel:
        return NotificationChannel.SMS

    def is_configured(self) -> bool:
        return not self._demo

    async def send(self, message: NotificationMessage) -> ChannelResult:
        logger.info("[SMS] to=%s %s", message.recipient.address_for(self.kind), message.body[:160])
        return ChannelResult(channel=self.kind, success=True,
                             provider_message_id=f"sms_{message.message_id}")


class PushSender:
    """Push notification sender (demo mode)."""

    def __init__(self, api_key: str = ""):
        self._demo = not bool(api_key)

    @property
    def kind(self) -> NotificationChannel:
        return NotificationChannel.PUSH

    def is_configured(self) -> bool:
        return not self._demo

    async def send(self, message: NotificationMessage) -> ChannelResult:
        logger.info("[PUSH] to=%s %s", message.recipient.identifier, message.subject)
        return ChannelResult(channel=self.kind, success=True,
                             provider_message_id=f"push_{message.message_id}")


class ChannelRegistry:
    """Registry of channel senders with dispatch by channel."""

    def __init__(self, senders: Optional[list[ChannelSender]] = None):
        self._senders: dict[NotificationChannel, ChannelSender] = {}
        defaults = [
            EmailSender(),
            InAppSender(),
            SlackSender(),
            WebhookSender(),
            SMSSender(),
            PushSender(),
        ]
        for sender in defaults + list(senders or []):
            self.register(sender)

    def register(self, sender: ChannelSender) -> None:
        self._senders[sender.kind] = sender

    def get(self, kind: NotificationChannel) -> Optional[ChannelSender]:
        return self._senders.get(kind)

    async def send(self, message: NotificationMessage) -> ChannelResult:
        """Dispatch to the sender for the message's channel.

        Sender exceptions propagate to the caller, which owns retries.
        """
        sender = self._senders.get(message.channel)
        if sender is None:
            return ChannelResult(channel=message.channel, success=False,
                                 error=f"Not registered: {message.channel.value}")
        return await sender.send(message)

    @property
    def available_channels(self) -> list[NotificationChannel]:
        return list(self._senders.keys())
