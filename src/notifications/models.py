"""Data models for Workflow Notifications."""

from dataclasses import dataclass, field
from datetime import datetime, time, timezone
from typing import Any, Optional
import uuid

from src.notifications.config import (
    NotificationChannel,
    NotificationFrequency,
    NotificationPriority,
    NotificationStatus,
    NotificationTrigger,
    RecipientKind,
    Severity,
)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_hhmm(value: str) -> time:
    hour, minute = map(int, value.split(":"))
    return time(hour, minute)


@dataclass
class QuietHours:
    """Daily window (recipient local time) in which delivery is deferred."""

    enabled: bool = False
    start: str = "22:00"  # HH:MM
    end: str = "08:00"
    timezone: str = "UTC"

    def contains(self, local: time) -> bool:
        """Check if a local wall-clock time falls inside the window.

        The window includes ``start`` and excludes ``end``; a window whose
        start is after its end wraps over midnight.
        """
        if not self.enabled:
            return False
        start, end = _parse_hhmm(self.start), _parse_hhmm(self.end)
        if start == end:
            return False
        if start < end:
            return start <= local < end
        # Overnight quiet hours (e.g., 22:00 - 08:00)
        return local >= start or local < end

    def to_dict(self) -> dict:
        return {
            "enabled": self.enabled,
            "start": self.start,
            "end": self.end,
            "timezone": self.timezone,
        }


@dataclass
class NotificationPreferences:
    """Per-recipient delivery preferences."""

    channels: list[NotificationChannel] = field(default_factory=lambda: [NotificationChannel.EMAIL])
    topics: dict[NotificationTrigger, bool] = field(default_factory=dict)
    frequency: NotificationFrequency = NotificationFrequency.IMMEDIATE
    quiet_hours: Optional[QuietHours] = None

    def wants(self, trigger: NotificationTrigger) -> bool:
        return bool(self.topics.get(trigger, False))

    def to_dict(self) -> dict:
        return {
            "channels": [c.value for c in self.channels],
            "topics": {t.value: enabled for t, enabled in self.topics.items()},
            "frequency": self.frequency.value,
            "quiet_hours": self.quiet_hours.to_dict() if self.quiet_hours else None,
        }


@dataclass
class NotificationRecipient:
    """A person, role, group or endpoint that receives notifications."""

    recipient_id: str
    kind: RecipientKind
    identifier: str  # user id, role name, group name or webhook URL
    name: str = ""
    email: Optional[str] = None
    phone: Optional[str] = None
    slack_user_id: Optional[str] = None
    preferences: NotificationPreferences = field(default_factory=NotificationPreferences)

    def address_for(self, channel: NotificationChannel) -> str:
        """Channel-specific address, falling back to the identifier."""
        if channel == NotificationChannel.EMAIL and self.email:
            return self.email
        if channel == NotificationChannel.SMS and self.phone:
            return self.phone
        if channel == NotificationChannel.SLACK and self.slack_user_id:
            return self.slack_user_id
        return self.identifier

    def to_dict(self) -> dict:
        return {
            "recipient_id": self.recipient_id,
            "kind": self.kind.value,
            "identifier": self.identifier,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "slack_user_id": self.slack_user_id,
            "preferences": self.preferences.to_dict(),
        }


@dataclass
class NotificationTemplate:
    """Jinja2 subject/body pair for one ``(trigger, channel)``."""

    template_id: str
    trigger: NotificationTrigger
    channel: NotificationChannel
    subject: str
    body: str
    priority: NotificationPriority = NotificationPriority.NORMAL
    variables: list[str] = field(default_factory=list)
    is_active: bool = True


@dataclass
class NotificationMessage:
    """One rendered, addressed, channel-specific notification."""

    trigger: NotificationTrigger
    priority: NotificationPriority
    recipient: NotificationRecipient
    channel: NotificationChannel
    subject: str
    body: str
    message_id: str = field(default_factory=_new_id)
    correlation_id: str = ""
    data: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    status: NotificationStatus = NotificationStatus.PENDING
    retry_count: int = 0
    max_retries: int = 3
    error_message: Optional[str] = None
    created_at: datetime = field(default_factory=_now)
    scheduled_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None

    def is_due(self, now: datetime) -> bool:
        if self.status == NotificationStatus.PENDING:
            return self.scheduled_at is None or self.scheduled_at <= now
        if self.status == NotificationStatus.SCHEDULED:
            return self.scheduled_at is not None and self.scheduled_at <= now
        return False

    def mark_sent(self) -> None:
        self.status = NotificationStatus.SENT
        self.sent_at = _now()
        self.error_message = None

    def mark_failed(self, error: str) -> None:
        self.status = NotificationStatus.FAILED
        self.error_message = error

    def to_dict(self) -> dict:
        return {
            "message_id": self.message_id,
            "correlation_id": self.correlation_id,
            "trigger": self.trigger.value,
            "priority": self.priority.value,
            "recipient": self.recipient.identifier,
            "channel": self.channel.value,
            "subject": self.subject,
            "body": self.body,
            "metadata": dict(self.metadata),
            "status": self.status.value,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "error_message": self.error_message,
            "created_at": self.created_at.isoformat(),
            "scheduled_at": self.scheduled_at.isoformat() if self.scheduled_at else None,
            "sent_at": self.sent_at.isoformat() if self.sent_at else None,
        }


@dataclass
class NotificationEscalation:
    """Escalation ladder for an unresolved critical trigger."""

    workflow_instance_id: str
    trigger: NotificationTrigger
    severity: Severity
    next_escalation_at: datetime
    escalation_id: str = field(default_factory=_new_id)
    escalation_level: int = 0
    max_escalation_level: int = 3
    recipients: list[NotificationRecipient] = field(default_factory=list)
    is_active: bool = True
    created_at: datetime = field(default_factory=_now)
    resolved_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "escalation_id": self.escalation_id,
            "workflow_instance_id": self.workflow_instance_id,
            "trigger": self.trigger.value,
            "severity": self.severity.value,
            "escalation_level": self.escalation_level,
            "max_escalation_level": self.max_escalation_level,
            "next_escalation_at": self.next_escalation_at.isoformat(),
            "recipients": [r.identifier for r in self.recipients],
            "is_active": self.is_active,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
        }


@dataclass
class NotificationResult:
    """Outcome of queueing or sending one message."""

    message_id: str
    recipient: str
    channel: NotificationChannel
    status: str  # queued, scheduled, sent, failed
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "message_id": self.message_id,
            "recipient": self.recipient,
            "channel": self.channel.value,
            "status": self.status,
            "error": self.error,
        }


@dataclass
class DeliveryStats:
    """Running delivery counters."""

    queued: int = 0
    sent: int = 0
    failed: int = 0
    retried: int = 0
    cancelled: int = 0
    by_channel: dict[str, int] = field(default_factory=dict)

    def record_sent(self, channel: NotificationChannel) -> None:
        self.sent += 1
        self.by_channel[channel.value] = self.by_channel.get(channel.value, 0) + 1

    def to_dict(self) -> dict:
        return {
            "queued": self.queued,
            "sent": self.sent,
            "failed": self.failed,
            "retried": self.retried,
            "cancelled": self.cancelled,
            "by_channel": dict(self.by_channel),
        }
