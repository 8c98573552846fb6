"""Workflow Notifications.

Multi-channel notification and escalation service for workflow events:
- Per-recipient topic, channel, frequency and quiet-hours preferences
- Jinja2 templates with per-channel escaping
- Fixed-schedule delivery retries with a dead-letter list
- Time-boxed escalation ladders for critical errors
"""

from src.notifications.config import (
    NotificationChannel,
    NotificationPriority,
    NotificationTrigger,
    NotificationStatus,
    NotificationFrequency,
    Severity,
    RecipientKind,
    STATE_TRIGGERS,
    NotificationConfig,
    DEFAULT_NOTIFICATION_CONFIG,
)
from src.notifications.models import (
    QuietHours,
    NotificationPreferences,
    NotificationRecipient,
    NotificationTemplate,
    NotificationMessage,
    NotificationEscalation,
    NotificationResult,
    DeliveryStats,
)
from src.notifications.preferences import PreferenceManager, quiet_hours_end
from src.notifications.templates import (
    NotificationRenderError,
    TemplateRenderer,
    TemplateRegistry,
)
from src.notifications.channels import (
    ChannelResult,
    ChannelSender,
    ChannelRegistry,
    EmailSender,
    InAppSender,
    SlackSender,
    WebhookSender,
    SMSSender,
    PushSender,
)
from src.notifications.queue import NotificationQueue
from src.notifications.escalation import EscalationTracker
from src.notifications.service import WorkflowNotificationService

__all__ = [
    # Config
    "NotificationChannel",
    "NotificationPriority",
    "NotificationTrigger",
    "NotificationStatus",
    "NotificationFrequency",
    "Severity",
    "RecipientKind",
    "STATE_TRIGGERS",
    "NotificationConfig",
    "DEFAULT_NOTIFICATION_CONFIG",
    # Models
    "QuietHours",
    "NotificationPreferences",
    "NotificationRecipient",
    "NotificationTemplate",
    "NotificationMessage",
    "NotificationEscalation",
    "NotificationResult",
    "DeliveryStats",
    # Preferences & templates
    "PreferenceManager",
    "quiet_hours_end",
    "NotificationRenderError",
    "TemplateRenderer",
    "TemplateRegistry",
    # Channels
    "ChannelResult",
    "ChannelSender",
    "ChannelRegistry",
    "EmailSender",
    "InAppSender",
    "SlackSender",
    "WebhookSender",
    "SMSSender",
    "PushSender",
    # Delivery
    "NotificationQueue",
    "EscalationTracker",
    "WorkflowNotificationService",
]
