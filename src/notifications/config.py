"""Configuration for Workflow Notifications."""

from dataclasses import dataclass, field
from enum import Enum

from src.workflow.config import WorkflowState


class NotificationChannel(Enum):
    """Delivery channels."""
    EMAIL = "email"
    IN_APP = "in_app"
    SLACK = "slack"
    WEBHOOK = "webhook"
    SMS = "sms"
    PUSH = "push"


class NotificationPriority(Enum):
    """Notification priority levels."""
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"
    CRITICAL = "critical"


class NotificationTrigger(Enum):
    """Workflow events that produce notifications."""
    WORKFLOW_STARTED = "workflow_started"
    STATE_CHANGED = "state_changed"
    APPROVAL_REQUIRED = "approval_required"
    CONTENT_APPROVED = "content_approved"
    CONTENT_REJECTED = "content_rejected"
    CONTENT_PUBLISHED = "content_published"
    WORKFLOW_ERROR = "workflow_error"
    DEADLINE_APPROACHING = "deadline_approaching"
    WORKFLOW_STUCK = "workflow_stuck"
    ESCALATION_TRIGGERED = "escalation_triggered"
    SYSTEM_ERROR = "system_error"


class NotificationStatus(Enum):
    """Message lifecycle status."""
    PENDING = "pending"
    SCHEDULED = "scheduled"
    SENDING = "sending"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class NotificationFrequency(Enum):
    """How often a recipient wants to hear from the system."""
    IMMEDIATE = "immediate"
    BATCHED = "batched"
    DAILY_DIGEST = "daily_digest"


class Severity(Enum):
    """Severity of errors and system alerts."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RecipientKind(Enum):
    """How a recipient identifier is interpreted."""
    USER = "user"
    ROLE = "role"
    GROUP = "group"
    WEBHOOK = "webhook"


# Entering these states fires a more specific trigger than STATE_CHANGED.
STATE_TRIGGERS: dict[WorkflowState, NotificationTrigger] = {
    WorkflowState.REVIEW: NotificationTrigger.APPROVAL_REQUIRED,
    WorkflowState.APPROVED: NotificationTrigger.CONTENT_APPROVED,
    WorkflowState.REJECTED: NotificationTrigger.CONTENT_REJECTED,
    WorkflowState.PUBLISHED: NotificationTrigger.CONTENT_PUBLISHED,
}

# Triggers that still go out to recipients in daily-digest mode.
DIGEST_EXEMPT_TRIGGERS = frozenset({
    NotificationTrigger.WORKFLOW_ERROR,
    NotificationTrigger.ESCALATION_TRIGGERED,
})

SEVERITY_PRIORITY: dict[Severity, NotificationPriority] = {
    Severity.CRITICAL: NotificationPriority.CRITICAL,
    Severity.HIGH: NotificationPriority.URGENT,
    Severity.MEDIUM: NotificationPriority.HIGH,
    Severity.LOW: NotificationPriority.NORMAL,
}

# Channels used for immediate critical alerts.
URGENT_CHANNELS = (NotificationChannel.WEBHOOK, NotificationChannel.SMS)


@dataclass
class NotificationConfig:
    """Notification service configuration."""

    # Delivery
    max_retries: int = 3
    retry_schedule_seconds: list[float] = field(
        default_factory=lambda: [1.0, 5.0, 15.0, 60.0, 300.0]
    )
    send_timeout_seconds: float = 30.0
    delivery_interval_seconds: float = 5.0

    # Escalation
    escalation_interval_seconds: float = 60.0
    initial_escalation_delay_minutes: float = 15.0
    escalation_repeat_minutes: float = 30.0
    max_escalation_level: int = 3

    # Reminders before an approval deadline
    reminder_offsets_hours: list[float] = field(default_factory=lambda: [24.0, 4.0, 1.0])

    # Links rendered into templates
    base_url: str = "http://localhost:3000"

    # Dead letters kept for inspection
    dead_letter_limit: int = 1000


DEFAULT_NOTIFICATION_CONFIG = NotificationConfig()
