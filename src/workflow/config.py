"""Content Workflow Engine - Configuration."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional


class WorkflowState(Enum):
    """Lifecycle state of a content workflow instance."""

    DRAFT = "draft"
    REVIEW = "review"
    APPROVED = "approved"
    REJECTED = "rejected"
    PUBLISHED = "published"
    ARCHIVED = "archived"
    EXPIRED = "expired"


class WorkflowAction(Enum):
    """Action that drives a state transition."""

    SUBMIT_FOR_REVIEW = "submit_for_review"
    APPROVE = "approve"
    REJECT = "reject"
    REQUEST_CHANGES = "request_changes"
    PUBLISH = "publish"
    ARCHIVE = "archive"
    RESTORE = "restore"
    FORCE_APPROVE = "force_approve"  # Admin bypass
    WITHDRAW = "withdraw"


class WorkflowContentType(Enum):
    """Kinds of content that run through a workflow."""

    BLOG_POST = "blog_post"
    PAGE = "page"
    PLATFORM = "platform"
    SERVICE = "service"
    TEAM_MEMBER = "team_member"
    TESTIMONIAL = "testimonial"


class WorkflowRole(Enum):
    """Roles that may perform transitions."""

    AUTHOR = "author"
    REVIEWER = "reviewer"
    APPROVER = "approver"
    PUBLISHER = "publisher"
    ADMIN = "admin"


class WorkflowPriority(Enum):
    """Instance priority."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class ConditionOperator(Enum):
    """Operators understood by the condition interpreter."""

    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    EXISTS = "exists"


class ConditionType(Enum):
    """Namespace a condition field is resolved in."""

    CONTENT = "content"
    USER = "user"
    TIME = "time"
    SYSTEM = "system"


class RecipientType(Enum):
    """Recipient addressing used by definition notification rules."""

    ROLE = "role"
    USER = "user"
    GROUP = "group"


INITIAL_STATE = WorkflowState.DRAFT

# No outgoing edges by default; a definition may still add RESTORE.
TERMINAL_STATES = frozenset({
    WorkflowState.PUBLISHED,
    WorkflowState.ARCHIVED,
    WorkflowState.REJECTED,
})

# Instances in these states count as finished work for analytics.
COMPLETED_STATES = frozenset({WorkflowState.PUBLISHED, WorkflowState.ARCHIVED})

SYSTEM_ACTOR = "system"


@dataclass
class SLAPolicy:
    """Allowed days from start to completion, per content type.

    Supplied by the host application. Instances with an explicit due date
    are measured against that instead.
    """

    days_by_content_type: Dict[WorkflowContentType, float] = field(default_factory=dict)
    default_days: Optional[float] = None

    def allowed_days(self, content_type: WorkflowContentType) -> Optional[float]:
        return self.days_by_content_type.get(content_type, self.default_days)


@dataclass
class EngineConfig:
    """Configuration for the workflow engine."""

    max_concurrent_workflows: int = 100
    transition_timeout_seconds: float = 30.0
    broadcast_timeout_seconds: float = 5.0
    overdue_threshold_days: float = 3.0
    bottleneck_threshold_days: float = 7.0
    recent_published_limit: int = 10
    stuck_threshold_hours: float = 24.0
    deadlock_check_interval_seconds: float = 30.0
    health_check_interval_seconds: float = 60.0
    throughput_window_days: int = 30
    max_recovery_retries: int = 1
    sla_policy: Optional[SLAPolicy] = None


DEFAULT_ENGINE_CONFIG = EngineConfig()
