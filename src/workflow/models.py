"""Content Workflow Engine - Data Models."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from src.workflow.config import (
    INITIAL_STATE,
    ConditionOperator,
    ConditionType,
    RecipientType,
    WorkflowAction,
    WorkflowContentType,
    WorkflowPriority,
    WorkflowRole,
    WorkflowState,
)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class WorkflowCondition:
    """A typed guard on a transition: ``<type>.<field> <operator> <value>``."""

    field: str
    operator: ConditionOperator
    value: Any = None
    type: ConditionType = ConditionType.CONTENT

    def to_dict(self) -> dict:
        return {
            "field": self.field,
            "operator": self.operator.value,
            "value": self.value,
            "type": self.type.value,
        }


@dataclass
class WorkflowTransition:
    """An edge ``(from_state, action) -> to_state``."""

    from_state: WorkflowState
    to_state: WorkflowState
    action: WorkflowAction
    transition_id: str = field(default_factory=_new_id)
    required_roles: List[WorkflowRole] = field(default_factory=list)
    conditions: List[WorkflowCondition] = field(default_factory=list)
    auto_transition: bool = False
    requires_approval: bool = False
    requires_comment: bool = False


@dataclass
class WorkflowRule:
    """Conditional auto-action attached to a definition."""

    name: str
    action: WorkflowAction
    conditions: List[WorkflowCondition] = field(default_factory=list)
    rule_id: str = field(default_factory=_new_id)
    priority: int = 0
    is_active: bool = True


@dataclass
class WorkflowRecipient:
    """Who a definition-level notification rule addresses."""

    type: RecipientType
    identifier: str
    notification_channels: List[str] = field(default_factory=list)


@dataclass
class WorkflowNotificationRule:
    """Notification wiring declared by a definition."""

    trigger_state: WorkflowState
    template: str
    rule_id: str = field(default_factory=_new_id)
    trigger_action: Optional[WorkflowAction] = None
    recipients: List[WorkflowRecipient] = field(default_factory=list)
    is_active: bool = True


@dataclass
class WorkflowDefinition:
    """A named, versioned state graph bound to one content type."""

    definition_id: str
    name: str
    content_type: WorkflowContentType
    states: List[WorkflowState] = field(default_factory=list)
    transitions: List[WorkflowTransition] = field(default_factory=list)
    rules: List[WorkflowRule] = field(default_factory=list)
    notifications: List[WorkflowNotificationRule] = field(default_factory=list)
    initial_state: WorkflowState = INITIAL_STATE
    is_active: bool = True
    version: str = "1.0.0"
    created_by: str = "system"
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)


@dataclass
class WorkflowTransitionLog:
    """Immutable record of one executed transition."""

    workflow_instance_id: str
    from_state: WorkflowState
    to_state: WorkflowState
    action: WorkflowAction
    performed_by: str
    performed_by_role: WorkflowRole
    log_id: str = field(default_factory=_new_id)
    comment: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=_now)
    duration_ms: Optional[int] = None  # time spent in from_state

    def to_dict(self) -> dict:
        return {
            "log_id": self.log_id,
            "workflow_instance_id": self.workflow_instance_id,
            "from_state": self.from_state.value,
            "to_state": self.to_state.value,
            "action": self.action.value,
            "performed_by": self.performed_by,
            "performed_by_role": self.performed_by_role.value,
            "comment": self.comment,
            "metadata": dict(self.metadata),
            "timestamp": self.timestamp.isoformat(),
            "duration_ms": self.duration_ms,
        }


@dataclass
class WorkflowInstance:
    """One live approval case for a piece of content."""

    workflow_definition_id: str
    content_type: WorkflowContentType
    content_id: str
    created_by: str
    instance_id: str = field(default_factory=_new_id)
    definition_version: str = "1.0.0"
    current_state: WorkflowState = INITIAL_STATE
    previous_state: Optional[WorkflowState] = None
    assigned_to: Optional[str] = None
    assigned_to_role: Optional[WorkflowRole] = None
    priority: WorkflowPriority = WorkflowPriority.MEDIUM
    due_date: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    history: List[WorkflowTransitionLog] = field(default_factory=list)
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)

    @property
    def correlation_id(self) -> Optional[str]:
        return self.metadata.get("correlation_id")

    @property
    def title(self) -> str:
        return self.metadata.get("title") or "Untitled Content"

    def entered_state_at(self, state: WorkflowState) -> Optional[datetime]:
        """Timestamp of the most recent transition into *state*."""
        for log in reversed(self.history):
            if log.to_state == state:
                return log.timestamp
        return None

    def to_dict(self) -> dict:
        return {
            "instance_id": self.instance_id,
            "workflow_definition_id": self.workflow_definition_id,
            "definition_version": self.definition_version,
            "content_type": self.content_type.value,
            "content_id": self.content_id,
            "current_state": self.current_state.value,
            "previous_state": self.previous_state.value if self.previous_state else None,
            "assigned_to": self.assigned_to,
            "assigned_to_role": self.assigned_to_role.value if self.assigned_to_role else None,
            "priority": self.priority.value,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "metadata": dict(self.metadata),
            "history": [log.to_dict() for log in self.history],
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


# ── Derived views ────────────────────────────────────────────────────


@dataclass
class WorkflowQueueItem:
    """One row of the approval queue."""

    workflow_instance: WorkflowInstance
    content_title: str
    content_type: WorkflowContentType
    author: str
    submitted_at: datetime
    days_in_queue: int
    priority: WorkflowPriority
    tags: List[str] = field(default_factory=list)


@dataclass
class WorkflowQueueStats:
    total_pending: int = 0
    total_overdue: int = 0
    average_processing_time: float = 0.0  # days
    by_content_type: Dict[str, int] = field(default_factory=dict)
    by_priority: Dict[str, int] = field(default_factory=dict)
    by_assignee: Dict[str, int] = field(default_factory=dict)


@dataclass
class WorkflowApprovalQueue:
    pending: List[WorkflowQueueItem] = field(default_factory=list)
    overdue: List[WorkflowQueueItem] = field(default_factory=list)
    recent: List[WorkflowQueueItem] = field(default_factory=list)
    stats: WorkflowQueueStats = field(default_factory=WorkflowQueueStats)


@dataclass
class WorkflowBottleneck:
    state: WorkflowState
    average_time_days: float
    instance_count: int
    impact: str  # low, medium, high


@dataclass
class WorkflowThroughput:
    date: str  # YYYY-MM-DD (UTC)
    started: int = 0
    completed: int = 0
    rejected: int = 0


@dataclass
class WorkflowEfficiency:
    """Efficiency ratios; ``None`` means no data source is configured."""

    on_time_completion_rate: Optional[float]
    first_time_approval_rate: float
    rejection_rate: float
    escalation_rate: Optional[float]


@dataclass
class WorkflowAnalytics:
    total_workflows: int
    completed_this_month: int
    average_completion_time: float  # days
    bottlenecks: List[WorkflowBottleneck] = field(default_factory=list)
    throughput: List[WorkflowThroughput] = field(default_factory=list)
    efficiency: Optional[WorkflowEfficiency] = None

    def to_dict(self) -> dict:
        return {
            "total_workflows": self.total_workflows,
            "completed_this_month": self.completed_this_month,
            "average_completion_time": self.average_completion_time,
            "bottlenecks": [
                {
                    "state": b.state.value,
                    "average_time_days": b.average_time_days,
                    "instance_count": b.instance_count,
                    "impact": b.impact,
                }
                for b in self.bottlenecks
            ],
            "throughput": [
                {"date": t.date, "started": t.started, "completed": t.completed, "rejected": t.rejected}
                for t in self.throughput
            ],
            "efficiency": {
                "on_time_completion_rate": self.efficiency.on_time_completion_rate,
                "first_time_approval_rate": self.efficiency.first_time_approval_rate,
                "rejection_rate": self.efficiency.rejection_rate,
                "escalation_rate": self.efficiency.escalation_rate,
            } if self.efficiency else None,
        }
