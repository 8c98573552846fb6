"""Content Workflow Engine - Error Taxonomy."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from src.workflow.config import (
    WorkflowAction,
    WorkflowContentType,
    WorkflowRole,
    WorkflowState,
)


class WorkflowErrorCode(Enum):
    """Typed workflow failures.

    4xxx codes are client-actionable, 5xxx codes are system failures.
    """

    # State transition errors
    INVALID_STATE_TRANSITION = "WF4001"
    STATE_TRANSITION_BLOCKED = "WF4002"
    CONCURRENT_STATE_MODIFICATION = "WF4003"
    STATE_VALIDATION_FAILED = "WF4004"
    PREREQUISITE_NOT_MET = "WF4005"

    # Engine errors
    WORKFLOW_INSTANCE_NOT_FOUND = "WF4101"
    WORKFLOW_DEFINITION_INVALID = "WF4102"
    WORKFLOW_EXECUTION_TIMEOUT = "WF4103"
    WORKFLOW_DEADLOCK_DETECTED = "WF4104"
    WORKFLOW_RECOVERY_FAILED = "WF4105"

    # Permission errors
    INSUFFICIENT_WORKFLOW_PERMISSIONS = "WF4201"

    # Content errors
    CONTENT_LOCKED = "WF4303"

    # System errors
    WORKFLOW_DATABASE_ERROR = "WF5001"
    WORKFLOW_NOTIFICATION_FAILED = "WF5002"
    WORKFLOW_SYSTEM_OVERLOAD = "WF5005"


# Failures the caller can fix by changing the request.
CLIENT_ERROR_CODES = frozenset({
    WorkflowErrorCode.INVALID_STATE_TRANSITION,
    WorkflowErrorCode.STATE_TRANSITION_BLOCKED,
    WorkflowErrorCode.PREREQUISITE_NOT_MET,
    WorkflowErrorCode.INSUFFICIENT_WORKFLOW_PERMISSIONS,
    WorkflowErrorCode.WORKFLOW_INSTANCE_NOT_FOUND,
    WorkflowErrorCode.CONTENT_LOCKED,
})


def new_correlation_id() -> str:
    return str(uuid.uuid4())


@dataclass
class WorkflowErrorContext:
    """Everything needed to reconstruct a failure without re-reading state."""

    correlation_id: str = field(default_factory=new_correlation_id)
    workflow_instance_id: Optional[str] = None
    content_id: Optional[str] = None
    content_type: Optional[WorkflowContentType] = None
    current_state: Optional[WorkflowState] = None
    target_state: Optional[WorkflowState] = None
    action: Optional[WorkflowAction] = None
    user_id: Optional[str] = None
    user_role: Optional[WorkflowRole] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    retry_attempt: int = 0
    active_workflows: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "correlation_id": self.correlation_id,
            "workflow_instance_id": self.workflow_instance_id,
            "content_id": self.content_id,
            "content_type": self.content_type.value if self.content_type else None,
            "current_state": self.current_state.value if self.current_state else None,
            "target_state": self.target_state.value if self.target_state else None,
            "action": self.action.value if self.action else None,
            "user_id": self.user_id,
            "user_role": self.user_role.value if self.user_role else None,
            "timestamp": self.timestamp.isoformat(),
            "retry_attempt": self.retry_attempt,
            "active_workflows": self.active_workflows,
            "metadata": dict(self.metadata),
        }


class WorkflowError(Exception):
    """Base error raised by every workflow operation."""

    def __init__(
        self,
        code: WorkflowErrorCode,
        message: str,
        context: Optional[WorkflowErrorContext] = None,
        retryable: bool = False,
    ):
        self.code = code
        self.message = message
        self.context = context or WorkflowErrorContext()
        self.retryable = retryable
        super().__init__(f"[{code.value}] {message}")

    @property
    def is_client_error(self) -> bool:
        return self.code in CLIENT_ERROR_CODES

    def to_dict(self) -> dict:
        return {
            "code": self.code.name,
            "code_value": self.code.value,
            "message": self.message,
            "retryable": self.retryable,
            "client_error": self.is_client_error,
            "context": self.context.to_dict(),
            "cause": str(self.__cause__) if self.__cause__ else None,
        }


class RecoveryStrategy(Enum):
    """What the error handler decided to do about a failure."""

    RETRY = "retry"
    BACKOFF = "backoff"
    ROLLBACK = "rollback"
    ESCALATE = "escalate"
    MANUAL = "manual"


@dataclass
class RecoveryResult:
    """Outcome of offering an error to the error handler."""

    success: bool
    strategy: RecoveryStrategy
    executed_steps: List[str] = field(default_factory=list)
    message: str = ""
    requires_intervention: bool = False

    @property
    def should_retry(self) -> bool:
        return self.success and self.strategy == RecoveryStrategy.RETRY
