"""Content Workflow Engine.

Role-gated approval and publishing state machine for CMS content, with
auto-transitions, recovery hooks, deadlock detection and analytics.
"""

from .config import (
    WorkflowState,
    WorkflowAction,
    WorkflowContentType,
    WorkflowRole,
    WorkflowPriority,
    ConditionOperator,
    ConditionType,
    RecipientType,
    TERMINAL_STATES,
    SLAPolicy,
    EngineConfig,
    DEFAULT_ENGINE_CONFIG,
)
from .models import (
    WorkflowCondition,
    WorkflowTransition,
    WorkflowRule,
    WorkflowRecipient,
    WorkflowNotificationRule,
    WorkflowDefinition,
    WorkflowTransitionLog,
    WorkflowInstance,
    WorkflowQueueItem,
    WorkflowQueueStats,
    WorkflowApprovalQueue,
    WorkflowBottleneck,
    WorkflowThroughput,
    WorkflowEfficiency,
    WorkflowAnalytics,
)
from .errors import (
    WorkflowErrorCode,
    WorkflowErrorContext,
    WorkflowError,
    RecoveryStrategy,
    RecoveryResult,
)
from .conditions import evaluate_condition, build_condition_context
from .state_machine import find_transition, role_permitted, validate_definition
from .templates import DefinitionRegistry
from .repository import WorkflowRepository, InMemoryWorkflowRepository
from .error_handler import (
    WorkflowStateSnapshot,
    RecoveryPlan,
    WorkflowDeadlock,
    DeadlockResolution,
    WorkflowErrorHandler,
)
from .broadcast import WorkflowBroadcaster, WorkflowEvent, LoggingBroadcaster
from .schemas import (
    WorkflowTransitionRequest,
    StartWorkflowRequest,
    WorkflowQuery,
    WorkflowInstancePage,
)
from .engine import WorkflowEngine

__all__ = [
    # Config
    "WorkflowState",
    "WorkflowAction",
    "WorkflowContentType",
    "WorkflowRole",
    "WorkflowPriority",
    "ConditionOperator",
    "ConditionType",
    "RecipientType",
    "TERMINAL_STATES",
    "SLAPolicy",
    "EngineConfig",
    "DEFAULT_ENGINE_CONFIG",
    # Models
    "WorkflowCondition",
    "WorkflowTransition",
    "WorkflowRule",
    "WorkflowRecipient",
    "WorkflowNotificationRule",
    "WorkflowDefinition",
    "WorkflowTransitionLog",
    "WorkflowInstance",
    "WorkflowQueueItem",
    "WorkflowQueueStats",
    "WorkflowApprovalQueue",
    "WorkflowBottleneck",
    "WorkflowThroughput",
    "WorkflowEfficiency",
    "WorkflowAnalytics",
    # Errors
    "WorkflowErrorCode",
    "WorkflowErrorContext",
    "WorkflowError",
    "RecoveryStrategy",
    "RecoveryResult",
    # Conditions & graph
    "evaluate_condition",
    "build_condition_context",
    "find_transition",
    "role_permitted",
    "validate_definition",
    # Definitions & storage
    "DefinitionRegistry",
    "WorkflowRepository",
    "InMemoryWorkflowRepository",
    # Error handler
    "WorkflowStateSnapshot",
    "RecoveryPlan",
    "WorkflowDeadlock",
    "DeadlockResolution",
    "WorkflowErrorHandler",
    # Broadcast
    "WorkflowBroadcaster",
    "WorkflowEvent",
    "LoggingBroadcaster",
    # Schemas
    "WorkflowTransitionRequest",
    "StartWorkflowRequest",
    "WorkflowQuery",
    "WorkflowInstancePage",
    # Engine
    "WorkflowEngine",
]
