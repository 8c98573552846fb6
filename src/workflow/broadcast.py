"""Content Workflow Engine - Real-time Broadcast.

Fire-and-forget transition events for live views. The engine catches and
logs every failure raised here.
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Deque, List, Optional, Protocol, runtime_checkable

from src.workflow.config import WorkflowAction, WorkflowState
from src.workflow.models import WorkflowInstance, WorkflowTransitionLog

logger = logging.getLogger(__name__)


@runtime_checkable
class WorkflowBroadcaster(Protocol):
    """Protocol for real-time transition broadcasters."""

    async def broadcast_workflow_state_change(
        self,
        instance: WorkflowInstance,
        from_state: WorkflowState,
        to_state: WorkflowState,
        action: WorkflowAction,
        actor: str,
        log_entry: WorkflowTransitionLog,
    ) -> None: ...


@dataclass
class WorkflowEvent:
    """A broadcast transition event."""

    instance_id: str
    content_type: str
    content_id: str
    from_state: str
    to_state: str
    action: str
    actor: str
    log_id: str
    emitted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "type": "workflow_state_change",
            "instance_id": self.instance_id,
            "content_type": self.content_type,
            "content_id": self.content_id,
            "from_state": self.from_state,
            "to_state": self.to_state,
            "action": self.action,
            "actor": self.actor,
            "log_id": self.log_id,
            "emitted_at": self.emitted_at.isoformat(),
        }


class LoggingBroadcaster:
    """In-process broadcaster that logs and keeps the most recent events."""

    def __init__(self, max_events: int = 200):
        self._events: Deque[WorkflowEvent] = deque(maxlen=max_events)

    async def broadcast_workflow_state_change(
        self,
        instance: WorkflowInstance,
        from_state: WorkflowState,
        to_state: WorkflowState,
        action: WorkflowAction,
        actor: str,
        log_entry: WorkflowTransitionLog,
    ) -> None:
        event = WorkflowEvent(
            instance_id=instance.instance_id,
            content_type=instance.content_type.value,
            content_id=instance.content_id,
            from_state=from_state.value,
            to_state=to_state.value,
            action=action.value,
            actor=actor,
            log_id=log_entry.log_id,
        )
        self._events.append(event)
        logger.debug(
            "[BROADCAST] %s %s -> %s by %s",
            instance.instance_id, from_state.value, to_state.value, actor,
        )

    def recent_events(self, instance_id: Optional[str] = None) -> List[WorkflowEvent]:
        if instance_id is None:
            return list(self._events)
        return [e for e in self._events if e.instance_id == instance_id]
