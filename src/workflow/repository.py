"""Content Workflow Engine - Instance Repository."""

import copy
import logging
from typing import Dict, List, Optional, Protocol, runtime_checkable

from src.workflow.config import TERMINAL_STATES, WorkflowContentType, WorkflowState
from src.workflow.errors import WorkflowError, WorkflowErrorCode, WorkflowErrorContext
from src.workflow.models import WorkflowInstance

logger = logging.getLogger(__name__)


@runtime_checkable
class WorkflowRepository(Protocol):
    """Persistence boundary for workflow instances.

    Implementations must reject writes that rewrite history and must allow
    at most one non-terminal instance per ``(content_type, content_id)``.
    """

    async def get(self, instance_id: str) -> Optional[WorkflowInstance]:
        ...

    async def put(self, instance: WorkflowInstance) -> None:
        ...

    async def list_by_content(
        self, content_type: WorkflowContentType, content_id: str,
    ) -> List[WorkflowInstance]:
        ...

    async def list_by_state(self, state: WorkflowState) -> List[WorkflowInstance]:
        ...

    async def list_all(self) -> List[WorkflowInstance]:
        ...


class InMemoryWorkflowRepository:
    """Dict-backed repository holding deep copies of every instance.

    Callers never share objects with the store, so a failed attempt that
    mutated its working copy leaves the stored instance untouched.
    """

    def __init__(self):
        self._instances: Dict[str, WorkflowInstance] = {}

    async def get(self, instance_id: str) -> Optional[WorkflowInstance]:
        instance = self._instances.get(instance_id)
        return copy.deepcopy(instance) if instance is not None else None

    async def put(self, instance: WorkflowInstance) -> None:
        existing = self._instances.get(instance.instance_id)
        if existing is not None:
            self._check_append_only(existing, instance)
        if instance.current_state not in TERMINAL_STATES:
            self._check_single_active(instance)
        self._instances[instance.instance_id] = copy.deepcopy(instance)

    async def list_by_content(
        self, content_type: WorkflowContentType, content_id: str,
    ) -> List[WorkflowInstance]:
        return [
            copy.deepcopy(i) for i in self._instances.values()
            if i.content_type == content_type and i.content_id == content_id
        ]

    async def list_by_state(self, state: WorkflowState) -> List[WorkflowInstance]:
        return [copy.deepcopy(i) for i in self._instances.values() if i.current_state == state]

    async def list_all(self) -> List[WorkflowInstance]:
        return [copy.deepcopy(i) for i in self._instances.values()]

    def __len__(self) -> int:
        return len(self._instances)

    # ── Invariants ────────────────────────────────────────────────────

    @staticmethod
    def _check_append_only(existing: WorkflowInstance, incoming: WorkflowInstance) -> None:
        stored = [log.log_id for log in existing.history]
        proposed = [log.log_id for log in incoming.history]
        if proposed[:len(stored)] != stored:
            raise WorkflowError(
                WorkflowErrorCode.CONCURRENT_STATE_MODIFICATION,
                f"Write to instance {incoming.instance_id} would rewrite its history",
                WorkflowErrorContext(
                    workflow_instance_id=incoming.instance_id,
                    content_id=incoming.content_id,
                    content_type=incoming.content_type,
                    current_state=existing.current_state,
                    target_state=incoming.current_state,
                    metadata={"stored_entries": len(stored), "proposed_entries": len(proposed)},
                ),
                retryable=True,
            )

    def _check_single_active(self, instance: WorkflowInstance) -> None:
        for other in self._instances.values():
            if other.instance_id == instance.instance_id:
                continue
            if (
                other.content_type == instance.content_type
                and other.content_id == instance.content_id
                and other.current_state not in TERMINAL_STATES
            ):
                raise WorkflowError(
                    WorkflowErrorCode.CONTENT_LOCKED,
                    f"Content {instance.content_type.value}/{instance.content_id} already "
                    f"has an active workflow ({other.instance_id})",
                    WorkflowErrorContext(
                        workflow_instance_id=instance.instance_id,
                        content_id=instance.content_id,
                        content_type=instance.content_type,
                        current_state=instance.current_state,
                        metadata={"active_instance_id": other.instance_id},
                    ),
                )
