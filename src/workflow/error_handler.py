"""Content Workflow Engine - Error Handler.

Classifies workflow failures, plans and executes recovery, keeps
point-in-time snapshots of instances, and breaks circular waits between
instances.
"""

import asyncio
import hashlib
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol, Set, Tuple

from src.workflow.conditions import build_condition_context, failed_conditions
from src.workflow.config import (
    TERMINAL_STATES,
    WorkflowAction,
    WorkflowContentType,
    WorkflowPriority,
    WorkflowRole,
    WorkflowState,
)
from src.workflow.errors import (
    RecoveryResult,
    RecoveryStrategy,
    WorkflowError,
    WorkflowErrorCode,
    WorkflowErrorContext,
)
from src.workflow.models import (
    WorkflowDefinition,
    WorkflowInstance,
    WorkflowTransition,
    WorkflowTransitionLog,
)
from src.workflow.repository import WorkflowRepository
from src.workflow.state_machine import role_permitted

logger = logging.getLogger(__name__)

_PRIORITY_RANK = {
    WorkflowPriority.LOW: 0,
    WorkflowPriority.MEDIUM: 1,
    WorkflowPriority.HIGH: 2,
    WorkflowPriority.URGENT: 3,
}

_STRATEGY_BY_CODE = {
    WorkflowErrorCode.INVALID_STATE_TRANSITION: RecoveryStrategy.ROLLBACK,
    WorkflowErrorCode.WORKFLOW_EXECUTION_TIMEOUT: RecoveryStrategy.RETRY,
    WorkflowErrorCode.CONCURRENT_STATE_MODIFICATION: RecoveryStrategy.RETRY,
    WorkflowErrorCode.STATE_VALIDATION_FAILED: RecoveryStrategy.RETRY,
    WorkflowErrorCode.WORKFLOW_SYSTEM_OVERLOAD: RecoveryStrategy.BACKOFF,
    WorkflowErrorCode.WORKFLOW_DEADLOCK_DETECTED: RecoveryStrategy.MANUAL,
}


class ErrorNotifier(Protocol):
    """The subset of the notification service the handler talks to."""

    async def notify_workflow_error(
        self, error: WorkflowError, instance: Optional[WorkflowInstance] = None,
        severity: str = "medium",
    ) -> list:
        ...

    async def notify_system_alert(
        self, alert_type: str, severity: str, message: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> list:
        ...


@dataclass
class WorkflowStateSnapshot:
    """Point-in-time capture of an instance used for compensation."""

    instance_id: str
    state: WorkflowState
    previous_state: Optional[WorkflowState]
    history_count: int
    updated_at: datetime
    checksum: str
    last_transition: Optional[Dict[str, Any]] = None
    taken_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class RecoveryStep:
    step_id: str
    description: str
    action: str  # create_backup, rollback_state, retry_transition, notify_admin, reject_request
    parameters: Dict[str, Any] = field(default_factory=dict)
    timeout_ms: int = 30000
    rollback_on_failure: bool = False


@dataclass
class RecoveryPlan:
    strategy: RecoveryStrategy
    steps: List[RecoveryStep] = field(default_factory=list)
    estimated_duration_ms: int = 0
    risk_level: str = "low"
    requires_approval: bool = False


@dataclass
class WorkflowDeadlock:
    """A cycle in the wait-for graph between instances."""

    involved_instances: List[str]
    cycle_description: str
    severity: str  # minor, major, critical
    resolution_strategy: str  # priority, manual
    deadlock_id: str = field(default_factory=lambda: uuid.uuid4().hex[:16])
    detected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class DeadlockResolution:
    deadlock_id: str
    strategy: str
    success: bool
    message: str = ""
    released_instance_id: Optional[str] = None
    requires_intervention: bool = False


def calculate_checksum(instance: WorkflowInstance) -> str:
    """SHA-256 over the fields that identify an instance's position."""
    payload = json.dumps({
        "id": instance.instance_id,
        "current_state": instance.current_state.value,
        "updated_at": instance.updated_at.isoformat(),
        "history_count": len(instance.history),
    }, sort_keys=True)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class WorkflowErrorHandler:
    """Default error handler used by the workflow engine.

    Args:
        repository: Instance store used for rollbacks and deadlock scans.
        notifier: Optional notification service for administrator alerts.
        lock_provider: Callable returning the per-instance lock the engine
            uses, so writes from this handler serialize with transitions.
        max_retry_attempts: Retries a single correlation id may be granted.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        notifier: Optional[ErrorNotifier] = None,
        lock_provider: Optional[Callable[[str], asyncio.Lock]] = None,
        max_retry_attempts: int = 3,
    ):
        self.repository = repository
        self.notifier = notifier
        self.lock_provider = lock_provider
        self.max_retry_attempts = max_retry_attempts
        self._snapshots: Dict[str, WorkflowStateSnapshot] = {}
        self._recovery_plans: Dict[str, RecoveryPlan] = {}
        self._deadlock_history: List[Tuple[WorkflowDeadlock, DeadlockResolution]] = []

    # ── Snapshots ─────────────────────────────────────────────────────

    async def create_state_snapshot(self, instance: WorkflowInstance) -> WorkflowStateSnapshot:
        last = instance.history[-1] if instance.history else None
        snapshot = WorkflowStateSnapshot(
            instance_id=instance.instance_id,
            state=instance.current_state,
            previous_state=instance.previous_state,
            history_count=len(instance.history),
            updated_at=instance.updated_at,
            checksum=calculate_checksum(instance),
            last_transition={
                "timestamp": last.timestamp.isoformat(),
                "action": last.action.value,
                "performed_by": last.performed_by,
                "metadata": dict(last.metadata),
            } if last else None,
        )
        self._snapshots[instance.instance_id] = snapshot
        logger.debug(
            "Snapshot of %s in %s (checksum %s)",
            instance.instance_id, instance.current_state.value, snapshot.checksum[:12],
        )
        return snapshot

    def get_snapshot(self, instance_id: str) -> Optional[WorkflowStateSnapshot]:
        return self._snapshots.get(instance_id)

    async def rollback_to_snapshot(
        self,
        instance_id: str,
        reason: str,
        performed_by: str = "system",
        snapshot: Optional[WorkflowStateSnapshot] = None,
        compensate: bool = True,
    ) -> Optional[WorkflowInstance]:
        """Restore an instance to the state captured in a snapshot.

        History is never rewritten: if the instance moved through logged
        transitions since the snapshot, a compensating RESTORE entry is
        appended, or nothing happens when *compensate* is False.

        Returns:
            The restored instance, or None when nothing was changed.
        """
        snapshot = snapshot or self._snapshots.get(instance_id)
        if snapshot is None:
            raise WorkflowError(
                WorkflowErrorCode.WORKFLOW_RECOVERY_FAILED,
                f"No snapshot recorded for instance {instance_id}",
                WorkflowErrorContext(workflow_instance_id=instance_id),
            )

        lock = self.lock_provider(instance_id) if self.lock_provider else None
        if lock is not None:
            async with lock:
                return await self._restore(instance_id, snapshot, reason, performed_by, compensate)
        return await self._restore(instance_id, snapshot, reason, performed_by, compensate)

    async def _restore(
        self,
        instance_id: str,
        snapshot: WorkflowStateSnapshot,
        reason: str,
        performed_by: str,
        compensate: bool,
    ) -> Optional[WorkflowInstance]:
        instance = await self.repository.get(instance_id)
        if instance is None:
            raise WorkflowError(
                WorkflowErrorCode.WORKFLOW_INSTANCE_NOT_FOUND,
                f"Workflow instance {instance_id} not found",
                WorkflowErrorContext(workflow_instance_id=instance_id),
            )
        if calculate_checksum(instance) == snapshot.checksum:
            return None

        progressed = len(instance.history) != snapshot.history_count
        if progressed and not compensate:
            logger.info(
                "Instance %s progressed since snapshot; leaving it in %s",
                instance_id, instance.current_state.value,
            )
            return None

        logger.warning(
            "Rolling back %s from %s to %s: %s",
            instance_id, instance.current_state.value, snapshot.state.value, reason,
        )
        now = datetime.now(timezone.utc)
        if not progressed:
            # State drifted without a logged transition; history already agrees.
            instance.current_state = snapshot.state
            instance.previous_state = snapshot.previous_state
        elif instance.current_state != snapshot.state:
            instance.history.append(WorkflowTransitionLog(
                workflow_instance_id=instance_id,
                from_state=instance.current_state,
                to_state=snapshot.state,
                action=WorkflowAction.RESTORE,
                performed_by=performed_by,
                performed_by_role=WorkflowRole.ADMIN,
                comment=reason,
                metadata={"rollback": True, "snapshot_checksum": snapshot.checksum},
                timestamp=now,
            ))
            instance.previous_state = instance.current_state
            instance.current_state = snapshot.state
        instance.updated_at = now
        await self.repository.put(instance)
        return instance

    # ── Validation ────────────────────────────────────────────────────

    async def validate_state_transition(
        self,
        instance: WorkflowInstance,
        transition: WorkflowTransition,
        role: WorkflowRole,
        performed_by: Optional[str] = None,
        comment: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        definition: Optional[WorkflowDefinition] = None,
    ) -> None:
        """Raise a typed error if *transition* may not run for this actor."""
        context = WorkflowErrorContext(
            workflow_instance_id=instance.instance_id,
            content_id=instance.content_id,
            content_type=instance.content_type,
            current_state=instance.current_state,
            target_state=transition.to_state,
            action=transition.action,
            user_id=performed_by,
            user_role=role,
            metadata={"correlation_id": instance.correlation_id} if instance.correlation_id else {},
        )

        if instance.current_state != transition.from_state:
            raise WorkflowError(
                WorkflowErrorCode.STATE_VALIDATION_FAILED,
                f"Instance is in {instance.current_state.value}, transition expects "
                f"{transition.from_state.value}",
                context,
                retryable=True,
            )

        if definition is not None and transition.to_state not in definition.states:
            raise WorkflowError(
                WorkflowErrorCode.INVALID_STATE_TRANSITION,
                f"Target state {transition.to_state.value} is not part of "
                f"definition {definition.definition_id}",
                context,
            )

        if not role_permitted(transition, role):
            allowed = ", ".join(r.value for r in transition.required_roles)
            raise WorkflowError(
                WorkflowErrorCode.INSUFFICIENT_WORKFLOW_PERMISSIONS,
                f"Role {role.value} cannot {transition.action.value} "
                f"(requires one of: {allowed or 'admin'})",
                context,
            )

        if transition.requires_comment and not (comment and comment.strip()):
            raise WorkflowError(
                WorkflowErrorCode.PREREQUISITE_NOT_MET,
                f"Action {transition.action.value} requires a comment",
                context,
            )

        if transition.conditions:
            metadata = metadata or {}
            cond_context = build_condition_context(
                instance,
                user_id=performed_by,
                user_role=role,
                metadata=metadata,
                system=metadata.get("system"),
            )
            failed = failed_conditions(transition.conditions, cond_context)
            if failed:
                context.metadata["failed_conditions"] = [c.to_dict() for c in failed]
                raise WorkflowError(
                    WorkflowErrorCode.PREREQUISITE_NOT_MET,
                    f"{len(failed)} condition(s) not met for {transition.action.value}",
                    context,
                )

    # ── Recovery ──────────────────────────────────────────────────────

    def determine_strategy(self, error: WorkflowError) -> RecoveryStrategy:
        if error.context.metadata.get("stuck"):
            return RecoveryStrategy.ESCALATE
        strategy = _STRATEGY_BY_CODE.get(error.code)
        if strategy is not None:
            return strategy
        if error.is_client_error:
            return RecoveryStrategy.MANUAL
        return RecoveryStrategy.RETRY if error.retryable else RecoveryStrategy.ESCALATE

    def create_recovery_plan(self, error: WorkflowError) -> RecoveryPlan:
        strategy = self.determine_strategy(error)
        instance_id = error.context.workflow_instance_id
        steps: List[RecoveryStep] = []

        if strategy == RecoveryStrategy.ROLLBACK:
            steps.append(RecoveryStep(
                step_id="verify-snapshot",
                description="Compare stored state with the pre-transition snapshot",
                action="create_backup",
                parameters={"instance_id": instance_id},
            ))
            steps.append(RecoveryStep(
                step_id="rollback-state",
                description="Restore the pre-transition state if it drifted",
                action="rollback_state",
                parameters={"instance_id": instance_id},
                timeout_ms=60000,
                rollback_on_failure=True,
            ))
        elif strategy == RecoveryStrategy.RETRY:
            steps.append(RecoveryStep(
                step_id="retry-transition",
                description="Retry the failed operation",
                action="retry_transition",
                parameters={"instance_id": instance_id, "max_attempts": self.max_retry_attempts},
                timeout_ms=180000,
                rollback_on_failure=True,
            ))
        elif strategy == RecoveryStrategy.BACKOFF:
            steps.append(RecoveryStep(
                step_id="back-off",
                description="Caller should back off and retry later",
                action="reject_request",
                parameters={"active_workflows": error.context.active_workflows},
                timeout_ms=0,
            ))
        elif strategy == RecoveryStrategy.ESCALATE:
            steps.append(RecoveryStep(
                step_id="notify-admin",
                description="Notify administrators",
                action="notify_admin",
                parameters={"severity": self._severity_for(error)},
                timeout_ms=10000,
            ))
        elif error.is_client_error:
            steps.append(RecoveryStep(
                step_id="reject-request",
                description="Report the failure to the caller",
                action="reject_request",
                timeout_ms=0,
            ))
        else:
            steps.append(RecoveryStep(
                step_id="notify-admin",
                description="Notify administrators for manual intervention",
                action="notify_admin",
                parameters={"severity": "high", "requires_immediate": True},
                timeout_ms=10000,
            ))

        if error.code == WorkflowErrorCode.WORKFLOW_RECOVERY_FAILED:
            risk = "high"
        elif any(step.action == "rollback_state" for step in steps):
            risk = "medium"
        else:
            risk = "low"

        plan = RecoveryPlan(
            strategy=strategy,
            steps=steps,
            estimated_duration_ms=sum(step.timeout_ms for step in steps),
            risk_level=risk,
            requires_approval=(
                strategy == RecoveryStrategy.MANUAL and not error.is_client_error
            ) or error.context.content_type == WorkflowContentType.PLATFORM,
        )
        self._recovery_plans[error.context.correlation_id] = plan
        return plan

    def get_recovery_plan(self, correlation_id: str) -> Optional[RecoveryPlan]:
        return self._recovery_plans.get(correlation_id)

    async def handle_workflow_error(
        self,
        error: WorkflowError,
        instance: Optional[WorkflowInstance] = None,
    ) -> RecoveryResult:
        """Classify *error* and run its recovery plan.

        Only a successful ``retry`` result asks the caller to re-invoke the
        failed operation; every other outcome means the error propagates.
        """
        logger.error(
            "Workflow error %s: %s",
            error.code.value, error.message,
            extra={
                "error_code": error.code.value,
                "workflow_instance_id": error.context.workflow_instance_id,
                "correlation_id": error.context.correlation_id,
            },
        )
        plan = self.create_recovery_plan(error)
        executed: List[str] = []

        if plan.strategy == RecoveryStrategy.RETRY:
            if error.context.retry_attempt >= self.max_retry_attempts:
                return await self._escalate(error, instance, executed, "retry budget exhausted")
            executed.append("retry-transition")
            return RecoveryResult(
                success=True,
                strategy=RecoveryStrategy.RETRY,
                executed_steps=executed,
                message=f"Retry {error.context.retry_attempt + 1} of {self.max_retry_attempts}",
            )

        if plan.strategy == RecoveryStrategy.BACKOFF:
            return RecoveryResult(
                success=False,
                strategy=RecoveryStrategy.BACKOFF,
                executed_steps=["back-off"],
                message="System overloaded; retry after backing off",
            )

        if plan.strategy == RecoveryStrategy.ROLLBACK:
            instance_id = error.context.workflow_instance_id
            executed.append("verify-snapshot")
            if instance_id and instance_id in self._snapshots:
                try:
                    restored = await self.rollback_to_snapshot(
                        instance_id,
                        reason=f"Recovery from {error.code.value}",
                        compensate=False,
                    )
                except WorkflowError as exc:
                    logger.error("Rollback of %s failed: %s", instance_id, exc)
                    return await self._escalate(error, instance, executed, "rollback failed")
                if restored is not None:
                    executed.append("rollback-state")
            return RecoveryResult(
                success=True,
                strategy=RecoveryStrategy.ROLLBACK,
                executed_steps=executed,
                message="State verified against snapshot",
            )

        if plan.strategy == RecoveryStrategy.ESCALATE:
            return await self._escalate(error, instance, executed, "escalated")

        if error.is_client_error:
            return RecoveryResult(
                success=False,
                strategy=RecoveryStrategy.MANUAL,
                executed_steps=["reject-request"],
                message=error.message,
            )

        await self._notify_admins(error, instance, "high")
        return RecoveryResult(
            success=False,
            strategy=RecoveryStrategy.MANUAL,
            executed_steps=["notify-admin"],
            message="Manual intervention required",
            requires_intervention=True,
        )

    async def _escalate(
        self,
        error: WorkflowError,
        instance: Optional[WorkflowInstance],
        executed: List[str],
        reason: str,
    ) -> RecoveryResult:
        await self._notify_admins(error, instance, self._severity_for(error))
        executed.append("notify-admin")
        return RecoveryResult(
            success=False,
            strategy=RecoveryStrategy.ESCALATE,
            executed_steps=executed,
            message=f"Error escalated to administrators ({reason})",
            requires_intervention=True,
        )

    async def _notify_admins(
        self,
        error: WorkflowError,
        instance: Optional[WorkflowInstance],
        severity: str,
    ) -> None:
        if self.notifier is None:
            return
        try:
            await self.notifier.notify_workflow_error(error, instance, severity)
        except Exception:
            logger.error("Failed to notify administrators about %s", error.code.value, exc_info=True)

    @staticmethod
    def _severity_for(error: WorkflowError) -> str:
        if error.context.metadata.get("stuck"):
            return "medium"
        if error.code == WorkflowErrorCode.WORKFLOW_RECOVERY_FAILED:
            return "critical"
        return "high" if error.code.value.startswith("WF5") else "medium"

    # ── Deadlocks ─────────────────────────────────────────────────────

    async def detect_deadlocks(self) -> List[WorkflowDeadlock]:
        """Find cycles in the ``blocked_by`` wait-for graph."""
        instances = {
            i.instance_id: i for i in await self.repository.list_all()
            if i.current_state not in TERMINAL_STATES
        }
        graph: Dict[str, List[str]] = {
            iid: [b for b in inst.metadata.get("blocked_by", []) if b in instances]
            for iid, inst in instances.items()
        }

        deadlocks: List[WorkflowDeadlock] = []
        seen_cycles: Set[frozenset] = set()
        visited: Set[str] = set()

        def dfs(node: str, path: List[str], on_path: Set[str]) -> None:
            visited.add(node)
            path.append(node)
            on_path.add(node)
            for nxt in graph.get(node, []):
                if nxt in on_path:
                    cycle = path[path.index(nxt):]
                    key = frozenset(cycle)
                    if key not in seen_cycles:
                        seen_cycles.add(key)
                        deadlocks.append(self._describe_cycle(cycle, instances))
                elif nxt not in visited:
                    dfs(nxt, path, on_path)
            path.pop()
            on_path.discard(node)

        for node in sorted(graph):
            if node not in visited:
                dfs(node, [], set())
        return deadlocks

    @staticmethod
    def _describe_cycle(cycle: List[str], instances: Dict[str, WorkflowInstance]) -> WorkflowDeadlock:
        if len(cycle) <= 2:
            severity = "minor"
        elif len(cycle) == 3:
            severity = "major"
        else:
            severity = "critical"
        all_urgent = all(instances[i].priority == WorkflowPriority.URGENT for i in cycle)
        return WorkflowDeadlock(
            involved_instances=list(cycle),
            cycle_description=" -> ".join(cycle + [cycle[0]]),
            severity=severity,
            resolution_strategy="manual" if all_urgent else "priority",
        )

    async def detect_and_resolve_deadlocks(self) -> List[DeadlockResolution]:
        resolutions: List[DeadlockResolution] = []
        for deadlock in await self.detect_deadlocks():
            logger.warning(
                "Deadlock detected: %s", deadlock.cycle_description,
                extra={"error_code": WorkflowErrorCode.WORKFLOW_DEADLOCK_DETECTED.value},
            )
            if deadlock.resolution_strategy == "priority":
                resolution = await self._release_victim(deadlock)
            else:
                resolution = DeadlockResolution(
                    deadlock_id=deadlock.deadlock_id,
                    strategy="manual",
                    success=False,
                    message="Manual intervention required",
                    requires_intervention=True,
                )
            self._deadlock_history.append((deadlock, resolution))
            resolutions.append(resolution)
            await self._notify_deadlock(deadlock, resolution)
        return resolutions

    def get_deadlock_history(self) -> List[Tuple[WorkflowDeadlock, DeadlockResolution]]:
        return list(self._deadlock_history)

    async def _release_victim(self, deadlock: WorkflowDeadlock) -> DeadlockResolution:
        members = [await self.repository.get(iid) for iid in deadlock.involved_instances]
        members = [m for m in members if m is not None]
        if not members:
            return DeadlockResolution(
                deadlock_id=deadlock.deadlock_id,
                strategy="priority",
                success=True,
                message="Deadlock cleared before resolution",
            )
        # Lowest priority yields; among equals, the newest instance yields.
        victim = min(
            members,
            key=lambda i: (_PRIORITY_RANK[i.priority], -i.created_at.timestamp()),
        )

        lock = self.lock_provider(victim.instance_id) if self.lock_provider else None
        if lock is not None:
            async with lock:
                await self._clear_wait(victim.instance_id, deadlock)
        else:
            await self._clear_wait(victim.instance_id, deadlock)

        logger.info("Deadlock %s resolved by releasing %s", deadlock.deadlock_id, victim.instance_id)
        return DeadlockResolution(
            deadlock_id=deadlock.deadlock_id,
            strategy="priority",
            success=True,
            message=f"Released lower priority workflow {victim.instance_id}",
            released_instance_id=victim.instance_id,
        )

    async def _clear_wait(self, instance_id: str, deadlock: WorkflowDeadlock) -> None:
        instance = await self.repository.get(instance_id)
        if instance is None:
            return
        instance.metadata["blocked_by"] = []
        instance.metadata["deadlock_resolved"] = {
            "deadlock_id": deadlock.deadlock_id,
            "resolved_at": datetime.now(timezone.utc).isoformat(),
            "cycle": deadlock.cycle_description,
        }
        instance.updated_at = datetime.now(timezone.utc)
        await self.repository.put(instance)

    async def _notify_deadlock(self, deadlock: WorkflowDeadlock, resolution: DeadlockResolution) -> None:
        if self.notifier is None:
            return
        severity = "critical" if resolution.requires_intervention else "medium"
        try:
            await self.notifier.notify_system_alert(
                "deadlock",
                severity,
                f"Deadlock {'resolved' if resolution.success else 'escalated'}: "
                f"{deadlock.cycle_description}",
                {
                    "deadlock_id": deadlock.deadlock_id,
                    "strategy": resolution.strategy,
                    "released_instance_id": resolution.released_instance_id,
                },
            )
        except Exception:
            logger.error("Failed to send deadlock alert %s", deadlock.deadlock_id, exc_info=True)
