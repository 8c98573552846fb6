"""Content Workflow Engine.

Executes role-gated transitions over versioned workflow definitions,
runs auto-transitions, serves derived views, and runs the deadlock and
health-check background loops.
"""

import asyncio
import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Protocol,
    Set,
    Tuple,
    TypeVar,
)

from src.logging_config import RequestContext, log_performance
from src.workflow.analytics import build_analytics, build_approval_queue
from src.workflow.broadcast import WorkflowBroadcaster
from src.workflow.conditions import build_condition_context, failed_conditions
from src.workflow.config import (
    DEFAULT_ENGINE_CONFIG,
    SYSTEM_ACTOR,
    TERMINAL_STATES,
    EngineConfig,
    RecipientType,
    WorkflowAction,
    WorkflowContentType,
    WorkflowPriority,
    WorkflowRole,
    WorkflowState,
)
from src.workflow.error_handler import WorkflowErrorHandler
from src.workflow.errors import (
    WorkflowError,
    WorkflowErrorCode,
    WorkflowErrorContext,
    new_correlation_id,
)
from src.workflow.models import (
    WorkflowAnalytics,
    WorkflowApprovalQueue,
    WorkflowDefinition,
    WorkflowInstance,
    WorkflowTransition,
    WorkflowTransitionLog,
)
from src.workflow.repository import InMemoryWorkflowRepository, WorkflowRepository
from src.workflow.schemas import WorkflowInstancePage, WorkflowQuery
from src.workflow.state_machine import (
    find_transition,
    get_auto_transition,
    get_available_transitions,
    role_permitted,
)
from src.workflow.templates import DefinitionRegistry

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Guards against definitions whose auto-transitions form a loop.
MAX_AUTO_TRANSITION_DEPTH = 10


class WorkflowNotifier(Protocol):
    """The notification operations the engine drives after a commit."""

    async def notify_state_change(
        self,
        instance: WorkflowInstance,
        from_state: WorkflowState,
        to_state: WorkflowState,
        action: WorkflowAction,
        performed_by: str,
        comment: Optional[str] = None,
    ) -> list: ...

    async def notify_approval_required(
        self,
        instance: WorkflowInstance,
        required_role: WorkflowRole,
        deadline: Optional[datetime] = None,
        reminders_only: bool = False,
    ) -> list: ...


class WorkflowEngine:
    """Asyncio workflow engine.

    All collaborators are injected; anything omitted gets an in-process
    default so an engine can be built with no arguments for tests.

    Transitions on one instance are serialized with a per-instance lock.
    Transitions on different instances run concurrently.
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        repository: Optional[WorkflowRepository] = None,
        registry: Optional[DefinitionRegistry] = None,
        error_handler: Optional[WorkflowErrorHandler] = None,
        broadcaster: Optional[WorkflowBroadcaster] = None,
        notifier: Optional[WorkflowNotifier] = None,
    ):
        self.config = config if config is not None else DEFAULT_ENGINE_CONFIG
        # Repositories define __len__, so an empty one is falsy
        self.repository = repository if repository is not None else InMemoryWorkflowRepository()
        self.registry = registry if registry is not None else DefinitionRegistry()
        self.broadcaster = broadcaster
        self.notifier = notifier
        if error_handler is None:
            error_handler = WorkflowErrorHandler(
                self.repository, notifier=notifier, lock_provider=self._lock_for,
            )
        self.error_handler = error_handler
        self._locks: Dict[str, asyncio.Lock] = {}
        self._start_lock = asyncio.Lock()
        self._tasks: List[asyncio.Task] = []
        self._running = False

    # ── Definitions ───────────────────────────────────────────────────

    def register_definition(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        return self.registry.register_definition(definition)

    def get_definition(
        self, definition_id: str, version: Optional[str] = None,
    ) -> Optional[WorkflowDefinition]:
        return self.registry.get_definition(definition_id, version)

    def list_definitions(
        self, content_type: Optional[WorkflowContentType] = None,
    ) -> List[WorkflowDefinition]:
        return self.registry.list_definitions(content_type)

    # ── Lifecycle ─────────────────────────────────────────────────────

    @log_performance()
    async def start_workflow(
        self,
        content_type: WorkflowContentType,
        content_id: str,
        created_by: str,
        metadata: Optional[Dict[str, Any]] = None,
        priority: WorkflowPriority = WorkflowPriority.MEDIUM,
        due_date: Optional[datetime] = None,
    ) -> WorkflowInstance:
        """Create an instance in the definition's initial state.

        Raises:
            WorkflowError: WF4102 without an active definition, WF5005 at
                the concurrency ceiling (retryable), WF4303 if the content
                already has an active workflow.
        """
        metadata = dict(metadata or {})
        metadata.setdefault("correlation_id", new_correlation_id())
        base_context = WorkflowErrorContext(
            correlation_id=metadata["correlation_id"],
            content_id=content_id,
            content_type=content_type,
            user_id=created_by,
        )

        async def attempt(attempt_no: int) -> WorkflowInstance:
            definition = self.registry.get_active_definition(content_type)
            if definition is None:
                raise WorkflowError(
                    WorkflowErrorCode.WORKFLOW_DEFINITION_INVALID,
                    f"No active workflow definition for {content_type.value}",
                    replace(base_context, retry_attempt=attempt_no),
                )

            async with self._start_lock:
                active = await self._count_active()
                if active >= self.config.max_concurrent_workflows:
                    raise WorkflowError(
                        WorkflowErrorCode.WORKFLOW_SYSTEM_OVERLOAD,
                        f"Concurrency ceiling reached ({active}/"
                        f"{self.config.max_concurrent_workflows} active workflows); "
                        "back off and retry",
                        replace(base_context, active_workflows=active, retry_attempt=attempt_no),
                        retryable=True,
                    )
                instance = WorkflowInstance(
                    workflow_definition_id=definition.definition_id,
                    definition_version=definition.version,
                    content_type=content_type,
                    content_id=content_id,
                    created_by=created_by,
                    current_state=definition.initial_state,
                    priority=priority,
                    due_date=due_date,
                    metadata=dict(metadata),
                )
                await self.repository.put(instance)

            await self.error_handler.create_state_snapshot(instance)
            return instance

        with RequestContext(
            correlation_id=metadata["correlation_id"],
            user_id=created_by,
            extra={"content_type": content_type.value, "content_id": content_id},
        ):
            instance = await self._with_recovery(attempt, base_context)
            logger.info(
                "Started workflow %s for %s/%s",
                instance.instance_id, content_type.value, content_id,
                extra={
                    "workflow_instance_id": instance.instance_id,
                    "to_state": instance.current_state.value,
                },
            )
        return instance

    @log_performance()
    async def execute_transition(
        self,
        instance_id: str,
        action: WorkflowAction,
        performed_by: str,
        performed_by_role: WorkflowRole,
        comment: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> WorkflowInstance:
        """Execute ``action`` on an instance and return the updated instance.

        Validation runs under the transition timeout; the commit that
        follows always completes once started. Broadcast and notification
        failures are logged and never fail the transition. Any
        auto-transition out of the new state runs afterwards as the
        system actor; its failures are logged and swallowed.
        """
        return await self._execute(
            instance_id, action, performed_by, performed_by_role, comment, metadata, depth=0,
        )

    async def force_approve(
        self,
        instance_id: str,
        performed_by: str,
        reason: str,
    ) -> WorkflowInstance:
        """Administrative bypass of the normal review path."""
        return await self.execute_transition(
            instance_id,
            WorkflowAction.FORCE_APPROVE,
            performed_by,
            WorkflowRole.ADMIN,
            comment=f"Force approved: {reason}",
            metadata={"bypass_reason": reason, "bypassed": True},
        )

    async def assign_workflow(
        self,
        instance_id: str,
        assignee: Optional[str] = None,
        role: Optional[WorkflowRole] = None,
        due_date: Optional[datetime] = None,
        priority: Optional[WorkflowPriority] = None,
    ) -> WorkflowInstance:
        """Update assignment fields; not recorded as a transition."""
        async with self._lock_for(instance_id):
            instance = await self._require_instance(instance_id)
            if assignee is not None:
                instance.assigned_to = assignee
            if role is not None:
                instance.assigned_to_role = role
            if due_date is not None:
                instance.due_date = due_date
            if priority is not None:
                instance.priority = priority
            instance.updated_at = datetime.now(timezone.utc)
            await self.repository.put(instance)
        logger.info(
            "Assigned workflow %s to %s (%s)",
            instance_id, instance.assigned_to, getattr(instance.assigned_to_role, "value", None),
        )
        return instance

    # ── Queries ───────────────────────────────────────────────────────

    async def get_workflow_instance(self, instance_id: str) -> Optional[WorkflowInstance]:
        return await self.repository.get(instance_id)

    async def get_workflow_instances_by_content(
        self, content_type: WorkflowContentType, content_id: str,
    ) -> List[WorkflowInstance]:
        instances = await self.repository.list_by_content(content_type, content_id)
        return sorted(instances, key=lambda i: i.created_at)

    async def list_instances(self, query: Optional[WorkflowQuery] = None) -> WorkflowInstancePage:
        query = query or WorkflowQuery()
        if query.state is not None:
            candidates = await self.repository.list_by_state(query.state)
        else:
            candidates = await self.repository.list_all()

        def keep(i: WorkflowInstance) -> bool:
            if query.content_type is not None and i.content_type != query.content_type:
                return False
            if query.assigned_to is not None and i.assigned_to != query.assigned_to:
                return False
            if query.created_by is not None and i.created_by != query.created_by:
                return False
            if query.priority is not None and i.priority != query.priority:
                return False
            if query.created_after is not None and i.created_at < query.created_after:
                return False
            if query.created_before is not None and i.created_at > query.created_before:
                return False
            return True

        matched = sorted(filter(keep, candidates), key=lambda i: i.created_at, reverse=True)
        page = matched[query.offset:query.offset + query.limit]
        return WorkflowInstancePage(
            data=[i.to_dict() for i in page],
            page=query.page,
            limit=query.limit,
            total=len(matched),
            has_more=query.offset + len(page) < len(matched),
        )

    async def can_perform_transition(
        self,
        instance_id: str,
        action: WorkflowAction,
        role: WorkflowRole,
    ) -> bool:
        instance = await self.repository.get(instance_id)
        if instance is None:
            return False
        definition = self.registry.get_definition(
            instance.workflow_definition_id, instance.definition_version,
        )
        if definition is None:
            return False
        transition = find_transition(definition, instance.current_state, action)
        if transition is None or not role_permitted(transition, role):
            return False
        if transition.conditions:
            context = build_condition_context(instance, user_role=role)
            return not failed_conditions(transition.conditions, context)
        return True

    async def get_available_actions(
        self,
        instance_id: str,
        role: WorkflowRole,
    ) -> List[WorkflowAction]:
        instance = await self.repository.get(instance_id)
        if instance is None:
            return []
        definition = self.registry.get_definition(
            instance.workflow_definition_id, instance.definition_version,
        )
        if definition is None:
            return []
        return [
            t.action for t in get_available_transitions(definition, instance.current_state)
            if not t.auto_transition and role_permitted(t, role)
        ]

    async def get_approval_queue(self, role: Optional[WorkflowRole] = None) -> WorkflowApprovalQueue:
        return build_approval_queue(await self.repository.list_all(), role, self.config)

    async def get_workflow_analytics(
        self,
        date_range: Optional[Tuple[datetime, datetime]] = None,
    ) -> WorkflowAnalytics:
        escalated: Optional[Set[str]] = None
        getter = getattr(self.notifier, "get_escalated_instance_ids", None)
        if getter is not None:
            escalated = getter()
        return build_analytics(
            await self.repository.list_all(),
            self.config,
            date_range=date_range,
            escalated_instance_ids=escalated,
        )

    # ── Background services ───────────────────────────────────────────

    async def start(self) -> None:
        """Start the deadlock-detection and health-check loops."""
        if self._running:
            return
        self._running = True
        self._tasks = [
            asyncio.create_task(self._run_periodic(
                "deadlock detection",
                self.config.deadlock_check_interval_seconds,
                self.run_deadlock_detection,
            )),
            asyncio.create_task(self._run_periodic(
                "health check",
                self.config.health_check_interval_seconds,
                self.run_health_check,
            )),
        ]
        logger.info("Workflow engine background services started")

    async def stop(self) -> None:
        self._running = False
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        logger.info("Workflow engine background services stopped")

    async def run_deadlock_detection(self) -> list:
        return await self.error_handler.detect_and_resolve_deadlocks()

    async def run_health_check(self, now: Optional[datetime] = None) -> List[str]:
        """Report non-terminal instances idle beyond the stuck threshold.

        Returns:
            Instance ids reported as stuck.
        """
        now = now or datetime.now(timezone.utc)
        threshold_seconds = self.config.stuck_threshold_hours * 3600
        stuck: List[str] = []
        for instance in await self.repository.list_all():
            if instance.current_state in TERMINAL_STATES:
                continue
            idle = (now - instance.updated_at).total_seconds()
            if idle <= threshold_seconds:
                continue
            stuck.append(instance.instance_id)
            error = WorkflowError(
                WorkflowErrorCode.WORKFLOW_EXECUTION_TIMEOUT,
                f"Workflow {instance.instance_id} has been in "
                f"{instance.current_state.value} for {idle / 3600:.1f}h",
                WorkflowErrorContext(
                    correlation_id=instance.correlation_id or new_correlation_id(),
                    workflow_instance_id=instance.instance_id,
                    content_id=instance.content_id,
                    content_type=instance.content_type,
                    current_state=instance.current_state,
                    metadata={"stuck": True, "idle_hours": round(idle / 3600, 2)},
                ),
                retryable=True,
            )
            await self.error_handler.handle_workflow_error(error, instance)
        if stuck:
            logger.warning("Health check found %d stuck workflow(s)", len(stuck))
        return stuck

    async def _run_periodic(
        self,
        name: str,
        interval: float,
        tick: Callable[[], Awaitable[Any]],
    ) -> None:
        while self._running:
            try:
                await tick()
            except Exception:
                logger.error("Workflow %s failed", name, exc_info=True)
            await asyncio.sleep(interval)

    # ── Internals ─────────────────────────────────────────────────────

    def _lock_for(self, instance_id: str) -> asyncio.Lock:
        lock = self._locks.get(instance_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[instance_id] = lock
        return lock

    async def _count_active(self) -> int:
        return sum(
            1 for i in await self.repository.list_all()
            if i.current_state not in TERMINAL_STATES
        )

    async def _require_instance(self, instance_id: str) -> WorkflowInstance:
        instance = await self.repository.get(instance_id)
        if instance is None:
            raise WorkflowError(
                WorkflowErrorCode.WORKFLOW_INSTANCE_NOT_FOUND,
                f"Workflow instance {instance_id} not found",
                WorkflowErrorContext(workflow_instance_id=instance_id),
            )
        return instance

    async def _with_recovery(
        self,
        attempt: Callable[[int], Awaitable[T]],
        base_context: WorkflowErrorContext,
    ) -> T:
        """Run *attempt*, offering every failure to the error handler.

        The attempt is re-run from scratch only when the handler reports a
        successful retry and the retry budget is not spent.
        """
        max_retries = self.config.max_recovery_retries
        attempt_no = 0
        while True:
            try:
                return await attempt(attempt_no)
            except WorkflowError as exc:
                error = exc
            except Exception as exc:
                error = WorkflowError(
                    WorkflowErrorCode.WORKFLOW_DATABASE_ERROR,
                    f"Unexpected {type(exc).__name__}: {exc}",
                    replace(base_context, retry_attempt=attempt_no),
                    retryable=True,
                )
                error.__cause__ = exc

            error.context.retry_attempt = attempt_no
            instance = None
            if error.context.workflow_instance_id:
                instance = await self.repository.get(error.context.workflow_instance_id)
            recovery = await self.error_handler.handle_workflow_error(error, instance)

            if recovery.should_retry and attempt_no < max_retries:
                attempt_no += 1
                logger.warning(
                    "Retrying after %s (attempt %d of %d)",
                    error.code.value, attempt_no, max_retries,
                    extra={"error_code": error.code.value},
                )
                continue
            raise error

    async def _execute(
        self,
        instance_id: str,
        action: WorkflowAction,
        performed_by: str,
        performed_by_role: WorkflowRole,
        comment: Optional[str],
        metadata: Optional[Dict[str, Any]],
        depth: int,
    ) -> WorkflowInstance:
        metadata = dict(metadata or {})
        base_context = WorkflowErrorContext(
            workflow_instance_id=instance_id,
            action=action,
            user_id=performed_by,
            user_role=performed_by_role,
        )

        async def attempt(attempt_no: int) -> Tuple[WorkflowInstance, WorkflowDefinition, WorkflowState]:
            async with self._lock_for(instance_id):
                try:
                    instance, definition, transition = await asyncio.wait_for(
                        self._prepare(instance_id, action, performed_by, performed_by_role,
                                      comment, metadata),
                        timeout=self.config.transition_timeout_seconds,
                    )
                except asyncio.TimeoutError as exc:
                    raise WorkflowError(
                        WorkflowErrorCode.WORKFLOW_EXECUTION_TIMEOUT,
                        f"Transition validation exceeded "
                        f"{self.config.transition_timeout_seconds}s; retry the request",
                        replace(base_context, retry_attempt=attempt_no),
                        retryable=True,
                    ) from exc

                from_state = instance.current_state
                log_entry = await self._commit(
                    instance, transition, performed_by, performed_by_role, comment, metadata,
                )
                await self._broadcast(instance, from_state, transition, performed_by, log_entry)
                await self._verify(instance_id, transition, base_context)
                return instance, definition, from_state

        with RequestContext(
            user_id=performed_by,
            extra={"workflow_instance_id": instance_id, "action": action.value},
        ) as ctx:
            instance, definition, from_state = await self._with_recovery(attempt, base_context)
            ctx.bind(from_state=from_state.value, to_state=instance.current_state.value)
            logger.info(
                "Workflow %s: %s -> %s (%s by %s)",
                instance_id, from_state.value, instance.current_state.value,
                action.value, performed_by,
                extra={
                    "workflow_instance_id": instance_id,
                    "from_state": from_state.value,
                    "to_state": instance.current_state.value,
                    "action": action.value,
                },
            )

        await self._notify(instance, definition, from_state, action, performed_by, comment)

        auto = get_auto_transition(definition, instance.current_state)
        if auto is None:
            return instance
        if depth >= MAX_AUTO_TRANSITION_DEPTH:
            logger.error(
                "Auto-transition chain for %s exceeded %d steps; stopping in %s",
                instance_id, MAX_AUTO_TRANSITION_DEPTH, instance.current_state.value,
            )
            return instance
        try:
            return await self._execute(
                instance_id, auto.action, SYSTEM_ACTOR, WorkflowRole.ADMIN,
                "Auto-transition executed", None, depth + 1,
            )
        except WorkflowError:
            logger.error(
                "Auto-transition %s failed for %s", auto.action.value, instance_id,
                exc_info=True,
            )
            return await self.repository.get(instance_id) or instance

    async def _prepare(
        self,
        instance_id: str,
        action: WorkflowAction,
        performed_by: str,
        role: WorkflowRole,
        comment: Optional[str],
        metadata: Dict[str, Any],
    ) -> Tuple[WorkflowInstance, WorkflowDefinition, WorkflowTransition]:
        instance = await self._require_instance(instance_id)

        context = WorkflowErrorContext(
            correlation_id=instance.correlation_id or new_correlation_id(),
            workflow_instance_id=instance_id,
            content_id=instance.content_id,
            content_type=instance.content_type,
            current_state=instance.current_state,
            action=action,
            user_id=performed_by,
            user_role=role,
        )

        definition = self.registry.get_definition(
            instance.workflow_definition_id, instance.definition_version,
        )
        if definition is None:
            raise WorkflowError(
                WorkflowErrorCode.WORKFLOW_DEFINITION_INVALID,
                f"Definition {instance.workflow_definition_id} v{instance.definition_version} "
                "is not registered",
                context,
            )

        await self.error_handler.create_state_snapshot(instance)

        transition = find_transition(definition, instance.current_state, action)
        if transition is None:
            raise WorkflowError(
                WorkflowErrorCode.INVALID_STATE_TRANSITION,
                f"Action {action.value} is not allowed from {instance.current_state.value}",
                context,
            )

        await self.error_handler.validate_state_transition(
            instance, transition, role,
            performed_by=performed_by,
            comment=comment,
            metadata=metadata,
            definition=definition,
        )
        return instance, definition, transition

    async def _commit(
        self,
        instance: WorkflowInstance,
        transition: WorkflowTransition,
        performed_by: str,
        role: WorkflowRole,
        comment: Optional[str],
        metadata: Dict[str, Any],
    ) -> WorkflowTransitionLog:
        now = datetime.now(timezone.utc)
        entered = instance.entered_state_at(instance.current_state) or instance.created_at
        log_entry = WorkflowTransitionLog(
            workflow_instance_id=instance.instance_id,
            from_state=instance.current_state,
            to_state=transition.to_state,
            action=transition.action,
            performed_by=performed_by,
            performed_by_role=role,
            comment=comment,
            metadata=dict(metadata),
            timestamp=now,
            duration_ms=max(0, int((now - entered).total_seconds() * 1000)),
        )
        instance.previous_state = instance.current_state
        instance.current_state = transition.to_state
        instance.history.append(log_entry)
        instance.updated_at = now
        await self.repository.put(instance)
        return log_entry

    async def _broadcast(
        self,
        instance: WorkflowInstance,
        from_state: WorkflowState,
        transition: WorkflowTransition,
        actor: str,
        log_entry: WorkflowTransitionLog,
    ) -> None:
        if self.broadcaster is None:
            return
        try:
            await asyncio.wait_for(
                self.broadcaster.broadcast_workflow_state_change(
                    instance, from_state, transition.to_state, transition.action, actor, log_entry,
                ),
                timeout=self.config.broadcast_timeout_seconds,
            )
        except Exception:
            logger.warning(
                "Broadcast failed for workflow %s", instance.instance_id, exc_info=True,
            )

    async def _verify(
        self,
        instance_id: str,
        transition: WorkflowTransition,
        base_context: WorkflowErrorContext,
    ) -> None:
        stored = await self.repository.get(instance_id)
        if stored is None or stored.current_state != transition.to_state:
            raise WorkflowError(
                WorkflowErrorCode.STATE_VALIDATION_FAILED,
                f"Post-transition state mismatch: expected {transition.to_state.value}, "
                f"found {stored.current_state.value if stored else 'nothing'}",
                replace(
                    base_context,
                    current_state=stored.current_state if stored else None,
                    target_state=transition.to_state,
                ),
                retryable=True,
            )

    async def _notify(
        self,
        instance: WorkflowInstance,
        definition: WorkflowDefinition,
        from_state: WorkflowState,
        action: WorkflowAction,
        performed_by: str,
        comment: Optional[str],
    ) -> None:
        if self.notifier is None:
            return
        try:
            await self.notifier.notify_state_change(
                instance, from_state, instance.current_state, action, performed_by, comment,
            )
            if instance.due_date is None:
                return
            # Definition rules add deadline reminders for the roles they name.
            for rule in definition.notifications:
                if not rule.is_active or rule.trigger_state != instance.current_state:
                    continue
                if rule.trigger_action is not None and rule.trigger_action != action:
                    continue
                for recipient in rule.recipients:
                    if recipient.type != RecipientType.ROLE:
                        continue
                    await self.notifier.notify_approval_required(
                        instance,
                        WorkflowRole(recipient.identifier),
                        deadline=instance.due_date,
                        reminders_only=True,
                    )
        except Exception:
            logger.warning(
                "Notification failed for workflow %s", instance.instance_id, exc_info=True,
            )
