"""Tests for the workflow engine: lifecycle, gating, recovery and concurrency."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from src.notifications import NotificationTrigger, WorkflowNotificationService
from src.workflow import (
    EngineConfig,
    InMemoryWorkflowRepository,
    LoggingBroadcaster,
    WorkflowAction,
    WorkflowContentType,
    WorkflowEngine,
    WorkflowError,
    WorkflowErrorCode,
    WorkflowErrorHandler,
    WorkflowPriority,
    WorkflowQuery,
    WorkflowRole,
    WorkflowState,
)

BLOG = WorkflowContentType.BLOG_POST
PAGE = WorkflowContentType.PAGE


class FlakyRepository(InMemoryWorkflowRepository):
    """Fails the next ``failures`` writes with a connection error."""

    def __init__(self):
        super().__init__()
        self.failures = 0

    async def put(self, instance):
        if self.failures:
            self.failures -= 1
            raise ConnectionError("database unavailable")
        await super().put(instance)


class SlowErrorHandler(WorkflowErrorHandler):
    """Validation that takes longer than the transition timeout."""

    async def validate_state_transition(self, *args, **kwargs):
        await asyncio.sleep(0.5)
        await super().validate_state_transition(*args, **kwargs)


class BrokenBroadcaster:
    def __init__(self):
        self.calls = 0

    async def broadcast_workflow_state_change(self, *args, **kwargs):
        self.calls += 1
        raise RuntimeError("socket closed")


async def _submitted(engine, content_id="post-1", **kwargs):
    instance = await engine.start_workflow(BLOG, content_id, "alice", **kwargs)
    return await engine.execute_transition(
        instance.instance_id, WorkflowAction.SUBMIT_FOR_REVIEW, "alice", WorkflowRole.AUTHOR,
    )


# ── Lifecycle ────────────────────────────────────────────────────────


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_workflow(self, engine):
        instance = await engine.start_workflow(
            BLOG, "post-1", "alice", metadata={"title": "Implants 101"},
        )
        assert instance.current_state == WorkflowState.DRAFT
        assert instance.workflow_definition_id == "blog-post-workflow"
        assert instance.definition_version == "1.0.0"
        assert instance.history == []
        assert instance.correlation_id
        stored = await engine.get_workflow_instance(instance.instance_id)
        assert stored.metadata["title"] == "Implants 101"

    @pytest.mark.asyncio
    async def test_happy_path_to_published(self, engine, broadcaster):
        instance = await _submitted(engine)
        instance = await engine.execute_transition(
            instance.instance_id, WorkflowAction.APPROVE, "bob", WorkflowRole.REVIEWER,
        )
        instance = await engine.execute_transition(
            instance.instance_id, WorkflowAction.PUBLISH, "carol", WorkflowRole.PUBLISHER,
        )
        assert instance.current_state == WorkflowState.PUBLISHED
        assert instance.previous_state == WorkflowState.APPROVED
        assert [log.action for log in instance.history] == [
            WorkflowAction.SUBMIT_FOR_REVIEW, WorkflowAction.APPROVE, WorkflowAction.PUBLISH,
        ]
        assert [log.performed_by for log in instance.history] == ["alice", "bob", "carol"]
        assert all(log.duration_ms is not None for log in instance.history)

        events = broadcaster.recent_events(instance.instance_id)
        assert [e.to_state for e in events] == ["review", "approved", "published"]

    @pytest.mark.asyncio
    async def test_reject_keeps_comment_verbatim(self, engine):
        instance = await _submitted(engine)
        comment = "  Needs citations for the fluoride claims.  "
        instance = await engine.execute_transition(
            instance.instance_id, WorkflowAction.REJECT, "bob", WorkflowRole.REVIEWER,
            comment=comment,
        )
        assert instance.current_state == WorkflowState.REJECTED
        assert instance.history[-1].comment == comment

    @pytest.mark.asyncio
    async def test_request_changes_returns_to_draft(self, engine):
        instance = await _submitted(engine)
        instance = await engine.execute_transition(
            instance.instance_id, WorkflowAction.REQUEST_CHANGES, "bob", WorkflowRole.APPROVER,
            comment="Shorten the intro",
        )
        assert instance.current_state == WorkflowState.DRAFT
        assert instance.previous_state == WorkflowState.REVIEW

    @pytest.mark.asyncio
    async def test_force_approve_records_bypass(self, engine):
        instance = await engine.start_workflow(BLOG, "post-1", "alice")
        instance = await engine.force_approve(instance.instance_id, "root", "launch deadline")
        assert instance.current_state == WorkflowState.APPROVED
        log = instance.history[-1]
        assert log.action == WorkflowAction.FORCE_APPROVE
        assert log.performed_by_role == WorkflowRole.ADMIN
        assert log.comment == "Force approved: launch deadline"
        assert log.metadata == {"bypass_reason": "launch deadline", "bypassed": True}

    @pytest.mark.asyncio
    async def test_instances_by_content(self, engine):
        first = await _submitted(engine)
        await engine.execute_transition(
            first.instance_id, WorkflowAction.REJECT, "bob", WorkflowRole.REVIEWER,
            comment="Off topic",
        )
        second = await engine.start_workflow(BLOG, "post-1", "alice")
        instances = await engine.get_workflow_instances_by_content(BLOG, "post-1")
        assert [i.instance_id for i in instances] == [first.instance_id, second.instance_id]


# ── Gating ───────────────────────────────────────────────────────────


class TestTransitionGating:
    @pytest.mark.asyncio
    async def test_illegal_edge_leaves_instance_untouched(self, engine):
        instance = await engine.start_workflow(BLOG, "post-1", "alice")
        with pytest.raises(WorkflowError) as exc_info:
            await engine.execute_transition(
                instance.instance_id, WorkflowAction.PUBLISH, "root", WorkflowRole.ADMIN,
            )
        assert exc_info.value.code == WorkflowErrorCode.INVALID_STATE_TRANSITION
        stored = await engine.get_workflow_instance(instance.instance_id)
        assert stored.current_state == WorkflowState.DRAFT
        assert stored.history == []

    @pytest.mark.asyncio
    async def test_role_not_permitted(self, engine):
        instance = await _submitted(engine)
        with pytest.raises(WorkflowError) as exc_info:
            await engine.execute_transition(
                instance.instance_id, WorkflowAction.APPROVE, "alice", WorkflowRole.AUTHOR,
            )
        err = exc_info.value
        assert err.code == WorkflowErrorCode.INSUFFICIENT_WORKFLOW_PERMISSIONS
        assert err.context.user_role == WorkflowRole.AUTHOR
        stored = await engine.get_workflow_instance(instance.instance_id)
        assert stored.current_state == WorkflowState.REVIEW

    @pytest.mark.asyncio
    async def test_admin_may_perform_any_edge(self, engine):
        instance = await _submitted(engine)
        instance = await engine.execute_transition(
            instance.instance_id, WorkflowAction.APPROVE, "root", WorkflowRole.ADMIN,
        )
        assert instance.current_state == WorkflowState.APPROVED

    @pytest.mark.asyncio
    async def test_comment_required(self, engine):
        instance = await _submitted(engine)
        for comment in (None, "   "):
            with pytest.raises(WorkflowError) as exc_info:
                await engine.execute_transition(
                    instance.instance_id, WorkflowAction.REJECT, "bob", WorkflowRole.REVIEWER,
                    comment=comment,
                )
            assert exc_info.value.code == WorkflowErrorCode.PREREQUISITE_NOT_MET

    @pytest.mark.asyncio
    async def test_unknown_instance(self, engine):
        with pytest.raises(WorkflowError) as exc_info:
            await engine.execute_transition(
                "missing", WorkflowAction.SUBMIT_FOR_REVIEW, "alice", WorkflowRole.AUTHOR,
            )
        assert exc_info.value.code == WorkflowErrorCode.WORKFLOW_INSTANCE_NOT_FOUND

    @pytest.mark.asyncio
    async def test_can_perform_and_available_actions(self, engine):
        instance = await engine.start_workflow(BLOG, "post-1", "alice")
        iid = instance.instance_id
        assert await engine.can_perform_transition(iid, WorkflowAction.SUBMIT_FOR_REVIEW, WorkflowRole.AUTHOR)
        assert not await engine.can_perform_transition(iid, WorkflowAction.SUBMIT_FOR_REVIEW, WorkflowRole.REVIEWER)
        assert not await engine.can_perform_transition(iid, WorkflowAction.PUBLISH, WorkflowRole.ADMIN)
        assert not await engine.can_perform_transition("missing", WorkflowAction.APPROVE, WorkflowRole.ADMIN)

        assert await engine.get_available_actions(iid, WorkflowRole.AUTHOR) == [
            WorkflowAction.SUBMIT_FOR_REVIEW,
        ]
        assert await engine.get_available_actions(iid, WorkflowRole.ADMIN) == [
            WorkflowAction.SUBMIT_FOR_REVIEW, WorkflowAction.FORCE_APPROVE,
        ]
        assert await engine.get_available_actions("missing", WorkflowRole.ADMIN) == []


# ── Auto-transitions ─────────────────────────────────────────────────


class TestAutoTransition:
    @pytest.mark.asyncio
    async def test_page_publishes_after_approval(self, engine):
        instance = await engine.start_workflow(PAGE, "about-us", "alice")
        instance = await engine.execute_transition(
            instance.instance_id, WorkflowAction.SUBMIT_FOR_REVIEW, "alice", WorkflowRole.AUTHOR,
        )
        instance = await engine.execute_transition(
            instance.instance_id, WorkflowAction.APPROVE, "dana", WorkflowRole.APPROVER,
        )
        assert instance.current_state == WorkflowState.PUBLISHED
        assert len(instance.history) == 3
        auto_log = instance.history[-1]
        assert auto_log.action == WorkflowAction.PUBLISH
        assert auto_log.performed_by == "system"
        assert auto_log.performed_by_role == WorkflowRole.ADMIN
        assert instance.history[-2].performed_by == "dana"

    @pytest.mark.asyncio
    async def test_auto_edges_not_offered_as_actions(self, engine):
        instance = await engine.start_workflow(PAGE, "about-us", "alice")
        assert WorkflowAction.PUBLISH not in await engine.get_available_actions(
            instance.instance_id, WorkflowRole.ADMIN,
        )


# ── Side effects ─────────────────────────────────────────────────────


class TestSideEffects:
    @pytest.mark.asyncio
    async def test_broadcast_failure_does_not_fail_transition(self, repository):
        broadcaster = BrokenBroadcaster()
        engine = WorkflowEngine(repository=repository, broadcaster=broadcaster)
        instance = await _submitted(engine)
        assert instance.current_state == WorkflowState.REVIEW
        assert broadcaster.calls == 1
        stored = await engine.get_workflow_instance(instance.instance_id)
        assert stored.current_state == WorkflowState.REVIEW

    @pytest.mark.asyncio
    async def test_submit_notifies_reviewers(self, repository, notifier):
        engine = WorkflowEngine(repository=repository, notifier=notifier)
        instance = await _submitted(engine)
        pending = notifier.get_pending_notifications()
        assert {m.channel.value for m in pending} == {"email", "slack"}
        assert all(m.trigger == NotificationTrigger.APPROVAL_REQUIRED for m in pending)
        assert all(m.metadata["workflow_instance_id"] == instance.instance_id for m in pending)

    @pytest.mark.asyncio
    async def test_disabled_topic_suppresses_notifications(self, repository, notifier):
        notifier.preferences.update_preferences(
            "reviewer-group", topics={NotificationTrigger.APPROVAL_REQUIRED: False},
        )
        engine = WorkflowEngine(repository=repository, notifier=notifier)
        await _submitted(engine)
        assert notifier.get_pending_notifications() == []

    @pytest.mark.asyncio
    async def test_deadline_reminders_cancelled_on_next_transition(self, repository, notifier):
        engine = WorkflowEngine(repository=repository, notifier=notifier)
        due = datetime.now(timezone.utc) + timedelta(days=2)
        instance = await _submitted(engine, due_date=due)

        reminders = [m for m in notifier.get_pending_notifications() if m.metadata.get("is_reminder")]
        assert len(reminders) == 6  # 24h, 4h and 1h on email and slack
        assert {m.metadata["reminder_offset_hours"] for m in reminders} == {24.0, 4.0, 1.0}

        await engine.execute_transition(
            instance.instance_id, WorkflowAction.APPROVE, "bob", WorkflowRole.REVIEWER,
        )
        remaining = notifier.get_pending_notifications()
        assert not any(m.metadata.get("is_reminder") for m in remaining)
        assert len(remaining) == 2

    @pytest.mark.asyncio
    async def test_notifier_failure_does_not_fail_transition(self, repository):
        class ExplodingNotifier:
            async def notify_state_change(self, *args, **kwargs):
                raise RuntimeError("smtp down")

            async def notify_approval_required(self, *args, **kwargs):
                return []

        engine = WorkflowEngine(repository=repository, notifier=ExplodingNotifier())
        instance = await _submitted(engine)
        assert instance.current_state == WorkflowState.REVIEW


# ── Recovery & concurrency ───────────────────────────────────────────


class TestRecovery:
    @pytest.mark.asyncio
    async def test_injected_empty_repository_is_used(self):
        repo = InMemoryWorkflowRepository()
        engine = WorkflowEngine(repository=repo)
        assert engine.repository is repo
        assert engine.error_handler.repository is repo
        await engine.start_workflow(BLOG, "post-1", "alice")
        assert len(repo) == 1

    @pytest.mark.asyncio
    async def test_transient_write_failure_is_retried_once(self):
        repo = FlakyRepository()
        engine = WorkflowEngine(repository=repo)
        instance = await engine.start_workflow(BLOG, "post-1", "alice")
        repo.failures = 1
        instance = await engine.execute_transition(
            instance.instance_id, WorkflowAction.SUBMIT_FOR_REVIEW, "alice", WorkflowRole.AUTHOR,
        )
        assert instance.current_state == WorkflowState.REVIEW
        stored = await engine.get_workflow_instance(instance.instance_id)
        assert len(stored.history) == 1

    @pytest.mark.asyncio
    async def test_persistent_write_failure_surfaces_system_error(self):
        repo = FlakyRepository()
        engine = WorkflowEngine(repository=repo)
        instance = await engine.start_workflow(BLOG, "post-1", "alice")
        repo.failures = 2
        with pytest.raises(WorkflowError) as exc_info:
            await engine.execute_transition(
                instance.instance_id, WorkflowAction.SUBMIT_FOR_REVIEW, "alice", WorkflowRole.AUTHOR,
            )
        err = exc_info.value
        assert err.code == WorkflowErrorCode.WORKFLOW_DATABASE_ERROR
        assert err.retryable
        assert isinstance(err.__cause__, ConnectionError)
        stored = await engine.get_workflow_instance(instance.instance_id)
        assert stored.current_state == WorkflowState.DRAFT
        assert stored.history == []

    @pytest.mark.asyncio
    async def test_validation_timeout(self):
        repo = InMemoryWorkflowRepository()
        engine = WorkflowEngine(
            config=EngineConfig(transition_timeout_seconds=0.05, max_recovery_retries=0),
            repository=repo,
            error_handler=SlowErrorHandler(repo),
        )
        instance = await engine.start_workflow(BLOG, "post-1", "alice")
        with pytest.raises(WorkflowError) as exc_info:
            await engine.execute_transition(
                instance.instance_id, WorkflowAction.SUBMIT_FOR_REVIEW, "alice", WorkflowRole.AUTHOR,
            )
        assert exc_info.value.code == WorkflowErrorCode.WORKFLOW_EXECUTION_TIMEOUT
        assert exc_info.value.retryable
        stored = await engine.get_workflow_instance(instance.instance_id)
        assert stored.current_state == WorkflowState.DRAFT

    @pytest.mark.asyncio
    async def test_concurrent_transitions_serialize(self, engine):
        instance = await engine.start_workflow(BLOG, "post-1", "alice")
        results = await asyncio.gather(
            *[
                engine.execute_transition(
                    instance.instance_id, WorkflowAction.SUBMIT_FOR_REVIEW, "alice",
                    WorkflowRole.AUTHOR,
                )
                for _ in range(3)
            ],
            return_exceptions=True,
        )
        successes = [r for r in results if not isinstance(r, Exception)]
        failures = [r for r in results if isinstance(r, WorkflowError)]
        assert len(successes) == 1
        assert len(failures) == 2
        assert all(f.code == WorkflowErrorCode.INVALID_STATE_TRANSITION for f in failures)
        stored = await engine.get_workflow_instance(instance.instance_id)
        assert len(stored.history) == 1

    @pytest.mark.asyncio
    async def test_concurrency_ceiling(self):
        engine = WorkflowEngine(config=EngineConfig(max_concurrent_workflows=1))
        await engine.start_workflow(BLOG, "post-1", "alice")
        with pytest.raises(WorkflowError) as exc_info:
            await engine.start_workflow(BLOG, "post-2", "alice")
        err = exc_info.value
        assert err.code == WorkflowErrorCode.WORKFLOW_SYSTEM_OVERLOAD
        assert err.retryable
        assert err.context.active_workflows == 1

    @pytest.mark.asyncio
    async def test_duplicate_active_content(self, engine):
        await engine.start_workflow(BLOG, "post-1", "alice")
        with pytest.raises(WorkflowError) as exc_info:
            await engine.start_workflow(BLOG, "post-1", "bob")
        assert exc_info.value.code == WorkflowErrorCode.CONTENT_LOCKED
        # Different content types never collide.
        await engine.start_workflow(PAGE, "post-1", "alice")

    @pytest.mark.asyncio
    async def test_no_active_definition(self, engine):
        engine.registry.deactivate(PAGE)
        with pytest.raises(WorkflowError) as exc_info:
            await engine.start_workflow(PAGE, "about", "alice")
        assert exc_info.value.code == WorkflowErrorCode.WORKFLOW_DEFINITION_INVALID

    @pytest.mark.asyncio
    async def test_rollback_appends_compensating_entry(self, engine):
        instance = await engine.start_workflow(BLOG, "post-1", "alice")
        snapshot = engine.error_handler.get_snapshot(instance.instance_id)
        await engine.execute_transition(
            instance.instance_id, WorkflowAction.SUBMIT_FOR_REVIEW, "alice", WorkflowRole.AUTHOR,
        )
        restored = await engine.error_handler.rollback_to_snapshot(
            instance.instance_id, "editor mistake", performed_by="root", snapshot=snapshot,
        )
        assert restored.current_state == WorkflowState.DRAFT
        assert [log.action for log in restored.history] == [
            WorkflowAction.SUBMIT_FOR_REVIEW, WorkflowAction.RESTORE,
        ]
        assert restored.history[-1].metadata["rollback"] is True


# ── Background services ──────────────────────────────────────────────


class TestBackgroundServices:
    @pytest.mark.asyncio
    async def test_deadlock_resolution_releases_lower_priority(self, engine):
        high = await engine.start_workflow(BLOG, "post-1", "alice", priority=WorkflowPriority.HIGH)
        low = await engine.start_workflow(BLOG, "post-2", "alice", priority=WorkflowPriority.LOW)
        for waiter, holder in ((high, low), (low, high)):
            stored = await engine.get_workflow_instance(waiter.instance_id)
            stored.metadata["blocked_by"] = [holder.instance_id]
            await engine.repository.put(stored)

        resolutions = await engine.run_deadlock_detection()
        assert len(resolutions) == 1
        assert resolutions[0].success
        assert resolutions[0].released_instance_id == low.instance_id

        released = await engine.get_workflow_instance(low.instance_id)
        assert released.metadata["blocked_by"] == []
        assert "deadlock_resolved" in released.metadata
        assert len(engine.error_handler.get_deadlock_history()) == 1
        assert await engine.run_deadlock_detection() == []

    @pytest.mark.asyncio
    async def test_urgent_deadlock_needs_manual_resolution(self, engine):
        a = await engine.start_workflow(BLOG, "post-1", "alice", priority=WorkflowPriority.URGENT)
        b = await engine.start_workflow(BLOG, "post-2", "alice", priority=WorkflowPriority.URGENT)
        for waiter, holder in ((a, b), (b, a)):
            stored = await engine.get_workflow_instance(waiter.instance_id)
            stored.metadata["blocked_by"] = [holder.instance_id]
            await engine.repository.put(stored)

        resolutions = await engine.run_deadlock_detection()
        assert resolutions[0].strategy == "manual"
        assert resolutions[0].requires_intervention

    @pytest.mark.asyncio
    async def test_health_check_reports_stuck_instances(self, repository, notifier):
        engine = WorkflowEngine(repository=repository, notifier=notifier)
        stuck = await _submitted(engine)
        done = await engine.start_workflow(BLOG, "post-2", "alice")
        await engine.force_approve(done.instance_id, "root", "ship it")
        await engine.execute_transition(
            done.instance_id, WorkflowAction.PUBLISH, "root", WorkflowRole.ADMIN,
        )
        notifier.queue.cancel_where(lambda m: True)

        assert await engine.run_health_check() == []
        later = datetime.now(timezone.utc) + timedelta(hours=25)
        assert await engine.run_health_check(now=later) == [stuck.instance_id]

        alerts = notifier.get_pending_notifications()
        assert alerts
        assert all(m.trigger == NotificationTrigger.WORKFLOW_ERROR for m in alerts)
        assert {m.recipient.recipient_id for m in alerts} == {"admin-group"}

    @pytest.mark.asyncio
    async def test_start_and_stop(self, engine):
        await engine.start()
        await engine.start()  # idempotent
        assert len(engine._tasks) == 2
        await asyncio.sleep(0)
        await engine.stop()
        assert engine._tasks == []


# ── Queries ──────────────────────────────────────────────────────────


class TestQueries:
    @pytest.mark.asyncio
    async def test_pagination(self, engine):
        for n in range(5):
            await engine.start_workflow(BLOG, f"post-{n}", "alice")
        page = await engine.list_instances(WorkflowQuery(limit=2, page=2))
        assert page.total == 5
        assert len(page.data) == 2
        assert page.has_more
        last = await engine.list_instances(WorkflowQuery(limit=2, page=3))
        assert len(last.data) == 1
        assert not last.has_more

    @pytest.mark.asyncio
    async def test_filters(self, engine):
        await _submitted(engine, "post-1")
        await engine.start_workflow(BLOG, "post-2", "bob")
        await engine.start_workflow(PAGE, "about", "bob")

        in_review = await engine.list_instances(WorkflowQuery(state=WorkflowState.REVIEW))
        assert [d["content_id"] for d in in_review.data] == ["post-1"]
        by_bob = await engine.list_instances(WorkflowQuery(created_by="bob"))
        assert by_bob.total == 2
        pages = await engine.list_instances(WorkflowQuery(content_type=PAGE))
        assert [d["content_type"] for d in pages.data] == ["page"]

    @pytest.mark.asyncio
    async def test_assign_workflow(self, engine):
        instance = await _submitted(engine)
        due = datetime.now(timezone.utc) + timedelta(days=1)
        assigned = await engine.assign_workflow(
            instance.instance_id, "bob", WorkflowRole.REVIEWER, due_date=due,
            priority=WorkflowPriority.HIGH,
        )
        assert assigned.assigned_to == "bob"
        assert assigned.assigned_to_role == WorkflowRole.REVIEWER
        assert assigned.priority == WorkflowPriority.HIGH
        assert assigned.due_date == due
        assert len(assigned.history) == 1

        mine = await engine.list_instances(WorkflowQuery(assigned_to="bob"))
        assert mine.total == 1

    @pytest.mark.asyncio
    async def test_naive_date_bounds(self, engine):
        await engine.start_workflow(BLOG, "post-1", "alice")
        since_2020 = await engine.list_instances(WorkflowQuery(created_after="2020-01-01T00:00:00"))
        assert since_2020.total == 1
        before_2020 = await engine.list_instances(WorkflowQuery(created_before="2020-01-01T00:00:00"))
        assert before_2020.total == 0

    @pytest.mark.asyncio
    async def test_assign_unknown_instance(self, engine):
        with pytest.raises(WorkflowError) as exc_info:
            await engine.assign_workflow("missing", "bob")
        assert exc_info.value.code == WorkflowErrorCode.WORKFLOW_INSTANCE_NOT_FOUND
