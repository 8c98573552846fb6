"""Tests for the content workflow state graph, definitions and storage."""

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from src.workflow.config import (
    WorkflowState,
    WorkflowAction,
    WorkflowContentType,
    WorkflowRole,
    WorkflowPriority,
    ConditionOperator,
    ConditionType,
    TERMINAL_STATES,
    SLAPolicy,
    EngineConfig,
)
from src.workflow.models import (
    WorkflowCondition,
    WorkflowDefinition,
    WorkflowInstance,
    WorkflowTransition,
    WorkflowTransitionLog,
)
from src.workflow.errors import (
    WorkflowError,
    WorkflowErrorCode,
    WorkflowErrorContext,
    RecoveryStrategy,
)
from src.workflow.conditions import build_condition_context, evaluate_condition
from src.workflow.state_machine import (
    find_transition,
    get_auto_transition,
    role_permitted,
    validate_definition,
    visualize,
)
from src.workflow.templates import DefinitionRegistry
from src.workflow.repository import InMemoryWorkflowRepository
from src.workflow.error_handler import WorkflowErrorHandler
from src.workflow.schemas import StartWorkflowRequest, WorkflowQuery, WorkflowTransitionRequest


def _definition(**overrides) -> WorkflowDefinition:
    params = dict(
        definition_id="testimonial-workflow",
        name="Testimonial Workflow",
        content_type=WorkflowContentType.TESTIMONIAL,
        states=[WorkflowState.DRAFT, WorkflowState.REVIEW, WorkflowState.PUBLISHED],
        transitions=[
            WorkflowTransition(
                from_state=WorkflowState.DRAFT,
                to_state=WorkflowState.REVIEW,
                action=WorkflowAction.SUBMIT_FOR_REVIEW,
                required_roles=[WorkflowRole.AUTHOR],
            ),
            WorkflowTransition(
                from_state=WorkflowState.REVIEW,
                to_state=WorkflowState.PUBLISHED,
                action=WorkflowAction.PUBLISH,
                required_roles=[WorkflowRole.PUBLISHER],
            ),
        ],
    )
    params.update(overrides)
    return WorkflowDefinition(**params)


# ── Enum & Config Tests ──────────────────────────────────────────────


class TestWorkflowEnums:
    def test_state_values(self):
        assert len(WorkflowState) == 7
        assert WorkflowState.DRAFT.value == "draft"
        assert WorkflowState.EXPIRED.value == "expired"

    def test_action_values(self):
        assert len(WorkflowAction) == 9
        assert WorkflowAction.FORCE_APPROVE.value == "force_approve"
        assert WorkflowAction.SUBMIT_FOR_REVIEW.value == "submit_for_review"

    def test_role_values(self):
        assert [r.value for r in WorkflowRole] == [
            "author", "reviewer", "approver", "publisher", "admin",
        ]

    def test_terminal_states(self):
        assert TERMINAL_STATES == {
            WorkflowState.PUBLISHED, WorkflowState.ARCHIVED, WorkflowState.REJECTED,
        }
        assert WorkflowState.EXPIRED not in TERMINAL_STATES


class TestEngineConfig:
    def test_defaults(self):
        cfg = EngineConfig()
        assert cfg.max_concurrent_workflows == 100
        assert cfg.transition_timeout_seconds == 30.0
        assert cfg.broadcast_timeout_seconds == 5.0
        assert cfg.overdue_threshold_days == 3.0
        assert cfg.bottleneck_threshold_days == 7.0
        assert cfg.sla_policy is None

    def test_sla_policy_lookup(self):
        policy = SLAPolicy(
            days_by_content_type={WorkflowContentType.PAGE: 2.0},
            default_days=5.0,
        )
        assert policy.allowed_days(WorkflowContentType.PAGE) == 2.0
        assert policy.allowed_days(WorkflowContentType.BLOG_POST) == 5.0
        assert SLAPolicy().allowed_days(WorkflowContentType.PAGE) is None


# ── Conditions ───────────────────────────────────────────────────────


class TestConditions:
    def setup_method(self):
        self.instance = WorkflowInstance(
            workflow_definition_id="blog-post-workflow",
            content_type=WorkflowContentType.BLOG_POST,
            content_id="post-1",
            created_by="alice",
            metadata={"title": "Braces FAQ", "word_count": 850, "tags": ["ortho", "faq"]},
        )
        self.context = build_condition_context(
            self.instance,
            user_id="bob",
            user_role=WorkflowRole.REVIEWER,
            metadata={"user": {"department": "editorial"}},
            system={"maintenance": False},
        )

    def test_context_namespaces(self):
        assert set(self.context) == {"content", "user", "time", "system"}
        assert self.context["content"]["content_id"] == "post-1"
        assert self.context["user"]["role"] == "reviewer"
        assert self.context["user"]["department"] == "editorial"

    def test_equals_and_not_equals(self):
        cond = WorkflowCondition(field="title", operator=ConditionOperator.EQUALS, value="Braces FAQ")
        assert evaluate_condition(cond, self.context)
        cond = WorkflowCondition(field="title", operator=ConditionOperator.NOT_EQUALS, value="x")
        assert evaluate_condition(cond, self.context)

    def test_contains_on_string_and_list(self):
        assert evaluate_condition(
            WorkflowCondition(field="title", operator=ConditionOperator.CONTAINS, value="FAQ"),
            self.context,
        )
        assert evaluate_condition(
            WorkflowCondition(field="tags", operator=ConditionOperator.CONTAINS, value="ortho"),
            self.context,
        )

    def test_numeric_comparisons(self):
        gt = WorkflowCondition(field="word_count", operator=ConditionOperator.GREATER_THAN, value=500)
        lt = WorkflowCondition(field="word_count", operator=ConditionOperator.LESS_THAN, value=500)
        assert evaluate_condition(gt, self.context)
        assert not evaluate_condition(lt, self.context)

    def test_incomparable_types_are_false(self):
        cond = WorkflowCondition(field="title", operator=ConditionOperator.GREATER_THAN, value=3)
        assert not evaluate_condition(cond, self.context)

    def test_exists(self):
        assert evaluate_condition(
            WorkflowCondition(field="title", operator=ConditionOperator.EXISTS), self.context,
        )
        assert not evaluate_condition(
            WorkflowCondition(field="summary", operator=ConditionOperator.EXISTS), self.context,
        )
        assert evaluate_condition(
            WorkflowCondition(field="summary", operator=ConditionOperator.EXISTS, value=False),
            self.context,
        )

    def test_missing_field_is_false(self):
        cond = WorkflowCondition(field="seo.score", operator=ConditionOperator.EQUALS, value=1)
        assert not evaluate_condition(cond, self.context)

    def test_user_and_system_namespaces(self):
        user = WorkflowCondition(
            field="role", operator=ConditionOperator.EQUALS, value="reviewer",
            type=ConditionType.USER,
        )
        system = WorkflowCondition(
            field="maintenance", operator=ConditionOperator.EQUALS, value=False,
            type=ConditionType.SYSTEM,
        )
        assert evaluate_condition(user, self.context)
        assert evaluate_condition(system, self.context)

    def test_time_namespace(self):
        now = datetime(2026, 3, 2, 14, 0, tzinfo=timezone.utc)
        context = build_condition_context(self.instance, now=now)
        cond = WorkflowCondition(
            field="hour", operator=ConditionOperator.EQUALS, value=14, type=ConditionType.TIME,
        )
        assert evaluate_condition(cond, context)


# ── State Graph ──────────────────────────────────────────────────────


class TestStateGraph:
    def setup_method(self):
        self.registry = DefinitionRegistry()
        self.blog = self.registry.get_definition("blog-post-workflow")
        self.page = self.registry.get_definition("page-workflow")

    def test_find_transition(self):
        trans = find_transition(self.blog, WorkflowState.DRAFT, WorkflowAction.SUBMIT_FOR_REVIEW)
        assert trans.to_state == WorkflowState.REVIEW
        assert find_transition(self.blog, WorkflowState.DRAFT, WorkflowAction.PUBLISH) is None

    def test_force_approve_edges(self):
        for state in (WorkflowState.DRAFT, WorkflowState.REVIEW):
            trans = find_transition(self.blog, state, WorkflowAction.FORCE_APPROVE)
            assert trans.to_state == WorkflowState.APPROVED
            assert trans.required_roles == [WorkflowRole.ADMIN]

    def test_role_permitted_admin_always(self):
        trans = find_transition(self.blog, WorkflowState.DRAFT, WorkflowAction.SUBMIT_FOR_REVIEW)
        assert role_permitted(trans, WorkflowRole.AUTHOR)
        assert role_permitted(trans, WorkflowRole.ADMIN)
        assert not role_permitted(trans, WorkflowRole.REVIEWER)

    def test_comment_required_edges(self):
        for action in (WorkflowAction.REJECT, WorkflowAction.REQUEST_CHANGES):
            assert find_transition(self.blog, WorkflowState.REVIEW, action).requires_comment
        assert find_transition(
            self.blog, WorkflowState.PUBLISHED, WorkflowAction.ARCHIVE,
        ).requires_comment

    def test_page_auto_publish(self):
        auto = get_auto_transition(self.page, WorkflowState.APPROVED)
        assert auto.action == WorkflowAction.PUBLISH
        assert get_auto_transition(self.blog, WorkflowState.APPROVED) is None

    def test_builtins_are_valid(self):
        assert validate_definition(self.blog) == []
        assert validate_definition(self.page) == []

    def test_visualize(self):
        adj = visualize(self.page)
        assert adj["draft"] == ["review"]
        assert adj["published"] == []

    def test_validate_empty(self):
        assert validate_definition(_definition(states=[])) == ["No states defined"]

    def test_validate_unknown_state(self):
        defn = _definition(transitions=[
            WorkflowTransition(
                from_state=WorkflowState.DRAFT,
                to_state=WorkflowState.ARCHIVED,
                action=WorkflowAction.ARCHIVE,
            ),
        ])
        errors = validate_definition(defn)
        assert any("unknown target state" in e for e in errors)

    def test_validate_ambiguous_edge(self):
        defn = _definition()
        defn.transitions.append(WorkflowTransition(
            from_state=WorkflowState.DRAFT,
            to_state=WorkflowState.PUBLISHED,
            action=WorkflowAction.SUBMIT_FOR_REVIEW,
        ))
        assert any("Ambiguous" in e for e in validate_definition(defn))

    def test_validate_unreachable(self):
        defn = _definition(states=[
            WorkflowState.DRAFT, WorkflowState.REVIEW, WorkflowState.PUBLISHED,
            WorkflowState.ARCHIVED,
        ])
        assert "State 'archived' is unreachable" in validate_definition(defn)


# ── Definition Registry ──────────────────────────────────────────────


class TestDefinitionRegistry:
    def setup_method(self):
        self.registry = DefinitionRegistry()

    def test_builtins_loaded(self):
        ids = {d.definition_id for d in self.registry.list_definitions()}
        assert ids == {"blog-post-workflow", "page-workflow"}
        active = self.registry.get_active_definition(WorkflowContentType.BLOG_POST)
        assert active.definition_id == "blog-post-workflow"

    def test_no_builtins(self):
        registry = DefinitionRegistry(load_builtins=False)
        assert registry.list_definitions() == []
        assert registry.get_active_definition(WorkflowContentType.PAGE) is None

    def test_register_new_version(self):
        self.registry.register_definition(_definition())
        v2 = self.registry.register_definition(_definition(version="1.1.0"))
        assert self.registry.get_definition("testimonial-workflow") is v2
        assert self.registry.get_definition("testimonial-workflow", "1.0.0").version == "1.0.0"
        assert self.registry.get_active_definition(WorkflowContentType.TESTIMONIAL) is v2
        versions = self.registry.list_definitions(
            WorkflowContentType.TESTIMONIAL, all_versions=True,
        )
        assert [d.version for d in versions] == ["1.0.0", "1.1.0"]

    def test_numeric_version_ordering(self):
        self.registry.register_definition(_definition(version="1.10.0"))
        self.registry.register_definition(_definition(version="1.9.0"))
        assert self.registry.get_definition("testimonial-workflow").version == "1.10.0"

    def test_duplicate_version_rejected(self):
        self.registry.register_definition(_definition())
        with pytest.raises(WorkflowError) as exc_info:
            self.registry.register_definition(_definition())
        assert exc_info.value.code == WorkflowErrorCode.WORKFLOW_DEFINITION_INVALID

    def test_invalid_definition_rejected(self):
        with pytest.raises(WorkflowError) as exc_info:
            self.registry.register_definition(_definition(states=[]))
        assert exc_info.value.code.value == "WF4102"
        assert exc_info.value.context.metadata["errors"] == ["No states defined"]

    def test_deactivate(self):
        self.registry.deactivate(WorkflowContentType.PAGE)
        assert self.registry.get_active_definition(WorkflowContentType.PAGE) is None
        assert self.registry.get_definition("page-workflow") is not None


# ── Errors ───────────────────────────────────────────────────────────


class TestWorkflowErrors:
    def test_message_carries_code(self):
        err = WorkflowError(WorkflowErrorCode.CONTENT_LOCKED, "Locked")
        assert str(err) == "[WF4303] Locked"
        assert err.is_client_error
        assert err.context.correlation_id

    def test_system_error_not_client(self):
        err = WorkflowError(WorkflowErrorCode.WORKFLOW_DATABASE_ERROR, "db", retryable=True)
        assert not err.is_client_error
        assert err.retryable

    def test_to_dict(self):
        ctx = WorkflowErrorContext(
            workflow_instance_id="abc",
            current_state=WorkflowState.REVIEW,
            action=WorkflowAction.APPROVE,
            user_role=WorkflowRole.REVIEWER,
        )
        data = WorkflowError(WorkflowErrorCode.INVALID_STATE_TRANSITION, "no", ctx).to_dict()
        assert data["code"] == "INVALID_STATE_TRANSITION"
        assert data["code_value"] == "WF4001"
        assert data["context"]["current_state"] == "review"
        assert data["context"]["user_role"] == "reviewer"
        assert data["cause"] is None


class TestRecoveryStrategy:
    def setup_method(self):
        self.handler = WorkflowErrorHandler(InMemoryWorkflowRepository())

    def _strategy(self, code, **kwargs):
        return self.handler.determine_strategy(WorkflowError(code, "x", **kwargs))

    def test_strategy_mapping(self):
        assert self._strategy(WorkflowErrorCode.INVALID_STATE_TRANSITION) == RecoveryStrategy.ROLLBACK
        assert self._strategy(WorkflowErrorCode.WORKFLOW_EXECUTION_TIMEOUT) == RecoveryStrategy.RETRY
        assert self._strategy(WorkflowErrorCode.WORKFLOW_SYSTEM_OVERLOAD) == RecoveryStrategy.BACKOFF
        assert self._strategy(WorkflowErrorCode.INSUFFICIENT_WORKFLOW_PERMISSIONS) == RecoveryStrategy.MANUAL
        assert self._strategy(
            WorkflowErrorCode.WORKFLOW_DATABASE_ERROR, retryable=True,
        ) == RecoveryStrategy.RETRY
        assert self._strategy(WorkflowErrorCode.WORKFLOW_NOTIFICATION_FAILED) == RecoveryStrategy.ESCALATE

    def test_recovery_plan_recorded(self):
        err = WorkflowError(WorkflowErrorCode.INVALID_STATE_TRANSITION, "bad edge")
        plan = self.handler.create_recovery_plan(err)
        assert [s.action for s in plan.steps] == ["create_backup", "rollback_state"]
        assert plan.risk_level == "medium"
        assert self.handler.get_recovery_plan(err.context.correlation_id) is plan

    def test_platform_content_requires_approval(self):
        err = WorkflowError(
            WorkflowErrorCode.WORKFLOW_EXECUTION_TIMEOUT,
            "slow",
            WorkflowErrorContext(content_type=WorkflowContentType.PLATFORM),
        )
        assert self.handler.create_recovery_plan(err).requires_approval

    @pytest.mark.asyncio
    async def test_retry_budget_exhausted_escalates(self):
        err = WorkflowError(WorkflowErrorCode.WORKFLOW_EXECUTION_TIMEOUT, "slow", retryable=True)
        err.context.retry_attempt = 3
        result = await self.handler.handle_workflow_error(err)
        assert result.strategy == RecoveryStrategy.ESCALATE
        assert result.requires_intervention
        assert not result.should_retry


# ── Repository ───────────────────────────────────────────────────────


class TestInMemoryRepository:
    def setup_method(self):
        self.repo = InMemoryWorkflowRepository()

    def _instance(self, content_id="post-1", state=WorkflowState.DRAFT):
        return WorkflowInstance(
            workflow_definition_id="blog-post-workflow",
            content_type=WorkflowContentType.BLOG_POST,
            content_id=content_id,
            created_by="alice",
            current_state=state,
        )

    def _log(self, instance, to_state):
        return WorkflowTransitionLog(
            workflow_instance_id=instance.instance_id,
            from_state=instance.current_state,
            to_state=to_state,
            action=WorkflowAction.SUBMIT_FOR_REVIEW,
            performed_by="alice",
            performed_by_role=WorkflowRole.AUTHOR,
        )

    @pytest.mark.asyncio
    async def test_returns_copies(self):
        inst = self._instance()
        await self.repo.put(inst)
        fetched = await self.repo.get(inst.instance_id)
        fetched.current_state = WorkflowState.REVIEW
        stored = await self.repo.get(inst.instance_id)
        assert stored.current_state == WorkflowState.DRAFT

    @pytest.mark.asyncio
    async def test_history_is_append_only(self):
        inst = self._instance()
        inst.history.append(self._log(inst, WorkflowState.REVIEW))
        await self.repo.put(inst)

        rewritten = await self.repo.get(inst.instance_id)
        rewritten.history = [self._log(rewritten, WorkflowState.REVIEW)]
        with pytest.raises(WorkflowError) as exc_info:
            await self.repo.put(rewritten)
        assert exc_info.value.code == WorkflowErrorCode.CONCURRENT_STATE_MODIFICATION

        extended = await self.repo.get(inst.instance_id)
        extended.history.append(self._log(extended, WorkflowState.APPROVED))
        await self.repo.put(extended)
        assert len((await self.repo.get(inst.instance_id)).history) == 2

    @pytest.mark.asyncio
    async def test_single_active_instance_per_content(self):
        await self.repo.put(self._instance())
        with pytest.raises(WorkflowError) as exc_info:
            await self.repo.put(self._instance())
        assert exc_info.value.code.value == "WF4303"

    @pytest.mark.asyncio
    async def test_terminal_instance_does_not_lock_content(self):
        await self.repo.put(self._instance(state=WorkflowState.PUBLISHED))
        await self.repo.put(self._instance())
        assert len(self.repo) == 2

    @pytest.mark.asyncio
    async def test_list_queries(self):
        await self.repo.put(self._instance("post-1"))
        await self.repo.put(self._instance("post-2", WorkflowState.REVIEW))
        assert len(await self.repo.list_all()) == 2
        assert len(await self.repo.list_by_state(WorkflowState.REVIEW)) == 1
        by_content = await self.repo.list_by_content(WorkflowContentType.BLOG_POST, "post-2")
        assert [i.content_id for i in by_content] == ["post-2"]


# ── Request Schemas ──────────────────────────────────────────────────


class TestSchemas:
    def test_query_defaults_and_offset(self):
        query = WorkflowQuery(page=3, limit=10)
        assert query.offset == 20
        assert WorkflowQuery().limit == 20

    def test_query_limit_bounds(self):
        with pytest.raises(ValidationError):
            WorkflowQuery(limit=101)
        with pytest.raises(ValidationError):
            WorkflowQuery(page=0)

    def test_query_coerces_enums(self):
        query = WorkflowQuery(state="review", content_type="page", priority="urgent")
        assert query.state == WorkflowState.REVIEW
        assert query.content_type == WorkflowContentType.PAGE
        assert query.priority == WorkflowPriority.URGENT

    def test_transition_request_strips_and_rejects_blank(self):
        req = WorkflowTransitionRequest(
            instance_id=" abc ",
            action="approve",
            performed_by="bob",
            performed_by_role="reviewer",
        )
        assert req.instance_id == "abc"
        assert req.action == WorkflowAction.APPROVE
        with pytest.raises(ValidationError):
            WorkflowTransitionRequest(
                instance_id="   ",
                action="approve",
                performed_by="bob",
                performed_by_role="reviewer",
            )

    def test_start_request_validation(self):
        req = StartWorkflowRequest(content_type="blog_post", content_id=" post-1 ", created_by="alice")
        assert req.content_type == WorkflowContentType.BLOG_POST
        assert req.content_id == "post-1"
        assert req.metadata == {}
        with pytest.raises(ValidationError):
            StartWorkflowRequest(content_type="blog_post", content_id="  ", created_by="alice")
        with pytest.raises(ValidationError):
            StartWorkflowRequest(content_type="newsletter", content_id="n-1", created_by="alice")

    def test_query_naive_bounds_read_as_utc(self):
        query = WorkflowQuery(created_after="2020-01-01T00:00:00", created_before="2030-01-01T00:00:00+02:00")
        assert query.created_after == datetime(2020, 1, 1, tzinfo=timezone.utc)
        assert query.created_before.utcoffset() == timedelta(hours=2)


class TestInstanceModel:
    def test_title_default_and_correlation(self):
        inst = WorkflowInstance(
            workflow_definition_id="page-workflow",
            content_type=WorkflowContentType.PAGE,
            content_id="about",
            created_by="alice",
        )
        assert inst.title == "Untitled Content"
        assert inst.correlation_id is None
        assert len(inst.instance_id) == 16

    def test_to_dict(self, blog_instance):
        blog_instance.due_date = datetime(2026, 1, 1, tzinfo=timezone.utc) + timedelta(days=1)
        data = blog_instance.to_dict()
        assert data["current_state"] == "draft"
        assert data["content_type"] == "blog_post"
        assert data["due_date"].startswith("2026-01-02")
        assert data["history"] == []
