"""Content Workflow Engine - Derived Views.

Pure functions over instance snapshots: approval queue, queue stats,
bottlenecks, throughput and efficiency. No I/O happens here.
"""

from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Set, Tuple

from src.workflow.config import (
    COMPLETED_STATES,
    EngineConfig,
    WorkflowRole,
    WorkflowState,
)
from src.workflow.models import (
    WorkflowAnalytics,
    WorkflowApprovalQueue,
    WorkflowBottleneck,
    WorkflowEfficiency,
    WorkflowInstance,
    WorkflowQueueItem,
    WorkflowQueueStats,
    WorkflowThroughput,
)

SECONDS_PER_DAY = 86400.0


def _days(delta: timedelta) -> float:
    return delta.total_seconds() / SECONDS_PER_DAY


def completed_at(instance: WorkflowInstance) -> Optional[datetime]:
    """When the instance first reached a completed state, if it is completed."""
    if instance.current_state not in COMPLETED_STATES:
        return None
    for log in instance.history:
        if log.to_state in COMPLETED_STATES:
            return log.timestamp
    return instance.updated_at


def rejected_at(instance: WorkflowInstance) -> Optional[datetime]:
    if instance.current_state != WorkflowState.REJECTED:
        return None
    for log in reversed(instance.history):
        if log.to_state == WorkflowState.REJECTED:
            return log.timestamp
    return instance.updated_at


# ── Approval queue ───────────────────────────────────────────────────


def create_queue_item(instance: WorkflowInstance, now: datetime) -> WorkflowQueueItem:
    entered = instance.entered_state_at(instance.current_state) or instance.updated_at
    return WorkflowQueueItem(
        workflow_instance=instance,
        content_title=instance.title,
        content_type=instance.content_type,
        author=instance.created_by,
        submitted_at=instance.entered_state_at(WorkflowState.REVIEW) or instance.created_at,
        days_in_queue=int(_days(now - entered)),
        priority=instance.priority,
        tags=list(instance.metadata.get("tags", [])),
    )


def _is_overdue(instance: WorkflowInstance, now: datetime, config: EngineConfig) -> bool:
    entered = instance.entered_state_at(WorkflowState.REVIEW) or instance.updated_at
    return now - entered > timedelta(days=config.overdue_threshold_days)


def _visible_to(instance: WorkflowInstance, role: Optional[WorkflowRole]) -> bool:
    if role is None or role == WorkflowRole.ADMIN:
        return True
    return instance.assigned_to_role is None or instance.assigned_to_role == role


def build_approval_queue(
    instances: List[WorkflowInstance],
    role: Optional[WorkflowRole] = None,
    config: Optional[EngineConfig] = None,
    now: Optional[datetime] = None,
) -> WorkflowApprovalQueue:
    """Build the approval queue for *role*.

    Instances assigned to a specific role only show up for that role and
    for ADMIN; unassigned instances show up for everyone.
    """
    config = config or EngineConfig()
    now = now or datetime.now(timezone.utc)

    in_review = [
        i for i in instances
        if i.current_state == WorkflowState.REVIEW and _visible_to(i, role)
    ]
    pending = [create_queue_item(i, now) for i in in_review]
    overdue = [
        item for item, i in zip(pending, in_review) if _is_overdue(i, now, config)
    ]

    published = sorted(
        (i for i in instances if i.current_state == WorkflowState.PUBLISHED),
        key=lambda i: i.updated_at,
        reverse=True,
    )
    recent = [create_queue_item(i, now) for i in published[:config.recent_published_limit]]

    return WorkflowApprovalQueue(
        pending=pending,
        overdue=overdue,
        recent=recent,
        stats=calculate_queue_stats(instances, config, now),
    )


def calculate_queue_stats(
    instances: List[WorkflowInstance],
    config: Optional[EngineConfig] = None,
    now: Optional[datetime] = None,
) -> WorkflowQueueStats:
    config = config or EngineConfig()
    now = now or datetime.now(timezone.utc)
    pending = [i for i in instances if i.current_state == WorkflowState.REVIEW]
    overdue = [i for i in pending if _is_overdue(i, now, config)]
    return WorkflowQueueStats(
        total_pending=len(pending),
        total_overdue=len(overdue),
        average_processing_time=average_completion_time(instances),
        by_content_type=dict(Counter(i.content_type.value for i in pending)),
        by_priority=dict(Counter(i.priority.value for i in pending)),
        by_assignee=dict(Counter(i.assigned_to or "unassigned" for i in pending)),
    )


def average_completion_time(instances: Iterable[WorkflowInstance]) -> float:
    """Mean ``updated_at - created_at`` of completed instances, in days."""
    durations = [
        _days(i.updated_at - i.created_at)
        for i in instances if i.current_state in COMPLETED_STATES
    ]
    if not durations:
        return 0.0
    return round(sum(durations) / len(durations), 2)


# ── Analytics ────────────────────────────────────────────────────────


def identify_bottlenecks(
    instances: Iterable[WorkflowInstance],
    threshold_days: float = 7.0,
) -> List[WorkflowBottleneck]:
    """Average dwell per state from consecutive history entries."""
    totals: Dict[WorkflowState, Tuple[float, int]] = {}
    for instance in instances:
        history = instance.history
        for current, nxt in zip(history, history[1:]):
            total, count = totals.get(current.to_state, (0.0, 0))
            totals[current.to_state] = (total + _days(nxt.timestamp - current.timestamp), count + 1)

    bottlenecks = []
    for state, (total, count) in totals.items():
        average = total / count
        if average > threshold_days:
            impact = "high"
        elif average > 1.0:
            impact = "medium"
        else:
            impact = "low"
        bottlenecks.append(WorkflowBottleneck(
            state=state,
            average_time_days=round(average, 2),
            instance_count=count,
            impact=impact,
        ))
    bottlenecks.sort(key=lambda b: b.average_time_days, reverse=True)
    return bottlenecks


def calculate_throughput(
    instances: List[WorkflowInstance],
    days: int = 30,
    now: Optional[datetime] = None,
) -> List[WorkflowThroughput]:
    """Daily started/completed/rejected counts over UTC day boundaries."""
    now = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
    today = now.replace(hour=0, minute=0, second=0, microsecond=0)

    completions = [completed_at(i) for i in instances]
    rejections = [rejected_at(i) for i in instances]

    series = []
    for offset in range(days - 1, -1, -1):
        start = today - timedelta(days=offset)
        end = start + timedelta(days=1)

        def in_day(ts: Optional[datetime]) -> bool:
            return ts is not None and start <= ts < end

        series.append(WorkflowThroughput(
            date=start.date().isoformat(),
            started=sum(1 for i in instances if in_day(i.created_at)),
            completed=sum(1 for ts in completions if in_day(ts)),
            rejected=sum(1 for ts in rejections if in_day(ts)),
        ))
    return series


def _deadline(instance: WorkflowInstance, config: EngineConfig) -> Optional[datetime]:
    if instance.due_date is not None:
        return instance.due_date
    if config.sla_policy is None:
        return None
    allowed = config.sla_policy.allowed_days(instance.content_type)
    if allowed is None:
        return None
    return instance.created_at + timedelta(days=allowed)


def calculate_efficiency(
    instances: List[WorkflowInstance],
    config: Optional[EngineConfig] = None,
    escalated_instance_ids: Optional[Set[str]] = None,
) -> WorkflowEfficiency:
    """Efficiency ratios.

    ``on_time_completion_rate`` needs due dates or an SLA policy and
    ``escalation_rate`` needs escalation history; each is None without
    its data source.
    """
    config = config or EngineConfig()
    completed = [i for i in instances if i.current_state in COMPLETED_STATES]
    rejected = [i for i in instances if i.current_state == WorkflowState.REJECTED]

    decided = len(completed) + len(rejected)
    first_time = len(completed) / decided if decided else 0.0
    rejection_rate = len(rejected) / len(instances) if instances else 0.0

    on_time: Optional[float] = None
    measured = [(i, _deadline(i, config)) for i in completed]
    measured = [(i, d) for i, d in measured if d is not None]
    if measured:
        hits = sum(1 for i, d in measured if completed_at(i) <= d)
        on_time = hits / len(measured)

    escalation: Optional[float] = None
    if escalated_instance_ids is not None:
        ids = {i.instance_id for i in instances}
        escalation = len(ids & set(escalated_instance_ids)) / len(ids) if ids else 0.0

    return WorkflowEfficiency(
        on_time_completion_rate=on_time,
        first_time_approval_rate=first_time,
        rejection_rate=rejection_rate,
        escalation_rate=escalation,
    )


def build_analytics(
    instances: List[WorkflowInstance],
    config: Optional[EngineConfig] = None,
    date_range: Optional[Tuple[datetime, datetime]] = None,
    escalated_instance_ids: Optional[Set[str]] = None,
    now: Optional[datetime] = None,
) -> WorkflowAnalytics:
    config = config or EngineConfig()
    now = now or datetime.now(timezone.utc)
    if date_range is not None:
        start, end = date_range
        instances = [i for i in instances if start <= i.created_at <= end]

    month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    completion_times = [completed_at(i) for i in instances]
    completed_this_month = sum(
        1 for ts in completion_times if ts is not None and month_start <= ts <= now
    )

    return WorkflowAnalytics(
        total_workflows=len(instances),
        completed_this_month=completed_this_month,
        average_completion_time=average_completion_time(instances),
        bottlenecks=identify_bottlenecks(instances, config.bottleneck_threshold_days),
        throughput=calculate_throughput(instances, config.throughput_window_days, now),
        efficiency=calculate_efficiency(instances, config, escalated_instance_ids),
    )
