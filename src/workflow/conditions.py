"""Content Workflow Engine - Condition Interpreter.

Conditions are data, not code: each ``WorkflowCondition`` names a dotted
field inside one context namespace, an operator and an operand. Nothing
is ever evaluated as an expression.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional

from src.workflow.config import ConditionOperator, ConditionType
from src.workflow.models import WorkflowCondition, WorkflowInstance

logger = logging.getLogger(__name__)

_MISSING = object()


def resolve_path(source: Any, path: str) -> Any:
    """Walk *path* (``a.b.c``) through nested dicts and attributes."""
    current = source
    for part in path.split("."):
        if current is None:
            return _MISSING
        if isinstance(current, dict):
            if part not in current:
                return _MISSING
            current = current[part]
        elif hasattr(current, part):
            current = getattr(current, part)
        else:
            return _MISSING
    return current


def build_condition_context(
    instance: WorkflowInstance,
    user_id: Optional[str] = None,
    user_role: Optional[Any] = None,
    metadata: Optional[Dict[str, Any]] = None,
    system: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Dict[str, Any]]:
    """Assemble the four namespaces conditions are resolved against."""
    now = now or datetime.now(timezone.utc)
    content = dict(instance.metadata)
    content.update({
        "content_id": instance.content_id,
        "content_type": instance.content_type.value,
        "current_state": instance.current_state.value,
        "priority": instance.priority.value,
        "created_by": instance.created_by,
        "assigned_to": instance.assigned_to,
    })
    user = {
        "id": user_id,
        "role": getattr(user_role, "value", user_role),
    }
    user.update((metadata or {}).get("user", {}))
    return {
        ConditionType.CONTENT.value: content,
        ConditionType.USER.value: user,
        ConditionType.TIME.value: {
            "now": now,
            "hour": now.hour,
            "weekday": now.weekday(),
            "age_days": (now - instance.created_at).total_seconds() / 86400,
        },
        ConditionType.SYSTEM.value: dict(system or {}),
    }


def _compare(actual: Any, expected: Any, op) -> bool:
    try:
        return op(actual, expected)
    except TypeError:
        return False


def evaluate_condition(condition: WorkflowCondition, context: Dict[str, Dict[str, Any]]) -> bool:
    """Evaluate a single condition against a namespaced context."""
    namespace = context.get(condition.type.value, {})
    actual = resolve_path(namespace, condition.field)
    op = condition.operator

    if op == ConditionOperator.EXISTS:
        present = actual is not _MISSING and actual is not None
        return present if condition.value is None else present == bool(condition.value)

    if actual is _MISSING:
        return False

    if op == ConditionOperator.EQUALS:
        return actual == condition.value
    if op == ConditionOperator.NOT_EQUALS:
        return actual != condition.value
    if op == ConditionOperator.CONTAINS:
        if isinstance(actual, str):
            return str(condition.value) in actual
        try:
            return condition.value in actual
        except TypeError:
            return False
    if op == ConditionOperator.GREATER_THAN:
        return _compare(actual, condition.value, lambda a, b: a > b)
    if op == ConditionOperator.LESS_THAN:
        return _compare(actual, condition.value, lambda a, b: a < b)

    logger.warning("Unknown condition operator %s", op)
    return False


def failed_conditions(
    conditions: Iterable[WorkflowCondition],
    context: Dict[str, Dict[str, Any]],
) -> list:
    """Return the conditions that do not hold, preserving declaration order."""
    return [c for c in conditions if not evaluate_condition(c, context)]
