"""Content Workflow Engine - State Graph Helpers."""

from typing import Dict, List, Optional

from src.workflow.config import WorkflowAction, WorkflowRole, WorkflowState
from src.workflow.models import WorkflowDefinition, WorkflowTransition


def find_transition(
    definition: WorkflowDefinition,
    from_state: WorkflowState,
    action: WorkflowAction,
) -> Optional[WorkflowTransition]:
    """Return the unique transition for ``(from_state, action)``, if any."""
    for trans in definition.transitions:
        if trans.from_state == from_state and trans.action == action:
            return trans
    return None


def get_available_transitions(
    definition: WorkflowDefinition,
    current: WorkflowState,
) -> List[WorkflowTransition]:
    """Return transitions leaving *current*."""
    return [t for t in definition.transitions if t.from_state == current]


def role_permitted(transition: WorkflowTransition, role: WorkflowRole) -> bool:
    """A role may execute a transition iff it is required or is ADMIN."""
    return role == WorkflowRole.ADMIN or role in transition.required_roles


def get_auto_transition(
    definition: WorkflowDefinition,
    state: WorkflowState,
) -> Optional[WorkflowTransition]:
    for trans in get_available_transitions(definition, state):
        if trans.auto_transition:
            return trans
    return None


def validate_definition(definition: WorkflowDefinition) -> List[str]:
    """Validate a definition. Returns a list of error strings."""
    errors: List[str] = []

    if not definition.states:
        errors.append("No states defined")
        return errors

    states = set(definition.states)
    if definition.initial_state not in states:
        errors.append(f"Initial state {definition.initial_state.value} is not in the state set")

    seen = set()
    for trans in definition.transitions:
        if trans.from_state not in states:
            errors.append(f"Transition references unknown source state: {trans.from_state.value}")
        if trans.to_state not in states:
            errors.append(f"Transition references unknown target state: {trans.to_state.value}")
        key = (trans.from_state, trans.action)
        if key in seen:
            errors.append(
                f"Ambiguous transition: {trans.from_state.value} has more than one "
                f"'{trans.action.value}' edge"
            )
        seen.add(key)

    autos: Dict[WorkflowState, int] = {}
    for trans in definition.transitions:
        if trans.auto_transition:
            autos[trans.from_state] = autos.get(trans.from_state, 0) + 1
    for state, count in autos.items():
        if count > 1:
            errors.append(f"State '{state.value}' has {count} auto-transitions")

    reachable = {definition.initial_state}
    frontier = [definition.initial_state]
    while frontier:
        node = frontier.pop()
        for trans in get_available_transitions(definition, node):
            if trans.to_state not in reachable:
                reachable.add(trans.to_state)
                frontier.append(trans.to_state)
    for state in definition.states:
        if state not in reachable:
            errors.append(f"State '{state.value}' is unreachable")

    return errors


def visualize(definition: WorkflowDefinition) -> Dict[str, List[str]]:
    """Return an adjacency-list representation of the state graph."""
    adj: Dict[str, List[str]] = {s.value: [] for s in definition.states}
    for t in definition.transitions:
        if t.from_state.value in adj:
            adj[t.from_state.value].append(t.to_state.value)
    return adj
