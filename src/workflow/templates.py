"""Content Workflow Engine - Definition Registry and Seed Definitions."""

import logging
from typing import Dict, List, Optional, Tuple

from src.workflow.config import (
    RecipientType,
    WorkflowAction,
    WorkflowContentType,
    WorkflowRole,
    WorkflowState,
)
from src.workflow.errors import WorkflowError, WorkflowErrorCode, WorkflowErrorContext
from src.workflow.models import (
    WorkflowDefinition,
    WorkflowNotificationRule,
    WorkflowRecipient,
    WorkflowTransition,
)
from src.workflow.state_machine import validate_definition

logger = logging.getLogger(__name__)


def _version_key(version: str) -> Tuple:
    parts = []
    for piece in version.split("."):
        parts.append((0, int(piece)) if piece.isdigit() else (1, piece))
    return tuple(parts)


class DefinitionRegistry:
    """Versioned store of workflow definitions.

    Every registered version is retained so running instances keep
    resolving the version they were started with. The most recently
    registered active version is the one new instances use.
    """

    def __init__(self, load_builtins: bool = True):
        self._definitions: Dict[str, Dict[str, WorkflowDefinition]] = {}
        self._active: Dict[WorkflowContentType, Tuple[str, str]] = {}
        if load_builtins:
            self._register_builtins()

    def register_definition(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        """Validate and register a definition version."""
        errors = validate_definition(definition)
        if errors:
            raise WorkflowError(
                WorkflowErrorCode.WORKFLOW_DEFINITION_INVALID,
                f"Definition '{definition.definition_id}' is invalid: {'; '.join(errors)}",
                WorkflowErrorContext(
                    content_type=definition.content_type,
                    metadata={"definition_id": definition.definition_id, "errors": errors},
                ),
            )

        versions = self._definitions.setdefault(definition.definition_id, {})
        if definition.version in versions:
            raise WorkflowError(
                WorkflowErrorCode.WORKFLOW_DEFINITION_INVALID,
                f"Definition '{definition.definition_id}' version {definition.version} "
                "is already registered; register a new version instead",
                WorkflowErrorContext(content_type=definition.content_type),
            )
        versions[definition.version] = definition

        if definition.is_active:
            self._active[definition.content_type] = (definition.definition_id, definition.version)

        logger.info(
            "Registered workflow definition %s v%s for %s",
            definition.definition_id, definition.version, definition.content_type.value,
        )
        return definition

    def get_definition(
        self,
        definition_id: str,
        version: Optional[str] = None,
    ) -> Optional[WorkflowDefinition]:
        """Return a specific version, or the highest registered one."""
        versions = self._definitions.get(definition_id)
        if not versions:
            return None
        if version is not None:
            return versions.get(version)
        return versions[max(versions, key=_version_key)]

    def get_active_definition(
        self,
        content_type: WorkflowContentType,
    ) -> Optional[WorkflowDefinition]:
        ref = self._active.get(content_type)
        if ref is None:
            return None
        definition = self.get_definition(*ref)
        if definition is None or not definition.is_active:
            return None
        return definition

    def deactivate(self, content_type: WorkflowContentType) -> None:
        """Stop new instances of *content_type*; running ones are unaffected."""
        self._active.pop(content_type, None)

    def list_definitions(
        self,
        content_type: Optional[WorkflowContentType] = None,
        all_versions: bool = False,
    ) -> List[WorkflowDefinition]:
        result: List[WorkflowDefinition] = []
        for definition_id, versions in self._definitions.items():
            if all_versions:
                candidates = sorted(versions.values(), key=lambda d: _version_key(d.version))
            else:
                candidates = [self.get_definition(definition_id)]
            for definition in candidates:
                if content_type is None or definition.content_type == content_type:
                    result.append(definition)
        return result

    # ── Seed definitions ──────────────────────────────────────────────

    def _register_builtins(self) -> None:
        self.register_definition(self._blog_post_definition())
        self.register_definition(self._page_definition())

    @staticmethod
    def _blog_post_definition() -> WorkflowDefinition:
        editors = [WorkflowRole.REVIEWER, WorkflowRole.APPROVER]
        transitions = [
            WorkflowTransition(
                from_state=WorkflowState.DRAFT,
                to_state=WorkflowState.REVIEW,
                action=WorkflowAction.SUBMIT_FOR_REVIEW,
                required_roles=[WorkflowRole.AUTHOR],
            ),
            WorkflowTransition(
                from_state=WorkflowState.REVIEW,
                to_state=WorkflowState.APPROVED,
                action=WorkflowAction.APPROVE,
                required_roles=list(editors),
                requires_approval=True,
            ),
            WorkflowTransition(
                from_state=WorkflowState.REVIEW,
                to_state=WorkflowState.REJECTED,
                action=WorkflowAction.REJECT,
                required_roles=list(editors),
                requires_comment=True,
            ),
            WorkflowTransition(
                from_state=WorkflowState.REVIEW,
                to_state=WorkflowState.DRAFT,
                action=WorkflowAction.REQUEST_CHANGES,
                required_roles=list(editors),
                requires_comment=True,
            ),
            WorkflowTransition(
                from_state=WorkflowState.APPROVED,
                to_state=WorkflowState.PUBLISHED,
                action=WorkflowAction.PUBLISH,
                required_roles=[WorkflowRole.PUBLISHER, WorkflowRole.ADMIN],
            ),
            WorkflowTransition(
                from_state=WorkflowState.APPROVED,
                to_state=WorkflowState.DRAFT,
                action=WorkflowAction.WITHDRAW,
                required_roles=[WorkflowRole.AUTHOR],
            ),
            WorkflowTransition(
                from_state=WorkflowState.PUBLISHED,
                to_state=WorkflowState.ARCHIVED,
                action=WorkflowAction.ARCHIVE,
                required_roles=[WorkflowRole.ADMIN],
                requires_comment=True,
            ),
            WorkflowTransition(
                from_state=WorkflowState.DRAFT,
                to_state=WorkflowState.APPROVED,
                action=WorkflowAction.FORCE_APPROVE,
                required_roles=[WorkflowRole.ADMIN],
            ),
            WorkflowTransition(
                from_state=WorkflowState.REVIEW,
                to_state=WorkflowState.APPROVED,
                action=WorkflowAction.FORCE_APPROVE,
                required_roles=[WorkflowRole.ADMIN],
            ),
        ]
        notifications = [
            WorkflowNotificationRule(
                trigger_state=WorkflowState.REVIEW,
                template="new-content-for-review",
                recipients=[
                    WorkflowRecipient(
                        type=RecipientType.ROLE,
                        identifier=WorkflowRole.REVIEWER.value,
                        notification_channels=["email", "in_app"],
                    ),
                ],
            ),
        ]
        return WorkflowDefinition(
            definition_id="blog-post-workflow",
            name="Blog Post Publishing Workflow",
            content_type=WorkflowContentType.BLOG_POST,
            states=[
                WorkflowState.DRAFT,
                WorkflowState.REVIEW,
                WorkflowState.APPROVED,
                WorkflowState.REJECTED,
                WorkflowState.PUBLISHED,
                WorkflowState.ARCHIVED,
            ],
            transitions=transitions,
            notifications=notifications,
        )

    @staticmethod
    def _page_definition() -> WorkflowDefinition:
        transitions = [
            WorkflowTransition(
                from_state=WorkflowState.DRAFT,
                to_state=WorkflowState.REVIEW,
                action=WorkflowAction.SUBMIT_FOR_REVIEW,
                required_roles=[WorkflowRole.AUTHOR],
            ),
            WorkflowTransition(
                from_state=WorkflowState.REVIEW,
                to_state=WorkflowState.APPROVED,
                action=WorkflowAction.APPROVE,
                required_roles=[WorkflowRole.APPROVER, WorkflowRole.ADMIN],
                requires_approval=True,
            ),
            WorkflowTransition(
                from_state=WorkflowState.APPROVED,
                to_state=WorkflowState.PUBLISHED,
                action=WorkflowAction.PUBLISH,
                required_roles=[WorkflowRole.ADMIN],
                auto_transition=True,
            ),
        ]
        return WorkflowDefinition(
            definition_id="page-workflow",
            name="Page Publishing Workflow",
            content_type=WorkflowContentType.PAGE,
            states=[
                WorkflowState.DRAFT,
                WorkflowState.REVIEW,
                WorkflowState.APPROVED,
                WorkflowState.PUBLISHED,
            ],
            transitions=transitions,
        )
