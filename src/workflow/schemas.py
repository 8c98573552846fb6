"""Workflow Request Schemas.

Pydantic schemas validating requests at the engine boundary.
"""

from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

from src.workflow.config import (
    WorkflowAction,
    WorkflowContentType,
    WorkflowPriority,
    WorkflowRole,
    WorkflowState,
)


class WorkflowTransitionRequest(BaseModel):
    """Execute a transition on an instance."""

    instance_id: str = Field(min_length=1)
    action: WorkflowAction
    performed_by: str = Field(min_length=1)
    performed_by_role: WorkflowRole
    comment: Optional[str] = Field(default=None, max_length=5000)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("instance_id", "performed_by")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value.strip()


class StartWorkflowRequest(BaseModel):
    """Start a workflow for a piece of content."""

    content_type: WorkflowContentType
    content_id: str = Field(min_length=1)
    created_by: str = Field(min_length=1)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("content_id")
    @classmethod
    def _content_id_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value.strip()


class WorkflowQuery(BaseModel):
    """Filter and paginate workflow instances."""

    content_type: Optional[WorkflowContentType] = None
    state: Optional[WorkflowState] = None
    assigned_to: Optional[str] = None
    created_by: Optional[str] = None
    priority: Optional[WorkflowPriority] = None
    created_after: Optional[datetime] = None
    created_before: Optional[datetime] = None
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=20, ge=1, le=100)

    @field_validator("created_after", "created_before")
    @classmethod
    def _assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        # Instance timestamps are UTC-aware; naive bounds are read as UTC
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


class WorkflowInstancePage(BaseModel):
    """Paginated instance listing."""

    data: list[dict[str, Any]]
    page: int
    limit: int
    total: int
    has_more: bool = False
