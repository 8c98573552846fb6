"""Pytest configuration and shared fixtures."""

import sys
from pathlib import Path

import pytest

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from src.notifications import (  # noqa: E402
    NotificationConfig,
    TemplateRegistry,
    WorkflowNotificationService,
)
from src.workflow import (  # noqa: E402
    EngineConfig,
    InMemoryWorkflowRepository,
    LoggingBroadcaster,
    WorkflowContentType,
    WorkflowEngine,
    WorkflowInstance,
)


@pytest.fixture
def repository():
    return InMemoryWorkflowRepository()


@pytest.fixture
def broadcaster():
    return LoggingBroadcaster()


@pytest.fixture
def engine(repository, broadcaster):
    """Engine with in-memory storage and no notification service."""
    return WorkflowEngine(
        config=EngineConfig(transition_timeout_seconds=5.0),
        repository=repository,
        broadcaster=broadcaster,
    )


@pytest.fixture
def notifier():
    """Notification service with default recipients and templates."""
    return WorkflowNotificationService(NotificationConfig())


@pytest.fixture
def bare_notifier():
    """Notification service with no recipients and no templates."""
    return WorkflowNotificationService(
        NotificationConfig(),
        templates=TemplateRegistry(load_defaults=False),
        load_defaults=False,
    )


@pytest.fixture
def blog_instance():
    return WorkflowInstance(
        workflow_definition_id="blog-post-workflow",
        content_type=WorkflowContentType.BLOG_POST,
        content_id="post-1",
        created_by="alice",
        metadata={"title": "Spring checkup guide", "correlation_id": "corr-1"},
    )
