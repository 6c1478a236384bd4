"""Pytest configuration and fixtures."""

import pytest

from flowengine.config import get_testing_config, reset_config
from flowengine.core.collaborators import InMemoryAuditSink, InMemoryTaskService, LoggingNotificationService, StaticDirectory
from flowengine.core.permissions import Actor
from flowengine.factory import create_workflow_system
from tests.workflow_fixtures import (
    APPROVAL_WORKFLOW, PARALLEL_WORKFLOW, TASK_WORKFLOW, FixedClock, ScriptedIntegrationService
)


@pytest.fixture(autouse=True)
def reset_global_config():
    """Keep the global configuration from leaking between tests."""
    reset_config()
    yield
    reset_config()


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def notifications():
    return LoggingNotificationService()


@pytest.fixture
def tasks():
    return InMemoryTaskService()


@pytest.fixture
def audit():
    return InMemoryAuditSink()


@pytest.fixture
def integrations():
    return ScriptedIntegrationService()


@pytest.fixture
def directory():
    return StaticDirectory(groups={"finance": ["fin1", "fin2", "fin3"], "managers": ["mgr1", "mgr2"]})


@pytest.fixture
def system(clock, notifications, tasks, audit, integrations, directory):
    """In-memory workflow system with inline branch scheduling."""
    system = create_workflow_system(
        config=get_testing_config(),
        task_service=tasks,
        notification_service=notifications,
        integration_service=integrations,
        audit_sink=audit,
        directory=directory,
        clock=clock,
        sleep=lambda seconds: None
    )
    yield system
    system.shutdown()


@pytest.fixture
def engine(system):
    return system.engine


@pytest.fixture
def author():
    return Actor(id="author")


@pytest.fixture
def requester():
    return Actor(id="requester")


@pytest.fixture
def admin():
    return Actor(id="root", roles=["admin"])


@pytest.fixture
def publish(system, author):
    """Create and publish a definition from a draft payload; returns the published definition."""
    def _publish(payload):
        definition = system.definitions.create_definition(author, payload)
        return system.definitions.publish_definition(author, definition.id)
    return _publish


@pytest.fixture
def task_workflow(publish):
    return publish(TASK_WORKFLOW)


@pytest.fixture
def approval_workflow(publish):
    return publish(APPROVAL_WORKFLOW)


@pytest.fixture
def parallel_workflow(publish):
    return publish(PARALLEL_WORKFLOW)
