"""Shared fixtures for dealflow tests."""

from datetime import datetime, timezone

import pytest

from dealflow.collaborators import in_memory_collaborators
from dealflow.dispatch import ActionDispatcher
from dealflow.execute import AutomationEngine
from dealflow.models import Automation, Workflow
from dealflow.persistence import InMemoryRepository, reset_repository
from dealflow.runner import WorkflowStepRunner

NOW = datetime(2025, 1, 6, 9, 0, tzinfo=timezone.utc)


async def no_sleep(_delay: float) -> None:
    return None


@pytest.fixture(autouse=True)
def isolated_environment(tmp_path, monkeypatch):
    """Keep host configuration and cached repositories out of tests."""
    for name in (
        "DEALFLOW_CONFIG",
        "DEALFLOW_DATABASE_URL",
        "DATABASE_URL",
        "DEALFLOW_TRANSPORT",
        "DEALFLOW_LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    reset_repository()
    yield
    reset_repository()


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def repo():
    return InMemoryRepository()


@pytest.fixture
def collaborators():
    return in_memory_collaborators()


@pytest.fixture
def dispatcher(collaborators):
    return ActionDispatcher(collaborators, sleep=no_sleep)


@pytest.fixture
def engine(repo, dispatcher):
    return AutomationEngine(repo, dispatcher)


@pytest.fixture
def runner(repo, dispatcher):
    return WorkflowStepRunner(repo, dispatcher)


@pytest.fixture
def make_automation():
    def _make(**overrides) -> Automation:
        data = {
            "name": "Qualified deal follow-up",
            "trigger_type": "deal_stage_change",
            "actions": [
                {
                    "type": "create_task",
                    "parameters": {"title": "Call {{first_name}}", "due_days": 1},
                }
            ],
        }
        data.update(overrides)
        return Automation.model_validate(data)

    return _make


@pytest.fixture
def make_workflow():
    def _make(steps, **overrides) -> Workflow:
        data = {
            "name": "New lead nurture",
            "category": "lead_nurturing",
            "trigger_type": "client_status_change",
            "is_active": True,
            "workflow_steps": steps,
        }
        data.update(overrides)
        return Workflow.model_validate(data)

    return _make
