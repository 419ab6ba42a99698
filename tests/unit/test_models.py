"""Automation and workflow model validation tests."""

import pytest
from pydantic import ValidationError

from dealflow.enums import TriggerType
from dealflow.errors import AutomationValidationError
from dealflow.models import (
    Automation,
    CreateTaskAction,
    WebhookAction,
    Workflow,
    WorkflowStep,
    parse_action,
)


def test_actions_are_discriminated_by_type():
    action = parse_action({"type": "create_task", "parameters": {"title": "Call"}})
    assert isinstance(action, CreateTaskAction)
    assert action.parameters.due_days == 1
    assert action.parameters.priority == "medium"


def test_unknown_action_type_is_rejected():
    with pytest.raises(ValidationError):
        parse_action({"type": "send_fax", "parameters": {}})


def test_action_parameters_are_validated():
    with pytest.raises(ValidationError):
        parse_action({"type": "update_score", "parameters": {"score_change": "lots"}})
    with pytest.raises(ValidationError):
        parse_action({"type": "webhook", "parameters": {"url": "ftp://example.com"}})
    with pytest.raises(ValidationError):
        parse_action({"type": "schedule_follow_up", "parameters": {"time": "25:00"}})


def test_webhook_method_is_normalised():
    action = parse_action(
        {"type": "webhook", "parameters": {"url": "https://hooks.example.com", "method": "put"}}
    )
    assert isinstance(action, WebhookAction)
    assert action.parameters.method == "PUT"
    assert action.parameters.timeout is None


def test_active_automation_needs_actions():
    automation = Automation(name="empty", trigger_type="manual", actions=[])
    with pytest.raises(AutomationValidationError):
        automation.ensure_persistable()
    automation.is_active = False
    automation.ensure_persistable()
    with pytest.raises(AutomationValidationError):
        automation.ensure_executable()


def test_trigger_aliases_normalise():
    automation = Automation(name="a", trigger_type="deal_stage_changed")
    assert automation.trigger_type is TriggerType.DEAL_STAGE_CHANGE
    with pytest.raises(ValidationError):
        Automation(name="a", trigger_type="invoice_paid")


def test_step_aliases_and_delays():
    step = WorkflowStep(
        step_type="assign_lead",
        step_config={"user_id": "u2", "delay_days": 2, "delay_hours": 1},
        delay=30,
    )
    assert step.step_type == "assign_to_user"
    assert step.delay_seconds() == 30 + 2 * 86400 + 3600
    assert step.to_action().parameters.user_id == "u2"


def test_wait_step_duration():
    step = WorkflowStep(step_type="wait", step_config={"hours": 2, "seconds": 5})
    assert step.is_wait
    assert step.wait_seconds() == 7205


def test_step_rejects_bad_config():
    with pytest.raises(ValidationError):
        WorkflowStep(step_type="send_email", step_config={"subject": "missing content"})
    with pytest.raises(ValidationError):
        WorkflowStep(step_type="teleport")
    with pytest.raises(ValidationError):
        WorkflowStep(step_type="wait", delay=-1)


@pytest.mark.parametrize(
    "step_type, config",
    [
        ("create_note", {"content": "hi", "delay_days": "two"}),
        ("create_note", {"content": "hi", "delay_hours": -1}),
        ("create_note", {"content": "hi", "delay_days": True}),
        ("wait", {"hours": "soon"}),
        ("wait", {"days": [1]}),
        ("wait", {"seconds": "inf"}),
    ],
)
def test_step_durations_must_be_numbers(step_type, config):
    with pytest.raises(ValidationError):
        WorkflowStep(step_type=step_type, step_config=config)
    with pytest.raises(ValidationError):
        Workflow(name="bad delay", workflow_steps=[{"step_type": step_type, "step_config": config}])


def test_numeric_strings_are_accepted_as_durations():
    step = WorkflowStep(
        step_type="create_note", step_config={"content": "hi", "delay_days": "1", "delay_hours": ""}
    )
    assert step.delay_seconds() == 86400
    assert WorkflowStep(step_type="wait", step_config={"hours": "0.5"}).wait_seconds() == 1800


def test_branches_must_jump_forward():
    steps = [
        {"step_type": "create_note", "step_config": {"content": "a"}},
        {
            "step_type": "conditional_branch",
            "step_config": {"conditions": [], "true_step": 0},
        },
    ]
    with pytest.raises(ValidationError):
        Workflow(name="loop", workflow_steps=steps)

    steps[1]["step_config"]["true_step"] = 2
    workflow = Workflow(name="finish", workflow_steps=steps)
    assert workflow.workflow_steps[1].branch_target(True) == 2
    assert workflow.workflow_steps[1].branch_target(False) is None


def test_active_workflow_needs_steps():
    with pytest.raises(AutomationValidationError):
        Workflow(name="w", is_active=True).ensure_persistable()
