"""Tests for ActionDispatcher and the httpx webhook client."""

import json
from datetime import datetime, timezone

import httpx
import pytest

from dealflow.collaborators import HttpxWebhookClient, in_memory_collaborators
from dealflow.config import RetryConfig
from dealflow.contracts import EntityRef, ExecutionContext
from dealflow.dispatch import ActionDispatcher
from dealflow.enums import ErrorKind

NOW = datetime(2025, 1, 6, 9, 0, tzinfo=timezone.utc)


async def no_sleep(_delay):
    return None


def _context(**snapshot):
    return ExecutionContext(
        entity=EntityRef(id="c1", type="client", snapshot=snapshot),
        payload={"old_status": "new", "new_status": "qualified"},
        automation_id="auto-1",
        now=NOW,
    )


def _webhook_dispatcher(handler, calls=None):
    def record(request: httpx.Request) -> httpx.Response:
        if calls is not None:
            calls.append(request)
        return handler(request)

    client = HttpxWebhookClient(transport=httpx.MockTransport(record))
    collaborators = in_memory_collaborators(webhooks=client)
    return ActionDispatcher(collaborators, sleep=no_sleep), collaborators


@pytest.mark.asyncio
async def test_actions_run_in_order(dispatcher, collaborators):
    actions = [
        {"type": "create_note", "parameters": {"content": "first"}},
        {"type": "create_task", "parameters": {"title": "second"}},
        {"type": "create_note", "parameters": {"content": "third"}},
    ]
    results = await dispatcher.execute(actions, _context())

    assert [r.index for r in results] == [0, 1, 2]
    assert all(r.success for r in results)
    assert [n["content"] for n in collaborators.notes.notes] == ["first", "third"]
    assert results[1].output["id"] == "task_1"


@pytest.mark.asyncio
async def test_create_task_fields(dispatcher, collaborators):
    actions = [
        {
            "type": "create_task",
            "parameters": {"title": "Call {{client.first_name}}", "due_days": 2, "priority": "high"},
        }
    ]
    await dispatcher.execute(actions, _context(first_name="Ana", user_id="agent-1"))

    task = collaborators.tasks.tasks[0]
    assert task["title"] == "Call Ana"
    assert task["client_id"] == "c1"
    assert task["user_id"] == "agent-1"
    assert task["priority"] == "high"
    assert task["status"] == "pending"
    assert task["due_date"] == "2025-01-08T09:00:00+00:00"
    assert task["metadata"] == {"generated_by": "dealflow", "automation_id": "auto-1"}


@pytest.mark.asyncio
async def test_failed_action_does_not_stop_the_rest():
    calls = []
    dispatcher, collaborators = _webhook_dispatcher(
        lambda request: httpx.Response(503), calls
    )
    actions = [
        {"type": "webhook", "parameters": {"url": "https://hooks.example.com/a"}},
        {"type": "create_task", "parameters": {"title": "still runs"}},
    ]
    results = await dispatcher.execute(actions, _context())

    assert not results[0].success
    assert results[0].error_kind == ErrorKind.TRANSIENT
    assert results[0].attempts == 3
    assert len(calls) == 3
    assert results[1].success
    assert collaborators.tasks.tasks[0]["title"] == "still runs"


@pytest.mark.asyncio
async def test_permanent_webhook_failure_is_not_retried():
    calls = []
    dispatcher, _ = _webhook_dispatcher(lambda request: httpx.Response(404), calls)
    results = await dispatcher.execute(
        [{"type": "webhook", "parameters": {"url": "https://hooks.example.com/gone"}}],
        _context(),
    )

    assert len(calls) == 1
    assert results[0].error_kind == ErrorKind.PERMANENT
    assert results[0].attempts == 1
    assert "404" in results[0].error


@pytest.mark.asyncio
async def test_transient_webhook_failure_recovers():
    responses = iter([httpx.Response(500), httpx.Response(429), httpx.Response(200)])
    dispatcher, _ = _webhook_dispatcher(lambda request: next(responses))
    results = await dispatcher.execute(
        [{"type": "webhook", "parameters": {"url": "https://hooks.example.com/flaky"}}],
        _context(),
    )

    assert results[0].success
    assert results[0].attempts == 3
    assert results[0].output == {"webhook_called": True, "status": 200}


@pytest.mark.asyncio
async def test_webhook_request_body():
    calls = []
    dispatcher, _ = _webhook_dispatcher(lambda request: httpx.Response(204), calls)
    await dispatcher.execute(
        [
            {
                "type": "webhook",
                "parameters": {
                    "url": "https://hooks.example.com/{{id}}",
                    "method": "put",
                    "headers": {"X-Client": "{{first_name}}"},
                    "payload": {"greeting": "Hi {{first_name}}"},
                },
            }
        ],
        _context(first_name="Ana"),
    )

    request = calls[0]
    assert request.method == "PUT"
    assert str(request.url) == "https://hooks.example.com/c1"
    assert request.headers["X-Client"] == "Ana"
    body = json.loads(request.content)
    assert body["greeting"] == "Hi Ana"
    assert body["automation_id"] == "auto-1"
    assert body["trigger_data"] == {"old_status": "new", "new_status": "qualified"}
    assert body["entity_data"]["first_name"] == "Ana"
    assert body["timestamp"] == NOW.isoformat()


@pytest.mark.asyncio
async def test_webhook_connection_error_is_transient():
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    dispatcher, _ = _webhook_dispatcher(refuse)
    dispatcher.retry = RetryConfig(max_attempts=2)
    results = await dispatcher.execute(
        [{"type": "webhook", "parameters": {"url": "https://hooks.example.com"}}],
        _context(),
    )
    assert results[0].error_kind == ErrorKind.TRANSIENT
    assert results[0].attempts == 2


@pytest.mark.asyncio
async def test_email_uses_entity_address(dispatcher, collaborators):
    results = await dispatcher.execute(
        [
            {
                "type": "send_email",
                "parameters": {"subject": "Welcome {{first_name}}", "content": "Hello"},
            }
        ],
        _context(first_name="Ana", email="ana@example.com"),
    )
    assert results[0].success
    sent = collaborators.messaging.sent[0]
    assert sent["to"] == "ana@example.com"
    assert sent["subject"] == "Welcome Ana"


@pytest.mark.asyncio
async def test_missing_recipient_is_permanent(dispatcher, collaborators):
    results = await dispatcher.execute(
        [
            {"type": "send_email", "parameters": {"subject": "s", "content": "c"}},
            {"type": "send_sms", "parameters": {"message": "hi"}},
        ],
        _context(),
    )
    assert [r.error_kind for r in results] == [ErrorKind.PERMANENT, ErrorKind.PERMANENT]
    assert collaborators.messaging.sent == []


@pytest.mark.asyncio
async def test_score_is_adjusted_by_delta_and_clamped(dispatcher, collaborators):
    collaborators.entities.records = {"client": {"c1": {"id": "c1", "lead_score": 40}}}
    actions = [
        {"type": "update_score", "parameters": {"score_change": 15}},
        {"type": "update_score", "parameters": {"score_change": -100}},
    ]
    results = await dispatcher.execute(actions, _context())

    assert results[0].output == {"previous_score": 40, "new_score": 55, "score_change": 15}
    assert results[1].output["new_score"] == 0
    assert collaborators.entities.records["client"]["c1"]["lead_score"] == 0


@pytest.mark.asyncio
async def test_score_without_client_fails(dispatcher):
    context = ExecutionContext(entity=EntityRef(id="d1", type="deal"), now=NOW)
    results = await dispatcher.execute(
        [{"type": "update_score", "parameters": {"score_change": 5}}], context
    )
    assert results[0].error == "No client found to update score"


@pytest.mark.asyncio
async def test_entity_updates(dispatcher, collaborators):
    context = ExecutionContext(
        entity=EntityRef(id="d1", type="deal", snapshot={"client_id": "c9"}), now=NOW
    )
    await dispatcher.execute(
        [
            {"type": "move_to_stage", "parameters": {"new_stage": "under_contract"}},
            {"type": "update_status", "parameters": {"new_status": "active"}},
            {"type": "assign_to_user", "parameters": {"user_id": "u3", "entity_type": "deal"}},
        ],
        context,
    )
    records = collaborators.entities.records
    assert records["deal"]["d1"]["status"] == "under_contract"
    assert records["deal"]["d1"]["assigned_to"] == "u3"
    assert records["client"]["c9"]["status"] == "active"


@pytest.mark.asyncio
async def test_schedule_follow_up(dispatcher, collaborators):
    await dispatcher.execute(
        [{"type": "schedule_follow_up", "parameters": {"days_ahead": 3, "time": "14:30"}}],
        _context(first_name="Ana", last_name="Silva"),
    )
    task = collaborators.tasks.tasks[0]
    assert task["due_date"] == "2025-01-09T14:30:00+00:00"
    assert task["title"] == "Follow up - Ana Silva"


@pytest.mark.asyncio
async def test_invalid_action_is_a_permanent_failure(dispatcher):
    results = await dispatcher.execute(
        [{"type": "send_fax", "parameters": {}}], _context()
    )
    assert not results[0].success
    assert results[0].action_type == "send_fax"
    assert results[0].error_kind == ErrorKind.PERMANENT


@pytest.mark.asyncio
async def test_strict_templates_fail_the_action(collaborators):
    from dealflow.templates import TemplateRenderer

    dispatcher = ActionDispatcher(
        collaborators, renderer=TemplateRenderer("strict"), sleep=no_sleep
    )
    results = await dispatcher.execute(
        [{"type": "create_note", "parameters": {"content": "{{client.nickname}}"}}],
        _context(),
    )
    assert results[0].error_kind == ErrorKind.PERMANENT
    assert collaborators.notes.notes == []


@pytest.mark.asyncio
async def test_unexpected_collaborator_error_is_recorded_and_later_actions_run(
    dispatcher, collaborators, monkeypatch
):
    async def explode(note):
        raise RuntimeError("notes service exploded")

    monkeypatch.setattr(collaborators.notes, "create_note", explode)
    results = await dispatcher.execute(
        [
            {"type": "create_note", "parameters": {"content": "hello"}},
            {"type": "create_task", "parameters": {"title": "still runs"}},
        ],
        _context(),
    )

    assert not results[0].success
    assert results[0].error_kind == ErrorKind.PERMANENT
    assert results[0].attempts == 1
    assert "notes service exploded" in results[0].error
    assert results[1].success
    assert collaborators.tasks.tasks[0]["title"] == "still runs"


@pytest.mark.asyncio
async def test_workflow_webhook_body_names_workflow_and_enrollment():
    calls = []
    dispatcher, _ = _webhook_dispatcher(lambda request: httpx.Response(200), calls)
    context = ExecutionContext(
        entity=EntityRef(id="c1", type="client"),
        workflow_id="wf-1",
        enrollment_id="enr-1",
        now=NOW,
    )
    await dispatcher.execute(
        [{"type": "webhook", "parameters": {"url": "https://hooks.example.com/wf"}}],
        context,
    )

    body = json.loads(calls[0].content)
    assert body["automation_id"] == "wf-1"
    assert body["workflow_id"] == "wf-1"
    assert body["enrollment_id"] == "enr-1"


@pytest.mark.asyncio
async def test_automation_webhook_body_has_no_workflow_fields():
    calls = []
    dispatcher, _ = _webhook_dispatcher(lambda request: httpx.Response(200), calls)
    await dispatcher.execute(
        [{"type": "webhook", "parameters": {"url": "https://hooks.example.com/a"}}],
        _context(),
    )
    body = json.loads(calls[0].content)
    assert "workflow_id" not in body
    assert "enrollment_id" not in body
