"""Tests for the event-consuming worker."""

import asyncio

import pytest

from dealflow.contracts import DomainEvent, EntityRef
from dealflow.execute import AutomationWorker
from dealflow.transports.inmemory import InMemoryTransport


@pytest.mark.asyncio
async def test_worker_processes_published_events(
    repo, engine, runner, collaborators, make_automation, make_workflow
):
    automation = make_automation(trigger_rules={"target_stage": "qualified"})
    await repo.create_automation(automation)
    transport = InMemoryTransport(poll_interval=0.01)
    event = DomainEvent(
        type="deal_stage_change",
        entity=EntityRef(id="d1", type="deal", snapshot={"first_name": "Ana"}),
        payload={"old_stage": "lead", "new_stage": "qualified"},
    )
    await transport.publish("crm.events", event)

    worker = AutomationWorker(transport, engine, runner)
    await asyncio.wait_for(worker.start(lifespan=0.2), timeout=5)

    assert worker.processed == [event.event_id]
    assert transport.acked == [event.event_id]
    assert [t["title"] for t in collaborators.tasks.tasks] == ["Call Ana"]
    assert len(await repo.list_executions(automation.id)) == 1


@pytest.mark.asyncio
async def test_worker_enrolls_matching_workflows(
    repo, engine, runner, collaborators, make_workflow
):
    workflow = make_workflow(
        [{"step_type": "create_note", "step_config": {"content": "Welcome"}}]
    )
    await repo.create_workflow(workflow)
    worker = AutomationWorker(InMemoryTransport(), engine, runner)

    report = await worker.handle(
        DomainEvent(
            type="client_status_changed",
            entity=EntityRef(id="c1"),
            payload={"old_status": "new", "new_status": "lead"},
        )
    )

    assert report.matched == 0
    enrollments = await repo.list_enrollments(workflow_id=workflow.id)
    assert len(enrollments) == 1
    assert [n["content"] for n in collaborators.notes.notes] == ["Welcome"]


@pytest.mark.asyncio
async def test_worker_rejects_events_it_cannot_handle(engine, monkeypatch):
    async def explode(event):
        raise RuntimeError("engine unavailable")

    monkeypatch.setattr(engine, "process_event", explode)
    transport = InMemoryTransport(poll_interval=0.01)
    event = DomainEvent(type="manual", entity=EntityRef(id="c1"))
    await transport.publish("crm.events", event)

    worker = AutomationWorker(transport, engine)
    await asyncio.wait_for(worker.start(lifespan=0.2), timeout=5)

    assert transport.rejected == [event.event_id]
    assert transport.acked == []
    assert worker.processed == []
