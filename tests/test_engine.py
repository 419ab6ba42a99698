"""End-to-end tests for the automation engine."""

import pytest

from dealflow.collaborators import InMemoryTaskStore
from dealflow.contracts import DomainEvent, EntityRef
from dealflow.enums import ParentKind


def _stage_event(new_stage="qualified", **snapshot):
    return DomainEvent(
        type="deal_stage_change",
        entity=EntityRef(id="d1", type="deal", snapshot={"first_name": "Ana", **snapshot}),
        payload={"old_stage": "lead", "new_stage": new_stage},
    )


@pytest.mark.asyncio
async def test_stage_change_creates_one_task_and_one_ledger_entry(
    repo, engine, collaborators, make_automation
):
    automation = make_automation(
        trigger_rules={"target_stage": "qualified"},
        conditions=[
            {"source": "trigger", "field": "new_stage", "operator": "equals", "value": "qualified"}
        ],
    )
    await repo.create_automation(automation)

    report = await engine.process_event(_stage_event())

    assert report.matched == 1
    assert report.executed[0].success
    assert len(collaborators.tasks.tasks) == 1
    task = collaborators.tasks.tasks[0]
    assert task["title"] == "Call Ana"
    assert task["deal_id"] == "d1"

    history = await repo.list_executions(automation.id)
    assert len(history) == 1
    assert history[0].success
    assert history[0].parent_kind is ParentKind.AUTOMATION
    assert history[0].trigger_payload["new_stage"] == "qualified"
    assert history[0].action_results[0].output["id"] == "task_1"


@pytest.mark.asyncio
async def test_unmatched_rules_and_conditions(repo, engine, collaborators, make_automation):
    wrong_stage = make_automation(trigger_rules={"target_stage": "closed"})
    failing_condition = make_automation(
        conditions=[{"field": "budget", "operator": "greater_than", "value": 500000}]
    )
    await repo.create_automation(wrong_stage)
    await repo.create_automation(failing_condition)

    report = await engine.process_event(_stage_event(budget=250000))

    assert report.matched == 1
    assert report.executed == []
    assert collaborators.tasks.tasks == []
    assert await repo.list_executions(failing_condition.id) == []


@pytest.mark.asyncio
async def test_untracked_event_matches_nothing(repo, engine, make_automation):
    await repo.create_automation(make_automation())
    event = DomainEvent(type="invoice_paid", entity=EntityRef(id="x"))
    report = await engine.process_event(event)
    assert report.matched == 0


@pytest.mark.asyncio
async def test_automations_run_in_priority_order(repo, engine, make_automation):
    low = make_automation(name="low", priority=5)
    high = make_automation(name="high", priority=1)
    await repo.create_automation(low)
    await repo.create_automation(high)

    report = await engine.process_event(_stage_event())
    assert [run.name for run in report.executed] == ["high", "low"]


@pytest.mark.asyncio
async def test_disabled_automation_stops_matching(repo, engine, make_automation):
    automation = make_automation()
    await repo.create_automation(automation)
    automation.is_active = False
    await repo.update_automation(automation)

    report = await engine.process_event(_stage_event())
    assert report.matched == 0


@pytest.mark.asyncio
async def test_crashing_automation_does_not_affect_others(
    repo, engine, collaborators, make_automation
):
    class ExplodingTaskStore(InMemoryTaskStore):
        async def create_task(self, task):
            if task["title"] == "boom":
                raise RuntimeError("database exploded")
            return await super().create_task(task)

    collaborators.tasks = ExplodingTaskStore()
    crashing = make_automation(
        name="crashing", actions=[{"type": "create_task", "parameters": {"title": "boom"}}]
    )
    healthy = make_automation(name="healthy", priority=2)
    await repo.create_automation(crashing)
    await repo.create_automation(healthy)

    report = await engine.process_event(_stage_event())

    runs = {run.name: run for run in report.executed}
    assert runs["crashing"].success is False
    assert "database exploded" in runs["crashing"].error
    assert runs["healthy"].success is True
    assert [t["title"] for t in collaborators.tasks.tasks] == ["Call Ana"]


@pytest.mark.asyncio
async def test_partial_failure_is_recorded(repo, engine, collaborators, make_automation):
    automation = make_automation(
        actions=[
            {"type": "send_sms", "parameters": {"message": "Hi"}},
            {"type": "create_note", "parameters": {"content": "Stage moved"}},
        ]
    )
    await repo.create_automation(automation)

    report = await engine.process_event(_stage_event())

    run = report.executed[0]
    assert run.success is False
    assert run.actions_executed == 1
    assert report.failed_actions == 1
    history = await repo.list_executions(automation.id)
    assert history[0].success is False
    assert "No recipient phone" in history[0].error_message
    assert len(collaborators.notes.notes) == 1


@pytest.mark.asyncio
async def test_ledger_outage_does_not_fail_the_run(repo, engine, make_automation, monkeypatch):
    await repo.create_automation(make_automation())

    async def broken(record):
        raise ConnectionError("ledger unavailable")

    monkeypatch.setattr(repo, "record_execution", broken)
    report = await engine.process_event(_stage_event())
    assert report.executed[0].success


@pytest.mark.asyncio
async def test_automation_without_actions_is_recorded_as_failure(repo, engine, make_automation):
    automation = make_automation(is_active=False, actions=[])
    await repo.create_automation(automation)
    run = await engine.run_automation(automation, _stage_event())

    assert run.success is False
    history = await repo.list_executions(automation.id)
    assert history[0].error_message == f"Automation {automation.id} has no actions"


@pytest.mark.asyncio
async def test_run_manual_targets_one_automation(repo, engine, collaborators, make_automation):
    first = make_automation(trigger_type="manual", name="first")
    second = make_automation(trigger_type="manual", name="second")
    await repo.create_automation(first)
    await repo.create_automation(second)

    report = await engine.run_manual(
        second.id, EntityRef(id="c1", snapshot={"first_name": "Bo"}), acting_user="u1"
    )

    assert [run.name for run in report.executed] == ["second"]
    assert collaborators.tasks.tasks[0]["title"] == "Call Bo"


@pytest.mark.asyncio
async def test_dry_run_writes_nothing(repo, engine, collaborators, make_automation):
    automation = make_automation(
        conditions=[{"field": "status", "operator": "equals", "value": "qualified"}],
        actions=[
            {"type": "create_task", "parameters": {"title": "Call {{first_name}}"}},
            {"type": "update_score", "parameters": {"score_change": 10}},
            {"type": "webhook", "parameters": {"url": "https://hooks.example.com/x"}},
        ],
    )
    await repo.create_automation(automation)

    report = await engine.test_automation(
        automation, {"id": "c1", "first_name": "Ana", "status": "qualified", "lead_score": 5}
    )

    assert report.success
    assert report.conditions_met
    assert [c["operation"] for c in report.calls] == ["create_task", "adjust_score", "send"]
    assert report.calls[0]["arguments"]["task"]["title"] == "Call Ana"
    assert report.actions[1].output["new_score"] == 15
    assert collaborators.tasks.tasks == []
    assert await repo.list_executions(automation.id) == []


@pytest.mark.asyncio
async def test_dry_run_explains_failed_conditions(engine, make_automation):
    automation = make_automation(
        conditions=[
            {"field": "status", "operator": "equals", "value": "qualified"},
            {"field": "email", "operator": "is_not_empty"},
        ]
    )
    report = await engine.test_automation(automation, {"status": "lead"})

    assert not report.success
    assert report.conditions_met is False
    assert [c.passed for c in report.conditions] == [False, False]
    assert len(report.errors) == 2
    assert "field 'email' not found in entity" in report.errors[1]


@pytest.mark.asyncio
async def test_crashing_collaborator_still_leaves_a_ledger_entry(
    repo, engine, collaborators, make_automation, monkeypatch
):
    async def explode(note):
        raise RuntimeError("notes service exploded")

    monkeypatch.setattr(collaborators.notes, "create_note", explode)
    automation = make_automation(
        actions=[
            {"type": "create_note", "parameters": {"content": "hello"}},
            {"type": "create_task", "parameters": {"title": "Call {{first_name}}"}},
        ]
    )
    await repo.create_automation(automation)

    report = await engine.process_event(_stage_event())

    run = report.executed[0]
    assert not run.success
    assert run.actions_executed == 1
    assert len(run.results) == 2
    assert len(collaborators.tasks.tasks) == 1
    history = await repo.list_executions(automation.id)
    assert len(history) == 1
    assert not history[0].success
    assert "notes service exploded" in history[0].error_message
    stats = await repo.execution_stats(automation.id)
    assert stats.failed_executions == 1
