"""Run a stage-change automation and a nurture workflow in-process."""

import asyncio
from datetime import timedelta

from dealflow import (
    Automation,
    AutomationEngine,
    DomainEvent,
    EntityRef,
    InMemoryRepository,
    Workflow,
    WorkflowStepRunner,
)
from dealflow.collaborators import in_memory_collaborators
from dealflow.utils.dates import utc_now


async def stage_change_example():
    """Create a follow-up task when a deal becomes qualified."""
    print("Stage change automation")

    repo = InMemoryRepository()
    collaborators = in_memory_collaborators()
    engine = AutomationEngine.from_config(repo, collaborators)

    automation = Automation(
        name="Qualified deal follow-up",
        trigger_type="deal_stage_change",
        trigger_rules={"target_stage": "qualified"},
        actions=[
            {
                "type": "create_task",
                "parameters": {"title": "Call {{first_name}} about {{title}}", "due_days": 1},
            },
            {"type": "update_score", "parameters": {"score_change": 10}},
        ],
    )
    await repo.create_automation(automation)

    event = DomainEvent(
        type="deal_stage_change",
        entity=EntityRef(
            id="deal-1",
            type="deal",
            snapshot={"title": "Loft on 5th", "first_name": "Ana", "client_id": "client-1"},
        ),
        payload={"old_stage": "lead", "new_stage": "qualified"},
    )
    report = await engine.process_event(event)

    print(f"  matched={report.matched} actions={report.total_actions}")
    print(f"  task: {collaborators.tasks.tasks[0]['title']}")
    stats = await repo.execution_stats(automation.id)
    print(f"  success rate: {stats.success_rate}%")


async def nurture_workflow_example():
    """Enroll a new lead and step through a delayed workflow."""
    print("\nNurture workflow")

    repo = InMemoryRepository()
    collaborators = in_memory_collaborators()
    engine = AutomationEngine.from_config(repo, collaborators)
    runner = WorkflowStepRunner(repo, engine.dispatcher)

    workflow = Workflow(
        name="New lead nurture",
        category="lead_nurturing",
        trigger_type="client_status_change",
        is_active=True,
        workflow_steps=[
            {
                "step_type": "send_email",
                "step_config": {"subject": "Welcome {{first_name}}", "content": "Hi!"},
            },
            {
                "step_type": "create_task",
                "step_config": {"title": "Call {{first_name}}", "delay_days": 2},
            },
        ],
    )
    await repo.create_workflow(workflow)

    now = utc_now()
    client = EntityRef(id="client-7", snapshot={"first_name": "Bo", "email": "bo@example.com"})
    enrollment = await runner.enroll(workflow, client, now=now)

    await runner.run_due(now)
    print(f"  emails sent: {len(collaborators.messaging.sent)}")
    await runner.run_due(now + timedelta(days=2))
    state = await repo.get_enrollment(enrollment.id)
    print(f"  enrollment {state.status.value}, tasks: {len(collaborators.tasks.tasks)}")


if __name__ == "__main__":
    asyncio.run(stage_change_example())
    asyncio.run(nurture_workflow_example())
