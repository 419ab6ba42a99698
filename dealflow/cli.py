"""Command line interface for managing and running dealflow automations."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, NoReturn, Optional, Tuple

import typer
import yaml
from pydantic import ValidationError

from dealflow import (
    AutomationEngine,
    AutomationWorker,
    DomainEvent,
    EntityRef,
    EnrollmentStatus,
    SequenceScheduler,
    WorkflowStepRunner,
    get_repository,
    get_transport,
    load_config,
)
from dealflow.collaborators import in_memory_collaborators
from dealflow.config import DealflowConfig
from dealflow.errors import DealflowError
from dealflow.models import Automation, Workflow
from dealflow.persistence import Repository

app = typer.Typer(help="CLI for dealflow CRM automations")

# Command groups
automation_app = typer.Typer(help="Commands for managing automations")
workflow_app = typer.Typer(help="Commands for managing workflows")
enrollment_app = typer.Typer(help="Commands for managing workflow enrollments")
worker_app = typer.Typer(help="Commands for running event workers")
scheduler_app = typer.Typer(help="Commands for running the scheduler")
event_app = typer.Typer(help="Commands for publishing domain events")

app.add_typer(automation_app, name="automation")
app.add_typer(workflow_app, name="workflow")
app.add_typer(enrollment_app, name="enrollment")
app.add_typer(worker_app, name="worker")
app.add_typer(scheduler_app, name="scheduler")
app.add_typer(event_app, name="event")


@app.callback()
def main() -> None:
    """dealflow CLI entry point."""
    config = load_config()
    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ----------------------------------------------------------------------
# Helpers


def _fail(message: str) -> NoReturn:
    typer.secho(message, fg=typer.colors.RED)
    raise typer.Exit(code=1)


def _parse_json(value: Optional[str], option: str) -> Dict[str, Any]:
    if not value:
        return {}
    try:
        data = json.loads(value)
    except json.JSONDecodeError as e:
        _fail(f"{option} is not valid JSON: {e}")
    if not isinstance(data, dict):
        _fail(f"{option} must be a JSON object")
    return data


def _load_document(path: Path) -> Dict[str, Any]:
    """Read a YAML or JSON definition file."""
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        _fail(f"Could not read {path}: {e}")
    if not isinstance(data, dict):
        _fail(f"{path} must contain a mapping")
    return data


def _build(config: DealflowConfig) -> Tuple[Repository, AutomationEngine, WorkflowStepRunner]:
    repository = get_repository()
    collaborators = in_memory_collaborators(webhook_timeout=config.webhook.timeout)
    engine = AutomationEngine.from_config(repository, collaborators, config)
    runner = WorkflowStepRunner(repository, engine.dispatcher, retry=config.retry)
    return repository, engine, runner


def _repository() -> Repository:
    return get_repository()


async def _get_automation(repo: Repository, automation_id: str) -> Automation:
    automation = await repo.get_automation(automation_id)
    if automation is None:
        _fail("Automation not found")
    return automation


# ----------------------------------------------------------------------
# Automations


@automation_app.command("list")
def automation_list(
    active: Optional[bool] = typer.Option(
        None, "--active/--inactive", help="Only show active or inactive automations"
    ),
    limit: int = 50,
    offset: int = 0,
) -> None:
    """
    List automations with their trigger, priority and state.

    Example:
        dealflow automation list
        dealflow automation list --active --limit 10
    """
    repo = _repository()
    automations = asyncio.run(repo.list_automations(limit=limit, offset=offset, active=active))
    if not automations:
        typer.echo("No automations found")
        return
    for a in automations:
        state = "active" if a.is_active else "inactive"
        typer.echo(
            f"{a.id}\t{a.name}\t{a.trigger_type.value}\tpriority={a.priority}\t{state}"
        )


@automation_app.command("create")
def automation_create(path: Path) -> None:
    """Create an automation from a YAML or JSON definition file."""
    try:
        automation = Automation.model_validate(_load_document(path))
    except ValidationError as e:
        _fail(f"Invalid automation: {e}")
    repo = _repository()
    try:
        asyncio.run(repo.create_automation(automation))
    except (DealflowError, ValueError) as e:
        _fail(str(e))
    typer.echo(f"Created automation {automation.id}")


@automation_app.command("show")
def automation_show(automation_id: str) -> None:
    """
    Show an automation's trigger, conditions and actions.

    Args:
        automation_id: Automation to inspect (get from 'automation list')
    """
    repo = _repository()
    automation = asyncio.run(_get_automation(repo, automation_id))
    typer.echo(f"Automation {automation.id}: {automation.name}")
    typer.echo(f"Trigger: {automation.trigger_type.value} {automation.trigger_rules}")
    typer.echo(f"Active: {automation.is_active}  Priority: {automation.priority}")
    for condition in automation.conditions:
        typer.echo(
            f"- if {condition.source.value}.{condition.field} "
            f"{condition.operator.value} {condition.value!r}"
        )
    for index, action in enumerate(automation.actions):
        typer.echo(f"{index}. {action.type} {action.parameters.model_dump()}")


@automation_app.command("stats")
def automation_stats(
    automation_id: str,
    executions: int = typer.Option(0, help="Also list the N most recent executions"),
) -> None:
    """
    Show execution statistics for an automation or workflow.

    Example:
        dealflow automation stats 3f1c... --executions 5
        # Output: total=12 successful=11 failed=1 success_rate=91.67% avg=38.2ms
    """
    repo = _repository()
    stats = asyncio.run(repo.execution_stats(automation_id))
    last = stats.last_execution.isoformat() if stats.last_execution else "never"
    typer.echo(
        f"total={stats.total_executions} successful={stats.successful_executions} "
        f"failed={stats.failed_executions} success_rate={stats.success_rate}% "
        f"avg={stats.avg_execution_time}ms last={last}"
    )
    if executions:
        for record in asyncio.run(repo.list_executions(automation_id, limit=executions)):
            status = "ok" if record.success else f"FAILED: {record.error_message}"
            typer.echo(f"- {record.started_at.isoformat()} {record.duration_ms}ms {status}")


@automation_app.command("test")
def automation_test(
    automation: str = typer.Argument(..., help="Automation id or definition file"),
    entity: Optional[str] = typer.Option(None, help="Sample entity snapshot (JSON)"),
    payload: Optional[str] = typer.Option(None, help="Sample trigger payload (JSON)"),
) -> None:
    """
    Dry-run an automation against sample data.

    Nothing is sent or persisted; every collaborator call the automation would
    make is printed instead.

    Example:
        dealflow automation test ./welcome.yaml --entity '{"first_name": "Ana"}'
    """
    config = load_config()
    repo, engine, _ = _build(config)
    path = Path(automation)
    if path.exists():
        try:
            target = Automation.model_validate(_load_document(path))
        except ValidationError as e:
            _fail(f"Invalid automation: {e}")
    else:
        target = asyncio.run(_get_automation(repo, automation))

    report = asyncio.run(
        engine.test_automation(
            target, _parse_json(entity, "--entity"), _parse_json(payload, "--payload")
        )
    )
    typer.echo(f"Conditions met: {report.conditions_met}")
    for condition in report.conditions:
        mark = "pass" if condition.passed else f"fail ({condition.reason})"
        typer.echo(f"  condition {condition.index} {condition.field}: {mark}")
    for result in report.actions:
        mark = "ok" if result.success else f"error: {result.error}"
        typer.echo(f"  action {result.index} {result.action_type}: {mark}")
    for call in report.calls:
        typer.echo(f"  call {call['target']}.{call['operation']} {call['arguments']}")
    if not report.success:
        raise typer.Exit(code=1)


def _set_active(automation_id: str, active: bool) -> None:
    repo = _repository()

    async def _toggle() -> Automation:
        automation = await _get_automation(repo, automation_id)
        automation.is_active = active
        return await repo.update_automation(automation)

    try:
        asyncio.run(_toggle())
    except DealflowError as e:
        _fail(str(e))
    typer.echo(f"Automation {automation_id} {'enabled' if active else 'disabled'}")


@automation_app.command("enable")
def automation_enable(automation_id: str) -> None:
    """Activate an automation."""
    _set_active(automation_id, True)


@automation_app.command("disable")
def automation_disable(automation_id: str) -> None:
    """Deactivate an automation; the next event no longer matches it."""
    _set_active(automation_id, False)


@automation_app.command("delete")
def automation_delete(
    automation_id: str,
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
) -> None:
    """Delete an automation and its execution history. Irreversible."""
    if not yes:
        typer.confirm(
            f"Delete automation {automation_id} and its execution history?", abort=True
        )
    repo = _repository()
    if not asyncio.run(repo.delete_automation(automation_id)):
        _fail("Automation not found")
    typer.echo(f"Deleted automation {automation_id}")


# ----------------------------------------------------------------------
# Workflows


@workflow_app.command("list")
def workflow_list(limit: int = 50, offset: int = 0) -> None:
    """List workflows with their category and state."""
    repo = _repository()
    workflows = asyncio.run(repo.list_workflows(limit=limit, offset=offset))
    if not workflows:
        typer.echo("No workflows found")
        return
    for wf in workflows:
        state = "active" if wf.is_active else "inactive"
        typer.echo(
            f"{wf.id}\t{wf.name}\t{wf.category.value}\t"
            f"{len(wf.workflow_steps)} steps\t{state}"
        )


@workflow_app.command("create")
def workflow_create(path: Path) -> None:
    """Create a workflow from a YAML or JSON definition file."""
    try:
        workflow = Workflow.model_validate(_load_document(path))
    except ValidationError as e:
        _fail(f"Invalid workflow: {e}")
    repo = _repository()
    try:
        asyncio.run(repo.create_workflow(workflow))
    except (DealflowError, ValueError) as e:
        _fail(str(e))
    typer.echo(f"Created workflow {workflow.id}")


@workflow_app.command("enroll")
def workflow_enroll(
    workflow_id: str,
    entity_id: str,
    entity_type: str = "client",
    snapshot: Optional[str] = typer.Option(None, help="Entity snapshot (JSON)"),
    payload: Optional[str] = typer.Option(None, help="Enrollment payload (JSON)"),
) -> None:
    """Manually enroll an entity into a workflow."""
    config = load_config()
    repo, _, runner = _build(config)

    async def _enroll() -> str:
        workflow = await repo.get_workflow(workflow_id)
        if workflow is None:
            _fail("Workflow not found")
        entity = EntityRef(
            id=entity_id, type=entity_type, snapshot=_parse_json(snapshot, "--snapshot")
        )
        enrollment = await runner.enroll(
            workflow, entity, _parse_json(payload, "--payload"), source="manual"
        )
        return enrollment.id

    try:
        enrollment_id = asyncio.run(_enroll())
    except DealflowError as e:
        _fail(str(e))
    typer.echo(f"Enrolled {entity_type} {entity_id}: {enrollment_id}")


# ----------------------------------------------------------------------
# Enrollments


@enrollment_app.command("list")
def enrollment_list(
    workflow: Optional[str] = typer.Option(None, help="Filter by workflow id"),
    entity: Optional[str] = typer.Option(None, help="Filter by entity id"),
    status: Optional[EnrollmentStatus] = typer.Option(None, help="Filter by status"),
    limit: int = 50,
    offset: int = 0,
) -> None:
    """
    List workflow enrollments and when their next step is due.

    Example:
        dealflow enrollment list --status paused
    """
    repo = _repository()
    enrollments = asyncio.run(
        repo.list_enrollments(
            workflow_id=workflow, entity_id=entity, status=status, limit=limit, offset=offset
        )
    )
    if not enrollments:
        typer.echo("No enrollments found")
        return
    for e in enrollments:
        due = e.next_step_at.isoformat() if e.next_step_at else "-"
        typer.echo(
            f"{e.id}\t{e.workflow_id}\t{e.entity.id}\t{e.status.value}\t"
            f"step={e.steps_completed}\tnext={due}"
        )


@enrollment_app.command("show")
def enrollment_show(enrollment_id: str) -> None:
    """Show an enrollment's state and step history."""
    repo = _repository()
    enrollment = asyncio.run(repo.get_enrollment(enrollment_id))
    if enrollment is None:
        _fail("Enrollment not found")
    typer.echo(
        f"Enrollment {enrollment.id}: {enrollment.status.value} "
        f"(workflow {enrollment.workflow_id}, {enrollment.entity.type} {enrollment.entity.id})"
    )
    typer.echo(f"Steps completed: {enrollment.steps_completed}")
    if enrollment.next_step_at:
        typer.echo(f"Next step at: {enrollment.next_step_at.isoformat()}")
    if enrollment.pause_reason:
        typer.echo(f"Pause reason: {enrollment.pause_reason}")
    if enrollment.last_error:
        typer.echo(f"Last error: {enrollment.last_error}")
    for record in enrollment.history:
        typer.echo(
            f"- step {record.step_index} {record.step_type}: {record.status}"
            + (f" ({record.error})" if record.error else "")
        )


def _transition(operation: str, enrollment_id: str, **kwargs: Any) -> None:
    config = load_config()
    _, _, runner = _build(config)
    try:
        enrollment = asyncio.run(getattr(runner, operation)(enrollment_id, **kwargs))
    except DealflowError as e:
        _fail(str(e))
    typer.echo(f"Enrollment {enrollment.id}: {enrollment.status.value}")


@enrollment_app.command("pause")
def enrollment_pause(enrollment_id: str, reason: str = "manual") -> None:
    """Pause an active enrollment."""
    _transition("pause", enrollment_id, reason=reason)


@enrollment_app.command("resume")
def enrollment_resume(enrollment_id: str) -> None:
    """Resume a paused enrollment; overdue steps run on the next scheduler tick."""
    _transition("resume", enrollment_id)


@enrollment_app.command("cancel")
def enrollment_cancel(enrollment_id: str) -> None:
    """Cancel an enrollment. Cancelled enrollments never run again."""
    _transition("cancel", enrollment_id)


# ----------------------------------------------------------------------
# Processes


@worker_app.command("run")
def worker_run(
    lifespan: Optional[float] = typer.Option(
        None, help="Worker timeout in seconds (default: run indefinitely)"
    ),
    topic: Optional[str] = typer.Option(None, help="Events topic to consume"),
) -> None:
    """
    Run a worker that consumes domain events and executes automations.

    Each event is matched against active automations and workflows; matching
    workflows enroll the event's entity.

    Example:
        dealflow worker run
        dealflow worker run --lifespan 300
    """
    config = load_config()
    _, engine, runner = _build(config)
    transport = get_transport(config=config)
    worker = AutomationWorker(
        transport, engine, runner, topic=topic or config.transport.topic
    )
    typer.echo(f"Starting worker on topic: {worker.topic}")
    asyncio.run(worker.start(lifespan=lifespan))


@scheduler_app.command("run")
def scheduler_run(
    lifespan: Optional[float] = typer.Option(
        None, help="Scheduler timeout in seconds (default: run indefinitely)"
    ),
    interval: Optional[float] = typer.Option(None, help="Seconds between ticks"),
) -> None:
    """Run the polling scheduler for time-based automations and delayed steps."""
    config = load_config()
    _, engine, runner = _build(config)
    scheduler = SequenceScheduler(
        runner,
        engine,
        interval=interval or config.scheduler.interval,
        batch_size=config.scheduler.batch_size,
    )
    typer.echo(f"Starting scheduler (interval={scheduler.interval}s)")
    asyncio.run(scheduler.run(lifespan=lifespan))


@event_app.command("publish")
def event_publish(
    event_type: str,
    entity_id: str,
    entity_type: str = "client",
    snapshot: Optional[str] = typer.Option(None, help="Entity snapshot (JSON)"),
    payload: Optional[str] = typer.Option(None, help="Event payload (JSON)"),
    topic: Optional[str] = typer.Option(None, help="Events topic"),
) -> None:
    """
    Publish a domain event to the configured transport.

    Example:
        dealflow event publish deal_stage_change d1 --entity-type deal \\
            --payload '{"old_stage": "lead", "new_stage": "qualified"}'
    """
    config = load_config()
    event = DomainEvent(
        type=event_type,
        entity=EntityRef(
            id=entity_id, type=entity_type, snapshot=_parse_json(snapshot, "--snapshot")
        ),
        payload=_parse_json(payload, "--payload"),
    )
    transport = get_transport(config=config)

    async def _publish() -> None:
        await transport.publish(topic or config.transport.topic, event)
        await transport.disconnect()

    asyncio.run(_publish())
    typer.echo(f"Published event {event.event_id}")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
