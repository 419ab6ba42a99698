"""Automation engine: match -> evaluate -> dispatch -> record."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Union

from .collaborators import Collaborators, RecordingCollaborators
from .conditions import ConditionEvaluator, entity_data
from .config import DealflowConfig, RetryConfig
from .constants import DEFAULT_EVENTS_TOPIC
from .contracts import (
    ActionResult,
    AutomationRun,
    DomainEvent,
    EntityRef,
    EventReport,
    ExecutionContext,
    TestReport,
)
from .dispatch import ActionDispatcher
from .enums import ParentKind, TriggerType
from .errors import AutomationValidationError
from .matching import TriggerMatcher
from .models import Automation
from .persistence import ExecutionLedger, ExecutionRecord, Repository
from .templates import TemplateRenderer
from .transports import BaseTransport
from .utils.dates import utc_now

if TYPE_CHECKING:
    from .runner import WorkflowStepRunner

logger = logging.getLogger(__name__)


def _failure_summary(results: List[ActionResult]) -> Optional[str]:
    errors = [
        f"action #{r.index} ({r.action_type}): {r.error}" for r in results if not r.success
    ]
    return "; ".join(errors) or None


async def record_safely(ledger: ExecutionLedger, record: ExecutionRecord) -> None:
    """Append to the ledger; a ledger outage is logged, never raised."""
    try:
        await ledger.record_execution(record)
    except Exception:
        logger.exception(f"Could not record execution for {record.parent_id}")


class AutomationEngine:
    """Runs every automation an event matches, concurrently per automation."""

    def __init__(
        self,
        repository: Repository,
        dispatcher: ActionDispatcher,
        evaluator: Optional[ConditionEvaluator] = None,
        matcher: Optional[TriggerMatcher] = None,
    ) -> None:
        self.repository = repository
        self.dispatcher = dispatcher
        self.evaluator = evaluator or ConditionEvaluator()
        self.matcher = matcher or TriggerMatcher(repository, repository)

    @classmethod
    def from_config(
        cls,
        repository: Repository,
        collaborators: Collaborators,
        config: Optional[DealflowConfig] = None,
    ) -> "AutomationEngine":
        config = config or DealflowConfig()
        dispatcher = ActionDispatcher(
            collaborators,
            renderer=TemplateRenderer(config.templates.undefined),
            retry=config.retry,
            webhook_timeout=config.webhook.timeout,
        )
        return cls(repository, dispatcher)

    async def process_event(self, event: DomainEvent) -> EventReport:
        """Run all matching automations for ``event``. Never raises."""
        report = EventReport(event_id=event.event_id)
        automations = await self.matcher.match(event)
        report.matched = len(automations)
        if not automations:
            return report

        logger.info(
            f"Event {event.event_id} ({event.type}) matched {len(automations)} automation(s)"
        )
        runs = await asyncio.gather(
            *(self._run_guarded(automation, event) for automation in automations)
        )
        report.executed = [run for run in runs if run is not None]
        return report

    async def _run_guarded(
        self, automation: Automation, event: DomainEvent
    ) -> Optional[AutomationRun]:
        try:
            return await self.run_automation(automation, event)
        except Exception as e:
            logger.exception(f"Automation {automation.id} crashed on {event.event_id}")
            return AutomationRun(
                automation_id=automation.id,
                name=automation.name,
                success=False,
                error=str(e),
            )

    async def run_automation(
        self, automation: Automation, event: DomainEvent
    ) -> Optional[AutomationRun]:
        """Evaluate and execute one automation.

        Returns ``None`` when its conditions do not hold.
        """
        started_at = utc_now()
        started = time.perf_counter()
        record = ExecutionRecord(
            parent_id=automation.id,
            parent_kind=ParentKind.AUTOMATION,
            entity=event.entity,
            trigger_type=event.type,
            trigger_payload=event.payload,
            success=False,
            started_at=started_at,
        )

        try:
            automation.ensure_executable()
        except AutomationValidationError as e:
            logger.error(f"Skipping automation {automation.id}: {e}")
            record.error_message = str(e)
            await record_safely(self.repository, record)
            return AutomationRun(
                automation_id=automation.id,
                name=automation.name,
                success=False,
                error=str(e),
            )

        data = entity_data(event.entity.snapshot, event.entity.id)
        if not self.evaluator.evaluate(automation.conditions, data, event.payload):
            logger.debug(f"Conditions of automation {automation.id} not met")
            return None

        context = ExecutionContext.from_event(event, automation_id=automation.id)
        results = await self.dispatcher.execute(automation.actions, context)

        record.action_results = results
        record.success = all(r.success for r in results)
        record.error_message = _failure_summary(results)
        record.duration_ms = round((time.perf_counter() - started) * 1000, 3)
        await record_safely(self.repository, record)

        logger.info(
            f"Automation {automation.id} ({automation.name}) ran {len(results)} "
            f"action(s), success={record.success}"
        )
        return AutomationRun(
            automation_id=automation.id,
            name=automation.name,
            success=record.success,
            actions_executed=sum(1 for r in results if r.success),
            results=results,
            error=record.error_message,
        )

    async def run_manual(
        self,
        automation_id: str,
        entity: EntityRef,
        payload: Optional[Dict[str, Any]] = None,
        acting_user: Optional[str] = None,
    ) -> EventReport:
        """Fire one ``manual`` automation for ``entity``."""
        event = DomainEvent(
            type=TriggerType.MANUAL.value,
            entity=entity,
            payload={**(payload or {}), "automation_id": automation_id},
            acting_user=acting_user,
        )
        return await self.process_event(event)

    async def test_automation(
        self,
        automation: Automation,
        sample_entity: Union[EntityRef, Dict[str, Any]],
        sample_payload: Optional[Dict[str, Any]] = None,
    ) -> TestReport:
        """Dry-run ``automation`` against sample data.

        Actions are executed against recording collaborators, transient
        failures are not retried and nothing is written to the ledger.
        """
        entity = (
            sample_entity
            if isinstance(sample_entity, EntityRef)
            else EntityRef(
                id=str(sample_entity.get("id", "sample")), snapshot=dict(sample_entity)
            )
        )
        payload = sample_payload or {}
        report = TestReport(automation_id=automation.id, conditions_met=False)

        try:
            automation.ensure_executable()
        except AutomationValidationError as e:
            report.errors.append(str(e))

        data = entity_data(entity.snapshot, entity.id)
        report.conditions = self.evaluator.explain(automation.conditions, data, payload)
        report.conditions_met = all(c.passed for c in report.conditions)
        for condition in report.conditions:
            if not condition.passed:
                report.errors.append(
                    f"condition #{condition.index} ({condition.field} "
                    f"{condition.operator}): {condition.reason}"
                )

        collaborators = RecordingCollaborators.for_sample(data)
        dispatcher = ActionDispatcher(
            collaborators,
            renderer=self.dispatcher.renderer,
            retry=RetryConfig(max_attempts=1),
            webhook_timeout=self.dispatcher.webhook_timeout,
        )
        context = ExecutionContext(
            entity=entity,
            payload=payload,
            trigger_type=automation.trigger_type.value,
            automation_id=automation.id,
        )
        report.actions = await dispatcher.execute(automation.actions, context)
        for result in report.actions:
            if not result.success:
                report.errors.append(
                    f"action #{result.index} ({result.action_type}): {result.error}"
                )
        report.calls = collaborators.recorder.calls
        return report


class AutomationWorker:
    """Consumes domain events from a transport and feeds the engine.

    When a step runner is given, each event may also enroll entities into
    matching workflows.
    """

    def __init__(
        self,
        transport: BaseTransport,
        engine: AutomationEngine,
        runner: Optional["WorkflowStepRunner"] = None,
        topic: str = DEFAULT_EVENTS_TOPIC,
    ) -> None:
        self._transport = transport
        self.engine = engine
        self.runner = runner
        self.topic = topic
        self.processed: List[str] = []

    async def start(self, lifespan: Optional[float] = None) -> None:
        """Listen for events on the configured topic."""
        async for raw_message, event in self._transport.subscribe(
            self.topic, lifespan=lifespan
        ):
            try:
                await self.handle(event)
            except Exception:
                logger.exception(f"Rejecting event {event.event_id}")
                await self._transport.nack(raw_message)
                continue
            await self._transport.ack(raw_message)

    async def handle(self, event: DomainEvent) -> EventReport:
        report = await self.engine.process_event(event)
        if self.runner is not None:
            try:
                await self.runner.handle_event(event)
            except Exception:
                logger.exception(f"Workflow enrollment failed for event {event.event_id}")
        self.processed.append(event.event_id)
        logger.info(
            f"Processed event {event.event_id}: {len(report.executed)} automation(s), "
            f"{report.failed_actions} failed action(s)"
        )
        return report
