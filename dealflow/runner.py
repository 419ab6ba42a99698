"""Workflow step runner: moves enrollments through their workflow's steps.

An enrollment is a cursor (``steps_completed``) plus the time its next step
becomes due (``next_step_at``). Every state change is written with an
optimistic version check, so two runners can never both advance the same
enrollment; the loser logs and backs off.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from .conditions import ConditionEvaluator, entity_data
from .config import RetryConfig
from .contracts import DomainEvent, EntityRef, ExecutionContext
from .dispatch import ActionDispatcher
from .enums import EnrollmentStatus, ParentKind
from .errors import (
    AutomationValidationError,
    ConcurrentModificationError,
    DealflowError,
    EnrollmentError,
    StepRequiredFailure,
)
from .execute import record_safely
from .matching import TriggerMatcher
from .models import SequenceEnrollment, StepRecord, Workflow, WorkflowStep
from .persistence import RETRY_PAUSE_REASON, ExecutionRecord, Repository, is_due
from .utils.dates import utc_now
from .utils.retry import compute_backoff

logger = logging.getLogger(__name__)

WORKFLOW_DISABLED = "workflow_disabled"
MANUAL_PAUSE = "manual"

# Attempts at re-reading an enrollment when a pause/resume/cancel races a run.
_TRANSITION_ATTEMPTS = 3


class WorkflowStepRunner:
    """Enrolls entities into workflows and executes their due steps."""

    def __init__(
        self,
        repository: Repository,
        dispatcher: ActionDispatcher,
        evaluator: Optional[ConditionEvaluator] = None,
        matcher: Optional[TriggerMatcher] = None,
        retry: Optional[RetryConfig] = None,
    ) -> None:
        self.repository = repository
        self.dispatcher = dispatcher
        self.evaluator = evaluator or ConditionEvaluator()
        self.matcher = matcher or TriggerMatcher(repository, repository)
        self.retry = retry or dispatcher.retry

    # ------------------------------------------------------------------
    # Enrollment

    async def enroll(
        self,
        workflow: Workflow,
        entity: EntityRef,
        payload: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
        source: str = "event",
    ) -> SequenceEnrollment:
        """Bind ``entity`` to ``workflow`` and schedule its first step.

        Raises:
            EnrollmentError: the workflow is inactive or the entity already
                has an open enrollment in it.
            AutomationValidationError: the workflow has no steps.
        """
        now = now or utc_now()
        workflow.ensure_executable()
        if not workflow.is_active:
            raise EnrollmentError(f"Workflow {workflow.id} is not active")

        first = workflow.workflow_steps[0]
        enrollment = SequenceEnrollment(
            workflow_id=workflow.id,
            entity=entity,
            payload=payload or {},
            enrollment_source=source,
            enrolled_at=now,
            next_step_at=now + timedelta(seconds=first.delay_seconds()),
        )
        enrollment = await self.repository.create_enrollment(enrollment)
        logger.info(
            f"Enrolled {entity.type} {entity.id} in workflow {workflow.id} "
            f"({enrollment.id}), first step at {enrollment.next_step_at.isoformat()}"
        )
        return enrollment

    async def handle_event(
        self, event: DomainEvent, now: Optional[datetime] = None
    ) -> List[SequenceEnrollment]:
        """Enroll the event's entity into every matching workflow.

        Steps that are already due run immediately.
        """
        now = now or utc_now()
        enrolled: List[SequenceEnrollment] = []
        data = entity_data(event.entity.snapshot, event.entity.id)
        for workflow in await self.matcher.match_workflows(event):
            if not self.evaluator.evaluate(workflow.conditions, data, event.payload):
                continue
            try:
                enrollment = await self.enroll(workflow, event.entity, event.payload, now)
            except (EnrollmentError, AutomationValidationError) as e:
                logger.info(f"Not enrolling {event.entity.id} in {workflow.id}: {e}")
                continue
            enrolled.append(enrollment)
            if enrollment.next_step_at is not None and enrollment.next_step_at <= now:
                await self._run_guarded(enrollment.id, now)
        return enrolled

    # ------------------------------------------------------------------
    # Execution

    async def run_due(
        self, now: Optional[datetime] = None, limit: int = 100
    ) -> List[SequenceEnrollment]:
        """Run every enrollment whose next step is due, up to ``limit``."""
        now = now or utc_now()
        due = await self.repository.list_due_enrollments(now, limit)
        if not due:
            return []
        logger.info(f"Running {len(due)} due enrollment(s)")
        results = await asyncio.gather(*(self._run_guarded(e.id, now) for e in due))
        return [r for r in results if r is not None]

    async def _run_guarded(
        self, enrollment_id: str, now: datetime
    ) -> Optional[SequenceEnrollment]:
        try:
            return await self.run_enrollment(enrollment_id, now)
        except DealflowError as e:
            logger.error(f"Enrollment {enrollment_id} could not run: {e}")
        except Exception:
            logger.exception(f"Enrollment {enrollment_id} crashed")
        return None

    async def run_enrollment(
        self, enrollment_id: str, now: Optional[datetime] = None
    ) -> Optional[SequenceEnrollment]:
        """Execute every step of the enrollment that is due at ``now``.

        Completed and cancelled enrollments are returned unchanged. Returns
        ``None`` when another writer modified the enrollment mid-run.
        """
        now = now or utc_now()
        while True:
            # Re-read before every step so pause/cancel take effect between steps.
            enrollment = await self.repository.get_enrollment(enrollment_id)
            if enrollment is None:
                raise EnrollmentError(f"Unknown enrollment {enrollment_id}")
            if enrollment.is_terminal or not is_due(enrollment, now):
                return enrollment

            workflow = await self.repository.get_workflow(enrollment.workflow_id)
            try:
                if workflow is None or not workflow.is_active:
                    return await self._pause_disabled(enrollment, now)
                steps = workflow.workflow_steps
                if enrollment.steps_completed >= len(steps):
                    return await self._complete(enrollment, now)
                enrollment = await self._run_step(
                    workflow, enrollment, steps[enrollment.steps_completed], now
                )
            except ConcurrentModificationError as e:
                logger.warning(f"Lost race on enrollment {enrollment_id}: {e}")
                return None

    async def _run_step(
        self,
        workflow: Workflow,
        enrollment: SequenceEnrollment,
        step: WorkflowStep,
        now: datetime,
    ) -> SequenceEnrollment:
        index = enrollment.steps_completed
        record = StepRecord(
            step_index=index, step_type=step.step_type, status="completed", started_at=now
        )
        data = entity_data(enrollment.entity.snapshot, enrollment.entity.id)
        next_index = index + 1
        extra_delay = 0

        if step.conditions and not self.evaluator.evaluate(
            step.conditions, data, enrollment.payload
        ):
            record.status = "skipped"
        elif step.is_wait:
            extra_delay = step.wait_seconds()
            record.output = {"waited_seconds": extra_delay}
        elif step.is_branch:
            outcome = self.evaluator.evaluate(
                step.branch_conditions(), data, enrollment.payload
            )
            target = step.branch_target(outcome)
            if target is not None:
                next_index = target
            record.output = {"outcome": outcome, "next_step": next_index}
        else:
            failed = await self._execute_action_step(workflow, enrollment, step, record, now)
            if failed and step.required:
                return await self._fail_required(enrollment, record, now)

        record.completed_at = now
        return await self._advance(workflow, enrollment, record, next_index, extra_delay, now)

    async def _execute_action_step(
        self,
        workflow: Workflow,
        enrollment: SequenceEnrollment,
        step: WorkflowStep,
        record: StepRecord,
        now: datetime,
    ) -> bool:
        """Dispatch the step's action; returns ``True`` when it failed."""
        started = time.perf_counter()
        context = ExecutionContext(
            entity=enrollment.entity,
            payload=enrollment.payload,
            trigger_type=workflow.trigger_type.value,
            workflow_id=workflow.id,
            enrollment_id=enrollment.id,
            now=now,
        )
        results = await self.dispatcher.execute([step.to_action()], context)
        result = results[0]
        failed = not result.success
        record.output = result.output
        record.error = result.error
        if failed:
            record.status = "failed"

        error_message = result.error
        exhausted = (
            failed
            and step.required
            and enrollment.step_attempts + 1 >= self.retry.step_max_attempts
        )
        if exhausted:
            failure = StepRequiredFailure(
                enrollment.id, enrollment.steps_completed, result.error or "failed"
            )
            logger.error(str(failure))
            error_message = str(failure)

        await record_safely(
            self.repository,
            ExecutionRecord(
                parent_id=workflow.id,
                parent_kind=ParentKind.WORKFLOW,
                entity=enrollment.entity,
                trigger_type=workflow.trigger_type.value,
                trigger_payload=enrollment.payload,
                action_results=results,
                success=not failed,
                error_message=error_message,
                enrollment_id=enrollment.id,
                step_index=enrollment.steps_completed,
                started_at=now,
                duration_ms=round((time.perf_counter() - started) * 1000, 3),
            ),
        )
        return failed

    async def _advance(
        self,
        workflow: Workflow,
        enrollment: SequenceEnrollment,
        record: StepRecord,
        next_index: int,
        extra_delay: int,
        now: datetime,
    ) -> SequenceEnrollment:
        steps = workflow.workflow_steps
        enrollment.history.append(record)
        enrollment.steps_completed = next_index
        enrollment.step_attempts = 0
        enrollment.last_error = record.error
        enrollment.status = EnrollmentStatus.ACTIVE
        enrollment.pause_reason = None
        enrollment.paused_at = None
        if next_index >= len(steps):
            enrollment.status = EnrollmentStatus.COMPLETED
            enrollment.completed_at = now
            enrollment.next_step_at = None
            logger.info(f"Enrollment {enrollment.id} completed")
        else:
            delay = steps[next_index].delay_seconds() + extra_delay
            enrollment.next_step_at = now + timedelta(seconds=delay)
        return await self.repository.save_enrollment(enrollment)

    async def _fail_required(
        self, enrollment: SequenceEnrollment, record: StepRecord, now: datetime
    ) -> SequenceEnrollment:
        record.completed_at = now
        enrollment.history.append(record)
        enrollment.step_attempts += 1
        enrollment.last_error = record.error
        enrollment.status = EnrollmentStatus.PAUSED
        enrollment.pause_reason = RETRY_PAUSE_REASON
        enrollment.paused_at = now
        if enrollment.step_attempts >= self.retry.step_max_attempts:
            # Stays paused until an operator resumes it.
            enrollment.next_step_at = None
        else:
            delay = compute_backoff(
                enrollment.step_attempts, self.retry.base, self.retry.jitter
            )
            enrollment.next_step_at = now + timedelta(seconds=delay)
            logger.warning(
                f"Required step {enrollment.steps_completed} of enrollment "
                f"{enrollment.id} failed (attempt {enrollment.step_attempts}); "
                f"retrying at {enrollment.next_step_at.isoformat()}"
            )
        return await self.repository.save_enrollment(enrollment)

    async def _pause_disabled(
        self, enrollment: SequenceEnrollment, now: datetime
    ) -> SequenceEnrollment:
        logger.info(
            f"Workflow {enrollment.workflow_id} is inactive; pausing {enrollment.id}"
        )
        enrollment.status = EnrollmentStatus.PAUSED
        enrollment.pause_reason = WORKFLOW_DISABLED
        enrollment.paused_at = now
        return await self.repository.save_enrollment(enrollment)

    async def _complete(
        self, enrollment: SequenceEnrollment, now: datetime
    ) -> SequenceEnrollment:
        enrollment.status = EnrollmentStatus.COMPLETED
        enrollment.completed_at = now
        enrollment.next_step_at = None
        return await self.repository.save_enrollment(enrollment)

    # ------------------------------------------------------------------
    # Operator transitions

    async def _transition(
        self,
        enrollment_id: str,
        change: Callable[[SequenceEnrollment], bool],
    ) -> SequenceEnrollment:
        """Apply ``change`` and save, re-reading on version conflicts.

        ``change`` returns ``False`` when there is nothing to write.
        """
        for _ in range(_TRANSITION_ATTEMPTS):
            enrollment = await self.repository.get_enrollment(enrollment_id)
            if enrollment is None:
                raise EnrollmentError(f"Unknown enrollment {enrollment_id}")
            if not change(enrollment):
                return enrollment
            try:
                return await self.repository.save_enrollment(enrollment)
            except ConcurrentModificationError:
                logger.debug(f"Retrying transition of {enrollment_id} after conflict")
        raise ConcurrentModificationError(
            f"Enrollment {enrollment_id} kept changing; giving up"
        )

    async def pause(
        self,
        enrollment_id: str,
        reason: str = MANUAL_PAUSE,
        now: Optional[datetime] = None,
    ) -> SequenceEnrollment:
        now = now or utc_now()

        def change(enrollment: SequenceEnrollment) -> bool:
            if enrollment.is_terminal:
                raise EnrollmentError(
                    f"Cannot pause {enrollment.status.value} enrollment {enrollment.id}"
                )
            if (
                enrollment.status is EnrollmentStatus.PAUSED
                and enrollment.pause_reason == reason
            ):
                return False
            enrollment.status = EnrollmentStatus.PAUSED
            enrollment.pause_reason = reason
            enrollment.paused_at = now
            return True

        return await self._transition(enrollment_id, change)

    async def resume(
        self, enrollment_id: str, now: Optional[datetime] = None
    ) -> SequenceEnrollment:
        """Reactivate a paused enrollment; overdue steps run on the next pass."""
        now = now or utc_now()

        def change(enrollment: SequenceEnrollment) -> bool:
            if enrollment.status is EnrollmentStatus.ACTIVE:
                return False
            if enrollment.status is not EnrollmentStatus.PAUSED:
                raise EnrollmentError(
                    f"Cannot resume {enrollment.status.value} enrollment {enrollment.id}"
                )
            enrollment.status = EnrollmentStatus.ACTIVE
            enrollment.pause_reason = None
            enrollment.paused_at = None
            enrollment.step_attempts = 0
            if enrollment.next_step_at is None:
                enrollment.next_step_at = now
            return True

        return await self._transition(enrollment_id, change)

    async def cancel(
        self, enrollment_id: str, reason: Optional[str] = None
    ) -> SequenceEnrollment:
        def change(enrollment: SequenceEnrollment) -> bool:
            if enrollment.status is EnrollmentStatus.CANCELLED:
                return False
            if enrollment.status is EnrollmentStatus.COMPLETED:
                raise EnrollmentError(f"Enrollment {enrollment.id} already completed")
            enrollment.status = EnrollmentStatus.CANCELLED
            enrollment.pause_reason = reason
            enrollment.next_step_at = None
            return True

        return await self._transition(enrollment_id, change)

