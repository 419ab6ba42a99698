"""Repository abstractions for automation state persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol

from ..contracts import ExecutionStats
from ..enums import EnrollmentStatus, TriggerType
from ..errors import EnrollmentError
from ..models import Automation, SequenceEnrollment, Workflow
from ..utils.dates import ensure_aware
from .models import ExecutionRecord

# An enrollment paused by a failed required step is picked up again by the
# scheduler once its retry time is due.
RETRY_PAUSE_REASON = "step_failed"


class AutomationStore(Protocol):
    """CRUD for automations."""

    async def create_automation(self, automation: Automation) -> Automation:
        """Persist a new automation. Raises AutomationValidationError."""

    async def get_automation(self, automation_id: str) -> Automation | None:
        """Retrieve an automation by id."""

    async def update_automation(self, automation: Automation) -> Automation:
        """Replace a stored automation. Raises KeyError when missing."""

    async def delete_automation(self, automation_id: str) -> bool:
        """Delete an automation and its execution history."""

    async def list_automations(
        self, limit: int = 50, offset: int = 0, active: Optional[bool] = None
    ) -> list[Automation]:
        """Return a page of automations, newest first."""

    async def list_active_automations(self, trigger: TriggerType) -> list[Automation]:
        """Return active automations for ``trigger``."""


class WorkflowStore(Protocol):
    """CRUD for workflows."""

    async def create_workflow(self, workflow: Workflow) -> Workflow:
        """Persist a new workflow. Raises AutomationValidationError."""

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        """Retrieve a workflow by id."""

    async def update_workflow(self, workflow: Workflow) -> Workflow:
        """Replace a stored workflow. Raises KeyError when missing."""

    async def delete_workflow(self, workflow_id: str) -> bool:
        """Delete a workflow and its execution history."""

    async def list_workflows(
        self, limit: int = 50, offset: int = 0, active: Optional[bool] = None
    ) -> list[Workflow]:
        """Return a page of workflows, newest first."""

    async def list_active_workflows(self, trigger: TriggerType) -> list[Workflow]:
        """Return active workflows for ``trigger``."""


class EnrollmentStore(Protocol):
    """Enrollment persistence with optimistic concurrency."""

    async def create_enrollment(
        self, enrollment: SequenceEnrollment
    ) -> SequenceEnrollment:
        """Persist a new enrollment. Raises EnrollmentError on duplicates."""

    async def get_enrollment(self, enrollment_id: str) -> SequenceEnrollment | None:
        """Retrieve an enrollment by id."""

    async def save_enrollment(
        self, enrollment: SequenceEnrollment
    ) -> SequenceEnrollment:
        """Write ``enrollment`` if its version is current and bump the version.

        Raises ConcurrentModificationError when another writer got there first.
        """

    async def find_open_enrollment(
        self, workflow_id: str, entity_id: str
    ) -> SequenceEnrollment | None:
        """Return the active or paused enrollment for the pair, if any."""

    async def list_due_enrollments(
        self, now: datetime, limit: int = 100
    ) -> list[SequenceEnrollment]:
        """Enrollments whose ``next_step_at`` has passed, oldest first."""

    async def list_enrollments(
        self,
        workflow_id: Optional[str] = None,
        entity_id: Optional[str] = None,
        status: Optional[EnrollmentStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[SequenceEnrollment]:
        """Return a page of enrollments, newest first."""


class ExecutionLedger(Protocol):
    """Append-only execution history."""

    async def record_execution(self, record: ExecutionRecord) -> None:
        """Append a ledger entry."""

    async def list_executions(
        self, parent_id: str, limit: int = 50
    ) -> list[ExecutionRecord]:
        """Most recent executions for an automation or workflow."""

    async def execution_stats(self, parent_id: str) -> ExecutionStats:
        """Aggregate statistics for an automation or workflow."""

    async def delete_executions(self, parent_id: str) -> int:
        """Remove history for a deleted parent; returns the number removed."""


class Repository(
    AutomationStore, WorkflowStore, EnrollmentStore, ExecutionLedger, Protocol
):
    """Everything the engine persists, provided by a single backend."""


def is_due(enrollment: SequenceEnrollment, now: datetime) -> bool:
    """Whether the scheduler should run ``enrollment`` at ``now``."""
    if enrollment.next_step_at is None:
        return False
    if ensure_aware(enrollment.next_step_at) > ensure_aware(now):
        return False
    if enrollment.status is EnrollmentStatus.ACTIVE:
        return True
    return (
        enrollment.status is EnrollmentStatus.PAUSED
        and enrollment.pause_reason == RETRY_PAUSE_REASON
    )


def already_enrolled(enrollment: SequenceEnrollment) -> EnrollmentError:
    return EnrollmentError(
        f"{enrollment.entity.type} {enrollment.entity.id} is already "
        f"enrolled in workflow {enrollment.workflow_id}"
    )
