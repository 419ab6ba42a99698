"""In-memory implementation of the automation repository."""

from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional

from ..contracts import ExecutionStats
from ..enums import EnrollmentStatus, TriggerType
from ..errors import ConcurrentModificationError
from ..models import Automation, SequenceEnrollment, Workflow
from ..utils.dates import ensure_aware, utc_now
from .models import ExecutionRecord, compute_stats
from .repository import Repository, already_enrolled, is_due

_OPEN = (EnrollmentStatus.ACTIVE, EnrollmentStatus.PAUSED)


class InMemoryRepository(Repository):
    """Store automation state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Records are copied on the way in and
    out so callers cannot bypass the enrollment version check.
    """

    def __init__(self) -> None:
        self._automations: Dict[str, Automation] = {}
        self._workflows: Dict[str, Workflow] = {}
        self._enrollments: Dict[str, SequenceEnrollment] = {}
        self._executions: List[ExecutionRecord] = []

    # ------------------------------------------------------------------
    # Automations
    async def create_automation(self, automation: Automation) -> Automation:
        automation.ensure_persistable()
        if automation.id in self._automations:
            raise ValueError(f"Automation {automation.id} already exists")
        self._automations[automation.id] = automation.model_copy(deep=True)
        return automation

    async def get_automation(self, automation_id: str) -> Automation | None:
        found = self._automations.get(automation_id)
        return found.model_copy(deep=True) if found else None

    async def update_automation(self, automation: Automation) -> Automation:
        automation.ensure_persistable()
        if automation.id not in self._automations:
            raise KeyError(automation.id)
        automation.updated_at = utc_now()
        self._automations[automation.id] = automation.model_copy(deep=True)
        return automation

    async def delete_automation(self, automation_id: str) -> bool:
        if self._automations.pop(automation_id, None) is None:
            return False
        await self.delete_executions(automation_id)
        return True

    async def list_automations(
        self, limit: int = 50, offset: int = 0, active: Optional[bool] = None
    ) -> list[Automation]:
        items = [
            a for a in self._automations.values() if active is None or a.is_active == active
        ]
        items.sort(key=lambda a: ensure_aware(a.created_at), reverse=True)
        return [a.model_copy(deep=True) for a in items[offset : offset + limit]]

    async def list_active_automations(self, trigger: TriggerType) -> list[Automation]:
        return [
            a.model_copy(deep=True)
            for a in self._automations.values()
            if a.is_active and a.trigger_type is trigger
        ]

    # ------------------------------------------------------------------
    # Workflows
    async def create_workflow(self, workflow: Workflow) -> Workflow:
        workflow.ensure_persistable()
        if workflow.id in self._workflows:
            raise ValueError(f"Workflow {workflow.id} already exists")
        self._workflows[workflow.id] = workflow.model_copy(deep=True)
        return workflow

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        found = self._workflows.get(workflow_id)
        if found is None:
            return None
        workflow = found.model_copy(deep=True)
        workflow.stats = await self.execution_stats(workflow_id)
        return workflow

    async def update_workflow(self, workflow: Workflow) -> Workflow:
        workflow.ensure_persistable()
        if workflow.id not in self._workflows:
            raise KeyError(workflow.id)
        workflow.updated_at = utc_now()
        self._workflows[workflow.id] = workflow.model_copy(deep=True)
        return workflow

    async def delete_workflow(self, workflow_id: str) -> bool:
        if self._workflows.pop(workflow_id, None) is None:
            return False
        await self.delete_executions(workflow_id)
        return True

    async def list_workflows(
        self, limit: int = 50, offset: int = 0, active: Optional[bool] = None
    ) -> list[Workflow]:
        items = [
            w for w in self._workflows.values() if active is None or w.is_active == active
        ]
        items.sort(key=lambda w: ensure_aware(w.created_at), reverse=True)
        return [w.model_copy(deep=True) for w in items[offset : offset + limit]]

    async def list_active_workflows(self, trigger: TriggerType) -> list[Workflow]:
        return [
            w.model_copy(deep=True)
            for w in self._workflows.values()
            if w.is_active and w.trigger_type is trigger
        ]

    # ------------------------------------------------------------------
    # Enrollments
    async def create_enrollment(
        self, enrollment: SequenceEnrollment
    ) -> SequenceEnrollment:
        existing = await self.find_open_enrollment(
            enrollment.workflow_id, enrollment.entity.id
        )
        if existing is not None:
            raise already_enrolled(enrollment)
        self._enrollments[enrollment.id] = enrollment.model_copy(deep=True)
        return enrollment

    async def get_enrollment(self, enrollment_id: str) -> SequenceEnrollment | None:
        found = self._enrollments.get(enrollment_id)
        return found.model_copy(deep=True) if found else None

    async def save_enrollment(
        self, enrollment: SequenceEnrollment
    ) -> SequenceEnrollment:
        stored = self._enrollments.get(enrollment.id)
        if stored is None:
            raise KeyError(enrollment.id)
        if stored.version != enrollment.version:
            raise ConcurrentModificationError(
                f"Enrollment {enrollment.id} changed (version {stored.version}, "
                f"expected {enrollment.version})"
            )
        saved = enrollment.model_copy(deep=True, update={"version": enrollment.version + 1})
        self._enrollments[enrollment.id] = saved
        return saved.model_copy(deep=True)

    async def find_open_enrollment(
        self, workflow_id: str, entity_id: str
    ) -> SequenceEnrollment | None:
        for enrollment in self._enrollments.values():
            if (
                enrollment.workflow_id == workflow_id
                and enrollment.entity.id == entity_id
                and enrollment.status in _OPEN
            ):
                return enrollment.model_copy(deep=True)
        return None

    async def list_due_enrollments(
        self, now: datetime, limit: int = 100
    ) -> list[SequenceEnrollment]:
        due = [e for e in self._enrollments.values() if is_due(e, now)]
        due.sort(key=lambda e: ensure_aware(e.next_step_at))
        return [e.model_copy(deep=True) for e in due[:limit]]

    async def list_enrollments(
        self,
        workflow_id: Optional[str] = None,
        entity_id: Optional[str] = None,
        status: Optional[EnrollmentStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[SequenceEnrollment]:
        items = [
            e
            for e in self._enrollments.values()
            if (workflow_id is None or e.workflow_id == workflow_id)
            and (entity_id is None or e.entity.id == entity_id)
            and (status is None or e.status == status)
        ]
        items.sort(key=lambda e: ensure_aware(e.enrolled_at), reverse=True)
        return [e.model_copy(deep=True) for e in items[offset : offset + limit]]

    # ------------------------------------------------------------------
    # Ledger
    async def record_execution(self, record: ExecutionRecord) -> None:
        self._executions.append(record.model_copy(deep=True))

    async def list_executions(
        self, parent_id: str, limit: int = 50
    ) -> list[ExecutionRecord]:
        items = [r for r in self._executions if r.parent_id == parent_id]
        items.sort(key=lambda r: ensure_aware(r.started_at), reverse=True)
        return [r.model_copy(deep=True) for r in items[:limit]]

    async def execution_stats(self, parent_id: str) -> ExecutionStats:
        return compute_stats(r for r in self._executions if r.parent_id == parent_id)

    async def delete_executions(self, parent_id: str) -> int:
        before = len(self._executions)
        self._executions = [r for r in self._executions if r.parent_id != parent_id]
        return before - len(self._executions)
