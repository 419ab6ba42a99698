"""Message and result contracts exchanged between engine components."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .enums import ErrorKind, TriggerType, normalize_trigger_type
from .utils.dates import utc_now


class EntityRef(BaseModel):
    """The CRM record an event or enrollment is about."""

    id: str
    type: str = "client"
    snapshot: Dict[str, Any] = Field(default_factory=dict)


class DomainEvent(BaseModel):
    """Event published by the CRUD layer whenever a tracked entity changes."""

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    type: str
    entity: EntityRef
    payload: Dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=utc_now)
    acting_user: Optional[str] = None

    @property
    def category(self) -> Optional[TriggerType]:
        """Trigger type this event can fire, ``None`` for untracked events."""
        return normalize_trigger_type(self.type)

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str | bytes) -> "DomainEvent":
        return cls.model_validate_json(data)


class ExecutionContext(BaseModel):
    """Everything an action may read while it runs."""

    entity: EntityRef
    payload: Dict[str, Any] = Field(default_factory=dict)
    acting_user: Optional[str] = None
    trigger_type: Optional[str] = None
    automation_id: Optional[str] = None
    workflow_id: Optional[str] = None
    enrollment_id: Optional[str] = None
    now: datetime = Field(default_factory=utc_now)

    @property
    def source_id(self) -> Optional[str]:
        return self.automation_id or self.workflow_id

    @classmethod
    def from_event(cls, event: DomainEvent, **kwargs: Any) -> "ExecutionContext":
        return cls(
            entity=event.entity,
            payload=event.payload,
            acting_user=event.acting_user,
            trigger_type=event.type,
            **kwargs,
        )


class ActionResult(BaseModel):
    """Outcome of one action, including every retry attempt."""

    index: int
    action_type: str
    success: bool
    output: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    attempts: int = 1
    duration_ms: float = 0.0


class ConditionResult(BaseModel):
    """Explanation of one condition, used by the dry-run report."""

    index: int
    field: str
    operator: str
    expected: Any = None
    actual: Any = None
    passed: bool
    reason: Optional[str] = None


class ExecutionStats(BaseModel):
    """Aggregates shown on automation and workflow list views."""

    total_executions: int = 0
    successful_executions: int = 0
    failed_executions: int = 0
    success_rate: float = 0.0
    avg_execution_time: float = 0.0
    last_execution: Optional[datetime] = None


class AutomationRun(BaseModel):
    automation_id: str
    name: str
    success: bool
    actions_executed: int = 0
    results: List[ActionResult] = Field(default_factory=list)
    error: Optional[str] = None


class EventReport(BaseModel):
    """Summary of everything one domain event caused."""

    event_id: str
    matched: int = 0
    executed: List[AutomationRun] = Field(default_factory=list)

    @property
    def total_actions(self) -> int:
        return sum(len(run.results) for run in self.executed)

    @property
    def failed_actions(self) -> int:
        return sum(1 for run in self.executed for r in run.results if not r.success)


class TestReport(BaseModel):
    """Result of a dry run; nothing was persisted or sent."""

    __test__ = False

    automation_id: str
    conditions_met: bool
    conditions: List[ConditionResult] = Field(default_factory=list)
    actions: List[ActionResult] = Field(default_factory=list)
    calls: List[Dict[str, Any]] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.conditions_met and not self.errors and all(
            a.success for a in self.actions
        )
