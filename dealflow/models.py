"""Automation, workflow and enrollment records.

Actions are a tagged union keyed by ``type``: every action variant carries its
own parameters model, so malformed configuration is rejected when a record is
validated rather than when the engine runs it.
"""

from __future__ import annotations

import math
import uuid
from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, field_validator, model_validator

from .contracts import EntityRef, ExecutionStats
from .enums import (
    BRANCH_STEP,
    STEP_TYPE_ALIASES,
    STEP_TYPES,
    WAIT_STEP,
    ConditionOperator,
    ConditionSource,
    EnrollmentStatus,
    TriggerType,
    WorkflowCategory,
    normalize_trigger_type,
)
from .errors import AutomationValidationError
from .utils.dates import utc_now


def _new_id() -> str:
    return str(uuid.uuid4())


class Condition(BaseModel):
    """``{source, field, operator, value}``; ``field`` is a dotted path."""

    source: ConditionSource = ConditionSource.ENTITY
    field: str
    operator: ConditionOperator
    value: Any = None


# ----------------------------------------------------------------------
# Action parameters


class UpdateStatusParams(BaseModel):
    entity_type: str = "client"
    new_status: str


class CreateTaskParams(BaseModel):
    title: str
    description: str = ""
    due_days: int = 1
    priority: str = "medium"
    assigned_to: Optional[str] = None


class SendEmailParams(BaseModel):
    subject: str
    content: str
    template_id: Optional[str] = None
    recipient_email: Optional[str] = None


class SendSmsParams(BaseModel):
    message: str
    recipient_phone: Optional[str] = None


class CreateNoteParams(BaseModel):
    content: str
    note_type: str = "automation"


class UpdateScoreParams(BaseModel):
    score_change: int
    reason: Optional[str] = None


class AssignToUserParams(BaseModel):
    user_id: str
    entity_type: str = "client"


class MoveToStageParams(BaseModel):
    new_stage: str


class ScheduleFollowUpParams(BaseModel):
    days_ahead: int = 7
    time: str = "09:00"
    title: Optional[str] = None
    description: Optional[str] = None

    @field_validator("time")
    @classmethod
    def _check_time(cls, v: str) -> str:
        hours, _, minutes = v.partition(":")
        if not (hours.isdigit() and minutes.isdigit()):
            raise ValueError("time must be HH:MM")
        if int(hours) > 23 or int(minutes) > 59:
            raise ValueError("time must be HH:MM")
        return v


class WebhookParams(BaseModel):
    url: str
    method: str = "POST"
    headers: Dict[str, str] = Field(default_factory=dict)
    payload: Dict[str, Any] = Field(default_factory=dict)
    timeout: Optional[float] = None

    @field_validator("url")
    @classmethod
    def _check_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("webhook url must be http(s)")
        return v

    @field_validator("method")
    @classmethod
    def _upper_method(cls, v: str) -> str:
        return v.upper()


# ----------------------------------------------------------------------
# Action variants


class UpdateStatusAction(BaseModel):
    type: Literal["update_status"] = "update_status"
    parameters: UpdateStatusParams


class CreateTaskAction(BaseModel):
    type: Literal["create_task"] = "create_task"
    parameters: CreateTaskParams


class SendEmailAction(BaseModel):
    type: Literal["send_email"] = "send_email"
    parameters: SendEmailParams


class SendSmsAction(BaseModel):
    type: Literal["send_sms"] = "send_sms"
    parameters: SendSmsParams


class CreateNoteAction(BaseModel):
    type: Literal["create_note"] = "create_note"
    parameters: CreateNoteParams


class UpdateScoreAction(BaseModel):
    type: Literal["update_score"] = "update_score"
    parameters: UpdateScoreParams


class AssignToUserAction(BaseModel):
    type: Literal["assign_to_user"] = "assign_to_user"
    parameters: AssignToUserParams


class MoveToStageAction(BaseModel):
    type: Literal["move_to_stage"] = "move_to_stage"
    parameters: MoveToStageParams


class ScheduleFollowUpAction(BaseModel):
    type: Literal["schedule_follow_up"] = "schedule_follow_up"
    parameters: ScheduleFollowUpParams = Field(default_factory=ScheduleFollowUpParams)


class WebhookAction(BaseModel):
    type: Literal["webhook"] = "webhook"
    parameters: WebhookParams


Action = Annotated[
    Union[
        UpdateStatusAction,
        CreateTaskAction,
        SendEmailAction,
        SendSmsAction,
        CreateNoteAction,
        UpdateScoreAction,
        AssignToUserAction,
        MoveToStageAction,
        ScheduleFollowUpAction,
        WebhookAction,
    ],
    Field(discriminator="type"),
]

ACTION_ADAPTER: TypeAdapter[Action] = TypeAdapter(Action)


def parse_action(data: Dict[str, Any]) -> Action:
    """Validate a raw ``{type, parameters}`` mapping into an action variant."""
    return ACTION_ADAPTER.validate_python(data)


def _normalize_trigger(value: Any) -> Any:
    if isinstance(value, str):
        normalized = normalize_trigger_type(value)
        if normalized is not None:
            return normalized
    return value


# ----------------------------------------------------------------------
# Automations


class Automation(BaseModel):
    """A single trigger -> conditions -> actions rule."""

    id: str = Field(default_factory=_new_id)
    name: str
    description: Optional[str] = None
    trigger_type: TriggerType
    trigger_rules: Dict[str, Any] = Field(default_factory=dict)
    conditions: List[Condition] = Field(default_factory=list)
    actions: List[Action] = Field(default_factory=list)
    priority: int = 1
    is_active: bool = True
    user_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator("trigger_type", mode="before")
    @classmethod
    def _normalize_trigger_type(cls, v: Any) -> Any:
        return _normalize_trigger(v)

    def ensure_persistable(self) -> None:
        """An active automation must have at least one action."""
        if self.is_active and not self.actions:
            raise AutomationValidationError(
                f"Automation {self.id} cannot be active without actions"
            )

    def ensure_executable(self) -> None:
        if not self.actions:
            raise AutomationValidationError(f"Automation {self.id} has no actions")


# ----------------------------------------------------------------------
# Workflows

_DELAY_KEYS = ("delay_days", "delay_hours")
_WAIT_KEYS = ("seconds", "hours", "days")


def _duration(config: Dict[str, Any], key: str) -> float:
    """Read a non-negative duration from a step config; unset means 0."""
    value = config.get(key)
    if value is None or value == "":
        return 0.0
    if isinstance(value, bool):
        raise ValueError(f"step_config.{key} must be a number")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValueError(f"step_config.{key} must be a number, got {value!r}") from None
    if not math.isfinite(number) or number < 0:
        raise ValueError(f"step_config.{key} must be a finite number >= 0")
    return number


class WorkflowStep(BaseModel):
    """One step of a workflow; action steps reuse the action parameters."""

    step_type: str
    step_config: Dict[str, Any] = Field(default_factory=dict)
    conditions: List[Condition] = Field(default_factory=list)
    delay: int = 0
    required: bool = True
    name: Optional[str] = None

    @field_validator("step_type", mode="before")
    @classmethod
    def _normalize_step_type(cls, v: str) -> str:
        v = STEP_TYPE_ALIASES.get(v, v)
        if v not in STEP_TYPES:
            raise ValueError(f"Unknown step type: {v}")
        return v

    @field_validator("delay")
    @classmethod
    def _non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("delay must be >= 0")
        return v

    @model_validator(mode="after")
    def _check_config(self) -> "WorkflowStep":
        for key in _DELAY_KEYS + (_WAIT_KEYS if self.is_wait else ()):
            _duration(self.step_config, key)
        if self.is_action:
            self.to_action()
        elif self.is_branch:
            self.branch_conditions()
        return self

    @property
    def is_action(self) -> bool:
        return self.step_type not in (WAIT_STEP, BRANCH_STEP)

    @property
    def is_branch(self) -> bool:
        return self.step_type == BRANCH_STEP

    @property
    def is_wait(self) -> bool:
        return self.step_type == WAIT_STEP

    def delay_seconds(self) -> int:
        """Seconds to wait before this step runs."""
        days = _duration(self.step_config, "delay_days")
        hours = _duration(self.step_config, "delay_hours")
        return int(self.delay + days * 86400 + hours * 3600)

    def wait_seconds(self) -> int:
        """Extra delay contributed by a ``wait`` step to the step after it."""
        if not self.is_wait:
            return 0
        cfg = self.step_config
        return int(
            _duration(cfg, "seconds")
            + _duration(cfg, "hours") * 3600
            + _duration(cfg, "days") * 86400
        )

    def to_action(self) -> Action:
        params = {k: v for k, v in self.step_config.items() if k not in _DELAY_KEYS}
        return parse_action({"type": self.step_type, "parameters": params})

    def branch_conditions(self) -> List[Condition]:
        raw = self.step_config.get("conditions") or []
        return [Condition.model_validate(c) for c in raw]

    def branch_target(self, outcome: bool) -> Optional[int]:
        target = self.step_config.get("true_step" if outcome else "false_step")
        return None if target is None else int(target)


class Workflow(BaseModel):
    """Multi-step, possibly delayed automation bound to enrollments."""

    id: str = Field(default_factory=_new_id)
    name: str
    description: Optional[str] = None
    category: WorkflowCategory = WorkflowCategory.CUSTOM
    trigger_type: TriggerType = TriggerType.MANUAL
    trigger_rules: Dict[str, Any] = Field(default_factory=dict)
    conditions: List[Condition] = Field(default_factory=list)
    workflow_steps: List[WorkflowStep] = Field(default_factory=list)
    settings: Dict[str, Any] = Field(default_factory=dict)
    priority: int = 1
    is_active: bool = False
    user_id: Optional[str] = None
    stats: ExecutionStats = Field(default_factory=ExecutionStats)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator("trigger_type", mode="before")
    @classmethod
    def _normalize_trigger_type(cls, v: Any) -> Any:
        return _normalize_trigger(v)

    @model_validator(mode="after")
    def _check_branches(self) -> "Workflow":
        total = len(self.workflow_steps)
        for index, step in enumerate(self.workflow_steps):
            if not step.is_branch:
                continue
            for outcome in (True, False):
                target = step.branch_target(outcome)
                if target is not None and not index < target <= total:
                    raise ValueError(
                        f"Branch at step {index} must jump forward (got {target})"
                    )
        return self

    def ensure_persistable(self) -> None:
        if self.is_active and not self.workflow_steps:
            raise AutomationValidationError(
                f"Workflow {self.id} cannot be active without steps"
            )

    def ensure_executable(self) -> None:
        if not self.workflow_steps:
            raise AutomationValidationError(f"Workflow {self.id} has no steps")


class StepRecord(BaseModel):
    """History entry for a step an enrollment has run or skipped."""

    step_index: int
    step_type: str
    status: str  # completed, failed, skipped
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None
    output: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


class SequenceEnrollment(BaseModel):
    """One entity's in-progress instance of a workflow."""

    id: str = Field(default_factory=_new_id)
    workflow_id: str
    entity: EntityRef
    payload: Dict[str, Any] = Field(default_factory=dict)
    status: EnrollmentStatus = EnrollmentStatus.ACTIVE
    steps_completed: int = 0
    next_step_at: Optional[datetime] = None
    step_attempts: int = 0
    pause_reason: Optional[str] = None
    last_error: Optional[str] = None
    history: List[StepRecord] = Field(default_factory=list)
    enrollment_source: str = "event"
    enrolled_at: datetime = Field(default_factory=utc_now)
    paused_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in (EnrollmentStatus.COMPLETED, EnrollmentStatus.CANCELLED)
