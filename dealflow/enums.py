"""Closed vocabularies used by automations, workflows and enrollments."""

from __future__ import annotations

from enum import Enum
from typing import Optional


class TriggerType(str, Enum):
    DEAL_STAGE_CHANGE = "deal_stage_change"
    CLIENT_STATUS_CHANGE = "client_status_change"
    TIME_BASED = "time_based"
    SCORE_THRESHOLD = "score_threshold"
    TASK_COMPLETED = "task_completed"
    MANUAL = "manual"


# Event names emitted by the workflow builder and older CRUD handlers.
TRIGGER_ALIASES = {
    "deal_stage_changed": TriggerType.DEAL_STAGE_CHANGE,
    "client_status_changed": TriggerType.CLIENT_STATUS_CHANGE,
    "task_complete": TriggerType.TASK_COMPLETED,
    "scheduled": TriggerType.TIME_BASED,
}


def normalize_trigger_type(value: str | TriggerType) -> Optional[TriggerType]:
    """Map an event or trigger name to a ``TriggerType``; ``None`` if unknown."""
    if isinstance(value, TriggerType):
        return value
    if value in TRIGGER_ALIASES:
        return TRIGGER_ALIASES[value]
    try:
        return TriggerType(value)
    except ValueError:
        return None


class ConditionSource(str, Enum):
    ENTITY = "entity"
    TRIGGER = "trigger"


class ConditionOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    GREATER_EQUAL = "greater_equal"
    LESS_EQUAL = "less_equal"
    CONTAINS = "contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    IN_LIST = "in_list"
    NOT_IN_LIST = "not_in_list"
    IS_EMPTY = "is_empty"
    IS_NOT_EMPTY = "is_not_empty"
    DATE_BEFORE = "date_before"
    DATE_AFTER = "date_after"


class ActionType(str, Enum):
    UPDATE_STATUS = "update_status"
    CREATE_TASK = "create_task"
    SEND_EMAIL = "send_email"
    SEND_SMS = "send_sms"
    CREATE_NOTE = "create_note"
    UPDATE_SCORE = "update_score"
    ASSIGN_TO_USER = "assign_to_user"
    MOVE_TO_STAGE = "move_to_stage"
    SCHEDULE_FOLLOW_UP = "schedule_follow_up"
    WEBHOOK = "webhook"


WAIT_STEP = "wait"
BRANCH_STEP = "conditional_branch"

# Builder step types that are spelled differently from the action they run.
STEP_TYPE_ALIASES = {
    "update_field": ActionType.UPDATE_STATUS.value,
    "assign_lead": ActionType.ASSIGN_TO_USER.value,
    "schedule_meeting": ActionType.SCHEDULE_FOLLOW_UP.value,
}

STEP_TYPES = frozenset(
    [a.value for a in ActionType] + [WAIT_STEP, BRANCH_STEP]
)


class EnrollmentStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class WorkflowCategory(str, Enum):
    LEAD_NURTURING = "lead_nurturing"
    DEAL_MANAGEMENT = "deal_management"
    CLIENT_ONBOARDING = "client_onboarding"
    FOLLOW_UP = "follow_up"
    CUSTOM = "custom"


class ParentKind(str, Enum):
    """Which kind of record a ledger entry belongs to."""

    AUTOMATION = "automation"
    WORKFLOW = "workflow"


class ErrorKind(str, Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"
