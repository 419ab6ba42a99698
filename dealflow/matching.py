"""Trigger matching: which automations and workflows an event can fire."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence, TypeVar, Union

from apscheduler.triggers.cron import CronTrigger

from .constants import DEFAULT_SCHEDULER_INTERVAL
from .contracts import DomainEvent
from .enums import TriggerType
from .errors import MatchError
from .models import Automation, Workflow
from .persistence import AutomationStore, WorkflowStore
from .utils.dates import ensure_aware, parse_datetime

logger = logging.getLogger(__name__)

Rule = TypeVar("Rule", Automation, Workflow)


def _optional_equals(rules: Mapping[str, Any], key: str, actual: Any) -> bool:
    expected = rules.get(key)
    if expected in (None, "", "any"):
        return True
    if isinstance(expected, (list, tuple)):
        if actual is None:
            return False
        return str(actual).lower() in {str(item).lower() for item in expected}
    if not isinstance(expected, (str, int, float, bool)):
        raise MatchError(f"trigger_rules.{key} must be a scalar or list")
    return str(actual).lower() == str(expected).lower() if actual is not None else False


def _number(rules: Mapping[str, Any], key: str) -> float:
    try:
        return float(rules[key])
    except (TypeError, ValueError) as e:
        raise MatchError(f"trigger_rules.{key} must be numeric") from e


def _match_stage_change(rules: Mapping[str, Any], payload: Mapping[str, Any]) -> bool:
    return _optional_equals(
        rules, "target_stage", payload.get("new_stage")
    ) and _optional_equals(rules, "from_stage", payload.get("old_stage"))


def _match_status_change(rules: Mapping[str, Any], payload: Mapping[str, Any]) -> bool:
    return _optional_equals(
        rules, "target_status", payload.get("new_status")
    ) and _optional_equals(rules, "from_status", payload.get("old_status"))


def _match_score_threshold(rules: Mapping[str, Any], payload: Mapping[str, Any]) -> bool:
    if "threshold" not in rules:
        return True
    threshold = _number(rules, "threshold")
    try:
        new_score = float(payload["new_score"])
        old_score = float(payload.get("old_score", 0) or 0)
    except (KeyError, TypeError, ValueError):
        return False
    direction = rules.get("direction", "up")
    if direction == "up":
        return old_score < threshold <= new_score
    if direction == "down":
        return old_score >= threshold > new_score
    raise MatchError(f"Unknown score threshold direction: {direction}")


def _match_task_completed(rules: Mapping[str, Any], payload: Mapping[str, Any]) -> bool:
    return _optional_equals(rules, "task_type", payload.get("task_type"))


def _tick_window_start(payload: Mapping[str, Any], tick: datetime) -> datetime:
    """Exclusive start of the window a scheduler tick covers.

    Ticks carry ``since`` (the previous tick) when the scheduler knows it,
    otherwise the window is the ``interval`` seconds before the tick.
    """
    if payload.get("since"):
        since = parse_datetime(payload["since"])
        if since is None:
            raise MatchError(f"Tick payload has an invalid since: {payload['since']!r}")
        return min(since, tick)
    raw = payload.get("interval") or DEFAULT_SCHEDULER_INTERVAL
    try:
        interval = float(raw)
    except (TypeError, ValueError) as e:
        raise MatchError(f"Tick payload has a non-numeric interval: {raw!r}") from e
    if interval <= 0:
        raise MatchError(f"Tick payload interval must be positive: {raw!r}")
    return tick - timedelta(seconds=interval)


def _match_time_based(
    rules: Mapping[str, Any], payload: Mapping[str, Any], occurred_at: datetime
) -> bool:
    tick = ensure_aware(occurred_at)
    if rules.get("cron"):
        try:
            trigger = CronTrigger.from_crontab(rules["cron"], timezone=timezone.utc)
        except ValueError as e:
            raise MatchError(f"Invalid cron expression {rules['cron']!r}: {e}") from e
        # Fire times strictly after the window start, up to and including the tick.
        window_start = _tick_window_start(payload, tick) + timedelta(microseconds=1)
        fire_time = trigger.get_next_fire_time(None, window_start)
        return fire_time is not None and fire_time <= tick
    if rules.get("interval_minutes"):
        every = int(_number(rules, "interval_minutes"))
        if every <= 0:
            raise MatchError("trigger_rules.interval_minutes must be positive")
        period = every * 60
        boundary = tick.timestamp() // period * period
        return boundary > _tick_window_start(payload, tick).timestamp()
    return True


def _match_manual(rule: Union[Automation, Workflow], payload: Mapping[str, Any]) -> bool:
    key = "workflow_id" if isinstance(rule, Workflow) else "automation_id"
    target = payload.get(key)
    return target is None or target == rule.id


def rules_compatible(rule: Union[Automation, Workflow], event: DomainEvent) -> bool:
    """Check ``rule.trigger_rules`` against the event. Raises MatchError."""
    rules: Dict[str, Any] = rule.trigger_rules or {}
    if not isinstance(rules, Mapping):
        raise MatchError("trigger_rules must be an object")
    payload = event.payload
    trigger = rule.trigger_type
    if trigger is TriggerType.DEAL_STAGE_CHANGE:
        return _match_stage_change(rules, payload)
    if trigger is TriggerType.CLIENT_STATUS_CHANGE:
        return _match_status_change(rules, payload)
    if trigger is TriggerType.SCORE_THRESHOLD:
        return _match_score_threshold(rules, payload)
    if trigger is TriggerType.TASK_COMPLETED:
        return _match_task_completed(rules, payload)
    if trigger is TriggerType.TIME_BASED:
        return _match_time_based(rules, payload, event.occurred_at)
    if trigger is TriggerType.MANUAL:
        return _match_manual(rule, payload)
    raise MatchError(f"Unsupported trigger type: {trigger}")


def select_matching(candidates: Sequence[Rule], event: DomainEvent) -> List[Rule]:
    """Filter ``candidates`` for ``event`` and order by priority, then age."""
    category = event.category
    if category is None:
        return []
    matched: List[Rule] = []
    for rule in candidates:
        if not rule.is_active or rule.trigger_type is not category:
            continue
        try:
            if rules_compatible(rule, event):
                matched.append(rule)
        except MatchError as e:
            logger.warning(f"Skipping {rule.id} ({rule.name}): {e}")
    matched.sort(key=lambda r: (r.priority, ensure_aware(r.created_at)))
    return matched


class TriggerMatcher:
    """Finds active automations and workflows eligible to run for an event.

    Candidates are queried from the stores on every call, so toggling
    ``is_active`` or deleting a record is visible to the next match.
    """

    def __init__(
        self,
        automations: AutomationStore,
        workflows: Optional[WorkflowStore] = None,
    ) -> None:
        self._automations = automations
        self._workflows = workflows

    async def match(self, event: DomainEvent) -> List[Automation]:
        category = event.category
        if category is None:
            logger.debug(f"Event type {event.type!r} has no trigger category")
            return []
        try:
            candidates = await self._automations.list_active_automations(category)
        except Exception:
            logger.exception(f"Could not load automations for event {event.event_id}")
            return []
        return select_matching(candidates, event)

    async def match_workflows(self, event: DomainEvent) -> List[Workflow]:
        category = event.category
        if category is None or self._workflows is None:
            return []
        try:
            candidates = await self._workflows.list_active_workflows(category)
        except Exception:
            logger.exception(f"Could not load workflows for event {event.event_id}")
            return []
        return select_matching(candidates, event)
