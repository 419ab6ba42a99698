"""Condition evaluation against an entity snapshot and the trigger payload."""

from __future__ import annotations

import logging
import math
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from .contracts import ConditionResult
from .enums import ConditionOperator, ConditionSource
from .errors import ConditionEvaluationError
from .models import Condition
from .utils.dates import parse_datetime

logger = logging.getLogger(__name__)

_MISSING = object()
_SOURCE_PREFIXES = ("payload", "trigger", "entity", "client", "deal", "task")


def get_nested_value(data: Any, path: str) -> Any:
    """Resolve a dotted path (``client.first_name``, ``tags.0``).

    Returns the module-level ``_MISSING`` sentinel when any segment is absent.
    """
    current = data
    for key in path.split("."):
        if isinstance(current, Mapping):
            if key not in current:
                return _MISSING
            current = current[key]
        elif isinstance(current, (list, tuple)) and key.lstrip("-").isdigit():
            index = int(key)
            if not -len(current) <= index < len(current):
                return _MISSING
            current = current[index]
        else:
            return _MISSING
    return current


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return None if math.isnan(number) else number


def _numbers(actual: Any, expected: Any) -> Optional[Tuple[float, float]]:
    left, right = _as_number(actual), _as_number(expected)
    if left is None or right is None:
        return None
    return left, right


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, (list, tuple, dict, set)):
        return len(value) == 0
    return False


def _equals(actual: Any, expected: Any) -> bool:
    if actual == expected:
        return True
    pair = _numbers(actual, expected)
    if pair is not None:
        return pair[0] == pair[1]
    return False


def _text(actual: Any, expected: Any) -> Optional[Tuple[str, str]]:
    if actual is None or expected is None:
        return None
    return str(actual).lower(), str(expected).lower()


def _membership(actual: Any, expected: Any) -> bool:
    if not isinstance(expected, (list, tuple, set)):
        raise ConditionEvaluationError("in_list requires a list value")
    return any(_equals(actual, item) for item in expected)


def apply_operator(operator: ConditionOperator | str, actual: Any, expected: Any) -> bool:
    """Apply ``operator``; raises ConditionEvaluationError for bad operands."""
    try:
        op = ConditionOperator(operator)
    except ValueError as e:
        raise ConditionEvaluationError(f"Unknown operator: {operator}") from e

    if op is ConditionOperator.IS_EMPTY:
        return _is_empty(actual)
    if op is ConditionOperator.IS_NOT_EMPTY:
        return not _is_empty(actual)
    if op is ConditionOperator.EQUALS:
        return _equals(actual, expected)
    if op is ConditionOperator.NOT_EQUALS:
        return not _equals(actual, expected)

    if op in (
        ConditionOperator.GREATER_THAN,
        ConditionOperator.LESS_THAN,
        ConditionOperator.GREATER_EQUAL,
        ConditionOperator.LESS_EQUAL,
    ):
        pair = _numbers(actual, expected)
        if pair is None:
            raise ConditionEvaluationError(
                f"{op.value} needs numeric operands, got {actual!r} and {expected!r}"
            )
        left, right = pair
        return {
            ConditionOperator.GREATER_THAN: left > right,
            ConditionOperator.LESS_THAN: left < right,
            ConditionOperator.GREATER_EQUAL: left >= right,
            ConditionOperator.LESS_EQUAL: left <= right,
        }[op]

    if op in (ConditionOperator.DATE_BEFORE, ConditionOperator.DATE_AFTER):
        left, right = parse_datetime(actual), parse_datetime(expected)
        if left is None or right is None:
            raise ConditionEvaluationError(
                f"{op.value} needs date operands, got {actual!r} and {expected!r}"
            )
        return left < right if op is ConditionOperator.DATE_BEFORE else left > right

    if op is ConditionOperator.IN_LIST:
        return _membership(actual, expected)
    if op is ConditionOperator.NOT_IN_LIST:
        return not _membership(actual, expected)

    pair_text = _text(actual, expected)
    if pair_text is None:
        return False
    haystack, needle = pair_text
    if op is ConditionOperator.CONTAINS:
        if isinstance(actual, (list, tuple, set)):
            return any(_equals(item, expected) for item in actual)
        return needle in haystack
    if op is ConditionOperator.STARTS_WITH:
        return haystack.startswith(needle)
    if op is ConditionOperator.ENDS_WITH:
        return haystack.endswith(needle)
    raise ConditionEvaluationError(f"Unsupported operator: {op.value}")


class ConditionEvaluator:
    """Evaluates a condition list with AND semantics, failing closed."""

    def _resolve(
        self,
        condition: Condition,
        entity: Mapping[str, Any],
        payload: Mapping[str, Any],
    ) -> Any:
        source = ConditionSource(condition.source)
        data = entity if source is ConditionSource.ENTITY else payload
        value = get_nested_value(data, condition.field)
        head, _, rest = condition.field.partition(".")
        if value is _MISSING and rest and head in _SOURCE_PREFIXES:
            # "payload.new_stage" and "client.status" name the source explicitly
            value = get_nested_value(data, rest)
        return value

    def check(
        self,
        condition: Condition,
        entity: Mapping[str, Any],
        payload: Mapping[str, Any],
    ) -> ConditionResult:
        """Evaluate one condition and explain the outcome."""
        result = ConditionResult(
            index=0,
            field=condition.field,
            operator=str(getattr(condition.operator, "value", condition.operator)),
            expected=condition.value,
            passed=False,
        )
        actual = self._resolve(condition, entity, payload)
        if actual is _MISSING:
            source = ConditionSource(condition.source).value
            result.reason = f"field '{condition.field}' not found in {source}"
            return result
        result.actual = actual
        try:
            result.passed = apply_operator(condition.operator, actual, condition.value)
        except ConditionEvaluationError as e:
            logger.debug(f"Condition on {condition.field} evaluated to false: {e}")
            result.reason = str(e)
            return result
        if not result.passed:
            result.reason = "condition not met"
        return result

    def evaluate(
        self,
        conditions: Iterable[Condition],
        entity: Mapping[str, Any],
        payload: Mapping[str, Any] | None = None,
    ) -> bool:
        """Return ``True`` when every condition holds; empty means ``True``."""
        payload = payload or {}
        for condition in conditions:
            if not self.check(condition, entity, payload).passed:
                return False
        return True

    def explain(
        self,
        conditions: Iterable[Condition],
        entity: Mapping[str, Any],
        payload: Mapping[str, Any] | None = None,
    ) -> List[ConditionResult]:
        """Evaluate every condition without short-circuiting."""
        payload = payload or {}
        results: List[ConditionResult] = []
        for index, condition in enumerate(conditions):
            result = self.check(condition, entity, payload)
            result.index = index
            results.append(result)
        return results


def entity_data(snapshot: Dict[str, Any], entity_id: str) -> Dict[str, Any]:
    """Snapshot with the entity id filled in, as conditions see it."""
    data = dict(snapshot)
    data.setdefault("id", entity_id)
    return data
