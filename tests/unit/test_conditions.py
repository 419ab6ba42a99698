"""Condition evaluator tests."""

import pytest

from dealflow.conditions import ConditionEvaluator, apply_operator, get_nested_value
from dealflow.errors import ConditionEvaluationError
from dealflow.models import Condition


def cond(field, operator, value=None, source="entity"):
    return Condition(source=source, field=field, operator=operator, value=value)


@pytest.fixture
def evaluator():
    return ConditionEvaluator()


def test_empty_conditions_are_true(evaluator):
    assert evaluator.evaluate([], {}, {}) is True
    assert evaluator.evaluate([], {"status": "anything"}) is True


def test_status_equals(evaluator):
    conditions = [cond("status", "equals", "qualified")]
    assert evaluator.evaluate(conditions, {"status": "qualified"}, {}) is True
    assert evaluator.evaluate(conditions, {"status": "lead"}, {}) is False


def test_missing_field_is_false(evaluator):
    assert evaluator.evaluate([cond("budget", "greater_than", 10)], {}, {}) is False
    assert evaluator.evaluate([cond("budget", "is_empty")], {}, {}) is False


def test_and_semantics_short_circuit(evaluator):
    conditions = [
        cond("status", "equals", "lead"),
        cond("lead_score", "greater_than", 50),
    ]
    assert evaluator.evaluate(conditions, {"status": "lead", "lead_score": 80}) is True
    assert evaluator.evaluate(conditions, {"status": "lead", "lead_score": 20}) is False
    assert evaluator.evaluate(conditions, {"status": "past", "lead_score": 80}) is False


def test_trigger_source_reads_payload(evaluator):
    conditions = [cond("new_stage", "equals", "Qualified", source="trigger")]
    assert evaluator.evaluate(conditions, {}, {"new_stage": "Qualified"}) is True
    assert evaluator.evaluate(conditions, {"new_stage": "Qualified"}, {}) is False


def test_source_prefix_in_field_is_accepted(evaluator):
    conditions = [cond("payload.new_stage", "equals", "Qualified", source="trigger")]
    assert evaluator.evaluate(conditions, {}, {"new_stage": "Qualified"}) is True
    entity = [cond("client.first_name", "equals", "Ana")]
    assert evaluator.evaluate(entity, {"first_name": "Ana"}) is True


def test_numeric_operators_coerce_strings(evaluator):
    entity = {"budget": "500000", "beds": 3}
    assert evaluator.evaluate([cond("budget", "greater_than", 250000)], entity)
    assert evaluator.evaluate([cond("beds", "less_equal", "3")], entity)
    assert evaluator.evaluate([cond("beds", "greater_equal", 4)], entity) is False


def test_non_numeric_comparison_fails_closed(evaluator):
    assert evaluator.evaluate([cond("budget", "greater_than", 10)], {"budget": "n/a"}) is False


def test_date_operators(evaluator):
    entity = {"closing_date": "2025-03-01", "created_at": "2024-12-31T23:00:00Z"}
    assert evaluator.evaluate([cond("closing_date", "date_after", "2025-02-01")], entity)
    assert evaluator.evaluate([cond("created_at", "date_before", "2025-01-01")], entity)
    assert not evaluator.evaluate([cond("closing_date", "date_before", "soon")], entity)


def test_string_operators_are_case_insensitive(evaluator):
    entity = {"company": "Acme Realty", "email": "ana@EXAMPLE.com"}
    assert evaluator.evaluate([cond("company", "contains", "ACME")], entity)
    assert evaluator.evaluate([cond("company", "starts_with", "acme")], entity)
    assert evaluator.evaluate([cond("email", "ends_with", "@example.com")], entity)


def test_contains_on_lists(evaluator):
    entity = {"tags": ["buyer", "vip"]}
    assert evaluator.evaluate([cond("tags", "contains", "vip")], entity)
    assert not evaluator.evaluate([cond("tags", "contains", "seller")], entity)


def test_list_membership(evaluator):
    entity = {"source": "referral"}
    assert evaluator.evaluate([cond("source", "in_list", ["website", "referral"])], entity)
    assert evaluator.evaluate([cond("source", "not_in_list", ["zillow"])], entity)
    # a scalar value is not a list: fail closed
    assert not evaluator.evaluate([cond("source", "in_list", "referral")], entity)


def test_unary_emptiness_operators(evaluator):
    entity = {"phone": "", "email": "a@b.co", "notes": []}
    assert evaluator.evaluate([cond("phone", "is_empty", "ignored")], entity)
    assert evaluator.evaluate([cond("notes", "is_empty")], entity)
    assert evaluator.evaluate([cond("email", "is_not_empty")], entity)


def test_nested_paths_and_indices():
    data = {"address": {"city": "Austin"}, "tags": ["buyer", "vip"]}
    assert get_nested_value(data, "address.city") == "Austin"
    assert get_nested_value(data, "tags.1") == "vip"
    assert get_nested_value(data, "tags.5") is not None  # missing sentinel


def test_apply_operator_rejects_unknown_operator():
    with pytest.raises(ConditionEvaluationError):
        apply_operator("resembles", "a", "b")


def test_explain_reports_every_condition(evaluator):
    conditions = [
        cond("status", "equals", "lead"),
        cond("budget", "greater_than", 10),
        cond("lead_score", "greater_than", "high"),
    ]
    results = evaluator.explain(conditions, {"status": "lead", "lead_score": 40})
    assert [r.passed for r in results] == [True, False, False]
    assert [r.index for r in results] == [0, 1, 2]
    assert "not found" in results[1].reason
    assert "numeric" in results[2].reason
