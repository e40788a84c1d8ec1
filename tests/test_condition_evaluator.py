"""
Tests: Condition Evaluator.

Covers:
  1. every operator on a matching and a non-matching value
  2. AND-combination and the empty list
  3. fail-closed on missing / null fields (not_equals and not_in included)
  4. malformed conditions, and failures while evaluating, raise
     ConditionEvaluationError
  5. dotted paths through lists and objects
  6. save-time validation of a conditions list

Pure module: no app context needed beyond the autouse session fixture.
"""

import pytest

from practice_automation.core.exceptions import ConditionEvaluationError
from practice_automation.services.condition_evaluator import (
    MISSING,
    evaluate,
    evaluate_condition,
    resolve_path,
    validate_conditions,
)

SNAPSHOT = {
    "client": {"name": "Jordan Lee", "tags": ["vip", "1040"], "client_type": "individual",
               "owner_id": None},
    "assignment": {"priority": "high", "progress": 62.5, "due_date": "2026-04-15"},
    "task": {"status": "in_progress", "auto_start": True},
    "stages": [{"name": "Collection"}, {"name": "Review"}],
}


def _cond(field, operator, value=None):
    return {"field": field, "operator": operator, "value": value}


pytestmark = pytest.mark.unit


class TestOperators:
    @pytest.mark.parametrize("condition,expected", [
        (_cond("client.client_type", "equals", "individual"), True),
        (_cond("client.client_type", "equals", "business"), False),
        (_cond("assignment.priority", "not_equals", "low"), True),
        (_cond("assignment.priority", "not_equals", "high"), False),
        (_cond("client.tags", "contains", "vip"), True),
        (_cond("client.tags", "contains", "trust"), False),
        (_cond("client.name", "contains", "Lee"), True),
        (_cond("assignment.progress", "greater_than", 50), True),
        (_cond("assignment.progress", "less_than", "50"), False),
        (_cond("assignment.priority", "in", ["high", "urgent"]), True),
        (_cond("assignment.priority", "not_in", ["high", "urgent"]), False),
        (_cond("client.tags", "in", ["1040", "1120"]), True),
        (_cond("task.auto_start", "equals", "true"), True),
    ])
    def test_operator(self, condition, expected):
        assert evaluate_condition(condition, SNAPSHOT) is expected

    def test_iso_dates_order_as_strings(self):
        assert evaluate_condition(_cond("assignment.due_date", "less_than", "2026-05-01"), SNAPSHOT)
        assert not evaluate_condition(_cond("assignment.due_date", "greater_than", "2026-05-01"), SNAPSHOT)


class TestCombination:
    def test_all_conditions_must_pass(self):
        conditions = [
            _cond("client.tags", "contains", "vip"),
            _cond("assignment.priority", "equals", "high"),
        ]
        assert evaluate(conditions, SNAPSHOT) is True
        conditions.append(_cond("task.status", "equals", "completed"))
        assert evaluate(conditions, SNAPSHOT) is False

    @pytest.mark.parametrize("conditions", [None, []])
    def test_empty_list_passes(self, conditions):
        assert evaluate(conditions, SNAPSHOT) is True


class TestFailClosed:
    @pytest.mark.parametrize("operator,value", [
        ("equals", "x"),
        ("not_equals", "x"),
        ("contains", "x"),
        ("in", ["x"]),
        ("not_in", ["x"]),
    ])
    def test_missing_field_is_false(self, operator, value):
        assert evaluate_condition(_cond("client.industry", operator, value), SNAPSHOT) is False

    def test_null_field_is_false_even_for_not_equals(self):
        assert evaluate_condition(_cond("client.owner_id", "not_equals", 7), SNAPSHOT) is False

    def test_missing_parent_is_false(self):
        assert evaluate_condition(_cond("workflow.name", "equals", "x"), SNAPSHOT) is False


class TestMalformed:
    def test_unknown_operator(self):
        with pytest.raises(ConditionEvaluationError, match="Unknown operator"):
            evaluate_condition(_cond("client.name", "starts_with", "J"), SNAPSHOT)

    def test_in_needs_a_list(self):
        with pytest.raises(ConditionEvaluationError, match="needs a list"):
            evaluate_condition(_cond("assignment.priority", "in", "high"), SNAPSHOT)

    def test_unorderable_values(self):
        with pytest.raises(ConditionEvaluationError, match="Cannot order"):
            evaluate_condition(_cond("client.name", "greater_than", 5), SNAPSHOT)

    def test_unhashable_value_against_mapping(self):
        snapshot = {"metadata": {"source": "ui"}}
        assert validate_conditions([_cond("metadata", "contains", ["x"])])
        with pytest.raises(ConditionEvaluationError, match="unhashable"):
            evaluate_condition(_cond("metadata", "contains", ["x"]), snapshot)

    def test_attribute_that_raises(self):
        class _Broken:
            @property
            def status(self):
                raise RuntimeError("detached instance")

        with pytest.raises(ConditionEvaluationError, match="detached"):
            evaluate_condition(_cond("task.status", "equals", "x"), {"task": _Broken()})

    def test_condition_must_be_a_mapping(self):
        with pytest.raises(ConditionEvaluationError):
            evaluate(["client.name == x"], SNAPSHOT)


class TestPaths:
    def test_list_index(self):
        assert resolve_path(SNAPSHOT, "stages.1.name") == "Review"

    def test_out_of_range_is_missing(self):
        assert resolve_path(SNAPSHOT, "stages.5.name") is MISSING

    def test_attribute_access(self):
        class _Obj:
            status = "blocked"

        assert resolve_path({"task": _Obj()}, "task.status") == "blocked"


class TestValidate:
    def test_normalises(self):
        out = validate_conditions([{"field": "client.tags", "operator": "contains",
                                    "value": "vip", "note": "ignored"}])
        assert out == [{"field": "client.tags", "operator": "contains", "value": "vip"}]

    def test_none_is_empty(self):
        assert validate_conditions(None) == []

    @pytest.mark.parametrize("bad", [
        {"field": "client.tags"},
        [{"field": "", "operator": "equals"}],
        [{"field": "client.tags", "operator": "in", "value": "vip"}],
        [{"field": "client.tags", "operator": "like"}],
    ])
    def test_rejects(self, bad):
        with pytest.raises(ConditionEvaluationError):
            validate_conditions(bad)
