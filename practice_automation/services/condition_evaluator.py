"""
Condition Evaluator.

    evaluate(conditions, snapshot) -> bool

Each condition is ``{"field": "client.tags", "operator": "contains",
"value": "vip"}``. Conditions in one list are AND-combined; there is no OR
in this version. ``field`` is a dotted path into the snapshot (dicts,
lists by integer index, or object attributes).

A missing field, or one whose value is null, makes the condition false
(fail-closed) for every operator, including ``not_equals`` and
``not_in``. A malformed condition (unknown operator, non-list operand for
``in``, values that cannot be ordered) raises ConditionEvaluationError,
which callers treat as "no match". So does any other exception raised
while resolving a path or comparing values.

The module is pure: no database access, no clock, no logging side effects.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from practice_automation.core.exceptions import ConditionEvaluationError

OPERATORS = frozenset({
    "equals", "not_equals", "contains",
    "greater_than", "less_than", "in", "not_in",
})

MISSING = object()


def resolve_path(snapshot: Any, path: str) -> Any:
    """Walk a dotted path; returns the module sentinel when any hop is absent."""
    current = snapshot
    for part in path.split("."):
        if current is None:
            return MISSING
        if isinstance(current, Mapping):
            if part not in current:
                return MISSING
            current = current[part]
        elif isinstance(current, (list, tuple)):
            try:
                current = current[int(part)]
            except (ValueError, IndexError):
                return MISSING
        else:
            if not hasattr(current, part):
                return MISSING
            current = getattr(current, part)
    return current


def _as_number(value: Any):
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _equals(actual: Any, expected: Any) -> bool:
    if actual == expected:
        return True
    if isinstance(actual, bool) or isinstance(expected, bool):
        return str(actual).lower() == str(expected).lower()
    a, e = _as_number(actual), _as_number(expected)
    if a is not None and e is not None:
        return a == e
    return False


def _contains(actual: Any, expected: Any) -> bool:
    if isinstance(actual, (list, tuple, set, frozenset)):
        return any(_equals(item, expected) for item in actual)
    if isinstance(actual, str):
        return str(expected) in actual
    if isinstance(actual, Mapping):
        return expected in actual
    return False


def _compare(actual: Any, expected: Any, operator: str) -> bool:
    a, e = _as_number(actual), _as_number(expected)
    if a is None or e is None:
        if isinstance(actual, str) and isinstance(expected, str):
            # ISO dates and datetimes order correctly as strings
            a, e = actual, expected
        else:
            raise ConditionEvaluationError(
                f"Cannot order {actual!r} and {expected!r} for '{operator}'"
            )
    return a > e if operator == "greater_than" else a < e


def _member(actual: Any, expected: Any, operator: str) -> bool:
    if not isinstance(expected, (list, tuple, set, frozenset)):
        raise ConditionEvaluationError(f"'{operator}' needs a list value, got {expected!r}")
    if isinstance(actual, (list, tuple, set, frozenset)):
        return any(_equals(a, e) for a in actual for e in expected)
    return any(_equals(actual, e) for e in expected)


def _apply(operator: str, actual: Any, expected: Any) -> bool:
    if operator == "equals":
        return _equals(actual, expected)
    if operator == "not_equals":
        return not _equals(actual, expected)
    if operator == "contains":
        return _contains(actual, expected)
    if operator in ("greater_than", "less_than"):
        return _compare(actual, expected, operator)
    if operator == "in":
        return _member(actual, expected, operator)
    return not _member(actual, expected, operator)


def evaluate_condition(condition: Mapping, snapshot: Any) -> bool:
    """Evaluate one ``{field, operator, value}`` condition.

    Any failure while resolving or comparing (an unhashable operand, a
    property that raises) surfaces as ConditionEvaluationError.
    """
    if not isinstance(condition, Mapping):
        raise ConditionEvaluationError(f"Condition must be an object, got {condition!r}")
    field = condition.get("field")
    operator = condition.get("operator")
    expected = condition.get("value")
    if not isinstance(field, str) or not field:
        raise ConditionEvaluationError(f"Condition field must be a non-empty string: {condition!r}")
    if operator not in OPERATORS:
        raise ConditionEvaluationError(f"Unknown operator '{operator}'")

    try:
        actual = resolve_path(snapshot, field)
        if actual is MISSING or actual is None:
            return False
        return _apply(operator, actual, expected)
    except ConditionEvaluationError:
        raise
    except Exception as exc:
        raise ConditionEvaluationError(
            f"Cannot evaluate '{field}' {operator} {expected!r}: {exc}"
        ) from exc


def evaluate(conditions: list[Mapping] | None, snapshot: Any) -> bool:
    """AND-combine every condition; an empty or missing list passes."""
    for condition in conditions or []:
        if not evaluate_condition(condition, snapshot):
            return False
    return True


def validate_conditions(conditions: Any) -> list[dict]:
    """Shape-check a conditions list at save time; returns it normalised."""
    if conditions is None:
        return []
    if not isinstance(conditions, list):
        raise ConditionEvaluationError("conditions must be a list")
    normalised = []
    for cond in conditions:
        if not isinstance(cond, Mapping):
            raise ConditionEvaluationError(f"Condition must be an object, got {cond!r}")
        if not isinstance(cond.get("field"), str) or not cond.get("field"):
            raise ConditionEvaluationError(f"Condition field must be a non-empty string: {cond!r}")
        if cond.get("operator") not in OPERATORS:
            raise ConditionEvaluationError(f"Unknown operator '{cond.get('operator')}'")
        if cond["operator"] in ("in", "not_in") and not isinstance(cond.get("value"), list):
            raise ConditionEvaluationError(f"'{cond['operator']}' needs a list value")
        normalised.append({"field": cond["field"], "operator": cond["operator"], "value": cond.get("value")})
    return normalised
