from __future__ import annotations

import math
from collections.abc import Callable, Sequence
from enum import StrEnum
from typing import Any

from crmflow.automation.fields import resolve_field


class ConditionOperator(StrEnum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    IS_EMPTY = "is_empty"
    IS_NOT_EMPTY = "is_not_empty"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    HAS_TAG = "has_tag"
    NOT_HAS_TAG = "not_has_tag"


class ConditionLogic(StrEnum):
    AND = "AND"
    OR = "OR"


def stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (list, tuple)):
        return ",".join(stringify(item) for item in value)
    return str(value)


def _to_number(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
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
    if math.isnan(number):
        return None
    return number


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def loose_equals(left: Any, right: Any) -> bool:
    if left is None or right is None:
        return left is None and right is None
    if _is_number(left) or _is_number(right):
        left_number = _to_number(left)
        right_number = _to_number(right)
        if left_number is not None and right_number is not None:
            return left_number == right_number
    if type(left) is type(right):
        return left == right
    return stringify(left) == stringify(right)


def _contains(value: Any, target: Any) -> bool:
    if value is None:
        return False
    return stringify(target).lower() in stringify(value).lower()


def _is_empty(value: Any) -> bool:
    return value is None or value == ""


def _compare(value: Any, target: Any, comparator: Callable[[float, float], bool]) -> bool:
    left = _to_number(value)
    right = _to_number(target)
    if left is None or right is None:
        return False
    return comparator(left, right)


def _has_tag(value: Any, target: Any) -> bool:
    return isinstance(value, list) and target in value


def _not_has_tag(value: Any, target: Any) -> bool:
    return not isinstance(value, list) or target not in value


_OPERATORS: dict[ConditionOperator, Callable[[Any, Any], bool]] = {
    ConditionOperator.EQUALS: loose_equals,
    ConditionOperator.NOT_EQUALS: lambda value, target: not loose_equals(value, target),
    ConditionOperator.CONTAINS: _contains,
    ConditionOperator.NOT_CONTAINS: lambda value, target: not _contains(value, target),
    ConditionOperator.IS_EMPTY: lambda value, _target: _is_empty(value),
    ConditionOperator.IS_NOT_EMPTY: lambda value, _target: not _is_empty(value),
    ConditionOperator.GREATER_THAN: lambda value, target: _compare(value, target, lambda a, b: a > b),
    ConditionOperator.LESS_THAN: lambda value, target: _compare(value, target, lambda a, b: a < b),
    ConditionOperator.HAS_TAG: _has_tag,
    ConditionOperator.NOT_HAS_TAG: _not_has_tag,
}


def parse_operator(raw: Any) -> ConditionOperator | None:
    if isinstance(raw, ConditionOperator):
        return raw
    if not isinstance(raw, str):
        return None
    try:
        return ConditionOperator(raw)
    except ValueError:
        return None


def apply_operator(operator: Any, value: Any, target: Any) -> bool:
    parsed = parse_operator(operator)
    if parsed is None:
        return False
    return _OPERATORS[parsed](value, target)


def evaluate_condition(condition: dict[str, Any], data: dict[str, Any] | None) -> bool:
    if not isinstance(condition, dict):
        return False
    value = resolve_field(condition.get("field"), data)
    return apply_operator(condition.get("operator"), value, condition.get("value"))


def _parse_logic(raw: Any) -> ConditionLogic | None:
    if isinstance(raw, str) and raw.upper() in ConditionLogic.__members__:
        return ConditionLogic(raw.upper())
    return None


def evaluate_conditions(
    conditions: Sequence[dict[str, Any]] | None,
    data: dict[str, Any] | None,
) -> tuple[bool, list[dict[str, Any]]]:
    """Fold conditions left to right.

    The accumulator starts at ``True`` with an ``AND`` connector; a condition's
    ``logic`` picks the connector used to fold in the condition after it.
    """
    result = True
    connector = ConditionLogic.AND
    evaluated: list[dict[str, Any]] = []

    for condition in conditions or []:
        met = evaluate_condition(condition, data)
        if connector == ConditionLogic.AND:
            result = result and met
        else:
            result = result or met

        entry = condition if isinstance(condition, dict) else {}
        evaluated.append(
            {
                "field": entry.get("field"),
                "operator": entry.get("operator"),
                "value": entry.get("value"),
                "logic": entry.get("logic"),
                "result": met,
            }
        )

        next_connector = _parse_logic(entry.get("logic"))
        if next_connector is not None:
            connector = next_connector

    return result, evaluated
