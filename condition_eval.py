"""Fail-closed condition evaluator for trigger and step conditions."""

from __future__ import annotations

import math
from typing import Any, Callable, Dict, Iterable, Mapping

_MISSING = object()


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_finite(value: Any) -> bool:
    return not (isinstance(value, float) and not math.isfinite(value))


def resolve_field(ctx: Mapping[str, Any], field: str) -> Any:
    """Return the value for ``field`` or the module sentinel when absent.

    A literal key wins over a dotted path so attribute names containing dots
    still resolve.
    """
    if not isinstance(ctx, Mapping) or not isinstance(field, str) or not field:
        return _MISSING
    if field in ctx:
        return ctx[field]
    if "." not in field:
        return _MISSING
    current: Any = ctx
    for part in field.split("."):
        if not isinstance(current, Mapping) or part not in current:
            return _MISSING
        current = current[part]
    return current


def _compare(left: Any, right: Any, fn: Callable[[Any, Any], bool]) -> bool:
    if left is None or right is None:
        return False
    if _is_number(left) != _is_number(right):
        return False
    if not (_is_finite(left) and _is_finite(right)):
        return False
    return bool(fn(left, right))


def _members(value: Any) -> list | None:
    if isinstance(value, (list, tuple, set, frozenset)):
        return list(value)
    return None


def _op_equals(left: Any, right: Any) -> bool:
    return left == right


def _op_not_equals(left: Any, right: Any) -> bool:
    return left != right


def _op_contains(left: Any, right: Any) -> bool:
    if not isinstance(left, str) or not isinstance(right, str):
        return False
    return right in left


def _op_not_contains(left: Any, right: Any) -> bool:
    if not isinstance(left, str) or not isinstance(right, str):
        return False
    return right not in left


def _op_in(left: Any, right: Any) -> bool:
    members = _members(right)
    return members is not None and left in members


def _op_not_in(left: Any, right: Any) -> bool:
    members = _members(right)
    return members is not None and left not in members


def _op_between(left: Any, right: Any) -> bool:
    bounds = _members(right)
    if bounds is None or len(bounds) != 2:
        return False
    low, high = bounds
    return _compare(left, low, lambda a, b: a >= b) and _compare(left, high, lambda a, b: a <= b)


_BINARY_OPS: Dict[str, Callable[[Any, Any], bool]] = {
    "equals": _op_equals,
    "not_equals": _op_not_equals,
    "contains": _op_contains,
    "not_contains": _op_not_contains,
    "greater_than": lambda a, b: _compare(a, b, lambda x, y: x > y),
    "less_than": lambda a, b: _compare(a, b, lambda x, y: x < y),
    "greater_equal": lambda a, b: _compare(a, b, lambda x, y: x >= y),
    "less_equal": lambda a, b: _compare(a, b, lambda x, y: x <= y),
    "in": _op_in,
    "not_in": _op_not_in,
    "between": _op_between,
}

OPERATORS = frozenset(_BINARY_OPS) | {"is_null", "is_not_null"}


def _parts(condition: Any) -> tuple[Any, Any, Any]:
    if isinstance(condition, Mapping):
        return condition.get("field"), condition.get("operator"), condition.get("value")
    return (
        getattr(condition, "field", None),
        getattr(condition, "operator", None),
        getattr(condition, "value", None),
    )


def evaluate(condition: Any, context: Mapping[str, Any] | None) -> bool:
    try:
        field, operator, expected = _parts(condition)
        if not isinstance(field, str) or not isinstance(operator, str):
            return False
        actual = resolve_field(context or {}, field)
        if operator == "is_null":
            return actual is _MISSING or actual is None
        if operator == "is_not_null":
            return actual is not _MISSING and actual is not None
        fn = _BINARY_OPS.get(operator)
        if fn is None or actual is _MISSING:
            return False
        return bool(fn(actual, expected))
    except Exception:
        return False


def evaluate_all(conditions: Iterable[Any] | None, context: Mapping[str, Any] | None) -> bool:
    if not conditions:
        return True
    try:
        items = list(conditions)
    except TypeError:
        return False
    return all(evaluate(condition, context) for condition in items)
