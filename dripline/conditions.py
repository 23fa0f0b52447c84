"""Condition expressions and trigger filter matching."""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

from .exceptions import TriggerFilterError

logger = logging.getLogger(__name__)

OPERATORS = ("equals", "contains", "exists")
_MISSING = object()


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        return value[1:-1]
    return value


def evaluate_expression(expression: Any, context: Mapping[str, Any]) -> bool:
    """Evaluate a ``<field> <operator> <value>`` expression against ``context``.

    Only ``equals``, ``contains`` and ``exists`` are understood. Anything that
    does not split into exactly three space-separated tokens is false, and so
    is an unknown operator. Never raises.
    """
    if not isinstance(expression, str):
        return False
    parts = expression.split(" ")
    if len(parts) != 3:
        return False

    field, operator, raw_value = parts
    value = _unquote(raw_value)
    field_value = context.get(field, _MISSING) if context else _MISSING

    if operator == "equals":
        return field_value is not _MISSING and field_value == value
    if operator == "contains":
        if field_value is _MISSING:
            return False
        return value in str(field_value)
    if operator == "exists":
        return field_value is not _MISSING and field_value is not None
    return False


def _matches_entry(field: str, expected: Any, payload: Mapping[str, Any]) -> bool:
    actual = payload.get(field, _MISSING)
    if isinstance(expected, dict):
        if set(expected) != {"exists"}:
            raise TriggerFilterError(
                f"Unsupported filter for field '{field}': {expected!r}"
            )
        present = actual is not _MISSING and actual is not None
        return present == bool(expected["exists"])
    if actual is _MISSING or actual is None:
        return False
    if isinstance(expected, (list, tuple, set)):
        return str(actual) in {str(item) for item in expected}
    return str(actual) == str(expected)


def matches_trigger_filters(
    filters: Optional[Mapping[str, Any]], payload: Mapping[str, Any]
) -> bool:
    """Return ``True`` when every filter entry is satisfied by ``payload``.

    An absent or empty filter matches everything. Values may be a scalar
    (string-equal), a list (one of) or ``{"exists": bool}``.

    Raises:
        TriggerFilterError: if the filter is malformed.
    """
    if not filters:
        return True
    if not isinstance(filters, Mapping):
        raise TriggerFilterError(f"Trigger filters must be a mapping, got {type(filters).__name__}")
    payload = payload or {}
    return all(
        _matches_entry(field, expected, payload) for field, expected in filters.items()
    )
