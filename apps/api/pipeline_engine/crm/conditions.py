from __future__ import annotations

import math
import re
from collections.abc import Mapping
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from pipeline_engine.crm.schemas import Condition, ConditionAll, ConditionAny, ConditionLeaf, ConditionNot

_MISSING = object()
_TEMPLATE_RE = re.compile(r"\{\{\s*([A-Za-z0-9_.\-]+)\s*\}\}")
_WHOLE_TEMPLATE_RE = re.compile(r"^\s*\{\{\s*([A-Za-z0-9_.\-]+)\s*\}\}\s*$")
_NUMERIC_RE = re.compile(r"\s*[+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?\s*", re.ASCII)
_BLANK = (None, "", [], {}, ())


def _walk(source: Any, path: str) -> Any:
    current: Any = source
    for segment in path.split("."):
        if isinstance(current, Mapping):
            if segment not in current:
                return _MISSING
            current = current[segment]
        elif isinstance(current, (list, tuple)) and segment.isdigit():
            index = int(segment)
            if index >= len(current):
                return _MISSING
            current = current[index]
        else:
            return _MISSING
    return current


def resolve_field(path: str, entity: Mapping[str, Any], context: Mapping[str, Any]) -> tuple[bool, Any]:
    """Look up a field path against the entity snapshot and the caller context.

    ``context.`` / ``data.`` / ``entity.`` prefixes pin the source. A bare path
    is tried against the context, then the entity data, then the entity itself.
    """
    prefix, _, rest = path.partition(".")
    if rest:
        if prefix == "context":
            value = _walk(context, rest)
            return value is not _MISSING, None if value is _MISSING else value
        if prefix == "data":
            value = _walk(entity.get("data") or {}, rest)
            return value is not _MISSING, None if value is _MISSING else value
        if prefix == "entity":
            value = _walk(entity, rest)
            return value is not _MISSING, None if value is _MISSING else value

    for source in (context, entity.get("data") or {}, entity):
        value = _walk(source, path)
        if value is not _MISSING:
            return True, value
    return False, None


def _parse_number(value: str) -> float | None:
    if not _NUMERIC_RE.fullmatch(value):
        return None
    number = float(value)
    return number if math.isfinite(number) else None


def _normalized(value: Any, case_insensitive: bool) -> Any:
    if isinstance(value, bool):
        return value
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, str):
        as_number = _parse_number(value)
        if as_number is not None:
            return as_number
        return value.casefold() if case_insensitive else value
    return value


def _contains(current: Any, target: Any, case_insensitive: bool) -> bool:
    if isinstance(current, str) and isinstance(target, str):
        if case_insensitive:
            return target.casefold() in current.casefold()
        return target in current
    if isinstance(current, (list, tuple, set)):
        expected = _normalized(target, case_insensitive)
        return any(_normalized(item, case_insensitive) == expected for item in current)
    if isinstance(current, Mapping):
        return target in current
    return False


def _eval_leaf(condition: ConditionLeaf, entity: Mapping[str, Any], context: Mapping[str, Any]) -> bool:
    exists, current = resolve_field(condition.field, entity, context)
    op = condition.op
    if op == "empty":
        return not exists or current in _BLANK
    if not exists:
        return False

    target = condition.value
    insensitive = condition.case_insensitive

    if op == "exists":
        return current not in _BLANK
    if op == "eq":
        return _normalized(current, insensitive) == _normalized(target, insensitive)
    if op == "neq":
        return _normalized(current, insensitive) != _normalized(target, insensitive)
    if op == "in":
        if not isinstance(target, (list, tuple, set)):
            return False
        left = _normalized(current, insensitive)
        return any(left == _normalized(item, insensitive) for item in target)
    if op == "contains":
        return _contains(current, target, insensitive)
    if op == "not_contains":
        return not _contains(current, target, insensitive)

    left = _normalized(current, insensitive)
    right = _normalized(target, insensitive)
    if left is None or right is None:
        return False
    try:
        if op == "gt":
            return left > right
        if op == "gte":
            return left >= right
        if op == "lt":
            return left < right
        if op == "lte":
            return left <= right
    except TypeError:
        return False
    return False


def evaluate(condition: Condition, entity: Mapping[str, Any], context: Mapping[str, Any] | None = None) -> bool:
    context = context or {}
    if isinstance(condition, ConditionAll):
        return all(evaluate(item, entity, context) for item in condition.all)
    if isinstance(condition, ConditionAny):
        return any(evaluate(item, entity, context) for item in condition.any)
    if isinstance(condition, ConditionNot):
        return not evaluate(condition.not_, entity, context)
    return _eval_leaf(condition, entity, context)


def render_template(value: Any, entity: Mapping[str, Any], context: Mapping[str, Any]) -> Any:
    """Substitute ``{{ path }}`` placeholders.

    A string that is exactly one placeholder yields the raw resolved value so
    numbers and lists keep their type; embedded placeholders are stringified
    and unknown paths render as empty.
    """
    if isinstance(value, str):
        whole = _WHOLE_TEMPLATE_RE.match(value)
        if whole is not None:
            _, resolved = resolve_field(whole.group(1), entity, context)
            return resolved

        def _substitute(match: re.Match[str]) -> str:
            _, resolved = resolve_field(match.group(1), entity, context)
            return "" if resolved is None else str(resolved)

        return _TEMPLATE_RE.sub(_substitute, value)
    if isinstance(value, dict):
        return {key: render_template(item, entity, context) for key, item in value.items()}
    if isinstance(value, list):
        return [render_template(item, entity, context) for item in value]
    return value
