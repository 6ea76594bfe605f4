"""
Condition expressions guarding tasks and field bindings.

Workflow documents describe conditions as loosely-typed JSON:

    {"and": [{"where": {"data": "useLora"}, "equals": {"value": true}}]}
    {"or":  [{"where": {"data": "mode"}, "isNot": {"value": ""}}]}

A bare leaf (``where`` without an ``and``/``or`` wrapper) is treated as a
single-item ``and``. ``parse_condition`` turns the JSON into ``AllOf`` /
``AnyOf`` / ``Leaf`` nodes and ``evaluate`` walks them against a mapping of
named data sources.

Comparator semantics:
- blank-equivalence: ``None``, a missing field and a whitespace-only string
  are all equal to each other (and to an expected ``""`` or ``null``)
- boolean normalisation: the strings ``"true"``/``"false"`` (any case) compare
  equal to the booleans ``True``/``False``, which is how HTML forms submit them
- otherwise values compare equal when they are ``==`` or have the same string
  form (``"5"`` equals ``5``)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Union

from imagen.core.errors import ValidationError

_MISSING = object()


@dataclass(frozen=True)
class Leaf:
    source: str
    field: str
    negate: bool
    expected: Any


@dataclass(frozen=True)
class AllOf:
    items: tuple["Condition", ...]


@dataclass(frozen=True)
class AnyOf:
    items: tuple["Condition", ...]


Condition = Union[Leaf, AllOf, AnyOf]


def parse_condition(raw: Any) -> Condition:
    if not isinstance(raw, dict):
        raise ValidationError(f"Condition must be an object, got {type(raw).__name__}")

    if "and" in raw or "or" in raw:
        key = "and" if "and" in raw else "or"
        items = raw[key]
        if not isinstance(items, list):
            raise ValidationError(f"Condition '{key}' must be a list")
        parsed = tuple(parse_condition(item) for item in items)
        return AllOf(parsed) if key == "and" else AnyOf(parsed)

    if "where" in raw:
        return AllOf((_parse_leaf(raw),))

    raise ValidationError("Condition must contain 'and', 'or' or 'where'")


def _parse_leaf(raw: dict) -> Leaf:
    where = raw["where"]
    if not isinstance(where, dict) or len(where) != 1:
        raise ValidationError("Condition 'where' must name exactly one source field")
    source, field = next(iter(where.items()))

    if "isNot" in raw:
        negate, comparator = True, raw["isNot"]
    elif "equals" in raw:
        negate, comparator = False, raw["equals"]
    else:
        raise ValidationError(f"Condition on '{field}' needs 'equals' or 'isNot'")

    if not isinstance(comparator, dict) or "value" not in comparator:
        raise ValidationError(f"Condition on '{field}' must compare against {{'value': ...}}")

    return Leaf(source=source, field=field, negate=negate, expected=comparator["value"])


def evaluate(condition: Condition, sources: Mapping[str, Mapping[str, Any]]) -> bool:
    if isinstance(condition, AllOf):
        return all(evaluate(item, sources) for item in condition.items)
    if isinstance(condition, AnyOf):
        return any(evaluate(item, sources) for item in condition.items)

    data = sources.get(condition.source)
    actual = data.get(condition.field, _MISSING) if data is not None else _MISSING
    matched = values_match(actual, condition.expected)
    return not matched if condition.negate else matched


def check_condition(raw: Any, data: Mapping[str, Any]) -> bool:
    """Evaluate a raw JSON condition against generation data.

    ``None`` means unconditional. Both ``data`` and ``generationData`` source
    names resolve to the same mapping.
    """
    if raw is None:
        return True
    sources = {"data": data, "generationData": data, "value": data}
    return evaluate(parse_condition(raw), sources)


def is_blank(value: Any) -> bool:
    if value is _MISSING or value is None:
        return True
    return isinstance(value, str) and value.strip() == ""


def _normalize(value: Any) -> Any:
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered == "true":
            return True
        if lowered == "false":
            return False
    return value


def values_match(actual: Any, expected: Any) -> bool:
    if is_blank(actual) or is_blank(expected):
        return is_blank(actual) and is_blank(expected)

    actual, expected = _normalize(actual), _normalize(expected)
    if isinstance(actual, bool) or isinstance(expected, bool):
        return actual is expected
    return actual == expected or str(actual) == str(expected)
