"""Filter expression tree and its closed set of leaf value types.

Filters arrive in the SmartSuite wire shape::

    {
        "operator": "and",
        "fields": [
            {"field": "status", "comparison": "is_any_of", "value": ["open", "pending"]},
            {"operator": "or", "fields": [...]},
        ],
    }

``parse_filter`` turns that loosely typed JSON into immutable pydantic models
so the translator can match on value kinds instead of duck-typing.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field

from recordcache.cache.errors import InvalidFilter

Scalar = Union[str, int, float, bool]


# ═══════════════ LEAF VALUES ═══════════════

class TextValue(BaseModel):
    kind: Literal["text"] = "text"
    value: str

    model_config = {"frozen": True}


class NumberValue(BaseModel):
    kind: Literal["number"] = "number"
    value: int | float

    model_config = {"frozen": True}


class BoolValue(BaseModel):
    kind: Literal["bool"] = "bool"
    value: bool

    model_config = {"frozen": True}


class ListValue(BaseModel):
    kind: Literal["list"] = "list"
    items: tuple[Scalar, ...] = ()

    model_config = {"frozen": True}


class DateValue(BaseModel):
    """Absolute (``exact_date``) or relative (``today``, ``days_ago``...) date."""

    kind: Literal["date"] = "date"
    date_mode: str = "exact_date"
    date_mode_value: str | int | None = None

    model_config = {"frozen": True}


class NullValue(BaseModel):
    kind: Literal["null"] = "null"

    model_config = {"frozen": True}


FilterValue = Annotated[
    Union[TextValue, NumberValue, BoolValue, ListValue, DateValue, NullValue],
    Field(discriminator="kind"),
]


# ═══════════════ TREE ═══════════════

class FilterCondition(BaseModel):
    """Leaf: compare one field against one value."""

    field: str
    comparison: str
    value: FilterValue = NullValue()

    model_config = {"frozen": True}


class FilterGroup(BaseModel):
    """Internal node: AND/OR over child expressions."""

    operator: Literal["and", "or"] = "and"
    fields: tuple[FilterExpression, ...] = ()

    model_config = {"frozen": True}


FilterExpression = Union[FilterCondition, FilterGroup]
FilterGroup.model_rebuild()


def all_of(*children: FilterExpression) -> FilterGroup:
    return FilterGroup(operator="and", fields=children)


def any_of(*children: FilterExpression) -> FilterGroup:
    return FilterGroup(operator="or", fields=children)


def condition(field: str, comparison: str, value: Any = None) -> FilterCondition:
    return FilterCondition(field=field, comparison=comparison, value=to_filter_value(value))


# ═══════════════ PARSING ═══════════════

def to_filter_value(raw: Any) -> TextValue | NumberValue | BoolValue | ListValue | DateValue | NullValue:
    """Map a loose JSON value to the tagged value union."""
    if isinstance(raw, (TextValue, NumberValue, BoolValue, ListValue, DateValue, NullValue)):
        return raw
    if raw is None:
        return NullValue()
    if isinstance(raw, bool):
        return BoolValue(value=raw)
    if isinstance(raw, (int, float)):
        return NumberValue(value=raw)
    if isinstance(raw, str):
        return TextValue(value=raw)
    if isinstance(raw, (list, tuple)):
        for item in raw:
            if item is None or not isinstance(item, (str, int, float, bool)):
                raise InvalidFilter(f"List filter values must be scalars, got {item!r}")
        return ListValue(items=tuple(raw))
    if isinstance(raw, Mapping):
        if "date_mode" in raw or "date_mode_value" in raw:
            mode_value = raw.get("date_mode_value")
            if mode_value is not None and not isinstance(mode_value, (str, int)):
                raise InvalidFilter(f"Invalid date_mode_value: {mode_value!r}")
            return DateValue(
                date_mode=str(raw.get("date_mode") or "exact_date"),
                date_mode_value=mode_value,
            )
        if "date" in raw and isinstance(raw["date"], str):
            return DateValue(date_mode="exact_date", date_mode_value=raw["date"])
    raise InvalidFilter(f"Unsupported filter value: {raw!r}")


def parse_filter(raw: Any) -> FilterExpression | None:
    """Parse a wire-format filter. ``None`` or ``{}`` means no filter."""
    if raw is None or isinstance(raw, (FilterCondition, FilterGroup)):
        return raw
    if not isinstance(raw, Mapping):
        raise InvalidFilter(f"Filter must be an object, got {type(raw).__name__}")
    if not raw:
        return None
    return _parse_node(raw)


def _parse_node(raw: Any) -> FilterExpression:
    if not isinstance(raw, Mapping):
        raise InvalidFilter(f"Filter node must be an object, got {raw!r}")

    if "fields" in raw or "operator" in raw:
        operator = str(raw.get("operator", "and")).lower()
        if operator not in ("and", "or"):
            raise InvalidFilter(f"Unknown logical operator '{operator}'")
        children = raw.get("fields")
        if not isinstance(children, list) or not children:
            raise InvalidFilter(f"'{operator}' group must have at least one child")
        return FilterGroup(operator=operator, fields=tuple(_parse_node(c) for c in children))

    field = raw.get("field")
    comparison = raw.get("comparison")
    if not isinstance(field, str) or not field:
        raise InvalidFilter(f"Filter condition is missing 'field': {dict(raw)!r}")
    if not isinstance(comparison, str) or not comparison:
        raise InvalidFilter(f"Filter condition on '{field}' is missing 'comparison'")
    return FilterCondition(
        field=field,
        comparison=comparison,
        value=to_filter_value(raw.get("value")),
    )


def referenced_fields(expr: FilterExpression | None) -> list[str]:
    """Field names used anywhere in the tree, in first-seen order."""
    seen: dict[str, None] = {}

    def walk(node: FilterExpression) -> None:
        if isinstance(node, FilterGroup):
            for child in node.fields:
                walk(child)
        else:
            seen.setdefault(node.field, None)

    if expr is not None:
        walk(expr)
    return list(seen)
