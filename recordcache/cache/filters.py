"""Filter translator: filter expression tree -> parameterized SQL predicate.

Every leaf value is bound as a named parameter (``:p0``, ``:p1``...); only
column identifiers are written into the SQL text, and those come from
``physical_column_names`` so they are restricted to ``[a-z0-9_]``.

Null semantics are uniform across families: positive comparators never match
a NULL field, negative ones (``is_not``, ``not_contains``, ``has_none_of``...)
always do.

Substring and file-name matching use SQLite LIKE, which folds case for ASCII
letters only: ``contains "CAFE"`` matches "cafe", but "É" and "é" are
different characters to it.
"""

import itertools
import logging
import time
from collections.abc import Callable, Sequence
from datetime import date
from typing import Any, NamedTuple

from recordcache.cache import dates
from recordcache.cache.errors import InvalidFilter, SchemaDrift, UnknownField, UnsupportedComparator
from recordcache.cache.expressions import (
    BoolValue,
    DateValue,
    FilterCondition,
    FilterExpression,
    FilterGroup,
    ListValue,
    NullValue,
    NumberValue,
    TextValue,
)
from recordcache.cache.schema import Column, ColumnType, physical_column_names

logger = logging.getLogger(__name__)

# comparison -> (family, family argument)
COMPARATORS: dict[str, tuple[str, Any]] = {
    "is": ("equality", False),
    "is_equal_to": ("equality", False),
    "is_not": ("equality", True),
    "is_not_equal_to": ("equality", True),
    "contains": ("substring", False),
    "not_contains": ("substring", True),
    "does_not_contain": ("substring", True),
    "is_any_of": ("membership", False),
    "has_any_of": ("membership", False),
    "is_none_of": ("membership", True),
    "has_none_of": ("membership", True),
    "has_all_of": ("all_of", None),
    "is_exactly": ("exactly", None),
    "is_empty": ("empty", False),
    "is_not_empty": ("empty", True),
    "is_greater_than": ("numeric", ">"),
    "is_less_than": ("numeric", "<"),
    "is_equal_or_greater_than": ("numeric", ">="),
    "is_equal_or_less_than": ("numeric", "<="),
    "is_before": ("date", "<"),
    "is_after": ("date", ">"),
    "is_on_or_before": ("date", "<="),
    "is_on_or_after": ("date", ">="),
    "file_name_contains": ("file", "name"),
    "file_type_is": ("file", "type"),
}

NUMERIC_TYPES = (ColumnType.INTEGER, ColumnType.REAL)
EMPTY_JSON_LITERALS = "('[]', '{}', '\"\"')"


class TranslatedFilter(NamedTuple):
    sql: str
    params: dict[str, Any]


class _Context:
    """Per-call state: column lookup, bound parameters, drift bookkeeping."""

    def __init__(
        self,
        schema: Sequence[Column],
        dropped: Sequence[Column],
        table_name: str | None,
        resource_id: str,
        now: float,
        prefix: str,
    ):
        self.columns = {c.name: c for c in schema}
        self.physical = physical_column_names(schema)
        self.dropped = {c.name: c for c in dropped if c.name not in self.columns}
        self.table_name = table_name
        self.resource_id = resource_id
        self.now = now
        self.prefix = prefix
        self.params: dict[str, Any] = {}
        self.drifted: list[str] = []
        self._counter = itertools.count()

    def resolve(self, field: str) -> tuple[str, ColumnType]:
        if field in self.columns:
            name = f'"{self.physical[field]}"'
            if self.table_name:
                name = f'"{self.table_name}".{name}'
            return name, self.columns[field].type
        if field in self.dropped:
            # Column vanished in the latest refresh: every row reads as NULL
            if field not in self.drifted:
                self.drifted.append(field)
            return "NULL", self.dropped[field].type
        raise UnknownField(field, self.resource_id)

    def bind(self, value: Any) -> str:
        name = f"{self.prefix}{next(self._counter)}"
        self.params[name] = value
        return f":{name}"


class FilterTranslator:
    """Converts a nested AND/OR filter tree into a SQL predicate plus bind params."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock

    def translate(
        self,
        expr: FilterExpression,
        schema: Sequence[Column],
        dropped: Sequence[Column] = (),
        *,
        table_name: str | None = None,
        resource_id: str = "",
        now: float | None = None,
        strict: bool = False,
        param_prefix: str = "p",
    ) -> TranslatedFilter:
        """Translate ``expr`` against ``schema``.

        ``dropped`` lists columns from earlier refreshes that the current
        schema no longer has; filters on them read as all-NULL unless
        ``strict`` is set, in which case ``SchemaDrift`` is raised.
        ``table_name`` qualifies column references, which keeps them
        unambiguous inside ``json_each`` subqueries.
        """
        ctx = _Context(
            schema, dropped, table_name, resource_id,
            self._clock() if now is None else now, param_prefix,
        )
        sql = self._node(expr, ctx)
        if ctx.drifted:
            if strict:
                raise SchemaDrift(resource_id, ctx.drifted)
            logger.warning(
                "Schema drift | resource=%s | fields=%s read as NULL",
                resource_id, ",".join(ctx.drifted),
            )
        return TranslatedFilter(sql, ctx.params)

    # ═══════════════ TREE ═══════════════

    def _node(self, expr: FilterExpression, ctx: _Context) -> str:
        if isinstance(expr, FilterGroup):
            if not expr.fields:
                raise InvalidFilter(f"'{expr.operator}' group must have at least one child")
            joiner = f" {expr.operator.upper()} "
            return "(" + joiner.join(self._node(child, ctx) for child in expr.fields) + ")"
        if isinstance(expr, FilterCondition):
            return self._leaf(expr, ctx)
        raise InvalidFilter(f"Not a filter expression: {expr!r}")

    def _leaf(self, leaf: FilterCondition, ctx: _Context) -> str:
        comparison = leaf.comparison.lower()
        if comparison not in COMPARATORS:
            raise UnsupportedComparator(comparison)
        family, arg = COMPARATORS[comparison]
        col, col_type = ctx.resolve(leaf.field)

        match family:
            case "equality":
                return self._equality(col, col_type, leaf, ctx, negate=arg)
            case "substring":
                return self._substring(col, col_type, leaf, ctx, negate=arg)
            case "membership":
                return self._membership(col, col_type, leaf, ctx, negate=arg)
            case "all_of":
                return self._all_of(col, col_type, leaf, ctx)
            case "exactly":
                return self._exactly(col, col_type, leaf, ctx)
            case "empty":
                return self._empty(col, col_type, negate=arg)
            case "numeric":
                return self._numeric(col, col_type, leaf, ctx, op=arg)
            case "date":
                return self._date_order(col, col_type, leaf, ctx, op=arg)
            case "file":
                return self._file(col, col_type, leaf, ctx, key=arg)
        raise UnsupportedComparator(comparison)

    # ═══════════════ FAMILIES ═══════════════

    def _equality(self, col, col_type, leaf, ctx, negate: bool) -> str:
        value = leaf.value
        match value:
            case DateValue():
                return self._date_equality(col, col_type, leaf, ctx, negate)
            case ListValue():
                raise InvalidFilter(f"'{leaf.comparison}' on '{leaf.field}' expects a single value")
            case NullValue():
                raise InvalidFilter(
                    f"'{leaf.comparison}' on '{leaf.field}' requires a value; use is_empty instead"
                )

        if col_type is ColumnType.JSON:
            col = _json_scalar(col)
            param = ctx.bind(value.value)
        else:
            param = ctx.bind(_scalar_for(col_type, value, leaf))

        if negate:
            return f"({col} IS NULL OR {col} <> {param})"
        return f"{col} = {param}"

    def _substring(self, col, col_type, leaf, ctx, negate: bool) -> str:
        if col_type not in (ColumnType.TEXT, ColumnType.JSON):
            raise UnsupportedComparator(leaf.comparison, col_type.value)
        match leaf.value:
            case TextValue(value=v):
                needle = v
            case NumberValue(value=v):
                needle = str(v)
            case _:
                raise InvalidFilter(f"'{leaf.comparison}' on '{leaf.field}' expects text")

        param = ctx.bind(f"%{escape_like(needle)}%")
        if col_type is ColumnType.JSON:
            # Match decoded text leaves, never the serialized document
            exists = (
                f"EXISTS (SELECT 1 FROM json_tree({col}) AS jt "
                f"WHERE jt.type = 'text' AND jt.value LIKE {param} ESCAPE '\\')"
            )
            return f"NOT {exists}" if negate else exists
        if negate:
            return f"({col} IS NULL OR {col} NOT LIKE {param} ESCAPE '\\')"
        return f"{col} LIKE {param} ESCAPE '\\'"

    def _membership(self, col, col_type, leaf, ctx, negate: bool) -> str:
        items = _list_items(leaf)
        if col_type is ColumnType.JSON:
            params = ", ".join(ctx.bind(item) for item in items)
            exists = f"EXISTS (SELECT 1 FROM {_json_members(col)} AS je WHERE je.value IN ({params}))"
            return f"NOT {exists}" if negate else exists

        params = ", ".join(
            ctx.bind(_scalar_for(col_type, _item_value(item), leaf)) for item in items
        )
        if negate:
            return f"({col} IS NULL OR {col} NOT IN ({params}))"
        return f"{col} IN ({params})"

    def _all_of(self, col, col_type, leaf, ctx) -> str:
        if col_type is not ColumnType.JSON:
            raise UnsupportedComparator(leaf.comparison, col_type.value)
        items = _distinct(_list_items(leaf))
        return "(" + " AND ".join(_json_contains(col, ctx.bind(item)) for item in items) + ")"

    def _exactly(self, col, col_type, leaf, ctx) -> str:
        if col_type is not ColumnType.JSON:
            raise UnsupportedComparator(leaf.comparison, col_type.value)
        items = _distinct(_list_items(leaf))
        clauses = [f"json_array_length({col}) = {ctx.bind(len(items))}"]
        clauses.extend(_json_contains(col, ctx.bind(item)) for item in items)
        return "(" + " AND ".join(clauses) + ")"

    def _empty(self, col, col_type, negate: bool) -> str:
        if col_type is ColumnType.TEXT:
            if negate:
                return f"({col} IS NOT NULL AND {col} <> '')"
            return f"({col} IS NULL OR {col} = '')"
        if col_type is ColumnType.JSON:
            if negate:
                return f"({col} IS NOT NULL AND {col} NOT IN {EMPTY_JSON_LITERALS})"
            return f"({col} IS NULL OR {col} IN {EMPTY_JSON_LITERALS})"
        return f"{col} IS NOT NULL" if negate else f"{col} IS NULL"

    def _numeric(self, col, col_type, leaf, ctx, op: str) -> str:
        if col_type not in NUMERIC_TYPES:
            raise UnsupportedComparator(leaf.comparison, col_type.value)
        match leaf.value:
            case NumberValue(value=v):
                number = v
            case TextValue(value=v):
                number = _parse_number(v, leaf)
            case _:
                raise InvalidFilter(f"'{leaf.comparison}' on '{leaf.field}' expects a number")
        return f"{col} {op} {ctx.bind(number)}"

    def _date_order(self, col, col_type, leaf, ctx, op: str) -> str:
        day = self._resolve_date(leaf, ctx)
        if col_type in NUMERIC_TYPES:
            # Day-granular comparison against epoch-second boundaries
            if op == "<":
                return f"{col} < {ctx.bind(_epoch_bound(dates.day_start_epoch, day, leaf))}"
            if op == "<=":
                return f"{col} < {ctx.bind(_epoch_bound(dates.day_end_epoch, day, leaf))}"
            if op == ">":
                return f"{col} >= {ctx.bind(_epoch_bound(dates.day_end_epoch, day, leaf))}"
            return f"{col} >= {ctx.bind(_epoch_bound(dates.day_start_epoch, day, leaf))}"

        accessor = _date_accessor(col, col_type, leaf)
        return f"{accessor} {op} {ctx.bind(day.isoformat())}"

    def _date_equality(self, col, col_type, leaf, ctx, negate: bool) -> str:
        day = self._resolve_date(leaf, ctx)
        if col_type in NUMERIC_TYPES:
            start = ctx.bind(_epoch_bound(dates.day_start_epoch, day, leaf))
            end = ctx.bind(_epoch_bound(dates.day_end_epoch, day, leaf))
            if negate:
                return f"({col} IS NULL OR {col} < {start} OR {col} >= {end})"
            return f"({col} >= {start} AND {col} < {end})"

        accessor = _date_accessor(col, col_type, leaf)
        param = ctx.bind(day.isoformat())
        if negate:
            return f"({accessor} IS NULL OR {accessor} <> {param})"
        return f"{accessor} = {param}"

    def _resolve_date(self, leaf: FilterCondition, ctx: _Context) -> date:
        try:
            match leaf.value:
                case DateValue(date_mode=mode, date_mode_value=mode_value):
                    return dates.resolve_mode(mode, mode_value, ctx.now)
                case TextValue(value=v):
                    return dates.parse_date(v)
        except (ValueError, OverflowError) as e:
            raise InvalidFilter(f"Invalid date for '{leaf.field}': {e}") from e
        raise InvalidFilter(f"'{leaf.comparison}' on '{leaf.field}' expects a date")

    def _file(self, col, col_type, leaf, ctx, key: str) -> str:
        """Match file-list fields on an element's ``name`` (substring) or ``type`` (exact)."""
        if col_type is not ColumnType.JSON:
            raise UnsupportedComparator(leaf.comparison, col_type.value)
        match leaf.value:
            case TextValue(value=v):
                needle = v
            case _:
                raise InvalidFilter(f"'{leaf.comparison}' on '{leaf.field}' expects text")

        member = f"CASE WHEN je.type = 'object' THEN json_extract(je.value, '$.{key}') END"
        if key == "name":
            condition = f"{member} LIKE {ctx.bind(f'%{escape_like(needle)}%')} ESCAPE '\\'"
        else:
            condition = f"{member} = {ctx.bind(needle)}"
        return f"EXISTS (SELECT 1 FROM json_each({col}) AS je WHERE {condition})"


# ═══════════════ HELPERS ═══════════════

def escape_like(text: str) -> str:
    """Escape LIKE wildcards so the text matches literally (escape char is backslash)."""
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _json_contains(col: str, param: str) -> str:
    return f"EXISTS (SELECT 1 FROM json_each({col}) AS je WHERE je.value = {param})"


def _json_scalar(col: str) -> str:
    """Comparable scalar of a JSON cell: a status object's ``value``, else the cell itself."""
    return (
        f"(CASE WHEN json_type({col}, '$.value') NOT IN ('null', 'array', 'object') "
        f"THEN json_extract({col}, '$.value') "
        f"WHEN json_type({col}) NOT IN ('array', 'object') THEN json_extract({col}, '$') END)"
    )


def _json_members(col: str) -> str:
    """``json_each`` over a status object's ``value`` when present, else over the cell."""
    return (
        f"json_each({col}, CASE WHEN json_type({col}, '$.value') IS NULL "
        "THEN '$' ELSE '$.value' END)"
    )


def _epoch_bound(bound: Callable[[date], float], day: date, leaf: FilterCondition) -> float:
    try:
        return bound(day)
    except (OverflowError, ValueError) as e:
        raise InvalidFilter(f"Date {day.isoformat()} for '{leaf.field}' is out of range") from e


def _date_accessor(col: str, col_type: ColumnType, leaf: FilterCondition) -> str:
    if col_type is ColumnType.TEXT:
        return f"substr({col}, 1, 10)"
    if col_type is ColumnType.JSON:
        # Date-range objects keep the comparable date under to_date.date
        # (or to_date as a bare string), plain date objects under date.
        return (
            "substr(COALESCE("
            f"json_extract({col}, '$.to_date.date'), "
            f"CASE WHEN json_type({col}, '$.to_date') = 'text' THEN json_extract({col}, '$.to_date') END, "
            f"json_extract({col}, '$.date'), "
            f"CASE WHEN json_type({col}) = 'text' THEN json_extract({col}, '$') END"
            "), 1, 10)"
        )
    raise UnsupportedComparator(leaf.comparison, col_type.value)


def _list_items(leaf: FilterCondition) -> tuple:
    if not isinstance(leaf.value, ListValue) or not leaf.value.items:
        raise InvalidFilter(f"'{leaf.comparison}' on '{leaf.field}' expects a non-empty list")
    return leaf.value.items


def _distinct(items: tuple) -> list:
    return list(dict.fromkeys(items))


def _item_value(item: Any) -> TextValue | NumberValue | BoolValue:
    if isinstance(item, bool):
        return BoolValue(value=item)
    if isinstance(item, (int, float)):
        return NumberValue(value=item)
    return TextValue(value=str(item))


def _parse_number(text: str, leaf: FilterCondition) -> int | float:
    try:
        return int(text)
    except ValueError:
        pass
    try:
        return float(text)
    except ValueError:
        raise InvalidFilter(f"'{leaf.field}' expects a number, got '{text}'") from None


def _scalar_for(col_type: ColumnType, value: Any, leaf: FilterCondition) -> Any:
    """Coerce a scalar filter value to the stored representation of ``col_type``."""
    match col_type, value:
        case ColumnType.TEXT, TextValue(value=v):
            return v
        case ColumnType.TEXT, BoolValue(value=v):
            return "true" if v else "false"
        case ColumnType.TEXT, NumberValue(value=v):
            return str(v)
        case ColumnType.INTEGER | ColumnType.REAL, NumberValue(value=v):
            return float(v) if col_type is ColumnType.REAL else v
        case ColumnType.INTEGER | ColumnType.REAL, BoolValue(value=v):
            return int(v)
        case ColumnType.INTEGER | ColumnType.REAL, TextValue(value=v):
            number = _parse_number(v, leaf)
            return float(number) if col_type is ColumnType.REAL else number
        case ColumnType.BOOLEAN, BoolValue(value=v):
            return v
        case ColumnType.BOOLEAN, NumberValue(value=v) if v in (0, 1):
            return bool(v)
        case ColumnType.BOOLEAN, TextValue(value=v) if v.lower() in ("true", "false"):
            return v.lower() == "true"
    raise InvalidFilter(
        f"Value {getattr(value, 'value', value)!r} does not fit {col_type.value} field '{leaf.field}'"
    )
