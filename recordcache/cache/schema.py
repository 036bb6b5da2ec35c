"""Schema inference for dynamic per-resource cache tables.

A resource's records are heterogeneous dicts straight from the remote API.
The inferencer unions every key across the records and picks, per key, the
narrowest column type that holds every non-null value:

    boolean -> integer -> real -> text

Any dict or list value forces the column to ``json``. Columns never shrink
within a refresh: a key seen on a single record still becomes a column and
every other row stores NULL for it.
"""

import logging
import re
from collections.abc import Iterable, Mapping
from enum import Enum
from typing import Any

from pydantic import BaseModel

logger = logging.getLogger(__name__)

INT64_MIN = -(2**63)
INT64_MAX = 2**63 - 1

# Physical columns the store adds to every cache table, plus SQLite's
# implicit rowid aliases which a user column must never shadow.
CACHED_AT_COLUMN = "_cached_at"
EXPIRES_AT_COLUMN = "_expires_at"
RESERVED_COLUMNS = frozenset({CACHED_AT_COLUMN, EXPIRES_AT_COLUMN, "rowid", "oid", "_rowid_"})

_UNSAFE_IDENTIFIER = re.compile(r"[^A-Za-z0-9_]")


class ColumnType(str, Enum):
    TEXT = "text"
    INTEGER = "integer"
    REAL = "real"
    BOOLEAN = "boolean"
    JSON = "json"


# Promotion order for scalar types; JSON sits outside it and always wins.
_SCALAR_RANK = {
    ColumnType.BOOLEAN: 0,
    ColumnType.INTEGER: 1,
    ColumnType.REAL: 2,
    ColumnType.TEXT: 3,
}


class Column(BaseModel):
    """One inferred column of a resource's cache table."""

    name: str
    type: ColumnType
    nullable: bool = True

    model_config = {"frozen": True}


class FieldHint(BaseModel):
    """Field description supplied by the remote source, if it has one."""

    name: str
    type: ColumnType | None = None
    label: str | None = None

    model_config = {"frozen": True}


class SchemaHint(BaseModel):
    fields: list[FieldHint] = []

    def names(self) -> list[str]:
        return [f.name for f in self.fields]


def value_type(value: Any) -> ColumnType:
    """Classify a single non-null value."""
    if isinstance(value, bool):
        return ColumnType.BOOLEAN
    if isinstance(value, int):
        if INT64_MIN <= value <= INT64_MAX:
            return ColumnType.INTEGER
        return ColumnType.TEXT
    if isinstance(value, float):
        return ColumnType.REAL
    if isinstance(value, (Mapping, list, tuple)):
        return ColumnType.JSON
    return ColumnType.TEXT


def promote(current: ColumnType | None, observed: ColumnType) -> ColumnType:
    if current is None:
        return observed
    if ColumnType.JSON in (current, observed):
        return ColumnType.JSON
    return max(current, observed, key=_SCALAR_RANK.__getitem__)


def coerce_value(value: Any, column_type: ColumnType) -> Any:
    """Convert a raw record value to the form stored in a column of ``column_type``."""
    if value is None:
        return None
    if column_type is ColumnType.JSON:
        return value
    if column_type is ColumnType.BOOLEAN:
        return bool(value)
    if column_type is ColumnType.INTEGER:
        return int(value)
    if column_type is ColumnType.REAL:
        return float(value)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def physical_column_names(columns: Iterable[Column]) -> dict[str, str]:
    """Map field names to safe, unique SQL column names.

    Only ``[a-z0-9_]`` survives. SQLite identifiers are case-insensitive, so
    names are lower-cased and collisions get a numeric suffix in schema order.
    """
    used = set(RESERVED_COLUMNS)
    mapping: dict[str, str] = {}
    for column in columns:
        base = _UNSAFE_IDENTIFIER.sub("_", column.name).lower() or "field"
        candidate = base
        suffix = 2
        while candidate in used:
            candidate = f"{base}_{suffix}"
            suffix += 1
        used.add(candidate)
        mapping[column.name] = candidate
    return mapping


class SchemaInferencer:
    """Derives a column schema from a sample of heterogeneous records."""

    def infer(
        self,
        records: Iterable[Mapping[str, Any]],
        hint: SchemaHint | None = None,
    ) -> list[Column]:
        types: dict[str, ColumnType | None] = {}
        nullable: dict[str, bool] = {}
        count = 0

        for record in records:
            for key, value in record.items():
                if key not in types:
                    types[key] = None
                    # Missing from every earlier record
                    nullable[key] = count > 0
                if value is None:
                    nullable[key] = True
                    continue
                types[key] = promote(types[key], value_type(value))
            if len(record) < len(types):
                for key in types:
                    if key not in record:
                        nullable[key] = True
            count += 1

        if hint:
            for field in hint.fields:
                if field.name not in types:
                    types[field.name] = field.type or ColumnType.TEXT
                    nullable[field.name] = True
                elif types[field.name] is None and field.type:
                    types[field.name] = field.type

        schema = [
            Column(name=name, type=col_type or ColumnType.TEXT, nullable=nullable[name])
            for name, col_type in types.items()
        ]
        logger.debug("Schema inferred | records=%d | columns=%d", count, len(schema))
        return schema


def infer_schema(
    records: Iterable[Mapping[str, Any]],
    hint: SchemaHint | None = None,
) -> list[Column]:
    return SchemaInferencer().infer(records, hint)
