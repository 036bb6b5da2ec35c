"""TableStore: one physical SQL table per cached resource.

Tables are never patched in place. Every refresh builds a staging table,
bulk-inserts the new rows, drops the live table, renames staging into its
place and rewrites the registry row, all in one transaction. A failure at
any step rolls the whole swap back and the previous table stays queryable.
"""

import hashlib
import logging
import re
import time
from collections.abc import Callable, Iterable, Mapping, Sequence
from typing import Any, NamedTuple

import sqlalchemy as sa
from pydantic import BaseModel
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from recordcache.cache.errors import InvalidQuery, ResourceNotFound, StorageError, UnknownField
from recordcache.cache.filters import TranslatedFilter
from recordcache.cache.schema import (
    CACHED_AT_COLUMN,
    EXPIRES_AT_COLUMN,
    Column,
    ColumnType,
    coerce_value,
    physical_column_names,
)
from recordcache.models import CacheTableRegistry

logger = logging.getLogger(__name__)

DEFAULT_TABLE_PREFIX = "cache_records_"
STAGING_SUFFIX = "__staging"
MAX_NAME_LENGTH = 48

_UNSAFE_NAME = re.compile(r"[^A-Za-z0-9_]")
_REGISTRY = CacheTableRegistry.__table__

_SQL_TYPES = {
    ColumnType.TEXT: sa.Text,
    ColumnType.INTEGER: sa.Integer,
    ColumnType.REAL: sa.Float,
    ColumnType.BOOLEAN: sa.Boolean,
}


class TableSchema(BaseModel):
    """Registry view of a resource's live table."""

    resource_id: str
    table_name: str
    columns: list[Column]
    dropped: list[Column] = []
    row_count: int = 0
    created_at: float | None = None
    updated_at: float | None = None

    def names(self) -> list[str]:
        return [c.name for c in self.columns]

    def physical(self) -> dict[str, str]:
        return physical_column_names(self.columns)


class ReadPlan(NamedTuple):
    """One read, resolved against the schema that the read itself loads."""

    projection: Sequence[str] | None = None
    predicate: TranslatedFilter | None = None
    order: Sequence[tuple[str, str]] = ()
    limit: int | None = None
    offset: int = 0


Planner = Callable[[TableSchema], ReadPlan]


def _sql_type(column_type: ColumnType):
    if column_type is ColumnType.JSON:
        return sa.JSON(none_as_null=True)
    return _SQL_TYPES[column_type]()


class TableStore:
    """Physical storage for cached resources, backed by an async SQLAlchemy engine."""

    def __init__(self, engine: AsyncEngine, table_prefix: str = DEFAULT_TABLE_PREFIX):
        self._engine = engine
        self._prefix = table_prefix

    def table_name_for(self, resource_id: str) -> str:
        """Physical table name for ``resource_id``.

        Only ``[a-z0-9_]`` survives. If sanitizing changed the id at all, a
        short hash of the original is appended so distinct ids never share
        a table.
        """
        cleaned = _UNSAFE_NAME.sub("", resource_id).lower()
        if cleaned != resource_id or len(cleaned) > MAX_NAME_LENGTH:
            digest = hashlib.sha256(resource_id.encode("utf-8")).hexdigest()[:8]
            cleaned = f"{cleaned[:MAX_NAME_LENGTH]}_{digest}" if cleaned else f"x_{digest}"
        return f"{self._prefix}{cleaned}"

    # ═══════════════ WRITE ═══════════════

    async def replace(
        self,
        resource_id: str,
        schema: Sequence[Column],
        rows: Iterable[Mapping[str, Any]],
        *,
        cached_at: float | None = None,
        expires_at: float | None = None,
    ) -> int:
        """Atomically swap the resource's table for one holding ``rows``. Returns the row count."""
        start = time.monotonic()
        now = time.time()
        cached_at = now if cached_at is None else cached_at
        table_name = self.table_name_for(resource_id)
        staging_name = f"{table_name}{STAGING_SUFFIX}"
        physical = physical_column_names(schema)
        staging = self._build_table(staging_name, schema, physical)

        try:
            payload = [
                self._row_payload(row, schema, physical, cached_at, expires_at) for row in rows
            ]
        except (TypeError, ValueError) as e:
            raise StorageError(resource_id, f"value does not fit inferred schema: {e}") from e

        try:
            async with self._engine.begin() as conn:
                previous = (
                    await conn.execute(sa.select(_REGISTRY).where(_REGISTRY.c.resource_id == resource_id))
                ).mappings().first()

                await conn.execute(sa.text(f'DROP TABLE IF EXISTS "{staging_name}"'))
                await conn.run_sync(staging.create)
                if payload:
                    await conn.execute(staging.insert(), payload)
                await conn.execute(sa.text(f'DROP TABLE IF EXISTS "{table_name}"'))
                await conn.execute(sa.text(f'ALTER TABLE "{staging_name}" RENAME TO "{table_name}"'))

                registry_row = {
                    "resource_id": resource_id,
                    "sql_table_name": table_name,
                    "columns": _columns_to_json(schema, physical),
                    "dropped_columns": _columns_to_json(_dropped_since(previous, schema)),
                    "row_count": len(payload),
                    "created_at": previous["created_at"] if previous else now,
                    "updated_at": now,
                }
                stmt = sqlite_insert(_REGISTRY).values(**registry_row)
                stmt = stmt.on_conflict_do_update(
                    index_elements=["resource_id"],
                    set_={k: v for k, v in registry_row.items() if k not in ("resource_id", "created_at")},
                )
                await conn.execute(stmt)
        except SQLAlchemyError as e:
            logger.error("Table REPLACE failed | resource=%s | %s", resource_id, str(e)[:200])
            raise StorageError(resource_id, str(e)[:200]) from e

        elapsed = (time.monotonic() - start) * 1000
        logger.info(
            "Table REPLACE | resource=%s | table=%s | rows=%d | columns=%d | %.1fms",
            resource_id, table_name, len(payload), len(schema), elapsed,
        )
        return len(payload)

    async def drop(self, resource_id: str) -> bool:
        """Drop the resource's table and registry row. Returns False if there was nothing to drop."""
        table_name = self.table_name_for(resource_id)
        try:
            async with self._engine.begin() as conn:
                existed = await self._registry_row(conn, resource_id) is not None
                await conn.execute(sa.text(f'DROP TABLE IF EXISTS "{table_name}"'))
                await conn.execute(sa.text(f'DROP TABLE IF EXISTS "{table_name}{STAGING_SUFFIX}"'))
                await conn.execute(sa.delete(_REGISTRY).where(_REGISTRY.c.resource_id == resource_id))
        except SQLAlchemyError as e:
            raise StorageError(resource_id, str(e)[:200]) from e
        if existed:
            logger.info("Table DROP | resource=%s | table=%s", resource_id, table_name)
        return existed

    async def drop_all(self) -> int:
        """Drop every cached table. Returns how many resources were dropped."""
        try:
            async with self._engine.begin() as conn:
                names = (await conn.execute(sa.select(_REGISTRY.c.sql_table_name))).scalars().all()
                for name in names:
                    await conn.execute(sa.text(f'DROP TABLE IF EXISTS "{name}"'))
                    await conn.execute(sa.text(f'DROP TABLE IF EXISTS "{name}{STAGING_SUFFIX}"'))
                await conn.execute(sa.delete(_REGISTRY))
        except SQLAlchemyError as e:
            raise StorageError("*", str(e)[:200]) from e
        logger.info("Table DROP ALL | tables=%d", len(names))
        return len(names)

    # ═══════════════ READ ═══════════════

    async def query(
        self,
        resource_id: str,
        projection: Sequence[str] | None = None,
        predicate: TranslatedFilter | None = None,
        order: Sequence[tuple[str, str]] = (),
        limit: int | None = None,
        offset: int = 0,
        include_meta: bool = False,
    ) -> list[dict[str, Any]]:
        """Run one read against the live table.

        Rows come back keyed by original field names, in ``order`` and then
        source order. Projected fields that only exist in an earlier schema
        read as None.
        """
        plan = ReadPlan(projection, predicate, order, limit, offset)
        rows, _ = await self._read(resource_id, lambda info: plan, include_meta, with_total=False)
        return rows

    async def page(
        self,
        resource_id: str,
        projection: Sequence[str] | None = None,
        predicate: TranslatedFilter | None = None,
        order: Sequence[tuple[str, str]] = (),
        limit: int | None = None,
        offset: int = 0,
        include_meta: bool = False,
    ) -> tuple[list[dict[str, Any]], int]:
        """Like ``query``, plus the total number of matching rows from the same snapshot."""
        plan = ReadPlan(projection, predicate, order, limit, offset)
        return await self._read(resource_id, lambda info: plan, include_meta, with_total=True)

    async def read_planned(
        self,
        resource_id: str,
        planner: Planner,
        *,
        include_meta: bool = False,
        with_total: bool = True,
    ) -> tuple[list[dict[str, Any]], int]:
        """Read with a plan built from the schema loaded inside the read's own transaction.

        ``planner`` receives the live ``TableSchema`` and returns a
        ``ReadPlan``. Planning and reading share one snapshot, so a refresh
        is seen by both or by neither.
        """
        return await self._read(resource_id, planner, include_meta, with_total)

    async def count(self, resource_id: str, predicate: TranslatedFilter | None = None) -> int:
        return await self.count_planned(resource_id, lambda info: predicate)

    async def count_planned(
        self,
        resource_id: str,
        planner: Callable[[TableSchema], TranslatedFilter | None],
    ) -> int:
        """Count matching rows, translating the predicate against the snapshot's schema."""
        try:
            async with self._engine.connect() as conn:
                info = await self._load(conn, resource_id)
                predicate = planner(info)
                table = self._build_table(info.table_name, info.columns, info.physical())
                return await self._count(conn, table, predicate)
        except SQLAlchemyError as e:
            raise StorageError(resource_id, str(e)[:200]) from e

    async def _read(
        self,
        resource_id: str,
        planner: Planner,
        include_meta: bool,
        with_total: bool,
    ) -> tuple[list[dict[str, Any]], int]:
        start = time.monotonic()
        try:
            async with self._engine.connect() as conn:
                # Registry and table are read in one transaction so a concurrent
                # replace is seen entirely or not at all.
                info = await self._load(conn, resource_id)
                plan = planner(info)
                table = self._build_table(info.table_name, info.columns, info.physical())
                fields = list(dict.fromkeys(plan.projection)) if plan.projection else info.names()

                selected = [self._field_expr(table, info, f).label(f) for f in fields]
                if include_meta:
                    selected.append(table.c[CACHED_AT_COLUMN].label(CACHED_AT_COLUMN))
                    selected.append(table.c[EXPIRES_AT_COLUMN].label(EXPIRES_AT_COLUMN))

                # A table with no user columns still yields one (empty) row per record
                stmt = sa.select(*(selected or [sa.literal_column("1").label("_")])).select_from(table)
                if plan.predicate is not None:
                    stmt = stmt.where(sa.text(plan.predicate.sql).bindparams(**plan.predicate.params))
                for field, direction in plan.order:
                    expr = self._field_expr(table, info, field)
                    if direction == "asc":
                        stmt = stmt.order_by(expr.asc())
                    elif direction == "desc":
                        stmt = stmt.order_by(expr.desc())
                    else:
                        raise InvalidQuery(f"Sort direction must be 'asc' or 'desc', got '{direction}'")
                stmt = stmt.order_by(sa.literal_column(f'"{info.table_name}".rowid'))
                if plan.limit is not None:
                    stmt = stmt.limit(plan.limit)
                if plan.offset:
                    stmt = stmt.offset(plan.offset)

                result = await conn.execute(stmt)
                rows = [dict(r) if selected else {} for r in result.mappings()]
                total = await self._count(conn, table, plan.predicate) if with_total else len(rows)
        except SQLAlchemyError as e:
            raise StorageError(resource_id, str(e)[:200]) from e

        logger.debug(
            "Table QUERY | resource=%s | rows=%d | total=%d | %.1fms",
            resource_id, len(rows), total, (time.monotonic() - start) * 1000,
        )
        return rows, total

    @staticmethod
    async def _count(conn: AsyncConnection, table: sa.Table, predicate: TranslatedFilter | None) -> int:
        stmt = sa.select(sa.func.count()).select_from(table)
        if predicate is not None:
            stmt = stmt.where(sa.text(predicate.sql).bindparams(**predicate.params))
        return (await conn.execute(stmt)).scalar_one()

    async def get_schema(self, resource_id: str) -> TableSchema:
        """Current schema of the resource's table. Raises ResourceNotFound."""
        async with self._engine.connect() as conn:
            return await self._load(conn, resource_id)

    async def describe(self, resource_id: str) -> TableSchema | None:
        async with self._engine.connect() as conn:
            row = await self._registry_row(conn, resource_id)
        return _schema_from_row(row) if row else None

    async def exists(self, resource_id: str) -> bool:
        return await self.describe(resource_id) is not None

    async def list_resources(self) -> list[TableSchema]:
        async with self._engine.connect() as conn:
            result = await conn.execute(sa.select(_REGISTRY).order_by(_REGISTRY.c.resource_id))
            return [_schema_from_row(row) for row in result.mappings()]

    # ═══════════════ INTERNALS ═══════════════

    async def _registry_row(self, conn: AsyncConnection, resource_id: str):
        result = await conn.execute(sa.select(_REGISTRY).where(_REGISTRY.c.resource_id == resource_id))
        return result.mappings().first()

    async def _load(self, conn: AsyncConnection, resource_id: str) -> TableSchema:
        row = await self._registry_row(conn, resource_id)
        if row is None:
            raise ResourceNotFound(resource_id)
        return _schema_from_row(row)

    @staticmethod
    def _build_table(name: str, schema: Sequence[Column], physical: Mapping[str, str]) -> sa.Table:
        columns = [
            sa.Column(physical[c.name], _sql_type(c.type), nullable=True) for c in schema
        ]
        columns.append(sa.Column(CACHED_AT_COLUMN, sa.Float, nullable=False))
        columns.append(sa.Column(EXPIRES_AT_COLUMN, sa.Float, nullable=True))
        return sa.Table(name, sa.MetaData(), *columns)

    @staticmethod
    def _field_expr(table: sa.Table, info: TableSchema, field: str):
        physical = info.physical()
        if field in physical:
            return table.c[physical[field]]
        if any(c.name == field for c in info.dropped):
            return sa.null()
        raise UnknownField(field, info.resource_id)

    @staticmethod
    def _row_payload(
        row: Mapping[str, Any],
        schema: Sequence[Column],
        physical: Mapping[str, str],
        cached_at: float,
        expires_at: float | None,
    ) -> dict[str, Any]:
        payload = {physical[c.name]: coerce_value(row.get(c.name), c.type) for c in schema}
        payload[CACHED_AT_COLUMN] = cached_at
        payload[EXPIRES_AT_COLUMN] = expires_at
        return payload


def _columns_to_json(columns: Sequence[Column], physical: Mapping[str, str] | None = None) -> list[dict]:
    out = []
    for c in columns:
        entry = {"name": c.name, "type": c.type.value, "nullable": c.nullable}
        if physical is not None:
            entry["column"] = physical[c.name]
        out.append(entry)
    return out


def _columns_from_json(raw: list[dict] | None) -> list[Column]:
    return [
        Column(name=c["name"], type=ColumnType(c["type"]), nullable=c.get("nullable", True))
        for c in raw or []
    ]


def _dropped_since(previous, schema: Sequence[Column]) -> list[Column]:
    """Fields known from earlier refreshes that the new schema lacks."""
    if previous is None:
        return []
    current = {c.name for c in schema}
    dropped: dict[str, Column] = {}
    for column in _columns_from_json(previous["dropped_columns"]) + _columns_from_json(previous["columns"]):
        if column.name not in current:
            dropped[column.name] = column
    return list(dropped.values())


def _schema_from_row(row) -> TableSchema:
    return TableSchema(
        resource_id=row["resource_id"],
        table_name=row["sql_table_name"],
        columns=_columns_from_json(row["columns"]),
        dropped=_columns_from_json(row["dropped_columns"]),
        row_count=row["row_count"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )
