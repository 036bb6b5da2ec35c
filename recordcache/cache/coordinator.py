"""CacheCoordinator: validity check -> refetch -> query.

Per-resource lifecycle::

    absent -> populating -> valid -> expired -> populating -> valid ...

A read of a valid resource never touches the remote source. A read of an
absent or expired resource fetches every record, infers a schema, swaps the
table atomically and stamps a new TTL before querying. Remote mutations do
not invalidate anything here; the TTL (or an explicit ``invalidate``) is the
only freshness mechanism.
"""

import asyncio
import logging
import time
from collections import defaultdict
from collections.abc import Callable, Mapping, Sequence
from enum import Enum
from typing import Any, Literal, Protocol

from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError

from recordcache.cache.errors import (
    ExternalFetchFailed,
    InvalidQuery,
    ResourceNotFound,
    StorageError,
)
from recordcache.cache.expressions import FilterExpression, parse_filter
from recordcache.cache.filters import FilterTranslator
from recordcache.cache.query_builder import DEFAULT_LIMIT, MAX_LIMIT, QueryBuilder, SortSpec
from recordcache.cache.schema import SchemaHint, SchemaInferencer
from recordcache.cache.table_store import TableStore
from recordcache.cache.ttl import PolicyInfo, TTLMetadata

logger = logging.getLogger(__name__)


class DataSource(Protocol):
    """Remote source of records, e.g. ``SmartSuiteClient``."""

    async def fetch_all_records(self, resource_id: str) -> list[dict[str, Any]]: ...

    async def fetch_schema_hint(self, resource_id: str) -> SchemaHint | None: ...


class ResourceState(str, Enum):
    ABSENT = "absent"
    POPULATING = "populating"
    VALID = "valid"
    EXPIRED = "expired"


class CacheResult(BaseModel):
    rows: list[dict[str, Any]]
    total_count: int
    stale: bool = False
    source: Literal["cache", "remote"] = "cache"
    cached_at: float | None = None
    expires_at: float | None = None


class ResourceStatus(BaseModel):
    resource_id: str
    state: ResourceState
    table_name: str | None = None
    row_count: int = 0
    columns: list[str] = []
    dropped_fields: list[str] = []
    ttl_seconds: int
    cached_at: float | None = None
    expires_at: float | None = None


SortInput = Sequence[SortSpec | tuple[str, str] | Mapping[str, str] | str]


class CacheCoordinator:
    """Serves filtered reads from the cache, refreshing from the source when needed."""

    def __init__(
        self,
        source: DataSource,
        store: TableStore,
        ttl: TTLMetadata,
        *,
        clock: Callable[[], float] = time.time,
        fetch_timeout: float = 60.0,
        default_limit: int = DEFAULT_LIMIT,
        max_limit: int = MAX_LIMIT,
        serve_stale_on_error: bool = False,
    ):
        self._source = source
        self._store = store
        self._ttl = ttl
        self._clock = clock
        self._fetch_timeout = fetch_timeout
        self._default_limit = default_limit
        self._max_limit = max_limit
        self._serve_stale_on_error = serve_stale_on_error
        self._translator = FilterTranslator(clock)
        self._inferencer = SchemaInferencer()
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._populating: set[str] = set()

    @property
    def store(self) -> TableStore:
        return self._store

    @property
    def ttl(self) -> TTLMetadata:
        return self._ttl

    def query(self, resource_id: str, strict: bool = False) -> QueryBuilder:
        """Query builder over the cached table, without any freshness check."""
        return QueryBuilder(
            self._store,
            resource_id,
            translator=self._translator,
            default_limit=self._default_limit,
            max_limit=self._max_limit,
            strict=strict,
            clock=self._clock,
        )

    # ═══════════════ READ ═══════════════

    async def get(
        self,
        resource_id: str,
        fields: Sequence[str],
        filter: FilterExpression | Mapping[str, Any] | None = None,
        sort: SortInput | None = None,
        limit: int | None = None,
        offset: int = 0,
        *,
        bypass: bool = False,
        timeout: float | None = None,
        strict: bool = False,
        allow_stale: bool | None = None,
    ) -> CacheResult:
        """Filtered, sorted, paginated read of one resource.

        ``fields`` must name at least one field. ``bypass`` forces a refetch
        even when the cache is valid. With ``strict`` a filter on a field the
        latest refresh dropped raises ``SchemaDrift`` instead of matching
        against NULL. ``allow_stale`` (default: the coordinator's
        ``serve_stale_on_error``) answers from the expired table when the
        refetch fails; a ``bypass`` read never falls back to stale rows.
        """
        if not fields:
            raise InvalidQuery("fields must name at least one field")

        # Malformed queries fail before any fetch and never change cache state
        builder = self.query(resource_id, strict=strict).select(fields).where(parse_filter(filter))
        for spec in _normalize_sort(sort):
            builder = builder.order_by(spec.field, spec.direction)
        if limit is not None:
            builder = builder.limit(limit)
        builder = builder.offset(offset)

        if allow_stale is None:
            allow_stale = self._serve_stale_on_error

        fetched, stale = False, False
        if bypass or not await self._ttl.is_valid(resource_id, self._clock()):
            fetched, stale = await self._ensure_fresh(
                resource_id, timeout, force=bypass, allow_stale=allow_stale and not bypass,
            )
        else:
            logger.info("Cache HIT | resource=%s", resource_id)

        try:
            rows, total = await builder.execute_page()
        except ResourceNotFound:
            # Metadata outlived its table; rebuild once
            logger.warning("Cache table missing | resource=%s | refetching", resource_id)
            fetched, stale = await self._ensure_fresh(resource_id, timeout, force=True, allow_stale=False)
            rows, total = await builder.execute_page()

        entry = await self._ttl.get_entry(resource_id)
        return CacheResult(
            rows=rows,
            total_count=total,
            stale=stale,
            source="remote" if fetched else "cache",
            cached_at=entry.cached_at if entry else None,
            expires_at=entry.expires_at if entry else None,
        )

    # ═══════════════ REFRESH ═══════════════

    async def refresh(self, resource_id: str, timeout: float | None = None) -> int:
        """Fetch and re-cache the resource unconditionally. Returns the row count."""
        async with self._locks[resource_id]:
            return await self._refresh_locked(resource_id, timeout)

    async def _ensure_fresh(
        self, resource_id: str, timeout: float | None, force: bool, allow_stale: bool,
    ) -> tuple[bool, bool]:
        """Refresh if still needed. Returns ``(fetched, stale)``."""
        async with self._locks[resource_id]:
            # Another caller may have refreshed while this one waited
            if not force and await self._ttl.is_valid(resource_id, self._clock()):
                logger.info("Cache HIT (after wait) | resource=%s", resource_id)
                return False, False
            logger.info("Cache MISS | resource=%s | force=%s", resource_id, force)
            try:
                await self._refresh_locked(resource_id, timeout)
                return True, False
            except (ExternalFetchFailed, StorageError) as e:
                if allow_stale and await self._store.exists(resource_id):
                    logger.warning("Serving STALE | resource=%s | %s", resource_id, e)
                    return False, True
                raise

    async def _refresh_locked(self, resource_id: str, timeout: float | None) -> int:
        self._populating.add(resource_id)
        start = time.monotonic()
        try:
            records, hint = await self._fetch(resource_id, timeout)
            schema = self._inferencer.infer(records, hint)
            previous = await self._store.describe(resource_id)

            try:
                ttl_seconds = await self._ttl.policy_for(resource_id)
                now = self._clock()
                count = await self._store.replace(
                    resource_id, schema, records, cached_at=now, expires_at=now + ttl_seconds,
                )
                await self._ttl.record_refresh(resource_id, ttl_seconds, now)
            except SQLAlchemyError as e:
                raise StorageError(resource_id, str(e)[:200]) from e

            if previous is not None:
                removed = sorted(set(previous.names()) - {c.name for c in schema})
                added = sorted({c.name for c in schema} - set(previous.names()))
                if removed or added:
                    logger.warning(
                        "Schema changed | resource=%s | removed=%s | added=%s",
                        resource_id, ",".join(removed) or "-", ",".join(added) or "-",
                    )
            logger.info(
                "Cache POPULATED | resource=%s | rows=%d | columns=%d | %.0fms",
                resource_id, count, len(schema), (time.monotonic() - start) * 1000,
            )
            return count
        finally:
            self._populating.discard(resource_id)

    async def _fetch(
        self, resource_id: str, timeout: float | None,
    ) -> tuple[list[Mapping[str, Any]], SchemaHint | None]:
        timeout = self._fetch_timeout if timeout is None else timeout

        async def fetch_both():
            records = await self._source.fetch_all_records(resource_id)
            hint = await self._source.fetch_schema_hint(resource_id)
            return records, hint

        try:
            records, hint = await asyncio.wait_for(fetch_both(), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise ExternalFetchFailed(resource_id, f"timed out after {timeout}s") from e
        except ExternalFetchFailed:
            raise
        except Exception as e:
            raise ExternalFetchFailed(resource_id, f"{type(e).__name__}: {str(e)[:200]}") from e

        if not isinstance(records, list) or not all(isinstance(r, Mapping) for r in records):
            raise ExternalFetchFailed(resource_id, "source returned something other than a list of records")
        return records, hint

    # ═══════════════ MANAGEMENT ═══════════════

    async def invalidate(self, resource_id: str | None = None) -> int:
        """Drop cached data for one resource, or for all when ``resource_id`` is None."""
        if resource_id is None:
            dropped = await self._store.drop_all()
            await self._ttl.invalidate_all()
            return dropped
        async with self._locks[resource_id]:
            dropped = await self._store.drop(resource_id)
            await self._ttl.invalidate(resource_id)
        return int(dropped)

    async def set_policy(
        self,
        resource_id: str,
        ttl_seconds: int | None = None,
        mutation_level: str | None = None,
        notes: str | None = None,
    ) -> PolicyInfo:
        return await self._ttl.set_policy(resource_id, ttl_seconds, mutation_level, notes)

    async def status(self, resource_id: str | None = None) -> list[ResourceStatus]:
        now = self._clock()
        tables = {t.resource_id: t for t in await self._store.list_resources()}
        entries = {e.resource_id: e for e in await self._ttl.entries()}
        if resource_id is not None:
            ids = [resource_id]
        else:
            ids = sorted(set(tables) | set(entries) | self._populating)

        out = []
        for rid in ids:
            table, entry = tables.get(rid), entries.get(rid)
            if rid in self._populating:
                state = ResourceState.POPULATING
            elif table is None:
                state = ResourceState.ABSENT
            elif entry is not None and entry.is_valid(now):
                state = ResourceState.VALID
            else:
                state = ResourceState.EXPIRED
            out.append(ResourceStatus(
                resource_id=rid,
                state=state,
                table_name=table.table_name if table else None,
                row_count=table.row_count if table else 0,
                columns=table.names() if table else [],
                dropped_fields=[c.name for c in table.dropped] if table else [],
                ttl_seconds=entry.ttl_seconds if entry else await self._ttl.policy_for(rid),
                cached_at=entry.cached_at if entry else None,
                expires_at=entry.expires_at if entry else None,
            ))
        return out


def _normalize_sort(sort: SortInput | None) -> list[SortSpec]:
    """Accept ``SortSpec``, ``(field, direction)``, ``{"field", "direction"}`` or a bare field name."""
    specs = []
    for item in sort or ():
        if isinstance(item, SortSpec):
            specs.append(item)
        elif isinstance(item, str):
            specs.append(SortSpec(item))
        elif isinstance(item, Mapping):
            if "field" not in item:
                raise InvalidQuery(f"Sort entry is missing 'field': {dict(item)!r}")
            specs.append(SortSpec(item["field"], item.get("direction", "asc")))
        elif isinstance(item, (tuple, list)) and len(item) == 2:
            specs.append(SortSpec(item[0], item[1]))
        else:
            raise InvalidQuery(f"Invalid sort entry: {item!r}")
    return specs
