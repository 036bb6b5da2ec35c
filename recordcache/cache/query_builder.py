"""Chainable, immutable query builder over one cached resource.

    rows = await (
        QueryBuilder(store, "orders")
        .select(["id", "status", "total"])
        .where(condition("status", "is_any_of", ["open", "pending"]))
        .order_by("total", "desc")
        .limit(20)
        .execute()
    )

Each chain method returns a new builder, so a partially built query can be
shared and extended without side effects.
"""

import logging
import time
from collections.abc import Callable, Iterable, Mapping
from typing import Any, NamedTuple

from recordcache.cache.errors import InvalidQuery, UnknownField
from recordcache.cache.expressions import FilterExpression, all_of, parse_filter
from recordcache.cache.filters import FilterTranslator
from recordcache.cache.table_store import ReadPlan, TableSchema, TableStore

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 100
MAX_LIMIT = 1000
SORT_DIRECTIONS = ("asc", "desc")


class SortSpec(NamedTuple):
    field: str
    direction: str = "asc"


class _State(NamedTuple):
    fields: tuple[str, ...] = ()
    filters: tuple[FilterExpression, ...] = ()
    sorts: tuple[SortSpec, ...] = ()
    limit: int | None = None
    offset: int = 0


class QueryBuilder:
    def __init__(
        self,
        store: TableStore,
        resource_id: str,
        *,
        translator: FilterTranslator | None = None,
        default_limit: int = DEFAULT_LIMIT,
        max_limit: int = MAX_LIMIT,
        strict: bool = False,
        clock: Callable[[], float] = time.time,
        _state: _State | None = None,
    ):
        self._store = store
        self._resource_id = resource_id
        self._clock = clock
        self._translator = translator or FilterTranslator(clock)
        self._default_limit = default_limit
        self._max_limit = max_limit
        self._strict = strict
        self._state = _state or _State()

    def _with(self, **changes: Any) -> "QueryBuilder":
        return QueryBuilder(
            self._store,
            self._resource_id,
            translator=self._translator,
            default_limit=self._default_limit,
            max_limit=self._max_limit,
            strict=self._strict,
            clock=self._clock,
            _state=self._state._replace(**changes),
        )

    # ═══════════════ CHAIN ═══════════════

    def select(self, fields: Iterable[str]) -> "QueryBuilder":
        """Project onto ``fields``. An empty selection means every column."""
        if isinstance(fields, str):
            fields = [fields]
        fields = tuple(fields)
        for f in fields:
            if not isinstance(f, str) or not f:
                raise InvalidQuery(f"Field names must be non-empty strings, got {f!r}")
        return self._with(fields=tuple(dict.fromkeys(fields)))

    def where(self, expr: FilterExpression | Mapping[str, Any] | None) -> "QueryBuilder":
        """Add a filter. Repeated calls are ANDed together."""
        parsed = parse_filter(expr)
        if parsed is None:
            return self
        return self._with(filters=self._state.filters + (parsed,))

    def order_by(self, field: str, direction: str = "asc") -> "QueryBuilder":
        direction = (direction or "asc").lower()
        if direction not in SORT_DIRECTIONS:
            raise InvalidQuery(f"Sort direction must be 'asc' or 'desc', got '{direction}'")
        return self._with(sorts=self._state.sorts + (SortSpec(field, direction),))

    def limit(self, n: int) -> "QueryBuilder":
        if isinstance(n, bool) or not isinstance(n, int) or n < 0:
            raise InvalidQuery(f"limit must be a non-negative integer, got {n!r}")
        return self._with(limit=n)

    def offset(self, n: int) -> "QueryBuilder":
        if isinstance(n, bool) or not isinstance(n, int) or n < 0:
            raise InvalidQuery(f"offset must be a non-negative integer, got {n!r}")
        return self._with(offset=n)

    # ═══════════════ TERMINAL ═══════════════

    def build(self, schema: TableSchema, now: float | None = None) -> ReadPlan:
        """Resolve the chain against ``schema`` without touching storage."""
        state = self._state
        known = set(schema.names()) | {c.name for c in schema.dropped}
        for field in list(state.fields) + [s.field for s in state.sorts]:
            if field not in known:
                raise UnknownField(field, self._resource_id)

        predicate = None
        if state.filters:
            expr = state.filters[0] if len(state.filters) == 1 else all_of(*state.filters)
            predicate = self._translator.translate(
                expr,
                schema.columns,
                schema.dropped,
                table_name=schema.table_name,
                resource_id=self._resource_id,
                now=now,
                strict=self._strict,
            )

        limit = self._default_limit if state.limit is None else min(state.limit, self._max_limit)
        return ReadPlan(
            projection=list(state.fields) or schema.names(),
            predicate=predicate,
            order=list(state.sorts),
            limit=limit,
            offset=state.offset,
        )

    async def execute(self, include_meta: bool = False) -> list[dict[str, Any]]:
        rows, _ = await self._store.read_planned(
            self._resource_id, self.build, include_meta=include_meta, with_total=False,
        )
        return rows

    async def execute_page(self, include_meta: bool = False) -> tuple[list[dict[str, Any]], int]:
        """Rows of the current page plus the total match count, read from one snapshot.

        The chain is resolved against the schema seen by that same snapshot.
        """
        return await self._store.read_planned(
            self._resource_id, self.build, include_meta=include_meta, with_total=True,
        )

    async def count(self) -> int:
        """Rows matching the filter, ignoring projection and pagination."""
        return await self._store.count_planned(
            self._resource_id, lambda schema: self.build(schema).predicate,
        )
