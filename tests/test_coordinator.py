"""Tests for CacheCoordinator: cache hits, expiry, bypass, stale serving, invalidation."""

import asyncio

import pytest

from recordcache.cache.coordinator import CacheCoordinator, ResourceState
from recordcache.cache.errors import (
    ExternalFetchFailed,
    InvalidFilter,
    InvalidQuery,
    SchemaDrift,
    UnknownField,
)

AND_FILTER = {
    "operator": "and",
    "fields": [
        {"field": "status", "comparison": "is_any_of", "value": ["open", "pending"]},
        {"field": "priority", "comparison": "is_greater_than", "value": 3},
    ],
}


class TestGet:
    @pytest.mark.asyncio
    async def test_orders_scenario(self, coordinator, source, clock):
        await coordinator.set_policy("orders", mutation_level="high_mutation")

        # t=0: absent, fetched once
        first = await coordinator.get("orders", ["id", "status"], filter=AND_FILTER)
        assert first.source == "remote"
        assert [r["id"] for r in first.rows] == ["o1", "o5"]
        assert first.expires_at - first.cached_at == 3600
        assert source.fetch_calls["orders"] == 1

        # Still valid: served from the cache
        clock.advance(3599)
        second = await coordinator.get("orders", ["id"], filter=AND_FILTER)
        assert second.source == "cache"
        assert source.fetch_calls["orders"] == 1

        # t=3601: expired, refetched
        clock.advance(2)
        third = await coordinator.get("orders", ["id"], filter=AND_FILTER)
        assert third.source == "remote"
        assert source.fetch_calls["orders"] == 2

    @pytest.mark.asyncio
    async def test_total_count_uses_same_filter(self, coordinator):
        result = await coordinator.get("orders", ["id"], filter=AND_FILTER, limit=1)
        assert [r["id"] for r in result.rows] == ["o1"]
        assert result.total_count == 2

    @pytest.mark.asyncio
    async def test_sort_and_offset(self, coordinator):
        result = await coordinator.get(
            "orders", ["id"], sort=[{"field": "total", "direction": "desc"}], limit=2, offset=1,
        )
        assert [r["id"] for r in result.rows] == ["o3", "o5"]

    @pytest.mark.asyncio
    async def test_bypass_refetches(self, coordinator, source):
        await coordinator.get("orders", ["id"])
        await coordinator.get("orders", ["id"], bypass=True)
        assert source.fetch_calls["orders"] == 2

    @pytest.mark.asyncio
    async def test_remote_changes_invisible_until_expiry(self, coordinator, source, clock):
        await coordinator.get("orders", ["id"])
        source.tables["orders"] = [{"id": "new"}]
        assert len((await coordinator.get("orders", ["id"])).rows) == 5

        clock.advance(14400)
        assert [r["id"] for r in (await coordinator.get("orders", ["id"])).rows] == ["new"]

    @pytest.mark.asyncio
    async def test_empty_fields_rejected(self, coordinator, source):
        with pytest.raises(InvalidQuery):
            await coordinator.get("orders", [])
        assert source.fetch_calls == {}

    @pytest.mark.asyncio
    async def test_malformed_filter_fails_before_fetch(self, coordinator, source):
        with pytest.raises(InvalidFilter):
            await coordinator.get("orders", ["id"], filter={"operator": "and", "fields": []})
        assert source.fetch_calls == {}

    @pytest.mark.asyncio
    async def test_unknown_field_leaves_cache_intact(self, coordinator):
        await coordinator.get("orders", ["id"])
        with pytest.raises(UnknownField):
            await coordinator.get("orders", ["id"], filter={"field": "nope", "comparison": "is", "value": 1})
        assert len((await coordinator.get("orders", ["id"])).rows) == 5

    @pytest.mark.asyncio
    async def test_concurrent_misses_fetch_once(self, coordinator, source):
        source.delay = 0.05
        results = await asyncio.gather(*[coordinator.get("orders", ["id"]) for _ in range(5)])
        assert all(len(r.rows) == 5 for r in results)
        assert source.fetch_calls["orders"] == 1


class TestFailures:
    @pytest.mark.asyncio
    async def test_fetch_failure_without_cache_raises(self, coordinator, source):
        source.fail_with = RuntimeError("boom")
        with pytest.raises(ExternalFetchFailed):
            await coordinator.get("orders", ["id"])
        assert (await coordinator.status("orders"))[0].state is ResourceState.ABSENT

    @pytest.mark.asyncio
    async def test_expired_fetch_failure_raises_by_default(self, coordinator, source, clock):
        await coordinator.get("orders", ["id"])
        clock.advance(20000)
        source.fail_with = ExternalFetchFailed("orders", "HTTP 503")
        with pytest.raises(ExternalFetchFailed):
            await coordinator.get("orders", ["id"])

    @pytest.mark.asyncio
    async def test_stale_served_when_allowed(self, coordinator, source, clock):
        await coordinator.get("orders", ["id"])
        clock.advance(20000)
        source.fail_with = ExternalFetchFailed("orders", "HTTP 503")

        result = await coordinator.get("orders", ["id"], allow_stale=True)
        assert result.stale is True
        assert result.source == "cache"
        assert len(result.rows) == 5

    @pytest.mark.asyncio
    async def test_stale_enabled_by_setting(self, source, store, ttl, clock):
        coordinator = CacheCoordinator(source, store, ttl, clock=clock, serve_stale_on_error=True)
        await coordinator.get("orders", ["id"])
        clock.advance(20000)
        source.fail_with = RuntimeError("down")

        assert (await coordinator.get("orders", ["id"])).stale is True
        with pytest.raises(ExternalFetchFailed):
            await coordinator.get("orders", ["id"], allow_stale=False)

    @pytest.mark.asyncio
    async def test_bypass_failure_never_serves_stale(self, source, store, ttl, clock):
        coordinator = CacheCoordinator(source, store, ttl, clock=clock, serve_stale_on_error=True)
        await coordinator.get("orders", ["id"])
        source.fail_with = ExternalFetchFailed("orders", "HTTP 503")

        with pytest.raises(ExternalFetchFailed):
            await coordinator.get("orders", ["id"], bypass=True)
        with pytest.raises(ExternalFetchFailed):
            await coordinator.get("orders", ["id"], bypass=True, allow_stale=True)
        # The cached table is untouched and still answers plain reads
        assert len((await coordinator.get("orders", ["id"])).rows) == 5

    @pytest.mark.asyncio
    async def test_fetch_timeout(self, source, store, ttl, clock):
        coordinator = CacheCoordinator(source, store, ttl, clock=clock, fetch_timeout=0.01)
        source.delay = 1.0
        with pytest.raises(ExternalFetchFailed) as exc:
            await coordinator.get("orders", ["id"])
        assert "timed out" in exc.value.reason

    @pytest.mark.asyncio
    async def test_missing_table_rebuilt(self, coordinator, source, store):
        await coordinator.get("orders", ["id"])
        await store.drop("orders")
        result = await coordinator.get("orders", ["id"])
        assert len(result.rows) == 5
        assert source.fetch_calls["orders"] == 2


class TestSchemaDrift:
    @pytest.mark.asyncio
    async def test_dropped_field_matches_as_null(self, coordinator, source):
        await coordinator.get("orders", ["id"])
        source.tables["orders"] = [{"id": "x", "status": "open"}]
        await coordinator.refresh("orders")

        missing = {"field": "notes", "comparison": "is_empty"}
        result = await coordinator.get("orders", ["id", "notes"], filter=missing)
        assert result.rows == [{"id": "x", "notes": None}]

        with pytest.raises(SchemaDrift):
            await coordinator.get("orders", ["id"], filter=missing, strict=True)


class TestManagement:
    @pytest.mark.asyncio
    async def test_invalidate_one(self, coordinator, source):
        await coordinator.get("orders", ["id"])
        assert await coordinator.invalidate("orders") == 1
        assert (await coordinator.status("orders"))[0].state is ResourceState.ABSENT
        await coordinator.get("orders", ["id"])
        assert source.fetch_calls["orders"] == 2

    @pytest.mark.asyncio
    async def test_invalidate_all(self, coordinator, source):
        source.tables["people"] = [{"name": "Ann"}]
        await coordinator.get("orders", ["id"])
        await coordinator.get("people", ["name"])
        assert await coordinator.invalidate() == 2
        assert await coordinator.status() == []

    @pytest.mark.asyncio
    async def test_status_states(self, coordinator, clock):
        assert (await coordinator.status("orders"))[0].state is ResourceState.ABSENT
        await coordinator.get("orders", ["id"])

        status = (await coordinator.status("orders"))[0]
        assert status.state is ResourceState.VALID
        assert status.row_count == 5
        assert "tags" in status.columns

        clock.advance(14400)
        assert (await coordinator.status("orders"))[0].state is ResourceState.EXPIRED

    @pytest.mark.asyncio
    async def test_status_while_populating(self, coordinator, source):
        source.delay = 0.1
        task = asyncio.create_task(coordinator.get("orders", ["id"]))
        await asyncio.sleep(0.02)
        assert (await coordinator.status("orders"))[0].state is ResourceState.POPULATING
        await task

    @pytest.mark.asyncio
    async def test_set_policy_validation(self, coordinator):
        with pytest.raises(ValueError):
            await coordinator.set_policy("orders", ttl_seconds=0)
        policy = await coordinator.set_policy("orders", mutation_level="low_mutation")
        assert policy.ttl_seconds == 7 * 86400
