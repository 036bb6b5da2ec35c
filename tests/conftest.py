"""Shared test fixtures and configuration."""

import asyncio
import os

import pytest

# No real SmartSuite credentials during tests
os.environ.setdefault("SMARTSUITE_API_KEY", "")
os.environ.setdefault("SMARTSUITE_ACCOUNT_ID", "")

from recordcache.cache.coordinator import CacheCoordinator  # noqa: E402
from recordcache.cache.errors import ExternalFetchFailed  # noqa: E402
from recordcache.cache.schema import SchemaHint  # noqa: E402
from recordcache.cache.table_store import TableStore  # noqa: E402
from recordcache.cache.ttl import TTLMetadata  # noqa: E402
from recordcache.database import close_db, create_engine, create_session_factory, init_db  # noqa: E402

# 2025-01-15T12:00:00Z, a Wednesday
BASE_TIME = 1736942400.0


class FakeClock:
    """Manually advanced epoch-seconds clock."""

    def __init__(self, now: float = BASE_TIME):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSource:
    """In-memory data source that counts fetches and can be told to fail."""

    def __init__(self, tables: dict | None = None, hints: dict | None = None):
        self.tables = tables or {}
        self.hints = hints or {}
        self.fetch_calls: dict[str, int] = {}
        self.fail_with: Exception | None = None
        self.delay: float = 0.0

    async def fetch_all_records(self, resource_id):
        self.fetch_calls[resource_id] = self.fetch_calls.get(resource_id, 0) + 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_with is not None:
            raise self.fail_with
        if resource_id not in self.tables:
            raise ExternalFetchFailed(resource_id, "HTTP 404")
        return [dict(r) for r in self.tables[resource_id]]

    async def fetch_schema_hint(self, resource_id) -> SchemaHint | None:
        return self.hints.get(resource_id)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
async def engine(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'cache.db'}")
    await init_db(engine)
    yield engine
    await close_db(engine)


@pytest.fixture
def store(engine):
    return TableStore(engine)


@pytest.fixture
def ttl(engine, clock):
    return TTLMetadata(create_session_factory(engine), default_ttl=14400, clock=clock)


@pytest.fixture
def orders():
    """Sample SmartSuite-like records with mixed value shapes."""
    return [
        {"id": "o1", "status": "open", "priority": 5, "total": 120.5, "paid": False,
         "tags": ["rush", "vip"], "due": "2025-01-10", "notes": "Call before delivery"},
        {"id": "o2", "status": "pending", "priority": 2, "total": 40.0, "paid": True,
         "tags": ["vip"], "due": "2025-01-15T09:30:00Z", "notes": ""},
        {"id": "o3", "status": "closed", "priority": 4, "total": 99.99, "paid": True,
         "tags": [], "due": "2025-01-20", "notes": None},
        {"id": "o4", "status": "open", "priority": 1, "total": 10, "paid": False,
         "tags": ["rush"], "notes": "100% fragile_items"},
        {"id": "o5", "status": "pending", "priority": 4, "total": 75.25, "paid": False,
         "tags": ["vip", "rush", "gift"], "due": "2025-02-01", "notes": "gift wrap"},
    ]


@pytest.fixture
def source(orders):
    return FakeSource(tables={"orders": orders})


@pytest.fixture
def coordinator(source, store, ttl, clock):
    return CacheCoordinator(source, store, ttl, clock=clock, fetch_timeout=5.0)
