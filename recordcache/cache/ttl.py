"""TTLMetadata: per-resource freshness windows and TTL policy overrides.

TTL is table-granular: one ``cached_at`` / ``expires_at`` pair per resource.
An entry is valid while ``now < expires_at``; at exactly ``expires_at`` it is
already expired. Nothing is evicted eagerly. Validity is checked on read.

TTL presets by how often the remote data changes:
  - high_mutation: 1h
  - medium_mutation: 12h
  - low_mutation: 7 days
  - very_low_mutation: 30 days
"""

import logging
import time
from collections.abc import Callable
from enum import Enum

from pydantic import BaseModel
from sqlalchemy import delete, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from recordcache.models import CacheMetadata, TTLPolicy

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 4 * 3600

TTL_PRESETS = {
    "high_mutation": 3600,
    "medium_mutation": 12 * 3600,
    "low_mutation": 7 * 86400,
    "very_low_mutation": 30 * 86400,
}


class EntryStatus(str, Enum):
    EMPTY = "empty"
    VALID = "valid"
    EXPIRED = "expired"


class CacheEntry(BaseModel):
    resource_id: str
    ttl_seconds: int
    cached_at: float
    expires_at: float

    def is_valid(self, now: float) -> bool:
        return now < self.expires_at


class PolicyInfo(BaseModel):
    resource_id: str
    ttl_seconds: int
    mutation_level: str | None = None
    notes: str | None = None
    is_default: bool = False


class TTLMetadata:
    """Freshness bookkeeping backed by the ``cache_metadata`` and ``cache_ttl_policy`` tables."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        default_ttl: int = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        if default_ttl <= 0:
            raise ValueError("default_ttl must be positive")
        self._session_factory = session_factory
        self._default_ttl = default_ttl
        self._clock = clock

    @property
    def default_ttl(self) -> int:
        return self._default_ttl

    # ═══════════════ FRESHNESS ═══════════════

    async def get_entry(self, resource_id: str) -> CacheEntry | None:
        async with self._session_factory() as session:
            row = await session.get(CacheMetadata, resource_id)
            if row is None:
                return None
            return CacheEntry(
                resource_id=row.resource_id,
                ttl_seconds=row.ttl_seconds,
                cached_at=row.cached_at,
                expires_at=row.expires_at,
            )

    async def entries(self) -> list[CacheEntry]:
        async with self._session_factory() as session:
            result = await session.execute(select(CacheMetadata).order_by(CacheMetadata.resource_id))
            return [
                CacheEntry(
                    resource_id=row.resource_id,
                    ttl_seconds=row.ttl_seconds,
                    cached_at=row.cached_at,
                    expires_at=row.expires_at,
                )
                for row in result.scalars()
            ]

    async def is_valid(self, resource_id: str, now: float | None = None) -> bool:
        entry = await self.get_entry(resource_id)
        if entry is None:
            return False
        return entry.is_valid(self._clock() if now is None else now)

    async def status(self, resource_id: str, now: float | None = None) -> EntryStatus:
        entry = await self.get_entry(resource_id)
        if entry is None:
            return EntryStatus.EMPTY
        if entry.is_valid(self._clock() if now is None else now):
            return EntryStatus.VALID
        return EntryStatus.EXPIRED

    async def record_refresh(
        self,
        resource_id: str,
        ttl_seconds: int | None = None,
        now: float | None = None,
    ) -> CacheEntry:
        """Mark the resource as refreshed at ``now`` for ``ttl_seconds`` (policy TTL if omitted)."""
        if ttl_seconds is None:
            ttl_seconds = await self.policy_for(resource_id)
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        now = self._clock() if now is None else now
        entry = CacheEntry(
            resource_id=resource_id,
            ttl_seconds=ttl_seconds,
            cached_at=now,
            expires_at=now + ttl_seconds,
        )
        values = entry.model_dump()
        stmt = sqlite_insert(CacheMetadata).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["resource_id"],
            set_={k: v for k, v in values.items() if k != "resource_id"},
        )
        async with self._session_factory() as session:
            await session.execute(stmt)
            await session.commit()
        logger.info(
            "Cache REFRESHED | resource=%s | ttl=%ds | expires_at=%.0f",
            resource_id, ttl_seconds, entry.expires_at,
        )
        return entry

    async def invalidate(self, resource_id: str) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                delete(CacheMetadata).where(CacheMetadata.resource_id == resource_id)
            )
            await session.commit()
        removed = result.rowcount > 0
        if removed:
            logger.info("Cache INVALIDATED | resource=%s", resource_id)
        return removed

    async def invalidate_all(self) -> int:
        async with self._session_factory() as session:
            result = await session.execute(delete(CacheMetadata))
            await session.commit()
        logger.info("Cache INVALIDATED ALL | entries=%d", result.rowcount)
        return result.rowcount

    # ═══════════════ POLICY ═══════════════

    async def policy_for(self, resource_id: str) -> int:
        """Effective TTL in seconds: the resource's override, or the default."""
        async with self._session_factory() as session:
            policy = await session.get(TTLPolicy, resource_id)
        return policy.ttl_seconds if policy else self._default_ttl

    async def get_policy(self, resource_id: str) -> PolicyInfo:
        async with self._session_factory() as session:
            policy = await session.get(TTLPolicy, resource_id)
        if policy is None:
            return PolicyInfo(resource_id=resource_id, ttl_seconds=self._default_ttl, is_default=True)
        return PolicyInfo(
            resource_id=resource_id,
            ttl_seconds=policy.ttl_seconds,
            mutation_level=policy.mutation_level,
            notes=policy.notes,
        )

    async def set_policy(
        self,
        resource_id: str,
        ttl_seconds: int | None = None,
        mutation_level: str | None = None,
        notes: str | None = None,
    ) -> PolicyInfo:
        """Override the TTL for one resource.

        Pass ``ttl_seconds`` explicitly or a ``mutation_level`` preset. When
        both are given the explicit seconds win and the level is kept as a
        label. Existing cache entries keep their ``expires_at``; the new TTL
        applies from the next refresh.
        """
        if mutation_level is not None and mutation_level not in TTL_PRESETS:
            raise ValueError(
                f"Unknown mutation level '{mutation_level}', expected one of {', '.join(TTL_PRESETS)}"
            )
        if ttl_seconds is None:
            if mutation_level is None:
                raise ValueError("set_policy needs ttl_seconds or mutation_level")
            ttl_seconds = TTL_PRESETS[mutation_level]
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")

        values = {
            "resource_id": resource_id,
            "ttl_seconds": ttl_seconds,
            "mutation_level": mutation_level,
            "notes": notes,
            "updated_at": self._clock(),
        }
        stmt = sqlite_insert(TTLPolicy).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["resource_id"],
            set_={k: v for k, v in values.items() if k != "resource_id"},
        )
        async with self._session_factory() as session:
            await session.execute(stmt)
            await session.commit()
        logger.info(
            "TTL policy SET | resource=%s | ttl=%ds | level=%s", resource_id, ttl_seconds, mutation_level
        )
        return PolicyInfo(**{k: v for k, v in values.items() if k != "updated_at"})

    async def clear_policy(self, resource_id: str) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(delete(TTLPolicy).where(TTLPolicy.resource_id == resource_id))
            await session.commit()
        return result.rowcount > 0
