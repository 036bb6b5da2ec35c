"""Pydantic models for the HTTP API.

Time fields are ISO-8601 UTC strings on the wire; the cache core works in
epoch seconds.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field


# ═══════════════ REQUESTS ═══════════════

class SortField(BaseModel):
    field: str
    direction: Literal["asc", "desc"] = "asc"


class QueryRequest(BaseModel):
    """Body of ``POST /api/records/{resource_id}/query``.

    ``filter`` uses the SmartSuite filter shape::

        {"operator": "and", "fields": [{"field": "status", "comparison": "is", "value": "open"}]}
    """

    fields: list[str] = Field(min_length=1)
    filter: dict[str, Any] | None = None
    sort: list[SortField] = Field(default_factory=list)
    limit: int | None = Field(default=None, ge=0)
    offset: int = Field(default=0, ge=0)
    bypass_cache: bool = False
    strict: bool = False
    allow_stale: bool | None = None


class InvalidateRequest(BaseModel):
    resource_id: str | None = None


class PolicyRequest(BaseModel):
    ttl_seconds: int | None = Field(default=None, gt=0)
    mutation_level: str | None = None
    notes: str | None = None


# ═══════════════ RESPONSES ═══════════════

class QueryResponse(BaseModel):
    items: list[dict[str, Any]]
    total_count: int
    stale: bool = False
    source: Literal["cache", "remote"] = "cache"
    cached_at: str | None = None
    expires_at: str | None = None


class InvalidateResponse(BaseModel):
    resource_id: str | None = None
    invalidated: int = 0


class ResourceStatusItem(BaseModel):
    resource_id: str
    state: str
    table_name: str | None = None
    row_count: int = 0
    columns: list[str] = Field(default_factory=list)
    dropped_fields: list[str] = Field(default_factory=list)
    ttl_seconds: int
    cached_at: str | None = None
    expires_at: str | None = None


class StatusResponse(BaseModel):
    resources: list[ResourceStatusItem] = Field(default_factory=list)


class PolicyResponse(BaseModel):
    resource_id: str
    ttl_seconds: int
    mutation_level: str | None = None
    notes: str | None = None
