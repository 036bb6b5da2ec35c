"""recordcache: FastAPI application entry point.

Serves filtered reads of SmartSuite tables from the local SQL cache, plus
cache management (invalidate, status, TTL policy).
"""

import logging
from contextlib import asynccontextmanager

from fastapi import APIRouter, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from recordcache.cache.coordinator import CacheCoordinator, DataSource
from recordcache.cache.dates import isoformat_epoch
from recordcache.cache.errors import (
    CacheError,
    ExternalFetchFailed,
    InvalidFilter,
    InvalidQuery,
    ResourceNotFound,
    SchemaDrift,
    StorageError,
    UnknownField,
    UnsupportedComparator,
)
from recordcache.cache.table_store import TableStore
from recordcache.cache.ttl import TTLMetadata
from recordcache.config import Settings, settings
from recordcache.database import close_db, create_engine, create_session_factory, init_db
from recordcache.integrations.smartsuite import SmartSuiteClient
from recordcache.schemas import (
    InvalidateRequest,
    InvalidateResponse,
    PolicyRequest,
    PolicyResponse,
    QueryRequest,
    QueryResponse,
    ResourceStatusItem,
    StatusResponse,
)

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
)
logging.getLogger("aiosqlite").setLevel(logging.WARNING)
logger = logging.getLogger("recordcache")

# Checked in order, first match wins
ERROR_STATUS: list[tuple[type[CacheError], int]] = [
    (UnknownField, 400),
    (UnsupportedComparator, 400),
    (InvalidFilter, 400),
    (InvalidQuery, 400),
    (SchemaDrift, 400),
    (ResourceNotFound, 404),
    (ExternalFetchFailed, 502),
    (StorageError, 500),
]


# ═══════════════ LIFESPAN ═══════════════

@asynccontextmanager
async def lifespan(app: FastAPI):
    cfg: Settings = app.state.settings
    logger.info("recordcache starting | smartsuite_configured=%s", cfg.has_smartsuite_credentials)

    engine = create_engine(cfg.database_url, echo=cfg.database_echo)
    await init_db(engine)

    source = app.state.source
    if source is None:
        if not cfg.has_smartsuite_credentials:
            logger.warning("SmartSuite credentials missing | cache misses will fail to fetch")
        source = SmartSuiteClient(
            api_key=cfg.smartsuite_api_key,
            account_id=cfg.smartsuite_account_id,
            base_url=cfg.smartsuite_base_url,
            page_size=cfg.smartsuite_page_size,
            timeout=cfg.smartsuite_timeout_seconds,
        )

    app.state.coordinator = CacheCoordinator(
        source,
        TableStore(engine),
        TTLMetadata(create_session_factory(engine), default_ttl=cfg.cache_default_ttl_seconds),
        fetch_timeout=cfg.fetch_timeout_seconds,
        default_limit=cfg.query_default_limit,
        max_limit=cfg.query_max_limit,
        serve_stale_on_error=cfg.serve_stale_on_error,
    )

    yield

    await close_db(engine)
    logger.info("recordcache shutting down")


# ═══════════════ ENDPOINTS ═══════════════

router = APIRouter()


def _coordinator(request: Request) -> CacheCoordinator:
    return request.app.state.coordinator


@router.get("/health")
async def health(request: Request):
    cfg: Settings = request.app.state.settings
    return {
        "status": "ok",
        "smartsuite_configured": cfg.has_smartsuite_credentials,
    }


@router.post("/api/records/{resource_id}/query", response_model=QueryResponse)
async def query_records(resource_id: str, body: QueryRequest, request: Request):
    result = await _coordinator(request).get(
        resource_id,
        fields=body.fields,
        filter=body.filter,
        sort=[(s.field, s.direction) for s in body.sort],
        limit=body.limit,
        offset=body.offset,
        bypass=body.bypass_cache,
        strict=body.strict,
        allow_stale=body.allow_stale,
    )
    logger.info(
        "Query | resource=%s | items=%d | total=%d | source=%s | stale=%s",
        resource_id, len(result.rows), result.total_count, result.source, result.stale,
    )
    return QueryResponse(
        items=result.rows,
        total_count=result.total_count,
        stale=result.stale,
        source=result.source,
        cached_at=isoformat_epoch(result.cached_at),
        expires_at=isoformat_epoch(result.expires_at),
    )


@router.post("/api/cache/invalidate", response_model=InvalidateResponse)
async def invalidate(request: Request, body: InvalidateRequest | None = None):
    resource_id = body.resource_id if body else None
    count = await _coordinator(request).invalidate(resource_id)
    return InvalidateResponse(resource_id=resource_id, invalidated=count)


@router.get("/api/cache/status", response_model=StatusResponse)
async def cache_status(request: Request, resource_id: str | None = None):
    statuses = await _coordinator(request).status(resource_id)
    return StatusResponse(resources=[
        ResourceStatusItem(
            resource_id=s.resource_id,
            state=s.state.value,
            table_name=s.table_name,
            row_count=s.row_count,
            columns=s.columns,
            dropped_fields=s.dropped_fields,
            ttl_seconds=s.ttl_seconds,
            cached_at=isoformat_epoch(s.cached_at),
            expires_at=isoformat_epoch(s.expires_at),
        )
        for s in statuses
    ])


@router.put("/api/cache/{resource_id}/policy", response_model=PolicyResponse)
async def set_policy(resource_id: str, body: PolicyRequest, request: Request):
    try:
        policy = await _coordinator(request).set_policy(
            resource_id,
            ttl_seconds=body.ttl_seconds,
            mutation_level=body.mutation_level,
            notes=body.notes,
        )
    except ValueError as e:
        return JSONResponse(status_code=400, content={"error": str(e), "type": "InvalidPolicy"})
    return PolicyResponse(**policy.model_dump(exclude={"is_default"}))


# ═══════════════ APP ═══════════════

async def cache_error_handler(request: Request, exc: CacheError) -> JSONResponse:
    status = next((code for cls, code in ERROR_STATUS if isinstance(exc, cls)), 500)
    if status >= 500:
        logger.error("Request failed | %s %s | %s", request.method, request.url.path, exc)
    else:
        logger.info("Request rejected | %s %s | %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=status, content={"error": str(exc), "type": type(exc).__name__})


def create_app(app_settings: Settings | None = None, source: DataSource | None = None) -> FastAPI:
    """Build the app. ``source`` replaces the SmartSuite client (tests, other backends)."""
    cfg = app_settings or settings
    app = FastAPI(
        title="recordcache API",
        description="TTL-expiring SQL cache with filtered queries over SmartSuite tables",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = cfg
    app.state.source = source

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.cors_origins,
        allow_methods=["GET", "POST", "PUT", "OPTIONS"],
        allow_headers=["Content-Type"],
    )
    app.add_exception_handler(CacheError, cache_error_handler)
    app.include_router(router)
    return app


app = create_app()
