"""Async database engine and session management.

Uses SQLAlchemy 2.0 async with the aiosqlite driver against a single embedded
database file. SQLite engines emit BEGIN themselves through connection events
so that CREATE, DROP and RENAME run inside the caller's transaction.
"""

import json
import logging

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from recordcache.models import Base

logger = logging.getLogger(__name__)


def create_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Build the async engine. SQLite URLs get transactional DDL enabled.

    JSON cells are written with non-ASCII characters kept as-is so that text
    stored inside them compares the same way as plain TEXT columns.
    """
    engine = create_async_engine(database_url, echo=echo, json_serializer=_dump_json)
    if engine.dialect.name == "sqlite":
        _enable_transactional_ddl(engine)
    return engine


def _dump_json(value) -> str:
    return json.dumps(value, ensure_ascii=False)


def _enable_transactional_ddl(engine: AsyncEngine) -> None:
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # Stop the driver from emitting BEGIN / COMMIT on its own
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_db(engine: AsyncEngine) -> None:
    """Create the bookkeeping tables if they don't exist."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database initialized | url=%s", engine.url.render_as_string(hide_password=True))


async def close_db(engine: AsyncEngine) -> None:
    """Dispose engine connections on shutdown."""
    await engine.dispose()
    logger.info("Database connections closed")
