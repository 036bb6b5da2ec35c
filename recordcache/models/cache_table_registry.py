"""CacheTableRegistry model: which physical table holds each resource."""

import time

from sqlalchemy import JSON, Float, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from recordcache.models.base import Base


class CacheTableRegistry(Base):
    """One row per cached resource, rewritten by every atomic replace.

    ``columns`` is the schema of the live table as a list of
    ``{"name", "type", "nullable", "column"}`` dicts. ``dropped_columns``
    remembers fields that earlier refreshes had and the latest one does not.
    """

    __tablename__ = "cache_table_registry"

    resource_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    sql_table_name: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    columns: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    dropped_columns: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    row_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[float] = mapped_column(Float, nullable=False, default=time.time)
    updated_at: Mapped[float] = mapped_column(Float, nullable=False, default=time.time)
