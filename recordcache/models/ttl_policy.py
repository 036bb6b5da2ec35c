"""TTLPolicy model: per-resource TTL override."""

import time

from sqlalchemy import Float, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from recordcache.models.base import Base


class TTLPolicy(Base):
    __tablename__ = "cache_ttl_policy"

    resource_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    ttl_seconds: Mapped[int] = mapped_column(Integer, nullable=False)
    mutation_level: Mapped[str | None] = mapped_column(String(32), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[float] = mapped_column(Float, nullable=False, default=time.time)
