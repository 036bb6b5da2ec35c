"""CacheMetadata model: freshness window of each resource's cached table."""

from sqlalchemy import Float, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from recordcache.models.base import Base


class CacheMetadata(Base):
    """Table-granularity TTL record. Valid while ``now < expires_at``."""

    __tablename__ = "cache_metadata"

    resource_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    ttl_seconds: Mapped[int] = mapped_column(Integer, nullable=False)
    cached_at: Mapped[float] = mapped_column(Float, nullable=False)
    expires_at: Mapped[float] = mapped_column(Float, nullable=False, index=True)
