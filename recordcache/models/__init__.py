"""SQLAlchemy ORM models."""

from recordcache.models.base import Base
from recordcache.models.cache_metadata import CacheMetadata
from recordcache.models.cache_table_registry import CacheTableRegistry
from recordcache.models.ttl_policy import TTLPolicy

__all__ = ["Base", "CacheMetadata", "CacheTableRegistry", "TTLPolicy"]
