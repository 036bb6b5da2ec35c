"""Record cache core: schema inference, table storage, TTL, filter translation, queries."""

from recordcache.cache.coordinator import CacheCoordinator, CacheResult, DataSource, ResourceState, ResourceStatus
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
from recordcache.cache.expressions import FilterCondition, FilterGroup, all_of, any_of, condition, parse_filter
from recordcache.cache.filters import FilterTranslator, TranslatedFilter
from recordcache.cache.query_builder import QueryBuilder, SortSpec
from recordcache.cache.schema import Column, ColumnType, SchemaHint, SchemaInferencer, infer_schema
from recordcache.cache.table_store import TableSchema, TableStore
from recordcache.cache.ttl import TTL_PRESETS, EntryStatus, TTLMetadata

__all__ = [
    "CacheCoordinator", "CacheResult", "DataSource", "ResourceState", "ResourceStatus",
    "CacheError", "ExternalFetchFailed", "InvalidFilter", "InvalidQuery", "ResourceNotFound",
    "SchemaDrift", "StorageError", "UnknownField", "UnsupportedComparator",
    "FilterCondition", "FilterGroup", "all_of", "any_of", "condition", "parse_filter",
    "FilterTranslator", "TranslatedFilter",
    "QueryBuilder", "SortSpec",
    "Column", "ColumnType", "SchemaHint", "SchemaInferencer", "infer_schema",
    "TableSchema", "TableStore",
    "TTL_PRESETS", "EntryStatus", "TTLMetadata",
]
