"""Error kinds raised by the record cache.

Filter and query errors are local to a single read and never change cache
state. Fetch and storage errors are raised after the store has rolled back,
so the last good table for the resource stays queryable.
"""


class CacheError(Exception):
    """Base class for every record cache error."""


class UnknownField(CacheError):
    def __init__(self, field: str, resource_id: str = ""):
        self.field = field
        self.resource_id = resource_id
        where = f" in resource '{resource_id}'" if resource_id else ""
        super().__init__(f"Unknown field '{field}'{where}")


class UnsupportedComparator(CacheError):
    def __init__(self, comparison: str, column_type: str | None = None):
        self.comparison = comparison
        self.column_type = column_type
        if column_type:
            msg = f"Comparator '{comparison}' is not supported for {column_type} fields"
        else:
            msg = f"Unsupported comparator '{comparison}'"
        super().__init__(msg)


class InvalidFilter(CacheError):
    """Malformed filter tree: empty group, wrong value arity or shape."""


class InvalidQuery(CacheError):
    """Bad projection, ordering or pagination arguments."""


class ResourceNotFound(CacheError):
    def __init__(self, resource_id: str):
        self.resource_id = resource_id
        super().__init__(f"No cached table for resource '{resource_id}'")


class SchemaDrift(CacheError):
    """A filter relies on fields that the latest refresh no longer contains."""

    def __init__(self, resource_id: str, fields: list[str]):
        self.resource_id = resource_id
        self.fields = fields
        super().__init__(
            f"Fields no longer present in resource '{resource_id}': {', '.join(fields)}"
        )


class ExternalFetchFailed(CacheError):
    def __init__(self, resource_id: str, reason: str):
        self.resource_id = resource_id
        self.reason = reason
        super().__init__(f"Fetch failed for resource '{resource_id}': {reason}")


class StorageError(CacheError):
    def __init__(self, resource_id: str, reason: str):
        self.resource_id = resource_id
        self.reason = reason
        super().__init__(f"Storage operation failed for resource '{resource_id}': {reason}")
