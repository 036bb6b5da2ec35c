"""Remote data sources for the record cache."""

from recordcache.integrations.smartsuite import SmartSuiteClient

__all__ = ["SmartSuiteClient"]
