"""recordcache: TTL-expiring, dynamic-schema SQL cache in front of SmartSuite."""

__version__ = "0.1.0"
