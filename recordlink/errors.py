"""Exception taxonomy.

Every error here is an unrecoverable precondition failure and propagates to the
caller untouched. "Row not found" and "no rows affected" are not errors; those
surface as boolean returns and ``Found.ABSENT``.
"""
from __future__ import annotations


class RecordLinkError(Exception):
    """Base class for all recordlink errors."""


class ConfigurationError(RecordLinkError):
    """Missing or malformed link configuration."""


class LinkConnectionError(RecordLinkError, ConnectionError):
    """The driver failed to open a handle."""


class SchemaLoadError(RecordLinkError):
    """Table introspection returned no columns."""


class RecordError(RecordLinkError):
    pass


class MissingTableNameError(RecordError):
    pass


class MissingPrimaryKeyError(RecordError):
    pass


class UsageError(RecordError):
    """A bulk fetch helper was handed a mutating statement."""


__all__ = [
    "RecordLinkError",
    "ConfigurationError",
    "LinkConnectionError",
    "SchemaLoadError",
    "RecordError",
    "MissingTableNameError",
    "MissingPrimaryKeyError",
    "UsageError",
]
