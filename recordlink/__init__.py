"""recordlink: named database links and a row-mapping Record engine.

Single source of truth for the package version so code, tests and packaging
metadata agree without duplicating literals.
"""

PACKAGE_VERSION = "0.1.0"  # Keep in sync with pyproject version.

from .config import DRIVER_MYSQL, DRIVER_SQLITE, LinkConfig  # noqa: E402
from .connection import Handle, LinkRegistry, ResultMode, StatementResult, links, unprepare  # noqa: E402
from .errors import (  # noqa: E402
    ConfigurationError,
    LinkConnectionError,
    MissingPrimaryKeyError,
    MissingTableNameError,
    RecordError,
    RecordLinkError,
    SchemaLoadError,
    UsageError,
)
from .record import Found, Record, index, load_all, load_multiple, process_value, total  # noqa: E402
from .schema import SchemaCache, SchemaDescriptor, schemas  # noqa: E402

__all__ = [
    "PACKAGE_VERSION",
    "DRIVER_MYSQL", "DRIVER_SQLITE", "LinkConfig",
    "Handle", "LinkRegistry", "ResultMode", "StatementResult", "links", "unprepare",
    "ConfigurationError", "LinkConnectionError", "MissingPrimaryKeyError", "MissingTableNameError",
    "RecordError", "RecordLinkError", "SchemaLoadError", "UsageError",
    "Found", "Record", "index", "load_all", "load_multiple", "process_value", "total",
    "SchemaCache", "SchemaDescriptor", "schemas",
]
