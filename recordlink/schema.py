"""Table schema descriptors and their process-wide cache.

A descriptor is read from the database once per qualified table name and then
shared by every Record for that table. There is no invalidation: columns added
to a table after the first load are not seen until the process restarts (or a
fresh SchemaCache is used).
"""
from __future__ import annotations
import json
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .connection import Handle, KeyedLocks
from .drivers import ColumnInfo, qualified_name
from .errors import SchemaLoadError
from .logging_util import debug


@dataclass(frozen=True)
class SchemaDescriptor:
    table: str  # back-tick qualified identifier, also the cache key
    columns: Mapping[str, str]  # column -> declared type, in table order
    primary: Tuple[str, ...] = ()
    auto_increment: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "columns", MappingProxyType(dict(self.columns)))
        object.__setattr__(self, "primary", tuple(self.primary))

    def __contains__(self, column: str) -> bool:
        return column in self.columns

    @classmethod
    def from_columns(cls, table: str, cols: List[ColumnInfo]) -> "SchemaDescriptor":
        keyed = sorted((c for c in cols if c.primary), key=lambda c: c.primary)
        auto = next((c.name for c in cols if c.auto_increment), None)
        return cls(table, {c.name: c.type for c in cols}, tuple(c.name for c in keyed), auto)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "table": self.table,
            "columns": dict(self.columns),
            "primary": list(self.primary),
            "auto_increment": self.auto_increment,
        }

    def as_python(self, table: str) -> str:
        """Class attributes for a Record subclass that skips introspection."""
        lines = [f"table = {table!r}", f"primary = {self.primary!r}"]
        if self.auto_increment:
            lines.append(f"auto_increment = {self.auto_increment!r}")
        lines.append("columns = {")
        lines.extend(f"    {name!r}: {kind!r}," for name, kind in self.columns.items())
        lines.append("}")
        return "\n".join(lines)


class SchemaCache:
    """Descriptors keyed by qualified table name; at most one introspection per key in flight."""
    def __init__(self):
        self._descriptors: Dict[str, SchemaDescriptor] = {}
        self._locks = KeyedLocks()

    def __contains__(self, key: str) -> bool:
        return key in self._descriptors

    def __len__(self) -> int:
        return len(self._descriptors)

    def get(self, key: str) -> Optional[SchemaDescriptor]:
        return self._descriptors.get(key)

    def load(self, handle: Handle, table: str, database: Optional[str] = None) -> SchemaDescriptor:
        key = qualified_name(table, database)
        found = self._descriptors.get(key)
        if found is not None:
            return found
        with self._locks(key):
            found = self._descriptors.get(key)
            if found is None:
                cols = handle.columns(table, database)
                if not cols:
                    raise SchemaLoadError(f"Couldn't load any table fields for {key}")
                found = SchemaDescriptor.from_columns(key, cols)
                self._descriptors[key] = found
                debug("schema_loaded", table=key, columns=len(found.columns),
                      primary=list(found.primary), auto_increment=found.auto_increment)
        return found

    def register(self, descriptor: SchemaDescriptor) -> SchemaDescriptor:
        """Store a predeclared descriptor unless the table is already cached."""
        with self._locks(descriptor.table):
            return self._descriptors.setdefault(descriptor.table, descriptor)


schemas = SchemaCache()


def cli_describe(argv=None) -> int:
    """CLI helper: print a table's schema descriptor as JSON (or as Record class attributes)."""
    import argparse
    from .config import LinkConfig
    from .connection import LinkRegistry
    ap = argparse.ArgumentParser(description="Describe a table the way Record sees it")
    ap.add_argument("table", help="Table name")
    ap.add_argument("--schema", dest="qualifier", help="Database qualifier for the table")
    ap.add_argument("--driver", help="sqlite or mysql (default: RECORDLINK_DRIVER)")
    ap.add_argument("--database", help="SQLite path or MySQL database (default: RECORDLINK_DATABASE)")
    ap.add_argument("--host", default="localhost")
    ap.add_argument("--username", default="root")
    ap.add_argument("--password")
    ap.add_argument("--python", action="store_true", help="Emit class attributes for a Record subclass")
    args = ap.parse_args(argv)
    if args.driver and args.database:
        config = LinkConfig(args.driver, args.database, host=args.host,
                            username=args.username, password=args.password)
    else:
        config = LinkConfig.from_env()
    registry = LinkRegistry()
    handle = registry.connect("describe", config)
    try:
        descriptor = SchemaCache().load(handle, args.table, args.qualifier)
    finally:
        registry.close("describe")
    if args.python:
        print(descriptor.as_python(args.table))
    else:
        print(json.dumps(descriptor.as_dict(), indent=2))
    return 0


if __name__ == '__main__':  # pragma: no cover
    raise SystemExit(cli_describe())
