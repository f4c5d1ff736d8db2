"""Link configuration.

A LinkConfig names one database: which driver opens it, where it lives and how
statement failures and query logging are handled. Configs are plain values;
the registry in connection.py decides when to open them.
"""
from __future__ import annotations
import os
from dataclasses import dataclass, fields
from typing import Any, Mapping, Optional

from .errors import ConfigurationError
from .logging_util import warn

DRIVER_MYSQL = "mysql"
DRIVER_SQLITE = "sqlite"

# camelCase spellings accepted by from_mapping
_KEY_ALIASES = {
    "method": "driver",
    "silentErrors": "silent_errors",
    "debugLog": "debug_log",
    "user": "username",
}


def env_int(name: str, default: Optional[int]) -> Optional[int]:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        warn("invalid_env_int", key=name, value=raw, default=default)
        return default


@dataclass(frozen=True)
class LinkConfig:
    driver: str
    database: str
    host: str = "localhost"
    port: Optional[int] = None
    username: str = "root"
    password: Optional[str] = None
    silent_errors: bool = False
    debug_log: Optional[str] = None

    def __post_init__(self):
        if not self.driver or not self.database:
            raise ConfigurationError("Link configuration needs both a driver and a database")

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "LinkConfig":
        known = {f.name for f in fields(cls)}
        values = {}
        for key, value in data.items():
            key = _KEY_ALIASES.get(key, key)
            if key not in known:
                raise ConfigurationError(f"Unknown link configuration key: {key}")
            values[key] = value
        missing = {"driver", "database"} - values.keys()
        if missing:
            raise ConfigurationError(f"Link configuration missing {', '.join(sorted(missing))}")
        return cls(**values)

    @classmethod
    def from_env(cls, prefix: str = "RECORDLINK_") -> "LinkConfig":
        driver = os.environ.get(prefix + "DRIVER")
        database = os.environ.get(prefix + "DATABASE")
        if not driver or not database:
            raise ConfigurationError(f"Set {prefix}DRIVER and {prefix}DATABASE to configure a link")
        return cls(
            driver=driver,
            database=database,
            host=os.environ.get(prefix + "HOST", "localhost"),
            port=env_int(prefix + "PORT", None),
            username=os.environ.get(prefix + "USERNAME", "root"),
            password=os.environ.get(prefix + "PASSWORD"),
            silent_errors=os.environ.get(prefix + "SILENT_ERRORS", "0") == "1",
            debug_log=os.environ.get(prefix + "DEBUG_LOG") or None,
        )
