"""Named database links.

LinkRegistry keeps link configurations by name and opens at most one Handle per
name, lazily, the first time something asks for it. It also runs ad-hoc SQL
with a selectable result shape and remembers the last statement for
diagnostics.

Concurrency:
    - opening a link is guarded per name, racing callers get the same Handle
    - a Handle serializes statements on its underlying connection
    - last query / last result live in a context variable, so they are scoped
      to the current thread or asyncio task rather than shared process-wide
"""
from __future__ import annotations
import contextvars, enum, threading, time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from .config import LinkConfig
from .drivers import ConnectionLike, Params, fetch_rows, get_driver, normalize_params, substitute
from .errors import ConfigurationError
from .logging_util import info, warn

DEFAULT_LINK = "default"
DEBUG_LOG_TIME_FORMAT = "%Y%m%d.%H%M%S"

_MISSING = object()


class ResultMode(enum.IntEnum):
    NONE = -1
    FULL = 0
    SINGLE_ROW = 1
    SINGLE_COLUMN = 2
    SINGLE_CELL = 3


@dataclass(frozen=True)
class StatementResult:
    """Fully fetched outcome of one statement."""
    columns: List[str] = field(default_factory=list)
    rows: Optional[List[Dict[str, Any]]] = None  # None for statements that return no rows
    rowcount: int = -1
    lastrowid: Optional[int] = None

    @property
    def total(self) -> int:
        if self.rows is not None:
            return len(self.rows)
        return max(self.rowcount, 0)

    def shape(self, mode: Union[ResultMode, int] = ResultMode.FULL):
        mode = ResultMode(mode)
        rows = self.rows or []
        if mode is ResultMode.NONE:
            return self.total
        if mode is ResultMode.SINGLE_ROW:
            return dict(rows[0]) if rows else {}
        if mode is ResultMode.SINGLE_COLUMN:
            if not rows:
                return []
            first = self.columns[0]
            return [row[first] for row in rows]
        if mode is ResultMode.SINGLE_CELL:
            return rows[0][self.columns[0]] if rows else None
        return [dict(row) for row in rows]


class KeyedLocks:
    """One re-entrant lock per key, created on first use."""
    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.RLock] = {}

    def __call__(self, key: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.RLock()
            return lock


class Handle:
    """An opened link: driver connection plus the lock that serializes its use."""
    def __init__(self, name: str, config: LinkConfig, driver, connection: ConnectionLike):
        self.name = name
        self.config = config
        self.driver = driver
        self.connection = connection
        self._lock = threading.RLock()
        self.closed = False

    def execute(self, sql: str, params: Params = None) -> StatementResult:
        sql, params = self.driver.prepare(sql, params)
        with self._lock:
            cur = self.connection.cursor()
            try:
                if params is None:
                    cur.execute(sql)
                else:
                    cur.execute(sql, params)
                columns, rows = fetch_rows(cur)
                return StatementResult(columns, rows, cur.rowcount, cur.lastrowid)
            finally:
                cur.close()

    def columns(self, table: str, database: Optional[str] = None):
        with self._lock:
            return self.driver.columns(self.connection, table, database)

    def quote(self, value: Any) -> str:
        with self._lock:
            return self.driver.quote(self.connection, value)

    def first_char(self, column_sql: str) -> str:
        return self.driver.first_char(column_sql)

    def empty_insert(self, verb: str, table_sql: str) -> str:
        return self.driver.empty_insert(verb, table_sql)

    @property
    def errors(self):
        return self.driver.errors

    def close(self) -> None:
        with self._lock:
            if self.closed:
                return
            self.connection.close()
            self.closed = True

    def __repr__(self):
        state = "closed" if self.closed else "open"
        return f"<Handle {self.name} {self.driver.name}:{self.config.database} {state}>"


@dataclass(frozen=True)
class _Diagnostics:
    query: str
    link: str
    result: Optional[StatementResult] = None


def unprepare(sql: str, params: Params, quote: Callable[[Any], str]) -> str:
    """Inline bound parameters as literals. Debugging aid only; never execute the output."""
    params = normalize_params(params)
    if not params:
        return sql
    if isinstance(params, dict):
        return substitute(sql, named=lambda n: quote(params[n]) if n in params else ":" + n)
    values = iter(params)

    def positional() -> str:
        value = next(values, _MISSING)
        return "?" if value is _MISSING else quote(value)
    return substitute(sql, positional=positional)


class LinkRegistry:
    """Link configurations and their lazily opened handles.

    Responsibilities:
      - Register configurations by name (first registered name is the default)
      - Open one Handle per name on demand and hand the same one back
      - Run raw / parameterized SQL, shaping results per ResultMode
      - Append executed SQL to a per-link debug log file when configured
    """
    def __init__(self):
        self._configs: Dict[str, LinkConfig] = {}
        self._links: Dict[str, Handle] = {}
        self._guard = threading.RLock()
        self._opening = KeyedLocks()
        self._diagnostics: contextvars.ContextVar[Optional[_Diagnostics]] = contextvars.ContextVar(
            f"recordlink_diagnostics_{id(self):x}", default=None
        )

    # --- Configuration --------------------------------------------------------------
    def add_link(self, name: str, config: Union[LinkConfig, Mapping[str, Any], None] = None, *,
                 driver: Optional[str] = None, database: Optional[str] = None,
                 host: str = "localhost", port: Optional[int] = None, username: str = "root",
                 password: Optional[str] = None, silent_errors: bool = False,
                 debug_log: Optional[str] = None) -> LinkConfig:
        """Register (or replace) the configuration for ``name`` without opening it."""
        if config is not None:
            if driver is not None or database is not None:
                raise ConfigurationError("Pass either a config or individual link fields, not both")
            config = self._coerce(config)
        elif driver is not None and database is not None:
            config = LinkConfig(driver, database, host, port, username, password, silent_errors, debug_log)
        else:
            raise ConfigurationError("Link configuration provided did not match expected parameters")
        with self._guard:
            self._configs[name] = config
        info("link_registered", link=name, driver=config.driver)
        return config

    def config(self, name: Optional[str] = None) -> Optional[LinkConfig]:
        with self._guard:
            return self._configs.get(self._resolve_name(name))

    def names(self) -> List[str]:
        with self._guard:
            return list(self._configs)

    @staticmethod
    def _coerce(config) -> LinkConfig:
        if isinstance(config, LinkConfig):
            return config
        if isinstance(config, Mapping):
            return LinkConfig.from_mapping(config)
        raise ConfigurationError(f"Unsupported link configuration: {type(config).__name__}")

    def _resolve_name(self, name: Optional[str]) -> str:
        if name is not None:
            return name
        with self._guard:
            for first in self._configs:
                return first
        return DEFAULT_LINK

    # --- Handles --------------------------------------------------------------------
    def connect(self, name: Optional[str] = None,
                config: Union[LinkConfig, Mapping[str, Any], None] = None) -> Handle:
        """Open a new handle for ``name``, replacing any cached one.

        A supplied config is stored under ``name`` first. Raises ConfigurationError
        when nothing is registered for the name and LinkConnectionError when the
        driver can not open the database.
        """
        name = self._resolve_name(name)
        with self._opening(name):
            if config is not None:
                config = self._coerce(config)
                with self._guard:
                    self._configs[name] = config
            else:
                with self._guard:
                    config = self._configs.get(name)
                if config is None:
                    raise ConfigurationError(f"No database configuration could be found for {name!r}")
            driver = get_driver(config.driver)
            handle = Handle(name, config, driver, driver.open(config))
            with self._guard:
                self._links[name] = handle
        info("link_opened", link=name, driver=driver.name, database=config.database)
        return handle

    def link(self, name: Optional[str] = None) -> Handle:
        """Return the cached handle for ``name``, opening it on first use."""
        name = self._resolve_name(name)
        with self._guard:
            handle = self._links.get(name)
        if handle is not None:
            return handle
        with self._opening(name):
            with self._guard:
                handle = self._links.get(name)
            if handle is None:
                handle = self.connect(name)
        return handle

    def close(self, name: Optional[str] = None) -> None:
        name = self._resolve_name(name)
        with self._opening(name):
            with self._guard:
                handle = self._links.pop(name, None)
            if handle is not None:
                handle.close()
                info("link_closed", link=name)

    def close_all(self) -> None:
        """Close every open handle (test teardown / shutdown)."""
        with self._guard:
            names = list(self._links)
        for name in names:
            self.close(name)

    # --- Queries --------------------------------------------------------------------
    def query(self, sql: str, name: Optional[str] = None, mode: Union[ResultMode, int] = ResultMode.FULL):
        return self._run(sql, None, mode, name, prepared=False)

    def prepared_query(self, sql: str, params: Params = None,
                       mode: Union[ResultMode, int] = ResultMode.FULL, name: Optional[str] = None):
        return self._run(sql, params, mode, name, prepared=True)

    def escape(self, value: Any, name: Optional[str] = None) -> str:
        return self.link(name).quote(value)

    def _run(self, sql: str, params: Params, mode, name: Optional[str], prepared: bool):
        handle = self.link(name)
        text = unprepare(sql, params, handle.quote) if prepared else sql
        self._diagnostics.set(_Diagnostics(text, handle.name))
        self._write_debug_log(handle.config, text)
        try:
            result = handle.execute(sql, params)
        except handle.errors as e:
            if not handle.config.silent_errors:
                raise
            warn("query_failed", link=handle.name, error=str(e), query=text)
            result = StatementResult()
        self._diagnostics.set(_Diagnostics(text, handle.name, result))
        return result.shape(mode)

    @staticmethod
    def _write_debug_log(config: LinkConfig, text: str) -> None:
        if not config.debug_log:
            return
        line = f"{time.strftime(DEBUG_LOG_TIME_FORMAT)} {text.replace(chr(10), ' ')}\n"
        try:
            with open(config.debug_log, "a", encoding="utf-8") as fh:
                fh.write(line)
        except OSError as e:
            warn("debug_log_write_failed", path=config.debug_log, error=str(e))

    # --- Diagnostics ----------------------------------------------------------------
    def last_query(self) -> Optional[str]:
        state = self._diagnostics.get()
        return state.query if state else None

    def last_insert_id(self) -> Optional[int]:
        state = self._diagnostics.get()
        return state.result.lastrowid if state and state.result else None

    def total_results(self) -> Optional[int]:
        """Rows returned by the last query (row count for non-row statements)."""
        state = self._diagnostics.get()
        return state.result.total if state and state.result else None

    def affected_rows(self) -> Optional[int]:
        state = self._diagnostics.get()
        return state.result.rowcount if state and state.result else None


links = LinkRegistry()
