"""Database drivers.

A driver opens a DB-API connection for a LinkConfig, reads table metadata and
supplies the few SQL fragments that differ between engines. Statement
execution and result shaping are engine neutral and live in connection.py.

Two engines are supported:
    - sqlite: stdlib sqlite3, file path (or ":memory:") as the database
    - mysql: PyMySQL, installed with the ``mysql`` extra
"""
from __future__ import annotations
import os, re, sqlite3
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple, Union, TYPE_CHECKING

from .config import DRIVER_MYSQL, DRIVER_SQLITE, env_int
from .errors import ConfigurationError, LinkConnectionError
from .logging_util import warn

if TYPE_CHECKING:  # pragma: no cover
    from .config import LinkConfig

DEFAULT_BUSY_TIMEOUT_MS = 30000

Params = Union[Mapping[str, Any], Sequence[Any], None]

# Quoted strings and identifiers match first so placeholders inside them are kept.
_TOKEN_RE = re.compile(
    r"""'(?:[^']|'')*'|"(?:[^"]|"")*"|`[^`]*`|(?<![:\w]):([A-Za-z_]\w*)|(\?)|(%)"""
)


class ConnectionLike(Protocol):  # pragma: no cover - structural typing helper
    def cursor(self): ...
    def close(self): ...


@dataclass
class ColumnInfo:
    name: str
    type: str
    primary: int = 0  # 1-based position in the primary key, 0 when not part of it
    auto_increment: bool = False


def quote_identifier(name: str) -> str:
    return "`" + name.replace("`", "``") + "`"


def qualified_name(table: str, database: Optional[str] = None) -> str:
    if database:
        return f"{quote_identifier(database)}.{quote_identifier(table)}"
    return quote_identifier(table)


def _dq(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def declared_type(raw: Optional[str]) -> str:
    """``VARCHAR(20)`` -> ``varchar``, ``int(11) unsigned`` / ``int unsigned`` -> ``int``."""
    words = (raw or "").split("(")[0].split()
    return words[0].lower() if words else ""


def normalize_params(params: Params):
    """Named params may be given with or without the leading colon."""
    if params is None:
        return None
    if isinstance(params, Mapping):
        return {str(k).lstrip(":"): v for k, v in params.items()}
    return list(params)


def substitute(sql: str,
               named: Optional[Callable[[str], str]] = None,
               positional: Optional[Callable[[], str]] = None,
               percent: Optional[str] = None) -> str:
    """Rewrite ``:name`` / ``?`` placeholders (and optionally ``%``) outside quoted text."""
    def repl(m: "re.Match[str]") -> str:
        if m.group(1) is not None:
            return named(m.group(1)) if named else m.group(0)
        if m.group(2) is not None:
            return positional() if positional else m.group(0)
        if m.group(3) is not None:
            return percent if percent is not None else m.group(0)
        text = m.group(0)
        return text.replace("%", percent) if percent is not None else text
    return _TOKEN_RE.sub(repl, sql)


def fetch_rows(cursor) -> Tuple[List[str], Optional[List[Dict[str, Any]]]]:
    """Column names and all rows as dicts; rows is None for non-row statements."""
    if cursor.description is None:
        return [], None
    columns = [d[0] for d in cursor.description]
    return columns, [dict(zip(columns, row)) for row in cursor.fetchall()]


def sqlite_literal(value: Any) -> str:
    """Python rendition of SQLite's quote() function."""
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return str(int(value))
    if isinstance(value, (int, float)):
        return repr(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return "X'" + bytes(value).hex().upper() + "'"
    return "'" + str(value).replace("'", "''") + "'"


class SQLiteDriver:
    name = DRIVER_SQLITE
    errors = (sqlite3.Error,)

    def open(self, config: "LinkConfig") -> sqlite3.Connection:
        path = config.database
        if path != ":memory:" and os.path.isdir(path):
            raise LinkConnectionError(f"Path points to a directory, expected file: {path}")
        try:
            # Statements are serialized by the owning Handle, so sharing across threads is safe.
            conn = sqlite3.connect(path, isolation_level=None, check_same_thread=False)
        except sqlite3.Error as e:
            raise LinkConnectionError(f"Could not open sqlite database {path}: {e}") from e
        conn.row_factory = sqlite3.Row
        self._apply_pragmas(conn, path)
        return conn

    def _apply_pragmas(self, conn: sqlite3.Connection, path: str) -> None:
        busy = max(0, env_int("SQLITE_BUSY_TIMEOUT_MS", DEFAULT_BUSY_TIMEOUT_MS))
        for pragma in ("foreign_keys=ON", f"busy_timeout={busy}"):
            try:
                conn.execute(f"PRAGMA {pragma}")
            except sqlite3.Error as e:
                warn("pragma_failed", pragma=pragma, path=path, error=str(e))

    def columns(self, conn, table: str, database: Optional[str] = None) -> List[ColumnInfo]:
        target = f"table_info({_dq(table)})"
        if database:
            target = f"{_dq(database)}.{target}"
        cur = conn.cursor()
        try:
            cur.execute(f"PRAGMA {target}")
            _, rows = fetch_rows(cur)
        finally:
            cur.close()
        cols = [ColumnInfo(r["name"], declared_type(r["type"]), int(r["pk"] or 0)) for r in rows or []]
        keys = [c for c in cols if c.primary]
        # A lone INTEGER primary key aliases the rowid and is assigned on insert.
        if len(keys) == 1 and keys[0].type == "integer":
            keys[0].auto_increment = True
        return cols

    def prepare(self, sql: str, params: Params):
        return sql, normalize_params(params)

    def quote(self, conn, value: Any) -> str:
        return sqlite_literal(value)

    def first_char(self, column_sql: str) -> str:
        return f"substr({column_sql}, 1, 1)"

    def empty_insert(self, verb: str, table_sql: str) -> str:
        return f"{verb} INTO {table_sql} DEFAULT VALUES"


class MySQLDriver:
    name = DRIVER_MYSQL

    @property
    def errors(self):
        import pymysql
        return (pymysql.MySQLError,)

    def open(self, config: "LinkConfig"):
        try:
            import pymysql
            from pymysql.constants import CLIENT
        except ImportError as e:
            raise ConfigurationError("The mysql driver needs PyMySQL (pip install 'recordlink[mysql]')") from e
        kwargs = dict(
            host=config.host,
            user=config.username,
            password=config.password or "",
            database=config.database,
            charset="utf8mb4",
            autocommit=True,
            # UPDATE reports matched rows, so saving unchanged values still counts as an effect
            client_flag=CLIENT.FOUND_ROWS,
        )
        if config.port:
            kwargs["port"] = config.port
        try:
            return pymysql.connect(**kwargs)
        except pymysql.MySQLError as e:
            raise LinkConnectionError(f"Could not connect to mysql at {config.host}: {e}") from e

    def columns(self, conn, table: str, database: Optional[str] = None) -> List[ColumnInfo]:
        cur = conn.cursor()
        try:
            cur.execute(f"SHOW COLUMNS FROM {qualified_name(table, database)}")
            _, rows = fetch_rows(cur)
        finally:
            cur.close()
        cols = []
        position = 0
        for r in rows or []:
            primary = 0
            if r.get("Key") == "PRI":
                position += 1
                primary = position
            auto = "auto_increment" in (r.get("Extra") or "").lower()
            cols.append(ColumnInfo(r["Field"], declared_type(r["Type"]), primary, auto))
        return cols

    def prepare(self, sql: str, params: Params):
        params = normalize_params(params)
        if params is None:
            return sql, None
        if isinstance(params, dict):
            return substitute(sql, named=lambda n: f"%({n})s", percent="%%"), params
        return substitute(sql, positional=lambda: "%s", percent="%%"), tuple(params)

    def quote(self, conn, value: Any) -> str:
        return conn.escape(value)

    def first_char(self, column_sql: str) -> str:
        return f"LEFT({column_sql}, 1)"

    def empty_insert(self, verb: str, table_sql: str) -> str:
        return f"{verb} INTO {table_sql} () VALUES ()"


DRIVERS: Dict[str, Any] = {
    DRIVER_SQLITE: SQLiteDriver(),
    DRIVER_MYSQL: MySQLDriver(),
}


def get_driver(name: str):
    try:
        return DRIVERS[name.lower()]
    except (KeyError, AttributeError):
        raise ConfigurationError(f"Unknown database driver: {name!r}") from None
