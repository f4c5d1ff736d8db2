"""Row mapping.

A Record holds one table row as an ordered field container and turns load,
save, set and delete calls into SQL built from the table's cached schema
descriptor and the primary-key values currently in the container.

    users = Record("users", registry.link("main"))
    users.load_by_key(7)
    users["email"] = "new@example.com"
    users.save()

Application models usually subclass Record and declare ``table`` (and, to skip
introspection, ``columns``/``primary``/``auto_increment``).

Whether the row exists is tracked in ``found``:
    UNKNOWN   -> nothing has been asked of the database yet
    CONFIRMED -> the primary key is known to exist (after load hit or save)
    ABSENT    -> a load missed, or a replace forced an insert
"""
from __future__ import annotations
import enum
from collections.abc import Mapping, MutableMapping
from datetime import date, datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple, Union

from .connection import Handle, LinkRegistry, ResultMode, links
from .drivers import Params, qualified_name, quote_identifier
from .errors import MissingPrimaryKeyError, MissingTableNameError, UsageError
from .logging_util import debug
from .schema import SchemaCache, SchemaDescriptor, schemas as default_schemas

ZERO_DATE = "0000-00-00 00:00:00"
ZERO_DATES = {ZERO_DATE, "0000-00-00"}
DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S"

DATE_TYPES = {"date", "datetime", "timestamp"}
INT_TYPES = {"bool", "boolean", "int", "integer", "tinyint", "smallint", "mediumint", "bigint"}
FLOAT_TYPES = {"decimal", "numeric", "float", "double", "real"}

_PARSE_FORMATS = (
    "%m/%d/%Y %H:%M:%S",
    "%m/%d/%Y %H:%M",
    "%m/%d/%Y",
    "%Y/%m/%d %H:%M:%S",
    "%Y/%m/%d",
    "%d %B %Y",
    "%B %d, %Y",
    "%b %d, %Y",
    "%Y%m%d%H%M%S",
)

MUTATING_VERBS = {"INSERT", "REPLACE", "UPDATE", "DELETE"}
CLAUSE_VERBS = {"WHERE", "GROUP", "ORDER", "LIMIT"}


class Found(enum.Enum):
    UNKNOWN = "unknown"
    CONFIRMED = "confirmed"
    ABSENT = "absent"


def parse_datetime(text: str) -> datetime:
    """ISO-8601 first, then a handful of common US/long-form layouts."""
    text = text.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        pass
    for fmt in _PARSE_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    raise ValueError(f"Unrecognised date value: {text!r}")


def _coerce_date(value: Any) -> Optional[str]:
    if isinstance(value, datetime):
        return value.strftime(DATETIME_FORMAT)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day).strftime(DATETIME_FORMAT)
    if value is None or value == "null":
        return None
    if value == "":
        return ""
    if value == "now":
        return datetime.now().strftime(DATETIME_FORMAT)
    if value == "none" or value in ZERO_DATES:
        return ZERO_DATE
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value).strftime(DATETIME_FORMAT)
    return parse_datetime(str(value)).strftime(DATETIME_FORMAT)


def _to_int(value: Any) -> int:
    if isinstance(value, str):
        text = value.strip()
        try:
            return int(text)
        except ValueError:
            return int(float(text))
    return int(value)


def process_value(value: Any, declared_type: Optional[str]) -> Any:
    """Coerce a field value for binding according to its column's declared type."""
    kind = (declared_type or "").lower()
    if kind in DATE_TYPES:
        return _coerce_date(value)
    if kind in INT_TYPES:
        return None if value is None or value == "" else _to_int(value)
    if kind in FLOAT_TYPES:
        return None if value is None or value == "" else float(value)
    return value


def _equality(criteria: Mapping[str, Any], prefix: str = "") -> Tuple[str, Dict[str, Any]]:
    clauses, params = [], {}
    for column, value in criteria.items():
        clauses.append(f"{quote_identifier(column)} = :{prefix}{column}")
        params[f"{prefix}{column}"] = value
    return " AND ".join(clauses), params


def _flatten(names: Iterable[Union[str, Iterable[str]]]) -> List[str]:
    out: List[str] = []
    for name in names:
        if isinstance(name, str):
            out.append(name)
        else:
            out.extend(name)
    return out


class Record(MutableMapping):
    table: Optional[str] = None
    database: Optional[str] = None
    # Predeclared schema; when ``columns`` is set the table is never introspected.
    columns: Optional[Mapping[str, str]] = None
    primary: Optional[Sequence[str]] = None
    auto_increment: Optional[str] = None

    def __init__(self, table: Optional[str] = None, handle: Optional[Handle] = None, *,
                 values: Optional[Mapping[str, Any]] = None, database: Optional[str] = None,
                 link: Optional[str] = None, registry: Optional[LinkRegistry] = None,
                 schemas: Optional[SchemaCache] = None):
        self.table = table or type(self).table
        self.database = database or type(self).database
        self.handle = handle if handle is not None else (registry or links).link(link)
        self._schemas = schemas if schemas is not None else default_schemas
        self._schema: Optional[SchemaDescriptor] = None
        self._fields: Dict[str, Any] = dict(values or {})
        self._found = Found.UNKNOWN

    # --- Field container ------------------------------------------------------------
    def __getitem__(self, key: str) -> Any:
        return self._fields[key]

    def __setitem__(self, key: str, value: Any) -> None:
        self._fields[key] = value

    def __delitem__(self, key: str) -> None:
        del self._fields[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._fields)

    def __len__(self) -> int:
        return len(self._fields)

    def __repr__(self):
        return f"<{type(self).__name__} {self.table} {self._found.value} {self._fields!r}>"

    def export(self) -> Dict[str, Any]:
        return dict(self._fields)

    @property
    def found(self) -> Found:
        return self._found

    @property
    def qualified_table(self) -> str:
        if not self.table:
            raise MissingTableNameError("Can not use Record: missing table name")
        return qualified_name(self.table, self.database)

    @property
    def schema(self) -> SchemaDescriptor:
        if self._schema is None:
            key = self.qualified_table
            if self.columns is not None:
                declared = SchemaDescriptor(key, self.columns, tuple(self.primary or ()), self.auto_increment)
                self._schema = self._schemas.register(declared)
            else:
                self._schema = self._schemas.load(self.handle, self.table, self.database)
        return self._schema

    def spawn(self, values: Optional[Mapping[str, Any]] = None) -> "Record":
        """A sibling record for the same table, handle and schema cache."""
        other = type(self)(self.table, self.handle, values=values, database=self.database,
                           schemas=self._schemas)
        other._schema = self._schema
        return other

    # --- Primary keys ---------------------------------------------------------------
    def _missing_primary(self) -> List[str]:
        return [k for k in self.schema.primary if self._fields.get(k) is None]

    def _require_primary(self, action: str) -> None:
        schema = self.schema
        if not schema.primary:
            raise MissingPrimaryKeyError(f"Can not {action} {self.table}: table has no primary key")
        missing = self._missing_primary()
        if missing:
            raise MissingPrimaryKeyError(
                f"Can not {action} {self.table}: missing values for primary key(s) {', '.join(missing)}"
            )

    def _primary_where(self) -> Tuple[str, Dict[str, Any]]:
        return _equality({k: self._fields[k] for k in self.schema.primary})

    def _probe(self, where: str, params: Dict[str, Any]) -> Found:
        count = self.handle.execute(
            f"SELECT COUNT(*) FROM {self.qualified_table} WHERE {where}", params
        ).shape(ResultMode.SINGLE_CELL)
        return Found.CONFIRMED if count else Found.ABSENT

    # --- Loading --------------------------------------------------------------------
    def load(self) -> bool:
        """Reload using the primary-key values already in the record."""
        schema = self.schema
        if not schema.primary:
            raise MissingPrimaryKeyError(f"Can not load {self.table}: table has no primary key")
        criteria = {}
        for column in schema.primary:
            if self._fields.get(column) is None:
                raise MissingPrimaryKeyError(f"Can not load {self.table}: no value supplied for primary key {column!r}")
            criteria[column] = self._fields[column]
        return self.load_by_criteria(criteria)

    def load_by_key(self, value: Any) -> bool:
        """Look up by the first primary-key column."""
        primary = self.schema.primary
        if not primary:
            raise MissingPrimaryKeyError(f"Can not load {self.table}: no field specified and table lacks primary keys")
        return self.load_by_criteria({primary[0]: value})

    def load_by_field(self, field: str, value: Any) -> bool:
        return self.load_by_criteria({field: value})

    def load_by_criteria(self, criteria: Mapping[str, Any]) -> bool:
        """Look up by column equality. On a miss the criteria stay behind as a draft row."""
        if not criteria:
            raise ValueError("load_by_criteria needs at least one column")
        where, params = _equality(criteria)
        if self.load_where(where, params):
            return True
        self._fields.update(criteria)
        return False

    def load_where(self, clause: str, params: Params = None) -> bool:
        table = self.qualified_table
        result = self.handle.execute(f"SELECT * FROM {table} WHERE {clause}", params)
        if result.rows:
            self._fields.update(result.rows[0])
            self._found = Found.CONFIRMED
            return True
        self._found = Found.ABSENT
        return False

    # --- Writing --------------------------------------------------------------------
    def process_value(self, value: Any, declared_type: Optional[str]) -> Any:
        return process_value(value, declared_type)

    def save(self, replace: bool = False) -> bool:
        """Insert or update the row.

        replace=True skips the existence check and writes with REPLACE INTO.
        Otherwise an UNKNOWN record with a complete primary key is probed first;
        an incomplete key always means a new row.
        """
        schema = self.schema
        table = self.qualified_table
        where, params = "", {}
        if replace:
            self._found = Found.ABSENT
        else:
            if schema.primary and not self._missing_primary():
                where, params = self._primary_where()
            if self._found is Found.UNKNOWN:
                self._found = self._probe(where, params) if where else Found.ABSENT

        assignments = {
            column: self.process_value(value, schema.columns[column])
            for column, value in self._fields.items()
            if column in schema.columns and column != schema.auto_increment
        }

        if self._found is Found.CONFIRMED:
            if not where:
                self._require_primary("update")
            if not assignments:
                return False
            sets = ", ".join(f"{quote_identifier(c)} = :set_{c}" for c in assignments)
            params.update({f"set_{c}": v for c, v in assignments.items()})
            result = self.handle.execute(f"UPDATE {table} SET {sets} WHERE {where}", params)
            if result.rowcount == 0:
                return False
            debug("record_updated", table=table)
            return True

        verb = "REPLACE" if replace else "INSERT"
        if assignments:
            cols = ", ".join(quote_identifier(c) for c in assignments)
            holders = ", ".join(f":set_{c}" for c in assignments)
            sql = f"{verb} INTO {table} ({cols}) VALUES ({holders})"
        else:
            sql = self.handle.empty_insert(verb, table)
        result = self.handle.execute(sql, {f"set_{c}": v for c, v in assignments.items()})
        if result.rowcount == 0:
            return False
        if schema.auto_increment and result.lastrowid:
            self._fields[schema.auto_increment] = result.lastrowid
        self._found = Found.CONFIRMED
        debug("record_inserted", table=table, verb=verb)
        return True

    def set(self, field: str, value: Any) -> bool:
        """Assign one field and write just that column (inserting the row if it is new)."""
        schema = self.schema
        self._require_primary("set")
        if field not in schema.columns:
            return False
        where, params = self._primary_where()
        if self._found is Found.UNKNOWN:
            self._found = self._probe(where, params)
        self._fields[field] = value
        if self._found is Found.CONFIRMED:
            params[f"set_{field}"] = self.process_value(value, schema.columns[field])
            result = self.handle.execute(
                f"UPDATE {self.qualified_table} SET {quote_identifier(field)} = :set_{field} WHERE {where}",
                params,
            )
            return result.rowcount > 0
        return self.save()

    def delete(self) -> bool:
        self._require_primary("delete")
        where, params = self._primary_where()
        table = self.qualified_table
        result = self.handle.execute(f"DELETE FROM {table} WHERE {where}", params)
        if result.rowcount > 0:
            for column in self.schema.primary:
                self._fields.pop(column, None)
            self._found = Found.UNKNOWN
            debug("record_deleted", table=table)
            return True
        return False

    # --- In-memory helpers ----------------------------------------------------------
    def filter(self, *columns: Union[str, Iterable[str]]) -> None:
        """Drop the named fields."""
        for column in _flatten(columns):
            self._fields.pop(column, None)

    def allow(self, *columns: Union[str, Iterable[str]]) -> None:
        """Drop every field except the named ones."""
        keep = set(_flatten(columns))
        for column in list(self._fields):
            if column not in keep:
                del self._fields[column]

    def get_date(self, field: str, fmt: str = "%m/%d/%Y") -> Optional[str]:
        value = self._fields.get(field)
        if not value or value in ZERO_DATES:
            return None
        if isinstance(value, (datetime, date)):
            return value.strftime(fmt)
        try:
            return parse_datetime(str(value)).strftime(fmt)
        except ValueError:
            return None


# --- Bulk helpers ---------------------------------------------------------------------

def load_multiple(template: Record, criteria: Union[Mapping[str, Any], str, None] = None,
                  params: Params = None) -> List[Record]:
    """Fetch rows as CONFIRMED records shaped like ``template``.

    ``criteria`` is a column -> value mapping, a clause starting with WHERE /
    GROUP / ORDER / LIMIT (appended to ``SELECT * FROM t``), or a complete
    SELECT used verbatim. Mutating statements raise UsageError.
    """
    table = template.qualified_table
    base = f"SELECT * FROM {table}"
    if isinstance(criteria, Mapping):
        where, params = _equality(criteria)
        sql = f"{base} WHERE {where}" if where else base
    elif criteria is None or not criteria.strip():
        sql = base
    else:
        text = criteria.strip()
        verb = text.split(None, 1)[0].upper()
        if verb in MUTATING_VERBS:
            raise UsageError(f"load_multiple should not be used for {verb} statements")
        sql = f"{base} {text}" if verb in CLAUSE_VERBS else text
    result = template.handle.execute(sql, params)
    records = []
    for row in result.rows or []:
        record = template.spawn(row)
        record._found = Found.CONFIRMED
        records.append(record)
    return records


def load_all(template: Record, order_by: Optional[str] = None, limit: int = 0, offset: int = 0) -> List[Record]:
    parts = []
    if order_by:
        parts.append(f"ORDER BY {order_by}")
    if limit:
        parts.append(f"LIMIT {int(offset)}, {int(limit)}")
    return load_multiple(template, " ".join(parts))


def total(template: Record) -> int:
    count = template.handle.execute(f"SELECT COUNT(*) FROM {template.qualified_table}").shape(ResultMode.SINGLE_CELL)
    return int(count or 0)


def index(template: Record, column: str, page_size: int = 0) -> List[Dict[str, Any]]:
    """Row counts per first character of ``column``, optionally with the page each group starts on."""
    letter = template.handle.first_char(quote_identifier(column))
    rows = template.handle.execute(
        f"SELECT {letter} AS `letter`, COUNT(*) AS `count` FROM {template.qualified_table} "
        f"GROUP BY `letter` ORDER BY `letter`"
    ).rows or []
    results = [dict(row) for row in rows]
    if page_size > 0:
        running = 0
        for row in results:
            running += row["count"]
            row["page"] = running // page_size
    return results
