import sqlite3, pytest
from pathlib import Path

from recordlink import LinkRegistry, SchemaCache

SCHEMA_SQL = """
CREATE TABLE users (
    id INTEGER PRIMARY KEY,
    name VARCHAR(40) NOT NULL DEFAULT '',
    email TEXT,
    age INT,
    score REAL,
    active BOOLEAN,
    created_at DATETIME
);
CREATE TABLE memberships (
    user_id INTEGER NOT NULL,
    group_id INTEGER NOT NULL,
    role TEXT,
    PRIMARY KEY (user_id, group_id)
);
CREATE TABLE tags (
    label TEXT
);
"""


@pytest.fixture()
def db_path(tmp_path) -> Path:
    path = tmp_path / 'test.db'
    conn = sqlite3.connect(path)
    try:
        conn.executescript(SCHEMA_SQL)
    finally:
        conn.close()
    return path


@pytest.fixture()
def registry(db_path):
    reg = LinkRegistry()
    reg.add_link('main', driver='sqlite', database=str(db_path))
    yield reg
    reg.close_all()


@pytest.fixture()
def handle(registry):
    return registry.link('main')


@pytest.fixture()
def schema_cache():
    return SchemaCache()


@pytest.fixture()
def seed(db_path):
    """Insert raw rows straight through sqlite3, bypassing recordlink."""
    def _seed(sql, rows):
        with sqlite3.connect(db_path) as conn:
            conn.executemany(sql, rows)
        conn.close()
    return _seed
