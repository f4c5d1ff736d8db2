import sqlite3, threading
import pytest

from recordlink import (
    ConfigurationError,
    LinkConfig,
    LinkConnectionError,
    LinkRegistry,
    ResultMode,
    unprepare,
)


def test_add_link_rejects_partial_parameters():
    reg = LinkRegistry()
    with pytest.raises(ConfigurationError):
        reg.add_link('main', driver='sqlite')
    with pytest.raises(ConfigurationError):
        reg.add_link('main', database='x.db')
    with pytest.raises(ConfigurationError):
        reg.add_link('main', LinkConfig('sqlite', 'x.db'), driver='sqlite')
    assert reg.names() == []


def test_add_link_accepts_mapping_with_legacy_keys(tmp_path):
    reg = LinkRegistry()
    log_path = str(tmp_path / 'q.log')
    cfg = reg.add_link('main', {'method': 'sqlite', 'database': 'x.db', 'silentErrors': True, 'debugLog': log_path})
    assert cfg == LinkConfig('sqlite', 'x.db', silent_errors=True, debug_log=log_path)
    assert reg.config('main') is cfg


def test_add_link_does_not_open(db_path, monkeypatch):
    reg = LinkRegistry()
    opened = []
    monkeypatch.setattr(sqlite3, 'connect', lambda *a, **kw: opened.append(a))
    reg.add_link('main', driver='sqlite', database=str(db_path))
    assert opened == []


def test_link_is_lazy_and_cached(registry):
    first = registry.link('main')
    assert registry.link('main') is first
    assert registry.link() is first  # first registered name is the default


def test_link_default_is_first_registered(db_path, tmp_path):
    other = tmp_path / 'other.db'
    sqlite3.connect(other).close()
    reg = LinkRegistry()
    reg.add_link('primary', driver='sqlite', database=str(db_path))
    reg.add_link('secondary', driver='sqlite', database=str(other))
    try:
        assert reg.link().name == 'primary'
        assert reg.link('secondary').config.database == str(other)
    finally:
        reg.close_all()


def test_connect_without_config_fails():
    reg = LinkRegistry()
    with pytest.raises(ConfigurationError):
        reg.connect('nowhere')
    with pytest.raises(ConfigurationError):
        reg.link()


def test_connect_with_config_stores_it(db_path):
    reg = LinkRegistry()
    handle = reg.connect('adhoc', LinkConfig('sqlite', str(db_path)))
    try:
        assert reg.config('adhoc').database == str(db_path)
        assert reg.link('adhoc') is handle
    finally:
        reg.close_all()


def test_connect_replaces_cached_handle(registry):
    first = registry.link('main')
    second = registry.connect('main')
    assert second is not first
    assert registry.link('main') is second


def test_unknown_driver_is_configuration_error():
    reg = LinkRegistry()
    reg.add_link('odd', driver='oracle', database='x')
    with pytest.raises(ConfigurationError):
        reg.link('odd')


def test_open_failure_is_connection_error(tmp_path):
    reg = LinkRegistry()
    reg.add_link('dir', driver='sqlite', database=str(tmp_path))
    reg.add_link('missing', driver='sqlite', database=str(tmp_path / 'no' / 'such' / 'dir.db'))
    with pytest.raises(LinkConnectionError):
        reg.link('dir')
    with pytest.raises(LinkConnectionError):
        reg.link('missing')
    # also a builtin ConnectionError
    with pytest.raises(ConnectionError):
        reg.link('dir')


def test_result_modes(registry, seed):
    seed("INSERT INTO users(name, age) VALUES (?, ?)", [('ann', 30), ('bob', 40)])
    q = "SELECT name, age FROM users ORDER BY id"
    assert registry.query(q) == [{'name': 'ann', 'age': 30}, {'name': 'bob', 'age': 40}]
    assert registry.query(q, mode=ResultMode.SINGLE_ROW) == {'name': 'ann', 'age': 30}
    assert registry.query(q, mode=ResultMode.SINGLE_COLUMN) == ['ann', 'bob']
    assert registry.query(q, mode=ResultMode.SINGLE_CELL) == 'ann'
    assert registry.query(q, mode=ResultMode.NONE) == 2


def test_result_modes_on_empty_result(registry):
    q = "SELECT name FROM users"
    assert registry.query(q) == []
    assert registry.query(q, mode=ResultMode.SINGLE_ROW) == {}
    assert registry.query(q, mode=ResultMode.SINGLE_COLUMN) == []
    assert registry.query(q, mode=ResultMode.SINGLE_CELL) is None
    assert registry.query(q, mode=ResultMode.NONE) == 0


def test_prepared_query_binds_and_records_last_query(registry, seed):
    seed("INSERT INTO users(name, age) VALUES (?, ?)", [('ann', 30), ("o'neil", 41)])
    row = registry.prepared_query("SELECT * FROM users WHERE name = :name", {'name': "o'neil"},
                                  mode=ResultMode.SINGLE_ROW)
    assert row['age'] == 41
    assert registry.last_query() == "SELECT * FROM users WHERE name = 'o''neil'"
    assert registry.total_results() == 1


def test_prepared_query_accepts_colon_prefixed_keys_and_positional(registry, seed):
    seed("INSERT INTO users(name, age) VALUES (?, ?)", [('ann', 30)])
    assert registry.prepared_query("SELECT age FROM users WHERE name = :name", {':name': 'ann'},
                                   mode=ResultMode.SINGLE_CELL) == 30
    assert registry.prepared_query("SELECT age FROM users WHERE name = ?", ['ann'],
                                   mode=ResultMode.SINGLE_CELL) == 30
    assert registry.last_query() == "SELECT age FROM users WHERE name = 'ann'"


def test_insert_reports_count_and_last_insert_id(registry):
    n = registry.prepared_query("INSERT INTO users(name) VALUES (:name)", {'name': 'cy'}, mode=ResultMode.NONE)
    assert n == 1
    assert registry.affected_rows() == 1
    new_id = registry.last_insert_id()
    assert registry.query(f"SELECT name FROM users WHERE id = {new_id}", mode=ResultMode.SINGLE_CELL) == 'cy'


def test_diagnostics_empty_before_any_query():
    reg = LinkRegistry()
    assert reg.last_query() is None
    assert reg.total_results() is None
    assert reg.last_insert_id() is None


def test_last_query_is_scoped_per_thread(registry):
    registry.query("SELECT 1")
    seen = {}

    def worker():
        seen['before'] = registry.last_query()
        registry.query("SELECT 2")
        seen['after'] = registry.last_query()

    t = threading.Thread(target=worker)
    t.start()
    t.join()
    assert seen == {'before': None, 'after': 'SELECT 2'}
    assert registry.last_query() == "SELECT 1"


def test_concurrent_link_opens_once(db_path):
    reg = LinkRegistry()
    reg.add_link('main', driver='sqlite', database=str(db_path))
    handles = []
    threads = [threading.Thread(target=lambda: handles.append(reg.link('main'))) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    try:
        assert len({id(h) for h in handles}) == 1
    finally:
        reg.close_all()


def test_query_errors_raise_by_default(registry):
    with pytest.raises(sqlite3.OperationalError):
        registry.query("SELECT * FROM no_such_table")


def test_silent_errors_swallow_and_warn(db_path, capsys):
    reg = LinkRegistry()
    reg.add_link('quiet', driver='sqlite', database=str(db_path), silent_errors=True)
    try:
        assert reg.query("SELECT * FROM no_such_table") == []
        assert reg.query("SELECT * FROM no_such_table", mode=ResultMode.SINGLE_CELL) is None
        assert reg.query("SELECT * FROM no_such_table", mode=ResultMode.NONE) == 0
        assert reg.last_query() == "SELECT * FROM no_such_table"
    finally:
        reg.close_all()
    err = capsys.readouterr().err
    assert 'query_failed' in err
    assert 'no_such_table' in err


def test_silent_errors_do_not_mask_configuration_problems():
    reg = LinkRegistry()
    reg.add_link('quiet', driver='sqlite', database='/definitely/not/here/x.db', silent_errors=True)
    with pytest.raises(LinkConnectionError):
        reg.query("SELECT 1", name='quiet')


def test_debug_log_appends_substituted_sql(db_path, tmp_path):
    log_path = tmp_path / 'queries.log'
    reg = LinkRegistry()
    reg.add_link('main', driver='sqlite', database=str(db_path), debug_log=str(log_path))
    try:
        reg.query("SELECT COUNT(*) FROM users")
        reg.prepared_query("SELECT * FROM users WHERE id = :id", {'id': 7})
    finally:
        reg.close_all()
    lines = log_path.read_text(encoding='utf-8').splitlines()
    assert len(lines) == 2
    stamp, sql = lines[1].split(' ', 1)
    assert len(stamp) == len('20240101.120000') and stamp[8] == '.'
    assert sql == "SELECT * FROM users WHERE id = 7"
    assert lines[0].endswith(' SELECT COUNT(*) FROM users')


def test_escape_quotes_literals(registry):
    assert registry.escape("it's") == "'it''s'"
    assert registry.escape(None) == 'NULL'
    assert registry.escape(5) == '5'
    assert registry.escape(b'\x01\xff') == "X'01FF'"


def test_close_drops_handle_and_link_reopens(registry):
    first = registry.link('main')
    registry.close('main')
    assert first.closed
    second = registry.link('main')
    assert second is not first
    assert registry.query("SELECT 1 AS one", mode=ResultMode.SINGLE_CELL) == 1


def test_unprepare_skips_quoted_text():
    quote = lambda v: repr(v)
    sql = "SELECT ':keep', `a:b` FROM t WHERE x = :x AND y = ?"
    assert unprepare(sql, {'x': 1}, quote) == "SELECT ':keep', `a:b` FROM t WHERE x = 1 AND y = ?"
    assert unprepare("a = ? AND b = ?", [1], quote) == "a = 1 AND b = ?"
    assert unprepare("a = :a", None, quote) == "a = :a"


def test_link_config_from_env(monkeypatch, capsys):
    monkeypatch.setenv('RECORDLINK_DRIVER', 'mysql')
    monkeypatch.setenv('RECORDLINK_DATABASE', 'app')
    monkeypatch.setenv('RECORDLINK_HOST', 'db.internal')
    monkeypatch.setenv('RECORDLINK_PORT', 'not-a-number')
    monkeypatch.setenv('RECORDLINK_SILENT_ERRORS', '1')
    cfg = LinkConfig.from_env()
    assert cfg.driver == 'mysql' and cfg.database == 'app' and cfg.host == 'db.internal'
    assert cfg.port is None
    assert cfg.silent_errors is True
    assert cfg.debug_log is None
    err = capsys.readouterr().err
    assert 'invalid_env_int' in err and 'RECORDLINK_PORT' in err


def test_link_config_from_env_requires_driver_and_database(monkeypatch):
    monkeypatch.delenv('RECORDLINK_DRIVER', raising=False)
    monkeypatch.setenv('RECORDLINK_DATABASE', 'app')
    with pytest.raises(ConfigurationError):
        LinkConfig.from_env()


def test_link_config_rejects_unknown_keys():
    with pytest.raises(ConfigurationError):
        LinkConfig.from_mapping({'driver': 'sqlite', 'database': 'x', 'colour': 'blue'})
