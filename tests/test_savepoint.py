import sqlite3

import pytest

from sqlitekit.errors import ResultCode, SQLiteError, error_code
from sqlitekit.exec import ExecOptions, exec_script, execute
from sqlitekit.query import result_int
from sqlitekit.savepoint import (
    exclusive_transaction,
    immediate_transaction,
    save,
    transaction,
)


class _Failure(Exception):
    pass


@pytest.fixture
def conn():
    connection = sqlite3.connect(":memory:", isolation_level=None)
    execute(connection, "CREATE TABLE t (c1);")
    yield connection
    connection.close()


def _count(connection):
    return result_int(connection, "SELECT count(*) FROM t;")


def _insert(connection, guard, succeed):
    with guard(connection):
        execute(connection, "INSERT INTO t VALUES ('hello');")
        if not succeed:
            raise _Failure("succeed=false")


@pytest.mark.parametrize("guard", [save, transaction, immediate_transaction, exclusive_transaction])
def test_commit_and_rollback(conn, guard):
    _insert(conn, guard, True)
    assert _count(conn) == 1
    _insert(conn, guard, True)
    assert _count(conn) == 2
    with pytest.raises(_Failure):
        _insert(conn, guard, False)
    assert _count(conn) == 2
    assert not conn.in_transaction


def test_savepoint_sqlite_error_rolls_back(conn):
    execute(conn, "INSERT INTO t VALUES ('one');")
    with pytest.raises(SQLiteError) as info:
        with save(conn):
            execute(conn, "INSERT INTO t VALUES ('hello');")
            execute(conn, "SELECT bad query")
    assert "sqlite" in str(info.value)
    assert _count(conn) == 1


def test_savepoint_invalid_name(conn):
    with pytest.raises(ValueError):
        with save(conn, 'bad"name'):
            pass
    assert not conn.in_transaction


def test_savepoint_release_visible_to_other_connection(tmp_path):
    path = str(tmp_path / "release.db")
    conn1 = sqlite3.connect(path, isolation_level=None, timeout=0.5)
    conn2 = sqlite3.connect(path, isolation_level=None, timeout=0.5)
    try:
        execute(conn1, "CREATE TABLE t (c1);")
        _insert(conn1, save, True)
        assert result_int(conn2, "SELECT count(*) FROM t;") == 1
        with pytest.raises(_Failure):
            _insert(conn1, save, False)
        assert not conn1.in_transaction
        assert result_int(conn2, "SELECT count(*) FROM t;") == 1
    finally:
        conn1.close()
        conn2.close()


def test_nested_savepoints_all_roll_back(conn):
    with save(conn):
        execute(conn, "INSERT INTO t (c1) VALUES (1);")
    with pytest.raises(_Failure):
        with save(conn):
            execute(conn, "INSERT INTO t (c1) VALUES (2);")
            with save(conn):
                execute(conn, "INSERT INTO t (c1) VALUES (3);")
                raise _Failure("inner")
    assert _count(conn) == 1
    assert not conn.in_transaction


def test_inner_savepoint_rollback_keeps_outer_work(conn):
    with save(conn):
        execute(conn, "INSERT INTO t (c1) VALUES (1);")
        with pytest.raises(_Failure):
            with save(conn):
                execute(conn, "INSERT INTO t (c1) VALUES (2);")
                raise _Failure("inner")
    assert result_int(conn, "SELECT sum(c1) FROM t;") == 1


VERY_LONG_SCRIPT = """
drop table if exists naturals;
create table naturals
( n integer unique primary key asc,
  isprime bool,
  factor integer);

with recursive
  nn (n)
as (
  select 2
  union all
  select n+1 as newn from nn
  where newn < 1e10
)
insert into naturals
select n, 1, null from nn;
"""


def test_interrupted_long_query_rolls_back(conn):
    with save(conn):
        execute(conn, "INSERT INTO t (c1) VALUES (1);")

    fired = []

    def interrupt_once():
        if fired:
            return 0
        fired.append(True)
        return 1

    with pytest.raises(SQLiteError) as info:
        with save(conn):
            execute(conn, "INSERT INTO t (c1) VALUES (3);")
            conn.set_progress_handler(interrupt_once, 1000)
            exec_script(conn, VERY_LONG_SCRIPT)
    conn.set_progress_handler(None, 0)
    assert error_code(info.value) == ResultCode.INTERRUPT
    assert not conn.in_transaction
    assert _count(conn) == 1


def test_savepoint_busy_snapshot(tmp_path):
    path = str(tmp_path / "busysnapshot.db")
    conn0 = sqlite3.connect(path, isolation_level=None, timeout=0.1)
    conn1 = sqlite3.connect(path, isolation_level=None, timeout=0.1)
    try:
        execute(conn0, "PRAGMA journal_mode=WAL;")
        exec_script(
            conn0,
            """
            DROP TABLE IF EXISTS t;
            CREATE TABLE t (c, b BLOB);
            INSERT INTO t (c, b) VALUES (4, 'hi');
            """,
        )
        with pytest.raises(SQLiteError) as info:
            with save(conn0):
                c = result_int(conn0, "SELECT count(*) FROM t WHERE c > 3;")
                execute(conn1, "INSERT INTO t (c) VALUES (4);")
                execute(conn0, "UPDATE t SET c = ? WHERE c = 4;", ExecOptions(args=[c]))
        assert error_code(info.value) == ResultCode.BUSY_SNAPSHOT
        assert not conn0.in_transaction
    finally:
        conn0.close()
        conn1.close()


def test_transaction_commit_failure_rolls_back():
    connection = sqlite3.connect(":memory:", isolation_level=None)
    try:
        exec_script(
            connection,
            """
            CREATE TABLE parent (id INTEGER PRIMARY KEY);
            CREATE TABLE child (pid REFERENCES parent (id) DEFERRABLE INITIALLY DEFERRED);
            """,
        )
        execute(connection, "PRAGMA foreign_keys = on;")
        with pytest.raises(SQLiteError) as info:
            with transaction(connection):
                execute(connection, "INSERT INTO child (pid) VALUES (1);")
        assert error_code(info.value) & 0xFF == ResultCode.CONSTRAINT
        assert not connection.in_transaction
        assert result_int(connection, "SELECT count(*) FROM child;") == 0
    finally:
        connection.close()


def test_transaction_inside_transaction_fails(conn):
    with transaction(conn):
        with pytest.raises(SQLiteError):
            with transaction(conn):
                pass
        execute(conn, "INSERT INTO t (c1) VALUES (1);")
    assert _count(conn) == 1


def test_explicit_commit_inside_block(conn):
    with transaction(conn):
        execute(conn, "INSERT INTO t (c1) VALUES (1);")
        execute(conn, "COMMIT;")
    assert _count(conn) == 1
    assert not conn.in_transaction