import sqlite3

import pytest

from sqlitekit.errors import SQLiteError
from sqlitekit.query import (
    MultipleResultsError,
    NoResultsError,
    result_bool,
    result_float,
    result_int,
    result_text,
)


@pytest.fixture
def conn():
    c = sqlite3.connect(":memory:", isolation_level=None)
    c.execute("CREATE TABLE t (n INTEGER, s TEXT)")
    c.execute("INSERT INTO t VALUES (5, 'five'), (6, 'six')")
    yield c
    c.close()


def test_result_int(conn):
    assert result_int(conn, "SELECT n FROM t WHERE s = ?;", "five") == 5


def test_result_text(conn):
    assert result_text(conn, "SELECT s FROM t WHERE n = ?;", 6) == "six"


def test_result_float(conn):
    assert result_float(conn, "SELECT n / 2.0 FROM t WHERE n = ?;", 5) == 2.5


def test_result_bool(conn):
    assert result_bool(conn, "SELECT n > ? FROM t WHERE n = 5;", 3) is True
    assert result_bool(conn, "SELECT n > ? FROM t WHERE n = 5;", 9) is False


def test_null_values(conn):
    assert result_int(conn, "SELECT NULL;") == 0
    assert result_text(conn, "SELECT NULL;") == ""


def test_no_results(conn):
    with pytest.raises(NoResultsError):
        result_int(conn, "SELECT n FROM t WHERE n = ?;", 100)


def test_multiple_results(conn):
    with pytest.raises(MultipleResultsError):
        result_int(conn, "SELECT n FROM t;")


def test_errors_are_sqlite_errors(conn):
    with pytest.raises(SQLiteError):
        result_text(conn, "SELECT nothing FROM nowhere;")