"""Savepoints and transactions as context managers.

Each context manager releases or commits when its block finishes normally
and rolls back when the block raises. If the connection has already left
its transaction (for example after an interrupted statement or an explicit
COMMIT or ROLLBACK), there is nothing to undo and the block's outcome is
passed through unchanged.
"""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from typing import Iterator, Sequence

from .errors import SQLiteError
from .exec import execute

_DEFAULT_SAVEPOINT_NAME = "sqlitekit.save"


def _roll_back(conn: sqlite3.Connection, statements: Sequence[str], original: BaseException) -> None:
    for sql in statements:
        try:
            execute(conn, sql)
        except SQLiteError as err:
            raise SQLiteError(f"{original}\n\t{err}", err.code) from err


@contextmanager
def _guard(
    conn: sqlite3.Connection, begin: str, finish: str, rollback: Sequence[str]
) -> Iterator[sqlite3.Connection]:
    execute(conn, begin)
    try:
        yield conn
    except BaseException as exc:
        if conn.in_transaction:
            _roll_back(conn, rollback, exc)
        raise
    if not conn.in_transaction:
        return
    try:
        execute(conn, finish)
    except SQLiteError as exc:
        if conn.in_transaction:
            _roll_back(conn, rollback, exc)
        raise


def save(conn: sqlite3.Connection, name: str | None = None):
    """Open a SAVEPOINT that is released on success and rolled back on error."""
    name = name or _DEFAULT_SAVEPOINT_NAME
    if '"' in name:
        raise ValueError(f"sqlitekit.save: invalid name: {name!r}")
    quoted = f'"{name}"'
    return _guard(
        conn,
        f"SAVEPOINT {quoted};",
        f"RELEASE {quoted};",
        (f"ROLLBACK TO {quoted};", f"RELEASE {quoted};"),
    )


def _transaction(conn: sqlite3.Connection, mode: str):
    return _guard(conn, f"BEGIN {mode};", "COMMIT;", ("ROLLBACK;",))


def transaction(conn: sqlite3.Connection):
    """Open a DEFERRED transaction, committed on success and rolled back on error."""
    return _transaction(conn, "DEFERRED")


def immediate_transaction(conn: sqlite3.Connection):
    """Open an IMMEDIATE transaction, committed on success and rolled back on error."""
    return _transaction(conn, "IMMEDIATE")


def exclusive_transaction(conn: sqlite3.Connection):
    """Open an EXCLUSIVE transaction, committed on success and rolled back on error."""
    return _transaction(conn, "EXCLUSIVE")