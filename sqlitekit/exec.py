"""Utilities for executing SQL statements and scripts on sqlite3 connections.

Statements are run with :func:`execute`, :func:`execute_script` and
:func:`execute_transient`; the ``*_fs`` variants read the SQL from a file.
Connections should be in autocommit mode (``isolation_level=None``) so that
transactions and savepoints are under explicit control.
"""

from __future__ import annotations

import sqlite3
import warnings
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator, Mapping, Sequence

from .errors import ResultCode, SQLiteError, wrap_sqlite_error

_FORBID_MISSING = 1
_FORBID_EXTRA = 2

_NAME_CHARS = set("abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789_")


@dataclass
class ExecOptions:
    """Optional arguments for executing a statement.

    ``args`` bind to ?1, ?2, ...; ``named`` keys include their prefix
    (``:``, ``@`` or ``$``). ``result_func`` is called with each result row.
    """

    args: Sequence[Any] = ()
    named: Mapping[str, Any] | None = None
    result_func: Callable[[tuple], Any] | None = None


class Bitset:
    """A growable set of non-negative integers."""

    def __init__(self, words: Iterable[int] = ()) -> None:
        self._bits = 0
        for i, word in enumerate(words):
            self._bits |= (word & 0xFFFFFFFFFFFFFFFF) << (64 * i)

    def set(self, n: int) -> None:
        self._bits |= 1 << n

    def has_all(self, n: int) -> bool:
        """Report whether every integer in [0, n) is present."""
        mask = (1 << n) - 1
        return self._bits & mask == mask

    def first_missing(self) -> int:
        inverted = ~self._bits
        return (inverted & -inverted).bit_length() - 1

    def __repr__(self) -> str:
        return f"Bitset({self._bits:#x})"


def _skip_span(sql: str, i: int) -> int | None:
    """Return the end of a quoted string or comment starting at ``i``."""
    c = sql[i]
    if c in "'\"`":
        j = i + 1
        while j < len(sql):
            if sql[j] == c:
                if j + 1 < len(sql) and sql[j + 1] == c:
                    j += 2
                    continue
                return j + 1
            j += 1
        return len(sql)
    if c == "[":
        j = sql.find("]", i + 1)
        return len(sql) if j < 0 else j + 1
    if sql.startswith("--", i):
        j = sql.find("\n", i + 2)
        return len(sql) if j < 0 else j + 1
    if sql.startswith("/*", i):
        j = sql.find("*/", i + 2)
        return len(sql) if j < 0 else j + 2
    return None


def parameter_names(query: str) -> list[str]:
    """Return the parameter names of ``query`` in binding order.

    Entry ``i`` names parameter ``i + 1``; anonymous ``?`` parameters
    have the empty string as their name.
    """
    slots: dict[int, str] = {}
    known: set[str] = set()
    max_index = 0
    i = 0
    while i < len(query):
        end = _skip_span(query, i)
        if end is not None:
            i = end
            continue
        c = query[i]
        if c == "?":
            j = i + 1
            while j < len(query) and query[j].isdigit():
                j += 1
            if j == i + 1:
                max_index += 1
                slots[max_index] = ""
            else:
                name = query[i:j]
                if name not in known:
                    known.add(name)
                    index = int(query[i + 1 : j])
                    slots[index] = name
                    max_index = max(max_index, index)
            i = j
            continue
        if c in ":@$":
            j = i + 1
            while j < len(query) and query[j] in _NAME_CHARS:
                j += 1
            if j > i + 1:
                name = query[i:j]
                if name not in known:
                    known.add(name)
                    max_index += 1
                    slots[max_index] = name
                i = j
                continue
        i += 1
    return [slots.get(k, "") for k in range(1, max_index + 1)]


def _split_statements(script: str) -> list[str]:
    statements: list[str] = []
    start = 0
    i = 0
    while i < len(script):
        end = _skip_span(script, i)
        if end is not None:
            i = end
            continue
        if script[i] == ";":
            candidate = script[start : i + 1]
            if sqlite3.complete_statement(candidate):
                if candidate.strip():
                    statements.append(candidate.strip())
                start = i + 1
        i += 1
    rest = script[start:].strip()
    if rest:
        statements.append(rest)
    return statements


def _bind_value(value: Any) -> Any:
    if value is None or isinstance(value, (int, float, str, bytes)):
        return value
    if isinstance(value, (bytearray, memoryview)):
        return bytes(value)
    return str(value)


def _check_conn(conn: Any) -> None:
    if conn is None:
        raise SQLiteError("sqlitekit: nil connection", ResultCode.MISUSE)


def _run(conn: sqlite3.Connection, sql: str, flags: int, opts: ExecOptions | None) -> None:
    names = parameter_names(sql)
    count = len(names)
    values: list[Any] = [None] * count
    provided = Bitset()
    if opts is not None:
        args = list(opts.args)
        if len(args) > count:
            raise SQLiteError(
                f"sqlitekit: argument out of range (len(Args) > BindParamCount(); "
                f"{len(args)} > {count})",
                ResultCode.RANGE,
            )
        for i, arg in enumerate(args):
            provided.set(i)
            values[i] = _bind_value(arg)
        named = opts.named or {}
        if named:
            unused = set(named) if flags & _FORBID_EXTRA else set()
            for i, name in enumerate(names):
                if not name:
                    continue
                if name not in named:
                    if flags & _FORBID_MISSING:
                        raise SQLiteError(f"missing parameter {name}", ResultCode.ERROR)
                    continue
                unused.discard(name)
                provided.set(i)
                values[i] = _bind_value(named[name])
            if unused:
                raise SQLiteError(
                    f"sqlitekit: argument out of range: unknown argument {min(unused)}",
                    ResultCode.RANGE,
                )
    if flags & _FORBID_MISSING and not provided.has_all(count):
        i = provided.first_missing() + 1
        name = names[i - 1] or f"?{i}"
        raise SQLiteError(f"sqlitekit: missing argument for {name}", ResultCode.ERROR)
    try:
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", DeprecationWarning)
            cursor = conn.execute(sql, values)
        try:
            for row in cursor:
                if opts is not None and opts.result_func is not None:
                    opts.result_func(row)
        finally:
            cursor.close()
    except sqlite3.Error as e:
        raise wrap_sqlite_error(e) from e


def _single_statement(query: str) -> str:
    statements = _split_statements(query)
    if len(statements) > 1:
        raise SQLiteError(
            f"sqlitekit: execute: query {query!r} has trailing bytes", ResultCode.ERROR
        )
    return statements[0] if statements else query


def exec_query(conn: sqlite3.Connection, query: str, result_fn=None, *args: Any) -> None:
    """Execute ``query`` binding ``args`` positionally; missing arguments are NULL."""
    _check_conn(conn)
    _run(conn, query, 0, ExecOptions(args=args, result_func=result_fn))


def exec_transient(conn: sqlite3.Connection, query: str, result_fn=None, *args: Any) -> None:
    """Like :func:`exec_query`, but rejects trailing statements."""
    _check_conn(conn)
    _run(conn, _single_statement(query), 0, ExecOptions(args=args, result_func=result_fn))


def execute(conn: sqlite3.Connection, query: str, opts: ExecOptions | None = None) -> None:
    """Execute a single statement; every parameter must be bound exactly."""
    _check_conn(conn)
    _run(conn, query, _FORBID_MISSING | _FORBID_EXTRA, opts)


def execute_transient(
    conn: sqlite3.Connection, query: str, opts: ExecOptions | None = None
) -> None:
    """Execute a single statement, rejecting any trailing statements."""
    _check_conn(conn)
    _run(conn, _single_statement(query), _FORBID_MISSING | _FORBID_EXTRA, opts)


def _read(directory: str | Path, filename: str) -> str:
    return (Path(directory) / filename).read_text(encoding="utf-8")


def _prefixed(prefix: str, err: SQLiteError) -> SQLiteError:
    wrapped = SQLiteError(f"{prefix}: {err}", err.code)
    wrapped.__cause__ = err
    return wrapped


def execute_fs(
    conn: sqlite3.Connection, directory: str | Path, filename: str, opts: ExecOptions | None = None
) -> None:
    """Execute the single statement stored in ``directory/filename``."""
    query = _read(directory, filename).strip()
    try:
        execute(conn, query, opts)
    except SQLiteError as e:
        raise _prefixed(f"sqlitekit: execute {filename}", e) from e


def execute_transient_fs(
    conn: sqlite3.Connection, directory: str | Path, filename: str, opts: ExecOptions | None = None
) -> None:
    """Execute the single statement stored in a file, without caching."""
    query = _read(directory, filename).strip()
    try:
        execute_transient(conn, query, opts)
    except SQLiteError as e:
        raise _prefixed(f"sqlitekit: execute {filename}", e) from e


@contextmanager
def _script_savepoint(conn: sqlite3.Connection) -> Iterator[None]:
    name = "sqlitekit.script"
    _run(conn, f'SAVEPOINT "{name}";', 0, None)
    try:
        yield
    except BaseException:
        if conn.in_transaction:
            _run(conn, f'ROLLBACK TO "{name}";', 0, None)
            _run(conn, f'RELEASE "{name}";', 0, None)
        raise
    if conn.in_transaction:
        try:
            _run(conn, f'RELEASE "{name}";', 0, None)
        except SQLiteError:
            if conn.in_transaction:
                _run(conn, f'ROLLBACK TO "{name}";', 0, None)
                _run(conn, f'RELEASE "{name}";', 0, None)
            raise


def execute_script(
    conn: sqlite3.Connection, queries: str, opts: ExecOptions | None = None
) -> None:
    """Execute a script inside a savepoint, rolled back on any error.

    ``opts.result_func`` is ignored.
    """
    _check_conn(conn)
    stmt_opts = None
    unused: set[str] = set()
    if opts is not None:
        stmt_opts = ExecOptions(args=opts.args, named=opts.named)
        unused = set(opts.named or {})
    with _script_savepoint(conn):
        for statement in _split_statements(queries):
            unused.difference_update(parameter_names(statement))
            _run(conn, statement, _FORBID_MISSING, stmt_opts)
        if unused:
            raise SQLiteError(
                f"sqlitekit: argument out of range: unknown argument {min(unused)}",
                ResultCode.RANGE,
            )


def exec_script(conn: sqlite3.Connection, queries: str) -> None:
    """Execute a script without options."""
    execute_script(conn, queries, None)


def execute_script_fs(
    conn: sqlite3.Connection, directory: str | Path, filename: str, opts: ExecOptions | None = None
) -> None:
    """Execute a script read from ``directory/filename``."""
    queries = _read(directory, filename)
    try:
        execute_script(conn, queries, opts)
    except SQLiteError as e:
        raise _prefixed(f"sqlitekit: execute {filename}", e) from e