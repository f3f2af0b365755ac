"""Helpers that read the single value produced by a one-row query."""

from __future__ import annotations

import sqlite3
from typing import Any

from .errors import ResultCode, SQLiteError
from .exec import ExecOptions, execute


class NoResultsError(SQLiteError):
    """The statement produced no result rows."""

    def __init__(self) -> None:
        super().__init__("sqlite: statement has no results", ResultCode.ERROR)


class MultipleResultsError(SQLiteError):
    """The statement produced more than one result row."""

    def __init__(self) -> None:
        super().__init__("sqlite: statement has multiple result rows", ResultCode.ERROR)


def _single_value(conn: sqlite3.Connection, query: str, args: tuple) -> Any:
    rows: list[tuple] = []
    execute(conn, query, ExecOptions(args=args, result_func=rows.append))
    if not rows:
        raise NoResultsError()
    if len(rows) > 1:
        raise MultipleResultsError()
    return rows[0][0]


def _to_float(value: Any) -> float:
    if value is None:
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, bytes):
        value = value.decode("utf-8", "replace")
    try:
        return float(value.strip())
    except ValueError:
        return 0.0


def _to_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().lstrip("+-").isdigit():
        return int(value.strip())
    return int(_to_float(value))


def result_int(conn: sqlite3.Connection, query: str, *args: Any) -> int:
    """Return the first column of the only result row as an integer."""
    return _to_int(_single_value(conn, query, args))


def result_bool(conn: sqlite3.Connection, query: str, *args: Any) -> bool:
    """Report whether the first column of the only result row is non-zero."""
    return result_int(conn, query, *args) != 0


def result_text(conn: sqlite3.Connection, query: str, *args: Any) -> str:
    """Return the first column of the only result row as text."""
    value = _single_value(conn, query, args)
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", "replace")
    return str(value)


def result_float(conn: sqlite3.Connection, query: str, *args: Any) -> float:
    """Return the first column of the only result row as a real number."""
    return _to_float(_single_value(conn, query, args))