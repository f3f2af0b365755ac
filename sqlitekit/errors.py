"""Result codes and the error type raised by sqlitekit."""

from __future__ import annotations

import enum
import sqlite3


class ResultCode(enum.IntEnum):
    """SQLite primary and extended result codes used by this package."""

    OK = 0
    ERROR = 1
    INTERNAL = 2
    PERM = 3
    ABORT = 4
    BUSY = 5
    LOCKED = 6
    NOMEM = 7
    READONLY = 8
    INTERRUPT = 9
    IOERR = 10
    CORRUPT = 11
    NOTFOUND = 12
    FULL = 13
    CANTOPEN = 14
    PROTOCOL = 15
    EMPTY = 16
    SCHEMA = 17
    TOOBIG = 18
    CONSTRAINT = 19
    MISMATCH = 20
    MISUSE = 21
    NOLFS = 22
    AUTH = 23
    FORMAT = 24
    RANGE = 25
    NOTADB = 26
    BUSY_SNAPSHOT = 517
    CONSTRAINT_UNIQUE = 2067
    CONSTRAINT_PRIMARYKEY = 1555
    CONSTRAINT_NOTNULL = 1299
    CONSTRAINT_FOREIGNKEY = 787


class SQLiteError(Exception):
    """An error carrying an SQLite result code."""

    def __init__(self, message: str, code: int = ResultCode.ERROR) -> None:
        super().__init__(message)
        self.message = message
        self.code = code

    def __str__(self) -> str:
        return self.message


def _to_code(value: int) -> int:
    try:
        return ResultCode(value)
    except ValueError:
        return value


def error_code(err: BaseException | None) -> int:
    """Return the SQLite result code that best describes ``err``."""
    if err is None:
        return ResultCode.OK
    seen: set[int] = set()
    current: BaseException | None = err
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if isinstance(current, SQLiteError):
            return _to_code(current.code)
        if isinstance(current, sqlite3.Error):
            code = getattr(current, "sqlite_errorcode", None)
            if code is None:
                return ResultCode.ERROR
            return _to_code(code)
        current = current.__cause__
    return ResultCode.ERROR


def wrap_sqlite_error(err: BaseException) -> SQLiteError:
    """Convert ``err`` into an :class:`SQLiteError`, keeping its result code."""
    if isinstance(err, SQLiteError):
        return err
    wrapped = SQLiteError(f"sqlite: {err}", error_code(err))
    wrapped.__cause__ = err
    return wrapped