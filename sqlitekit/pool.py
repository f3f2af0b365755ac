"""A fixed-size, thread-safe pool of SQLite connections."""

from __future__ import annotations

import sqlite3
import threading
import time
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Iterator

from .errors import ResultCode, SQLiteError, error_code, wrap_sqlite_error

_DEFAULT_POOL_SIZE = 10


@dataclass
class PoolOptions:
    """Optional settings for :class:`Pool`.

    ``pool_size`` below 1 selects a default of 10 connections.
    ``prepare_conn`` is called on a connection before its first use and
    again on later uses until it succeeds once.
    """

    pool_size: int = 0
    prepare_conn: Callable[[sqlite3.Connection], object] | None = None
    wal: bool = True
    busy_timeout: float = 5.0


class PoolClosedError(SQLiteError):
    """The pool has been closed."""

    def __init__(self, message: str = "get sqlite connection: pool closed") -> None:
        super().__init__(message, ResultCode.ERROR)


def _open(uri: str, opts: PoolOptions) -> sqlite3.Connection:
    try:
        conn = sqlite3.connect(
            uri,
            timeout=opts.busy_timeout,
            isolation_level=None,
            check_same_thread=False,
            uri=True,
        )
    except sqlite3.Error as e:
        raise wrap_sqlite_error(e) from e
    if opts.wal:
        try:
            conn.execute("PRAGMA journal_mode=WAL;").close()
        except sqlite3.Error as e:
            conn.close()
            raise wrap_sqlite_error(e) from e
    return conn


class Pool:
    """A fixed-size pool of SQLite connections, safe to share between threads."""

    def __init__(self, uri: str, opts: PoolOptions | None = None) -> None:
        if uri == ":memory:":
            raise SQLiteError(
                'sqlite: ":memory:" does not work with multiple connections, '
                'use "file::memory:?mode=memory"',
                ResultCode.ERROR,
            )
        opts = opts or PoolOptions()
        size = opts.pool_size if opts.pool_size >= 1 else _DEFAULT_POOL_SIZE
        self._prepare = opts.prepare_conn
        self._cond = threading.Condition()
        self._free: deque[sqlite3.Connection] = deque()
        self._all: set[sqlite3.Connection] = set()
        self._busy: set[sqlite3.Connection] = set()
        self._inited: set[sqlite3.Connection] = set()
        self._closed = False
        try:
            for _ in range(size):
                conn = _open(uri, opts)
                self._all.add(conn)
                self._free.append(conn)
        except BaseException:
            for conn in self._all:
                conn.close()
            raise

    def take(self, timeout: float | None = None) -> sqlite3.Connection:
        """Take a connection, waiting up to ``timeout`` seconds for one to be free."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                if self._closed:
                    raise PoolClosedError()
                if self._free:
                    conn = self._free.popleft()
                    self._busy.add(conn)
                    needs_prepare = self._prepare is not None and conn not in self._inited
                    break
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    raise TimeoutError("get sqlite connection: timed out")
                self._cond.wait(remaining)

        if needs_prepare:
            try:
                self._prepare(conn)
            except Exception as e:
                self._return(conn)
                raise SQLiteError(f"get sqlite connection: {e}", error_code(e)) from e
            with self._cond:
                self._inited.add(conn)
        return conn

    def put(self, conn: sqlite3.Connection | None) -> None:
        """Return a connection taken from this pool. ``None`` is ignored."""
        if conn is None:
            return
        self._return(conn)

    def _return(self, conn: sqlite3.Connection) -> None:
        with self._cond:
            if conn not in self._all:
                raise ValueError("sqlitekit.Pool.put: connection not created by this pool")
            if conn not in self._busy:
                raise ValueError("sqlitekit.Pool.put: connection already returned")
            self._busy.discard(conn)
            self._free.append(conn)
            self._cond.notify_all()

    @contextmanager
    def connection(self, timeout: float | None = None) -> Iterator[sqlite3.Connection]:
        """Take a connection for the duration of a ``with`` block."""
        conn = self.take(timeout)
        try:
            yield conn
        finally:
            self.put(conn)

    def close(self) -> None:
        """Interrupt and close every connection, waiting for borrowed ones to return."""
        with self._cond:
            if self._closed:
                raise PoolClosedError("close sqlite pool: already closed")
            self._closed = True
            borrowed = list(self._busy)
            self._cond.notify_all()
        for conn in borrowed:
            try:
                conn.interrupt()
            except sqlite3.Error:
                pass
        with self._cond:
            while len(self._free) < len(self._all):
                self._cond.wait()
            conns = list(self._free)
            self._free.clear()
            self._all.clear()
        first_error: sqlite3.Error | None = None
        for conn in conns:
            try:
                conn.close()
            except sqlite3.Error as e:
                first_error = first_error or e
        if first_error is not None:
            raise wrap_sqlite_error(first_error) from first_error

    def __enter__(self) -> Pool:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()