"""A connection pool that applies schema migrations before handing out connections.

The migrations in a :class:`Schema` are applied once, in order, each in its
own transaction. The database's ``user_version`` records how many have run,
and ``application_id`` guards against opening another application's file.
"""

from __future__ import annotations

import sqlite3
import threading
import time
from dataclasses import dataclass
from typing import Callable, Sequence

from .errors import SQLiteError, error_code
from .exec import execute, execute_script, execute_transient
from .pool import Pool, PoolOptions
from .query import result_bool, result_int
from .savepoint import save

_RETRY_INTERVAL = 5.0
_CLOSED_BEFORE_MIGRATION = "closed before successful migration"


@dataclass
class MigrationOptions:
    """Optional settings for a single migration.

    With ``disable_foreign_keys``, foreign key enforcement is switched off
    for the migration's transaction and restored afterwards.
    """

    disable_foreign_keys: bool = False


@dataclass
class Schema:
    """The migrations an application's database must have applied.

    ``migration_options[i]`` applies to ``migrations[i]`` and may be shorter.
    ``repeatable_migration`` runs as part of the last migration's transaction
    whenever any migration ran.
    """

    migrations: Sequence[str] = ()
    migration_options: Sequence[MigrationOptions | None] = ()
    app_id: int = 0
    repeatable_migration: str = ""


@dataclass
class Options:
    """Optional behaviour for :class:`MigrationPool`.

    ``on_start_migrate`` and ``on_ready`` are each called at most once;
    ``on_error`` receives errors met while opening and migrating.
    """

    pool_size: int = 0
    wal: bool = True
    prepare_conn: Callable[[sqlite3.Connection], object] | None = None
    on_start_migrate: Callable[[], object] | None = None
    on_ready: Callable[[], object] | None = None
    on_error: Callable[[BaseException], object] | None = None


def _wrapped(message: str, err: BaseException) -> SQLiteError:
    wrapped = SQLiteError(f"{message}: {err}", error_code(err))
    wrapped.__cause__ = err
    return wrapped


class MigrationPool:
    """A pool whose connections are available only after migration succeeds.

    Opening and migrating happen in a background thread; :meth:`get` waits
    for them to finish.
    """

    def __init__(self, uri: str, schema: Schema, opts: Options | None = None) -> None:
        self._opts = opts or Options()
        self._cond = threading.Condition()
        self._retry = False
        self._cancelled = False
        self._closed = False
        self._migrating: sqlite3.Connection | None = None
        self._ready = threading.Event()
        self._pool: Pool | None = None
        self._err: BaseException | None = None
        self._thread = threading.Thread(target=self._run, args=(uri, schema), daemon=True)
        self._thread.start()

    def _report(self, err: BaseException) -> None:
        if self._opts.on_error is not None:
            self._opts.on_error(err)

    def _run(self, uri: str, schema: Schema) -> None:
        try:
            self._pool = self._open(uri, schema)
        except Exception as err:
            self._err = err
            self._report(err)
        finally:
            self._ready.set()

    def _wait_for_retry(self) -> None:
        with self._cond:
            while not self._retry and not self._cancelled:
                self._cond.wait()
            if self._cancelled:
                raise SQLiteError(_CLOSED_BEFORE_MIGRATION)
            self._retry = False

    def _open(self, uri: str, schema: Schema) -> Pool:
        first = True
        while True:
            if not first:
                self._wait_for_retry()
            first = False
            if self._cancelled:
                raise SQLiteError(_CLOSED_BEFORE_MIGRATION)

            try:
                pool = Pool(
                    uri,
                    PoolOptions(
                        pool_size=self._opts.pool_size,
                        prepare_conn=self._opts.prepare_conn,
                        wal=self._opts.wal,
                    ),
                )
            except Exception as err:
                self._report(err)
                continue

            try:
                conn = pool.take()
            except Exception:
                try:
                    pool.close()
                except Exception as close_err:
                    self._report(
                        _wrapped("close after failed connection preparation", close_err)
                    )
                raise

            with self._cond:
                cancelled = self._cancelled
                if not cancelled:
                    self._migrating = conn
            try:
                if cancelled:
                    raise SQLiteError(_CLOSED_BEFORE_MIGRATION)
                _migrate_db(conn, schema, self._opts.on_start_migrate)
            except Exception:
                with self._cond:
                    self._migrating = None
                pool.put(conn)
                try:
                    pool.close()
                except Exception as close_err:
                    self._report(_wrapped("close after failed migration", close_err))
                raise
            with self._cond:
                self._migrating = None
            pool.put(conn)
            if self._opts.on_ready is not None:
                self._opts.on_ready()
            return pool

    def _request_retry(self) -> None:
        with self._cond:
            self._retry = True
            self._cond.notify_all()

    def get(self, timeout: float | None = None) -> sqlite3.Connection:
        """Return a connection, waiting up to ``timeout`` seconds for migration."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while not self._ready.is_set():
            self._request_retry()
            wait = _RETRY_INTERVAL
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise TimeoutError("get sqlite connection: timed out")
                wait = min(wait, remaining)
            self._ready.wait(wait)

        if self._err is not None:
            raise _wrapped("get sqlite connection", self._err) from self._err
        assert self._pool is not None
        remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
        try:
            return self._pool.take(remaining)
        except SQLiteError as err:
            raise _wrapped("get sqlite connection", err) from err

    def put(self, conn: sqlite3.Connection) -> None:
        """Return a connection obtained from :meth:`get`."""
        if not self._ready.is_set():
            raise RuntimeError("MigrationPool.put before pool is ready")
        if self._err is not None or self._pool is None:
            raise RuntimeError("MigrationPool.put on failed pool")
        self._pool.put(conn)

    def check_health(self) -> None:
        """Raise :class:`SQLiteError` unless migration has completed successfully."""
        with self._cond:
            closed = self._closed
        if closed:
            raise SQLiteError("sqlite pool health: closed")
        if not self._ready.is_set():
            raise SQLiteError("sqlite pool health: not ready")
        if self._err is not None:
            raise _wrapped("sqlite pool health", self._err) from self._err

    def close(self) -> None:
        """Close every connection, interrupting a migration in progress."""
        with self._cond:
            if self._closed:
                raise SQLiteError("close sqlite pool: already closed")
            self._closed = True
            self._cancelled = True
            migrating = self._migrating
            self._cond.notify_all()
        if migrating is not None:
            try:
                migrating.interrupt()
            except sqlite3.Error:
                pass
        self._ready.wait()
        self._thread.join()
        if self._pool is not None:
            self._pool.close()

    def __enter__(self) -> MigrationPool:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


def migrate(conn: sqlite3.Connection, schema: Schema) -> None:
    """Apply any migrations in ``schema`` that the database has not yet run.

    ``conn`` must be in autocommit mode (``isolation_level=None``).
    """
    _migrate_db(conn, schema, None)


def _user_version(conn: sqlite3.Connection) -> int:
    try:
        return result_int(conn, "PRAGMA user_version;")
    except SQLiteError as err:
        raise _wrapped("get database user_version", err) from err


def _rollback(conn: sqlite3.Connection) -> None:
    if not conn.in_transaction:
        return
    try:
        execute_transient(conn, "ROLLBACK;")
    except SQLiteError:
        pass


def _ensure_app_id(conn: sqlite3.Connection, want_app_id: int) -> int:
    with save(conn):
        has_schema = result_bool(conn, "VALUES ((SELECT COUNT(*) FROM sqlite_master) > 0);")
        db_app_id = result_int(conn, "PRAGMA application_id;")
        if db_app_id != want_app_id and not (db_app_id == 0 and not has_schema):
            raise SQLiteError(
                f"database application_id = {db_app_id:#x} (expected {want_app_id:#x})"
            )
        version = _user_version(conn)
        # PRAGMA values cannot be bound as parameters.
        execute_transient(conn, f"PRAGMA application_id = {int(want_app_id)};")
    return version


def _migration_script(migration: str, next_version: int) -> str:
    body = migration.strip()
    while body.endswith(";"):
        body = body[:-1].rstrip()
    pragma = f"PRAGMA user_version = {next_version};\n"
    return f"{body};\n{pragma}" if body else pragma


def _disables_foreign_keys(schema: Schema, index: int) -> bool:
    if index >= len(schema.migration_options):
        return False
    options = schema.migration_options[index]
    return options is not None and options.disable_foreign_keys


def _migrate_db(
    conn: sqlite3.Connection, schema: Schema, on_start: Callable[[], object] | None
) -> None:
    try:
        version = _ensure_app_id(conn, schema.app_id)
    except SQLiteError as err:
        raise _wrapped("migrate database", err) from err

    if on_start is not None:
        on_start()

    try:
        foreign_keys_enabled = result_bool(conn, "PRAGMA foreign_keys;")
    except SQLiteError as err:
        raise _wrapped("migrate database", err) from err

    migrations = list(schema.migrations)
    while version < len(migrations):
        disable_fks = foreign_keys_enabled and _disables_foreign_keys(schema, version)
        if disable_fks:
            try:
                execute_transient(conn, "PRAGMA foreign_keys = off;")
            except SQLiteError as err:
                raise _wrapped("migrate database: disable foreign keys", err) from err

        try:
            execute_transient(conn, "BEGIN IMMEDIATE;")
        except SQLiteError as err:
            raise _wrapped(f"migrate database: apply migrations[{version}]", err) from err

        try:
            actual = _user_version(conn)
        except SQLiteError as err:
            _rollback(conn)
            raise _wrapped("migrate database", err) from err
        if actual != version:
            # Another process migrated while no transaction was held.
            _rollback(conn)
            if disable_fks:
                execute_transient(conn, "PRAGMA foreign_keys = on;")
            version = actual
            continue

        try:
            execute_script(conn, _migration_script(migrations[version], version + 1))
        except SQLiteError as err:
            _rollback(conn)
            raise _wrapped(f"migrate database: apply migrations[{version}]", err) from err

        if version == len(migrations) - 1 and schema.repeatable_migration:
            try:
                execute_script(conn, schema.repeatable_migration)
            except SQLiteError as err:
                _rollback(conn)
                raise _wrapped("migrate database: apply repeatable migration", err) from err

        try:
            execute_transient(conn, "COMMIT;")
        except SQLiteError as err:
            _rollback(conn)
            raise _wrapped(f"migrate database: apply migrations[{version}]", err) from err

        if disable_fks:
            try:
                execute_transient(conn, "PRAGMA foreign_keys = on;")
            except SQLiteError as err:
                raise _wrapped("migrate database: reenable foreign keys", err) from err
        version += 1