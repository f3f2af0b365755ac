# sqlitekit

Helpers around Python's built-in `sqlite3` module for applications that
keep their data in SQLite. It has no dependencies beyond the standard
library.

Connections passed to these helpers should be opened in autocommit mode
(`sqlite3.connect(..., isolation_level=None)`), so that transactions and
savepoints stay under explicit control.

## Modules

### `sqlitekit.exec`: running statements

- `execute(conn, query, opts=None)` runs one statement. Every parameter
  must be bound: a missing argument, too many positional arguments or an
  unknown named argument raises `SQLiteError`.
- `execute_transient(conn, query, opts=None)` does the same, and also
  rejects a query that holds more than one statement.
- `execute_script(conn, queries, opts=None)` runs a script of statements
  inside a savepoint that is rolled back if any statement fails. Named
  arguments that no statement uses are an error. `exec_script(conn, queries)`
  is the same without options.
- `execute_fs`, `execute_transient_fs` and `execute_script_fs` take a
  `directory` and a `filename` and read the SQL from that file.
- `exec_query(conn, query, result_fn=None, *args)` and
  `exec_transient(conn, query, result_fn=None, *args)` bind `args`
  positionally and, unlike the functions above, leave unbound parameters
  as NULL.

`ExecOptions` holds `args` (bound to `?1`, `?2`, …), `named` (keys include
their `:`, `@` or `$` prefix) and `result_func`, which is called with each
result row. Values other than `None`, `int`, `float`, `str` and bytes-like
objects are bound as their `str()`.

`parameter_names(query)` lists a query's parameters in binding order, with
`""` for anonymous `?` parameters. `Bitset` is the small set of integers
used to track which parameters were given.

### `sqlitekit.query`: single values

`result_int`, `result_bool`, `result_text` and `result_float` take
`(conn, query, *args)` and return the first column of the only result row.
No rows raises `NoResultsError`; more than one raises `MultipleResultsError`.

### `sqlitekit.savepoint`: savepoints and transactions

`save(conn, name=None)`, `transaction(conn)`, `immediate_transaction(conn)`
and `exclusive_transaction(conn)` are context managers. A block that ends
normally releases the savepoint or commits; a block that raises rolls back
and the exception propagates. If the connection has already left its
transaction (after an interrupt, or an explicit `COMMIT` or `ROLLBACK`),
nothing more is done. Savepoint names may not contain `"`.

### `sqlitekit.rand_id`: random keys

`insert_rand_id(conn, query, param, minimum, maximum, *args)` runs an
insert with a random value in `[minimum, maximum)` bound to `param` and the
other parameters bound from `args` in order. It retries with a new value on
primary-key conflicts, up to 100 times, and returns the value used.

### `sqlitekit.pool`: connection pools

`Pool(uri, opts=None)` opens a fixed number of connections, shared safely
between threads. `PoolOptions` has `pool_size` (default 10), `prepare_conn`
(called before a connection's first use, and again until it succeeds once),
`wal` (switch to WAL journal mode, on by default) and `busy_timeout` in
seconds. `":memory:"` is refused, as each connection would see its own
database; use a shared-cache URI such as
`file::memory:?mode=memory&cache=shared` instead.

- `take(timeout=None)` returns a free connection, raising `TimeoutError`
  if none frees up in time and `PoolClosedError` once the pool is closed.
- `put(conn)` returns it; `put(None)` does nothing, and a connection from
  another pool raises `ValueError`.
- `connection(timeout=None)` is a context manager around `take` and `put`.
- `close()` interrupts borrowed connections, waits for them to come back and
  closes them all. A pool is also a context manager that closes on exit.

### `sqlitekit.migration`: schema migrations

A `Schema` lists `migrations` (SQL scripts applied once each, in order, each
in its own transaction), optional per-migration `migration_options`
(`MigrationOptions(disable_foreign_keys=True)`), an `app_id` stored as the
database's `application_id`, and a `repeatable_migration` run in the last
migration's transaction whenever any migration ran. The database's
`user_version` records how many migrations have been applied. A database
with another application's id, or with tables but no id when one is
expected, is refused.

`MigrationPool(uri, schema, opts=None)` opens and migrates in a background
thread. `get(timeout=None)` waits for that to finish and returns a
connection or raises the error that stopped it; `put(conn)` returns a
connection; `check_health()` raises `SQLiteError` unless migration has
succeeded and the pool is open; `close()` shuts the pool down, interrupting
a migration in progress. `Options` has `pool_size`, `wal`, `prepare_conn`
and the callbacks `on_start_migrate`, `on_ready` and `on_error`.

`migrate(conn, schema)` applies a schema on a single connection.

### `sqlitekit.errors`

Errors raised by the package are `SQLiteError`, carrying a `code` from
`ResultCode`. `error_code(err)` gives the result code of any exception
(including `sqlite3` errors), and `wrap_sqlite_error(err)` turns an
exception into an `SQLiteError` with the same code.

## Example

```python
import sqlite3

from sqlitekit.exec import ExecOptions, execute
from sqlitekit.savepoint import save

conn = sqlite3.connect(":memory:", isolation_level=None)
execute(conn, "CREATE TABLE t (a, b, c, d);")
execute(conn, "INSERT INTO t (a, b, c, d) VALUES (?, ?, ?, ?);",
        ExecOptions(args=["a1", 1, 42, 1]))

rows = []
execute(conn, "SELECT a, b FROM t WHERE c = ? AND d = ?;",
        ExecOptions(args=[42, 1], result_func=rows.append))
print(rows)  # [('a1', 1)]

with save(conn):
    execute(conn, "INSERT INTO t (a) VALUES (:a);", ExecOptions(named={":a": "x"}))
```

Migrations:

```python
from sqlitekit.migration import MigrationPool, Options, Schema

schema = Schema(
    migrations=[
        "CREATE TABLE foo ( id INTEGER NOT NULL PRIMARY KEY );",
        "ALTER TABLE foo ADD COLUMN name TEXT;",
    ],
    repeatable_migration=(
        "DROP VIEW IF EXISTS bar;\n"
        "CREATE VIEW bar ( id, name ) AS SELECT id, name FROM foo;\n"
    ),
)
with MigrationPool("app.db", schema, Options()) as pool:
    conn = pool.get()
    try:
        ...
    finally:
        pool.put(conn)
```

## What it does not do

sqlitekit is a library only: it has no command-line tool. It works through
the standard `sqlite3` module and adds no SQLite extensions of its own, such
as virtual tables or custom SQL functions; register those with `sqlite3`
directly, for example from a pool's `prepare_conn` hook.

## Installing and testing

```
pip install .
pip install ".[test]"
pytest
```