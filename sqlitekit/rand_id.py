"""Insert rows keyed by a random identifier."""

from __future__ import annotations

import itertools
import secrets
import sqlite3
from typing import Any

from .errors import ResultCode, SQLiteError, error_code
from .exec import ExecOptions, execute, parameter_names

_MAX_RETRIES = 100


def insert_rand_id(
    conn: sqlite3.Connection,
    query: str,
    param: str,
    minimum: int,
    maximum: int,
    *args: Any,
) -> int:
    """Execute ``query`` with a random value in [minimum, maximum) bound to ``param``.

    The remaining parameters of ``query`` are bound from ``args`` in order.
    The insert is retried with a fresh value while it fails on a primary key
    conflict, up to a fixed number of attempts. Returns the value used.
    """
    if minimum < 0:
        raise ValueError(f"sqlitekit.insert_rand_id: min ({minimum}) is negative")
    if maximum <= minimum:
        raise ValueError(
            f"sqlitekit.insert_rand_id: max ({maximum}) must be greater than min ({minimum})"
        )
    names = parameter_names(query)
    if param not in names:
        raise SQLiteError(
            f"sqlitekit.insert_rand_id: query has no parameter {param}", ResultCode.RANGE
        )
    if len(args) != len(names) - 1:
        raise SQLiteError(
            f"sqlitekit.insert_rand_id: {len(args)} arguments for "
            f"{len(names) - 1} other parameters",
            ResultCode.RANGE,
        )

    for attempt in itertools.count():
        row_id = secrets.randbelow(maximum - minimum) + minimum
        rest = iter(args)
        values = [row_id if name == param else next(rest) for name in names]
        try:
            execute(conn, query, ExecOptions(args=values))
        except SQLiteError as err:
            if attempt >= _MAX_RETRIES or error_code(err) != ResultCode.CONSTRAINT_PRIMARYKEY:
                raise SQLiteError(f"sqlitekit.insert_rand_id: {err}", err.code) from err
            continue
        return row_id
    raise AssertionError("unreachable")