"""Helpers for sqlite3: statement execution, single results, savepoints,
random keys, connection pools and schema migrations."""

__version__ = "0.1.0"
__all__ = ["errors", "exec", "query", "savepoint", "rand_id", "pool", "migration"]