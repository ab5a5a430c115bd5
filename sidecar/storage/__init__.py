"""Persistent storage for style edits, profiles and aggregates.

In web mode (DATABASE_URL set), uses PostgreSQL via PgDatabase.
In desktop mode, uses SQLite via Database.
"""

import inspect
import os
from typing import Any

from storage.database import Database, get_db

_USE_PG = bool(os.getenv("DATABASE_URL", ""))


def get_active_db():
    """Return the appropriate database instance based on environment.

    - If DATABASE_URL is set: returns PgDatabase (async, PostgreSQL)
    - Otherwise: returns Database (sync, SQLite)
    """
    if _USE_PG:
        from storage.pg_database import get_pg_db
        return get_pg_db()
    return get_db()


async def call_db(db: Any, method: str, *args: Any, **kwargs: Any) -> Any:
    """Call *method* on either backend, awaiting the result when it is a coroutine."""
    result = getattr(db, method)(*args, **kwargs)
    if inspect.isawaitable(result):
        return await result
    return result


__all__ = [
    "Database",
    "get_db",
    "get_active_db",
    "call_db",
]
