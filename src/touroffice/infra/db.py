"""Ledger database access layer (psycopg2, raw SQL).

Provides:
- get_conn(): new connection from settings.database_url
- txn(): short transaction, commit on success / rollback on error
- for_update(): SELECT ... FOR UPDATE helper (row lock held until commit)
- guarded_update(): conditional UPDATE returning the affected row count

Transactions run at PostgreSQL's default READ COMMITTED level. Guarded
updates rely on it: a concurrent UPDATE of the same row blocks until the
first writer commits, then re-evaluates its WHERE clause against the new
row version.
"""

from contextlib import contextmanager
from typing import Any, Iterator, Sequence

import psycopg2
from psycopg2.extensions import connection as PgConnection, cursor as PgCursor

from touroffice.config import get_settings


def get_conn() -> PgConnection:
    """Open a new database connection.

    Raises:
        RuntimeError: If DATABASE_URL is not configured.
        psycopg2.Error: On connection failure.
    """
    dsn = get_settings().database_url
    if not dsn:
        raise RuntimeError("DATABASE_URL environment variable not set")
    return psycopg2.connect(dsn)


@contextmanager
def txn(conn: PgConnection | None = None) -> Iterator[PgCursor]:
    """Context manager for a short, safe transaction.

    If conn is None, a new connection is opened and closed on exit.
    Commits on successful exit, rolls back on any exception.

    Example:
        with txn() as cur:
            cur.execute("UPDATE offerings SET title = %s WHERE id = %s", (t, i))
    """
    owns_conn = conn is None
    if owns_conn:
        conn = get_conn()

    try:
        with conn.cursor() as cur:
            yield cur
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        if owns_conn:
            conn.close()


def for_update(
    cur: PgCursor,
    query: str,
    params: Sequence[Any] | None = None,
    *,
    nowait: bool = False,
    skip_locked: bool = False,
) -> tuple[Any, ...] | None:
    """Execute SELECT ... FOR UPDATE and fetch one row.

    The lock is taken before the row is returned and held until the
    enclosing transaction commits or rolls back.

    Raises:
        ValueError: If both nowait and skip_locked are True.
    """
    if nowait and skip_locked:
        raise ValueError("Cannot use both nowait and skip_locked")

    suffix = " FOR UPDATE"
    if nowait:
        suffix += " NOWAIT"
    elif skip_locked:
        suffix += " SKIP LOCKED"

    full_query = query.rstrip().rstrip(";") + suffix
    cur.execute(full_query, params)
    return cur.fetchone()


def guarded_update(
    cur: PgCursor,
    query: str,
    params: Sequence[Any] | None = None,
) -> int:
    """Run a conditional UPDATE and return how many rows it changed.

    The WHERE clause carries the guard (``AND converted = false``,
    ``AND status = %s``); zero means another writer got there first.
    """
    cur.execute(query, params)
    return cur.rowcount
