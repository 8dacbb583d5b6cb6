"""Database URL helpers for Alembic migrations.

Kept apart from env.py so they can be tested without an alembic context.
The application connects with psycopg2 directly and accepts either a URL
or a libpq ``key=value`` DSN in DATABASE_URL; SQLAlchemy (used only by
Alembic) needs a URL, so DSNs are converted here.
"""

from __future__ import annotations

import os
import re
from urllib.parse import quote_plus, urlsplit, urlunsplit

_DSN_PAIR = re.compile(r"(\w+)\s*=\s*('(?:[^'\\]|\\.)*'|\S*)")
_DRIVER_SCHEME = "postgresql+psycopg2"


def parse_libpq_dsn(dsn: str) -> dict[str, str]:
    """Parse ``key=value`` pairs; single-quoted values may contain spaces and \\'."""
    params = {}
    for key, raw in _DSN_PAIR.findall(dsn):
        if raw.startswith("'") and raw.endswith("'") and len(raw) >= 2:
            raw = re.sub(r"\\(.)", r"\1", raw[1:-1])
        params[key] = raw
    return params


def libpq_dsn_to_url(dsn: str) -> str:
    """Convert a libpq DSN into a SQLAlchemy URL.

    A ``host`` starting with "/" is a Unix socket directory and is passed
    as a query parameter.
    """
    params = parse_libpq_dsn(dsn)
    password = params.get("password") or os.environ.get("DB_PASSWORD", "")

    credentials = quote_plus(params.get("user", ""))
    if password:
        credentials += ":" + quote_plus(password)
    dbname = quote_plus(params.get("dbname", ""))
    host = params.get("host", "localhost")

    if host.startswith("/"):
        return f"{_DRIVER_SCHEME}://{credentials}@/{dbname}?host={quote_plus(host)}"
    port = params.get("port", "5432")
    return f"{_DRIVER_SCHEME}://{credentials}@{host}:{port}/{dbname}"


def normalize_url(url: str) -> str:
    """Force the psycopg2 driver and fill a missing password from DB_PASSWORD."""
    scheme, _, rest = url.partition("://")
    if scheme in ("postgres", "postgresql"):
        url = f"{_DRIVER_SCHEME}://{rest}"

    db_password = os.environ.get("DB_PASSWORD", "")
    parts = urlsplit(url)
    if db_password and parts.username and not parts.password:
        netloc = f"{quote_plus(parts.username)}:{quote_plus(db_password)}@{parts.hostname}"
        if parts.port:
            netloc += f":{parts.port}"
        url = urlunsplit(parts._replace(netloc=netloc))
    return url


def get_database_url() -> str:
    url = os.environ.get("DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL is required to run migrations")
    if "://" in url:
        return normalize_url(url)
    return libpq_dsn_to_url(url)
