from __future__ import annotations

import logging
from typing import Iterator

from storefront.api.errors import ApiError
from storefront.db.config import build_postgres_dsn, load_db_config

logger = logging.getLogger(__name__)


def connect():
    """Open a Postgres connection, or return None if the database is not configured."""
    dsn = build_postgres_dsn(load_db_config())
    if not dsn:
        return None
    import psycopg  # type: ignore[import-not-found]

    return psycopg.connect(dsn)


def get_db() -> Iterator:
    """FastAPI dependency: one connection per request, always closed."""
    conn = connect()
    if conn is None:
        logger.error("Database not configured (set POSTGRES_DSN or POSTGRES_* env vars)")
        raise ApiError(500, "database_not_configured")
    try:
        yield conn
    finally:
        conn.close()
