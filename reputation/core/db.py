"""Database helpers for the session-scoped key/value table."""

import logging
from contextlib import contextmanager
from typing import Any, Optional

from psycopg2 import extras, pool

from reputation.core.config import get_settings

logger = logging.getLogger(__name__)

_connection_pool: Optional[pool.SimpleConnectionPool] = None


def init_pool(minconn: int = 1, maxconn: int = 5) -> pool.SimpleConnectionPool:
    """Initialise and return the shared connection pool."""
    global _connection_pool
    if _connection_pool is None:
        settings = get_settings()
        if not settings.database_url:
            raise RuntimeError("DATABASE_URL is required for database connections")
        _connection_pool = pool.SimpleConnectionPool(
            minconn,
            maxconn,
            dsn=settings.database_url,
            connect_timeout=10,
        )
        logger.info("Database connection pool initialised")
    return _connection_pool


@contextmanager
def get_connection():
    """Context manager yielding a pooled connection."""
    pg_pool = init_pool()
    conn = pg_pool.getconn()
    try:
        yield conn
    finally:
        pg_pool.putconn(conn)


_CREATE_TABLE = """
CREATE TABLE IF NOT EXISTS session_entries (
    session_id TEXT NOT NULL,
    key TEXT NOT NULL,
    value JSONB NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    PRIMARY KEY (session_id, key)
);
"""

_UPSERT_ENTRY = """
INSERT INTO session_entries (
    session_id,
    key,
    value,
    updated_at
) VALUES (
    %(session_id)s,
    %(key)s,
    %(value)s,
    NOW()
)
ON CONFLICT (session_id, key) DO UPDATE SET
    value = EXCLUDED.value,
    updated_at = NOW();
"""

_POP_ENTRY = """
DELETE FROM session_entries
WHERE session_id = %(session_id)s AND key = %(key)s
RETURNING value;
"""

_CLEAR_SESSION = """
DELETE FROM session_entries
WHERE session_id = %(session_id)s;
"""


def ensure_schema() -> None:
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(_CREATE_TABLE, {})
        conn.commit()
        logger.info("session_entries table ready")


def upsert_entry(session_id: str, key: str, value: Any) -> None:
    """Store a JSON value, replacing any previous value under the same key."""
    if not session_id or not key:
        raise ValueError("session_id and key are required for upsert")

    params = {"session_id": session_id, "key": key, "value": extras.Json(value)}
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(_UPSERT_ENTRY, params)
        conn.commit()
        logger.debug("Stored %s for session %s", key, session_id)


def pop_entry(session_id: str, key: str) -> Optional[Any]:
    """Delete and return a stored value in one statement, or None if absent."""
    params = {"session_id": session_id, "key": key}
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(_POP_ENTRY, params)
            row = cur.fetchone()
        conn.commit()
    if row is None:
        return None
    return row[0]


def clear_session(session_id: str) -> None:
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(_CLEAR_SESSION, {"session_id": session_id})
        conn.commit()
        logger.debug("Cleared session %s", session_id)
