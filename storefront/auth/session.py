from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from storefront.auth.config import AuthConfig
from storefront.auth.models import Session
from storefront.auth.util import new_id, random_token

SESSION_COOKIE_NAME = "session_token"
SESSION_TTL = timedelta(days=7)
SESSION_TTL_SECONDS = int(SESSION_TTL.total_seconds())

_SESSION_COLUMNS = "id, user_id, token, expires_at, created_at"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _row_to_session(row: Any) -> Session:
    session_id, user_id, token, expires_at, created_at = row
    return Session(
        id=str(session_id),
        user_id=str(user_id),
        token=token,
        expires_at=expires_at,
        created_at=created_at,
    )


def create_session(conn, user_id: str, *, now: Optional[datetime] = None) -> Session:
    """
    Create a session for `user_id`, valid for 7 days.

    The row id and the bearer token come from independent generators; the returned
    record is the only place the plaintext token is handed out.
    """
    now = now or utcnow()
    session = Session(
        id=new_id(),
        user_id=user_id,
        token=random_token(32),
        expires_at=now + SESSION_TTL,
        created_at=now,
    )
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO sessions (id, user_id, token, expires_at, created_at)
            VALUES (%s, %s, %s, %s, %s)
            """,
            (session.id, session.user_id, session.token, session.expires_at, session.created_at),
        )
    conn.commit()
    return session


def get_session_by_token(conn, token: Optional[str], *, now: Optional[datetime] = None) -> Optional[Session]:
    """
    Look up a live session by exact token match.

    Unknown and expired tokens both return None.
    """
    if not token:
        return None
    with conn.cursor() as cur:
        cur.execute(
            f"""
            SELECT {_SESSION_COLUMNS}
            FROM sessions
            WHERE token = %s AND expires_at > %s
            """,
            (token, now or utcnow()),
        )
        row = cur.fetchone()
    if not row:
        return None
    return _row_to_session(row)


def delete_session(conn, token: str) -> None:
    """Idempotent: deleting an unknown token is not an error."""
    with conn.cursor() as cur:
        cur.execute("DELETE FROM sessions WHERE token = %s", (token,))
    conn.commit()


def delete_user_sessions(conn, user_id: str) -> int:
    """Invalidate every session of a user. Returns the number of sessions removed."""
    with conn.cursor() as cur:
        cur.execute("DELETE FROM sessions WHERE user_id = %s", (user_id,))
        removed = cur.rowcount
    conn.commit()
    return max(int(removed or 0), 0)


def purge_expired_sessions(conn, *, now: Optional[datetime] = None) -> int:
    """Remove expired rows. Only run explicitly (maintenance CLI); lookups already ignore them."""
    with conn.cursor() as cur:
        cur.execute("DELETE FROM sessions WHERE expires_at <= %s", (now or utcnow(),))
        removed = cur.rowcount
    conn.commit()
    return max(int(removed or 0), 0)


def session_cookie_kwargs(cfg: AuthConfig, token: str) -> dict:
    return {
        "key": SESSION_COOKIE_NAME,
        "value": token,
        "max_age": SESSION_TTL_SECONDS,
        "httponly": True,
        "secure": cfg.cookie_secure,
        "samesite": "lax",
        "path": "/",
    }


def clear_session_cookie_kwargs(cfg: AuthConfig) -> dict:
    return {
        "key": SESSION_COOKIE_NAME,
        "value": "",
        "max_age": 0,
        "httponly": True,
        "secure": cfg.cookie_secure,
        "samesite": "lax",
        "path": "/",
    }
