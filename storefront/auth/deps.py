from __future__ import annotations

import logging
from typing import Optional

from fastapi import Depends, Header, Request

from storefront.api.errors import AdminDenied, ApiError
from storefront.auth import session as session_store
from storefront.auth.config import AuthConfig, load_auth_config
from storefront.auth.models import AuthContext
from storefront.authz import admin as authz
from storefront.db import connection, users

logger = logging.getLogger(__name__)

USER_ID_HEADER = "x-user-id"


def get_auth_config() -> AuthConfig:
    return load_auth_config()


def authenticate_request(request: Request) -> Optional[AuthContext]:
    """
    Resolve the session cookie into an AuthContext.

    Returns None when there is no cookie, the token is unknown or expired, or the
    owning user no longer exists. Database errors propagate (fail closed).
    """
    token = request.cookies.get(session_store.SESSION_COOKIE_NAME)
    if not token:
        return None

    conn = connection.connect()
    if conn is None:
        raise RuntimeError("Database not configured")
    try:
        sess = session_store.get_session_by_token(conn, token)
        if sess is None:
            return None
        user = users.find_user_by_id(conn, sess.user_id)
        if user is None:
            logger.warning("Session %s references missing user %s", sess.id, sess.user_id)
            return None
        return AuthContext(user_id=user.id, role=user.role, session_id=sess.id)
    finally:
        conn.close()


def get_auth_context(request: Request) -> Optional[AuthContext]:
    return getattr(request.state, "auth", None)


def require_user_id(request: Request, x_user_id: Optional[str] = Header(None)) -> str:
    """Authenticated user id; a missing context/header means unauthenticated."""
    ctx = get_auth_context(request)
    if ctx is not None:
        return ctx.user_id
    if x_user_id:
        return x_user_id
    raise ApiError(401, "not_authenticated")


def require_admin(request: Request, conn=Depends(connection.get_db)) -> AuthContext:
    """
    Admin guard for handlers. The gate already filters admin paths; this re-checks
    the role against the database so handlers never trust a stale context.
    """
    ctx = get_auth_context(request)
    if ctx is None:
        raise AdminDenied("Unauthorized", 401)
    if not authz.is_admin(conn, ctx.user_id):
        raise AdminDenied()
    return ctx
