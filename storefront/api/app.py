"""
Storefront API server.

Hosts the authentication and admin endpoints behind the request gate: every request
is classified as public, authenticated or admin-only before it reaches a handler.
"""

from __future__ import annotations

import logging
import os
import time
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import RedirectResponse
from starlette.concurrency import run_in_threadpool

from storefront.api import admin_routes, auth_routes
from storefront.api.errors import install_error_handlers
from storefront.auth.rate_limit import RateLimiter
from storefront.authz.admin import admin_denial

logger = logging.getLogger(__name__)

app = FastAPI(title="Storefront API")
app.state.login_rate_limiter = RateLimiter(max_attempts=5, window_seconds=300)
install_error_handlers(app)
app.include_router(auth_routes.router)
app.include_router(admin_routes.router)


# ---- Request gate ----
_PUBLIC_PREFIXES = ("/api/auth/", "/login", "/signup", "/static/", "/favicon.ico", "/healthz")
_LOGIN_PATH = "/login"


def _under(path: str, area: str) -> bool:
    return path == area or path.startswith(area + "/")


def _is_public_path(path: str) -> bool:
    return path.startswith(_PUBLIC_PREFIXES)


def _is_api_path(path: str) -> bool:
    return path.startswith("/api/")


def _is_admin_path(path: str) -> bool:
    return _under(path, "/admin") or path.startswith("/api/admin/")


def _requires_session(path: str) -> bool:
    return _is_api_path(path) or _under(path, "/dashboard") or _under(path, "/admin")


def _set_internal_header(request: Request, value: Optional[str]) -> None:
    """Replace (or drop) the x-user-id header seen by downstream handlers."""
    from storefront.auth.deps import USER_ID_HEADER

    name = USER_ID_HEADER.encode("latin-1")
    raw = [(k, v) for (k, v) in request.scope.get("headers", []) if k.lower() != name]
    if value is not None:
        raw.append((name, value.encode("latin-1")))
    request.scope["headers"] = raw


def _redirect(path: str) -> RedirectResponse:
    resp = RedirectResponse(url=path, status_code=302)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@app.middleware("http")
async def request_gate(request: Request, call_next):
    """
    Classify the request and either pass it through, pass it through with identity
    attached, or redirect/deny.
    """
    start_time = time.time()
    path = request.url.path or ""
    # Clients never get to assert their own identity.
    _set_internal_header(request, None)
    try:
        if request.method == "OPTIONS" or _is_public_path(path):
            response = await call_next(request)
            logger.debug("%s %s - %d (%.3fs)", request.method, path, response.status_code, time.time() - start_time)
            return response

        from storefront.auth.deps import authenticate_request, get_auth_config
        from storefront.auth.session import SESSION_COOKIE_NAME, clear_session_cookie_kwargs

        if not request.cookies.get(SESSION_COOKIE_NAME):
            if _requires_session(path):
                return _redirect(_LOGIN_PATH)
            return await call_next(request)

        ctx = await run_in_threadpool(authenticate_request, request)
        if ctx is None:
            resp = _redirect(_LOGIN_PATH)
            resp.set_cookie(**clear_session_cookie_kwargs(get_auth_config()))
            return resp

        if _is_admin_path(path) and not ctx.is_admin:
            logger.info("Non-admin user %s denied %s %s", ctx.user_id, request.method, path)
            if _is_api_path(path):
                return admin_denial("Admin access required")
            return _redirect("/")

        request.state.auth = ctx
        if _is_api_path(path):
            _set_internal_header(request, ctx.user_id)

        response = await call_next(request)
        logger.debug("%s %s - %d (%.3fs)", request.method, path, response.status_code, time.time() - start_time)
        return response
    except Exception as e:
        logger.exception("%s %s - ERROR after %.3fs: %s", request.method, path, time.time() - start_time, str(e))
        raise


# ---- Startup ----
@app.on_event("startup")
def _startup_maybe_migrate_db() -> None:
    """Apply SQL migrations when DB_AUTO_MIGRATE=1. Failures are logged, never fatal."""
    try:
        from storefront.db.migrate import maybe_auto_migrate

        did_attempt, msg = maybe_auto_migrate()
        if did_attempt:
            logger.info("DB migrations: %s", msg)
    except Exception as e:
        logger.warning("DB migrations: startup auto-migrate failed: %s", str(e))


@app.on_event("startup")
def _startup_check_google_config() -> None:
    from storefront.auth.config import ConfigError, load_auth_config

    cfg = load_auth_config()
    try:
        cfg.require_google(code_flow=True)
        logger.info("Google sign-in enabled (client_id=%s...)", (cfg.google_client_id or "")[:12])
    except ConfigError as e:
        logger.warning("Google sign-in unavailable: %s", str(e))


@app.on_event("startup")
def _startup_initialize_admin_user() -> None:
    """Create the bootstrap admin when configured and no admin exists yet."""
    try:
        from storefront.auth.config import load_auth_config

        cfg = load_auth_config()
        if cfg.admin_initial_email and cfg.admin_initial_password:
            initialize_admin_user(cfg.admin_initial_email, cfg.admin_initial_password)
    except Exception as e:
        logger.warning("Admin user initialization failed: %s", str(e))


def initialize_admin_user(email: str, password: str) -> bool:
    """Returns True when a new admin was created."""
    from storefront.auth import identity
    from storefront.auth.models import ROLE_ADMIN
    from storefront.db import connection, users

    conn = connection.connect()
    if conn is None:
        logger.warning("Cannot initialize admin user: database not configured")
        return False
    try:
        if users.count_admins(conn) > 0:
            return False
        try:
            user = identity.register_password_user(conn, email=email, password=password, name="Initial Admin", role=ROLE_ADMIN)
        except identity.EmailTaken:
            logger.warning("Cannot initialize admin user: %s is already registered as a regular user", email)
            return False
        logger.info("Created initial admin user %s", user.id)
        return True
    finally:
        conn.close()


@app.get("/healthz")
def healthz() -> Dict[str, Any]:
    return {"ok": True}


def run(host: str = "0.0.0.0", port: int = 8080) -> None:
    import uvicorn

    log_level = os.getenv("LOG_LEVEL", "info").upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logger.setLevel(getattr(logging, log_level, logging.INFO))

    uvicorn_log_level = (
        log_level.lower() if log_level.lower() in ["critical", "error", "warning", "info", "debug", "trace"] else "info"
    )

    logger.info("Starting storefront API on %s:%d (log_level=%s)", host, port, log_level)
    uvicorn.run(app, host=host, port=port, log_level=uvicorn_log_level)
