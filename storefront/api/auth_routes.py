"""
Authentication endpoints: password login/registration, Google sign-in, logout, me.

All endpoints live under /api/auth/ and are public as far as the request gate is
concerned; each handler resolves (or establishes) identity on its own.
"""

from __future__ import annotations

import hmac
import logging
from typing import Any, Dict, Optional, Type, TypeVar

from fastapi import APIRouter, Body, Depends, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse, Response
from itsdangerous import BadSignature, URLSafeTimedSerializer
from pydantic import BaseModel, ValidationError

from storefront.api.errors import ApiError, error_message
from storefront.auth import google, identity
from storefront.auth import session as session_store
from storefront.auth.config import AuthConfig, ConfigError
from storefront.auth.deps import get_auth_config
from storefront.auth.util import normalize_email, random_token
from storefront.db import connection, users
from storefront.db.connection import get_db

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth")

OAUTH_STATE_COOKIE = "oauth_state"
OAUTH_STATE_TTL_SECONDS = 10 * 60
_OAUTH_COOKIE_PATH = "/api/auth"
OAUTH_STATE_SALT = "storefront-oauth-state-v1"
POST_LOGIN_REDIRECT = "/dashboard"

M = TypeVar("M", bound=BaseModel)


class LoginRequest(BaseModel):
    email: str = ""
    password: str = ""


class RegisterRequest(BaseModel):
    email: str = ""
    password: str = ""
    name: Optional[str] = None


class GoogleTokenRequest(BaseModel):
    id_token: str = ""


def parse_body(model: Type[M], payload: Optional[Dict[str, Any]], error: str) -> M:
    """Validate a JSON body; malformed input is a 400 with `error` as the tag."""
    try:
        return model.model_validate(payload or {})
    except ValidationError as e:
        raise ApiError(400, error) from e


def _no_store(resp: Response) -> Response:
    resp.headers["Cache-Control"] = "no-store"
    return resp


def _session_response(cfg: AuthConfig, resp: Response, token: str) -> Response:
    resp.set_cookie(**session_store.session_cookie_kwargs(cfg, token))
    return _no_store(resp)


# ---- Google helpers ----
def _require_google(cfg: AuthConfig, *, code_flow: bool) -> None:
    try:
        cfg.require_google(code_flow=code_flow)
    except ConfigError as e:
        logger.error("Google sign-in requested but not configured: %s", str(e))
        raise ApiError(500, "google_auth_not_configured") from e


def _state_serializer(cfg: AuthConfig) -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(secret_key=cfg.state_secret or "", salt=OAUTH_STATE_SALT)


def _state_cookie_kwargs(cfg: AuthConfig, value: str, max_age: int) -> dict:
    return {
        "key": OAUTH_STATE_COOKIE,
        "value": value,
        "max_age": max_age,
        "httponly": True,
        "secure": cfg.cookie_secure,
        "samesite": "lax",
        "path": _OAUTH_COOKIE_PATH,
    }


def _state_matches(cfg: AuthConfig, cookie_value: Optional[str], state: Optional[str]) -> bool:
    if not cookie_value or not state:
        return False
    try:
        expected = _state_serializer(cfg).loads(cookie_value, max_age=OAUTH_STATE_TTL_SECONDS)
    except BadSignature:
        # Also covers SignatureExpired (cookie older than the state TTL).
        return False
    if not isinstance(expected, str):
        return False
    return hmac.compare_digest(expected.encode("utf-8"), state.encode("utf-8"))


def _callback_uri(request: Request, cfg: AuthConfig) -> str:
    base = cfg.public_base_url or str(request.base_url).rstrip("/")
    return f"{base}/api/auth/google/callback"


def get_google_verifier(request: Request, cfg: AuthConfig = Depends(get_auth_config)) -> google.GoogleTokenVerifier:
    """App-owned verifier (and JWKS cache), built on first use."""
    verifier = getattr(request.app.state, "google_verifier", None)
    if verifier is None:
        verifier = google.build_verifier(cfg)
        request.app.state.google_verifier = verifier
    return verifier


def _google_login(conn, cfg: AuthConfig, verifier: google.GoogleTokenVerifier, id_token: str) -> str:
    """Verify an ID token and return the (possibly new) user id."""
    try:
        ident = verifier.verify(id_token, cfg.google_client_id or "")
    except google.TokenVerificationError as e:
        logger.info("Rejected google ID token: %s", str(e))
        raise ApiError(401, "invalid_token") from e
    if not ident.sub:
        raise ApiError(401, "invalid_token")
    return identity.resolve_google_user(conn, ident)


# ---- Password ----
@router.post("/login")
def login(
    request: Request,
    payload: Optional[Dict[str, Any]] = Body(None),
    conn=Depends(get_db),
    cfg: AuthConfig = Depends(get_auth_config),
) -> Response:
    """
    Password login. Unknown email and wrong password produce the same 401 body.
    Attempts are rate-limited per email.
    """
    body = parse_body(LoginRequest, payload, "email_and_password_required")
    email = normalize_email(body.email)
    if not email or not body.password:
        raise ApiError(400, "email_and_password_required")

    limiter = request.app.state.login_rate_limiter
    if not limiter.check_and_increment(email):
        raise ApiError(429, "too_many_attempts")

    user_id = identity.authenticate_password(conn, email, body.password)
    if user_id is None:
        raise ApiError(401, "invalid_credentials")

    limiter.reset(email)
    sess = session_store.create_session(conn, user_id)
    return _session_response(cfg, JSONResponse(content={"ok": True, "user_id": user_id}), sess.token)


@router.post("/register")
def register(payload: Optional[Dict[str, Any]] = Body(None), conn=Depends(get_db)) -> Response:
    """Create a password account. The caller logs in separately (no session is issued)."""
    body = parse_body(RegisterRequest, payload, "email_and_password_required")
    email = normalize_email(body.email)
    if not email or not body.password:
        raise ApiError(400, "email_and_password_required")
    if "@" not in email:
        raise ApiError(400, "invalid_email")

    try:
        user = identity.register_password_user(
            conn, email=email, password=body.password, name=(body.name or "").strip() or None
        )
    except identity.EmailTaken as e:
        raise ApiError(409, "email_already_registered") from e
    return _no_store(JSONResponse(status_code=201, content=user.public_dict()))


# ---- Google ----
@router.get("/google/start")
def google_start(request: Request, cfg: AuthConfig = Depends(get_auth_config)) -> Response:
    """Start the authorization-code flow with a signed, short-lived anti-forgery state."""
    _require_google(cfg, code_flow=True)
    state = random_token(32)
    url = google.build_authorize_url(cfg, redirect_uri=_callback_uri(request, cfg), state=state)

    resp = RedirectResponse(url=url, status_code=302)
    resp.set_cookie(
        **_state_cookie_kwargs(cfg, _state_serializer(cfg).dumps(state), OAUTH_STATE_TTL_SECONDS)
    )
    return _no_store(resp)


@router.get("/google/callback")
def google_callback(
    request: Request,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    cfg: AuthConfig = Depends(get_auth_config),
    verifier: google.GoogleTokenVerifier = Depends(get_google_verifier),
) -> Response:
    """
    Handle Google's redirect. The state cookie is cleared on every outcome.

    The database connection is opened only after the token exchange, so no
    connection is held across the call to Google.
    """
    conn = None
    try:
        _require_google(cfg, code_flow=True)
        if not code:
            raise ApiError(400, "missing_code")
        # Must happen before any call to Google.
        if not _state_matches(cfg, request.cookies.get(OAUTH_STATE_COOKIE), state):
            raise ApiError(400, "invalid_state")

        try:
            id_token = google.exchange_code_for_id_token(cfg, code=code, redirect_uri=_callback_uri(request, cfg))
        except google.TokenExchangeError as e:
            logger.warning("Google token exchange failed: %s", str(e))
            raise ApiError(400, "token_exchange_failed") from e

        conn = connection.connect()
        if conn is None:
            raise ApiError(500, "database_not_configured")
        user_id = _google_login(conn, cfg, verifier, id_token)
        sess = session_store.create_session(conn, user_id)
        resp: Response = _session_response(cfg, RedirectResponse(url=POST_LOGIN_REDIRECT, status_code=302), sess.token)
    except ApiError as e:
        resp = _no_store(JSONResponse(status_code=e.status_code, content=e.body()))
    except Exception as e:
        logger.exception("Google callback failed: %s", str(e))
        err = ApiError(500, "internal_error", error_message(e))
        resp = _no_store(JSONResponse(status_code=err.status_code, content=err.body()))
    finally:
        if conn is not None:
            conn.close()

    resp.set_cookie(**_state_cookie_kwargs(cfg, "", 0))
    return resp


@router.post("/google")
def google_token_login(
    payload: Optional[Dict[str, Any]] = Body(None),
    conn=Depends(get_db),
    cfg: AuthConfig = Depends(get_auth_config),
    verifier: google.GoogleTokenVerifier = Depends(get_google_verifier),
) -> Response:
    """Sign in with an ID token the browser obtained from Google directly."""
    _require_google(cfg, code_flow=False)
    body = parse_body(GoogleTokenRequest, payload, "id_token_required")
    if not body.id_token:
        raise ApiError(400, "id_token_required")

    user_id = _google_login(conn, cfg, verifier, body.id_token)
    sess = session_store.create_session(conn, user_id)
    return _session_response(cfg, JSONResponse(content={"ok": True, "user_id": user_id}), sess.token)


# ---- Session ----
@router.post("/logout")
def logout(request: Request, conn=Depends(get_db), cfg: AuthConfig = Depends(get_auth_config)) -> Response:
    token = request.cookies.get(session_store.SESSION_COOKIE_NAME)
    if token:
        session_store.delete_session(conn, token)
    resp = JSONResponse(content={"ok": True})
    resp.set_cookie(**session_store.clear_session_cookie_kwargs(cfg))
    return _no_store(resp)


@router.get("/me")
def me(request: Request, conn=Depends(get_db)) -> Dict[str, Any]:
    token = request.cookies.get(session_store.SESSION_COOKIE_NAME)
    if not token:
        raise ApiError(401, "not_authenticated")
    sess = session_store.get_session_by_token(conn, token)
    if sess is None:
        raise ApiError(401, "invalid_session")
    user = users.find_user_by_id(conn, sess.user_id)
    if user is None:
        raise ApiError(404, "user_not_found")
    return user.public_dict()
