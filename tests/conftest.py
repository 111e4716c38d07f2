"""
Pytest config.

The repo root is pinned on sys.path so `import storefront` works whether or not the
project is installed. The `store` fixture swaps the Postgres repositories and
the session store for an in-memory implementation so API tests need no database.
"""

from __future__ import annotations

import json
import sys
import time
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import pytest


def _ensure_repo_root_on_syspath() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    repo_root_str = str(repo_root)
    if repo_root_str not in sys.path:
        sys.path.insert(0, repo_root_str)


_ensure_repo_root_on_syspath()

import jwt  # noqa: E402
import psycopg  # noqa: E402
from cryptography.hazmat.primitives.asymmetric import rsa  # noqa: E402

from storefront.auth.models import ROLE_ADMIN, ROLE_USER, AuthProvider, Session, User  # noqa: E402
from storefront.auth.session import SESSION_TTL  # noqa: E402
from storefront.auth.util import new_id, random_token  # noqa: E402

GOOGLE_CLIENT_ID = "test-client-id.apps.googleusercontent.com"
GOOGLE_ISSUER = "https://accounts.google.com"


class _NullConn:
    """Stands in for a psycopg connection; commit/rollback are forwarded to the in-memory store."""

    closed = False

    def __init__(self, store: Optional["InMemoryStore"] = None) -> None:
        self._store = store

    def commit(self) -> None:
        if self._store is not None:
            self._store.commit()

    def rollback(self) -> None:
        if self._store is not None:
            self._store.rollback()

    def close(self) -> None:
        self.closed = True


class RecordingCursor:
    def __init__(self, conn: "RecordingConn") -> None:
        self._conn = conn
        self.rowcount = conn.rowcount

    def execute(self, sql: str, params=None):  # type: ignore[no-untyped-def]
        self._conn.statements.append((" ".join(sql.split()), params))
        return self

    def fetchone(self):  # type: ignore[no-untyped-def]
        return self._conn.row

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):  # type: ignore[no-untyped-def]
        return False


class RecordingConn:
    def __init__(self, row: Optional[Any] = None, rowcount: int = 0) -> None:
        self.statements: List[tuple] = []
        self.row = row
        self.rowcount = rowcount
        self.commits = 0
        self.rollbacks = 0

    def cursor(self) -> RecordingCursor:
        return RecordingCursor(self)

    def commit(self) -> None:
        self.commits += 1

    def rollback(self) -> None:
        self.rollbacks += 1


def _now() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryStore:
    def __init__(self) -> None:
        self.users: Dict[str, User] = {}
        self.providers: List[AuthProvider] = []
        self.sessions: Dict[str, Session] = {}
        self._undo: List[Callable[[], None]] = []

    # uncommitted writes (commit=False) are undone on rollback
    def commit(self) -> None:
        self._undo.clear()

    def rollback(self) -> None:
        while self._undo:
            self._undo.pop()()

    # users
    def find_user_by_email(self, _conn, email: str) -> Optional[User]:
        return next((u for u in self.users.values() if u.email == email), None)

    def find_user_by_id(self, _conn, user_id: str) -> Optional[User]:
        return self.users.get(user_id)

    def create_user(
        self, _conn, *, user_id: str, email: str, name: Optional[str] = None, role: str = ROLE_USER, commit: bool = True
    ) -> User:
        if self.find_user_by_email(None, email) is not None:
            raise psycopg.IntegrityError("duplicate key value violates unique constraint users_email_key")
        now = _now()
        user = User(id=user_id, email=email, name=name, role=role, created_at=now, updated_at=now)
        self.users[user_id] = user
        if not commit:
            self._undo.append(lambda: self.users.pop(user_id, None))
        return user

    def list_users(self, _conn) -> List[User]:
        return list(self.users.values())

    def update_user_role(self, _conn, user_id: str, role: str) -> Optional[User]:
        user = self.users.get(user_id)
        if user is None:
            return None
        updated = replace(user, role=role, updated_at=_now())
        self.users[user_id] = updated
        return updated

    def count_admins(self, _conn) -> int:
        return sum(1 for u in self.users.values() if u.role == ROLE_ADMIN)

    # credential bindings
    def create_password_provider(self, _conn, user_id: str, password_hash: str, *, commit: bool = True) -> None:
        self._add_provider(
            AuthProvider(
                id=new_id(), user_id=user_id, provider="password", provider_id=None, password_hash=password_hash,
                created_at=_now(),
            ),
            commit,
        )

    def create_oauth_provider(
        self, _conn, user_id: str, provider: str, provider_id: str, *, commit: bool = True
    ) -> None:
        if self.get_provider_by_subject(None, provider, provider_id) is not None:
            raise psycopg.IntegrityError("duplicate key value violates unique constraint user_auth_providers_subject_idx")
        self._add_provider(
            AuthProvider(
                id=new_id(), user_id=user_id, provider=provider, provider_id=provider_id, password_hash=None,
                created_at=_now(),
            ),
            commit,
        )

    def _add_provider(self, binding: AuthProvider, commit: bool) -> None:
        self.providers.append(binding)
        if not commit:
            self._undo.append(lambda: self.providers.remove(binding))

    def get_password_auth_by_email(self, _conn, email: str):
        user = self.find_user_by_email(None, email)
        if user is None:
            return None
        for p in self.providers:
            if p.user_id == user.id and p.provider == "password":
                return user.id, p.password_hash
        return None

    def get_provider_by_subject(self, _conn, provider: str, provider_id: str) -> Optional[AuthProvider]:
        return next((p for p in self.providers if p.provider == provider and p.provider_id == provider_id), None)

    # sessions
    def create_session(self, _conn, user_id: str, *, now: Optional[datetime] = None) -> Session:
        now = now or _now()
        sess = Session(id=new_id(), user_id=user_id, token=random_token(32), expires_at=now + SESSION_TTL, created_at=now)
        self.sessions[sess.token] = sess
        return sess

    def get_session_by_token(self, _conn, token: Optional[str], *, now: Optional[datetime] = None) -> Optional[Session]:
        sess = self.sessions.get(token or "")
        if sess is None or sess.expires_at <= (now or _now()):
            return None
        return sess

    def delete_session(self, _conn, token: str) -> None:
        self.sessions.pop(token, None)

    def delete_user_sessions(self, _conn, user_id: str) -> int:
        doomed = [t for t, s in self.sessions.items() if s.user_id == user_id]
        for t in doomed:
            del self.sessions[t]
        return len(doomed)

    # helpers for tests
    def connection(self) -> _NullConn:
        return _NullConn(self)

    def expire(self, token: str) -> None:
        sess = self.sessions[token]
        self.sessions[token] = replace(sess, expires_at=_now())

    def add_user(self, email: str, *, role: str = ROLE_USER, name: Optional[str] = None) -> User:
        return self.create_user(None, user_id=new_id(), email=email, name=name, role=role)

    def install(self, monkeypatch: pytest.MonkeyPatch) -> None:
        for name in ("find_user_by_email", "find_user_by_id", "create_user", "list_users", "update_user_role", "count_admins"):
            monkeypatch.setattr(f"storefront.db.users.{name}", getattr(self, name))
        for name in (
            "create_password_provider",
            "create_oauth_provider",
            "get_password_auth_by_email",
            "get_provider_by_subject",
        ):
            monkeypatch.setattr(f"storefront.db.providers.{name}", getattr(self, name))
        for name in ("create_session", "get_session_by_token", "delete_session", "delete_user_sessions"):
            monkeypatch.setattr(f"storefront.auth.session.{name}", getattr(self, name))
        monkeypatch.setattr("storefront.db.connection.connect", lambda: _NullConn(self))


@pytest.fixture
def store(monkeypatch: pytest.MonkeyPatch) -> InMemoryStore:
    s = InMemoryStore()
    s.install(monkeypatch)
    return s


@pytest.fixture
def auth_env(monkeypatch: pytest.MonkeyPatch):
    from storefront.auth.config import load_auth_config

    for k in ("AUTH_COOKIE_SECURE", "AUTH_PUBLIC_BASE_URL", "ADMIN_INITIAL_EMAIL", "ADMIN_INITIAL_PASSWORD"):
        monkeypatch.delenv(k, raising=False)
    monkeypatch.setenv("APP_ENV", "development")
    monkeypatch.setenv("GOOGLE_CLIENT_ID", GOOGLE_CLIENT_ID)
    monkeypatch.setenv("GOOGLE_CLIENT_SECRET", "test-client-secret")
    monkeypatch.setenv("AUTH_STATE_SECRET", "test-state-secret-for-testing-purposes-only")
    load_auth_config.cache_clear()
    yield
    load_auth_config.cache_clear()


@pytest.fixture(scope="session")
def signing_key():
    """(private_key, public JWK dict) used to sign test ID tokens."""
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    jwk = json.loads(jwt.algorithms.RSAAlgorithm.to_jwk(private_key.public_key()))
    jwk.update({"kid": "test-key-1", "alg": "RS256", "use": "sig"})
    return private_key, jwk


def make_id_token(private_key, *, kid: Optional[str] = "test-key-1", **overrides: Any) -> str:
    now = int(time.time())
    claims: Dict[str, Any] = {
        "iss": GOOGLE_ISSUER,
        "aud": GOOGLE_CLIENT_ID,
        "sub": "google-sub-123",
        "email": "shopper@example.com",
        "email_verified": True,
        "name": "Shopper",
        "iat": now,
        "exp": now + 3600,
    }
    claims.update(overrides)
    claims = {k: v for k, v in claims.items() if v is not None}
    headers = {"kid": kid} if kid else {}
    return jwt.encode(claims, private_key, algorithm="RS256", headers=headers)


@pytest.fixture
def id_token(signing_key):
    """Factory: id_token(**claim_overrides) -> signed RS256 token."""

    def _make(**overrides: Any) -> str:
        return make_id_token(signing_key[0], **overrides)

    return _make


@pytest.fixture
def client(store: InMemoryStore, auth_env, signing_key):
    from fastapi.testclient import TestClient

    from storefront.api.app import app
    from storefront.auth.google import GoogleTokenVerifier, JwksCache
    from storefront.auth.rate_limit import RateLimiter

    app.state.login_rate_limiter = RateLimiter(max_attempts=5, window_seconds=300)
    app.state.google_verifier = GoogleTokenVerifier(JwksCache.static([signing_key[1]]))
    try:
        yield TestClient(app, follow_redirects=False)
    finally:
        app.state.google_verifier = None
