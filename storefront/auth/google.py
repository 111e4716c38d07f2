"""
Google sign-in: authorization URL, code exchange and ID-token verification.

The signing keys are held by an explicitly owned `JwksCache` (one per app) instead
of module globals, so tests can inject a fixed key set and a fake clock.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Union
from urllib.parse import urlencode

import jwt  # PyJWT
import requests

from storefront.auth.config import AuthConfig

logger = logging.getLogger(__name__)

GOOGLE_ISSUERS = ("https://accounts.google.com", "accounts.google.com")
JWKS_TTL_SECONDS = 3600
JWKS_MIN_REFRESH_SECONDS = 30
HTTP_TIMEOUT_SECONDS = 10


class TokenVerificationError(ValueError):
    """ID token rejected (bad kid/signature/audience/issuer, expired, malformed)."""


class TokenExchangeError(ValueError):
    """Authorization code could not be exchanged for an ID token."""


def _fetch_jwks(url: str) -> Dict[str, Any]:
    r = requests.get(url, timeout=HTTP_TIMEOUT_SECONDS)
    r.raise_for_status()
    data = r.json()
    if not isinstance(data, dict):
        raise ValueError("Invalid JWKS")
    return data


class JwksCache:
    """
    Issuer key set, refreshed when empty or older than `ttl_seconds`.

    A forced refresh (unknown `kid`) is honoured at most once per
    `min_refresh_seconds`; inside that window the cached keys are returned, so
    tokens with made-up key ids cannot drive one fetch per request.
    Concurrent refreshes are harmless: each fetch is idempotent and the last one wins.
    """

    def __init__(
        self,
        url: str,
        *,
        ttl_seconds: float = JWKS_TTL_SECONDS,
        min_refresh_seconds: float = JWKS_MIN_REFRESH_SECONDS,
        fetch: Optional[Callable[[str], Dict[str, Any]]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._url = url
        self._ttl = ttl_seconds
        self._min_refresh = min_refresh_seconds
        self._fetch = fetch or _fetch_jwks
        self._clock = clock
        self._lock = threading.Lock()
        self._keys: Optional[List[Dict[str, Any]]] = None
        self._fetched_at = 0.0

    @classmethod
    def static(cls, keys: Iterable[Dict[str, Any]]) -> "JwksCache":
        """Fixed key set that never expires (tests, air-gapped setups)."""
        fixed = [dict(k) for k in keys]
        return cls("static://jwks", ttl_seconds=float("inf"), fetch=lambda _url: {"keys": fixed})

    def get_keys(self, *, force_refresh: bool = False) -> List[Dict[str, Any]]:
        now = self._clock()
        with self._lock:
            keys, fetched_at = self._keys, self._fetched_at
        if keys is not None:
            age = now - fetched_at
            if age < self._ttl and (not force_refresh or age < self._min_refresh):
                return keys

        data = self._fetch(self._url)
        fresh = data.get("keys") if isinstance(data, dict) else None
        if not isinstance(fresh, list):
            raise ValueError("Invalid JWKS keys")
        fresh = [k for k in fresh if isinstance(k, dict)]
        with self._lock:
            self._keys = fresh
            self._fetched_at = now
        logger.debug("JWKS refreshed from %s (%d keys)", self._url, len(fresh))
        return fresh


@dataclass(frozen=True)
class GoogleIdentity:
    sub: str
    email: Optional[str] = None
    email_verified: Optional[bool] = None
    name: Optional[str] = None
    picture: Optional[str] = None
    claims: Dict[str, Any] = field(default_factory=dict)


class GoogleTokenVerifier:
    def __init__(self, cache: JwksCache, *, issuers: Sequence[str] = GOOGLE_ISSUERS):
        self._cache = cache
        self._issuers = tuple(issuers)

    def _find_key(self, kid: str) -> Dict[str, Any]:
        for k in self._cache.get_keys():
            if str(k.get("kid") or "") == kid:
                return k
        # Unknown kid: the issuer may have rotated keys since the last fetch.
        for k in self._cache.get_keys(force_refresh=True):
            if str(k.get("kid") or "") == kid:
                return k
        raise TokenVerificationError("Unknown signing key (kid)")

    def verify(self, id_token: str, audience: Union[str, Sequence[str]]) -> GoogleIdentity:
        """
        Verify an ID token and return its identity claims.

        - Verifies the RS256 signature against the JWKS key named by the header `kid`
        - Validates audience (any of `audience`), issuer and expiry
        """
        try:
            hdr = jwt.get_unverified_header(id_token)
        except jwt.InvalidTokenError as e:
            raise TokenVerificationError(f"Malformed ID token: {e}") from e
        kid = str(hdr.get("kid") or "")
        if not kid:
            raise TokenVerificationError("ID token missing kid")

        jwk = self._find_key(kid)
        try:
            key = jwt.algorithms.RSAAlgorithm.from_jwk(json.dumps(jwk))
        except (jwt.InvalidKeyError, ValueError, TypeError) as e:
            raise TokenVerificationError("Invalid signing key") from e

        aud = [audience] if isinstance(audience, str) else list(audience)
        try:
            claims = jwt.decode(
                id_token,
                key=key,
                algorithms=["RS256"],
                audience=aud,
                options={"require": ["exp", "iss", "aud"]},
            )
        except jwt.ExpiredSignatureError as e:
            raise TokenVerificationError("ID token expired") from e
        except jwt.InvalidAudienceError as e:
            raise TokenVerificationError("Audience mismatch") from e
        except jwt.InvalidTokenError as e:
            raise TokenVerificationError(f"Invalid ID token: {e}") from e

        if str(claims.get("iss") or "") not in self._issuers:
            raise TokenVerificationError("Issuer mismatch")

        email_verified = claims.get("email_verified")
        if isinstance(email_verified, str):
            # Some Google tokens carry the flag as "true"/"false".
            email_verified = email_verified.strip().lower() == "true"
        return GoogleIdentity(
            sub=str(claims.get("sub") or ""),
            email=str(claims["email"]) if claims.get("email") else None,
            email_verified=bool(email_verified) if email_verified is not None else None,
            name=str(claims["name"]) if claims.get("name") else None,
            picture=str(claims["picture"]) if claims.get("picture") else None,
            claims=claims,
        )


def build_verifier(cfg: AuthConfig) -> GoogleTokenVerifier:
    return GoogleTokenVerifier(JwksCache(cfg.google_jwks_url))


def build_authorize_url(cfg: AuthConfig, *, redirect_uri: str, state: str) -> str:
    params = {
        "client_id": cfg.google_client_id or "",
        "redirect_uri": redirect_uri,
        "response_type": "code",
        "scope": "openid email profile",
        "prompt": "select_account",
        "state": state,
    }
    return f"{cfg.google_authorize_url}?{urlencode(params)}"


def exchange_code_for_id_token(cfg: AuthConfig, *, code: str, redirect_uri: str) -> str:
    """Server-to-server exchange of an authorization code for an ID token."""
    payload = {
        "code": code,
        "client_id": cfg.google_client_id or "",
        "client_secret": cfg.google_client_secret or "",
        "redirect_uri": redirect_uri,
        "grant_type": "authorization_code",
    }
    try:
        r = requests.post(cfg.google_token_url, data=payload, timeout=HTTP_TIMEOUT_SECONDS)
    except requests.RequestException as e:
        raise TokenExchangeError(f"Token endpoint unreachable: {e}") from e
    if r.status_code >= 400:
        # Avoid leaking provider response bodies; status is enough context.
        raise TokenExchangeError(f"Token exchange failed (status={r.status_code})")
    try:
        data = r.json()
    except ValueError as e:
        raise TokenExchangeError("Invalid token response") from e
    id_token = str((data or {}).get("id_token") or "").strip() if isinstance(data, dict) else ""
    if not id_token:
        raise TokenExchangeError("Missing id_token in token response")
    return id_token
