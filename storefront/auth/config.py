from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import List, Optional

GOOGLE_AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_JWKS_URL = "https://www.googleapis.com/oauth2/v3/certs"


class ConfigError(RuntimeError):
    """Required configuration is missing."""


@dataclass(frozen=True)
class AuthConfig:
    # Google OAuth
    google_client_id: Optional[str]
    google_client_secret: Optional[str]
    google_authorize_url: str
    google_token_url: str
    google_jwks_url: str

    # Signs the short-lived oauth_state cookie
    state_secret: Optional[str]

    # Redirect URI base; falls back to the request origin when unset
    public_base_url: Optional[str]
    cookie_secure: bool

    # Bootstrap admin (created on startup when no admin exists)
    admin_initial_email: Optional[str]
    admin_initial_password: Optional[str]

    @property
    def google_enabled(self) -> bool:
        return bool(self.google_client_id)

    def require_google(self, *, code_flow: bool = False) -> None:
        """
        Fail fast when Google sign-in is requested but not configured.

        The direct ID-token flow only needs the client id; the code flow also needs
        the client secret (token exchange) and the state-signing secret.
        """
        missing: List[str] = []
        if not self.google_client_id:
            missing.append("GOOGLE_CLIENT_ID")
        if code_flow:
            if not self.google_client_secret:
                missing.append("GOOGLE_CLIENT_SECRET")
            if not self.state_secret:
                missing.append("AUTH_STATE_SECRET")
        if missing:
            raise ConfigError(f"Missing required configuration: {', '.join(missing)}")


def _env(name: str) -> Optional[str]:
    return (os.getenv(name, "") or "").strip() or None


@lru_cache(maxsize=1)
def load_auth_config() -> AuthConfig:
    """
    Load authentication configuration from environment variables.

    GOOGLE_CLIENT_ID falls back to PUBLIC_GOOGLE_CLIENT_ID (the value the browser
    bundle already knows). Cookies are Secure unless APP_ENV=development, with
    AUTH_COOKIE_SECURE as an explicit override.
    """
    app_env = (_env("APP_ENV") or "production").lower()
    cookie_secure_env = (_env("AUTH_COOKIE_SECURE") or "").lower()
    if cookie_secure_env in ("1", "true", "yes", "on"):
        cookie_secure = True
    elif cookie_secure_env in ("0", "false", "no", "off"):
        cookie_secure = False
    else:
        cookie_secure = app_env != "development"

    public_base_url = _env("AUTH_PUBLIC_BASE_URL")
    if public_base_url:
        public_base_url = public_base_url.rstrip("/")

    return AuthConfig(
        google_client_id=_env("GOOGLE_CLIENT_ID") or _env("PUBLIC_GOOGLE_CLIENT_ID"),
        google_client_secret=_env("GOOGLE_CLIENT_SECRET"),
        google_authorize_url=_env("GOOGLE_AUTHORIZE_URL") or GOOGLE_AUTHORIZE_URL,
        google_token_url=_env("GOOGLE_TOKEN_URL") or GOOGLE_TOKEN_URL,
        google_jwks_url=_env("GOOGLE_JWKS_URL") or GOOGLE_JWKS_URL,
        state_secret=_env("AUTH_STATE_SECRET"),
        public_base_url=public_base_url,
        cookie_secure=cookie_secure,
        admin_initial_email=(_env("ADMIN_INITIAL_EMAIL") or "").lower() or None,
        admin_initial_password=_env("ADMIN_INITIAL_PASSWORD"),
    )
