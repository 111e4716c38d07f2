from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

ROLE_USER = "user"
ROLE_ADMIN = "admin"
ROLES = (ROLE_USER, ROLE_ADMIN)

PROVIDER_PASSWORD = "password"
PROVIDER_GOOGLE = "google"


@dataclass
class User:
    """Storefront account, stored in `users`."""

    id: str
    email: str
    name: Optional[str]
    role: str
    created_at: datetime
    updated_at: datetime

    def public_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "email": self.email, "name": self.name, "role": self.role}


@dataclass
class AuthProvider:
    """Credential binding: exactly one of provider_id / password_hash is set."""

    id: str
    user_id: str
    provider: str
    provider_id: Optional[str]
    password_hash: Optional[str]
    created_at: datetime


@dataclass
class Session:
    id: str
    user_id: str
    token: str  # bearer credential; only handed to the caller at creation time
    expires_at: datetime
    created_at: datetime


@dataclass(frozen=True)
class AuthContext:
    """Authenticated identity attached to the request by the gate middleware."""

    user_id: str
    role: str
    session_id: str

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN
