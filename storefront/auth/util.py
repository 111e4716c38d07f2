from __future__ import annotations

import base64
import os
import uuid


def b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def random_token(nbytes: int = 32) -> str:
    return b64url(os.urandom(nbytes))


def new_id() -> str:
    """Opaque row id (UUID4 text)."""
    return str(uuid.uuid4())


def normalize_email(email: str | None) -> str:
    return (email or "").strip().lower()
