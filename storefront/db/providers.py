from __future__ import annotations

from typing import Optional, Tuple

from storefront.auth.models import PROVIDER_PASSWORD, AuthProvider
from storefront.auth.util import new_id

_PROVIDER_COLUMNS = "id, user_id, provider, provider_id, password_hash, created_at"


def create_password_provider(conn, user_id: str, password_hash: str, *, commit: bool = True) -> None:
    """Bind a serialized password hash to a user (provider_id stays NULL)."""
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO user_auth_providers (id, user_id, provider, provider_id, password_hash)
            VALUES (%s, %s, %s, NULL, %s)
            """,
            (new_id(), user_id, PROVIDER_PASSWORD, password_hash),
        )
    if commit:
        conn.commit()


def create_oauth_provider(conn, user_id: str, provider: str, provider_id: str, *, commit: bool = True) -> None:
    """Bind an external subject id to a user (password_hash stays NULL)."""
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO user_auth_providers (id, user_id, provider, provider_id, password_hash)
            VALUES (%s, %s, %s, %s, NULL)
            """,
            (new_id(), user_id, provider, provider_id),
        )
    if commit:
        conn.commit()


def get_password_auth_by_email(conn, email: str) -> Optional[Tuple[str, Optional[str]]]:
    """Return (user_id, serialized password hash) for the password binding of `email`."""
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT u.id, uap.password_hash
            FROM user_auth_providers uap
            JOIN users u ON uap.user_id = u.id
            WHERE uap.provider = %s AND u.email = %s
            """,
            (PROVIDER_PASSWORD, email),
        )
        row = cur.fetchone()
    if not row:
        return None
    user_id, password_hash = row
    return str(user_id), password_hash


def get_provider_by_subject(conn, provider: str, provider_id: str) -> Optional[AuthProvider]:
    with conn.cursor() as cur:
        cur.execute(
            f"""
            SELECT {_PROVIDER_COLUMNS}
            FROM user_auth_providers
            WHERE provider = %s AND provider_id = %s
            """,
            (provider, provider_id),
        )
        row = cur.fetchone()
    if not row:
        return None
    binding_id, user_id, prov, prov_id, password_hash, created_at = row
    return AuthProvider(
        id=str(binding_id),
        user_id=str(user_id),
        provider=prov,
        provider_id=prov_id,
        password_hash=password_hash,
        created_at=created_at,
    )
