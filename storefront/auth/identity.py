"""
Identity resolution shared by the login/registration handlers.

Handlers own HTTP concerns (status codes, cookies); these functions own the
user/binding bookkeeping so the Google callback and direct-token flows can't drift.
"""

from __future__ import annotations

import logging
from typing import Optional

import psycopg

from storefront.auth import passwords
from storefront.auth.google import GoogleIdentity
from storefront.auth.models import PROVIDER_GOOGLE, ROLE_USER, User
from storefront.auth.util import new_id, normalize_email
from storefront.db import providers, users

logger = logging.getLogger(__name__)


class EmailTaken(Exception):
    """An account with this email already exists."""


def authenticate_password(conn, email: str, password: str) -> Optional[str]:
    """
    Check email/password against the stored password binding.

    Returns the user id on success, None otherwise. Unknown email, missing or
    unparseable hash and wrong password are deliberately indistinguishable.
    """
    record = providers.get_password_auth_by_email(conn, normalize_email(email))
    if not record:
        return None
    user_id, serialized = record
    parsed = passwords.parse_password_hash(serialized)
    if parsed is None:
        logger.warning("Unparseable password hash for user %s", user_id)
        return None
    if not passwords.verify_password(password, parsed):
        return None
    return user_id


def register_password_user(
    conn,
    *,
    email: str,
    password: str,
    name: Optional[str] = None,
    role: str = ROLE_USER,
) -> User:
    """
    Create a user with a password binding. Does not create a session.

    The user row and its password binding are committed together or not at all.

    Raises:
        EmailTaken: If the email is already bound to a user
    """
    email = normalize_email(email)
    if users.find_user_by_email(conn, email) is not None:
        raise EmailTaken(email)
    serialized = passwords.serialize_password_hash(passwords.hash_password(password))
    try:
        user = users.create_user(conn, user_id=new_id(), email=email, name=name, role=role, commit=False)
        providers.create_password_provider(conn, user.id, serialized, commit=False)
        conn.commit()
    except psycopg.IntegrityError as e:
        # Lost a race with a concurrent registration for the same email.
        conn.rollback()
        raise EmailTaken(email) from e
    except Exception:
        conn.rollback()
        raise
    return user


def resolve_google_user(conn, identity: GoogleIdentity) -> str:
    """
    Map a verified Google identity to a user id.

    Order: existing google binding -> existing user with the same (verified) email
    -> new user. A google binding is created for the last two cases, in the same
    transaction as any new user.
    """
    binding = providers.get_provider_by_subject(conn, PROVIDER_GOOGLE, identity.sub)
    if binding is not None:
        return binding.user_id

    # An email Google says is unverified must not be used to take over an existing account.
    email = normalize_email(identity.email) if identity.email_verified is not False else ""

    user_id: Optional[str] = None
    if email:
        existing = users.find_user_by_email(conn, email)
        if existing is not None:
            user_id = existing.id

    try:
        if user_id is None:
            user = users.create_user(
                conn,
                user_id=new_id(),
                email=email or f"{identity.sub}@users.google.local",
                name=identity.name,
                commit=False,
            )
            user_id = user.id
            logger.info("Creating user %s from google sign-in", user_id)
        else:
            logger.info("Linking google account to existing user %s", user_id)
        providers.create_oauth_provider(conn, user_id, PROVIDER_GOOGLE, identity.sub, commit=False)
        conn.commit()
    except psycopg.IntegrityError:
        # A concurrent first sign-in for the same subject won; use its binding.
        conn.rollback()
        binding = providers.get_provider_by_subject(conn, PROVIDER_GOOGLE, identity.sub)
        if binding is None:
            raise
        logger.info("Google subject already bound to user %s by a concurrent sign-in", binding.user_id)
        return binding.user_id
    except Exception:
        conn.rollback()
        raise
    return user_id
