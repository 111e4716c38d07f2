from __future__ import annotations

from typing import Any, List, Optional

from storefront.auth.models import ROLE_ADMIN, ROLE_USER, User

_USER_COLUMNS = "id, email, name, role, created_at, updated_at"


def _row_to_user(row: Any) -> User:
    user_id, email, name, role, created_at, updated_at = row
    return User(
        id=str(user_id),
        email=email,
        name=name,
        role=role,
        created_at=created_at,
        updated_at=updated_at,
    )


def find_user_by_email(conn, email: str) -> Optional[User]:
    with conn.cursor() as cur:
        cur.execute(f"SELECT {_USER_COLUMNS} FROM users WHERE email = %s", (email,))
        row = cur.fetchone()
    return _row_to_user(row) if row else None


def find_user_by_id(conn, user_id: str) -> Optional[User]:
    with conn.cursor() as cur:
        cur.execute(f"SELECT {_USER_COLUMNS} FROM users WHERE id = %s", (user_id,))
        row = cur.fetchone()
    return _row_to_user(row) if row else None


def create_user(
    conn,
    *,
    user_id: str,
    email: str,
    name: Optional[str] = None,
    role: str = ROLE_USER,
    commit: bool = True,
) -> User:
    """
    Insert a user and return the stored row.

    With commit=False the caller owns the transaction (commit or rollback).

    Raises:
        psycopg.IntegrityError: If the email already exists
    """
    with conn.cursor() as cur:
        cur.execute(
            f"""
            INSERT INTO users (id, email, name, role)
            VALUES (%s, %s, %s, %s)
            RETURNING {_USER_COLUMNS}
            """,
            (user_id, email, name, role),
        )
        row = cur.fetchone()
    if commit:
        conn.commit()
    if not row:
        raise ValueError("Failed to create user")
    return _row_to_user(row)


def list_users(conn) -> List[User]:
    with conn.cursor() as cur:
        cur.execute(f"SELECT {_USER_COLUMNS} FROM users ORDER BY created_at DESC")
        rows = cur.fetchall()
    return [_row_to_user(r) for r in rows]


def update_user_role(conn, user_id: str, role: str) -> Optional[User]:
    """Set a user's role. Returns the updated user, or None if it does not exist."""
    with conn.cursor() as cur:
        cur.execute(
            f"""
            UPDATE users
            SET role = %s, updated_at = NOW()
            WHERE id = %s
            RETURNING {_USER_COLUMNS}
            """,
            (role, user_id),
        )
        row = cur.fetchone()
    conn.commit()
    return _row_to_user(row) if row else None


def count_admins(conn) -> int:
    with conn.cursor() as cur:
        cur.execute("SELECT COUNT(*) FROM users WHERE role = %s", (ROLE_ADMIN,))
        row = cur.fetchone()
    return int(row[0]) if row else 0
