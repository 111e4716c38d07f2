from __future__ import annotations

from typing import Optional

from fastapi.responses import JSONResponse

from storefront.auth.models import ROLE_ADMIN
from storefront.db import users


def is_admin(conn, user_id: Optional[str]) -> bool:
    """True only for an existing user whose role is admin (unknown users fail closed)."""
    if not user_id:
        return False
    user = users.find_user_by_id(conn, user_id)
    return user is not None and user.role == ROLE_ADMIN


def admin_denial(message: str, status_code: int = 403) -> JSONResponse:
    resp = JSONResponse(status_code=status_code, content={"error": message})
    resp.headers["Cache-Control"] = "no-store"
    return resp
