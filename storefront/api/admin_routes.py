"""Back-office user management. Every route is behind the gate's admin check and `require_admin`."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from storefront.api.auth_routes import parse_body
from storefront.api.errors import AdminDenied
from storefront.auth import identity
from storefront.auth import session as session_store
from storefront.auth.deps import require_admin
from storefront.auth.models import ROLE_ADMIN, ROLES, AuthContext, User
from storefront.auth.util import normalize_email
from storefront.db import users
from storefront.db.connection import get_db

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin")


class RoleChangeRequest(BaseModel):
    target_user_id: str = Field("", alias="targetUserId")
    role: str = ""


class PromoteRequest(BaseModel):
    email: str = ""


class CreateAdminRequest(BaseModel):
    email: str = ""
    password: str = ""
    name: Optional[str] = None


def _user_row(user: User) -> Dict[str, Any]:
    out = user.public_dict()
    out["created_at"] = user.created_at.isoformat() if user.created_at else None
    return out


def _set_role(conn, actor: AuthContext, user: User, role: str) -> User:
    """Change a role and revoke the target's sessions so the change takes effect immediately."""
    updated = users.update_user_role(conn, user.id, role)
    if updated is None:
        raise AdminDenied("User not found", 404)
    if user.role != role:
        revoked = session_store.delete_user_sessions(conn, user.id)
        logger.info(
            "Role of user %s changed %s -> %s by %s (%d session(s) revoked)",
            user.id,
            user.role,
            role,
            actor.user_id,
            revoked,
        )
    return updated


@router.get("/users")
def list_users(_ctx: AuthContext = Depends(require_admin), conn=Depends(get_db)) -> Dict[str, Any]:
    return {"users": [_user_row(u) for u in users.list_users(conn)]}


@router.patch("/users")
def change_role(
    payload: Optional[Dict[str, Any]] = Body(None),
    ctx: AuthContext = Depends(require_admin),
    conn=Depends(get_db),
) -> Dict[str, Any]:
    body = parse_body(RoleChangeRequest, payload, "Missing required fields: targetUserId, role")
    if not body.target_user_id or not body.role:
        raise AdminDenied("Missing required fields: targetUserId, role", 400)
    if body.role not in ROLES:
        raise AdminDenied('Invalid role. Must be "user" or "admin"', 400)

    user = users.find_user_by_id(conn, body.target_user_id)
    if user is None:
        raise AdminDenied("User not found", 404)
    return {"user": _user_row(_set_role(conn, ctx, user, body.role))}


@router.post("/promote-user")
def promote_user(
    payload: Optional[Dict[str, Any]] = Body(None),
    ctx: AuthContext = Depends(require_admin),
    conn=Depends(get_db),
) -> Dict[str, Any]:
    body = parse_body(PromoteRequest, payload, "Email is required")
    email = normalize_email(body.email)
    if not email:
        raise AdminDenied("Email is required", 400)

    user = users.find_user_by_email(conn, email)
    if user is None:
        raise AdminDenied("User not found", 404)
    updated = _set_role(conn, ctx, user, ROLE_ADMIN)
    return {"message": "User promoted to admin successfully", "user": updated.public_dict()}


@router.post("/create-admin")
def create_admin(
    payload: Optional[Dict[str, Any]] = Body(None),
    ctx: AuthContext = Depends(require_admin),
    conn=Depends(get_db),
) -> JSONResponse:
    body = parse_body(CreateAdminRequest, payload, "Email and password are required")
    email = normalize_email(body.email)
    if not email or not body.password:
        raise AdminDenied("Email and password are required", 400)

    try:
        user = identity.register_password_user(
            conn, email=email, password=body.password, name=(body.name or "").strip() or None, role=ROLE_ADMIN
        )
    except identity.EmailTaken as e:
        raise AdminDenied("User already exists", 409) from e
    logger.info("Admin user %s created by %s", user.id, ctx.user_id)
    return JSONResponse(
        status_code=201,
        content={"message": "Admin user created successfully", "user": user.public_dict()},
    )
