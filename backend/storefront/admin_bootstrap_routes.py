"""Admin accounts: first-admin bootstrap, user management and the customer list."""
import hmac
import logging
import os
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .auth_routes import ROLES, hash_password, public_user, require_admin
from .db import get_session
from .events import log_event
from .models import Order, User

router = APIRouter()

_TRUTHY = ("1", "true", "TRUE", "yes", "on")


def _bootstrap_settings():
    token = (os.environ.get("ADMIN_BOOTSTRAP_TOKEN") or "").strip()
    return token, (os.environ.get("ADMIN_BOOTSTRAP_ALLOW_EXISTING") or "").strip() in _TRUTHY


def _require_bootstrap_token(x_admin_bootstrap_token: Optional[str] = Header(default=None, alias="X-Admin-Bootstrap-Token")):
    token, _ = _bootstrap_settings()
    if not token:
        raise HTTPException(status_code=404, detail="bootstrap disabled")
    if not x_admin_bootstrap_token or not hmac.compare_digest(x_admin_bootstrap_token.strip(), token):
        log_event("admin", "bootstrap_rejected", logging.WARNING)
        raise HTTPException(status_code=401, detail="invalid bootstrap token")


def _clean(value: Optional[str]) -> Optional[str]:
    return (value or "").strip() or None


async def user_by_email(db: AsyncSession, email: str) -> Optional[User]:
    return await db.scalar(select(User).where(User.email == email.lower().strip()))


async def count_admins(db: AsyncSession) -> int:
    return int(await db.scalar(select(func.count()).select_from(User).where(User.role == "admin")) or 0)


async def ensure_admin(db: AsyncSession, *, email: str, password: str, name: Optional[str] = None) -> User:
    """Create or promote ``email`` to an active admin with the given password (no commit)."""
    user = await user_by_email(db, email)
    if user is None:
        user = User(email=email.lower().strip(), name=_clean(name), role="admin", is_active=True)
        db.add(user)
    else:
        user.name = _clean(name) or user.name
        user.role = "admin"
        user.is_active = True
    user.password_hash = hash_password(password)
    return user


class BootstrapAdminBody(BaseModel):
    email: EmailStr
    password: str = Field(min_length=6)
    name: Optional[str] = None


@router.get("/api/admin/bootstrap/status")
async def bootstrap_status():
    token, allow_existing = _bootstrap_settings()
    return {"enabled": bool(token), "allow_existing": allow_existing}


@router.post("/api/admin/bootstrap/set-admin")
async def bootstrap_set_admin(
    body: BootstrapAdminBody,
    db: AsyncSession = Depends(get_session),
    _: None = Depends(_require_bootstrap_token),
):
    _, allow_existing = _bootstrap_settings()
    # If an admin already exists, block unless explicitly allowed
    if await count_admins(db) and not allow_existing:
        raise HTTPException(status_code=409, detail="admin already exists; set ADMIN_BOOTSTRAP_ALLOW_EXISTING=1 to override temporarily")

    user = await ensure_admin(db, email=body.email, password=body.password, name=body.name)
    await db.commit()
    await db.refresh(user)
    log_event("admin", "bootstrap_admin_set", user_id=user.id, email=user.email)
    return {"ok": True, "admin": public_user(user), "bootstrap_enabled": True}


class AdminCreateUserBody(BaseModel):
    email: EmailStr
    password: str = Field(min_length=6)
    name: Optional[str] = None
    phone: Optional[str] = None
    role: Optional[str] = None  # admin | customer


@router.post("/api/admin/users/create", status_code=201)
async def admin_create_user(
    body: AdminCreateUserBody,
    db: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    if await user_by_email(db, body.email):
        raise HTTPException(status_code=409, detail="email already exists")
    user = User(
        email=body.email.lower().strip(),
        name=_clean(body.name),
        phone=_clean(body.phone),
        password_hash=hash_password(body.password),
        role=body.role if body.role in ROLES else "customer",
        is_active=True,
    )
    db.add(user)
    await db.commit()
    await db.refresh(user)
    log_event("admin", "user_created", user_id=user.id, role=user.role, actor=admin.id)
    return {"ok": True, "user": public_user(user)}


class AdminResetPasswordBody(BaseModel):
    email: EmailStr
    new_password: str = Field(min_length=6)


@router.post("/api/admin/users/reset-password")
async def admin_reset_password(
    body: AdminResetPasswordBody,
    db: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    user = await user_by_email(db, body.email)
    if not user:
        raise HTTPException(status_code=404, detail="user not found")
    user.password_hash = hash_password(body.new_password)
    user.is_active = True
    await db.commit()
    log_event("admin", "password_reset", user_id=user.id, actor=admin.id)
    return {"ok": True}


@router.get("/api/admin/customers")
async def admin_customers(
    search: Optional[str] = Query(None, description="Match on name, email or phone"),
    db: AsyncSession = Depends(get_session),
    _: User = Depends(require_admin),
):
    """Customers with their order count and lifetime spend (cancelled orders excluded)."""
    spend = func.sum(case((Order.status != "Cancelled", Order.total_cents), else_=0))
    stmt = (
        select(
            User.id,
            User.name,
            User.email,
            User.phone,
            User.created_at,
            func.count(Order.id).label("orders"),
            func.coalesce(spend, 0).label("total_spent_cents"),
        )
        .outerjoin(Order, Order.user_id == User.id)
        .where(User.role == "customer")
        .group_by(User.id, User.name, User.email, User.phone, User.created_at)
        .order_by(User.created_at.desc())
    )
    if search:
        like = f"%{search.strip().lower()}%"
        stmt = stmt.where(
            func.lower(User.email).like(like)
            | func.lower(func.coalesce(User.name, "")).like(like)
            | func.coalesce(User.phone, "").like(like)
        )
    result = await db.execute(stmt)
    rows = []
    for uid, name, email, phone, created_at, orders, spent in result.fetchall():
        rows.append({
            "id": uid,
            "name": name,
            "email": email,
            "phone": phone,
            "orders": int(orders or 0),
            "total_spent_cents": int(spent or 0),
            "created_at": created_at.isoformat() if hasattr(created_at, "isoformat") else created_at,
        })
    return {"ok": True, "customers": rows}
