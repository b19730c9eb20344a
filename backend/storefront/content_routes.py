from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .auth_routes import get_current_user_optional, require_admin
from .db import get_session
from .events import log_event
from .models import Announcement, Subscriber, User
from .settings_store import get_shop_settings, update_shop_settings

router = APIRouter()


def serialize_announcement(a: Announcement) -> Dict[str, Any]:
    return {
        "id": a.id,
        "text": a.text,
        "is_active": bool(a.is_active),
        "created_at": a.created_at.isoformat() if a.created_at else None,
        "updated_at": a.updated_at.isoformat() if a.updated_at else None,
    }


def serialize_subscriber(s: Subscriber) -> Dict[str, Any]:
    return {
        "id": s.id,
        "email": s.email,
        "source": s.source,
        "active": bool(s.active),
        "created_at": s.created_at.isoformat() if s.created_at else None,
    }


# ---------- Announcements ----------
class AnnouncementBody(BaseModel):
    text: str = Field(min_length=1, max_length=500)
    is_active: bool = True


async def _announcement_or_404(db: AsyncSession, announcement_id: str) -> Announcement:
    a = await db.get(Announcement, announcement_id)
    if not a:
        raise HTTPException(status_code=404, detail="announcement not found")
    return a


@router.get("/api/announcements")
async def list_announcements(
    admin: bool = Query(False, description="Include inactive announcements (admin only)"),
    user: Optional[User] = Depends(get_current_user_optional),
    db: AsyncSession = Depends(get_session),
):
    stmt = select(Announcement).order_by(Announcement.created_at.desc())
    if admin:
        if user is None or user.role != "admin":
            raise HTTPException(status_code=403, detail="admin required")
    else:
        stmt = stmt.where(Announcement.is_active == True)
    return [serialize_announcement(a) for a in (await db.scalars(stmt)).all()]


@router.post("/api/announcements", status_code=201)
async def create_announcement(
    body: AnnouncementBody,
    _: User = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
):
    a = Announcement(text=body.text.strip(), is_active=body.is_active)
    db.add(a)
    await db.commit()
    await db.refresh(a)
    return serialize_announcement(a)


@router.delete("/api/announcements/{announcement_id}")
async def delete_announcement(
    announcement_id: str,
    _: User = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
):
    a = await _announcement_or_404(db, announcement_id)
    await db.delete(a)
    await db.commit()
    return {"ok": True}


@router.patch("/api/announcements/{announcement_id}/toggle")
async def toggle_announcement(
    announcement_id: str,
    _: User = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
):
    a = await _announcement_or_404(db, announcement_id)
    a.is_active = not a.is_active
    a.updated_at = datetime.now(timezone.utc)
    await db.commit()
    await db.refresh(a)
    return serialize_announcement(a)


# ---------- Newsletter ----------
class SubscribeBody(BaseModel):
    email: EmailStr
    source: Optional[str] = None


class UnsubscribeBody(BaseModel):
    email: EmailStr


@router.post("/api/subscribe", status_code=201)
async def subscribe(body: SubscribeBody, db: AsyncSession = Depends(get_session)):
    email_norm = body.email.lower().strip()
    sub = await db.scalar(select(Subscriber).where(Subscriber.email == email_norm))
    if sub and sub.active:
        raise HTTPException(status_code=409, detail="already subscribed")
    if sub:
        sub.active = True
        if body.source:
            sub.source = body.source
    else:
        sub = Subscriber(email=email_norm, source=(body.source or "Stay Updated"), active=True)
        db.add(sub)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise HTTPException(status_code=409, detail="already subscribed")
    await db.refresh(sub)
    log_event("newsletter", "subscribed", email=email_norm)
    return {"ok": True, "subscriber": serialize_subscriber(sub)}


@router.delete("/api/subscribe")
async def unsubscribe(body: UnsubscribeBody = Body(...), db: AsyncSession = Depends(get_session)):
    email_norm = body.email.lower().strip()
    sub = await db.scalar(select(Subscriber).where(Subscriber.email == email_norm))
    if not sub:
        raise HTTPException(status_code=404, detail="subscriber not found")
    sub.active = False
    await db.commit()
    log_event("newsletter", "unsubscribed", email=email_norm)
    return {"ok": True}


@router.get("/api/admin/subscribers")
async def list_subscribers(
    active: Optional[bool] = Query(None),
    _: User = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
):
    stmt = select(Subscriber).order_by(Subscriber.created_at.desc())
    if active is not None:
        stmt = stmt.where(Subscriber.active == active)
    return [serialize_subscriber(s) for s in (await db.scalars(stmt)).all()]


# ---------- Shop settings ----------
class ShopSettingsBody(BaseModel):
    shipping_enabled: Optional[bool] = None
    shipping_charge_cents: Optional[int] = Field(default=None, ge=0)
    free_shipping_threshold_cents: Optional[int] = Field(default=None, ge=0)


@router.get("/api/settings")
async def read_settings(db: AsyncSession = Depends(get_session)):
    return await get_shop_settings(db)


@router.post("/api/settings")
async def write_settings(
    body: ShopSettingsBody,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
):
    updates = body.model_dump(exclude_none=True)
    settings = await update_shop_settings(db, updates)
    log_event("settings", "shop_updated", fields=sorted(updates), actor=admin.id)
    return settings
