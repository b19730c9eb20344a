from __future__ import annotations

from typing import Any, Dict

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .models import AppSetting

SHOP_SETTINGS_KEY = "shop"

DEFAULT_SHOP_SETTINGS: Dict[str, Any] = {
    "shipping_enabled": True,
    "shipping_charge_cents": 9900,
    "free_shipping_threshold_cents": 200000,
}


async def get_setting(db: AsyncSession, key: str) -> Any:
    row = await db.scalar(select(AppSetting).where(AppSetting.key == key))
    return None if not row else row.value


async def set_setting(db: AsyncSession, key: str, value: Any) -> None:
    row = await db.scalar(select(AppSetting).where(AppSetting.key == key))
    if not row:
        row = AppSetting(key=key, value=value)
        db.add(row)
    else:
        row.value = value
    await db.commit()


async def get_shop_settings(db: AsyncSession) -> Dict[str, Any]:
    """Stored shop settings merged over the defaults."""
    val = await get_setting(db, SHOP_SETTINGS_KEY)
    merged = dict(DEFAULT_SHOP_SETTINGS)
    if isinstance(val, dict):
        merged.update({k: v for k, v in val.items() if k in DEFAULT_SHOP_SETTINGS})
    return merged


async def update_shop_settings(db: AsyncSession, updates: Dict[str, Any]) -> Dict[str, Any]:
    current = await get_shop_settings(db)
    current.update({k: v for k, v in (updates or {}).items() if k in DEFAULT_SHOP_SETTINGS and v is not None})
    await set_setting(db, SHOP_SETTINGS_KEY, current)
    return current


def shipping_fee_cents(subtotal_cents: int, settings: Dict[str, Any]) -> int:
    """Flat charge unless shipping is disabled or the subtotal clears the free-shipping threshold."""
    if not settings.get("shipping_enabled", True):
        return 0
    if subtotal_cents > int(settings.get("free_shipping_threshold_cents") or 0):
        return 0
    return int(settings.get("shipping_charge_cents") or 0)
