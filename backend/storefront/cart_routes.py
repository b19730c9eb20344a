from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .auth_routes import get_current_user
from .catalog_routes import get_product_or_404, serialize_product
from .db import get_session
from .models import CartItem, Product, User, WishlistItem

router = APIRouter()

MAX_QTY_PER_LINE = 20


def serialize_cart_item(item: CartItem) -> Dict[str, Any]:
    return {
        "product_id": item.product_id,
        "size": item.size,
        "quantity": item.quantity,
        "product": serialize_product(item.product) if item.product is not None else None,
    }


async def load_cart(db: AsyncSession, user_id: str) -> List[CartItem]:
    stmt = (
        select(CartItem)
        .where(CartItem.user_id == user_id)
        .order_by(CartItem.id.asc())
        .execution_options(populate_existing=True)
    )
    return list((await db.scalars(stmt)).unique().all())


def _cart_payload(items: List[CartItem]) -> Dict[str, Any]:
    lines = [serialize_cart_item(i) for i in items]
    subtotal = sum((i.product.price_cents if i.product else 0) * i.quantity for i in items)
    return {"items": lines, "count": sum(i.quantity for i in items), "subtotal_cents": subtotal}


def check_sellable(product: Product, size: str) -> None:
    if product.status != "Active":
        raise HTTPException(status_code=400, detail="product is not available")
    if size not in (product.sizes or []):
        raise HTTPException(status_code=400, detail=f"size {size} not offered for this product")


class AddCartBody(BaseModel):
    product_id: str
    size: str = Field(min_length=1)
    quantity: int = Field(default=1, ge=1, le=MAX_QTY_PER_LINE)


class UpdateCartBody(BaseModel):
    product_id: str
    size: str = Field(min_length=1)
    quantity: int = Field(le=MAX_QTY_PER_LINE)


@router.get("/api/cart")
async def get_cart(user: User = Depends(get_current_user), db: AsyncSession = Depends(get_session)):
    return _cart_payload(await load_cart(db, user.id))


@router.post("/api/cart")
async def add_to_cart(
    body: AddCartBody,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    product = await get_product_or_404(db, body.product_id)
    check_sellable(product, body.size)
    existing = await db.scalar(
        select(CartItem).where(
            CartItem.user_id == user.id, CartItem.product_id == product.id, CartItem.size == body.size
        )
    )
    if existing:
        existing.quantity = min(existing.quantity + body.quantity, MAX_QTY_PER_LINE)
    else:
        db.add(CartItem(user_id=user.id, product_id=product.id, size=body.size, quantity=body.quantity))
    try:
        await db.commit()
    except IntegrityError:
        # Two adds raced on a fresh line; the other one created it
        await db.rollback()
        raise HTTPException(status_code=409, detail="cart changed, retry")
    return _cart_payload(await load_cart(db, user.id))


@router.put("/api/cart")
async def update_cart(
    body: UpdateCartBody,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    item = await db.scalar(
        select(CartItem).where(
            CartItem.user_id == user.id, CartItem.product_id == body.product_id, CartItem.size == body.size
        )
    )
    if not item:
        raise HTTPException(status_code=404, detail="item not found in cart")
    if body.quantity > 0:
        item.quantity = body.quantity
    else:
        await db.delete(item)
    await db.commit()
    return _cart_payload(await load_cart(db, user.id))


@router.delete("/api/cart")
async def delete_cart(
    product_id: Optional[str] = Query(None),
    size: Optional[str] = Query(None),
    clear: bool = Query(False),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    if clear:
        await db.execute(delete(CartItem).where(CartItem.user_id == user.id))
    elif product_id and size:
        await db.execute(
            delete(CartItem).where(
                CartItem.user_id == user.id, CartItem.product_id == product_id, CartItem.size == size
            )
        )
    else:
        raise HTTPException(status_code=400, detail="missing parameters")
    await db.commit()
    return _cart_payload(await load_cart(db, user.id))


# ---------- Wishlist ----------
class WishlistBody(BaseModel):
    product_id: str


async def _wishlist(db: AsyncSession, user_id: str) -> List[Dict[str, Any]]:
    stmt = select(WishlistItem).where(WishlistItem.user_id == user_id).order_by(WishlistItem.id.desc())
    items = (await db.scalars(stmt)).unique().all()
    return [serialize_product(i.product) for i in items if i.product is not None]


@router.get("/api/wishlist")
async def get_wishlist(user: User = Depends(get_current_user), db: AsyncSession = Depends(get_session)):
    return await _wishlist(db, user.id)


@router.post("/api/wishlist")
async def add_to_wishlist(
    body: WishlistBody,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    user_id = user.id
    await get_product_or_404(db, body.product_id)
    exists = await db.scalar(
        select(WishlistItem.id).where(WishlistItem.user_id == user_id, WishlistItem.product_id == body.product_id)
    )
    if not exists:
        db.add(WishlistItem(user_id=user_id, product_id=body.product_id))
        try:
            await db.commit()
        except IntegrityError:
            # Already added by a concurrent request
            await db.rollback()
    return await _wishlist(db, user_id)


@router.delete("/api/wishlist/{product_id}")
async def remove_from_wishlist(
    product_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    await db.execute(
        delete(WishlistItem).where(WishlistItem.user_id == user.id, WishlistItem.product_id == product_id)
    )
    await db.commit()
    return await _wishlist(db, user.id)


@router.get("/api/wishlist/{product_id}")
async def in_wishlist(
    product_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    exists = await db.scalar(
        select(WishlistItem.id).where(WishlistItem.user_id == user.id, WishlistItem.product_id == product_id)
    )
    return {"in_wishlist": bool(exists)}
