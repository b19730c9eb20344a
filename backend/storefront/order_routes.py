import uuid
from collections import defaultdict
from datetime import datetime, timezone
from functools import lru_cache
from io import BytesIO
from typing import Any, Dict, Iterable, List, Optional

import qrcode
from qrcode.constants import ERROR_CORRECT_M
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Response
from pydantic import BaseModel, EmailStr, Field, field_validator
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from . import ledger, lifecycle
from .auth_routes import get_current_user, require_admin
from .cart_routes import MAX_QTY_PER_LINE, check_sellable, load_cart
from .db import get_session
from .events import log_event, manager
from .models import ORDER_STATUSES, PAYMENT_METHODS, CartItem, Order, OrderActivity, OrderItem, Product, User
from .settings_store import get_shop_settings, shipping_fee_cents

router = APIRouter()


def _iso(dt: Optional[datetime]) -> Optional[str]:
    dt = lifecycle.aware(dt)
    return dt.isoformat() if dt else None


def serialize_item(item: OrderItem) -> Dict[str, Any]:
    return {
        "id": item.id,
        "product_id": item.product_id,
        "sku": item.sku,
        "size": item.size,
        "quantity": item.quantity,
        "price_cents": item.price_cents,
        "line_total_cents": item.price_cents * item.quantity,
        "status": item.status,
        "product": item.product,
    }


def serialize_order(order: Order) -> Dict[str, Any]:
    return {
        "id": order.id,
        "user_id": order.user_id,
        "customer_name": order.customer_name,
        "email": order.email,
        "phone": order.phone,
        "alternate_phone": order.alternate_phone,
        "address": order.address,
        "house_flat": order.house_flat,
        "street": order.street,
        "landmark": order.landmark,
        "city": order.city,
        "state": order.state,
        "pincode": order.pincode,
        "items": [serialize_item(i) for i in order.items],
        "subtotal_cents": order.subtotal_cents,
        "shipping_cents": order.shipping_cents,
        "total_cents": order.total_cents,
        "status": order.status,
        "version": order.version,
        "payment_method": order.payment_method,
        "courier": order.courier,
        "tracking_id": order.tracking_id,
        "notes": order.notes,
        "activity_log": [
            {"timestamp": _iso(a.created_at), "status": a.status, "note": a.note, "actor": a.actor}
            for a in order.activity
        ],
        "delivered_at": _iso(order.delivered_at),
        "created_at": _iso(order.created_at),
        "updated_at": _iso(order.updated_at),
    }


def _order_query():
    return select(Order).options(selectinload(Order.items), selectinload(Order.activity))


async def load_order(db: AsyncSession, order_id: str) -> Optional[Order]:
    return await db.scalar(
        _order_query().where(Order.id == order_id).execution_options(populate_existing=True)
    )


async def get_order_or_404(db: AsyncSession, order_id: str) -> Order:
    order = await load_order(db, order_id)
    if not order:
        raise HTTPException(status_code=404, detail="order not found")
    return order


def ensure_owner(order: Order, user: User) -> None:
    if user.role != "admin" and order.user_id != user.id:
        raise HTTPException(status_code=403, detail="not your order")


def new_order_id() -> str:
    return f"ORD-{datetime.now(timezone.utc):%Y%m%d}-{uuid.uuid4().hex[:8].upper()}"


def item_amount_cents(item: OrderItem) -> int:
    return item.price_cents * item.quantity


def cancel_refund_cents(order: Order) -> int:
    """What a full cancellation gives back: live items plus shipping (already-cancelled items were refunded on their own)."""
    live = sum(item_amount_cents(i) for i in order.items if i.status != lifecycle.CANCELLED)
    return live + (order.shipping_cents or 0)


def is_prepaid(order: Order) -> bool:
    return order.payment_method != "COD"


async def restock(db: AsyncSession, items: Iterable[OrderItem]) -> None:
    per_product: Dict[str, int] = defaultdict(int)
    for item in items:
        per_product[item.product_id] += item.quantity
    for product_id, qty in per_product.items():
        await db.execute(
            update(Product.__table__)
            .where(Product.__table__.c.id == product_id)
            .values(stock=Product.__table__.c.stock + qty)
        )


async def refund_to_wallet(
    db: AsyncSession,
    order: Order,
    amount_cents: int,
    operation_id: str,
    description: str,
) -> Optional[ledger.LedgerResult]:
    if not order.user_id or amount_cents <= 0:
        return None
    return await ledger.post_entry(
        db,
        user_id=order.user_id,
        kind=ledger.CREDIT,
        amount_cents=amount_cents,
        description=description,
        operation_id=operation_id,
        order_id=order.id,
    )


# ---------- Checkout ----------
class CheckoutLine(BaseModel):
    product_id: str
    size: str = Field(min_length=1)
    quantity: int = Field(ge=1, le=MAX_QTY_PER_LINE)


class CheckoutBody(BaseModel):
    customer_name: str = Field(min_length=1)
    email: Optional[EmailStr] = None
    phone: str = Field(min_length=5)
    alternate_phone: Optional[str] = None
    address: Optional[str] = None
    house_flat: Optional[str] = None
    street: Optional[str] = None
    landmark: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    pincode: Optional[str] = None
    payment_method: str
    notes: Optional[str] = None
    items: Optional[List[CheckoutLine]] = None

    @field_validator("payment_method")
    @classmethod
    def _payment_method(cls, v: str) -> str:
        v = (v or "").strip().upper()
        if v not in PAYMENT_METHODS:
            raise ValueError(f"payment_method must be one of {', '.join(PAYMENT_METHODS)}")
        return v


def _compose_address(body: CheckoutBody) -> str:
    if body.address and body.address.strip():
        return body.address.strip()
    parts = [body.house_flat, body.street, body.landmark, body.city, body.state, body.pincode]
    return ", ".join([p.strip() for p in parts if p and p.strip()])


async def _existing_checkout(db: AsyncSession, user_id: str, key: str) -> Optional[Order]:
    return await db.scalar(
        _order_query()
        .where(Order.user_id == user_id, Order.checkout_key == key)
        .execution_options(populate_existing=True)
    )


@router.post("/api/orders", status_code=201)
async def checkout(
    body: CheckoutBody,
    response: Response,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    # Rollbacks below expire loaded objects; keep what is needed as plain values
    user_id, user_email = user.id, user.email
    key = (idempotency_key or "").strip()[:128] or None
    if key:
        prior = await _existing_checkout(db, user_id, key)
        if prior:
            response.status_code = 200
            return {**serialize_order(prior), "replayed": True}

    from_cart = body.items is None
    if from_cart:
        cart = await load_cart(db, user_id)
        lines = [(c.product_id, c.size, c.quantity) for c in cart]
    else:
        lines = [(l.product_id, l.size, l.quantity) for l in body.items]
    if not lines:
        raise HTTPException(status_code=400, detail="no items to order")

    product_ids = sorted({pid for pid, _, _ in lines})
    products = {
        p.id: p
        for p in (await db.scalars(select(Product).where(Product.id.in_(product_ids)))).all()
    }
    missing = [pid for pid in product_ids if pid not in products]
    if missing:
        raise HTTPException(status_code=400, detail=f"unknown product: {missing[0]}")
    for pid, size, _ in lines:
        check_sellable(products[pid], size)

    settings = await get_shop_settings(db)
    subtotal = sum(products[pid].price_cents * qty for pid, _, qty in lines)
    shipping = shipping_fee_cents(subtotal, settings)
    total = subtotal + shipping
    order_id = new_order_id()
    now = datetime.now(timezone.utc)

    # Reserve stock per product; the guard keeps stock from going negative under concurrent checkouts
    wanted: Dict[str, int] = defaultdict(int)
    for pid, _, qty in lines:
        wanted[pid] += qty
    for pid in product_ids:
        result = await db.execute(
            update(Product.__table__)
            .where(Product.__table__.c.id == pid, Product.__table__.c.stock >= wanted[pid])
            .values(stock=Product.__table__.c.stock - wanted[pid])
        )
        if result.rowcount == 0:
            sku = products[pid].sku
            await db.rollback()
            raise HTTPException(status_code=409, detail=f"insufficient stock for {sku}")

    order = Order(
        id=order_id,
        user_id=user_id,
        customer_name=body.customer_name.strip(),
        email=(body.email or user_email),
        phone=body.phone.strip(),
        alternate_phone=body.alternate_phone,
        address=_compose_address(body),
        house_flat=body.house_flat,
        street=body.street,
        landmark=body.landmark,
        city=body.city,
        state=body.state,
        pincode=body.pincode,
        subtotal_cents=subtotal,
        shipping_cents=shipping,
        total_cents=total,
        status=lifecycle.PENDING,
        version=1,
        payment_method=body.payment_method,
        notes=body.notes,
        checkout_key=key,
        created_at=now,
    )
    order.items = [
        OrderItem(
            position=pos,
            product_id=pid,
            sku=products[pid].sku,
            size=size,
            quantity=qty,
            price_cents=products[pid].price_cents,
            status=lifecycle.PENDING,
            product={
                "id": pid,
                "name": products[pid].name,
                "image": products[pid].image,
                "category": products[pid].category,
            },
        )
        for pos, (pid, size, qty) in enumerate(lines)
    ]
    order.activity = [OrderActivity(status=lifecycle.PENDING, note="Order placed", actor=user_id, created_at=now)]
    db.add(order)
    try:
        await db.flush()
    except IntegrityError:
        # Same Idempotency-Key committed by a concurrent request
        await db.rollback()
        prior = await _existing_checkout(db, user_id, key) if key else None
        if not prior:
            raise HTTPException(status_code=409, detail="checkout conflict, retry")
        response.status_code = 200
        return {**serialize_order(prior), "replayed": True}

    if body.payment_method == "WALLET" and total > 0:
        await ledger.post_entry(
            db,
            user_id=user_id,
            kind=ledger.DEBIT,
            amount_cents=total,
            description=f"Payment for order {order_id}",
            operation_id=f"order:{order_id}:payment",
            order_id=order_id,
        )

    if from_cart:
        await db.execute(delete(CartItem).where(CartItem.user_id == user_id))
    await db.commit()

    order = await get_order_or_404(db, order_id)
    log_event(
        "order", "created",
        order_id=order_id, user_id=user_id, total_cents=total, payment_method=body.payment_method, lines=len(lines),
    )
    await manager.broadcast({"type": "order.created", "id": order_id, "total_cents": total, "user_id": user_id})
    return serialize_order(order)


# ---------- Listing ----------
@router.get("/api/orders")
async def list_orders(
    status: Optional[str] = Query(None, description="Filter by order status (admin)"),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    stmt = _order_query()
    if user.role != "admin":
        stmt = stmt.where(Order.user_id == user.id)
    if status:
        if status not in ORDER_STATUSES:
            raise HTTPException(status_code=400, detail="unknown status")
        stmt = stmt.where(Order.status == status)
    stmt = stmt.order_by(Order.created_at.desc()).limit(limit).offset(offset)
    orders = (await db.scalars(stmt)).all()
    return [serialize_order(o) for o in orders]


@router.get("/api/orders/user")
async def list_my_orders(user: User = Depends(get_current_user), db: AsyncSession = Depends(get_session)):
    stmt = _order_query().where(Order.user_id == user.id).order_by(Order.created_at.desc())
    return [serialize_order(o) for o in (await db.scalars(stmt)).all()]


@router.get("/api/orders/{order_id}")
async def get_order(order_id: str, user: User = Depends(get_current_user), db: AsyncSession = Depends(get_session)):
    order = await get_order_or_404(db, order_id)
    ensure_owner(order, user)
    return serialize_order(order)


# ---------- Admin updates ----------
class StatusBody(BaseModel):
    status: str
    note: Optional[str] = None
    expected_version: Optional[int] = None


class ShippingBody(BaseModel):
    courier: str = Field(min_length=1)
    tracking_id: str = Field(min_length=1)


class NotesBody(BaseModel):
    notes: str


@router.patch("/api/orders/{order_id}/status")
async def update_order_status(
    order_id: str,
    body: StatusBody,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
):
    order = await get_order_or_404(db, order_id)
    lifecycle.check_admin_move(order.status, body.status)
    if body.status != lifecycle.CANCELLED and any(i.status == lifecycle.CANCEL_REQUESTED for i in order.items):
        raise HTTPException(status_code=409, detail="resolve the open item cancel request first")

    refund = None
    if body.status == lifecycle.CANCELLED:
        live_items = [i for i in order.items if i.status != lifecycle.CANCELLED]
        refund_cents = cancel_refund_cents(order) if is_prepaid(order) else 0
        await lifecycle.transition(
            db, order, body.status, note=body.note or "Cancelled by admin", actor=admin.id,
            expected_version=body.expected_version,
        )
        await restock(db, live_items)
        refund = await refund_to_wallet(
            db, order, refund_cents, f"refund:order:{order.id}:cancel", f"Refund for cancelled order {order.id}"
        )
    else:
        await lifecycle.transition(
            db, order, body.status, note=body.note, actor=admin.id, expected_version=body.expected_version
        )
    await db.commit()

    order = await get_order_or_404(db, order_id)
    await manager.broadcast({"type": "order.status_changed", "id": order.id, "status": order.status})
    if refund is not None:
        await manager.broadcast({"type": "wallet.updated", "user_id": order.user_id, "balance_cents": refund.balance_cents})
    return serialize_order(order)


@router.patch("/api/orders/{order_id}/shipping")
async def update_order_shipping(
    order_id: str,
    body: ShippingBody,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
):
    order = await get_order_or_404(db, order_id)
    order.courier = body.courier.strip()
    order.tracking_id = body.tracking_id.strip()
    db.add(OrderActivity(order_id=order.id, status=order.status, note=f"Shipping via {order.courier} ({order.tracking_id})", actor=admin.id))
    await db.commit()
    return serialize_order(await get_order_or_404(db, order_id))


@router.patch("/api/orders/{order_id}/notes")
async def update_order_notes(
    order_id: str,
    body: NotesBody,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
):
    order = await get_order_or_404(db, order_id)
    order.notes = body.notes
    await db.commit()
    return serialize_order(await get_order_or_404(db, order_id))


@lru_cache(maxsize=2048)
def _qr_png(text: str, box_size: int = 8, border: int = 2) -> bytes:
    """Compact QR PNG for a packing-slip label.

    Cached in-memory since labels are printed in bursts.
    """
    qr = qrcode.QRCode(
        version=None,
        error_correction=ERROR_CORRECT_M,
        box_size=box_size,
        border=border,
    )
    qr.add_data(text)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buf = BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


@router.get("/api/orders/{order_id}/qr")
async def order_qr(
    order_id: str,
    box_size: int = Query(8, ge=2, le=20),
    _: User = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
):
    order = await db.get(Order, order_id)
    if not order:
        raise HTTPException(status_code=404, detail="order not found")
    return Response(content=_qr_png(order.id, box_size=box_size), media_type="image/png")
