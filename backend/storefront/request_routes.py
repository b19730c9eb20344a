"""Cancel and return requests.

A request moves the order (or a single item) into ``Cancel Requested`` /
``Return Requested`` and waits for an admin decision. Refund amounts are
computed here from the stored order, never taken from the client. Wallet
refunds are posted with an operation id derived from the request id, so
approving the same request twice, or settling it again through
``/api/refunds``, credits the wallet once.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Union

from fastapi import APIRouter, Body, Depends, HTTPException, Query
from fastapi.exceptions import RequestValidationError
from pydantic import BaseModel, Field, ValidationError
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from . import ledger, lifecycle
from .auth_routes import get_current_user, require_admin
from .db import get_session
from .events import log_event, manager
from .models import CancelRequest, Order, OrderActivity, OrderItem, ReturnRequest, User
from .order_routes import (
    cancel_refund_cents,
    ensure_owner,
    get_order_or_404,
    is_prepaid,
    item_amount_cents,
    refund_to_wallet,
    restock,
)

router = APIRouter()

PENDING = "Pending"
APPROVED = "Approved"
REJECTED = "Rejected"
COMPLETED = "Completed"

REFUND_PENDING = "Pending"
REFUND_COMPLETED = "Completed"
REFUND_FAILED = "Failed"
REFUND_NOT_REQUIRED = "Not Required"

RETURN_REASONS = ("size_issue", "damaged_item", "wrong_product", "other")


def _iso(dt: Optional[datetime]) -> Optional[str]:
    dt = lifecycle.aware(dt)
    return dt.isoformat() if dt else None


def _common(req: Union[CancelRequest, ReturnRequest]) -> Dict[str, Any]:
    return {
        "id": req.id,
        "order_id": req.order_id,
        "item_id": req.item_id,
        "item_level": req.item_id is not None,
        "user_id": req.user_id,
        "reason": req.reason,
        "status": req.status,
        "previous_status": req.previous_status,
        "refund_method": req.refund_method,
        "refund_amount_cents": req.refund_amount_cents,
        "refund_status": req.refund_status,
        "refund_reference": req.refund_reference,
        "admin_note": req.admin_note,
        "requested_at": _iso(req.requested_at),
        "processed_at": _iso(req.processed_at),
    }


def serialize_cancel_request(req: CancelRequest) -> Dict[str, Any]:
    return {"type": "cancel", **_common(req)}


def serialize_return_request(req: ReturnRequest) -> Dict[str, Any]:
    return {
        "type": "return",
        **_common(req),
        "resolution": req.resolution,
        "comment": req.comment,
        "images": list(req.images or []),
        "bank_details": req.bank_details,
    }


def _find_item(order: Order, item_id: Optional[str]) -> Optional[OrderItem]:
    if item_id is None:
        return None
    for item in order.items:
        if item.id == item_id:
            return item
    raise HTTPException(status_code=404, detail="order item not found")


async def _has_open_request(db: AsyncSession, model, order_id: str, item_id: Optional[str]) -> bool:
    stmt = select(model.id).where(model.order_id == order_id, model.status.in_((PENDING, APPROVED)))
    if item_id is not None:
        # An open order-level request also covers every item
        stmt = stmt.where((model.item_id == item_id) | (model.item_id.is_(None)))
    return (await db.scalar(stmt.limit(1))) is not None


async def _claim(db: AsyncSession, req, from_status: str, to_status: str, admin_note: Optional[str]) -> None:
    """Compare-and-swap the request status so one decision wins."""
    table = type(req).__table__
    now = datetime.now(timezone.utc)
    values = {"status": to_status, "processed_at": now}
    if admin_note is not None:
        values["admin_note"] = admin_note
    result = await db.execute(
        update(table).where(table.c.id == req.id, table.c.status == from_status).values(**values)
    )
    if result.rowcount == 0:
        raise HTTPException(status_code=409, detail="request was already processed")
    for key, val in values.items():
        set_committed_value(req, key, val)


def _note_item(db: AsyncSession, order: Order, item: OrderItem, text: str, actor: Optional[str]) -> None:
    db.add(OrderActivity(order_id=order.id, status=order.status, note=f"{text} ({item.sku or item.product_id}, size {item.size})", actor=actor))


async def _load_request(db: AsyncSession, model, request_id: str):
    req = await db.get(model, request_id, populate_existing=True)
    if not req:
        raise HTTPException(status_code=404, detail="request not found")
    return req


async def _settle_wallet_refund(db: AsyncSession, req, order: Order, kind: str) -> Optional[ledger.LedgerResult]:
    res = await refund_to_wallet(
        db,
        order,
        req.refund_amount_cents,
        f"refund:{kind}:{req.id}",
        f"Refund for {kind} request on order {order.id}",
    )
    if res is not None:
        req.refund_status = REFUND_COMPLETED
        req.refund_reference = res.transaction.id
        log_event("refund", "wallet_credited", request_type=kind, request_id=req.id, order_id=order.id,
                  amount_cents=req.refund_amount_cents, txn_id=res.transaction.id, replayed=res.replayed)
    return res


async def _broadcast_request(event: str, payload: Dict[str, Any], refund: Optional[ledger.LedgerResult], user_id: Optional[str]):
    await manager.broadcast({"type": event, "request": payload})
    if refund is not None:
        await manager.broadcast({"type": "wallet.updated", "user_id": user_id, "balance_cents": refund.balance_cents})


# ---------- Cancel ----------
class CancelRequestBody(BaseModel):
    order_id: str
    item_id: Optional[str] = None
    reason: Optional[str] = Field(default=None, max_length=1000)
    refund_method: Literal["wallet", "source"] = "wallet"


class CancelDecisionBody(BaseModel):
    status: Literal["Approved", "Rejected"]
    admin_note: Optional[str] = None


async def _create_cancel(body: CancelRequestBody, user: User, db: AsyncSession) -> Dict[str, Any]:
    order = await get_order_or_404(db, body.order_id)
    ensure_owner(order, user)
    item = _find_item(order, body.item_id)
    if not lifecycle.can_cancel(order, item):
        raise HTTPException(status_code=409, detail="order can no longer be cancelled")
    if await _has_open_request(db, CancelRequest, order.id, body.item_id):
        raise HTTPException(status_code=409, detail="a cancel request is already open")

    if not is_prepaid(order):
        amount, refund_status = 0, REFUND_NOT_REQUIRED
    else:
        amount = item_amount_cents(item) if item is not None else cancel_refund_cents(order)
        refund_status = REFUND_PENDING if amount > 0 else REFUND_NOT_REQUIRED

    req = CancelRequest(
        order_id=order.id,
        item_id=item.id if item is not None else None,
        user_id=order.user_id,
        reason=(body.reason or "").strip() or None,
        status=PENDING,
        previous_status=item.status if item is not None else order.status,
        refund_method=body.refund_method,
        refund_amount_cents=amount,
        refund_status=refund_status,
        requested_at=datetime.now(timezone.utc),
    )
    if item is not None:
        await lifecycle.transition_item(db, item, lifecycle.CANCEL_REQUESTED)
        _note_item(db, order, item, "Item cancellation requested", user.id)
    else:
        await lifecycle.transition(db, order, lifecycle.CANCEL_REQUESTED, note=req.reason or "Cancellation requested", actor=user.id)
    db.add(req)
    await db.commit()
    payload = serialize_cancel_request(req)
    log_event("request", "cancel_created", request_id=req.id, order_id=order.id, item_id=req.item_id, amount_cents=amount)
    await _broadcast_request("request.created", payload, None, None)
    return payload


@router.post("/api/requests/cancel", status_code=201)
async def create_cancel_request(
    body: CancelRequestBody,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    return await _create_cancel(body, user, db)


@router.get("/api/requests/cancel")
async def list_cancel_requests(
    status: Optional[str] = Query(None),
    item_level: Optional[bool] = Query(None),
    _: User = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
):
    stmt = select(CancelRequest)
    if status:
        stmt = stmt.where(CancelRequest.status == status)
    if item_level is not None:
        stmt = stmt.where(CancelRequest.item_id.is_not(None) if item_level else CancelRequest.item_id.is_(None))
    reqs = (await db.scalars(stmt.order_by(CancelRequest.requested_at.desc()))).all()
    return [serialize_cancel_request(r) for r in reqs]


@router.put("/api/requests/cancel/{request_id}")
async def decide_cancel_request(
    request_id: str,
    body: CancelDecisionBody,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
):
    req = await _load_request(db, CancelRequest, request_id)
    if req.status != PENDING:
        raise HTTPException(status_code=409, detail=f"request is already {req.status}")
    order = await get_order_or_404(db, req.order_id)
    item = _find_item(order, req.item_id)
    await _claim(db, req, PENDING, body.status, body.admin_note)

    refund = None
    if body.status == REJECTED:
        if item is not None and item.status == lifecycle.CANCELLED:
            req.refund_status = REFUND_NOT_REQUIRED
        elif item is not None:
            await lifecycle.transition_item(db, item, req.previous_status)
            _note_item(db, order, item, "Item cancellation rejected", admin.id)
        else:
            await lifecycle.transition(db, order, req.previous_status, note=body.admin_note or "Cancellation rejected", actor=admin.id)
    elif item is not None and item.status == lifecycle.CANCELLED:
        # Already refunded and restocked by a full order cancellation
        req.refund_status = REFUND_NOT_REQUIRED
    elif item is not None:
        if order.status not in lifecycle.CANCELLABLE:
            raise HTTPException(status_code=409, detail="order can no longer be cancelled")
        await lifecycle.transition_item(db, item, lifecycle.CANCELLED)
        await restock(db, [item])
        _note_item(db, order, item, "Item cancelled", admin.id)
        if all(i.status == lifecycle.CANCELLED for i in order.items):
            await lifecycle.transition(db, order, lifecycle.CANCELLED, note="All items cancelled", actor=admin.id)
            # Last item out: shipping goes back with it
            if req.refund_status == REFUND_PENDING and order.shipping_cents:
                req.refund_amount_cents += order.shipping_cents
    else:
        live_items = [i for i in order.items if i.status != lifecycle.CANCELLED]
        await lifecycle.transition(db, order, lifecycle.CANCELLED, note=body.admin_note or "Cancellation approved", actor=admin.id)
        await restock(db, live_items)

    if body.status == APPROVED and req.refund_status == REFUND_PENDING and req.refund_method == "wallet":
        refund = await _settle_wallet_refund(db, req, order, "cancel")
    await db.commit()

    payload = serialize_cancel_request(req)
    log_event("request", "cancel_decided", request_id=req.id, order_id=order.id, status=req.status, refund_status=req.refund_status, actor=admin.id)
    await _broadcast_request("request.updated", payload, refund, order.user_id)
    await manager.broadcast({"type": "order.status_changed", "id": order.id, "status": order.status})
    return payload


@router.delete("/api/requests/cancel/{request_id}")
async def delete_cancel_request(
    request_id: str,
    _: User = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
):
    req = await _load_request(db, CancelRequest, request_id)
    if req.status == PENDING:
        raise HTTPException(status_code=409, detail="decide the request before deleting it")
    await db.delete(req)
    await db.commit()
    return {"ok": True}


# ---------- Return ----------
class BankDetails(BaseModel):
    account_holder_name: str = Field(min_length=1)
    bank_name: str = Field(min_length=1)
    account_number: str = Field(min_length=4)
    ifsc_code: str = Field(min_length=4)
    mobile_number: Optional[str] = None


class ReturnRequestBody(BaseModel):
    order_id: str
    item_id: Optional[str] = None
    reason: Literal["size_issue", "damaged_item", "wrong_product", "other"]
    resolution: Literal["refund", "replacement"] = "refund"
    comment: Optional[str] = Field(default=None, max_length=2000)
    images: List[str] = []
    refund_method: Optional[Literal["wallet", "bank"]] = None
    bank_details: Optional[BankDetails] = None


class ReturnDecisionBody(BaseModel):
    status: Literal["Approved", "Rejected", "Completed"]
    admin_note: Optional[str] = None


# Return request status -> decisions it accepts
_RETURN_DECISIONS = {
    PENDING: (APPROVED, REJECTED),
    APPROVED: (COMPLETED,),
}


async def _create_return(body: ReturnRequestBody, user: User, db: AsyncSession) -> Dict[str, Any]:
    order = await get_order_or_404(db, body.order_id)
    ensure_owner(order, user)
    item = _find_item(order, body.item_id)
    if not lifecycle.can_return(order, item):
        raise HTTPException(status_code=409, detail="order is not eligible for return")
    if await _has_open_request(db, ReturnRequest, order.id, body.item_id):
        raise HTTPException(status_code=409, detail="a return request is already open")

    refund_method = None
    if body.resolution == "refund":
        refund_method = body.refund_method or "wallet"
        if refund_method == "bank" and body.bank_details is None:
            raise HTTPException(status_code=400, detail="bank details are required for bank refunds")
        if item is not None:
            amount = item_amount_cents(item)
        else:
            amount = sum(item_amount_cents(i) for i in order.items if i.status == lifecycle.DELIVERED)
        refund_status = REFUND_PENDING if amount > 0 else REFUND_NOT_REQUIRED
    else:
        amount, refund_status = 0, REFUND_NOT_REQUIRED

    req = ReturnRequest(
        order_id=order.id,
        item_id=item.id if item is not None else None,
        user_id=order.user_id,
        reason=body.reason,
        resolution=body.resolution,
        comment=(body.comment or "").strip() or None,
        images=list(body.images),
        status=PENDING,
        previous_status=item.status if item is not None else order.status,
        refund_method=refund_method,
        bank_details=body.bank_details.model_dump() if (body.bank_details and refund_method == "bank") else None,
        refund_amount_cents=amount,
        refund_status=refund_status,
        requested_at=datetime.now(timezone.utc),
    )
    if item is not None:
        await lifecycle.transition_item(db, item, lifecycle.RETURN_REQUESTED)
        _note_item(db, order, item, "Item return requested", user.id)
    else:
        await lifecycle.transition(db, order, lifecycle.RETURN_REQUESTED, note=f"Return requested: {body.reason}", actor=user.id)
    db.add(req)
    await db.commit()
    payload = serialize_return_request(req)
    log_event("request", "return_created", request_id=req.id, order_id=order.id, item_id=req.item_id, amount_cents=amount)
    await _broadcast_request("request.created", payload, None, None)
    return payload


@router.post("/api/requests/return", status_code=201)
async def create_return_request(
    body: ReturnRequestBody,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    return await _create_return(body, user, db)


@router.get("/api/requests/return")
async def list_return_requests(
    status: Optional[str] = Query(None),
    item_level: Optional[bool] = Query(None),
    _: User = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
):
    stmt = select(ReturnRequest)
    if status:
        stmt = stmt.where(ReturnRequest.status == status)
    if item_level is not None:
        stmt = stmt.where(ReturnRequest.item_id.is_not(None) if item_level else ReturnRequest.item_id.is_(None))
    reqs = (await db.scalars(stmt.order_by(ReturnRequest.requested_at.desc()))).all()
    return [serialize_return_request(r) for r in reqs]


@router.put("/api/requests/return/{request_id}")
async def decide_return_request(
    request_id: str,
    body: ReturnDecisionBody,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
):
    req = await _load_request(db, ReturnRequest, request_id)
    if body.status not in _RETURN_DECISIONS.get(req.status, ()):
        raise HTTPException(status_code=409, detail=f"cannot mark a {req.status} request as {body.status}")
    order = await get_order_or_404(db, req.order_id)
    item = _find_item(order, req.item_id)
    from_status = req.status
    await _claim(db, req, from_status, body.status, body.admin_note)

    target = {
        APPROVED: lifecycle.RETURN_APPROVED,
        REJECTED: req.previous_status,
        COMPLETED: lifecycle.RETURN_COMPLETED,
    }[body.status]
    if item is not None:
        await lifecycle.transition_item(db, item, target)
        _note_item(db, order, item, f"Item return {body.status.lower()}", admin.id)
    else:
        await lifecycle.transition(db, order, target, note=body.admin_note or f"Return {body.status.lower()}", actor=admin.id)

    refund = None
    if body.status == COMPLETED and req.refund_status == REFUND_PENDING and req.refund_method == "wallet":
        refund = await _settle_wallet_refund(db, req, order, "return")
    await db.commit()

    payload = serialize_return_request(req)
    log_event("request", "return_decided", request_id=req.id, order_id=order.id, status=req.status, refund_status=req.refund_status, actor=admin.id)
    await _broadcast_request("request.updated", payload, refund, order.user_id)
    await manager.broadcast({"type": "order.status_changed", "id": order.id, "status": order.status})
    return payload


@router.delete("/api/requests/return/{request_id}")
async def delete_return_request(
    request_id: str,
    _: User = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
):
    req = await _load_request(db, ReturnRequest, request_id)
    if req.status == PENDING:
        raise HTTPException(status_code=409, detail="decide the request before deleting it")
    await db.delete(req)
    await db.commit()
    return {"ok": True}


# ---------- Combined ----------
@router.post("/api/requests", status_code=201)
async def create_request(
    payload: Dict[str, Any] = Body(...),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    kind = str(payload.get("type") or "").strip().lower()
    fields = {k: v for k, v in payload.items() if k != "type"}
    try:
        if kind == "cancel":
            return await _create_cancel(CancelRequestBody.model_validate(fields), user, db)
        if kind == "return":
            return await _create_return(ReturnRequestBody.model_validate(fields), user, db)
    except ValidationError as e:
        raise RequestValidationError(e.errors())
    raise HTTPException(status_code=400, detail="type must be cancel or return")


# ---------- Refund settlement (used by /api/refunds) ----------
REQUEST_MODELS = {"cancel": CancelRequest, "return": ReturnRequest}
# Request status at which its refund becomes due
_REFUND_DUE_STATUS = {"cancel": APPROVED, "return": COMPLETED}


async def settle_request_refund(
    db: AsyncSession,
    request_type: str,
    request_id: str,
    *,
    outcome: str = REFUND_COMPLETED,
    reference: Optional[str] = None,
    actor: Optional[str] = None,
) -> Dict[str, Any]:
    """Record the refund for a decided request; wallet refunds are posted, others are marked with a reference."""
    model = REQUEST_MODELS.get(request_type)
    if model is None:
        raise HTTPException(status_code=400, detail="request_type must be cancel or return")
    req = await _load_request(db, model, request_id)
    if req.status != _REFUND_DUE_STATUS[request_type]:
        raise HTTPException(status_code=409, detail=f"refund is not due for a {req.status} request")
    if req.refund_status == REFUND_NOT_REQUIRED:
        raise HTTPException(status_code=400, detail="no refund is required for this request")

    refund = None
    if req.refund_status != REFUND_COMPLETED:
        order = await get_order_or_404(db, req.order_id)
        if req.refund_method == "wallet":
            refund = await _settle_wallet_refund(db, req, order, request_type)
        else:
            if outcome not in (REFUND_COMPLETED, REFUND_FAILED):
                raise HTTPException(status_code=400, detail="outcome must be Completed or Failed")
            if outcome == REFUND_COMPLETED and not (reference or "").strip():
                raise HTTPException(status_code=400, detail="reference is required for manual refunds")
            req.refund_status = outcome
            req.refund_reference = (reference or "").strip() or None
        await db.commit()
        log_event("refund", "settled", request_type=request_type, request_id=req.id, order_id=req.order_id,
                  method=req.refund_method, refund_status=req.refund_status, actor=actor)

    payload = serialize_cancel_request(req) if request_type == "cancel" else serialize_return_request(req)
    await _broadcast_request("request.updated", payload, refund, req.user_id)
    return payload
