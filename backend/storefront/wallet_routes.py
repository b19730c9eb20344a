import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from . import ledger
from .auth_routes import get_current_user, require_admin
from .db import get_session
from .events import log_event, manager
from .models import User
from .request_routes import settle_request_refund

router = APIRouter()


class CreditBody(BaseModel):
    user_id: str
    amount_cents: int = Field(gt=0)
    description: str = Field(default="Store credit", max_length=255)
    order_id: Optional[str] = None
    operation_id: Optional[str] = Field(default=None, max_length=128)


class DebitBody(BaseModel):
    user_id: Optional[str] = None
    amount_cents: int = Field(gt=0)
    description: str = Field(default="Wallet payment", max_length=255)
    order_id: Optional[str] = None
    operation_id: Optional[str] = Field(default=None, max_length=128)


class RefundBody(BaseModel):
    # Settle a cancel/return request...
    request_type: Optional[str] = None
    request_id: Optional[str] = None
    outcome: str = "Completed"
    reference: Optional[str] = None
    # ...or post a manual wallet refund
    user_id: Optional[str] = None
    amount_cents: Optional[int] = Field(default=None, gt=0)
    order_id: Optional[str] = None
    description: Optional[str] = None
    operation_id: Optional[str] = Field(default=None, max_length=128)


def _operation_id(body_value: Optional[str], header_value: Optional[str]) -> str:
    op = (body_value or header_value or "").strip()
    if not op:
        raise HTTPException(status_code=400, detail="operation_id (or Idempotency-Key header) is required")
    return op


def _result_payload(res: ledger.LedgerResult) -> dict:
    return {
        "ok": True,
        "replayed": res.replayed,
        "balance_cents": res.balance_cents,
        "transaction": ledger.serialize_transaction(res.transaction),
    }


async def _wallet_view(db: AsyncSession, user_id: str, limit: int) -> dict:
    wallet = await ledger.get_wallet(db, user_id)
    txns = await ledger.list_transactions(db, user_id, limit)
    return {
        "user_id": user_id,
        "balance_cents": wallet.balance_cents,
        "transactions": [ledger.serialize_transaction(t) for t in txns],
        "updated_at": wallet.updated_at.isoformat() if wallet.updated_at else None,
    }


async def _require_user(db: AsyncSession, user_id: str) -> User:
    user = await db.scalar(select(User).where(User.id == user_id))
    if not user:
        raise HTTPException(status_code=404, detail="user not found")
    return user


@router.get("/api/wallet")
async def my_wallet(
    limit: int = Query(20, ge=1, le=200),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    return await _wallet_view(db, user.id, limit)


@router.get("/api/wallet/transactions")
async def my_transactions(
    limit: int = Query(100, ge=1, le=1000),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    txns = await ledger.list_transactions(db, user.id, limit)
    return [ledger.serialize_transaction(t) for t in txns]


@router.post("/api/wallet/credit")
async def wallet_credit(
    body: CreditBody,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
):
    actor_id = admin.id
    op = _operation_id(body.operation_id, idempotency_key)
    await _require_user(db, body.user_id)
    res = await ledger.credit(db, body.user_id, body.amount_cents, body.description, op, order_id=body.order_id)
    log_event("wallet", "admin_credit", user_id=body.user_id, amount_cents=body.amount_cents, operation_id=op, actor=actor_id, replayed=res.replayed)
    await manager.broadcast({"type": "wallet.updated", "user_id": body.user_id, "balance_cents": res.balance_cents})
    return _result_payload(res)


@router.post("/api/wallet/debit")
async def wallet_debit(
    body: DebitBody,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    target = body.user_id or user.id
    if target != user.id:
        if user.role != "admin":
            raise HTTPException(status_code=403, detail="cannot debit another user's wallet")
        await _require_user(db, target)
    op = _operation_id(body.operation_id, idempotency_key)
    res = await ledger.debit(db, target, body.amount_cents, body.description, op, order_id=body.order_id)
    await manager.broadcast({"type": "wallet.updated", "user_id": target, "balance_cents": res.balance_cents})
    return _result_payload(res)


@router.post("/api/refunds")
async def process_refund(
    body: RefundBody,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
):
    # A lost operation-id race rolls the session back and expires the admin row
    actor_id = admin.id
    if body.request_type or body.request_id:
        if not (body.request_type and body.request_id):
            raise HTTPException(status_code=400, detail="request_type and request_id go together")
        request = await settle_request_refund(
            db,
            body.request_type.strip().lower(),
            body.request_id,
            outcome=body.outcome,
            reference=body.reference,
            actor=actor_id,
        )
        return {"ok": True, "request": request}

    if not body.user_id or not body.amount_cents:
        raise HTTPException(status_code=400, detail="user_id and amount_cents are required")
    op = _operation_id(body.operation_id, idempotency_key)
    await _require_user(db, body.user_id)
    description = body.description or (f"Refund for order {body.order_id}" if body.order_id else "Manual refund")
    res = await ledger.credit(db, body.user_id, body.amount_cents, description, op, order_id=body.order_id)
    log_event("refund", "manual_wallet_refund", user_id=body.user_id, amount_cents=body.amount_cents, operation_id=op, order_id=body.order_id, actor=actor_id, replayed=res.replayed)
    await manager.broadcast({"type": "wallet.updated", "user_id": body.user_id, "balance_cents": res.balance_cents})
    return _result_payload(res)


@router.get("/api/admin/wallets/{user_id}")
async def admin_wallet(
    user_id: str,
    limit: int = Query(100, ge=1, le=1000),
    _: User = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
):
    await _require_user(db, user_id)
    return await _wallet_view(db, user_id, limit)


@router.get("/api/admin/wallets/{user_id}/audit")
async def admin_wallet_audit(
    user_id: str,
    _: User = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
):
    await _require_user(db, user_id)
    report = await ledger.audit_wallet(db, user_id)
    if not report["consistent"]:
        log_event("ledger", "audit_mismatch", logging.WARNING, **report)
    return report
