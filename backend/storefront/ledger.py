"""Wallet ledger: store-credit balances and their transaction history.

Every credit or debit is applied as a single conditional UPDATE on the
wallet row (``balance = balance +/- amount``, ``version = version + 1``),
so concurrent postings against one wallet serialize in the database
instead of racing through a read-modify-write in Python. Each posting
carries a caller-supplied ``operation_id``; ``(user_id, operation_id)`` is
unique, so a retried request returns the original transaction and the
balance moves at most once.

``post_entry`` works inside the caller's unit of work (checkout, refund
approval) and never commits. ``credit`` and ``debit`` own their unit of
work and resolve operation-id races at commit time.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import func, insert, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .events import log_event
from .models import Wallet, WalletTransaction

CREDIT = "credit"
DEBIT = "debit"


class LedgerError(Exception):
    """Base class for ledger rejections."""


class InvalidAmount(LedgerError):
    pass


class InsufficientFunds(LedgerError):
    pass


class IdempotencyConflict(LedgerError):
    """The operation id was already used for a different posting."""


@dataclass
class LedgerResult:
    transaction: WalletTransaction
    balance_cents: int
    replayed: bool = False


def new_transaction_id() -> str:
    return f"TXN-{uuid.uuid4().hex[:20].upper()}"


def serialize_transaction(txn: WalletTransaction) -> Dict[str, Any]:
    return {
        "id": txn.id,
        "type": txn.kind,
        "amount_cents": txn.amount_cents,
        "balance_after_cents": txn.balance_after_cents,
        "sequence": txn.sequence,
        "description": txn.description,
        "order_id": txn.order_id,
        "operation_id": txn.operation_id,
        "timestamp": txn.created_at.isoformat() if txn.created_at else None,
    }


async def _ensure_wallet_row(session: AsyncSession, user_id: str) -> None:
    """Insert the wallet row if it is missing; concurrent callers never collide."""
    values = {
        "id": str(uuid.uuid4()),
        "user_id": user_id,
        "balance_cents": 0,
        "version": 0,
        "created_at": datetime.now(timezone.utc),
        "updated_at": datetime.now(timezone.utc),
    }
    dialect = session.bind.dialect.name if session.bind is not None else ""
    if dialect == "sqlite":
        stmt = sqlite_insert(Wallet.__table__).values(**values).on_conflict_do_nothing(index_elements=["user_id"])
    elif dialect == "postgresql":
        stmt = pg_insert(Wallet.__table__).values(**values).on_conflict_do_nothing(index_elements=["user_id"])
    else:
        exists = await session.scalar(select(Wallet.id).where(Wallet.user_id == user_id))
        if exists:
            return
        stmt = insert(Wallet.__table__).values(**values)
    await session.execute(stmt)


async def get_wallet(session: AsyncSession, user_id: str) -> Wallet:
    """Return the user's wallet, creating an empty one on first use."""
    await _ensure_wallet_row(session, user_id)
    wallet = await session.scalar(
        select(Wallet).where(Wallet.user_id == user_id).execution_options(populate_existing=True)
    )
    await session.commit()
    return wallet


async def list_transactions(session: AsyncSession, user_id: str, limit: Optional[int] = None) -> List[WalletTransaction]:
    stmt = (
        select(WalletTransaction)
        .where(WalletTransaction.user_id == user_id)
        .order_by(WalletTransaction.sequence.desc())
    )
    if limit:
        stmt = stmt.limit(limit)
    return list((await session.scalars(stmt)).all())


async def find_operation(session: AsyncSession, user_id: str, operation_id: str) -> Optional[WalletTransaction]:
    return await session.scalar(
        select(WalletTransaction).where(
            WalletTransaction.user_id == user_id,
            WalletTransaction.operation_id == operation_id,
        )
    )


async def _current_balance(session: AsyncSession, user_id: str) -> int:
    bal = await session.scalar(select(Wallet.balance_cents).where(Wallet.user_id == user_id))
    return int(bal or 0)


async def _replay(session: AsyncSession, existing: WalletTransaction, kind: str, amount_cents: int) -> LedgerResult:
    if existing.kind != kind or existing.amount_cents != amount_cents:
        log_event(
            "ledger", "idempotency_conflict", logging.WARNING,
            user_id=existing.user_id, operation_id=existing.operation_id,
            stored={"type": existing.kind, "amount_cents": existing.amount_cents},
            requested={"type": kind, "amount_cents": amount_cents},
        )
        raise IdempotencyConflict(
            f"operation {existing.operation_id} already recorded as {existing.kind} of {existing.amount_cents}"
        )
    log_event("ledger", "replay", user_id=existing.user_id, operation_id=existing.operation_id, txn_id=existing.id)
    return LedgerResult(existing, await _current_balance(session, existing.user_id), replayed=True)


async def post_entry(
    session: AsyncSession,
    *,
    user_id: str,
    kind: str,
    amount_cents: int,
    description: str,
    operation_id: str,
    order_id: Optional[str] = None,
) -> LedgerResult:
    """Apply one credit or debit inside the caller's transaction (no commit)."""
    user_id = (user_id or "").strip()
    operation_id = (operation_id or "").strip()
    if kind not in (CREDIT, DEBIT):
        raise LedgerError(f"unknown entry type: {kind}")
    if not user_id:
        raise LedgerError("user id is required")
    if not operation_id:
        raise LedgerError("operation id is required")
    if not isinstance(amount_cents, int) or isinstance(amount_cents, bool) or amount_cents <= 0:
        raise InvalidAmount("amount must be a positive integer number of cents")

    existing = await find_operation(session, user_id, operation_id)
    if existing is not None:
        return await _replay(session, existing, kind, amount_cents)

    await _ensure_wallet_row(session, user_id)

    delta = amount_cents if kind == CREDIT else -amount_cents
    stmt = (
        update(Wallet.__table__)
        .where(Wallet.__table__.c.user_id == user_id)
        .values(
            balance_cents=Wallet.__table__.c.balance_cents + delta,
            version=Wallet.__table__.c.version + 1,
            updated_at=datetime.now(timezone.utc),
        )
    )
    if kind == DEBIT:
        stmt = stmt.where(Wallet.__table__.c.balance_cents >= amount_cents)
    result = await session.execute(stmt)
    if result.rowcount == 0:
        log_event(
            "ledger", "insufficient_funds", logging.WARNING,
            user_id=user_id, amount_cents=amount_cents, operation_id=operation_id,
        )
        raise InsufficientFunds("insufficient wallet balance")

    row = (
        await session.execute(
            select(Wallet.__table__.c.id, Wallet.__table__.c.balance_cents, Wallet.__table__.c.version)
            .where(Wallet.__table__.c.user_id == user_id)
        )
    ).one()
    txn = WalletTransaction(
        id=new_transaction_id(),
        wallet_id=row.id,
        user_id=user_id,
        kind=kind,
        amount_cents=amount_cents,
        balance_after_cents=int(row.balance_cents),
        sequence=int(row.version),
        description=(description or "").strip()[:255] or kind.title(),
        order_id=order_id,
        operation_id=operation_id,
        created_at=datetime.now(timezone.utc),
    )
    session.add(txn)
    await session.flush()
    log_event(
        "ledger", kind,
        user_id=user_id, amount_cents=amount_cents, balance_after_cents=txn.balance_after_cents,
        operation_id=operation_id, order_id=order_id, txn_id=txn.id,
    )
    return LedgerResult(txn, txn.balance_after_cents)


async def _post_and_commit(session: AsyncSession, **entry: Any) -> LedgerResult:
    try:
        res = await post_entry(session, **entry)
        await session.commit()
        return res
    except IntegrityError:
        # Lost an operation-id race to a concurrent request: report the winner.
        await session.rollback()
        existing = await find_operation(session, entry["user_id"].strip(), entry["operation_id"].strip())
        if existing is None:
            raise
        return await _replay(session, existing, entry["kind"], entry["amount_cents"])
    except LedgerError:
        await session.rollback()
        raise


async def credit(
    session: AsyncSession,
    user_id: str,
    amount_cents: int,
    description: str,
    operation_id: str,
    order_id: Optional[str] = None,
) -> LedgerResult:
    return await _post_and_commit(
        session,
        user_id=user_id,
        kind=CREDIT,
        amount_cents=amount_cents,
        description=description,
        operation_id=operation_id,
        order_id=order_id,
    )


async def debit(
    session: AsyncSession,
    user_id: str,
    amount_cents: int,
    description: str,
    operation_id: str,
    order_id: Optional[str] = None,
) -> LedgerResult:
    return await _post_and_commit(
        session,
        user_id=user_id,
        kind=DEBIT,
        amount_cents=amount_cents,
        description=description,
        operation_id=operation_id,
        order_id=order_id,
    )


async def audit_wallet(session: AsyncSession, user_id: str) -> Dict[str, Any]:
    """Check the stored balance against the transaction history."""
    balance = await session.scalar(select(Wallet.balance_cents).where(Wallet.user_id == user_id))
    credits = await session.scalar(
        select(func.coalesce(func.sum(WalletTransaction.amount_cents), 0)).where(
            WalletTransaction.user_id == user_id, WalletTransaction.kind == CREDIT
        )
    )
    debits = await session.scalar(
        select(func.coalesce(func.sum(WalletTransaction.amount_cents), 0)).where(
            WalletTransaction.user_id == user_id, WalletTransaction.kind == DEBIT
        )
    )
    txns = list(
        (
            await session.scalars(
                select(WalletTransaction)
                .where(WalletTransaction.user_id == user_id)
                .order_by(WalletTransaction.sequence.asc())
            )
        ).all()
    )
    running = 0
    chain_ok = True
    for txn in txns:
        running += txn.amount_cents if txn.kind == CREDIT else -txn.amount_cents
        if running != txn.balance_after_cents or running < 0:
            chain_ok = False
            break
    stored = int(balance or 0)
    expected = int(credits or 0) - int(debits or 0)
    return {
        "user_id": user_id,
        "balance_cents": stored,
        "credits_cents": int(credits or 0),
        "debits_cents": int(debits or 0),
        "expected_balance_cents": expected,
        "transactions": len(txns),
        "consistent": stored == expected and chain_ok,
        "chain_ok": chain_ok,
    }
