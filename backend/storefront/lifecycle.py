"""Order and order-item status transitions.

Statuses only move along ``TRANSITIONS``. A move is written as a
compare-and-swap on ``(status, version)`` so two admins (or an admin and a
customer request) acting on the same order cannot both succeed from the
same starting state.
"""
from __future__ import annotations

import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Dict, FrozenSet, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from .events import log_event
from .models import Order, OrderActivity, OrderItem

RETURN_WINDOW_DAYS = int(os.environ.get("RETURN_WINDOW_DAYS", "14").strip() or 14)

PENDING = "Pending"
PROCESSING = "Processing"
SHIPPED = "Shipped"
DELIVERED = "Delivered"
CANCEL_REQUESTED = "Cancel Requested"
CANCELLED = "Cancelled"
RETURN_REQUESTED = "Return Requested"
RETURN_APPROVED = "Return Approved"
RETURN_COMPLETED = "Return Completed"

TRANSITIONS: Dict[str, FrozenSet[str]] = {
    PENDING: frozenset({PROCESSING, SHIPPED, CANCELLED, CANCEL_REQUESTED}),
    PROCESSING: frozenset({SHIPPED, CANCELLED, CANCEL_REQUESTED}),
    SHIPPED: frozenset({DELIVERED}),
    CANCEL_REQUESTED: frozenset({CANCELLED, PENDING, PROCESSING}),
    DELIVERED: frozenset({RETURN_REQUESTED}),
    RETURN_REQUESTED: frozenset({RETURN_APPROVED, DELIVERED}),
    RETURN_APPROVED: frozenset({RETURN_COMPLETED}),
    CANCELLED: frozenset(),
    RETURN_COMPLETED: frozenset(),
}

# Statuses owned by the cancel/return request flow; direct admin updates may not enter or leave them.
REQUEST_ONLY_STATUSES = frozenset({CANCEL_REQUESTED, RETURN_REQUESTED, RETURN_APPROVED, RETURN_COMPLETED})

CANCELLABLE = frozenset({PENDING, PROCESSING})
# Item statuses that still follow the order through fulfilment
_FOLLOWING_ITEM_STATUSES = frozenset({PENDING, PROCESSING, SHIPPED})
_FULFILMENT_MOVES = frozenset({PROCESSING, SHIPPED, DELIVERED})
# A full cancellation also takes items still waiting on their own cancel request
_CANCEL_FOLLOWING_ITEM_STATUSES = _FOLLOWING_ITEM_STATUSES | {CANCEL_REQUESTED}


class TransitionError(Exception):
    pass


class IllegalTransition(TransitionError):
    pass


class StaleOrder(TransitionError):
    """The order (or item) changed underneath the caller."""


def is_allowed(from_status: str, to_status: str) -> bool:
    return to_status in TRANSITIONS.get(from_status, frozenset())


def check_admin_move(from_status: str, to_status: str) -> None:
    if to_status not in TRANSITIONS:
        raise IllegalTransition(f"unknown status: {to_status}")
    if from_status in (CANCEL_REQUESTED, RETURN_REQUESTED) or to_status in REQUEST_ONLY_STATUSES:
        raise IllegalTransition(f"{from_status} -> {to_status} goes through cancel/return requests")
    if not is_allowed(from_status, to_status):
        raise IllegalTransition(f"cannot move order from {from_status} to {to_status}")


def aware(dt: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if dt is None:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def within_return_window(order: Order, now: Optional[datetime] = None) -> bool:
    start = aware(order.delivered_at) or aware(order.created_at)
    if start is None:
        return False
    now = now or datetime.now(timezone.utc)
    return now - start <= timedelta(days=RETURN_WINDOW_DAYS)


def can_cancel(order: Order, item: Optional[OrderItem] = None) -> bool:
    if order.status not in CANCELLABLE:
        return False
    if item is not None and item.status not in CANCELLABLE:
        return False
    return True


def can_return(order: Order, item: Optional[OrderItem] = None, now: Optional[datetime] = None) -> bool:
    if order.status != DELIVERED:
        return False
    if item is not None and item.status != DELIVERED:
        return False
    return within_return_window(order, now)


async def transition(
    session: AsyncSession,
    order: Order,
    to_status: str,
    *,
    note: Optional[str] = None,
    actor: Optional[str] = None,
    expected_version: Optional[int] = None,
) -> Order:
    """Move ``order`` to ``to_status`` (no commit). Items must be loaded on the order."""
    from_status = order.status
    version = order.version if expected_version is None else expected_version
    if not is_allowed(from_status, to_status):
        raise IllegalTransition(f"cannot move order from {from_status} to {to_status}")

    now = datetime.now(timezone.utc)
    values = {"status": to_status, "version": version + 1, "updated_at": now}
    if to_status == DELIVERED:
        values["delivered_at"] = now
    result = await session.execute(
        update(Order.__table__)
        .where(
            Order.__table__.c.id == order.id,
            Order.__table__.c.status == from_status,
            Order.__table__.c.version == version,
        )
        .values(**values)
    )
    if result.rowcount == 0:
        log_event("order", "stale_transition", logging.WARNING, order_id=order.id, from_status=from_status, to_status=to_status)
        raise StaleOrder(f"order {order.id} was modified concurrently")

    # The CAS already wrote these columns; mirror them without marking the object dirty
    set_committed_value(order, "status", to_status)
    set_committed_value(order, "version", version + 1)
    set_committed_value(order, "updated_at", now)
    if to_status == DELIVERED:
        set_committed_value(order, "delivered_at", now)

    if to_status in _FULFILMENT_MOVES or to_status == CANCELLED:
        following = _CANCEL_FOLLOWING_ITEM_STATUSES if to_status == CANCELLED else _FOLLOWING_ITEM_STATUSES
        for item in order.items:
            if item.status in following:
                item.status = to_status

    session.add(OrderActivity(order_id=order.id, status=to_status, note=note, actor=actor, created_at=now))
    await session.flush()
    log_event("order", "status_changed", order_id=order.id, from_status=from_status, to_status=to_status, actor=actor)
    return order


async def transition_item(session: AsyncSession, item: OrderItem, to_status: str) -> OrderItem:
    """Compare-and-swap an item's status (no commit)."""
    from_status = item.status
    if not is_allowed(from_status, to_status):
        raise IllegalTransition(f"cannot move item from {from_status} to {to_status}")
    result = await session.execute(
        update(OrderItem.__table__)
        .where(OrderItem.__table__.c.id == item.id, OrderItem.__table__.c.status == from_status)
        .values(status=to_status)
    )
    if result.rowcount == 0:
        raise StaleOrder(f"order item {item.id} was modified concurrently")
    set_committed_value(item, "status", to_status)
    log_event("order", "item_status_changed", order_id=item.order_id, item_id=item.id, from_status=from_status, to_status=to_status)
    return item
