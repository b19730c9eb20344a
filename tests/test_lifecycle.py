from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select
from sqlalchemy.orm import selectinload

from storefront import lifecycle
from storefront.models import Order, OrderActivity, OrderItem


async def _make_order(session_factory, user_id, status="Pending", items=2):
    async with session_factory() as s:
        order = Order(
            id=f"ORD-TEST-{datetime.now(timezone.utc).strftime('%H%M%S%f')}",
            user_id=user_id,
            customer_name="Asha",
            phone="9876543210",
            subtotal_cents=2_000 * items,
            shipping_cents=0,
            total_cents=2_000 * items,
            status=status,
            payment_method="UPI",
        )
        order.items = [
            OrderItem(position=i, product_id=f"p{i}", sku=f"SKU{i}", size="M", quantity=1, price_cents=2_000, status=status)
            for i in range(items)
        ]
        order.activity = []
        s.add(order)
        await s.commit()
        return order.id


async def _load(session, order_id):
    return await session.scalar(
        select(Order)
        .options(selectinload(Order.items), selectinload(Order.activity))
        .where(Order.id == order_id)
        .execution_options(populate_existing=True)
    )


def test_transition_table():
    assert lifecycle.is_allowed("Pending", "Processing")
    assert lifecycle.is_allowed("Shipped", "Delivered")
    assert lifecycle.is_allowed("Cancel Requested", "Pending")
    assert not lifecycle.is_allowed("Pending", "Delivered")
    assert not lifecycle.is_allowed("Delivered", "Cancelled")
    assert not lifecycle.is_allowed("Cancelled", "Pending")
    assert not lifecycle.is_allowed("Return Completed", "Delivered")


@pytest.mark.parametrize(
    "from_status,to_status",
    [
        ("Pending", "Cancel Requested"),
        ("Delivered", "Return Requested"),
        ("Cancel Requested", "Cancelled"),
        ("Return Requested", "Return Approved"),
        ("Pending", "Delivered"),
        ("Pending", "Lost"),
    ],
)
def test_admin_moves_are_restricted(from_status, to_status):
    with pytest.raises(lifecycle.IllegalTransition):
        lifecycle.check_admin_move(from_status, to_status)


def test_admin_move_allowed():
    lifecycle.check_admin_move("Pending", "Processing")
    lifecycle.check_admin_move("Processing", "Cancelled")


def test_return_window():
    now = datetime.now(timezone.utc)
    order = Order(status="Delivered", delivered_at=now - timedelta(days=lifecycle.RETURN_WINDOW_DAYS - 1))
    assert lifecycle.can_return(order, now=now)
    order.delivered_at = now - timedelta(days=lifecycle.RETURN_WINDOW_DAYS, hours=1)
    assert not lifecycle.can_return(order, now=now)
    # naive timestamps (sqlite) are treated as UTC
    order.delivered_at = (now - timedelta(days=1)).replace(tzinfo=None)
    assert lifecycle.can_return(order, now=now)


def test_cancel_eligibility():
    item = OrderItem(status="Shipped")
    assert lifecycle.can_cancel(Order(status="Processing"))
    assert not lifecycle.can_cancel(Order(status="Shipped"))
    assert not lifecycle.can_cancel(Order(status="Pending"), item)


@pytest.mark.asyncio
async def test_transition_bumps_version_and_moves_items(session_factory, customer):
    order_id = await _make_order(session_factory, customer.id)
    async with session_factory() as s:
        order = await _load(s, order_id)
        await lifecycle.transition(s, order, "Shipped", note="Handed to courier", actor="admin-1")
        await lifecycle.transition(s, order, "Delivered")
        await s.commit()

    async with session_factory() as s:
        order = await _load(s, order_id)
        assert order.status == "Delivered"
        assert order.version == 3
        assert order.delivered_at is not None
        assert {i.status for i in order.items} == {"Delivered"}
        assert [a.status for a in order.activity] == ["Shipped", "Delivered"]
        assert order.activity[0].note == "Handed to courier"


@pytest.mark.asyncio
async def test_illegal_transition_writes_nothing(session_factory, customer):
    order_id = await _make_order(session_factory, customer.id)
    async with session_factory() as s:
        order = await _load(s, order_id)
        with pytest.raises(lifecycle.IllegalTransition):
            await lifecycle.transition(s, order, "Delivered")

    async with session_factory() as s:
        order = await _load(s, order_id)
        assert order.status == "Pending"
        assert order.version == 1
        assert (await s.scalar(select(OrderActivity.id).where(OrderActivity.order_id == order_id))) is None


@pytest.mark.asyncio
async def test_concurrent_writer_gets_stale_order(session_factory, customer):
    order_id = await _make_order(session_factory, customer.id)
    async with session_factory() as first, session_factory() as second:
        a = await _load(first, order_id)
        b = await _load(second, order_id)

        await lifecycle.transition(first, a, "Cancelled", actor="admin-1")
        await first.commit()

        with pytest.raises(lifecycle.StaleOrder):
            await lifecycle.transition(second, b, "Processing", actor="admin-2")
        await second.rollback()

    async with session_factory() as s:
        assert (await _load(s, order_id)).status == "Cancelled"


@pytest.mark.asyncio
async def test_expected_version_must_match(session_factory, customer):
    order_id = await _make_order(session_factory, customer.id)
    async with session_factory() as s:
        order = await _load(s, order_id)
        with pytest.raises(lifecycle.StaleOrder):
            await lifecycle.transition(s, order, "Processing", expected_version=7)


@pytest.mark.asyncio
async def test_cancelled_items_stay_cancelled_when_order_moves(session_factory, customer):
    order_id = await _make_order(session_factory, customer.id)
    async with session_factory() as s:
        order = await _load(s, order_id)
        await lifecycle.transition_item(s, order.items[0], "Cancel Requested")
        await lifecycle.transition_item(s, order.items[0], "Cancelled")
        await lifecycle.transition(s, order, "Shipped")
        await s.commit()

    async with session_factory() as s:
        order = await _load(s, order_id)
        assert [i.status for i in order.items] == ["Cancelled", "Shipped"]
