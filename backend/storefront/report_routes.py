from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .auth_routes import require_admin
from .db import get_session
from .models import ORDER_STATUSES, CancelRequest, Order, OrderItem, Product, ReturnRequest, User

router = APIRouter()

TOP_PRODUCTS = 5


def _parse_date(date_str: Optional[str]) -> Optional[datetime]:
    if not date_str:
        return None
    try:
        return datetime.fromisoformat(date_str).replace(tzinfo=timezone.utc)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"invalid date: {date_str}")


@router.get("/api/admin/reports", response_model=Dict[str, Any])
async def sales_report(
    from_date: Optional[str] = Query(None, description="Inclusive start date (YYYY-MM-DD)"),
    to_date: Optional[str] = Query(None, description="Inclusive end date (YYYY-MM-DD)"),
    status: Optional[str] = Query(None, description="Only orders in this status"),
    _: User = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
):
    """Sales totals, per-status and per-day breakdowns and best sellers.

    Sales figures leave out cancelled orders unless ``status=Cancelled`` is asked for.
    ``total_sales_cents`` is gross; ``net_sales_cents`` takes off completed cancel and return refunds.
    """
    start_dt = _parse_date(from_date)
    end_dt = _parse_date(to_date)
    if status and status not in ORDER_STATUSES:
        raise HTTPException(status_code=400, detail="unknown status")

    filters = []
    if start_dt:
        filters.append(Order.created_at >= start_dt)
    if end_dt:
        # make end inclusive by adding 1 day
        filters.append(Order.created_at < end_dt + timedelta(days=1))
    if status:
        filters.append(Order.status == status)
    sales_filters = filters if status else filters + [Order.status != "Cancelled"]

    by_status_rows = await session.execute(
        select(Order.status, func.count(Order.id)).where(*filters).group_by(Order.status)
    )
    orders_by_status = {s: int(n or 0) for s, n in by_status_rows.fetchall()}
    total_orders = sum(orders_by_status.values())

    total_sales, sales_orders = (
        await session.execute(
            select(func.coalesce(func.sum(Order.total_cents), 0), func.count(Order.id)).where(*sales_filters)
        )
    ).one()
    total_sales = int(total_sales or 0)
    average = total_sales // int(sales_orders) if sales_orders else 0

    # Settled request refunds on the same orders; total_sales_cents stays gross
    refunded = 0
    for model in (CancelRequest, ReturnRequest):
        refunded += int(
            await session.scalar(
                select(func.coalesce(func.sum(model.refund_amount_cents), 0))
                .select_from(model)
                .join(Order, Order.id == model.order_id)
                .where(*sales_filters, model.refund_status == "Completed")
            )
            or 0
        )

    day = func.date(Order.created_at)
    by_day_rows = await session.execute(
        select(day.label("day"), func.count(Order.id), func.coalesce(func.sum(Order.total_cents), 0))
        .where(*sales_filters)
        .group_by(day)
        .order_by(day.asc())
    )
    sales_by_date = []
    for day_val, n, amount in by_day_rows.fetchall():
        sales_by_date.append({
            "date": day_val.isoformat() if hasattr(day_val, "isoformat") else str(day_val),
            "orders": int(n or 0),
            "sales_cents": int(amount or 0),
        })

    revenue = func.sum(OrderItem.price_cents * OrderItem.quantity)
    top_rows = await session.execute(
        select(
            OrderItem.product_id,
            func.max(OrderItem.sku),
            func.sum(OrderItem.quantity),
            revenue.label("revenue"),
        )
        .join(Order, Order.id == OrderItem.order_id)
        .where(*sales_filters, OrderItem.status != "Cancelled")
        .group_by(OrderItem.product_id)
        .order_by(revenue.desc())
        .limit(TOP_PRODUCTS)
    )
    top_rows = top_rows.fetchall()
    names = {}
    if top_rows:
        name_rows = await session.execute(
            select(Product.id, Product.name).where(Product.id.in_([r[0] for r in top_rows]))
        )
        names = dict(name_rows.fetchall())
    top_products = [
        {
            "product_id": pid,
            "name": names.get(pid),
            "sku": sku,
            "quantity": int(qty or 0),
            "revenue_cents": int(rev or 0),
        }
        for pid, sku, qty, rev in top_rows
    ]

    active_products = await session.scalar(
        select(func.count()).select_from(Product).where(Product.status == "Active")
    )

    return {
        "ok": True,
        "total_orders": total_orders,
        "total_sales_cents": total_sales,
        "refunded_cents": refunded,
        "net_sales_cents": total_sales - refunded,
        "average_order_value_cents": average,
        "active_products": int(active_products or 0),
        "orders_by_status": orders_by_status,
        "sales_by_date": sales_by_date,
        "top_products": top_products,
        "from": start_dt.date().isoformat() if start_dt else None,
        "to": end_dt.date().isoformat() if end_dt else None,
        "status": status or "all",
    }
