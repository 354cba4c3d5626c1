# Overview: Read-only sales roll-ups over completed sales (revenue, daily totals, product performance).

from __future__ import annotations

from datetime import datetime

from sqlalchemy import func

from ..extensions import db
from ..models import Sale, SaleItem
from ..models.enums import SaleStatus, enum_value
from ..money import safe_divide, to_money
from ..time_utils import coerce_datetime, to_utc_z
from ..validation import ValidationError


def _parse_range(start, end) -> tuple[datetime | None, datetime | None]:
    try:
        start_dt = coerce_datetime(start) if start else None
        end_dt = coerce_datetime(end) if end else None
    except ValueError as e:
        raise ValidationError(f"invalid date range: {e}", {"start": start, "end": end}) from e
    if start_dt and end_dt and end_dt < start_dt:
        raise ValidationError(
            "end must not be before start",
            {"field": "end", "start": to_utc_z(start_dt), "end": to_utc_z(end_dt)},
        )
    return start_dt, end_dt


def _in_range(query, start_dt, end_dt):
    if start_dt:
        query = query.filter(Sale.sale_date >= start_dt)
    if end_dt:
        query = query.filter(Sale.sale_date <= end_dt)
    return query


def sales_summary(start=None, end=None) -> dict:
    """
    Revenue figures for sales dated within [start, end].

    Revenue, averages, daily totals and product rows count COMPLETED sales
    only; sales_by_status counts every sale in the range.
    """
    start_dt, end_dt = _parse_range(start, end)

    status_rows = _in_range(
        db.session.query(Sale.status, func.count(Sale.id)), start_dt, end_dt
    ).group_by(Sale.status).all()
    sales_by_status = {enum_value(status): int(count) for status, count in status_rows}

    completed = _in_range(
        db.session.query(
            func.count(Sale.id).label("sales_count"),
            func.coalesce(func.sum(Sale.total_amount), 0).label("revenue"),
        ).filter(Sale.status == SaleStatus.COMPLETED),
        start_dt, end_dt,
    ).one()
    sales_count = int(completed.sales_count or 0)
    revenue = to_money(completed.revenue)

    day_expr = func.strftime("%Y-%m-%d", Sale.sale_date)
    daily_rows = _in_range(
        db.session.query(
            day_expr.label("day"),
            func.count(Sale.id).label("sales_count"),
            func.coalesce(func.sum(Sale.total_amount), 0).label("revenue"),
        ).filter(Sale.status == SaleStatus.COMPLETED),
        start_dt, end_dt,
    ).group_by("day").order_by("day").all()

    product_rows = _in_range(
        db.session.query(
            SaleItem.product_id,
            SaleItem.product_name,
            func.coalesce(func.sum(SaleItem.quantity), 0).label("quantity"),
            func.coalesce(func.sum(SaleItem.total_price), 0).label("revenue"),
        ).join(Sale, SaleItem.sale_id == Sale.id).filter(Sale.status == SaleStatus.COMPLETED),
        start_dt, end_dt,
    ).group_by(SaleItem.product_id, SaleItem.product_name).all()
    products = sorted(
        (
            {
                "product_id": row.product_id,
                "product_name": row.product_name,
                "quantity_sold": int(row.quantity or 0),
                "revenue": to_money(row.revenue),
            }
            for row in product_rows
        ),
        key=lambda p: (-p["revenue"], p["product_id"]),
    )

    return {
        "start": to_utc_z(start_dt),
        "end": to_utc_z(end_dt),
        "total_sales": sales_count,
        "total_revenue": revenue,
        "average_sale_amount": safe_divide(revenue, sales_count),
        "sales_by_status": sales_by_status,
        "daily": [
            {"date": row.day, "sales_count": int(row.sales_count or 0), "revenue": to_money(row.revenue)}
            for row in daily_rows
        ],
        "products": products,
    }

