# Overview: Sale lifecycle: creation with stock decrement, completion, cancellation, payment, deletion.

"""
Sale Service

LIFECYCLE:
1. create_sale     -> PENDING. Validates every line, checks stock for every
                      line, applies promotions, then decrements stock.
                      One transaction: any failure leaves stock untouched.
2. complete_sale   -> COMPLETED. Awards loyalty points once, updates
                      customer purchase totals and product sales stats.
                      Stock is NOT touched again (it left at creation).
3. cancel_sale     -> CANCELLED. Restores exactly the quantities on the
                      sale's items.

STOCK EVENTS:
    SALE         event_key "{sale_id}:{item_id}"   once per line
    SALE_CANCEL  event_key "{sale_id}:{item_id}"   once per line
"""

from __future__ import annotations

from collections import defaultdict
from datetime import datetime

from flask import current_app

from ..extensions import db
from ..models import Customer, Product, Return, Sale, SaleItem
from ..models.enums import (
    DeliveryStatus,
    PaymentMethod,
    PaymentStatus,
    SaleStatus,
    SaleType,
    StockMovementReason,
    enum_value,
)
from ..money import to_decimal, to_money
from ..time_utils import coerce_datetime, utcnow
from ..validation import (
    DataIntegrityError,
    InsufficientStockError,
    InvalidStateTransitionError,
    NotFoundError,
    ValidationError,
    enforce_enum,
    enforce_non_negative_money,
    enforce_percentage,
    enforce_positive_int,
    enforce_positive_money,
)
from . import promotions_service, stock_service
from .concurrency import atomic, run_with_retry
from .lifecycle_service import ensure_transition
from .numbering import sale_number_generator


# =============================================================================
# LOOKUPS
# =============================================================================

def get_sale(sale_id: int) -> Sale:
    sale = db.session.get(Sale, sale_id)
    if sale is None:
        raise NotFoundError("Sale", sale_id)
    return sale


def get_sale_by_number(sale_number: str) -> Sale:
    sale = db.session.query(Sale).filter(Sale.sale_number == sale_number).first()
    if sale is None:
        raise NotFoundError("Sale", sale_number)
    return sale


def list_sales(*, customer_id: int | None = None, status=None, limit: int = 100, offset: int = 0) -> list[Sale]:
    q = db.session.query(Sale)
    if customer_id is not None:
        q = q.filter(Sale.customer_id == customer_id)
    if status is not None:
        q = q.filter(Sale.status == enforce_enum("status", status, SaleStatus))
    return q.order_by(Sale.sale_date.desc(), Sale.id.desc()).offset(max(offset, 0)).limit(min(max(limit, 1), 500)).all()


def overdue_sales(now: datetime | None = None) -> list[Sale]:
    now = now or utcnow()
    rows = (
        db.session.query(Sale)
        .filter(
            Sale.due_date.isnot(None),
            Sale.due_date < now,
            Sale.payment_status != PaymentStatus.PAID,
            Sale.status != SaleStatus.CANCELLED,
        )
        .order_by(Sale.due_date.asc())
        .all()
    )
    return [s for s in rows if s.is_overdue(now)]


# =============================================================================
# INPUT VALIDATION
# =============================================================================

def _validate_line(index: int, line: dict) -> dict:
    """Normalize one requested line; raises ValidationError naming the line."""
    if not isinstance(line, dict):
        raise ValidationError(f"items[{index}] must be an object", {"field": f"items[{index}]"})
    if line.get("product_id") is None:
        raise ValidationError(f"items[{index}].product_id is required", {"field": f"items[{index}].product_id"})

    try:
        quantity = enforce_positive_int("quantity", line.get("quantity"))
        unit_price = line.get("unit_price")
        if unit_price is not None:
            unit_price = enforce_positive_money("unit_price", unit_price)
        discount_percentage = enforce_percentage("discount_percentage", line.get("discount_percentage"))
        discount_amount = enforce_non_negative_money("discount_amount", line.get("discount_amount"))
        tax_percentage = enforce_percentage("tax_percentage", line.get("tax_percentage"))
    except ValidationError as exc:
        exc.details["item_index"] = index
        raise

    return {
        "product_id": line["product_id"],
        "quantity": quantity,
        "unit_price": unit_price,
        "discount_percentage": discount_percentage,
        "discount_amount": discount_amount,
        "tax_percentage": tax_percentage,
    }


def _check_stock(products: dict[int, Product], lines: list[dict]) -> None:
    """Every line is checked before any decrement (lines for one product are summed)."""
    requested = defaultdict(int)
    for line in lines:
        requested[line["product_id"]] += line["quantity"]
    for product_id, quantity in requested.items():
        product = products[product_id]
        if not product.has_stock_for(quantity):
            raise InsufficientStockError(product.id, product.name, product.stock_quantity, quantity)


# =============================================================================
# SALE CREATION
# =============================================================================

def create_sale(
    *,
    customer_id: int,
    items: list[dict],
    payment_method=None,
    sale_type=SaleType.RETAIL,
    discount_amount=0,
    tax_amount=0,
    shipping_cost=0,
    due_date=None,
    coupon_code: str | None = None,
    notes: str | None = None,
    now: datetime | None = None,
) -> Sale:
    """
    Create a PENDING sale and take its stock.

    Args:
        customer_id: buyer
        items: [{product_id, quantity, unit_price?, discount_percentage?,
                 discount_amount?, tax_percentage?}]; unit_price defaults to
                 the product's current price
        discount_amount / tax_amount / shipping_cost: order-level figures
        coupon_code: exact code to redeem (optional)

    Raises:
        ValidationError, NotFoundError, InsufficientStockError. Nothing is
        persisted when any of these is raised.
    """
    if not items:
        raise ValidationError("Sale must have at least one item", {"field": "items"})
    lines = [_validate_line(i, line) for i, line in enumerate(items)]

    order_discount = enforce_non_negative_money("discount_amount", discount_amount)
    order_tax = enforce_non_negative_money("tax_amount", tax_amount)
    order_shipping = enforce_non_negative_money("shipping_cost", shipping_cost)
    sale_type = enforce_enum("sale_type", sale_type, SaleType)
    if payment_method is not None:
        payment_method = enforce_enum("payment_method", payment_method, PaymentMethod)

    def _op() -> Sale:
        with atomic():
            customer = db.session.get(Customer, customer_id)
            if customer is None:
                raise NotFoundError("Customer", customer_id)

            products: dict[int, Product] = {}
            for line in lines:
                pid = line["product_id"]
                if pid not in products:
                    products[pid] = stock_service.get_locked_product(pid)
            _check_stock(products, lines)

            sale = Sale(
                sale_number=sale_number_generator()(now),
                customer=customer,
                sale_date=now or utcnow(),
                due_date=coerce_datetime(due_date),
                sale_type=sale_type,
                payment_method=payment_method,
                discount_amount=order_discount,
                tax_amount=order_tax,
                shipping_cost=order_shipping,
                notes=notes,
            )
            for line in lines:
                product = products[line["product_id"]]
                item = SaleItem(
                    product=product,
                    product_id=product.id,
                    product_name=product.name,
                    quantity=line["quantity"],
                    unit_price=line["unit_price"] if line["unit_price"] is not None else to_money(product.unit_price),
                    cost_price=to_money(product.cost_price),
                    discount_percentage=line["discount_percentage"],
                    discount_amount=line["discount_amount"],
                    tax_percentage=line["tax_percentage"],
                )
                if to_decimal(item.discount_amount) > to_decimal(item.subtotal):
                    raise ValidationError(
                        "Line discount cannot exceed the line subtotal",
                        {"field": "discount_amount", "product_id": product.id,
                         "discount_amount": str(item.discount_amount), "subtotal": str(item.subtotal)},
                    )
                sale.add_item(item)

            db.session.add(sale)
            sale.calculate_totals()
            db.session.flush()

            if coupon_code:
                promotion = promotions_service.validate_coupon_code(coupon_code, sale, now)
                promotions_service.attach_promotion(
                    sale, promotion, auto_applied=False, coupon_code=coupon_code, now=now,
                )
            if current_app.config.get("AUTO_APPLY_PROMOTIONS", True):
                promotions_service.apply_auto_promotion(sale, now)

            for item in sale.items:
                stock_service.reduce_stock(
                    item.product_id,
                    item.quantity,
                    reason=StockMovementReason.SALE,
                    reference_type="SALE",
                    reference_id=sale.id,
                    event_key=f"{sale.id}:{item.id}",
                )
            sale.calculate_totals()
            return sale

    sale = run_with_retry(_op)
    current_app.logger.info(
        "Created sale %s (%s) customer=%s total=%s",
        sale.id, sale.sale_number, customer_id, sale.total_amount,
    )
    return sale


# =============================================================================
# STATUS TRANSITIONS
# =============================================================================

def complete_sale(sale_id: int, now: datetime | None = None) -> Sale:
    """
    PENDING -> COMPLETED.

    The status guard makes loyalty crediting and purchase-total updates run
    at most once per sale.
    """
    def _op() -> Sale:
        with atomic():
            sale = get_sale(sale_id)
            ensure_transition("Sale", sale, SaleStatus.COMPLETED)

            sale.calculate_totals()
            divisor = current_app.config.get("LOYALTY_POINTS_DIVISOR", 10)
            points = sale.loyalty_points_for_total(divisor)
            sale.loyalty_points_earned = points
            sale.customer.add_loyalty_points(points)
            sale.customer.update_total_purchases(sale.total_amount)

            for item in sale.items:
                item.product.record_sale(item.quantity, item.total_price)

            sale.status = SaleStatus.COMPLETED
            sale.completed_at = now or utcnow()
            return sale

    sale = run_with_retry(_op)
    current_app.logger.info("Completed sale %s loyalty_points=%d", sale_id, sale.loyalty_points_earned)
    return sale


def cancel_sale(sale_id: int, reason: str | None = None, now: datetime | None = None) -> Sale:
    """PENDING -> CANCELLED, restoring the stock taken at creation."""
    def _op() -> Sale:
        with atomic():
            sale = get_sale(sale_id)
            if sale.status == SaleStatus.CANCELLED:
                raise InvalidStateTransitionError(
                    "Sale", "CANCELLED", "CANCELLED", f"Sale {sale_id} is already cancelled",
                )
            ensure_transition(
                "Sale", sale, SaleStatus.CANCELLED,
                f"Cannot cancel a completed sale {sale_id}",
            )
            stock_service.restore_sale_stock(sale)

            sale.status = SaleStatus.CANCELLED
            sale.payment_status = PaymentStatus.CANCELLED
            sale.cancelled_at = now or utcnow()
            if reason:
                sale.notes = f"{sale.notes}\nCancellation reason: {reason}" if sale.notes else f"Cancellation reason: {reason}"
            return sale

    sale = run_with_retry(_op)
    current_app.logger.info("Cancelled sale %s", sale_id)
    return sale


def mark_sale_paid(sale_id: int, now: datetime | None = None) -> Sale:
    """Set payment_status=PAID. Re-invoking just restamps payment_date."""
    with atomic():
        sale = get_sale(sale_id)
        if sale.status == SaleStatus.CANCELLED:
            raise InvalidStateTransitionError(
                "Sale", "CANCELLED", "PAID", f"Cannot mark cancelled sale {sale_id} as paid",
            )
        sale.mark_as_paid(now)
    current_app.logger.info("Sale %s marked paid", sale_id)
    return sale


UPDATABLE_DETAILS = {
    "notes", "due_date", "payment_method", "delivery_status", "shipping_cost", "discount_amount", "tax_amount",
}


def update_sale_details(sale_id: int, **changes) -> Sale:
    """
    Edit header fields. Money fields are accepted only while PENDING since
    totals are frozen after that; notes / delivery status may change anytime.
    """
    unknown = set(changes) - UPDATABLE_DETAILS
    if unknown:
        raise ValidationError(f"Cannot update fields: {', '.join(sorted(unknown))}", {"fields": sorted(unknown)})

    with atomic():
        sale = get_sale(sale_id)
        money_fields = {"shipping_cost", "discount_amount", "tax_amount"} & set(changes)
        if money_fields and not sale.is_pending:
            raise InvalidStateTransitionError(
                "Sale", enum_value(sale.status), enum_value(sale.status),
                f"Totals of sale {sale_id} are frozen in status {enum_value(sale.status)}",
            )
        for field in money_fields:
            setattr(sale, field, enforce_non_negative_money(field, changes[field]))
        if "payment_method" in changes:
            sale.payment_method = enforce_enum("payment_method", changes["payment_method"], PaymentMethod)
        if "delivery_status" in changes:
            sale.delivery_status = enforce_enum("delivery_status", changes["delivery_status"], DeliveryStatus)
        if "due_date" in changes:
            sale.due_date = coerce_datetime(changes["due_date"])
        if "notes" in changes:
            sale.notes = changes["notes"]
        if money_fields:
            # FREE_SHIPPING and minimum-order discounts depend on these figures
            promotions_service.resettle_promotions(sale)
        sale.calculate_totals()
    return sale


def delete_sale(sale_id: int) -> None:
    """
    Remove a sale that never completed.

    Raises:
        InvalidStateTransitionError: sale is COMPLETED
        DataIntegrityError: returns reference the sale
    """
    def _op() -> None:
        with atomic():
            sale = get_sale(sale_id)
            if sale.status == SaleStatus.COMPLETED:
                raise InvalidStateTransitionError(
                    "Sale", "COMPLETED", "DELETED", f"Cannot delete completed sale {sale_id}",
                )
            if db.session.query(Return.id).filter(Return.original_sale_id == sale_id).first() is not None:
                raise DataIntegrityError(
                    "Sale", sale_id, "returns",
                    "Cancel or delete the returns first.",
                )
            if sale.status == SaleStatus.PENDING:
                stock_service.restore_sale_stock(sale)
            for applied in list(sale.applied_promotions):
                applied.promotion.decrement_usage()
            db.session.delete(sale)

    run_with_retry(_op)
    current_app.logger.info("Deleted sale %s", sale_id)
