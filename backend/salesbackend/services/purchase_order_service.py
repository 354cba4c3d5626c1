"""
Purchase Order Service

WHY: Purchase orders are the inbound side of the stock ledger. Goods only
become sellable when they are physically received, so stock moves on
receipt, never on approval or sending.

LIFECYCLE:
1. create_purchase_order -> PENDING   (editable, deletable)
2. approve_purchase_order -> APPROVED (approved_by / approved_date stamped)
3. send_purchase_order    -> SENT     (receipts allowed from here)
4. receive_items          -> partial receipts; DELIVERED once everything is in
   deliver_purchase_order -> receive whatever is still pending, then DELIVERED
PENDING / APPROVED -> CANCELLED via cancel_purchase_order.

RECEIPTS:
- Each receipt is clamped to the pending quantity of its line.
- Each accepted quantity becomes one PO_RECEIPT movement whose event key
  embeds the received count before the receipt, so the same receipt can
  never be booked twice.
"""

from __future__ import annotations

from datetime import datetime

from flask import current_app

from ..extensions import db
from ..models import Product, PurchaseOrder, PurchaseOrderItem
from ..models.enums import PurchaseOrderPriority, PurchaseOrderStatus, StockMovementReason, enum_value
from ..money import to_decimal, to_money, to_rate
from ..time_utils import utcnow
from ..validation import (
    InvalidStateTransitionError,
    NotFoundError,
    ValidationError,
    enforce_enum,
    enforce_non_negative_money,
    enforce_percentage,
    enforce_positive_int,
    enforce_positive_money,
)
from . import stock_service
from .concurrency import atomic, run_with_retry
from .lifecycle_service import ensure_transition
from .numbering import next_purchase_order_number
from .supplier_service import get_supplier

UPDATABLE_DETAILS = {
    "expected_delivery_date", "priority", "payment_terms", "delivery_terms",
    "shipping_address", "notes", "shipping_cost", "discount_amount", "tax_rate",
}

TOTAL_FIELDS = ("subtotal", "tax_amount", "total_amount")


# =============================================================================
# LOOKUPS
# =============================================================================

def get_purchase_order(po_id: int) -> PurchaseOrder:
    po = db.session.get(PurchaseOrder, po_id)
    if po is None:
        raise NotFoundError("PurchaseOrder", po_id)
    return po


def overdue_purchase_orders(now: datetime | None = None) -> list[PurchaseOrder]:
    now = now or utcnow()
    candidates = (
        db.session.query(PurchaseOrder)
        .filter(
            PurchaseOrder.status == PurchaseOrderStatus.SENT,
            PurchaseOrder.expected_delivery_date.isnot(None),
            PurchaseOrder.expected_delivery_date < now,
        )
        .order_by(PurchaseOrder.expected_delivery_date.asc())
        .all()
    )
    return [po for po in candidates if po.is_overdue(now)]


# =============================================================================
# CREATION / EDITING (PENDING only)
# =============================================================================

def _build_items(items: list[dict]) -> list[PurchaseOrderItem]:
    if not items:
        raise ValidationError("Purchase order must have at least one item", {"field": "items"})

    built = []
    for index, line in enumerate(items):
        product_id = line.get("product_id")
        if db.session.get(Product, product_id) is None:
            raise NotFoundError("Product", product_id)
        quantity = enforce_positive_int(f"items[{index}].quantity", line.get("quantity"))
        unit_cost = enforce_positive_money(f"items[{index}].unit_cost", line.get("unit_cost"))
        built.append(
            PurchaseOrderItem(
                product_id=product_id,
                quantity=quantity,
                unit_cost=unit_cost,
                discount_percentage=enforce_percentage(
                    f"items[{index}].discount_percentage", line.get("discount_percentage")
                ),
                tax_percentage=enforce_percentage(f"items[{index}].tax_percentage", line.get("tax_percentage")),
                notes=line.get("notes"),
            )
        )
    return built


def _check_supplied_totals(po: PurchaseOrder, supplied: dict) -> None:
    """Caller-supplied totals are accepted only when they agree with ours."""
    for field in TOTAL_FIELDS:
        if supplied.get(field) is None:
            continue
        expected = to_money(getattr(po, field))
        given = enforce_non_negative_money(field, supplied[field])
        if given != expected:
            raise ValidationError(
                f"{field} mismatch: supplied {given}, calculated {expected}",
                {"field": field, "supplied": str(given), "calculated": str(expected)},
            )


def create_purchase_order(
    *,
    supplier_id: int,
    items: list[dict],
    expected_delivery_date: datetime | None = None,
    priority=PurchaseOrderPriority.NORMAL,
    tax_rate=None,
    shipping_cost=0,
    discount_amount=0,
    shipping_address: str | None = None,
    notes: str | None = None,
    created_by: str | None = None,
    now: datetime | None = None,
    **supplied_totals,
) -> PurchaseOrder:
    """
    Raise a PENDING purchase order against an active supplier.

    Args:
        items: [{product_id, quantity, unit_cost, discount_percentage?,
                 tax_percentage?, notes?}]
        supplied_totals: optional subtotal / tax_amount / total_amount the
            caller computed; each must match the calculated value

    Raises:
        NotFoundError: supplier or product missing
        ValidationError: inactive supplier, no items, bad quantities or
            costs, or a supplied total that disagrees
    """
    unknown = set(supplied_totals) - set(TOTAL_FIELDS)
    if unknown:
        raise ValidationError(
            f"Unknown purchase order fields: {', '.join(sorted(unknown))}",
            {"fields": sorted(unknown)},
        )
    priority = enforce_enum("priority", priority, PurchaseOrderPriority)
    if tax_rate is None:
        tax_rate = current_app.config.get("DEFAULT_PO_TAX_RATE", 15.0)
    tax_rate = enforce_percentage("tax_rate", tax_rate)
    shipping_cost = enforce_non_negative_money("shipping_cost", shipping_cost)
    discount_amount = enforce_non_negative_money("discount_amount", discount_amount)
    now = now or utcnow()

    def _op() -> PurchaseOrder:
        with atomic():
            supplier = get_supplier(supplier_id)
            if not supplier.is_active:
                raise ValidationError(
                    f"Supplier {supplier.name} is {enum_value(supplier.status)}",
                    {"field": "supplier_id", "value": supplier_id, "status": enum_value(supplier.status)},
                )

            po = PurchaseOrder(
                order_number=next_purchase_order_number(now),
                supplier=supplier,
                order_date=now,
                expected_delivery_date=expected_delivery_date,
                priority=priority,
                tax_rate=to_rate(tax_rate),
                shipping_cost=shipping_cost,
                discount_amount=discount_amount,
                payment_terms=supplier.payment_terms,
                delivery_terms=supplier.delivery_terms,
                shipping_address=shipping_address,
                notes=notes,
                created_by=created_by,
            )
            for item in _build_items(items):
                po.add_item(item)
            po.calculate_totals()
            _check_supplied_totals(po, supplied_totals)

            db.session.add(po)
            supplier.add_order(po.total_amount)
            return po

    po = run_with_retry(_op)
    current_app.logger.info(
        "Created purchase order %s supplier=%s total=%s",
        po.order_number, supplier_id, po.total_amount,
    )
    return po


def _ensure_modifiable(po: PurchaseOrder, action: str) -> None:
    if not po.can_be_modified():
        status = enum_value(po.status)
        raise InvalidStateTransitionError(
            "PurchaseOrder", status, status,
            f"Only PENDING purchase orders can be {action} (order {po.order_number} is {status})",
        )


def update_purchase_order(po_id: int, *, items: list[dict] | None = None, **changes) -> PurchaseOrder:
    unknown = set(changes) - UPDATABLE_DETAILS
    if unknown:
        raise ValidationError(
            f"Cannot update fields: {', '.join(sorted(unknown))}",
            {"fields": sorted(unknown)},
        )
    if "priority" in changes:
        changes["priority"] = enforce_enum("priority", changes["priority"], PurchaseOrderPriority)
    if "tax_rate" in changes:
        changes["tax_rate"] = to_rate(enforce_percentage("tax_rate", changes["tax_rate"]))
    for field in ("shipping_cost", "discount_amount"):
        if field in changes:
            changes[field] = enforce_non_negative_money(field, changes[field])

    with atomic():
        po = get_purchase_order(po_id)
        _ensure_modifiable(po, "modified")
        previous_total = to_money(po.total_amount)
        for key, value in changes.items():
            setattr(po, key, value)
        if items is not None:
            new_items = _build_items(items)
            po.items.clear()
            for item in new_items:
                po.add_item(item)
        po.calculate_totals()
        supplier = po.supplier
        supplier.total_amount = to_money(
            to_money(supplier.total_amount) - previous_total + to_money(po.total_amount)
        )
    return po


def delete_purchase_order(po_id: int) -> None:
    with atomic():
        po = get_purchase_order(po_id)
        _ensure_modifiable(po, "deleted")
        supplier = po.supplier
        supplier.total_orders = max((supplier.total_orders or 0) - 1, 0)
        supplier.total_amount = max(to_money(to_decimal(supplier.total_amount) - to_money(po.total_amount)), to_money(0))
        db.session.delete(po)
    current_app.logger.info("Deleted purchase order %s", po_id)


# =============================================================================
# STATE TRANSITIONS
# =============================================================================

def approve_purchase_order(po_id: int, approved_by: str | None = None, now: datetime | None = None) -> PurchaseOrder:
    with atomic():
        po = get_purchase_order(po_id)
        ensure_transition("PurchaseOrder", po, PurchaseOrderStatus.APPROVED)
        po.status = PurchaseOrderStatus.APPROVED
        po.approved_by = approved_by
        po.approved_date = now or utcnow()
    current_app.logger.info("Approved purchase order %s by=%s", po.order_number, approved_by)
    return po


def send_purchase_order(po_id: int, now: datetime | None = None) -> PurchaseOrder:
    with atomic():
        po = get_purchase_order(po_id)
        ensure_transition("PurchaseOrder", po, PurchaseOrderStatus.SENT)
        po.status = PurchaseOrderStatus.SENT
        po.sent_date = now or utcnow()
    current_app.logger.info("Sent purchase order %s", po.order_number)
    return po


def cancel_purchase_order(po_id: int, reason: str | None = None) -> PurchaseOrder:
    with atomic():
        po = get_purchase_order(po_id)
        ensure_transition("PurchaseOrder", po, PurchaseOrderStatus.CANCELLED)
        po.status = PurchaseOrderStatus.CANCELLED
        if reason:
            line = f"Cancellation reason: {reason}"
            po.notes = f"{po.notes}\n{line}" if po.notes else line
    current_app.logger.info("Cancelled purchase order %s", po.order_number)
    return po


# =============================================================================
# RECEIVING (stock ledger)
# =============================================================================

def _receive_line(po: PurchaseOrder, item: PurchaseOrderItem, quantity: int) -> int:
    received_before = item.received_quantity or 0
    accepted = item.receive_quantity(quantity)
    if accepted:
        stock_service.increase_stock(
            item.product_id,
            accepted,
            reason=StockMovementReason.PO_RECEIPT,
            reference_type="PURCHASE_ORDER",
            reference_id=po.id,
            event_key=f"{po.id}:{item.id}:{received_before}",
        )
    return accepted


def _mark_delivered(po: PurchaseOrder, now: datetime | None) -> None:
    ensure_transition("PurchaseOrder", po, PurchaseOrderStatus.DELIVERED)
    po.status = PurchaseOrderStatus.DELIVERED
    po.actual_delivery_date = now or utcnow()


def receive_items(po_id: int, quantities: dict[int, int], now: datetime | None = None) -> PurchaseOrder:
    """
    Book a (partial) delivery.

    Args:
        quantities: {purchase_order_item_id: quantity_received}

    Raises:
        InvalidStateTransitionError: order is not SENT
        ValidationError: unknown item id or non-positive quantity
    """
    if not quantities:
        raise ValidationError("No quantities to receive", {"field": "quantities"})
    for item_id, qty in quantities.items():
        enforce_positive_int(f"quantities[{item_id}]", qty)

    def _op() -> PurchaseOrder:
        with atomic():
            po = get_purchase_order(po_id)
            if po.status != PurchaseOrderStatus.SENT:
                status = enum_value(po.status)
                raise InvalidStateTransitionError(
                    "PurchaseOrder", status, "RECEIVING",
                    f"Items can only be received on SENT purchase orders (order {po.order_number} is {status})",
                )
            items = {item.id: item for item in po.items}
            missing = [item_id for item_id in quantities if item_id not in items]
            if missing:
                raise ValidationError(
                    f"Items not on purchase order {po.order_number}: {missing}",
                    {"field": "quantities", "item_ids": missing},
                )

            accepted = sum(_receive_line(po, items[item_id], qty) for item_id, qty in quantities.items())
            if po.is_fully_received:
                _mark_delivered(po, now)
            current_app.logger.info(
                "Received %d units on purchase order %s progress=%s%%",
                accepted, po.order_number, po.receiving_progress,
            )
            return po

    return run_with_retry(_op)


def deliver_purchase_order(po_id: int, now: datetime | None = None) -> PurchaseOrder:
    """SENT -> DELIVERED, receiving every pending unit first."""
    def _op() -> PurchaseOrder:
        with atomic():
            po = get_purchase_order(po_id)
            ensure_transition("PurchaseOrder", po, PurchaseOrderStatus.DELIVERED)
            for item in po.items:
                if item.pending_quantity > 0:
                    _receive_line(po, item, item.pending_quantity)
            _mark_delivered(po, now)
            return po

    po = run_with_retry(_op)
    current_app.logger.info("Delivered purchase order %s", po.order_number)
    return po
