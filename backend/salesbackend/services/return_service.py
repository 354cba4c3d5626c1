"""
Return Processing Service

WHY: A return reverses part of a completed sale. The critical invariant is
that a sale line can never be returned more times than it was sold:

    return_quantity <= sale_item.quantity - sale_item.returned_quantity

It is checked when the return is created and again when it is processed,
because another return against the same line may have been processed in
between.

DESIGN PRINCIPLES:
- Returns reference the original Sale and each ReturnItem its SaleItem
- Manager approval required before any money or stock moves
- Restocking fee is deducted from the refund, floored at zero
- Stock is credited only for items whose condition is shelf-ready
  (NEW / LIKE_NEW / GOOD); everything else is recorded with a disposal
  reason and stays out of sellable inventory

LIFECYCLE:
1. create_return   -> PENDING   (editable, deletable)
2. approve_return  -> APPROVED  / reject_return -> REJECTED / cancel_return -> CANCELLED
3. process_refund  -> REFUNDED  (items processed, stock restored)
   mark_exchanged  -> EXCHANGED (same item processing, no refund stamp)
"""

from __future__ import annotations

from collections import defaultdict
from datetime import datetime

from flask import current_app

from ..extensions import db
from ..models import Return, ReturnItem, Sale, SaleItem
from ..models.enums import (
    ItemCondition,
    RefundMethod,
    ReturnReason,
    ReturnStatus,
    SaleStatus,
    StockMovementReason,
    enum_value,
)
from ..money import to_money
from ..time_utils import utcnow
from ..validation import (
    InvalidStateTransitionError,
    NotFoundError,
    ValidationError,
    enforce_enum,
    enforce_non_empty,
    enforce_non_negative_money,
    enforce_positive_int,
)
from . import stock_service
from .concurrency import atomic, run_with_retry
from .lifecycle_service import ensure_transition
from .numbering import generate_return_number


# =============================================================================
# LOOKUPS
# =============================================================================

def get_return(return_id: int) -> Return:
    return_doc = db.session.get(Return, return_id)
    if return_doc is None:
        raise NotFoundError("Return", return_id)
    return return_doc


def list_returns_for_sale(sale_id: int) -> list[Return]:
    return (
        db.session.query(Return)
        .filter(Return.original_sale_id == sale_id)
        .order_by(Return.id.asc())
        .all()
    )


# =============================================================================
# RETURN CREATION
# =============================================================================

def _build_items(sale: Sale, items: list[dict]) -> list[ReturnItem]:
    """
    Validate requested lines against the sale and build ReturnItems.

    Quantities for the same sale item are summed before the bound check, so
    two lines of 1 cannot sneak past a remaining quantity of 1.
    """
    if not items:
        raise ValidationError("Return must have at least one item", {"field": "items"})

    sale_items = {item.id: item for item in sale.items}
    requested = defaultdict(int)
    built = []

    for index, line in enumerate(items):
        sale_item_id = line.get("sale_item_id")
        sale_item: SaleItem | None = sale_items.get(sale_item_id)
        if sale_item is None:
            raise ValidationError(
                f"Sale item {sale_item_id} does not belong to sale {sale.id}",
                {"field": f"items[{index}].sale_item_id", "value": sale_item_id, "sale_id": sale.id},
            )
        quantity = enforce_positive_int("return_quantity", line.get("quantity"))
        fee = enforce_non_negative_money("restocking_fee", line.get("restocking_fee"))
        condition = line.get("item_condition")
        if condition is not None:
            condition = enforce_enum("item_condition", condition, ItemCondition)

        requested[sale_item_id] += quantity
        if requested[sale_item_id] > sale_item.remaining_quantity:
            raise ValidationError(
                f"Return quantity for sale item {sale_item_id} exceeds the returnable quantity",
                {
                    "field": f"items[{index}].quantity",
                    "sale_item_id": sale_item_id,
                    "requested": requested[sale_item_id],
                    "sold": sale_item.quantity,
                    "already_returned": sale_item.returned_quantity,
                    "remaining": sale_item.remaining_quantity,
                },
            )

        built.append(
            ReturnItem(
                original_sale_item=sale_item,
                product_id=sale_item.product_id,
                return_quantity=quantity,
                original_unit_price=to_money(sale_item.unit_price),
                restocking_fee=fee,
                item_condition=condition,
                condition_notes=line.get("condition_notes"),
            )
        )
    return built


def create_return(
    *,
    sale_id: int,
    items: list[dict],
    reason,
    refund_method=RefundMethod.ORIGINAL_PAYMENT,
    notes: str | None = None,
    now: datetime | None = None,
) -> Return:
    """
    Create a PENDING return against a completed sale.

    Args:
        items: [{sale_item_id, quantity, restocking_fee?, item_condition?,
                 condition_notes?}]

    Raises:
        NotFoundError: sale missing
        ValidationError: sale not COMPLETED, outside the return window, item
            not on the sale, or quantity above what remains returnable
    """
    reason = enforce_enum("reason", reason, ReturnReason)
    refund_method = enforce_enum("refund_method", refund_method, RefundMethod)
    now = now or utcnow()

    def _op() -> Return:
        with atomic():
            sale = db.session.get(Sale, sale_id)
            if sale is None:
                raise NotFoundError("Sale", sale_id)
            if sale.status != SaleStatus.COMPLETED:
                raise ValidationError(
                    f"Only completed sales can be returned. Sale {sale_id} is {enum_value(sale.status)}",
                    {"sale_id": sale_id, "status": enum_value(sale.status)},
                )
            policy_days = current_app.config.get("RETURN_POLICY_DAYS", 30)
            if not Return.within_policy(sale.sale_date, policy_days, now):
                raise ValidationError(
                    f"Return period of {policy_days} days has expired for sale {sale_id}",
                    {"sale_id": sale_id, "policy_days": policy_days},
                )

            return_doc = Return(
                return_number=generate_return_number(now),
                original_sale=sale,
                customer_id=sale.customer_id,
                return_date=now,
                reason=reason,
                refund_method=refund_method,
                notes=notes,
            )
            for item in _build_items(sale, items):
                return_doc.add_item(item)
            db.session.add(return_doc)
            return return_doc

    return_doc = run_with_retry(_op)
    current_app.logger.info(
        "Created return %s for sale %s refund=%s",
        return_doc.return_number, sale_id, return_doc.total_refund_amount,
    )
    return return_doc


def update_return(return_id: int, *, items: list[dict] | None = None, reason=None,
                  refund_method=None, notes: str | None = None) -> Return:
    """Edit a PENDING return; replacing items re-runs every quantity check."""
    with atomic():
        return_doc = get_return(return_id)
        if not return_doc.can_be_modified():
            raise InvalidStateTransitionError(
                "Return", enum_value(return_doc.status), enum_value(return_doc.status),
                f"Only PENDING returns can be modified (return {return_id} is {enum_value(return_doc.status)})",
            )
        if reason is not None:
            return_doc.reason = enforce_enum("reason", reason, ReturnReason)
        if refund_method is not None:
            return_doc.refund_method = enforce_enum("refund_method", refund_method, RefundMethod)
        if notes is not None:
            return_doc.notes = notes
        if items is not None:
            new_items = _build_items(return_doc.original_sale, items)
            return_doc.items.clear()
            for item in new_items:
                return_doc.add_item(item)
        return_doc.calculate_total_refund()
    return return_doc


def delete_return(return_id: int) -> None:
    with atomic():
        return_doc = get_return(return_id)
        if not return_doc.can_be_modified():
            raise InvalidStateTransitionError(
                "Return", enum_value(return_doc.status), "DELETED",
                f"Only PENDING returns can be deleted (return {return_id} is {enum_value(return_doc.status)})",
            )
        db.session.delete(return_doc)
    current_app.logger.info("Deleted return %s", return_id)


# =============================================================================
# APPROVAL
# =============================================================================

def approve_return(return_id: int, approved_by: str | None = None) -> Return:
    with atomic():
        return_doc = get_return(return_id)
        ensure_transition("Return", return_doc, ReturnStatus.APPROVED)
        return_doc.status = ReturnStatus.APPROVED
        return_doc.processed_by = approved_by
        return_doc.processed_date = utcnow()
    current_app.logger.info("Approved return %s", return_id)
    return return_doc


def reject_return(return_id: int, rejection_reason: str, rejected_by: str | None = None) -> Return:
    enforce_non_empty("rejection_reason", rejection_reason)
    with atomic():
        return_doc = get_return(return_id)
        ensure_transition("Return", return_doc, ReturnStatus.REJECTED)
        line = f"Rejection reason: {rejection_reason}"
        return_doc.notes = f"{return_doc.notes}\n{line}" if return_doc.notes else line
        return_doc.status = ReturnStatus.REJECTED
        return_doc.processed_by = rejected_by
        return_doc.processed_date = utcnow()
    current_app.logger.info("Rejected return %s", return_id)
    return return_doc


def cancel_return(return_id: int) -> Return:
    with atomic():
        return_doc = get_return(return_id)
        ensure_transition("Return", return_doc, ReturnStatus.CANCELLED)
        return_doc.status = ReturnStatus.CANCELLED
    current_app.logger.info("Cancelled return %s", return_id)
    return return_doc


# =============================================================================
# PROCESSING (stock + original sale bookkeeping)
# =============================================================================

def _process_items(return_doc: Return) -> int:
    """
    Apply each item to its sale line and restock shelf-ready units.

    Returns the number of units credited back to stock.
    """
    restocked_units = 0
    for item in return_doc.items:
        if not item.is_valid_return_quantity():
            raise ValidationError(
                f"Return item {item.id} exceeds the quantity still returnable on sale item "
                f"{item.original_sale_item_id}",
                {
                    "return_item_id": item.id,
                    "requested": item.return_quantity,
                    "remaining": item.original_sale_item.remaining_quantity,
                },
            )
        item.mark_as_processed()

        if item.can_be_restocked():
            stock_service.increase_stock(
                item.product_id,
                item.return_quantity,
                reason=StockMovementReason.RETURN_RESTOCK,
                reference_type="RETURN",
                reference_id=return_doc.id,
                event_key=f"{return_doc.id}:{item.id}",
            )
            item.restocked = True
            restocked_units += item.return_quantity
    return restocked_units


def process_refund(return_id: int, refund_reference: str | None = None,
                   processed_by: str | None = None, now: datetime | None = None) -> Return:
    """APPROVED -> REFUNDED. All-or-nothing across every item."""
    def _op() -> Return:
        with atomic():
            return_doc = get_return(return_id)
            ensure_transition("Return", return_doc, ReturnStatus.REFUNDED)
            units = _process_items(return_doc)
            return_doc.calculate_total_refund()
            return_doc.status = ReturnStatus.REFUNDED
            return_doc.refund_reference = refund_reference
            return_doc.refund_date = now or utcnow()
            if processed_by:
                return_doc.processed_by = processed_by
            return_doc.processed_date = now or utcnow()
            current_app.logger.info(
                "Refunded return %s amount=%s restocked_units=%d",
                return_id, return_doc.total_refund_amount, units,
            )
            return return_doc

    return run_with_retry(_op)


def mark_exchanged(return_id: int, processed_by: str | None = None, now: datetime | None = None) -> Return:
    """APPROVED -> EXCHANGED. Items are processed exactly as for a refund."""
    def _op() -> Return:
        with atomic():
            return_doc = get_return(return_id)
            ensure_transition("Return", return_doc, ReturnStatus.EXCHANGED)
            _process_items(return_doc)
            return_doc.status = ReturnStatus.EXCHANGED
            if processed_by:
                return_doc.processed_by = processed_by
            return_doc.processed_date = now or utcnow()
            return return_doc

    return_doc = run_with_retry(_op)
    current_app.logger.info("Exchanged return %s", return_id)
    return return_doc
