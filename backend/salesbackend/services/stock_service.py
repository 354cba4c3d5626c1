# Overview: Stock ledger mutations; every change locks the product row and appends a StockMovement.

"""
Stock Ledger Service

WHY: Product.stock_quantity is shared by every sale, return and receipt for
that product. Concurrent sales must not both read "5 on hand" and both sell
3, and no business event may move stock twice.

DESIGN:
- Reads-then-writes go through lock_for_update() (SELECT ... FOR UPDATE) and
  the Product.version_id optimistic check.
- Primitives (reduce_stock / increase_stock / restore_sale_stock) do NOT
  commit; they participate in the caller's transaction so a failing sale
  leaves no partial decrement behind.
- Commands (restock_product / update_stock / adjust_stock) are complete
  units of work and commit.
- Every mutation appends a StockMovement. Event-driven movements carry an
  event_key, and (product, reason, event_key) is unique, so replaying the
  same event fails instead of double-counting.
"""

from __future__ import annotations

from flask import current_app

from ..extensions import db
from ..models import Product, StockMovement
from ..models.enums import StockMovementReason, coerce
from ..time_utils import utcnow
from ..validation import (
    InsufficientStockError,
    NotFoundError,
    ValidationError,
    enforce_non_negative_int,
    enforce_positive_int,
)
from .concurrency import atomic, lock_for_update, run_with_retry


# =============================================================================
# PRIMITIVES (caller owns the transaction)
# =============================================================================

def get_locked_product(product_id: int) -> Product:
    product = (
        lock_for_update(db.session.query(Product).filter(Product.id == product_id))
        .populate_existing()
        .first()
    )
    if product is None:
        raise NotFoundError("Product", product_id)
    return product


def _record_movement(
    product: Product,
    delta: int,
    reason: StockMovementReason,
    *,
    reference_type: str | None = None,
    reference_id: int | None = None,
    event_key: str | None = None,
    note: str | None = None,
) -> StockMovement:
    movement = StockMovement(
        product_id=product.id,
        quantity_delta=delta,
        balance_after=product.stock_quantity,
        reason=reason,
        reference_type=reference_type,
        reference_id=reference_id,
        event_key=event_key,
        note=note,
        occurred_at=utcnow(),
    )
    db.session.add(movement)
    db.session.flush()
    current_app.logger.info(
        "Stock %s product=%s delta=%+d balance=%d ref=%s:%s",
        reason.value, product.id, delta, product.stock_quantity, reference_type, reference_id,
    )
    return movement


def reduce_stock(
    product_id: int,
    quantity: int,
    *,
    reason: StockMovementReason = StockMovementReason.SALE,
    reference_type: str | None = None,
    reference_id: int | None = None,
    event_key: str | None = None,
    note: str | None = None,
) -> Product:
    """
    Take `quantity` units off the shelf.

    Raises:
        ValidationError: quantity is not a positive integer
        NotFoundError: product does not exist
        InsufficientStockError: quantity exceeds stock on hand
    """
    enforce_positive_int("quantity", quantity)
    product = get_locked_product(product_id)

    if quantity > product.stock_quantity:
        current_app.logger.warning(
            "Insufficient stock product=%s available=%d requested=%d",
            product.id, product.stock_quantity, quantity,
        )
        raise InsufficientStockError(product.id, product.name, product.stock_quantity, quantity)

    product.stock_quantity -= quantity
    _record_movement(
        product, -quantity, reason,
        reference_type=reference_type, reference_id=reference_id, event_key=event_key, note=note,
    )
    return product


def increase_stock(
    product_id: int,
    quantity: int,
    *,
    reason: StockMovementReason,
    reference_type: str | None = None,
    reference_id: int | None = None,
    event_key: str | None = None,
    note: str | None = None,
    stamp_restocked: bool = True,
) -> Product:
    enforce_positive_int("quantity", quantity)
    product = get_locked_product(product_id)

    product.stock_quantity += quantity
    if stamp_restocked:
        product.last_restocked = utcnow()
    _record_movement(
        product, quantity, reason,
        reference_type=reference_type, reference_id=reference_id, event_key=event_key, note=note,
    )
    return product


def restore_sale_stock(sale) -> list[Product]:
    """
    Put back exactly what the sale took.

    The ledger keeps no separate memory of "how much sale X took"; the sale's
    own items are re-read, one SALE_CANCEL movement per line.
    """
    restored = []
    for item in sale.items:
        restored.append(
            increase_stock(
                item.product_id,
                item.quantity,
                reason=StockMovementReason.SALE_CANCEL,
                reference_type="SALE",
                reference_id=sale.id,
                event_key=f"{sale.id}:{item.id}",
                stamp_restocked=False,
            )
        )
    return restored


# =============================================================================
# COMMANDS (commit)
# =============================================================================

def restock_product(product_id: int, quantity: int, note: str | None = None) -> Product:
    """Receive `quantity` units outside of a purchase order."""
    enforce_positive_int("quantity", quantity)

    def _op():
        with atomic():
            return increase_stock(product_id, quantity, reason=StockMovementReason.RESTOCK, note=note)

    return run_with_retry(_op)


def update_stock(product_id: int, new_quantity: int, note: str | None = None) -> Product:
    """Set stock on hand to an absolute count (e.g. after a physical count)."""
    enforce_non_negative_int("stock_quantity", new_quantity)

    def _op():
        with atomic():
            product = get_locked_product(product_id)
            delta = new_quantity - product.stock_quantity
            product.stock_quantity = new_quantity
            if delta > 0:
                product.last_restocked = utcnow()
            _record_movement(product, delta, StockMovementReason.SET, note=note)
            return product

    return run_with_retry(_op)


def adjust_stock(product_id: int, delta: int, reason: str | None = None) -> Product:
    """
    Apply a signed correction.

    Raises:
        ValidationError: delta is zero or not an integer
        InsufficientStockError: the result would be negative
    """
    if isinstance(delta, bool) or not isinstance(delta, int) or delta == 0:
        raise ValidationError("delta must be a non-zero integer", {"field": "delta", "value": delta})

    def _op():
        with atomic():
            if delta < 0:
                return reduce_stock(product_id, -delta, reason=StockMovementReason.ADJUSTMENT, note=reason)
            return increase_stock(product_id, delta, reason=StockMovementReason.ADJUSTMENT, note=reason)

    return run_with_retry(_op)


# =============================================================================
# QUERIES
# =============================================================================

def low_stock_products() -> list[Product]:
    return (
        db.session.query(Product)
        .filter(Product.is_active.is_(True), Product.stock_quantity <= Product.min_stock_level)
        .order_by(Product.stock_quantity.asc(), Product.id.asc())
        .all()
    )


def products_needing_reorder() -> list[Product]:
    return (
        db.session.query(Product)
        .filter(Product.is_active.is_(True), Product.stock_quantity <= Product.reorder_point)
        .order_by(Product.stock_quantity.asc(), Product.id.asc())
        .all()
    )


def out_of_stock_products() -> list[Product]:
    return (
        db.session.query(Product)
        .filter(Product.is_active.is_(True), Product.stock_quantity <= 0)
        .order_by(Product.id.asc())
        .all()
    )


def stock_history(product_id: int, *, reason=None, limit: int = 200) -> list[StockMovement]:
    q = db.session.query(StockMovement).filter(StockMovement.product_id == product_id)
    if reason is not None:
        q = q.filter(StockMovement.reason == coerce(StockMovementReason, reason))
    return q.order_by(StockMovement.id.desc()).limit(limit).all()
