from __future__ import annotations

from datetime import datetime, timedelta

from ..extensions import db
from ..money import money_str, money_sum, non_negative, to_decimal, ZERO
from ..time_utils import to_utc_z, utcnow
from .enums import (
    ItemCondition,
    RefundMethod,
    ReturnReason,
    ReturnStatus,
    coerce,
    ensure_exhaustive,
    enum_column_type,
    enum_value,
)


# Physical condition -> may the unit go back to sellable inventory at all
RESTOCKABLE_BY_CONDITION = ensure_exhaustive({
    ItemCondition.NEW: True,
    ItemCondition.LIKE_NEW: True,
    ItemCondition.GOOD: True,
    ItemCondition.FAIR: True,
    ItemCondition.POOR: False,
    ItemCondition.DAMAGED: False,
    ItemCondition.DEFECTIVE: False,
}, ItemCondition, "RESTOCKABLE_BY_CONDITION")

# Physical condition -> is the unit shelf-ready now. Stricter than the table
# above: FAIR units are flagged restockable but are not credited to stock.
SHELF_READY_BY_CONDITION = ensure_exhaustive({
    ItemCondition.NEW: True,
    ItemCondition.LIKE_NEW: True,
    ItemCondition.GOOD: True,
    ItemCondition.FAIR: False,
    ItemCondition.POOR: False,
    ItemCondition.DAMAGED: False,
    ItemCondition.DEFECTIVE: False,
}, ItemCondition, "SHELF_READY_BY_CONDITION")


class Return(db.Model):
    """
    Customer return against a completed sale.

    STATE MACHINE:
        PENDING -> APPROVED -> REFUNDED | EXCHANGED
        PENDING -> REJECTED
        PENDING -> CANCELLED

    Only PENDING returns may be edited or deleted. Item processing (original
    sale item bookkeeping + restock) happens once, on the APPROVED ->
    REFUNDED / EXCHANGED transition.
    """
    __tablename__ = "returns"
    __table_args__ = (
        db.UniqueConstraint("return_number", name="uq_returns_number"),
        db.Index("ix_returns_sale_status", "original_sale_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    return_number = db.Column(db.String(64), nullable=False)
    original_sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True)

    return_date = db.Column(db.DateTime, nullable=False, default=utcnow)
    reason = db.Column(enum_column_type(ReturnReason), nullable=False)
    status = db.Column(enum_column_type(ReturnStatus), nullable=False, default=ReturnStatus.PENDING)
    refund_method = db.Column(enum_column_type(RefundMethod), nullable=False, default=RefundMethod.ORIGINAL_PAYMENT)

    total_refund_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    refund_reference = db.Column(db.String(128), nullable=True)
    refund_date = db.Column(db.DateTime, nullable=True)

    processed_by = db.Column(db.String(128), nullable=True)
    processed_date = db.Column(db.DateTime, nullable=True)
    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    original_sale = db.relationship("Sale", backref=db.backref("returns", lazy=True))
    customer = db.relationship("Customer", backref=db.backref("returns", lazy="dynamic"))
    items = db.relationship(
        "ReturnItem",
        back_populates="return_doc",
        cascade="all, delete-orphan",
        order_by="ReturnItem.id",
    )
    __mapper_args__ = {"version_id_col": version_id}

    def __init__(self, **kwargs):
        kwargs.setdefault("status", ReturnStatus.PENDING)
        kwargs.setdefault("refund_method", RefundMethod.ORIGINAL_PAYMENT)
        kwargs.setdefault("total_refund_amount", ZERO)
        kwargs.setdefault("return_date", utcnow())
        super().__init__(**kwargs)

    def add_item(self, item: "ReturnItem") -> None:
        self.items.append(item)
        item.calculate_refund_amount()
        self.calculate_total_refund()

    def calculate_total_refund(self) -> None:
        self.total_refund_amount = money_sum(item.refund_amount for item in self.items)

    def can_be_modified(self) -> bool:
        return self.status == ReturnStatus.PENDING

    @staticmethod
    def within_policy(sale_date: datetime, policy_days: int, now: datetime | None = None) -> bool:
        return (now or utcnow()) - sale_date <= timedelta(days=policy_days)

    def to_dict(self, include_items: bool = True) -> dict:
        data = {
            "id": self.id,
            "return_number": self.return_number,
            "original_sale_id": self.original_sale_id,
            "customer_id": self.customer_id,
            "return_date": to_utc_z(self.return_date),
            "reason": enum_value(self.reason),
            "status": enum_value(self.status),
            "refund_method": enum_value(self.refund_method),
            "total_refund_amount": money_str(self.total_refund_amount),
            "refund_reference": self.refund_reference,
            "refund_date": to_utc_z(self.refund_date),
            "processed_by": self.processed_by,
            "processed_date": to_utc_z(self.processed_date),
            "notes": self.notes,
            "created_at": to_utc_z(self.created_at),
            "version_id": self.version_id,
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class ReturnItem(db.Model):
    """
    One returned line, bound to the sale item it reverses.

    refund = max(0, original_unit_price * return_quantity - restocking_fee)
    """
    __tablename__ = "return_items"
    __table_args__ = (
        db.CheckConstraint("return_quantity > 0", name="ck_return_items_quantity_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    return_id = db.Column(db.Integer, db.ForeignKey("returns.id"), nullable=False, index=True)
    original_sale_item_id = db.Column(db.Integer, db.ForeignKey("sale_items.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    return_quantity = db.Column(db.Integer, nullable=False)
    original_unit_price = db.Column(db.Numeric(12, 2), nullable=False)
    restocking_fee = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    refund_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)

    item_condition = db.Column(enum_column_type(ItemCondition), nullable=True)
    is_restockable = db.Column(db.Boolean, nullable=False, default=True)
    disposal_reason = db.Column(db.String(255), nullable=True)
    condition_notes = db.Column(db.Text, nullable=True)

    is_processed = db.Column(db.Boolean, nullable=False, default=False)
    restocked = db.Column(db.Boolean, nullable=False, default=False)

    return_doc = db.relationship("Return", back_populates="items")
    original_sale_item = db.relationship("SaleItem", backref=db.backref("return_items", lazy=True))
    product = db.relationship("Product")

    def __init__(self, **kwargs):
        kwargs.setdefault("restocking_fee", ZERO)
        kwargs.setdefault("is_processed", False)
        kwargs.setdefault("restocked", False)
        condition = kwargs.pop("item_condition", None)
        super().__init__(**kwargs)
        self.set_condition(condition)
        self.calculate_refund_amount()

    def calculate_refund_amount(self) -> None:
        gross = to_decimal(self.original_unit_price) * (self.return_quantity or 0)
        self.refund_amount = non_negative(gross - to_decimal(self.restocking_fee))

    def is_valid_return_quantity(self) -> bool:
        orig = self.original_sale_item
        if orig is None or not self.return_quantity or self.return_quantity <= 0:
            return False
        return self.return_quantity <= orig.quantity - (orig.returned_quantity or 0)

    @staticmethod
    def determine_restockability(condition) -> bool:
        condition = coerce(ItemCondition, condition)
        if condition is None:
            return True
        return RESTOCKABLE_BY_CONDITION[condition]

    def set_condition(self, condition) -> None:
        condition = coerce(ItemCondition, condition)
        self.item_condition = condition
        self.is_restockable = self.determine_restockability(condition)
        if not self.is_restockable:
            self.disposal_reason = f"Item condition: {condition.value}"
        else:
            self.disposal_reason = None

    def can_be_restocked(self) -> bool:
        condition = coerce(ItemCondition, self.item_condition)
        if not self.is_restockable or condition is None:
            return False
        return SHELF_READY_BY_CONDITION[condition]

    def mark_as_processed(self) -> None:
        """Credit the original sale item's returned quantity (once)."""
        if self.is_processed:
            return
        self.original_sale_item.process_return(self.return_quantity)
        self.is_processed = True

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "return_id": self.return_id,
            "original_sale_item_id": self.original_sale_item_id,
            "product_id": self.product_id,
            "return_quantity": self.return_quantity,
            "original_unit_price": money_str(self.original_unit_price),
            "restocking_fee": money_str(self.restocking_fee),
            "refund_amount": money_str(self.refund_amount),
            "item_condition": enum_value(self.item_condition),
            "is_restockable": self.is_restockable,
            "can_be_restocked": self.can_be_restocked(),
            "disposal_reason": self.disposal_reason,
            "condition_notes": self.condition_notes,
            "is_processed": self.is_processed,
            "restocked": self.restocked,
        }
