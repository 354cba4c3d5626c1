from __future__ import annotations

from datetime import datetime

from ..extensions import db
from ..money import money_str, money_sum, percent_of, percentage, to_decimal, to_money, to_rate, ZERO
from ..time_utils import to_utc_z, utcnow
from .enums import PurchaseOrderPriority, PurchaseOrderStatus, enum_column_type, enum_value
from .line_items import LineItemMixin


class PurchaseOrder(db.Model):
    """
    Purchase order raised against a supplier.

    STATE MACHINE:
        PENDING -> APPROVED -> SENT -> DELIVERED
        PENDING | APPROVED -> CANCELLED

    TOTALS:
        subtotal = sum(item.total_price)
        tax      = subtotal * tax_rate / 100   (only when tax_rate > 0)
        total    = subtotal + tax + shipping_cost - discount_amount
    """
    __tablename__ = "purchase_orders"
    __table_args__ = (
        db.UniqueConstraint("order_number", name="uq_purchase_orders_number"),
        db.Index("ix_purchase_orders_supplier_status", "supplier_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_number = db.Column(db.String(64), nullable=False)
    supplier_id = db.Column(db.Integer, db.ForeignKey("suppliers.id"), nullable=False, index=True)

    order_date = db.Column(db.DateTime, nullable=False, default=utcnow)
    expected_delivery_date = db.Column(db.DateTime, nullable=True)
    actual_delivery_date = db.Column(db.DateTime, nullable=True)

    status = db.Column(enum_column_type(PurchaseOrderStatus), nullable=False, default=PurchaseOrderStatus.PENDING)
    priority = db.Column(enum_column_type(PurchaseOrderPriority), nullable=False, default=PurchaseOrderPriority.NORMAL)

    subtotal = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    tax_rate = db.Column(db.Numeric(9, 4), nullable=False, default=15)
    tax_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    shipping_cost = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    discount_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    total_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)

    payment_terms = db.Column(db.String(64), nullable=True)
    delivery_terms = db.Column(db.String(64), nullable=True)
    shipping_address = db.Column(db.Text, nullable=True)
    notes = db.Column(db.Text, nullable=True)

    created_by = db.Column(db.String(128), nullable=True)
    approved_by = db.Column(db.String(128), nullable=True)
    approved_date = db.Column(db.DateTime, nullable=True)
    sent_date = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    supplier = db.relationship("Supplier", backref=db.backref("purchase_orders", lazy="dynamic"))
    items = db.relationship(
        "PurchaseOrderItem",
        back_populates="purchase_order",
        cascade="all, delete-orphan",
        order_by="PurchaseOrderItem.id",
    )
    __mapper_args__ = {"version_id_col": version_id}

    def __init__(self, **kwargs):
        kwargs.setdefault("status", PurchaseOrderStatus.PENDING)
        kwargs.setdefault("priority", PurchaseOrderPriority.NORMAL)
        kwargs.setdefault("tax_rate", to_rate(15))
        for field in ("subtotal", "tax_amount", "shipping_cost", "discount_amount", "total_amount"):
            kwargs.setdefault(field, ZERO)
        kwargs.setdefault("order_date", utcnow())
        super().__init__(**kwargs)

    def add_item(self, item: "PurchaseOrderItem") -> None:
        self.items.append(item)
        item.calculate_totals()

    def calculate_totals(self) -> None:
        if not self.can_be_modified():
            return
        if not self.items:
            self.subtotal = ZERO
            self.tax_amount = ZERO
            self.total_amount = ZERO
            return

        for item in self.items:
            item.calculate_totals()

        self.subtotal = money_sum(item.total_price for item in self.items)
        rate = to_decimal(self.tax_rate)
        self.tax_amount = percent_of(self.subtotal, rate) if rate > 0 else ZERO
        self.total_amount = to_money(
            self.subtotal
            + self.tax_amount
            + to_money(self.shipping_cost)
            - to_money(self.discount_amount)
        )

    def can_be_modified(self) -> bool:
        return self.status == PurchaseOrderStatus.PENDING

    def is_overdue(self, now: datetime | None = None) -> bool:
        return (
            self.expected_delivery_date is not None
            and self.expected_delivery_date < (now or utcnow())
            and self.status == PurchaseOrderStatus.SENT
        )

    @property
    def receiving_progress(self):
        ordered = sum(item.quantity for item in self.items)
        received = sum(item.received_quantity or 0 for item in self.items)
        return percentage(received, ordered)

    @property
    def is_fully_received(self) -> bool:
        return bool(self.items) and all(item.is_fully_received for item in self.items)

    def to_dict(self, include_items: bool = True) -> dict:
        data = {
            "id": self.id,
            "order_number": self.order_number,
            "supplier_id": self.supplier_id,
            "order_date": to_utc_z(self.order_date),
            "expected_delivery_date": to_utc_z(self.expected_delivery_date),
            "actual_delivery_date": to_utc_z(self.actual_delivery_date),
            "status": enum_value(self.status),
            "priority": enum_value(self.priority),
            "subtotal": money_str(self.subtotal),
            "tax_rate": str(to_rate(self.tax_rate)),
            "tax_amount": money_str(self.tax_amount),
            "shipping_cost": money_str(self.shipping_cost),
            "discount_amount": money_str(self.discount_amount),
            "total_amount": money_str(self.total_amount),
            "payment_terms": self.payment_terms,
            "delivery_terms": self.delivery_terms,
            "shipping_address": self.shipping_address,
            "notes": self.notes,
            "created_by": self.created_by,
            "approved_by": self.approved_by,
            "approved_date": to_utc_z(self.approved_date),
            "sent_date": to_utc_z(self.sent_date),
            "receiving_progress": str(self.receiving_progress),
            "is_fully_received": self.is_fully_received,
            "version_id": self.version_id,
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class PurchaseOrderItem(LineItemMixin, db.Model):
    __tablename__ = "purchase_order_items"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_po_items_quantity_positive"),
        db.CheckConstraint("received_quantity >= 0 AND received_quantity <= quantity", name="ck_po_items_received_bounded"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    purchase_order_id = db.Column(db.Integer, db.ForeignKey("purchase_orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    quantity = db.Column(db.Integer, nullable=False)
    unit_cost = db.Column(db.Numeric(12, 2), nullable=False)
    received_quantity = db.Column(db.Integer, nullable=False, default=0)

    discount_percentage = db.Column(db.Numeric(9, 4), nullable=False, default=0)
    discount_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    tax_percentage = db.Column(db.Numeric(9, 4), nullable=False, default=0)
    tax_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    subtotal = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    total_price = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    notes = db.Column(db.Text, nullable=True)

    purchase_order = db.relationship("PurchaseOrder", back_populates="items")
    product = db.relationship("Product")

    def __init__(self, **kwargs):
        kwargs.setdefault("received_quantity", 0)
        super().__init__(**kwargs)
        self.calculate_totals()

    def _line_unit_price(self):
        return self.unit_cost

    def _line_is_frozen(self) -> bool:
        return self.purchase_order is not None and not self.purchase_order.can_be_modified()

    @property
    def pending_quantity(self) -> int:
        return self.quantity - (self.received_quantity or 0)

    def receive_quantity(self, quantity: int) -> int:
        """Record a receipt, clamped to the ordered quantity. Returns units accepted."""
        if not quantity or quantity <= 0:
            return 0
        current = self.received_quantity or 0
        new_received = min(current + quantity, self.quantity)
        self.received_quantity = new_received
        return new_received - current

    @property
    def is_fully_received(self) -> bool:
        return (self.received_quantity or 0) == self.quantity

    @property
    def is_partially_received(self) -> bool:
        return 0 < (self.received_quantity or 0) < self.quantity

    @property
    def received_value(self):
        return to_money(to_decimal(self.unit_cost) * (self.received_quantity or 0))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "purchase_order_id": self.purchase_order_id,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "unit_cost": money_str(self.unit_cost),
            "received_quantity": self.received_quantity,
            "pending_quantity": self.pending_quantity,
            "discount_percentage": str(to_rate(self.discount_percentage)),
            "discount_amount": money_str(self.discount_amount),
            "tax_percentage": str(to_rate(self.tax_percentage)),
            "tax_amount": money_str(self.tax_amount),
            "subtotal": money_str(self.subtotal),
            "total_price": money_str(self.total_price),
            "received_value": money_str(self.received_value),
            "is_fully_received": self.is_fully_received,
            "is_partially_received": self.is_partially_received,
            "notes": self.notes,
        }
