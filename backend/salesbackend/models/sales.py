from __future__ import annotations

from datetime import datetime

from ..extensions import db
from ..money import floor_int, money_str, money_sum, percentage, safe_divide, to_decimal, to_money, to_rate, ZERO
from ..time_utils import to_utc_z, utcnow
from .enums import (
    DeliveryStatus,
    PaymentMethod,
    PaymentStatus,
    SaleStatus,
    SaleType,
    enum_column_type,
    enum_value,
)
from ..validation import ValidationError
from .line_items import LineItemMixin


TERMINAL_SALE_STATUSES = (SaleStatus.COMPLETED, SaleStatus.CANCELLED)


class Sale(db.Model):
    """
    Sale aggregate: header totals over an owned collection of SaleItems.

    TOTALS:
        subtotal  = sum(item.subtotal)
        total     = sum(item.total_price) - discount_amount
                    - promotion_discount_amount + tax_amount + shipping_cost

    discount_amount / tax_amount / shipping_cost are order-level figures set
    by the caller; promotion_discount_amount is always derived from the
    AppliedPromotion records. Totals are frozen once the sale is COMPLETED
    or CANCELLED.
    """
    __tablename__ = "sales"
    __table_args__ = (
        db.UniqueConstraint("sale_number", name="uq_sales_sale_number"),
        db.Index("ix_sales_customer_date", "customer_id", "sale_date"),
        db.Index("ix_sales_status_date", "status", "sale_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sale_number = db.Column(db.String(64), nullable=False)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True)

    sale_date = db.Column(db.DateTime, nullable=False, default=utcnow)
    due_date = db.Column(db.DateTime, nullable=True)

    status = db.Column(enum_column_type(SaleStatus), nullable=False, default=SaleStatus.PENDING)
    sale_type = db.Column(enum_column_type(SaleType), nullable=False, default=SaleType.RETAIL)
    payment_method = db.Column(enum_column_type(PaymentMethod), nullable=True)
    payment_status = db.Column(enum_column_type(PaymentStatus), nullable=False, default=PaymentStatus.PENDING)
    payment_date = db.Column(db.DateTime, nullable=True)
    delivery_status = db.Column(enum_column_type(DeliveryStatus), nullable=False, default=DeliveryStatus.NOT_SHIPPED)

    # Totals
    subtotal = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    discount_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    promotion_discount_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    tax_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    shipping_cost = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    total_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)

    # Cost / profit metrics
    cost_of_goods_sold = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    profit_margin = db.Column(db.Numeric(9, 4), nullable=False, default=0)

    coupon_code = db.Column(db.String(64), nullable=True)
    loyalty_points_earned = db.Column(db.Integer, nullable=False, default=0)
    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    completed_at = db.Column(db.DateTime, nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    customer = db.relationship("Customer", backref=db.backref("sales", lazy="dynamic"))
    items = db.relationship(
        "SaleItem",
        back_populates="sale",
        cascade="all, delete-orphan",
        order_by="SaleItem.id",
    )
    applied_promotions = db.relationship(
        "AppliedPromotion",
        back_populates="sale",
        cascade="all, delete-orphan",
        order_by="AppliedPromotion.id",
    )
    __mapper_args__ = {"version_id_col": version_id}

    def __init__(self, **kwargs):
        kwargs.setdefault("status", SaleStatus.PENDING)
        kwargs.setdefault("sale_type", SaleType.RETAIL)
        kwargs.setdefault("payment_status", PaymentStatus.PENDING)
        kwargs.setdefault("delivery_status", DeliveryStatus.NOT_SHIPPED)
        for field in ("subtotal", "discount_amount", "promotion_discount_amount", "tax_amount",
                      "shipping_cost", "total_amount", "cost_of_goods_sold"):
            kwargs.setdefault(field, ZERO)
        kwargs.setdefault("profit_margin", to_rate(0))
        kwargs.setdefault("loyalty_points_earned", 0)
        kwargs.setdefault("sale_date", utcnow())
        super().__init__(**kwargs)

    # -- lifecycle helpers ---------------------------------------------------

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_SALE_STATUSES

    @property
    def is_pending(self) -> bool:
        return self.status == SaleStatus.PENDING

    def add_item(self, item: "SaleItem") -> None:
        self.items.append(item)
        item.calculate_totals()

    def remove_item(self, item: "SaleItem") -> None:
        self.items.remove(item)

    # -- totals --------------------------------------------------------------

    def calculate_totals(self) -> None:
        """
        Recompute header totals from the items and applied promotions.

        Empty item list resets subtotal/total/COGS/margin to zero rather than
        leaving stale values behind.
        """
        if self.is_terminal:
            return

        self.promotion_discount_amount = money_sum(ap.discount_amount for ap in self.applied_promotions)

        if not self.items:
            self.subtotal = ZERO
            self.total_amount = ZERO
            self.cost_of_goods_sold = ZERO
            self.profit_margin = to_rate(0)
            return

        for item in self.items:
            item.calculate_totals()

        self.subtotal = money_sum(item.subtotal for item in self.items)
        items_total = money_sum(item.total_price for item in self.items)
        total = (
            items_total
            - to_money(self.discount_amount)
            - to_money(self.promotion_discount_amount)
            + to_money(self.tax_amount)
            + to_money(self.shipping_cost)
        )
        # Never below zero
        self.total_amount = to_money(total) if total > 0 else ZERO
        self.calculate_cost_and_profit_metrics()

    def calculate_cost_and_profit_metrics(self) -> None:
        self.cost_of_goods_sold = money_sum(
            to_decimal(item.cost_price) * item.quantity for item in self.items
        )
        total = to_money(self.total_amount)
        if total > 0:
            self.profit_margin = to_rate(
                safe_divide((total - self.cost_of_goods_sold) * 100, total, 4)
            )
        else:
            self.profit_margin = to_rate(0)

    def loyalty_points_for_total(self, divisor: int = 10) -> int:
        if not divisor or to_money(self.total_amount) <= 0:
            return 0
        return floor_int(to_money(self.total_amount) / divisor)

    # -- payment -------------------------------------------------------------

    def mark_as_paid(self, now: datetime | None = None) -> None:
        # Not guarded: re-invocation simply restamps payment_date
        self.payment_status = PaymentStatus.PAID
        self.payment_date = now or utcnow()

    def is_overdue(self, now: datetime | None = None) -> bool:
        if self.due_date is None or self.payment_status == PaymentStatus.PAID:
            return False
        return self.due_date < (now or utcnow())

    @property
    def outstanding_amount(self):
        if self.payment_status == PaymentStatus.PAID:
            return ZERO
        return to_money(self.total_amount)

    # -- returns -------------------------------------------------------------

    @property
    def has_returns(self) -> bool:
        return bool(getattr(self, "returns", None))

    @property
    def is_fully_returned(self) -> bool:
        return bool(self.items) and all(item.is_returned for item in self.items)

    def to_dict(self, include_items: bool = True) -> dict:
        data = {
            "id": self.id,
            "sale_number": self.sale_number,
            "customer_id": self.customer_id,
            "sale_date": to_utc_z(self.sale_date),
            "due_date": to_utc_z(self.due_date),
            "status": enum_value(self.status),
            "sale_type": enum_value(self.sale_type),
            "payment_method": enum_value(self.payment_method),
            "payment_status": enum_value(self.payment_status),
            "payment_date": to_utc_z(self.payment_date),
            "delivery_status": enum_value(self.delivery_status),
            "subtotal": money_str(self.subtotal),
            "discount_amount": money_str(self.discount_amount),
            "promotion_discount_amount": money_str(self.promotion_discount_amount),
            "tax_amount": money_str(self.tax_amount),
            "shipping_cost": money_str(self.shipping_cost),
            "total_amount": money_str(self.total_amount),
            "cost_of_goods_sold": money_str(self.cost_of_goods_sold),
            "profit_margin": str(to_rate(self.profit_margin)),
            "coupon_code": self.coupon_code,
            "loyalty_points_earned": self.loyalty_points_earned,
            "notes": self.notes,
            "created_at": to_utc_z(self.created_at),
            "completed_at": to_utc_z(self.completed_at),
            "cancelled_at": to_utc_z(self.cancelled_at),
            "version_id": self.version_id,
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
            data["applied_promotions"] = [ap.to_dict() for ap in self.applied_promotions]
        return data


class SaleItem(LineItemMixin, db.Model):
    """One product line on a sale, with its own returned-quantity bookkeeping."""
    __tablename__ = "sale_items"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_sale_items_quantity_positive"),
        db.CheckConstraint("returned_quantity >= 0", name="ck_sale_items_returned_non_negative"),
        db.CheckConstraint("returned_quantity <= quantity", name="ck_sale_items_returned_bounded"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    product_name = db.Column(db.String(255), nullable=True)  # snapshot at sale time

    quantity = db.Column(db.Integer, nullable=False)
    unit_price = db.Column(db.Numeric(12, 2), nullable=False)
    cost_price = db.Column(db.Numeric(12, 2), nullable=False, default=0)

    discount_percentage = db.Column(db.Numeric(9, 4), nullable=False, default=0)
    discount_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    tax_percentage = db.Column(db.Numeric(9, 4), nullable=False, default=0)
    tax_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    subtotal = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    total_price = db.Column(db.Numeric(12, 2), nullable=False, default=0)

    returned_quantity = db.Column(db.Integer, nullable=False, default=0)
    is_returned = db.Column(db.Boolean, nullable=False, default=False)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    sale = db.relationship("Sale", back_populates="items")
    product = db.relationship("Product")
    __mapper_args__ = {"version_id_col": version_id}

    def __init__(self, **kwargs):
        kwargs.setdefault("cost_price", ZERO)
        kwargs.setdefault("returned_quantity", 0)
        kwargs.setdefault("is_returned", False)
        super().__init__(**kwargs)
        self.calculate_totals()

    def _line_unit_price(self):
        return self.unit_price

    def _line_is_frozen(self) -> bool:
        return self.sale is not None and self.sale.is_terminal

    @property
    def line_total(self):
        return to_money(self.total_price)

    @property
    def profit(self):
        return to_money(self.line_total - to_decimal(self.cost_price) * self.quantity)

    @property
    def profit_margin(self):
        cost = to_money(to_decimal(self.cost_price) * self.quantity)
        return percentage(self.profit, cost)

    @property
    def remaining_quantity(self) -> int:
        return self.quantity - (self.returned_quantity or 0)

    def can_return(self, quantity: int) -> bool:
        return (
            not self.is_returned
            and quantity > 0
            and (self.returned_quantity or 0) + quantity <= self.quantity
        )

    def process_return(self, quantity: int) -> None:
        if not self.can_return(quantity):
            raise ValidationError(
                f"Cannot return {quantity} of sale item {self.id}: "
                f"only {self.remaining_quantity} remaining",
                {
                    "field": "return_quantity",
                    "sale_item_id": self.id,
                    "requested": quantity,
                    "remaining": self.remaining_quantity,
                },
            )
        self.returned_quantity = (self.returned_quantity or 0) + quantity
        if self.returned_quantity >= self.quantity:
            self.is_returned = True

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sale_id": self.sale_id,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "quantity": self.quantity,
            "unit_price": money_str(self.unit_price),
            "cost_price": money_str(self.cost_price),
            "discount_percentage": str(to_rate(self.discount_percentage)),
            "discount_amount": money_str(self.discount_amount),
            "tax_percentage": str(to_rate(self.tax_percentage)),
            "tax_amount": money_str(self.tax_amount),
            "subtotal": money_str(self.subtotal),
            "total_price": money_str(self.total_price),
            "returned_quantity": self.returned_quantity,
            "remaining_quantity": self.remaining_quantity,
            "is_returned": self.is_returned,
        }
