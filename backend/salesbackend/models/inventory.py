from __future__ import annotations

from ..extensions import db
from ..money import money_str, percentage, to_money
from ..time_utils import to_utc_z, utcnow
from .enums import StockMovementReason, enum_column_type, enum_value


class Product(db.Model):
    """
    Product master plus its stock ledger row.

    stock_quantity is the single quantity-on-hand figure. It is only mutated
    through services/stock_service.py, which locks the row and appends a
    StockMovement for every change.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.UniqueConstraint("sku", name="uq_products_sku"),
        db.CheckConstraint("stock_quantity >= 0", name="ck_products_stock_non_negative"),
        db.Index("ix_products_category", "category"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sku = db.Column(db.String(64), nullable=False)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    category = db.Column(db.String(128), nullable=True)

    unit_price = db.Column(db.Numeric(12, 2), nullable=False)
    cost_price = db.Column(db.Numeric(12, 2), nullable=False, default=0)

    # Stock ledger
    stock_quantity = db.Column(db.Integer, nullable=False, default=0)
    min_stock_level = db.Column(db.Integer, nullable=False, default=5)
    max_stock_level = db.Column(db.Integer, nullable=False, default=1000)
    reorder_point = db.Column(db.Integer, nullable=False, default=10)
    reorder_quantity = db.Column(db.Integer, nullable=True)
    last_restocked = db.Column(db.DateTime, nullable=True)

    # Sales statistics
    total_sold = db.Column(db.Integer, nullable=False, default=0)
    total_revenue = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    last_sold_date = db.Column(db.DateTime, nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": version_id}

    def __init__(self, **kwargs):
        kwargs.setdefault("stock_quantity", 0)
        kwargs.setdefault("min_stock_level", 5)
        kwargs.setdefault("max_stock_level", 1000)
        kwargs.setdefault("reorder_point", 10)
        kwargs.setdefault("cost_price", to_money(0))
        kwargs.setdefault("total_sold", 0)
        kwargs.setdefault("total_revenue", to_money(0))
        super().__init__(**kwargs)

    # -- derived ledger flags -------------------------------------------------

    @property
    def is_low_stock(self) -> bool:
        return self.stock_quantity <= self.min_stock_level

    @property
    def needs_reorder(self) -> bool:
        return self.stock_quantity <= self.reorder_point

    @property
    def is_out_of_stock(self) -> bool:
        return self.stock_quantity <= 0

    @property
    def margin(self):
        return to_money(to_money(self.unit_price) - to_money(self.cost_price))

    @property
    def margin_percentage(self):
        # Zero cost price yields 0, not a division error
        return percentage(self.margin, self.cost_price)

    def has_stock_for(self, quantity: int) -> bool:
        return quantity <= self.stock_quantity

    def record_sale(self, quantity: int, revenue) -> None:
        self.total_sold = (self.total_sold or 0) + quantity
        self.total_revenue = to_money(to_money(self.total_revenue) + to_money(revenue))
        self.last_sold_date = utcnow()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sku": self.sku,
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "unit_price": money_str(self.unit_price),
            "cost_price": money_str(self.cost_price),
            "stock_quantity": self.stock_quantity,
            "min_stock_level": self.min_stock_level,
            "max_stock_level": self.max_stock_level,
            "reorder_point": self.reorder_point,
            "reorder_quantity": self.reorder_quantity,
            "last_restocked": to_utc_z(self.last_restocked),
            "total_sold": self.total_sold,
            "total_revenue": money_str(self.total_revenue),
            "last_sold_date": to_utc_z(self.last_sold_date),
            "is_low_stock": self.is_low_stock,
            "needs_reorder": self.needs_reorder,
            "is_out_of_stock": self.is_out_of_stock,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class StockMovement(db.Model):
    """
    Append-only audit of every stock ledger mutation.

    APPEND-ONLY: rows are inserted with the product's post-change balance and
    are never updated or deleted.

    The (product_id, reason, event_key) constraint means one business event
    (e.g. sale 12 line 30 leaving the shelf) can be applied to the ledger at
    most once; a replay fails at flush with IntegrityError. Manual adjustments
    carry event_key=NULL and are not deduplicated.
    """
    __tablename__ = "stock_movements"
    __table_args__ = (
        db.UniqueConstraint("product_id", "reason", "event_key", name="uq_stock_movements_event"),
        db.Index("ix_stock_movements_product_occurred", "product_id", "occurred_at"),
        db.Index("ix_stock_movements_reference", "reference_type", "reference_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    quantity_delta = db.Column(db.Integer, nullable=False)
    balance_after = db.Column(db.Integer, nullable=False)
    reason = db.Column(enum_column_type(StockMovementReason), nullable=False)

    reference_type = db.Column(db.String(32), nullable=True)  # SALE, RETURN, PURCHASE_ORDER
    reference_id = db.Column(db.Integer, nullable=True)
    event_key = db.Column(db.String(128), nullable=True)
    note = db.Column(db.String(255), nullable=True)

    occurred_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    product = db.relationship("Product", backref=db.backref("stock_movements", lazy="dynamic"))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "quantity_delta": self.quantity_delta,
            "balance_after": self.balance_after,
            "reason": enum_value(self.reason),
            "reference_type": self.reference_type,
            "reference_id": self.reference_id,
            "event_key": self.event_key,
            "note": self.note,
            "occurred_at": to_utc_z(self.occurred_at),
        }
