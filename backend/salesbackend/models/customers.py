from __future__ import annotations

from ..extensions import db
from ..money import money_str, to_money
from ..time_utils import to_utc_z, utcnow
from .enums import CustomerType, enum_column_type, enum_value


class Customer(db.Model):
    """
    Customer master record.

    Carries the attributes promotions are evaluated against (customer_type,
    total_purchases) and the running loyalty balance credited on sale
    completion.
    """
    __tablename__ = "customers"
    __table_args__ = (
        db.UniqueConstraint("email", name="uq_customers_email"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    email = db.Column(db.String(255), nullable=True)
    phone = db.Column(db.String(64), nullable=True)
    address = db.Column(db.Text, nullable=True)

    customer_type = db.Column(enum_column_type(CustomerType), nullable=False, default=CustomerType.REGULAR)
    loyalty_points = db.Column(db.Integer, nullable=False, default=0)
    total_purchases = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    last_purchase_date = db.Column(db.DateTime, nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": version_id}

    def __init__(self, **kwargs):
        kwargs.setdefault("customer_type", CustomerType.REGULAR)
        kwargs.setdefault("loyalty_points", 0)
        kwargs.setdefault("total_purchases", to_money(0))
        super().__init__(**kwargs)

    def add_loyalty_points(self, points: int) -> None:
        if points and points > 0:
            self.loyalty_points = (self.loyalty_points or 0) + points

    def update_total_purchases(self, amount) -> None:
        if amount is not None and to_money(amount) > 0:
            self.total_purchases = to_money(to_money(self.total_purchases) + to_money(amount))
            self.last_purchase_date = utcnow()

    @property
    def is_new_customer(self) -> bool:
        return to_money(self.total_purchases) == 0

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "address": self.address,
            "customer_type": enum_value(self.customer_type),
            "loyalty_points": self.loyalty_points,
            "total_purchases": money_str(self.total_purchases),
            "last_purchase_date": to_utc_z(self.last_purchase_date),
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
