from __future__ import annotations

from ..extensions import db
from ..money import money_str, to_money
from ..time_utils import to_utc_z, utcnow
from .enums import SupplierStatus, enum_column_type, enum_value


class Supplier(db.Model):
    """Vendor that purchase orders are raised against."""
    __tablename__ = "suppliers"
    __table_args__ = (
        db.UniqueConstraint("name", name="uq_suppliers_name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    contact_person = db.Column(db.String(255), nullable=True)
    email = db.Column(db.String(255), nullable=True)
    phone = db.Column(db.String(64), nullable=True)

    status = db.Column(enum_column_type(SupplierStatus), nullable=False, default=SupplierStatus.ACTIVE)
    payment_terms = db.Column(db.String(64), nullable=True)   # e.g. NET_30
    delivery_terms = db.Column(db.String(64), nullable=True)  # e.g. FOB_DESTINATION

    # Order statistics
    total_orders = db.Column(db.Integer, nullable=False, default=0)
    total_amount = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    last_order_date = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def __init__(self, **kwargs):
        kwargs.setdefault("status", SupplierStatus.ACTIVE)
        kwargs.setdefault("total_orders", 0)
        kwargs.setdefault("total_amount", to_money(0))
        super().__init__(**kwargs)

    @property
    def is_active(self) -> bool:
        return self.status == SupplierStatus.ACTIVE

    def add_order(self, amount) -> None:
        self.total_orders = (self.total_orders or 0) + 1
        self.total_amount = to_money(to_money(self.total_amount) + to_money(amount))
        self.last_order_date = utcnow()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "contact_person": self.contact_person,
            "email": self.email,
            "phone": self.phone,
            "status": enum_value(self.status),
            "payment_terms": self.payment_terms,
            "delivery_terms": self.delivery_terms,
            "total_orders": self.total_orders,
            "total_amount": money_str(self.total_amount),
            "last_order_date": to_utc_z(self.last_order_date),
            "created_at": to_utc_z(self.created_at),
        }
