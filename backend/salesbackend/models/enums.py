"""
Closed vocabularies for the engine.

Each enum is a str mixin so members compare equal to their stored value
("PENDING" == SaleStatus.PENDING). Columns use db.Enum(..., native_enum=False),
which persists VARCHAR and loads members back.
"""

from __future__ import annotations

import enum

from ..extensions import db


class CustomerType(str, enum.Enum):
    REGULAR = "REGULAR"
    VIP = "VIP"
    PREMIUM = "PREMIUM"
    CORPORATE = "CORPORATE"
    WHOLESALE = "WHOLESALE"


class SaleStatus(str, enum.Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class PaymentMethod(str, enum.Enum):
    CASH = "CASH"
    CREDIT_CARD = "CREDIT_CARD"
    DEBIT_CARD = "DEBIT_CARD"
    BANK_TRANSFER = "BANK_TRANSFER"
    CHECK = "CHECK"
    PAYPAL = "PAYPAL"
    STRIPE = "STRIPE"
    SQUARE = "SQUARE"
    OTHER = "OTHER"
    NET_30 = "NET_30"


class PaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    PARTIALLY_PAID = "PARTIALLY_PAID"
    OVERDUE = "OVERDUE"
    REFUNDED = "REFUNDED"
    CANCELLED = "CANCELLED"


class SaleType(str, enum.Enum):
    RETAIL = "RETAIL"
    WHOLESALE = "WHOLESALE"
    B2B = "B2B"
    ONLINE = "ONLINE"
    SUBSCRIPTION = "SUBSCRIPTION"
    RETURN = "RETURN"


class DeliveryStatus(str, enum.Enum):
    NOT_SHIPPED = "NOT_SHIPPED"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    IN_TRANSIT = "IN_TRANSIT"
    DELIVERED = "DELIVERED"
    RETURNED = "RETURNED"
    CANCELLED = "CANCELLED"
    PICKED_UP = "PICKED_UP"


class PurchaseOrderStatus(str, enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    SENT = "SENT"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


class PurchaseOrderPriority(str, enum.Enum):
    LOW = "LOW"
    NORMAL = "NORMAL"
    HIGH = "HIGH"
    URGENT = "URGENT"


class SupplierStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    SUSPENDED = "SUSPENDED"


class ReturnStatus(str, enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    REFUNDED = "REFUNDED"
    EXCHANGED = "EXCHANGED"
    CANCELLED = "CANCELLED"


class ReturnReason(str, enum.Enum):
    DEFECTIVE = "DEFECTIVE"
    WRONG_ITEM = "WRONG_ITEM"
    CUSTOMER_CHANGE_MIND = "CUSTOMER_CHANGE_MIND"
    DAMAGED_IN_SHIPPING = "DAMAGED_IN_SHIPPING"
    NOT_AS_DESCRIBED = "NOT_AS_DESCRIBED"
    EXPIRED = "EXPIRED"
    DUPLICATE_ORDER = "DUPLICATE_ORDER"
    OTHER = "OTHER"


class RefundMethod(str, enum.Enum):
    ORIGINAL_PAYMENT = "ORIGINAL_PAYMENT"
    STORE_CREDIT = "STORE_CREDIT"
    CASH = "CASH"
    BANK_TRANSFER = "BANK_TRANSFER"
    CHECK = "CHECK"


class ItemCondition(str, enum.Enum):
    NEW = "NEW"
    LIKE_NEW = "LIKE_NEW"
    GOOD = "GOOD"
    FAIR = "FAIR"
    POOR = "POOR"
    DAMAGED = "DAMAGED"
    DEFECTIVE = "DEFECTIVE"


class PromotionType(str, enum.Enum):
    PERCENTAGE = "PERCENTAGE"
    FIXED_AMOUNT = "FIXED_AMOUNT"
    FREE_SHIPPING = "FREE_SHIPPING"
    BUY_X_GET_Y = "BUY_X_GET_Y"


class CustomerEligibility(str, enum.Enum):
    ALL = "ALL"
    VIP_ONLY = "VIP_ONLY"
    NEW_CUSTOMERS = "NEW_CUSTOMERS"
    RETURNING_CUSTOMERS = "RETURNING_CUSTOMERS"
    PREMIUM_ONLY = "PREMIUM_ONLY"


class StockMovementReason(str, enum.Enum):
    SALE = "SALE"
    SALE_CANCEL = "SALE_CANCEL"
    RETURN_RESTOCK = "RETURN_RESTOCK"
    PO_RECEIPT = "PO_RECEIPT"
    RESTOCK = "RESTOCK"
    ADJUSTMENT = "ADJUSTMENT"
    SET = "SET"


def coerce(enum_cls, value):
    """Return the enum member for a member or its stored string; None passes."""
    if value is None or isinstance(value, enum_cls):
        return value
    return enum_cls(value)


def enum_column_type(enum_cls):
    return db.Enum(enum_cls, native_enum=False, length=32, validate_strings=True)


def enum_value(value):
    return value.value if isinstance(value, enum.Enum) else value


def ensure_exhaustive(table: dict, enum_cls, name: str) -> dict:
    """Fail at import time if a per-variant handler table misses a member."""
    missing = [m.value for m in enum_cls if m not in table]
    if missing:
        raise TypeError(f"{name} has no entry for {enum_cls.__name__}: {', '.join(missing)}")
    return table
