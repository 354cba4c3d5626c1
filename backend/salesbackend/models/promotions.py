from __future__ import annotations

from datetime import datetime

from ..extensions import db
from ..money import money_str, percent_of, percentage, round_to, to_decimal, to_money, to_rate, ZERO
from ..time_utils import to_utc_z, utcnow
from .enums import (
    CustomerEligibility,
    CustomerType,
    PromotionType,
    coerce,
    ensure_exhaustive,
    enum_column_type,
    enum_value,
)


# =============================================================================
# PER-VARIANT RULES
# =============================================================================
# One handler per enum member. ensure_exhaustive() turns a missing member into
# an import-time failure instead of a silent fall-through.

def _eligible_all(customer) -> bool:
    return True


def _eligible_vip(customer) -> bool:
    return customer is not None and customer.customer_type == CustomerType.VIP


def _eligible_new(customer) -> bool:
    return customer is not None and to_money(customer.total_purchases) == 0


def _eligible_returning(customer) -> bool:
    return customer is not None and to_money(customer.total_purchases) > 0


def _eligible_premium(customer) -> bool:
    return customer is not None and customer.customer_type == CustomerType.PREMIUM


ELIGIBILITY_RULES = ensure_exhaustive({
    CustomerEligibility.ALL: _eligible_all,
    CustomerEligibility.VIP_ONLY: _eligible_vip,
    CustomerEligibility.NEW_CUSTOMERS: _eligible_new,
    CustomerEligibility.RETURNING_CUSTOMERS: _eligible_returning,
    CustomerEligibility.PREMIUM_ONLY: _eligible_premium,
}, CustomerEligibility, "ELIGIBILITY_RULES")


def _discount_percentage(promotion, amount):
    return percent_of(amount, promotion.discount_value)


def _discount_fixed(promotion, amount):
    return to_money(promotion.discount_value)


def _discount_none(promotion, amount):
    # Free shipping / buy-x-get-y are settled by order-level logic
    return ZERO


DISCOUNT_RULES = ensure_exhaustive({
    PromotionType.PERCENTAGE: _discount_percentage,
    PromotionType.FIXED_AMOUNT: _discount_fixed,
    PromotionType.FREE_SHIPPING: _discount_none,
    PromotionType.BUY_X_GET_Y: _discount_none,
}, PromotionType, "DISCOUNT_RULES")


class Promotion(db.Model):
    """
    Discount rule, either redeemed by coupon code or discovered automatically.

    discount_value is a percentage (0-100) for PERCENTAGE and a currency
    amount for FIXED_AMOUNT. Empty applicable_products / applicable_categories
    mean the promotion applies to every product.
    """
    __tablename__ = "promotions"
    __table_args__ = (
        db.UniqueConstraint("coupon_code", name="uq_promotions_coupon_code"),
        db.Index("ix_promotions_active_auto", "is_active", "auto_apply"),
        db.CheckConstraint("usage_count >= 0", name="ck_promotions_usage_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)

    promotion_type = db.Column(enum_column_type(PromotionType), nullable=False)
    discount_value = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    minimum_order_amount = db.Column(db.Numeric(12, 2), nullable=True)
    maximum_discount_amount = db.Column(db.Numeric(12, 2), nullable=True)

    start_date = db.Column(db.DateTime, nullable=False)
    end_date = db.Column(db.DateTime, nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    customer_eligibility = db.Column(
        enum_column_type(CustomerEligibility), nullable=False, default=CustomerEligibility.ALL
    )
    usage_limit = db.Column(db.Integer, nullable=True)  # NULL = unlimited
    usage_count = db.Column(db.Integer, nullable=False, default=0)

    applicable_products = db.Column(db.JSON, nullable=True)    # list[int]
    applicable_categories = db.Column(db.JSON, nullable=True)  # list[str]

    coupon_code = db.Column(db.String(64), nullable=True)
    auto_apply = db.Column(db.Boolean, nullable=False, default=False)
    stackable = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": version_id}

    def __init__(self, **kwargs):
        kwargs.setdefault("is_active", True)
        kwargs.setdefault("customer_eligibility", CustomerEligibility.ALL)
        kwargs.setdefault("usage_count", 0)
        kwargs.setdefault("auto_apply", False)
        kwargs.setdefault("stackable", False)
        kwargs.setdefault("applicable_products", [])
        kwargs.setdefault("applicable_categories", [])
        super().__init__(**kwargs)

    # -- usage ---------------------------------------------------------------

    def usage_limit_reached(self) -> bool:
        return self.usage_limit is not None and (self.usage_count or 0) >= self.usage_limit

    @property
    def remaining_usage(self) -> int | None:
        if self.usage_limit is None:
            return None
        return max(0, self.usage_limit - (self.usage_count or 0))

    @property
    def usage_percentage(self):
        if not self.usage_limit:
            return to_money(0)
        return percentage(self.usage_count or 0, self.usage_limit)

    def increment_usage(self) -> None:
        self.usage_count = (self.usage_count or 0) + 1

    def decrement_usage(self) -> None:
        self.usage_count = max(0, (self.usage_count or 0) - 1)

    # -- activity ------------------------------------------------------------

    def is_currently_active(self, now: datetime | None = None) -> bool:
        now = now or utcnow()
        return (
            bool(self.is_active)
            and self.start_date <= now <= self.end_date
            and not self.usage_limit_reached()
        )

    def is_expired(self, now: datetime | None = None) -> bool:
        return self.end_date < (now or utcnow())

    def status_display(self, now: datetime | None = None) -> str:
        now = now or utcnow()
        if not self.is_active:
            return "INACTIVE"
        if now < self.start_date:
            return "SCHEDULED"
        if self.is_expired(now):
            return "EXPIRED"
        if self.usage_limit_reached():
            return "USAGE_LIMIT_REACHED"
        return "ACTIVE"

    # -- applicability -------------------------------------------------------

    def is_applicable_to_customer(self, customer) -> bool:
        eligibility = coerce(CustomerEligibility, self.customer_eligibility)
        return ELIGIBILITY_RULES[eligibility](customer)

    def is_applicable_to_product(self, product_id: int) -> bool:
        products = self.applicable_products or []
        return not products or product_id in products

    def is_applicable_to_category(self, category: str | None) -> bool:
        categories = self.applicable_categories or []
        return not categories or category in categories

    def applies_to_item(self, product_id: int, category: str | None) -> bool:
        products = self.applicable_products or []
        categories = self.applicable_categories or []
        if not products and not categories:
            return True
        # Either list may admit the line
        return product_id in products or (category is not None and category in categories)

    def requires_code(self) -> bool:
        return bool(self.coupon_code) and not self.auto_apply

    def matches_code(self, code: str | None) -> bool:
        # Exact, case-sensitive
        return bool(self.coupon_code) and code == self.coupon_code

    # -- discount ------------------------------------------------------------

    def calculate_discount(self, order_amount, applicable_amount=None):
        """
        Discount for an order.

        minimum_order_amount is checked against the whole order; the discount
        itself is computed on applicable_amount (the matching lines) when given.
        """
        order = to_money(order_amount)
        if self.minimum_order_amount is not None and order < to_money(self.minimum_order_amount):
            return ZERO
        amount = order if applicable_amount is None else to_money(applicable_amount)
        if amount <= 0:
            return ZERO

        kind = coerce(PromotionType, self.promotion_type)
        discount = to_money(DISCOUNT_RULES[kind](self, amount))

        if self.maximum_discount_amount is not None:
            discount = min(discount, to_money(self.maximum_discount_amount))
        return min(discount, amount)

    def to_dict(self, now: datetime | None = None) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "promotion_type": enum_value(self.promotion_type),
            "discount_value": money_str(self.discount_value),
            "minimum_order_amount": money_str(self.minimum_order_amount),
            "maximum_discount_amount": money_str(self.maximum_discount_amount),
            "start_date": to_utc_z(self.start_date),
            "end_date": to_utc_z(self.end_date),
            "is_active": self.is_active,
            "customer_eligibility": enum_value(self.customer_eligibility),
            "usage_limit": self.usage_limit,
            "usage_count": self.usage_count,
            "remaining_usage": self.remaining_usage,
            "applicable_products": list(self.applicable_products or []),
            "applicable_categories": list(self.applicable_categories or []),
            "coupon_code": self.coupon_code,
            "auto_apply": self.auto_apply,
            "stackable": self.stackable,
            "status": self.status_display(now),
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class AppliedPromotion(db.Model):
    """
    Immutable audit record: one promotion accepted onto one sale.

    Never edited after insert. Removing a promotion deletes the row (and
    the service decrements Promotion.usage_count to match).
    """
    __tablename__ = "applied_promotions"
    __table_args__ = (
        db.UniqueConstraint("sale_id", "promotion_id", name="uq_applied_promotions_sale_promo"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)
    promotion_id = db.Column(db.Integer, db.ForeignKey("promotions.id"), nullable=False, index=True)

    promotion_name = db.Column(db.String(255), nullable=False)
    promotion_type = db.Column(enum_column_type(PromotionType), nullable=False)
    coupon_code = db.Column(db.String(64), nullable=True)

    discount_amount = db.Column(db.Numeric(12, 2), nullable=False)
    discount_percentage = db.Column(db.Numeric(9, 4), nullable=True)
    original_amount = db.Column(db.Numeric(12, 2), nullable=False)
    final_amount = db.Column(db.Numeric(12, 2), nullable=False)

    is_auto_applied = db.Column(db.Boolean, nullable=False, default=False)
    applied_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    sale = db.relationship("Sale", back_populates="applied_promotions")
    promotion = db.relationship("Promotion", backref=db.backref("applications", lazy="dynamic"))

    @classmethod
    def record(cls, promotion: Promotion, original_amount, discount_amount, *,
               auto_applied: bool, coupon_code: str | None = None) -> "AppliedPromotion":
        original = to_money(original_amount)
        discount = to_money(discount_amount)
        kind = coerce(PromotionType, promotion.promotion_type)
        if kind == PromotionType.PERCENTAGE:
            pct = to_decimal(promotion.discount_value)
        else:
            pct = percentage(discount, original)
        return cls(
            promotion=promotion,
            promotion_name=promotion.name,
            promotion_type=kind,
            coupon_code=coupon_code,
            discount_amount=discount,
            discount_percentage=to_rate(pct),
            original_amount=original,
            final_amount=to_money(original - discount),
            is_auto_applied=auto_applied,
            applied_at=utcnow(),
        )

    @property
    def display_text(self) -> str:
        kind = coerce(PromotionType, self.promotion_type)
        if kind == PromotionType.PERCENTAGE and self.discount_percentage is not None:
            return f"{self.promotion_name} ({round_to(self.discount_percentage, 1)}% off)"
        return f"{self.promotion_name} (${to_money(self.discount_amount)} off)"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sale_id": self.sale_id,
            "promotion_id": self.promotion_id,
            "promotion_name": self.promotion_name,
            "promotion_type": enum_value(self.promotion_type),
            "coupon_code": self.coupon_code,
            "discount_amount": money_str(self.discount_amount),
            "discount_percentage": str(to_rate(self.discount_percentage)) if self.discount_percentage is not None else None,
            "original_amount": money_str(self.original_amount),
            "final_amount": money_str(self.final_amount),
            "is_auto_applied": self.is_auto_applied,
            "display_text": self.display_text,
            "applied_at": to_utc_z(self.applied_at),
        }
