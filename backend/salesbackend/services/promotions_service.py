# Overview: Promotion evaluation, selection and application onto sales, plus promotion CRUD.

"""
Promotion Evaluator

WHY: Discounts must be reproducible and auditable. Every accepted discount is
an AppliedPromotion row; the sale's promotion_discount_amount is always the
sum of those rows, never a free-standing number.

ELIGIBILITY (all must hold):
- promotion is currently active (flag on, inside window, usage limit not hit)
- customer matches customer_eligibility
- at least one sale item matches applicable_products / applicable_categories
  (empty lists match everything)
- computed discount > 0 (minimum_order_amount not met -> 0 -> not eligible)

ORDER AMOUNT:
    minimum_order_amount is checked against the whole order (sum of item
    subtotals); the discount is computed on sum(item.total_price) over the
    items the promotion applies to (product OR category match)

AUTO-APPLY SELECTION:
    Among qualifying auto_apply promotions the highest discount wins; ties go
    to the lowest promotion id. At most one auto promotion is attached per
    sale, and none when a non-stackable promotion is already on the sale.

STACKING:
    A promotion may join a sale that already has promotions only if it and
    every promotion already applied are stackable.

USAGE:
    attach -> usage_count + 1; remove -> usage_count - 1 (never below 0).
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from flask import current_app

from ..extensions import db
from ..models import AppliedPromotion, Promotion, Sale
from ..models.enums import CustomerEligibility, PromotionType, coerce, ensure_exhaustive, enum_value
from ..money import money_sum, to_money, ZERO
from ..time_utils import coerce_datetime, utcnow
from ..validation import (
    DataIntegrityError,
    InvalidStateTransitionError,
    NotFoundError,
    ValidationError,
    enforce_enum,
    enforce_non_empty,
    enforce_non_negative_int,
    enforce_non_negative_money,
    enforce_positive_money,
)
from .concurrency import atomic, lock_for_update, run_with_retry


# =============================================================================
# EVALUATION (pure, no session writes)
# =============================================================================

def order_amount(sale: Sale) -> Decimal:
    """Whole-order goods amount that minimum_order_amount is checked against."""
    return money_sum(item.subtotal for item in sale.items)


def applicable_amount(promotion: Promotion, sale: Sale) -> Decimal:
    return money_sum(
        item.total_price
        for item in sale.items
        if promotion.applies_to_item(item.product_id, item.product.category if item.product else None)
    )


def _order_discount(promotion: Promotion, sale: Sale, amount: Decimal) -> Decimal:
    return promotion.calculate_discount(order_amount(sale), amount)


def _shipping_discount(promotion: Promotion, sale: Sale, amount: Decimal) -> Decimal:
    if promotion.minimum_order_amount is not None and order_amount(sale) < to_money(promotion.minimum_order_amount):
        return ZERO
    shipping = to_money(sale.shipping_cost)
    if promotion.maximum_discount_amount is not None:
        shipping = min(shipping, to_money(promotion.maximum_discount_amount))
    return shipping


def _no_order_discount(promotion: Promotion, sale: Sale, amount: Decimal) -> Decimal:
    return ZERO


# Sale-level settlement per promotion type. BUY_X_GET_Y has no settlement
# rule yet, so it never qualifies.
SALE_DISCOUNT_RULES = ensure_exhaustive({
    PromotionType.PERCENTAGE: _order_discount,
    PromotionType.FIXED_AMOUNT: _order_discount,
    PromotionType.FREE_SHIPPING: _shipping_discount,
    PromotionType.BUY_X_GET_Y: _no_order_discount,
}, PromotionType, "SALE_DISCOUNT_RULES")


def discount_for_sale(promotion: Promotion, sale: Sale) -> Decimal:
    amount = applicable_amount(promotion, sale)
    if amount <= 0:
        return ZERO
    kind = coerce(PromotionType, promotion.promotion_type)
    return to_money(SALE_DISCOUNT_RULES[kind](promotion, sale, amount))


def ineligibility_reason(promotion: Promotion, sale: Sale, now: datetime | None = None) -> str | None:
    """None when the promotion can go onto the sale, otherwise why not."""
    if not promotion.is_currently_active(now):
        return f"Promotion is not active ({promotion.status_display(now)})"
    if not promotion.is_applicable_to_customer(sale.customer):
        return "Customer is not eligible for this promotion"
    if applicable_amount(promotion, sale) <= 0:
        return "Promotion does not apply to any item in this order"
    if discount_for_sale(promotion, sale) <= 0:
        return "Order does not qualify for a discount from this promotion"
    return None


def find_auto_promotions(sale: Sale, now: datetime | None = None) -> list[Promotion]:
    now = now or utcnow()
    candidates = (
        db.session.query(Promotion)
        .filter(
            Promotion.is_active.is_(True),
            Promotion.auto_apply.is_(True),
            Promotion.start_date <= now,
            Promotion.end_date >= now,
        )
        .order_by(Promotion.id.asc())
        .all()
    )
    return [p for p in candidates if ineligibility_reason(p, sale, now) is None]


def select_auto_promotion(sale: Sale, now: datetime | None = None) -> tuple[Promotion, Decimal] | None:
    best = None
    for promotion in find_auto_promotions(sale, now):
        discount = discount_for_sale(promotion, sale)
        # Strictly greater keeps the lowest id on ties (candidates are id-ordered)
        if best is None or discount > best[1]:
            best = (promotion, discount)
    return best


# =============================================================================
# LOOKUPS
# =============================================================================

def get_promotion(promotion_id: int) -> Promotion:
    promotion = db.session.get(Promotion, promotion_id)
    if promotion is None:
        raise NotFoundError("Promotion", promotion_id)
    return promotion


def find_by_coupon_code(code: str) -> Promotion | None:
    if not code:
        return None
    return db.session.query(Promotion).filter(Promotion.coupon_code == code).first()


def validate_coupon_code(code: str, sale: Sale, now: datetime | None = None) -> Promotion:
    """
    Resolve a coupon code for this sale.

    Raises:
        ValidationError: unknown code, inactive promotion, or not applicable
    """
    promotion = find_by_coupon_code(code)
    if promotion is None:
        raise ValidationError(f"Invalid coupon code: {code}", {"field": "coupon_code", "value": code})
    reason = ineligibility_reason(promotion, sale, now)
    if reason:
        raise ValidationError(
            f"Coupon code {code} cannot be applied: {reason}",
            {"field": "coupon_code", "value": code, "promotion_id": promotion.id, "reason": reason},
        )
    return promotion


def list_active_promotions(now: datetime | None = None) -> list[Promotion]:
    now = now or utcnow()
    rows = (
        db.session.query(Promotion)
        .filter(Promotion.is_active.is_(True), Promotion.start_date <= now, Promotion.end_date >= now)
        .order_by(Promotion.id.asc())
        .all()
    )
    return [p for p in rows if not p.usage_limit_reached()]


# =============================================================================
# APPLICATION PRIMITIVES (caller owns the transaction)
# =============================================================================

def _ensure_pending(sale: Sale, action: str) -> None:
    if not sale.is_pending:
        status = enum_value(sale.status)
        raise InvalidStateTransitionError(
            "Sale", status, "PENDING",
            f"Promotions can only be {action} on PENDING sales (sale {sale.id} is {status})",
        )


def _ensure_stackable(sale: Sale, promotion: Promotion) -> None:
    existing = [ap.promotion for ap in sale.applied_promotions]
    if any(p.id == promotion.id for p in existing):
        raise ValidationError(
            f"Promotion {promotion.name} is already applied to this sale",
            {"promotion_id": promotion.id, "sale_id": sale.id},
        )
    if existing and (not promotion.stackable or not all(p.stackable for p in existing)):
        raise ValidationError(
            "Promotion cannot be combined with the promotions already applied",
            {"promotion_id": promotion.id, "applied": [p.id for p in existing]},
        )


def attach_promotion(
    sale: Sale,
    promotion: Promotion,
    *,
    auto_applied: bool,
    coupon_code: str | None = None,
    now: datetime | None = None,
) -> AppliedPromotion:
    _ensure_pending(sale, "applied")
    _ensure_stackable(sale, promotion)

    reason = ineligibility_reason(promotion, sale, now)
    if reason:
        raise ValidationError(
            f"Promotion {promotion.name} cannot be applied: {reason}",
            {"promotion_id": promotion.id, "reason": reason},
        )

    # Serialize usage_count updates across concurrent sales
    lock_for_update(db.session.query(Promotion).filter(Promotion.id == promotion.id)).first()

    discount = discount_for_sale(promotion, sale)
    applied = AppliedPromotion.record(
        promotion,
        applicable_amount(promotion, sale),
        discount,
        auto_applied=auto_applied,
        coupon_code=coupon_code,
    )
    sale.applied_promotions.append(applied)
    promotion.increment_usage()
    if coupon_code:
        sale.coupon_code = coupon_code
    sale.calculate_totals()
    db.session.flush()

    current_app.logger.info(
        "Applied promotion %s to sale %s discount=%s auto=%s",
        promotion.id, sale.id, discount, auto_applied,
    )
    return applied


def apply_auto_promotion(sale: Sale, now: datetime | None = None) -> AppliedPromotion | None:
    if any(not ap.promotion.stackable for ap in sale.applied_promotions):
        return None
    if any(ap.is_auto_applied for ap in sale.applied_promotions):
        return None
    choice = select_auto_promotion(sale, now)
    if choice is None:
        return None
    promotion, _ = choice
    if sale.applied_promotions and not promotion.stackable:
        return None
    return attach_promotion(sale, promotion, auto_applied=True, now=now)


def detach_promotion(sale: Sale, promotion_id: int) -> None:
    _ensure_pending(sale, "removed")
    applied = next((ap for ap in sale.applied_promotions if ap.promotion_id == promotion_id), None)
    if applied is None:
        raise NotFoundError("AppliedPromotion", promotion_id)

    promotion = lock_for_update(db.session.query(Promotion).filter(Promotion.id == promotion_id)).first()
    if promotion is not None:
        promotion.decrement_usage()
    sale.applied_promotions.remove(applied)
    if applied.coupon_code and sale.coupon_code == applied.coupon_code:
        sale.coupon_code = None
    sale.calculate_totals()
    db.session.flush()
    current_app.logger.info("Removed promotion %s from sale %s", promotion_id, sale.id)


def resettle_promotions(sale: Sale) -> None:
    """
    Re-record every applied promotion against the sale's current figures.

    AppliedPromotion rows are immutable, so each one is replaced by a fresh
    record. A promotion that no longer earns a discount is dropped and its
    usage returned.
    """
    _ensure_pending(sale, "re-settled")
    previous = [(ap.promotion, ap.is_auto_applied, ap.coupon_code) for ap in sale.applied_promotions]
    if not previous:
        return
    sale.applied_promotions.clear()
    # Flush the deletes so the (sale, promotion) unique key is free again
    db.session.flush()

    for promotion, auto_applied, coupon_code in previous:
        discount = discount_for_sale(promotion, sale)
        if discount <= 0:
            promotion.decrement_usage()
            if coupon_code and sale.coupon_code == coupon_code:
                sale.coupon_code = None
            current_app.logger.info("Dropped promotion %s from sale %s on re-settle", promotion.id, sale.id)
            continue
        sale.applied_promotions.append(AppliedPromotion.record(
            promotion,
            applicable_amount(promotion, sale),
            discount,
            auto_applied=auto_applied,
            coupon_code=coupon_code,
        ))
    sale.calculate_totals()
    db.session.flush()


# =============================================================================
# COMMANDS (commit)
# =============================================================================

def _get_sale(sale_id: int) -> Sale:
    sale = db.session.get(Sale, sale_id)
    if sale is None:
        raise NotFoundError("Sale", sale_id)
    return sale


def apply_promotion(sale_id: int, coupon_code: str | None = None) -> Sale:
    """
    Apply a coupon (exact, case-sensitive) or, with no code, the best
    qualifying auto-apply promotion.
    """
    def _op():
        with atomic():
            sale = _get_sale(sale_id)
            _ensure_pending(sale, "applied")
            if coupon_code:
                promotion = validate_coupon_code(coupon_code, sale)
                attach_promotion(sale, promotion, auto_applied=False, coupon_code=coupon_code)
            elif apply_auto_promotion(sale) is None:
                raise ValidationError(
                    "No automatic promotion applies to this sale",
                    {"sale_id": sale_id},
                )
            return sale

    return run_with_retry(_op)


def apply_promotion_by_id(sale_id: int, promotion_id: int) -> Sale:
    def _op():
        with atomic():
            sale = _get_sale(sale_id)
            promotion = get_promotion(promotion_id)
            if promotion.requires_code():
                raise ValidationError(
                    "This promotion requires a coupon code",
                    {"promotion_id": promotion_id},
                )
            attach_promotion(sale, promotion, auto_applied=False)
            return sale

    return run_with_retry(_op)


def remove_promotion(sale_id: int, promotion_id: int) -> Sale:
    def _op():
        with atomic():
            sale = _get_sale(sale_id)
            detach_promotion(sale, promotion_id)
            return sale

    return run_with_retry(_op)


def eligible_promotions_for_sale(sale_id: int, now: datetime | None = None) -> list[Promotion]:
    """Every active promotion, coupon or automatic, the sale currently qualifies for."""
    sale = _get_sale(sale_id)
    if not sale.is_pending:
        return []
    return [p for p in list_active_promotions(now) if ineligibility_reason(p, sale, now) is None]


# =============================================================================
# PROMOTION CRUD
# =============================================================================

UPDATABLE_FIELDS = {
    "name", "description", "discount_value", "minimum_order_amount", "maximum_discount_amount",
    "start_date", "end_date", "customer_eligibility", "usage_limit", "applicable_products",
    "applicable_categories", "coupon_code", "auto_apply", "stackable",
}


def _clean_promotion_fields(fields: dict, promotion_type: PromotionType) -> dict:
    cleaned = dict(fields)
    if "discount_value" in cleaned:
        value = enforce_positive_money("discount_value", cleaned["discount_value"]) \
            if promotion_type in (PromotionType.PERCENTAGE, PromotionType.FIXED_AMOUNT) \
            else enforce_non_negative_money("discount_value", cleaned["discount_value"])
        if promotion_type == PromotionType.PERCENTAGE and value > 100:
            raise ValidationError(
                "Percentage discount cannot exceed 100",
                {"field": "discount_value", "value": str(value)},
            )
        cleaned["discount_value"] = value
    for field in ("minimum_order_amount", "maximum_discount_amount"):
        if cleaned.get(field) is not None:
            cleaned[field] = enforce_non_negative_money(field, cleaned[field])
    if cleaned.get("usage_limit") is not None:
        enforce_non_negative_int("usage_limit", cleaned["usage_limit"])
    if "customer_eligibility" in cleaned:
        cleaned["customer_eligibility"] = enforce_enum(
            "customer_eligibility", cleaned["customer_eligibility"], CustomerEligibility
        )
    for field in ("start_date", "end_date"):
        if field in cleaned:
            cleaned[field] = coerce_datetime(cleaned[field])
    if "applicable_products" in cleaned:
        cleaned["applicable_products"] = [int(p) for p in (cleaned["applicable_products"] or [])]
    if "applicable_categories" in cleaned:
        cleaned["applicable_categories"] = [str(c) for c in (cleaned["applicable_categories"] or [])]
    if "coupon_code" in cleaned and cleaned["coupon_code"] is not None:
        cleaned["coupon_code"] = cleaned["coupon_code"].strip() or None
    return cleaned


def _ensure_code_free(code: str | None, exclude_id: int | None = None) -> None:
    if not code:
        return
    existing = find_by_coupon_code(code)
    if existing is not None and existing.id != exclude_id:
        raise ValidationError(f"Coupon code already exists: {code}", {"field": "coupon_code", "value": code})


def _ensure_window(start, end) -> None:
    if start is None or end is None:
        raise ValidationError("start_date and end_date are required", {"field": "start_date"})
    if end <= start:
        raise ValidationError(
            "end_date must be after start_date",
            {"field": "end_date", "start_date": str(start), "end_date": str(end)},
        )


def create_promotion(*, name: str, promotion_type, discount_value, start_date, end_date, **fields) -> Promotion:
    enforce_non_empty("name", name)
    kind = enforce_enum("promotion_type", promotion_type, PromotionType)
    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        raise ValidationError(f"Unknown fields: {', '.join(sorted(unknown))}", {"fields": sorted(unknown)})

    cleaned = _clean_promotion_fields(
        {**fields, "discount_value": discount_value, "start_date": start_date, "end_date": end_date},
        kind,
    )
    _ensure_window(cleaned["start_date"], cleaned["end_date"])
    _ensure_code_free(cleaned.get("coupon_code"))

    with atomic():
        promotion = Promotion(name=name.strip(), promotion_type=kind, **cleaned)
        db.session.add(promotion)
    current_app.logger.info("Created promotion %s (%s)", promotion.id, kind.value)
    return promotion


def update_promotion(promotion_id: int, **changes) -> Promotion:
    unknown = set(changes) - UPDATABLE_FIELDS
    if unknown:
        raise ValidationError(f"Cannot update fields: {', '.join(sorted(unknown))}", {"fields": sorted(unknown)})

    with atomic():
        promotion = get_promotion(promotion_id)
        cleaned = _clean_promotion_fields(changes, coerce(PromotionType, promotion.promotion_type))
        _ensure_window(
            cleaned.get("start_date", promotion.start_date),
            cleaned.get("end_date", promotion.end_date),
        )
        if "coupon_code" in cleaned:
            _ensure_code_free(cleaned["coupon_code"], exclude_id=promotion_id)
        for key, value in cleaned.items():
            setattr(promotion, key, value)
    return promotion


def activate_promotion(promotion_id: int) -> Promotion:
    with atomic():
        promotion = get_promotion(promotion_id)
        promotion.is_active = True
    return promotion


def deactivate_promotion(promotion_id: int) -> Promotion:
    with atomic():
        promotion = get_promotion(promotion_id)
        promotion.is_active = False
    return promotion


def delete_promotion(promotion_id: int) -> None:
    promotion = get_promotion(promotion_id)
    if promotion.is_active:
        raise DataIntegrityError(
            "Promotion", promotion_id, "active status",
            "Deactivate the promotion before deleting it.",
        )
    if promotion.applications.first() is not None:
        raise DataIntegrityError("Promotion", promotion_id, "applied sales")
    with atomic():
        db.session.delete(promotion)
    current_app.logger.info("Deleted promotion %s", promotion_id)
