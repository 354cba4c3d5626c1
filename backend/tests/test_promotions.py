from datetime import timedelta
from decimal import Decimal

import pytest

from salesbackend.extensions import db
from salesbackend.models import AppliedPromotion, Promotion, Sale, SaleItem
from salesbackend.models.enums import CustomerEligibility, CustomerType, ItemCondition, PromotionType, ensure_exhaustive
from salesbackend.models.promotions import DISCOUNT_RULES, ELIGIBILITY_RULES
from salesbackend.models.returns import RESTOCKABLE_BY_CONDITION, SHELF_READY_BY_CONDITION
from salesbackend.services import promotions_service, sales_service
from salesbackend.services.promotions_service import SALE_DISCOUNT_RULES
from salesbackend.time_utils import utcnow
from salesbackend.validation import DataIntegrityError, InvalidStateTransitionError, ValidationError


# =============================================================================
# Rule tables
# =============================================================================

@pytest.mark.parametrize("table, enum_cls", [
    (ELIGIBILITY_RULES, CustomerEligibility),
    (DISCOUNT_RULES, PromotionType),
    (SALE_DISCOUNT_RULES, PromotionType),
    (RESTOCKABLE_BY_CONDITION, ItemCondition),
    (SHELF_READY_BY_CONDITION, ItemCondition),
])
def test_rule_tables_cover_every_member(table, enum_cls):
    assert set(table) == set(enum_cls)


def test_missing_member_fails_loudly():
    with pytest.raises(TypeError):
        ensure_exhaustive({PromotionType.PERCENTAGE: None}, PromotionType, "PARTIAL")


# =============================================================================
# Promotion arithmetic (transient)
# =============================================================================

def _promotion(**fields):
    now = utcnow()
    fields.setdefault("name", "Promo")
    fields.setdefault("start_date", now - timedelta(days=1))
    fields.setdefault("end_date", now + timedelta(days=1))
    return Promotion(**fields)


def test_percentage_discount_with_minimum():
    promo = _promotion(promotion_type=PromotionType.PERCENTAGE, discount_value=Decimal("10"),
                       minimum_order_amount=Decimal("50.00"))
    assert promo.calculate_discount(Decimal("200.00")) == Decimal("20.00")
    assert promo.calculate_discount(Decimal("40.00")) == Decimal("0.00")


def test_fixed_discount_capped_by_order_amount_and_maximum():
    promo = _promotion(promotion_type=PromotionType.FIXED_AMOUNT, discount_value=Decimal("25.00"))
    assert promo.calculate_discount(Decimal("10.00")) == Decimal("10.00")
    capped = _promotion(promotion_type=PromotionType.PERCENTAGE, discount_value=Decimal("50"),
                        maximum_discount_amount=Decimal("30.00"))
    assert capped.calculate_discount(Decimal("200.00")) == Decimal("30.00")


def test_applied_record_for_percentage():
    promo = _promotion(promotion_type=PromotionType.PERCENTAGE, discount_value=Decimal("10"))
    applied = AppliedPromotion.record(promo, Decimal("200.00"), Decimal("20.00"), auto_applied=False)
    assert applied.final_amount == Decimal("180.00")
    assert applied.discount_percentage == Decimal("10.0000")
    assert applied.display_text == "Promo (10.0% off)"


def test_applied_record_for_fixed_amount_derives_percentage():
    promo = _promotion(name="Spring", promotion_type=PromotionType.FIXED_AMOUNT, discount_value=Decimal("25.00"))
    applied = AppliedPromotion.record(promo, Decimal("200.00"), Decimal("25.00"), auto_applied=True)
    assert applied.discount_percentage == Decimal("12.5000")
    assert applied.final_amount == Decimal("175.00")
    assert applied.display_text == "Spring ($25.00 off)"


def test_status_and_usage():
    now = utcnow()
    promo = _promotion(promotion_type=PromotionType.PERCENTAGE, discount_value=10, usage_limit=2)
    assert promo.status_display(now) == "ACTIVE"
    assert promo.remaining_usage == 2
    promo.increment_usage()
    promo.increment_usage()
    assert promo.usage_limit_reached()
    assert not promo.is_currently_active(now)
    assert promo.status_display(now) == "USAGE_LIMIT_REACHED"
    assert promo.usage_percentage == Decimal("100.00")
    promo.decrement_usage()
    promo.decrement_usage()
    promo.decrement_usage()
    assert promo.usage_count == 0

    scheduled = _promotion(promotion_type=PromotionType.PERCENTAGE, discount_value=10,
                           start_date=now + timedelta(days=1), end_date=now + timedelta(days=2))
    assert scheduled.status_display(now) == "SCHEDULED"
    assert _promotion(promotion_type=PromotionType.PERCENTAGE, discount_value=10,
                      is_active=False).status_display(now) == "INACTIVE"


def test_empty_applicability_means_everything():
    promo = _promotion(promotion_type=PromotionType.PERCENTAGE, discount_value=10)
    assert promo.is_applicable_to_product(42)
    assert promo.is_applicable_to_category("anything")
    narrowed = _promotion(promotion_type=PromotionType.PERCENTAGE, discount_value=10,
                          applicable_categories=["hardware"])
    assert narrowed.is_applicable_to_category("hardware")
    assert not narrowed.is_applicable_to_category("electronics")


def test_coupon_codes_match_exactly():
    promo = _promotion(promotion_type=PromotionType.PERCENTAGE, discount_value=10, coupon_code="SAVE10")
    assert promo.matches_code("SAVE10")
    assert not promo.matches_code("save10")


# =============================================================================
# Application onto sales
# =============================================================================

def _sale(customer, product, quantity=2, **kwargs):
    return sales_service.create_sale(
        customer_id=customer.id, items=[{"product_id": product.id, "quantity": quantity}], **kwargs
    )


def test_coupon_at_sale_creation(db_session, customer, product, make_promotion):
    promo = make_promotion(coupon_code="SAVE10", discount_value=10, minimum_order_amount=50)
    sale = _sale(customer, product, coupon_code="SAVE10")
    assert sale.promotion_discount_amount == Decimal("20.00")
    assert sale.total_amount == Decimal("180.00")
    assert sale.coupon_code == "SAVE10"
    assert db.session.get(Promotion, promo.id).usage_count == 1


def test_unknown_coupon_rejects_whole_sale(db_session, customer, product):
    with pytest.raises(ValidationError):
        _sale(customer, product, coupon_code="NOPE")
    assert db.session.query(Sale).count() == 0


def test_fixed_coupon_applied_after_creation(db_session, customer, product, make_promotion):
    make_promotion(name="Spring", promotion_type=PromotionType.FIXED_AMOUNT, discount_value=25, coupon_code="SPRING")
    sale = _sale(customer, product)
    sale = promotions_service.apply_promotion(sale.id, "SPRING")
    applied = sale.applied_promotions[0]
    assert applied.discount_percentage == Decimal("12.5000")
    assert sale.total_amount == Decimal("175.00")


def test_same_promotion_cannot_apply_twice(db_session, customer, product, make_promotion):
    make_promotion(coupon_code="SAVE10", stackable=True)
    sale = _sale(customer, product, coupon_code="SAVE10")
    with pytest.raises(ValidationError):
        promotions_service.apply_promotion(sale.id, "SAVE10")


def test_non_stackable_promotions_do_not_combine(db_session, customer, product, make_promotion):
    make_promotion(coupon_code="A10")
    make_promotion(name="Other", coupon_code="B5", promotion_type=PromotionType.FIXED_AMOUNT, discount_value=5)
    sale = _sale(customer, product, coupon_code="A10")
    with pytest.raises(ValidationError):
        promotions_service.apply_promotion(sale.id, "B5")


def test_stackable_promotions_combine(db_session, customer, product, make_promotion):
    make_promotion(coupon_code="A10", stackable=True)
    make_promotion(name="Other", coupon_code="B5", promotion_type=PromotionType.FIXED_AMOUNT,
                   discount_value=5, stackable=True)
    sale = _sale(customer, product, coupon_code="A10")
    sale = promotions_service.apply_promotion(sale.id, "B5")
    assert sale.promotion_discount_amount == Decimal("25.00")
    assert sale.total_amount == Decimal("175.00")


def test_remove_promotion_restores_total_and_usage(db_session, customer, product, make_promotion):
    promo = make_promotion(coupon_code="SAVE10")
    sale = _sale(customer, product, coupon_code="SAVE10")
    sale = promotions_service.remove_promotion(sale.id, promo.id)
    assert sale.total_amount == Decimal("200.00")
    assert sale.coupon_code is None
    assert db.session.get(Promotion, promo.id).usage_count == 0


def test_promotions_only_change_pending_sales(db_session, customer, product, make_promotion):
    make_promotion(coupon_code="SAVE10")
    sale = _sale(customer, product)
    sales_service.complete_sale(sale.id)
    with pytest.raises(InvalidStateTransitionError):
        promotions_service.apply_promotion(sale.id, "SAVE10")


def test_best_auto_promotion_wins(db_session, customer, product, make_promotion):
    make_promotion(name="Five off", promotion_type=PromotionType.FIXED_AMOUNT, discount_value=5, auto_apply=True)
    best = make_promotion(name="Ten percent", discount_value=10, auto_apply=True)
    sale = _sale(customer, product)
    assert [ap.promotion_id for ap in sale.applied_promotions] == [best.id]
    assert sale.applied_promotions[0].is_auto_applied
    assert sale.total_amount == Decimal("180.00")


def test_auto_promotion_tie_goes_to_lowest_id(db_session, customer, product, make_promotion):
    first = make_promotion(name="First", promotion_type=PromotionType.FIXED_AMOUNT, discount_value=20, auto_apply=True)
    make_promotion(name="Second", discount_value=10, auto_apply=True)
    sale = _sale(customer, product)
    assert [ap.promotion_id for ap in sale.applied_promotions] == [first.id]


def test_auto_promotion_respects_eligibility(db_session, customer, vip_customer, product, make_promotion):
    make_promotion(name="VIP", discount_value=15, auto_apply=True, customer_eligibility=CustomerEligibility.VIP_ONLY)
    regular_sale = _sale(customer, product, quantity=1)
    vip_sale = _sale(vip_customer, product, quantity=1)
    assert regular_sale.applied_promotions == []
    assert vip_sale.total_amount == Decimal("85.00")


def test_auto_promotion_skipped_when_disabled(app, db_session, customer, product, make_promotion):
    make_promotion(discount_value=10, auto_apply=True)
    app.config["AUTO_APPLY_PROMOTIONS"] = False
    try:
        sale = _sale(customer, product)
    finally:
        app.config["AUTO_APPLY_PROMOTIONS"] = True
    assert sale.applied_promotions == []


def test_category_scoped_amount(db_session, customer, product, gadget, make_promotion):
    make_promotion(coupon_code="TECH", discount_value=10, applicable_categories=["electronics"])
    sale = sales_service.create_sale(
        customer_id=customer.id,
        items=[{"product_id": product.id, "quantity": 1}, {"product_id": gadget.id, "quantity": 2}],
        coupon_code="TECH",
    )
    applied = sale.applied_promotions[0]
    assert applied.original_amount == Decimal("100.00")
    assert applied.discount_amount == Decimal("10.00")
    assert sale.total_amount == Decimal("190.00")


def test_free_shipping_discounts_shipping(db_session, customer, product, make_promotion):
    make_promotion(coupon_code="SHIPFREE", promotion_type=PromotionType.FREE_SHIPPING, discount_value=0)
    sale = _sale(customer, product, quantity=1, shipping_cost="12.00", coupon_code="SHIPFREE")
    assert sale.promotion_discount_amount == Decimal("12.00")
    assert sale.total_amount == Decimal("100.00")


def test_buy_x_get_y_never_qualifies(db_session, customer, product, make_promotion):
    make_promotion(coupon_code="BOGO", promotion_type=PromotionType.BUY_X_GET_Y, discount_value=0)
    with pytest.raises(ValidationError):
        _sale(customer, product, coupon_code="BOGO")


def test_deleting_sale_returns_promotion_usage(db_session, customer, product, make_promotion):
    promo = make_promotion(coupon_code="SAVE10")
    sale = _sale(customer, product, coupon_code="SAVE10")
    sales_service.delete_sale(sale.id)
    assert db.session.get(Promotion, promo.id).usage_count == 0


def test_minimum_is_checked_against_whole_order():
    promo = _promotion(promotion_type=PromotionType.PERCENTAGE, discount_value=Decimal("10"),
                       minimum_order_amount=Decimal("100.00"))
    assert promo.calculate_discount(Decimal("250.00"), Decimal("50.00")) == Decimal("5.00")
    assert promo.calculate_discount(Decimal("80.00"), Decimal("50.00")) == Decimal("0.00")


def test_scoped_promotion_with_minimum_met_by_whole_order(db_session, customer, product, gadget, make_promotion):
    make_promotion(name="Tech week", discount_value=10, auto_apply=True,
                   applicable_categories=["electronics"], minimum_order_amount=100)
    sale = sales_service.create_sale(
        customer_id=customer.id,
        items=[{"product_id": product.id, "quantity": 2}, {"product_id": gadget.id, "quantity": 1}],
    )
    assert sale.promotion_discount_amount == Decimal("5.00")
    assert sale.applied_promotions[0].original_amount == Decimal("50.00")
    assert sale.total_amount == Decimal("245.00")


def test_product_or_category_admits_a_line(db_session, customer, product, gadget, make_promotion):
    promo = make_promotion(coupon_code="MIXED", discount_value=10,
                           applicable_products=[product.id], applicable_categories=["electronics"])
    assert promo.applies_to_item(product.id, "hardware")
    assert promo.applies_to_item(gadget.id, "electronics")
    assert not promo.applies_to_item(9999, "garden")

    sale = sales_service.create_sale(
        customer_id=customer.id,
        items=[{"product_id": product.id, "quantity": 2}, {"product_id": gadget.id, "quantity": 1}],
        coupon_code="MIXED",
    )
    assert sale.promotion_discount_amount == Decimal("25.00")


def test_shipping_change_resettles_free_shipping(db_session, customer, product, make_promotion):
    promo = make_promotion(name="Ship free", promotion_type=PromotionType.FREE_SHIPPING,
                           discount_value=0, auto_apply=True)
    sale = _sale(customer, product, quantity=1, shipping_cost="10.00")
    assert sale.promotion_discount_amount == Decimal("10.00")
    assert sale.total_amount == Decimal("100.00")

    sale = sales_service.update_sale_details(sale.id, shipping_cost="4.00")
    assert sale.promotion_discount_amount == Decimal("4.00")
    assert sale.total_amount == Decimal("100.00")
    assert db.session.get(Promotion, promo.id).usage_count == 1

    sale = sales_service.update_sale_details(sale.id, shipping_cost=0)
    assert sale.applied_promotions == []
    assert sale.promotion_discount_amount == Decimal("0.00")
    assert sale.total_amount == Decimal("100.00")
    assert db.session.get(Promotion, promo.id).usage_count == 0


def test_order_discount_change_keeps_coupon(db_session, customer, product, make_promotion):
    promo = make_promotion(coupon_code="SAVE10")
    sale = _sale(customer, product, coupon_code="SAVE10")
    sale = sales_service.update_sale_details(sale.id, discount_amount="5.00")
    assert sale.coupon_code == "SAVE10"
    assert sale.promotion_discount_amount == Decimal("20.00")
    assert sale.total_amount == Decimal("175.00")
    assert db.session.get(Promotion, promo.id).usage_count == 1


def test_eligible_promotions_for_sale(db_session, customer, product, make_promotion):
    sale = _sale(customer, product)
    coupon = make_promotion(name="Coupon", coupon_code="SAVE10")
    auto = make_promotion(name="Auto", promotion_type=PromotionType.FIXED_AMOUNT, discount_value=5, auto_apply=True)
    make_promotion(name="VIP", customer_eligibility=CustomerEligibility.VIP_ONLY)
    make_promotion(name="Big spenders", minimum_order_amount=1000)
    make_promotion(name="Old", start_date=utcnow() - timedelta(days=10), end_date=utcnow() - timedelta(days=5))

    eligible = promotions_service.eligible_promotions_for_sale(sale.id)
    assert [p.id for p in eligible] == [coupon.id, auto.id]

    sales_service.complete_sale(sale.id)
    assert promotions_service.eligible_promotions_for_sale(sale.id) == []


def test_apply_promotion_by_id(db_session, customer, product, make_promotion):
    coded = make_promotion(name="Coded", coupon_code="SECRET")
    open_promo = make_promotion(name="Open", promotion_type=PromotionType.FIXED_AMOUNT, discount_value=15)
    sale = _sale(customer, product)

    with pytest.raises(ValidationError):
        promotions_service.apply_promotion_by_id(sale.id, coded.id)

    sale = promotions_service.apply_promotion_by_id(sale.id, open_promo.id)
    applied = sale.applied_promotions[0]
    assert applied.promotion_id == open_promo.id
    assert not applied.is_auto_applied
    assert sale.total_amount == Decimal("185.00")


# =============================================================================
# CRUD
# =============================================================================

def test_create_promotion_validation(db_session):
    now = utcnow()
    promo = promotions_service.create_promotion(
        name="Launch", promotion_type="PERCENTAGE", discount_value=15,
        start_date=now, end_date=now + timedelta(days=7), coupon_code="LAUNCH",
    )
    assert promo.coupon_code == "LAUNCH"

    with pytest.raises(ValidationError):
        promotions_service.create_promotion(
            name="Dup", promotion_type="PERCENTAGE", discount_value=5,
            start_date=now, end_date=now + timedelta(days=7), coupon_code="LAUNCH",
        )
    with pytest.raises(ValidationError):
        promotions_service.create_promotion(
            name="Backwards", promotion_type="PERCENTAGE", discount_value=5,
            start_date=now, end_date=now - timedelta(days=1),
        )
    with pytest.raises(ValidationError):
        promotions_service.create_promotion(
            name="Too much", promotion_type="PERCENTAGE", discount_value=150,
            start_date=now, end_date=now + timedelta(days=1),
        )


def test_list_active_and_delete(db_session, make_promotion):
    active = make_promotion(name="Live")
    make_promotion(name="Old", start_date=utcnow() - timedelta(days=10), end_date=utcnow() - timedelta(days=5))
    assert [p.id for p in promotions_service.list_active_promotions()] == [active.id]

    with pytest.raises(DataIntegrityError):
        promotions_service.delete_promotion(active.id)
    promotions_service.deactivate_promotion(active.id)
    promotions_service.delete_promotion(active.id)
    assert db.session.get(Promotion, active.id) is None


def test_vip_eligibility_rule():
    from salesbackend.models import Customer

    promo = _promotion(promotion_type=PromotionType.PERCENTAGE, discount_value=10,
                       customer_eligibility=CustomerEligibility.VIP_ONLY)
    assert promo.is_applicable_to_customer(Customer(name="V", customer_type=CustomerType.VIP))
    assert not promo.is_applicable_to_customer(Customer(name="R"))
    assert not promo.is_applicable_to_customer(None)


def test_sale_item_category_comes_from_product(db_session, customer, product):
    sale = _sale(customer, product, quantity=1)
    item = db.session.get(SaleItem, sale.items[0].id)
    assert item.product.category == "hardware"
