from datetime import timedelta
from decimal import Decimal

import pytest

from salesbackend.extensions import db
from salesbackend.models import Product, Return, SaleItem, StockMovement
from salesbackend.models.enums import ItemCondition, ReturnReason, ReturnStatus, StockMovementReason
from salesbackend.services import return_service, sales_service
from salesbackend.time_utils import utcnow
from salesbackend.validation import InvalidStateTransitionError, ValidationError


@pytest.fixture
def completed_sale(db_session, customer, product, gadget):
    sale = sales_service.create_sale(
        customer_id=customer.id,
        items=[
            {"product_id": product.id, "quantity": 2},
            {"product_id": gadget.id, "quantity": 1},
        ],
    )
    return sales_service.complete_sale(sale.id)


def _widget_line(sale):
    return next(item for item in sale.items if item.product.sku == "WID-001")


def _stock(product_id):
    return db.session.get(Product, product_id).stock_quantity


def _create_return(sale, quantity=1, condition=ItemCondition.NEW, fee=None, **kwargs):
    line = {"sale_item_id": _widget_line(sale).id, "quantity": quantity, "item_condition": condition}
    if fee is not None:
        line["restocking_fee"] = fee
    return return_service.create_return(
        sale_id=sale.id, items=[line], reason=ReturnReason.DEFECTIVE, **kwargs
    )


def test_create_return_computes_refund(completed_sale):
    return_doc = _create_return(completed_sale, quantity=1)
    assert return_doc.status == ReturnStatus.PENDING
    assert return_doc.return_number.startswith("RET-")
    assert return_doc.customer_id == completed_sale.customer_id
    assert return_doc.total_refund_amount == Decimal("100.00")


def test_restocking_fee_larger_than_price_clamps_refund(completed_sale):
    return_doc = _create_return(completed_sale, quantity=1, fee="150.00")
    assert return_doc.items[0].refund_amount == Decimal("0.00")
    assert return_doc.total_refund_amount == Decimal("0.00")


def test_return_requires_completed_sale(db_session, customer, product):
    sale = sales_service.create_sale(customer_id=customer.id, items=[{"product_id": product.id, "quantity": 1}])
    with pytest.raises(ValidationError):
        return_service.create_return(
            sale_id=sale.id,
            items=[{"sale_item_id": sale.items[0].id, "quantity": 1}],
            reason=ReturnReason.DEFECTIVE,
        )


def test_return_outside_policy_window(completed_sale):
    later = utcnow() + timedelta(days=31)
    with pytest.raises(ValidationError):
        _create_return(completed_sale, now=later)


def test_return_quantity_bounded_by_sold(completed_sale):
    with pytest.raises(ValidationError):
        _create_return(completed_sale, quantity=3)


def test_split_lines_for_same_item_are_summed(completed_sale):
    item_id = _widget_line(completed_sale).id
    with pytest.raises(ValidationError):
        return_service.create_return(
            sale_id=completed_sale.id,
            items=[
                {"sale_item_id": item_id, "quantity": 2},
                {"sale_item_id": item_id, "quantity": 1},
            ],
            reason=ReturnReason.WRONG_ITEM,
        )


def test_item_from_another_sale_rejected(completed_sale, customer, product):
    other = sales_service.create_sale(customer_id=customer.id, items=[{"product_id": product.id, "quantity": 1}])
    with pytest.raises(ValidationError):
        return_service.create_return(
            sale_id=completed_sale.id,
            items=[{"sale_item_id": other.items[0].id, "quantity": 1}],
            reason=ReturnReason.OTHER,
        )


def test_refund_restocks_shelf_ready_items(completed_sale, product):
    before = _stock(product.id)
    return_doc = _create_return(completed_sale, quantity=2, condition=ItemCondition.LIKE_NEW)
    return_service.approve_return(return_doc.id, approved_by="manager")
    return_doc = return_service.process_refund(return_doc.id, refund_reference="RF-1")

    assert return_doc.status == ReturnStatus.REFUNDED
    assert return_doc.refund_date is not None
    assert return_doc.items[0].is_processed
    assert return_doc.items[0].restocked
    assert _stock(product.id) == before + 2

    sale_item = db.session.get(SaleItem, _widget_line(completed_sale).id)
    assert sale_item.returned_quantity == 2
    assert sale_item.is_returned

    movement = db.session.query(StockMovement).filter_by(reason=StockMovementReason.RETURN_RESTOCK).one()
    assert movement.quantity_delta == 2


def test_fair_items_are_not_restocked(completed_sale, product):
    before = _stock(product.id)
    return_doc = _create_return(completed_sale, quantity=1, condition=ItemCondition.FAIR)
    return_service.approve_return(return_doc.id)
    return_doc = return_service.process_refund(return_doc.id)

    assert return_doc.items[0].is_processed
    assert not return_doc.items[0].restocked
    assert _stock(product.id) == before


def test_damaged_items_are_not_restocked(completed_sale, product):
    before = _stock(product.id)
    return_doc = _create_return(completed_sale, quantity=1, condition=ItemCondition.DAMAGED)
    assert return_doc.items[0].disposal_reason == "Item condition: DAMAGED"
    return_service.approve_return(return_doc.id)
    return_service.process_refund(return_doc.id)
    assert _stock(product.id) == before


def test_refund_requires_approval(completed_sale):
    return_doc = _create_return(completed_sale)
    with pytest.raises(InvalidStateTransitionError):
        return_service.process_refund(return_doc.id)


def test_second_return_cannot_exceed_remaining(completed_sale):
    first = _create_return(completed_sale, quantity=2)
    second = _create_return(completed_sale, quantity=1)

    return_service.approve_return(first.id)
    return_service.process_refund(first.id)

    return_service.approve_return(second.id)
    with pytest.raises(ValidationError):
        return_service.process_refund(second.id)

    assert return_service.get_return(second.id).status == ReturnStatus.APPROVED
    assert db.session.get(SaleItem, _widget_line(completed_sale).id).returned_quantity == 2


def test_reject_appends_reason(completed_sale):
    return_doc = _create_return(completed_sale, notes="Customer called")
    return_doc = return_service.reject_return(return_doc.id, "Outside of warranty")
    assert return_doc.status == ReturnStatus.REJECTED
    assert return_doc.notes == "Customer called\nRejection reason: Outside of warranty"


def test_exchange_processes_items(completed_sale, product):
    before = _stock(product.id)
    return_doc = _create_return(completed_sale, quantity=1, condition=ItemCondition.GOOD)
    return_service.approve_return(return_doc.id)
    return_doc = return_service.mark_exchanged(return_doc.id)
    assert return_doc.status == ReturnStatus.EXCHANGED
    assert return_doc.refund_date is None
    assert _stock(product.id) == before + 1


def test_only_pending_returns_are_editable(completed_sale):
    return_doc = _create_return(completed_sale, quantity=1)
    updated = return_service.update_return(
        return_doc.id,
        items=[{"sale_item_id": _widget_line(completed_sale).id, "quantity": 2}],
    )
    assert updated.total_refund_amount == Decimal("200.00")

    return_service.approve_return(return_doc.id)
    with pytest.raises(InvalidStateTransitionError):
        return_service.update_return(return_doc.id, notes="late edit")
    with pytest.raises(InvalidStateTransitionError):
        return_service.delete_return(return_doc.id)


def test_delete_and_cancel_pending_return(completed_sale):
    doomed = _create_return(completed_sale)
    return_service.delete_return(doomed.id)
    assert db.session.get(Return, doomed.id) is None

    cancelled = return_service.cancel_return(_create_return(completed_sale).id)
    assert cancelled.status == ReturnStatus.CANCELLED
    with pytest.raises(InvalidStateTransitionError):
        return_service.approve_return(cancelled.id)
