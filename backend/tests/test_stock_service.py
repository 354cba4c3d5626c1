import pytest
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from salesbackend.extensions import db
from salesbackend.models import Product, StockMovement
from salesbackend.models.enums import StockMovementReason
from salesbackend.services import stock_service
from salesbackend.services.concurrency import atomic, run_with_retry
from salesbackend.validation import InsufficientStockError, ValidationError


def test_reduce_stock_records_movement(db_session, product):
    with atomic():
        stock_service.reduce_stock(product.id, 3, reference_type="SALE", reference_id=7, event_key="7:1")

    assert db.session.get(Product, product.id).stock_quantity == 97
    movement = db.session.query(StockMovement).one()
    assert movement.quantity_delta == -3
    assert movement.balance_after == 97
    assert movement.reason == StockMovementReason.SALE


def test_reduce_stock_rejects_bad_quantities(db_session, product):
    with pytest.raises(ValidationError):
        stock_service.reduce_stock(product.id, 0)
    with pytest.raises(InsufficientStockError) as excinfo:
        stock_service.reduce_stock(product.id, 101)
    assert excinfo.value.user_message == "Only 100 units of 'Widget' are available, but 101 were requested."


def test_same_event_cannot_move_stock_twice(db_session, product):
    with atomic():
        stock_service.reduce_stock(product.id, 1, event_key="1:1")
    with pytest.raises(IntegrityError):
        with atomic():
            stock_service.reduce_stock(product.id, 1, event_key="1:1")
    assert db.session.get(Product, product.id).stock_quantity == 99


def test_restock_stamps_last_restocked(db_session, product):
    product = stock_service.restock_product(product.id, 25, note="Manual delivery")
    assert product.stock_quantity == 125
    assert product.last_restocked is not None
    with pytest.raises(ValidationError):
        stock_service.restock_product(product.id, 0)


def test_update_stock_sets_absolute_value(db_session, product):
    product = stock_service.update_stock(product.id, 40)
    assert product.stock_quantity == 40
    movement = db.session.query(StockMovement).one()
    assert movement.reason == StockMovementReason.SET
    assert movement.quantity_delta == -60
    with pytest.raises(ValidationError):
        stock_service.update_stock(product.id, -1)


def test_adjust_stock_signed(db_session, product):
    assert stock_service.adjust_stock(product.id, -10, "Shrinkage").stock_quantity == 90
    assert stock_service.adjust_stock(product.id, 5).stock_quantity == 95
    with pytest.raises(InsufficientStockError):
        stock_service.adjust_stock(product.id, -96)
    with pytest.raises(ValidationError):
        stock_service.adjust_stock(product.id, 0)
    assert db.session.get(Product, product.id).stock_quantity == 95


def test_low_stock_and_reorder_queries(db_session, product, gadget):
    stock_service.update_stock(gadget.id, 4)
    stock_service.update_stock(product.id, 8)
    assert [p.sku for p in stock_service.low_stock_products()] == ["GAD-001"]
    assert [p.sku for p in stock_service.products_needing_reorder()] == ["GAD-001", "WID-001"]
    assert stock_service.out_of_stock_products() == []
    assert db.session.get(Product, gadget.id).is_low_stock


def test_stock_history_newest_first(db_session, product):
    stock_service.restock_product(product.id, 5)
    stock_service.adjust_stock(product.id, -2)
    history = stock_service.stock_history(product.id)
    assert [m.quantity_delta for m in history] == [-2, 5]
    assert [m.quantity_delta for m in stock_service.stock_history(product.id, reason="RESTOCK")] == [5]


def test_run_with_retry_retries_version_conflicts(app, db_session):
    calls = []

    def flaky():
        calls.append(1)
        if len(calls) < 2:
            raise StaleDataError("conflict")
        return "ok"

    assert run_with_retry(flaky, backoff_base=0) == "ok"
    assert len(calls) == 2


def test_run_with_retry_does_not_retry_domain_errors(app, db_session):
    calls = []

    def invalid():
        calls.append(1)
        raise ValidationError("bad input")

    with pytest.raises(ValidationError):
        run_with_retry(invalid, backoff_base=0)
    assert len(calls) == 1
