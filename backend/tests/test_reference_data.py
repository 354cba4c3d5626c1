from decimal import Decimal

import pytest

from salesbackend.models import Customer, Product, Supplier
from salesbackend.extensions import db
from salesbackend.services import (
    customer_service,
    products_service,
    purchase_order_service,
    sales_service,
    supplier_service,
)
from salesbackend.validation import DataIntegrityError, InvalidStateTransitionError, NotFoundError, ValidationError


def test_customer_crud(db_session):
    customer = customer_service.create_customer(name="  Grace  ", email="grace@example.com", customer_type="VIP")
    assert customer.name == "Grace"
    assert customer.is_new_customer

    with pytest.raises(ValidationError):
        customer_service.create_customer(name="Other", email="grace@example.com")

    customer = customer_service.update_customer(customer.id, phone="555-0100")
    assert customer.phone == "555-0100"
    with pytest.raises(ValidationError):
        customer_service.update_customer(customer.id, loyalty_points=1000)

    customer_service.delete_customer(customer.id)
    assert db.session.get(Customer, customer.id) is None
    with pytest.raises(NotFoundError):
        customer_service.get_customer(customer.id)


def test_customer_with_sales_cannot_be_deleted(db_session, customer, product):
    sales_service.create_sale(customer_id=customer.id, items=[{"product_id": product.id, "quantity": 1}])
    with pytest.raises(DataIntegrityError) as excinfo:
        customer_service.delete_customer(customer.id)
    assert excinfo.value.dependent_resource == "sales"


def test_product_crud(db_session, app):
    product = products_service.create_product(sku="NEW-1", name="New thing", unit_price="9.99")
    assert product.min_stock_level == app.config["DEFAULT_MIN_STOCK_LEVEL"]
    assert product.reorder_point == app.config["DEFAULT_REORDER_POINT"]
    assert product.unit_price == Decimal("9.99")

    with pytest.raises(ValidationError):
        products_service.create_product(sku="NEW-1", name="Duplicate", unit_price=1)
    with pytest.raises(ValidationError):
        products_service.create_product(sku="NEW-2", name="Free", unit_price=0)
    with pytest.raises(ValidationError):
        products_service.update_product(product.id, min_stock_level=50, max_stock_level=10)
    with pytest.raises(ValidationError):
        products_service.update_product(product.id, stock_quantity=50)

    product = products_service.update_product(product.id, unit_price="12.00")
    assert product.margin == Decimal("12.00")

    products_service.delete_product(product.id)
    assert db.session.get(Product, product.id) is None


def test_product_with_sale_history_cannot_be_deleted(db_session, customer, product):
    sales_service.create_sale(customer_id=customer.id, items=[{"product_id": product.id, "quantity": 1}])
    with pytest.raises(DataIntegrityError):
        products_service.delete_product(product.id)


def test_supplier_crud(db_session, product):
    supplier = supplier_service.create_supplier(name="Globex", payment_terms="NET_15")
    assert supplier.is_active
    with pytest.raises(ValidationError):
        supplier_service.create_supplier(name="Globex")

    supplier = supplier_service.update_supplier(supplier.id, status="SUSPENDED")
    assert not supplier.is_active

    supplier_service.update_supplier(supplier.id, status="ACTIVE")
    purchase_order_service.create_purchase_order(
        supplier_id=supplier.id, items=[{"product_id": product.id, "quantity": 1, "unit_cost": "5.00"}],
    )
    with pytest.raises(DataIntegrityError):
        supplier_service.delete_supplier(supplier.id)


def test_supplier_without_orders_can_be_deleted(db_session, supplier):
    supplier_service.delete_supplier(supplier.id)
    assert db.session.get(Supplier, supplier.id) is None


def test_completed_sale_cannot_be_deleted(db_session, customer, product):
    sale = sales_service.create_sale(customer_id=customer.id, items=[{"product_id": product.id, "quantity": 1}])
    sales_service.complete_sale(sale.id)
    with pytest.raises(InvalidStateTransitionError):
        sales_service.delete_sale(sale.id)


def test_pending_sale_delete_restores_stock(db_session, customer, product):
    sale = sales_service.create_sale(customer_id=customer.id, items=[{"product_id": product.id, "quantity": 3}])
    assert db.session.get(Product, product.id).stock_quantity == 97
    sales_service.delete_sale(sale.id)
    assert db.session.get(Product, product.id).stock_quantity == 100
