"""
Pytest fixtures for salesbackend tests.

Provides the application, a clean database per test, and the reference
data (customers, products, suppliers, promotions) most scenarios start from.
"""

from datetime import timedelta

import pytest

from salesbackend import create_app
from salesbackend.config import TestConfig
from salesbackend.extensions import db
from salesbackend.models import Customer, Product, Promotion, Supplier
from salesbackend.models.enums import CustomerType, PromotionType
from salesbackend.time_utils import utcnow


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app(TestConfig)

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def cli_runner(app):
    return app.test_cli_runner()


@pytest.fixture(scope='function')
def customer(db_session):
    """Regular customer with no purchase history."""
    customer = Customer(name="Ada Buyer", email="ada@example.com", customer_type=CustomerType.REGULAR)
    db_session.add(customer)
    db_session.commit()
    return customer


@pytest.fixture(scope='function')
def vip_customer(db_session):
    customer = Customer(name="Vera Important", email="vera@example.com", customer_type=CustomerType.VIP)
    db_session.add(customer)
    db_session.commit()
    return customer


@pytest.fixture(scope='function')
def product(db_session):
    """Widget priced 100.00, 100 units on hand."""
    product = Product(
        sku="WID-001",
        name="Widget",
        category="hardware",
        unit_price=100,
        cost_price=60,
        stock_quantity=100,
        min_stock_level=5,
        reorder_point=10,
    )
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def gadget(db_session):
    """Gadget priced 50.00, 20 units on hand."""
    product = Product(
        sku="GAD-001",
        name="Gadget",
        category="electronics",
        unit_price=50,
        cost_price=30,
        stock_quantity=20,
        min_stock_level=5,
        reorder_point=10,
    )
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def supplier(db_session):
    supplier = Supplier(name="Acme Wholesale", payment_terms="NET_30", delivery_terms="FOB_DESTINATION")
    db_session.add(supplier)
    db_session.commit()
    return supplier


@pytest.fixture(scope='function')
def make_promotion(db_session):
    """Factory for promotions that are active now unless told otherwise."""
    def _make(**fields):
        now = utcnow()
        fields.setdefault("name", "Promo")
        fields.setdefault("promotion_type", PromotionType.PERCENTAGE)
        fields.setdefault("discount_value", 10)
        fields.setdefault("start_date", now - timedelta(days=1))
        fields.setdefault("end_date", now + timedelta(days=30))
        promotion = Promotion(**fields)
        db_session.add(promotion)
        db_session.commit()
        return promotion

    return _make
