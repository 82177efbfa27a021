"""
Pytest fixtures for shopledger backend tests.

Provides test database setup, domain fixtures (products, stock, customers)
and a test client with actor / shop headers.
"""

import pytest
from sqlalchemy.pool import StaticPool

from shopledger import create_app
from shopledger.extensions import db
from shopledger.models import Product, Customer
from shopledger.services import inventory_service


SHOP_ID = 1
OTHER_SHOP_ID = 2


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        # One shared connection so every session sees the same in-memory DB
        'SQLALCHEMY_ENGINE_OPTIONS': {
            'poolclass': StaticPool,
            'connect_args': {'check_same_thread': False},
        },
        'TX_RETRY_BACKOFF': 0,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


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


def make_product(session, *, sku, price_cents=10000, tax_rate_bps=1000, shop_id=SHOP_ID, is_active=True, stock=0):
    product = Product(
        shop_id=shop_id,
        sku=sku,
        name=f"Product {sku}",
        selling_price_cents=price_cents,
        tax_rate_bps=tax_rate_bps,
        is_taxable=True,
        is_active=is_active,
    )
    session.add(product)
    session.commit()
    if stock:
        inventory_service.receive_stock(session, product_id=product.id, quantity=stock, note="Opening stock", actor_id=None)
    return product


@pytest.fixture(scope='function')
def product(db_session):
    """Price 100.00, 10% tax, no stock record yet."""
    return make_product(db_session, sku="WIDGET-1")


@pytest.fixture(scope='function')
def stocked_product(db_session):
    """Price 100.00, 10% tax, 10 units on hand."""
    return make_product(db_session, sku="WIDGET-10", stock=10)


@pytest.fixture(scope='function')
def untaxed_product(db_session):
    """Price 100.00, no tax, 10 units on hand."""
    return make_product(db_session, sku="PLAIN-1", tax_rate_bps=0, stock=10)


@pytest.fixture(scope='function')
def customer(db_session):
    customer = Customer(shop_id=SHOP_ID, first_name="Ada", last_name="Lovelace", email="ada@example.com")
    db_session.add(customer)
    db_session.commit()
    return customer


def actor_headers(role="cashier", actor_id=10, shop_id=SHOP_ID):
    headers = {"X-Actor-Id": str(actor_id), "X-Shop-Id": str(shop_id)}
    if role:
        headers["X-Actor-Role"] = role
    return headers


@pytest.fixture(scope='function')
def cashier_headers():
    return actor_headers("cashier")


@pytest.fixture(scope='function')
def manager_headers():
    return actor_headers("manager", actor_id=20)
