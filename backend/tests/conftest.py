"""
Pytest fixtures for retailpos backend tests.

Provides test database setup, catalog/branch fixtures, and test client.
"""

from decimal import Decimal

import pytest
from retailpos import create_app
from retailpos.extensions import db
from retailpos.models import Customer, Product
from retailpos.services import branch_service, stock_service


CASHIER_ID = 7


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite://',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
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


@pytest.fixture(scope='function')
def branch(db_session):
    """First branch (code 1000)."""
    return branch_service.create_branch(name="Main Street", address="1 Main Street")


@pytest.fixture(scope='function')
def second_branch(db_session, branch):
    """Second branch (code 1001)."""
    return branch_service.create_branch(name="Market Square", address="14 Market Square")


@pytest.fixture(scope='function')
def tea(db_session):
    product = Product(
        sku="TEA-250",
        name="Green Tea 250g",
        purchase_rate=Decimal("2.10"),
        sales_rate_exc_dis_and_tax=Decimal("3.50"),
        sales_rate_inc_dis_and_tax=Decimal("3.50"),
    )
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def rice(db_session):
    product = Product(
        sku="RICE-5K",
        name="Basmati Rice 5kg",
        purchase_rate=Decimal("7.80"),
        sales_rate_exc_dis_and_tax=Decimal("11.25"),
        sales_rate_inc_dis_and_tax=Decimal("11.25"),
    )
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def customer(db_session):
    customer = Customer(name="Amina Yusuf", phone="0712000111", email="amina@example.com")
    db_session.add(customer)
    db_session.commit()
    return customer


@pytest.fixture(scope='function')
def other_customer(db_session):
    customer = Customer(name="Brian Otieno", phone="0712000222")
    db_session.add(customer)
    db_session.commit()
    return customer


@pytest.fixture(scope='function')
def stocked(db_session, branch, tea, rice):
    """10 tea and 5 rice at the first branch."""
    stock_service.create_stock(product_id=tea.id, branch_id=branch.id, quantity=10, actor_id=CASHIER_ID)
    stock_service.create_stock(product_id=rice.id, branch_id=branch.id, quantity=5, actor_id=CASHIER_ID)
    return branch


def current_qty(product_id: int, branch_id: int) -> int:
    """Committed quantity of a stock row, bypassing the identity map."""
    db.session.expire_all()
    stock = stock_service.get_stock(product_id, branch_id)
    return stock.current_quantity if stock is not None else None


@pytest.fixture(scope='function')
def staff_headers():
    """Headers of an authenticated cashier."""
    return {'X-User-Id': str(CASHIER_ID)}


@pytest.fixture(scope='function')
def customer_headers(customer):
    """Headers of the authenticated storefront customer."""
    return {'X-Customer-Id': str(customer.id)}
