"""
Concurrency tests against a file-backed SQLite database.

Verifies:
- Concurrent sales of the same product never oversell
- Every committed sale has its own sale number
- The movement chain stays consistent under contention
- Writes go through the default session in a fresh app context
"""

import threading
from decimal import Decimal

import pytest
from sqlalchemy.orm import Session

from retailpos import create_app
from retailpos.extensions import db
from retailpos.models import Branch, Customer, Product, Sale, StockMovement
from retailpos.services import branch_service, order_service, sales_service, stock_service
from retailpos.services.concurrency import unit_of_work
from retailpos.validation import ValidationError


@pytest.fixture
def file_app(tmp_path):
    db_path = tmp_path / "concurrency.db"
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': f"sqlite:///{db_path}",
        'SQLALCHEMY_ENGINE_OPTIONS': {"connect_args": {"timeout": 10}},
    })
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()
        db.engine.dispose()


@pytest.fixture
def seeded(file_app):
    branch = branch_service.create_branch(name="Concurrency Branch")
    product = Product(sku="CONCUR-1", name="Concurrent Product", sales_rate_inc_dis_and_tax=Decimal("4.00"))
    customer = Customer(name="Concurrent Customer")
    db.session.add_all([product, customer])
    db.session.commit()
    stock_service.create_stock(product_id=product.id, branch_id=branch.id, quantity=10, actor_id=1)
    return {"branch_id": branch.id, "product_id": product.id, "customer_id": customer.id}


def _run_workers(app, targets):
    results = []
    errors = []
    lock = threading.Lock()

    def worker(target):
        with app.app_context():
            try:
                value = target()
                with lock:
                    results.append(value)
            except ValidationError as exc:
                with lock:
                    errors.append(exc)
            finally:
                db.session.remove()

    threads = [threading.Thread(target=worker, args=(target,)) for target in targets]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return results, errors


class TestConcurrentSales:

    def test_no_oversell(self, file_app, seeded):
        def sell():
            sale = sales_service.create_sale(
                branch_id=seeded["branch_id"],
                payment_method="CASH",
                items=[{"product_id": seeded["product_id"], "quantity": 2, "price": Decimal("4.00")}],
                actor_id=1,
            )
            return sale.sale_number

        numbers, errors = _run_workers(file_app, [sell] * 8)

        assert len(numbers) == 5
        assert len(errors) == 3
        assert all("Insufficient stock" in str(e) for e in errors)
        assert len(set(numbers)) == len(numbers)

        db.session.expire_all()
        stock = stock_service.get_stock(seeded["product_id"], seeded["branch_id"])
        assert stock.current_quantity == 0
        assert db.session.query(Sale).count() == 5

    def test_movement_chain_under_contention(self, file_app, seeded):
        def sell():
            sales_service.create_sale(
                branch_id=seeded["branch_id"],
                payment_method="CARD",
                items=[{"product_id": seeded["product_id"], "quantity": 1, "price": Decimal("4.00")}],
                actor_id=1,
            )

        def order():
            order_service.create_order(
                items=[{"product_id": seeded["product_id"], "quantity": 1}],
                customer_id=seeded["customer_id"],
            )

        results, errors = _run_workers(file_app, [sell, order] * 6)
        assert len(results) == 10
        assert len(errors) == 2

        db.session.expire_all()
        movements = (
            db.session.query(StockMovement)
            .filter_by(product_id=seeded["product_id"])
            .order_by(StockMovement.id.asc())
            .all()
        )
        for earlier, later in zip(movements, movements[1:]):
            assert later.previous_qty == earlier.new_qty
        stock = stock_service.get_stock(seeded["product_id"], seeded["branch_id"])
        assert stock.current_quantity == movements[-1].new_qty == 0
        assert len(movements) == 11


class TestDefaultSession:

    def test_write_in_fresh_app_context(self, file_app):
        with file_app.app_context():
            with unit_of_work() as session:
                assert isinstance(session, Session)
            branch = branch_service.create_branch(name="Fresh Context")
            branch_id = branch.id
            db.session.remove()

        stored = db.session.get(Branch, branch_id)
        assert stored is not None
        assert stored.code == "1000"
