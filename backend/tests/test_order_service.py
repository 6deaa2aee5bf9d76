"""
Storefront order tests.

Verifies:
- Orders are fulfilled from exactly one branch (no splitting)
- Deterministic branch choice when several branches qualify
- Catalog pricing and the mirrored COMPLETED sale
- Cancellation restores stock; cancelled orders are final
"""

from decimal import Decimal
from types import SimpleNamespace

import pytest

from retailpos.models import Order, Product, Sale, StockMovement
from retailpos.services import order_service, return_service, sales_service, stock_service
from retailpos.validation import NotFoundError, ValidationError

from conftest import CASHIER_ID, current_qty


def _row(product_id, branch_id, qty):
    return SimpleNamespace(product_id=product_id, branch_id=branch_id, current_quantity=qty)


def _order(customer, *lines, payment_method=None):
    return order_service.create_order(
        items=[{"product_id": p.id, "quantity": q} for p, q in lines],
        payment_method=payment_method,
        customer_id=customer.id,
    )


# =============================================================================
# BRANCH SELECTION
# =============================================================================


class TestSelectFulfilmentBranch:

    def test_requires_every_product_in_one_branch(self):
        rows = [_row(1, 10, 5), _row(2, 20, 5)]
        with pytest.raises(ValidationError, match="single branch"):
            order_service.select_fulfilment_branch(rows, {1: 1, 2: 1})

    def test_prefers_branch_covering_quantities(self):
        rows = [
            _row(1, 10, 3), _row(2, 10, 1),   # covers, total 4
            _row(1, 20, 2), _row(2, 20, 9),   # short on product 1, total 11
        ]
        assert order_service.select_fulfilment_branch(rows, {1: 3, 2: 1}) == 10

    def test_prefers_larger_total(self):
        rows = [_row(1, 10, 4), _row(1, 20, 9)]
        assert order_service.select_fulfilment_branch(rows, {1: 2}) == 20

    def test_lowest_branch_id_breaks_ties(self):
        rows = [_row(1, 30, 5), _row(1, 20, 5)]
        assert order_service.select_fulfilment_branch(rows, {1: 1}) == 20

    def test_empty_rows_ignored(self):
        rows = [_row(1, 10, 0), _row(1, 20, 1)]
        assert order_service.select_fulfilment_branch(rows, {1: 1}) == 20


# =============================================================================
# ORDER CREATION
# =============================================================================


class TestCreateOrder:

    def test_creates_order_and_mirrored_sale(self, db_session, stocked, tea, rice, customer):
        result = _order(customer, (tea, 2), (rice, 1), payment_method="MOBILE_MONEY")
        order, sale = result["order"], result["sale"]

        assert order.status == "PENDING"
        assert order.branch_id == stocked.id
        assert order.total_amount == Decimal("18.25")
        assert order.order_number.startswith("ORD-")
        assert [item.price for item in order.items] == [Decimal("3.50"), Decimal("11.25")]

        assert sale.order_id == order.id
        assert sale.status == "COMPLETED"
        assert sale.payment_status == "PAID"
        assert sale.payment_method == "MOBILE_MONEY"
        assert sale.total_amount == Decimal("18.25")

        assert current_qty(tea.id, stocked.id) == 8
        assert current_qty(rice.id, stocked.id) == 4

        movements = db_session.query(StockMovement).filter_by(reference_type="order").all()
        assert len(movements) == 2
        assert all(m.reference_id == str(order.id) for m in movements)

    def test_default_payment_method(self, db_session, stocked, tea, customer):
        order = _order(customer, (tea, 1))["order"]
        assert order.payment_method == "CASH"

    def test_items_split_across_branches(self, db_session, branch, second_branch, tea, rice, customer):
        stock_service.create_stock(product_id=tea.id, branch_id=branch.id, quantity=5, actor_id=CASHIER_ID)
        stock_service.create_stock(product_id=rice.id, branch_id=second_branch.id, quantity=5, actor_id=CASHIER_ID)

        with pytest.raises(ValidationError, match="single branch"):
            _order(customer, (tea, 1), (rice, 1))

        assert current_qty(tea.id, branch.id) == 5
        assert current_qty(rice.id, second_branch.id) == 5
        assert db_session.query(Order).count() == 0

    def test_picks_branch_with_more_stock(self, db_session, branch, second_branch, tea, customer):
        stock_service.create_stock(product_id=tea.id, branch_id=branch.id, quantity=5, actor_id=CASHIER_ID)
        stock_service.create_stock(product_id=tea.id, branch_id=second_branch.id, quantity=9, actor_id=CASHIER_ID)

        order = _order(customer, (tea, 2))["order"]

        assert order.branch_id == second_branch.id
        assert current_qty(tea.id, branch.id) == 5
        assert current_qty(tea.id, second_branch.id) == 7

    def test_insufficient_at_best_branch(self, db_session, stocked, rice, customer):
        with pytest.raises(ValidationError, match="Insufficient stock"):
            _order(customer, (rice, 6))
        assert current_qty(rice.id, stocked.id) == 5

    def test_inactive_product(self, db_session, stocked, tea, customer):
        retired = Product(sku="OLD-1", name="Retired", is_active=False)
        db_session.add(retired)
        db_session.commit()

        with pytest.raises(ValidationError, match="1 of 2 products not found or inactive"):
            _order(customer, (tea, 1), (retired, 1))

    def test_unknown_customer(self, db_session, stocked, tea):
        with pytest.raises(NotFoundError, match="Customer not found"):
            _order(SimpleNamespace(id=999999), (tea, 1))


# =============================================================================
# CANCELLATION AND STATUS
# =============================================================================


class TestCancelOrder:

    def test_cancel_restores_stock(self, db_session, stocked, tea, customer):
        order = _order(customer, (tea, 4))["order"]

        cancelled = order_service.cancel_order(order.id)

        assert cancelled.status == "CANCELLED"
        assert current_qty(tea.id, stocked.id) == 10
        assert [s.status for s in cancelled.sales] == ["CANCELLED"]

        restored = db_session.query(StockMovement).filter_by(reference_type="order_cancel").one()
        assert restored.movement_type == "RETURN"
        assert (restored.previous_qty, restored.new_qty) == (6, 10)

    def test_cancel_twice(self, db_session, stocked, tea, customer):
        order = _order(customer, (tea, 1))["order"]
        order_service.cancel_order(order.id)

        with pytest.raises(ValidationError, match="Already cancelled"):
            order_service.cancel_order(order.id)
        assert current_qty(tea.id, stocked.id) == 10

    def test_cannot_cancel_completed(self, db_session, stocked, tea, customer):
        order = _order(customer, (tea, 1))["order"]
        order_service.update_order_status(order.id, "COMPLETED")

        with pytest.raises(ValidationError, match="Cannot cancel completed"):
            order_service.cancel_order(order.id)

    def test_cannot_cancel_after_refund(self, db_session, stocked, tea, customer):
        result = _order(customer, (tea, 2))
        sales_service.refund_sale(result["sale"].id, CASHIER_ID)

        with pytest.raises(ValidationError):
            order_service.cancel_order(result["order"].id)
        assert current_qty(tea.id, stocked.id) == 10

    def test_cannot_cancel_after_return(self, db_session, stocked, tea, customer):
        result = _order(customer, (tea, 2))
        return_service.create_exchange_or_return_sale(
            original_sale_id=result["sale"].id,
            branch_id=stocked.id,
            returned_items=[{"product_id": tea.id, "quantity": 1}],
            actor_id=CASHIER_ID,
        )

        with pytest.raises(ValidationError):
            order_service.cancel_order(result["order"].id)
        assert current_qty(tea.id, stocked.id) == 9

    def test_cannot_return_after_cancel(self, db_session, stocked, tea, customer):
        result = _order(customer, (tea, 2))
        order_service.cancel_order(result["order"].id)

        with pytest.raises(ValidationError, match="status CANCELLED"):
            return_service.create_exchange_or_return_sale(
                original_sale_id=result["sale"].id,
                branch_id=stocked.id,
                returned_items=[{"product_id": tea.id, "quantity": 2}],
                actor_id=CASHIER_ID,
            )
        assert current_qty(tea.id, stocked.id) == 10
        assert return_service.get_settlements(result["sale"].id) == []

    def test_missing_order(self, db_session):
        with pytest.raises(NotFoundError):
            order_service.cancel_order(999999)


class TestUpdateOrderStatus:

    def test_moves_forward(self, db_session, stocked, tea, customer):
        order = _order(customer, (tea, 1))["order"]

        assert order_service.update_order_status(order.id, "PROCESSING").status == "PROCESSING"
        assert order_service.update_order_status(order.id, "COMPLETED").status == "COMPLETED"

    def test_cancel_through_status_restores_stock(self, db_session, stocked, tea, customer):
        order = _order(customer, (tea, 3))["order"]

        updated = order_service.update_order_status(order.id, "CANCELLED", actor_id=CASHIER_ID)

        assert updated.status == "CANCELLED"
        assert current_qty(tea.id, stocked.id) == 10

    def test_cancelled_is_final(self, db_session, stocked, tea, customer):
        order = _order(customer, (tea, 1))["order"]
        order_service.cancel_order(order.id)

        with pytest.raises(ValidationError, match="cancelled order"):
            order_service.update_order_status(order.id, "PROCESSING")

    def test_invalid_status(self, db_session, stocked, tea, customer):
        order = _order(customer, (tea, 1))["order"]
        with pytest.raises(ValidationError):
            order_service.update_order_status(order.id, "SHIPPED")


# =============================================================================
# QUERIES
# =============================================================================


class TestCustomerOrders:

    def test_lists_own_orders(self, db_session, stocked, tea, customer, other_customer):
        first = _order(customer, (tea, 1))["order"]
        second = _order(customer, (tea, 1))["order"]
        _order(other_customer, (tea, 1))
        order_service.cancel_order(first.id)

        orders = order_service.get_customer_orders(customer.id)
        assert [o.id for o in orders] == [second.id, first.id]

        cancelled = order_service.get_customer_orders(customer.id, status="CANCELLED")
        assert [o.id for o in cancelled] == [first.id]

    def test_other_customers_order_hidden(self, db_session, stocked, tea, customer, other_customer):
        order = _order(other_customer, (tea, 1))["order"]

        with pytest.raises(NotFoundError):
            order_service.get_customer_order(customer.id, order.id)
        assert order_service.get_customer_order(other_customer.id, order.id).id == order.id

    def test_mirrored_sale_linked(self, db_session, stocked, tea, customer):
        order = _order(customer, (tea, 1))["order"]

        sale = db_session.query(Sale).filter_by(order_id=order.id).one()
        assert sale.customer_id == customer.id
