"""
Return / exchange reconciliation tests.

Verifies:
- Returns are priced at the original unit price and restock the branch
- Exchanges issue new goods at the submitted price
- Status: any exchange -> EXCHANGED, returns only -> REFUNDED
- Cumulative returns can never exceed the originally sold quantity
"""

from decimal import Decimal

import pytest

from retailpos.models import Sale, StockMovement
from retailpos.services import return_service, sales_service
from retailpos.validation import ValidationError

from conftest import CASHIER_ID, current_qty


@pytest.fixture
def original_sale(db_session, stocked, tea):
    """4 tea sold at 10.00 each; tea stock drops to 6."""
    return sales_service.create_sale(
        branch_id=stocked.id,
        payment_method="CARD",
        items=[{"product_id": tea.id, "quantity": 4, "price": Decimal("10.00")}],
        actor_id=CASHIER_ID,
    )


def _settle(sale, branch, returned=(), exchanged=()):
    return return_service.create_exchange_or_return_sale(
        original_sale_id=sale.id,
        branch_id=branch.id,
        returned_items=[{"product_id": p.id, "quantity": q} for p, q in returned],
        exchanged_items=[
            {"product_id": p.id, "quantity": q, "price": Decimal(price)}
            for p, q, price in exchanged
        ],
        actor_id=CASHIER_ID,
    )


# =============================================================================
# STATUS RULE
# =============================================================================


class TestSettlementStatus:

    def test_exchange_wins(self):
        assert return_service.settlement_status(True, True) == "EXCHANGED"
        assert return_service.settlement_status(False, True) == "EXCHANGED"

    def test_return_only(self):
        assert return_service.settlement_status(True, False) == "REFUNDED"

    def test_nothing_to_settle(self):
        with pytest.raises(ValidationError):
            return_service.settlement_status(False, False)


# =============================================================================
# RETURNS
# =============================================================================


class TestReturns:

    def test_partial_return(self, db_session, stocked, tea, original_sale):
        settlement = _settle(original_sale, stocked, returned=[(tea, 2)])

        assert settlement.status == "REFUNDED"
        assert settlement.total_amount == Decimal("-20.00")
        assert settlement.original_sale_id == original_sale.id
        assert current_qty(tea.id, stocked.id) == 8

        (line,) = settlement.items
        assert line.item_type == "RETURN"
        assert line.quantity == -2
        assert line.unit_price == Decimal("10.00")
        assert line.ref_sale_item_id == original_sale.items[0].id

        movement = (
            db_session.query(StockMovement)
            .filter_by(reference_type="return", reference_id=str(original_sale.id))
            .one()
        )
        assert movement.movement_type == "RETURN"
        assert (movement.previous_qty, movement.new_qty) == (6, 8)

    def test_original_sale_untouched(self, db_session, stocked, tea, original_sale):
        _settle(original_sale, stocked, returned=[(tea, 1)])

        db_session.expire_all()
        assert db_session.get(Sale, original_sale.id).status == "COMPLETED"

    def test_return_more_than_sold(self, db_session, stocked, tea, original_sale):
        with pytest.raises(ValidationError, match="exceeds original"):
            _settle(original_sale, stocked, returned=[(tea, 5)])

        assert current_qty(tea.id, stocked.id) == 6

    def test_cumulative_returns_capped(self, db_session, stocked, tea, original_sale):
        _settle(original_sale, stocked, returned=[(tea, 3)])

        with pytest.raises(ValidationError, match="exceeds original"):
            _settle(original_sale, stocked, returned=[(tea, 2)])

        _settle(original_sale, stocked, returned=[(tea, 1)])
        assert current_qty(tea.id, stocked.id) == 10

    def test_product_on_several_lines(self, db_session, stocked, tea):
        sale = sales_service.create_sale(
            branch_id=stocked.id,
            payment_method="CASH",
            items=[
                {"product_id": tea.id, "quantity": 2, "price": Decimal("3.00")},
                {"product_id": tea.id, "quantity": 3, "price": Decimal("3.50")},
            ],
            actor_id=CASHIER_ID,
        )
        first_line, second_line = sale.items

        settlement = _settle(sale, stocked, returned=[(tea, 4)])

        assert [(line.ref_sale_item_id, line.quantity) for line in settlement.items] == [
            (first_line.id, -2),
            (second_line.id, -2),
        ]
        assert settlement.total_amount == Decimal("-13.00")
        assert current_qty(tea.id, stocked.id) == 9

        _settle(sale, stocked, returned=[(tea, 1)])
        with pytest.raises(ValidationError, match="exceeds original") as exc:
            _settle(sale, stocked, returned=[(tea, 1)])
        assert exc.value.details["original_quantity"] == 5
        assert exc.value.details["returnable_quantity"] == 0
        assert current_qty(tea.id, stocked.id) == 10

    def test_product_not_on_sale(self, db_session, stocked, rice, original_sale):
        with pytest.raises(ValidationError, match="not in original sale"):
            _settle(original_sale, stocked, returned=[(rice, 1)])

    def test_refund_after_partial_return_rejected(self, db_session, stocked, tea, original_sale):
        _settle(original_sale, stocked, returned=[(tea, 2)])

        with pytest.raises(ValidationError, match="returns or exchanges"):
            sales_service.refund_sale(original_sale.id, CASHIER_ID)

        assert current_qty(tea.id, stocked.id) == 8
        db_session.expire_all()
        assert db_session.get(Sale, original_sale.id).status == "COMPLETED"

    def test_return_after_refund_rejected(self, db_session, stocked, tea, original_sale):
        sales_service.refund_sale(original_sale.id, CASHIER_ID)
        assert current_qty(tea.id, stocked.id) == 10

        with pytest.raises(ValidationError, match="status REFUNDED"):
            _settle(original_sale, stocked, returned=[(tea, 4)])

        assert current_qty(tea.id, stocked.id) == 10
        assert return_service.get_settlements(original_sale.id) == []

    def test_missing_original_sale(self, db_session, stocked, tea):
        class Ghost:
            id = 999999

        with pytest.raises(ValidationError, match="Original sale not found"):
            _settle(Ghost, stocked, returned=[(tea, 1)])


# =============================================================================
# EXCHANGES
# =============================================================================


class TestExchanges:

    def test_return_and_exchange(self, db_session, stocked, tea, rice, original_sale):
        settlement = _settle(
            original_sale, stocked,
            returned=[(tea, 1)],
            exchanged=[(rice, 1, "11.25")],
        )

        assert settlement.status == "EXCHANGED"
        assert settlement.total_amount == Decimal("1.25")
        assert [line.item_type for line in settlement.items] == ["RETURN", "EXCHANGE"]
        assert current_qty(tea.id, stocked.id) == 7
        assert current_qty(rice.id, stocked.id) == 4

        issued = (
            db_session.query(StockMovement)
            .filter_by(reference_type="exchange", reference_id=str(original_sale.id))
            .one()
        )
        assert issued.movement_type == "SALE"
        assert issued.quantity_change == -1

    def test_exchange_only(self, db_session, stocked, rice, original_sale):
        settlement = _settle(original_sale, stocked, exchanged=[(rice, 2, "11.25")])

        assert settlement.status == "EXCHANGED"
        assert settlement.total_amount == Decimal("22.50")

    def test_exchange_insufficient_stock_rolls_back(self, db_session, stocked, tea, rice, original_sale):
        with pytest.raises(ValidationError, match="Insufficient stock"):
            _settle(
                original_sale, stocked,
                returned=[(tea, 2)],
                exchanged=[(rice, 6, "11.25")],
            )

        assert current_qty(tea.id, stocked.id) == 6
        assert current_qty(rice.id, stocked.id) == 5
        assert return_service.get_settlements(original_sale.id) == []

    def test_settlements_listed(self, db_session, stocked, tea, rice, original_sale):
        first = _settle(original_sale, stocked, returned=[(tea, 1)])
        second = _settle(original_sale, stocked, exchanged=[(rice, 1, "11.25")])

        assert [s.id for s in return_service.get_settlements(original_sale.id)] == [first.id, second.id]
