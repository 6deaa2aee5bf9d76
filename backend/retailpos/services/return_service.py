"""
Return / Exchange Reconciliation

A customer brings back items from an earlier sale and may take other items
in exchange. The settlement is recorded as a NEW sale linked to the original
through original_sale_id:

- RETURN lines: negative quantity, priced at the ORIGINAL unit price,
  back-referencing the original line. Stock comes back as RETURN movements.
- EXCHANGE lines: positive quantity at the submitted price. Stock leaves as
  SALE movements.
- total_amount = sum of line totals; negative means money back to the
  customer, positive means the customer pays the difference.

STATUS RULE:
- any exchanged item            -> EXCHANGED
- returned items only           -> REFUNDED

The original sale itself is left untouched.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Callable

from sqlalchemy import func

from ..extensions import db
from ..models import Customer, Sale, SaleItem
from ..validation import ValidationError, to_money
from retailpos.time_utils import utcnow
from .concurrency import lock_for_update, run_with_retry, unit_of_work
from .document_service import next_sale_number
from .sales_service import (
    ITEM_TYPE_EXCHANGE,
    ITEM_TYPE_RETURN,
    PAYMENT_STATUS_PAID,
    SALE_STATUS_CANCELLED,
    SALE_STATUS_EXCHANGED,
    SALE_STATUS_REFUNDED,
)
from .stock_service import decrement_for_sale, increment_for_return, load_stock_rows

SETTLEMENT_PAYMENT_METHOD = "CASH"


# =============================================================================
# INTERNAL HELPERS
# =============================================================================

def _positive_quantity(item: dict) -> int:
    quantity = item.get("quantity")
    if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity < 1:
        raise ValidationError("Item quantity must be a positive integer")
    return quantity


def _already_returned(session, sale_item_id: int) -> int:
    """Units of an original line returned by earlier settlements (positive)."""
    returned = (
        session.query(func.coalesce(func.sum(SaleItem.quantity), 0))
        .filter(
            SaleItem.ref_sale_item_id == sale_item_id,
            SaleItem.item_type == ITEM_TYPE_RETURN,
        )
        .scalar()
    )
    return -int(returned or 0)


def _original_lines(original_sale: Sale, product_id: int) -> list[SaleItem]:
    """Every sold line of the product, in line order."""
    return [
        line for line in original_sale.items
        if line.product_id == product_id and line.item_type != ITEM_TYPE_RETURN and line.quantity > 0
    ]


def settlement_status(has_return: bool, has_exchange: bool) -> str:
    """Status of a settlement sale. Any exchange wins over a return."""
    if has_exchange:
        return SALE_STATUS_EXCHANGED
    if has_return:
        return SALE_STATUS_REFUNDED
    raise ValidationError("At least one returned or exchanged item is required")


# =============================================================================
# RECONCILIATION
# =============================================================================

def create_exchange_or_return_sale(
    *,
    original_sale_id: int,
    branch_id: int,
    customer_id: int | None = None,
    returned_items=(),
    exchanged_items=(),
    actor_id: int | None,
    clock: Callable[[], int] | None = None,
) -> Sale:
    """
    Settle a return and/or exchange against a previous sale.

    Args:
        original_sale_id: Sale the goods were bought on
        branch_id: Branch receiving returns and issuing exchanged goods
        customer_id: Optional customer for the settlement sale
        returned_items: [{"product_id", "quantity"}]
        exchanged_items: [{"product_id", "quantity", "price"}]
        actor_id: User recorded on the settlement and its movements

    Returns:
        The new settlement Sale with its RETURN/EXCHANGE lines

    Raises:
        ValidationError: Original sale missing, refunded or cancelled, product not on the original
            sale, return quantity above what is still returnable, missing or
            insufficient stock for an exchanged product
    """
    returned_items = list(returned_items or [])
    exchanged_items = list(exchanged_items or [])

    def _op():
        with unit_of_work() as session:
            status = settlement_status(bool(returned_items), bool(exchanged_items))

            original_sale = lock_for_update(
                session.query(Sale).filter_by(id=original_sale_id)
            ).first()
            if original_sale is None:
                raise ValidationError("Original sale not found")
            # Refunded and cancelled sales have already put their stock back.
            if original_sale.status in (SALE_STATUS_REFUNDED, SALE_STATUS_CANCELLED):
                raise ValidationError(
                    f"Cannot return against sale with status {original_sale.status}"
                )

            if customer_id is not None and session.get(Customer, customer_id) is None:
                raise ValidationError("Invalid customer")

            product_ids = [i.get("product_id") for i in returned_items] + [
                i.get("product_id") for i in exchanged_items
            ]
            stocks = {
                s.product_id: s
                for s in load_stock_rows(session, product_ids, branch_id=branch_id, lock=True)
            }

            # Validate everything before the first stock write
            returns = []
            returning: dict[int, int] = {}
            claimed: dict[int, int] = {}
            for ret in returned_items:
                product_id = ret.get("product_id")
                quantity = _positive_quantity(ret)

                if product_id not in stocks:
                    raise ValidationError(f"Stock not found for product {product_id}")

                lines = _original_lines(original_sale, product_id)
                if not lines:
                    raise ValidationError(f"Product {product_id} not in original sale")

                # A product sold on several lines is capped by their sum.
                open_units = {
                    line.id: line.quantity - _already_returned(session, line.id) for line in lines
                }
                returning[product_id] = returning.get(product_id, 0) + quantity
                returnable = sum(open_units.values())
                if returning[product_id] > returnable:
                    raise ValidationError(
                        "Return quantity exceeds original",
                        details={
                            "product_id": product_id,
                            "original_quantity": sum(line.quantity for line in lines),
                            "returnable_quantity": returnable,
                            "requested_quantity": returning[product_id],
                        },
                    )

                remaining = quantity
                for line in lines:
                    take = min(open_units[line.id] - claimed.get(line.id, 0), remaining)
                    if take <= 0:
                        continue
                    claimed[line.id] = claimed.get(line.id, 0) + take
                    returns.append((line, take))
                    remaining -= take
                    if remaining == 0:
                        break

            exchanges = []
            issuing: dict[int, int] = {}
            for item in exchanged_items:
                product_id = item.get("product_id")
                quantity = _positive_quantity(item)
                price = to_money(item.get("price"))
                if price < 0:
                    raise ValidationError("Item price cannot be negative")

                stock = stocks.get(product_id)
                issuing[product_id] = issuing.get(product_id, 0) + quantity
                if stock is None or stock.current_quantity < issuing[product_id]:
                    raise ValidationError(f"Insufficient stock for product {product_id}")
                exchanges.append((product_id, quantity, price))

            settlement = Sale(
                sale_number=next_sale_number(session, clock),
                branch_id=branch_id,
                customer_id=customer_id,
                original_sale_id=original_sale.id,
                payment_method=SETTLEMENT_PAYMENT_METHOD,
                payment_status=PAYMENT_STATUS_PAID,
                status=status,
                created_by=actor_id,
                sale_date=utcnow(),
            )
            session.add(settlement)

            total = Decimal("0.00")

            for original_line, quantity in returns:
                increment_for_return(
                    session,
                    product_id=original_line.product_id,
                    branch_id=branch_id,
                    quantity=quantity,
                    actor_id=actor_id,
                    reference_id=original_sale.id,
                    reference_type="return",
                    notes="Returned by customer",
                )
                line_total = -original_line.unit_price * quantity
                total += line_total
                settlement.items.append(SaleItem(
                    product_id=original_line.product_id,
                    quantity=-quantity,
                    unit_price=original_line.unit_price,
                    tax_rate=original_line.tax_rate,
                    discount_rate=original_line.discount_rate,
                    line_total=line_total,
                    item_type=ITEM_TYPE_RETURN,
                    ref_sale_item_id=original_line.id,
                ))

            for product_id, quantity, price in exchanges:
                decrement_for_sale(
                    session,
                    product_id=product_id,
                    branch_id=branch_id,
                    quantity=quantity,
                    actor_id=actor_id,
                    reference_id=original_sale.id,
                    reference_type="exchange",
                    notes="Exchanged to customer",
                )
                line_total = price * quantity
                total += line_total
                settlement.items.append(SaleItem(
                    product_id=product_id,
                    quantity=quantity,
                    unit_price=price,
                    line_total=line_total,
                    item_type=ITEM_TYPE_EXCHANGE,
                ))

            settlement.subtotal = total
            settlement.total_amount = total
            session.flush()
            return settlement

    return run_with_retry(_op)


def get_settlements(original_sale_id: int) -> list[Sale]:
    """Return/exchange sales recorded against a sale, oldest first."""
    return (
        db.session.query(Sale)
        .filter_by(original_sale_id=original_sale_id)
        .order_by(Sale.sale_date.asc(), Sale.id.asc())
        .all()
    )
