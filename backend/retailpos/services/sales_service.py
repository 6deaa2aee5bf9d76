"""
Sale Transaction Engine

Counter sales are created directly in COMPLETED/PAID state: the cart is
validated against branch stock, the sale and its lines are written and the
stock ledger is decremented in one unit of work. Nothing is persisted if
any line fails.

LIFECYCLE:
    COMPLETED -> REFUNDED   (refund_sale, full refund)
    COMPLETED -> EXCHANGED  (return_service, settlement sale carries the status)
    CANCELLED is only reached through order cancellation.

PRICING: counter sales charge the unit price submitted by the cashier.
Orders (order_service) always charge the catalog price.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Callable

from sqlalchemy.orm import selectinload

from ..extensions import db
from ..models import Branch, Customer, Sale, SaleItem
from ..validation import NotFoundError, PAYMENT_METHODS, ValidationError, to_money
from retailpos.time_utils import utcnow, start_of_day, end_of_day
from .concurrency import lock_for_update, run_with_retry, unit_of_work
from .document_service import next_sale_number
from .stock_service import decrement_for_sale, increment_for_return, load_stock_rows


# =============================================================================
# STATUS CONSTANTS
# =============================================================================

SALE_STATUS_COMPLETED = "COMPLETED"
SALE_STATUS_REFUNDED = "REFUNDED"
SALE_STATUS_EXCHANGED = "EXCHANGED"
SALE_STATUS_CANCELLED = "CANCELLED"

PAYMENT_STATUS_PAID = "PAID"

ITEM_TYPE_SALE = "SALE"
ITEM_TYPE_RETURN = "RETURN"
ITEM_TYPE_EXCHANGE = "EXCHANGE"


# =============================================================================
# INTERNAL HELPERS
# =============================================================================

def _clean_sale_items(items) -> list[dict]:
    if not items:
        raise ValidationError("At least one item is required")

    cleaned = []
    for item in items:
        quantity = item.get("quantity")
        if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity < 1:
            raise ValidationError("Item quantity must be a positive integer")
        price = to_money(item.get("price"))
        if price < 0:
            raise ValidationError("Item price cannot be negative")
        cleaned.append({
            "product_id": item.get("product_id"),
            "quantity": quantity,
            "price": price,
        })
    return cleaned


def _validate_against_stock(stocks_by_product: dict, items: list[dict]) -> None:
    """All-or-nothing check of the whole cart before any stock is touched."""
    requested: dict[int, int] = {}
    for item in items:
        requested[item["product_id"]] = requested.get(item["product_id"], 0) + item["quantity"]

    for product_id, quantity in requested.items():
        stock = stocks_by_product.get(product_id)
        if stock is None:
            raise ValidationError(f"No stock for product {product_id}")
        if stock.current_quantity < quantity:
            raise ValidationError(
                "Insufficient stock",
                details={
                    "product_id": product_id,
                    "requested_quantity": quantity,
                    "current_quantity": stock.current_quantity,
                },
            )


def _sale_query(session):
    return session.query(Sale).options(selectinload(Sale.items))


# =============================================================================
# SALE CREATION
# =============================================================================

def create_sale(
    *,
    branch_id: int,
    customer_id: int | None = None,
    payment_method: str,
    items,
    actor_id: int | None,
    clock: Callable[[], int] | None = None,
) -> Sale:
    """
    Create a completed counter sale and decrement branch stock.

    Args:
        branch_id: Branch the goods leave from
        customer_id: Optional customer
        payment_method: One of PAYMENT_METHODS
        items: [{"product_id", "quantity" >= 1, "price" >= 0}]
        actor_id: Cashier recorded on the sale and its movements
        clock: Optional epoch-millis source for the sale number

    Returns:
        Sale with status COMPLETED, payment_status PAID and its items

    Raises:
        ValidationError: Unknown branch/customer, missing or insufficient stock
    """
    def _op():
        with unit_of_work() as session:
            cart = _clean_sale_items(items)
            if payment_method not in PAYMENT_METHODS:
                raise ValidationError(f"Invalid payment method {payment_method!r}")

            if customer_id is not None and session.get(Customer, customer_id) is None:
                raise ValidationError("Invalid customer")
            if session.get(Branch, branch_id) is None:
                raise ValidationError("Invalid branch")

            stocks = load_stock_rows(
                session,
                [item["product_id"] for item in cart],
                branch_id=branch_id,
                lock=True,
            )
            _validate_against_stock({s.product_id: s for s in stocks}, cart)

            total = sum((item["price"] * item["quantity"] for item in cart), Decimal("0.00"))

            sale = Sale(
                sale_number=next_sale_number(session, clock),
                branch_id=branch_id,
                customer_id=customer_id,
                subtotal=total,
                tax_amount=Decimal("0.00"),
                discount_amount=Decimal("0.00"),
                total_amount=total,
                payment_method=payment_method,
                payment_status=PAYMENT_STATUS_PAID,
                status=SALE_STATUS_COMPLETED,
                created_by=actor_id,
                sale_date=utcnow(),
            )
            session.add(sale)
            session.flush()

            for item in cart:
                decrement_for_sale(
                    session,
                    product_id=item["product_id"],
                    branch_id=branch_id,
                    quantity=item["quantity"],
                    actor_id=actor_id,
                    reference_id=sale.id,
                    reference_type="sale",
                    notes=f"Sale {sale.sale_number}",
                )
                sale.items.append(SaleItem(
                    product_id=item["product_id"],
                    quantity=item["quantity"],
                    unit_price=item["price"],
                    line_total=item["price"] * item["quantity"],
                    item_type=ITEM_TYPE_SALE,
                ))

            session.flush()
            return sale

    return run_with_retry(_op)


# =============================================================================
# REFUND
# =============================================================================

def refund_sale(sale_id: int, actor_id: int | None) -> Sale:
    """
    Fully refund a completed sale: every line goes back into the branch
    stock as a RETURN movement and the sale becomes REFUNDED.

    Raises:
        NotFoundError: Sale does not exist
        ValidationError: Sale already refunded, not COMPLETED, or already
            settled by a return/exchange
    """
    def _op():
        with unit_of_work() as session:
            sale = lock_for_update(session.query(Sale).filter_by(id=sale_id)).first()
            if sale is None:
                raise NotFoundError("Sale not found")

            if sale.status == SALE_STATUS_REFUNDED:
                raise ValidationError("Sale already refunded")
            if sale.status != SALE_STATUS_COMPLETED:
                raise ValidationError(f"Cannot refund sale with status {sale.status}")
            # Returned units are already back on the shelf.
            if sale.adjustment_sales:
                raise ValidationError(
                    "Sale has returns or exchanges recorded against it",
                    details={"settlement_ids": [s.id for s in sale.adjustment_sales]},
                )

            for item in sale.items:
                if item.quantity <= 0:
                    continue
                increment_for_return(
                    session,
                    product_id=item.product_id,
                    branch_id=sale.branch_id,
                    quantity=item.quantity,
                    actor_id=actor_id,
                    reference_id=sale.id,
                    reference_type="refund",
                    notes=f"Refund of sale {sale.sale_number}",
                )

            sale.status = SALE_STATUS_REFUNDED
            session.flush()
            return sale

    return run_with_retry(_op)


# =============================================================================
# QUERIES
# =============================================================================

def get_sales(branch_id: int | None = None) -> list[Sale]:
    """All sales, optionally for one branch, newest first."""
    query = _sale_query(db.session)
    if branch_id is not None:
        query = query.filter(Sale.branch_id == branch_id)
    return query.order_by(Sale.sale_date.desc(), Sale.id.desc()).all()


def get_sale(sale_id: int) -> Sale:
    sale = _sale_query(db.session).filter(Sale.id == sale_id).first()
    if sale is None:
        raise NotFoundError("Sale not found")
    return sale


def get_today_sales(branch_id: int | None = None, now=None) -> list[Sale]:
    """Sales dated today (UTC), newest first."""
    query = db.session.query(Sale).filter(
        Sale.sale_date >= start_of_day(now),
        Sale.sale_date <= end_of_day(now),
    )
    if branch_id is not None:
        query = query.filter(Sale.branch_id == branch_id)
    return query.order_by(Sale.sale_date.desc(), Sale.id.desc()).all()


def get_recent_sale_item_prices(branch_id: int, limit: int = 5) -> list[dict]:
    """Product name and unit price of the newest lines of the branch's latest sale."""
    sale = (
        db.session.query(Sale)
        .filter_by(branch_id=branch_id)
        .order_by(Sale.sale_date.desc(), Sale.id.desc())
        .first()
    )
    if sale is None:
        return []

    lines = (
        db.session.query(SaleItem)
        .filter_by(sale_id=sale.id)
        .order_by(SaleItem.id.desc())
        .limit(limit)
        .all()
    )
    return [
        {"product_name": line.product.name, "price": str(line.unit_price)}
        for line in lines
    ]
