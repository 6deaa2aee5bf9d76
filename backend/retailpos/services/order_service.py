"""
Order-to-Sale Bridge

Storefront orders are fulfilled from exactly ONE branch. Creating an order
reserves the goods immediately: branch stock is decremented, an Order
(PENDING) is written and a mirrored Sale (COMPLETED, PAID) is written in the
same unit of work.

BRANCH SELECTION:
Only branches holding every requested product (current_quantity >= 1) are
candidates. Among candidates the winner is, in order:
    1. a branch that can cover every requested quantity
    2. the largest total available quantity of the requested products
    3. the lowest branch id
No cross-branch splitting.

LIFECYCLE:
    PENDING -> PROCESSING -> COMPLETED
    PENDING/PROCESSING -> CANCELLED (cancel_order; stock comes back)
A CANCELLED order is final.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Callable

from sqlalchemy.orm import selectinload

from ..extensions import db
from ..models import Customer, Order, OrderItem, Product, Sale, SaleItem
from ..validation import NotFoundError, ORDER_STATUSES, PAYMENT_METHODS, ValidationError
from retailpos.time_utils import utcnow
from .concurrency import lock_for_update, run_with_retry, unit_of_work
from .document_service import next_order_number, next_sale_number
from .sales_service import (
    ITEM_TYPE_SALE,
    PAYMENT_STATUS_PAID,
    SALE_STATUS_CANCELLED,
    SALE_STATUS_COMPLETED,
)
from .stock_service import decrement_for_sale, increment_for_return, load_stock_rows


ORDER_STATUS_PENDING = "PENDING"
ORDER_STATUS_PROCESSING = "PROCESSING"
ORDER_STATUS_COMPLETED = "COMPLETED"
ORDER_STATUS_CANCELLED = "CANCELLED"

DEFAULT_PAYMENT_METHOD = "CASH"


# =============================================================================
# BRANCH SELECTION
# =============================================================================

def select_fulfilment_branch(stock_rows, requested: dict[int, int]) -> int:
    """
    Pick the single branch that carries every requested product.

    Args:
        stock_rows: Stock rows with current_quantity >= 1 for the requested
            products, across all branches
        requested: product_id -> total requested quantity

    Raises:
        ValidationError: No branch carries all requested products
    """
    available: dict[int, dict[int, int]] = {}
    for stock in stock_rows:
        if stock.product_id not in requested or stock.current_quantity < 1:
            continue
        available.setdefault(stock.branch_id, {})[stock.product_id] = stock.current_quantity

    candidates = [
        branch_id
        for branch_id, products in available.items()
        if len(products) == len(requested)
    ]
    if not candidates:
        raise ValidationError("All items must be available in a single branch")

    def _rank(branch_id: int):
        products = available[branch_id]
        covers_all = all(products[pid] >= qty for pid, qty in requested.items())
        return (not covers_all, -sum(products.values()), branch_id)

    return min(candidates, key=_rank)


# =============================================================================
# ORDER CREATION
# =============================================================================

def _clean_order_items(items) -> list[dict]:
    if not items:
        raise ValidationError("At least one item is required")

    cleaned = []
    for item in items:
        quantity = item.get("quantity")
        if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity < 1:
            raise ValidationError("Item quantity must be a positive integer")
        cleaned.append({"product_id": item.get("product_id"), "quantity": quantity})
    return cleaned


def create_order(
    *,
    items,
    payment_method: str | None = None,
    customer_id: int,
    clock: Callable[[], int] | None = None,
) -> dict:
    """
    Place a customer order priced from the catalog.

    Returns:
        {"order": Order, "sale": Sale}

    Raises:
        NotFoundError: Customer does not exist
        ValidationError: Missing/inactive products, no single branch carries
            every item, insufficient quantity at the chosen branch
    """
    def _op():
        with unit_of_work() as session:
            lines = _clean_order_items(items)
            method = payment_method or DEFAULT_PAYMENT_METHOD
            if method not in PAYMENT_METHODS:
                raise ValidationError(f"Invalid payment method {method!r}")

            if session.get(Customer, customer_id) is None:
                raise NotFoundError("Customer not found")

            requested: dict[int, int] = {}
            for line in lines:
                requested[line["product_id"]] = requested.get(line["product_id"], 0) + line["quantity"]

            products = {
                p.id: p
                for p in session.query(Product)
                .filter(Product.id.in_(list(requested)), Product.is_active.is_(True))
                .all()
            }
            if len(products) != len(requested):
                missing = len(requested) - len(products)
                raise ValidationError(
                    f"{missing} of {len(requested)} products not found or inactive",
                    details={"missing_product_ids": sorted(set(requested) - set(products))},
                )

            stock_rows = load_stock_rows(session, list(requested), min_quantity=1, lock=True)
            branch_id = select_fulfilment_branch(stock_rows, requested)
            at_branch = {s.product_id: s for s in stock_rows if s.branch_id == branch_id}

            total = Decimal("0.00")
            priced = []
            for product_id, quantity in requested.items():
                product = products[product_id]
                stock = at_branch.get(product_id)
                if stock is None:
                    raise ValidationError(f"Stock not found for product {product_id}")
                if stock.current_quantity < quantity:
                    raise ValidationError(f"Insufficient stock for product {product.name}")

                price = product.sales_rate_inc_dis_and_tax
                line_total = price * quantity
                total += line_total
                priced.append((product, quantity, price, line_total))

            order = Order(
                order_number=next_order_number(session, clock),
                branch_id=branch_id,
                customer_id=customer_id,
                total_amount=total,
                payment_method=method,
                status=ORDER_STATUS_PENDING,
                created_at=utcnow(),
            )
            for product, quantity, price, line_total in priced:
                order.items.append(OrderItem(
                    product_id=product.id,
                    quantity=quantity,
                    price=price,
                    total_price=line_total,
                ))
            session.add(order)
            session.flush()

            # Validation passed for every line; apply the stock changes back to back
            for product, quantity, _, _ in priced:
                decrement_for_sale(
                    session,
                    product_id=product.id,
                    branch_id=branch_id,
                    quantity=quantity,
                    actor_id=None,
                    reference_id=order.id,
                    reference_type="order",
                    notes=f"Order {order.order_number}",
                    flush=False,
                )

            sale = Sale(
                sale_number=next_sale_number(session, clock),
                branch_id=branch_id,
                customer_id=customer_id,
                order_id=order.id,
                subtotal=total,
                total_amount=total,
                payment_method=method,
                payment_status=PAYMENT_STATUS_PAID,
                status=SALE_STATUS_COMPLETED,
                sale_date=utcnow(),
            )
            for product, quantity, price, line_total in priced:
                sale.items.append(SaleItem(
                    product_id=product.id,
                    quantity=quantity,
                    unit_price=price,
                    line_total=line_total,
                    item_type=ITEM_TYPE_SALE,
                ))
            session.add(sale)
            session.flush()

            return {"order": order, "sale": sale}

    return run_with_retry(_op)


# =============================================================================
# STATUS CHANGES
# =============================================================================

def _get_order_locked(session, order_id: int) -> Order:
    order = lock_for_update(session.query(Order).filter_by(id=order_id)).first()
    if order is None:
        raise NotFoundError("Order not found")
    return order


def cancel_order(order_id: int, actor_id: int | None = None) -> Order:
    """
    Cancel an open order: stock goes back to the fulfilling branch as RETURN
    movements and the mirrored sale becomes CANCELLED.

    Raises:
        NotFoundError: Order does not exist
        ValidationError: Already cancelled, completed, or its sale was
            refunded/returned against in the meantime
    """
    def _op():
        with unit_of_work() as session:
            order = _get_order_locked(session, order_id)

            if order.status == ORDER_STATUS_CANCELLED:
                raise ValidationError("Already cancelled")
            if order.status == ORDER_STATUS_COMPLETED:
                raise ValidationError("Cannot cancel completed")

            for sale in order.sales:
                if sale.status != SALE_STATUS_COMPLETED or sale.adjustment_sales:
                    raise ValidationError(
                        f"Sale {sale.sale_number} was already refunded or returned against"
                    )

            for item in order.items:
                increment_for_return(
                    session,
                    product_id=item.product_id,
                    branch_id=order.branch_id,
                    quantity=item.quantity,
                    actor_id=actor_id,
                    reference_id=order.id,
                    reference_type="order_cancel",
                    notes=f"Order {order.order_number} cancelled",
                )

            order.status = ORDER_STATUS_CANCELLED
            for sale in order.sales:
                sale.status = SALE_STATUS_CANCELLED
            session.flush()
            return order

    return run_with_retry(_op)


def update_order_status(order_id: int, status: str, actor_id: int | None = None) -> Order:
    """
    Move an order to another status. Cancelled orders cannot change.

    Moving to CANCELLED goes through cancel_order() so stock is restored.
    """
    if status not in ORDER_STATUSES:
        raise ValidationError(f"Invalid order status {status!r}")

    if status == ORDER_STATUS_CANCELLED:
        return cancel_order(order_id, actor_id=actor_id)

    def _op():
        with unit_of_work() as session:
            order = _get_order_locked(session, order_id)
            if order.status == ORDER_STATUS_CANCELLED:
                raise ValidationError("Cannot update a cancelled order")

            order.status = status
            session.flush()
            return order

    return run_with_retry(_op)


# =============================================================================
# QUERIES
# =============================================================================

def get_customer_orders(customer_id: int, status: str | None = None) -> list[Order]:
    """A customer's orders, newest first."""
    query = (
        db.session.query(Order)
        .options(selectinload(Order.items))
        .filter(Order.customer_id == customer_id)
    )
    if status is not None:
        query = query.filter(Order.status == status)
    return query.order_by(Order.created_at.desc(), Order.id.desc()).all()


def get_customer_order(customer_id: int, order_id: int) -> Order:
    """
    One order of a customer. Another customer's order is reported as not
    found so order ids cannot be probed.
    """
    order = db.session.query(Order).filter_by(id=order_id).first()
    if order is None or order.customer_id != customer_id:
        raise NotFoundError("Order not found")
    return order
