# Overview: Stock ledger; owns per-branch quantities and the stock movement audit trail.

from __future__ import annotations

from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Branch, Product, Stock, StockMovement
from ..validation import ConflictError, NotFoundError, ValidationError
from retailpos.time_utils import utcnow
from .concurrency import lock_for_update, run_with_retry, unit_of_work
"""
Stock Ledger Invariants (authoritative)

- One Stock row per (product, branch). Created once by create_stock();
  every later change is an update of that row.
- current_quantity is never negative.
- Every change appends exactly one StockMovement in the same transaction:
    new_qty == previous_qty + quantity_change
  and the latest movement's new_qty equals the row's quantity.
- The Stock row is read with FOR UPDATE in the same unit of work as the
  write that follows it.
"""

MOVEMENT_SALE = "SALE"
MOVEMENT_RETURN = "RETURN"
MOVEMENT_ADJUSTMENT = "ADJUSTMENT"
MOVEMENT_DAMAGE = "DAMAGE"


# =============================================================================
# LEDGER PRIMITIVES (caller owns the unit of work)
# =============================================================================

def _get_stock_locked(session, product_id: int, branch_id: int) -> Stock | None:
    query = session.query(Stock).filter_by(product_id=product_id, branch_id=branch_id)
    return lock_for_update(query).first()


def _apply_change(
    session,
    stock: Stock,
    *,
    quantity_change: int,
    movement_type: str,
    created_by: int | None,
    reference_id=None,
    reference_type: str | None = None,
    notes: str | None = None,
    flush: bool = True,
) -> StockMovement:
    previous_qty = stock.current_quantity
    new_qty = previous_qty + quantity_change
    if new_qty < 0:
        raise ValidationError(
            "Insufficient stock",
            details={
                "product_id": stock.product_id,
                "branch_id": stock.branch_id,
                "current_quantity": previous_qty,
                "quantity_change": quantity_change,
            },
        )

    stock.current_quantity = new_qty
    stock.last_updated = utcnow()

    movement = StockMovement(
        product_id=stock.product_id,
        branch_id=stock.branch_id,
        movement_type=movement_type,
        quantity_change=quantity_change,
        previous_qty=previous_qty,
        new_qty=new_qty,
        created_by=created_by,
        reference_id=str(reference_id) if reference_id is not None else None,
        reference_type=reference_type,
        notes=notes,
    )
    session.add(movement)
    if flush:
        session.flush()
    return movement


def load_stock_rows(
    session,
    product_ids,
    *,
    branch_id: int | None = None,
    min_quantity: int | None = None,
    lock: bool = False,
) -> list[Stock]:
    """Bulk read of Stock rows for the given products, oldest row first."""
    product_ids = list(dict.fromkeys(product_ids))
    if not product_ids:
        return []

    query = session.query(Stock).filter(Stock.product_id.in_(product_ids))
    if branch_id is not None:
        query = query.filter(Stock.branch_id == branch_id)
    if min_quantity is not None:
        query = query.filter(Stock.current_quantity >= min_quantity)
    if lock:
        query = lock_for_update(query)
    return query.order_by(Stock.id.asc()).all()


def decrement_for_sale(
    session,
    *,
    product_id: int,
    branch_id: int,
    quantity: int,
    actor_id: int | None,
    reference_id=None,
    reference_type: str | None = None,
    notes: str | None = None,
    flush: bool = True,
) -> StockMovement:
    """Take `quantity` units out of a branch for a sale, order or exchange."""
    if quantity <= 0:
        raise ValidationError("Sale quantity must be positive")

    stock = _get_stock_locked(session, product_id, branch_id)
    if stock is None:
        raise ValidationError(f"No stock for product {product_id}")
    if stock.current_quantity < quantity:
        raise ValidationError(
            "Insufficient stock",
            details={
                "product_id": product_id,
                "branch_id": branch_id,
                "requested_quantity": quantity,
                "current_quantity": stock.current_quantity,
            },
        )

    return _apply_change(
        session,
        stock,
        quantity_change=-quantity,
        movement_type=MOVEMENT_SALE,
        created_by=actor_id,
        reference_id=reference_id,
        reference_type=reference_type,
        notes=notes,
        flush=flush,
    )


def increment_for_return(
    session,
    *,
    product_id: int,
    branch_id: int,
    quantity: int,
    actor_id: int | None,
    reference_id=None,
    reference_type: str | None = None,
    notes: str | None = None,
) -> StockMovement:
    """Put `quantity` units back into a branch (refund, return, cancelled order)."""
    if quantity <= 0:
        raise ValidationError("Return quantity must be positive")

    stock = _get_stock_locked(session, product_id, branch_id)
    if stock is None:
        raise ValidationError(f"Stock not found for product {product_id}")

    return _apply_change(
        session,
        stock,
        quantity_change=quantity,
        movement_type=MOVEMENT_RETURN,
        created_by=actor_id,
        reference_id=reference_id,
        reference_type=reference_type,
        notes=notes,
    )


# =============================================================================
# PUBLIC OPERATIONS
# =============================================================================

def create_stock(*, product_id: int, branch_id: int, quantity: int, actor_id: int | None) -> Stock:
    """
    Open stock for a product at a branch with an initial quantity.

    Raises ConflictError if the (product, branch) row already exists.
    """
    def _op():
        with unit_of_work() as session:
            if quantity is None or quantity <= 0:
                raise ValidationError("Initial quantity must be positive")

            if session.get(Product, product_id) is None:
                raise NotFoundError(f"Product {product_id} not found")
            if session.get(Branch, branch_id) is None:
                raise NotFoundError(f"Branch {branch_id} not found")

            if _get_stock_locked(session, product_id, branch_id) is not None:
                raise ConflictError("Stock already exists for this product in branch")

            stock = Stock(
                product_id=product_id,
                branch_id=branch_id,
                current_quantity=quantity,
                last_updated=utcnow(),
            )
            session.add(stock)
            try:
                session.flush()
            except IntegrityError:
                # Lost a race with a concurrent create for the same pair
                raise ConflictError("Stock already exists for this product in branch")

            session.add(StockMovement(
                product_id=product_id,
                branch_id=branch_id,
                movement_type=MOVEMENT_ADJUSTMENT,
                quantity_change=quantity,
                previous_qty=0,
                new_qty=quantity,
                created_by=actor_id,
                notes="Opening stock",
            ))
            session.flush()
            return stock

    return run_with_retry(_op)


def adjust_stock(
    *,
    product_id: int,
    branch_id: int,
    quantity_change: int,
    reason: str | None = None,
    actor_id: int | None,
) -> dict:
    """
    Manual correction. Positive changes are ADJUSTMENT movements, negative
    ones DAMAGE. Returns {"new_qty": ...}.
    """
    def _op():
        with unit_of_work() as session:
            if not quantity_change:
                raise ValidationError("Quantity change must not be zero")

            stock = _get_stock_locked(session, product_id, branch_id)
            if stock is None:
                raise NotFoundError("Stock not found")

            movement = _apply_change(
                session,
                stock,
                quantity_change=quantity_change,
                movement_type=MOVEMENT_ADJUSTMENT if quantity_change > 0 else MOVEMENT_DAMAGE,
                created_by=actor_id,
                notes=reason,
            )
            return {"new_qty": movement.new_qty}

    return run_with_retry(_op)


# =============================================================================
# QUERIES
# =============================================================================

def get_stock(product_id: int, branch_id: int) -> Stock | None:
    return db.session.query(Stock).filter_by(product_id=product_id, branch_id=branch_id).first()


def get_stock_by_branch(branch_id: int) -> list[Stock]:
    """All stock rows of a branch, most recently changed first."""
    return (
        db.session.query(Stock)
        .filter_by(branch_id=branch_id)
        .order_by(Stock.last_updated.desc(), Stock.id.desc())
        .all()
    )


def get_stock_movements(branch_id: int, limit: int | None = None) -> list[StockMovement]:
    """Movement history of a branch, newest first."""
    query = (
        db.session.query(StockMovement)
        .filter_by(branch_id=branch_id)
        .order_by(StockMovement.created_at.desc(), StockMovement.id.desc())
    )
    if limit is not None:
        query = query.limit(limit)
    return query.all()
