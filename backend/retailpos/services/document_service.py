# Overview: Allocation of human-facing sale and order numbers.

from __future__ import annotations

from typing import Callable

from ..models import Sale, Order
from retailpos.time_utils import epoch_millis

SALE_PREFIX = "SALE"
ORDER_PREFIX = "ORD"


def _next_time_based_number(session, column, prefix: str, clock: Callable[[], int] | None) -> str:
    """
    "<prefix>-<epochMillis>", bumped one millisecond at a time past any
    number already used in this database.

    Numbers are not protected by a unique constraint; the probe runs inside
    the caller's unit of work, which already holds the write lock.
    """
    millis = (clock or epoch_millis)()
    while True:
        candidate = f"{prefix}-{millis}"
        taken = session.query(column).filter(column == candidate).first()
        if taken is None:
            return candidate
        millis += 1


def next_sale_number(session, clock: Callable[[], int] | None = None) -> str:
    return _next_time_based_number(session, Sale.sale_number, SALE_PREFIX, clock)


def next_order_number(session, clock: Callable[[], int] | None = None) -> str:
    return _next_time_based_number(session, Order.order_number, ORDER_PREFIX, clock)
