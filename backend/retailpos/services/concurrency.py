# Overview: Transaction scoping, row locking and conflict retry for stock mutations.

from __future__ import annotations

import time
from contextlib import contextmanager

from flask import current_app
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from ..extensions import db

"""
Stock transaction rules (authoritative)

- Every multi-step stock mutation runs inside exactly one unit_of_work().
- Stock rows are read with lock_for_update() before being written, so two
  transactions touching the same (product, branch) serialize.
- Lock wait and execution time are bounded (STOCK_TX_LOCK_TIMEOUT_MS,
  STOCK_TX_STATEMENT_TIMEOUT_MS). A timeout aborts and rolls back the whole
  unit of work; it is never retried.
- Any exception raised inside the unit of work rolls it back before it
  propagates. Nothing partial is ever committed.
"""

# Serialization failure and deadlock; safe to replay the whole unit of work.
RETRYABLE_SQLSTATES = {"40001", "40P01"}


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE; unit_of_work() takes the
    database write lock up front with BEGIN IMMEDIATE instead.
    Rows already in the identity map are refreshed from the locked read.
    """
    return query.with_for_update().populate_existing()


def _dialect_name(session) -> str:
    return session.get_bind().dialect.name


def _begin(session) -> None:
    config = current_app.config
    dialect = _dialect_name(session)

    if dialect == "sqlite":
        # Only when no transaction is open yet; the driver busy timeout
        # bounds how long we wait for a concurrent writer.
        if not session.in_transaction():
            session.execute(text("BEGIN IMMEDIATE"))
    elif dialect == "postgresql":
        lock_ms = int(config.get("STOCK_TX_LOCK_TIMEOUT_MS", 10_000))
        statement_ms = int(config.get("STOCK_TX_STATEMENT_TIMEOUT_MS", 15_000))
        session.execute(text(f"SET LOCAL lock_timeout = {lock_ms}"))
        session.execute(text(f"SET LOCAL statement_timeout = {statement_ms}"))


@contextmanager
def unit_of_work(session=None):
    """
    Scoped transaction handle for one logical stock operation.

    Yields the session to pass into stock_service helpers. Commits when the
    block exits normally, rolls back on any exception and re-raises.
    """
    session = session if session is not None else db.session()
    try:
        _begin(session)
        yield session
        session.commit()
    except BaseException:
        session.rollback()
        raise


def _is_retryable(exc: OperationalError) -> bool:
    orig = getattr(exc, "orig", None)
    code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    return code in RETRYABLE_SQLSTATES


def run_with_retry(func, *, attempts: int | None = None, backoff_base: float = 0.1):
    """
    Execute a unit of work, replaying it on serialization failures and
    deadlocks.

    Business errors (ValidationError, NotFoundError) and lock/statement
    timeouts propagate on the first occurrence.
    """
    if attempts is None:
        attempts = int(current_app.config.get("STOCK_TX_RETRY_ATTEMPTS", 3))

    for attempt in range(attempts):
        try:
            return func()
        except OperationalError as exc:
            db.session.rollback()
            if not _is_retryable(exc) or attempt >= attempts - 1:
                raise
            current_app.logger.warning(
                "Stock transaction conflict, retrying (attempt %s of %s)",
                attempt + 2,
                attempts,
            )
            time.sleep(backoff_base * (2 ** attempt))
