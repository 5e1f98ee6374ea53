# Overview: Row locking, retry and constraint translation shared by stock-moving services.

from __future__ import annotations

import time
from contextlib import contextmanager

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..errors import InsufficientStock
from ..extensions import db

# Constraint names whose violation means "stock would go negative"
QUANTITY_FLOOR_CONSTRAINTS = (
    "ck_batches_quantity_floor",
    "ck_products_stock_floor",
)


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    """
    return query.with_for_update()


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts).
    """
    last_exc = None
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            last_exc = exc
            if attempt >= attempts - 1:
                raise
            time.sleep(backoff_base * (2 ** attempt))
    if last_exc:
        raise last_exc


def run_in_transaction(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Run func and commit; any exception rolls the whole unit of work back.

    Concurrency conflicts are retried through run_with_retry.
    """
    def _op():
        try:
            result = func()
            db.session.commit()
            return result
        except (OperationalError, StaleDataError):
            raise
        except Exception:
            db.session.rollback()
            raise
    return run_with_retry(_op, attempts=attempts, backoff_base=backoff_base)


def is_quantity_floor_violation(exc: IntegrityError) -> bool:
    message = str(getattr(exc, "orig", exc)).lower()
    if any(name in message for name in QUANTITY_FLOOR_CONSTRAINTS):
        return True
    # SQLite reports unnamed CHECK failures as "CHECK constraint failed: quantity >= 0"
    return "check constraint" in message and "quantity" in message


@contextmanager
def translate_quantity_floor(product_id: int | None = None, requested: int = 0):
    """
    Flush inside this block turns a quantity-floor violation into InsufficientStock.

    Two terminals can both pass a stale availability check; the database floor
    is the last line and the caller must see it as out-of-stock.
    """
    try:
        yield
    except IntegrityError as exc:
        db.session.rollback()
        if is_quantity_floor_violation(exc):
            available = _current_available(product_id)
            raise InsufficientStock(
                product_id,
                requested,
                available,
                message=(
                    "Stock changed while the order was being processed; "
                    f"requested {requested}, available {available}"
                ),
            ) from exc
        raise


def _current_available(product_id: int | None) -> int:
    """Sellable quantity as committed by whoever won the race."""
    from ..models import Product
    from .stock_service import available_stock

    if product_id is None:
        return 0
    product = db.session.get(Product, product_id)
    return available_stock(product) if product is not None else 0
