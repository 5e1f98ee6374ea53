# Overview: Sellable-stock queries and FIFO-by-expiry debit planning over product batches.

"""
Batch Stock Invariants

- Batches are the source of truth; Product.stock_quantity is the flat counter
  and is only read on its own when a product has no batches.
- A batch is expired iff expiry_date is set and earlier than "now" at the
  moment of evaluation. Nothing caches expiry.
- Sellable stock = SUM(quantity) over non-expired batches.
- Debit plans consume the soonest-to-expire eligible batch first; batches
  without an expiry date go last. A plan either covers the full request or
  is not returned at all.
- Quantity writes are issued as "quantity = quantity - n" so the database
  CHECK (quantity >= 0) rejects a debit that lost a race.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from ..errors import ExpiredBatchOnly, InsufficientStock, NotFoundError, ValidationError
from ..extensions import db
from ..models import Batch, Product
from ..money import amount_str
from ..time_utils import utcnow
from .concurrency import lock_for_update, translate_quantity_floor


@dataclass(frozen=True)
class PlannedDebit:
    batch: Batch
    quantity: int

    def to_dict(self) -> dict:
        return {
            "batch_id": self.batch.id,
            "batch_no": self.batch.batch_no,
            "expiry_date": self.batch.to_dict()["expiry_date"],
            "quantity": self.quantity,
        }


def get_product_for_store(
    store_id: int | None,
    product_id: int,
    *,
    require_active: bool = False,
    lock: bool = False,
) -> Product:
    query = db.session.query(Product).filter_by(id=product_id)
    if lock:
        query = lock_for_update(query)
    product = query.first()
    if product is None or (store_id is not None and product.store_id != store_id):
        raise NotFoundError("Product", product_id)
    if require_active and not product.is_active:
        raise ValidationError({"product_id": f"Product {product.name} is inactive"})
    return product


def is_expired(batch: Batch, now: datetime | None = None) -> bool:
    if batch.expiry_date is None:
        return False
    return batch.expiry_date < (now or utcnow())


def available_stock(product: Product, now: datetime | None = None) -> int:
    """Flat counter when the product has no batches, else the sum over non-expired batches."""
    if not product.batches:
        return int(product.stock_quantity or 0)
    now = now or utcnow()
    return sum(b.quantity for b in product.batches if b.quantity > 0 and not is_expired(b, now))


def expired_stock(product: Product, now: datetime | None = None) -> int:
    now = now or utcnow()
    return sum(b.quantity for b in product.batches if b.quantity > 0 and is_expired(b, now))


def is_expired_only(product: Product, now: datetime | None = None) -> bool:
    """Counter says there is stock, but every batch that holds it has expired."""
    if not product.batches:
        return False
    now = now or utcnow()
    if available_stock(product, now) > 0:
        return False
    return expired_stock(product, now) > 0 or (product.stock_quantity or 0) > 0


def ensure_sellable(product: Product, requested: int, now: datetime | None = None) -> int:
    """
    Re-check a requested quantity against current stock.

    Returns the available quantity. Raises ExpiredBatchOnly when the only
    stock left is expired, InsufficientStock for a plain shortfall.
    """
    now = now or utcnow()
    available = available_stock(product, now)
    if requested <= available:
        return available
    if is_expired_only(product, now):
        raise ExpiredBatchOnly(
            product.id,
            requested,
            expired_stock(product, now) or int(product.stock_quantity or 0),
        )
    raise InsufficientStock(
        product.id,
        requested,
        available,
        message=f"Insufficient stock for {product.name}: requested {requested}, available {available}",
    )


def _fifo_key(batch: Batch):
    # Nulls last: a batch without expiry never expires, so it has the lowest priority
    return (batch.expiry_date is None, batch.expiry_date or datetime.max, batch.id or 0)


def select_debit_plan(
    product: Product,
    requested: int,
    *,
    now: datetime | None = None,
    preferred_batch_no: str | None = None,
    allow_expired: bool = False,
) -> list[PlannedDebit]:
    """
    Plan which batches an outbound movement consumes. Pure: nothing is written.

    Eligible batches have quantity > 0 and are not expired. They are consumed
    in ascending expiry order, undated batches last. A preferred batch number
    moves that batch to the front (it must still be eligible).

    allow_expired settles a sale that was already paid: expired batches are
    consumed after the eligible ones, oldest expiry first.

    Raises InsufficientStock (or ExpiredBatchOnly) when the eligible total is
    short of the request; a partial plan is never returned.
    """
    if requested <= 0:
        raise ValidationError({"quantity": "Quantity must be greater than 0"})

    now = now or utcnow()
    eligible = sorted(
        (b for b in product.batches if b.quantity > 0 and not is_expired(b, now)),
        key=_fifo_key,
    )
    if preferred_batch_no:
        preferred = [b for b in eligible if b.batch_no == preferred_batch_no]
        eligible = preferred + [b for b in eligible if b.batch_no != preferred_batch_no]
    if allow_expired:
        eligible += sorted(
            (b for b in product.batches if b.quantity > 0 and is_expired(b, now)),
            key=_fifo_key,
        )

    total = sum(b.quantity for b in eligible)
    if total < requested:
        if total == 0 and expired_stock(product, now) > 0:
            raise ExpiredBatchOnly(product.id, requested, expired_stock(product, now))
        raise InsufficientStock(product.id, requested, total)

    plan: list[PlannedDebit] = []
    remaining = requested
    for batch in eligible:
        if remaining <= 0:
            break
        take = min(batch.quantity, remaining)
        plan.append(PlannedDebit(batch=batch, quantity=take))
        remaining -= take
    return plan


def apply_debit_plan(product: Product, plan: list[PlannedDebit]) -> int:
    """
    Write a debit plan: each batch and the flat counter are decremented in SQL.

    Returns the total debited. A lost race surfaces as InsufficientStock.
    """
    total = sum(p.quantity for p in plan)
    with translate_quantity_floor(product.id, total):
        for planned in plan:
            planned.batch.quantity = Batch.quantity - planned.quantity
        product.stock_quantity = Product.stock_quantity - total
        db.session.flush()
    return total


def debit_flat_counter(product: Product, quantity: int) -> None:
    """Debit a product that has no batches."""
    with translate_quantity_floor(product.id, quantity):
        product.stock_quantity = Product.stock_quantity - quantity
        db.session.flush()


def _same_expiry(a: datetime | None, b: datetime | None) -> bool:
    if a is None or b is None:
        return a is None and b is None
    return a == b


def credit_batch(
    product: Product,
    *,
    quantity: int,
    batch_no: str | None,
    expiry_date: datetime | None,
    warehouse_id: int | None,
    cost_price=None,
    selling_price=None,
) -> Batch:
    """
    Add stock to the batch matching (batch_no, expiry_date, warehouse), creating it if needed.

    A receipt without a batch number gets one derived from the product and date.
    """
    batch_no = batch_no or f"{product.sku}-{utcnow():%Y%m%d}"
    match = None
    for batch in product.batches:
        if (
            batch.batch_no == batch_no
            and batch.warehouse_id == warehouse_id
            and _same_expiry(batch.expiry_date, expiry_date)
        ):
            match = batch
            break

    if match is None:
        match = Batch(
            product=product,
            batch_no=batch_no,
            expiry_date=expiry_date,
            warehouse_id=warehouse_id,
            quantity=quantity,
            cost_price=cost_price or 0,
            selling_price=selling_price,
        )
        db.session.add(match)
    else:
        match.quantity = Batch.quantity + quantity
        if cost_price is not None:
            match.cost_price = cost_price
        if selling_price is not None:
            match.selling_price = selling_price

    product.stock_quantity = Product.stock_quantity + quantity
    db.session.flush()
    return match


def stock_summary(product: Product, now: datetime | None = None) -> dict:
    now = now or utcnow()
    batches = []
    for batch in sorted(product.batches, key=_fifo_key):
        row = batch.to_dict()
        row["expired"] = is_expired(batch, now)
        batches.append(row)
    return {
        "product_id": product.id,
        "sku": product.sku,
        "name": product.name,
        "unit": product.unit,
        "price": amount_str(product.price),
        "cost_price": amount_str(product.cost_price),
        "tax_rate": amount_str(product.tax_rate),
        "is_active": product.is_active,
        "available": available_stock(product, now),
        "flat_counter": int(product.stock_quantity or 0),
        "expired_quantity": expired_stock(product, now),
        "expired_only": is_expired_only(product, now),
        "batches": batches,
    }


def move_exact_batch(product: Product, batch: Batch | None, delta: int) -> None:
    """
    Change one named batch by delta (negative debits), bypassing FIFO and expiry.

    With batch=None only the flat counter moves. Used for disposing expired
    stock and for replaying a posted voucher in reverse.
    """
    with translate_quantity_floor(product.id, -delta if delta < 0 else 0):
        if batch is not None:
            batch.quantity = Batch.quantity + delta
        product.stock_quantity = Product.stock_quantity + delta
        db.session.flush()
