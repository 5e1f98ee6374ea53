"""
Pytest fixtures for SmartBiz backend tests.

Provides the in-memory database, a scripted QR payment provider, catalog
factories and the test client.
"""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from smartbiz import create_app
from smartbiz.errors import PaymentGatewayError
from smartbiz.extensions import db
from smartbiz.models import Batch, LoyaltySetting, Product, Store, Supplier, Warehouse
from smartbiz.services.payment_gateway import PaymentProvider, QrPayment
from smartbiz.time_utils import utcnow

WEBHOOK_SECRET = "test-checksum-key"


class FakePaymentProvider(PaymentProvider):
    """Scripted provider: tests set statuses per reference and inspect calls."""

    def __init__(self):
        self.created = []
        self.cancelled = []
        self.statuses = {}
        self.fail_cancel = False
        self.fail_status = False
        self._counter = 0

    def create_payment(self, *, order_id, amount, expires_at):
        self._counter += 1
        reference = f"{order_id}{self._counter:04d}"
        self.created.append({"order_id": order_id, "amount": amount, "reference": reference})
        return QrPayment(
            reference=reference,
            payload=f"QR|{reference}|{amount}",
            image=f"data:image/png;base64,{reference}",
            expires_at=expires_at,
        )

    def get_status(self, reference):
        if self.fail_status:
            raise PaymentGatewayError("provider unavailable")
        return self.statuses.get(reference, "PENDING")

    def cancel_payment(self, reference):
        if self.fail_cancel:
            raise PaymentGatewayError("provider unavailable")
        self.cancelled.append(reference)

    def pay(self, reference):
        self.statuses[reference] = "PAID"


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'PAYMENT_WEBHOOK_SECRET': WEBHOOK_SECRET,
        'QR_EXPIRY_MINUTES': 15,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def payment_provider(app):
    provider = FakePaymentProvider()
    app.extensions["payment_provider"] = provider
    yield provider
    app.extensions.pop("payment_provider", None)


@pytest.fixture(scope='function')
def db_session(app, payment_provider):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def store(db_session):
    store = Store(name="Main Store", code="MAIN")
    db_session.add(store)
    db_session.commit()
    return store


@pytest.fixture(scope='function')
def warehouse(db_session, store):
    warehouse = Warehouse(store_id=store.id, name="Main warehouse")
    db_session.add(warehouse)
    db_session.commit()
    return warehouse


@pytest.fixture(scope='function')
def supplier(db_session, store):
    supplier = Supplier(
        store_id=store.id,
        name="Fresh Farms Ltd",
        phone="0281112222",
        email="sales@freshfarms.test",
        address="12 Dairy Road",
        tax_code="0309998887",
        contact_person="Minh Tran",
    )
    db_session.add(supplier)
    db_session.commit()
    return supplier


@pytest.fixture(scope='function')
def loyalty_setting(db_session, store):
    setting = LoyaltySetting(
        store_id=store.id,
        points_per_currency=Decimal("0.0001"),  # 1 point per 10,000
        currency_per_point=Decimal("1000"),
        min_order_value=Decimal("50000"),
        is_active=True,
    )
    db_session.add(setting)
    db_session.commit()
    return setting


@pytest.fixture(scope='function')
def make_product(db_session, store, warehouse):
    """
    Factory for products with batches.

    batches: list of (batch_no, days_until_expiry or None, quantity).
    The flat counter always equals the batch total unless given explicitly.
    """
    counter = {"n": 0}

    def _make(
        name="Product",
        *,
        price=100000,
        cost_price=60000,
        tax_rate=10,
        batches=(),
        stock_quantity=None,
        is_active=True,
        now=None,
    ):
        counter["n"] += 1
        now = now or utcnow()
        product = Product(
            store_id=store.id,
            sku=f"SKU-{counter['n']:03d}",
            name=name,
            unit="pcs",
            price=price,
            cost_price=cost_price,
            tax_rate=tax_rate,
            stock_quantity=stock_quantity if stock_quantity is not None else sum(q for _, _, q in batches),
            default_warehouse_id=warehouse.id,
            is_active=is_active,
        )
        db_session.add(product)
        db_session.flush()
        for batch_no, days, quantity in batches:
            db_session.add(Batch(
                product_id=product.id,
                warehouse_id=warehouse.id,
                batch_no=batch_no,
                expiry_date=now + timedelta(days=days) if days is not None else None,
                quantity=quantity,
                cost_price=cost_price or 0,
            ))
        db_session.commit()
        db_session.refresh(product)
        return product

    return _make


def order_body(store, *items, payment_method="cash", **extra):
    """Order submission body; items are (product, quantity) or (product, quantity, sale_type)."""
    lines = []
    for item in items:
        product, quantity = item[0], item[1]
        line = {"product_id": product.id, "quantity": quantity}
        if len(item) > 2:
            line["sale_type"] = item[2]
        lines.append(line)
    body = {"store_id": store.id, "items": lines, "payment_method": payment_method}
    body.update(extra)
    return body


def batch_quantities(product):
    """Current batch quantities keyed by batch number, read from the database."""
    db.session.expire_all()
    rows = db.session.query(Batch).filter_by(product_id=product.id).order_by(Batch.id).all()
    return {b.batch_no: b.quantity for b in rows}


def stock_counter(product):
    db.session.expire_all()
    return db.session.get(Product, product.id).stock_quantity


FIXED_NOW = datetime(2026, 3, 1, 9, 0, 0)
