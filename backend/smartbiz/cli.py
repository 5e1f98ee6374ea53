# Overview: Flask CLI command groups for bootstrap, stock inspection and payment maintenance.

# backend/smartbiz/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init-db
#   Create all tables that do not exist yet.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
# - python -m flask system seed-demo
#   Create a demo store, warehouse, supplier, loyalty setting and batched products.
#
# Orders:
# - python -m flask orders expire-qr
#   Clear every pending QR code whose payment window has elapsed.
#
# Stock:
# - python -m flask stock report --store-id 1 [--expired-only]
#   Per-product sellable / expired quantities with batch detail.

import click
from datetime import timedelta
from flask.cli import with_appcontext

from .extensions import db
from .models import Batch, LoyaltySetting, Product, Store, Supplier, Warehouse
from .services import order_service, stock_service
from .time_utils import utcnow


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create missing tables (idempotent)."""
    db.create_all()
    click.echo("PASS Database tables are in place")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()
    click.echo("BUILD Creating all tables...")
    db.create_all()
    click.echo("PASS Database reset complete")


@system_group.command('seed-demo')
@click.option('--store-code', default='MAIN', help='Store code')
@with_appcontext
def seed_demo(store_code):
    """
    Seed a demo store with batched products.

    Idempotent on the store code: an existing store is left untouched.
    """
    store = db.session.query(Store).filter_by(code=store_code).first()
    if store:
        click.echo(f"WARN  Store {store_code} already exists (ID: {store.id}), skipping...")
        return

    store = Store(name="SmartBiz Demo Store", code=store_code)
    db.session.add(store)
    db.session.flush()

    warehouse = Warehouse(store_id=store.id, name="Main warehouse", location="Back room")
    supplier = Supplier(
        store_id=store.id,
        name="Demo Supplier Co.",
        phone="0281234567",
        tax_code="0101234567",
        address="1 Supplier Street",
        contact_person="Supplier Contact",
    )
    db.session.add_all([warehouse, supplier])
    db.session.add(LoyaltySetting(
        store_id=store.id,
        points_per_currency="0.00005",
        currency_per_point=1000,
        min_order_value=0,
    ))
    db.session.flush()

    now = utcnow()
    demo_products = [
        # sku, name, unit, price, cost, tax_rate, [(batch_no, days_to_expiry, qty)]
        ("MILK-1L", "Fresh milk 1L", "bottle", 32000, 25000, 8, [("M-A", 5, 20), ("M-B", 12, 30)]),
        ("BREAD-01", "Sandwich bread", "pack", 18000, 12000, 0, [("B-A", 2, 15)]),
        ("WATER-05", "Mineral water 500ml", "bottle", 6000, 3500, 10, [("W-A", None, 120)]),
        ("BAG-01", "Shopping bag", "pcs", 2000, 800, -1, []),
    ]
    for sku, name, unit, price, cost, tax_rate, batches in demo_products:
        product = Product(
            store_id=store.id,
            sku=sku,
            name=name,
            unit=unit,
            price=price,
            cost_price=cost,
            tax_rate=tax_rate,
            stock_quantity=sum(q for _, _, q in batches) if batches else 500,
            default_warehouse_id=warehouse.id,
        )
        db.session.add(product)
        db.session.flush()
        for batch_no, days, qty in batches:
            db.session.add(Batch(
                product_id=product.id,
                warehouse_id=warehouse.id,
                batch_no=batch_no,
                expiry_date=now + timedelta(days=days) if days is not None else None,
                quantity=qty,
                cost_price=cost,
            ))

    db.session.commit()
    click.echo(f"PASS Seeded store {store.name} (ID: {store.id}) with {len(demo_products)} products")


@click.group('orders')
def orders_group():
    """Order maintenance commands."""


@orders_group.command('expire-qr')
@with_appcontext
def expire_qr_cli():
    """Expire pending QR payments whose window has elapsed."""
    expired = order_service.expire_stale_qr_payments()
    click.echo(f"Expired {expired} QR payment(s).")


@click.group('stock')
def stock_group():
    """Stock inspection commands."""


@stock_group.command('report')
@click.option('--store-id', type=int, required=True)
@click.option('--expired-only', is_flag=True, help='Only products holding expired stock')
@with_appcontext
def stock_report(store_id, expired_only):
    """Print sellable and expired quantities per product."""
    now = utcnow()
    products = (
        db.session.query(Product)
        .filter_by(store_id=store_id)
        .order_by(Product.sku)
        .all()
    )
    if not products:
        click.echo("No products found.")
        return

    for product in products:
        summary = stock_service.stock_summary(product, now)
        if expired_only and not summary["expired_quantity"]:
            continue
        flag = " EXPIRED-ONLY" if summary["expired_only"] else ""
        click.echo(
            f"{product.sku:<12} {product.name:<30} available={summary['available']:<6} "
            f"expired={summary['expired_quantity']:<6} counter={summary['flat_counter']}{flag}"
        )
        for batch in summary["batches"]:
            state = "expired" if batch["expired"] else "ok"
            click.echo(
                f"    - {batch['batch_no']:<12} qty={batch['quantity']:<6} "
                f"expiry={batch['expiry_date'] or '-'} {state}"
            )


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(orders_group)
    app.cli.add_command(stock_group)
