"""Flask CLI commands."""

from smartbiz.models import Product, Store


def test_seed_demo_is_idempotent(app, db_session):
    runner = app.test_cli_runner()

    result = runner.invoke(args=["system", "seed-demo", "--store-code", "DEMO"])
    assert result.exit_code == 0
    assert "PASS Seeded store" in result.output

    store = db_session.query(Store).filter_by(code="DEMO").one()
    assert db_session.query(Product).filter_by(store_id=store.id).count() == 4

    again = runner.invoke(args=["system", "seed-demo", "--store-code", "DEMO"])
    assert again.exit_code == 0
    assert "already exists" in again.output
    assert db_session.query(Store).filter_by(code="DEMO").count() == 1


def test_stock_report(app, db_session):
    runner = app.test_cli_runner()
    runner.invoke(args=["system", "seed-demo", "--store-code", "DEMO"])
    store = db_session.query(Store).filter_by(code="DEMO").one()

    result = runner.invoke(args=["stock", "report", "--store-id", str(store.id)])
    assert result.exit_code == 0
    milk = next(line for line in result.output.splitlines() if line.startswith("MILK-1L"))
    assert "available=50" in milk
    assert "M-A" in result.output


def test_stock_report_expired_only(app, store, make_product):
    make_product("Yogurt", batches=[("Y-OLD", -3, 4)])
    make_product("Rice", batches=[("R-1", 90, 10)])

    result = app.test_cli_runner().invoke(args=["stock", "report", "--store-id", str(store.id), "--expired-only"])
    assert result.exit_code == 0
    assert "Yogurt" in result.output
    assert "EXPIRED-ONLY" in result.output
    assert "Rice" not in result.output


def test_stock_report_without_products(app, db_session):
    result = app.test_cli_runner().invoke(args=["stock", "report", "--store-id", "999"])
    assert "No products found." in result.output


def test_expire_qr(app, db_session):
    result = app.test_cli_runner().invoke(args=["orders", "expire-qr"])
    assert result.exit_code == 0
    assert "Expired 0 QR payment(s)." in result.output
