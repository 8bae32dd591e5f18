from stockroom.cli import init_db, seed_demo, create_user_cmd, list_users, verify_stock, check_notifications
from stockroom.extensions import db
from stockroom.models import Product, Sale, SensibleCategory, User
from sqlalchemy import update


def test_init_db(app, db_session):
    result = app.test_cli_runner().invoke(init_db)
    assert result.exit_code == 0
    assert "PASS" in result.output


def test_seed_demo_is_idempotent(app, db_session):
    runner = app.test_cli_runner()

    result = runner.invoke(seed_demo)
    assert result.exit_code == 0, result.output
    assert db.session.query(Product).count() == 4
    assert db.session.query(SensibleCategory).count() == 1
    assert db.session.query(Sale).one().invoice_number == "INV-000001"

    result = runner.invoke(seed_demo)
    assert "SKIP" in result.output
    assert db.session.query(Product).count() == 4


def test_create_and_list_users(app, db_session):
    runner = app.test_cli_runner()

    result = runner.invoke(create_user_cmd, ["--name", "Jane", "--email", "jane@shop.com", "--role", "manager"])
    assert result.exit_code == 0, result.output
    assert db.session.query(User).filter_by(email="jane@shop.com").one().role == "manager"

    result = runner.invoke(create_user_cmd, ["--name", "Dup", "--email", "JANE@shop.com", "--role", "employee"])
    assert result.exit_code != 0

    result = runner.invoke(list_users)
    assert "jane@shop.com" in result.output


def test_verify_stock_reports_drift(app, product):
    runner = app.test_cli_runner()
    assert runner.invoke(verify_stock).exit_code == 0

    # Bypass the service to simulate a stored value drifting from the log
    db.session.execute(update(Product).where(Product.id == product.id).values(current_stock=3))
    db.session.commit()

    result = runner.invoke(verify_stock)
    assert result.exit_code == 1
    assert product.sku in result.output


def test_check_notifications(app, admin_user, make_product):
    make_product(stock=0)
    result = app.test_cli_runner().invoke(check_notifications, ["--force"])
    assert result.exit_code == 0, result.output
    assert "PASS low-stock sweep via email to admin@test.local" in result.output
    assert "DONE 1 sent, 0 failed." in result.output
