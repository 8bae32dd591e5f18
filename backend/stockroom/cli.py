# Overview: Flask CLI command groups for bootstrap, inspection and the notification trigger.

# backend/stockroom/cli.py
# Commands Legend (run from the backend directory, FLASK_APP=wsgi.py):
#
# System bootstrap:
# - flask system init-db
#   Create all tables (idempotent).
# - flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
# - flask system seed-demo
#   Admin user, categories, products with opening stock, one alert rule and one completed sale.
#
# Users:
# - flask users create --name "Jane" --email jane@example.com --role manager [--phone +15550100]
# - flask users list
#
# Stock:
# - flask stock verify
#   Compare every product's stock with its movement log; exit code 1 on mismatch.
#
# Notifications (schedule hourly from cron):
# - flask notifications check [--force] [--hourly]

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import User, Category, Product
from .models.users import VALID_ROLES, ROLE_ADMIN
from .models.notifications import FREQUENCY_DAILY
from .models.sales import SALE_COMPLETED
from .services import catalog_service, products_service, sales_service
from .services.notification_service import run_notification_cycle, CycleAlreadyRunningError
from .services.stock_service import verify_stock_consistency
from .validation import ConflictError, ValidationError, USER_POLICY, validate_payload, enforce_rules_user


@click.group('system')
def system_group():
    """System bootstrap commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables that do not exist yet."""
    db.create_all()
    click.echo("PASS Database schema is up to date.")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA, stock history included.
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("PASS Database reset complete.")


@system_group.command('seed-demo')
@with_appcontext
def seed_demo():
    """Load a small demo catalog. Refuses to run on a database that already has products."""
    db.create_all()
    if db.session.query(Product.id).first():
        click.echo("SKIP Products already exist; demo data not loaded.")
        return

    admin = db.session.query(User).filter_by(role=ROLE_ADMIN).first()
    if admin is None:
        admin = catalog_service.create_user({"name": "Admin", "email": "admin@stockroom.local", "role": ROLE_ADMIN})
        click.echo(f"PASS Created admin user (ID: {admin.id})")

    categories = {}
    for name in ("Beverages", "Cleaning", "Snacks"):
        categories[name] = (
            db.session.query(Category).filter_by(name=name).first()
            or catalog_service.create_category({"name": name})
        )

    demo_products = [
        ("BEV-001", "Mineral water 1.5L", "Beverages", 60, 40, 24),
        ("BEV-002", "Orange juice 1L", "Beverages", 150, 10, 12),
        ("CLN-001", "Dish soap", "Cleaning", 220, 3, 5),
        ("SNK-001", "Salted crackers", "Snacks", 90, 30, 10),
    ]
    products = {}
    for sku, name, category, price, stock, minimum in demo_products:
        products[sku] = products_service.create_product(
            patch={
                "sku": sku,
                "name": name,
                "category_id": categories[category].id,
                "price_cents": price,
                "min_stock": minimum,
            },
            opening_stock=stock,
            actor_id=admin.id,
        )
    click.echo(f"PASS Created {len(products)} products with opening stock")

    catalog_service.create_rule({
        "category_id": categories["Cleaning"].id,
        "min_quantity": 5,
        "notification_email": admin.email,
        "notification_frequency": FREQUENCY_DAILY,
    })
    click.echo("PASS Created alert rule for category Cleaning")

    sale = sales_service.create_sale(
        items=[{"product_id": products["BEV-001"].id, "quantity": 6}],
        status=SALE_COMPLETED,
        actor_id=admin.id,
        paid_amount_cents=360,
        payment_method="cash",
    )
    click.echo(f"PASS Created completed sale {sale.invoice_number}")


@click.group('users')
def users_group():
    """Staff user commands."""


@users_group.command('create')
@click.option('--name', prompt=True, help='Display name')
@click.option('--email', prompt=True, help='Email address (receives low-stock alerts by role)')
@click.option('--role', type=click.Choice(VALID_ROLES), default='employee', show_default=True)
@click.option('--phone', default=None, help='Phone number')
@with_appcontext
def create_user_cmd(name, email, role, phone):
    """Create a staff user."""
    try:
        patch = validate_payload(
            model=User,
            payload={"name": name, "email": email, "role": role, "phone": phone},
            policy=USER_POLICY,
            partial=False,
        )
        enforce_rules_user(patch)
        user = catalog_service.create_user(patch)
    except (ValidationError, ConflictError) as e:
        raise click.ClickException(str(e))

    click.echo(f"PASS Created user {user.name} (ID: {user.id}, role: {user.role})")


@users_group.command('list')
@with_appcontext
def list_users():
    """List all users."""
    users = catalog_service.list_users()

    if not users:
        click.echo("No users found.")
        return

    click.echo("\n" + "=" * 80)
    click.echo(f"{'ID':<5} {'Name':<20} {'Email':<30} {'Role':<10} {'Active'}")
    click.echo("=" * 80)
    for user in users:
        active_str = "Yes" if user.is_active else "No"
        click.echo(f"{user.id:<5} {user.name:<20} {user.email or '-':<30} {user.role:<10} {active_str}")
    click.echo("=" * 80 + "\n")


@click.group('stock')
def stock_group():
    """Stock ledger inspection."""


@stock_group.command('verify')
@with_appcontext
def verify_stock():
    """Check current_stock against the movement log for every product."""
    mismatches = verify_stock_consistency()
    if not mismatches:
        click.echo("PASS Every product matches its movement log.")
        return

    for m in mismatches:
        click.echo(
            f"FAIL {m['sku']} (ID: {m['product_id']}): stored {m['current_stock']}, "
            f"ledger {m['ledger_quantity']}"
        )
    raise SystemExit(1)


@click.group('notifications')
def notifications_group():
    """Low-stock notification commands."""


@notifications_group.command('check')
@click.option('--force', is_flag=True, help='Ignore rule cooldowns')
@click.option('--hourly', is_flag=True, help='Use the one-hour floor instead of each rule frequency')
@with_appcontext
def check_notifications(force, hourly):
    """Run one notification cycle (schedule this hourly)."""
    click.echo("START Checking alert rules and low-stock products...")
    try:
        report = run_notification_cycle(force=force, hourly=True if hourly else None)
    except CycleAlreadyRunningError as e:
        raise click.ClickException(str(e))

    for d in report.dispatched:
        status = "PASS" if d.success else "FAIL"
        target = f"rule {d.rule_id}" if d.rule_id else "low-stock sweep"
        suffix = f": {d.error}" if d.error else ""
        click.echo(f"{status} {target} via {d.channel} to {d.recipient} ({len(d.product_ids)} products){suffix}")

    if report.rules_skipped_cooldown:
        click.echo(f"SKIP Rules in cooldown: {', '.join(str(r) for r in report.rules_skipped_cooldown)}")
    if not report.low_stock_enabled:
        click.echo("SKIP Global low-stock sweep disabled in settings")

    click.echo(f"DONE {report.sent_count} sent, {report.failed_count} failed.")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(users_group)
    app.cli.add_command(stock_group)
    app.cli.add_command(notifications_group)
