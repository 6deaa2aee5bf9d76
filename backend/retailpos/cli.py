# Overview: Flask CLI command groups for bootstrap, demo data and stock inspection.

# backend/retailpos/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init-db
#   Create all tables that do not exist yet (idempotent).
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
# - python -m flask system seed-demo
#   Create two branches, a few products, a customer and opening stock.
#   Requires DEMO_SEED_ENABLED=true.
#
# Stock inspection:
# - python -m flask stock list --branch-id 1
#   List stock rows of a branch with current quantities.
# - python -m flask stock movements --branch-id 1 --limit 20
#   List the newest stock movements of a branch.
# - python -m flask stock adjust --branch-id 1 --product-id 3 --change -2 --reason "Damaged"
#   Manual correction; negative changes are recorded as DAMAGE.

from decimal import Decimal

import click
from flask import current_app
from flask.cli import with_appcontext

from .extensions import db
from .models import Customer, Product
from .services import branch_service, stock_service
from .validation import NotFoundError, ValidationError


DEMO_PRODUCTS = [
    # sku, name, purchase rate, sales rate
    ("DEMO-TEA-250", "Green Tea 250g", Decimal("2.10"), Decimal("3.50")),
    ("DEMO-RICE-5K", "Basmati Rice 5kg", Decimal("7.80"), Decimal("11.25")),
    ("DEMO-OIL-1L", "Sunflower Oil 1L", Decimal("1.95"), Decimal("2.99")),
]


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables."""
    db.create_all()
    click.echo("PASS Tables created.")


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

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("PASS Database reset complete. Run 'python -m flask system seed-demo' for sample data.")


@system_group.command('seed-demo')
@with_appcontext
def seed_demo():
    """Create demo branches, products, a customer and opening stock."""
    if not current_app.config.get("DEMO_SEED_ENABLED"):
        raise click.ClickException("Demo seeding is disabled. Set DEMO_SEED_ENABLED=true.")

    if db.session.query(Product).filter(Product.sku.like("DEMO-%")).first() is not None:
        click.echo("SKIP  Demo data already present.")
        return

    main = branch_service.create_branch(name="Main Street", address="1 Main Street")
    market = branch_service.create_branch(name="Market Square", address="14 Market Square")
    click.echo(f"BUILD  Branches {main.code} and {market.code}")

    products = []
    for sku, name, purchase_rate, sales_rate in DEMO_PRODUCTS:
        product = Product(
            sku=sku,
            name=name,
            purchase_rate=purchase_rate,
            sales_rate_exc_dis_and_tax=sales_rate,
            sales_rate_inc_dis_and_tax=sales_rate,
        )
        db.session.add(product)
        products.append(product)

    db.session.add(Customer(name="Demo Customer", phone="0000000000", email="demo@retailpos.local"))
    db.session.commit()
    click.echo(f"BUILD  {len(products)} products and 1 customer")

    for index, product in enumerate(products):
        stock_service.create_stock(product_id=product.id, branch_id=main.id, quantity=50, actor_id=None)
        stock_service.create_stock(
            product_id=product.id,
            branch_id=market.id,
            quantity=10 * (index + 1),
            actor_id=None,
        )

    click.echo("PASS Demo data created.")


@click.group('stock')
def stock_group():
    """Stock inspection commands."""


@stock_group.command('list')
@click.option('--branch-id', type=int, required=True, help='Branch ID')
@with_appcontext
def list_stock(branch_id):
    """List stock rows of a branch."""
    try:
        branch = branch_service.get_branch(branch_id)
    except NotFoundError as e:
        raise click.ClickException(str(e))

    stocks = stock_service.get_stock_by_branch(branch_id)
    if not stocks:
        click.echo(f"No stock in branch {branch.code}.")
        return

    click.echo("\n" + "=" * 70)
    click.echo(f"{'Product':<8} {'SKU':<16} {'Name':<30} {'Qty':>8}")
    click.echo("=" * 70)
    for stock in stocks:
        product = stock.product
        click.echo(f"{product.id:<8} {product.sku:<16} {product.name[:30]:<30} {stock.current_quantity:>8}")
    click.echo("=" * 70 + "\n")


@stock_group.command('movements')
@click.option('--branch-id', type=int, required=True, help='Branch ID')
@click.option('--limit', type=int, default=20, show_default=True, help='Number of movements')
@with_appcontext
def list_movements(branch_id, limit):
    """List the newest stock movements of a branch."""
    movements = stock_service.get_stock_movements(branch_id, limit=limit)
    if not movements:
        click.echo("No movements found.")
        return

    for movement in movements:
        click.echo(
            f"{movement.id:<6} {movement.movement_type:<11} product={movement.product_id:<6} "
            f"{movement.previous_qty:>6} -> {movement.new_qty:<6} "
            f"{movement.reference_type or '-'}:{movement.reference_id or '-'}"
        )


@stock_group.command('adjust')
@click.option('--branch-id', type=int, required=True, help='Branch ID')
@click.option('--product-id', type=int, required=True, help='Product ID')
@click.option('--change', type=int, required=True, help='Signed quantity change')
@click.option('--reason', default=None, help='Reason recorded on the movement')
@with_appcontext
def adjust_stock_cli(branch_id, product_id, change, reason):
    """Apply a manual stock correction."""
    try:
        result = stock_service.adjust_stock(
            product_id=product_id,
            branch_id=branch_id,
            quantity_change=change,
            reason=reason,
            actor_id=None,
        )
    except (ValidationError, NotFoundError) as e:
        raise click.ClickException(str(e))
    click.echo(f"PASS New quantity: {result['new_qty']}")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(stock_group)
