# Overview: Flask CLI command groups for schema bootstrap and inventory/sales inspection.

# backend/salesbackend/cli.py
# Commands Legend (run from the repository root):
# - flask --app salesbackend <group> <command> [options]
#
# System bootstrap/repair:
# - flask --app salesbackend system init-db
#   Create all tables (idempotent).
# - flask --app salesbackend system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Inventory:
# - flask --app salesbackend inventory low-stock
#   Active products at or below their minimum stock level.
# - flask --app salesbackend inventory reorder
#   Active products at or below their reorder point.
# - flask --app salesbackend inventory adjust --reason "Damaged in storage" SKU-1 -- -3
#   Signed stock correction; fails if the result would be negative.
# - flask --app salesbackend inventory restock SKU-1 50
#   Receive units outside of a purchase order.
#
# Promotions / sales:
# - flask --app salesbackend promotions list-active
# - flask --app salesbackend sales overdue
# - flask --app salesbackend sales summary --start 2030-01-01 --end 2030-01-31

import click
from flask import current_app
from flask.cli import with_appcontext

from .extensions import db
from .models.enums import enum_value
from .money import money_str
from .services import products_service, promotions_service, reporting_service, sales_service, stock_service
from .validation import EngineError


def _fail(action: str, error: EngineError) -> None:
    current_app.logger.exception("CLI %s failed", action)
    click.echo(f"FAIL Error: {error.message}")
    raise click.exceptions.Exit(1)


@click.group('system')
def system_group():
    """Schema bootstrap and repair commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables that do not exist yet."""
    db.create_all()
    click.echo("PASS Database tables created.")


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

    click.echo("PASS Database reset complete.")


@click.group('inventory')
def inventory_group():
    """Stock level inspection and corrections."""


def _echo_products(products, empty_message):
    if not products:
        click.echo(empty_message)
        return
    click.echo(f"{'SKU':<16} {'NAME':<32} {'STOCK':>7} {'MIN':>5} {'REORDER':>8}")
    click.echo("-" * 72)
    for product in products:
        click.echo(
            f"{product.sku:<16} {product.name[:32]:<32} {product.stock_quantity:>7} "
            f"{product.min_stock_level:>5} {product.reorder_point:>8}"
        )
    click.echo(f"\n Total: {len(products)} products\n")


@inventory_group.command('low-stock')
@with_appcontext
def low_stock_cli():
    """List active products at or below their minimum stock level."""
    _echo_products(stock_service.low_stock_products(), "PASS No products are low on stock.")


@inventory_group.command('reorder')
@with_appcontext
def reorder_cli():
    """List active products at or below their reorder point."""
    _echo_products(stock_service.products_needing_reorder(), "PASS No products need reordering.")


@inventory_group.command('adjust')
@click.argument('sku')
@click.argument('delta', type=int)
@click.option('--reason', help='Reason recorded on the stock movement')
@with_appcontext
def adjust_cli(sku, delta, reason):
    """
    Apply a signed stock correction.

    Example:
        flask --app salesbackend inventory adjust --reason "Damaged" SKU-1 -- -3
    """
    try:
        product = products_service.get_product_by_sku(sku)
        product = stock_service.adjust_stock(product.id, delta, reason)
    except EngineError as e:
        _fail("inventory adjust", e)
    click.echo(f"PASS {product.sku} adjusted by {delta:+d}; stock is now {product.stock_quantity}")


@inventory_group.command('restock')
@click.argument('sku')
@click.argument('quantity', type=int)
@click.option('--note', help='Note recorded on the stock movement')
@with_appcontext
def restock_cli(sku, quantity, note):
    """Receive units for a product outside of a purchase order."""
    try:
        product = products_service.get_product_by_sku(sku)
        product = stock_service.restock_product(product.id, quantity, note)
    except EngineError as e:
        _fail("inventory restock", e)
    click.echo(f"PASS {product.sku} restocked with {quantity}; stock is now {product.stock_quantity}")


@click.group('promotions')
def promotions_group():
    """Promotion inspection."""


@promotions_group.command('list-active')
@with_appcontext
def list_active_cli():
    """List promotions that are active right now."""
    promotions = promotions_service.list_active_promotions()
    if not promotions:
        click.echo("No active promotions.")
        return
    for promotion in promotions:
        code = promotion.coupon_code or ("(auto)" if promotion.auto_apply else "-")
        click.echo(
            f"  {promotion.id:>4} {promotion.name:<32} {enum_value(promotion.promotion_type):<16} "
            f"{code:<16} used {promotion.usage_count}/{promotion.usage_limit or 'unlimited'}"
        )
    click.echo(f"\n Total: {len(promotions)} active promotions\n")


@click.group('sales')
def sales_group():
    """Sales inspection."""


@sales_group.command('overdue')
@with_appcontext
def overdue_cli():
    """List unpaid sales past their due date."""
    sales = sales_service.overdue_sales()
    if not sales:
        click.echo("PASS No overdue sales.")
        return
    for sale in sales:
        click.echo(
            f"  {sale.sale_number:<36} customer={sale.customer_id:<6} "
            f"due={sale.due_date:%Y-%m-%d} outstanding={money_str(sale.outstanding_amount)}"
        )
    click.echo(f"\n Total: {len(sales)} overdue sales\n")


@sales_group.command('summary')
@click.option('--start', help='ISO date or datetime (inclusive)')
@click.option('--end', help='ISO date or datetime (inclusive)')
@with_appcontext
def summary_cli(start, end):
    """Revenue, daily totals and product performance for completed sales."""
    try:
        summary = reporting_service.sales_summary(start, end)
    except EngineError as e:
        _fail("sales summary", e)
    click.echo(
        f"Completed sales: {summary['total_sales']}  revenue={money_str(summary['total_revenue'])}  "
        f"average={money_str(summary['average_sale_amount'])}"
    )
    for day in summary["daily"]:
        click.echo(f"  {day['date']}  {day['sales_count']:>4}  {money_str(day['revenue']):>12}")
    for row in summary["products"]:
        click.echo(f"  {row['product_name'][:32]:<32} {row['quantity_sold']:>6} {money_str(row['revenue']):>12}")


def register_commands(app):
    """Register all CLI command groups with the Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(inventory_group)
    app.cli.add_command(promotions_group)
    app.cli.add_command(sales_group)
