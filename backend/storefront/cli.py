# Overview: Flask CLI command groups for bootstrap and store maintenance.

# backend/storefront/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap:
# - python -m flask system init
#   Create missing tables and the store config row (idempotent).
#
# Promo codes:
# - python -m flask promos list [--active-only]
# - python -m flask promos create --code SAVE10 --type PERCENTAGE --amount 10 [--max-redemptions 100]
#
# Inventory:
# - python -m flask inventory release 42
#   Zero reserved_stock for product 42.
#
# Orders:
# - python -m flask orders delete 17 [--policy DEDUCT|RESERVE] --yes
#   Delete an order and reverse its inventory and promo effects.
# - python -m flask orders profits [--as-of 2026-10-19T12:00Z]
#   Revenue, cost and profit for day, week, month, year and lifetime.
#
# Settings:
# - python -m flask settings set-stock-policy reserve|deduct
#   reserve = auto_deduct_stock ON, deduct = auto_deduct_stock OFF.

import click
from flask.cli import with_appcontext

from .extensions import db
from .services import inventory_service, order_service, promotions_service, settings_service
from .services.inventory_service import InventoryNotFoundError
from .services.order_service import OrderNotFoundError
from .time_utils import parse_iso_datetime
from .validation import ConflictError, ValidationError


@click.group('system')
def system_group():
    """System bootstrap commands."""


@system_group.command('init')
@with_appcontext
def init_system():
    """Create tables and the store config singleton."""
    click.echo("START Initializing storefront...")
    db.create_all()
    click.echo("PASS Tables ready")

    config = settings_service.get_homepage_config()
    db.session.commit()
    click.echo(
        f"PASS Store config: auto_deduct_stock={config.auto_deduct_stock} "
        f"shipping_emails_enabled={config.shipping_emails_enabled}"
    )
    click.echo("DONE")


@click.group('promos')
def promos_group():
    """Promo code management."""


@promos_group.command('list')
@click.option('--active-only', is_flag=True, help='Only active codes')
@with_appcontext
def list_promos(active_only):
    promos = promotions_service.list_promo_codes(active_only)
    if not promos:
        click.echo("No promo codes.")
        return
    for p in promos:
        limit = p["max_redemptions"] if p["max_redemptions"] is not None else "-"
        status = "active" if p["active"] else "inactive"
        click.echo(
            f"{p['id']:>4}  {p['code']:<16} {p['discount_type']:<10} {p['amount']:>8}  "
            f"{p['redemptions']}/{limit}  {status}"
        )


@promos_group.command('create')
@click.option('--code', required=True)
@click.option('--type', 'discount_type', type=click.Choice(['PERCENTAGE', 'FIXED'], case_sensitive=False), required=True)
@click.option('--amount', required=True)
@click.option('--description', default=None)
@click.option('--min-order', 'minimum_order_value', default=None)
@click.option('--max-redemptions', type=int, default=None)
@with_appcontext
def create_promo(code, discount_type, amount, description, minimum_order_value, max_redemptions):
    data = {"code": code, "discount_type": discount_type.upper(), "amount": amount}
    if description:
        data["description"] = description
    if minimum_order_value is not None:
        data["minimum_order_value"] = minimum_order_value
    if max_redemptions is not None:
        data["max_redemptions"] = max_redemptions
    try:
        promo = promotions_service.create_promo_code(data)
    except (ValidationError, ConflictError) as e:
        raise click.ClickException(str(e))
    click.echo(f"PASS Created promo {promo.code} (ID: {promo.id})")


@click.group('inventory')
def inventory_group():
    """Inventory maintenance."""


@inventory_group.command('release')
@click.argument('product_id', type=int)
@with_appcontext
def release_reserved(product_id):
    """Zero reserved_stock for a product."""
    try:
        released = inventory_service.release_reserved(product_id)
    except InventoryNotFoundError as e:
        raise click.ClickException(str(e))
    click.echo(f"PASS Released {released} reserved units for product {product_id}")


@click.group('orders')
def orders_group():
    """Order maintenance."""


@orders_group.command('delete')
@click.argument('order_id', type=int)
@click.option('--policy', type=click.Choice(inventory_service.VALID_POLICIES, case_sensitive=False), default=None,
              help='Reverse with this policy instead of the current store setting')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def delete_order(order_id, policy, yes):
    if not yes:
        click.confirm(f"Delete order {order_id} and reverse its inventory effects?", abort=True)
    try:
        report = order_service.delete_order(order_id, policy=policy.upper() if policy else None)
    except OrderNotFoundError as e:
        raise click.ClickException(str(e))

    click.echo(f"PASS Deleted order {order_id} using {report.policy}")
    if report.policy_drift:
        click.echo(f"WARN Order was created under {report.recorded_policy}")
    for item in report.skipped_items:
        click.echo(f"WARN Skipped item {item['order_item_id']}: {item['reason']}")


@orders_group.command('profits')
@click.option('--as-of', 'as_of', default=None, help='ISO-8601 reference time (default: now, UTC)')
@with_appcontext
def order_profits(as_of):
    try:
        now = parse_iso_datetime(as_of)
    except ValueError as e:
        raise click.ClickException(f"Invalid --as-of: {e}")

    summary = order_service.profit_summary(now)

    click.echo(f"Profits as of {summary['as_of']}")
    for period, figures in summary["periods"].items():
        click.echo(
            f"  {period:<9} revenue={figures['revenue']:.2f} "
            f"cost={figures['cost']:.2f} profit={figures['profit']:.2f}"
        )


@click.group('settings')
def settings_group():
    """Store settings."""


@settings_group.command('set-stock-policy')
@click.argument('mode', type=click.Choice(['reserve', 'deduct'], case_sensitive=False))
@with_appcontext
def set_stock_policy(mode):
    config = settings_service.update_homepage_config({"auto_deduct_stock": mode.lower() == 'reserve'})
    click.echo(f"PASS auto_deduct_stock={config.auto_deduct_stock}")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(promos_group)
    app.cli.add_command(inventory_group)
    app.cli.add_command(orders_group)
    app.cli.add_command(settings_group)
