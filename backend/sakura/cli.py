# Overview: Flask CLI command groups for bootstrap, inspection, and maintenance.

# backend/sakura/cli.py
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
#
# Coupon inspection:
# - python -m flask coupons list [--active-only] [--search SAVE]
#   List coupons with usage and status.
# - python -m flask coupons expiring --days 7
#   Active coupons ending within the next N days.
# - python -m flask coupons expired
#   Coupons past their end date.
#
# Inventory inspection:
# - python -m flask inventory reconcile --product-id 1 [--variant-id 3]
#   Compare live stock with the replayed adjustment log.
# - python -m flask inventory logs --product-id 1 [--variant-id 3] [--limit 50]
#   Print the adjustment log for one product or variant.
#
# Payment inspection:
# - python -m flask payments stats
#   Counts per status and collected/refunded totals.

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import Product
from .services import coupon_service, inventory_service, payment_service
from .time_utils import to_utc_z
from .validation import NotFoundError


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables (existing tables are left untouched)."""
    db.create_all()
    click.echo("PASS Database tables created")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA, including the append-only audit logs!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()
    click.echo("BUILD Creating all tables...")
    db.create_all()
    click.echo("PASS Database reset complete")


# =============================================================================
# COUPONS
# =============================================================================

@click.group('coupons')
def coupons_group():
    """Coupon inspection commands."""


def _echo_coupon(coupon):
    limit = coupon.usage_limit if coupon.usage_limit is not None else "-"
    click.echo(
        f"  {coupon.id:>4}  {coupon.code:<20} {coupon.coupon_type:<14} value={coupon.value} "
        f"used={coupon.used_count}/{limit} ends={to_utc_z(coupon.end_date)} [{coupon.status_label}]"
    )


@coupons_group.command('list')
@click.option('--active-only', is_flag=True, help='Only coupons usable right now')
@click.option('--search', default=None, help='Substring of code or name')
@with_appcontext
def list_coupons(active_only, search):
    """List coupons."""
    coupons = coupon_service.list_coupons(active_only=active_only, search=search)
    if not coupons:
        click.echo("No coupons found")
        return
    click.echo(f"Coupons ({len(coupons)}):")
    for coupon in coupons:
        _echo_coupon(coupon)


@coupons_group.command('expiring')
@click.option('--days', default=7, show_default=True, type=int, help='Look-ahead window in days')
@with_appcontext
def expiring_coupons(days):
    """Active coupons ending within the next N days."""
    coupons = coupon_service.get_expiring_coupons(days)
    if not coupons:
        click.echo(f"No coupons expire in the next {days} day(s)")
        return
    click.echo(f"Expiring within {days} day(s):")
    for coupon in coupons:
        _echo_coupon(coupon)


@coupons_group.command('expired')
@with_appcontext
def expired_coupons():
    """Coupons past their end date."""
    coupons = coupon_service.get_expired_coupons()
    if not coupons:
        click.echo("No expired coupons")
        return
    for coupon in coupons:
        _echo_coupon(coupon)


# =============================================================================
# INVENTORY
# =============================================================================

@click.group('inventory')
def inventory_group():
    """Inventory log inspection commands."""


@inventory_group.command('reconcile')
@click.option('--product-id', required=True, type=int)
@click.option('--variant-id', default=None, type=int)
@click.option('--all-variants', is_flag=True, help='Also reconcile every variant of the product')
@with_appcontext
def reconcile(product_id, variant_id, all_variants):
    """Compare live stock with the replayed adjustment log."""
    targets = [variant_id]
    if all_variants:
        product = db.session.get(Product, product_id)
        if product is None:
            raise click.ClickException(f"product {product_id} not found")
        targets = [None] + [v.id for v in product.variants]

    drifted = 0
    for target in targets:
        try:
            summary = inventory_service.reconcile_stock(product_id, target)
        except NotFoundError as exc:
            raise click.ClickException(str(exc))
        label = f"product {product_id}" + (f" variant {target}" if target is not None else "")
        if summary["consistent"]:
            click.echo(f"PASS {label}: stock {summary['live_stock']} matches log")
        else:
            drifted += 1
            click.echo(
                f"FAIL {label}: live {summary['live_stock']} vs replayed {summary['replayed_stock']} "
                f"(drift {summary['drift']:+d})"
            )
    if drifted:
        raise SystemExit(1)


@inventory_group.command('logs')
@click.option('--product-id', required=True, type=int)
@click.option('--variant-id', default=None, type=int)
@click.option('--limit', default=None, type=int)
@with_appcontext
def logs(product_id, variant_id, limit):
    """Print the adjustment log, oldest first."""
    entries = inventory_service.list_inventory_logs(product_id, variant_id, limit)
    if not entries:
        click.echo("No log entries")
        return
    for entry in entries:
        click.echo(
            f"  {entry.id:>6}  {to_utc_z(entry.created_at)}  {entry.action:<13} {entry.formatted_quantity:>6}  "
            f"{entry.previous_stock} -> {entry.new_stock}  {entry.reason or ''}"
        )


# =============================================================================
# PAYMENTS
# =============================================================================

@click.group('payments')
def payments_group():
    """Payment inspection commands."""


@payments_group.command('stats')
@with_appcontext
def payment_stats():
    stats = payment_service.get_payment_stats()
    click.echo(f"Transactions: {stats['total_transactions']}")
    for status, count in stats["by_status"].items():
        if count:
            click.echo(f"  {status:<20} {count}")
    click.echo(f"Collected: {stats['collected_amount']}")
    click.echo(f"Refunded:  {stats['refunded_amount']}")
    click.echo(f"Fees:      {stats['fees']}")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(coupons_group)
    app.cli.add_command(inventory_group)
    app.cli.add_command(payments_group)
