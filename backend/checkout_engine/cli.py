# Overview: Flask CLI command groups for bootstrap, stock operations and inspection.

# backend/checkout_engine/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap:
# - python -m flask system init-db
#   Create all tables (idempotent). Use `flask db upgrade` for migrated deployments.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Catalog boundary seeding:
# - python -m flask catalog add-product --sku TEE-01 --name "Basic Tee" --price-cents 1999
# - python -m flask catalog add-variant --product-id 1 --size M --color black --initial-stock 20
#
# Stock:
# - python -m flask stock receive --variant-id 1 --quantity 10 --reason "Supplier delivery"
#   Book an INBOUND movement.
# - python -m flask stock verify [--variant-id 1] [--fix]
#   Replay the ledger and compare with the running counters; --fix resets drifted counters.
# - python -m flask stock alerts
#   Low / out-of-stock variants and restock suggestions.
#
# Coupons:
# - python -m flask coupons create --code SUMMER20 --type PERCENTAGE --value 2000 --expires-at 2030-01-01T00:00:00Z --max-uses 100
# - python -m flask coupons list
#
# Checkout:
# - python -m flask checkout unresolved
#   Charged-but-unfulfilled checkouts that need manual reconciliation.

import click
from flask.cli import with_appcontext

from .extensions import db
from .errors import EngineError
from .models import StockVariant
from .services import catalog_service, stock_service, restock_service, coupon_service, checkout_service


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables that do not exist yet."""
    db.create_all()
    click.echo("PASS Database schema ready.")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA, including the stock ledger!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("PASS Database reset complete.")


@click.group('catalog')
def catalog_group():
    """Seed the catalog boundary (products and variants)."""


@catalog_group.command('add-product')
@click.option('--sku', required=True)
@click.option('--name', required=True)
@click.option('--price-cents', type=int, required=True)
@click.option('--inactive', is_flag=True, help='Create the product as not for sale')
@with_appcontext
def add_product(sku, name, price_cents, inactive):
    try:
        product = catalog_service.create_product(sku=sku, name=name, price_cents=price_cents, is_active=not inactive)
    except EngineError as e:
        raise click.ClickException(e.message)
    click.echo(f"PASS Created product {product.sku} (ID: {product.id})")


@catalog_group.command('add-variant')
@click.option('--product-id', type=int, required=True)
@click.option('--size', required=True)
@click.option('--color', default=None)
@click.option('--material', default=None)
@click.option('--threshold', 'low_stock_threshold', type=int, default=None, help='Low-stock threshold (default from config)')
@click.option('--auto-restock-level', type=int, default=None, help='Enables auto-restock suggestions up to this level')
@click.option('--initial-stock', type=int, default=0)
@with_appcontext
def add_variant(product_id, size, color, material, low_stock_threshold, auto_restock_level, initial_stock):
    try:
        variant = catalog_service.create_variant(
            product_id=product_id,
            size=size,
            color=color,
            material=material,
            low_stock_threshold=low_stock_threshold,
            auto_restock_enabled=auto_restock_level is not None,
            auto_restock_level=auto_restock_level,
        )
        if initial_stock:
            stock_service.reserve_and_commit(
                variant_id=variant.id,
                quantity=initial_stock,
                movement_type="INBOUND",
                reason="Initial stock",
                actor="cli",
            )
    except EngineError as e:
        raise click.ClickException(e.message)
    click.echo(f"PASS Created variant {variant.variant_key} (ID: {variant.id}) with stock {initial_stock}")


@click.group('stock')
def stock_group():
    """Stock ledger operations."""


@stock_group.command('receive')
@click.option('--variant-id', type=int, required=True)
@click.option('--quantity', type=int, required=True)
@click.option('--reason', default=None)
@with_appcontext
def receive(variant_id, quantity, reason):
    try:
        movement = stock_service.reserve_and_commit(
            variant_id=variant_id,
            quantity=quantity,
            movement_type="INBOUND",
            reason=reason,
            actor="cli",
        )
    except EngineError as e:
        raise click.ClickException(e.message)
    click.echo(f"PASS Variant {variant_id}: {movement.previous_stock} -> {movement.new_stock}")


@stock_group.command('verify')
@click.option('--variant-id', type=int, default=None)
@click.option('--fix', is_flag=True, help='Reset drifted running counters to the ledger value')
@with_appcontext
def verify(variant_id, fix):
    """Replay every ledger and compare it with the running counters."""
    if variant_id is not None:
        variant_ids = [variant_id]
    else:
        variant_ids = [row.id for row in db.session.query(StockVariant.id).order_by(StockVariant.id).all()]

    failures = 0
    for vid in variant_ids:
        try:
            report = stock_service.reconcile_variant(vid, actor="cli") if fix else stock_service.verify_ledger(vid)
        except EngineError as e:
            raise click.ClickException(e.message)

        if report.ok:
            click.echo(f"PASS variant {vid}: {report.movement_count} movements, stock {report.replayed_stock}")
            continue

        failures += 1
        if not report.counter_ok:
            click.echo(f"FAIL variant {vid}: counter {report.cached_stock} != ledger {report.replayed_stock}")
        for problem in report.problems:
            click.echo(f"FAIL variant {vid}: {problem}")

    if failures:
        raise click.ClickException(f"{failures} variant(s) failed verification")


@stock_group.command('alerts')
@with_appcontext
def alerts():
    for alert in restock_service.get_stock_alerts():
        v = alert.variant
        click.echo(f"{alert.level.upper():4} variant {v.id} ({v.variant_key}): {v.current_stock} (threshold {alert.threshold})")
    for suggestion in restock_service.get_restock_suggestions():
        click.echo(f"RESTOCK variant {suggestion.variant.id}: order {suggestion.suggested_quantity}")


@click.group('coupons')
def coupons_group():
    """Coupon administration."""


@coupons_group.command('create')
@click.option('--code', required=True)
@click.option('--type', 'coupon_type', type=click.Choice(['PERCENTAGE', 'FIXED_AMOUNT'], case_sensitive=False), required=True)
@click.option('--value', type=int, required=True, help='Basis points for PERCENTAGE (2000 = 20%), cents for FIXED_AMOUNT')
@click.option('--expires-at', required=True, help='ISO-8601 datetime')
@click.option('--max-uses', type=int, required=True)
@click.option('--min-purchase-cents', type=int, default=0)
@click.option('--max-discount-cents', type=int, default=None)
@click.option('--description', default=None)
@with_appcontext
def create_coupon(code, coupon_type, value, expires_at, max_uses, min_purchase_cents, max_discount_cents, description):
    payload = {
        "code": code,
        "coupon_type": coupon_type,
        "value": value,
        "expires_at": expires_at,
        "max_uses": max_uses,
        "min_purchase_cents": min_purchase_cents,
        "description": description,
    }
    if max_discount_cents is not None:
        payload["max_discount_cents"] = max_discount_cents
    try:
        coupon = coupon_service.create_coupon(payload)
    except EngineError as e:
        raise click.ClickException(e.message)
    click.echo(f"PASS Created coupon {coupon.code} (ID: {coupon.id})")


@coupons_group.command('list')
@click.option('--active-only', is_flag=True)
@with_appcontext
def list_coupons(active_only):
    for c in coupon_service.list_coupons(active_only=active_only):
        status = "active" if c.is_active else "inactive"
        click.echo(f"{c.id:>4} {c.code:<20} {c.coupon_type:<12} {c.value:>8} used {c.used_count}/{c.max_uses} {status}")


@click.group('checkout')
def checkout_group():
    """Checkout inspection."""


@checkout_group.command('unresolved')
@with_appcontext
def unresolved():
    checkouts = checkout_service.list_unresolved_checkouts()
    if not checkouts:
        click.echo("PASS No checkouts need reconciliation.")
        return
    for c in checkouts:
        click.echo(
            f"WARN {c.quote_token} payment={c.payment_reference} total={c.total_cents} {c.currency} "
            f"failure={c.failure_code} email={c.email}"
        )


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(catalog_group)
    app.cli.add_command(stock_group)
    app.cli.add_command(coupons_group)
    app.cli.add_command(checkout_group)
