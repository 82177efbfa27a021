# Overview: Flask CLI command groups for bootstrap, ledger checks, and stock administration.

# backend/shopledger/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init-db
#   Create all tables that do not exist yet (use `flask db upgrade` for migrations).
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Ledger checks:
# - python -m flask ledger verify
#   Check stock, loyalty and payment/refund invariants; exits 1 on any violation.
#
# Stock administration:
# - python -m flask stock show --product-id 1
#   Print the stock record and latest movements for a product.
# - python -m flask stock receive --product-id 1 --quantity 10 [--note "PO-1234"] [--actor-id 1]
#   Record a delivery (stock and available grow).
# - python -m flask stock adjust --product-id 1 --stock-quantity 42 [--reason "Cycle count"] [--actor-id 1]
#   Set the counted stock level (delta applied to stock and available).

import sys

import click
from flask.cli import with_appcontext

from .extensions import db
from .services import inventory_service
from .services.errors import LedgerError
from .services.ledger_service import verify_ledgers


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables (idempotent)."""
    click.echo("START Creating tables...")
    db.create_all()
    click.echo("PASS Database schema ready")


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
    click.echo("START Recreating tables...")
    db.create_all()
    click.echo("PASS Database reset complete")


@click.group('ledger')
def ledger_group():
    """Ledger consistency commands."""


@ledger_group.command('verify')
@with_appcontext
def verify_command():
    """Check every ledger invariant; non-zero exit on violations."""
    violations = verify_ledgers(db.session)
    if not violations:
        click.echo("PASS All ledgers consistent")
        return

    for v in violations:
        click.echo(f"FAIL [{v['ledger']}] id={v['entity_id']}: {v['message']}")
    click.echo(f"FAIL {len(violations)} violation(s) found")
    sys.exit(1)


@click.group('stock')
def stock_group():
    """Stock ledger administration."""


@stock_group.command('show')
@click.option('--product-id', type=int, required=True)
@click.option('--limit', type=int, default=10, show_default=True)
@with_appcontext
def show_stock(product_id, limit):
    try:
        record = inventory_service.get_stock_record(db.session, product_id)
        movements = inventory_service.list_movements(db.session, product_id, limit=limit)
    except LedgerError as e:
        raise click.ClickException(e.message)

    click.echo(
        f"product={product_id} stock={record.stock_quantity} "
        f"available={record.available_quantity} reserved={record.reserved_quantity}"
    )
    for m in movements:
        click.echo(f"  #{m.id} {m.kind:<10} {m.quantity_delta:+d}  {m.note or ''}")


@stock_group.command('receive')
@click.option('--product-id', type=int, required=True)
@click.option('--quantity', type=click.IntRange(min=1), required=True)
@click.option('--note', default=None)
@click.option('--actor-id', type=int, default=None)
@with_appcontext
def receive_stock(product_id, quantity, note, actor_id):
    try:
        record = inventory_service.receive_stock(
            db.session,
            product_id=product_id,
            quantity=quantity,
            note=note,
            actor_id=actor_id,
        )
    except LedgerError as e:
        raise click.ClickException(e.message)
    click.echo(f"PASS product={product_id} stock={record.stock_quantity} available={record.available_quantity}")


@stock_group.command('adjust')
@click.option('--product-id', type=int, required=True)
@click.option('--stock-quantity', type=click.IntRange(min=0), required=True)
@click.option('--reason', default=None)
@click.option('--actor-id', type=int, default=None)
@with_appcontext
def adjust_stock(product_id, stock_quantity, reason, actor_id):
    try:
        record = inventory_service.adjust_stock(
            db.session,
            product_id=product_id,
            stock_quantity=stock_quantity,
            reason=reason,
            actor_id=actor_id,
        )
    except LedgerError as e:
        raise click.ClickException(e.message)
    click.echo(f"PASS product={product_id} stock={record.stock_quantity} available={record.available_quantity}")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(ledger_group)
    app.cli.add_command(stock_group)
