# Overview: Flask CLI command groups for loyalty sync and invoice operations.

# backend/settlement/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to settlement (PowerShell: $env:FLASK_APP="settlement").
# - Use: python -m flask <group> <command> [options]
#
# Loyalty points:
# - python -m flask points sync-all [--batch-size 100] [--max-batches 5] [--concurrency 5]
#   Refresh cached balances from Verifone for every user with a phone number.
# - python -m flask points balance 42 [--json]
#   Show a user's cached balance and ledger entries.
#
# Invoices:
# - python -m flask invoices create ORDER-1001
#   Run the Verifone invoice job synchronously for one order.
# - python -m flask invoices show ORDER-1001
#   Print the order with its items, coupons and invoice state as JSON.
# - python -m flask invoices reset ORDER-1001 --yes
#   Clear a failed attempt so the job may run again (manual retry).

import json

import click
from flask import current_app
from flask.cli import with_appcontext

from .extensions import db
from .models import Order
from .models.orders import INVOICE_STATUS_FAILED, INVOICE_STATUS_NONE
from .services import invoice_job, points_service


@click.group('points')
def points_group():
    """Loyalty points ledger commands."""


@points_group.command('sync-all')
@click.option('--batch-size', type=int, default=None, help='Users per page')
@click.option('--max-batches', type=int, default=None, help='Stop after this many pages')
@click.option('--concurrency', type=int, default=None, help='Parallel Verifone lookups')
@with_appcontext
def sync_all(batch_size, max_batches, concurrency):
    """Sync every user's points balance from Verifone."""
    batch_size = batch_size or current_app.config.get('POINTS_SYNC_BATCH_SIZE', 100)
    concurrency = concurrency or current_app.config.get('POINTS_SYNC_CONCURRENCY', 5)

    click.echo(f"START Syncing points (batch size {batch_size}, concurrency {concurrency})...")
    summary = points_service.batch_sync_all_users(
        batch_size=batch_size,
        max_batches=max_batches,
        concurrency=concurrency,
    )

    click.echo(
        f"PASS Processed {summary.total_processed}: "
        f"{summary.updated} updated, {summary.skipped} skipped, {summary.failed} failed"
    )
    for error in summary.errors:
        click.echo(f"FAIL User {error['user_id']}: {error['error']}")
    if summary.failed:
        raise SystemExit(1)


@points_group.command('balance')
@click.argument('user_id', type=int)
@click.option('--json', 'as_json', is_flag=True, help='Print balance and entries as JSON')
@with_appcontext
def balance(user_id, as_json):
    """Show a user's points balance and ledger entries."""
    try:
        current = points_service.get_balance(user_id)
    except points_service.PointsError as e:
        click.echo(f"FAIL {e}")
        raise SystemExit(1)

    entries = points_service.list_entries(user_id)
    if as_json:
        click.echo(json.dumps({
            'user_id': user_id,
            'balance': str(current),
            'entries': [entry.to_dict() for entry in entries],
        }, indent=2))
        return

    click.echo(f"User {user_id} balance: {current}")
    if not entries:
        click.echo("No ledger entries.")
        return

    click.echo(f"{'ID':<6} {'Order':<8} {'Kind':<6} {'Delta':>10}  Reason")
    for entry in entries:
        click.echo(f"{entry.id:<6} {entry.order_id:<8} {entry.kind:<6} {str(entry.delta):>10}  {entry.reason or ''}")


@click.group('invoices')
def invoices_group():
    """Verifone invoice commands."""


@invoices_group.command('create')
@click.argument('order_number')
@with_appcontext
def create_invoice(order_number):
    """Run the invoice job for ORDER_NUMBER in the foreground."""
    status = invoice_job.create_invoice(order_number)
    order = db.session.query(Order).filter_by(order_number=order_number).first()
    if order is None:
        click.echo(f"FAIL Order {order_number} not found")
        raise SystemExit(1)
    if status is None:
        click.echo(f"WARN  Invoice already attempted for {order_number} (status: {order.verifone_invoice_status})")
        return
    if status == INVOICE_STATUS_FAILED:
        click.echo(f"FAIL Invoice failed for {order_number}: {order.verifone_invoice_error}")
        raise SystemExit(1)
    click.echo(f"PASS Invoice {order.verifone_invoice_no} created for {order_number}")


@invoices_group.command('show')
@click.argument('order_number')
@with_appcontext
def show_order(order_number):
    """Print ORDER_NUMBER with items, applied coupons and invoice state."""
    order = db.session.query(Order).filter_by(order_number=order_number).first()
    if order is None:
        click.echo(f"FAIL Order {order_number} not found")
        raise SystemExit(1)
    click.echo(json.dumps(order.to_dict(), indent=2))


@invoices_group.command('reset')
@click.argument('order_number')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_invoice(order_number, yes):
    """Clear a failed invoice attempt so it can be retried."""
    order = db.session.query(Order).filter_by(order_number=order_number).first()
    if order is None:
        click.echo(f"FAIL Order {order_number} not found")
        raise SystemExit(1)
    if order.verifone_invoice_status != INVOICE_STATUS_FAILED:
        click.echo(f"FAIL Only failed invoices can be reset (status: {order.verifone_invoice_status})")
        raise SystemExit(1)

    if not yes:
        click.confirm(f"WARN Verifone may already hold an invoice for {order_number}. Reset anyway?", abort=True)

    order.verifone_invoice_status = INVOICE_STATUS_NONE
    order.verifone_invoice_attempted_at = None
    order.verifone_invoice_error = None
    db.session.commit()
    click.echo(f"PASS Invoice state cleared for {order_number}")



def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(points_group)
    app.cli.add_command(invoices_group)
