# Overview: Flask CLI command groups for discount ledger setup, sweeps, and exports.

# backend/discount_engine/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to the package (PowerShell: $env:FLASK_APP="discount_engine").
# - Use: python -m flask <group> <command> [options]
#
# Discount ledger:
# - python -m flask discounts init-accounts --business-id 1
#   Create the discount chart-of-accounts rows (4100, 4110-4113, 2200). Idempotent.
# - python -m flask discounts reconcile --business-id 1 [--as-of 2026-10-18]
#   Compare APPLIED allocations with journal entries. Exits 1 when not reconciled.
# - python -m flask discounts unallocated --business-id 1
#   List transactions that carry a discount total but no live allocation.
# - python -m flask discounts export-allocations --business-id 1 --start 2026-10-01 --end 2026-10-31 [--output file.csv]
# - python -m flask discounts export-journal --business-id 1 --start 2026-10-01 --end 2026-10-31 [--output file.csv]
# - python -m flask discounts cache-clear --business-id 1
#   Drop cached pricing results for one business.
#
# System:
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).

import sys

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import Business
from .services import accounting_service, allocation_service
from .services.rule_engine import DiscountRuleEngine
from .time_utils import to_date, today


def _require_business(business_id: int) -> Business:
    business = db.session.query(Business).filter_by(id=business_id).first()
    if not business:
        raise click.ClickException(f"Business {business_id} not found")
    return business


def _parse_date(value, name):
    if value is None:
        return None
    try:
        return to_date(value)
    except ValueError:
        raise click.BadParameter(f"{name} must be YYYY-MM-DD")


def _emit(text: str, output: str | None) -> None:
    if output:
        with open(output, "w", encoding="utf-8", newline="") as fh:
            fh.write(text)
        click.echo(f"PASS Wrote {output}")
    else:
        click.echo(text, nl=False)


@click.group('discounts')
def discounts_group():
    """Discount ledger setup, reconciliation, and export commands."""


@discounts_group.command('init-accounts')
@click.option('--business-id', type=int, required=True, help='Business ID')
@with_appcontext
def init_accounts(business_id):
    """Seed the discount chart of accounts for a business."""
    business = _require_business(business_id)
    created = accounting_service.seed_discount_accounts(business.id)
    if created:
        click.echo(f"PASS Created accounts {', '.join(created)} for {business.name} (ID: {business.id})")
    else:
        click.echo(f"PASS All discount accounts already exist for {business.name} (ID: {business.id})")


@discounts_group.command('reconcile')
@click.option('--business-id', type=int, required=True, help='Business ID')
@click.option('--as-of', 'as_of', default=None, help='Reconciliation date (YYYY-MM-DD), default today')
@with_appcontext
def reconcile(business_id, as_of):
    """Reconcile APPLIED allocations against discount journal entries."""
    _require_business(business_id)
    result = accounting_service.reconcile_discounts(business_id, _parse_date(as_of, "--as-of") or today())
    summary = result["summary"]

    click.echo("\n" + "="*60)
    click.echo(f"Discount reconciliation as of {result['reconciliation_date']}")
    click.echo("="*60)
    click.echo(f"{'Allocations':<28} {summary['total_allocations']}")
    click.echo(f"{'Linked':<28} {summary['linked_allocations']} ({summary['linked_amount']})")
    click.echo(f"{'Unlinked':<28} {summary['unlinked_allocations']} ({summary['unlinked_amount']})")
    click.echo(f"{'Total discount':<28} {summary['total_discount_amount']}")
    click.echo(f"{'Journal debits':<28} {summary['journal_debit_total']}")
    click.echo("="*60)

    for row in result["unlinked_allocations"]:
        click.echo(f"  UNLINKED {row['allocation_number']} {row['source_type']} {row['source_number'] or '-'} "
                   f"{row['total_discount_amount']}")
    for row in result["mismatched_entries"]:
        click.echo(f"  MISMATCH {row['reference_number']} allocations={row['allocation_amount']} "
                   f"journal={row['journal_debit_total']}")

    if result["is_reconciled"]:
        click.echo("PASS Reconciled")
    else:
        click.echo("FAIL Not reconciled")
        sys.exit(1)


@discounts_group.command('unallocated')
@click.option('--business-id', type=int, required=True, help='Business ID')
@with_appcontext
def unallocated(business_id):
    """List transactions with a discount total but no live allocation."""
    _require_business(business_id)
    rows = allocation_service.get_unallocated_discounts(business_id)
    if not rows:
        click.echo("No unallocated discounts found.")
        return

    click.echo("\n" + "="*80)
    click.echo(f"{'Type':<8} {'ID':<6} {'Number':<24} {'Date':<22} {'Discount'}")
    click.echo("="*80)
    for row in rows:
        click.echo(f"{row['transaction_type']:<8} {row['transaction_id']:<6} {row['transaction_number']:<24} "
                   f"{(row['transaction_date'] or '-'):<22} {row['total_discount']}")
    click.echo("="*80 + "\n")


@discounts_group.command('export-allocations')
@click.option('--business-id', type=int, required=True, help='Business ID')
@click.option('--start', required=True, help='Start date (YYYY-MM-DD)')
@click.option('--end', required=True, help='End date (YYYY-MM-DD)')
@click.option('--output', default=None, help='Write CSV to this file instead of stdout')
@with_appcontext
def export_allocations(business_id, start, end, output):
    """Export allocations created in a date range as CSV."""
    _require_business(business_id)
    csv_text = allocation_service.export_allocations(
        business_id, _parse_date(start, "--start"), _parse_date(end, "--end"),
    )
    _emit(csv_text, output)


@discounts_group.command('export-journal')
@click.option('--business-id', type=int, required=True, help='Business ID')
@click.option('--start', required=True, help='Start date (YYYY-MM-DD)')
@click.option('--end', required=True, help='End date (YYYY-MM-DD)')
@click.option('--output', default=None, help='Write CSV to this file instead of stdout')
@with_appcontext
def export_journal(business_id, start, end, output):
    """Export discount journal entries in a date range as CSV."""
    _require_business(business_id)
    csv_text = accounting_service.export_discount_journal_entries(
        business_id, _parse_date(start, "--start"), _parse_date(end, "--end"),
    )
    _emit(csv_text, output)


@discounts_group.command('cache-clear')
@click.option('--business-id', type=int, required=True, help='Business ID')
@with_appcontext
def cache_clear(business_id):
    """Drop cached pricing results for a business."""
    dropped = DiscountRuleEngine().invalidate_cache(business_id)
    click.echo(f"PASS Dropped {dropped} cached result(s) for business {business_id}")


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


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

    click.echo("PASS Database reset complete. Run 'python -m flask discounts init-accounts' per business.")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(discounts_group)
    app.cli.add_command(system_group)
