# Overview: Flask CLI command groups for bootstrap and ledger maintenance.

# backend/salesledger/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap:
# - python -m flask system init [--branch "Main Branch"] [--code MAIN]
#   Idempotent: creates the tables and a default branch.
#
# Ledger maintenance:
# - python -m flask ledger reconcile [--branch 1]
#   Report stock discrepancies.
# - python -m flask ledger reconcile --apply --reason "Cycle count 2026-10"
#   Report, then correct every discrepancy found.
# - python -m flask ledger sync-invoice-counters
#   Raise invoice counters to the highest invoice number already issued.
# - python -m flask ledger recompute-balances [--fix]
#   Fold every client's ledger and report (or repair) cached balance drift.

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import Branch
from .services import client_ledger_service, invoice_service, reconciliation_service


@click.group('system')
def system_group():
    """System bootstrap commands."""


@system_group.command('init')
@click.option('--branch', 'branch_name', default='Main Branch', help='Default branch name')
@click.option('--code', 'branch_code', default='MAIN', help='Default branch code')
@with_appcontext
def init_system(branch_name, branch_code):
    """Create tables and the default branch."""
    click.echo("START Initializing SalesLedger...")
    db.create_all()

    branch = db.session.query(Branch).filter_by(code=branch_code).first()
    if not branch:
        branch = Branch(name=branch_name, code=branch_code, is_active=True)
        db.session.add(branch)
        db.session.commit()
        click.echo(f"PASS Created branch: {branch.name} (ID: {branch.id}, Code: {branch.code})")
    else:
        click.echo(f"PASS Using existing branch: {branch.name} (ID: {branch.id})")

    click.echo("DONE")


@click.group('ledger')
def ledger_group():
    """Stock reconciliation and balance maintenance commands."""


@ledger_group.command('reconcile')
@click.option('--branch', 'branch_id', type=int, default=None, help='Limit to one branch')
@click.option('--apply', 'apply_fix', is_flag=True, help='Correct the discrepancies found')
@click.option('--reason', default=None, help='Reason recorded on corrected products')
@with_appcontext
def reconcile_command(branch_id, apply_fix, reason):
    """Report stock discrepancies, optionally correcting them."""
    report = reconciliation_service.reconcile(branch_id)
    click.echo(
        f"Checked {report.total_products} products: {report.discrepancies_found} discrepancies, "
        f"affected value {report.to_dict()['affected_value']}"
    )
    for d in report.discrepancies:
        row = d.to_dict()
        click.echo(
            f"  #{row['product_id']} {row['product_name']}: expected {row['expected_stock']} "
            f"actual {row['actual_stock']} ({row['discrepancy']} {row['unit']})"
        )
    for error in report.errors:
        click.echo(f"  ERROR #{error['product_id']} {error['product_name']}: {error['error']}")

    if apply_fix and report.discrepancies:
        if not reason:
            raise click.UsageError("--reason is required with --apply")
        result = reconciliation_service.auto_correct(report.discrepancies, reason)
        click.echo(
            f"Corrected {len(result.corrected)}, skipped {len(result.skipped)}, failed {len(result.failed)}"
        )
        for failure in result.failed:
            click.echo(f"  FAIL #{failure['product_id']}: {failure['error']}")


@ledger_group.command('sync-invoice-counters')
@with_appcontext
def sync_invoice_counters_command():
    """Raise invoice counters to the highest issued sequence."""
    synced = invoice_service.sync_invoice_counters()
    if not synced:
        click.echo("Invoice counters already in sync")
        return
    for prefix, seq in synced.items():
        click.echo(f"  {prefix}: {seq}")


@ledger_group.command('recompute-balances')
@click.option('--fix', is_flag=True, help='Overwrite drifting cached balances with the ledger fold')
@with_appcontext
def recompute_balances_command(fix):
    """Compare every cached client balance with its ledger."""
    results = client_ledger_service.recompute_all_balances(fix=fix)
    drifting = [r for r in results if r["drift"] != "0.00"]
    click.echo(f"Checked {len(results)} clients: {len(drifting)} with drift")
    for r in drifting:
        status = "FIXED" if r["fixed"] else "DRIFT"
        click.echo(
            f"  {status} client {r['client_id']}: cached {r['cached_balance']} "
            f"ledger {r['computed_balance']} (drift {r['drift']})"
        )


def register_commands(app):
    app.cli.add_command(system_group)
    app.cli.add_command(ledger_group)
