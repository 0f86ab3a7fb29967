# Overview: Flask CLI command groups for bootstrap, ledger inspection, outbox draining and reconciliation.

# backend/invoicecore/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to invoicecore (PowerShell: $env:FLASK_APP="invoicecore").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap:
# - python -m flask system init-db
#   Create all tables (dev only; use flask db upgrade for migrations).
# - python -m flask system create-org --name "Acme" --code ACME --branch "Main"
#   Create an organization with its first branch and system accounts.
#
# Ledger:
# - python -m flask ledger seed-accounts --org-id 1
#   Create the system chart of accounts (idempotent).
# - python -m flask ledger trial-balance --org-id 1
#   Print debit/credit totals per account.
# - python -m flask ledger verify-invoice --org-id 1 --invoice-id 42
#   Check that every posting set of an invoice balances.
#
# Domain events:
# - python -m flask events dispatch [--limit 100]
#   Drain PENDING outbox rows to subscribers.
# - python -m flask events requeue-failed [--org-id 1]
#   Move FAILED rows back to PENDING.
#
# Customers:
# - python -m flask customers reconcile --org-id 1 [--customer-id 7] [--fix]
#   Compare balance accumulators with invoice history.

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import Branch, Customer, Organization
from .services import account_service, customer_service, event_service, journal_service
from .services.concurrency import run_atomic


def _money(cents: int) -> str:
    sign = "-" if cents < 0 else ""
    cents = abs(cents)
    return f"{sign}{cents // 100}.{cents % 100:02d}"


@click.group('system')
def system_group():
    """System bootstrap commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables for the current database URL."""
    db.create_all()
    click.echo("PASS Database tables created")


@system_group.command('create-org')
@click.option('--name', required=True, help='Organization name')
@click.option('--code', required=True, help='Short code (unique)')
@click.option('--branch', 'branch_name', default='Main Branch', help='First branch name')
@with_appcontext
def create_org_cli(name, code, branch_name):
    """Create an organization, its first branch and the system chart of accounts."""
    if db.session.query(Organization).filter_by(code=code).first():
        click.echo(f"FAIL Organization code {code} already exists", err=True)
        raise SystemExit(1)

    def _create():
        org = Organization(name=name, code=code, is_active=True)
        db.session.add(org)
        db.session.flush()
        branch = Branch(org_id=org.id, name=branch_name)
        db.session.add(branch)
        db.session.flush()
        account_service.seed_system_accounts(org.id)
        return org, branch

    org, branch = run_atomic(_create, label="create-org")
    click.echo(f"PASS Created organization {org.name} (ID: {org.id}) with branch {branch.name} (ID: {branch.id})")


@click.group('ledger')
def ledger_group():
    """Chart of accounts and journal inspection."""


@ledger_group.command('seed-accounts')
@click.option('--org-id', type=int, required=True, help='Organization ID')
@with_appcontext
def seed_accounts(org_id):
    accounts = run_atomic(lambda: account_service.seed_system_accounts(org_id), label="seed-accounts")
    for account in accounts:
        click.echo(f"{account.code:>6}  {account.name:<28} {account.account_type}")


@ledger_group.command('trial-balance')
@click.option('--org-id', type=int, required=True, help='Organization ID')
@with_appcontext
def trial_balance_cli(org_id):
    """Print the trial balance; exits non-zero when debits and credits differ."""
    report = journal_service.trial_balance(org_id)
    click.echo(f"{'Code':>6}  {'Account':<28} {'Debit':>14} {'Credit':>14} {'Balance':>14}")
    for row in report["accounts"]:
        click.echo(
            f"{row['code']:>6}  {row['name']:<28} {_money(row['debit_cents']):>14} "
            f"{_money(row['credit_cents']):>14} {_money(row['balance_cents']):>14}"
        )
    click.echo(
        f"{'':>6}  {'TOTAL':<28} {_money(report['total_debit_cents']):>14} "
        f"{_money(report['total_credit_cents']):>14}"
    )
    if not report["balanced"]:
        click.echo("FAIL Ledger is out of balance", err=True)
        raise SystemExit(1)
    click.echo("PASS Ledger balanced")


@ledger_group.command('verify-invoice')
@click.option('--org-id', type=int, required=True, help='Organization ID')
@click.option('--invoice-id', type=int, required=True, help='Invoice ID')
@with_appcontext
def verify_invoice(org_id, invoice_id):
    result = journal_service.verify_reference_balanced(org_id, invoice_id)
    if not result:
        click.echo("No postings found")
        return
    ok = True
    for reference_type, row in sorted(result.items()):
        status = "PASS" if row["balanced"] else "FAIL"
        ok = ok and row["balanced"]
        click.echo(
            f"{status} {reference_type:<12} debit {_money(row['debit_cents'])} credit {_money(row['credit_cents'])}"
        )
    if not ok:
        raise SystemExit(1)


@click.group('events')
def events_group():
    """Domain event outbox."""


@events_group.command('dispatch')
@click.option('--limit', type=int, default=100, show_default=True, help='Maximum events to deliver')
@with_appcontext
def dispatch_events(limit):
    stats = event_service.dispatch_pending_events(limit=limit)
    click.echo(
        f"Dispatched {stats['dispatched']}, retrying {stats['retrying']}, failed {stats['failed']}"
    )


@events_group.command('requeue-failed')
@click.option('--org-id', type=int, help='Limit to one organization')
@with_appcontext
def requeue_failed(org_id):
    count = event_service.requeue_failed(org_id)
    click.echo(f"Requeued {count} event(s)")


@click.group('customers')
def customers_group():
    """Customer balance maintenance."""


@customers_group.command('reconcile')
@click.option('--org-id', type=int, required=True, help='Organization ID')
@click.option('--customer-id', type=int, help='Single customer (default: all)')
@click.option('--fix', is_flag=True, help='Overwrite drifted accumulators with expected values')
@with_appcontext
def reconcile_customers(org_id, customer_id, fix):
    """Compare total purchases / outstanding balance with invoice history."""
    if customer_id:
        ids = [customer_id]
    else:
        ids = [row[0] for row in db.session.query(Customer.id).filter_by(org_id=org_id).order_by(Customer.id).all()]

    drifted = 0
    for cid in ids:
        result = run_atomic(lambda: customer_service.reconcile_customer(org_id, cid, fix=fix), label="reconcile")
        if result["in_sync"]:
            continue
        drifted += 1
        click.echo(
            f"DRIFT customer {cid}: outstanding {_money(result['actual']['outstanding_balance_cents'])} "
            f"expected {_money(result['expected']['outstanding_balance_cents'])}"
            + (" (fixed)" if result["fixed"] else "")
        )
    click.echo(f"Checked {len(ids)} customer(s), {drifted} drifted")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(ledger_group)
    app.cli.add_command(events_group)
    app.cli.add_command(customers_group)
