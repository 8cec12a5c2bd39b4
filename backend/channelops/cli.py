# Overview: Flask CLI command groups for bootstrap, inspection, and ledger audits.

# backend/channelops/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init-db
#   Create any missing tables (idempotent; use migrations for schema changes).
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Channel inspection:
# - python -m flask channels list [--status active]
#   List channels with code, type, goods status and payment status.
# - python -m flask channels show 12
#   Show one channel with staff, stock requests, stock buckets and sales totals.
# - python -m flask channels compensation 12
#   Show per-staff pay from recorded attendance, with sales and expense totals.
#
# Staff:
# - python -m flask staff list [--all]
#   List staff by name; --all includes deactivated members.
#
# Ledger:
# - python -m flask ledger audit [--channel-id 12]
#   Report every (channel, barcode) row breaking
#   received == sold + damaged + missing + returned + available.
#   Exits with status 1 when any row is out of balance.

import click
from flask.cli import with_appcontext

from .extensions import db
from .services import channel_service, staff_service
from .services.stock_ledger import audit_conservation


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


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


@click.group('channels')
def channels_group():
    """Channel inspection commands."""


@channels_group.command('list')
@click.option('--status', help='Filter by goods status (e.g. active)')
@with_appcontext
def list_channels(status):
    """List channels, newest first."""
    channels = channel_service.list_channels(status=status)

    if not channels:
        click.echo("No channels found.")
        return

    click.echo("\n" + "="*100)
    click.echo(f"{'ID':<5} {'Code':<16} {'Type':<8} {'Status':<16} {'Payment':<18} {'Name'}")
    click.echo("="*100)

    for ch in channels:
        click.echo(f"{ch.id:<5} {ch.code:<16} {ch.type:<8} {ch.status:<16} {ch.payment_status:<18} {ch.name}")

    click.echo("="*100 + "\n")


@channels_group.command('show')
@click.argument('channel_id', type=int)
@with_appcontext
def show_channel(channel_id):
    """Show one channel with its roll-ups."""
    data = channel_service.channel_overview(channel_id)
    if data is None:
        click.echo(f"FAIL Channel {channel_id} not found")
        raise SystemExit(1)

    click.echo(f"\n{data['code']}  {data['name']}  ({data['type']})")
    click.echo(f"Status: {data['status']}   Payment: {data['payment_status']}")
    if data['location']:
        click.echo(f"Location: {data['location']}")
    if data['start_date'] or data['end_date']:
        click.echo(f"Dates: {data['start_date'] or '?'} -> {data['end_date'] or '?'}")

    if data['staff']:
        click.echo("\nStaff:")
        for a in data['staff']:
            click.echo(f"  - {a['staff_name']}{' (main)' if a['is_main'] else ''}")

    if data['stock_requests']:
        click.echo("\nStock requests:")
        for r in data['stock_requests']:
            click.echo(
                f"  #{r['id']:<5} {r['request_type']:<8} {r['status']:<10} "
                f"requested={r['requested_total_quantity']} packed={r['packed_total_quantity']}"
            )

    if data['stock']:
        click.echo("\nStock:")
        click.echo(f"  {'Barcode':<16} {'Recv':>6} {'Avail':>6} {'Sold':>6} {'Dmg':>6} {'Miss':>6} {'Ret':>6}")
        for s in data['stock']:
            click.echo(
                f"  {s['barcode']:<16} {s['received_quantity']:>6} {s['available_quantity']:>6} "
                f"{s['sold_quantity']:>6} {s['damaged_quantity']:>6} {s['missing_quantity']:>6} "
                f"{s['returned_quantity']:>6}"
            )

    sales = data['sales']
    click.echo(
        f"\nSales: {sales['bill_count']} bills, revenue {sales['revenue_cents'] / 100:.2f}, "
        f"{sales['cancelled_count']} cancelled"
    )
    click.echo(f"Expenses: {data['expense_total_cents'] / 100:.2f}\n")


@channels_group.command('compensation')
@click.argument('channel_id', type=int)
@with_appcontext
def show_compensation(channel_id):
    """Show staff pay for a channel from recorded attendance."""
    data = channel_service.channel_compensation_summary(channel_id)
    if data is None:
        click.echo(f"FAIL Channel {channel_id} not found")
        raise SystemExit(1)

    click.echo(f"\n{data['channel_code']}  {data['channel_name']}")
    click.echo(f"{'Staff':<20} {'Days':>5} {'Wage':>12} {'Commission':>12} {'Total':>12}")
    for s in data['staff']:
        name = s['name'] + (" *" if s['is_main'] else "")
        click.echo(
            f"{name:<20} {s['days_worked']:>5} {s['wage_cents'] / 100:>12.2f} "
            f"{s['commission_cents'] / 100:>12.2f} {s['total_pay_cents'] / 100:>12.2f}"
        )
    click.echo(f"\nStaff cost: {data['total_staff_cost_cents'] / 100:.2f}")
    click.echo(f"Sales: {data['total_sales_cents'] / 100:.2f}   Expenses: {data['expense_total_cents'] / 100:.2f}\n")


@click.group('staff')
def staff_group():
    """Staff directory commands."""


@staff_group.command('list')
@click.option('--all', 'include_inactive', is_flag=True, help='Include deactivated staff')
@with_appcontext
def list_staff(include_inactive):
    """List staff by name."""
    members = staff_service.list_staff(include_inactive=include_inactive)
    if not members:
        click.echo("No staff found.")
        return

    for m in members:
        state = "" if m.is_active else " (inactive)"
        click.echo(f"{m.id:<5} {m.code or '-':<8} {m.role:<12} {m.name}{state}")


@click.group('ledger')
def ledger_group():
    """Stock ledger checks."""


@ledger_group.command('audit')
@click.option('--channel-id', type=int, help='Limit the audit to one channel')
@with_appcontext
def audit(channel_id):
    """Check the conservation law on every stock row."""
    violations = audit_conservation(channel_id)
    if not violations:
        click.echo("PASS Ledger balanced.")
        return

    click.echo(f"FAIL {len(violations)} row(s) out of balance:")
    for v in violations:
        click.echo(
            f"  channel={v['channel_id']} barcode={v['barcode']} received={v['received_quantity']} "
            f"difference={v['difference']}"
        )
    raise SystemExit(1)


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(channels_group)
    app.cli.add_command(ledger_group)
    app.cli.add_command(staff_group)
