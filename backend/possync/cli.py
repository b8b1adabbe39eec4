# Overview: Flask CLI command groups for bootstrap, inspection, and maintenance.

# backend/possync/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to possync (PowerShell: $env:FLASK_APP="possync").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init-db
#   Create all tables (idempotent).
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Store (tenant) management:
# - python -m flask stores list
#   List all stores.
# - python -m flask stores create --name "Main Street" --code "MAIN"
#   Create a new store (tenant).
# - python -m flask stores deactivate <store_id>
#   Deactivate a store; its tokens stop authenticating.
#
# Tokens (dev/test issuance; production tokens come from the auth system):
# - python -m flask tokens issue --store-id <id> --user-id terminal-1 --hours 12
#
# Maintenance:
# - python -m flask maintenance cleanup-security-events --retention-days 90
#   Delete security events older than the retention window.
# - python -m flask maintenance purge-tombstones --retention-days 30
#   Physically delete tombstoned rows older than the retention window.

import click
from datetime import timedelta
from flask.cli import with_appcontext

from .extensions import db
from .models import Store, MODEL_BY_ENTITY
from .services.auth_service import issue_token
from .services import maintenance_service


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables that do not exist yet."""
    db.create_all()
    click.echo("PASS Database initialized.")


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

    click.echo("PASS Database reset complete. Run 'python -m flask stores create' to add a tenant.")


@click.group('stores')
def stores_group():
    """Store (tenant) management commands."""


@stores_group.command('list')
@with_appcontext
def list_stores():
    """List all stores with record counts."""
    stores = db.session.query(Store).order_by(Store.name).all()

    if not stores:
        click.echo("No stores found.")
        return

    click.echo("\n" + "="*80)
    click.echo(f"{'ID':<34} {'Name':<24} {'Code':<10} {'Active':<8} {'Records'}")
    click.echo("="*80)

    for store in stores:
        records = sum(
            db.session.query(model).filter_by(store_id=store.id, deleted=False).count()
            for model in MODEL_BY_ENTITY.values()
        )
        active_str = "Yes" if store.is_active else "No"
        click.echo(f"{store.id:<34} {store.name:<24} {store.code or '-':<10} {active_str:<8} {records}")

    click.echo("="*80 + "\n")


@stores_group.command('create')
@click.option('--name', required=True, help='Store name')
@click.option('--code', help='Short code (unique)')
@with_appcontext
def create_store_cli(name, code):
    """Create a new store (tenant)."""
    if code:
        existing = db.session.query(Store).filter_by(code=code).first()
        if existing:
            click.echo(f"FAIL Store with code '{code}' already exists")
            return

    store = Store(name=name, code=code, is_active=True)
    db.session.add(store)
    db.session.commit()

    click.echo(f"PASS Created store: {store.name} (ID: {store.id})")


@stores_group.command('deactivate')
@click.argument('store_id')
@with_appcontext
def deactivate_store_cli(store_id):
    """Deactivate a store."""
    store = db.session.get(Store, store_id)
    if store is None:
        click.echo(f"FAIL Store ID {store_id} not found")
        return
    store.is_active = False
    db.session.commit()
    click.echo(f"PASS Deactivated store: {store.name}")


@click.group('tokens')
def tokens_group():
    """Bearer token issuance for terminals (dev/test)."""


@tokens_group.command('issue')
@click.option('--store-id', required=True, help='Store the token is bound to')
@click.option('--user-id', default='terminal', show_default=True, help='Token subject')
@click.option('--hours', type=int, default=12, show_default=True, help='Lifetime in hours')
@with_appcontext
def issue_token_cli(store_id, user_id, hours):
    """Print a signed token for POS_TOKEN."""
    store = db.session.query(Store).filter_by(id=store_id, is_active=True).first()
    if store is None:
        click.echo(f"FAIL Active store ID {store_id} not found")
        return
    click.echo(issue_token(user_id, store.id, ttl=timedelta(hours=hours)))


@click.group('maintenance')
def maintenance_group():
    """Maintenance commands."""


@maintenance_group.command('cleanup-security-events')
@click.option('--retention-days', type=int, default=90, show_default=True)
@with_appcontext
def cleanup_security_events_cli(retention_days):
    """
    Cleanup old security events.

    Default retention: 90 days.
    """
    deleted = maintenance_service.cleanup_security_events(retention_days=retention_days)
    click.echo(f"Deleted {deleted} security events older than {retention_days} days.")


@maintenance_group.command('purge-tombstones')
@click.option('--retention-days', type=int, default=30, show_default=True)
@with_appcontext
def purge_tombstones_cli(retention_days):
    """Delete tombstoned rows older than the retention window."""
    counts = maintenance_service.purge_tombstones(retention_days=retention_days)
    for entity, count in counts.items():
        if count:
            click.echo(f"{entity:<16} {count}")
    click.echo(f"Purged {sum(counts.values())} tombstones older than {retention_days} days.")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(stores_group)
    app.cli.add_command(tokens_group)
    app.cli.add_command(maintenance_group)
