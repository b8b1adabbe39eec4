# Overview: Terminal-side CLI for running and inspecting the sync client.

# backend/possync/client/cli.py
# Commands Legend:
# Settings come from the environment (POS_API_URL, POS_DB_PATH, POS_STORE_ID,
# POS_TOKEN, SYNC_INTERVAL_SECONDS, ...); options override them.
#
# - possync-client sync-once
#   Run a single sync pass and print its report.
# - possync-client run
#   Heartbeat + periodic sync until interrupted (Ctrl+C).
# - possync-client status
#   Pending journal entries, dirty rows, cursors, last sync time.
# - possync-client conflicts
#   List rows that need manual resolution.
# - possync-client resolve product <local_id> --choice server|client
#   Settle a needs-attention row.

import asyncio
import json
import logging

import click

from .config import ClientConfig
from .session import SyncSession


def _load_config(ctx, api_url, db_path, store_id, token):
    config = ClientConfig.from_env()
    if api_url:
        config.api_url = api_url.rstrip("/")
    if db_path:
        config.db_path = db_path
    if store_id:
        config.store_id = store_id
    if token:
        config.token = token
    if not config.store_id:
        raise click.UsageError("store id missing (set POS_STORE_ID or pass --store-id)")
    ctx.obj = config


@click.group('possync-client')
@click.option('--api-url', default=None, help='Sync API base URL')
@click.option('--db-path', default=None, help='Local SQLite file')
@click.option('--store-id', default=None, help='Tenant id')
@click.option('--token', default=None, help='Bearer token')
@click.option('-v', '--verbose', is_flag=True, help='Debug logging')
@click.pass_context
def main(ctx, api_url, db_path, store_id, token, verbose):
    """Offline-first POS sync client."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    _load_config(ctx, api_url, db_path, store_id, token)


@main.command('sync-once')
@click.pass_obj
def sync_once(config):
    """Run one sync pass."""

    async def _run():
        async with SyncSession(config) as session:
            report = await session.sync_now()
            return report, session.supervisor.status()

    report, connectivity = asyncio.run(_run())
    if report is None:
        click.echo(f"FAIL Server unreachable ({connectivity.reconnect_attempts} attempt(s)).")
        raise SystemExit(1)

    click.echo(json.dumps(report.to_dict(), indent=2))
    if report.aborted:
        click.echo(f"FAIL Pass aborted: {report.aborted}")
        raise SystemExit(1)
    click.echo(f"PASS pushed={report.pushed} pulled={report.pulled} "
               f"resolved={report.resolved} needs-attention={report.refused}")


@main.command('run')
@click.pass_obj
def run(config):
    """Heartbeat and periodic sync until interrupted."""

    async def _run():
        async with SyncSession(config) as session:
            session.errors.subscribe(lambda e: click.echo(f"WARN [{e.kind.value}] {e.message}"))
            session.supervisor.subscribe(
                lambda s: click.echo("ONLINE" if s.online else "OFFLINE")
            )
            await session.start()
            while session.authenticated:
                await asyncio.sleep(1)
            click.echo("FAIL Token rejected; sign in again.")

    click.echo(f"Syncing store {config.store_id} every {config.sync_interval:.0f}s (Ctrl+C to stop)")
    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        click.echo("Stopped.")


@main.command('status')
@click.pass_obj
def status(config):
    """Show local sync state."""
    session = SyncSession(config)
    try:
        info = session.engine.status()
        cursors = {
            entity: session.store.get_meta(session.engine.cursor_key(entity))
            for entity in session.engine.entities
        }
    finally:
        session.store.close()
    info["cursors"] = cursors
    click.echo(json.dumps(info, indent=2, default=str))


@main.command('conflicts')
@click.pass_obj
def conflicts(config):
    """List rows waiting for manual resolution."""
    session = SyncSession(config)
    try:
        rows = session.engine.conflicts()
    finally:
        session.store.close()

    if not rows:
        click.echo("PASS No conflicts.")
        return
    click.echo(f"{'ENTITY':<15} {'LOCAL ID':<34} {'SERVER VERSION':<15} LOCAL BASE")
    for row in rows:
        server_version = (row.conflict_data or {}).get("syncVersion")
        click.echo(f"{row.entity:<15} {row.local_id:<34} {str(server_version):<15} {row.base_version}")


@main.command('resolve')
@click.argument('entity')
@click.argument('local_id')
@click.option('--choice', type=click.Choice(['server', 'client']), required=True)
@click.pass_obj
def resolve(config, entity, local_id, choice):
    """Settle a needs-attention row by keeping one side."""
    session = SyncSession(config)
    try:
        row = session.engine.resolve_manually(entity, local_id, choice)
    except (ValueError, KeyError) as e:
        click.echo(f"FAIL {e}")
        raise SystemExit(1)
    finally:
        session.store.close()

    if row is None:
        click.echo(f"PASS {entity} {local_id} removed (server deleted it).")
    elif row.dirty:
        click.echo(f"PASS {entity} {local_id} queued for upload at base v{row.base_version}.")
    else:
        click.echo(f"PASS {entity} {local_id} now matches server v{row.base_version}.")
