"""Stockbridge CLI: local integration sync and reconciliation.

Operates directly on the persisted integration state. Items come from a
JSON catalog file; credentials live in the OS keychain.

Usage:
    stockbridge connect quickbooks --account "Main Books" --access-token ...
    stockbridge status
    stockbridge sync quickbooks --items items.json
    stockbridge retries process
    stockbridge webhooks ingest shopify payload.txt
    stockbridge conflicts resolve <id> accept_remote
    stockbridge ledger sync
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console

from src.cli.config import StockbridgeConfig, load_config
from src.cli.logging_setup import configure_logging
from src.cli.output import (
    as_json,
    format_audit_events,
    format_conflicts,
    format_ledger_events,
    format_ledger_sync_run,
    format_reconnect_brief,
    format_retry_jobs,
    format_status_table,
    format_sync_job,
    format_sync_jobs,
    format_webhook_events,
)
from src.db.connection import create_state_engine, get_database_url, init_db, make_session_factory
from src.errors import DomainError, IntegrationError
from src.services.integration_types import (
    ConflictResolution,
    IntegrationProvider,
    InventoryEventType,
    RetryStatus,
)
from src.services.item_catalog import InMemoryItemCatalog
from src.services.platform_service import IntegrationPlatform, build_platform
from src.services.state_store import StateStore
from src.utils.paths import get_exports_dir

_log = logging.getLogger(__name__)

app = typer.Typer(
    name="stockbridge",
    help="Local-first inventory integration sync and reconciliation",
    no_args_is_help=True,
)
retries_app = typer.Typer(help="Inspect and drive the sync retry queue")
webhooks_app = typer.Typer(help="Ingest and triage provider webhook events")
conflicts_app = typer.Typer(help="Review and resolve local/remote conflicts")
ledger_app = typer.Typer(help="Offline inventory ledger")
config_app = typer.Typer(help="Configuration management")

app.add_typer(retries_app, name="retries")
app.add_typer(webhooks_app, name="webhooks")
app.add_typer(conflicts_app, name="conflicts")
app.add_typer(ledger_app, name="ledger")
app.add_typer(config_app, name="config")

console = Console()

# --- Global state ---
_config_path: str | None = None
_items_path: str | None = None
_workspace: str | None = None
_actor: str = "Operator"
_verbose: bool = False


@app.callback()
def main(
    config: Optional[str] = typer.Option(
        None, "--config", help="Path to stockbridge.yaml config file"
    ),
    items: Optional[str] = typer.Option(
        None, "--items", help="JSON item catalog file"
    ),
    workspace: Optional[str] = typer.Option(
        None, "--workspace", "-w", help="Workspace id (omit for all workspaces)"
    ),
    actor: str = typer.Option(
        "Operator", "--actor", help="Name recorded in the audit trail"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    """Stockbridge: keep local inventory reconciled with QuickBooks and Shopify."""
    global _config_path, _items_path, _workspace, _actor, _verbose
    _config_path = config
    _items_path = items
    _workspace = workspace
    _actor = actor
    _verbose = verbose


def _load_config() -> StockbridgeConfig:
    try:
        cfg = load_config(config_path=_config_path)
    except FileNotFoundError as e:
        console.print(f"[red]Config file not found:[/red] {e}")
        raise typer.Exit(1)
    except (ValueError, TypeError) as e:
        console.print(f"[red]Config validation failed:[/red] {e}")
        raise typer.Exit(1)
    configure_logging(cfg.logging, verbose=_verbose)
    return cfg


@contextmanager
def _open_platform() -> Iterator[IntegrationPlatform]:
    """Build and load the platform; flush pending writes on exit."""
    cfg = _load_config()
    engine = create_state_engine(cfg.storage.database_url)
    init_db(engine)
    catalog = (
        InMemoryItemCatalog.from_json_file(Path(_items_path))
        if _items_path
        else InMemoryItemCatalog()
    )
    platform = build_platform(
        catalog,
        state_store=StateStore(make_session_factory(engine)),
        credential_settings=cfg.credentials,
        sync_settings=cfg.sync,
        debounce_seconds=cfg.storage.debounce_seconds,
    )
    try:
        platform.load()
        yield platform
    except (DomainError, ValueError) as e:
        _log.debug("Command failed", exc_info=True)
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)
    finally:
        platform.close()
        engine.dispose()


def _provider(value: str) -> IntegrationProvider:
    try:
        return IntegrationProvider.parse(value)
    except IntegrationError as e:
        raise typer.BadParameter(f"{e.message} {e.remediation}") from e


def _show(records, formatter, json_output: bool) -> None:
    """Print JSON verbatim, or the Rich rendering of ``records``."""
    if json_output:
        typer.echo(as_json(records))
    else:
        console.print(formatter(records))


# --- Version ---


@app.command()
def version():
    """Show Stockbridge version."""
    from importlib.metadata import PackageNotFoundError
    from importlib.metadata import version as pkg_version
    try:
        v = pkg_version("stockbridge")
    except PackageNotFoundError:
        v = "unknown"
    console.print(f"[bold]Stockbridge[/bold] v{v}")


# --- Config commands ---


@config_app.command("show")
def config_show():
    """Display resolved configuration."""
    cfg = _load_config()

    console.print("[bold]Storage:[/bold]")
    console.print(f"  database_url: {cfg.storage.database_url or get_database_url()}")
    console.print(f"  persist_debounce_ms: {cfg.storage.persist_debounce_ms}")

    console.print("\n[bold]Credentials:[/bold]")
    console.print(f"  keyring_service: {cfg.credentials.keyring_service}")
    console.print(f"  access_token_lifetime_days: {cfg.credentials.access_token_lifetime_days}")
    console.print(f"  proactive_refresh_hours: {cfg.credentials.proactive_refresh_hours}")

    console.print("\n[bold]Sync:[/bold]")
    for name, value in cfg.sync.model_dump().items():
        console.print(f"  {name}: {value}")

    console.print("\n[bold]Logging:[/bold]")
    console.print(f"  level: {cfg.logging.level}")
    console.print(f"  file: {cfg.logging.file or '—'}")


# --- Connection commands ---


@app.command()
def connect(
    provider: str = typer.Argument(help="quickbooks or shopify"),
    account: str = typer.Option(..., "--account", "-a", help="Account label"),
    access_token: str = typer.Option(
        "", "--access-token", envvar="STOCKBRIDGE_ACCESS_TOKEN", help="Access token (keeps the stored token if blank)"
    ),
    refresh_token: str = typer.Option(
        "", "--refresh-token", envvar="STOCKBRIDGE_REFRESH_TOKEN", help="Refresh token"
    ),
    webhook_secret: str = typer.Option(
        "", "--webhook-secret", envvar="STOCKBRIDGE_WEBHOOK_SECRET", help="Webhook signing secret"
    ),
):
    """Save credentials for a provider and mark it connected."""
    parsed = _provider(provider)
    with _open_platform() as platform:
        saved = platform.save_connection(
            parsed,
            _workspace,
            _actor,
            account,
            access_token=access_token,
            refresh_token=refresh_token,
            webhook_secret=webhook_secret,
        )
        if not saved:
            console.print(f"[red]Could not save {parsed.title} credentials.[/red] An account label and an access token are required.")
            raise typer.Exit(1)
        console.print(f"[green]{parsed.title} connected as {account.strip() or parsed.title}.[/green]")


@app.command()
def disconnect(provider: str = typer.Argument(help="quickbooks or shopify")):
    """Remove a provider connection and its stored secrets."""
    parsed = _provider(provider)
    with _open_platform() as platform:
        if not platform.disconnect_connection(parsed, _workspace, _actor):
            console.print(f"[yellow]{parsed.title} was not connected.[/yellow]")
            raise typer.Exit(1)
        console.print(f"[yellow]{parsed.title} disconnected.[/yellow]")


@app.command()
def refresh(provider: str = typer.Argument(help="quickbooks or shopify")):
    """Exchange the refresh token for a new access token."""
    parsed = _provider(provider)
    with _open_platform() as platform:
        if not platform.refresh_connection_token(parsed, _workspace, _actor):
            console.print(f"[red]Refresh failed for {parsed.title}.[/red] Reconnect with a refresh token.")
            raise typer.Exit(1)
        state = platform.integration_secret_state(parsed, _workspace)
        expires = state.token_expires_at.isoformat() if state.token_expires_at else "—"
        console.print(f"[green]{parsed.title} token refreshed.[/green] Expires {expires}.")


@app.command()
def status(json_output: bool = typer.Option(False, "--json", help="Output as JSON")):
    """Show connection status for every provider."""
    with _open_platform() as platform:
        states = {p: platform.integration_secret_state(p, _workspace) for p in IntegrationProvider}
        output = format_status_table(states, platform.connections(_workspace), as_json_output=json_output)
        if json_output:
            typer.echo(output)
            return
        console.print(output)
        pending = platform.pending_inventory_event_count(_workspace)
        if pending:
            console.print(f"[yellow]{pending} ledger event(s) waiting to sync.[/yellow]")


# --- Sync commands ---


@app.command()
def sync(
    provider: str = typer.Argument(help="quickbooks or shopify"),
    no_retry: bool = typer.Option(False, "--no-retry", help="Do not queue a retry on failure"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Run a sync pass against a provider."""
    parsed = _provider(provider)
    with _open_platform() as platform:
        ok = platform.run_connected_sync(parsed, _workspace, _actor, enqueue_retry_on_failure=not no_retry)
        jobs = platform.sync_jobs(_workspace)
        if jobs:
            _show(jobs[0], format_sync_job, json_output)
        if not ok:
            raise typer.Exit(1)


@app.command()
def history(json_output: bool = typer.Option(False, "--json", help="Output as JSON")):
    """List recent sync jobs."""
    with _open_platform() as platform:
        jobs = platform.sync_jobs(_workspace)
        _show(jobs, format_sync_jobs, json_output)


@app.command()
def audit(
    limit: int = typer.Option(80, "--limit", "-n", help="Maximum events to show"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Show the audit trail."""
    with _open_platform() as platform:
        events = platform.audit_events(_workspace, limit=limit)
        _show(events, format_audit_events, json_output)


# --- Retry commands ---


@retries_app.command("list")
def retries_list(
    active: bool = typer.Option(False, "--active", help="Hide resolved and abandoned jobs"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """List sync retry jobs."""
    with _open_platform() as platform:
        jobs = platform.sync_retry_jobs(_workspace, include_resolved=not active)
        _show(jobs, format_retry_jobs, json_output)


@retries_app.command("process")
def retries_process(
    max_jobs: int = typer.Option(3, "--max-jobs", help="Maximum due jobs to attempt"),
):
    """Attempt every due retry job."""
    with _open_platform() as platform:
        processed = platform.process_due_sync_retries(_workspace, _actor, max_jobs=max_jobs)
        console.print(f"Processed {processed} due retry job(s).")


@retries_app.command("now")
def retries_now(retry_id: str = typer.Argument(help="Retry job ID")):
    """Attempt one queued retry immediately."""
    with _open_platform() as platform:
        if not platform.retry_sync_job_now(retry_id, _workspace, _actor):
            console.print(f"[red]Error:[/red] Retry {retry_id} not found or not queued.")
            raise typer.Exit(1)
        retry = next((r for r in platform.sync_retry_jobs(_workspace) if r.id == retry_id), None)
        if retry is None or retry.status != RetryStatus.resolved:
            console.print(f"[yellow]Retry {retry_id} still blocked.[/yellow] {retry.last_error if retry else ''}")
            raise typer.Exit(1)
        console.print(f"[green]Retry {retry_id} recovered.[/green]")


@retries_app.command("dismiss")
def retries_dismiss(retry_id: str = typer.Argument(help="Retry job ID")):
    """Remove a retry job."""
    with _open_platform() as platform:
        if not platform.dismiss_sync_retry_job(retry_id):
            console.print(f"[red]Error:[/red] Retry job {retry_id} not found.")
            raise typer.Exit(1)
        console.print(f"Retry {retry_id} dismissed.")


# --- Webhook commands ---


@webhooks_app.command("ingest")
def webhooks_ingest(
    provider: str = typer.Argument(help="quickbooks or shopify"),
    payload: str = typer.Argument("-", help="File with one event per line ('-' for stdin)"),
):
    """Ingest pasted webhook lines and flag conflicts."""
    parsed = _provider(provider)
    text = sys.stdin.read() if payload == "-" else Path(payload).read_text(encoding="utf-8")
    with _open_platform() as platform:
        count = platform.ingest_webhook_payload(text, parsed, _workspace, _actor)
        conflicts = platform.unresolved_conflicts(_workspace, parsed)
        console.print(f"Ingested {count} event(s). {len(conflicts)} unresolved {parsed.title} conflict(s).")


@webhooks_app.command("list")
def webhooks_list(
    provider: Optional[str] = typer.Option(None, "--provider", "-p", help="Filter by provider"),
    limit: int = typer.Option(80, "--limit", "-n", help="Maximum events to show"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """List received webhook events."""
    parsed = _provider(provider) if provider else None
    with _open_platform() as platform:
        events = platform.webhook_events(_workspace, parsed, limit=limit)
        _show(events, format_webhook_events, json_output)


@webhooks_app.command("apply")
def webhooks_apply(event_id: str = typer.Argument(help="Webhook event ID")):
    """Mark a webhook event applied."""
    with _open_platform() as platform:
        if not platform.apply_webhook_event(event_id, _workspace, _actor):
            console.print(f"[red]Error:[/red] Event {event_id} not found or already ignored.")
            raise typer.Exit(1)
        console.print(f"[green]Event {event_id} applied.[/green]")


@webhooks_app.command("ignore")
def webhooks_ignore(event_id: str = typer.Argument(help="Webhook event ID")):
    """Mark a webhook event ignored."""
    with _open_platform() as platform:
        if not platform.ignore_webhook_event(event_id):
            console.print(f"[red]Error:[/red] Event {event_id} not found or already applied.")
            raise typer.Exit(1)
        console.print(f"Event {event_id} ignored.")


# --- Conflict commands ---


@conflicts_app.command("list")
def conflicts_list(
    provider: Optional[str] = typer.Option(None, "--provider", "-p", help="Filter by provider"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """List unresolved conflicts."""
    parsed = _provider(provider) if provider else None
    with _open_platform() as platform:
        conflicts = platform.unresolved_conflicts(_workspace, parsed)
        _show(conflicts, format_conflicts, json_output)


@conflicts_app.command("resolve")
def conflicts_resolve(
    conflict_id: str = typer.Argument(help="Conflict ID"),
    resolution: ConflictResolution = typer.Argument(help="keep_local or accept_remote"),
):
    """Resolve a conflict, applying the remote value when accepted."""
    with _open_platform() as platform:
        conflict = platform.require_conflict(conflict_id)
        if not platform.resolve_conflict(conflict_id, resolution, _workspace, _actor):
            console.print(f"[yellow]Conflict {conflict_id} is already {conflict.status.value}.[/yellow]")
            raise typer.Exit(1)
        console.print(f"[green]Conflict {conflict_id} resolved ({resolution.value}).[/green]")


# --- Ledger commands ---


@ledger_app.command("list")
def ledger_list(
    pending_only: bool = typer.Option(False, "--pending", help="Hide synced events"),
    limit: int = typer.Option(120, "--limit", "-n", help="Maximum events to show"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """List inventory ledger events."""
    with _open_platform() as platform:
        events = platform.inventory_events(_workspace, limit=limit, include_synced=not pending_only)
        _show(events, format_ledger_events, json_output)


@ledger_app.command("record")
def ledger_record(
    item_id: str = typer.Argument(help="Catalog item ID"),
    delta: int = typer.Argument(help="Signed unit change"),
    type: InventoryEventType = typer.Option(InventoryEventType.adjustment, "--type", help="Event type"),
    source: str = typer.Option("cli", "--source", help="Recording surface"),
    reason: str = typer.Option("", "--reason", help="Free-text reason"),
):
    """Apply a unit change to a catalog item and record it in the ledger."""
    if delta == 0 or (type is InventoryEventType.receipt and delta < 0):
        raise typer.BadParameter("delta must be non-zero (and positive for receipts)")
    with _open_platform() as platform:
        item = next((i for i in platform.catalog.items() if i.id == item_id), None)
        if item is None:
            console.print(f"[red]Error:[/red] Item {item_id} not found in catalog.")
            raise typer.Exit(1)
        platform.catalog.apply_total_units(item, item.on_hand_units + delta, _workspace)
        if type is InventoryEventType.receipt:
            event = platform.log_receipt(item, delta, _actor, _workspace, source, reason)
        else:
            event = platform.record_inventory_movement(item, delta, _actor, _workspace, type, source, reason)
        if event is None:
            console.print("[yellow]Nothing recorded.[/yellow]")
            raise typer.Exit(1)
        console.print(f"Recorded {event.type.value} {event.delta_units:+d} for {event.item_name}.")


@ledger_app.command("sync")
def ledger_sync(
    max_events: Optional[int] = typer.Option(None, "--max-events", help="Batch size"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Push pending ledger events through a connected provider."""
    with _open_platform() as platform:
        run = platform.sync_inventory_ledger(_workspace, _actor, max_events=max_events)
        _show(run, format_ledger_sync_run, json_output)
        if run.blocked_by_connection or run.failed:
            raise typer.Exit(1)


@ledger_app.command("mark-synced")
def ledger_mark_synced(
    max_count: int = typer.Option(200, "--max-count", help="Maximum events to mark"),
):
    """Mark pending ledger events synced without a provider."""
    with _open_platform() as platform:
        marked = platform.mark_inventory_events_synced(_workspace, _actor, max_count=max_count)
        console.print(f"Marked {marked} event(s) synced.")


@ledger_app.command("export")
def ledger_export(
    directory: Optional[Path] = typer.Option(None, "--dir", help="Output directory (defaults to the data exports folder)"),
    pending_only: bool = typer.Option(False, "--pending", help="Only unsynced events"),
    limit: int = typer.Option(2000, "--limit", "-n", help="Maximum rows"),
):
    """Export the ledger as CSV."""
    with _open_platform() as platform:
        path = platform.export_inventory_ledger_csv(
            _workspace,
            _actor,
            include_synced=not pending_only,
            limit=limit,
            directory=directory or get_exports_dir(),
        )
        console.print(f"[green]Ledger exported:[/green] {path}")


@ledger_app.command("brief")
def ledger_brief(json_output: bool = typer.Option(False, "--json", help="Output as JSON")):
    """Summarize what needs to happen before the ledger can sync."""
    with _open_platform() as platform:
        brief = platform.inventory_reconnect_brief(_workspace)
        _show(brief, format_reconnect_brief, json_output)


if __name__ == "__main__":
    app()
