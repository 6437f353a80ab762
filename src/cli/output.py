"""CLI output formatters for Rich tables and JSON.

Provides human-readable Rich table output (default) and machine-parseable
JSON output (--json flag). All formatting goes through these functions
so the CLI commands stay clean.
"""

import dataclasses
import json
from datetime import datetime

from pydantic import BaseModel
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from src.services.integration_models import (
    IntegrationConflict,
    IntegrationConnection,
    IntegrationSyncJob,
    IntegrationSyncRetryJob,
    IntegrationWebhookEvent,
    InventoryLedgerEvent,
    PlatformAuditEvent,
)
from src.services.integration_types import IntegrationProvider, IntegrationSecretState
from src.services.ledger_service import LedgerSyncRun, ReconnectBrief

console = Console()

STATUS_COLORS = {
    "connected": "green",
    "token_expired": "yellow",
    "disconnected": "dim",
    "success": "green",
    "failed": "red",
    "queued": "yellow",
    "resolved": "green",
    "abandoned": "red",
    "pending": "yellow",
    "applied": "green",
    "ignored": "dim",
    "unresolved": "yellow",
    "synced": "green",
}


def _colored(status: str) -> str:
    color = STATUS_COLORS.get(status, "white")
    return f"[{color}]{status}[/{color}]"


def format_timestamp(value: datetime | None) -> str:
    """Format an aware timestamp as ``YYYY-mm-dd HH:MM:SS`` or "—" for None."""
    if value is None:
        return "—"
    return value.strftime("%Y-%m-%d %H:%M:%S")


def _to_jsonable(record: object) -> object:
    if isinstance(record, BaseModel):
        return record.model_dump(mode="json")
    if dataclasses.is_dataclass(record) and not isinstance(record, type):
        return dataclasses.asdict(record)
    return record


def as_json(records: object) -> str:
    """Serialize a model, dataclass, or list of either to indented JSON."""
    if isinstance(records, list):
        payload = [_to_jsonable(r) for r in records]
    else:
        payload = _to_jsonable(records)
    return json.dumps(payload, indent=2, default=str)


def _render(renderable) -> str:
    with console.capture() as capture:
        console.print(renderable)
    return capture.get()


def _secret_flags(state: IntegrationSecretState) -> str:
    present = [
        name
        for name, has in (
            ("access", state.has_access_token),
            ("refresh", state.has_refresh_token),
            ("webhook", state.has_webhook_secret),
        )
        if has
    ]
    return " ".join(present) or "none"


def format_status_table(
    states: dict[IntegrationProvider, IntegrationSecretState],
    connections: list[IntegrationConnection],
    as_json_output: bool = False,
) -> str:
    """Format per-provider connection status as a Rich table or JSON.

    Args:
        states: Secret state for every provider in the workspace.
        connections: Stored connection records for the workspace.
        as_json_output: If True, return JSON string instead of Rich table.

    Returns:
        Formatted string output.
    """
    by_provider = {c.provider: c for c in connections}
    if as_json_output:
        return json.dumps(
            [
                {
                    "provider": provider.value,
                    "account_label": by_provider[provider].account_label if provider in by_provider else None,
                    **dataclasses.asdict(state),
                }
                for provider, state in states.items()
            ],
            indent=2,
            default=str,
        )

    table = Table(title="Integrations", show_lines=True)
    table.add_column("Provider", style="cyan", no_wrap=True)
    table.add_column("Account")
    table.add_column("Status", no_wrap=True, min_width=len("token_expired"))
    table.add_column("Secrets")
    table.add_column("Expires")
    table.add_column("Last Sync")

    for provider, state in states.items():
        connection = by_provider.get(provider)
        table.add_row(
            provider.title,
            connection.account_label if connection else "—",
            _colored(state.status.value),
            _secret_flags(state),
            format_timestamp(state.token_expires_at),
            format_timestamp(connection.last_sync_at if connection else None),
        )
    return _render(table)


def format_sync_jobs(jobs: list[IntegrationSyncJob]) -> str:
    """Format sync history as a Rich table."""
    if not jobs:
        return "No sync jobs found."

    table = Table(title="Sync Jobs")
    table.add_column("ID", style="dim", no_wrap=True)
    table.add_column("Provider", style="cyan")
    table.add_column("Status")
    table.add_column("Pulled", justify="right")
    table.add_column("Pushed", justify="right")
    table.add_column("Finished")
    table.add_column("Message")
    for job in jobs:
        table.add_row(
            job.id[:8],
            job.provider.title,
            _colored(job.status.value),
            str(job.pulled_records),
            str(job.pushed_records),
            format_timestamp(job.finished_at),
            job.message,
        )
    return _render(table)


def format_sync_job(job: IntegrationSyncJob) -> str:
    """Format a single sync outcome as a Rich panel."""
    color = STATUS_COLORS.get(job.status.value, "white")
    lines = [
        f"[bold]Provider:[/bold] {job.provider.title}",
        f"[bold]Status:[/bold]   {_colored(job.status.value)}",
        f"[bold]Pulled:[/bold]   {job.pulled_records}",
        f"[bold]Pushed:[/bold]   {job.pushed_records}",
        "",
        job.message,
    ]
    return _render(Panel("\n".join(lines), title="Sync", border_style=color))


def format_retry_jobs(jobs: list[IntegrationSyncRetryJob]) -> str:
    """Format the retry queue as a Rich table."""
    if not jobs:
        return "No retry jobs found."

    table = Table(title="Sync Retries", show_lines=True)
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Provider")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Next Attempt")
    table.add_column("Last Error")
    for job in jobs:
        table.add_row(
            job.id,
            job.provider.title,
            _colored(job.status.value),
            f"{job.attempt_count}/{job.max_attempts}",
            format_timestamp(job.next_attempt_at),
            job.last_error[:60] if job.last_error else "—",
        )
    return _render(table)


def format_webhook_events(events: list[IntegrationWebhookEvent]) -> str:
    """Format received webhook events as a Rich table."""
    if not events:
        return "No webhook events found."

    table = Table(title="Webhook Events")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Provider")
    table.add_column("Type")
    table.add_column("Status")
    table.add_column("Received")
    table.add_column("Preview")
    table.add_column("Note", style="dim")
    for event in events:
        table.add_row(
            event.id,
            event.provider.title,
            event.event_type,
            _colored(event.status.value),
            format_timestamp(event.received_at),
            event.payload_preview[:48],
            event.note or "—",
        )
    return _render(table)


def format_conflicts(conflicts: list[IntegrationConflict]) -> str:
    """Format unresolved conflicts as a Rich table."""
    if not conflicts:
        return "No unresolved conflicts."

    table = Table(title="Conflicts", show_lines=True)
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Provider")
    table.add_column("Type")
    table.add_column("Item")
    table.add_column("Local", justify="right")
    table.add_column("Remote", justify="right")
    table.add_column("Created")
    for conflict in conflicts:
        table.add_row(
            conflict.id,
            conflict.provider.title,
            conflict.type.title,
            conflict.local_item_name or conflict.remote_item_name or "—",
            str(conflict.local_units),
            str(conflict.remote_units),
            format_timestamp(conflict.created_at),
        )
    return _render(table)


def format_ledger_events(events: list[InventoryLedgerEvent]) -> str:
    """Format ledger events as a Rich table."""
    if not events:
        return "No ledger events found."

    table = Table(title="Inventory Ledger")
    table.add_column("When")
    table.add_column("Type")
    table.add_column("Item", style="cyan")
    table.add_column("Delta", justify="right")
    table.add_column("Source")
    table.add_column("Sync")
    for event in events:
        delta_color = "green" if event.delta_units > 0 else "red"
        table.add_row(
            format_timestamp(event.created_at),
            event.type.value,
            event.item_name,
            f"[{delta_color}]{event.delta_units:+d}[/{delta_color}]",
            event.source,
            _colored(event.sync_status.value),
        )
    return _render(table)


def format_ledger_sync_run(run: LedgerSyncRun) -> str:
    """Format a ledger sync outcome as a Rich panel."""
    border = "yellow" if run.blocked_by_connection else ("red" if run.failed else "green")
    lines = [
        f"[bold]Provider:[/bold]  {run.provider.title if run.provider else '—'}",
        f"[bold]Attempted:[/bold] {run.attempted}",
        f"[bold]Synced:[/bold]    [green]{run.synced}[/green]",
        f"[bold]Failed:[/bold]    [red]{run.failed}[/red]",
        "",
        run.message,
    ]
    return _render(Panel("\n".join(lines), title="Ledger Sync", border_style=border))


def format_reconnect_brief(brief: ReconnectBrief) -> str:
    """Format the reconnect brief as a Rich panel with a steps table."""
    lines = [
        f"[bold]Pending:[/bold]        {brief.pending_count}",
        f"[bold]Failed:[/bold]         {brief.failed_count}",
        f"[bold]Unsynced units:[/bold] {brief.unsynced_units}",
        f"[bold]Oldest pending:[/bold] {format_timestamp(brief.oldest_pending_at)}",
        f"[bold]Oldest failed:[/bold]  {format_timestamp(brief.oldest_failed_at)}",
    ]
    if brief.source_load:
        lines.append("")
        lines.append("[bold]Source load:[/bold]")
        for load in brief.source_load:
            lines.append(f"  {load.source}: {load.count}")
    if brief.connection_issues:
        lines.append("")
        lines.append("[bold yellow]Connection issues:[/bold yellow]")
        for issue in brief.connection_issues:
            lines.append(f"  - {issue}")

    output = _render(Panel("\n".join(lines), title="Reconnect Brief", border_style="cyan"))
    if not brief.steps:
        return output

    steps = Table(title="Recommended Steps")
    steps.add_column("#", justify="right")
    steps.add_column("Step", style="bold")
    steps.add_column("Detail")
    steps.add_column("Action", style="cyan")
    for step in sorted(brief.steps, key=lambda s: s.priority):
        steps.add_row(str(step.priority), step.title, step.detail, step.action)
    return output + _render(steps)


def format_audit_events(events: list[PlatformAuditEvent]) -> str:
    """Format the audit trail as a Rich table."""
    if not events:
        return "No audit events found."

    table = Table(title="Audit Trail")
    table.add_column("When")
    table.add_column("Actor")
    table.add_column("Type", style="cyan")
    table.add_column("Summary")
    for event in events:
        table.add_row(format_timestamp(event.created_at), event.actor_name, event.type.value, event.summary)
    return _render(table)
