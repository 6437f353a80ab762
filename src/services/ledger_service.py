"""Offline inventory ledger and its sync against connected providers.

Every local quantity mutation is recorded as an InventoryLedgerEvent in
``pending`` state. A ledger sync pass picks the oldest unsynced events,
runs a connected sync on the first provider that can be prepared, and marks
the whole batch ``synced`` or ``failed`` together. Failed events are
re-attempted by later passes.

Also provides the CSV export of the ledger and the reconnect brief that
summarizes the unsynced backlog for operators.
"""

import csv
import logging
import os
import tempfile
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from uuid import uuid4

from src.errors.formatter import render_message
from src.errors.registry import NO_CONNECTED_PROVIDER, PROVIDER_SYNC_FAILED
from src.services.audit_service import AuditService
from src.services.connection_service import ConnectionService
from src.services.integration_models import InventoryLedgerEvent
from src.services.integration_store import IntegrationStore
from src.services.integration_types import (
    LEDGER_EVENT_CAP,
    AuditType,
    ConnectionStatus,
    IntegrationProvider,
    IntegrationSecretState,
    InventoryEventType,
    LedgerSyncStatus,
)
from src.services.item_catalog import InventoryItem
from src.services.sync_engine import SyncEngine

logger = logging.getLogger(__name__)

LEDGER_CSV_COLUMNS = [
    "event_id",
    "workspace_key",
    "created_at",
    "actor_name",
    "event_type",
    "source",
    "reason",
    "item_id",
    "item_name",
    "item_category",
    "item_location",
    "delta_units",
    "resulting_units",
    "sync_status",
    "sync_attempt_count",
    "last_sync_at",
    "last_sync_error",
    "correlation_id",
]


@dataclass(frozen=True)
class LedgerSyncRun:
    """Outcome of one ledger sync pass."""

    attempted: int
    synced: int
    failed: int
    provider: IntegrationProvider | None
    blocked_by_connection: bool
    message: str


@dataclass(frozen=True)
class ReconnectSourceLoad:
    source: str
    count: int


@dataclass(frozen=True)
class ReconnectStep:
    id: str
    title: str
    detail: str
    action: str
    priority: int


@dataclass(frozen=True)
class ReconnectBrief:
    """Operator summary of the unsynced ledger backlog."""

    pending_count: int
    failed_count: int
    unsynced_count: int
    unsynced_units: int
    oldest_pending_at: datetime | None
    oldest_failed_at: datetime | None
    source_load: list[ReconnectSourceLoad] = field(default_factory=list)
    connection_issues: list[str] = field(default_factory=list)
    steps: list[ReconnectStep] = field(default_factory=list)


def _iso(value: datetime | None) -> str:
    return value.isoformat() if value is not None else ""


def ledger_csv_row(event: InventoryLedgerEvent) -> list[str]:
    return [
        event.id,
        event.workspace_key,
        _iso(event.created_at),
        event.actor_name,
        event.type.value,
        event.source,
        event.reason,
        event.item_id or "",
        event.item_name,
        event.item_category,
        event.item_location,
        str(event.delta_units),
        "" if event.resulting_units is None else str(event.resulting_units),
        event.sync_status.value,
        str(event.sync_attempt_count),
        _iso(event.last_sync_at),
        event.last_sync_error or "",
        event.correlation_id,
    ]


def build_reconnect_brief(
    workspace_events: list[InventoryLedgerEvent],
    provider_states: dict[IntegrationProvider, IntegrationSecretState],
) -> ReconnectBrief:
    """Summarize unsynced events and what blocks them.

    Args:
        workspace_events: All ledger events of one workspace.
        provider_states: Secret state per provider for that workspace.
    """
    unsynced = [event for event in workspace_events if event.sync_status != LedgerSyncStatus.synced]
    pending = [event for event in unsynced if event.sync_status == LedgerSyncStatus.pending]
    failed = [event for event in unsynced if event.sync_status == LedgerSyncStatus.failed]

    sources = Counter(event.source.strip() or "manual" for event in unsynced)
    source_load = sorted(
        (ReconnectSourceLoad(source, count) for source, count in sources.items()),
        key=lambda load: (-load.count, load.source.lower()),
    )[:5]

    issues: list[str] = []
    expired_count = 0
    connected_count = 0
    if unsynced:
        for provider in IntegrationProvider:
            state = provider_states.get(provider) or IntegrationSecretState.disconnected()
            if state.status == ConnectionStatus.connected:
                connected_count += 1
            elif state.status == ConnectionStatus.token_expired:
                expired_count += 1
                issues.append(f"{provider.title} token expired.")
            else:
                issues.append(f"{provider.title} not connected.")

    steps: list[ReconnectStep] = []
    if failed and expired_count:
        steps.append(ReconnectStep(
            "refresh-token",
            "Refresh provider tokens",
            "One or more integrations expired. Refresh credentials, then rerun ledger sync.",
            "refresh_tokens",
            1,
        ))
    if unsynced and connected_count == 0:
        steps.append(ReconnectStep(
            "connect-provider",
            "Connect at least one provider",
            "No live integration is connected for this workspace. "
            "Add QuickBooks or Shopify before syncing pending inventory events.",
            "connect_provider",
            0,
        ))
    if unsynced:
        steps.append(ReconnectStep(
            "run-ledger-sync",
            "Run offline ledger sync",
            f"{len(unsynced)} event(s) are waiting. Run a sync pass to clear pending/failure backlog.",
            "run_ledger_sync",
            0 if connected_count else 2,
        ))
    if failed:
        steps.append(ReconnectStep(
            "export-ledger-failures",
            "Export failed event trail",
            "Share the ledger CSV with owners before close so failed events are auditable during cleanup.",
            "export_ledger",
            2,
        ))
    steps.sort(key=lambda step: (step.priority, step.title.lower()))

    return ReconnectBrief(
        pending_count=len(pending),
        failed_count=len(failed),
        unsynced_count=len(unsynced),
        unsynced_units=sum(abs(event.delta_units) for event in unsynced),
        oldest_pending_at=min((event.created_at for event in pending), default=None),
        oldest_failed_at=min((event.created_at for event in failed), default=None),
        source_load=source_load,
        connection_issues=issues,
        steps=steps,
    )


class LedgerService:
    """Inventory ledger recording, sync, export, and reporting.

    Args:
        store: Single owner of persisted integration state.
        connections: Used to find the first preparable provider.
        sync_engine: Runs the connected sync that clears a batch.
        audit: Audit trail.
    """

    def __init__(
        self,
        store: IntegrationStore,
        connections: ConnectionService,
        sync_engine: SyncEngine,
        audit: AuditService,
    ) -> None:
        self._store = store
        self._connections = connections
        self._sync_engine = sync_engine
        self._audit = audit

    # --- Recording ---

    def append_event(
        self,
        workspace_key: str,
        actor_name: str,
        type: InventoryEventType,
        source: str,
        item_name: str,
        delta_units: int,
        reason: str = "",
        item_id: str | None = None,
        item_category: str = "",
        item_location: str = "",
        resulting_units: int | None = None,
        correlation_id: str | None = None,
    ) -> InventoryLedgerEvent:
        """Append a pending ledger event (newest first, capped at LEDGER_EVENT_CAP)."""
        event = InventoryLedgerEvent(
            workspace_key=workspace_key,
            actor_name=actor_name,
            created_at=self._store.now(),
            type=type,
            source=source.strip() or "manual",
            reason=reason.strip(),
            item_id=item_id,
            item_name=item_name if item_name.strip() else "Unknown Item",
            item_category=item_category,
            item_location=item_location,
            delta_units=delta_units,
            resulting_units=resulting_units,
            correlation_id=correlation_id or str(uuid4()),
        )
        with self._store.lock:
            self._store.state.inventory_events.insert(0, event)
            del self._store.state.inventory_events[LEDGER_EVENT_CAP:]
            self._store.persist()
        logger.debug("Ledger %s %+d for %s (%s)", type.value, delta_units, event.item_name, workspace_key)
        return event

    def record_inventory_movement(
        self,
        item: InventoryItem,
        delta_units: int,
        actor_name: str,
        workspace_key: str,
        type: InventoryEventType,
        source: str,
        reason: str = "",
        correlation_id: str | None = None,
    ) -> InventoryLedgerEvent | None:
        """Record a quantity change already applied to ``item``; zero deltas are skipped."""
        if delta_units == 0:
            return None
        return self.append_event(
            workspace_key,
            actor_name,
            type,
            source,
            item.name,
            delta_units,
            reason=reason,
            item_id=item.id,
            item_category=item.category,
            item_location=item.location,
            resulting_units=item.total_units,
            correlation_id=correlation_id,
        )

    def record_count_correction(
        self,
        item: InventoryItem,
        previous_units: int,
        new_units: int,
        actor_name: str,
        workspace_key: str,
        source: str,
        reason: str = "",
        correlation_id: str | None = None,
    ) -> InventoryLedgerEvent | None:
        delta = new_units - previous_units
        if delta == 0:
            return None
        return self.append_event(
            workspace_key,
            actor_name,
            InventoryEventType.count_correction,
            source,
            item.name,
            delta,
            reason=reason,
            item_id=item.id,
            item_category=item.category,
            item_location=item.location,
            resulting_units=new_units,
            correlation_id=correlation_id,
        )

    def log_receipt(
        self,
        item: InventoryItem,
        units: int,
        actor_name: str,
        workspace_key: str,
        source: str = "manual-receive",
        reason: str = "",
    ) -> InventoryLedgerEvent | None:
        """Audit and record a receipt; non-positive units are ignored."""
        if units <= 0:
            return None
        self._audit.record(
            workspace_key,
            actor_name,
            AuditType.receive,
            f"Received {units} unit(s) for {item.name}.",
            delta_units=units,
            estimated_seconds_saved=45,
        )
        return self.record_inventory_movement(
            item, units, actor_name, workspace_key, InventoryEventType.receipt, source, reason,
        )

    # --- Reads ---

    def events(
        self,
        workspace_key: str,
        limit: int = 120,
        include_synced: bool = True,
    ) -> list[InventoryLedgerEvent]:
        """Newest-first ledger events for a workspace."""
        with self._store.lock:
            matching = [
                event.model_copy()
                for event in self._store.state.inventory_events
                if event.workspace_key == workspace_key
                and (include_synced or event.sync_status != LedgerSyncStatus.synced)
            ]
        return matching[: max(0, limit)]

    def pending_count(self, workspace_key: str) -> int:
        with self._store.lock:
            return sum(
                1
                for event in self._store.state.inventory_events
                if event.workspace_key == workspace_key and event.sync_status != LedgerSyncStatus.synced
            )

    # --- Sync ---

    def sync(
        self,
        workspace_key: str,
        actor_name: str,
        scoped_items: list[InventoryItem],
        max_events: int = 200,
    ) -> LedgerSyncRun:
        """Push the oldest unsynced events through the first preparable provider.

        Providers are tried in declaration order (QuickBooks, then Shopify).
        The selected batch succeeds or fails as a unit.
        """
        with self._store.lock:
            batch = sorted(
                (
                    event
                    for event in self._store.state.inventory_events
                    if event.workspace_key == workspace_key and event.sync_status != LedgerSyncStatus.synced
                ),
                key=lambda event: event.created_at,
            )[: max(1, max_events)]
            if not batch:
                return LedgerSyncRun(0, 0, 0, None, False, "No pending ledger events.")

            provider = next(
                (
                    candidate
                    for candidate in IntegrationProvider
                    if self._connections.prepare_for_sync(candidate, workspace_key, actor_name) is not None
                ),
                None,
            )
            succeeded = False
            if provider is not None:
                succeeded = self._sync_engine.run_connected_sync(
                    provider, workspace_key, actor_name, scoped_items,
                )

            if provider is None:
                failure = render_message(NO_CONNECTED_PROVIDER)
            elif not succeeded:
                failure = render_message(PROVIDER_SYNC_FAILED, provider=provider.title)
            else:
                failure = None

            now = self._store.now()
            for event in batch:
                event.sync_attempt_count += 1
                event.last_sync_at = now
                if succeeded:
                    event.sync_status = LedgerSyncStatus.synced
                    event.last_sync_error = None
                else:
                    event.sync_status = LedgerSyncStatus.failed
                    event.last_sync_error = failure
            self._store.persist()

        attempted = len(batch)
        synced = attempted if succeeded else 0
        failed = 0 if succeeded else attempted
        if succeeded:
            summary = f"Auto-sync cleared {synced} inventory ledger event(s)."
            message = f"Synced {synced} inventory event(s)."
        else:
            summary = f"Auto-sync failed for {attempted} inventory ledger event(s)."
            message = failure or "Ledger sync failed."
            logger.warning("Ledger sync failed for %s: %s", workspace_key, failure)
        self._audit.record(
            workspace_key,
            actor_name,
            AuditType.sync,
            summary,
            estimated_seconds_saved=synced * 3 if succeeded else 10,
        )
        return LedgerSyncRun(
            attempted=attempted,
            synced=synced,
            failed=failed,
            provider=provider,
            blocked_by_connection=not succeeded,
            message=message,
        )

    def mark_synced(self, workspace_key: str, actor_name: str, max_count: int = 200) -> int:
        """Mark up to ``max_count`` unsynced events synced without a provider pass.

        Returns:
            Number of events marked.
        """
        limit = max(1, max_count)
        processed = 0
        with self._store.lock:
            now = self._store.now()
            for event in self._store.state.inventory_events:
                if event.workspace_key != workspace_key or event.sync_status == LedgerSyncStatus.synced:
                    continue
                event.sync_status = LedgerSyncStatus.synced
                event.last_sync_at = now
                event.last_sync_error = None
                event.sync_attempt_count += 1
                processed += 1
                if processed >= limit:
                    break
            if processed == 0:
                return 0
            self._store.persist()

        self._audit.record(
            workspace_key,
            actor_name,
            AuditType.sync,
            f"Ledger sync marked {processed} inventory event(s) as synced.",
            estimated_seconds_saved=processed * 2,
        )
        return processed

    # --- Export and reporting ---

    def export_csv(
        self,
        workspace_key: str,
        actor_name: str,
        include_synced: bool = True,
        limit: int = LEDGER_EVENT_CAP,
        directory: Path | None = None,
    ) -> Path:
        """Write the workspace ledger to a timestamped CSV file.

        The file is written to a temp file and moved into place.

        Returns:
            Path of the written file.
        """
        events = self.events(workspace_key, limit=limit, include_synced=include_synced)
        target_dir = Path(directory) if directory is not None else Path(tempfile.gettempdir())
        target_dir.mkdir(parents=True, exist_ok=True)
        path = target_dir / f"inventory_event_ledger_{self._store.now():%Y%m%d_%H%M%S}.csv"

        temp_fd, temp_path = tempfile.mkstemp(suffix=".csv.tmp", dir=str(target_dir))
        try:
            with os.fdopen(temp_fd, "w", newline="", encoding="utf-8") as f:
                writer = csv.writer(f)
                writer.writerow(LEDGER_CSV_COLUMNS)
                writer.writerows(ledger_csv_row(event) for event in events)
            os.replace(temp_path, path)
        except Exception:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise

        logger.info("Exported %d ledger event(s) to %s", len(events), path)
        self._audit.record(
            workspace_key,
            actor_name,
            AuditType.csv_export,
            f"Exported inventory event ledger with {len(events)} event(s).",
            estimated_seconds_saved=max(20, len(events)),
        )
        return path

    def reconnect_brief(self, workspace_key: str) -> ReconnectBrief:
        with self._store.lock:
            workspace_events = [
                event for event in self._store.state.inventory_events if event.workspace_key == workspace_key
            ]
            states = {
                provider: self._connections.secret_state(provider, workspace_key)
                for provider in IntegrationProvider
            }
        return build_reconnect_brief(workspace_events, states)
