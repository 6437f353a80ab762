"""IntegrationPlatform: the public face of the integration subsystem.

Wires the single-owner store, the keyring secret store, and the
connection/sync/conflict/webhook/retry/ledger services, and exposes them
with workspace-id arguments (None or blank means the unscoped "all"
workspace). Read methods return copies; callers never hold references into
owned state.

Usage:
    platform = build_platform(catalog, state_store=StateStore(session_factory))
    platform.load()
    platform.save_connection("quickbooks", None, "Alex", "Main Books", access_token="...")
    platform.run_connected_sync("quickbooks", None, "Alex")
    platform.close()
"""

import logging
from pathlib import Path

from src.errors.domain import NotFoundError
from src.services.audit_service import AuditService
from src.services.backup_guard import BackupGuard, CooldownBackupGuard
from src.services.conflict_service import ConflictService
from src.services.connection_service import ConnectionService
from src.services.integration_models import (
    IntegrationConflict,
    IntegrationConnection,
    IntegrationSyncJob,
    IntegrationSyncRetryJob,
    IntegrationWebhookEvent,
    InventoryLedgerEvent,
    PlatformAuditEvent,
)
from src.services.integration_store import Clock, IntegrationStore, utc_now
from src.services.integration_types import (
    WORKSPACE_ALL,
    ConflictResolution,
    CredentialSettings,
    IntegrationProvider,
    IntegrationSecretState,
    InventoryEventType,
    SyncSettings,
    workspace_key,
)
from src.services.item_catalog import InventoryItem, ItemCatalog, scope_items
from src.services.ledger_service import LedgerService, LedgerSyncRun, ReconnectBrief
from src.services.retry_queue import RetryQueue
from src.services.secret_store import IntegrationSecretStore
from src.services.state_store import StateStore
from src.services.sync_engine import SyncEngine
from src.services.webhook_service import WebhookService

logger = logging.getLogger(__name__)

ProviderArg = str | IntegrationProvider


class IntegrationPlatform:
    """Facade over all integration services.

    Args:
        store: Single owner of persisted integration state.
        secrets: Keyring-backed secret store.
        catalog: Item catalog collaborator.
        backup_guard: Guarded backup collaborator.
        credential_settings: Token lifetime and refresh window.
        sync_settings: Sample size, caps, and retry policy.
    """

    def __init__(
        self,
        store: IntegrationStore,
        secrets: IntegrationSecretStore,
        catalog: ItemCatalog,
        backup_guard: BackupGuard,
        credential_settings: CredentialSettings | None = None,
        sync_settings: SyncSettings | None = None,
    ) -> None:
        self.store = store
        self.catalog = catalog
        self.backup_guard = backup_guard
        self.sync_settings = sync_settings or SyncSettings()

        self.audit = AuditService(store)
        self.connections_service = ConnectionService(store, secrets, self.audit, credential_settings)
        self.conflicts = ConflictService(store, self.audit)
        self.webhooks = WebhookService(store, self.conflicts, self.audit)
        self.retries = RetryQueue(store, self.sync_settings)
        self.sync_engine = SyncEngine(
            store,
            self.connections_service,
            self.conflicts,
            self.webhooks,
            self.retries,
            self.audit,
            self.sync_settings,
        )
        self.ledger = LedgerService(store, self.connections_service, self.sync_engine, self.audit)

    # --- Lifecycle ---

    def load(self) -> None:
        """Load persisted state, migrate legacy secrets, and normalize statuses."""
        self.store.load()
        migrated = self.connections_service.migrate_legacy_secrets()
        normalized = self.connections_service.normalize_statuses()
        if migrated or normalized:
            logger.info("Normalized persisted connections (migrated=%s)", migrated)
            self.store.persist()

    def flush(self) -> None:
        self.store.flush()

    def close(self) -> None:
        self.store.close()

    def scoped_items(self, workspace_id: str | None) -> list[InventoryItem]:
        key = workspace_key(workspace_id)
        return scope_items(self.catalog.items(), None if key == WORKSPACE_ALL else key)

    # --- Connections ---

    def connections(self, workspace_id: str | None) -> list[IntegrationConnection]:
        return self.connections_service.connections(workspace_key(workspace_id))

    def connection(self, provider: ProviderArg, workspace_id: str | None) -> IntegrationConnection | None:
        return self.connections_service.connection(IntegrationProvider.parse(provider), workspace_key(workspace_id))

    def integration_secret_state(self, provider: ProviderArg, workspace_id: str | None) -> IntegrationSecretState:
        return self.connections_service.secret_state(IntegrationProvider.parse(provider), workspace_key(workspace_id))

    def save_connection(
        self,
        provider: ProviderArg,
        workspace_id: str | None,
        actor_name: str,
        account_label: str,
        access_token: str = "",
        refresh_token: str = "",
        webhook_secret: str = "",
    ) -> bool:
        return self.connections_service.save_credentials(
            IntegrationProvider.parse(provider),
            workspace_key(workspace_id),
            actor_name,
            account_label,
            access_token=access_token,
            refresh_token=refresh_token,
            webhook_secret=webhook_secret,
        )

    def refresh_connection_token(self, provider: ProviderArg, workspace_id: str | None, actor_name: str) -> bool:
        return self.connections_service.refresh_token(
            IntegrationProvider.parse(provider), workspace_key(workspace_id), actor_name,
        )

    def disconnect_connection(self, provider: ProviderArg, workspace_id: str | None, actor_name: str) -> bool:
        return self.connections_service.disconnect(
            IntegrationProvider.parse(provider), workspace_key(workspace_id), actor_name,
        )

    # --- Sync ---

    def run_sync(
        self,
        provider: ProviderArg,
        workspace_id: str | None,
        actor_name: str,
        scoped_item_count: int | None = None,
        enqueue_retry_on_failure: bool = True,
    ) -> IntegrationSyncJob:
        count = len(self.scoped_items(workspace_id)) if scoped_item_count is None else scoped_item_count
        return self.sync_engine.run_sync(
            IntegrationProvider.parse(provider),
            workspace_key(workspace_id),
            actor_name,
            count,
            enqueue_retry_on_failure=enqueue_retry_on_failure,
        )

    def run_connected_sync(
        self,
        provider: ProviderArg,
        workspace_id: str | None,
        actor_name: str,
        enqueue_retry_on_failure: bool = True,
    ) -> bool:
        return self.sync_engine.run_connected_sync(
            IntegrationProvider.parse(provider),
            workspace_key(workspace_id),
            actor_name,
            self.scoped_items(workspace_id),
            enqueue_retry_on_failure=enqueue_retry_on_failure,
        )

    def sync_jobs(self, workspace_id: str | None) -> list[IntegrationSyncJob]:
        return self.sync_engine.sync_jobs(workspace_key(workspace_id))

    # --- Retries ---

    def _retry_attempt(self, actor_name: str):
        # Items are scoped by the retry's own workspace.
        def attempt(provider: IntegrationProvider, key: str) -> bool:
            return self.sync_engine.run_connected_sync(
                provider, key, actor_name, self.scoped_items(key), enqueue_retry_on_failure=False,
            )
        return attempt

    def sync_retry_jobs(
        self,
        workspace_id: str | None,
        include_resolved: bool = True,
        limit: int = 60,
    ) -> list[IntegrationSyncRetryJob]:
        return self.retries.jobs(workspace_key(workspace_id), include_resolved=include_resolved, limit=limit)

    def process_due_sync_retries(self, workspace_id: str | None, actor_name: str, max_jobs: int = 3) -> int:
        return self.retries.process_due(
            workspace_key(workspace_id), self._retry_attempt(actor_name), max_jobs=max_jobs,
        )

    def retry_sync_job_now(self, retry_id: str, workspace_id: str | None, actor_name: str) -> bool:
        return self.retries.process_attempt(retry_id, self._retry_attempt(actor_name))

    def dismiss_sync_retry_job(self, retry_id: str) -> bool:
        return self.retries.dismiss(retry_id)

    # --- Webhooks and conflicts ---

    def ingest_webhook_payload(
        self, text: str, provider: ProviderArg, workspace_id: str | None, actor_name: str,
    ) -> int:
        return self.webhooks.ingest(
            text,
            IntegrationProvider.parse(provider),
            workspace_key(workspace_id),
            actor_name,
            self.scoped_items(workspace_id),
        )

    def webhook_events(
        self, workspace_id: str | None, provider: ProviderArg | None = None, limit: int = 80,
    ) -> list[IntegrationWebhookEvent]:
        parsed = IntegrationProvider.parse(provider) if provider is not None else None
        return self.webhooks.events(workspace_key(workspace_id), parsed, limit)

    def apply_webhook_event(self, event_id: str, workspace_id: str | None, actor_name: str) -> bool:
        return self.webhooks.apply(event_id, workspace_key(workspace_id), actor_name)

    def ignore_webhook_event(self, event_id: str) -> bool:
        return self.webhooks.ignore(event_id)

    def unresolved_conflicts(
        self, workspace_id: str | None, provider: ProviderArg | None = None, limit: int = 120,
    ) -> list[IntegrationConflict]:
        parsed = IntegrationProvider.parse(provider) if provider is not None else None
        return self.conflicts.unresolved(workspace_key(workspace_id), parsed, limit)

    def resolve_conflict(
        self,
        conflict_id: str,
        resolution: ConflictResolution | str,
        workspace_id: str | None,
        actor_name: str,
    ) -> bool:
        return self.conflicts.resolve(
            conflict_id,
            ConflictResolution(resolution),
            workspace_key(workspace_id),
            actor_name,
            self.catalog,
            self.backup_guard,
        )

    def require_conflict(self, conflict_id: str) -> IntegrationConflict:
        """Look up any conflict by id.

        Raises:
            NotFoundError: If no conflict has that id.
        """
        with self.store.lock:
            for conflict in self.store.state.conflicts:
                if conflict.id == conflict_id:
                    return conflict.model_copy()
        raise NotFoundError("Conflict", conflict_id)

    # --- Ledger ---

    def record_inventory_movement(
        self,
        item: InventoryItem,
        delta_units: int,
        actor_name: str,
        workspace_id: str | None,
        type: InventoryEventType,
        source: str,
        reason: str = "",
        correlation_id: str | None = None,
    ) -> InventoryLedgerEvent | None:
        return self.ledger.record_inventory_movement(
            item, delta_units, actor_name, workspace_key(workspace_id), type, source, reason, correlation_id,
        )

    def record_count_correction(
        self,
        item: InventoryItem,
        previous_units: int,
        new_units: int,
        actor_name: str,
        workspace_id: str | None,
        source: str,
        reason: str = "",
        correlation_id: str | None = None,
    ) -> InventoryLedgerEvent | None:
        return self.ledger.record_count_correction(
            item, previous_units, new_units, actor_name, workspace_key(workspace_id), source, reason, correlation_id,
        )

    def log_receipt(
        self,
        item: InventoryItem,
        units: int,
        actor_name: str,
        workspace_id: str | None,
        source: str = "manual-receive",
        reason: str = "",
    ) -> InventoryLedgerEvent | None:
        return self.ledger.log_receipt(item, units, actor_name, workspace_key(workspace_id), source, reason)

    def inventory_events(
        self, workspace_id: str | None, limit: int = 120, include_synced: bool = True,
    ) -> list[InventoryLedgerEvent]:
        return self.ledger.events(workspace_key(workspace_id), limit, include_synced)

    def pending_inventory_event_count(self, workspace_id: str | None) -> int:
        return self.ledger.pending_count(workspace_key(workspace_id))

    def sync_inventory_ledger(
        self, workspace_id: str | None, actor_name: str, max_events: int | None = None,
    ) -> LedgerSyncRun:
        return self.ledger.sync(
            workspace_key(workspace_id),
            actor_name,
            self.scoped_items(workspace_id),
            max_events=max_events if max_events is not None else self.sync_settings.ledger_batch_size,
        )

    def mark_inventory_events_synced(self, workspace_id: str | None, actor_name: str, max_count: int = 200) -> int:
        return self.ledger.mark_synced(workspace_key(workspace_id), actor_name, max_count)

    def export_inventory_ledger_csv(
        self,
        workspace_id: str | None,
        actor_name: str,
        include_synced: bool = True,
        limit: int = 2000,
        directory: Path | None = None,
    ) -> Path:
        return self.ledger.export_csv(workspace_key(workspace_id), actor_name, include_synced, limit, directory)

    def inventory_reconnect_brief(self, workspace_id: str | None) -> ReconnectBrief:
        return self.ledger.reconnect_brief(workspace_key(workspace_id))

    # --- Audit ---

    def audit_events(self, workspace_id: str | None, limit: int = 80) -> list[PlatformAuditEvent]:
        return self.audit.events(workspace_key(workspace_id), limit)


def build_platform(
    catalog: ItemCatalog,
    state_store: StateStore | None = None,
    keyring_service: str | None = None,
    credential_settings: CredentialSettings | None = None,
    sync_settings: SyncSettings | None = None,
    debounce_seconds: float = 0.12,
    clock: Clock = utc_now,
    backup_guard: BackupGuard | None = None,
) -> IntegrationPlatform:
    """Assemble an IntegrationPlatform with default collaborators."""
    credential_settings = credential_settings or CredentialSettings()
    store = IntegrationStore(state_store, clock=clock, debounce_seconds=debounce_seconds)
    secrets = IntegrationSecretStore(keyring_service or credential_settings.keyring_service)
    return IntegrationPlatform(
        store,
        secrets,
        catalog,
        backup_guard or CooldownBackupGuard(clock),
        credential_settings=credential_settings,
        sync_settings=sync_settings,
    )
