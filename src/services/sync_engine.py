"""Sync execution engine.

A connected sync pass prepares the provider connection (refreshing its
token if needed), then scans a bounded sample of the workspace's items
against a simulated remote quantity. Deltas past a threshold become
deduplicated quantity_mismatch conflicts plus synthetic inbound webhook
events. Conflicts never fail a pass; only a missing or unusable connection
does, and that path records a blocked job and queues a retry.

The remote side is simulated: drift is a pure function of the item id, so
passes are reproducible.
"""

import logging
from datetime import timedelta

from src.errors.formatter import render_message
from src.errors.registry import CREDENTIAL_EXPIRED, CREDENTIAL_MISSING
from src.services.audit_service import AuditService
from src.services.conflict_service import ConflictService
from src.services.connection_service import ConnectionService
from src.services.integration_models import (
    IntegrationConflict,
    IntegrationSyncJob,
    IntegrationWebhookEvent,
)
from src.services.integration_store import IntegrationStore
from src.services.integration_types import (
    SYNC_JOB_CAP,
    AuditType,
    ConflictType,
    ConnectionStatus,
    IntegrationProvider,
    SyncSettings,
    SyncStatus,
    effective_status,
)
from src.services.item_catalog import InventoryItem
from src.services.retry_queue import RetryQueue
from src.services.webhook_service import SYNC_DELTA_NOTE, WebhookService

logger = logging.getLogger(__name__)

SYNCED_WEBHOOK_EVENT_TYPE = "inventory.updated"


def deterministic_remote_drift(item_id: str) -> int:
    """Signed drift in [-4, 4] derived from the item id's character sum."""
    seed = sum(ord(char) for char in item_id.upper())
    return (seed % 9) - 4


def delta_threshold(local_units: int) -> int:
    return max(2, local_units // 5)


class SyncEngine:
    """Runs sync passes and records their outcome.

    Args:
        store: Single owner of persisted integration state.
        connections: Credential lifecycle (prepares connections).
        conflicts: Conflict queue.
        webhooks: Webhook queue for synthetic delta events.
        retries: Retry queue fed by failed passes.
        audit: Audit trail.
        settings: Sample size and caps.
    """

    def __init__(
        self,
        store: IntegrationStore,
        connections: ConnectionService,
        conflicts: ConflictService,
        webhooks: WebhookService,
        retries: RetryQueue,
        audit: AuditService,
        settings: SyncSettings | None = None,
    ) -> None:
        self._store = store
        self._connections = connections
        self._conflicts = conflicts
        self._webhooks = webhooks
        self._retries = retries
        self._audit = audit
        self._settings = settings or SyncSettings()

    def _record_job(self, job: IntegrationSyncJob) -> None:
        self._store.state.sync_jobs.insert(0, job)
        del self._store.state.sync_jobs[SYNC_JOB_CAP:]

    def run_sync(
        self,
        provider: IntegrationProvider,
        workspace_key: str,
        actor_name: str,
        scoped_item_count: int,
        enqueue_retry_on_failure: bool = True,
    ) -> IntegrationSyncJob:
        """Record a sync job from the connection's effective status alone.

        A failed job carries zero counts and, unless suppressed, queues or
        refreshes a retry; a successful one resolves queued retries.
        """
        active = max(0, scoped_item_count)
        pushed = min(active, max(1, active // 3))
        pulled = min(active, max(1, active // 4))

        with self._store.lock:
            secret_state = self._connections.secret_state(provider, workspace_key)
            succeeded = secret_state.status == ConnectionStatus.connected
            if succeeded:
                message = f"{provider.title} sync finished successfully."
            elif secret_state.status == ConnectionStatus.token_expired and not secret_state.has_refresh_token:
                message = render_message(CREDENTIAL_EXPIRED, provider=provider.title)
            else:
                message = render_message(CREDENTIAL_MISSING, provider=provider.title)

            now = self._store.now()
            job = IntegrationSyncJob(
                provider=provider,
                workspace_key=workspace_key,
                started_at=now - timedelta(seconds=3),
                finished_at=now,
                pulled_records=pulled if succeeded else 0,
                pushed_records=pushed if succeeded else 0,
                status=SyncStatus.success if succeeded else SyncStatus.failed,
                message=message,
            )
            self._record_job(job)

            if succeeded:
                self._retries.mark_resolved(provider, workspace_key)
            elif enqueue_retry_on_failure:
                self._retries.enqueue_or_refresh(provider, workspace_key, message)
            self._store.persist()

        if succeeded:
            summary = f"Synced {provider.title}: {pushed} pushed, {pulled} pulled."
        else:
            summary = f"Sync failed for {provider.title}: connect provider first."
            logger.warning("Sync blocked for %s/%s: %s", workspace_key, provider.value, message)
        self._audit.record(workspace_key, actor_name, AuditType.sync, summary, estimated_seconds_saved=360)
        return job

    def run_connected_sync(
        self,
        provider: IntegrationProvider,
        workspace_key: str,
        actor_name: str,
        scoped_items: list[InventoryItem],
        enqueue_retry_on_failure: bool = True,
    ) -> bool:
        """Run a full pass against a prepared connection.

        Args:
            provider: Provider to sync.
            workspace_key: Scoping key.
            actor_name: Operator (or scheduler) running the pass.
            scoped_items: Items visible in the workspace.
            enqueue_retry_on_failure: Queue a retry when no connection can be prepared.

        Returns:
            True iff a prepared connection existed.
        """
        with self._store.lock:
            prepared = self._connections.prepare_for_sync(provider, workspace_key, actor_name)
            if prepared is None:
                self.run_sync(
                    provider,
                    workspace_key,
                    actor_name,
                    len(scoped_items),
                    enqueue_retry_on_failure=enqueue_retry_on_failure,
                )
                return False

            now = self._store.now()
            pulled = 0
            pushed = 0
            conflict_count = 0
            webhook_count = 0

            for item in scoped_items[: self._settings.sample_size]:
                local_units = item.total_units
                remote_units = max(0, local_units + deterministic_remote_drift(item.id))
                pulled += 1
                if local_units > 0:
                    pushed += 1
                if abs(remote_units - local_units) < delta_threshold(local_units):
                    continue

                self._conflicts.enqueue(IntegrationConflict(
                    provider=provider,
                    workspace_key=workspace_key,
                    created_at=now,
                    type=ConflictType.quantity_mismatch,
                    local_item_id=item.id,
                    local_item_name=item.name,
                    remote_item_name=item.name,
                    local_units=local_units,
                    remote_units=remote_units,
                ))
                conflict_count += 1

                if webhook_count < self._settings.webhook_event_cap:
                    self._webhooks.enqueue(IntegrationWebhookEvent(
                        provider=provider,
                        workspace_key=workspace_key,
                        received_at=now,
                        event_type=SYNCED_WEBHOOK_EVENT_TYPE,
                        payload_preview=(
                            f"event={SYNCED_WEBHOOK_EVENT_TYPE} barcode={item.barcode} qty={remote_units}"
                        ),
                        note=SYNC_DELTA_NOTE,
                    ))
                    webhook_count += 1

            if len(scoped_items) >= self._settings.missing_local_min_items:
                self._conflicts.enqueue(IntegrationConflict(
                    provider=provider,
                    workspace_key=workspace_key,
                    created_at=now,
                    type=ConflictType.missing_local_item,
                    remote_item_name=f"{provider.title} Remote SKU {len(scoped_items) + 100}",
                    local_units=0,
                    remote_units=max(1, len(scoped_items) // 4),
                ))
                conflict_count += 1

            self._record_job(IntegrationSyncJob(
                provider=provider,
                workspace_key=workspace_key,
                started_at=now - timedelta(seconds=5),
                finished_at=now,
                pulled_records=pulled,
                pushed_records=pushed,
                status=SyncStatus.success,
                message=(
                    f"{provider.title} sync complete. {conflict_count} conflict(s), "
                    f"{webhook_count} webhook event(s) queued."
                ),
            ))

            connection = self._store.find_connection(provider, workspace_key)
            if connection is not None:
                connection.last_sync_at = now
                connection.status = effective_status(
                    ConnectionStatus.connected, prepared.token_expires_at, True, now,
                )

            self._retries.mark_resolved(provider, workspace_key)
            self._store.persist()

        logger.info(
            "Connected sync %s/%s: pulled=%d pushed=%d conflicts=%d webhooks=%d",
            workspace_key, provider.value, pulled, pushed, conflict_count, webhook_count,
        )
        self._audit.record(
            workspace_key,
            actor_name,
            AuditType.sync,
            f"Connected sync for {provider.title}: {pushed} pushed, {pulled} pulled, "
            f"{conflict_count} conflict(s).",
            estimated_seconds_saved=420,
            shrink_impact_units=conflict_count,
        )
        return True

    def sync_jobs(self, workspace_key: str) -> list[IntegrationSyncJob]:
        """Newest-first sync jobs for a workspace."""
        with self._store.lock:
            return [
                job.model_copy() for job in self._store.state.sync_jobs if job.workspace_key == workspace_key
            ]
