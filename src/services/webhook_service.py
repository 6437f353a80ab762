"""Inbound webhook queue: ingestion, listing, and operator review.

Events enter as ``pending`` and move once to ``applied`` or ``ignored``.
Ingestion records one event per non-blank line and, where the line carries
a quantity, a deduplicated conflict against the workspace's items.
"""

import logging

from src.services.audit_service import AuditService
from src.services.conflict_service import (
    ConflictService,
    conflict_from_webhook_line,
    parse_webhook_type,
)
from src.services.integration_models import IntegrationWebhookEvent
from src.services.integration_store import IntegrationStore
from src.services.integration_types import (
    WEBHOOK_EVENT_CAP,
    AuditType,
    IntegrationProvider,
    WebhookStatus,
)
from src.services.item_catalog import InventoryItem
from src.utils.redaction import sanitize_error_message

logger = logging.getLogger(__name__)

MANUAL_INGEST_NOTE = "Manually ingested."
SYNC_DELTA_NOTE = "Generated by sync delta."


def split_webhook_lines(text: str) -> list[str]:
    """Non-blank, trimmed lines of a pasted webhook payload."""
    return [line.strip() for line in text.replace("\r\n", "\n").split("\n") if line.strip()]


class WebhookService:
    """Webhook event queue, capped at WEBHOOK_EVENT_CAP entries.

    Args:
        store: Single owner of persisted integration state.
        conflicts: Conflict queue fed by ingested lines.
        audit: Audit trail.
    """

    def __init__(self, store: IntegrationStore, conflicts: ConflictService, audit: AuditService) -> None:
        self._store = store
        self._conflicts = conflicts
        self._audit = audit

    def enqueue(self, event: IntegrationWebhookEvent) -> None:
        with self._store.lock:
            self._store.state.webhook_events.insert(0, event)
            del self._store.state.webhook_events[WEBHOOK_EVENT_CAP:]
            self._store.persist()

    def ingest(
        self,
        text: str,
        provider: IntegrationProvider,
        workspace_key: str,
        actor_name: str,
        scoped_items: list[InventoryItem],
    ) -> int:
        """Record one pending event per line and flag conflicts.

        Args:
            text: Pasted payload, one event per line.
            provider: Provider the events came from.
            workspace_key: Scoping key.
            actor_name: Operator performing the ingest.
            scoped_items: Items visible in the workspace.

        Returns:
            Number of events created (0 for blank input, with no audit).
        """
        lines = split_webhook_lines(text)
        if not lines:
            return 0

        created = 0
        flagged = 0
        with self._store.lock:
            for line in lines:
                now = self._store.now()
                self.enqueue(IntegrationWebhookEvent(
                    provider=provider,
                    workspace_key=workspace_key,
                    received_at=now,
                    event_type=parse_webhook_type(line),
                    payload_preview=sanitize_error_message(line, max_length=500),
                    note=MANUAL_INGEST_NOTE,
                ))
                created += 1

                conflict = conflict_from_webhook_line(line, provider, workspace_key, scoped_items, now)
                if conflict is not None:
                    self._conflicts.enqueue(conflict)
                    flagged += 1

        logger.info("Ingested %d %s webhook line(s), %d conflict(s)", created, provider.value, flagged)
        self._audit.record(
            workspace_key,
            actor_name,
            AuditType.webhook_ingested,
            f"Ingested {created} webhook event(s) from {provider.title}. {flagged} conflict(s) flagged.",
            estimated_seconds_saved=max(30, created * 20),
            shrink_impact_units=flagged,
        )
        return created

    def events(
        self,
        workspace_key: str,
        provider: IntegrationProvider | None = None,
        limit: int = 80,
    ) -> list[IntegrationWebhookEvent]:
        """Newest-first events for a workspace, optionally for one provider."""
        with self._store.lock:
            matching = [
                event.model_copy()
                for event in self._store.state.webhook_events
                if event.workspace_key == workspace_key
                and (provider is None or event.provider == provider)
            ]
        matching.sort(key=lambda event: event.received_at, reverse=True)
        return matching[: max(0, limit)]

    def _find(self, event_id: str) -> IntegrationWebhookEvent | None:
        for event in self._store.state.webhook_events:
            if event.id == event_id:
                return event
        return None

    def apply(self, event_id: str, workspace_key: str, actor_name: str) -> bool:
        """Mark an event applied.

        Re-applying an applied event only refreshes its note. An ignored
        event stays ignored.

        Returns:
            False if the event is unknown or was ignored.
        """
        with self._store.lock:
            event = self._find(event_id)
            if event is None or event.status == WebhookStatus.ignored:
                return False
            event.status = WebhookStatus.applied
            event.note = f"Applied at {self._store.now():%H:%M}."
            event_type = event.event_type
            self._store.persist()

        self._audit.record(
            workspace_key,
            actor_name,
            AuditType.webhook_applied,
            f"Applied webhook event {event_type}.",
            estimated_seconds_saved=20,
        )
        return True

    def ignore(self, event_id: str) -> bool:
        """Mark an event ignored (no audit entry).

        Returns:
            False if the event is unknown or was already applied.
        """
        with self._store.lock:
            event = self._find(event_id)
            if event is None or event.status == WebhookStatus.applied:
                return False
            event.status = WebhookStatus.ignored
            event.note = "Ignored by operator."
            self._store.persist()
        return True
