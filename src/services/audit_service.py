"""Audit trail for integration and ledger actions.

Every state-changing operator action appends a PlatformAuditEvent to the
platform store. Summaries are redacted before storage so token-shaped text
pasted into labels or webhook lines never lands in the durable trail.

Usage:
    audit = AuditService(store)
    audit.record("all", "Alex", AuditType.sync, "QuickBooks sync complete.")
    recent = audit.events("all", limit=20)
"""

import logging

from src.services.integration_models import PlatformAuditEvent
from src.services.integration_store import IntegrationStore
from src.services.integration_types import AUDIT_EVENT_CAP, WORKSPACE_ALL, AuditType
from src.utils.redaction import sanitize_error_message

logger = logging.getLogger(__name__)


class AuditService:
    """Append-only audit trail, capped at AUDIT_EVENT_CAP entries.

    Attributes:
        store: Single owner of all persisted integration state.
    """

    def __init__(self, store: IntegrationStore) -> None:
        self.store = store

    def record(
        self,
        workspace_key: str,
        actor_name: str,
        type: AuditType,
        summary: str,
        delta_units: int = 0,
        estimated_seconds_saved: int = 0,
        shrink_impact_units: int = 0,
    ) -> PlatformAuditEvent:
        """Append an audit event and schedule persistence.

        Args:
            workspace_key: Scoping key ("all" for unscoped).
            actor_name: Operator performing the action.
            type: Audit category.
            summary: Human-readable description.
            delta_units: Net unit change caused by the action.
            estimated_seconds_saved: Operator time saved, for reporting.
            shrink_impact_units: Units attributed to shrink.

        Returns:
            The stored event.
        """
        event = PlatformAuditEvent(
            workspace_key=workspace_key,
            actor_name=actor_name.strip() or "Unknown",
            type=type,
            created_at=self.store.now(),
            summary=sanitize_error_message(summary, max_length=500),
            delta_units=delta_units,
            estimated_seconds_saved=max(0, estimated_seconds_saved),
            shrink_impact_units=shrink_impact_units,
        )
        with self.store.lock:
            self.store.state.audit_events.insert(0, event)
            del self.store.state.audit_events[AUDIT_EVENT_CAP:]
            self.store.persist()
        logger.info("audit %s [%s] %s", type.value, workspace_key, event.summary)
        return event

    def events(self, workspace_key: str = WORKSPACE_ALL, limit: int = 80) -> list[PlatformAuditEvent]:
        """Newest-first audit events recorded under a workspace key."""
        with self.store.lock:
            matching = [
                event.model_copy()
                for event in self.store.state.audit_events
                if event.workspace_key == workspace_key
            ]
        return matching[: max(0, limit)]
