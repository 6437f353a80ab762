"""Conflict detection from webhook lines and operator resolution.

Webhook lines are free-text ``key=value`` tokens separated by spaces,
commas, or semicolons, e.g.::

    event=inventory.updated barcode=0123 qty=12 name=Widget

Conflict creation is deduplicated: at most one unresolved conflict exists
per (workspace, provider, type, local item, local units, remote units).
"""

import logging
import re
from datetime import datetime

from src.errors.formatter import format_error
from src.errors.registry import CONFLICT_ALREADY_RESOLVED
from src.services.audit_service import AuditService
from src.services.backup_guard import BackupGuard
from src.services.integration_models import IntegrationConflict
from src.services.integration_store import IntegrationStore
from src.services.integration_types import (
    CONFLICT_CAP,
    WORKSPACE_ALL,
    AuditType,
    ConflictResolution,
    ConflictStatus,
    ConflictType,
    IntegrationProvider,
)
from src.services.item_catalog import InventoryItem, ItemCatalog, normalized_barcode

logger = logging.getLogger(__name__)

DEFAULT_WEBHOOK_EVENT_TYPE = "inventory.event"
DEFAULT_REMOTE_ITEM_NAME = "Remote webhook item"
GUARDED_BACKUP_REASON = "Integration conflict resolution"
GUARDED_BACKUP_COOLDOWN_MINUTES = 30

_TOKEN_SEPARATORS = re.compile(r"[ ,;]+")
_INTEGER = re.compile(r"[+-]?\d+")


def token_value(line: str, key: str) -> str | None:
    """Value of the first ``key=`` token in a line (case-insensitive key).

    The value runs up to the next space, comma, or semicolon.
    """
    match = re.search(re.escape(key) + "=", line, flags=re.IGNORECASE)
    if match is None:
        return None
    for piece in _TOKEN_SEPARATORS.split(line[match.end():]):
        value = piece.strip()
        if value:
            return value
    return None


def parse_webhook_type(line: str) -> str:
    """Event type from ``event=``, else a dotted/underscored first word."""
    event = token_value(line, "event")
    if event is not None:
        return event
    words = line.split(" ")
    if words and ("." in words[0] or "_" in words[0]):
        return words[0]
    return DEFAULT_WEBHOOK_EVENT_TYPE


def conflict_from_webhook_line(
    line: str,
    provider: IntegrationProvider,
    workspace_key: str,
    scoped_items: list[InventoryItem],
    created_at: datetime,
) -> IntegrationConflict | None:
    """Derive a conflict from one webhook line, or None.

    Lines without an integer ``qty``/``quantity`` never produce a conflict.
    A barcode (or sku) matching a scoped item by normalized form yields a
    quantity_mismatch when the quantities differ; anything unmatched is a
    missing_local_item.
    """
    barcode = token_value(line, "barcode") or token_value(line, "sku")
    raw_quantity = token_value(line, "qty") or token_value(line, "quantity")
    if raw_quantity is None or not _INTEGER.fullmatch(raw_quantity):
        return None
    remote_quantity = int(raw_quantity)

    barcode_key = normalized_barcode(barcode) if barcode else ""
    if barcode_key:
        for item in scoped_items:
            if normalized_barcode(item.barcode) != barcode_key:
                continue
            local_units = item.total_units
            if local_units == remote_quantity:
                return None
            return IntegrationConflict(
                provider=provider,
                workspace_key=workspace_key,
                created_at=created_at,
                type=ConflictType.quantity_mismatch,
                local_item_id=item.id,
                local_item_name=item.name,
                remote_item_name=item.name,
                local_units=local_units,
                remote_units=max(0, remote_quantity),
            )

    return IntegrationConflict(
        provider=provider,
        workspace_key=workspace_key,
        created_at=created_at,
        type=ConflictType.missing_local_item,
        remote_item_name=token_value(line, "name") or DEFAULT_REMOTE_ITEM_NAME,
        local_units=0,
        remote_units=max(0, remote_quantity),
    )


class ConflictService:
    """Deduplicated conflict queue and operator resolution.

    Args:
        store: Single owner of persisted integration state.
        audit: Audit trail.
    """

    def __init__(self, store: IntegrationStore, audit: AuditService) -> None:
        self._store = store
        self._audit = audit

    def enqueue(self, conflict: IntegrationConflict) -> bool:
        """Insert a conflict unless an unresolved duplicate exists.

        Returns:
            True if the conflict was stored.
        """
        key = conflict.dedup_key()
        with self._store.lock:
            for existing in self._store.state.conflicts:
                if existing.status == ConflictStatus.unresolved and existing.dedup_key() == key:
                    logger.debug("Skipped duplicate %s conflict for %s", conflict.type.value, conflict.provider.value)
                    return False
            self._store.state.conflicts.insert(0, conflict)
            del self._store.state.conflicts[CONFLICT_CAP:]
            self._store.persist()
        return True

    def unresolved(
        self,
        workspace_key: str,
        provider: IntegrationProvider | None = None,
        limit: int = 120,
    ) -> list[IntegrationConflict]:
        with self._store.lock:
            matching = [
                conflict.model_copy()
                for conflict in self._store.state.conflicts
                if conflict.workspace_key == workspace_key
                and conflict.status == ConflictStatus.unresolved
                and (provider is None or conflict.provider == provider)
            ]
        matching.sort(key=lambda conflict: conflict.created_at, reverse=True)
        return matching[: max(0, limit)]

    def resolve(
        self,
        conflict_id: str,
        resolution: ConflictResolution,
        workspace_key: str,
        actor_name: str,
        catalog: ItemCatalog,
        backup_guard: BackupGuard,
    ) -> bool:
        """Resolve an unresolved conflict.

        accept_remote takes a guarded backup first, then writes the remote
        quantity into the catalog (creating the item for missing_local_item).

        Returns:
            False if the conflict is unknown or already resolved.
        """
        with self._store.lock:
            conflict = next(
                (candidate for candidate in self._store.state.conflicts if candidate.id == conflict_id),
                None,
            )
            if conflict is None:
                return False
            if conflict.status != ConflictStatus.unresolved:
                logger.info(format_error(
                    CONFLICT_ALREADY_RESOLVED, conflict_id=conflict_id, status=conflict.status.value,
                ))
                return False

            if resolution == ConflictResolution.accept_remote:
                backup_guard.create_guarded_backup_if_needed(
                    GUARDED_BACKUP_REASON,
                    catalog.items(),
                    workspace_key,
                    cooldown_minutes=GUARDED_BACKUP_COOLDOWN_MINUTES,
                )
                self._apply_remote_value(conflict, workspace_key, catalog)
                conflict.status = ConflictStatus.accept_remote
            else:
                conflict.status = ConflictStatus.keep_local
            conflict.resolved_at = self._store.now()
            self._store.persist()

        if resolution == ConflictResolution.accept_remote:
            text = "Accepted remote values"
            delta = conflict.remote_units - conflict.local_units
        else:
            text = "Kept local values"
            delta = 0
        self._audit.record(
            workspace_key,
            actor_name,
            AuditType.conflict_resolved,
            f"{text} for {conflict.type.title} ({conflict.provider.title}).",
            delta_units=delta,
            estimated_seconds_saved=90,
        )
        return True

    def _apply_remote_value(
        self, conflict: IntegrationConflict, workspace_key: str, catalog: ItemCatalog,
    ) -> None:
        target = max(0, conflict.remote_units)
        workspace_id = "" if workspace_key == WORKSPACE_ALL else workspace_key
        if conflict.local_item_id is not None:
            item = next((item for item in catalog.items() if item.id == conflict.local_item_id), None)
            if item is not None:
                catalog.apply_total_units(item, target, workspace_id or None)
                return

        if conflict.type == ConflictType.missing_local_item:
            catalog.create_item(
                name=conflict.remote_item_name or "Remote Item",
                units=target,
                category="Imported",
                workspace_id=workspace_id,
                notes="Created from integration conflict resolution.",
            )
