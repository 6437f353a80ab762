"""Guarded backup collaborator.

A guarded backup is a pre-mutation safety snapshot taken before risky
changes such as accepting remote values into local inventory. Snapshots for
the same (workspace, reason) are rate-limited by a cooldown. Backup storage
and restore are owned elsewhere; CooldownBackupGuard keeps snapshots in
memory and is the reference implementation for the CLI and tests.
"""

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Protocol
from uuid import uuid4

from src.services.integration_types import WORKSPACE_ALL
from src.services.item_catalog import InventoryItem, scope_items

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SnapshotItem:
    id: str
    name: str
    on_hand_units: int


@dataclass
class BackupSnapshot:
    """Point-in-time copy of a workspace's items."""

    id: str
    title: str
    workspace_key: str
    created_at: datetime
    items: list[SnapshotItem] = field(default_factory=list)

    @property
    def item_count(self) -> int:
        return len(self.items)


class BackupGuard(Protocol):
    def create_guarded_backup_if_needed(
        self,
        reason: str,
        items: list[InventoryItem],
        workspace_key: str,
        cooldown_minutes: int = 90,
    ) -> BackupSnapshot | None: ...


def normalized_guard_token(reason: str) -> str:
    """Reduce a free-text reason to a stable cooldown token."""
    token = re.sub(r"[^a-z0-9]+", "-", reason.strip().lower()).strip("-")
    return token or "general"


class CooldownBackupGuard:
    """In-memory guarded backups with a per-(workspace, reason) cooldown.

    Args:
        clock: Returns the current aware UTC datetime.
        minimum_item_count: Skip the snapshot when fewer items are in scope.
    """

    def __init__(self, clock: Callable[[], datetime], minimum_item_count: int = 1) -> None:
        self._clock = clock
        self._minimum_item_count = max(0, minimum_item_count)
        self._last_run: dict[str, datetime] = {}
        self.snapshots: list[BackupSnapshot] = []

    def create_guarded_backup_if_needed(
        self,
        reason: str,
        items: list[InventoryItem],
        workspace_key: str,
        cooldown_minutes: int = 90,
    ) -> BackupSnapshot | None:
        workspace_id = None if workspace_key == WORKSPACE_ALL else workspace_key
        scoped = scope_items(items, workspace_id)
        if len(scoped) < self._minimum_item_count:
            return None

        guard_key = f"{workspace_key}.{normalized_guard_token(reason)}"
        now = self._clock()
        last_run = self._last_run.get(guard_key)
        if cooldown_minutes > 0 and last_run is not None:
            if now - last_run < timedelta(minutes=max(1, cooldown_minutes)):
                logger.debug("Guarded backup %s skipped (cooldown)", guard_key)
                return None

        snapshot = BackupSnapshot(
            id=str(uuid4()),
            title=f"Auto backup: {reason}",
            workspace_key=workspace_key,
            created_at=now,
            items=[SnapshotItem(item.id, item.name, item.on_hand_units) for item in scoped],
        )
        self.snapshots.insert(0, snapshot)
        self._last_run[guard_key] = now
        logger.info("Guarded backup '%s' captured %d item(s)", snapshot.title, snapshot.item_count)
        return snapshot
