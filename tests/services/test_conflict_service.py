"""Tests for conflict deduplication and resolution."""

import pytest

from src.errors import NotFoundError
from src.services.audit_service import AuditService
from src.services.conflict_service import ConflictService
from src.services.integration_models import IntegrationConflict
from src.services.integration_store import IntegrationStore
from src.services.integration_types import (
    CONFLICT_CAP,
    AuditType,
    ConflictResolution,
    ConflictStatus,
    ConflictType,
    IntegrationProvider,
)


def make_conflict(clock, **overrides) -> IntegrationConflict:
    fields = dict(
        provider=IntegrationProvider.shopify,
        workspace_key="all",
        created_at=clock(),
        type=ConflictType.quantity_mismatch,
        local_item_id="A",
        local_item_name="Anchor Bolts",
        remote_item_name="Anchor Bolts",
        local_units=10,
        remote_units=15,
    )
    fields.update(overrides)
    return IntegrationConflict(**fields)


@pytest.fixture
def conflicts(clock) -> ConflictService:
    store = IntegrationStore(clock=clock)
    return ConflictService(store, AuditService(store))


class TestEnqueue:

    def test_duplicate_unresolved_is_skipped(self, conflicts, clock):
        assert conflicts.enqueue(make_conflict(clock)) is True
        clock.advance(minutes=5)
        assert conflicts.enqueue(make_conflict(clock)) is False
        assert len(conflicts.unresolved("all")) == 1

    def test_different_remote_value_is_new_drift(self, conflicts, clock):
        conflicts.enqueue(make_conflict(clock))
        assert conflicts.enqueue(make_conflict(clock, remote_units=16)) is True

    def test_resolved_conflict_does_not_block_new_one(self, conflicts, clock, catalog):
        from src.services.backup_guard import CooldownBackupGuard

        first = make_conflict(clock)
        conflicts.enqueue(first)
        conflicts.resolve(
            first.id, ConflictResolution.keep_local, "all", "Alex", catalog, CooldownBackupGuard(clock),
        )
        assert conflicts.enqueue(make_conflict(clock)) is True

    def test_cap_drops_oldest(self, conflicts, clock):
        for units in range(CONFLICT_CAP + 5):
            conflicts.enqueue(make_conflict(clock, remote_units=units + 100))
        assert len(conflicts.unresolved("all", limit=CONFLICT_CAP + 10)) == CONFLICT_CAP

    def test_unresolved_newest_first_and_filtered(self, conflicts, clock):
        conflicts.enqueue(make_conflict(clock, remote_units=1))
        clock.advance(minutes=1)
        conflicts.enqueue(make_conflict(clock, remote_units=2, provider=IntegrationProvider.quickbooks))
        clock.advance(minutes=1)
        conflicts.enqueue(make_conflict(clock, remote_units=3))
        assert [c.remote_units for c in conflicts.unresolved("all")] == [3, 2, 1]
        assert [c.remote_units for c in conflicts.unresolved("all", IntegrationProvider.shopify)] == [3, 1]
        assert conflicts.unresolved("ws-1") == []


class TestResolve:

    def _flag(self, platform, line="barcode=111-A qty=15") -> str:
        platform.ingest_webhook_payload(line, "shopify", None, "Alex")
        return platform.unresolved_conflicts(None)[0].id

    def test_accept_remote_applies_quantity(self, platform, catalog):
        conflict_id = self._flag(platform)
        assert platform.resolve_conflict(conflict_id, "accept_remote", None, "Alex") is True
        item = next(i for i in catalog.items() if i.id == "A")
        assert item.on_hand_units == 15
        assert platform.require_conflict(conflict_id).status == ConflictStatus.accept_remote
        assert platform.unresolved_conflicts(None) == []

    def test_accept_remote_takes_guarded_backup(self, platform):
        conflict_id = self._flag(platform)
        platform.resolve_conflict(conflict_id, ConflictResolution.accept_remote, None, "Alex")
        snapshots = platform.backup_guard.snapshots
        assert len(snapshots) == 1
        assert snapshots[0].title == "Auto backup: Integration conflict resolution"
        assert {s.on_hand_units for s in snapshots[0].items if s.id == "A"} == {10}

    def test_backup_cooldown(self, platform, clock):
        first = self._flag(platform)
        platform.resolve_conflict(first, "accept_remote", None, "Alex")
        clock.advance(minutes=10)
        second = self._flag(platform, "barcode=222 qty=1")
        platform.resolve_conflict(second, "accept_remote", None, "Alex")
        assert len(platform.backup_guard.snapshots) == 1
        clock.advance(minutes=31)
        third = self._flag(platform, "barcode=222 qty=7")
        platform.resolve_conflict(third, "accept_remote", None, "Alex")
        assert len(platform.backup_guard.snapshots) == 2

    def test_keep_local_leaves_catalog(self, platform, catalog, clock):
        conflict_id = self._flag(platform)
        clock.advance(seconds=30)
        assert platform.resolve_conflict(conflict_id, "keep_local", None, "Alex") is True
        assert next(i for i in catalog.items() if i.id == "A").on_hand_units == 10
        resolved = platform.require_conflict(conflict_id)
        assert resolved.status == ConflictStatus.keep_local
        assert resolved.resolved_at == clock()
        assert platform.backup_guard.snapshots == []

    def test_accept_missing_local_creates_item(self, platform, catalog):
        conflict_id = self._flag(platform, "sku=999 qty=3 name=Gizmo")
        platform.resolve_conflict(conflict_id, "accept_remote", "ws-9", "Alex")
        created = next(i for i in catalog.items() if i.name == "Gizmo")
        assert created.on_hand_units == 3
        assert created.category == "Imported"
        assert created.workspace_id == "ws-9"

    def test_accept_remote_assigns_workspace_to_unassigned_item(self, platform, catalog):
        conflict_id = self._flag(platform)
        platform.resolve_conflict(conflict_id, "accept_remote", "ws-1", "Alex")
        assert next(i for i in catalog.items() if i.id == "A").workspace_id == "ws-1"

    def test_second_resolve_fails(self, platform):
        conflict_id = self._flag(platform)
        platform.resolve_conflict(conflict_id, "keep_local", None, "Alex")
        assert platform.resolve_conflict(conflict_id, "accept_remote", None, "Alex") is False
        assert platform.require_conflict(conflict_id).status == ConflictStatus.keep_local

    def test_unknown_conflict(self, platform):
        assert platform.resolve_conflict("missing", "keep_local", None, "Alex") is False
        with pytest.raises(NotFoundError):
            platform.require_conflict("missing")

    def test_resolution_is_audited(self, platform):
        conflict_id = self._flag(platform)
        platform.resolve_conflict(conflict_id, "accept_remote", None, "Alex")
        event = platform.audit_events(None)[0]
        assert event.type == AuditType.conflict_resolved
        assert event.summary == "Accepted remote values for Quantity Mismatch (Shopify)."
        assert event.delta_units == 5

    def test_resolved_at_not_before_created(self, platform, clock):
        conflict_id = self._flag(platform)
        clock.advance(minutes=1)
        platform.resolve_conflict(conflict_id, "keep_local", None, "Alex")
        resolved = platform.require_conflict(conflict_id)
        assert resolved.resolved_at >= resolved.created_at
