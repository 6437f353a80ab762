"""Tests for the offline inventory ledger: recording, sync, export, and the reconnect brief."""

import csv

import pytest

from src.services.integration_types import (
    AuditType,
    IntegrationProvider,
    InventoryEventType,
    LedgerSyncStatus,
)
from src.services.item_catalog import InventoryItem
from src.services.ledger_service import LEDGER_CSV_COLUMNS


@pytest.fixture
def item(catalog) -> InventoryItem:
    return next(i for i in catalog.items() if i.id == "A")


def record(platform, item, delta, source="scanner", reason=""):
    return platform.record_inventory_movement(
        item, delta, "Alex", None, InventoryEventType.adjustment, source, reason,
    )


class TestRecording:

    def test_movement_snapshots_item(self, platform, item):
        event = record(platform, item, -3, reason="damaged")
        assert event.delta_units == -3
        assert event.resulting_units == 10
        assert event.item_id == "A"
        assert event.item_category == "Hardware"
        assert event.reason == "damaged"
        assert event.sync_status == LedgerSyncStatus.pending
        assert event.sync_attempt_count == 0

    def test_zero_delta_is_skipped(self, platform, item):
        assert record(platform, item, 0) is None
        assert platform.inventory_events(None) == []

    def test_blank_source_and_name_defaults(self, platform):
        nameless = InventoryItem(id="X", name="  ", on_hand_units=1)
        event = record(platform, nameless, 1, source="  ")
        assert event.source == "manual"
        assert event.item_name == "Unknown Item"

    def test_correlation_id_kept_or_generated(self, platform, item):
        given = platform.record_inventory_movement(
            item, 1, "Alex", None, InventoryEventType.adjustment, "scanner", correlation_id="batch-7",
        )
        generated = record(platform, item, 1)
        assert given.correlation_id == "batch-7"
        assert generated.correlation_id

    def test_count_correction(self, platform, item):
        event = platform.record_count_correction(item, 10, 7, "Alex", None, "count-session")
        assert event.type == InventoryEventType.count_correction
        assert event.delta_units == -3
        assert event.resulting_units == 7
        assert platform.record_count_correction(item, 7, 7, "Alex", None, "count-session") is None

    def test_receipt_is_audited(self, platform, item):
        event = platform.log_receipt(item, 6, "Alex", None)
        assert event.type == InventoryEventType.receipt
        assert event.source == "manual-receive"
        audit = platform.audit_events(None)[0]
        assert audit.type == AuditType.receive
        assert audit.delta_units == 6

    def test_non_positive_receipt_is_ignored(self, platform, item):
        assert platform.log_receipt(item, 0, "Alex", None) is None
        assert platform.log_receipt(item, -2, "Alex", None) is None
        assert platform.audit_events(None) == []
        assert platform.inventory_events(None) == []

    def test_events_newest_first_and_pending_count(self, platform, item, clock):
        record(platform, item, 1)
        clock.advance(minutes=1)
        record(platform, item, 2)
        assert [e.delta_units for e in platform.inventory_events(None)] == [2, 1]
        assert platform.pending_inventory_event_count(None) == 2
        assert platform.pending_inventory_event_count("ws-1") == 0


class TestLedgerSync:

    def test_nothing_pending(self, platform):
        run = platform.sync_inventory_ledger(None, "Alex")
        assert (run.attempted, run.synced, run.failed) == (0, 0, 0)
        assert run.provider is None
        assert run.blocked_by_connection is False
        assert run.message == "No pending ledger events."

    def test_no_connected_provider_marks_events_failed(self, platform, item, clock):
        record(platform, item, 1)
        record(platform, item, 2)
        clock.advance(minutes=1)

        run = platform.sync_inventory_ledger(None, "Alex")

        assert (run.attempted, run.synced, run.failed) == (2, 0, 2)
        assert run.blocked_by_connection is True
        assert run.provider is None
        assert run.message == "No connected provider. Connect QuickBooks or Shopify in Integration Hub."
        for event in platform.inventory_events(None):
            assert event.sync_status == LedgerSyncStatus.failed
            assert event.sync_attempt_count == 1
            assert event.last_sync_at == clock()
            assert event.last_sync_error == run.message

    def test_connected_provider_syncs_batch(self, connected_platform, item):
        record(connected_platform, item, 4)
        run = connected_platform.sync_inventory_ledger(None, "Alex")
        assert (run.attempted, run.synced, run.failed) == (1, 1, 0)
        assert run.provider == IntegrationProvider.quickbooks
        assert run.blocked_by_connection is False
        event = connected_platform.inventory_events(None)[0]
        assert event.sync_status == LedgerSyncStatus.synced
        assert event.last_sync_error is None
        assert connected_platform.pending_inventory_event_count(None) == 0

    def test_falls_through_to_second_provider(self, platform, item):
        platform.save_connection("shopify", None, "Alex", "Store", access_token="tok")
        record(platform, item, 4)
        assert platform.sync_inventory_ledger(None, "Alex").provider == IntegrationProvider.shopify

    def test_oldest_events_first(self, connected_platform, item, clock):
        for delta in (1, 2, 3):
            record(connected_platform, item, delta)
            clock.advance(minutes=1)
        run = connected_platform.sync_inventory_ledger(None, "Alex", max_events=2)
        assert run.synced == 2
        status = {e.delta_units: e.sync_status for e in connected_platform.inventory_events(None)}
        assert status == {
            1: LedgerSyncStatus.synced,
            2: LedgerSyncStatus.synced,
            3: LedgerSyncStatus.pending,
        }

    def test_failed_events_retried_after_reconnect(self, platform, item):
        record(platform, item, 1)
        platform.sync_inventory_ledger(None, "Alex")
        platform.save_connection("quickbooks", None, "Alex", "Books", access_token="tok")

        run = platform.sync_inventory_ledger(None, "Alex")

        event = platform.inventory_events(None)[0]
        assert run.synced == 1
        assert event.sync_status == LedgerSyncStatus.synced
        assert event.sync_attempt_count == 2
        assert event.last_sync_error is None

    def test_workspaces_are_isolated(self, connected_platform, item):
        connected_platform.record_inventory_movement(
            item, 1, "Alex", "ws-1", InventoryEventType.adjustment, "scanner",
        )
        run = connected_platform.sync_inventory_ledger(None, "Alex")
        assert run.attempted == 0
        assert connected_platform.pending_inventory_event_count("ws-1") == 1

    def test_mark_synced_bulk(self, platform, item):
        for delta in (1, 2, 3):
            record(platform, item, delta)
        assert platform.mark_inventory_events_synced(None, "Alex", max_count=2) == 2
        assert platform.pending_inventory_event_count(None) == 1
        assert platform.audit_events(None)[0].summary == "Ledger sync marked 2 inventory event(s) as synced."

    def test_mark_synced_nothing_pending(self, platform):
        assert platform.mark_inventory_events_synced(None, "Alex") == 0
        assert platform.audit_events(None) == []


class TestExport:

    def test_writes_csv_with_header(self, platform, item, tmp_path, clock):
        record(platform, item, 3, reason="shelf, top row")
        record(platform, item, -1)

        path = platform.export_inventory_ledger_csv(None, "Alex", directory=tmp_path)

        assert path.parent == tmp_path
        assert path.name == f"inventory_event_ledger_{clock():%Y%m%d_%H%M%S}.csv"
        with open(path, newline="", encoding="utf-8") as f:
            rows = list(csv.reader(f))
        assert rows[0] == LEDGER_CSV_COLUMNS
        assert len(rows) == 3
        by_delta = {row[LEDGER_CSV_COLUMNS.index("delta_units")]: row for row in rows[1:]}
        assert by_delta["3"][LEDGER_CSV_COLUMNS.index("reason")] == "shelf, top row"
        assert by_delta["3"][LEDGER_CSV_COLUMNS.index("created_at")] == clock().isoformat()

    def test_excluding_synced(self, connected_platform, item, tmp_path, clock):
        record(connected_platform, item, 1)
        connected_platform.sync_inventory_ledger(None, "Alex")
        record(connected_platform, item, 2)
        clock.advance(seconds=1)
        path = connected_platform.export_inventory_ledger_csv(
            None, "Alex", include_synced=False, directory=tmp_path,
        )
        with open(path, newline="", encoding="utf-8") as f:
            assert len(list(csv.reader(f))) == 2

    def test_export_is_audited(self, platform, item, tmp_path):
        record(platform, item, 1)
        platform.export_inventory_ledger_csv(None, "Alex", directory=tmp_path)
        audit = platform.audit_events(None)[0]
        assert audit.type == AuditType.csv_export
        assert audit.summary == "Exported inventory event ledger with 1 event(s)."

    def test_no_temp_files_left_behind(self, platform, item, tmp_path):
        record(platform, item, 1)
        platform.export_inventory_ledger_csv(None, "Alex", directory=tmp_path)
        assert [p.suffix for p in tmp_path.iterdir()] == [".csv"]


class TestReconnectBrief:

    def test_empty_ledger(self, platform):
        brief = platform.inventory_reconnect_brief(None)
        assert brief.unsynced_count == 0
        assert brief.connection_issues == []
        assert brief.steps == []

    def test_failed_backlog_with_expired_token(self, platform, item, clock):
        platform.save_connection("quickbooks", None, "Alex", "Books", access_token="tok")
        clock.advance(days=31)
        record(platform, item, 3, source="scanner")
        record(platform, item, -2, source="scanner")
        record(platform, item, 1, source="receiving")
        failed_at = clock()
        platform.sync_inventory_ledger(None, "Alex")

        brief = platform.inventory_reconnect_brief(None)

        assert brief.failed_count == 3
        assert brief.pending_count == 0
        assert brief.unsynced_units == 6
        assert brief.oldest_failed_at == failed_at
        assert brief.oldest_pending_at is None
        assert [(load.source, load.count) for load in brief.source_load] == [("scanner", 2), ("receiving", 1)]
        assert brief.connection_issues == ["QuickBooks token expired.", "Shopify not connected."]
        assert [step.id for step in brief.steps] == [
            "connect-provider",
            "refresh-token",
            "export-ledger-failures",
            "run-ledger-sync",
        ]

    def test_pending_backlog_with_live_connection(self, connected_platform, item):
        record(connected_platform, item, 2)
        brief = connected_platform.inventory_reconnect_brief(None)
        assert brief.pending_count == 1
        assert brief.connection_issues == ["Shopify not connected."]
        assert [(step.id, step.priority) for step in brief.steps] == [("run-ledger-sync", 0)]
