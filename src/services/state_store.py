"""Durable key/value persistence for integration state.

StateStore reads and writes whole collections as JSON payloads in the
``state_entries`` table. WriteBehindPersister sits in front of it and
coalesces bursts of mutations into a single write after a short quiet
window (threading.Timer debounce).

Durability is NOT synchronous with a mutating call: a crash inside the
debounce window loses the most recent snapshot. Call ``flush()`` on
shutdown to bound that window to zero for orderly exits.
"""

import logging
import threading
from dataclasses import dataclass, field

from pydantic import TypeAdapter, ValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from src.db.connection import session_scope
from src.db.models import StateEntry, utc_now_iso
from src.errors.formatter import format_error
from src.errors.registry import PERSISTED_STATE_CORRUPT
from src.services.integration_models import (
    IntegrationConflict,
    IntegrationConnection,
    IntegrationSyncJob,
    IntegrationSyncRetryJob,
    IntegrationWebhookEvent,
    InventoryLedgerEvent,
    PlatformAuditEvent,
)

logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE_SECONDS = 0.12

CONNECTIONS_KEY = "inventory.platform.connections.v1"
SYNC_JOBS_KEY = "inventory.platform.syncJobs.v1"
SYNC_RETRY_JOBS_KEY = "inventory.platform.syncRetryJobs.v1"
WEBHOOK_EVENTS_KEY = "inventory.platform.webhooks.v1"
CONFLICTS_KEY = "inventory.platform.conflicts.v1"
INVENTORY_EVENTS_KEY = "inventory.platform.inventoryEvents.v1"
AUDIT_EVENTS_KEY = "inventory.platform.auditEvents.v1"


@dataclass
class PersistedState:
    """All collections owned by the platform store."""

    connections: list[IntegrationConnection] = field(default_factory=list)
    sync_jobs: list[IntegrationSyncJob] = field(default_factory=list)
    sync_retry_jobs: list[IntegrationSyncRetryJob] = field(default_factory=list)
    webhook_events: list[IntegrationWebhookEvent] = field(default_factory=list)
    conflicts: list[IntegrationConflict] = field(default_factory=list)
    inventory_events: list[InventoryLedgerEvent] = field(default_factory=list)
    audit_events: list[PlatformAuditEvent] = field(default_factory=list)


# attribute name -> (storage key, record type, sort attribute)
_COLLECTIONS: dict[str, tuple[str, type, str]] = {
    "connections": (CONNECTIONS_KEY, IntegrationConnection, "connected_at"),
    "sync_jobs": (SYNC_JOBS_KEY, IntegrationSyncJob, "finished_at"),
    "sync_retry_jobs": (SYNC_RETRY_JOBS_KEY, IntegrationSyncRetryJob, "updated_at"),
    "webhook_events": (WEBHOOK_EVENTS_KEY, IntegrationWebhookEvent, "received_at"),
    "conflicts": (CONFLICTS_KEY, IntegrationConflict, "created_at"),
    "inventory_events": (INVENTORY_EVENTS_KEY, InventoryLedgerEvent, "created_at"),
    "audit_events": (AUDIT_EVENTS_KEY, PlatformAuditEvent, "created_at"),
}

_ADAPTERS: dict[str, TypeAdapter] = {
    attr: TypeAdapter(list[record_type]) for attr, (_, record_type, _) in _COLLECTIONS.items()
}


def encode_state(state: PersistedState) -> dict[str, str]:
    """Serialize every collection to its JSON payload, keyed by storage key."""
    payloads: dict[str, str] = {}
    for attr, (key, _, _) in _COLLECTIONS.items():
        payloads[key] = _ADAPTERS[attr].dump_json(getattr(state, attr)).decode("utf-8")
    return payloads


def decode_state(raw: dict[str, str | None]) -> PersistedState:
    """Deserialize stored payloads, falling back to empty on corruption.

    Each collection is decoded independently so one malformed key does not
    discard the others. Collections come back newest-first.
    """
    state = PersistedState()
    for attr, (key, _, sort_attr) in _COLLECTIONS.items():
        payload = raw.get(key)
        if not payload:
            continue
        try:
            records = _ADAPTERS[attr].validate_json(payload)
        except (ValidationError, ValueError):
            logger.warning(format_error(PERSISTED_STATE_CORRUPT, key=key))
            continue
        records.sort(key=lambda record: getattr(record, sort_attr), reverse=True)
        setattr(state, attr, records)
    return state


class StateStore:
    """Key/value access to the ``state_entries`` table.

    Args:
        session_factory: SQLAlchemy session factory bound to the state DB.
    """

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def read(self, key: str) -> str | None:
        """Return the stored payload for ``key``, or None if never written."""
        with session_scope(self._session_factory) as db:
            row = db.get(StateEntry, key)
            return row.payload if row is not None else None

    def read_many(self, keys: list[str]) -> dict[str, str | None]:
        with session_scope(self._session_factory) as db:
            rows = db.scalars(select(StateEntry).where(StateEntry.key.in_(keys))).all()
            found = {row.key: row.payload for row in rows}
        return {key: found.get(key) for key in keys}

    def write_many(self, payloads: dict[str, str]) -> None:
        """Upsert every payload in one transaction."""
        now = utc_now_iso()
        with session_scope(self._session_factory) as db:
            for key, payload in payloads.items():
                row = db.get(StateEntry, key)
                if row is None:
                    db.add(StateEntry(key=key, payload=payload, revision=1, updated_at=now))
                else:
                    row.payload = payload
                    row.revision = (row.revision or 0) + 1
                    row.updated_at = now

    def load_state(self) -> PersistedState:
        keys = [key for key, _, _ in _COLLECTIONS.values()]
        return decode_state(self.read_many(keys))


class WriteBehindPersister:
    """Debounced write-behind in front of a StateStore.

    ``schedule`` replaces any pending snapshot and restarts the quiet-window
    timer; only the newest snapshot is ever written. Sequence numbers keep a
    slow timer thread from overwriting a newer flush.

    Args:
        store: Destination StateStore.
        debounce_seconds: Quiet window before a scheduled write fires.
    """

    def __init__(self, store: StateStore, debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS) -> None:
        self._store = store
        self._debounce = max(0.0, debounce_seconds)
        self._lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._timer: threading.Timer | None = None
        self._pending: dict[str, str] | None = None
        self._seq = 0
        self._written_seq = 0

    @property
    def has_pending(self) -> bool:
        with self._lock:
            return self._pending is not None

    def schedule(self, payloads: dict[str, str]) -> None:
        """Queue a snapshot for writing after the debounce window."""
        with self._lock:
            self._seq += 1
            self._pending = payloads
            if self._timer is not None:
                self._timer.cancel()
            timer = threading.Timer(self._debounce, self._fire)
            timer.daemon = True
            self._timer = timer
            timer.start()

    def flush(self) -> None:
        """Write any pending snapshot now, waiting for an in-flight timer write."""
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
        self._drain()

    def _fire(self) -> None:
        with self._lock:
            if self._timer is threading.current_thread():
                self._timer = None
        self._drain()

    def _take_pending(self) -> tuple[int, dict[str, str]] | None:
        if self._pending is None:
            return None
        payloads, self._pending = self._pending, None
        return self._seq, payloads

    def _drain(self) -> None:
        # The write lock is held from taking the snapshot until it lands, so a
        # concurrent flush blocks until the in-flight write finishes.
        with self._write_lock:
            with self._lock:
                batch = self._take_pending()
            if batch is None:
                return
            seq, payloads = batch
            if seq <= self._written_seq:
                return
            try:
                self._store.write_many(payloads)
            except Exception:
                logger.exception("Write-behind flush failed; snapshot %d kept pending", seq)
                with self._lock:
                    if self._pending is None:
                        self._pending = payloads
                return
            self._written_seq = seq
            logger.debug("Persisted integration state snapshot %d", seq)

