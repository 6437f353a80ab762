"""Single owner of all persisted integration state.

Every collection (connections, sync jobs, retry jobs, webhooks, conflicts,
ledger events, audit events) lives in one PersistedState guarded by one
re-entrant lock. Services mutate state only while holding ``lock`` and call
``persist()`` afterwards; persistence is write-behind through
WriteBehindPersister, so a burst of mutations costs a single DB write.
"""

import logging
import threading
from collections.abc import Callable
from datetime import UTC, datetime

from src.services.integration_models import IntegrationConnection
from src.services.integration_types import IntegrationProvider
from src.services.state_store import (
    DEFAULT_DEBOUNCE_SECONDS,
    PersistedState,
    StateStore,
    WriteBehindPersister,
    encode_state,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Default clock: current aware UTC time."""
    return datetime.now(UTC)


class IntegrationStore:
    """Lock-guarded in-memory state with debounced durable snapshots.

    Args:
        state_store: Durable backend; None keeps state in memory only.
        clock: Returns the current aware UTC datetime.
        debounce_seconds: Quiet window before a scheduled snapshot is written.
    """

    def __init__(
        self,
        state_store: StateStore | None = None,
        clock: Clock = utc_now,
        debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
    ) -> None:
        self.lock = threading.RLock()
        self.state = PersistedState()
        self._clock = clock
        self._state_store = state_store
        self._persister = (
            WriteBehindPersister(state_store, debounce_seconds) if state_store is not None else None
        )

    def now(self) -> datetime:
        return self._clock()

    def load(self) -> PersistedState:
        """Replace in-memory state with the durable snapshot."""
        if self._state_store is None:
            return self.state
        loaded = self._state_store.load_state()
        with self.lock:
            self.state = loaded
        logger.info(
            "Loaded integration state: %d connection(s), %d ledger event(s)",
            len(loaded.connections), len(loaded.inventory_events),
        )
        return loaded

    def persist(self) -> None:
        """Schedule a snapshot of the current state."""
        if self._persister is None:
            return
        with self.lock:
            payloads = encode_state(self.state)
        self._persister.schedule(payloads)

    def flush(self) -> None:
        """Write any pending snapshot now."""
        if self._persister is not None:
            self._persister.flush()

    @property
    def has_pending_writes(self) -> bool:
        return self._persister is not None and self._persister.has_pending

    def close(self) -> None:
        self.flush()

    # --- Lookups (caller holds lock) ---

    def find_connection(
        self, provider: IntegrationProvider, workspace_key: str,
    ) -> IntegrationConnection | None:
        for connection in self.state.connections:
            if connection.provider == provider and connection.workspace_key == workspace_key:
                return connection
        return None
