"""Root-level pytest fixtures for all tests.

Provides shared fixtures:
- A dict-backed keyring so tests never touch the system keychain
- A controllable clock
- In-memory state database fixtures
- A small item catalog and a fully wired IntegrationPlatform
"""

from collections.abc import Generator
from datetime import UTC, datetime, timedelta

import keyring
import keyring.errors
import pytest
from sqlalchemy.engine import Engine

from src.db.connection import create_state_engine, init_db, make_session_factory
from src.services.item_catalog import InMemoryItemCatalog, InventoryItem
from src.services.platform_service import IntegrationPlatform, build_platform
from src.services.state_store import StateStore

# ============================================================================
# Pytest Markers
# ============================================================================


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests that wait on real timers"
    )


# ============================================================================
# Keyring
# ============================================================================


class FakeKeyring:
    """In-memory stand-in for the keyring module functions.

    Set ``fail_writes`` to make every set_password raise, mimicking a locked
    keychain.
    """

    def __init__(self) -> None:
        self.passwords: dict[tuple[str, str], str] = {}
        self.fail_writes = False

    def get_password(self, service: str, account: str) -> str | None:
        return self.passwords.get((service, account))

    def set_password(self, service: str, account: str, value: str) -> None:
        if self.fail_writes:
            raise keyring.errors.PasswordSetError("keychain locked")
        self.passwords[(service, account)] = value

    def delete_password(self, service: str, account: str) -> None:
        if (service, account) not in self.passwords:
            raise keyring.errors.PasswordDeleteError("not found")
        del self.passwords[(service, account)]

    def accounts(self) -> set[str]:
        return {account for _, account in self.passwords}


@pytest.fixture(autouse=True)
def fake_keyring(monkeypatch) -> FakeKeyring:
    """Route every keyring call through a FakeKeyring."""
    fake = FakeKeyring()
    monkeypatch.setattr(keyring, "get_password", fake.get_password)
    monkeypatch.setattr(keyring, "set_password", fake.set_password)
    monkeypatch.setattr(keyring, "delete_password", fake.delete_password)
    return fake


# ============================================================================
# Clock
# ============================================================================


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2026, 3, 2, 9, 30, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs: float) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


# ============================================================================
# Database Fixtures
# ============================================================================


@pytest.fixture
def state_engine() -> Generator[Engine, None, None]:
    """In-memory SQLite engine with the state tables created."""
    engine = create_state_engine("sqlite:///:memory:")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def state_store(state_engine) -> StateStore:
    return StateStore(make_session_factory(state_engine))


# ============================================================================
# Catalog and Platform
# ============================================================================

# Drift is a function of the uppercased id's character sum:
#   "A" -> -2, "D" -> +1, "E" -> +2
@pytest.fixture
def catalog() -> InMemoryItemCatalog:
    return InMemoryItemCatalog([
        InventoryItem(id="A", name="Anchor Bolts", on_hand_units=10, category="Hardware", barcode="111-A"),
        InventoryItem(id="D", name="Drill Bits", on_hand_units=10, category="Tools", barcode="222"),
    ])


@pytest.fixture
def platform(catalog, clock) -> Generator[IntegrationPlatform, None, None]:
    """Platform with in-memory state, the fake keyring, and a frozen clock."""
    built = build_platform(catalog, clock=clock)
    built.load()
    yield built
    built.close()


@pytest.fixture
def connected_platform(platform) -> IntegrationPlatform:
    """Platform with QuickBooks connected (access + refresh token) in the unscoped workspace."""
    assert platform.save_connection(
        "quickbooks", None, "Alex", "Main Books", access_token="atk-1", refresh_token="rtk-1",
    )
    return platform
