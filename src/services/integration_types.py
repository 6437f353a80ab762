"""Shared types and constants for provider integration state.

Neutral module with no DB or service-layer imports. Used by every
integration service, the persistence codec, and the CLI config loader.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from src.errors.formatter import to_exception
from src.errors.registry import UNKNOWN_PROVIDER


# --- Shared Constants ---

WORKSPACE_ALL = "all"

# Persisted connection records carry this instead of secret material.
SECRET_PLACEHOLDER = "stored-in-keychain"

DEFAULT_KEYRING_SERVICE = "com.stockbridge.integration-secrets.v1"

SYNC_JOB_CAP = 80
SYNC_RETRY_JOB_CAP = 200
WEBHOOK_EVENT_CAP = 400
CONFLICT_CAP = 300
AUDIT_EVENT_CAP = 400
LEDGER_EVENT_CAP = 2000


def workspace_key(workspace_id: str | None) -> str:
    """Map an optional workspace identifier to its scoping key."""
    if workspace_id is None:
        return WORKSPACE_ALL
    trimmed = workspace_id.strip()
    return trimmed or WORKSPACE_ALL


# --- Enums ---


class IntegrationProvider(str, Enum):
    """External systems inventory can be exchanged with.

    Declaration order is the ledger runner's provider preference order.
    """

    quickbooks = "quickbooks"
    shopify = "shopify"

    @property
    def title(self) -> str:
        return _PROVIDER_TITLES[self]

    @classmethod
    def parse(cls, value: "str | IntegrationProvider") -> "IntegrationProvider":
        """Parse a provider name case-insensitively.

        Raises:
            IntegrationError: E-2002 if the name is not a known provider.
        """
        if isinstance(value, IntegrationProvider):
            return value
        normalized = value.strip().lower()
        for provider in cls:
            if provider.value == normalized:
                return provider
        raise to_exception(UNKNOWN_PROVIDER, provider=value)


_PROVIDER_TITLES = {
    IntegrationProvider.quickbooks: "QuickBooks",
    IntegrationProvider.shopify: "Shopify",
}


class IntegrationSecretKind(str, Enum):
    """Kinds of secret stored per (workspace, provider)."""

    access_token = "access_token"
    refresh_token = "refresh_token"
    webhook_secret = "webhook_secret"


class ConnectionStatus(str, Enum):
    """Persisted connection status tag.

    Always re-derived through effective_state(); never hand-set except for
    the token_expired downgrade when a refresh is impossible.
    """

    disconnected = "disconnected"
    connected = "connected"
    token_expired = "token_expired"


class SyncStatus(str, Enum):
    """Outcome of one sync attempt."""

    success = "success"
    failed = "failed"


class RetryStatus(str, Enum):
    """Lifecycle: queued -> resolved | abandoned."""

    queued = "queued"
    resolved = "resolved"
    abandoned = "abandoned"


class WebhookStatus(str, Enum):
    """Lifecycle: pending -> applied | ignored (both terminal)."""

    pending = "pending"
    applied = "applied"
    ignored = "ignored"
    failed = "failed"


class ConflictType(str, Enum):
    """Kinds of local/remote drift."""

    quantity_mismatch = "quantity_mismatch"
    metadata_mismatch = "metadata_mismatch"
    missing_local_item = "missing_local_item"
    missing_remote_item = "missing_remote_item"

    @property
    def title(self) -> str:
        return self.value.replace("_", " ").title()


class ConflictStatus(str, Enum):
    unresolved = "unresolved"
    keep_local = "keep_local"
    accept_remote = "accept_remote"


class ConflictResolution(str, Enum):
    """Operator choice when resolving a conflict."""

    keep_local = "keep_local"
    accept_remote = "accept_remote"


class AuditType(str, Enum):
    """Categories of audit trail entries."""

    receive = "receive"
    return_ = "return"
    adjustment = "adjustment"
    count_session = "count_session"
    csv_export = "csv_export"
    sync = "sync"
    integration_connected = "integration_connected"
    integration_disconnected = "integration_disconnected"
    webhook_ingested = "webhook_ingested"
    webhook_applied = "webhook_applied"
    conflict_resolved = "conflict_resolved"


class InventoryEventType(str, Enum):
    """Kinds of inventory quantity mutation recorded in the ledger."""

    receipt = "receipt"
    adjustment = "adjustment"
    return_ = "return"
    count_correction = "count_correction"


class LedgerSyncStatus(str, Enum):
    """Lifecycle: pending -> synced | failed; failed -> synced on re-sync."""

    pending = "pending"
    synced = "synced"
    failed = "failed"


# --- Connection state (tagged union) ---


@dataclass(frozen=True)
class Disconnected:
    """No usable pairing; only reached through explicit disconnect."""

    @property
    def status(self) -> ConnectionStatus:
        return ConnectionStatus.disconnected


@dataclass(frozen=True)
class Connected:
    """A secret-backed access token with a known, future expiry."""

    expires_at: datetime

    @property
    def status(self) -> ConnectionStatus:
        return ConnectionStatus.connected


@dataclass(frozen=True)
class TokenExpired:
    """Access token missing or past its expiry."""

    expired_at: datetime | None
    missing_access_token: bool = False

    @property
    def status(self) -> ConnectionStatus:
        return ConnectionStatus.token_expired


ConnectionState = Disconnected | Connected | TokenExpired


def effective_state(
    current_status: ConnectionStatus,
    token_expires_at: datetime | None,
    has_access_token: bool,
    now: datetime,
) -> ConnectionState:
    """Derive a connection's state from stored secrets and expiry.

    Single source of truth for connection status: disconnected stays
    disconnected; a missing access token or a past expiry is token_expired;
    everything else is connected. An access token with no recorded expiry
    counts as expired.
    """
    if current_status == ConnectionStatus.disconnected:
        return Disconnected()
    if not has_access_token:
        return TokenExpired(expired_at=token_expires_at, missing_access_token=True)
    if token_expires_at is None or token_expires_at <= now:
        return TokenExpired(expired_at=token_expires_at)
    return Connected(expires_at=token_expires_at)


def effective_status(
    current_status: ConnectionStatus,
    token_expires_at: datetime | None,
    has_access_token: bool,
    now: datetime,
) -> ConnectionStatus:
    """Status tag of effective_state()."""
    return effective_state(current_status, token_expires_at, has_access_token, now).status


@dataclass(frozen=True)
class IntegrationSecretState:
    """Read snapshot of a pairing's secrets and derived status."""

    status: ConnectionStatus
    has_access_token: bool
    has_refresh_token: bool
    has_webhook_secret: bool
    token_expires_at: datetime | None
    last_refreshed_at: datetime | None

    @classmethod
    def disconnected(cls) -> "IntegrationSecretState":
        return cls(
            status=ConnectionStatus.disconnected,
            has_access_token=False,
            has_refresh_token=False,
            has_webhook_secret=False,
            token_expires_at=None,
            last_refreshed_at=None,
        )


# --- Settings ---


class CredentialSettings(BaseModel):
    """Token lifetime and secret storage settings."""

    keyring_service: str = DEFAULT_KEYRING_SERVICE
    access_token_lifetime_days: int = Field(default=30, ge=1)
    proactive_refresh_hours: int = Field(default=12, ge=0)


class SyncSettings(BaseModel):
    """Sync pass, retry, and ledger batch settings."""

    sample_size: int = Field(default=36, ge=1)
    webhook_event_cap: int = Field(default=14, ge=0)
    missing_local_min_items: int = Field(default=10, ge=1)
    retry_max_attempts: int = Field(default=5, ge=1)
    retry_initial_delay_seconds: int = Field(default=90, ge=0)
    retry_backoff_cap_minutes: int = Field(default=60, ge=1)
    ledger_batch_size: int = Field(default=200, ge=1)
