"""Pydantic records for persisted integration state.

Every collection the platform store owns is a list of one of these models.
Records are serialized with pydantic's JSON mode by the state store codec,
so field names here are the durable wire format.
"""

from datetime import datetime
from uuid import uuid4

from pydantic import BaseModel, Field, model_validator

from src.services.integration_types import (
    AuditType,
    ConflictStatus,
    ConflictType,
    ConnectionStatus,
    IntegrationProvider,
    InventoryEventType,
    LedgerSyncStatus,
    RetryStatus,
    SyncStatus,
    WebhookStatus,
)


def new_id() -> str:
    """Generate a UUID4 string for record identifiers."""
    return str(uuid4())


class IntegrationConnection(BaseModel):
    """One (workspace, provider) pairing.

    The access_token / refresh_token / webhook_secret fields hold only
    SECRET_PLACEHOLDER or "" once loaded; secret material lives in the
    keyring. Older persisted files may still carry plaintext values, which
    the store migrates on load.
    """

    id: str = Field(default_factory=new_id)
    provider: IntegrationProvider
    workspace_key: str
    account_label: str
    access_token: str = ""
    refresh_token: str = ""
    webhook_secret: str = ""
    connected_at: datetime
    last_sync_at: datetime | None = None
    token_expires_at: datetime | None = None
    last_refreshed_at: datetime | None = None
    status: ConnectionStatus

    @model_validator(mode="after")
    def connected_requires_expiry(self) -> "IntegrationConnection":
        """A connected record always carries an expiry; without one it is token_expired."""
        if self.status == ConnectionStatus.connected and self.token_expires_at is None:
            self.status = ConnectionStatus.token_expired
        return self


class IntegrationSyncJob(BaseModel):
    """Immutable outcome of one sync attempt."""

    id: str = Field(default_factory=new_id)
    provider: IntegrationProvider
    workspace_key: str
    started_at: datetime
    finished_at: datetime
    pulled_records: int
    pushed_records: int
    status: SyncStatus
    message: str


class IntegrationSyncRetryJob(BaseModel):
    """Pending recovery attempt for a failed sync."""

    id: str = Field(default_factory=new_id)
    provider: IntegrationProvider
    workspace_key: str
    created_at: datetime
    updated_at: datetime
    attempt_count: int = 0
    max_attempts: int
    next_attempt_at: datetime
    status: RetryStatus = RetryStatus.queued
    last_error: str = ""


class IntegrationWebhookEvent(BaseModel):
    """Inbound provider event awaiting operator review."""

    id: str = Field(default_factory=new_id)
    provider: IntegrationProvider
    workspace_key: str
    received_at: datetime
    event_type: str
    external_id: str = Field(default_factory=new_id)
    payload_preview: str
    status: WebhookStatus = WebhookStatus.pending
    note: str = ""


class IntegrationConflict(BaseModel):
    """Detected mismatch between local and remote state."""

    id: str = Field(default_factory=new_id)
    provider: IntegrationProvider
    workspace_key: str
    created_at: datetime
    type: ConflictType
    local_item_id: str | None = None
    local_item_name: str = ""
    remote_item_name: str = ""
    local_units: int
    remote_units: int
    status: ConflictStatus = ConflictStatus.unresolved
    resolved_at: datetime | None = None

    def dedup_key(self) -> tuple:
        """Identity of the drift this conflict describes."""
        return (
            self.workspace_key,
            self.provider,
            self.type,
            self.local_item_id,
            self.local_units,
            self.remote_units,
        )


class PlatformAuditEvent(BaseModel):
    """Human-readable record of a state-changing action."""

    id: str = Field(default_factory=new_id)
    workspace_key: str
    actor_name: str
    type: AuditType
    created_at: datetime
    summary: str
    delta_units: int = 0
    estimated_seconds_saved: int = 0
    shrink_impact_units: int = 0


class InventoryLedgerEvent(BaseModel):
    """One inventory quantity mutation, tracked until synced externally."""

    id: str = Field(default_factory=new_id)
    workspace_key: str
    actor_name: str
    created_at: datetime
    type: InventoryEventType
    source: str
    reason: str = ""
    item_id: str | None = None
    item_name: str
    item_category: str = ""
    item_location: str = ""
    delta_units: int
    resulting_units: int | None = None
    correlation_id: str = Field(default_factory=new_id)
    sync_status: LedgerSyncStatus = LedgerSyncStatus.pending
    sync_attempt_count: int = 0
    last_sync_at: datetime | None = None
    last_sync_error: str | None = None
