"""ConnectionService: credential lifecycle for provider connections.

Owns the (workspace, provider) pairings: saving credentials into the
keyring, refreshing access tokens, disconnecting, and preparing a connection
before a sync pass. Persisted connection records never carry secret
material; their token fields only record presence (SECRET_PLACEHOLDER).
Status is always re-derived with effective_state() from stored secrets and
token expiry.
"""

import logging
from datetime import datetime, timedelta
from uuid import uuid4

from src.errors.formatter import format_error
from src.errors.registry import CREDENTIAL_EXPIRED, SECRET_WRITE_FAILED
from src.services.audit_service import AuditService
from src.services.integration_models import IntegrationConnection
from src.services.integration_store import IntegrationStore
from src.services.integration_types import (
    SECRET_PLACEHOLDER,
    AuditType,
    ConnectionStatus,
    CredentialSettings,
    IntegrationProvider,
    IntegrationSecretKind,
    IntegrationSecretState,
    effective_status,
)
from src.services.secret_store import IntegrationSecretStore

logger = logging.getLogger(__name__)

_SECRET_FIELDS = {
    IntegrationSecretKind.access_token: "access_token",
    IntegrationSecretKind.refresh_token: "refresh_token",
    IntegrationSecretKind.webhook_secret: "webhook_secret",
}


def _generate_access_token(provider: IntegrationProvider) -> str:
    return f"atk_{provider.value}_{uuid4().hex}"


class ConnectionService:
    """Connection and credential lifecycle on top of the integration store.

    Args:
        store: Single owner of persisted integration state.
        secrets: Keyring-backed secret store.
        audit: Audit trail.
        settings: Token lifetime and refresh window.
    """

    def __init__(
        self,
        store: IntegrationStore,
        secrets: IntegrationSecretStore,
        audit: AuditService,
        settings: CredentialSettings | None = None,
    ) -> None:
        self._store = store
        self._secrets = secrets
        self._audit = audit
        self._settings = settings or CredentialSettings()

    @property
    def access_token_lifetime(self) -> timedelta:
        return timedelta(days=self._settings.access_token_lifetime_days)

    @property
    def proactive_refresh_window(self) -> timedelta:
        return timedelta(hours=self._settings.proactive_refresh_hours)

    def _has(self, kind: IntegrationSecretKind, provider: IntegrationProvider, workspace_key: str) -> bool:
        return self._secrets.has_secret(kind, provider, workspace_key)

    # --- Reads ---

    def connections(self, workspace_key: str) -> list[IntegrationConnection]:
        """Connections in a workspace, ordered by provider name."""
        with self._store.lock:
            matching = [
                connection.model_copy()
                for connection in self._store.state.connections
                if connection.workspace_key == workspace_key
            ]
        return sorted(matching, key=lambda connection: connection.provider.value)

    def connection(self, provider: IntegrationProvider, workspace_key: str) -> IntegrationConnection | None:
        with self._store.lock:
            found = self._store.find_connection(provider, workspace_key)
            return found.model_copy() if found is not None else None

    def secret_state(self, provider: IntegrationProvider, workspace_key: str) -> IntegrationSecretState:
        """Presence of each secret plus the derived connection status."""
        with self._store.lock:
            connection = self._store.find_connection(provider, workspace_key)
            if connection is None:
                return IntegrationSecretState.disconnected()
            has_access = self._has(IntegrationSecretKind.access_token, provider, workspace_key)
            return IntegrationSecretState(
                status=effective_status(
                    connection.status, connection.token_expires_at, has_access, self._store.now(),
                ),
                has_access_token=has_access,
                has_refresh_token=self._has(IntegrationSecretKind.refresh_token, provider, workspace_key),
                has_webhook_secret=self._has(IntegrationSecretKind.webhook_secret, provider, workspace_key),
                token_expires_at=connection.token_expires_at,
                last_refreshed_at=connection.last_refreshed_at,
            )

    # --- Mutations ---

    def save_credentials(
        self,
        provider: IntegrationProvider,
        workspace_key: str,
        actor_name: str,
        account_label: str,
        access_token: str = "",
        refresh_token: str = "",
        webhook_secret: str = "",
    ) -> bool:
        """Create or update a connection and store its secrets.

        Blank secret inputs keep whatever is already stored. A new access
        token resets the expiry to now + token lifetime.

        Returns:
            False if the label is blank, no access token is supplied or
            stored, or a keyring write fails.
        """
        label = account_label.strip()
        new_access = access_token.strip()
        new_refresh = refresh_token.strip()
        new_webhook = webhook_secret.strip()
        if not label:
            logger.info("Rejected %s credentials: account label is empty", provider.value)
            return False

        with self._store.lock:
            existing = self._store.find_connection(provider, workspace_key)
            if not new_access and not self._has(IntegrationSecretKind.access_token, provider, workspace_key):
                logger.info("Rejected %s credentials: no access token supplied or stored", provider.value)
                return False

            for kind, value in (
                (IntegrationSecretKind.access_token, new_access),
                (IntegrationSecretKind.refresh_token, new_refresh),
                (IntegrationSecretKind.webhook_secret, new_webhook),
            ):
                if value and not self._secrets.set_secret(value, kind, provider, workspace_key):
                    logger.warning(format_error(
                        SECRET_WRITE_FAILED, kind=kind.value, provider=provider.title,
                    ))
                    return False

            now = self._store.now()
            if new_access:
                expires_at: datetime = now + self.access_token_lifetime
            elif existing is not None and existing.token_expires_at is not None:
                expires_at = existing.token_expires_at
            else:
                expires_at = now + self.access_token_lifetime
            has_access = self._has(IntegrationSecretKind.access_token, provider, workspace_key)
            status = effective_status(ConnectionStatus.connected, expires_at, has_access, now)

            if existing is None:
                existing = IntegrationConnection(
                    provider=provider,
                    workspace_key=workspace_key,
                    account_label=label,
                    connected_at=now,
                    token_expires_at=expires_at,
                    last_refreshed_at=now if new_access else None,
                    status=status,
                )
                self._store.state.connections.append(existing)
            else:
                existing.account_label = label
                existing.token_expires_at = expires_at
                if new_access:
                    existing.last_refreshed_at = now
                existing.status = status
                existing.connected_at = now
            self._update_placeholders(existing)
            self._store.persist()

        self._audit.record(
            workspace_key,
            actor_name,
            AuditType.integration_connected,
            f"Connected {provider.title} account '{label}'.",
            estimated_seconds_saved=60,
        )
        return True

    def refresh_token(self, provider: IntegrationProvider, workspace_key: str, actor_name: str) -> bool:
        """Operator-initiated refresh; a failure downgrades the connection to token_expired."""
        with self._store.lock:
            refreshed = self._refresh(provider, workspace_key, actor_name, should_audit=True)
            if not refreshed:
                connection = self._store.find_connection(provider, workspace_key)
                if connection is not None:
                    connection.status = ConnectionStatus.token_expired
                    self._store.persist()
        return refreshed

    def _refresh(
        self,
        provider: IntegrationProvider,
        workspace_key: str,
        actor_name: str,
        should_audit: bool,
    ) -> bool:
        connection = self._store.find_connection(provider, workspace_key)
        if connection is None:
            return False

        if not self._has(IntegrationSecretKind.refresh_token, provider, workspace_key):
            connection.status = ConnectionStatus.token_expired
            self._update_placeholders(connection)
            self._store.persist()
            logger.info(format_error(CREDENTIAL_EXPIRED, provider=provider.title))
            if should_audit:
                self._audit.record(
                    workspace_key,
                    actor_name,
                    AuditType.integration_disconnected,
                    f"Refresh failed for {provider.title}: missing refresh token.",
                )
            return False

        if not self._secrets.set_secret(
            _generate_access_token(provider), IntegrationSecretKind.access_token, provider, workspace_key,
        ):
            logger.warning(format_error(
                SECRET_WRITE_FAILED, kind=IntegrationSecretKind.access_token.value, provider=provider.title,
            ))
            return False

        now = self._store.now()
        connection.last_refreshed_at = now
        connection.token_expires_at = now + self.access_token_lifetime
        connection.status = ConnectionStatus.connected
        self._update_placeholders(connection)
        self._store.persist()
        logger.info("Refreshed %s access token for workspace %s", provider.value, workspace_key)

        if should_audit:
            self._audit.record(
                workspace_key,
                actor_name,
                AuditType.integration_connected,
                f"Refreshed {provider.title} access token.",
                estimated_seconds_saved=25,
            )
        return True

    def disconnect(self, provider: IntegrationProvider, workspace_key: str, actor_name: str) -> bool:
        """Purge all secrets and remove the connection.

        Returns:
            True if a connection existed and was removed.
        """
        self._secrets.clear_all(provider, workspace_key)
        with self._store.lock:
            before = len(self._store.state.connections)
            self._store.state.connections = [
                connection
                for connection in self._store.state.connections
                if not (connection.provider == provider and connection.workspace_key == workspace_key)
            ]
            if len(self._store.state.connections) == before:
                return False
            self._store.persist()

        self._audit.record(
            workspace_key,
            actor_name,
            AuditType.integration_disconnected,
            f"Disconnected {provider.title}.",
            estimated_seconds_saved=15,
        )
        return True

    def prepare_for_sync(
        self, provider: IntegrationProvider, workspace_key: str, actor_name: str,
    ) -> IntegrationConnection | None:
        """Ready a connection for a sync pass, refreshing its token if needed.

        An expired token is refreshed when a refresh token exists; a token
        inside the proactive window is refreshed ahead of expiry.

        Returns:
            A copy of the usable connection, or None.
        """
        with self._store.lock:
            connection = self._store.find_connection(provider, workspace_key)
            if connection is None:
                return None

            now = self._store.now()
            if not self._has(IntegrationSecretKind.access_token, provider, workspace_key):
                connection.status = ConnectionStatus.token_expired
                self._update_placeholders(connection)
                self._store.persist()
                return None

            expires_at = connection.token_expires_at
            if expires_at is None or expires_at <= now:
                connection.status = ConnectionStatus.token_expired
                self._update_placeholders(connection)
                self._store.persist()
                if not self._refresh(provider, workspace_key, actor_name, should_audit=False):
                    return None
                return connection.model_copy()

            if (
                expires_at - now <= self.proactive_refresh_window
                and self._has(IntegrationSecretKind.refresh_token, provider, workspace_key)
            ):
                self._refresh(provider, workspace_key, actor_name, should_audit=False)

            connection.status = effective_status(
                ConnectionStatus.connected,
                connection.token_expires_at,
                self._has(IntegrationSecretKind.access_token, provider, workspace_key),
                now,
            )
            self._update_placeholders(connection)
            self._store.persist()
            if connection.status != ConnectionStatus.connected:
                return None
            return connection.model_copy()

    # --- Load-time normalization ---

    def _update_placeholders(self, connection: IntegrationConnection) -> None:
        for kind, attr in _SECRET_FIELDS.items():
            present = self._has(kind, connection.provider, connection.workspace_key)
            setattr(connection, attr, SECRET_PLACEHOLDER if present else "")

    def migrate_legacy_secrets(self) -> bool:
        """Move plaintext secrets found in persisted records into the keyring.

        Returns:
            True if any record changed.
        """
        changed = False
        now = self._store.now()
        with self._store.lock:
            for connection in self._store.state.connections:
                for kind, attr in _SECRET_FIELDS.items():
                    legacy = getattr(connection, attr).strip()
                    if not legacy or legacy == SECRET_PLACEHOLDER:
                        continue
                    if not self._has(kind, connection.provider, connection.workspace_key):
                        self._secrets.set_secret(legacy, kind, connection.provider, connection.workspace_key)
                    if kind == IntegrationSecretKind.access_token and connection.token_expires_at is None:
                        connection.token_expires_at = now + self.access_token_lifetime
                    setattr(connection, attr, "")
                    changed = True
                    logger.info(
                        "Migrated legacy %s for %s/%s into keyring",
                        kind.value, connection.workspace_key, connection.provider.value,
                    )
        return changed

    def normalize_statuses(self) -> bool:
        """Re-derive status, expiry, and placeholders for every connection.

        Returns:
            True if any record changed.
        """
        changed = False
        now = self._store.now()
        with self._store.lock:
            for connection in self._store.state.connections:
                has_access = self._has(
                    IntegrationSecretKind.access_token, connection.provider, connection.workspace_key,
                )
                if has_access and connection.token_expires_at is None:
                    connection.token_expires_at = now + self.access_token_lifetime
                    changed = True

                status = effective_status(connection.status, connection.token_expires_at, has_access, now)
                if status != connection.status:
                    connection.status = status
                    changed = True

                before = (connection.access_token, connection.refresh_token, connection.webhook_secret)
                self._update_placeholders(connection)
                if before != (connection.access_token, connection.refresh_token, connection.webhook_secret):
                    changed = True
        return changed
