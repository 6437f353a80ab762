"""Secure storage for provider integration secrets.

Uses the `keyring` library which maps to:
  macOS: Keychain Access
  Windows: Windows Credential Manager
  Linux: Secret Service API

Secrets are stored under one service name with an account per
(workspace, provider, kind). Durable app state never holds secret material;
it records only whether a secret is present.
"""

import logging

import keyring
import keyring.errors

from src.services.integration_types import (
    DEFAULT_KEYRING_SERVICE,
    IntegrationProvider,
    IntegrationSecretKind,
)

logger = logging.getLogger(__name__)


def secret_account(
    kind: IntegrationSecretKind,
    provider: IntegrationProvider,
    workspace_key: str,
) -> str:
    """Build the keyring account name for one secret."""
    return f"{workspace_key}.{provider.value}.{kind.value}"


class IntegrationSecretStore:
    """Thin wrapper around keyring for integration secret CRUD.

    ``set`` reports failure instead of raising so callers can treat a locked
    or unavailable keychain as a recoverable SecretWriteFailed.
    """

    def __init__(self, service_name: str = DEFAULT_KEYRING_SERVICE) -> None:
        self._service = service_name

    @property
    def service_name(self) -> str:
        return self._service

    def set(self, value: str, account: str) -> bool:
        """Store a secret value. Returns False if the keychain write failed."""
        try:
            keyring.set_password(self._service, account, value)
        except keyring.errors.KeyringError:
            logger.warning("Keyring write failed for %s", account, exc_info=True)
            return False
        logger.debug("Stored integration secret: %s", account)
        return True

    def get(self, account: str) -> str | None:
        """Retrieve a secret value. Returns None if not set or unreadable."""
        try:
            return keyring.get_password(self._service, account)
        except keyring.errors.KeyringError:
            logger.warning("Keyring read failed for %s", account, exc_info=True)
            return None

    def remove(self, account: str) -> None:
        """Remove a secret; missing entries are ignored."""
        try:
            keyring.delete_password(self._service, account)
            logger.debug("Deleted integration secret: %s", account)
        except keyring.errors.PasswordDeleteError:
            logger.debug("Secret %s not found for deletion", account)
        except keyring.errors.KeyringError:
            logger.warning("Keyring delete failed for %s", account, exc_info=True)

    # --- Typed helpers ---

    def has_secret(
        self,
        kind: IntegrationSecretKind,
        provider: IntegrationProvider,
        workspace_key: str,
    ) -> bool:
        """True when a non-blank secret exists for the pairing."""
        value = self.get(secret_account(kind, provider, workspace_key))
        return bool(value and value.strip())

    def set_secret(
        self,
        value: str,
        kind: IntegrationSecretKind,
        provider: IntegrationProvider,
        workspace_key: str,
    ) -> bool:
        return self.set(value, secret_account(kind, provider, workspace_key))

    def clear_secret(
        self,
        kind: IntegrationSecretKind,
        provider: IntegrationProvider,
        workspace_key: str,
    ) -> None:
        self.remove(secret_account(kind, provider, workspace_key))

    def clear_all(self, provider: IntegrationProvider, workspace_key: str) -> None:
        """Purge every secret kind for the pairing."""
        for kind in IntegrationSecretKind:
            self.clear_secret(kind, provider, workspace_key)
