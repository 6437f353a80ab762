"""Tests for the keyring-backed integration secret store."""

import keyring
import keyring.errors

from src.services.integration_types import IntegrationProvider, IntegrationSecretKind
from src.services.secret_store import IntegrationSecretStore, secret_account

SHOPIFY = IntegrationProvider.shopify


def test_account_name_layout():
    assert secret_account(IntegrationSecretKind.refresh_token, SHOPIFY, "ws-1") == "ws-1.shopify.refresh_token"


def test_set_get_remove(fake_keyring):
    store = IntegrationSecretStore("test-service")
    assert store.set("tok", "all.shopify.access_token") is True
    assert fake_keyring.passwords[("test-service", "all.shopify.access_token")] == "tok"
    assert store.get("all.shopify.access_token") == "tok"
    store.remove("all.shopify.access_token")
    assert store.get("all.shopify.access_token") is None


def test_remove_missing_is_ignored():
    IntegrationSecretStore().remove("all.shopify.access_token")


def test_failed_write_returns_false(fake_keyring):
    fake_keyring.fail_writes = True
    assert IntegrationSecretStore().set("tok", "acct") is False


def test_failed_read_returns_none(monkeypatch):
    def broken(service, account):
        raise keyring.errors.KeyringError("no backend")

    monkeypatch.setattr(keyring, "get_password", broken)
    assert IntegrationSecretStore().get("acct") is None


def test_blank_secret_is_not_present():
    store = IntegrationSecretStore()
    store.set_secret("   ", IntegrationSecretKind.webhook_secret, SHOPIFY, "all")
    assert store.has_secret(IntegrationSecretKind.webhook_secret, SHOPIFY, "all") is False


def test_clear_all_purges_every_kind(fake_keyring):
    store = IntegrationSecretStore()
    for kind in IntegrationSecretKind:
        store.set_secret("value", kind, SHOPIFY, "all")
    store.set_secret("other", IntegrationSecretKind.access_token, SHOPIFY, "ws-2")

    store.clear_all(SHOPIFY, "all")

    assert fake_keyring.accounts() == {"ws-2.shopify.access_token"}
