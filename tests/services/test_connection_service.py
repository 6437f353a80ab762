"""Tests for the credential and connection lifecycle."""

from datetime import timedelta

from src.services.integration_models import IntegrationConnection
from src.services.integration_types import (
    SECRET_PLACEHOLDER,
    AuditType,
    ConnectionStatus,
    IntegrationProvider,
    effective_status,
)


class TestEffectiveStatus:
    """The pure status derivation."""

    def test_disconnected_stays_disconnected(self, clock):
        now = clock()
        status = effective_status(ConnectionStatus.disconnected, now + timedelta(days=1), True, now)
        assert status == ConnectionStatus.disconnected

    def test_missing_access_token_is_expired(self, clock):
        now = clock()
        status = effective_status(ConnectionStatus.connected, now + timedelta(days=1), False, now)
        assert status == ConnectionStatus.token_expired

    def test_past_expiry_is_expired(self, clock):
        now = clock()
        status = effective_status(ConnectionStatus.connected, now - timedelta(seconds=1), True, now)
        assert status == ConnectionStatus.token_expired

    def test_no_expiry_is_expired(self, clock):
        """A connected state always carries an expiry."""
        now = clock()
        assert effective_status(ConnectionStatus.connected, None, True, now) == ConnectionStatus.token_expired

    def test_future_expiry_with_token_is_connected(self, clock):
        now = clock()
        status = effective_status(ConnectionStatus.token_expired, now + timedelta(hours=1), True, now)
        assert status == ConnectionStatus.connected


class TestSaveCredentials:

    def test_save_then_status_is_connected(self, platform):
        """Every provider reads back connected right after a save."""
        for provider in IntegrationProvider:
            assert platform.save_connection(provider, "ws-1", "Alex", "Books", access_token="tok")
            assert platform.integration_secret_state(provider, "ws-1").status == ConnectionStatus.connected

    def test_expiry_is_thirty_days_out(self, platform, clock):
        platform.save_connection("shopify", None, "Alex", "Store", access_token="tok")
        state = platform.integration_secret_state("shopify", None)
        assert state.token_expires_at == clock() + timedelta(days=30)
        assert state.last_refreshed_at == clock()

    def test_blank_label_fails_without_mutation(self, platform, fake_keyring):
        assert platform.save_connection("shopify", None, "Alex", "   ", access_token="tok") is False
        assert platform.connections(None) == []
        assert fake_keyring.passwords == {}

    def test_no_access_token_and_none_stored_fails(self, platform):
        assert platform.save_connection("shopify", None, "Alex", "Store", refresh_token="rtk") is False
        assert platform.connection("shopify", None) is None

    def test_blank_access_token_keeps_stored_token_and_expiry(self, platform, clock):
        platform.save_connection("shopify", None, "Alex", "Store", access_token="tok")
        original_expiry = platform.integration_secret_state("shopify", None).token_expires_at
        clock.advance(days=2)

        assert platform.save_connection("shopify", None, "Alex", "Renamed Store", webhook_secret="whsec")

        connection = platform.connection("shopify", None)
        state = platform.integration_secret_state("shopify", None)
        assert connection.account_label == "Renamed Store"
        assert state.token_expires_at == original_expiry
        assert state.has_webhook_secret is True

    def test_inputs_are_trimmed(self, platform, fake_keyring):
        platform.save_connection("quickbooks", None, "Alex", "  Books  ", access_token="  tok  ")
        assert platform.connection("quickbooks", None).account_label == "Books"
        assert "tok" in fake_keyring.passwords.values()

    def test_one_connection_per_pairing(self, platform):
        platform.save_connection("quickbooks", "ws-1", "Alex", "Books", access_token="tok-1")
        platform.save_connection("quickbooks", "ws-1", "Alex", "Books 2", access_token="tok-2")
        platform.save_connection("quickbooks", "ws-2", "Alex", "Other", access_token="tok-3")
        assert len(platform.connections("ws-1")) == 1
        assert len(platform.connections("ws-2")) == 1

    def test_persisted_record_never_holds_secret_material(self, platform):
        platform.save_connection(
            "shopify", None, "Alex", "Store", access_token="tok", refresh_token="rtk", webhook_secret="whsec",
        )
        connection = platform.connection("shopify", None)
        assert connection.access_token == SECRET_PLACEHOLDER
        assert connection.refresh_token == SECRET_PLACEHOLDER
        assert connection.webhook_secret == SECRET_PLACEHOLDER

    def test_keyring_write_failure_returns_false(self, platform, fake_keyring):
        fake_keyring.fail_writes = True
        assert platform.save_connection("shopify", None, "Alex", "Store", access_token="tok") is False
        assert platform.connection("shopify", None) is None

    def test_save_is_audited(self, platform):
        platform.save_connection("shopify", None, "Alex", "Store", access_token="tok")
        events = platform.audit_events(None)
        assert events[0].type == AuditType.integration_connected
        assert events[0].summary == "Connected Shopify account 'Store'."

    def test_connections_sorted_by_provider(self, platform):
        platform.save_connection("shopify", None, "Alex", "Store", access_token="tok")
        platform.save_connection("quickbooks", None, "Alex", "Books", access_token="tok")
        assert [c.provider for c in platform.connections(None)] == [
            IntegrationProvider.quickbooks, IntegrationProvider.shopify,
        ]


class TestRefresh:

    def test_refresh_without_refresh_token_downgrades(self, platform):
        platform.save_connection("shopify", None, "Alex", "Store", access_token="tok")
        assert platform.refresh_connection_token("shopify", None, "Alex") is False
        assert platform.connection("shopify", None).status == ConnectionStatus.token_expired
        assert platform.audit_events(None)[0].summary == "Refresh failed for Shopify: missing refresh token."

    def test_refresh_rotates_token_and_advances_expiry(self, connected_platform, clock, fake_keyring):
        before = set(fake_keyring.passwords.values())
        clock.advance(days=10)

        assert connected_platform.refresh_connection_token("quickbooks", None, "Alex") is True

        state = connected_platform.integration_secret_state("quickbooks", None)
        assert state.token_expires_at == clock() + timedelta(days=30)
        assert state.last_refreshed_at == clock()
        assert state.status == ConnectionStatus.connected
        new_tokens = set(fake_keyring.passwords.values()) - before
        assert len(new_tokens) == 1
        assert new_tokens.pop().startswith("atk_quickbooks_")

    def test_refresh_unknown_connection_is_false(self, platform):
        assert platform.refresh_connection_token("quickbooks", None, "Alex") is False


class TestDisconnect:

    def test_disconnect_purges_secrets_and_record(self, connected_platform, fake_keyring):
        connected_platform.save_connection("quickbooks", None, "Alex", "Main Books", webhook_secret="whsec")
        assert connected_platform.disconnect_connection("quickbooks", None, "Alex") is True
        assert connected_platform.connection("quickbooks", None) is None
        assert fake_keyring.passwords == {}
        state = connected_platform.integration_secret_state("quickbooks", None)
        assert state.status == ConnectionStatus.disconnected
        assert state.has_access_token is False

    def test_disconnect_without_connection_is_silent(self, platform):
        assert platform.disconnect_connection("shopify", None, "Alex") is False
        assert platform.audit_events(None) == []


class TestPrepareForSync:

    def test_expired_token_with_refresh_is_renewed(self, connected_platform, clock):
        clock.advance(days=30, seconds=1)
        assert connected_platform.run_connected_sync("quickbooks", None, "Alex") is True
        state = connected_platform.integration_secret_state("quickbooks", None)
        assert state.token_expires_at == clock() + timedelta(days=30)
        assert state.status == ConnectionStatus.connected

    def test_expired_token_without_refresh_fails(self, platform, clock):
        platform.save_connection("shopify", None, "Alex", "Store", access_token="tok")
        clock.advance(days=31)
        prepared = platform.connections_service.prepare_for_sync(IntegrationProvider.shopify, "all", "Alex")
        assert prepared is None
        assert platform.connection("shopify", None).status == ConnectionStatus.token_expired

    def test_proactive_refresh_inside_window(self, connected_platform, clock):
        clock.advance(days=29, hours=13)
        prepared = connected_platform.connections_service.prepare_for_sync(
            IntegrationProvider.quickbooks, "all", "Alex",
        )
        assert prepared is not None
        assert prepared.token_expires_at == clock() + timedelta(days=30)
        assert prepared.last_refreshed_at == clock()

    def test_no_proactive_refresh_outside_window(self, connected_platform, clock):
        original = connected_platform.integration_secret_state("quickbooks", None).token_expires_at
        clock.advance(days=20)
        prepared = connected_platform.connections_service.prepare_for_sync(
            IntegrationProvider.quickbooks, "all", "Alex",
        )
        assert prepared.token_expires_at == original

    def test_inside_window_without_refresh_token_still_usable(self, platform, clock):
        platform.save_connection("shopify", None, "Alex", "Store", access_token="tok")
        original = platform.integration_secret_state("shopify", None).token_expires_at
        clock.advance(days=29, hours=20)
        prepared = platform.connections_service.prepare_for_sync(IntegrationProvider.shopify, "all", "Alex")
        assert prepared is not None
        assert prepared.token_expires_at == original

    def test_missing_access_secret_is_not_prepared(self, connected_platform, fake_keyring):
        for key in [k for k in fake_keyring.passwords if k[1].endswith(".access_token")]:
            del fake_keyring.passwords[key]
        prepared = connected_platform.connections_service.prepare_for_sync(
            IntegrationProvider.quickbooks, "all", "Alex",
        )
        assert prepared is None
        assert connected_platform.connection("quickbooks", None).status == ConnectionStatus.token_expired

    def test_prepared_copy_is_detached(self, connected_platform):
        prepared = connected_platform.connections_service.prepare_for_sync(
            IntegrationProvider.quickbooks, "all", "Alex",
        )
        prepared.account_label = "mutated"
        assert connected_platform.connection("quickbooks", None).account_label == "Main Books"


class TestLoadNormalization:

    def _persist_connection(self, state_store, clock, **fields) -> None:
        from src.services.integration_store import IntegrationStore

        store = IntegrationStore(state_store, clock=clock)
        store.state.connections.append(IntegrationConnection(
            provider=IntegrationProvider.shopify,
            workspace_key="all",
            account_label="Legacy Store",
            connected_at=clock(),
            **fields,
        ))
        store.persist()
        store.flush()

    def test_legacy_plaintext_secret_is_migrated(self, state_store, catalog, clock, fake_keyring):
        from src.services.platform_service import build_platform

        self._persist_connection(
            state_store, clock, access_token="legacy-token", status=ConnectionStatus.connected,
        )
        platform = build_platform(catalog, state_store=state_store, clock=clock)
        platform.load()

        connection = platform.connection("shopify", None)
        assert "legacy-token" in fake_keyring.passwords.values()
        assert connection.access_token == SECRET_PLACEHOLDER
        assert connection.token_expires_at == clock() + timedelta(days=30)
        assert connection.status == ConnectionStatus.connected

        platform.close()
        reloaded = state_store.load_state()
        assert "legacy-token" not in reloaded.connections[0].model_dump_json()

    def test_stale_connected_status_is_rederived(self, state_store, catalog, clock, fake_keyring):
        from src.services.platform_service import build_platform
        from src.services.secret_store import secret_account
        from src.services.integration_types import DEFAULT_KEYRING_SERVICE, IntegrationSecretKind

        fake_keyring.passwords[(
            DEFAULT_KEYRING_SERVICE,
            secret_account(IntegrationSecretKind.access_token, IntegrationProvider.shopify, "all"),
        )] = "tok"
        self._persist_connection(
            state_store,
            clock,
            token_expires_at=clock() - timedelta(days=1),
            status=ConnectionStatus.connected,
        )
        platform = build_platform(catalog, state_store=state_store, clock=clock)
        platform.load()
        assert platform.connection("shopify", None).status == ConnectionStatus.token_expired
        platform.close()


class TestConnectionRecord:

    def test_connected_without_expiry_is_stored_as_expired(self, clock):
        connection = IntegrationConnection(
            provider=IntegrationProvider.shopify,
            workspace_key="all",
            account_label="Store",
            connected_at=clock(),
            status=ConnectionStatus.connected,
        )
        assert connection.status == ConnectionStatus.token_expired

    def test_decoded_record_without_expiry_is_expired(self, clock):
        raw = (
            '{"provider": "quickbooks", "workspace_key": "all", "account_label": "Books", '
            f'"connected_at": "{clock().isoformat()}", "status": "connected"}}'
        )
        assert IntegrationConnection.model_validate_json(raw).status == ConnectionStatus.token_expired

    def test_connected_with_expiry_is_kept(self, clock):
        connection = IntegrationConnection(
            provider=IntegrationProvider.shopify,
            workspace_key="all",
            account_label="Store",
            connected_at=clock(),
            token_expires_at=clock() + timedelta(days=1),
            status=ConnectionStatus.connected,
        )
        assert connection.status == ConnectionStatus.connected
