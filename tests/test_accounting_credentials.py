"""Unit tests for CredentialManager: OAuth flow, token refresh, lifecycle and settings."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import pytest

from conftest import TENANT, make_connection
from src.ledgerlink.accounting.credentials import CredentialManager, token_state
from src.ledgerlink.accounting.errors import (
    AuthError,
    ConfigurationError,
    InvalidOAuthStateError,
    NotConnectedError,
    RefreshFailedError,
    RemoteAPIError,
    TransientError,
)
from src.ledgerlink.accounting.schemas import (
    ConflictPolicy,
    ConnectionSettings,
    SettingsUpdate,
    SyncInterval,
    TokenState,
)


def _state_from(url: str) -> str:
    return parse_qs(urlparse(url).query)["state"][0]


# ── Authorization flow ─────────────────────────────────────────────────────


class TestAuthorizationFlow:
    async def test_connect_returns_url_with_stored_state(self, credentials, oauth_states):
        url = await credentials.connect(TENANT)

        state = _state_from(url)
        assert len(state) == 64
        assert oauth_states.states[state] == TENANT

    async def test_connect_without_oauth_is_configuration_error(
        self, connections, oauth_states, remote, retry
    ):
        manager = CredentialManager(connections, oauth_states, lambda r: remote, retry, oauth=None)
        with pytest.raises(ConfigurationError):
            await manager.connect(TENANT)

    async def test_callback_persists_connection(self, credentials, connections, clock):
        state = _state_from(await credentials.connect(TENANT))

        record = await credentials.handle_auth_callback("auth-code", "realm-123", state)

        assert record.tenant_id == TENANT
        assert record.remote_company_id == "realm-123"
        assert record.company_name == "Acme Books LLC"
        assert record.access_secret == "access-0"
        assert record.access_expires_at == clock() + timedelta(seconds=3600)
        assert record.settings == ConnectionSettings()
        assert connections.records[TENANT] == record

    async def test_unknown_state_rejected(self, credentials):
        with pytest.raises(InvalidOAuthStateError):
            await credentials.handle_auth_callback("auth-code", "realm-123", "not-a-state")

    async def test_state_is_single_use(self, credentials):
        state = _state_from(await credentials.connect(TENANT))
        await credentials.handle_auth_callback("auth-code", "realm-123", state)

        with pytest.raises(InvalidOAuthStateError):
            await credentials.handle_auth_callback("auth-code", "realm-123", state)

    async def test_rejected_code_is_auth_error(self, credentials, oauth, connections):
        oauth.exchange_error = RemoteAPIError("invalid_grant", status_code=400)
        state = _state_from(await credentials.connect(TENANT))

        with pytest.raises(AuthError):
            await credentials.handle_auth_callback("bad-code", "realm-123", state)
        assert TENANT not in connections.records

    async def test_company_info_failure_does_not_block_connect(self, credentials, remote):
        remote.fail("get_company_info", 503, times=3)
        state = _state_from(await credentials.connect(TENANT))

        record = await credentials.handle_auth_callback("auth-code", "realm-123", state)

        assert record.company_name is None

    async def test_reconnect_resets_settings(self, credentials, connections, connected):
        await credentials.update_settings(TENANT, SettingsUpdate(auto_sync=True))
        state = _state_from(await credentials.connect(TENANT))

        record = await credentials.handle_auth_callback("auth-code", "realm-456", state)

        assert record.settings == ConnectionSettings()
        assert connections.records[TENANT].remote_company_id == "realm-456"


# ── Token refresh ──────────────────────────────────────────────────────────


class TestTokenRefresh:
    async def test_fresh_token_not_refreshed(self, credentials, oauth, connected, built_clients):
        await credentials.get_valid_client(TENANT)

        assert oauth.refresh_calls == []
        assert built_clients == ["access-0"]

    async def test_token_inside_window_refreshed_once(
        self, credentials, connections, oauth, clock, built_clients
    ):
        await connections.save(make_connection(clock, access_in=timedelta(minutes=2)))

        await credentials.get_valid_client(TENANT)

        assert oauth.refresh_calls == ["refresh-0"]
        assert built_clients == ["access-1"]
        stored = connections.records[TENANT]
        assert stored.access_secret == "access-1"
        assert stored.refresh_secret == "refresh-1"
        assert stored.access_expires_at == clock() + timedelta(seconds=3600)

    async def test_concurrent_callers_share_one_refresh(
        self, credentials, connections, oauth, clock, built_clients
    ):
        await connections.save(make_connection(clock, access_in=timedelta(minutes=2)))

        await asyncio.gather(*(credentials.get_valid_client(TENANT) for _ in range(5)))

        assert len(oauth.refresh_calls) == 1
        assert built_clients == ["access-1"] * 5

    async def test_refresh_skipped_when_secret_already_replaced(self, credentials, connected, oauth):
        record = await credentials.refresh(TENANT, seen_access_secret="some-older-secret")

        assert oauth.refresh_calls == []
        assert record.access_secret == "access-0"

    async def test_expired_refresh_token_fails_without_calling_provider(
        self, credentials, connections, oauth, clock
    ):
        await connections.save(
            make_connection(clock, access_in=timedelta(minutes=-5), refresh_in=timedelta(seconds=-1))
        )

        with pytest.raises(RefreshFailedError):
            await credentials.get_valid_client(TENANT)
        assert oauth.refresh_calls == []

    async def test_rejected_refresh_is_refresh_failed(self, credentials, connections, oauth, clock):
        await connections.save(make_connection(clock, access_in=timedelta(minutes=1)))
        oauth.refresh_error = RemoteAPIError("invalid_grant", status_code=401)

        with pytest.raises(RefreshFailedError):
            await credentials.get_valid_client(TENANT)
        assert connections.records[TENANT].access_secret == "access-0"

    async def test_unavailable_token_endpoint_is_transient(self, credentials, connections, oauth, clock):
        await connections.save(make_connection(clock, access_in=timedelta(minutes=1)))
        oauth.refresh_error = RemoteAPIError("unavailable", status_code=503)

        with pytest.raises(TransientError):
            await credentials.get_valid_client(TENANT)
        assert len(oauth.refresh_calls) == 3

    async def test_not_connected(self, credentials):
        with pytest.raises(NotConnectedError):
            await credentials.get_valid_client(TENANT)


class TestTokenState:
    def test_active(self, clock):
        assert token_state(make_connection(clock), clock()) == TokenState.ACTIVE

    def test_needs_refresh_inside_window(self, clock):
        record = make_connection(clock, access_in=timedelta(minutes=5))
        assert token_state(record, clock()) == TokenState.NEEDS_REFRESH

    def test_expired_when_refresh_token_dead(self, clock):
        record = make_connection(clock, refresh_in=timedelta(0))
        assert token_state(record, clock()) == TokenState.EXPIRED


# ── Lifecycle & settings ───────────────────────────────────────────────────


class TestLifecycle:
    async def test_disconnect_revokes_and_deletes(self, credentials, connections, oauth, connected):
        await credentials.disconnect(TENANT)

        assert oauth.revoked == ["refresh-0"]
        assert TENANT not in connections.records

    async def test_disconnect_survives_revoke_failure(self, credentials, connections, oauth, connected):
        oauth.revoke_error = RemoteAPIError("down", status_code=500)

        await credentials.disconnect(TENANT)

        assert TENANT not in connections.records

    async def test_disconnect_when_not_connected(self, credentials):
        with pytest.raises(NotConnectedError):
            await credentials.disconnect(TENANT)

    async def test_status_when_not_connected(self, credentials):
        status = await credentials.get_connection_status(TENANT)
        assert status.connected is False
        assert status.token_state is None

    async def test_status_when_connected(self, credentials, connected):
        status = await credentials.get_connection_status(TENANT)

        assert status.connected is True
        assert status.token_state == TokenState.ACTIVE
        assert status.company_name == "Acme Books LLC"
        assert status.settings == ConnectionSettings()

    async def test_update_settings_merges_and_keeps_tokens(self, credentials, connections, connected):
        settings = await credentials.update_settings(
            TENANT, SettingsUpdate(conflict_policy=ConflictPolicy.REMOTE_WINS)
        )
        settings = await credentials.update_settings(TENANT, SettingsUpdate(sync_interval=SyncInterval.DAILY))

        assert settings.conflict_policy == ConflictPolicy.REMOTE_WINS
        assert settings.sync_interval == SyncInterval.DAILY
        assert settings.auto_sync is False
        assert connections.records[TENANT].access_secret == "access-0"

    async def test_update_settings_requires_connection(self, credentials):
        with pytest.raises(NotConnectedError):
            await credentials.update_settings(TENANT, SettingsUpdate(auto_sync=True))
