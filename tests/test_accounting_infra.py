"""Tests for secret encryption, Redis-backed stores and locks, and the composition root."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import LockError

from conftest import TENANT, make_connection
from src.ledgerlink.accounting.container import build_accounting, quickbooks_client_factory
from src.ledgerlink.accounting.crypto import SecretCipher
from src.ledgerlink.accounting.errors import ConfigurationError, SyncAlreadyInProgressError
from src.ledgerlink.accounting.locks import KeyedLocks, RunGuard
from src.ledgerlink.accounting.remote.quickbooks import QuickBooksClient
from src.ledgerlink.accounting.repository import RedisOAuthStateStore
from src.ledgerlink.accounting.schemas import EntityType
from src.ledgerlink.accounting.service import AccountingSyncService
from src.ledgerlink.config import Settings


class TestSecretCipher:
    def test_round_trip_hides_plaintext(self):
        cipher = SecretCipher(SecretCipher.generate_key())

        token = cipher.encrypt("refresh-secret")

        assert "refresh-secret" not in token
        assert cipher.decrypt(token) == "refresh-secret"

    def test_missing_key(self):
        with pytest.raises(ConfigurationError):
            SecretCipher("")

    def test_malformed_key(self):
        with pytest.raises(ConfigurationError):
            SecretCipher("not-a-fernet-key")

    def test_wrong_key_cannot_decrypt(self):
        token = SecretCipher(SecretCipher.generate_key()).encrypt("secret")
        with pytest.raises(ConfigurationError):
            SecretCipher(SecretCipher.generate_key()).decrypt(token)


class TestRedisOAuthStateStore:
    async def test_put_sets_ttl(self):
        redis_client = AsyncMock()
        store = RedisOAuthStateStore(redis_client)

        await store.put("abc", TENANT, ttl_seconds=900)

        redis_client.set.assert_awaited_once_with("accounting:oauth_state:abc", TENANT, ex=900)

    async def test_pop_is_get_and_delete(self):
        redis_client = AsyncMock()
        redis_client.getdel.return_value = TENANT

        assert await RedisOAuthStateStore(redis_client).pop("abc") == TENANT
        redis_client.getdel.assert_awaited_once_with("accounting:oauth_state:abc")


class TestRunGuardWithRedis:
    def _make_redis(self, acquired: bool = True) -> tuple[MagicMock, AsyncMock]:
        lock = AsyncMock()
        lock.acquire.return_value = acquired
        redis_client = MagicMock()
        redis_client.lock.return_value = lock
        return redis_client, lock

    async def test_takes_and_releases_redis_lock(self):
        redis_client, lock = self._make_redis()
        guard = RunGuard(redis_client, ttl_seconds=60)

        async with guard.hold(TENANT, EntityType.INVOICE):
            assert guard.is_running(TENANT, EntityType.INVOICE)

        redis_client.lock.assert_called_once_with(
            f"accounting:sync_lock:{TENANT}:invoice", timeout=60, blocking=False
        )
        lock.release.assert_awaited_once()
        assert not guard.is_running(TENANT, EntityType.INVOICE)

    async def test_lock_held_by_another_process(self):
        redis_client, lock = self._make_redis(acquired=False)
        guard = RunGuard(redis_client)

        with pytest.raises(SyncAlreadyInProgressError):
            async with guard.hold(TENANT, EntityType.INVOICE):
                pass

        lock.release.assert_not_awaited()
        assert not guard.is_running(TENANT, EntityType.INVOICE)

    async def test_expired_lock_release_is_tolerated(self):
        redis_client, lock = self._make_redis()
        lock.release.side_effect = LockError("lock expired")

        async with RunGuard(redis_client).hold(TENANT, EntityType.BILL):
            pass

    async def test_keys_are_independent(self):
        guard = RunGuard()
        async with guard.hold(TENANT, EntityType.CUSTOMER):
            async with guard.hold(TENANT, EntityType.VENDOR):
                async with guard.hold("tenant-other", EntityType.CUSTOMER):
                    assert guard.is_running(TENANT, EntityType.VENDOR)


def test_keyed_locks_reuse_lock_per_key():
    locks = KeyedLocks()
    assert locks.get("a") is locks.get("a")
    assert locks.get("a") is not locks.get("b")


class TestBuildAccounting:
    def _settings(self, **overrides) -> Settings:
        values = {"SECRETS_ENCRYPTION_KEY": SecretCipher.generate_key(), "SYNC_PAGE_SIZE": 50}
        values.update(overrides)
        return Settings(**values)

    async def test_wires_service_and_scheduler(self):
        components = build_accounting(self._settings(), session_factory=MagicMock(), redis_client=MagicMock())

        assert isinstance(components.service, AccountingSyncService)
        assert components.scheduler.running is False

    async def test_missing_encryption_key(self):
        with pytest.raises(ConfigurationError):
            build_accounting(self._settings(SECRETS_ENCRYPTION_KEY=""), MagicMock(), MagicMock())

    async def test_connect_without_oauth_credentials(self):
        settings = self._settings(QUICKBOOKS_CLIENT_ID="", QUICKBOOKS_CLIENT_SECRET="")
        service = build_accounting(settings, MagicMock(), MagicMock()).service

        with pytest.raises(ConfigurationError):
            await service.connect(TENANT)

    def test_client_factory_uses_connection_realm_and_token(self, clock):
        factory = quickbooks_client_factory(self._settings(QUICKBOOKS_ENVIRONMENT="production"))

        client = factory(make_connection(clock))

        assert isinstance(client, QuickBooksClient)
        assert client.realm_id == "realm-123"
