"""Keyed locks for the sync engine.

- KeyedLocks: blocking asyncio.Lock per key (token refresh, one per tenant)
- RunGuard: non-blocking exclusivity per (tenant, entity type); a second
  run is rejected with SyncAlreadyInProgressError instead of queued.
  Optionally backed by a Redis lock so concurrent API workers and the
  scheduler process also exclude each other.

The two are independent: a run waiting on a token refresh holds its run
key, never the other way round.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
import structlog
from redis.exceptions import LockError

from src.ledgerlink.accounting.errors import SyncAlreadyInProgressError
from src.ledgerlink.accounting.schemas import EntityType

logger = structlog.get_logger(__name__)


class KeyedLocks:
    """One lazily created asyncio.Lock per key."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def get(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock


class RunGuard:
    """Rejects concurrent runs for the same (tenant, entity type).

    Args:
        redis_client: When set, a Redis lock (SET NX with TTL) is taken in
            addition to the in-process guard.
        ttl_seconds: Redis lock expiry, bounding how long a crashed worker
            can block its tenant.
    """

    KEY_PREFIX = "accounting:sync_lock:"

    def __init__(self, redis_client: aioredis.Redis | None = None, ttl_seconds: int = 3600) -> None:
        self._redis = redis_client
        self._ttl_seconds = ttl_seconds
        self._active: set[str] = set()

    @staticmethod
    def _key(tenant_id: str, entity_type: EntityType) -> str:
        return f"{tenant_id}:{entity_type.value}"

    def is_running(self, tenant_id: str, entity_type: EntityType) -> bool:
        return self._key(tenant_id, entity_type) in self._active

    @asynccontextmanager
    async def hold(self, tenant_id: str, entity_type: EntityType) -> AsyncIterator[None]:
        """Hold the run key for the duration of the block.

        Raises:
            SyncAlreadyInProgressError: If the key is already held.
        """
        key = self._key(tenant_id, entity_type)
        # Check-and-add has no await in between, so it is atomic on the loop.
        if key in self._active:
            raise SyncAlreadyInProgressError(tenant_id, entity_type.value)
        self._active.add(key)

        redis_lock = None
        try:
            if self._redis is not None:
                redis_lock = self._redis.lock(
                    f"{self.KEY_PREFIX}{key}",
                    timeout=self._ttl_seconds,
                    blocking=False,
                )
                if not await redis_lock.acquire():
                    redis_lock = None
                    raise SyncAlreadyInProgressError(tenant_id, entity_type.value)
            yield
        finally:
            if redis_lock is not None:
                try:
                    await redis_lock.release()
                except LockError:
                    logger.warning("sync.lock_release_failed", key=key)
            self._active.discard(key)
