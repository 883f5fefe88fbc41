"""Persistence interfaces used by the sync engine.

The orchestrator, conflict manager and credential manager depend only on
these ABCs. PostgreSQL and Redis implementations live in repository.py;
tests use in-memory fakes.

Methods:
    ConnectionStore: whole-record get/save/delete of ConnectionRecord.
    EntityStore: local entities keyed by id and by (tenant, type, remote_id).
    ConflictStore: pending/resolved ConflictRecords.
    SyncStateStore: last sync time and result per (tenant, entity type).
    OAuthStateStore: one-time CSRF state tokens with a TTL.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from src.ledgerlink.accounting.mapping.common import LinkIndex
from src.ledgerlink.accounting.schemas import (
    ConflictRecord,
    ConflictStatus,
    ConnectionRecord,
    EntityLinkage,
    EntityType,
    LocalEntity,
    SyncStateSnapshot,
)


class ConnectionStore(ABC):
    @abstractmethod
    async def get(self, tenant_id: str) -> ConnectionRecord | None:
        ...

    @abstractmethod
    async def save(self, record: ConnectionRecord) -> None:
        """Replace the tenant's record whole (insert if absent)."""
        ...

    @abstractmethod
    async def delete(self, tenant_id: str) -> bool:
        """Delete the tenant's record. Returns False if none existed."""
        ...

    @abstractmethod
    async def list_auto_sync(self) -> list[ConnectionRecord]:
        """All connections with settings.auto_sync enabled."""
        ...


class EntityStore(ABC):
    @abstractmethod
    async def get(self, tenant_id: str, entity_type: EntityType, entity_id: str) -> LocalEntity | None:
        ...

    @abstractmethod
    async def get_by_remote_id(
        self, tenant_id: str, entity_type: EntityType, remote_id: str
    ) -> LocalEntity | None:
        ...

    @abstractmethod
    async def list_unlinked(self, tenant_id: str, entity_type: EntityType) -> list[LocalEntity]:
        """Entities with linkage.remote_id IS NULL (never pushed)."""
        ...

    @abstractmethod
    async def list_links(self, tenant_id: str, entity_type: EntityType) -> dict[str, str]:
        """Map of remote_id -> local id for all linked entities of a type."""
        ...

    async def link_index(self, tenant_id: str, entity_types: Iterable[EntityType]) -> LinkIndex:
        """Prefetch links for the given types into a LinkIndex for the mappers."""
        return LinkIndex({t: await self.list_links(tenant_id, t) for t in entity_types})

    @abstractmethod
    async def create(
        self,
        tenant_id: str,
        entity_type: EntityType,
        data: dict[str, Any],
        linkage: EntityLinkage,
        updated_at: datetime,
    ) -> LocalEntity:
        """Insert a new entity. A duplicate linked remote_id is rejected."""
        ...

    @abstractmethod
    async def update(
        self,
        tenant_id: str,
        entity_type: EntityType,
        entity_id: str,
        data: dict[str, Any],
        linkage: EntityLinkage,
        updated_at: datetime,
    ) -> LocalEntity:
        ...

    @abstractmethod
    async def set_linkage(
        self, tenant_id: str, entity_type: EntityType, entity_id: str, linkage: EntityLinkage
    ) -> LocalEntity:
        """Write linkage only; data and updated_at are untouched."""
        ...


class ConflictStore(ABC):
    @abstractmethod
    async def get(self, tenant_id: str, conflict_id: str) -> ConflictRecord | None:
        ...

    @abstractmethod
    async def find_pending(
        self, tenant_id: str, entity_type: EntityType, local_entity_id: str
    ) -> ConflictRecord | None:
        ...

    @abstractmethod
    async def save(self, conflict: ConflictRecord) -> None:
        """Insert or replace by conflict id."""
        ...

    @abstractmethod
    async def list_conflicts(self, tenant_id: str, status: ConflictStatus | None = None) -> list[ConflictRecord]:
        ...

    @abstractmethod
    async def count_pending(self, tenant_id: str) -> int:
        ...


class SyncStateStore(ABC):
    @abstractmethod
    async def get(self, tenant_id: str, entity_type: EntityType) -> SyncStateSnapshot | None:
        ...

    @abstractmethod
    async def list_states(self, tenant_id: str) -> list[SyncStateSnapshot]:
        ...

    @abstractmethod
    async def save(self, snapshot: SyncStateSnapshot) -> None:
        ...


class OAuthStateStore(ABC):
    @abstractmethod
    async def put(self, state: str, tenant_id: str, ttl_seconds: int) -> None:
        ...

    @abstractmethod
    async def pop(self, state: str) -> str | None:
        """Consume a state token. Returns the tenant id, or None if unknown or expired."""
        ...
