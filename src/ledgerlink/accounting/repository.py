"""PostgreSQL and Redis implementations of the sync engine stores.

Repositories use the session_factory callable pattern: each method opens
one session, performs one unit of work and commits. Local writes are
per-entity and independently atomic; an interrupted run leaves every
committed row consistent and is recovered by rerunning.

Pydantic records are serialized with model_dump(mode="json") and read back
with model_validate().
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable
from datetime import datetime
from typing import Any

import redis.asyncio as aioredis
import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.ledgerlink.accounting.crypto import SecretCipher
from src.ledgerlink.accounting.errors import DuplicateLinkageError
from src.ledgerlink.accounting.models import (
    ConflictModel,
    ConnectionModel,
    SyncedEntityModel,
    SyncStateModel,
)
from src.ledgerlink.accounting.schemas import (
    ConflictPolicy,
    ConflictRecord,
    ConflictStatus,
    ConnectionRecord,
    ConnectionSettings,
    EntityLinkage,
    EntityType,
    LocalEntity,
    RemoteRecord,
    SyncResult,
    SyncStateSnapshot,
)
from src.ledgerlink.accounting.stores import (
    ConflictStore,
    ConnectionStore,
    EntityStore,
    OAuthStateStore,
    SyncStateStore,
)

logger = structlog.get_logger(__name__)

SessionFactory = Callable[..., AsyncGenerator[AsyncSession, None]]


# ── Serialization Helpers ───────────────────────────────────────────────────


def _model_to_entity(model: SyncedEntityModel) -> LocalEntity:
    return LocalEntity(
        id=str(model.id),
        tenant_id=model.tenant_id,
        entity_type=EntityType(model.entity_type),
        data=model.data or {},
        linkage=EntityLinkage(
            remote_id=model.remote_id,
            remote_revision_token=model.remote_revision_token,
            last_synced_at=model.last_synced_at,
        ),
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def _model_to_conflict(model: ConflictModel) -> ConflictRecord:
    return ConflictRecord(
        id=str(model.id),
        tenant_id=model.tenant_id,
        entity_type=EntityType(model.entity_type),
        local_entity_id=str(model.local_entity_id),
        remote_id=model.remote_id,
        remote_snapshot=RemoteRecord.model_validate(model.remote_snapshot),
        local_snapshot=model.local_snapshot or {},
        reason=model.reason,
        status=ConflictStatus(model.status),
        resolution=ConflictPolicy(model.resolution) if model.resolution else None,
        created_at=model.created_at,
        resolved_at=model.resolved_at,
    )


def _model_to_sync_state(model: SyncStateModel) -> SyncStateSnapshot:
    return SyncStateSnapshot(
        tenant_id=model.tenant_id,
        entity_type=EntityType(model.entity_type),
        last_sync_at=model.last_sync_at,
        last_result=SyncResult.model_validate(model.last_result) if model.last_result else None,
    )


def _apply_linkage(model: SyncedEntityModel, linkage: EntityLinkage) -> None:
    model.remote_id = linkage.remote_id
    model.remote_revision_token = linkage.remote_revision_token
    model.last_synced_at = linkage.last_synced_at


# ── Connections ─────────────────────────────────────────────────────────────


class ConnectionRepository(ConnectionStore):
    """Connection records with Fernet-encrypted secrets.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
        cipher: SecretCipher used for access/refresh secrets.
    """

    def __init__(self, session_factory: SessionFactory, cipher: SecretCipher) -> None:
        self._session_factory = session_factory
        self._cipher = cipher

    def _model_to_record(self, model: ConnectionModel) -> ConnectionRecord:
        return ConnectionRecord(
            tenant_id=model.tenant_id,
            remote_company_id=model.remote_company_id,
            company_name=model.company_name,
            access_secret=self._cipher.decrypt(model.access_secret_encrypted),
            refresh_secret=self._cipher.decrypt(model.refresh_secret_encrypted),
            access_expires_at=model.access_expires_at,
            refresh_expires_at=model.refresh_expires_at,
            connected_at=model.connected_at,
            settings=ConnectionSettings.model_validate(model.settings_json or {}),
        )

    async def get(self, tenant_id: str) -> ConnectionRecord | None:
        async for session in self._session_factory():
            stmt = select(ConnectionModel).where(ConnectionModel.tenant_id == tenant_id)
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                return None
            return self._model_to_record(model)

    async def save(self, record: ConnectionRecord) -> None:
        """Replace the record whole in one transaction."""
        async for session in self._session_factory():
            stmt = select(ConnectionModel).where(ConnectionModel.tenant_id == record.tenant_id)
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                model = ConnectionModel(tenant_id=record.tenant_id)
                session.add(model)

            model.remote_company_id = record.remote_company_id
            model.company_name = record.company_name
            model.access_secret_encrypted = self._cipher.encrypt(record.access_secret)
            model.refresh_secret_encrypted = self._cipher.encrypt(record.refresh_secret)
            model.access_expires_at = record.access_expires_at
            model.refresh_expires_at = record.refresh_expires_at
            model.connected_at = record.connected_at
            model.settings_json = record.settings.model_dump(mode="json")
            await session.commit()

    async def delete(self, tenant_id: str) -> bool:
        async for session in self._session_factory():
            stmt = delete(ConnectionModel).where(ConnectionModel.tenant_id == tenant_id)
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount > 0

    async def list_auto_sync(self) -> list[ConnectionRecord]:
        async for session in self._session_factory():
            result = await session.execute(select(ConnectionModel))
            records = [self._model_to_record(m) for m in result.scalars().all()]
            return [r for r in records if r.settings.auto_sync]


# ── Entities ────────────────────────────────────────────────────────────────


class EntityRepository(EntityStore):
    """Local entities of every synced type, keyed by id and by remote id."""

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def get(self, tenant_id: str, entity_type: EntityType, entity_id: str) -> LocalEntity | None:
        async for session in self._session_factory():
            model = await self._get_model(session, tenant_id, entity_type, entity_id)
            return _model_to_entity(model) if model is not None else None

    async def get_by_remote_id(
        self, tenant_id: str, entity_type: EntityType, remote_id: str
    ) -> LocalEntity | None:
        async for session in self._session_factory():
            stmt = select(SyncedEntityModel).where(
                SyncedEntityModel.tenant_id == tenant_id,
                SyncedEntityModel.entity_type == entity_type.value,
                SyncedEntityModel.remote_id == remote_id,
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            return _model_to_entity(model) if model is not None else None

    async def list_unlinked(self, tenant_id: str, entity_type: EntityType) -> list[LocalEntity]:
        async for session in self._session_factory():
            stmt = (
                select(SyncedEntityModel)
                .where(
                    SyncedEntityModel.tenant_id == tenant_id,
                    SyncedEntityModel.entity_type == entity_type.value,
                    SyncedEntityModel.remote_id.is_(None),
                )
                .order_by(SyncedEntityModel.created_at)
            )
            result = await session.execute(stmt)
            return [_model_to_entity(m) for m in result.scalars().all()]

    async def list_links(self, tenant_id: str, entity_type: EntityType) -> dict[str, str]:
        async for session in self._session_factory():
            stmt = select(SyncedEntityModel.remote_id, SyncedEntityModel.id).where(
                SyncedEntityModel.tenant_id == tenant_id,
                SyncedEntityModel.entity_type == entity_type.value,
                SyncedEntityModel.remote_id.is_not(None),
            )
            result = await session.execute(stmt)
            return {remote_id: str(local_id) for remote_id, local_id in result.all()}

    async def create(
        self,
        tenant_id: str,
        entity_type: EntityType,
        data: dict[str, Any],
        linkage: EntityLinkage,
        updated_at: datetime,
    ) -> LocalEntity:
        async for session in self._session_factory():
            model = SyncedEntityModel(
                id=uuid.uuid4(),
                tenant_id=tenant_id,
                entity_type=entity_type.value,
                data=data,
                updated_at=updated_at,
            )
            _apply_linkage(model, linkage)
            session.add(model)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                logger.warning(
                    "entity.duplicate_linkage",
                    tenant_id=tenant_id,
                    entity_type=entity_type.value,
                    remote_id=linkage.remote_id,
                )
                raise DuplicateLinkageError(entity_type.value, linkage.remote_id or "") from exc
            await session.refresh(model)
            return _model_to_entity(model)

    async def update(
        self,
        tenant_id: str,
        entity_type: EntityType,
        entity_id: str,
        data: dict[str, Any],
        linkage: EntityLinkage,
        updated_at: datetime,
    ) -> LocalEntity:
        async for session in self._session_factory():
            model = await self._require_model(session, tenant_id, entity_type, entity_id)
            model.data = data
            model.updated_at = updated_at
            _apply_linkage(model, linkage)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise DuplicateLinkageError(entity_type.value, linkage.remote_id or "") from exc
            await session.refresh(model)
            return _model_to_entity(model)

    async def set_linkage(
        self, tenant_id: str, entity_type: EntityType, entity_id: str, linkage: EntityLinkage
    ) -> LocalEntity:
        async for session in self._session_factory():
            model = await self._require_model(session, tenant_id, entity_type, entity_id)
            _apply_linkage(model, linkage)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise DuplicateLinkageError(entity_type.value, linkage.remote_id or "") from exc
            await session.refresh(model)
            return _model_to_entity(model)

    async def _get_model(
        self, session: AsyncSession, tenant_id: str, entity_type: EntityType, entity_id: str
    ) -> SyncedEntityModel | None:
        try:
            pk = uuid.UUID(entity_id)
        except ValueError:
            return None
        stmt = select(SyncedEntityModel).where(
            SyncedEntityModel.tenant_id == tenant_id,
            SyncedEntityModel.entity_type == entity_type.value,
            SyncedEntityModel.id == pk,
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def _require_model(
        self, session: AsyncSession, tenant_id: str, entity_type: EntityType, entity_id: str
    ) -> SyncedEntityModel:
        model = await self._get_model(session, tenant_id, entity_type, entity_id)
        if model is None:
            raise LookupError(f"{entity_type.value} {entity_id} not found for tenant {tenant_id}")
        return model


# ── Conflicts ───────────────────────────────────────────────────────────────


class ConflictRepository(ConflictStore):
    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def get(self, tenant_id: str, conflict_id: str) -> ConflictRecord | None:
        try:
            pk = uuid.UUID(conflict_id)
        except ValueError:
            return None
        async for session in self._session_factory():
            stmt = select(ConflictModel).where(
                ConflictModel.tenant_id == tenant_id,
                ConflictModel.id == pk,
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            return _model_to_conflict(model) if model is not None else None

    async def find_pending(
        self, tenant_id: str, entity_type: EntityType, local_entity_id: str
    ) -> ConflictRecord | None:
        async for session in self._session_factory():
            stmt = select(ConflictModel).where(
                ConflictModel.tenant_id == tenant_id,
                ConflictModel.entity_type == entity_type.value,
                ConflictModel.local_entity_id == uuid.UUID(local_entity_id),
                ConflictModel.status == ConflictStatus.PENDING.value,
            )
            result = await session.execute(stmt)
            model = result.scalars().first()
            return _model_to_conflict(model) if model is not None else None

    async def save(self, conflict: ConflictRecord) -> None:
        async for session in self._session_factory():
            model = await session.get(ConflictModel, uuid.UUID(conflict.id))
            if model is None:
                model = ConflictModel(id=uuid.UUID(conflict.id), tenant_id=conflict.tenant_id)
                session.add(model)

            model.entity_type = conflict.entity_type.value
            model.local_entity_id = uuid.UUID(conflict.local_entity_id)
            model.remote_id = conflict.remote_id
            model.remote_snapshot = conflict.remote_snapshot.model_dump(mode="json")
            model.local_snapshot = conflict.local_snapshot
            model.reason = conflict.reason
            model.status = conflict.status.value
            model.resolution = conflict.resolution.value if conflict.resolution else None
            model.created_at = conflict.created_at
            model.resolved_at = conflict.resolved_at
            await session.commit()

    async def list_conflicts(self, tenant_id: str, status: ConflictStatus | None = None) -> list[ConflictRecord]:
        async for session in self._session_factory():
            stmt = select(ConflictModel).where(ConflictModel.tenant_id == tenant_id)
            if status is not None:
                stmt = stmt.where(ConflictModel.status == status.value)
            stmt = stmt.order_by(ConflictModel.created_at)
            result = await session.execute(stmt)
            return [_model_to_conflict(m) for m in result.scalars().all()]

    async def count_pending(self, tenant_id: str) -> int:
        async for session in self._session_factory():
            stmt = select(func.count()).select_from(ConflictModel).where(
                ConflictModel.tenant_id == tenant_id,
                ConflictModel.status == ConflictStatus.PENDING.value,
            )
            result = await session.execute(stmt)
            return int(result.scalar_one())


# ── Sync State ──────────────────────────────────────────────────────────────


class SyncStateRepository(SyncStateStore):
    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def get(self, tenant_id: str, entity_type: EntityType) -> SyncStateSnapshot | None:
        async for session in self._session_factory():
            stmt = select(SyncStateModel).where(
                SyncStateModel.tenant_id == tenant_id,
                SyncStateModel.entity_type == entity_type.value,
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            return _model_to_sync_state(model) if model is not None else None

    async def list_states(self, tenant_id: str) -> list[SyncStateSnapshot]:
        async for session in self._session_factory():
            stmt = select(SyncStateModel).where(SyncStateModel.tenant_id == tenant_id)
            result = await session.execute(stmt)
            return [_model_to_sync_state(m) for m in result.scalars().all()]

    async def save(self, snapshot: SyncStateSnapshot) -> None:
        async for session in self._session_factory():
            stmt = select(SyncStateModel).where(
                SyncStateModel.tenant_id == snapshot.tenant_id,
                SyncStateModel.entity_type == snapshot.entity_type.value,
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                model = SyncStateModel(
                    tenant_id=snapshot.tenant_id,
                    entity_type=snapshot.entity_type.value,
                )
                session.add(model)

            model.last_sync_at = snapshot.last_sync_at
            model.last_result = (
                snapshot.last_result.model_dump(mode="json") if snapshot.last_result else None
            )
            await session.commit()


# ── OAuth State (Redis) ─────────────────────────────────────────────────────


class RedisOAuthStateStore(OAuthStateStore):
    """One-time OAuth state tokens in Redis, expired by key TTL."""

    KEY_PREFIX = "accounting:oauth_state:"

    def __init__(self, redis_client: aioredis.Redis) -> None:
        self._redis = redis_client

    async def put(self, state: str, tenant_id: str, ttl_seconds: int) -> None:
        await self._redis.set(f"{self.KEY_PREFIX}{state}", tenant_id, ex=ttl_seconds)

    async def pop(self, state: str) -> str | None:
        return await self._redis.getdel(f"{self.KEY_PREFIX}{state}")
