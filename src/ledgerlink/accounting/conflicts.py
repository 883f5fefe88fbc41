"""Conflict detection, persistence and resolution.

Detection rules:
- pull (from_remote): local.updated_at > remote.last_modified_at
- push (to_remote):   remote.last_modified_at > local.linkage.last_synced_at

Resolution is whole-record: remote_wins writes the remote snapshot locally,
local_wins pushes the local entity over the snapshot's revision,
newest_wins picks by timestamp, manual leaves the conflict pending.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from typing import assert_never

import structlog

from src.ledgerlink.accounting.credentials import Clock, CredentialManager, utc_now
from src.ledgerlink.accounting.errors import (
    AlreadyResolvedError,
    ConflictNotFoundError,
    ValidationError,
)
from src.ledgerlink.accounting.locks import KeyedLocks
from src.ledgerlink.accounting.mapping.common import MappingContext
from src.ledgerlink.accounting.mapping.registry import MappingRegistry
from src.ledgerlink.accounting.retry import RetryExecutor
from src.ledgerlink.accounting.schemas import (
    ConflictPolicy,
    ConflictRecord,
    ConflictStatus,
    EntityLinkage,
    EntityType,
    LocalEntity,
    RemoteRecord,
    SyncDirection,
)
from src.ledgerlink.accounting.stores import ConflictStore, EntityStore

logger = structlog.get_logger(__name__)


class ConflictManager:
    """Records and resolves divergences between local entities and remote records.

    Args:
        conflicts: Conflict persistence.
        entities: Local entity store (written by remote_wins).
        registry: Mapper registry.
        credentials: Source of remote clients (used by local_wins).
        retry: RetryExecutor for the local_wins remote update.
        clock: Returns the current UTC time.
        id_factory: Generates conflict ids.
    """

    def __init__(
        self,
        conflicts: ConflictStore,
        entities: EntityStore,
        registry: MappingRegistry,
        credentials: CredentialManager,
        retry: RetryExecutor,
        clock: Clock = utc_now,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ) -> None:
        self._conflicts = conflicts
        self._entities = entities
        self._registry = registry
        self._credentials = credentials
        self._retry = retry
        self._clock = clock
        self._id_factory = id_factory
        self._locks = KeyedLocks()

    # ── Detection ───────────────────────────────────────────────────────────

    @staticmethod
    def divergence_reason(local: LocalEntity, remote: RemoteRecord, direction: SyncDirection) -> str | None:
        """Why the pair conflicts for the given direction, or None if it doesn't."""
        match direction:
            case SyncDirection.FROM_REMOTE:
                if local.updated_at > remote.last_modified_at:
                    return (
                        f"Local changes newer than remote ({local.updated_at.isoformat()} > "
                        f"{remote.last_modified_at.isoformat()})"
                    )
                return None
            case SyncDirection.TO_REMOTE:
                last_synced = local.linkage.last_synced_at
                if last_synced is None or remote.last_modified_at > last_synced:
                    return (
                        f"Remote changes newer than last sync ({remote.last_modified_at.isoformat()} > "
                        f"{last_synced.isoformat() if last_synced else 'never'})"
                    )
                return None
            case SyncDirection.BOTH:
                raise ValueError("Conflict checks run per direction; 'both' is not a direction of a single write")
            case _:
                assert_never(direction)

    async def check_and_record(
        self,
        tenant_id: str,
        entity_type: EntityType,
        local: LocalEntity,
        remote: RemoteRecord,
        direction: SyncDirection,
    ) -> ConflictRecord | None:
        """Record a conflict if the pair diverged; return it, else None.

        A pending conflict for the same local entity is refreshed with the
        new snapshots instead of being duplicated.
        """
        reason = self.divergence_reason(local, remote, direction)
        if reason is None:
            return None

        existing = await self._conflicts.find_pending(tenant_id, entity_type, local.id)
        if existing is not None:
            conflict = existing.model_copy(update={
                "remote_id": remote.id,
                "remote_snapshot": remote,
                "local_snapshot": local.data,
                "reason": reason,
            })
            await self._conflicts.save(conflict)
            logger.info(
                "conflict.refreshed",
                tenant_id=tenant_id,
                entity_type=entity_type.value,
                conflict_id=conflict.id,
                local_entity_id=local.id,
            )
            return conflict

        conflict = ConflictRecord(
            id=self._id_factory(),
            tenant_id=tenant_id,
            entity_type=entity_type,
            local_entity_id=local.id,
            remote_id=remote.id,
            remote_snapshot=remote,
            local_snapshot=local.data,
            reason=reason,
            created_at=self._clock(),
        )
        await self._conflicts.save(conflict)
        logger.info(
            "conflict.recorded",
            tenant_id=tenant_id,
            entity_type=entity_type.value,
            conflict_id=conflict.id,
            local_entity_id=local.id,
            remote_id=remote.id,
            reason=reason,
        )
        return conflict

    # ── Queries ─────────────────────────────────────────────────────────────

    async def list_conflicts(
        self, tenant_id: str, status: ConflictStatus | None = ConflictStatus.PENDING
    ) -> list[ConflictRecord]:
        return await self._conflicts.list_conflicts(tenant_id, status)

    async def count_pending(self, tenant_id: str) -> int:
        return await self._conflicts.count_pending(tenant_id)

    # ── Resolution ──────────────────────────────────────────────────────────

    async def resolve(self, tenant_id: str, conflict_id: str, policy: ConflictPolicy) -> ConflictRecord:
        """Apply a resolution policy to a pending conflict.

        Returns the conflict after resolution (still pending for manual).

        Raises:
            ConflictNotFoundError: No such conflict for the tenant.
            AlreadyResolvedError: The conflict was resolved before.
            ValidationError / TransientError: local_wins remote update failed;
                the conflict stays pending.
        """
        async with self._locks.get(tenant_id):
            conflict = await self._conflicts.get(tenant_id, conflict_id)
            if conflict is None:
                raise ConflictNotFoundError(conflict_id)
            if conflict.status == ConflictStatus.RESOLVED:
                raise AlreadyResolvedError(conflict_id)

            match policy:
                case ConflictPolicy.MANUAL:
                    logger.info("conflict.left_for_manual", tenant_id=tenant_id, conflict_id=conflict_id)
                    return conflict
                case ConflictPolicy.REMOTE_WINS:
                    local = await self._require_local(conflict)
                    applied = ConflictPolicy.REMOTE_WINS
                case ConflictPolicy.LOCAL_WINS:
                    local = await self._require_local(conflict)
                    applied = ConflictPolicy.LOCAL_WINS
                case ConflictPolicy.NEWEST_WINS:
                    local = await self._require_local(conflict)
                    remote_newer = conflict.remote_snapshot.last_modified_at > local.updated_at
                    applied = ConflictPolicy.REMOTE_WINS if remote_newer else ConflictPolicy.LOCAL_WINS
                case _:
                    assert_never(policy)

            if applied == ConflictPolicy.REMOTE_WINS:
                await self._apply_remote(tenant_id, conflict, local)
            else:
                await self._apply_local(tenant_id, conflict, local)

            resolved = conflict.model_copy(update={
                "status": ConflictStatus.RESOLVED,
                "resolution": applied,
                "resolved_at": self._clock(),
            })
            await self._conflicts.save(resolved)
            logger.info(
                "conflict.resolved",
                tenant_id=tenant_id,
                conflict_id=conflict_id,
                requested=policy.value,
                applied=applied.value,
            )
            return resolved

    async def _require_local(self, conflict: ConflictRecord) -> LocalEntity:
        local = await self._entities.get(conflict.tenant_id, conflict.entity_type, conflict.local_entity_id)
        if local is None:
            raise ValidationError(
                f"Local {conflict.entity_type.value} {conflict.local_entity_id} no longer exists"
            )
        return local

    async def _context(self, tenant_id: str, entity_type: EntityType) -> MappingContext:
        links = await self._entities.link_index(tenant_id, self._registry.link_types(entity_type))
        return MappingContext(tenant_id=tenant_id, as_of=self._clock(), links=links)

    async def _apply_remote(self, tenant_id: str, conflict: ConflictRecord, local: LocalEntity) -> None:
        snapshot = conflict.remote_snapshot
        ctx = await self._context(tenant_id, conflict.entity_type)
        data = self._registry.to_local(conflict.entity_type, snapshot, ctx)
        await self._entities.update(
            tenant_id,
            conflict.entity_type,
            local.id,
            data,
            EntityLinkage(
                remote_id=snapshot.id,
                remote_revision_token=snapshot.revision_token,
                last_synced_at=self._clock(),
            ),
            updated_at=snapshot.last_modified_at,
        )

    async def _apply_local(self, tenant_id: str, conflict: ConflictRecord, local: LocalEntity) -> None:
        snapshot = conflict.remote_snapshot
        ctx = await self._context(tenant_id, conflict.entity_type)
        payload = self._registry.to_remote(conflict.entity_type, local.data, ctx)
        client = await self._credentials.get_valid_client(tenant_id)
        record = await self._retry.execute(
            lambda: client.update(conflict.entity_type, snapshot.id, snapshot.revision_token, payload),
            description=f"update:{conflict.entity_type.value}",
        )
        await self._entities.set_linkage(
            tenant_id,
            conflict.entity_type,
            local.id,
            EntityLinkage(
                remote_id=record.id,
                remote_revision_token=record.revision_token,
                last_synced_at=self._clock(),
            ),
        )
