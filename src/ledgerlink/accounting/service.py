"""AccountingSyncService -- the inbound interface used by the API, CLI and scheduler.

Thin facade over CredentialManager, SyncOrchestrator and ConflictManager,
plus the status views that combine them.
"""

from __future__ import annotations

from typing import Any

from src.ledgerlink.accounting.conflicts import ConflictManager
from src.ledgerlink.accounting.credentials import CredentialManager
from src.ledgerlink.accounting.orchestrator import CancellationToken, SyncOrchestrator
from src.ledgerlink.accounting.schemas import (
    ConflictPolicy,
    ConflictRecord,
    ConflictStatus,
    ConnectionRecord,
    ConnectionSettings,
    ConnectionStatus,
    EntityType,
    SettingsUpdate,
    SyncDirection,
    SyncItemError,
    SyncReport,
    SyncResult,
)
from src.ledgerlink.accounting.stores import SyncStateStore


class AccountingSyncService:
    """Facade over credentials, sync runs and conflicts for one deployment."""

    def __init__(
        self,
        credentials: CredentialManager,
        orchestrator: SyncOrchestrator,
        conflicts: ConflictManager,
        sync_states: SyncStateStore,
    ) -> None:
        self._credentials = credentials
        self._orchestrator = orchestrator
        self._conflicts = conflicts
        self._sync_states = sync_states

    @property
    def credentials(self) -> CredentialManager:
        return self._credentials

    # ── Connection ──────────────────────────────────────────────────────────

    async def connect(self, tenant_id: str) -> str:
        return await self._credentials.connect(tenant_id)

    async def handle_auth_callback(self, code: str, remote_company_id: str, state: str) -> ConnectionRecord:
        return await self._credentials.handle_auth_callback(code, remote_company_id, state)

    async def disconnect(self, tenant_id: str) -> None:
        await self._credentials.disconnect(tenant_id)

    async def update_settings(self, tenant_id: str, patch: SettingsUpdate) -> ConnectionSettings:
        return await self._credentials.update_settings(tenant_id, patch)

    async def get_connection_status(self, tenant_id: str) -> ConnectionStatus:
        """Connection, token state, per-type last sync and pending conflicts."""
        status = await self._credentials.get_connection_status(tenant_id)
        if not status.connected:
            return status
        states = await self._sync_states.list_states(tenant_id)
        return status.model_copy(update={
            "last_sync_at": {s.entity_type: s.last_sync_at for s in states if s.last_sync_at is not None},
            "pending_conflicts": await self._conflicts.count_pending(tenant_id),
        })

    # ── Sync ────────────────────────────────────────────────────────────────

    async def sync_entity_type(
        self,
        tenant_id: str,
        entity_type: EntityType,
        direction: SyncDirection = SyncDirection.FROM_REMOTE,
    ) -> SyncResult:
        return await self._orchestrator.sync_entity_type(tenant_id, entity_type, direction)

    async def sync_all(
        self,
        tenant_id: str,
        direction: SyncDirection = SyncDirection.BOTH,
        entity_types: list[EntityType] | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> SyncReport:
        return await self._orchestrator.sync_all(tenant_id, direction, entity_types, cancel_token)

    async def get_sync_status(self, tenant_id: str) -> dict[str, Any]:
        """Last sync time and result per entity type, plus pending conflict count."""
        states = {s.entity_type: s for s in await self._sync_states.list_states(tenant_id)}
        entity_types: dict[str, Any] = {}
        for entity_type in EntityType:
            snapshot = states.get(entity_type)
            entity_types[entity_type.value] = {
                "last_sync_at": snapshot.last_sync_at if snapshot else None,
                "last_result": snapshot.last_result if snapshot else None,
                "running": self._orchestrator.is_running(tenant_id, entity_type),
            }
        return {
            "tenant_id": tenant_id,
            "entity_types": entity_types,
            "pending_conflicts": await self._conflicts.count_pending(tenant_id),
        }

    async def get_sync_errors(self, tenant_id: str) -> list[SyncItemError]:
        """Errors from the last run of every entity type, in sync order."""
        states = {s.entity_type: s for s in await self._sync_states.list_states(tenant_id)}
        errors: list[SyncItemError] = []
        for entity_type in EntityType:
            snapshot = states.get(entity_type)
            if snapshot is not None and snapshot.last_result is not None:
                errors.extend(snapshot.last_result.errors)
        return errors

    # ── Conflicts ───────────────────────────────────────────────────────────

    async def list_conflicts(
        self, tenant_id: str, status: ConflictStatus | None = ConflictStatus.PENDING
    ) -> list[ConflictRecord]:
        return await self._conflicts.list_conflicts(tenant_id, status)

    async def resolve_conflict(
        self, tenant_id: str, conflict_id: str, policy: ConflictPolicy | None = None
    ) -> ConflictRecord:
        """Resolve with the given policy, or the tenant's configured one."""
        if policy is None:
            record = await self._credentials.get_connection(tenant_id)
            policy = record.settings.conflict_policy if record else ConflictPolicy.MANUAL
        return await self._conflicts.resolve(tenant_id, conflict_id, policy)
