"""Tests for the AccountingSyncService facade and its status views."""

from __future__ import annotations

from datetime import timedelta

from conftest import T0, TENANT
from src.ledgerlink.accounting.schemas import (
    ConflictPolicy,
    ConflictStatus,
    EntityLinkage,
    EntityType,
    SettingsUpdate,
    SyncDirection,
)


async def _make_conflict(service, remote, entities, clock):
    """Pull one customer, edit it locally, then change it remotely and pull again."""
    record = remote.seed(EntityType.CUSTOMER, {"DisplayName": "Alpha LLC"})
    await service.sync_entity_type(TENANT, EntityType.CUSTOMER)
    [local] = entities.of_type(EntityType.CUSTOMER)
    entities.entities[local.id] = local.model_copy(update={
        "data": {**local.data, "name": "Alpha (local)"},
        "updated_at": T0 + timedelta(minutes=30),
    })
    clock.advance(minutes=5)
    remote.seed(EntityType.CUSTOMER, {"DisplayName": "Alpha (remote)"}, record_id=record.id, revision_token="1")
    result = await service.sync_entity_type(TENANT, EntityType.CUSTOMER)
    return local, result.conflicts[0].conflict_id


class TestConnectionStatus:
    async def test_not_connected(self, service):
        status = await service.get_connection_status(TENANT)
        assert status.connected is False
        assert status.last_sync_at == {}

    async def test_includes_last_sync_and_pending_conflicts(self, service, remote, entities, clock, connected):
        await _make_conflict(service, remote, entities, clock)

        status = await service.get_connection_status(TENANT)

        assert status.connected is True
        assert status.last_sync_at == {EntityType.CUSTOMER: T0 + timedelta(minutes=5)}
        assert status.pending_conflicts == 1


class TestSyncViews:
    async def test_sync_entity_type_defaults_to_pull(self, service, remote, entities, connected):
        entities.add_local(EntityType.CUSTOMER, {"name": "Local Only"})

        await service.sync_entity_type(TENANT, EntityType.CUSTOMER)

        assert remote.count("create") == 0

    async def test_sync_all_defaults_to_both(self, service, remote, entities, connected):
        entities.add_local(EntityType.CUSTOMER, {"name": "Local Only"})

        report = await service.sync_all(TENANT)

        assert remote.count("create") == 1
        assert report.results[EntityType.CUSTOMER].created == 1

    async def test_sync_status_lists_every_type(self, service, remote, connected):
        remote.seed(EntityType.VENDOR, {"DisplayName": "Paper Co"})
        await service.sync_entity_type(TENANT, EntityType.VENDOR)

        status = await service.get_sync_status(TENANT)

        assert status["tenant_id"] == TENANT
        assert set(status["entity_types"]) == {t.value for t in EntityType}
        vendor = status["entity_types"]["vendor"]
        assert vendor["last_sync_at"] == T0
        assert vendor["last_result"].created == 1
        assert vendor["running"] is False
        assert status["entity_types"]["bill"]["last_sync_at"] is None
        assert status["pending_conflicts"] == 0

    async def test_sync_errors_flattened_in_type_order(self, service, remote, entities, connected):
        entities.add_local(EntityType.BILL, {"vendor_id": "missing", "lines": []})
        entities.add_local(EntityType.INVOICE, {"customer_id": "missing", "lines": []})
        await service.sync_entity_type(TENANT, EntityType.BILL, SyncDirection.TO_REMOTE)
        await service.sync_entity_type(TENANT, EntityType.INVOICE, SyncDirection.TO_REMOTE)

        errors = await service.get_sync_errors(TENANT)

        assert [e.type for e in errors] == [EntityType.INVOICE, EntityType.BILL]


class TestResolveConflict:
    async def test_explicit_policy(self, service, remote, entities, clock, connected):
        local, conflict_id = await _make_conflict(service, remote, entities, clock)

        resolved = await service.resolve_conflict(TENANT, conflict_id, ConflictPolicy.REMOTE_WINS)

        assert resolved.status == ConflictStatus.RESOLVED
        assert entities.entities[local.id].data["name"] == "Alpha (remote)"
        assert await service.list_conflicts(TENANT) == []

    async def test_default_policy_comes_from_settings(self, service, remote, entities, clock, connected):
        local, conflict_id = await _make_conflict(service, remote, entities, clock)
        await service.update_settings(TENANT, SettingsUpdate(conflict_policy=ConflictPolicy.LOCAL_WINS))

        resolved = await service.resolve_conflict(TENANT, conflict_id)

        assert resolved.resolution == ConflictPolicy.LOCAL_WINS
        [remote_record] = remote.records[EntityType.CUSTOMER].values()
        assert remote_record.fields["DisplayName"] == "Alpha (local)"
        assert entities.entities[local.id].linkage == EntityLinkage(
            remote_id=remote_record.id,
            remote_revision_token="2",
            last_synced_at=clock(),
        )

    async def test_default_settings_leave_conflict_pending(self, service, remote, entities, clock, connected):
        _, conflict_id = await _make_conflict(service, remote, entities, clock)

        result = await service.resolve_conflict(TENANT, conflict_id)

        assert result.status == ConflictStatus.PENDING
        assert [c.id for c in await service.list_conflicts(TENANT)] == [conflict_id]
