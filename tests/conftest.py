"""Test fixtures for the accounting sync engine.

Provides in-memory implementations of every store ABC, a fake remote
client and OAuth provider, a controllable clock, and fully wired
CredentialManager / ConflictManager / SyncOrchestrator / service fixtures.
No database, Redis or network access.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from src.ledgerlink.accounting.conflicts import ConflictManager
from src.ledgerlink.accounting.credentials import CredentialManager
from src.ledgerlink.accounting.errors import DuplicateLinkageError, RemoteAPIError
from src.ledgerlink.accounting.locks import RunGuard
from src.ledgerlink.accounting.mapping.registry import MappingRegistry
from src.ledgerlink.accounting.orchestrator import SyncOrchestrator
from src.ledgerlink.accounting.remote.adapter import RemoteClient
from src.ledgerlink.accounting.remote.oauth import OAuthProvider
from src.ledgerlink.accounting.retry import RetryExecutor
from src.ledgerlink.accounting.schemas import (
    ConflictRecord,
    ConflictStatus,
    ConnectionRecord,
    ConnectionSettings,
    EntityLinkage,
    EntityType,
    LocalEntity,
    RemoteRecord,
    SyncStateSnapshot,
    TokenGrant,
)
from src.ledgerlink.accounting.service import AccountingSyncService
from src.ledgerlink.accounting.stores import (
    ConflictStore,
    ConnectionStore,
    EntityStore,
    OAuthStateStore,
    SyncStateStore,
)

TENANT = "tenant-abc"
T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


# ── Clock ──────────────────────────────────────────────────────────────────


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


async def no_sleep(seconds: float) -> None:
    return None


class RecordingSleep:
    """Async sleep stand-in that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


# ── In-memory stores ───────────────────────────────────────────────────────


class InMemoryConnectionStore(ConnectionStore):
    def __init__(self) -> None:
        self.records: dict[str, ConnectionRecord] = {}
        self.saves = 0

    async def get(self, tenant_id: str) -> ConnectionRecord | None:
        return self.records.get(tenant_id)

    async def save(self, record: ConnectionRecord) -> None:
        self.saves += 1
        self.records[record.tenant_id] = record

    async def delete(self, tenant_id: str) -> bool:
        return self.records.pop(tenant_id, None) is not None

    async def list_auto_sync(self) -> list[ConnectionRecord]:
        return [r for r in self.records.values() if r.settings.auto_sync]


class InMemoryEntityStore(EntityStore):
    def __init__(self, clock: FakeClock | None = None) -> None:
        self.entities: dict[str, LocalEntity] = {}
        self._clock = clock or FakeClock()

    def _check_unique(self, entity: LocalEntity) -> None:
        remote_id = entity.linkage.remote_id
        if remote_id is None:
            return
        for other in self.entities.values():
            if (
                other.id != entity.id
                and other.tenant_id == entity.tenant_id
                and other.entity_type == entity.entity_type
                and other.linkage.remote_id == remote_id
            ):
                raise DuplicateLinkageError(entity.entity_type.value, remote_id)

    def add_local(
        self, entity_type: EntityType, data: dict[str, Any], tenant_id: str = TENANT,
        linkage: EntityLinkage | None = None, updated_at: datetime | None = None,
    ) -> LocalEntity:
        """Seed an entity as if a user had created it locally."""
        now = updated_at or self._clock()
        entity = LocalEntity(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            entity_type=entity_type,
            data=data,
            linkage=linkage or EntityLinkage(),
            created_at=now,
            updated_at=now,
        )
        self._check_unique(entity)
        self.entities[entity.id] = entity
        return entity

    def of_type(self, entity_type: EntityType, tenant_id: str = TENANT) -> list[LocalEntity]:
        return [
            e for e in self.entities.values()
            if e.tenant_id == tenant_id and e.entity_type == entity_type
        ]

    async def get(self, tenant_id: str, entity_type: EntityType, entity_id: str) -> LocalEntity | None:
        entity = self.entities.get(entity_id)
        if entity is None or entity.tenant_id != tenant_id or entity.entity_type != entity_type:
            return None
        return entity

    async def get_by_remote_id(
        self, tenant_id: str, entity_type: EntityType, remote_id: str
    ) -> LocalEntity | None:
        for entity in self.of_type(entity_type, tenant_id):
            if entity.linkage.remote_id == remote_id:
                return entity
        return None

    async def list_unlinked(self, tenant_id: str, entity_type: EntityType) -> list[LocalEntity]:
        return [e for e in self.of_type(entity_type, tenant_id) if e.linkage.remote_id is None]

    async def list_links(self, tenant_id: str, entity_type: EntityType) -> dict[str, str]:
        return {
            e.linkage.remote_id: e.id
            for e in self.of_type(entity_type, tenant_id)
            if e.linkage.remote_id is not None
        }

    async def create(
        self, tenant_id: str, entity_type: EntityType, data: dict[str, Any],
        linkage: EntityLinkage, updated_at: datetime,
    ) -> LocalEntity:
        entity = LocalEntity(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            entity_type=entity_type,
            data=data,
            linkage=linkage,
            created_at=self._clock(),
            updated_at=updated_at,
        )
        self._check_unique(entity)
        self.entities[entity.id] = entity
        return entity

    async def update(
        self, tenant_id: str, entity_type: EntityType, entity_id: str, data: dict[str, Any],
        linkage: EntityLinkage, updated_at: datetime,
    ) -> LocalEntity:
        current = await self.get(tenant_id, entity_type, entity_id)
        if current is None:
            raise LookupError(entity_id)
        updated = current.model_copy(update={"data": data, "linkage": linkage, "updated_at": updated_at})
        self._check_unique(updated)
        self.entities[entity_id] = updated
        return updated

    async def set_linkage(
        self, tenant_id: str, entity_type: EntityType, entity_id: str, linkage: EntityLinkage
    ) -> LocalEntity:
        current = await self.get(tenant_id, entity_type, entity_id)
        if current is None:
            raise LookupError(entity_id)
        updated = current.model_copy(update={"linkage": linkage})
        self._check_unique(updated)
        self.entities[entity_id] = updated
        return updated


class InMemoryConflictStore(ConflictStore):
    def __init__(self) -> None:
        self.conflicts: dict[str, ConflictRecord] = {}

    async def get(self, tenant_id: str, conflict_id: str) -> ConflictRecord | None:
        conflict = self.conflicts.get(conflict_id)
        return conflict if conflict is not None and conflict.tenant_id == tenant_id else None

    async def find_pending(
        self, tenant_id: str, entity_type: EntityType, local_entity_id: str
    ) -> ConflictRecord | None:
        for conflict in self.conflicts.values():
            if (
                conflict.tenant_id == tenant_id
                and conflict.entity_type == entity_type
                and conflict.local_entity_id == local_entity_id
                and conflict.status == ConflictStatus.PENDING
            ):
                return conflict
        return None

    async def save(self, conflict: ConflictRecord) -> None:
        self.conflicts[conflict.id] = conflict

    async def list_conflicts(self, tenant_id: str, status: ConflictStatus | None = None) -> list[ConflictRecord]:
        return [
            c for c in self.conflicts.values()
            if c.tenant_id == tenant_id and (status is None or c.status == status)
        ]

    async def count_pending(self, tenant_id: str) -> int:
        return len(await self.list_conflicts(tenant_id, ConflictStatus.PENDING))


class InMemorySyncStateStore(SyncStateStore):
    def __init__(self) -> None:
        self.states: dict[tuple[str, EntityType], SyncStateSnapshot] = {}

    async def get(self, tenant_id: str, entity_type: EntityType) -> SyncStateSnapshot | None:
        return self.states.get((tenant_id, entity_type))

    async def list_states(self, tenant_id: str) -> list[SyncStateSnapshot]:
        return [s for (t, _), s in self.states.items() if t == tenant_id]

    async def save(self, snapshot: SyncStateSnapshot) -> None:
        self.states[(snapshot.tenant_id, snapshot.entity_type)] = snapshot


class InMemoryOAuthStateStore(OAuthStateStore):
    def __init__(self) -> None:
        self.states: dict[str, str] = {}

    async def put(self, state: str, tenant_id: str, ttl_seconds: int) -> None:
        self.states[state] = tenant_id

    async def pop(self, state: str) -> str | None:
        return self.states.pop(state, None)


# ── Remote fakes ───────────────────────────────────────────────────────────


class FakeRemoteClient(RemoteClient):
    """In-memory remote accounting service.

    Failures are injected per method with fail(method, status_code, times).
    Creates with a repeated idempotency key return the original record.
    list_page filters on whole-second modification times, inclusively, as
    QuickBooks does.
    """

    def __init__(self, clock: FakeClock | None = None) -> None:
        self._clock = clock or FakeClock()
        self.records: dict[EntityType, dict[str, RemoteRecord]] = {}
        self.calls: list[tuple[str, Any]] = []
        self.created_by_key: dict[str, RemoteRecord] = {}
        self.fail_create_for: set[str] = set()
        self._failures: dict[str, list[int | None]] = {}
        self._next_id = 100

    def seed(self, entity_type: EntityType, fields: dict[str, Any], record_id: str | None = None,
             revision_token: str = "0", last_modified_at: datetime | None = None) -> RemoteRecord:
        if record_id is None:
            self._next_id += 1
            record_id = str(self._next_id)
        record = RemoteRecord(
            id=record_id,
            revision_token=revision_token,
            last_modified_at=last_modified_at or self._clock(),
            fields={"Id": record_id, **fields},
        )
        self.records.setdefault(entity_type, {})[record_id] = record
        return record

    def fail(self, method: str, status_code: int | None, times: int = 1) -> None:
        self._failures.setdefault(method, []).extend([status_code] * times)

    def _maybe_fail(self, method: str) -> None:
        queue = self._failures.get(method)
        if queue:
            status_code = queue.pop(0)
            raise RemoteAPIError(f"injected {method} failure", status_code=status_code)

    def count(self, method: str) -> int:
        return sum(1 for name, _ in self.calls if name == method)

    async def list_page(
        self, entity_type: EntityType, start_position: int, max_results: int,
        modified_since: datetime | None = None,
    ) -> list[RemoteRecord]:
        self.calls.append(("list_page", (entity_type, start_position, max_results, modified_since)))
        self._maybe_fail("list_page")
        records = [
            r for r in self.records.get(entity_type, {}).values()
            if modified_since is None or r.last_modified_at >= modified_since.replace(microsecond=0)
        ]
        return records[start_position - 1:start_position - 1 + max_results]

    async def create(self, entity_type: EntityType, fields: dict[str, Any], idempotency_key: str) -> RemoteRecord:
        self.calls.append(("create", (entity_type, fields, idempotency_key)))
        self._maybe_fail("create")
        name = fields.get("DisplayName") or fields.get("Name")
        if name in self.fail_create_for:
            raise RemoteAPIError(f"Duplicate Name Exists Error: {name}", status_code=400)
        if idempotency_key in self.created_by_key:
            return self.created_by_key[idempotency_key]
        record = self.seed(entity_type, fields)
        self.created_by_key[idempotency_key] = record
        return record

    async def update(
        self, entity_type: EntityType, remote_id: str, revision_token: str, fields: dict[str, Any]
    ) -> RemoteRecord:
        self.calls.append(("update", (entity_type, remote_id, revision_token, fields)))
        self._maybe_fail("update")
        current = self.records.get(entity_type, {}).get(remote_id)
        if current is None:
            raise RemoteAPIError("Object Not Found", status_code=404)
        if current.revision_token != revision_token:
            raise RemoteAPIError("Stale Object Error", status_code=400)
        return self.seed(
            entity_type, {**current.fields, **fields}, record_id=remote_id,
            revision_token=str(int(revision_token) + 1),
        )

    async def get_company_info(self) -> dict[str, Any]:
        self.calls.append(("get_company_info", None))
        self._maybe_fail("get_company_info")
        return {"CompanyName": "Acme Books LLC"}


class FakeOAuthProvider(OAuthProvider):
    def __init__(self) -> None:
        self.refresh_calls: list[str] = []
        self.exchanged: list[str] = []
        self.revoked: list[str] = []
        self.refresh_error: Exception | None = None
        self.exchange_error: Exception | None = None
        self.revoke_error: Exception | None = None

    def authorization_url(self, state: str) -> str:
        return f"https://appcenter.intuit.com/connect/oauth2?state={state}"

    async def exchange_code(self, code: str) -> TokenGrant:
        self.exchanged.append(code)
        if self.exchange_error is not None:
            raise self.exchange_error
        return TokenGrant(
            access_token="access-0", refresh_token="refresh-0",
            expires_in=3600, refresh_expires_in=8_726_400,
        )

    async def refresh(self, refresh_token: str) -> TokenGrant:
        self.refresh_calls.append(refresh_token)
        if self.refresh_error is not None:
            raise self.refresh_error
        n = len(self.refresh_calls)
        return TokenGrant(
            access_token=f"access-{n}", refresh_token=f"refresh-{n}",
            expires_in=3600, refresh_expires_in=8_726_400,
        )

    async def revoke(self, token: str) -> None:
        self.revoked.append(token)
        if self.revoke_error is not None:
            raise self.revoke_error


def make_connection(
    clock: FakeClock, tenant_id: str = TENANT, access_in: timedelta = timedelta(hours=1),
    refresh_in: timedelta = timedelta(days=100), settings: ConnectionSettings | None = None,
    access_secret: str = "access-0",
) -> ConnectionRecord:
    now = clock()
    return ConnectionRecord(
        tenant_id=tenant_id,
        remote_company_id="realm-123",
        company_name="Acme Books LLC",
        access_secret=access_secret,
        refresh_secret="refresh-0",
        access_expires_at=now + access_in,
        refresh_expires_at=now + refresh_in,
        connected_at=now,
        settings=settings or ConnectionSettings(),
    )


# ── Fixtures ───────────────────────────────────────────────────────────────


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def connections() -> InMemoryConnectionStore:
    return InMemoryConnectionStore()


@pytest.fixture
def entities(clock) -> InMemoryEntityStore:
    return InMemoryEntityStore(clock)


@pytest.fixture
def conflict_store() -> InMemoryConflictStore:
    return InMemoryConflictStore()


@pytest.fixture
def sync_states() -> InMemorySyncStateStore:
    return InMemorySyncStateStore()


@pytest.fixture
def oauth_states() -> InMemoryOAuthStateStore:
    return InMemoryOAuthStateStore()


@pytest.fixture
def remote(clock) -> FakeRemoteClient:
    return FakeRemoteClient(clock)


@pytest.fixture
def oauth() -> FakeOAuthProvider:
    return FakeOAuthProvider()


@pytest.fixture
def retry() -> RetryExecutor:
    return RetryExecutor(max_retries=3, base_delay=1.0, max_delay=10.0, sleep=no_sleep)


@pytest.fixture
def built_clients() -> list[str]:
    """Access secrets the client factory was called with, in order."""
    return []


@pytest.fixture
def credentials(connections, oauth_states, remote, retry, oauth, clock, built_clients) -> CredentialManager:
    def factory(record: ConnectionRecord) -> RemoteClient:
        built_clients.append(record.access_secret)
        return remote

    return CredentialManager(
        connections=connections,
        oauth_states=oauth_states,
        client_factory=factory,
        retry=retry,
        oauth=oauth,
        clock=clock,
    )


@pytest.fixture
def registry() -> MappingRegistry:
    return MappingRegistry.default()


@pytest.fixture
def conflicts(conflict_store, entities, registry, credentials, retry, clock) -> ConflictManager:
    return ConflictManager(
        conflicts=conflict_store,
        entities=entities,
        registry=registry,
        credentials=credentials,
        retry=retry,
        clock=clock,
    )


@pytest.fixture
def orchestrator(credentials, entities, sync_states, conflicts, registry, retry, clock) -> SyncOrchestrator:
    return SyncOrchestrator(
        credentials=credentials,
        entities=entities,
        sync_states=sync_states,
        conflicts=conflicts,
        registry=registry,
        retry=retry,
        run_guard=RunGuard(),
        page_size=2,
        clock=clock,
    )


@pytest.fixture
def service(credentials, orchestrator, conflicts, sync_states) -> AccountingSyncService:
    return AccountingSyncService(
        credentials=credentials,
        orchestrator=orchestrator,
        conflicts=conflicts,
        sync_states=sync_states,
    )


@pytest.fixture
async def connected(connections, clock) -> ConnectionRecord:
    """A tenant connected with a fresh access token."""
    record = make_connection(clock)
    await connections.save(record)
    connections.saves = 0
    return record
