"""Pydantic schemas for the accounting sync engine.

Defines all structured types exchanged between the sync components:
- Enums: EntityType, SyncDirection, ConflictPolicy, ConflictStatus, TokenState,
  SyncInterval, RunState
- Connection: ConnectionSettings, ConnectionRecord, TokenGrant, ConnectionStatus
- Records: EntityLinkage, LocalEntity, RemoteRecord
- Results: SyncItemError, ConflictRef, SyncResult, SyncReport, SyncStateSnapshot
- Conflicts: ConflictRecord
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


# ── Enums ───────────────────────────────────────────────────────────────────


class EntityType(str, Enum):
    """Closed set of entity types kept in sync with the remote accounting service."""

    ACCOUNT = "account"
    CUSTOMER = "customer"
    VENDOR = "vendor"
    ITEM = "item"
    INVOICE = "invoice"
    PAYMENT = "payment"
    BILL = "bill"


# Referenced types come first so foreign keys resolve within a full run.
SYNC_ORDER: tuple[EntityType, ...] = (
    EntityType.ACCOUNT,
    EntityType.CUSTOMER,
    EntityType.VENDOR,
    EntityType.ITEM,
    EntityType.INVOICE,
    EntityType.PAYMENT,
    EntityType.BILL,
)


class SyncDirection(str, Enum):
    """Direction of a sync run."""

    FROM_REMOTE = "from_remote"  # remote -> local (pull)
    TO_REMOTE = "to_remote"  # local -> remote (push, creation only)
    BOTH = "both"  # pull, then push


class ConflictPolicy(str, Enum):
    """Whole-record conflict resolution strategies."""

    REMOTE_WINS = "remote_wins"
    LOCAL_WINS = "local_wins"
    NEWEST_WINS = "newest_wins"
    MANUAL = "manual"


class ConflictStatus(str, Enum):
    PENDING = "pending"
    RESOLVED = "resolved"


class TokenState(str, Enum):
    ACTIVE = "active"
    NEEDS_REFRESH = "needs_refresh"
    EXPIRED = "expired"


class SyncInterval(str, Enum):
    """How often the scheduler runs a tenant's auto-sync."""

    MANUAL = "manual"
    HOURLY = "hourly"
    DAILY = "daily"


class RunState(str, Enum):
    """Orchestrator run states.

    fetching -> mapping -> reconciling -> writing -> completed
    failed is reachable from any state on auth/configuration errors only.
    """

    PENDING = "pending"
    FETCHING = "fetching"
    MAPPING = "mapping"
    RECONCILING = "reconciling"
    WRITING = "writing"
    COMPLETED = "completed"
    FAILED = "failed"


# ── Connection ──────────────────────────────────────────────────────────────


class ConnectionSettings(BaseModel):
    """Per-tenant integration settings."""

    auto_sync: bool = False
    conflict_policy: ConflictPolicy = ConflictPolicy.MANUAL
    sync_interval: SyncInterval = SyncInterval.MANUAL


class SettingsUpdate(BaseModel):
    """Partial update for ConnectionSettings (all fields optional)."""

    auto_sync: bool | None = None
    conflict_policy: ConflictPolicy | None = None
    sync_interval: SyncInterval | None = None


class ConnectionRecord(BaseModel):
    """One tenant's connection to the remote accounting service.

    Secrets are plaintext in memory only; the repository encrypts them at rest.
    """

    tenant_id: str
    remote_company_id: str
    company_name: str | None = None
    access_secret: str = Field(repr=False)
    refresh_secret: str = Field(repr=False)
    access_expires_at: datetime
    refresh_expires_at: datetime
    connected_at: datetime
    settings: ConnectionSettings = Field(default_factory=ConnectionSettings)


class TokenGrant(BaseModel):
    """Token endpoint response (authorization code exchange or refresh)."""

    access_token: str = Field(repr=False)
    refresh_token: str = Field(repr=False)
    expires_in: int
    refresh_expires_in: int


class ConnectionStatus(BaseModel):
    """Connection status for display and health checks."""

    connected: bool
    token_state: TokenState | None = None
    remote_company_id: str | None = None
    company_name: str | None = None
    connected_at: datetime | None = None
    access_expires_at: datetime | None = None
    refresh_expires_at: datetime | None = None
    last_sync_at: dict[EntityType, datetime] = Field(default_factory=dict)
    settings: ConnectionSettings | None = None
    pending_conflicts: int = 0


# ── Records ─────────────────────────────────────────────────────────────────


class EntityLinkage(BaseModel):
    """Correspondence between a local entity and its remote record.

    remote_id None means the entity has never been pushed.
    """

    remote_id: str | None = None
    remote_revision_token: str | None = None
    last_synced_at: datetime | None = None


class LocalEntity(BaseModel):
    """A locally stored entity of any synced type."""

    id: str
    tenant_id: str
    entity_type: EntityType
    data: dict[str, Any] = Field(default_factory=dict)
    linkage: EntityLinkage = Field(default_factory=EntityLinkage)
    created_at: datetime
    updated_at: datetime


class RemoteRecord(BaseModel):
    """A record as returned by the remote accounting service."""

    id: str
    revision_token: str
    last_modified_at: datetime
    fields: dict[str, Any] = Field(default_factory=dict)


# ── Results ─────────────────────────────────────────────────────────────────


class SyncItemError(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: EntityType
    id: str
    message: str


class ConflictRef(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: EntityType
    id: str
    conflict_id: str | None = None


class SyncResult(BaseModel):
    """Immutable accumulator for one sync run.

    Each processed record folds its outcome into a new SyncResult; nothing
    mutates a shared instance.
    """

    model_config = ConfigDict(frozen=True)

    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: tuple[SyncItemError, ...] = ()
    conflicts: tuple[ConflictRef, ...] = ()

    def with_created(self) -> SyncResult:
        return self.model_copy(update={"created": self.created + 1})

    def with_updated(self) -> SyncResult:
        return self.model_copy(update={"updated": self.updated + 1})

    def with_conflict(self, ref: ConflictRef) -> SyncResult:
        """A conflicting record is skipped and referenced."""
        return self.model_copy(
            update={"skipped": self.skipped + 1, "conflicts": (*self.conflicts, ref)}
        )

    def with_error(self, error: SyncItemError) -> SyncResult:
        return self.model_copy(update={"errors": (*self.errors, error)})

    def merge(self, other: SyncResult) -> SyncResult:
        return SyncResult(
            created=self.created + other.created,
            updated=self.updated + other.updated,
            skipped=self.skipped + other.skipped,
            errors=(*self.errors, *other.errors),
            conflicts=(*self.conflicts, *other.conflicts),
        )


class SyncReport(BaseModel):
    """Outcome of a multi-entity-type run (sync_all)."""

    results: dict[EntityType, SyncResult] = Field(default_factory=dict)
    cancelled: bool = False

    @property
    def total(self) -> SyncResult:
        total = SyncResult()
        for result in self.results.values():
            total = total.merge(result)
        return total


class SyncStateSnapshot(BaseModel):
    """Persisted per (tenant, entity type): last completed run."""

    tenant_id: str
    entity_type: EntityType
    last_sync_at: datetime | None = None
    last_result: SyncResult | None = None


# ── Conflicts ───────────────────────────────────────────────────────────────


class ConflictRecord(BaseModel):
    """A detected divergence between a local entity and its remote record."""

    id: str
    tenant_id: str
    entity_type: EntityType
    local_entity_id: str
    remote_id: str | None = None
    remote_snapshot: RemoteRecord
    local_snapshot: dict[str, Any] = Field(default_factory=dict)
    reason: str
    status: ConflictStatus = ConflictStatus.PENDING
    resolution: ConflictPolicy | None = None
    created_at: datetime
    resolved_at: datetime | None = None
