"""Accounting sync persistence models -- tenant-scoped tables in the "accounting" schema.

Four SQLAlchemy models on AccountingBase:
- ConnectionModel: One remote connection per tenant (secrets Fernet-encrypted)
- SyncedEntityModel: Local entities of every synced type, with embedded linkage
- ConflictModel: Detected divergences, pending or resolved (kept for audit)
- SyncStateModel: Last sync time and result per (tenant, entity type)

Tenant isolation is by tenant_id column; uniqueness is always scoped to it.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    DateTime,
    Index,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSON, UUID
from sqlalchemy.orm import Mapped, mapped_column

from src.ledgerlink.core.database import AccountingBase


class ConnectionModel(AccountingBase):
    """A tenant's connection to the remote accounting service.

    Replaced whole on connect and on token refresh, deleted on disconnect.
    Secrets are stored as Fernet tokens, never in plaintext.
    """

    __tablename__ = "connections"
    __table_args__ = (
        UniqueConstraint("tenant_id", name="uq_connection_tenant"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    remote_company_id: Mapped[str] = mapped_column(String(100), nullable=False)
    company_name: Mapped[str | None] = mapped_column(String(300), nullable=True)
    access_secret_encrypted: Mapped[str] = mapped_column(Text, nullable=False)
    refresh_secret_encrypted: Mapped[str] = mapped_column(Text, nullable=False)
    access_expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    refresh_expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    connected_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    settings_json: Mapped[dict] = mapped_column(
        JSON, default=dict, server_default=text("'{}'::json")
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=True,
    )


class SyncedEntityModel(AccountingBase):
    """Local entity of any synced type (account, customer, invoice, ...).

    The data column holds the canonical local document produced by the
    entity mapper. remote_id is NULL until the entity is first pushed or
    when it was created locally; Postgres treats NULLs as distinct, so the
    unique constraint only binds linked rows.
    """

    __tablename__ = "synced_entities"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id",
            "entity_type",
            "remote_id",
            name="uq_entity_tenant_type_remote",
        ),
        Index("ix_entity_tenant_type", "tenant_id", "entity_type"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    data: Mapped[dict] = mapped_column(
        JSON, default=dict, server_default=text("'{}'::json")
    )
    remote_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    remote_revision_token: Mapped[str | None] = mapped_column(String(100), nullable=True)
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    # Set explicitly by writers: local edit time, or the remote modification
    # time when the row is written from a pulled record.
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )


class ConflictModel(AccountingBase):
    """Divergence between a local entity and its remote record.

    pending -> resolved is the only transition. At most one pending
    conflict exists per local entity; later divergences refresh it.
    """

    __tablename__ = "conflicts"
    __table_args__ = (
        Index("ix_conflict_tenant_status", "tenant_id", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    local_entity_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    remote_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    remote_snapshot: Mapped[dict] = mapped_column(JSON, nullable=False)
    local_snapshot: Mapped[dict] = mapped_column(
        JSON, default=dict, server_default=text("'{}'::json")
    )
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, server_default=text("'pending'")
    )
    resolution: Mapped[str | None] = mapped_column(String(20), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class SyncStateModel(AccountingBase):
    """Last completed sync per (tenant, entity type)."""

    __tablename__ = "sync_state"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id",
            "entity_type",
            name="uq_sync_state_tenant_type",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    last_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_result: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=True,
    )
