"""Accounting sync tables: connections, synced_entities, conflicts, sync_state.

Revision ID: 001_accounting_sync
Revises:
Create Date: 2026-10-18

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID, JSON

# revision identifiers, used by Alembic.
revision: str = "001_accounting_sync"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

SCHEMA = "accounting"


def _id_column() -> sa.Column:
    return sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()"))


def upgrade() -> None:
    op.execute(f"CREATE SCHEMA IF NOT EXISTS {SCHEMA}")

    op.create_table(
        "connections",
        _id_column(),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("remote_company_id", sa.String(100), nullable=False),
        sa.Column("company_name", sa.String(300), nullable=True),
        sa.Column("access_secret_encrypted", sa.Text(), nullable=False),
        sa.Column("refresh_secret_encrypted", sa.Text(), nullable=False),
        sa.Column("access_expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("refresh_expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("connected_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("settings_json", JSON(), server_default=sa.text("'{}'::json")),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.UniqueConstraint("tenant_id", name="uq_connection_tenant"),
        schema=SCHEMA,
    )

    op.create_table(
        "synced_entities",
        _id_column(),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("entity_type", sa.String(32), nullable=False),
        sa.Column("data", JSON(), server_default=sa.text("'{}'::json")),
        sa.Column("remote_id", sa.String(100), nullable=True),
        sa.Column("remote_revision_token", sa.String(100), nullable=True),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("tenant_id", "entity_type", "remote_id", name="uq_entity_tenant_type_remote"),
        schema=SCHEMA,
    )
    op.create_index(
        "ix_entity_tenant_type", "synced_entities", ["tenant_id", "entity_type"], schema=SCHEMA
    )

    op.create_table(
        "conflicts",
        _id_column(),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("entity_type", sa.String(32), nullable=False),
        sa.Column("local_entity_id", UUID(as_uuid=True), nullable=False),
        sa.Column("remote_id", sa.String(100), nullable=True),
        sa.Column("remote_snapshot", JSON(), nullable=False),
        sa.Column("local_snapshot", JSON(), server_default=sa.text("'{}'::json")),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default=sa.text("'pending'")),
        sa.Column("resolution", sa.String(20), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        schema=SCHEMA,
    )
    op.create_index(
        "ix_conflict_tenant_status", "conflicts", ["tenant_id", "status"], schema=SCHEMA
    )

    op.create_table(
        "sync_state",
        _id_column(),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("entity_type", sa.String(32), nullable=False),
        sa.Column("last_sync_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_result", JSON(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.UniqueConstraint("tenant_id", "entity_type", name="uq_sync_state_tenant_type"),
        schema=SCHEMA,
    )


def downgrade() -> None:
    op.drop_table("sync_state", schema=SCHEMA)
    op.drop_index("ix_conflict_tenant_status", table_name="conflicts", schema=SCHEMA)
    op.drop_table("conflicts", schema=SCHEMA)
    op.drop_index("ix_entity_tenant_type", table_name="synced_entities", schema=SCHEMA)
    op.drop_table("synced_entities", schema=SCHEMA)
    op.drop_table("connections", schema=SCHEMA)
