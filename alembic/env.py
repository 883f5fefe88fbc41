"""Alembic environment for the accounting schema.

  alembic upgrade head

The version table lives in the accounting schema next to the sync tables.
Migrations run over a synchronous psycopg connection; the application
itself uses asyncpg.
"""

from logging.config import fileConfig

from alembic import context
from sqlalchemy import create_engine, pool, text

from src.ledgerlink.accounting import models  # noqa: F401
from src.ledgerlink.config import get_settings
from src.ledgerlink.core.database import ACCOUNTING_SCHEMA, AccountingBase

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = AccountingBase.metadata


def _sync_url() -> str:
    return get_settings().DATABASE_URL.replace("+asyncpg", "+psycopg")


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode."""
    context.configure(
        url=_sync_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        version_table_schema=ACCOUNTING_SCHEMA,
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode."""
    connectable = create_engine(_sync_url(), poolclass=pool.NullPool)

    with connectable.connect() as connection:
        # The version table goes in the schema, so it must exist first
        connection.execute(text(f'CREATE SCHEMA IF NOT EXISTS "{ACCOUNTING_SCHEMA}"'))
        connection.commit()

        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            version_table_schema=ACCOUNTING_SCHEMA,
            include_schemas=True,
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
