"""Async SQLAlchemy engine and session factory for the accounting schema.

Provides:
- AccountingBase: Declarative base for all sync engine tables (schema "accounting")
- get_session(): AsyncSession generator used by the repositories' session_factory
- init_db() / close_db(): lifespan hooks

Tenant isolation is enforced by tenant_id on every table and composite
unique constraints scoped to tenant_id.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator

from sqlalchemy import MetaData, text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from src.ledgerlink.config import get_settings

ACCOUNTING_SCHEMA = "accounting"

# ── Module-level engine (lazy init) ────────────────────────────────────────

_engine: AsyncEngine | None = None


def get_engine() -> AsyncEngine:
    """Get or create the async engine singleton."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_async_engine(
            settings.DATABASE_URL,
            pool_size=20,
            max_overflow=10,
            pool_pre_ping=True,
            echo=False,
        )
    return _engine


# ── Declarative Base ────────────────────────────────────────────────────────

accounting_metadata = MetaData(schema=ACCOUNTING_SCHEMA)


class AccountingBase(DeclarativeBase):
    """Base class for sync engine models (connections, entities, conflicts, sync state)."""

    metadata = accounting_metadata


# ── Session Factory ─────────────────────────────────────────────────────────


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an AsyncSession bound to the shared engine."""
    engine = get_engine()
    async with AsyncSession(engine, expire_on_commit=False) as session:
        yield session


# ── Database Initialization ─────────────────────────────────────────────────


async def init_db() -> None:
    """Create the accounting schema and tables if they don't exist."""
    # Import models so they register on the metadata
    from src.ledgerlink.accounting import models  # noqa: F401

    engine = get_engine()
    async with engine.begin() as conn:
        await conn.execute(text(f"CREATE SCHEMA IF NOT EXISTS {ACCOUNTING_SCHEMA}"))
        await conn.run_sync(AccountingBase.metadata.create_all)


async def close_db() -> None:
    """Dispose of the engine and close all connections."""
    global _engine
    if _engine:
        await _engine.dispose()
        _engine = None
