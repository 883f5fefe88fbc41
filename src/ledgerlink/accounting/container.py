"""Composition root for the accounting sync engine.

build_accounting() wires settings, persistence, Redis and the QuickBooks
adapters into an AccountingSyncService plus its AutoSyncScheduler. Used by
the FastAPI lifespan and scripts/run_sync.py.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

import redis.asyncio as aioredis
import structlog

from src.ledgerlink.accounting.conflicts import ConflictManager
from src.ledgerlink.accounting.credentials import ClientFactory, CredentialManager
from src.ledgerlink.accounting.crypto import SecretCipher
from src.ledgerlink.accounting.locks import RunGuard
from src.ledgerlink.accounting.mapping.registry import MappingRegistry
from src.ledgerlink.accounting.orchestrator import SyncOrchestrator
from src.ledgerlink.accounting.remote.adapter import RemoteClient
from src.ledgerlink.accounting.remote.oauth import IntuitOAuthProvider
from src.ledgerlink.accounting.remote.quickbooks import QuickBooksClient, base_url_for
from src.ledgerlink.accounting.repository import (
    ConflictRepository,
    ConnectionRepository,
    EntityRepository,
    RedisOAuthStateStore,
    SessionFactory,
    SyncStateRepository,
)
from src.ledgerlink.accounting.retry import RetryExecutor
from src.ledgerlink.accounting.scheduler import AutoSyncScheduler
from src.ledgerlink.accounting.schemas import ConnectionRecord
from src.ledgerlink.accounting.service import AccountingSyncService
from src.ledgerlink.config import Settings

logger = structlog.get_logger(__name__)


@dataclass
class AccountingComponents:
    service: AccountingSyncService
    scheduler: AutoSyncScheduler


def quickbooks_client_factory(settings: Settings) -> ClientFactory:
    """Build QuickBooksClients from a connection's current access secret."""
    base_url = base_url_for(settings.QUICKBOOKS_ENVIRONMENT)

    def factory(record: ConnectionRecord) -> RemoteClient:
        return QuickBooksClient(
            access_token=record.access_secret,
            realm_id=record.remote_company_id,
            base_url=base_url,
            minor_version=settings.QUICKBOOKS_MINOR_VERSION,
            timeout=settings.QUICKBOOKS_TIMEOUT,
        )

    return factory


def build_accounting(
    settings: Settings,
    session_factory: SessionFactory,
    redis_client: aioredis.Redis,
) -> AccountingComponents:
    """Wire the sync engine.

    Raises:
        ConfigurationError: SECRETS_ENCRYPTION_KEY missing or invalid.
    """
    cipher = SecretCipher(settings.SECRETS_ENCRYPTION_KEY)
    connections = ConnectionRepository(session_factory, cipher)
    entities = EntityRepository(session_factory)
    conflict_store = ConflictRepository(session_factory)
    sync_states = SyncStateRepository(session_factory)
    retry = RetryExecutor.from_settings(settings)
    registry = MappingRegistry.default()

    oauth = None
    if settings.quickbooks_configured:
        oauth = IntuitOAuthProvider(
            client_id=settings.QUICKBOOKS_CLIENT_ID,
            client_secret=settings.QUICKBOOKS_CLIENT_SECRET,
            redirect_uri=settings.QUICKBOOKS_REDIRECT_URI,
            scopes=settings.quickbooks_scopes,
            timeout=settings.QUICKBOOKS_TIMEOUT,
        )
    else:
        logger.warning("accounting.oauth_not_configured", hint="set QUICKBOOKS_CLIENT_ID/SECRET")

    credentials = CredentialManager(
        connections=connections,
        oauth_states=RedisOAuthStateStore(redis_client),
        client_factory=quickbooks_client_factory(settings),
        retry=retry,
        oauth=oauth,
        refresh_window=timedelta(seconds=settings.TOKEN_REFRESH_WINDOW_SECONDS),
        state_ttl_seconds=settings.OAUTH_STATE_TTL_SECONDS,
    )
    conflicts = ConflictManager(
        conflicts=conflict_store,
        entities=entities,
        registry=registry,
        credentials=credentials,
        retry=retry,
    )
    run_guard = RunGuard(
        redis_client=redis_client if settings.SYNC_REDIS_LOCKS else None,
        ttl_seconds=settings.SYNC_LOCK_TTL_SECONDS,
    )
    orchestrator = SyncOrchestrator(
        credentials=credentials,
        entities=entities,
        sync_states=sync_states,
        conflicts=conflicts,
        registry=registry,
        retry=retry,
        run_guard=run_guard,
        page_size=settings.SYNC_PAGE_SIZE,
        pull_overlap=timedelta(seconds=settings.SYNC_PULL_OVERLAP_SECONDS),
    )
    service = AccountingSyncService(
        credentials=credentials,
        orchestrator=orchestrator,
        conflicts=conflicts,
        sync_states=sync_states,
    )
    scheduler = AutoSyncScheduler(
        service=service,
        connections=connections,
        sync_states=sync_states,
        check_minutes=settings.AUTO_SYNC_CHECK_MINUTES,
    )
    return AccountingComponents(service=service, scheduler=scheduler)
