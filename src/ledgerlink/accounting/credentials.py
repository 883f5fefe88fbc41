"""Credential manager -- OAuth connection lifecycle for each tenant.

Owns the ConnectionRecord: nothing else writes it. Responsibilities:
- connect / handle_auth_callback: authorization-code flow with one-time state
- get_valid_client: remote client with an access token valid for at least
  the safety window, refreshing first when needed
- refresh: serialized per tenant; exactly one refresh per expiry
- disconnect: best-effort revoke, then delete
- get_connection_status / update_settings

Every write replaces the record whole and happens under the tenant's
refresh lock, so a settings update can never clobber fresh tokens.
"""

from __future__ import annotations

import secrets
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

import structlog

from src.ledgerlink.accounting.errors import (
    AccountingSyncError,
    AuthError,
    ConfigurationError,
    InvalidOAuthStateError,
    NotConnectedError,
    RefreshFailedError,
    ValidationError,
)
from src.ledgerlink.accounting.locks import KeyedLocks
from src.ledgerlink.accounting.remote.adapter import RemoteClient
from src.ledgerlink.accounting.remote.oauth import OAuthProvider
from src.ledgerlink.accounting.retry import RetryExecutor
from src.ledgerlink.accounting.schemas import (
    ConnectionRecord,
    ConnectionSettings,
    ConnectionStatus,
    SettingsUpdate,
    TokenGrant,
    TokenState,
)
from src.ledgerlink.accounting.stores import ConnectionStore, OAuthStateStore
from src.ledgerlink.core.monitoring import token_refreshes_total

logger = structlog.get_logger(__name__)

Clock = Callable[[], datetime]
ClientFactory = Callable[[ConnectionRecord], RemoteClient]

DEFAULT_REFRESH_WINDOW = timedelta(minutes=5)
DEFAULT_STATE_TTL_SECONDS = 15 * 60


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def token_state(record: ConnectionRecord, now: datetime, window: timedelta = DEFAULT_REFRESH_WINDOW) -> TokenState:
    """expired: refresh token dead; needs_refresh: access token inside the window."""
    if record.refresh_expires_at <= now:
        return TokenState.EXPIRED
    if record.access_expires_at - now <= window:
        return TokenState.NEEDS_REFRESH
    return TokenState.ACTIVE


class CredentialManager:
    """OAuth connection lifecycle and token refresh.

    Args:
        connections: Store for ConnectionRecord.
        oauth_states: One-time state token store.
        client_factory: Builds a RemoteClient from a ConnectionRecord.
        retry: RetryExecutor for token endpoint and company info calls.
        oauth: OAuth provider; None when client credentials are not configured.
        refresh_window: Refresh when the access token expires within this window.
        state_ttl_seconds: Lifetime of an OAuth state token.
        clock: Returns the current UTC time (injectable for tests).
    """

    def __init__(
        self,
        connections: ConnectionStore,
        oauth_states: OAuthStateStore,
        client_factory: ClientFactory,
        retry: RetryExecutor,
        oauth: OAuthProvider | None = None,
        refresh_window: timedelta = DEFAULT_REFRESH_WINDOW,
        state_ttl_seconds: int = DEFAULT_STATE_TTL_SECONDS,
        clock: Clock = utc_now,
    ) -> None:
        self._connections = connections
        self._oauth_states = oauth_states
        self._client_factory = client_factory
        self._retry = retry
        self._oauth = oauth
        self._refresh_window = refresh_window
        self._state_ttl_seconds = state_ttl_seconds
        self._clock = clock
        self._locks = KeyedLocks()

    def _require_oauth(self) -> OAuthProvider:
        if self._oauth is None:
            raise ConfigurationError("Accounting OAuth client credentials are not configured")
        return self._oauth

    async def _require(self, tenant_id: str) -> ConnectionRecord:
        record = await self._connections.get(tenant_id)
        if record is None:
            raise NotConnectedError(tenant_id)
        return record

    def _needs_refresh(self, record: ConnectionRecord) -> bool:
        return record.access_expires_at - self._clock() <= self._refresh_window

    def _apply_grant(self, record: ConnectionRecord, grant: TokenGrant) -> ConnectionRecord:
        now = self._clock()
        return record.model_copy(update={
            "access_secret": grant.access_token,
            "refresh_secret": grant.refresh_token,
            "access_expires_at": now + timedelta(seconds=grant.expires_in),
            "refresh_expires_at": now + timedelta(seconds=grant.refresh_expires_in),
        })

    # ── Authorization flow ──────────────────────────────────────────────────

    async def connect(self, tenant_id: str) -> str:
        """Start the authorization flow. Returns the provider authorize URL."""
        oauth = self._require_oauth()
        state = secrets.token_hex(32)
        await self._oauth_states.put(state, tenant_id, self._state_ttl_seconds)
        logger.info("accounting.connect_started", tenant_id=tenant_id)
        return oauth.authorization_url(state)

    async def handle_auth_callback(self, code: str, remote_company_id: str, state: str) -> ConnectionRecord:
        """Complete the authorization flow and persist a new connection.

        Raises:
            InvalidOAuthStateError: Unknown, expired or reused state.
            AuthError: The provider rejected the authorization code.
        """
        oauth = self._require_oauth()
        tenant_id = await self._oauth_states.pop(state)
        if tenant_id is None:
            logger.warning("accounting.invalid_oauth_state")
            raise InvalidOAuthStateError("Invalid or expired OAuth state")

        try:
            grant = await self._retry.execute(lambda: oauth.exchange_code(code), description="oauth:exchange")
        except ValidationError as exc:
            raise AuthError(f"Authorization code rejected: {exc}") from exc

        now = self._clock()
        record = ConnectionRecord(
            tenant_id=tenant_id,
            remote_company_id=remote_company_id,
            access_secret=grant.access_token,
            refresh_secret=grant.refresh_token,
            access_expires_at=now + timedelta(seconds=grant.expires_in),
            refresh_expires_at=now + timedelta(seconds=grant.refresh_expires_in),
            connected_at=now,
            settings=ConnectionSettings(),
        )

        try:
            client = self._client_factory(record)
            info = await self._retry.execute(client.get_company_info, description="company_info")
            record = record.model_copy(update={"company_name": info.get("CompanyName")})
        except AccountingSyncError as exc:
            logger.warning(
                "accounting.company_info_failed",
                tenant_id=tenant_id,
                remote_company_id=remote_company_id,
                error=str(exc),
            )

        async with self._locks.get(tenant_id):
            await self._connections.save(record)
        logger.info(
            "accounting.connected",
            tenant_id=tenant_id,
            remote_company_id=remote_company_id,
            company_name=record.company_name,
        )
        return record

    # ── Tokens ──────────────────────────────────────────────────────────────

    async def get_valid_client(self, tenant_id: str) -> RemoteClient:
        """Client whose access token outlives the safety window.

        Raises:
            NotConnectedError: No connection for the tenant.
            RefreshFailedError: Refresh was needed and failed.
        """
        record = await self._require(tenant_id)
        if self._needs_refresh(record):
            record = await self.refresh(tenant_id, seen_access_secret=record.access_secret)
        return self._client_factory(record)

    async def refresh(self, tenant_id: str, seen_access_secret: str | None = None) -> ConnectionRecord:
        """Refresh the tenant's tokens.

        Callers that saw a specific access secret pass it; if another caller
        already replaced it while this one waited on the lock, the fresh
        record is returned without a second refresh.

        Raises:
            RefreshFailedError: Refresh token expired or rejected (reconnect required).
            TransientError: Token endpoint unavailable after retries.
        """
        oauth = self._require_oauth()
        async with self._locks.get(tenant_id):
            record = await self._require(tenant_id)
            if seen_access_secret is not None and record.access_secret != seen_access_secret:
                logger.debug("accounting.refresh_skipped", tenant_id=tenant_id)
                return record

            if record.refresh_expires_at <= self._clock():
                token_refreshes_total.labels(status="expired").inc()
                logger.error("accounting.refresh_token_expired", tenant_id=tenant_id)
                raise RefreshFailedError("Refresh token expired; reconnect required")

            try:
                grant = await self._retry.execute(
                    lambda: oauth.refresh(record.refresh_secret), description="oauth:refresh"
                )
            except (AuthError, ValidationError) as exc:
                token_refreshes_total.labels(status="failed").inc()
                logger.error("accounting.refresh_failed", tenant_id=tenant_id, error=str(exc))
                raise RefreshFailedError(f"Token refresh rejected: {exc}") from exc
            except AccountingSyncError:
                token_refreshes_total.labels(status="error").inc()
                raise

            refreshed = self._apply_grant(record, grant)
            await self._connections.save(refreshed)
            token_refreshes_total.labels(status="success").inc()
            logger.info(
                "accounting.token_refreshed",
                tenant_id=tenant_id,
                access_expires_at=refreshed.access_expires_at.isoformat(),
            )
            return refreshed

    # ── Lifecycle ───────────────────────────────────────────────────────────

    async def disconnect(self, tenant_id: str) -> None:
        """Revoke (best effort) and delete the connection.

        Raises:
            NotConnectedError: No connection for the tenant.
        """
        record = await self._require(tenant_id)
        if self._oauth is not None:
            try:
                await self._oauth.revoke(record.refresh_secret)
            except Exception as exc:
                logger.warning("accounting.revoke_failed", tenant_id=tenant_id, error=str(exc))

        async with self._locks.get(tenant_id):
            await self._connections.delete(tenant_id)
        logger.info("accounting.disconnected", tenant_id=tenant_id)

    async def get_connection(self, tenant_id: str) -> ConnectionRecord | None:
        return await self._connections.get(tenant_id)

    async def get_connection_status(self, tenant_id: str) -> ConnectionStatus:
        record = await self._connections.get(tenant_id)
        if record is None:
            return ConnectionStatus(connected=False)
        return ConnectionStatus(
            connected=True,
            token_state=token_state(record, self._clock(), self._refresh_window),
            remote_company_id=record.remote_company_id,
            company_name=record.company_name,
            connected_at=record.connected_at,
            access_expires_at=record.access_expires_at,
            refresh_expires_at=record.refresh_expires_at,
            settings=record.settings,
        )

    async def update_settings(self, tenant_id: str, patch: SettingsUpdate) -> ConnectionSettings:
        async with self._locks.get(tenant_id):
            record = await self._require(tenant_id)
            settings = record.settings.model_copy(update=patch.model_dump(exclude_none=True))
            await self._connections.save(record.model_copy(update={"settings": settings}))
        logger.info("accounting.settings_updated", tenant_id=tenant_id, **settings.model_dump(mode="json"))
        return settings
