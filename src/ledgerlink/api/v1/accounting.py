"""REST API endpoints for the accounting sync engine.

Connection lifecycle (connect, OAuth callback, disconnect, status), sync
runs (one entity type or all), sync status and errors, conflict listing
and resolution, and settings. Every endpoint except the OAuth callback is
tenant-scoped via TenantAuthMiddleware; the callback resolves the tenant
from the one-time state token.

Domain errors are translated to HTTP by accounting_error_handler, which
main.py registers on the app.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

import structlog
from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from src.ledgerlink.accounting.errors import (
    AccountingSyncError,
    AlreadyResolvedError,
    AuthError,
    ConfigurationError,
    ConflictNotFoundError,
    InvalidOAuthStateError,
    NotConnectedError,
    SyncAlreadyInProgressError,
    TransientError,
    ValidationError,
)
from src.ledgerlink.accounting.schemas import (
    ConflictPolicy,
    ConflictRecord,
    ConflictStatus,
    ConnectionSettings,
    ConnectionStatus,
    EntityType,
    SettingsUpdate,
    SyncDirection,
    SyncItemError,
    SyncReport,
    SyncResult,
)
from src.ledgerlink.accounting.service import AccountingSyncService
from src.ledgerlink.api.deps import get_accounting_service, get_tenant
from src.ledgerlink.core.tenant import TenantContext

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/v1/accounting", tags=["accounting"])


# ── Error Translation ────────────────────────────────────────────────────────


def status_for_error(exc: AccountingSyncError) -> int:
    """HTTP status for a domain error. Subclasses are checked before their bases."""
    if isinstance(exc, NotConnectedError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, ConfigurationError):
        return status.HTTP_503_SERVICE_UNAVAILABLE
    if isinstance(exc, InvalidOAuthStateError):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(exc, AuthError):
        return status.HTTP_401_UNAUTHORIZED
    if isinstance(exc, ValidationError):
        return status.HTTP_422_UNPROCESSABLE_ENTITY
    if isinstance(exc, TransientError):
        return status.HTTP_502_BAD_GATEWAY
    if isinstance(exc, ConflictNotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, (AlreadyResolvedError, SyncAlreadyInProgressError)):
        return status.HTTP_409_CONFLICT
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def accounting_error_handler(request: Request, exc: AccountingSyncError) -> JSONResponse:
    status_code = status_for_error(exc)
    log_method = logger.error if status_code >= 500 else logger.warning
    log_method(
        "accounting.request_failed",
        path=request.url.path,
        status_code=status_code,
        error_type=type(exc).__name__,
        error=str(exc),
    )
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "error": type(exc).__name__},
    )


# ── Request / Response Schemas ───────────────────────────────────────────────


class ConnectResponse(BaseModel):
    authorization_url: str


class CallbackResponse(BaseModel):
    tenant_id: str
    remote_company_id: str
    company_name: str | None = None
    connected_at: datetime


class SyncAllRequest(BaseModel):
    direction: SyncDirection = SyncDirection.BOTH
    entity_types: list[EntityType] | None = None


class ResolveConflictRequest(BaseModel):
    """policy omitted -> the tenant's configured conflict policy."""

    policy: ConflictPolicy | None = None


class SyncErrorsResponse(BaseModel):
    errors: list[SyncItemError] = Field(default_factory=list)
    count: int = 0


# ── Connection Endpoints ─────────────────────────────────────────────────────


@router.post("/connect", response_model=ConnectResponse)
async def connect(
    tenant: TenantContext = Depends(get_tenant),
    service: AccountingSyncService = Depends(get_accounting_service),
) -> ConnectResponse:
    """Start the OAuth authorization flow; the client redirects the user to the URL."""
    url = await service.connect(tenant.tenant_id)
    return ConnectResponse(authorization_url=url)


@router.get("/callback", response_model=CallbackResponse)
async def oauth_callback(
    code: str = Query(...),
    state: str = Query(...),
    realm_id: str = Query(..., alias="realmId"),
    service: AccountingSyncService = Depends(get_accounting_service),
) -> CallbackResponse:
    """OAuth redirect target. The tenant comes from the state token."""
    record = await service.handle_auth_callback(code, realm_id, state)
    return CallbackResponse(
        tenant_id=record.tenant_id,
        remote_company_id=record.remote_company_id,
        company_name=record.company_name,
        connected_at=record.connected_at,
    )


@router.delete("/connection", status_code=status.HTTP_204_NO_CONTENT)
async def disconnect(
    tenant: TenantContext = Depends(get_tenant),
    service: AccountingSyncService = Depends(get_accounting_service),
) -> None:
    await service.disconnect(tenant.tenant_id)


@router.get("/status", response_model=ConnectionStatus)
async def connection_status(
    tenant: TenantContext = Depends(get_tenant),
    service: AccountingSyncService = Depends(get_accounting_service),
) -> ConnectionStatus:
    return await service.get_connection_status(tenant.tenant_id)


@router.patch("/settings", response_model=ConnectionSettings)
async def update_settings(
    body: SettingsUpdate,
    tenant: TenantContext = Depends(get_tenant),
    service: AccountingSyncService = Depends(get_accounting_service),
) -> ConnectionSettings:
    return await service.update_settings(tenant.tenant_id, body)


# ── Sync Endpoints ───────────────────────────────────────────────────────────


@router.get("/sync/status")
async def sync_status(
    tenant: TenantContext = Depends(get_tenant),
    service: AccountingSyncService = Depends(get_accounting_service),
) -> dict[str, Any]:
    """Last sync time and result per entity type, plus pending conflicts."""
    return await service.get_sync_status(tenant.tenant_id)


@router.get("/sync/errors", response_model=SyncErrorsResponse)
async def sync_errors(
    entity_type: EntityType | None = Query(None),
    tenant: TenantContext = Depends(get_tenant),
    service: AccountingSyncService = Depends(get_accounting_service),
) -> SyncErrorsResponse:
    errors = await service.get_sync_errors(tenant.tenant_id)
    if entity_type is not None:
        errors = [e for e in errors if e.type == entity_type]
    return SyncErrorsResponse(errors=errors, count=len(errors))


@router.post("/sync", response_model=SyncReport)
async def sync_all(
    body: SyncAllRequest | None = None,
    tenant: TenantContext = Depends(get_tenant),
    service: AccountingSyncService = Depends(get_accounting_service),
) -> SyncReport:
    """Sync every (or the listed) entity types in dependency order."""
    body = body or SyncAllRequest()
    return await service.sync_all(tenant.tenant_id, body.direction, body.entity_types)


@router.post("/sync/{entity_type}", response_model=SyncResult)
async def sync_entity_type(
    entity_type: EntityType,
    direction: SyncDirection = Query(SyncDirection.FROM_REMOTE),
    tenant: TenantContext = Depends(get_tenant),
    service: AccountingSyncService = Depends(get_accounting_service),
) -> SyncResult:
    return await service.sync_entity_type(tenant.tenant_id, entity_type, direction)


# ── Conflict Endpoints ───────────────────────────────────────────────────────


@router.get("/conflicts", response_model=list[ConflictRecord])
async def list_conflicts(
    status_filter: ConflictStatus | None = Query(ConflictStatus.PENDING, alias="status"),
    tenant: TenantContext = Depends(get_tenant),
    service: AccountingSyncService = Depends(get_accounting_service),
) -> list[ConflictRecord]:
    return await service.list_conflicts(tenant.tenant_id, status_filter)


@router.post("/conflicts/{conflict_id}/resolve", response_model=ConflictRecord)
async def resolve_conflict(
    conflict_id: str,
    body: ResolveConflictRequest | None = None,
    tenant: TenantContext = Depends(get_tenant),
    service: AccountingSyncService = Depends(get_accounting_service),
) -> ConflictRecord:
    policy = body.policy if body else None
    return await service.resolve_conflict(tenant.tenant_id, conflict_id, policy)
