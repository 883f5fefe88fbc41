"""FastAPI dependencies for tenant context and the accounting service."""

from __future__ import annotations

from fastapi import HTTPException, Request, status

from src.ledgerlink.accounting.service import AccountingSyncService
from src.ledgerlink.core.tenant import TenantContext, get_current_tenant


async def get_tenant() -> TenantContext:
    """Get the current tenant context (set by TenantAuthMiddleware)."""
    try:
        return get_current_tenant()
    except RuntimeError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing tenant context",
        ) from None


def get_accounting_service(request: Request) -> AccountingSyncService:
    """Retrieve AccountingSyncService from app.state, 503 if not available."""
    service = getattr(request.app.state, "accounting_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Accounting sync not initialized",
        )
    return service
