"""Tenant resolution middleware with JWT and header-based modes.

Resolves tenant context from:
1. JWT claims in Authorization header (preferred for user requests)
2. X-Tenant-ID header (fallback for service-to-service calls)

After resolution, sets TenantContext in contextvars for the request scope.
"""

from __future__ import annotations

import structlog
from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from src.ledgerlink.core.security import decode_token
from src.ledgerlink.core.tenant import (
    SKIP_TENANT_PATHS,
    TenantContext,
    reset_tenant_context,
    set_tenant_context,
)

logger = structlog.get_logger(__name__)


class TenantAuthMiddleware(BaseHTTPMiddleware):
    """Middleware that resolves tenant from JWT claims or X-Tenant-ID header.

    Paths in SKIP_TENANT_PATHS are excluded from tenant resolution.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path
        if any(path.startswith(skip) for skip in SKIP_TENANT_PATHS):
            return await call_next(request)

        tenant_ctx = self._resolve_from_jwt(request) or self._resolve_from_header(request)

        if not tenant_ctx:
            logger.warning("tenant.unresolved", path=path)
            return JSONResponse(
                status_code=400,
                content={
                    "detail": "Missing tenant context. Provide Authorization header with JWT or X-Tenant-ID header."
                },
            )

        token = set_tenant_context(tenant_ctx)
        try:
            return await call_next(request)
        finally:
            reset_tenant_context(token)

    def _resolve_from_jwt(self, request: Request) -> TenantContext | None:
        """Extract tenant context from JWT claims in Authorization header."""
        auth_header = request.headers.get("Authorization")
        if not auth_header or not auth_header.startswith("Bearer "):
            return None

        payload = decode_token(auth_header[7:])
        if payload is None or payload.get("type") != "access":
            return None

        tenant_id = payload.get("tenant_id")
        if not tenant_id:
            return None

        return TenantContext(tenant_id=str(tenant_id), tenant_slug=payload.get("tenant_slug"))

    def _resolve_from_header(self, request: Request) -> TenantContext | None:
        """Resolve tenant from X-Tenant-ID header."""
        tenant_id = request.headers.get("X-Tenant-ID", "").strip()
        if not tenant_id:
            return None
        return TenantContext(tenant_id=tenant_id)
