"""JWT verification for tenant-scoped API access.

User tokens are issued by the practice-management auth service; this
service only reads their tenant claims. create_service_token mints
short-lived tokens for service-to-service callers.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from src.ledgerlink.config import get_settings


def create_service_token(
    tenant_id: str,
    subject: str,
    tenant_slug: str | None = None,
    expires_delta: timedelta | None = None,
) -> str:
    """Access token carrying the tenant claims TenantAuthMiddleware reads."""
    settings = get_settings()
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or timedelta(minutes=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES))
    claims = {
        "sub": subject,
        "tenant_id": tenant_id,
        "exp": expire,
        "iat": now,
        "type": "access",
    }
    if tenant_slug:
        claims["tenant_slug"] = tenant_slug
    return jwt.encode(claims, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def decode_token(token: str) -> dict | None:
    """Decode a JWT, returning None instead of raising on any JWT error (bad signature, expired)."""
    settings = get_settings()
    try:
        return jwt.decode(
            token,
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
        )
    except JWTError:
        return None
