"""FastAPI application factory.

Creates the app with tenant middleware, logging middleware, metrics
middleware, CORS, lifespan events for database and sync engine
initialization, and the v1 API router.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import Response

from src.ledgerlink.accounting.container import build_accounting
from src.ledgerlink.accounting.errors import AccountingSyncError
from src.ledgerlink.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.ledgerlink.api.middleware.tenant import TenantAuthMiddleware
from src.ledgerlink.api.v1.accounting import accounting_error_handler
from src.ledgerlink.api.v1.router import router as v1_router
from src.ledgerlink.config import get_settings
from src.ledgerlink.core.database import close_db, get_session, init_db
from src.ledgerlink.core.monitoring import MetricsMiddleware, get_metrics_response
from src.ledgerlink.core.redis import close_redis, get_redis_pool


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Init DB and the sync engine on startup; stop the scheduler and close pools on shutdown."""
    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()
    await init_db()

    # A missing encryption key leaves the API up; accounting endpoints answer 503
    app.state.accounting_service = None
    app.state.auto_sync_scheduler = None
    try:
        components = build_accounting(settings, get_session, get_redis_pool())
        app.state.accounting_service = components.service
        log.info(
            "accounting.initialized",
            quickbooks_configured=settings.quickbooks_configured,
            environment=settings.QUICKBOOKS_ENVIRONMENT,
        )
        if settings.AUTO_SYNC_ENABLED:
            components.scheduler.start()
            app.state.auto_sync_scheduler = components.scheduler
    except Exception:
        log.warning("accounting.init_failed", exc_info=True)

    yield

    scheduler = app.state.auto_sync_scheduler
    if scheduler is not None:
        scheduler.shutdown()

    await close_db()
    await close_redis()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="LedgerLink API",
        version="0.1.0",
        description="Bidirectional accounting sync between the practice platform and QuickBooks Online",
        lifespan=lifespan,
    )

    app.add_exception_handler(AccountingSyncError, accounting_error_handler)

    # Middleware is added in reverse order (last added = outermost)

    # Tenant middleware (inner -- resolves tenant context from JWT/header)
    app.add_middleware(TenantAuthMiddleware)

    if settings.CORS_ALLOWED_ORIGINS == "*":
        origins = ["*"]
    else:
        origins = [o.strip() for o in settings.CORS_ALLOWED_ORIGINS.split(",")]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_middleware(LoggingMiddleware)

    # Metrics middleware (outermost -- records Prometheus metrics for all requests)
    app.add_middleware(MetricsMiddleware)

    app.include_router(v1_router)

    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
