"""Prometheus metrics for HTTP traffic and the accounting sync engine.

Provides:
- MetricsMiddleware: ASGI middleware for HTTP request metrics
- Sync metrics: run outcomes, per-record outcomes, remote retries, token refreshes
- get_metrics_response(): Response for the /metrics route
"""

from __future__ import annotations

import time

from prometheus_client import (
    REGISTRY,
    Counter,
    Histogram,
    generate_latest,
)
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

# ── HTTP Metrics ─────────────────────────────────────────────────────────────

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code", "tenant_id"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint", "tenant_id"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# ── Sync Metrics ─────────────────────────────────────────────────────────────

sync_runs_total = Counter(
    "accounting_sync_runs_total",
    "Sync runs by entity type, direction and final state",
    ["entity_type", "direction", "status"],
)

sync_run_duration_seconds = Histogram(
    "accounting_sync_run_duration_seconds",
    "Duration of one entity-type sync run",
    ["entity_type", "direction"],
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 300.0),
)

sync_records_total = Counter(
    "accounting_sync_records_total",
    "Records processed by outcome",
    ["entity_type", "outcome"],
)

remote_call_retries_total = Counter(
    "accounting_remote_call_retries_total",
    "Remote API calls retried after a transient failure",
    ["operation"],
)

token_refreshes_total = Counter(
    "accounting_token_refreshes_total",
    "OAuth token refresh attempts",
    ["status"],
)


# ── Metrics Middleware ───────────────────────────────────────────────────────


class MetricsMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that records Prometheus metrics for every HTTP request.

    Extracts tenant_id from the request context (if available) and records
    request count and duration per method/endpoint/tenant.
    Skips the /metrics endpoint itself to avoid self-referential counting.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        start_time = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start_time

        # Tenant context is reset by the inner middleware; fall back to the header
        tenant_id = request.headers.get("X-Tenant-ID", "unknown")
        endpoint = request.url.path

        http_requests_total.labels(
            method=request.method,
            endpoint=endpoint,
            status_code=str(response.status_code),
            tenant_id=tenant_id,
        ).inc()

        http_request_duration_seconds.labels(
            method=request.method,
            endpoint=endpoint,
            tenant_id=tenant_id,
        ).observe(duration)

        return response


# ── Metrics Endpoint ─────────────────────────────────────────────────────────


def get_metrics_response() -> Response:
    """Generate Prometheus exposition format response."""
    return Response(
        content=generate_latest(REGISTRY),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
