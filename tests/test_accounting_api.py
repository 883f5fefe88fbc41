"""Integration tests for the accounting API endpoints.

Uses the in-memory stores and fake remote from conftest behind a minimal
FastAPI app (router, tenant middleware, domain error handler) driven by
httpx AsyncClient over ASGITransport. No lifespan, database or Redis.
"""

from __future__ import annotations

from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from conftest import T0, TENANT
from src.ledgerlink.accounting.errors import (
    AccountingSyncError,
    AlreadyResolvedError,
    ConfigurationError,
    ConflictError,
    ConflictNotFoundError,
    InvalidOAuthStateError,
    MappingError,
    NotConnectedError,
    RefreshFailedError,
    SyncAlreadyInProgressError,
    TransientError,
)
from src.ledgerlink.accounting.schemas import EntityType
from src.ledgerlink.api.middleware.tenant import TenantAuthMiddleware
from src.ledgerlink.api.v1.accounting import accounting_error_handler, router, status_for_error
from src.ledgerlink.core.security import create_service_token

BASE = "/api/v1/accounting"
HEADERS = {"X-Tenant-ID": TENANT}


def _make_app(service) -> FastAPI:
    """Minimal app: accounting router, tenant middleware and error handler."""
    app = FastAPI()
    app.add_exception_handler(AccountingSyncError, accounting_error_handler)
    app.add_middleware(TenantAuthMiddleware)
    app.include_router(router)
    app.state.accounting_service = service
    return app


@pytest_asyncio.fixture
async def client(service):
    transport = ASGITransport(app=_make_app(service))
    async with AsyncClient(transport=transport, base_url="http://test") as http:
        yield http


async def _make_conflict(client, remote, entities, clock) -> str:
    record = remote.seed(EntityType.CUSTOMER, {"DisplayName": "Alpha LLC"})
    await client.post(f"{BASE}/sync/customer", headers=HEADERS)
    [local] = entities.of_type(EntityType.CUSTOMER)
    entities.entities[local.id] = local.model_copy(update={"updated_at": T0 + timedelta(hours=1)})
    clock.advance(minutes=5)
    remote.seed(EntityType.CUSTOMER, {"DisplayName": "Alpha Holdings"}, record_id=record.id, revision_token="1")
    response = await client.post(f"{BASE}/sync/customer", headers=HEADERS)
    return response.json()["conflicts"][0]["conflict_id"]


# ── Connection ─────────────────────────────────────────────────────────────


class TestConnectionEndpoints:
    async def test_connect_and_callback(self, client, connections):
        response = await client.post(f"{BASE}/connect", headers=HEADERS)
        assert response.status_code == 200
        state = parse_qs(urlparse(response.json()["authorization_url"]).query)["state"][0]

        # The callback carries no tenant header; the state token identifies the tenant
        callback = await client.get(
            f"{BASE}/callback", params={"code": "auth-code", "state": state, "realmId": "realm-123"}
        )

        assert callback.status_code == 200
        body = callback.json()
        assert body["tenant_id"] == TENANT
        assert body["remote_company_id"] == "realm-123"
        assert body["company_name"] == "Acme Books LLC"
        assert TENANT in connections.records

    async def test_callback_with_unknown_state(self, client):
        response = await client.get(
            f"{BASE}/callback", params={"code": "auth-code", "state": "forged", "realmId": "realm-123"}
        )

        assert response.status_code == 400
        assert response.json()["error"] == "InvalidOAuthStateError"

    async def test_missing_tenant_rejected(self, client):
        response = await client.get(f"{BASE}/status")
        assert response.status_code == 400

    async def test_tenant_from_bearer_token(self, client, connected):
        token = create_service_token(TENANT, subject="billing-worker")

        response = await client.get(f"{BASE}/status", headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == 200
        assert response.json()["connected"] is True

    async def test_invalid_bearer_token_without_header_rejected(self, client):
        response = await client.get(f"{BASE}/status", headers={"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 400

    async def test_status_not_connected(self, client):
        response = await client.get(f"{BASE}/status", headers=HEADERS)

        assert response.status_code == 200
        assert response.json()["connected"] is False

    async def test_status_connected(self, client, connected):
        response = await client.get(f"{BASE}/status", headers=HEADERS)

        body = response.json()
        assert body["connected"] is True
        assert body["token_state"] == "active"
        assert "access_secret" not in body

    async def test_update_settings(self, client, connected):
        response = await client.patch(
            f"{BASE}/settings", headers=HEADERS,
            json={"auto_sync": True, "sync_interval": "hourly"},
        )

        assert response.status_code == 200
        assert response.json() == {"auto_sync": True, "conflict_policy": "manual", "sync_interval": "hourly"}

    async def test_update_settings_rejects_unknown_policy(self, client, connected):
        response = await client.patch(f"{BASE}/settings", headers=HEADERS, json={"conflict_policy": "coin_flip"})
        assert response.status_code == 422

    async def test_disconnect(self, client, connections, connected):
        response = await client.delete(f"{BASE}/connection", headers=HEADERS)

        assert response.status_code == 204
        assert TENANT not in connections.records

        again = await client.delete(f"{BASE}/connection", headers=HEADERS)
        assert again.status_code == 404
        assert again.json()["error"] == "NotConnectedError"

    async def test_service_not_initialized(self):
        transport = ASGITransport(app=_make_app(None))
        async with AsyncClient(transport=transport, base_url="http://test") as http:
            response = await http.get(f"{BASE}/status", headers=HEADERS)

        assert response.status_code == 503
        assert "not initialized" in response.json()["detail"]


# ── Sync ───────────────────────────────────────────────────────────────────


class TestSyncEndpoints:
    async def test_sync_entity_type(self, client, remote, connected):
        remote.seed(EntityType.CUSTOMER, {"DisplayName": "Alpha LLC"})

        response = await client.post(f"{BASE}/sync/customer", headers=HEADERS)

        assert response.status_code == 200
        assert response.json()["created"] == 1

    async def test_sync_entity_type_push(self, client, remote, entities, connected):
        entities.add_local(EntityType.VENDOR, {"name": "Paper Co"})

        response = await client.post(f"{BASE}/sync/vendor", headers=HEADERS, params={"direction": "to_remote"})

        assert response.json()["created"] == 1
        assert remote.count("create") == 1

    async def test_unknown_entity_type(self, client, connected):
        response = await client.post(f"{BASE}/sync/journal_entry", headers=HEADERS)
        assert response.status_code == 422

    async def test_sync_when_not_connected(self, client):
        response = await client.post(f"{BASE}/sync/customer", headers=HEADERS)

        assert response.status_code == 404
        assert response.json()["error"] == "NotConnectedError"

    async def test_sync_all_with_body(self, client, remote, connected):
        remote.seed(EntityType.CUSTOMER, {"DisplayName": "Alpha LLC"})

        response = await client.post(
            f"{BASE}/sync", headers=HEADERS,
            json={"direction": "from_remote", "entity_types": ["customer", "vendor"]},
        )

        body = response.json()
        assert response.status_code == 200
        assert list(body["results"]) == ["customer", "vendor"]
        assert body["cancelled"] is False

    async def test_sync_all_without_body(self, client, connected):
        response = await client.post(f"{BASE}/sync", headers=HEADERS)

        assert response.status_code == 200
        assert len(response.json()["results"]) == len(EntityType)

    async def test_sync_status_and_errors(self, client, entities, connected):
        entities.add_local(EntityType.INVOICE, {"customer_id": "never-pushed", "lines": []})
        await client.post(f"{BASE}/sync/invoice", headers=HEADERS, params={"direction": "to_remote"})

        status = await client.get(f"{BASE}/sync/status", headers=HEADERS)
        errors = await client.get(f"{BASE}/sync/errors", headers=HEADERS)
        filtered = await client.get(f"{BASE}/sync/errors", headers=HEADERS, params={"entity_type": "bill"})

        assert status.json()["entity_types"]["invoice"]["last_result"]["errors"][0]["type"] == "invoice"
        assert errors.json()["count"] == 1
        assert filtered.json() == {"errors": [], "count": 0}


# ── Conflicts ──────────────────────────────────────────────────────────────


class TestConflictEndpoints:
    async def test_list_and_resolve(self, client, remote, entities, clock, connected):
        conflict_id = await _make_conflict(client, remote, entities, clock)

        listed = await client.get(f"{BASE}/conflicts", headers=HEADERS)
        assert [c["id"] for c in listed.json()] == [conflict_id]

        resolved = await client.post(
            f"{BASE}/conflicts/{conflict_id}/resolve", headers=HEADERS, json={"policy": "remote_wins"}
        )
        assert resolved.status_code == 200
        assert resolved.json()["status"] == "resolved"
        assert resolved.json()["resolution"] == "remote_wins"

        again = await client.post(
            f"{BASE}/conflicts/{conflict_id}/resolve", headers=HEADERS, json={"policy": "local_wins"}
        )
        assert again.status_code == 409

        history = await client.get(f"{BASE}/conflicts", headers=HEADERS, params={"status": "resolved"})
        assert len(history.json()) == 1

    async def test_resolve_without_body_uses_tenant_policy(self, client, remote, entities, clock, connected):
        conflict_id = await _make_conflict(client, remote, entities, clock)
        await client.patch(f"{BASE}/settings", headers=HEADERS, json={"conflict_policy": "remote_wins"})

        response = await client.post(f"{BASE}/conflicts/{conflict_id}/resolve", headers=HEADERS)

        assert response.json()["resolution"] == "remote_wins"

    async def test_resolve_unknown_conflict(self, client, connected):
        response = await client.post(
            f"{BASE}/conflicts/nope/resolve", headers=HEADERS, json={"policy": "remote_wins"}
        )
        assert response.status_code == 404


# ── Error translation ──────────────────────────────────────────────────────


@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (NotConnectedError(TENANT), 404),
        (ConfigurationError("no key"), 503),
        (InvalidOAuthStateError("bad state"), 400),
        (RefreshFailedError("expired"), 401),
        (MappingError("bad line"), 422),
        (TransientError("down", attempts=3), 502),
        (ConflictNotFoundError("c1"), 404),
        (AlreadyResolvedError("c1"), 409),
        (SyncAlreadyInProgressError(TENANT, "invoice"), 409),
        (ConflictError("divergent"), 500),
        (AccountingSyncError("unknown"), 500),
    ],
)
def test_status_for_error(error, expected):
    assert status_for_error(error) == expected


# ── Application wiring ─────────────────────────────────────────────────────


class TestCreateApp:
    """create_app() without its lifespan: no database, Redis or sync engine."""

    @pytest_asyncio.fixture
    async def app_client(self):
        from src.ledgerlink.main import create_app

        transport = ASGITransport(app=create_app())
        async with AsyncClient(transport=transport, base_url="http://test") as http:
            yield http

    async def test_liveness_skips_tenant_resolution(self, app_client):
        response = await app_client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    async def test_request_id_echoed(self, app_client):
        response = await app_client.get("/health", headers={"X-Request-ID": "req-42"})
        assert response.headers["X-Request-ID"] == "req-42"

    async def test_metrics_exposed(self, app_client):
        await app_client.get("/health")

        response = await app_client.get("/metrics")

        assert response.status_code == 200
        assert "http_requests_total" in response.text

    async def test_accounting_unavailable_until_initialized(self, app_client):
        response = await app_client.get(f"{BASE}/status", headers=HEADERS)
        assert response.status_code == 503
