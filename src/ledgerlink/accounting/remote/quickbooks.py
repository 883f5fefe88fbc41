"""QuickBooks Online v3 REST client.

Implements RemoteClient over httpx. One instance is bound to one tenant's
company (realm) and access token; the CredentialManager builds a fresh
instance after every token refresh.

- Listing uses the query endpoint with STARTPOSITION/MAXRESULTS paging
- Creates pass requestid so a retried create is deduplicated remotely
- Updates are sparse and guarded by SyncToken
- Every failure surfaces as RemoteAPIError (status_code None for transport)
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, assert_never

import httpx
import structlog

from src.ledgerlink.accounting.errors import RemoteAPIError
from src.ledgerlink.accounting.remote.adapter import RemoteClient
from src.ledgerlink.accounting.schemas import EntityType, RemoteRecord

logger = structlog.get_logger(__name__)

SANDBOX_BASE_URL = "https://sandbox-quickbooks.api.intuit.com"
PRODUCTION_BASE_URL = "https://quickbooks.api.intuit.com"

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def entity_name(entity_type: EntityType) -> str:
    """QuickBooks entity name used in queries, payload envelopes and URLs."""
    match entity_type:
        case EntityType.ACCOUNT:
            return "Account"
        case EntityType.CUSTOMER:
            return "Customer"
        case EntityType.VENDOR:
            return "Vendor"
        case EntityType.ITEM:
            return "Item"
        case EntityType.INVOICE:
            return "Invoice"
        case EntityType.PAYMENT:
            return "Payment"
        case EntityType.BILL:
            return "Bill"
        case _:
            assert_never(entity_type)


def base_url_for(environment: str) -> str:
    return PRODUCTION_BASE_URL if environment == "production" else SANDBOX_BASE_URL


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def document_to_record(document: dict[str, Any]) -> RemoteRecord:
    """Wrap a raw QuickBooks document as a RemoteRecord."""
    meta = document.get("MetaData") or {}
    last_modified = (
        _parse_timestamp(meta.get("LastUpdatedTime"))
        or _parse_timestamp(meta.get("CreateTime"))
        or _EPOCH
    )
    return RemoteRecord(
        id=str(document["Id"]),
        revision_token=str(document.get("SyncToken", "0")),
        last_modified_at=last_modified,
        fields=document,
    )


def _fault_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:500] or f"HTTP {response.status_code}"
    errors = (payload.get("Fault") or {}).get("Error") or []
    if errors:
        first = errors[0]
        return first.get("Detail") or first.get("Message") or f"HTTP {response.status_code}"
    return f"HTTP {response.status_code}"


class QuickBooksClient(RemoteClient):
    """Async client for one QuickBooks Online company.

    Args:
        access_token: OAuth2 bearer token.
        realm_id: QuickBooks company id.
        base_url: API host (sandbox or production).
        minor_version: API minor version sent on every request.
        timeout: Request timeout in seconds.
        transport: Optional httpx transport (tests use httpx.MockTransport).
    """

    def __init__(
        self,
        access_token: str,
        realm_id: str,
        base_url: str = SANDBOX_BASE_URL,
        minor_version: int = 65,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._realm_id = realm_id
        self._company_url = f"{base_url.rstrip('/')}/v3/company/{realm_id}"
        self._minor_version = minor_version
        self._timeout = timeout
        self._transport = transport
        self._headers = {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        }

    @property
    def realm_id(self) -> str:
        return self._realm_id

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            headers=self._headers,
            timeout=self._timeout,
            transport=self._transport,
        )

    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        query = {"minorversion": self._minor_version, **(params or {})}
        try:
            async with self._client() as client:
                response = await client.request(
                    method, f"{self._company_url}{path}", params=query, json=json
                )
        except httpx.TransportError as exc:
            raise RemoteAPIError(f"{type(exc).__name__}: {exc}") from exc

        if response.status_code >= 400:
            raise RemoteAPIError(
                _fault_message(response),
                status_code=response.status_code,
                payload=response.text[:2000],
            )
        try:
            return response.json()
        except ValueError as exc:
            raise RemoteAPIError(
                "Malformed JSON from remote", status_code=response.status_code
            ) from exc

    # ── RemoteClient ────────────────────────────────────────────────────────

    async def list_page(
        self,
        entity_type: EntityType,
        start_position: int,
        max_results: int,
        modified_since: datetime | None = None,
    ) -> list[RemoteRecord]:
        name = entity_name(entity_type)
        query = f"SELECT * FROM {name}"
        if modified_since is not None:
            # LastUpdatedTime has whole-second precision; truncating and comparing
            # inclusively keeps edits within the watermark's second
            since = modified_since.astimezone(timezone.utc).isoformat(timespec="seconds")
            query += f" WHERE MetaData.LastUpdatedTime >= '{since}'"
        query += f" STARTPOSITION {start_position} MAXRESULTS {max_results}"

        payload = await self._request("GET", "/query", params={"query": query})
        documents = (payload.get("QueryResponse") or {}).get(name) or []
        logger.debug(
            "quickbooks.page_fetched",
            realm_id=self._realm_id,
            entity=name,
            start_position=start_position,
            count=len(documents),
        )
        return [document_to_record(d) for d in documents]

    async def create(
        self, entity_type: EntityType, fields: dict[str, Any], idempotency_key: str
    ) -> RemoteRecord:
        name = entity_name(entity_type)
        payload = await self._request(
            "POST", f"/{name.lower()}", params={"requestid": idempotency_key}, json=fields
        )
        record = document_to_record(payload[name])
        logger.info("quickbooks.created", realm_id=self._realm_id, entity=name, remote_id=record.id)
        return record

    async def update(
        self,
        entity_type: EntityType,
        remote_id: str,
        revision_token: str,
        fields: dict[str, Any],
    ) -> RemoteRecord:
        name = entity_name(entity_type)
        body = {**fields, "Id": remote_id, "SyncToken": revision_token, "sparse": True}
        payload = await self._request("POST", f"/{name.lower()}", json=body)
        record = document_to_record(payload[name])
        logger.info("quickbooks.updated", realm_id=self._realm_id, entity=name, remote_id=record.id)
        return record

    async def get_company_info(self) -> dict[str, Any]:
        payload = await self._request("GET", f"/companyinfo/{self._realm_id}")
        return payload.get("CompanyInfo") or {}
