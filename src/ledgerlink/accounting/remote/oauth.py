"""OAuth2 authorization-code flow against the Intuit identity platform.

OAuthProvider is the interface the CredentialManager depends on;
IntuitOAuthProvider talks to the real endpoints over httpx. Failures are
raised as RemoteAPIError so the RetryExecutor can classify them.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from urllib.parse import urlencode

import httpx
import structlog

from src.ledgerlink.accounting.errors import RemoteAPIError
from src.ledgerlink.accounting.schemas import TokenGrant

logger = structlog.get_logger(__name__)

AUTHORIZE_URL = "https://appcenter.intuit.com/connect/oauth2"
TOKEN_URL = "https://oauth.platform.intuit.com/oauth2/v1/tokens/bearer"
REVOKE_URL = "https://developer.api.intuit.com/v2/oauth2/tokens/revoke"

# Intuit defaults when the token response omits lifetimes
DEFAULT_ACCESS_TTL_SECONDS = 3600
DEFAULT_REFRESH_TTL_SECONDS = 100 * 24 * 3600


class OAuthProvider(ABC):
    @abstractmethod
    def authorization_url(self, state: str) -> str:
        ...

    @abstractmethod
    async def exchange_code(self, code: str) -> TokenGrant:
        ...

    @abstractmethod
    async def refresh(self, refresh_token: str) -> TokenGrant:
        ...

    @abstractmethod
    async def revoke(self, token: str) -> None:
        ...


class IntuitOAuthProvider(OAuthProvider):
    """Intuit OAuth2 token endpoint client.

    Args:
        client_id: App client id.
        client_secret: App client secret.
        redirect_uri: Registered callback URL.
        scopes: OAuth scopes requested at authorization.
        timeout: Request timeout in seconds.
        transport: Optional httpx transport (tests use httpx.MockTransport).
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        scopes: list[str],
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._redirect_uri = redirect_uri
        self._scopes = scopes
        self._timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            auth=httpx.BasicAuth(self._client_id, self._client_secret),
            headers={"Accept": "application/json"},
            timeout=self._timeout,
            transport=self._transport,
        )

    def authorization_url(self, state: str) -> str:
        query = urlencode({
            "client_id": self._client_id,
            "response_type": "code",
            "scope": " ".join(self._scopes),
            "redirect_uri": self._redirect_uri,
            "state": state,
        })
        return f"{AUTHORIZE_URL}?{query}"

    async def _token_request(self, form: dict[str, str]) -> TokenGrant:
        try:
            async with self._client() as client:
                response = await client.post(TOKEN_URL, data=form)
        except httpx.TransportError as exc:
            raise RemoteAPIError(f"{type(exc).__name__}: {exc}") from exc

        if response.status_code >= 400:
            # invalid_grant arrives as 400; treat it like a rejected credential
            status = 401 if response.status_code == 400 else response.status_code
            raise RemoteAPIError(
                f"Token endpoint rejected {form['grant_type']}: {response.text[:300]}",
                status_code=status,
            )

        data = response.json()
        return TokenGrant(
            access_token=data["access_token"],
            refresh_token=data["refresh_token"],
            expires_in=int(data.get("expires_in") or DEFAULT_ACCESS_TTL_SECONDS),
            refresh_expires_in=int(
                data.get("x_refresh_token_expires_in") or DEFAULT_REFRESH_TTL_SECONDS
            ),
        )

    async def exchange_code(self, code: str) -> TokenGrant:
        return await self._token_request({
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self._redirect_uri,
        })

    async def refresh(self, refresh_token: str) -> TokenGrant:
        return await self._token_request({
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        })

    async def revoke(self, token: str) -> None:
        try:
            async with self._client() as client:
                response = await client.post(REVOKE_URL, json={"token": token})
        except httpx.TransportError as exc:
            raise RemoteAPIError(f"{type(exc).__name__}: {exc}") from exc
        if response.status_code >= 400:
            raise RemoteAPIError(
                f"Token revocation failed: {response.text[:300]}",
                status_code=response.status_code,
            )
        logger.info("oauth.revoked")
