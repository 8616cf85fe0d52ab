"""App-only access tokens for the source document system.

:class:`ClientCredentialsTokenProvider` is the ``token_provider`` the Celery
workers hand to :class:`~coldstore.services.file_source.GraphFileSource`.
It runs the OAuth2 client-credentials grant against each customer tenant's
authority and caches the token until shortly before it expires.
"""

from __future__ import annotations

import asyncio
import time

import httpx

from coldstore.config import settings
from coldstore.core.errors import FatalConfigError, TransientIOError

_GRAPH_SCOPE = "https://graph.microsoft.com/.default"
_EXPIRY_MARGIN_SECONDS = 300
_HTTP_TIMEOUT = 15.0


class ClientCredentialsTokenProvider:
    def __init__(
        self,
        client_id: str | None = None,
        client_secret: str | None = None,
        authority_url: str | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._client_id = client_id if client_id is not None else settings.GRAPH_CLIENT_ID
        self._client_secret = (
            client_secret if client_secret is not None else settings.GRAPH_CLIENT_SECRET
        )
        self._authority_url = (authority_url or settings.GRAPH_AUTHORITY_URL).rstrip("/")
        self._http_client = http_client
        self._cache: dict[str, tuple[str, float]] = {}
        self._lock = asyncio.Lock()

    async def __call__(self, tenant_external_id: str) -> str:
        async with self._lock:
            cached = self._cache.get(tenant_external_id)
            if cached is not None and cached[1] > time.monotonic():
                return cached[0]
            token, expires_in = await self._fetch(tenant_external_id)
            self._cache[tenant_external_id] = (
                token,
                time.monotonic() + max(0, expires_in - _EXPIRY_MARGIN_SECONDS),
            )
            return token

    async def _fetch(self, tenant_external_id: str) -> tuple[str, int]:
        if not self._client_id or not self._client_secret:
            raise FatalConfigError("GRAPH_CLIENT_ID and GRAPH_CLIENT_SECRET must be set")
        url = f"{self._authority_url}/{tenant_external_id}/oauth2/v2.0/token"
        form = {
            "grant_type": "client_credentials",
            "client_id": self._client_id,
            "client_secret": self._client_secret,
            "scope": _GRAPH_SCOPE,
        }
        try:
            if self._http_client is not None:
                response = await self._http_client.post(url, data=form, timeout=_HTTP_TIMEOUT)
            else:
                async with httpx.AsyncClient(timeout=_HTTP_TIMEOUT) as client:
                    response = await client.post(url, data=form)
        except httpx.RequestError as exc:
            raise TransientIOError(f"Token request failed: {exc}") from exc

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientIOError(f"Token endpoint returned HTTP {response.status_code}")
        response.raise_for_status()
        body = response.json()
        return body["access_token"], int(body.get("expires_in", 3600))
