"""httpx adapter that signs outgoing requests with the provider's token."""

from __future__ import annotations

from typing import Any, AsyncGenerator, Generator

import httpx

from wif_broker.provider.credential_provider import CredentialProvider


class GoogleBearerAuth(httpx.Auth):
    """Sets ``Authorization: Bearer <token>``, refreshing through the provider.

    Only usable with ``httpx.AsyncClient``; the provider is asynchronous.
    """

    def __init__(self, provider: CredentialProvider, timeout: float | None = None) -> None:
        self._provider = provider
        self._timeout = timeout

    async def async_auth_flow(
        self, request: httpx.Request
    ) -> AsyncGenerator[httpx.Request, httpx.Response]:
        token = await self._provider.get_access_token(timeout=self._timeout)
        request.headers["Authorization"] = f"Bearer {token.token}"
        yield request

    def sync_auth_flow(
        self, request: httpx.Request
    ) -> Generator[httpx.Request, httpx.Response, None]:
        raise RuntimeError("GoogleBearerAuth requires httpx.AsyncClient")


def authorized_client(provider: CredentialProvider, **kwargs: Any) -> httpx.AsyncClient:
    """Return an ``httpx.AsyncClient`` whose requests carry the provider's token."""
    return httpx.AsyncClient(auth=GoogleBearerAuth(provider), **kwargs)
