"""Subject token fetched from a local or platform metadata endpoint.

Azure App Service is the canonical case: the platform exposes a managed
identity endpoint in ``IDENTITY_ENDPOINT`` that only answers requests carrying
the secret from ``IDENTITY_HEADER`` and returns a JSON document whose
``access_token`` field is an Entra ID token for the requested ``resource``.
"""

from __future__ import annotations

import asyncio
import logging

import httpx

from wif_broker.config.configuration import MetadataSourceConfig
from wif_broker.errors import SourceFormatError, SourceUnavailableError
from wif_broker.tokens import SubjectToken

logger = logging.getLogger(__name__)

# Only the start of an error body is kept; some endpoints return HTML pages.
_MAX_ERROR_BODY = 2048


class MetadataEndpointSource:
    """Issues one request per fetch and extracts the configured token field."""

    def __init__(
        self,
        config: MetadataSourceConfig,
        http_client: httpx.AsyncClient,
        token_type: str,
    ) -> None:
        self._config = config
        self._http = http_client
        self._token_type = token_type

    async def fetch(self, timeout: float | None = None) -> SubjectToken:
        config = self._config
        params = dict(config.query_params)
        if config.resource is not None:
            params[config.resource_parameter] = config.resource

        try:
            async with asyncio.timeout(timeout):
                response = await self._http.request(
                    config.method,
                    config.url,
                    headers=dict(config.headers),
                    params=params,
                )
        except TimeoutError as exc:
            raise SourceUnavailableError(
                f"Metadata endpoint {config.url} did not answer within {timeout}s"
            ) from exc
        except httpx.HTTPError as exc:
            raise SourceUnavailableError(
                f"Metadata endpoint {config.url} is unreachable: {exc}"
            ) from exc

        if not response.is_success:
            body = response.text[:_MAX_ERROR_BODY]
            raise SourceUnavailableError(
                f"Metadata endpoint {config.url} returned HTTP {response.status_code}: {body}",
                status_code=response.status_code,
                body=body,
            )

        value = self._extract(response)
        logger.debug("Fetched subject token from %s (%d chars)", config.url, len(value))
        return SubjectToken(value=value, token_type=self._token_type)

    def _extract(self, response: httpx.Response) -> str:
        field = self._config.subject_token_field_name
        if field is None:
            value = response.text.strip()
        else:
            try:
                payload = response.json()
            except ValueError as exc:
                raise SourceFormatError(
                    f"Metadata endpoint {self._config.url} did not return JSON"
                ) from exc
            if not isinstance(payload, dict) or field not in payload:
                raise SourceFormatError(
                    f"Metadata response has no {field!r} field"
                )
            value = payload[field]
            if not isinstance(value, str):
                raise SourceFormatError(
                    f"Metadata response field {field!r} is {type(value).__name__}, expected string"
                )
        if not value:
            raise SourceFormatError("Metadata endpoint returned an empty subject token")
        return value
