"""OAuth 2.0 token exchange (RFC 8693) against Google STS.

Pattern: Token Exchange
------------------------
Google STS accepts a subject token issued by a trusted third party, checks it
against the workload identity pool provider named by ``audience``, and issues
a short-lived *federated* access token for the mapped principal.

Request (``application/x-www-form-urlencoded``)::

    grant_type=urn:ietf:params:oauth:grant-type:token-exchange
    audience=//iam.googleapis.com/projects/.../providers/...
    scope=https://www.googleapis.com/auth/cloud-platform
    requested_token_type=urn:ietf:params:oauth:token-type:access_token
    subject_token=...
    subject_token_type=...

Response: ``{"access_token", "issued_token_type", "token_type", "expires_in"}``.

Errors keep the server body intact: an ``invalid_grant`` with its description
is usually the only clue about a broken attribute condition or mapping.
"""

from __future__ import annotations

import asyncio
import datetime
import json
import logging

import httpx

from wif_broker.config.configuration import CredentialConfiguration
from wif_broker.diagnostics import redact_token
from wif_broker.errors import ExchangeError, ProtocolError
from wif_broker.tokens import Clock, FederatedToken, SubjectToken, effective_expiry, utcnow

logger = logging.getLogger(__name__)

GRANT_TYPE_TOKEN_EXCHANGE = "urn:ietf:params:oauth:grant-type:token-exchange"
REQUESTED_TOKEN_TYPE_ACCESS_TOKEN = "urn:ietf:params:oauth:token-type:access_token"


class StsTokenExchanger:
    """Exchanges subject tokens for federated Google access tokens."""

    def __init__(self, http_client: httpx.AsyncClient, clock: Clock = utcnow) -> None:
        self._http = http_client
        self._clock = clock

    async def exchange(
        self,
        config: CredentialConfiguration,
        subject_token: SubjectToken,
        timeout: float | None = None,
    ) -> FederatedToken:
        """Exchange *subject_token* at ``config.token_url``.

        Raises ``ExchangeError`` on transport failures and non-2xx answers,
        ``ProtocolError`` when a 200 body lacks ``access_token``/``expires_in``.
        """
        form = {
            "grant_type": GRANT_TYPE_TOKEN_EXCHANGE,
            "audience": config.audience,
            "scope": " ".join(config.scopes),
            "requested_token_type": REQUESTED_TOKEN_TYPE_ACCESS_TOKEN,
            "subject_token": subject_token.value,
            "subject_token_type": config.subject_token_type.value,
        }

        requested_at = self._clock()
        try:
            async with asyncio.timeout(timeout):
                response = await self._http.post(config.token_url, data=form)
        except TimeoutError as exc:
            raise ExchangeError(
                f"Token exchange at {config.token_url} did not finish within {timeout}s"
            ) from exc
        except httpx.HTTPError as exc:
            raise ExchangeError(f"Token exchange at {config.token_url} failed: {exc}") from exc

        if not response.is_success:
            raise _exchange_error(response)

        token = self._parse(response, requested_at, config)
        logger.info(
            "Exchanged subject token for federated token %s (expires %s)",
            redact_token(token.token),
            token.expiry.isoformat(),
        )
        return token

    def _parse(
        self,
        response: httpx.Response,
        requested_at: datetime.datetime,
        config: CredentialConfiguration,
    ) -> FederatedToken:
        try:
            payload = response.json()
        except ValueError as exc:
            raise ProtocolError("Token exchange response is not JSON") from exc
        if not isinstance(payload, dict):
            raise ProtocolError("Token exchange response is not a JSON object")

        access_token = payload.get("access_token")
        if not isinstance(access_token, str) or not access_token:
            raise ProtocolError("Token exchange response has no access_token")

        expires_in = payload.get("expires_in")
        # bool is an int subclass; a JSON true is not a lifetime.
        if isinstance(expires_in, bool) or not isinstance(expires_in, int) or expires_in <= 0:
            raise ProtocolError(
                f"Token exchange response has invalid expires_in: {expires_in!r}"
            )

        scope = payload.get("scope")
        scopes = frozenset(scope.split()) if isinstance(scope, str) and scope else frozenset(config.scopes)

        return FederatedToken(
            token=access_token,
            expiry=effective_expiry(requested_at, datetime.timedelta(seconds=expires_in)),
            scopes=scopes,
            issued_token_type=payload.get("issued_token_type"),
        )


def _exchange_error(response: httpx.Response) -> ExchangeError:
    body = response.text
    oauth_error = None
    description = None
    try:
        payload = json.loads(body)
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        oauth_error = payload.get("error")
        description = payload.get("error_description")

    detail = oauth_error or "no OAuth error code"
    if description:
        detail = f"{detail}: {description}"
    return ExchangeError(
        f"Token exchange rejected with HTTP {response.status_code} ({detail})",
        status_code=response.status_code,
        body=body,
        oauth_error=oauth_error,
        error_description=description,
    )
