"""Second hop: federated token -> service account access token.

Pattern: Service Account Impersonation
---------------------------------------
Many Google APIs do not accept federated principals directly, and most
deployments grant roles to a service account rather than to pool identities.
When impersonation is configured, the federated token is only used to call
IAM Credentials ``generateAccessToken`` for the target service account, and
the resulting token is what callers receive.

The federated principal needs ``roles/iam.serviceAccountTokenCreator`` (or
``roles/iam.workloadIdentityUser``) on the target account.  A missing binding
surfaces as HTTP 403; the server body names the principal and permission, so
it is attached to the error verbatim.
"""

from __future__ import annotations

import asyncio
import datetime
import logging
import re

import httpx

from wif_broker.diagnostics import redact_token
from wif_broker.errors import ImpersonationError, ProtocolError
from wif_broker.tokens import (
    Clock,
    FederatedToken,
    ImpersonatedToken,
    expiry_margin,
    utcnow,
)

logger = logging.getLogger(__name__)

# RFC 3339 fractional seconds may carry nanoseconds; datetime keeps micros.
_FRACTION_RE = re.compile(r"\.(\d{6})\d+")


def parse_rfc3339(value: str) -> datetime.datetime:
    """Parse an RFC 3339 timestamp such as ``2024-05-01T12:00:00.123456789Z``."""
    normalized = _FRACTION_RE.sub(r".\1", value.strip())
    parsed = datetime.datetime.fromisoformat(normalized.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=datetime.UTC)
    return parsed.astimezone(datetime.UTC)


class ImpersonationClient:
    """Calls ``generateAccessToken`` for one target service account."""

    def __init__(
        self,
        url: str,
        service_account: str,
        scopes: tuple[str, ...],
        lifetime_seconds: int,
        http_client: httpx.AsyncClient,
        clock: Clock = utcnow,
        delegates: tuple[str, ...] = (),
    ) -> None:
        self._url = url
        self._service_account = service_account
        self._scopes = tuple(scopes)
        self._lifetime_seconds = lifetime_seconds
        self._http = http_client
        self._clock = clock
        self._delegates = tuple(delegates)

    @property
    def service_account(self) -> str:
        return self._service_account

    async def impersonate(
        self,
        federated_token: FederatedToken,
        timeout: float | None = None,
    ) -> ImpersonatedToken:
        """Exchange *federated_token* for a token of the target service account.

        Raises ``ImpersonationError`` on transport failures and non-2xx
        answers, ``ProtocolError`` on malformed 200 bodies.
        """
        body: dict[str, object] = {
            "scope": list(self._scopes),
            "lifetime": f"{self._lifetime_seconds}s",
        }
        if self._delegates:
            body["delegates"] = [
                f"projects/-/serviceAccounts/{delegate}" for delegate in self._delegates
            ]

        try:
            async with asyncio.timeout(timeout):
                response = await self._http.post(
                    self._url,
                    json=body,
                    headers={"Authorization": f"Bearer {federated_token.token}"},
                )
        except TimeoutError as exc:
            raise ImpersonationError(
                f"Impersonating {self._service_account} did not finish within {timeout}s",
                service_account=self._service_account,
            ) from exc
        except httpx.HTTPError as exc:
            raise ImpersonationError(
                f"Impersonating {self._service_account} failed: {exc}",
                service_account=self._service_account,
            ) from exc

        if not response.is_success:
            raise self._error_for(response)

        token = self._parse(response)
        logger.info(
            "Impersonated service_account=%s, token=%s (expires %s)",
            self._service_account,
            redact_token(token.token),
            token.expiry.isoformat(),
        )
        return token

    # -- private helpers -------------------------------------------------------

    def _parse(self, response: httpx.Response) -> ImpersonatedToken:
        try:
            payload = response.json()
        except ValueError as exc:
            raise ProtocolError("generateAccessToken response is not JSON") from exc
        if not isinstance(payload, dict):
            raise ProtocolError("generateAccessToken response is not a JSON object")

        access_token = payload.get("accessToken")
        if not isinstance(access_token, str) or not access_token:
            raise ProtocolError("generateAccessToken response has no accessToken")
        expire_time = payload.get("expireTime")
        if not isinstance(expire_time, str):
            raise ProtocolError("generateAccessToken response has no expireTime")
        try:
            server_expiry = parse_rfc3339(expire_time)
        except ValueError as exc:
            raise ProtocolError(f"Unparseable expireTime {expire_time!r}") from exc

        now = self._clock()
        lifetime = server_expiry - now
        return ImpersonatedToken(
            token=access_token,
            expiry=server_expiry - expiry_margin(max(lifetime, datetime.timedelta(0))),
            scopes=frozenset(self._scopes),
            service_account=self._service_account,
        )

    def _error_for(self, response: httpx.Response) -> ImpersonationError:
        body = response.text
        message = (
            f"Impersonating {self._service_account} rejected with "
            f"HTTP {response.status_code}: {body}"
        )
        if response.status_code == 403:
            message += (
                "; the federated principal most likely lacks "
                "roles/iam.serviceAccountTokenCreator on this service account"
            )
        return ImpersonationError(
            message,
            status_code=response.status_code,
            body=body,
            service_account=self._service_account,
        )
