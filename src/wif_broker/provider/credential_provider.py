"""Credential provider: the one object collaborators ask for a Google token.

Pattern: Lazy, Single-Flight Refresh
-------------------------------------
``get_access_token`` answers from the cache while the cached token is valid.
When it is not, the first caller starts a refresh task
(``fetch -> exchange -> impersonate``) and every concurrent caller awaits that
same task, so N simultaneous cache misses cost exactly one subject-token
fetch, one STS call and at most one impersonation call.

Waiters await the shared task through ``asyncio.shield`` under their own
timeout.  A waiter that gives up or is cancelled leaves the refresh running
for everyone else; the result still lands in the cache.

Failure handling:

  - A failed refresh never touches the cached token; the next call retries.
  - All waiters of one refresh see the same exception object.
  - ``ConfigurationError`` is permanent: it is recorded and re-raised on every
    later call without doing any work.
  - ``invalid_grant`` from STS means the pool provider does not trust the
    assertion.  Each occurrence is logged at ERROR with a running count so a
    broken trust configuration is visible instead of silently retried.

There is no background refresh and no module-level singleton: construct one
provider at startup and pass it to whoever needs tokens.
"""

from __future__ import annotations

import asyncio
import logging

import httpx

from wif_broker.config.configuration import CredentialConfiguration
from wif_broker.diagnostics import format_error_chain, redact_token
from wif_broker.errors import (
    ConfigurationError,
    CredentialError,
    ExchangeError,
    ProtocolError,
)
from wif_broker.iam.impersonation import ImpersonationClient
from wif_broker.provider.token_cache import TokenCache
from wif_broker.sources.base import SubjectTokenSource, build_subject_token_source
from wif_broker.sts.exchanger import StsTokenExchanger
from wif_broker.tokens import AccessToken, Clock, utcnow

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_TIMEOUT = 60.0
DEFAULT_HTTP_TIMEOUT = 30.0


class CredentialProvider:
    """Produces valid Google access tokens for one credential configuration."""

    def __init__(
        self,
        config: CredentialConfiguration,
        subject_token_source: SubjectTokenSource,
        exchanger: StsTokenExchanger,
        impersonation_client: ImpersonationClient | None = None,
        clock: Clock = utcnow,
        refresh_timeout: float | None = DEFAULT_REFRESH_TIMEOUT,
        owned_http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._config = config
        self._source = subject_token_source
        self._exchanger = exchanger
        self._impersonation = impersonation_client
        self._clock = clock
        self._refresh_timeout = refresh_timeout
        self._owned_http_client = owned_http_client

        self._cache = TokenCache()
        self._refresh_task: asyncio.Task[AccessToken] | None = None
        self._fatal_error: ConfigurationError | None = None
        self._invalid_grant_count = 0

    @classmethod
    def from_configuration(
        cls,
        config: CredentialConfiguration,
        http_client: httpx.AsyncClient | None = None,
        clock: Clock = utcnow,
        refresh_timeout: float | None = DEFAULT_REFRESH_TIMEOUT,
        subject_token_source: SubjectTokenSource | None = None,
    ) -> CredentialProvider:
        """Wire the default collaborators for *config*.

        When *http_client* is omitted the provider creates one and closes it
        in ``aclose``; a caller-supplied client is left open.
        """
        owned = None
        if http_client is None:
            http_client = owned = httpx.AsyncClient(timeout=DEFAULT_HTTP_TIMEOUT)

        impersonation = None
        if config.service_account_impersonation_url is not None:
            impersonation = ImpersonationClient(
                url=config.service_account_impersonation_url,
                service_account=config.service_account_email or "",
                scopes=config.scopes,
                lifetime_seconds=config.impersonation_lifetime_seconds,
                http_client=http_client,
                clock=clock,
            )

        return cls(
            config=config,
            subject_token_source=(
                subject_token_source or build_subject_token_source(config, http_client)
            ),
            exchanger=StsTokenExchanger(http_client, clock=clock),
            impersonation_client=impersonation,
            clock=clock,
            refresh_timeout=refresh_timeout,
            owned_http_client=owned,
        )

    @property
    def config(self) -> CredentialConfiguration:
        return self._config

    @property
    def cached_token(self) -> AccessToken | None:
        """The latest token produced, valid or not."""
        return self._cache.current

    async def get_access_token(self, timeout: float | None = None) -> AccessToken:
        """Return a token valid at the time of the call.

        *timeout* bounds how long this caller waits for a refresh; it does not
        cancel a refresh other callers are waiting on.

        Raises a ``CredentialError`` subclass describing the failed stage, or
        ``TimeoutError`` when *timeout* elapses first.
        """
        token = self._cache.get(self._clock())
        if token is not None:
            return token
        if self._fatal_error is not None:
            raise self._fatal_error

        # No await between the check and the assignment: this is the refresh
        # critical section on the event loop.
        refresh = self._refresh_task
        if refresh is None or refresh.done():
            refresh = asyncio.get_running_loop().create_task(
                self._refresh(), name="wif-token-refresh"
            )
            refresh.add_done_callback(self._refresh_done)
            self._refresh_task = refresh

        async with asyncio.timeout(timeout):
            return await asyncio.shield(refresh)

    async def aclose(self) -> None:
        refresh = self._refresh_task
        if refresh is not None and not refresh.done():
            refresh.cancel()
        if self._owned_http_client is not None:
            await self._owned_http_client.aclose()

    async def __aenter__(self) -> CredentialProvider:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    # -- private helpers -------------------------------------------------------

    async def _refresh(self) -> AccessToken:
        try:
            token = await self._produce_token()
        except CredentialError as exc:
            self._record_failure(exc)
            raise

        self._invalid_grant_count = 0
        self._cache.store(token)
        logger.info(
            "Cached access token %s (expires %s, impersonated_account=%s)",
            redact_token(token.token),
            token.expiry.isoformat(),
            token.impersonated_account or "(none)",
        )
        return token

    async def _produce_token(self) -> AccessToken:
        try:
            async with asyncio.timeout(self._refresh_timeout):
                subject_token = await self._source.fetch()
                federated = await self._exchanger.exchange(self._config, subject_token)
                if self._impersonation is None:
                    token = AccessToken.from_federated(federated)
                else:
                    impersonated = await self._impersonation.impersonate(federated)
                    token = AccessToken.from_impersonated(impersonated)
        except TimeoutError as exc:
            raise CredentialError(
                f"Token refresh did not finish within {self._refresh_timeout}s"
            ) from exc

        if not token.is_valid(self._clock()):
            raise ProtocolError(
                f"Issued token expires at {token.expiry.isoformat()}, "
                "inside the safety margin; refusing to hand it out"
            )
        return token

    def _record_failure(self, exc: CredentialError) -> None:
        if isinstance(exc, ConfigurationError):
            self._fatal_error = exc
            logger.error(
                "Permanent configuration error, no further refresh attempts: %s",
                format_error_chain(exc),
            )
            return
        if isinstance(exc, ExchangeError) and exc.oauth_error == "invalid_grant":
            self._invalid_grant_count += 1
            logger.error(
                "STS rejected the subject token with invalid_grant "
                "(%d consecutive); check the pool provider's attribute mapping "
                "and condition for audience=%s: %s",
                self._invalid_grant_count,
                self._config.audience,
                exc.error_description or exc.body,
            )
            return
        logger.warning("Token refresh failed: %s", format_error_chain(exc))

    def _refresh_done(self, task: asyncio.Task[AccessToken]) -> None:
        if self._refresh_task is task:
            self._refresh_task = None
        if not task.cancelled():
            # Every waiter may have given up already; the failure is logged.
            task.exception()
