"""AWS subject token: a serialized, SigV4-signed GetCallerIdentity request.

Pattern: Deferred Verification
-------------------------------
The workload never calls AWS STS itself.  It signs a ``GetCallerIdentity``
request with whatever credentials the ambient AWS credential chain provides
(Lambda execution role, ECS task role, instance profile, environment) and
hands the *signed request* to Google STS, which replays it against AWS to
learn who the caller is.

The signed headers include ``x-goog-cloud-target-resource`` carrying the
audience, so a signed request captured for one pool provider cannot be
replayed against another.

The envelope Google expects is the percent-encoded form of::

    {"headers": [{"key": "...", "value": "..."}, ...],
     "method": "POST",
     "url": "https://sts.<region>.amazonaws.com?Action=GetCallerIdentity&Version=2011-06-15"}
"""

from __future__ import annotations

import asyncio
import json
import logging
import urllib.parse
from typing import Any, Callable

import boto3
from botocore.auth import SigV4Auth
from botocore.awsrequest import AWSRequest
from botocore.exceptions import BotoCoreError, ClientError

from wif_broker.config.configuration import (
    SignedRequestSourceConfig,
    SubjectTokenType,
    validate_aws_region,
)
from wif_broker.errors import ConfigurationError, SigningError
from wif_broker.tokens import SubjectToken

logger = logging.getLogger(__name__)

TARGET_RESOURCE_HEADER = "x-goog-cloud-target-resource"
_SIGNED_METHOD = "POST"

CredentialsResolver = Callable[[], Any]
RegionResolver = Callable[[], str | None]


def _ambient_credentials() -> Any:
    return boto3.Session().get_credentials()


def _ambient_region() -> str | None:
    return boto3.Session().region_name


class SignedRequestSource:
    """Produces AWS4-signed caller-identity requests bound to one audience."""

    def __init__(
        self,
        config: SignedRequestSourceConfig,
        audience: str,
        token_type: str = SubjectTokenType.AWS4_REQUEST.value,
        credentials_resolver: CredentialsResolver | None = None,
        region_resolver: RegionResolver | None = None,
    ) -> None:
        self._config = config
        self._audience = audience
        self._token_type = token_type
        self._resolve_credentials = credentials_resolver or _ambient_credentials
        self._resolve_region = region_resolver or _ambient_region

    async def fetch(self, timeout: float | None = None) -> SubjectToken:
        # Credential resolution may hit the container or instance metadata
        # service, so it runs off the event loop.
        async with asyncio.timeout(timeout):
            credentials, region = await asyncio.to_thread(self._resolve)
        value = self._sign(credentials, region)
        logger.debug(
            "Signed GetCallerIdentity request: region=%s, access_key=%s...",
            region,
            credentials.access_key[:4],
        )
        return SubjectToken(value=value, token_type=self._token_type)

    # -- private helpers -------------------------------------------------------

    def _resolve(self) -> tuple[Any, str]:
        region = self._config.region or self._resolve_region()
        if not region:
            raise ConfigurationError(
                "credential_source.region",
                "no AWS region configured and none found in the environment "
                "(AWS_REGION / AWS_DEFAULT_REGION)",
            )
        validate_aws_region(region)

        try:
            credentials = self._resolve_credentials()
            if credentials is None:
                raise SigningError("No AWS credentials found in the ambient credential chain")
            # Deferred and refreshable credentials (assume-role, SSO, container
            # roles) fetch or refresh here.  Freezing also pins access key,
            # secret and session token to one refresh.
            frozen = credentials.get_frozen_credentials()
        except (BotoCoreError, ClientError) as exc:
            raise SigningError(f"Resolving ambient AWS credentials failed: {exc}") from exc
        return frozen, region

    def _sign(self, credentials: Any, region: str) -> str:
        url = self._config.verification_url(region)
        host = urllib.parse.urlsplit(url).hostname
        request = AWSRequest(
            method=_SIGNED_METHOD,
            url=url,
            headers={"host": host, TARGET_RESOURCE_HEADER: self._audience},
        )
        # sts.<region>.amazonaws.com -> "sts"
        service_name = host.split(".")[0]
        try:
            SigV4Auth(credentials, service_name, region).add_auth(request)
        except BotoCoreError as exc:
            raise SigningError(f"Signing GetCallerIdentity request failed: {exc}") from exc

        envelope = {
            "url": url,
            "method": _SIGNED_METHOD,
            "headers": [{"key": key, "value": value} for key, value in request.headers.items()],
        }
        return urllib.parse.quote(json.dumps(envelope, separators=(",", ":"), sort_keys=True))
