"""Shared fixtures for tests."""

from __future__ import annotations

import asyncio
import datetime
from typing import Any

import httpx
import pytest

from wif_broker.config.configuration import (
    CredentialConfiguration,
    FileSourceConfig,
    MetadataSourceConfig,
    SignedRequestSourceConfig,
    SubjectTokenType,
    impersonation_url_for,
)

AUDIENCE = (
    "//iam.googleapis.com/projects/123/locations/global/"
    "workloadIdentityPools/p1/providers/aws1"
)
AZURE_AUDIENCE = (
    "//iam.googleapis.com/projects/123/locations/global/"
    "workloadIdentityPools/p1/providers/azure1"
)
SERVICE_ACCOUNT = "app@my-project.iam.gserviceaccount.com"
METADATA_URL = "http://169.254.129.5:8081/msi/token"
T0 = datetime.datetime(2025, 1, 1, 12, 0, 0, tzinfo=datetime.UTC)


class FakeClock:
    """Injectable clock that only moves when told to."""

    def __init__(self, start: datetime.datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime.datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += datetime.timedelta(seconds=seconds)


def _response(status: int, body: Any) -> httpx.Response:
    if isinstance(body, (dict, list)):
        return httpx.Response(status, json=body)
    return httpx.Response(status, text=body)


class FakeGoogleApis:
    """Answers STS, IAM Credentials and metadata requests; records every call.

    Bodies default to a successful answer; set ``*_status`` / ``*_body`` to
    script failures.  Setting ``gate`` to an ``asyncio.Event`` parks every
    request (after it has been recorded) until the event is set.
    """

    def __init__(self, clock: FakeClock) -> None:
        self.clock = clock
        self.sts_calls: list[httpx.Request] = []
        self.impersonation_calls: list[httpx.Request] = []
        self.metadata_calls: list[httpx.Request] = []
        self.sts_status = 200
        self.sts_body: Any = None
        self.impersonation_status = 200
        self.impersonation_body: Any = None
        self.metadata_status = 200
        self.metadata_body: Any = {"access_token": "azure-subject-jwt"}
        self.gate: asyncio.Event | None = None

    @property
    def total_calls(self) -> int:
        return len(self.sts_calls) + len(self.impersonation_calls) + len(self.metadata_calls)

    async def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.host == "sts.googleapis.com":
            self.sts_calls.append(request)
            await self._wait()
            body = self.sts_body
            if body is None:
                body = {
                    "access_token": f"federated-{len(self.sts_calls)}",
                    "issued_token_type": "urn:ietf:params:oauth:token-type:access_token",
                    "token_type": "Bearer",
                    "expires_in": 3600,
                }
            return _response(self.sts_status, body)

        if request.url.path.endswith(":generateAccessToken"):
            self.impersonation_calls.append(request)
            await self._wait()
            body = self.impersonation_body
            if body is None:
                expire = self.clock() + datetime.timedelta(hours=1)
                body = {
                    "accessToken": f"impersonated-{len(self.impersonation_calls)}",
                    "expireTime": expire.isoformat().replace("+00:00", "Z"),
                }
            return _response(self.impersonation_status, body)

        if str(request.url).startswith(METADATA_URL):
            self.metadata_calls.append(request)
            await self._wait()
            return _response(self.metadata_status, self.metadata_body)

        return httpx.Response(404, text="not found")

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    async def _wait(self) -> None:
        if self.gate is not None:
            await self.gate.wait()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def google(clock: FakeClock) -> FakeGoogleApis:
    return FakeGoogleApis(clock)


@pytest.fixture
def aws_config() -> CredentialConfiguration:
    return CredentialConfiguration(
        audience=AUDIENCE,
        subject_token_type=SubjectTokenType.AWS4_REQUEST,
        credential_source=SignedRequestSourceConfig(region="us-east-1"),
    )


@pytest.fixture
def azure_config() -> CredentialConfiguration:
    return CredentialConfiguration(
        audience=AZURE_AUDIENCE,
        subject_token_type=SubjectTokenType.JWT,
        credential_source=MetadataSourceConfig(
            url=METADATA_URL,
            headers={"X-IDENTITY-HEADER": "xsrf-secret"},
            resource="api://wif-app",
            query_params={"api-version": "2019-08-01"},
            subject_token_field_name="access_token",
        ),
    )


@pytest.fixture
def azure_impersonating_config() -> CredentialConfiguration:
    return CredentialConfiguration(
        audience=AZURE_AUDIENCE,
        subject_token_type=SubjectTokenType.JWT,
        credential_source=MetadataSourceConfig(
            url=METADATA_URL,
            headers={"X-IDENTITY-HEADER": "xsrf-secret"},
            resource="api://wif-app",
            query_params={"api-version": "2019-08-01"},
        ),
        service_account_impersonation_url=impersonation_url_for(SERVICE_ACCOUNT),
    )


@pytest.fixture
def file_config(tmp_path) -> CredentialConfiguration:
    token_file = tmp_path / "token.jwt"
    token_file.write_text("file-subject-jwt\n")
    return CredentialConfiguration(
        audience=AZURE_AUDIENCE,
        subject_token_type=SubjectTokenType.JWT,
        credential_source=FileSourceConfig(path=str(token_file)),
    )
