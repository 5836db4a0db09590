"""Build a ``CredentialConfiguration`` from environment-style key/value pairs.

Serverless platforms hand their identity plumbing to the process through
environment variables: AWS Lambda sets ``AWS_REGION``, Azure App Service sets
``IDENTITY_ENDPOINT`` and ``IDENTITY_HEADER`` once a managed identity is
assigned.  The deployment adds the ``GOOGLE_WORKLOADIDENTITY_*`` variables.

The loader only reads the mapping it is given (``os.environ`` by default), so
tests and other configuration origins can pass any ``Mapping[str, str]``.
"""

from __future__ import annotations

import logging
import os
from typing import Mapping

from wif_broker.config.configuration import (
    CLOUD_PLATFORM_SCOPE,
    CredentialConfiguration,
    CredentialSource,
    FileSourceConfig,
    MetadataSourceConfig,
    SignedRequestSourceConfig,
    SubjectTokenType,
    impersonation_url_for,
)
from wif_broker.errors import ConfigurationError

logger = logging.getLogger(__name__)

AUDIENCE = "GOOGLE_WORKLOADIDENTITY_AUDIENCE"
SERVICE_ACCOUNT = "GOOGLE_WORKLOADIDENTITY_SERVICEACCOUNT"
REQUIRE_IMPERSONATION = "GOOGLE_WORKLOADIDENTITY_REQUIRE_IMPERSONATION"
SOURCE_KIND = "GOOGLE_WORKLOADIDENTITY_SOURCE"
SCOPES = "GOOGLE_WORKLOADIDENTITY_SCOPES"
APP_ID = "GOOGLE_WORKLOADIDENTITY_APPID"
TOKEN_FILE = "GOOGLE_WORKLOADIDENTITY_TOKEN_FILE"
AWS_REGION = "AWS_REGION"
AWS_DEFAULT_REGION = "AWS_DEFAULT_REGION"
IDENTITY_ENDPOINT = "IDENTITY_ENDPOINT"
IDENTITY_HEADER = "IDENTITY_HEADER"

# Azure App Service managed identity protocol.
AZURE_IDENTITY_HEADER_NAME = "X-IDENTITY-HEADER"
AZURE_API_VERSION = "2019-08-01"

SOURCE_KINDS = ("aws", "azure", "file")

_TRUE_VALUES = {"1", "true", "yes", "on"}


def load_configuration(env: Mapping[str, str] | None = None) -> CredentialConfiguration:
    """Build and validate a configuration from *env* (``os.environ`` by default).

    Raises ``ConfigurationError`` naming the missing or malformed variable.

    For AWS sources without ``AWS_REGION`` or ``AWS_DEFAULT_REGION`` the
    region is left to the boto3 session (shared config, profile) and resolved
    on the first fetch.  A region missing there too fails that fetch with a
    ``ConfigurationError`` on ``credential_source.region``, which the provider
    records as permanent.
    """
    if env is None:
        env = os.environ

    kind = _source_kind(env)
    audience = _get(env, AUDIENCE)
    if not audience:
        raise ConfigurationError(AUDIENCE, "must be set")

    service_account = _get(env, SERVICE_ACCOUNT)
    impersonation_url = impersonation_url_for(service_account) if service_account else None
    require_impersonation = (_get(env, REQUIRE_IMPERSONATION) or "").lower() in _TRUE_VALUES
    if require_impersonation and impersonation_url is None:
        raise ConfigurationError(SERVICE_ACCOUNT, "must be set when impersonation is required")

    source: CredentialSource
    if kind == "aws":
        source = SignedRequestSourceConfig(
            region=_get(env, AWS_REGION) or _get(env, AWS_DEFAULT_REGION),
        )
        token_type = SubjectTokenType.AWS4_REQUEST
    elif kind == "azure":
        source = _azure_source(env)
        token_type = SubjectTokenType.JWT
    else:
        path = _get(env, TOKEN_FILE)
        if not path:
            raise ConfigurationError(TOKEN_FILE, "must be set for file sources")
        source = FileSourceConfig(path=path)
        token_type = SubjectTokenType.JWT

    scopes_raw = _get(env, SCOPES)
    scopes = (
        tuple(s.strip() for s in scopes_raw.split(",") if s.strip())
        if scopes_raw
        else (CLOUD_PLATFORM_SCOPE,)
    )

    config = CredentialConfiguration(
        audience=audience,
        subject_token_type=token_type,
        credential_source=source,
        service_account_impersonation_url=impersonation_url,
        scopes=scopes,
        require_impersonation=require_impersonation,
    )
    logger.info(
        "Loaded workload identity configuration: source=%s, audience=%s, impersonate=%s",
        kind,
        config.audience,
        config.service_account_email or "(none)",
    )
    return config


# -- private helpers -----------------------------------------------------------


def _get(env: Mapping[str, str], key: str) -> str | None:
    value = env.get(key)
    if value is None:
        return None
    value = value.strip()
    return value or None


def _source_kind(env: Mapping[str, str]) -> str:
    kind = _get(env, SOURCE_KIND)
    if kind is None:
        if _get(env, IDENTITY_ENDPOINT):
            return "azure"
        if _get(env, TOKEN_FILE):
            return "file"
        return "aws"
    kind = kind.lower()
    if kind not in SOURCE_KINDS:
        raise ConfigurationError(SOURCE_KIND, f"must be one of {SOURCE_KINDS}, got {kind!r}")
    return kind


def _azure_source(env: Mapping[str, str]) -> MetadataSourceConfig:
    endpoint = _get(env, IDENTITY_ENDPOINT)
    header = _get(env, IDENTITY_HEADER)
    if not endpoint or not header:
        raise ConfigurationError(
            f"{IDENTITY_ENDPOINT}/{IDENTITY_HEADER}",
            "not initialized; the application is not running on Azure App Services "
            "or no managed identity has been assigned",
        )
    app_id = _get(env, APP_ID)
    if not app_id:
        raise ConfigurationError(
            APP_ID,
            "must contain the App ID URI of the Entra ID application trusted by "
            "the workload identity pool provider",
        )
    return MetadataSourceConfig(
        url=endpoint,
        headers={AZURE_IDENTITY_HEADER_NAME: header},
        resource=app_id,
        query_params={"api-version": AZURE_API_VERSION},
        subject_token_field_name="access_token",
    )
