"""Tests for CredentialConfiguration validation and external_account parsing."""

from __future__ import annotations

import dataclasses

import pytest

from conftest import AUDIENCE, AZURE_AUDIENCE, METADATA_URL, SERVICE_ACCOUNT
from wif_broker.config.configuration import (
    CLOUD_PLATFORM_SCOPE,
    DEFAULT_TOKEN_URL,
    CredentialConfiguration,
    FileSourceConfig,
    MetadataSourceConfig,
    SignedRequestSourceConfig,
    SubjectTokenType,
    impersonation_url_for,
)
from wif_broker.errors import ConfigurationError


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _aws(**overrides) -> CredentialConfiguration:
    kwargs = dict(
        audience=AUDIENCE,
        subject_token_type=SubjectTokenType.AWS4_REQUEST,
        credential_source=SignedRequestSourceConfig(region="us-east-1"),
    )
    kwargs.update(overrides)
    return CredentialConfiguration(**kwargs)


def _jwt(**overrides) -> CredentialConfiguration:
    kwargs = dict(
        audience=AZURE_AUDIENCE,
        subject_token_type=SubjectTokenType.JWT,
        credential_source=MetadataSourceConfig(url=METADATA_URL),
    )
    kwargs.update(overrides)
    return CredentialConfiguration(**kwargs)


# ---------------------------------------------------------------------------
# CredentialConfiguration
# ---------------------------------------------------------------------------

class TestCredentialConfiguration:
    def test_defaults(self) -> None:
        config = _aws()
        assert config.token_url == DEFAULT_TOKEN_URL
        assert config.scopes == (CLOUD_PLATFORM_SCOPE,)
        assert config.service_account_impersonation_url is None
        assert config.service_account_email is None
        assert config.impersonation_lifetime_seconds == 3600

    def test_token_type_string_is_coerced(self) -> None:
        config = _jwt(subject_token_type="urn:ietf:params:oauth:token-type:jwt")
        assert config.subject_token_type is SubjectTokenType.JWT

    def test_immutable(self) -> None:
        config = _aws()
        with pytest.raises(dataclasses.FrozenInstanceError):
            config.audience = "//other"  # type: ignore[misc]

    @pytest.mark.parametrize("audience", ["", "   "])
    def test_missing_audience(self, audience: str) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            _aws(audience=audience)
        assert exc_info.value.field == "audience"
        assert not exc_info.value.retryable

    def test_aws_accepts_https_audience(self) -> None:
        config = _aws(audience="https://iam.googleapis.com/projects/123/locations/global/x")
        assert config.audience.startswith("https://")

    def test_jwt_source_rejects_https_audience(self) -> None:
        with pytest.raises(ConfigurationError, match="audience"):
            _jwt(audience="https://iam.googleapis.com/projects/123/x")

    def test_aws_source_requires_aws_token_type(self) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            _aws(subject_token_type=SubjectTokenType.JWT)
        assert exc_info.value.field == "subject_token_type"

    def test_metadata_source_rejects_aws_token_type(self) -> None:
        with pytest.raises(ConfigurationError, match="subject_token_type"):
            _jwt(subject_token_type=SubjectTokenType.AWS4_REQUEST)

    def test_unknown_token_type(self) -> None:
        with pytest.raises(ConfigurationError, match="unsupported token type"):
            _jwt(subject_token_type="urn:example:unknown")

    def test_token_url_must_be_https(self) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            _aws(token_url="http://sts.googleapis.com/v1/token")
        assert exc_info.value.field == "token_url"

    def test_impersonation_url_shape(self) -> None:
        with pytest.raises(ConfigurationError, match="generateAccessToken"):
            _aws(service_account_impersonation_url="https://iamcredentials.googleapis.com/v1/x")

    def test_service_account_email_from_url(self) -> None:
        config = _aws(service_account_impersonation_url=impersonation_url_for(SERVICE_ACCOUNT))
        assert config.service_account_email == SERVICE_ACCOUNT

    def test_require_impersonation_without_account(self) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            _aws(require_impersonation=True)
        assert exc_info.value.field == "service_account_impersonation_url"

    def test_require_impersonation_with_account(self) -> None:
        config = _aws(
            require_impersonation=True,
            service_account_impersonation_url=impersonation_url_for(SERVICE_ACCOUNT),
        )
        assert config.require_impersonation

    @pytest.mark.parametrize("scopes", [(), ("",)])
    def test_scopes_required(self, scopes: tuple[str, ...]) -> None:
        with pytest.raises(ConfigurationError, match="scope"):
            _aws(scopes=scopes)

    @pytest.mark.parametrize("lifetime", [599, 43201])
    def test_lifetime_range(self, lifetime: int) -> None:
        with pytest.raises(ConfigurationError, match="impersonation_lifetime_seconds"):
            _aws(impersonation_lifetime_seconds=lifetime)


# ---------------------------------------------------------------------------
# Source configs
# ---------------------------------------------------------------------------

class TestSourceConfigs:
    def test_invalid_region(self) -> None:
        with pytest.raises(ConfigurationError, match="not an AWS region"):
            SignedRequestSourceConfig(region="mars-1")

    def test_region_may_be_deferred(self) -> None:
        assert SignedRequestSourceConfig().region is None

    def test_verification_url_needs_placeholder(self) -> None:
        with pytest.raises(ConfigurationError, match="placeholder"):
            SignedRequestSourceConfig(
                regional_cred_verification_url="https://sts.amazonaws.com?Action=GetCallerIdentity"
            )

    def test_verification_url(self) -> None:
        source = SignedRequestSourceConfig()
        assert source.verification_url("eu-west-1") == (
            "https://sts.eu-west-1.amazonaws.com?Action=GetCallerIdentity&Version=2011-06-15"
        )

    def test_unsupported_environment_id(self) -> None:
        with pytest.raises(ConfigurationError, match="environment"):
            SignedRequestSourceConfig(environment_id="aws2")

    def test_metadata_headers_are_read_only(self) -> None:
        headers = {"X-IDENTITY-HEADER": "secret"}
        source = MetadataSourceConfig(url=METADATA_URL, headers=headers)
        headers["X-IDENTITY-HEADER"] = "changed"
        assert source.headers["X-IDENTITY-HEADER"] == "secret"
        with pytest.raises(TypeError):
            source.headers["extra"] = "x"  # type: ignore[index]

    def test_metadata_method_normalized(self) -> None:
        assert MetadataSourceConfig(url=METADATA_URL, method="post").method == "POST"

    def test_metadata_rejects_bad_url(self) -> None:
        with pytest.raises(ConfigurationError, match="credential_source.url"):
            MetadataSourceConfig(url="file:///etc/token")

    def test_file_requires_path(self) -> None:
        with pytest.raises(ConfigurationError):
            FileSourceConfig(path="")


# ---------------------------------------------------------------------------
# external_account documents
# ---------------------------------------------------------------------------

class TestFromInfo:
    def test_aws_document(self) -> None:
        config = CredentialConfiguration.from_info({
            "type": "external_account",
            "audience": AUDIENCE,
            "subject_token_type": "urn:ietf:params:aws:token-type:aws4_request",
            "token_url": "https://sts.googleapis.com/v1/token",
            "service_account_impersonation_url": impersonation_url_for(SERVICE_ACCOUNT),
            "service_account_impersonation": {"token_lifetime_seconds": 1800},
            "credential_source": {
                "environment_id": "aws1",
                "region_url": "http://169.254.169.254/latest/meta-data/placement/availability-zone",
                "regional_cred_verification_url": (
                    "https://sts.{region}.amazonaws.com"
                    "?Action=GetCallerIdentity&Version=2011-06-15"
                ),
            },
        })
        assert isinstance(config.credential_source, SignedRequestSourceConfig)
        assert config.credential_source.region is None
        assert config.service_account_email == SERVICE_ACCOUNT
        assert config.impersonation_lifetime_seconds == 1800

    def test_url_document_splits_query(self) -> None:
        config = CredentialConfiguration.from_info({
            "type": "external_account",
            "audience": AZURE_AUDIENCE,
            "subject_token_type": "urn:ietf:params:oauth:token-type:jwt",
            "credential_source": {
                "url": f"{METADATA_URL}?api-version=2019-08-01&resource=api://app",
                "headers": {"X-IDENTITY-HEADER": "secret"},
                "format": {"type": "json", "subject_token_field_name": "access_token"},
            },
        })
        source = config.credential_source
        assert isinstance(source, MetadataSourceConfig)
        assert source.url == METADATA_URL
        assert dict(source.query_params) == {
            "api-version": "2019-08-01",
            "resource": "api://app",
        }
        assert source.subject_token_field_name == "access_token"

    def test_text_format_reads_raw_body(self) -> None:
        config = CredentialConfiguration.from_info({
            "audience": AZURE_AUDIENCE,
            "subject_token_type": "urn:ietf:params:oauth:token-type:jwt",
            "credential_source": {"url": METADATA_URL, "format": {"type": "text"}},
        })
        assert config.credential_source.subject_token_field_name is None

    def test_file_document(self) -> None:
        config = CredentialConfiguration.from_info({
            "audience": AZURE_AUDIENCE,
            "subject_token_type": "urn:ietf:params:oauth:token-type:id_token",
            "credential_source": {"file": "/var/run/token"},
            "scopes": ["https://www.googleapis.com/auth/devstorage.read_only"],
        })
        assert config.credential_source == FileSourceConfig(path="/var/run/token")
        assert config.scopes == ("https://www.googleapis.com/auth/devstorage.read_only",)

    def test_overrides_win(self) -> None:
        config = CredentialConfiguration.from_info(
            {
                "audience": AZURE_AUDIENCE,
                "subject_token_type": "urn:ietf:params:oauth:token-type:jwt",
                "credential_source": {"file": "/var/run/token"},
            },
            require_impersonation=False,
            impersonation_lifetime_seconds=900,
        )
        assert config.impersonation_lifetime_seconds == 900

    def test_wrong_type(self) -> None:
        with pytest.raises(ConfigurationError, match="external_account"):
            CredentialConfiguration.from_info({"type": "service_account"})

    def test_missing_source(self) -> None:
        with pytest.raises(ConfigurationError, match="credential_source"):
            CredentialConfiguration.from_info({"audience": AZURE_AUDIENCE})

    def test_unknown_source(self) -> None:
        with pytest.raises(ConfigurationError, match="environment_id"):
            CredentialConfiguration.from_info({
                "audience": AZURE_AUDIENCE,
                "subject_token_type": "urn:ietf:params:oauth:token-type:jwt",
                "credential_source": {"executable": {"command": "/bin/token"}},
            })

    def test_not_a_mapping(self) -> None:
        with pytest.raises(ConfigurationError):
            CredentialConfiguration.from_info(["not", "a", "mapping"])  # type: ignore[arg-type]


def _jwt_document(**changes) -> dict:
    doc = {
        "type": "external_account",
        "audience": AZURE_AUDIENCE,
        "subject_token_type": "urn:ietf:params:oauth:token-type:jwt",
        "credential_source": {
            "url": METADATA_URL,
            "headers": {"X-IDENTITY-HEADER": "secret"},
            "format": {"type": "json", "subject_token_field_name": "access_token"},
        },
    }
    for key, value in changes.items():
        if key.startswith("source_"):
            doc["credential_source"][key[len("source_"):]] = value
        else:
            doc[key] = value
    return doc


class TestFromInfoMalformed:
    @pytest.mark.parametrize(
        ("changes", "field"),
        [
            (
                {"service_account_impersonation": {"token_lifetime_seconds": "1h"}},
                "service_account_impersonation.token_lifetime_seconds",
            ),
            (
                {"service_account_impersonation": {"token_lifetime_seconds": True}},
                "service_account_impersonation.token_lifetime_seconds",
            ),
            ({"service_account_impersonation": "3600"}, "service_account_impersonation"),
            ({"source_format": "json"}, "credential_source.format"),
            ({"source_format": {"type": "xml"}}, "credential_source.format.type"),
            (
                {"source_format": {"type": "json", "subject_token_field_name": 7}},
                "credential_source.format.subject_token_field_name",
            ),
            ({"source_headers": ["X-IDENTITY-HEADER"]}, "credential_source.headers"),
            ({"source_headers": {"X-IDENTITY-HEADER": 1}}, "credential_source.headers"),
            ({"source_url": 8081}, "credential_source.url"),
            ({"audience": ["//iam"]}, "audience"),
            ({"token_url": 443}, "token_url"),
            ({"scopes": "https://www.googleapis.com/auth/cloud-platform"}, "scopes"),
            ({"scopes": ["ok", 3]}, "scopes"),
        ],
    )
    def test_names_offending_field(self, changes: dict, field: str) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            CredentialConfiguration.from_info(_jwt_document(**changes))
        assert exc_info.value.field == field

    def test_numeric_string_lifetime_accepted(self) -> None:
        config = CredentialConfiguration.from_info(
            _jwt_document(service_account_impersonation={"token_lifetime_seconds": "1800"})
        )
        assert config.impersonation_lifetime_seconds == 1800

    def test_non_string_file_path(self) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            CredentialConfiguration.from_info({
                "audience": AZURE_AUDIENCE,
                "subject_token_type": "urn:ietf:params:oauth:token-type:jwt",
                "credential_source": {"file": 42},
            })
        assert exc_info.value.field == "credential_source.file"

    def test_non_string_region(self) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            CredentialConfiguration.from_info({
                "audience": AUDIENCE,
                "subject_token_type": "urn:ietf:params:aws:token-type:aws4_request",
                "credential_source": {"environment_id": "aws1", "region": ["us-east-1"]},
            })
        assert exc_info.value.field == "credential_source.region"


class TestImpersonationUrl:
    def test_builds_url(self) -> None:
        assert impersonation_url_for(SERVICE_ACCOUNT) == (
            "https://iamcredentials.googleapis.com/v1/projects/-/serviceAccounts/"
            f"{SERVICE_ACCOUNT}:generateAccessToken"
        )

    def test_rejects_non_email(self) -> None:
        with pytest.raises(ConfigurationError):
            impersonation_url_for("not-an-email")
