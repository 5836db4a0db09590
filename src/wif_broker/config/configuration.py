"""Validated, immutable description of a workload identity federation exchange.

Pattern: Validate Once, Trust Thereafter
-----------------------------------------
A ``CredentialConfiguration`` is built once at startup and handed to the
provider.  Every field is checked in ``__post_init__`` so that a bad audience
or a malformed URL fails the process immediately with a ``ConfigurationError``
naming the field, before any network call is attempted.  After
construction the object is frozen and carries no network state, so it can be
shared freely between tasks.

The credential source is a closed set of variants, one dataclass per kind:

  - ``SignedRequestSourceConfig``: AWS, a SigV4-signed GetCallerIdentity call.
  - ``MetadataSourceConfig``: a local/platform token endpoint (Azure
    managed identity and similar).
  - ``FileSourceConfig``: a token file written by the platform.
"""

from __future__ import annotations

import dataclasses
import enum
import re
import types
import urllib.parse
from typing import Any, Mapping, Union

from wif_broker.errors import ConfigurationError

DEFAULT_TOKEN_URL = "https://sts.googleapis.com/v1/token"
CLOUD_PLATFORM_SCOPE = "https://www.googleapis.com/auth/cloud-platform"
IAM_CREDENTIALS_URL = (
    "https://iamcredentials.googleapis.com/v1/projects/-/serviceAccounts/"
    "{email}:generateAccessToken"
)
DEFAULT_AWS_VERIFICATION_URL = (
    "https://sts.{region}.amazonaws.com?Action=GetCallerIdentity&Version=2011-06-15"
)

# generateAccessToken accepts lifetimes between 10 minutes and 12 hours.
MIN_IMPERSONATION_LIFETIME = 600
MAX_IMPERSONATION_LIFETIME = 43200

_AWS_REGION_RE = re.compile(r"^[a-z]{2}(-gov|-iso[a-z]*)?-[a-z]+-\d+$")
_IMPERSONATION_URL_RE = re.compile(r"/serviceAccounts/(?P<email>[^/:]+):generateAccessToken$")


class SubjectTokenType(str, enum.Enum):
    """URNs accepted by Google STS as ``subject_token_type``."""

    AWS4_REQUEST = "urn:ietf:params:aws:token-type:aws4_request"
    JWT = "urn:ietf:params:oauth:token-type:jwt"
    ID_TOKEN = "urn:ietf:params:oauth:token-type:id_token"
    SAML2 = "urn:ietf:params:oauth:token-type:saml2"


def impersonation_url_for(service_account_email: str) -> str:
    """Return the IAM Credentials ``generateAccessToken`` URL for an account."""
    if not service_account_email or "@" not in service_account_email:
        raise ConfigurationError(
            "service_account_email",
            f"not a service account email: {service_account_email!r}",
        )
    return IAM_CREDENTIALS_URL.format(email=service_account_email)


def _require_https(field: str, url: str) -> None:
    parsed = urllib.parse.urlparse(url)
    if parsed.scheme != "https" or not parsed.hostname:
        raise ConfigurationError(field, f"must be an https URL, got {url!r}")


@dataclasses.dataclass(frozen=True)
class SignedRequestSourceConfig:
    """Parameters for the AWS signed GetCallerIdentity subject token.

    Attributes:
        region:                         AWS region.  ``None`` resolves it from
                                        the ambient AWS configuration at fetch
                                        time (``AWS_REGION`` and friends).
        regional_cred_verification_url: URL template with a ``{region}``
                                        placeholder.
        environment_id:                 Source environment version; only
                                        ``aws1`` exists.
    """

    region: str | None = None
    regional_cred_verification_url: str = DEFAULT_AWS_VERIFICATION_URL
    environment_id: str = "aws1"

    def __post_init__(self) -> None:
        if self.environment_id != "aws1":
            raise ConfigurationError(
                "credential_source.environment_id",
                f"unsupported AWS environment version {self.environment_id!r}",
            )
        if "{region}" not in self.regional_cred_verification_url:
            raise ConfigurationError(
                "credential_source.regional_cred_verification_url",
                "must contain a {region} placeholder",
            )
        _require_https(
            "credential_source.regional_cred_verification_url",
            self.regional_cred_verification_url.replace("{region}", "us-east-1"),
        )
        if self.region is not None:
            validate_aws_region(self.region)

    def verification_url(self, region: str) -> str:
        return self.regional_cred_verification_url.replace("{region}", region)


def validate_aws_region(region: str) -> str:
    if not region or not _AWS_REGION_RE.match(region):
        raise ConfigurationError("credential_source.region", f"not an AWS region: {region!r}")
    return region


@dataclasses.dataclass(frozen=True)
class MetadataSourceConfig:
    """Parameters for a metadata-endpoint subject token.

    Attributes:
        url:                      Endpoint URL (local endpoints may be plain http).
        headers:                  Extra request headers, e.g. an XSRF header.
        resource:                 Target resource/audience sent as a query
                                  parameter; omitted when ``None``.
        resource_parameter:       Name of that query parameter.
        query_params:             Additional fixed query parameters.
        subject_token_field_name: JSON field holding the token; ``None`` means
                                  the response body is the token itself.
        method:                   ``GET`` or ``POST``.
    """

    url: str
    headers: Mapping[str, str] = dataclasses.field(default_factory=dict)
    resource: str | None = None
    resource_parameter: str = "resource"
    query_params: Mapping[str, str] = dataclasses.field(default_factory=dict)
    subject_token_field_name: str | None = "access_token"
    method: str = "GET"

    def __post_init__(self) -> None:
        parsed = urllib.parse.urlparse(self.url or "")
        if parsed.scheme not in ("http", "https") or not parsed.hostname:
            raise ConfigurationError(
                "credential_source.url", f"must be an http(s) URL, got {self.url!r}"
            )
        method = (self.method or "").upper()
        if method not in ("GET", "POST"):
            raise ConfigurationError(
                "credential_source.method", f"must be GET or POST, got {self.method!r}"
            )
        if self.subject_token_field_name is not None and not self.subject_token_field_name:
            raise ConfigurationError(
                "credential_source.format.subject_token_field_name", "must not be empty"
            )
        object.__setattr__(self, "method", method)
        object.__setattr__(self, "headers", types.MappingProxyType(dict(self.headers)))
        object.__setattr__(self, "query_params", types.MappingProxyType(dict(self.query_params)))


@dataclasses.dataclass(frozen=True)
class FileSourceConfig:
    """Parameters for a subject token read from a local file."""

    path: str
    subject_token_field_name: str | None = None

    def __post_init__(self) -> None:
        if not self.path:
            raise ConfigurationError("credential_source.file", "must be set")


CredentialSource = Union[SignedRequestSourceConfig, MetadataSourceConfig, FileSourceConfig]


@dataclasses.dataclass(frozen=True)
class CredentialConfiguration:
    """Everything needed to turn a platform identity into a Google access token.

    Attributes:
        audience:            Workload identity pool provider resource name.
        subject_token_type:  URN describing the subject token.
        credential_source:   Where the subject token comes from.
        token_url:           Google STS token endpoint.
        service_account_impersonation_url:
                             ``generateAccessToken`` URL; ``None`` disables
                             impersonation and hands out the federated token.
        scopes:              Scopes requested from STS and impersonation.
        impersonation_lifetime_seconds:
                             Requested lifetime of impersonated tokens.
        require_impersonation:
                             Deployment policy: refuse configurations that
                             would hand out a bare federated token.
    """

    audience: str
    subject_token_type: SubjectTokenType
    credential_source: CredentialSource
    token_url: str = DEFAULT_TOKEN_URL
    service_account_impersonation_url: str | None = None
    scopes: tuple[str, ...] = (CLOUD_PLATFORM_SCOPE,)
    impersonation_lifetime_seconds: int = 3600
    require_impersonation: bool = False

    def __post_init__(self) -> None:
        try:
            token_type = SubjectTokenType(self.subject_token_type)
        except ValueError:
            raise ConfigurationError(
                "subject_token_type", f"unsupported token type {self.subject_token_type!r}"
            ) from None
        object.__setattr__(self, "subject_token_type", token_type)
        object.__setattr__(self, "scopes", tuple(self.scopes))

        self._validate_source()
        self._validate_audience()
        _require_https("token_url", self.token_url)

        if self.service_account_impersonation_url is not None:
            _require_https(
                "service_account_impersonation_url", self.service_account_impersonation_url
            )
            if not _IMPERSONATION_URL_RE.search(self.service_account_impersonation_url):
                raise ConfigurationError(
                    "service_account_impersonation_url",
                    "must end in /serviceAccounts/<email>:generateAccessToken",
                )
        elif self.require_impersonation:
            raise ConfigurationError(
                "service_account_impersonation_url",
                "impersonation is required but no service account is configured",
            )

        if not self.scopes or not all(self.scopes):
            raise ConfigurationError("scopes", "at least one non-empty scope is required")
        if not (
            MIN_IMPERSONATION_LIFETIME
            <= self.impersonation_lifetime_seconds
            <= MAX_IMPERSONATION_LIFETIME
        ):
            raise ConfigurationError(
                "impersonation_lifetime_seconds",
                f"must be between {MIN_IMPERSONATION_LIFETIME} and "
                f"{MAX_IMPERSONATION_LIFETIME}, got {self.impersonation_lifetime_seconds}",
            )

    @property
    def service_account_email(self) -> str | None:
        if self.service_account_impersonation_url is None:
            return None
        match = _IMPERSONATION_URL_RE.search(self.service_account_impersonation_url)
        return urllib.parse.unquote(match.group("email")) if match else None

    # -- constructors ----------------------------------------------------------

    @classmethod
    def from_info(cls, info: Mapping[str, Any], **overrides: Any) -> CredentialConfiguration:
        """Build a configuration from an ``external_account`` credential document.

        This is the JSON format produced by ``gcloud iam workload-identity-pools
        create-cred-config``.  Keyword *overrides* replace top-level fields.
        """
        if not isinstance(info, Mapping):
            raise ConfigurationError("type", "credential configuration must be a mapping")
        if info.get("type", "external_account") != "external_account":
            raise ConfigurationError(
                "type", f"expected 'external_account', got {info.get('type')!r}"
            )

        source_info = info.get("credential_source")
        if not isinstance(source_info, Mapping):
            raise ConfigurationError("credential_source", "must be set")

        impersonation = _mapping(info, "service_account_impersonation")
        kwargs: dict[str, Any] = {
            "audience": _string(info, "audience") or "",
            "subject_token_type": _string(info, "subject_token_type") or "",
            "credential_source": _source_from_info(source_info),
            "token_url": _string(info, "token_url") or DEFAULT_TOKEN_URL,
            "service_account_impersonation_url": _string(
                info, "service_account_impersonation_url"
            ),
        }
        if "token_lifetime_seconds" in impersonation:
            kwargs["impersonation_lifetime_seconds"] = _seconds(
                impersonation["token_lifetime_seconds"],
                "service_account_impersonation.token_lifetime_seconds",
            )
        scopes = info.get("scopes")
        if scopes:
            if isinstance(scopes, str) or not isinstance(scopes, (list, tuple)):
                raise ConfigurationError("scopes", "must be a list of scope strings")
            if not all(isinstance(scope, str) for scope in scopes):
                raise ConfigurationError("scopes", "every scope must be a string")
            kwargs["scopes"] = tuple(scopes)
        kwargs.update(overrides)
        return cls(**kwargs)

    # -- private helpers -------------------------------------------------------

    def _validate_source(self) -> None:
        source = self.credential_source
        if isinstance(source, SignedRequestSourceConfig):
            if self.subject_token_type is not SubjectTokenType.AWS4_REQUEST:
                raise ConfigurationError(
                    "subject_token_type",
                    f"AWS sources require {SubjectTokenType.AWS4_REQUEST.value}",
                )
        elif isinstance(source, (MetadataSourceConfig, FileSourceConfig)):
            if self.subject_token_type is SubjectTokenType.AWS4_REQUEST:
                raise ConfigurationError(
                    "subject_token_type",
                    "aws4_request tokens can only come from an AWS source",
                )
        else:
            raise ConfigurationError(
                "credential_source", f"unsupported source type {type(source).__name__}"
            )

    def _validate_audience(self) -> None:
        audience = (self.audience or "").strip()
        if not audience:
            raise ConfigurationError("audience", "must be set")
        if isinstance(self.credential_source, SignedRequestSourceConfig):
            if not audience.startswith(("//", "https://")):
                raise ConfigurationError(
                    "audience",
                    "must be a workload identity pool provider name starting "
                    "with '//' or 'https://'",
                )
        elif not audience.startswith("//"):
            raise ConfigurationError(
                "audience",
                "must be a workload identity pool provider name starting with '//' "
                "(without https: prefix)",
            )


def _source_from_info(source: Mapping[str, Any]) -> CredentialSource:
    prefix = "credential_source"
    fmt = _mapping(source, "format", prefix)
    fmt_type = _string(fmt, "type", f"{prefix}.format") or "text"
    if fmt_type not in ("json", "text"):
        raise ConfigurationError(
            f"{prefix}.format.type", f"must be 'json' or 'text', got {fmt_type!r}"
        )
    field_name = (
        _string(fmt, "subject_token_field_name", f"{prefix}.format") if fmt_type == "json" else None
    )

    if "environment_id" in source:
        return SignedRequestSourceConfig(
            region=_string(source, "region", prefix),
            regional_cred_verification_url=(
                _string(source, "regional_cred_verification_url", prefix)
                or DEFAULT_AWS_VERIFICATION_URL
            ),
            environment_id=_string(source, "environment_id", prefix) or "",
        )
    if "file" in source:
        return FileSourceConfig(
            path=_string(source, "file", prefix) or "", subject_token_field_name=field_name
        )
    if "url" in source:
        parsed = urllib.parse.urlsplit(_string(source, "url", prefix) or "")
        headers = _mapping(source, "headers", prefix)
        if not all(isinstance(k, str) and isinstance(v, str) for k, v in headers.items()):
            raise ConfigurationError(f"{prefix}.headers", "header names and values must be strings")
        return MetadataSourceConfig(
            url=urllib.parse.urlunsplit(parsed._replace(query="")),
            headers=headers,
            query_params=dict(urllib.parse.parse_qsl(parsed.query)),
            subject_token_field_name=field_name,
        )
    raise ConfigurationError(
        "credential_source", "expected one of 'environment_id', 'file' or 'url'"
    )


def _qualified(prefix: str, key: str) -> str:
    return f"{prefix}.{key}" if prefix else key


def _string(info: Mapping[str, Any], key: str, prefix: str = "") -> str | None:
    value = info.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ConfigurationError(
            _qualified(prefix, key), f"must be a string, got {type(value).__name__}"
        )
    return value


def _mapping(info: Mapping[str, Any], key: str, prefix: str = "") -> Mapping[str, Any]:
    value = info.get(key)
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigurationError(
            _qualified(prefix, key), f"must be a mapping, got {type(value).__name__}"
        )
    return value


def _seconds(value: Any, field: str) -> int:
    # JSON documents sometimes carry numbers as strings; "3600" is accepted, "1h" is not.
    if isinstance(value, str) and value.strip().isdigit():
        return int(value)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigurationError(field, f"must be a whole number of seconds, got {value!r}")
    return value
