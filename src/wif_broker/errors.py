"""Error taxonomy for the credential-exchange engine.

Pattern: Fatal vs. Retryable Failures
--------------------------------------
Every failure surfaced by the engine is a ``CredentialError``.  The class
hierarchy mirrors the stage that failed (configuration, subject-token
acquisition, token exchange, impersonation) and each instance answers one
question for its caller through ``retryable``: will the same call succeed later
without an operator changing anything?

Lower layers always raise with ``from exc`` so the full cause chain reaches
whoever logs it.  Server response bodies are kept verbatim on the exception
because they carry the real diagnosis (``invalid_grant``, a missing IAM
binding, ...).
"""

from __future__ import annotations


class CredentialError(Exception):
    """Base class for every failure raised while producing an access token."""

    retryable: bool = True


class ConfigurationError(CredentialError):
    """Raised when static configuration is missing or malformed.

    Permanent: retrying without changing the configuration cannot succeed.
    """

    retryable = False

    def __init__(self, field: str, message: str) -> None:
        super().__init__(f"{field}: {message}")
        self.field = field


class SubjectTokenError(CredentialError):
    """Raised when the platform identity assertion cannot be obtained."""


class SigningError(SubjectTokenError):
    """Raised when the caller-identity request cannot be signed."""


class SourceUnavailableError(SubjectTokenError):
    """Raised when a metadata endpoint cannot be reached or answers non-2xx."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        body: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class SourceFormatError(SubjectTokenError):
    """Raised when a source answered but the token could not be extracted."""


class SourceFileError(SubjectTokenError, OSError):
    """Raised when a subject-token file cannot be read."""


class ExchangeError(CredentialError):
    """Raised when the STS token exchange is rejected.

    Attributes:
        status_code:       HTTP status, or ``None`` for transport failures.
        body:              Raw response body as returned by the server.
        oauth_error:       OAuth ``error`` code parsed from the body, if any.
        error_description: OAuth ``error_description``, if any.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        body: str | None = None,
        oauth_error: str | None = None,
        error_description: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body
        self.oauth_error = oauth_error
        self.error_description = error_description

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        # invalid_grant means the pool provider does not trust the assertion;
        # retrying will keep failing until someone fixes the trust setup.
        return self.oauth_error != "invalid_grant"


class ProtocolError(CredentialError):
    """Raised when a 2xx response does not carry the fields the protocol requires."""


class ImpersonationError(CredentialError):
    """Raised when ``generateAccessToken`` rejects the federated identity."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        body: str | None = None,
        service_account: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body
        self.service_account = service_account
