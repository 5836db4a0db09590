"""Token value types shared by every stage of the exchange.

Three hops, three types:

  - ``SubjectToken``: the platform assertion, used once and discarded.
  - ``FederatedToken``: what Google STS issues for the subject token.
  - ``ImpersonatedToken``: what IAM Credentials issues for a service account
    when impersonation is configured.

Whichever of the last two is client-facing becomes an ``AccessToken`` in the
provider's cache.  All expiry timestamps are timezone-aware UTC and have the
safety margin already subtracted, so validity is a plain ``now < expiry``.
"""

from __future__ import annotations

import dataclasses
import datetime
from typing import Callable

Clock = Callable[[], datetime.datetime]

MIN_EXPIRY_MARGIN = datetime.timedelta(seconds=30)


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.UTC)


def expiry_margin(lifetime: datetime.timedelta) -> datetime.timedelta:
    """Return the safety margin for a token with the given *lifetime*.

    The margin absorbs clock skew and in-flight latency: a tenth of the
    lifetime, but never less than 30 seconds.
    """
    return max(MIN_EXPIRY_MARGIN, lifetime / 10)


def effective_expiry(
    issued_at: datetime.datetime, lifetime: datetime.timedelta
) -> datetime.datetime:
    """Absolute expiry of a token issued at *issued_at*, margin subtracted."""
    return issued_at + lifetime - expiry_margin(lifetime)


@dataclasses.dataclass(frozen=True)
class SubjectToken:
    """A platform identity assertion and its declared URN type."""

    value: str
    token_type: str

    def __repr__(self) -> str:
        return f"SubjectToken(token_type={self.token_type!r}, length={len(self.value)})"


@dataclasses.dataclass(frozen=True)
class FederatedToken:
    """A Google STS access token obtained through token exchange."""

    token: str
    expiry: datetime.datetime
    scopes: frozenset[str]
    issued_token_type: str | None = None

    def __repr__(self) -> str:
        return f"FederatedToken(expiry={self.expiry.isoformat()}, scopes={sorted(self.scopes)})"


@dataclasses.dataclass(frozen=True)
class ImpersonatedToken:
    """A service-account access token obtained with a federated token."""

    token: str
    expiry: datetime.datetime
    scopes: frozenset[str]
    service_account: str

    def __repr__(self) -> str:
        return (
            f"ImpersonatedToken(service_account={self.service_account!r}, "
            f"expiry={self.expiry.isoformat()})"
        )


@dataclasses.dataclass(frozen=True)
class AccessToken:
    """The client-facing token held by the provider's cache.

    Attributes:
        token:                Bearer token value.
        expiry:               UTC instant after which the token must not be used.
        scopes:               Scopes granted to the token.
        impersonated_account: Service account email when the token came from
                              impersonation, ``None`` for a federated token.
    """

    token: str
    expiry: datetime.datetime
    scopes: frozenset[str]
    impersonated_account: str | None = None

    def is_valid(self, now: datetime.datetime) -> bool:
        return now < self.expiry

    @classmethod
    def from_federated(cls, federated: FederatedToken) -> AccessToken:
        return cls(token=federated.token, expiry=federated.expiry, scopes=federated.scopes)

    @classmethod
    def from_impersonated(cls, impersonated: ImpersonatedToken) -> AccessToken:
        return cls(
            token=impersonated.token,
            expiry=impersonated.expiry,
            scopes=impersonated.scopes,
            impersonated_account=impersonated.service_account,
        )

    def __repr__(self) -> str:
        return (
            f"AccessToken(expiry={self.expiry.isoformat()}, "
            f"impersonated_account={self.impersonated_account!r})"
        )
