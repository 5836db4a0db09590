"""Holder for the single latest client-facing token of a provider."""

from __future__ import annotations

import datetime

from wif_broker.tokens import AccessToken


class TokenCache:
    """Keeps exactly one token; a store replaces it wholesale.

    Reads never block: the slot is swapped with a single assignment, so a
    reader sees either the previous token or the new one, never a mix.
    """

    def __init__(self) -> None:
        self._token: AccessToken | None = None

    @property
    def current(self) -> AccessToken | None:
        """The latest token, even if it has expired."""
        return self._token

    def get(self, now: datetime.datetime) -> AccessToken | None:
        """Return the cached token if it is still valid at *now*."""
        token = self._token
        if token is not None and token.is_valid(now):
            return token
        return None

    def store(self, token: AccessToken) -> None:
        self._token = token
