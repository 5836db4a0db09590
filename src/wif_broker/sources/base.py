"""Shared contract for subject-token sources and the factory that picks one.

Every source exposes ``async fetch(timeout=None) -> SubjectToken`` and keeps
no per-call state, so one instance may be awaited from many tasks at once.
The set of sources is closed: the factory maps each credential-source config
class to exactly one implementation.
"""

from __future__ import annotations

from typing import Protocol

import httpx

from wif_broker.config.configuration import (
    CredentialConfiguration,
    FileSourceConfig,
    MetadataSourceConfig,
    SignedRequestSourceConfig,
)
from wif_broker.errors import ConfigurationError
from wif_broker.tokens import SubjectToken


class SubjectTokenSource(Protocol):
    """Produces one fresh subject token per call."""

    async def fetch(self, timeout: float | None = None) -> SubjectToken: ...


def build_subject_token_source(
    config: CredentialConfiguration,
    http_client: httpx.AsyncClient,
) -> SubjectTokenSource:
    """Return the source implementation matching ``config.credential_source``."""
    from wif_broker.sources.file import FileSource
    from wif_broker.sources.metadata import MetadataEndpointSource
    from wif_broker.sources.signed_request import SignedRequestSource

    source = config.credential_source
    if isinstance(source, SignedRequestSourceConfig):
        return SignedRequestSource(
            source, audience=config.audience, token_type=config.subject_token_type.value
        )
    if isinstance(source, MetadataSourceConfig):
        return MetadataEndpointSource(
            source, http_client=http_client, token_type=config.subject_token_type.value
        )
    if isinstance(source, FileSourceConfig):
        return FileSource(source, token_type=config.subject_token_type.value)
    raise ConfigurationError(
        "credential_source", f"unsupported source type {type(source).__name__}"
    )
