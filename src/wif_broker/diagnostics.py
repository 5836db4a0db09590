"""Helpers for logging credentials and failures without leaking secrets."""

from __future__ import annotations

_PREFIX_LENGTH = 8


def redact_token(token: str | None) -> str:
    """Return a short, non-sensitive prefix of *token* for logs."""
    if not token:
        return "<none>"
    if len(token) <= _PREFIX_LENGTH:
        return "*" * len(token)
    return token[:_PREFIX_LENGTH] + "..."


def error_chain(exc: BaseException) -> list[BaseException]:
    """Return *exc* followed by its causes, outermost first."""
    chain: list[BaseException] = []
    current: BaseException | None = exc
    while current is not None and current not in chain:
        chain.append(current)
        current = current.__cause__ or (
            None if current.__suppress_context__ else current.__context__
        )
    return chain


def format_error_chain(exc: BaseException) -> str:
    """Render *exc* and its causes as ``A, caused by: B, caused by: C``."""
    return ", caused by: ".join(
        f"{type(e).__name__}: {e}" for e in error_chain(exc)
    )
