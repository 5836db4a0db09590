"""Subject token read from a file the platform keeps up to date."""

from __future__ import annotations

import asyncio
import json
import logging
import pathlib

from wif_broker.config.configuration import FileSourceConfig
from wif_broker.errors import SourceFileError, SourceFormatError
from wif_broker.tokens import SubjectToken

logger = logging.getLogger(__name__)


class FileSource:
    """Re-reads the token file on every fetch; platforms rotate it in place."""

    def __init__(self, config: FileSourceConfig, token_type: str) -> None:
        self._config = config
        self._path = pathlib.Path(config.path)
        self._token_type = token_type

    async def fetch(self, timeout: float | None = None) -> SubjectToken:
        try:
            async with asyncio.timeout(timeout):
                content = await asyncio.to_thread(self._path.read_text, encoding="utf-8")
        except TimeoutError as exc:
            raise SourceFileError(f"Reading {self._path} did not finish within {timeout}s") from exc
        except OSError as exc:
            raise SourceFileError(f"Cannot read subject token file {self._path}: {exc}") from exc
        except UnicodeDecodeError as exc:
            raise SourceFormatError(f"{self._path} is not UTF-8 text") from exc

        value = self._extract(content)
        logger.debug("Read subject token from %s (%d chars)", self._path, len(value))
        return SubjectToken(value=value, token_type=self._token_type)

    def _extract(self, content: str) -> str:
        field = self._config.subject_token_field_name
        if field is None:
            value = content.strip()
        else:
            try:
                payload = json.loads(content)
            except ValueError as exc:
                raise SourceFormatError(f"{self._path} is not valid JSON") from exc
            value = payload.get(field) if isinstance(payload, dict) else None
            if not isinstance(value, str):
                raise SourceFormatError(f"{self._path} has no string field {field!r}")
        if not value:
            raise SourceFormatError(f"Subject token file {self._path} is empty")
        return value
