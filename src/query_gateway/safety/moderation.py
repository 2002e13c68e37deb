"""Content moderation collaborators."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any, Protocol

import openai

from query_gateway.errors import UpstreamAuthFailure, UpstreamTimeout, UpstreamTransientError

logger = logging.getLogger(__name__)


class Moderator(Protocol):
    """Classifies texts; returns one flagged boolean per input text."""

    def moderate(self, texts: Sequence[str]) -> list[bool]:
        """Return per-text flagged verdicts in input order."""


class OpenAIModerator:
    """Moderation via the OpenAI moderation endpoint."""

    def __init__(
        self,
        *,
        client: Any | None = None,
        api_key: str | None = None,
        model: str = "omni-moderation-latest",
        timeout: float = 30.0,
    ) -> None:
        self._client = client or openai.OpenAI(api_key=api_key, timeout=timeout, max_retries=0)
        self.model = model

    def moderate(self, texts: Sequence[str]) -> list[bool]:
        if not texts:
            return []
        try:
            response = self._client.moderations.create(model=self.model, input=list(texts))
        except openai.OpenAIError as exc:
            raise map_openai_error(exc, operation="moderation") from exc
        return [bool(result.flagged) for result in response.results]

    def close(self) -> None:
        self._client.close()


def map_openai_error(exc: Exception, *, operation: str) -> Exception:
    """Translate an OpenAI SDK failure into the gateway taxonomy."""

    # APITimeoutError subclasses APIConnectionError, so check it first.
    if isinstance(exc, openai.APITimeoutError):
        logger.error("OpenAI %s timed out", operation)
        return UpstreamTimeout(f"OpenAI {operation} timed out")
    if isinstance(exc, (openai.AuthenticationError, openai.PermissionDeniedError)):
        logger.error("OpenAI %s rejected credentials: %s", operation, exc)
        return UpstreamAuthFailure(f"OpenAI {operation} authentication failed")
    logger.error("OpenAI %s failed: %s", operation, exc)
    return UpstreamTransientError(f"OpenAI {operation} failed: {type(exc).__name__}")
