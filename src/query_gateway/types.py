"""Shared domain models."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any


@dataclass(slots=True)
class RateLimitDecision:
    """Outcome of one fixed-window rate check."""

    allowed: bool
    remaining: int
    reset_at: float
    limit: int
    identifier: str

    def retry_after(self, now: float) -> float:
        return max(0.0, self.reset_at - now)


@dataclass(slots=True)
class ConcurrencyAcquisition:
    """Result of a non-blocking slot acquisition."""

    allowed: bool
    active: int
    limit: int
    release: Callable[[], None] = field(default=lambda: None, repr=False)


@dataclass(slots=True)
class SafetyMatch:
    kind: str
    evidence: str


@dataclass(slots=True)
class SafetyFinding:
    """Combined verdict of the PII scan and the moderation call."""

    flagged: bool
    matches: list[SafetyMatch] = field(default_factory=list)
    moderation_flagged: bool = False

    @property
    def kinds(self) -> list[str]:
        kinds = [match.kind for match in self.matches]
        if self.moderation_flagged:
            kinds.append("moderation")
        return list(dict.fromkeys(kinds))


@dataclass(slots=True)
class ToolTrace:
    """Trace record for an executed tool call."""

    name: str
    input_payload: dict[str, Any]
    output_preview: str
    latency_ms: float
    is_error: bool = False
