"""Safety gate combining the PII scan with delegated moderation."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from query_gateway.errors import SafetyBlocked
from query_gateway.safety.moderation import Moderator
from query_gateway.safety.pii import scan_for_pii
from query_gateway.types import SafetyFinding

logger = logging.getLogger(__name__)


class SafetyGate:
    """Blocks text that contains PII or that the moderator flags.

    The PII scan is local and cheap; moderation is only called once the scan
    is clear. Moderation failures propagate, so the gate fails closed.
    """

    def __init__(self, moderator: Moderator) -> None:
        self._moderator = moderator

    def evaluate(self, texts: Sequence[str]) -> SafetyFinding:
        texts = [text for text in texts if text and text.strip()]
        if not texts:
            return SafetyFinding(flagged=False)

        matches = scan_for_pii(texts)
        if matches:
            logger.warning(
                "PII detected: %s",
                ", ".join(f"{match.kind}={match.evidence}" for match in matches),
            )
            return SafetyFinding(flagged=True, matches=matches)

        verdicts = self._moderator.moderate(texts)
        moderation_flagged = any(verdicts)
        if moderation_flagged:
            logger.warning("Moderation flagged %d of %d texts", sum(verdicts), len(verdicts))
        return SafetyFinding(flagged=moderation_flagged, moderation_flagged=moderation_flagged)

    def ensure_safe(self, texts: Sequence[str]) -> SafetyFinding:
        finding = self.evaluate(texts)
        if finding.flagged:
            raise SafetyBlocked(
                f"Content blocked by safety gate: {', '.join(finding.kinds)}",
                kinds=finding.kinds,
            )
        return finding
