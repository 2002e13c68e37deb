"""Deterministic PII detection and log redaction."""

from __future__ import annotations

import re
from collections.abc import Iterable

from query_gateway.types import SafetyMatch

_SECRET_KEY_PATTERN = re.compile(r"sk-[A-Za-z0-9\-_.]{8,}")

# Order matters: redaction applies patterns in sequence.
PII_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("email", re.compile(r"[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}", flags=re.IGNORECASE)),
    ("ssn_like", re.compile(r"\b\d{3}-\d{2}-\d{4}\b")),
    ("credit_card", re.compile(r"\b(?:\d[ .-]*?){13,16}\b")),
    (
        "phone",
        re.compile(r"(?<!\w)(?:\+?\d{1,3}[-.\s]?)?(?:\(?\d{2,4}\)?[-.\s]?)?\d{3,4}[-.\s]?\d{4}\b"),
    ),
)


def scan_for_pii(texts: Iterable[str]) -> list[SafetyMatch]:
    """Return one match per (text, kind) hit, in text order then pattern order."""

    matches: list[SafetyMatch] = []
    for text in texts:
        for kind, pattern in PII_PATTERNS:
            found = pattern.search(text)
            if found:
                matches.append(SafetyMatch(kind=kind, evidence=mask_value(found.group(0))))
    return matches


def mask_value(value: str) -> str:
    compact = value.strip()
    if len(compact) < 6:
        return "***"
    return f"{compact[0]}***{compact[-2:]}"


def redact_for_logging(message: str) -> str:
    """Strip API keys and recognizable identifiers from a log message."""

    redacted = _SECRET_KEY_PATTERN.sub("[redacted-key]", message)
    for kind, pattern in PII_PATTERNS:
        redacted = pattern.sub(f"[redacted-{kind}]", redacted)
    return redacted
