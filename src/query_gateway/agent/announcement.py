"""Detection of filler announcements the model emits alongside tool calls."""

from __future__ import annotations

from collections.abc import Iterable

DEFAULT_ANNOUNCEMENT_PHRASES: tuple[str, ...] = (
    "einen moment",
    "moment bitte",
    "ich prüfe",
    "ich schaue",
    "ich sehe nach",
    "ich frage",
    "ich suche",
    "lass mich",
    "ich werde",
    "let me check",
    "let me look",
    "one moment",
    "just a moment",
    "i'll check",
    "i will check",
    "checking",
)


class AnnouncementDetector:
    """Predicate: is this text a short "one moment, let me check" preamble?

    Text counts as an announcement when it is short (at most ``max_chars``)
    and contains one of the stock phrases. Longer or phrase-free text is
    treated as substantive and kept verbatim.
    """

    def __init__(
        self,
        *,
        max_chars: int = 160,
        phrases: Iterable[str] = DEFAULT_ANNOUNCEMENT_PHRASES,
    ) -> None:
        self.max_chars = max_chars
        self.phrases = tuple(phrase.lower() for phrase in phrases)

    def __call__(self, text: str) -> bool:
        return self.is_announcement(text)

    def is_announcement(self, text: str) -> bool:
        normalized = " ".join(text.split()).lower()
        if not normalized or len(normalized) > self.max_chars:
            return False
        return any(phrase in normalized for phrase in self.phrases)
