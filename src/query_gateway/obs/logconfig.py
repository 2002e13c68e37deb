"""Process-wide logging setup."""

from __future__ import annotations

import logging

from rich.logging import RichHandler

from query_gateway.safety.pii import redact_for_logging


class RedactingFormatter(logging.Formatter):
    """Strips API keys and PII from the rendered message.

    Records themselves are left untouched so other handlers see them as logged.
    """

    def format(self, record: logging.LogRecord) -> str:
        return redact_for_logging(super().format(record))


def configure_logging(level: str = "INFO") -> None:
    handler = RichHandler(rich_tracebacks=True, show_path=False)
    handler.setFormatter(RedactingFormatter("%(name)s | %(message)s", datefmt="[%X]"))
    logging.basicConfig(level=level.upper(), handlers=[handler], force=True)
    # httpx logs full request URLs at INFO.
    logging.getLogger("httpx").setLevel(logging.WARNING)
