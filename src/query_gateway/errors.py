"""Error taxonomy shared by admission, safety, query and orchestration layers.

Every error carries an HTTP status and a localized message that is safe to show
to end users. The technical message (``str(exc)``) is meant for logs and for
tool results fed back to the model; it never reaches the end user.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any


class GatewayError(Exception):
    status_code: int = 500
    user_message: str = "Ein Fehler ist aufgetreten. Bitte versuch es erneut."

    def to_tool_result(self) -> dict[str, Any]:
        return {"error": str(self), "errorType": type(self).__name__}


class InvalidRequest(GatewayError):
    status_code = 400
    user_message = "Die Anfrage ist ungültig. Bitte überprüfe deine Eingabe."

    def __init__(self, message: str, *, user_message: str | None = None) -> None:
        super().__init__(message)
        if user_message is not None:
            self.user_message = user_message


class Unauthorized(GatewayError):
    status_code = 401
    user_message = "Nicht autorisiert."


class AdmissionDenied(GatewayError):
    """Base for rate and concurrency rejections; carries a retry hint."""

    status_code = 429
    user_message = "Zu viele Anfragen. Bitte warte einen Moment und versuche es erneut."

    def __init__(self, message: str, *, retry_after: float, headers: dict[str, str] | None = None) -> None:
        super().__init__(message)
        self.retry_after = max(0.0, retry_after)
        self.headers = dict(headers or {})


class RateLimited(AdmissionDenied):
    pass


class ConcurrencyLimited(AdmissionDenied):
    status_code = 503
    user_message = "Der Dienst ist gerade ausgelastet. Bitte versuche es gleich noch einmal."


class SafetyBlocked(GatewayError):
    status_code = 422
    user_message = (
        "Der Text enthält persönliche oder unzulässige Inhalte und kann nicht verarbeitet werden."
    )

    def __init__(self, message: str, *, kinds: Sequence[str] = ()) -> None:
        super().__init__(message)
        self.kinds = list(kinds)


class SchemaResolutionFailed(GatewayError):
    status_code = 404
    user_message = "Die angeforderte Tabelle existiert nicht."

    def __init__(self, message: str, *, available: Sequence[str] = ()) -> None:
        super().__init__(message)
        self.available = list(available)

    def to_tool_result(self) -> dict[str, Any]:
        result = super().to_tool_result()
        if self.available:
            result["availableTables"] = self.available
        return result


class JoinNotResolvable(GatewayError):
    status_code = 422
    user_message = "Die Tabellen konnten nicht verknüpft werden."

    def __init__(self, table: str, join_table: str, attempted: Sequence[str]) -> None:
        self.table = table
        self.join_table = join_table
        self.attempted = list(attempted)
        super().__init__(
            f"Could not resolve a join column between {table!r} and {join_table!r}; "
            f"tried: {', '.join(self.attempted)}. Retry with an explicit joinColumn."
        )

    def to_tool_result(self) -> dict[str, Any]:
        result = super().to_tool_result()
        result["attemptedPatterns"] = self.attempted
        return result


class UnknownTool(GatewayError):
    status_code = 400

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Unknown function: {name}")


class MalformedToolArguments(GatewayError):
    status_code = 400
    user_message = "Die Datenbankabfrage war fehlerhaft. Bitte versuche es erneut."


class QueryExecutionFailed(GatewayError):
    status_code = 502
    user_message = "Die Datenbankabfrage konnte nicht ausgeführt werden. Bitte versuche es erneut."


class UpstreamTimeout(GatewayError):
    status_code = 504
    user_message = "Die Anfrage hat zu lange gedauert. Bitte versuche es erneut."


class UpstreamAuthFailure(GatewayError):
    status_code = 500
    user_message = "Der Dienst ist falsch konfiguriert. Bitte wende dich an den Betreiber."


class UpstreamTransientError(GatewayError):
    status_code = 502
    user_message = (
        "Der Service ist vorübergehend nicht verfügbar. Bitte versuche es später erneut."
    )
