"""HTTP clients for the speech-to-text and text-to-speech vendors."""

from __future__ import annotations

import logging
from pathlib import PurePath
from typing import Any

import httpx

from query_gateway.config import SpeechConfig
from query_gateway.errors import (
    GatewayError,
    InvalidRequest,
    UpstreamAuthFailure,
    UpstreamTimeout,
    UpstreamTransientError,
)

logger = logging.getLogger(__name__)

DEEPGRAM_API_URL = "https://api.deepgram.com/v1/listen"
ELEVENLABS_API_URL = "https://api.elevenlabs.io/v1/text-to-speech"

_AUDIO_TYPES = {
    ".webm": "audio/webm",
    ".ogg": "audio/ogg",
    ".oga": "audio/ogg",
    ".mp3": "audio/mpeg",
    ".wav": "audio/wav",
    ".m4a": "audio/mp4",
    ".mp4": "audio/mp4",
    ".flac": "audio/flac",
}
_DEFAULT_AUDIO_TYPE = "audio/webm"


def infer_content_type(filename: str | None, declared: str | None = None) -> str:
    """Prefer a declared audio type, else guess from the file extension."""

    if declared and declared.startswith("audio/"):
        return declared.split(";", 1)[0].strip()
    if filename:
        suffix = PurePath(filename).suffix.lower()
        if suffix in _AUDIO_TYPES:
            return _AUDIO_TYPES[suffix]
    return _DEFAULT_AUDIO_TYPE


class DeepgramTranscriber:
    """Transcribes audio with the Deepgram pre-recorded endpoint."""

    def __init__(
        self,
        api_key: str,
        config: SpeechConfig | None = None,
        *,
        client: httpx.Client | None = None,
    ) -> None:
        self.config = config or SpeechConfig()
        self._api_key = api_key
        self._client = client or httpx.Client(timeout=self.config.timeout_seconds)

    def transcribe(self, audio: bytes, content_type: str) -> str:
        if not audio:
            raise InvalidRequest("Audio payload is empty", user_message="Die Audiodatei ist leer.")
        if len(audio) > self.config.max_audio_bytes:
            raise InvalidRequest(
                f"Audio payload of {len(audio)} bytes exceeds limit",
                user_message=(
                    "Audiodatei ist zu groß. Maximale Größe: "
                    f"{self.config.max_audio_bytes // (1024 * 1024)}MB"
                ),
            )

        params = {
            "model": self.config.deepgram_model,
            "language": self.config.language,
            "smart_format": "true",
            "punctuate": "true",
        }
        response = _send(
            self._client,
            "Deepgram",
            "POST",
            DEEPGRAM_API_URL,
            params=params,
            headers={"Authorization": f"Token {self._api_key}", "Content-Type": content_type},
            content=audio,
        )
        payload = response.json()
        transcript = _first_transcript(payload).strip()
        if not transcript:
            raise InvalidRequest(
                "No speech recognized",
                user_message="Keine Sprache erkannt. Bitte sprich lauter oder näher am Mikrofon.",
            )
        return transcript

    def close(self) -> None:
        self._client.close()


class ElevenLabsSynthesizer:
    """Synthesizes German speech as MPEG audio."""

    def __init__(
        self,
        api_key: str,
        voice_id: str,
        config: SpeechConfig | None = None,
        *,
        client: httpx.Client | None = None,
    ) -> None:
        self.config = config or SpeechConfig()
        self.voice_id = voice_id
        self._api_key = api_key
        self._client = client or httpx.Client(timeout=self.config.timeout_seconds)

    def synthesize(self, text: str) -> bytes:
        text = text.strip()
        if not text:
            raise InvalidRequest("Text is empty", user_message="Text darf nicht leer sein.")
        if len(text) > self.config.max_text_chars:
            raise InvalidRequest(
                f"Text of {len(text)} characters exceeds limit",
                user_message=(
                    f"Text ist zu lang. Maximale Länge: {self.config.max_text_chars} Zeichen"
                ),
            )

        response = _send(
            self._client,
            "ElevenLabs",
            "POST",
            f"{ELEVENLABS_API_URL}/{self.voice_id}",
            headers={"Accept": "audio/mpeg", "xi-api-key": self._api_key},
            json={
                "text": text,
                "model_id": self.config.elevenlabs_model,
                "voice_settings": {"stability": 0.65, "similarity_boost": 0.75},
            },
        )
        if not response.content:
            raise UpstreamTransientError("ElevenLabs returned empty audio")
        return response.content

    def close(self) -> None:
        self._client.close()


def _send(client: httpx.Client, vendor: str, method: str, url: str, **kwargs: Any) -> httpx.Response:
    try:
        response = client.request(method, url, **kwargs)
        response.raise_for_status()
    except httpx.TimeoutException as exc:
        logger.error("%s request timed out", vendor)
        raise UpstreamTimeout(f"{vendor} request timed out") from exc
    except httpx.HTTPStatusError as exc:
        raise map_vendor_status(vendor, exc.response.status_code, exc.response.text) from exc
    except httpx.HTTPError as exc:
        logger.error("%s request failed: %s", vendor, exc)
        raise UpstreamTransientError(f"{vendor} request failed: {type(exc).__name__}") from exc
    return response


def map_vendor_status(vendor: str, status_code: int, body: str = "") -> GatewayError:
    """Map a vendor HTTP status to the gateway error taxonomy."""

    logger.error("%s responded with %d: %s", vendor, status_code, body[:300])
    if status_code in (401, 403):
        return UpstreamAuthFailure(f"{vendor} rejected the API key ({status_code})")
    if status_code == 400:
        return InvalidRequest(
            f"{vendor} rejected the request",
            user_message="Ungültiges Format. Bitte versuche es erneut.",
        )
    if status_code == 413:
        return InvalidRequest(
            f"{vendor} rejected the payload size",
            user_message="Die Datei ist zu groß.",
        )
    if status_code in (408, 504):
        return UpstreamTimeout(f"{vendor} timed out ({status_code})")
    return UpstreamTransientError(f"{vendor} responded with {status_code}")


def _first_transcript(payload: Any) -> str:
    try:
        return str(payload["results"]["channels"][0]["alternatives"][0]["transcript"] or "")
    except (KeyError, IndexError, TypeError):
        return ""
