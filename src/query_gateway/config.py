"""Configuration models for the query gateway."""

from __future__ import annotations

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class RoutePolicy(BaseModel):
    """Admission budget for one route family."""

    limit: int = Field(default=30, ge=1)
    window_seconds: float = Field(default=60.0, gt=0.0)
    concurrency: int = Field(default=4, ge=1)


def _default_routes() -> dict[str, RoutePolicy]:
    return {
        "chat": RoutePolicy(limit=30, window_seconds=60.0, concurrency=8),
        "stt": RoutePolicy(limit=20, window_seconds=60.0, concurrency=4),
        "tts": RoutePolicy(limit=30, window_seconds=60.0, concurrency=6),
    }


class AdmissionConfig(BaseModel):
    """Configures per-route rate and concurrency limits."""

    routes: dict[str, RoutePolicy] = Field(default_factory=_default_routes)
    max_tracked_windows: int = Field(default=10_000, ge=1)


class QueryConfig(BaseModel):
    """Configures bounds of the read-only query executor."""

    default_limit: int = Field(default=100, ge=1)
    max_limit: int = Field(default=500, ge=1)
    schema_cache_seconds: float = Field(default=60.0, ge=0.0)
    hidden_tables: list[str] = Field(default_factory=list)
    max_filters: int = Field(default=50, ge=1)
    max_string_length: int = Field(default=10_000, ge=1)
    max_in_items: int = Field(default=1_000, ge=1)


class AgentConfig(BaseModel):
    """Configures the tool-calling loop and its latency target."""

    max_rounds: int = Field(default=5, ge=1)
    target_latency_seconds: float = Field(default=8.0, gt=0.0)
    announcement_max_chars: int = Field(default=160, ge=1)
    max_input_chars: int = Field(default=2_000, ge=1)


class SafetyConfig(BaseModel):
    moderation_model: str = "omni-moderation-latest"


class SpeechConfig(BaseModel):
    """Configures vendor calls for transcription and synthesis."""

    timeout_seconds: float = Field(default=30.0, gt=0.0)
    max_audio_bytes: int = Field(default=10 * 1024 * 1024, ge=1)
    max_text_chars: int = Field(default=5_000, ge=1)
    deepgram_model: str = "nova-2"
    language: str = "de"
    elevenlabs_model: str = "eleven_multilingual_v2"


class GatewaySettings(BaseSettings):
    """Process environment, loaded once at startup."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Secrets come from env / .env only.
    openai_api_key: str | None = None
    openai_model: str = "gpt-4o-mini"
    database_url: str = "sqlite:///./gateway.db"
    internal_api_key: str | None = None
    deepgram_api_key: str | None = None
    elevenlabs_api_key: str | None = None
    elevenlabs_voice_id: str = "21m00Tcm4TlvDq8ikWAM"
    request_timeout: float = 30.0
    log_level: str = "INFO"

    def missing_keys(self) -> list[str]:
        required = {
            "INTERNAL_API_KEY": self.internal_api_key,
            "OPENAI_API_KEY": self.openai_api_key,
            "DEEPGRAM_API_KEY": self.deepgram_api_key,
            "ELEVENLABS_API_KEY": self.elevenlabs_api_key,
        }
        return [name for name, value in required.items() if not value]
