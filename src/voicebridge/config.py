"""Application configuration using environment variables."""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import AliasChoices, AnyHttpUrl, AnyUrl, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

# Resolve the project root once so that `.env` is discovered regardless of CWD
PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent


class Settings(BaseSettings):
    """Load configuration from environment variables and `.env`.

    The instance is frozen: it is built once at startup and handed to the
    session manager, which passes it down to every upstream connection.
    """

    model_config = SettingsConfigDict(
        env_file=str(PROJECT_ROOT / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
        populate_by_name=True,
    )

    # Recognition (Deepgram live transcription)
    recognition_enabled: bool = Field(
        default=True,
        validation_alias=AliasChoices("RECOGNITION_ENABLED", "recognition_enabled"),
    )
    deepgram_api_key: SecretStr | None = Field(
        default=None, validation_alias=AliasChoices("DEEPGRAM_API_KEY")
    )
    deepgram_listen_url: AnyUrl = Field(
        default_factory=lambda: AnyUrl("wss://api.deepgram.com/v1/listen"),
        validation_alias=AliasChoices("DEEPGRAM_LISTEN_URL", "deepgram_listen_url"),
    )
    recognition_language: str = Field(
        default="en",
        validation_alias=AliasChoices("RECOGNITION_LANGUAGE", "recognition_language"),
    )
    recognition_encoding: str = Field(
        default="linear16",
        validation_alias=AliasChoices("RECOGNITION_ENCODING", "recognition_encoding"),
    )
    recognition_sample_rate: int = Field(
        default=16000,
        ge=8000,
        le=48000,
        validation_alias=AliasChoices(
            "RECOGNITION_SAMPLE_RATE", "recognition_sample_rate"
        ),
    )
    recognition_interim_results: bool = Field(
        default=False,
        validation_alias=AliasChoices(
            "RECOGNITION_INTERIM_RESULTS", "recognition_interim_results"
        ),
    )

    # Generation (OpenAI-compatible chat completions)
    openai_api_key: SecretStr | None = Field(
        default=None, validation_alias=AliasChoices("OPENAI_API_KEY")
    )
    openai_base_url: AnyHttpUrl = Field(
        default_factory=lambda: AnyHttpUrl("https://api.openai.com/v1"),
        validation_alias=AliasChoices("OPENAI_BASE_URL", "openai_base_url"),
    )
    generation_model: str = Field(
        default="gpt-4o",
        validation_alias=AliasChoices("GENERATION_MODEL", "generation_model"),
    )
    system_prompt: str = Field(
        default=(
            "You are a friendly voice assistant. Respond naturally, concisely, "
            "and warmly. Your replies are spoken aloud, so avoid markdown and lists."
        ),
        validation_alias=AliasChoices("SYSTEM_PROMPT", "system_prompt"),
    )

    # Synthesis (ElevenLabs stream-input websocket)
    elevenlabs_api_key: SecretStr | None = Field(
        default=None, validation_alias=AliasChoices("ELEVENLABS_API_KEY")
    )
    elevenlabs_voice_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("ELEVENLABS_VOICE_ID", "elevenlabs_voice_id"),
    )
    elevenlabs_url_template: str = Field(
        default="wss://api.elevenlabs.io/v1/text-to-speech/{voice_id}/stream-input",
        validation_alias=AliasChoices(
            "ELEVENLABS_URL_TEMPLATE", "elevenlabs_url_template"
        ),
    )
    elevenlabs_model_id: str = Field(
        default="eleven_multilingual_v2",
        validation_alias=AliasChoices("ELEVENLABS_MODEL_ID", "elevenlabs_model_id"),
    )
    elevenlabs_output_format: str = Field(
        default="pcm_16000",
        validation_alias=AliasChoices(
            "ELEVENLABS_OUTPUT_FORMAT", "elevenlabs_output_format"
        ),
    )
    elevenlabs_optimize_streaming_latency: int = Field(
        default=3,
        ge=0,
        le=4,
        validation_alias=AliasChoices(
            "ELEVENLABS_OPTIMIZE_STREAMING_LATENCY",
            "elevenlabs_optimize_streaming_latency",
        ),
    )
    voice_stability: float = Field(
        default=0.5,
        ge=0.0,
        le=1.0,
        validation_alias=AliasChoices("VOICE_STABILITY", "voice_stability"),
    )
    voice_similarity_boost: float = Field(
        default=0.75,
        ge=0.0,
        le=1.0,
        validation_alias=AliasChoices(
            "VOICE_SIMILARITY_BOOST", "voice_similarity_boost"
        ),
    )

    # Timeouts (seconds)
    upstream_open_timeout: float = Field(
        default=10.0,
        gt=0,
        validation_alias=AliasChoices("UPSTREAM_OPEN_TIMEOUT", "open_timeout"),
    )
    upstream_close_timeout: float = Field(
        default=2.0,
        gt=0,
        validation_alias=AliasChoices("UPSTREAM_CLOSE_TIMEOUT", "close_timeout"),
    )
    generation_completion_timeout: float = Field(
        default=60.0,
        gt=0,
        validation_alias=AliasChoices(
            "GENERATION_COMPLETION_TIMEOUT", "generation_completion_timeout"
        ),
    )
    synthesis_drain_timeout: float = Field(
        default=15.0,
        gt=0,
        validation_alias=AliasChoices(
            "SYNTHESIS_DRAIN_TIMEOUT", "synthesis_drain_timeout"
        ),
    )

    # Queue bounds
    recognition_pre_open_limit: int = Field(
        default=50,
        ge=0,
        validation_alias=AliasChoices(
            "RECOGNITION_PRE_OPEN_LIMIT", "recognition_pre_open_limit"
        ),
    )
    synthesis_pre_open_limit: int = Field(
        default=256,
        ge=0,
        validation_alias=AliasChoices(
            "SYNTHESIS_PRE_OPEN_LIMIT", "synthesis_pre_open_limit"
        ),
    )
    client_send_queue_size: int = Field(
        default=256,
        ge=1,
        validation_alias=AliasChoices("CLIENT_SEND_QUEUE_SIZE", "client_queue_size"),
    )

    # Recognition reconnect policy
    recognition_retry_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        validation_alias=AliasChoices(
            "RECOGNITION_RETRY_ATTEMPTS", "recognition_retry_attempts"
        ),
    )
    recognition_retry_backoff: float = Field(
        default=0.5,
        ge=0,
        validation_alias=AliasChoices(
            "RECOGNITION_RETRY_BACKOFF", "recognition_retry_backoff"
        ),
    )
    recognition_retry_max_backoff: float = Field(
        default=5.0,
        ge=0,
        validation_alias=AliasChoices(
            "RECOGNITION_RETRY_MAX_BACKOFF", "recognition_retry_max_backoff"
        ),
    )

    @property
    def generation_url(self) -> str:
        return f"{str(self.openai_base_url).rstrip('/')}/chat/completions"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached `Settings` instance."""

    return Settings()  # pyright: ignore[reportCallIssue]


__all__ = ["Settings", "get_settings"]
