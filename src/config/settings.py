"""Application-wide configuration loading and validation."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

SpeechProviderName = Literal["elevenlabs", "elevenlabs_fallback", "azure", "none"]


class Settings(BaseSettings):
    """Centralized environment configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    environment: Literal["local", "dev", "prod"] = Field(default="local")
    log_level: str = Field(default="INFO")

    public_base_url: str | None = Field(
        default=None,
        description="Public base URL for Twilio webhooks (e.g. https://<ngrok>.ngrok-free.app).",
    )

    # Speech recognition
    transcription_language: str = Field(default="cs")
    deepgram_api_key: str | None = Field(default=None)
    deepgram_model: str = Field(default="nova-2")
    deepgram_endpoint: str = Field(default="wss://api.deepgram.com/v1/listen")
    deepgram_interim_results: bool = Field(default=False)
    transcript_confidence_threshold: float = Field(default=0.6, ge=0.0, le=1.0)
    transcript_min_chars: int = Field(
        default=2,
        ge=1,
        description="Shorter final transcripts are treated as noise or echo.",
    )
    transcription_reopen_attempts: int = Field(default=1, ge=0)
    transcription_keepalive_seconds: float = Field(default=5.0, gt=0)

    # LLM connectivity
    llm_provider: Literal["openai", "self_hosted_vllm"] = Field(default="openai")
    llm_endpoint: str | None = Field(
        default=None, description="Base URL override (OpenAI-compatible or vLLM server)."
    )
    llm_api_key: str | None = Field(default=None)
    llm_model: str = Field(default="gpt-4o-mini")
    llm_temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    llm_max_tokens: int = Field(default=100, gt=0)
    response_timeout_seconds: float = Field(default=8.0, gt=0)

    # Conversation policy
    history_max_length: int = Field(default=10, ge=2)
    persona_prompt: str | None = Field(
        default=None,
        description="System prompt; defaults to prompts/persona.txt when unset.",
    )
    greeting_text: str = Field(
        default="Dobrý den! Jsem Jana, váš AI asistent. Jak vám mohu pomoci?"
    )
    fallback_utterances: list[str] = Field(
        default_factory=lambda: [
            "Promiňte, došlo k technické chybě.",
            "Omlouvám se, můžete to prosím zopakovat?",
            "Promiňte, teď jsem vám nerozuměla. Zkuste to prosím znovu.",
        ]
    )
    end_of_speech_mark: str = Field(default="bot_finished_speaking")

    # Text to speech
    tts_primary_provider: SpeechProviderName = Field(default="elevenlabs")
    tts_fallback_provider: SpeechProviderName = Field(default="elevenlabs_fallback")
    elevenlabs_api_key: str | None = Field(default=None)
    elevenlabs_voice_id: str | None = Field(default=None)
    elevenlabs_model_id: str = Field(default="eleven_turbo_v2_5")
    elevenlabs_fallback_model_id: str = Field(default="eleven_multilingual_v2")
    elevenlabs_fallback_voice_id: str | None = Field(
        default=None, description="Defaults to the primary voice when unset."
    )
    elevenlabs_base_url: str = Field(default="https://api.elevenlabs.io")
    tts_sample_rate: int = Field(
        default=16000, description="PCM sample rate requested from the TTS provider."
    )
    azure_speech_key: str | None = Field(default=None)
    azure_speech_region: str | None = Field(default=None)
    azure_voice: str = Field(default="cs-CZ-VlastaNeural")

    # Outbound audio pacing
    outbound_chunk_size: int = Field(
        default=3200,
        gt=0,
        description="Max mu-law bytes per outbound media frame (8 bytes per ms).",
    )
    inter_chunk_delay_seconds: float = Field(default=0.025, ge=0.0)

    @field_validator("fallback_utterances")
    @classmethod
    def ensure_fallbacks(cls, value: list[str]) -> list[str]:
        cleaned = [item.strip() for item in value if item.strip()]
        if not cleaned:
            raise ValueError("At least one fallback utterance must be configured.")
        return cleaned


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached Settings instance."""

    return Settings()
