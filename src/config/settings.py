"""Application-wide configuration loading and validation."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_SYSTEM_PROMPT = (
    "You are an AI assistant on a phone call. Be helpful, concise, and "
    "conversational. Ask questions when needed."
)


class Settings(BaseSettings):
    """Centralized environment configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    environment: Literal["local", "dev", "prod"] = Field(default="local")
    log_level: str = Field(default="INFO")
    cors_allow_origins: list[str] = Field(default_factory=lambda: ["*"])

    # LiveKit rooms / SIP
    livekit_url: str | None = Field(default=None, description="wss:// URL of the LiveKit server.")
    livekit_api_key: str | None = Field(default=None)
    livekit_api_secret: str | None = Field(default=None)
    livekit_sip_trunk_id: str | None = Field(
        default=None,
        description="Outbound SIP trunk used to place calls to phone numbers.",
    )
    room_empty_timeout_seconds: int = Field(default=300)
    room_max_participants: int = Field(default=2, description="Caller and bot.")
    delete_room_on_end: bool = Field(
        default=True,
        description="Delete the room after the bot leaves so the phone leg hangs up.",
    )
    bot_identity_prefix: str = Field(default="bot-")
    transport_sample_rate: int = Field(default=16000)
    transport_frame_ms: int = Field(default=20)

    # Deepgram speech-to-text
    deepgram_api_key: str | None = Field(default=None)
    stt_url: str = Field(default="wss://api.deepgram.com/v1/listen")
    stt_model: str = Field(default="nova-2")
    stt_language: str = Field(default="en-US")
    stt_sample_rate: int = Field(default=16000)
    stt_smart_format: bool = Field(default=True)
    stt_interim_results: bool = Field(default=True)
    stt_vad_events: bool = Field(default=True)
    stt_keepalive_interval_seconds: float = Field(
        default=5.0,
        gt=0,
        description="Interval between KeepAlive messages on the streaming connection.",
    )

    # Deepgram text-to-speech
    tts_url: str = Field(default="https://api.deepgram.com/v1/speak")
    tts_voice: str = Field(default="aura-asteria-en")
    tts_sample_rate: int = Field(default=16000)

    # LLM connectivity
    llm_provider: Literal["openai", "self_hosted_vllm"] = Field(default="openai")
    llm_endpoint: str | None = Field(
        default=None, description="Base URL for a self-hosted or proxied endpoint."
    )
    llm_api_key: str | None = Field(default=None)
    llm_model: str = Field(default="gpt-4")
    llm_temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    llm_max_tokens: int = Field(default=256, gt=0)
    llm_system_prompt: str = Field(default=DEFAULT_SYSTEM_PROMPT)
    fallback_response: str = Field(
        default="I'm sorry, I'm having trouble processing your request. Could you try again?",
        description="Spoken to the caller when the language model fails.",
    )

    # Timeouts
    transport_connect_timeout_seconds: float = Field(default=15.0, gt=0)
    setup_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Deadline for a call to become active before it is torn down.",
    )
    llm_timeout_seconds: float = Field(default=20.0, gt=0)
    tts_timeout_seconds: float = Field(default=15.0, gt=0)
    stt_close_timeout_seconds: float = Field(default=3.0, gt=0)

    # Registry
    ended_call_retention_seconds: float = Field(
        default=60.0,
        ge=0,
        description="How long an ended call stays queryable before it is purged.",
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached Settings instance."""

    return Settings()
