"""Text-to-speech synthesis for the assistant voice."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

import httpx

from calls.errors import SynthesisError
from config.settings import Settings, get_settings

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class VoiceOptions:
    voice: str | None = None
    sample_rate: int | None = None


class BaseSynthesizer(ABC):
    """Interface for all text-to-speech synthesizers.

    Implementations return raw linear16 mono PCM at `sample_rate`.
    """

    sample_rate: int

    @abstractmethod
    async def synthesize(self, text: str, voice_options: VoiceOptions | None = None) -> bytes:
        """Synthesize speech for the given text, raising `SynthesisError` on failure."""


class DeepgramSynthesizer(BaseSynthesizer):
    """Wrapper around the Deepgram `speak` REST endpoint."""

    def __init__(self, settings: Settings | None = None) -> None:
        settings = settings or get_settings()
        if not settings.deepgram_api_key:
            raise ValueError("Deepgram API key must be configured.")

        self._api_key = settings.deepgram_api_key
        self._url = settings.tts_url
        self._voice = settings.tts_voice
        self._timeout = settings.tts_timeout_seconds
        self.sample_rate = settings.tts_sample_rate

    async def synthesize(self, text: str, voice_options: VoiceOptions | None = None) -> bytes:
        text = text.strip()
        if not text:
            raise SynthesisError("Nothing to synthesize.")

        options = voice_options or VoiceOptions()
        sample_rate = options.sample_rate or self.sample_rate
        params = {
            "model": options.voice or self._voice,
            "encoding": "linear16",
            "container": "none",
            "sample_rate": str(sample_rate),
        }
        headers = {
            "Authorization": f"Token {self._api_key}",
            "Content-Type": "application/json",
        }

        LOGGER.info("Converting text to speech: %r", text if len(text) <= 50 else f"{text[:50]}...")
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(
                    self._url,
                    params=params,
                    json={"text": text},
                    headers=headers,
                )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            LOGGER.error("Deepgram TTS request failed: %s", exc)
            raise SynthesisError(f"Deepgram TTS request failed: {exc}") from exc

        audio = response.content
        if not audio:
            raise SynthesisError("Deepgram TTS returned no audio.")
        return audio


def build_synthesizer(settings: Settings | None = None) -> BaseSynthesizer:
    """Factory returning the configured synthesizer."""

    return DeepgramSynthesizer(settings)
