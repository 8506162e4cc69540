"""Streaming speech-to-text channel backed by Deepgram live transcription."""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlencode

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, WebSocketException
from websockets.protocol import State

from calls.errors import ChannelNotReadyError, TransportConnectionError
from config.settings import Settings, get_settings

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class TranscriptEvent:
    """A single transcription result for one call."""

    call_id: str
    text: str
    is_final: bool
    confidence: float = 0.0
    words: list[dict[str, Any]] = field(default_factory=list)


TranscriptCallback = Callable[[TranscriptEvent], None]
ClosedCallback = Callable[[], None]


def _flag(value: bool) -> str:
    return "true" if value else "false"


def parse_transcript_message(call_id: str, message: str | bytes) -> TranscriptEvent | None:
    """Turn a raw provider message into a `TranscriptEvent`.

    Returns None for messages that carry no transcript (metadata, VAD events,
    empty results) and for malformed payloads, which are logged and dropped.
    """

    try:
        data = json.loads(message)
    except (TypeError, ValueError):
        LOGGER.warning("Dropping non-JSON transcription payload for call %s", call_id)
        return None

    if not isinstance(data, dict):
        LOGGER.warning("Dropping malformed transcription payload for call %s", call_id)
        return None

    msg_type = data.get("type", "Results")
    if msg_type != "Results":
        LOGGER.debug("Ignoring %s message for call %s", msg_type, call_id)
        return None

    try:
        alternative = data["channel"]["alternatives"][0]
        transcript = alternative.get("transcript") or ""
        if not isinstance(transcript, str):
            raise TypeError("transcript is not a string")
        confidence = float(alternative.get("confidence") or 0.0)
        words = list(alternative.get("words") or [])
    except (KeyError, IndexError, TypeError, ValueError, AttributeError) as exc:
        LOGGER.warning("Dropping malformed transcription payload for call %s: %s", call_id, exc)
        return None

    text = transcript.strip()
    if not text:
        return None

    return TranscriptEvent(
        call_id=call_id,
        text=text,
        is_final=bool(data.get("is_final", False)),
        confidence=confidence,
        words=words,
    )


class TranscriptionChannel(ABC):
    """Streaming audio-in / transcript-out channel owned by one call.

    Audio sent through `send_audio` must be linear16 mono at `sample_rate`.
    """

    sample_rate: int

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """True while audio can be sent."""

    @abstractmethod
    async def open(
        self,
        call_id: str,
        on_transcript: TranscriptCallback,
        on_closed: ClosedCallback | None = None,
    ) -> None:
        """Establish the streaming channel.

        `on_closed` fires once if the provider drops the stream before `close()`.
        """

    @abstractmethod
    async def send_audio(self, chunk: bytes) -> bool:
        """Forward an audio chunk; False means the frame was not accepted."""

    @abstractmethod
    async def close(self) -> None:
        """Flush and release the channel. Safe to call repeatedly."""


class DeepgramTranscriptionChannel(TranscriptionChannel):
    """Deepgram live `listen` websocket for linear16 mono audio."""

    def __init__(self, settings: Settings | None = None) -> None:
        settings = settings or get_settings()
        if not settings.deepgram_api_key:
            raise ValueError("Deepgram API key must be configured.")

        self._settings = settings
        self.sample_rate = settings.stt_sample_rate
        self._call_id: str | None = None
        self._ws: ClientConnection | None = None
        self._receiver: asyncio.Task | None = None
        self._keepalive: asyncio.Task | None = None
        self._on_transcript: TranscriptCallback | None = None
        self._on_closed: ClosedCallback | None = None
        self._closing = False

    @property
    def is_open(self) -> bool:
        return (
            self._ws is not None
            and not self._closing
            and self._ws.state is State.OPEN
        )

    def _listen_url(self) -> str:
        s = self._settings
        query = urlencode(
            {
                "encoding": "linear16",
                "sample_rate": str(self.sample_rate),
                "channels": "1",
                "model": s.stt_model,
                "language": s.stt_language,
                "smart_format": _flag(s.stt_smart_format),
                "interim_results": _flag(s.stt_interim_results),
                "vad_events": _flag(s.stt_vad_events),
            }
        )
        return f"{s.stt_url}?{query}"

    async def open(
        self,
        call_id: str,
        on_transcript: TranscriptCallback,
        on_closed: ClosedCallback | None = None,
    ) -> None:
        if self._ws is not None:
            LOGGER.warning("STT channel for call %s is already open", call_id)
            return

        LOGGER.info("Starting Deepgram STT session for call: %s", call_id)
        self._call_id = call_id
        self._on_transcript = on_transcript
        self._on_closed = on_closed
        try:
            self._ws = await connect(
                self._listen_url(),
                additional_headers={"Authorization": f"Token {self._settings.deepgram_api_key}"},
                ping_interval=20,
                ping_timeout=20,
                open_timeout=self._settings.transport_connect_timeout_seconds,
            )
        except (OSError, WebSocketException, asyncio.TimeoutError) as exc:
            LOGGER.error("Deepgram STT connection failed for call %s: %s", call_id, exc)
            raise TransportConnectionError(f"Deepgram streaming connection failed: {exc}") from exc

        self._receiver = asyncio.create_task(self._receive_loop(self._ws))
        self._keepalive = asyncio.create_task(self._keep_alive(self._ws))
        LOGGER.info("Deepgram STT connection established for call: %s", call_id)

    async def send_audio(self, chunk: bytes) -> bool:
        try:
            ws = self._require_open()
            await ws.send(chunk)
        except ChannelNotReadyError:
            LOGGER.debug("STT channel not ready for call %s; dropping frame", self._call_id)
            return False
        except ConnectionClosed as exc:
            LOGGER.warning("STT connection closed while sending audio for call %s: %s", self._call_id, exc)
            return False
        return True

    async def close(self) -> None:
        ws = self._ws
        if ws is None or self._closing:
            return

        self._closing = True
        LOGGER.info("Closing Deepgram STT session for call: %s", self._call_id)
        if self._keepalive is not None:
            self._keepalive.cancel()
        try:
            if ws.state is State.OPEN:
                await ws.send(json.dumps({"type": "CloseStream"}))
            if self._receiver is not None:
                # Let the provider deliver the last final results before hanging up.
                await asyncio.wait({self._receiver}, timeout=self._settings.stt_close_timeout_seconds)
        except ConnectionClosed:
            LOGGER.debug("STT connection for call %s already closed", self._call_id)
        finally:
            if self._receiver is not None and not self._receiver.done():
                self._receiver.cancel()
            await ws.close()
            self._ws = None
            self._receiver = None
            self._keepalive = None
            self._on_transcript = None
            self._on_closed = None

    def _require_open(self) -> ClientConnection:
        ws = self._ws
        if ws is None or not self.is_open:
            raise ChannelNotReadyError()
        return ws

    async def _keep_alive(self, ws: ClientConnection) -> None:
        # Deepgram drops streams that see no data for ~10s, e.g. while an
        # outbound call is still ringing.
        interval = self._settings.stt_keepalive_interval_seconds
        try:
            while not self._closing and ws.state is State.OPEN:
                await asyncio.sleep(interval)
                if self._closing or ws.state is not State.OPEN:
                    break
                await ws.send(json.dumps({"type": "KeepAlive"}))
        except ConnectionClosed:
            LOGGER.debug("Keep-alive stopped for call %s: connection closed", self._call_id)

    async def _receive_loop(self, ws: ClientConnection) -> None:
        call_id = self._call_id or "unknown"
        try:
            async for message in ws:
                if isinstance(message, bytes):
                    continue
                event = parse_transcript_message(call_id, message)
                if event is None or self._on_transcript is None:
                    continue
                try:
                    self._on_transcript(event)
                except Exception:
                    LOGGER.exception("Transcript callback failed for call %s", call_id)
        except ConnectionClosed:
            LOGGER.info("Deepgram STT connection closed for call: %s", call_id)
        except WebSocketException as exc:
            LOGGER.error("Deepgram STT error for call %s: %s", call_id, exc)

        if self._closing:
            return
        LOGGER.warning("Deepgram STT stream for call %s closed unexpectedly", call_id)
        if self._keepalive is not None:
            self._keepalive.cancel()
        on_closed = self._on_closed
        self._on_closed = None
        if on_closed is not None:
            try:
                on_closed()
            except Exception:
                LOGGER.exception("Channel closed callback failed for call %s", call_id)
