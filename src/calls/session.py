"""State machine driving one call from creation to teardown."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

from calls.conversation import ConversationContext
from calls.errors import (
    CallError,
    CompletionError,
    SetupTimeoutError,
    SynthesisError,
    TransportConnectionError,
)
from calls.schemas import CallSnapshot
from config.settings import Settings
from llm.base import BaseLLMClient
from speech.transcriber import TranscriptEvent, TranscriptionChannel
from speech.tts import BaseSynthesizer, VoiceOptions
from telephony.audio import resample_pcm16_bytes
from telephony.transport import (
    SessionTransport,
    TransportCredentials,
    TransportEvent,
    TransportEventType,
    TransportHandle,
    TransportListener,
    TransportTarget,
)

LOGGER = logging.getLogger(__name__)

TransportFactory = Callable[[TransportListener], SessionTransport]
ChannelFactory = Callable[[], TranscriptionChannel]


class CallStatus(str, Enum):
    INITIALIZING = "initializing"
    CONNECTING = "connecting"
    ACTIVE = "active"
    ENDING = "ending"
    ENDED = "ended"


class CallDirection(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class EndReason(str, Enum):
    REQUESTED = "requested"
    REMOTE_DISCONNECT = "remote_disconnect"
    CONNECTION_FAILED = "connection_failed"
    SETUP_FAILED = "setup_failed"
    SETUP_TIMEOUT = "setup_timeout"
    SHUTDOWN = "shutdown"
    ERROR = "error"


@dataclass(frozen=True)
class _RemoteAudio:
    audio: bytes


@dataclass(frozen=True)
class _TranscriptReceived:
    event: TranscriptEvent


_WAKE = object()


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _preview(text: str, limit: int = 50) -> str:
    return text if len(text) <= limit else f"{text[:limit]}..."


class CallSession:
    """Orchestrates transport, transcription, LLM and TTS for a single call.

    All provider callbacks land in an event queue consumed by the session's
    own task, so the session state is only ever touched from that task or
    from its callbacks. At most one processing step (user turn -> completion
    -> synthesis -> playback) runs at a time; a final transcript that arrives
    meanwhile waits in a single pending slot where newer transcripts replace
    older ones.
    """

    def __init__(
        self,
        *,
        call_id: str,
        direction: CallDirection,
        room_name: str,
        bot_identity: str,
        counterparty: str,
        settings: Settings,
        transport_factory: TransportFactory,
        channel_factory: ChannelFactory,
        llm: BaseLLMClient,
        synthesizer: BaseSynthesizer,
        caller_identity: str | None = None,
        phone_number: str | None = None,
        voice_options: VoiceOptions | None = None,
        on_ended: Callable[[CallSession], None] | None = None,
    ) -> None:
        self.call_id = call_id
        self.direction = direction
        self.room_name = room_name
        self.bot_identity = bot_identity
        self.counterparty = counterparty
        self.caller_identity = caller_identity
        self.phone_number = phone_number
        self.started_at = _now()
        self.ended_at: datetime | None = None
        self.last_transcript: str | None = None
        self.last_transcript_at: datetime | None = None
        self.status = CallStatus.INITIALIZING
        self.end_reason: EndReason | None = None
        self.error: CallError | None = None
        self.context = ConversationContext()

        self._settings = settings
        self._llm = llm
        self._synthesizer = synthesizer
        self._voice_options = voice_options
        self._on_ended = on_ended
        self._transport = transport_factory(self._on_transport_event)
        self._channel = channel_factory()
        self._transport_handle: TransportHandle | None = None
        self._transport_connected = asyncio.Event()

        self._events: asyncio.Queue = asyncio.Queue()
        self._task: asyncio.Task | None = None
        self._connect_task: asyncio.Task | None = None
        self._step_task: asyncio.Task | None = None
        self._step_in_flight = False
        self._pending_transcript: str | None = None
        self._tearing_down = False
        self._closed = asyncio.Event()

    # -- queries ---------------------------------------------------------

    @property
    def step_in_flight(self) -> bool:
        return self._step_in_flight

    @property
    def pending_transcript(self) -> str | None:
        return self._pending_transcript

    @property
    def duration(self) -> float:
        end = self.ended_at or _now()
        return (end - self.started_at).total_seconds()

    def snapshot(self) -> CallSnapshot:
        return CallSnapshot(
            id=self.call_id,
            type=self.direction.value,
            status=self.status.value,
            room_name=self.room_name,
            bot_identity=self.bot_identity,
            start_time=self.started_at,
            end_time=self.ended_at,
            duration=self.duration,
            counterparty=self.counterparty,
            caller_identity=self.caller_identity,
            phone_number=self.phone_number,
            last_transcript=self.last_transcript,
            last_transcript_time=self.last_transcript_at,
            end_reason=self.end_reason.value if self.end_reason else None,
        )

    # -- lifecycle -------------------------------------------------------

    def start(self, target: TransportTarget, credentials: TransportCredentials) -> None:
        """Enter `connecting` and launch the session task."""

        if self.status is CallStatus.ENDING:
            # Ended while the room was being provisioned.
            self._task = asyncio.create_task(self._teardown(), name=f"call-{self.call_id}")
            return
        if self.status is not CallStatus.INITIALIZING:
            raise RuntimeError(f"Call {self.call_id} cannot start from {self.status.value}")

        self._set_status(CallStatus.CONNECTING)
        self._task = asyncio.create_task(
            self._run(target, credentials), name=f"call-{self.call_id}"
        )

    async def fail_setup(self, error: CallError) -> None:
        """Tear down a session whose provisioning failed before it could start."""

        self.error = error
        self._begin_ending(EndReason.SETUP_FAILED)
        await self._teardown()

    def request_end(self, reason: EndReason = EndReason.REQUESTED) -> bool:
        """Ask the session to hang up. Returns False if it is already ending or ended."""

        if self.status in (CallStatus.ENDING, CallStatus.ENDED):
            return False
        LOGGER.info("Ending call: %s", self.call_id)
        self._begin_ending(reason)
        return True

    async def wait_closed(self) -> None:
        await self._closed.wait()
        step = self._step_task
        if step is not None and not step.done():
            await asyncio.gather(step, return_exceptions=True)

    # -- provider callbacks ----------------------------------------------

    def _on_transport_event(self, event: TransportEvent) -> None:
        if event.type is TransportEventType.DISCONNECTED:
            LOGGER.info(
                "Transport disconnected for call %s (%s)", self.call_id, event.reason or "unknown"
            )
            self._begin_ending(EndReason.REMOTE_DISCONNECT)
        elif event.type is TransportEventType.CONNECTED:
            self._transport_connected.set()
        elif event.type is TransportEventType.REMOTE_AUDIO_FRAME:
            if self.status is CallStatus.ACTIVE:
                self._events.put_nowait(_RemoteAudio(event.audio))

    def _on_transcript(self, event: TranscriptEvent) -> None:
        if self.status is CallStatus.ACTIVE:
            self._events.put_nowait(_TranscriptReceived(event))

    def _on_channel_closed(self) -> None:
        if self.status not in (CallStatus.CONNECTING, CallStatus.ACTIVE):
            return
        LOGGER.error("Transcription channel for call %s closed unexpectedly", self.call_id)
        self.error = TransportConnectionError("Transcription channel closed unexpectedly.")
        self._begin_ending(EndReason.ERROR)

    # -- internals -------------------------------------------------------

    def _set_status(self, status: CallStatus) -> None:
        LOGGER.info("Call %s: %s -> %s", self.call_id, self.status.value, status.value)
        self.status = status

    def _begin_ending(self, reason: EndReason) -> None:
        if self.status in (CallStatus.ENDING, CallStatus.ENDED):
            return
        self.end_reason = reason
        self._set_status(CallStatus.ENDING)
        self._pending_transcript = None
        if self._connect_task is not None and not self._connect_task.done():
            self._connect_task.cancel()
        self._events.put_nowait(_WAKE)

    async def _run(self, target: TransportTarget, credentials: TransportCredentials) -> None:
        try:
            self._connect_task = asyncio.create_task(self._connect(target, credentials))
            done, _ = await asyncio.wait(
                {self._connect_task}, timeout=self._settings.setup_timeout_seconds
            )
            if self.status is CallStatus.CONNECTING:
                if not done:
                    LOGGER.warning(
                        "Call %s did not become active within %.1fs",
                        self.call_id,
                        self._settings.setup_timeout_seconds,
                    )
                    self.error = SetupTimeoutError()
                    self._begin_ending(EndReason.SETUP_TIMEOUT)
                elif (exc := self._connect_task.exception()) is not None:
                    LOGGER.error("Call %s failed to connect: %s", self.call_id, exc)
                    self.error = (
                        exc if isinstance(exc, CallError) else TransportConnectionError(str(exc))
                    )
                    self._begin_ending(EndReason.CONNECTION_FAILED)
                else:
                    self._set_status(CallStatus.ACTIVE)

            while self.status is CallStatus.ACTIVE:
                item = await self._events.get()
                await self._dispatch(item)
        except Exception:
            LOGGER.exception("Session loop for call %s crashed", self.call_id)
            self._begin_ending(EndReason.ERROR)
        finally:
            await self._teardown()

    async def _connect(self, target: TransportTarget, credentials: TransportCredentials) -> None:
        self._transport_handle = await self._transport.connect(target, credentials)
        await self._channel.open(self.call_id, self._on_transcript, self._on_channel_closed)
        await self._transport_connected.wait()

    async def _dispatch(self, item: object) -> None:
        if isinstance(item, _RemoteAudio):
            audio = resample_pcm16_bytes(
                item.audio, self._transport.sample_rate, self._channel.sample_rate
            )
            await self._channel.send_audio(audio)
        elif isinstance(item, _TranscriptReceived):
            self._handle_transcript(item.event)

    def _handle_transcript(self, event: TranscriptEvent) -> None:
        text = event.text.strip()
        if not event.is_final or not text:
            LOGGER.debug("Interim transcript for call %s: %r", self.call_id, _preview(text))
            return

        self.last_transcript = text
        self.last_transcript_at = _now()
        if self.status is not CallStatus.ACTIVE:
            return

        if self._step_in_flight:
            if self._pending_transcript is not None:
                LOGGER.info(
                    "Call %s: dropping superseded transcript %r",
                    self.call_id,
                    _preview(self._pending_transcript),
                )
            self._pending_transcript = text
            return

        self._start_step(text)

    def _start_step(self, text: str) -> None:
        if self._step_in_flight:
            raise RuntimeError(f"Call {self.call_id} already has a processing step in flight")
        self._step_in_flight = True
        self._step_task = asyncio.create_task(self._process_turn(text))

    async def _process_turn(self, text: str) -> None:
        try:
            await self._respond(text)
        except Exception:
            LOGGER.exception("Processing step failed for call %s", self.call_id)
        finally:
            self._step_in_flight = False
            pending, self._pending_transcript = self._pending_transcript, None
            if pending is not None and self.status is CallStatus.ACTIVE:
                self._start_step(pending)

    async def _respond(self, text: str) -> None:
        if self.status is not CallStatus.ACTIVE:
            return

        self.context.append_user(text)
        LOGGER.info("Processing user input for call %s: %r", self.call_id, _preview(text))

        try:
            reply = await self._complete()
        except CompletionError as exc:
            LOGGER.error("Completion failed for call %s: %s", self.call_id, exc.detail)
            if self.status is CallStatus.ACTIVE:
                await self._speak(self._settings.fallback_response)
            return

        if self.status is not CallStatus.ACTIVE:
            LOGGER.info("Discarding response for call %s; call is %s", self.call_id, self.status.value)
            return

        self.context.append_assistant(reply)
        LOGGER.info("Bot response for call %s: %r", self.call_id, _preview(reply))
        await self._speak(reply)

    async def _complete(self) -> str:
        try:
            reply = await asyncio.wait_for(
                self._llm.chat(self.context.render()),
                timeout=self._settings.llm_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise CompletionError("Language model request timed out.") from exc
        except CompletionError:
            raise
        except Exception as exc:
            raise CompletionError(f"Language model request failed: {exc}") from exc

        reply = (reply or "").strip()
        if not reply:
            raise CompletionError("Language model returned an empty response.")
        return reply

    async def _speak(self, text: str) -> None:
        try:
            audio = await self._synthesizer.synthesize(text, self._voice_options)
        except SynthesisError as exc:
            LOGGER.warning("Speech synthesis failed for call %s: %s", self.call_id, exc.detail)
            return
        except Exception as exc:
            LOGGER.warning("Speech synthesis failed for call %s: %s", self.call_id, exc)
            return

        if self.status is not CallStatus.ACTIVE or self._transport_handle is None:
            return

        try:
            await self._transport.publish_audio(
                self._transport_handle, audio, self._synthesizer.sample_rate
            )
        except Exception:
            LOGGER.exception("Failed to play audio for call %s", self.call_id)

    async def _teardown(self) -> None:
        if self._tearing_down:
            return
        self._tearing_down = True
        if self.status is not CallStatus.ENDING:
            self._begin_ending(EndReason.ERROR)

        if self._connect_task is not None:
            # Let a cancelled connect finish rolling back before releasing anything.
            await asyncio.gather(self._connect_task, return_exceptions=True)

        try:
            await self._channel.close()
        except Exception:
            LOGGER.exception("Error closing transcription channel for call %s", self.call_id)

        if self._transport_handle is not None:
            try:
                await self._transport.disconnect(self._transport_handle)
            except Exception:
                LOGGER.exception("Error disconnecting transport for call %s", self.call_id)

        self.context.release()
        self.ended_at = _now()
        self._set_status(CallStatus.ENDED)
        while not self._events.empty():
            self._events.get_nowait()
        self._closed.set()
        LOGGER.info(
            "Call ended: %s, reason: %s, duration: %.1fs",
            self.call_id,
            self.end_reason.value if self.end_reason else "unknown",
            self.duration,
        )

        if self._on_ended is not None:
            self._on_ended(self)
