"""Per-call transport leg: the bot's connection into a LiveKit room."""

from __future__ import annotations

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

from livekit import rtc

from calls.errors import TransportConnectionError
from config.settings import Settings, get_settings
from telephony.audio import iter_pcm16_frames, pcm16_from_bytes, pcm16_resample
from telephony.livekit_client import LiveKitRoomService

LOGGER = logging.getLogger(__name__)


class TransportEventType(str, Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    REMOTE_AUDIO_FRAME = "remote_audio_frame"


@dataclass(frozen=True)
class TransportEvent:
    type: TransportEventType
    participant_identity: str | None = None
    audio: bytes = b""
    reason: str | None = None


TransportListener = Callable[[TransportEvent], None]


@dataclass(frozen=True)
class TransportTarget:
    """Where the bot should go: a room, and optionally a number to dial into it."""

    room_name: str
    bot_identity: str
    dial_number: str | None = None


@dataclass(frozen=True)
class TransportCredentials:
    url: str
    token: str


@dataclass(frozen=True)
class TransportHandle:
    room_name: str
    bot_identity: str
    handle_id: str = field(default_factory=lambda: uuid.uuid4().hex)


class SessionTransport(ABC):
    """Connection of one call session to the room/telephony leg.

    Events are pushed to the listener given at construction time. A
    `disconnected` event is only emitted for unsolicited disconnects.
    """

    sample_rate: int

    @abstractmethod
    async def connect(
        self, target: TransportTarget, credentials: TransportCredentials
    ) -> TransportHandle:
        """Join the transport; raise `TransportConnectionError` on failure."""

    @abstractmethod
    async def disconnect(self, handle: TransportHandle) -> None:
        """Leave the transport. Unknown or already closed handles are ignored."""

    @abstractmethod
    async def publish_audio(self, handle: TransportHandle, pcm: bytes, sample_rate: int) -> None:
        """Play linear16 mono audio to the remote party."""


@dataclass
class _RoomState:
    room: rtc.Room
    target: TransportTarget
    source: rtc.AudioSource | None = None
    readers: set[asyncio.Task] = field(default_factory=set)
    sip_identity: str | None = None
    closing: bool = False


class LiveKitTransport(SessionTransport):
    """Bot participant in a LiveKit room, bridged to a SIP caller."""

    def __init__(
        self,
        room_service: LiveKitRoomService,
        listener: TransportListener,
        settings: Settings | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._room_service = room_service
        self._listener = listener
        self._rooms: dict[str, _RoomState] = {}
        self.sample_rate = self._settings.transport_sample_rate

    async def connect(
        self, target: TransportTarget, credentials: TransportCredentials
    ) -> TransportHandle:
        handle = TransportHandle(room_name=target.room_name, bot_identity=target.bot_identity)
        room = rtc.Room()
        state = _RoomState(room=room, target=target)
        self._rooms[handle.handle_id] = state
        self._attach_room_handlers(handle, state)

        LOGGER.info("Bot %s attempting to join room: %s", target.bot_identity, target.room_name)
        dialing = False
        try:
            await asyncio.wait_for(
                room.connect(credentials.url, credentials.token),
                timeout=self._settings.transport_connect_timeout_seconds,
            )
            state.source = rtc.AudioSource(self.sample_rate, 1)
            track = rtc.LocalAudioTrack.create_audio_track("assistant-voice", state.source)
            await room.local_participant.publish_track(
                track,
                rtc.TrackPublishOptions(source=rtc.TrackSource.SOURCE_MICROPHONE),
            )
            if target.dial_number:
                dialing = True
                dial = await self._room_service.place_outbound_call(
                    target.room_name, target.dial_number
                )
                state.sip_identity = dial.participant_identity
        except (TransportConnectionError, asyncio.CancelledError):
            await self._rollback(handle, dialed=dialing)
            raise
        except (rtc.ConnectError, OSError, asyncio.TimeoutError) as exc:
            LOGGER.error("Error connecting bot to room %s: %s", target.room_name, exc)
            await self._rollback(handle, dialed=dialing)
            raise TransportConnectionError(f"Could not join room {target.room_name}: {exc}") from exc

        LOGGER.info("Bot successfully connected to room: %s", target.room_name)
        self._emit(TransportEvent(TransportEventType.CONNECTED, participant_identity=target.bot_identity))
        return handle

    async def disconnect(self, handle: TransportHandle) -> None:
        state = self._rooms.pop(handle.handle_id, None)
        if state is None:
            return

        state.closing = True
        LOGGER.info("Bot disconnecting from room: %s", handle.room_name)
        for reader in state.readers:
            reader.cancel()
        try:
            if state.source is not None:
                await state.source.aclose()
            await state.room.disconnect()
        except Exception:
            LOGGER.exception("Error leaving room %s", handle.room_name)

        if self._settings.delete_room_on_end:
            try:
                await self._room_service.delete_room(handle.room_name)
            except Exception as exc:
                LOGGER.warning("Error deleting room %s: %s", handle.room_name, exc)
        elif state.sip_identity:
            # Room is kept; hang up the phone leg we dialed.
            try:
                await self._room_service.remove_participant(handle.room_name, state.sip_identity)
            except Exception as exc:
                LOGGER.warning("Error removing %s from room %s: %s", state.sip_identity, handle.room_name, exc)

    async def publish_audio(self, handle: TransportHandle, pcm: bytes, sample_rate: int) -> None:
        state = self._rooms.get(handle.handle_id)
        if state is None or state.closing or state.source is None:
            LOGGER.debug("Dropping outbound audio for closed room %s", handle.room_name)
            return

        samples = pcm16_resample(pcm16_from_bytes(pcm), sample_rate, self.sample_rate)
        for chunk in iter_pcm16_frames(samples, self.sample_rate, self._settings.transport_frame_ms):
            if state.closing:
                return
            frame = rtc.AudioFrame(
                data=chunk.tobytes(),
                sample_rate=self.sample_rate,
                num_channels=1,
                samples_per_channel=chunk.size,
            )
            await state.source.capture_frame(frame)

    def _attach_room_handlers(self, handle: TransportHandle, state: _RoomState) -> None:
        room = state.room
        bot_identity = handle.bot_identity

        def on_track_subscribed(track, publication, participant) -> None:
            if track.kind != rtc.TrackKind.KIND_AUDIO or participant.identity == bot_identity:
                return
            LOGGER.info("Track subscribed: %s from %s", track.sid, participant.identity)
            reader = asyncio.create_task(self._read_remote_audio(state, track, participant.identity))
            state.readers.add(reader)
            reader.add_done_callback(state.readers.discard)

        def on_participant_disconnected(participant) -> None:
            if state.closing or participant.identity == bot_identity:
                return
            LOGGER.info("Participant %s left room %s", participant.identity, handle.room_name)
            self._emit(
                TransportEvent(
                    TransportEventType.DISCONNECTED,
                    participant_identity=participant.identity,
                    reason="participant_left",
                )
            )

        def on_disconnected(*args) -> None:
            if state.closing:
                return
            LOGGER.info("Bot disconnected from room: %s", handle.room_name)
            self._emit(TransportEvent(TransportEventType.DISCONNECTED, reason="room_disconnected"))

        room.on("track_subscribed", on_track_subscribed)
        room.on("participant_disconnected", on_participant_disconnected)
        room.on("disconnected", on_disconnected)

    async def _read_remote_audio(self, state: _RoomState, track, identity: str) -> None:
        stream = rtc.AudioStream(track, sample_rate=self.sample_rate, num_channels=1)
        try:
            async for event in stream:
                if state.closing:
                    break
                self._emit(
                    TransportEvent(
                        TransportEventType.REMOTE_AUDIO_FRAME,
                        participant_identity=identity,
                        audio=event.frame.data.tobytes(),
                    )
                )
        finally:
            await stream.aclose()

    async def _rollback(self, handle: TransportHandle, *, dialed: bool = False) -> None:
        state = self._rooms.pop(handle.handle_id, None)
        if state is None:
            return
        state.closing = True
        try:
            if state.source is not None:
                await state.source.aclose()
            await state.room.disconnect()
        except Exception:
            LOGGER.exception("Error rolling back room join for %s", handle.room_name)

        if dialed and self._settings.delete_room_on_end:
            # The SIP participant may already exist; deleting the room hangs it up.
            try:
                await self._room_service.delete_room(handle.room_name)
            except Exception as exc:
                LOGGER.warning("Error deleting room %s during rollback: %s", handle.room_name, exc)

    def _emit(self, event: TransportEvent) -> None:
        try:
            self._listener(event)
        except Exception:
            LOGGER.exception("Transport listener failed on %s", event.type.value)
