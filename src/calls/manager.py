"""Process-wide registry creating, looking up and ending call sessions."""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any

from calls.errors import CallError, CallNotFoundError, TransportConnectionError
from calls.schemas import CallSnapshot
from calls.session import (
    CallDirection,
    CallSession,
    CallStatus,
    ChannelFactory,
    EndReason,
    TransportFactory,
)
from config.settings import Settings, get_settings
from llm.base import BaseLLMClient
from speech.tts import BaseSynthesizer, VoiceOptions
from telephony.livekit_client import LiveKitRoomService, format_phone_number
from telephony.transport import TransportCredentials, TransportTarget

LOGGER = logging.getLogger(__name__)


class CallManager:
    """Owns the call registry and wires sessions to their collaborators."""

    def __init__(
        self,
        settings: Settings,
        *,
        room_service: LiveKitRoomService,
        transport_factory: TransportFactory,
        channel_factory: ChannelFactory,
        llm: BaseLLMClient,
        synthesizer: BaseSynthesizer,
    ) -> None:
        self._settings = settings
        self._room_service = room_service
        self._transport_factory = transport_factory
        self._channel_factory = channel_factory
        self._llm = llm
        self._synthesizer = synthesizer
        self._calls: dict[str, CallSession] = {}
        self._purge_handles: dict[str, asyncio.TimerHandle] = {}

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> CallManager:
        """Build a manager wired to LiveKit, Deepgram and the configured LLM."""

        # Lazy imports keep provider SDK setup out of module import time.
        from llm.factory import build_llm_client
        from speech.transcriber import DeepgramTranscriptionChannel
        from speech.tts import build_synthesizer
        from telephony.transport import LiveKitTransport

        settings = settings or get_settings()
        room_service = LiveKitRoomService(settings)
        return cls(
            settings,
            room_service=room_service,
            transport_factory=lambda listener: LiveKitTransport(room_service, listener, settings),
            channel_factory=lambda: DeepgramTranscriptionChannel(settings),
            llm=build_llm_client(settings),
            synthesizer=build_synthesizer(settings),
        )

    # -- creation --------------------------------------------------------

    async def create_inbound(
        self,
        room_name: str,
        caller_identity: str | None = None,
        caller_id: str | None = None,
    ) -> CallSession:
        caller = caller_id or caller_identity or "unknown"
        LOGGER.info("Creating inbound call for room %s from %s", room_name, caller)
        session = self._new_session(
            CallDirection.INBOUND,
            room_name=room_name,
            counterparty=caller,
            caller_identity=caller_identity,
            metadata={"direction": "inbound", "caller": caller, "room_name": room_name},
        )
        session.context.append_system(
            f"This is an inbound call from {caller}. Be welcoming and helpful."
        )
        await self._provision_and_start(session, dial_number=None)
        return session

    async def create_outbound(
        self,
        phone_number: str,
        *,
        initial_context: str | None = None,
        room_name: str | None = None,
        voice: str | None = None,
    ) -> CallSession:
        formatted = format_phone_number(phone_number)
        call_id = str(uuid.uuid4())
        room_name = room_name or f"call-{call_id}"
        LOGGER.info("Creating outbound call to %s in room %s", formatted, room_name)
        voice_options = None
        if voice:
            voice_options = VoiceOptions(voice=voice, sample_rate=self._synthesizer.sample_rate)

        session = self._new_session(
            CallDirection.OUTBOUND,
            call_id=call_id,
            room_name=room_name,
            counterparty=formatted,
            phone_number=formatted,
            voice_options=voice_options,
            metadata={"direction": "outbound", "phone_number": formatted, "room_name": room_name},
        )
        if initial_context:
            session.context.append_system(initial_context)
        await self._provision_and_start(session, dial_number=formatted)
        return session

    def _new_session(
        self,
        direction: CallDirection,
        *,
        room_name: str,
        counterparty: str,
        metadata: dict[str, Any],
        call_id: str | None = None,
        caller_identity: str | None = None,
        phone_number: str | None = None,
        voice_options: VoiceOptions | None = None,
    ) -> CallSession:
        call_id = call_id or str(uuid.uuid4())
        session = CallSession(
            call_id=call_id,
            direction=direction,
            room_name=room_name,
            bot_identity=f"{self._settings.bot_identity_prefix}{call_id}",
            counterparty=counterparty,
            settings=self._settings,
            transport_factory=self._transport_factory,
            channel_factory=self._channel_factory,
            llm=self._llm,
            synthesizer=self._synthesizer,
            caller_identity=caller_identity,
            phone_number=phone_number,
            voice_options=voice_options,
            on_ended=self._schedule_purge,
        )
        session.context.initialize(call_id, self._settings.llm_system_prompt, metadata)
        self._calls[call_id] = session
        return session

    async def _provision_and_start(self, session: CallSession, *, dial_number: str | None) -> None:
        try:
            await self._room_service.create_or_get_room(session.room_name)
            token = self._room_service.generate_token(
                session.room_name, session.bot_identity, is_bot=True
            )
        except CallError as exc:
            LOGGER.error("Provisioning failed for call %s: %s", session.call_id, exc.detail)
            await session.fail_setup(exc)
            if isinstance(exc, TransportConnectionError):
                raise
            raise TransportConnectionError(exc.detail) from exc

        session.start(
            TransportTarget(
                room_name=session.room_name,
                bot_identity=session.bot_identity,
                dial_number=dial_number,
            ),
            TransportCredentials(url=self._room_service.url, token=token),
        )

    # -- queries ---------------------------------------------------------

    def get(self, call_id: str) -> CallSession | None:
        return self._calls.get(call_id)

    def require(self, call_id: str) -> CallSession:
        session = self._calls.get(call_id)
        if session is None:
            raise CallNotFoundError(f"Call {call_id} not found.")
        return session

    def find_by_room(self, room_name: str) -> CallSession | None:
        """Return the live (not yet ended) session that owns `room_name`, if any."""

        for session in list(self._calls.values()):
            if session.room_name == room_name and session.status is not CallStatus.ENDED:
                return session
        return None

    def snapshot(self, call_id: str) -> CallSnapshot:
        return self.require(call_id).snapshot()

    def list_active(self) -> list[CallSnapshot]:
        return [
            session.snapshot()
            for session in list(self._calls.values())
            if session.status is not CallStatus.ENDED
        ]

    # -- teardown --------------------------------------------------------

    def end(self, call_id: str) -> bool:
        """Request teardown of a call without waiting for it to finish."""

        session = self._calls.get(call_id)
        if session is None:
            return False
        return session.request_end(EndReason.REQUESTED)

    def _schedule_purge(self, session: CallSession) -> None:
        loop = asyncio.get_running_loop()
        self._purge_handles[session.call_id] = loop.call_later(
            self._settings.ended_call_retention_seconds, self._purge, session.call_id
        )

    def _purge(self, call_id: str) -> None:
        self._purge_handles.pop(call_id, None)
        if self._calls.pop(call_id, None) is not None:
            LOGGER.info("Purged ended call %s", call_id)

    async def shutdown(self) -> None:
        """End every live call and wait for their teardown."""

        sessions = list(self._calls.values())
        if sessions:
            LOGGER.info("Shutting down %d call(s)", len(sessions))
        for session in sessions:
            session.request_end(EndReason.SHUTDOWN)
        await asyncio.gather(
            *(session.wait_closed() for session in sessions),
            return_exceptions=True,
        )
        for handle in self._purge_handles.values():
            handle.cancel()
        self._purge_handles.clear()

    def __len__(self) -> int:
        return len(self._calls)
