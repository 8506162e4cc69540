from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import Callable

import pytest
from fastapi.testclient import TestClient

REPO_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = REPO_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from calls.manager import CallManager  # noqa: E402
from config.settings import Settings  # noqa: E402
from speech.transcriber import TranscriptEvent  # noqa: E402
from telephony.transport import (  # noqa: E402
    TransportEvent,
    TransportEventType,
    TransportHandle,
)


def make_settings(**overrides) -> Settings:
    values = {
        "livekit_url": "wss://livekit.test",
        "livekit_api_key": "key",
        "livekit_api_secret": "secret",
        "livekit_sip_trunk_id": "ST_test",
        "setup_timeout_seconds": 1.0,
        "llm_timeout_seconds": 1.0,
        "ended_call_retention_seconds": 60,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


class FakeRoomService:
    url = "wss://livekit.test"

    def __init__(self, fail_with: Exception | None = None) -> None:
        self.fail_with = fail_with
        self.rooms: list[str] = []
        self.tokens: list[tuple[str, str]] = []

    async def create_or_get_room(self, room_name: str) -> dict:
        if self.fail_with is not None:
            raise self.fail_with
        self.rooms.append(room_name)
        return {"name": room_name}

    def generate_token(self, room_name: str, identity: str, *, is_bot: bool = False) -> str:
        self.tokens.append((room_name, identity))
        return f"token-{identity}"


class FakeTransport:
    """Transport that joins instantly unless told to fail or hang."""

    sample_rate = 16000

    def __init__(self, listener, *, connect_error: Exception | None = None, hang: bool = False) -> None:
        self.listener = listener
        self.connect_error = connect_error
        self.hang = hang
        self.targets = []
        self.published: list[bytes] = []
        self.disconnected: list[TransportHandle] = []
        self.handle: TransportHandle | None = None
        self.unwound = False

    async def connect(self, target, credentials) -> TransportHandle:
        self.targets.append((target, credentials))
        if self.connect_error is not None:
            raise self.connect_error
        if self.hang:
            try:
                await asyncio.Event().wait()
            finally:
                await asyncio.sleep(0.01)
                self.unwound = True
        self.handle = TransportHandle(room_name=target.room_name, bot_identity=target.bot_identity)
        self.listener(TransportEvent(TransportEventType.CONNECTED, participant_identity=target.bot_identity))
        return self.handle

    async def disconnect(self, handle: TransportHandle) -> None:
        self.disconnected.append(handle)

    async def publish_audio(self, handle: TransportHandle, pcm: bytes, sample_rate: int) -> None:
        self.published.append(pcm)

    def remote_audio(self, audio: bytes) -> None:
        self.listener(TransportEvent(TransportEventType.REMOTE_AUDIO_FRAME, audio=audio))

    def remote_hangup(self) -> None:
        self.listener(TransportEvent(TransportEventType.DISCONNECTED, reason="participant_left"))


class FakeChannel:
    def __init__(self, sample_rate: int = 16000) -> None:
        self.sample_rate = sample_rate
        self.call_id: str | None = None
        self.on_transcript = None
        self.on_closed = None
        self.audio: list[bytes] = []
        self.closed = 0

    @property
    def is_open(self) -> bool:
        return self.on_transcript is not None and not self.closed

    async def open(self, call_id: str, on_transcript, on_closed=None) -> None:
        self.call_id = call_id
        self.on_transcript = on_transcript
        self.on_closed = on_closed

    async def send_audio(self, chunk: bytes) -> bool:
        self.audio.append(chunk)
        return True

    async def close(self) -> None:
        self.closed += 1

    def transcript(self, text: str, *, is_final: bool = True) -> None:
        self.on_transcript(TranscriptEvent(call_id=self.call_id, text=text, is_final=is_final))

    def drop(self) -> None:
        self.on_closed()


class FakeLLM:
    """Replies with `reply_for(last user text)`; optionally blocks until released."""

    def __init__(self, reply_for: Callable[[str], str] | None = None, error: Exception | None = None) -> None:
        self.reply_for = reply_for or (lambda text: f"echo: {text}")
        self.error = error
        self.calls: list[list[dict[str, str]]] = []
        self.gate: asyncio.Event | None = None

    def hold(self) -> None:
        self.gate = asyncio.Event()

    def release(self) -> None:
        if self.gate is not None:
            self.gate.set()

    async def chat(self, messages, *, temperature=None, max_tokens=None) -> str:
        messages = list(messages)
        self.calls.append(messages)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.reply_for(messages[-1]["content"])


class FakeSynthesizer:
    sample_rate = 16000

    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.texts: list[str] = []

    async def synthesize(self, text: str, voice_options=None) -> bytes:
        self.texts.append(text)
        if self.error is not None:
            raise self.error
        return f"AUDIO:{text}".encode()


class Harness:
    """A real CallManager wired to fakes, plus handles on every fake it created."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        room_service: FakeRoomService | None = None,
        llm: FakeLLM | None = None,
        synthesizer: FakeSynthesizer | None = None,
        transport_options: dict | None = None,
        channel_sample_rate: int = 16000,
    ) -> None:
        self.settings = settings or make_settings()
        self.room_service = room_service or FakeRoomService()
        self.llm = llm or FakeLLM()
        self.synthesizer = synthesizer or FakeSynthesizer()
        self.transport_options = transport_options or {}
        self.channel_sample_rate = channel_sample_rate
        self.transports: list[FakeTransport] = []
        self.channels: list[FakeChannel] = []
        self.manager = CallManager(
            self.settings,
            room_service=self.room_service,
            transport_factory=self._make_transport,
            channel_factory=self._make_channel,
            llm=self.llm,
            synthesizer=self.synthesizer,
        )

    def _make_transport(self, listener) -> FakeTransport:
        transport = FakeTransport(listener, **self.transport_options)
        self.transports.append(transport)
        return transport

    def _make_channel(self) -> FakeChannel:
        channel = FakeChannel(self.channel_sample_rate)
        self.channels.append(channel)
        return channel


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


@pytest.fixture(scope="session")
def app():
    import main

    return main.app


@pytest.fixture()
def client(app):
    # A real manager wired to fakes so tests never touch LiveKit, Deepgram or an LLM.
    harness = Harness()
    app.state.call_manager = harness.manager

    with TestClient(app) as test_client:
        test_client.harness = harness
        yield test_client

    app.state.call_manager = None
    app.dependency_overrides.clear()
