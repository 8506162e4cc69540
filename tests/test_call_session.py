from __future__ import annotations

import asyncio

from calls.errors import SetupTimeoutError, SynthesisError, TransportConnectionError
from calls.session import CallStatus, EndReason
from conftest import FakeLLM, FakeSynthesizer, Harness, make_settings, wait_until


async def _active_inbound(harness: Harness, caller: str = "alice"):
    session = await harness.manager.create_inbound("room-1", caller_identity=caller)
    await wait_until(lambda: session.status is CallStatus.ACTIVE)
    return session, harness.transports[0], harness.channels[0]


def _user_texts(messages):
    return [m["content"] for m in messages if m["role"] == "user"]


def test_inbound_call_answers_final_transcript():
    async def scenario():
        harness = Harness(llm=FakeLLM(reply_for=lambda text: "hi, how can I help?"))
        session, transport, channel = await _active_inbound(harness)

        assert channel.call_id == session.call_id
        channel.transcript("hello")
        await wait_until(lambda: transport.published)

        messages = harness.llm.calls[0]
        assert messages[-1] == {"role": "user", "content": "hello"}
        assert all(m["role"] == "system" for m in messages[:-1])
        assert "inbound call from alice" in messages[1]["content"]
        assert harness.synthesizer.texts == ["hi, how can I help?"]
        assert transport.published == [b"AUDIO:hi, how can I help?"]
        assert [t.role for t in session.context.turns][-2:] == ["user", "assistant"]
        assert session.last_transcript == "hello"
        assert session.last_transcript_at is not None

        await harness.manager.shutdown()

    asyncio.run(scenario())


def test_interim_and_blank_transcripts_do_not_trigger_a_turn():
    async def scenario():
        harness = Harness()
        session, transport, channel = await _active_inbound(harness)

        channel.transcript("hel", is_final=False)
        channel.transcript("   ")
        await asyncio.sleep(0.05)

        assert harness.llm.calls == []
        assert session.last_transcript is None

        await harness.manager.shutdown()

    asyncio.run(scenario())


def test_remote_audio_is_forwarded_while_active():
    async def scenario():
        harness = Harness()
        session, transport, channel = await _active_inbound(harness)

        transport.remote_audio(b"\x01\x00" * 160)
        await wait_until(lambda: channel.audio)

        assert channel.audio == [b"\x01\x00" * 160]
        await harness.manager.shutdown()

    asyncio.run(scenario())


def test_transcripts_during_a_step_coalesce_to_latest():
    async def scenario():
        harness = Harness()
        session, transport, channel = await _active_inbound(harness)
        harness.llm.hold()

        channel.transcript("one")
        await wait_until(lambda: len(harness.llm.calls) == 1)
        channel.transcript("two")
        channel.transcript("three")
        await wait_until(lambda: session.pending_transcript == "three")
        assert session.step_in_flight

        harness.llm.release()
        await wait_until(lambda: len(transport.published) == 2)

        assert len(harness.llm.calls) == 2
        assert _user_texts(harness.llm.calls[1]) == ["one", "three"]
        assert harness.synthesizer.texts == ["echo: one", "echo: three"]
        assert session.pending_transcript is None

        await harness.manager.shutdown()

    asyncio.run(scenario())


def test_remote_disconnect_ends_call_and_releases_everything():
    async def scenario():
        harness = Harness()
        session, transport, channel = await _active_inbound(harness)

        transport.remote_hangup()
        assert session.status is CallStatus.ENDING

        await session.wait_closed()
        assert session.status is CallStatus.ENDED
        assert session.end_reason is EndReason.REMOTE_DISCONNECT
        assert channel.closed == 1
        assert transport.disconnected == [transport.handle]
        assert not session.context.initialized
        assert session.ended_at is not None

    asyncio.run(scenario())


def test_disconnect_mid_step_discards_the_response():
    async def scenario():
        harness = Harness()
        session, transport, channel = await _active_inbound(harness)
        harness.llm.hold()

        channel.transcript("hello")
        await wait_until(lambda: harness.llm.calls)
        channel.transcript("are you there?")
        await wait_until(lambda: session.pending_transcript is not None)

        transport.remote_hangup()
        assert session.pending_transcript is None
        harness.llm.release()
        await session.wait_closed()

        assert harness.synthesizer.texts == []
        assert transport.published == []
        assert len(harness.llm.calls) == 1

    asyncio.run(scenario())


def test_completion_failure_speaks_apology_without_recording_it():
    async def scenario():
        settings = make_settings()
        harness = Harness(settings, llm=FakeLLM(error=RuntimeError("model down")))
        session, transport, channel = await _active_inbound(harness)

        channel.transcript("hello")
        await wait_until(lambda: transport.published)

        assert harness.synthesizer.texts == [settings.fallback_response]
        assert session.context.turns[-1].role == "user"
        assert session.status is CallStatus.ACTIVE

        await harness.manager.shutdown()

    asyncio.run(scenario())


def test_completion_timeout_is_treated_as_failure():
    async def scenario():
        settings = make_settings(llm_timeout_seconds=0.05)
        harness = Harness(settings)
        session, transport, channel = await _active_inbound(harness)
        harness.llm.hold()

        channel.transcript("hello")
        await wait_until(lambda: transport.published)

        assert harness.synthesizer.texts == [settings.fallback_response]
        assert not session.step_in_flight

        await harness.manager.shutdown()

    asyncio.run(scenario())


def test_synthesis_failure_keeps_assistant_turn_and_stays_silent():
    async def scenario():
        harness = Harness(synthesizer=FakeSynthesizer(error=SynthesisError("tts down")))
        session, transport, channel = await _active_inbound(harness)

        channel.transcript("hello")
        await wait_until(lambda: harness.synthesizer.texts)
        await wait_until(lambda: not session.step_in_flight)

        assert session.context.turns[-1].role == "assistant"
        assert session.context.turns[-1].content == "echo: hello"
        assert transport.published == []
        assert session.status is CallStatus.ACTIVE

        await harness.manager.shutdown()

    asyncio.run(scenario())


def test_connect_failure_ends_with_connection_failed():
    async def scenario():
        harness = Harness(
            transport_options={"connect_error": TransportConnectionError("room unreachable")}
        )
        session = await harness.manager.create_inbound("room-1", caller_identity="alice")
        await session.wait_closed()

        assert session.end_reason is EndReason.CONNECTION_FAILED
        assert isinstance(session.error, TransportConnectionError)
        assert harness.channels[0].closed == 1
        assert harness.transports[0].disconnected == []

    asyncio.run(scenario())


def test_setup_timeout_forces_ending():
    async def scenario():
        harness = Harness(make_settings(setup_timeout_seconds=0.05), transport_options={"hang": True})
        session = await harness.manager.create_inbound("room-1", caller_identity="alice")
        assert session.status is CallStatus.CONNECTING

        await session.wait_closed()

        assert session.end_reason is EndReason.SETUP_TIMEOUT
        assert isinstance(session.error, SetupTimeoutError)
        assert harness.channels[0].closed == 1
        assert harness.transports[0].unwound

    asyncio.run(scenario())


def test_outbound_call_dials_normalized_number_during_connect():
    async def scenario():
        harness = Harness()
        session = await harness.manager.create_outbound(
            "555-123-4567", initial_context="You are calling about an appointment."
        )
        await wait_until(lambda: session.status is CallStatus.ACTIVE)

        target, credentials = harness.transports[0].targets[0]
        assert target.dial_number == "+15551234567"
        assert target.room_name == f"call-{session.call_id}"
        assert credentials.token == f"token-{session.bot_identity}"
        assert session.context.turns[-1].content == "You are calling about an appointment."

        await harness.manager.shutdown()

    asyncio.run(scenario())


def test_snapshot_reflects_session_state():
    async def scenario():
        harness = Harness()
        session, transport, channel = await _active_inbound(harness, caller="sip_caller")

        snapshot = session.snapshot()
        assert snapshot.id == session.call_id
        assert snapshot.type == "inbound"
        assert snapshot.status == "active"
        assert snapshot.counterparty == "sip_caller"
        assert snapshot.end_time is None
        assert snapshot.duration >= 0

        session.request_end()
        await session.wait_closed()
        snapshot = session.snapshot()
        assert snapshot.status == "ended"
        assert snapshot.end_reason == "requested"
        assert snapshot.end_time is not None

    asyncio.run(scenario())


def test_transcription_channel_drop_ends_the_call():
    async def scenario():
        harness = Harness()
        session, transport, channel = await _active_inbound(harness)

        channel.drop()
        assert session.status is CallStatus.ENDING

        await session.wait_closed()
        assert session.end_reason is EndReason.ERROR
        assert isinstance(session.error, TransportConnectionError)
        assert transport.disconnected == [transport.handle]

    asyncio.run(scenario())


def test_remote_audio_is_resampled_to_channel_rate():
    async def scenario():
        harness = Harness(channel_sample_rate=8000)
        session, transport, channel = await _active_inbound(harness)

        transport.remote_audio(b"\x10\x00" * 320)
        await wait_until(lambda: channel.audio)

        assert len(channel.audio[0]) == 320
        await harness.manager.shutdown()

    asyncio.run(scenario())


def test_one_call_ending_leaves_concurrent_call_untouched():
    async def scenario():
        harness = Harness()
        first = await harness.manager.create_inbound("room-a", caller_identity="alice")
        second = await harness.manager.create_inbound("room-b", caller_identity="bob")
        await wait_until(
            lambda: first.status is CallStatus.ACTIVE and second.status is CallStatus.ACTIVE
        )
        first_transport, second_transport = harness.transports
        first_channel, second_channel = harness.channels

        first_channel.transcript("first caller speaking")
        first_transport.remote_hangup()
        await first.wait_closed()

        second_channel.transcript("hello from bob")
        await wait_until(lambda: second_transport.published)

        assert second.status is CallStatus.ACTIVE
        assert second_channel.closed == 0
        assert second_transport.disconnected == []
        assert second_transport.published == [b"AUDIO:echo: hello from bob"]
        assert first_transport.published == []
        assert _user_texts(harness.llm.calls[-1]) == ["hello from bob"]

        await harness.manager.shutdown()

    asyncio.run(scenario())
