"""
Tests for the speech-to-speech client and session.
"""

import asyncio
import base64
import json
from dataclasses import replace
from datetime import datetime
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest

from fakes import FakeBookingService, FakeRealtimeClient, wait_until
from src.telecaller.business import BusinessContext
from src.telecaller.dialogue import HeuristicCompletion, Speaker
from src.telecaller.errors import SpeechPipelineError
from src.telecaller.events import BookingReady, SessionCompleted, SessionError
from src.telecaller.realtime import RealtimeClient, get_realtime_instructions
from src.telecaller.realtime_session import RealtimeSession
from src.telecaller.session import CallSession
from src.telecaller.signals import (
    AssistantTranscript,
    AudioDelta,
    AudioDone,
    ResponseCancelled,
    ResponseDone,
    ResponseStarted,
    SpeechClosed,
    SpeechError,
    SpeechStarted,
    SpeechStopped,
    UserTranscript,
)
from src.telecaller.state_machine import ConversationState as S

NOW = datetime(2025, 6, 10, 9, 30)
CALLER = "+15125551234"

REALTIME_CONFIG = SimpleNamespace(
    openai_api_key="sk-test",
    openai_realtime_model="gpt-realtime",
    openai_realtime_voice="alloy",
    openai_realtime_temperature=0.8,
    turn_silence_ms=1500,
)


def b64(data: bytes) -> str:
    return base64.b64encode(data).decode()


class TestInstructions:
    def test_instructions_mention_business_and_confirmation(self):
        text = get_realtime_instructions(BusinessContext(name="Bright Smile Dental"), now=NOW)

        assert "Bright Smile Dental" in text
        assert "You're all set" in text
        assert "Tuesday, June 10, 2025" in text

    def test_instructions_name_non_english_language(self):
        text = get_realtime_instructions(BusinessContext(name="Cabinet", timezone="Europe/Paris"), now=NOW)

        assert "Speak with the caller in fr." in text


class TestEventMapping:
    """Server events become typed signals."""

    def make_client(self):
        signals = []
        return RealtimeClient(signals.append, REALTIME_CONFIG), signals

    def test_vad_and_transcripts(self):
        client, signals = self.make_client()

        client._handle_event({"type": "input_audio_buffer.speech_started"})
        client._handle_event({"type": "input_audio_buffer.speech_stopped"})
        client._handle_event(
            {"type": "conversation.item.input_audio_transcription.completed", "transcript": " my name is Ana "}
        )
        client._handle_event(
            {"type": "conversation.item.input_audio_transcription.completed", "transcript": "  "}
        )
        client._handle_event({"type": "response.audio_transcript.done", "transcript": "You're all set."})

        assert signals == [
            SpeechStarted(),
            SpeechStopped(),
            UserTranscript(text="my name is Ana"),
            AssistantTranscript(text="You're all set."),
        ]

    def test_audio_from_cancelled_response_is_dropped(self):
        client, signals = self.make_client()

        client._handle_event({"type": "response.created", "response": {"id": "r2"}})
        client._handle_event({"type": "response.audio.delta", "response_id": "r1", "delta": b64(b"\x01" * 160)})
        client._handle_event({"type": "response.audio.delta", "response_id": "r2", "delta": b64(b"\x02" * 160)})
        client._handle_event({"type": "response.audio.done", "response_id": "r2"})

        assert signals == [
            ResponseStarted(response_id="r2"),
            AudioDelta(payload=b"\x02" * 160),
            AudioDone(),
        ]
        assert client.active_response_id == "r2"

    def test_response_done(self):
        client, signals = self.make_client()
        client._handle_event({"type": "response.created", "response": {"id": "r1"}})

        client._handle_event({"type": "response.done", "response": {"id": "r1", "status": "cancelled"}})
        client._handle_event({"type": "response.done", "response": {"id": "r3", "status": "completed"}})

        assert signals[1:] == [
            ResponseCancelled(response_id="r1"),
            ResponseDone(response_id="r3", status="completed"),
        ]
        assert client.active_response_id is None

    def test_errors(self):
        client, signals = self.make_client()

        client._handle_event({"type": "error", "error": {"code": "response_cancel_not_active", "message": "x"}})
        client._handle_event({"type": "error", "error": {"code": "bad", "message": "Invalid value"}})

        assert signals == [SpeechError(message="Invalid value", fatal=False)]


class TestCommands:
    @pytest.mark.asyncio
    async def test_cancel_response_clears_server_audio(self):
        client = RealtimeClient(lambda s: None, REALTIME_CONFIG)
        client._active_response_id = "r1"

        await client.cancel_response()

        sent = [client._send_queue.get_nowait()["type"] for _ in range(client._send_queue.qsize())]
        assert sent == ["response.cancel", "output_audio_buffer.clear"]
        assert client.active_response_id is None

    @pytest.mark.asyncio
    async def test_connect_requires_model(self):
        client = RealtimeClient(lambda s: None, replace_ns(REALTIME_CONFIG, openai_realtime_model=""))

        with pytest.raises(SpeechPipelineError):
            await client.connect()

    @pytest.mark.asyncio
    async def test_connect_failure(self):
        client = RealtimeClient(lambda s: None, REALTIME_CONFIG)

        with patch("src.telecaller.realtime.websockets.connect", AsyncMock(side_effect=OSError("refused"))):
            with pytest.raises(SpeechPipelineError):
                await client.connect()
        assert not client.is_connected

    @pytest.mark.asyncio
    async def test_connect_configures_session_and_streams_events(self):
        class FakeSocket:
            def __init__(self, incoming):
                self.incoming = incoming
                self.sent = []
                self.closed = False

            async def send(self, message):
                self.sent.append(json.loads(message))

            async def close(self):
                self.closed = True

            async def __aiter__(self):
                for item in self.incoming:
                    yield item
                await asyncio.Event().wait()

        socket = FakeSocket([json.dumps({"type": "input_audio_buffer.speech_started"})])
        signals = []
        client = RealtimeClient(signals.append, REALTIME_CONFIG, instructions="be brief")

        with patch("src.telecaller.realtime.websockets.connect", AsyncMock(return_value=socket)):
            await client.connect()
            await client.send_audio(b"\xff" * 160)
            await wait_until(lambda: len(socket.sent) == 2 and signals)
            await client.close()

        update = socket.sent[0]
        assert update["type"] == "session.update"
        assert update["session"]["input_audio_format"] == "g711_ulaw"
        assert update["session"]["output_audio_format"] == "g711_ulaw"
        assert update["session"]["instructions"] == "be brief"
        assert update["session"]["turn_detection"]["interrupt_response"] is False
        assert socket.sent[1] == {"type": "input_audio_buffer.append", "audio": b64(b"\xff" * 160)}
        assert signals == [SpeechStarted()]
        assert socket.closed

    @pytest.mark.asyncio
    async def test_unexpected_end_of_stream_is_reported(self):
        class EndingSocket:
            async def send(self, message):
                return None

            async def close(self):
                return None

            async def __aiter__(self):
                for item in ():
                    yield item

        signals = []
        client = RealtimeClient(signals.append, REALTIME_CONFIG)
        with patch("src.telecaller.realtime.websockets.connect", AsyncMock(return_value=EndingSocket())):
            await client.connect()
            await wait_until(lambda: signals)
            await client.close()

        assert isinstance(signals[0], SpeechClosed)


def replace_ns(ns, **changes):
    data = dict(vars(ns))
    data.update(changes)
    return SimpleNamespace(**data)


def make_session(config, transport, client, *, booking=None):
    return RealtimeSession(
        call_sid="CA1",
        stream_sid="MZ1",
        transport=transport,
        config=config,
        business=BusinessContext(name="Bright Smile Dental"),
        booking_service=booking or FakeBookingService(),
        client=client,
        completion=HeuristicCompletion(caller_phone=CALLER, clock=lambda: NOW),
        from_number=CALLER,
    )


def assistant_audio(session, frames, response_id="r1"):
    session.post(ResponseStarted(response_id=response_id))
    session.post(AudioDelta(payload=b"\x7f" * 160 * frames))
    session.post(AudioDone())


class TestRealtimeSession:
    @pytest.mark.asyncio
    async def test_greeting_comes_from_model(self, fast_config, fake_transport):
        client = FakeRealtimeClient()
        session = make_session(fast_config, fake_transport, client)

        await session.start()
        await wait_until(lambda: session.state == S.LISTENING)

        assert client.connected
        assert "Bright Smile Dental" in client.responses[0]
        await session.close()
        assert client.closed

    def test_connects_while_greeting_without_separate_open(self):
        assert "_open_speech" not in CallSession.__abstractmethods__
        assert "_open_speech" not in RealtimeSession.__dict__

    @pytest.mark.asyncio
    async def test_response_audio_plays_then_listens(self, fast_config, fake_transport):
        client = FakeRealtimeClient()
        session = make_session(fast_config, fake_transport, client)
        await session.start()
        await wait_until(lambda: session.state == S.LISTENING)

        assistant_audio(session, frames=5)
        await wait_until(lambda: (S.PROCESSING, S.SPEAKING) in session.state_history)
        await wait_until(lambda: session.state == S.LISTENING and not session.is_speaking)

        assert len(fake_transport.frames) == 5
        await session.close()

    @pytest.mark.asyncio
    async def test_text_only_response_returns_to_listening(self, fast_config, fake_transport):
        session = make_session(fast_config, fake_transport, FakeRealtimeClient())
        await session.start()
        await wait_until(lambda: session.state == S.LISTENING)

        session.post(ResponseStarted(response_id="r1"))
        session.post(ResponseDone(response_id="r1", status="completed"))
        await wait_until(lambda: (S.PROCESSING, S.LISTENING) in session.state_history)

        assert session.state == S.LISTENING
        await session.close()

    @pytest.mark.asyncio
    async def test_audio_forwarded_to_model(self, fast_config, fake_transport):
        client = FakeRealtimeClient()
        session = make_session(fast_config, fake_transport, client)
        await session.start()

        await session.ingest_audio(b"\xff" * 160)

        assert client.audio == [b"\xff" * 160]
        await session.close()

    @pytest.mark.asyncio
    async def test_barge_in_cancels_model_response(self, fast_config, fake_transport):
        config = replace(fast_config, outbound_pace_ms=20)
        client = FakeRealtimeClient()
        session = make_session(config, fake_transport, client)
        await session.start()
        await wait_until(lambda: session.state == S.LISTENING)

        assistant_audio(session, frames=100)
        await wait_until(lambda: session.state == S.SPEAKING)
        session.post(SpeechStarted())
        await wait_until(lambda: session.metrics.barge_ins == 1)

        assert client.cancels == 1
        assert len(session.output) == 0
        assert session.state == S.LISTENING

        # Late audio from the cancelled response is not played.
        session.post(AudioDelta(payload=b"\x7f" * 1600))
        await asyncio.sleep(0.05)
        assert len(session.output) == 0
        assert not session.is_speaking
        await session.close()

    @pytest.mark.asyncio
    async def test_confirmed_booking_completes(self, fast_config, fake_transport):
        booking = FakeBookingService()
        session = make_session(fast_config, fake_transport, FakeRealtimeClient(), booking=booking)
        await session.start()
        await wait_until(lambda: session.state == S.LISTENING)

        session.post(UserTranscript(text="My name is John Doe, tomorrow at 2pm"))
        session.post(UserTranscript(text="Yes that's correct"))
        assistant_audio(session, frames=5)
        session.post(AssistantTranscript(text="You're all set, John, tomorrow at 2pm. See you then!"))

        await wait_until(lambda: session.state == S.COMPLETED)
        await wait_until(lambda: fake_transport.hangups == ["CA1"])

        assert session.fields.customer_name == "John Doe"
        assert session.fields.appointment_date == "2025-06-11"
        assert session.fields.appointment_time == "14:00"
        assert session.metrics.turns == 2
        speakers = [e.speaker for e in session.transcript]
        assert speakers == [Speaker.CALLER, Speaker.CALLER, Speaker.ASSISTANT]
        events = session.events.drain()
        assert len([e for e in events if isinstance(e, BookingReady)]) == 1
        assert len([e for e in events if isinstance(e, SessionCompleted)]) == 1
        await session.close()

    @pytest.mark.asyncio
    async def test_rejected_booking_cuts_false_confirmation(self, fast_config, fake_transport):
        reason = "This time slot is already booked. Please choose another time."
        config = replace(fast_config, outbound_pace_ms=20)
        client = FakeRealtimeClient()
        booking = FakeBookingService(available=False, reason=reason)
        session = make_session(config, fake_transport, client, booking=booking)
        await session.start()
        await wait_until(lambda: session.state == S.LISTENING)

        session.post(UserTranscript(text="My name is John Doe, tomorrow at 2pm"))
        assistant_audio(session, frames=100)
        session.post(AssistantTranscript(text="You're all set for tomorrow at 2pm!"))

        await wait_until(lambda: any(r and reason in r for r in client.responses))

        assert client.cancels == 1
        assert fake_transport.clears == 1
        assert not session.is_speaking
        assert session.state == S.LISTENING
        assert session.fields.appointment_date is None
        events = session.events.drain()
        assert [e for e in events if isinstance(e, SessionCompleted)] == []
        assert [e.cause for e in events if isinstance(e, SessionError)] == [reason]
        await session.close()

    @pytest.mark.asyncio
    async def test_second_attempt_books_the_new_day(self, fast_config, fake_transport):
        reason = "Sorry, we're closed on Saturday. We're open 9 AM to 5 PM on weekdays."
        client = FakeRealtimeClient()
        booking = FakeBookingService(reason=reason, is_closed=lambda start: start.weekday() == 5)
        session = make_session(fast_config, fake_transport, client, booking=booking)
        await session.start()
        await wait_until(lambda: session.state == S.LISTENING)

        session.post(UserTranscript(text="My name is John Doe, Saturday at 2pm"))
        session.post(AssistantTranscript(text="You're all set for Saturday at 2pm!"))
        await wait_until(lambda: any(r and "closed on Saturday" in r for r in client.responses))

        session.post(AssistantTranscript(text=reason))
        session.post(UserTranscript(text="Okay, Monday at 3pm then"))
        session.post(AssistantTranscript(text="You're all set for Monday at 3pm."))
        await wait_until(lambda: session.state == S.COMPLETED)

        checked = [start.strftime("%Y-%m-%dT%H:%M") for start, _ in booking.checks]
        assert checked == ["2025-06-14T14:00", "2025-06-16T15:00"]
        assert session.fields.customer_name == "John Doe"
        assert len(booking.created) == 1
        await session.close()

    @pytest.mark.asyncio
    async def test_connect_failure_is_fatal(self, fast_config, fake_transport):
        client = FakeRealtimeClient()
        client.connect = AsyncMock(side_effect=SpeechPipelineError("no model"))
        session = make_session(fast_config, fake_transport, client)

        await session.start()
        await wait_until(lambda: session.state == S.FAILED)
        await session.close()
