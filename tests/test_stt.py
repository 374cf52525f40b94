"""
Tests for the Deepgram STT adapter: message mapping and connect buffering.
"""

import asyncio
import json
from unittest.mock import AsyncMock, patch

import pytest

from src.telecaller.errors import SpeechPipelineError
from src.telecaller.signals import (
    SpeechClosed,
    SpeechError,
    SpeechFinal,
    SpeechStarted,
    Transcript,
    UtteranceBoundary,
)
from src.telecaller.stt import MAX_PENDING_FRAMES, DeepgramSTT, build_listen_url


class FakeSocket:
    """WebSocket stand-in whose receive side stays open until closed."""

    def __init__(self, messages=()):
        self.sent = []
        self.closed = False
        self._messages = list(messages)
        self._done = asyncio.Event()

    async def send(self, data):
        self.sent.append(data)

    async def close(self):
        self.closed = True
        self._done.set()

    def finish(self):
        self._done.set()

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for message in self._messages:
            yield message
        await self._done.wait()


def results(text, *, is_final=False, speech_final=False, confidence=0.9):
    return {
        "type": "Results",
        "is_final": is_final,
        "speech_final": speech_final,
        "channel": {"alternatives": [{"transcript": text, "confidence": confidence}]},
    }


@pytest.fixture
def stt_and_signals():
    signals = []
    return DeepgramSTT(signals.append), signals


class TestMessageMapping:
    def test_interim_transcript(self, stt_and_signals):
        stt, signals = stt_and_signals

        stt._handle_message(results("hello"))

        assert signals == [Transcript(text="hello", is_final=False, confidence=0.9)]

    def test_final_with_speech_final(self, stt_and_signals):
        stt, signals = stt_and_signals

        stt._handle_message(results("book me in", is_final=True, speech_final=True))

        assert signals == [
            Transcript(text="book me in", is_final=True, confidence=0.9),
            SpeechFinal(),
        ]
        assert stt.metrics.final_transcripts == 1

    def test_empty_text_only_marks_speech_final(self, stt_and_signals):
        stt, signals = stt_and_signals

        stt._handle_message(results("  ", is_final=True, speech_final=True))

        assert signals == [SpeechFinal()]

    def test_no_alternatives_is_ignored(self, stt_and_signals):
        stt, signals = stt_and_signals

        stt._handle_message({"type": "Results", "channel": {"alternatives": []}})

        assert signals == []

    def test_vad_events(self, stt_and_signals):
        stt, signals = stt_and_signals

        stt._handle_message({"type": "SpeechStarted"})
        stt._handle_message({"type": "UtteranceEnd"})

        assert signals == [SpeechStarted(), UtteranceBoundary()]

    def test_error_is_not_fatal(self, stt_and_signals):
        stt, signals = stt_and_signals

        stt._handle_message({"type": "Error", "description": "bad audio"})

        assert signals == [SpeechError(message="bad audio", fatal=False)]

    def test_unknown_type_is_ignored(self, stt_and_signals):
        stt, signals = stt_and_signals

        stt._handle_message({"type": "Metadata"})

        assert signals == []


def test_listen_url_params():
    from src.telecaller.config import get_config

    url = build_listen_url(get_config())

    assert url.startswith("wss://api.deepgram.com/v1/listen?")
    assert "encoding=mulaw" in url
    assert "sample_rate=8000" in url
    assert "interim_results=true" in url
    assert "vad_events=true" in url


def test_listen_url_uses_call_language():
    from src.telecaller.config import get_config

    config = get_config()

    assert "language=es&" in build_listen_url(config, "es")
    assert f"language={config.deepgram_language}&" in build_listen_url(config)
    assert DeepgramSTT(AsyncMock(), config, language="fr").language == "fr"


class TestConnection:
    @pytest.mark.asyncio
    async def test_audio_buffered_until_connected(self, stt_and_signals):
        stt, _ = stt_and_signals
        socket = FakeSocket()

        await stt.send_audio(b"\x01" * 160)
        await stt.send_audio(b"\x02" * 160)
        assert not stt.is_connected

        with patch("src.telecaller.stt.websockets.connect", new=AsyncMock(return_value=socket)):
            await stt.start()

        assert socket.sent == [b"\x01" * 160, b"\x02" * 160]

        await stt.send_audio(b"\x03" * 160)
        assert socket.sent[-1] == b"\x03" * 160

        await stt.close()

    @pytest.mark.asyncio
    async def test_buffer_is_bounded(self, stt_and_signals):
        stt, _ = stt_and_signals

        for i in range(MAX_PENDING_FRAMES + 10):
            await stt.send_audio(bytes([i % 256]) * 160)

        assert len(stt._pending) == MAX_PENDING_FRAMES

    @pytest.mark.asyncio
    async def test_connect_failure_raises(self, stt_and_signals):
        stt, _ = stt_and_signals

        with patch("src.telecaller.stt.websockets.connect", new=AsyncMock(side_effect=OSError("refused"))):
            with pytest.raises(SpeechPipelineError):
                await stt.start()

        assert not stt.is_connected

    @pytest.mark.asyncio
    async def test_messages_reach_the_sink(self, stt_and_signals):
        stt, signals = stt_and_signals
        socket = FakeSocket([json.dumps({"type": "SpeechStarted"}), "not json"])

        with patch("src.telecaller.stt.websockets.connect", new=AsyncMock(return_value=socket)):
            await stt.start()
        await asyncio.sleep(0.01)

        assert signals == [SpeechStarted()]
        await stt.close()

    @pytest.mark.asyncio
    async def test_requested_close_is_silent(self, stt_and_signals):
        stt, signals = stt_and_signals
        socket = FakeSocket()

        with patch("src.telecaller.stt.websockets.connect", new=AsyncMock(return_value=socket)):
            await stt.start()
        await stt.close()

        assert json.loads(socket.sent[-1]) == {"type": "CloseStream"}
        assert socket.closed
        assert not any(isinstance(s, SpeechClosed) for s in signals)

    @pytest.mark.asyncio
    async def test_unexpected_end_publishes_closed(self, stt_and_signals):
        stt, signals = stt_and_signals
        socket = FakeSocket()

        with patch("src.telecaller.stt.websockets.connect", new=AsyncMock(return_value=socket)):
            await stt.start()
        socket.finish()
        await asyncio.sleep(0.01)

        assert signals == [SpeechClosed(reason="stream ended")]
        assert not stt.is_connected
        await stt.close()
