"""
Deepgram Speech-to-Text streaming client.

- Accepts mu-law 8kHz directly from Twilio (no conversion needed)
- Interim results plus VAD events drive turn-taking:
  SpeechStarted -> barge-in / re-arm, speech_final -> short window,
  UtteranceEnd -> boundary window
- Caller audio that arrives while the socket is still opening is buffered
  and flushed on connect, so the greeting never waits on STT and nothing
  the caller says is lost.

Every Deepgram message becomes a typed signal handed to the session inbox.
"""

import asyncio
import json
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Optional

import structlog
import websockets

from src.telecaller.config import get_config
from src.telecaller.errors import SpeechPipelineError
from src.telecaller.signals import (
    SignalSink,
    SpeechClosed,
    SpeechError,
    SpeechFinal,
    SpeechStarted,
    Transcript,
    UtteranceBoundary,
)

logger = structlog.get_logger(__name__)

DEEPGRAM_LISTEN_URL = "wss://api.deepgram.com/v1/listen"

# 5 seconds of 20ms Twilio frames.
MAX_PENDING_FRAMES = 250


@dataclass
class STTMetrics:
    """Metrics for STT performance."""
    total_audio_ms: float = 0.0
    total_transcripts: int = 0
    final_transcripts: int = 0
    avg_latency_ms: float = 0.0

    def record_transcript(self, is_final: bool, latency_ms: float) -> None:
        self.total_transcripts += 1
        if is_final:
            self.final_transcripts += 1
        self.avg_latency_ms = (
            (self.avg_latency_ms * (self.total_transcripts - 1) + latency_ms)
            / self.total_transcripts
        )


def build_listen_url(config: Any, language: Optional[str] = None) -> str:
    return (
        f"{DEEPGRAM_LISTEN_URL}"
        f"?model={config.deepgram_stt_model}"
        f"&language={language or config.deepgram_language}"
        f"&encoding=mulaw"
        f"&sample_rate=8000"
        f"&channels=1"
        f"&punctuate=true"
        f"&smart_format=true"
        f"&interim_results=true"
        f"&vad_events=true"
        f"&utterance_end_ms={config.deepgram_utterance_end_ms}"
        f"&endpointing={config.deepgram_endpointing_ms}"
    )


class DeepgramSTT:
    """Deepgram streaming STT client over a raw WebSocket."""

    def __init__(self, sink: SignalSink, config: Optional[Any] = None, language: Optional[str] = None):
        if config is None:
            config = get_config()

        self.config = config
        self.language = language or config.deepgram_language
        self._sink = sink
        self._ws = None
        self._is_connected = False
        self._closing = False
        self._receive_task: Optional[asyncio.Task] = None
        self._pending: Deque[bytes] = deque(maxlen=MAX_PENDING_FRAMES)
        self._last_audio_time: float = 0.0
        self._metrics = STTMetrics()

    @property
    def is_connected(self) -> bool:
        return self._is_connected

    @property
    def metrics(self) -> STTMetrics:
        return self._metrics

    async def start(self) -> None:
        """Open the stream. Raises SpeechPipelineError if Deepgram is unreachable."""
        if self._is_connected:
            return

        headers = {"Authorization": f"Token {self.config.deepgram_api_key}"}
        try:
            self._ws = await websockets.connect(
                build_listen_url(self.config, self.language),
                additional_headers=headers,
                open_timeout=10,
            )
        except Exception as e:
            logger.error("Deepgram connection failed", error_type=type(e).__name__, error=str(e))
            raise SpeechPipelineError(f"Deepgram connection failed: {e}") from e

        self._is_connected = True
        logger.info("Deepgram STT connected", model=self.config.deepgram_stt_model, language=self.language)
        self._receive_task = asyncio.create_task(self._receive_loop())

        buffered = len(self._pending)
        while self._pending and self._is_connected:
            await self._ws.send(self._pending.popleft())
        if buffered:
            logger.debug("Flushed buffered caller audio", frames=buffered)

    async def close(self) -> None:
        """Close the stream; no SpeechClosed signal is published for a requested close."""
        self._closing = True
        was_connected = self._is_connected
        self._is_connected = False

        if self._ws and was_connected:
            try:
                await self._ws.send(json.dumps({"type": "CloseStream"}))
            except Exception as e:
                logger.debug("CloseStream not sent", error=str(e))

        if self._receive_task and not self._receive_task.done():
            self._receive_task.cancel()
            try:
                await self._receive_task
            except asyncio.CancelledError:
                pass

        if self._ws:
            try:
                await self._ws.close()
            except Exception as e:
                logger.warning("Error closing Deepgram connection", error=str(e))

        self._ws = None
        self._pending.clear()
        logger.info("Deepgram STT disconnected")

    async def send_audio(self, audio_bytes: bytes) -> None:
        """Send caller audio; buffers while the socket is still opening."""
        if self._closing or not audio_bytes:
            return
        if not self._is_connected or not self._ws:
            self._pending.append(audio_bytes)
            return

        try:
            self._last_audio_time = time.time()
            self._metrics.total_audio_ms += len(audio_bytes) / 8
            await self._ws.send(audio_bytes)
        except websockets.exceptions.ConnectionClosed as e:
            logger.error("Failed to send audio to Deepgram", error=str(e))

    async def _receive_loop(self) -> None:
        reason = ""
        try:
            async for message in self._ws:
                try:
                    data = json.loads(message)
                except json.JSONDecodeError:
                    logger.warning("Invalid JSON from Deepgram")
                    continue
                self._handle_message(data)
        except websockets.exceptions.ConnectionClosed as e:
            reason = f"closed: {e.code}"
            logger.info("Deepgram connection closed", code=e.code)
        except asyncio.CancelledError:
            return
        finally:
            self._is_connected = False

        if not self._closing:
            self._sink(SpeechClosed(reason=reason or "stream ended"))

    def _handle_message(self, data: dict) -> None:
        """Translate one Deepgram message into signals."""
        msg_type = str(data.get("type", "")).lower()

        if msg_type == "results":
            alternatives = data.get("channel", {}).get("alternatives", [])
            if not alternatives:
                return
            text = (alternatives[0].get("transcript") or "").strip()
            is_final = bool(data.get("is_final", False))
            speech_final = bool(data.get("speech_final", False))

            if text:
                latency_ms = 0.0
                if self._last_audio_time > 0:
                    latency_ms = (time.time() - self._last_audio_time) * 1000
                self._metrics.record_transcript(is_final, latency_ms)
                logger.debug("STT transcript", chars=len(text), is_final=is_final, speech_final=speech_final)
                self._sink(
                    Transcript(
                        text=text,
                        is_final=is_final,
                        confidence=float(alternatives[0].get("confidence", 0.0) or 0.0),
                    )
                )
            if speech_final:
                self._sink(SpeechFinal())

        elif msg_type == "speechstarted":
            logger.debug("STT speech started")
            self._sink(SpeechStarted())

        elif msg_type == "utteranceend":
            logger.debug("Utterance end detected")
            self._sink(UtteranceBoundary())

        elif msg_type == "error":
            message = str(data.get("description") or data.get("message") or "Unknown")
            logger.error("Deepgram error", error=message)
            self._sink(SpeechError(message=message, fatal=False))
