"""
OpenAI Realtime (speech-to-speech) client.

Twilio (g711_ulaw 8kHz) -> OpenAI Realtime -> Twilio (g711_ulaw 8kHz)

The client only moves bytes and events: server events become typed signals
handed to the session inbox, and the session decides what they mean.
Outbound events go through a bounded send queue so a slow socket never
blocks the Twilio receiver.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
from datetime import datetime
from typing import Any, Optional

import structlog
import websockets

from src.telecaller.business import BusinessContext
from src.telecaller.config import get_config
from src.telecaller.errors import SpeechPipelineError
from src.telecaller.signals import (
    AssistantTranscript,
    AssistantTranscriptDelta,
    AudioDelta,
    AudioDone,
    ResponseCancelled,
    ResponseDone,
    ResponseStarted,
    SignalSink,
    SpeechClosed,
    SpeechError,
    SpeechStarted,
    SpeechStopped,
    UserTranscript,
)

logger = structlog.get_logger(__name__)

REALTIME_URL = "wss://api.openai.com/v1/realtime"
TRANSCRIPTION_MODEL = "whisper-1"


def _b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("utf-8")


def _b64decode(data: str) -> bytes:
    try:
        return base64.b64decode(data)
    except (binascii.Error, ValueError):
        return b""


def get_realtime_instructions(business: BusinessContext, now: Optional[datetime] = None) -> str:
    """Session instructions for the speech-to-speech model."""
    now = now or business.now()
    notes = f" {business.notes}" if business.notes else ""
    language = business.speech_language
    language_note = "" if language.startswith("en") else f" Speak with the caller in {language}."
    return (
        f"You are a friendly phone assistant booking appointments for {business.name}. "
        f"Open the call with: \"{business.greeting_text()}\" "
        "Collect the caller's name, the appointment date and the appointment time, one question at a time. "
        "Keep every reply to one or two short sentences. "
        "Repeat the details back and wait for the caller to agree. "
        "Once they agree, say \"You're all set\" followed by the date and time. "
        "If interrupted, stop speaking immediately and listen. "
        f"Appointments last {business.appointment_duration_minutes} minutes and need "
        f"{business.minimum_notice_hours} hours notice. "
        f"Today is {now.strftime('%A, %B %d, %Y')} and the time is {now.strftime('%H:%M')} "
        f"({business.timezone}).{language_note}{notes}"
    )


class RealtimeClient:
    """
    One OpenAI Realtime connection per call.

    Commands: `connect()`, `send_audio()`, `cancel_response()`,
    `create_response()`, `close()`.
    """

    def __init__(self, sink: SignalSink, config: Optional[Any] = None, *, instructions: str = ""):
        if config is None:
            config = get_config()

        self.config = config
        self._sink = sink
        self._instructions = instructions
        self._ws: Optional[Any] = None
        self._send_queue: asyncio.Queue[Optional[dict]] = asyncio.Queue(maxsize=2000)
        self._send_task: Optional[asyncio.Task] = None
        self._recv_task: Optional[asyncio.Task] = None
        self._connected = False
        self._closing = False
        self._active_response_id: Optional[str] = None

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def active_response_id(self) -> Optional[str]:
        return self._active_response_id

    async def connect(self) -> None:
        """Open the socket and configure the session. Raises SpeechPipelineError."""
        if self._connected:
            return

        api_key = (self.config.openai_api_key or "").strip()
        model = (self.config.openai_realtime_model or "").strip()
        if not api_key or not model:
            raise SpeechPipelineError("OpenAI Realtime requires OPENAI_API_KEY and OPENAI_REALTIME_MODEL")

        headers = {
            "Authorization": f"Bearer {api_key}",
            "OpenAI-Beta": "realtime=v1",
        }
        try:
            self._ws = await websockets.connect(
                f"{REALTIME_URL}?model={model}", additional_headers=headers, open_timeout=10
            )
        except Exception as e:
            logger.error("OpenAI Realtime connection failed", error_type=type(e).__name__, error=str(e))
            raise SpeechPipelineError(f"OpenAI Realtime connection failed: {e}") from e

        self._connected = True
        self._send_task = asyncio.create_task(self._send_loop())
        self._recv_task = asyncio.create_task(self._receive_loop())

        self._enqueue(
            {
                "type": "session.update",
                "session": {
                    "modalities": ["audio", "text"],
                    "instructions": self._instructions,
                    "voice": self.config.openai_realtime_voice,
                    "input_audio_format": "g711_ulaw",
                    "output_audio_format": "g711_ulaw",
                    "input_audio_transcription": {"model": TRANSCRIPTION_MODEL},
                    "turn_detection": {
                        "type": "server_vad",
                        "silence_duration_ms": int(self.config.turn_silence_ms // 3),
                        "create_response": True,
                        # Barge-in is driven by the session so the output queue clears first.
                        "interrupt_response": False,
                    },
                    "temperature": self.config.openai_realtime_temperature,
                },
            }
        )
        logger.info("OpenAI Realtime connected", model=model, voice=self.config.openai_realtime_voice)

    async def close(self) -> None:
        """Close the socket; no SpeechClosed signal is published for a requested close."""
        self._closing = True
        self._connected = False

        for task in (self._send_task, self._recv_task):
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        if self._ws:
            try:
                await self._ws.close()
            except Exception as e:
                logger.warning("Error closing OpenAI Realtime connection", error=str(e))
        self._ws = None
        logger.info("OpenAI Realtime disconnected")

    def _enqueue(self, message: dict) -> None:
        if self._closing:
            return
        try:
            self._send_queue.put_nowait(message)
        except asyncio.QueueFull:
            logger.warning("OpenAI send queue full; dropping event", type=message.get("type"))

    async def send_audio(self, ulaw_bytes: bytes) -> None:
        if not ulaw_bytes or not self._connected:
            return
        self._enqueue({"type": "input_audio_buffer.append", "audio": _b64encode(ulaw_bytes)})

    async def cancel_response(self) -> None:
        """Stop the in-flight response and drop audio the server has not sent yet."""
        self._enqueue({"type": "response.cancel"})
        self._enqueue({"type": "output_audio_buffer.clear"})
        self._active_response_id = None

    async def create_response(self, instructions: Optional[str] = None) -> None:
        response: dict = {"modalities": ["audio", "text"]}
        if instructions:
            response["instructions"] = instructions
        self._enqueue({"type": "response.create", "response": response})

    async def _send_loop(self) -> None:
        ws = self._ws
        try:
            while True:
                item = await self._send_queue.get()
                if item is None:
                    break
                try:
                    await ws.send(json.dumps(item))
                except websockets.exceptions.ConnectionClosed as e:
                    logger.error("OpenAI send failed", error=str(e), type=item.get("type"))
                    break
        except asyncio.CancelledError:
            pass

    async def _receive_loop(self) -> None:
        reason = ""
        try:
            async for raw in self._ws:
                try:
                    event = json.loads(raw)
                except json.JSONDecodeError:
                    logger.warning("Invalid JSON from OpenAI Realtime")
                    continue
                self._handle_event(event)
        except websockets.exceptions.ConnectionClosed as e:
            reason = f"closed: {e.code}"
            logger.info("OpenAI Realtime connection closed", code=e.code)
        except asyncio.CancelledError:
            return
        finally:
            self._connected = False

        if not self._closing:
            self._sink(SpeechClosed(reason=reason or "stream ended"))

    def _handle_event(self, event: dict) -> None:
        """Translate one server event into signals."""
        event_type = event.get("type")

        if event_type == "input_audio_buffer.speech_started":
            self._sink(SpeechStarted())
        elif event_type == "input_audio_buffer.speech_stopped":
            self._sink(SpeechStopped())
        elif event_type == "conversation.item.input_audio_transcription.completed":
            text = str(event.get("transcript") or "").strip()
            if text:
                self._sink(UserTranscript(text=text))
        elif event_type == "response.created":
            response_id = (event.get("response") or {}).get("id") or ""
            self._active_response_id = response_id or None
            self._sink(ResponseStarted(response_id=response_id))
        elif event_type in ("response.audio.delta", "response.output_audio.delta"):
            response_id = event.get("response_id")
            if response_id and response_id != self._active_response_id:
                # Late audio from a cancelled response.
                return
            delta = event.get("delta")
            if isinstance(delta, str) and delta:
                payload = _b64decode(delta)
                if payload:
                    self._sink(AudioDelta(payload=payload))
        elif event_type in ("response.audio.done", "response.output_audio.done"):
            if event.get("response_id") in (None, self._active_response_id):
                self._sink(AudioDone())
        elif event_type == "response.audio_transcript.delta":
            delta = event.get("delta")
            if isinstance(delta, str) and delta:
                self._sink(AssistantTranscriptDelta(text=delta))
        elif event_type == "response.audio_transcript.done":
            text = str(event.get("transcript") or "").strip()
            if text:
                self._sink(AssistantTranscript(text=text))
        elif event_type == "response.done":
            response = event.get("response") or {}
            response_id = response.get("id") or ""
            status = response.get("status") or ""
            if status == "cancelled":
                self._sink(ResponseCancelled(response_id=response_id))
            else:
                self._sink(ResponseDone(response_id=response_id, status=status))
            if response_id and response_id == self._active_response_id:
                self._active_response_id = None
        elif event_type == "error":
            error = event.get("error") or {}
            message = str(error.get("message") or error or "unknown error")
            # Cancelling with no active response is harmless.
            if error.get("code") == "response_cancel_not_active":
                return
            logger.error("OpenAI Realtime error", details=error)
            self._sink(SpeechError(message=message, fatal=False))
