"""
Twilio Media Streams WebSocket protocol.

Twilio sends JSON messages with events:
- connected: Initial connection
- start: Stream started, contains streamSid, callSid and the <Parameter>s
  set in TwiML (`from`, `to`, `businessId`)
- media: Audio data as base64 mu-law 8kHz
- mark: Playback marker acknowledgment (parsed, not acted on)
- dtmf: DTMF tone detected
- stop: Stream stopped

Outbound messages:
- media: Send audio as base64 mu-law 8kHz
- clear: Clear buffered audio (for interruption)

`TwilioTransport` is the outbound half of the call leg used by a session:
audio frames, `clear` on barge-in, and REST hangup.
"""

import asyncio
import base64
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

import msgspec
import structlog

from src.telecaller.errors import TransportError

logger = structlog.get_logger(__name__)

# Create global msgspec encoder/decoder
decoder = msgspec.json.Decoder()
encoder = msgspec.json.Encoder()


class TwilioEventType(str, Enum):
    """Twilio WebSocket event types."""
    CONNECTED = "connected"
    START = "start"
    MEDIA = "media"
    MARK = "mark"
    DTMF = "dtmf"
    STOP = "stop"


@dataclass
class TwilioStartEvent:
    """Parsed Twilio start event."""
    stream_sid: str
    call_sid: str
    account_sid: str
    tracks: List[str]
    custom_parameters: Dict[str, Any] = field(default_factory=dict)

    @property
    def from_number(self) -> str:
        return str(self.custom_parameters.get("from", "") or "")

    @property
    def to_number(self) -> str:
        return str(self.custom_parameters.get("to", "") or "")

    @property
    def business_id(self) -> Optional[str]:
        value = self.custom_parameters.get("businessId")
        return str(value) if value else None

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioStartEvent":
        """Parse from Twilio message."""
        start = message.get("start", {})
        return cls(
            stream_sid=message.get("streamSid", "") or start.get("streamSid", ""),
            call_sid=start.get("callSid", ""),
            account_sid=start.get("accountSid", ""),
            tracks=start.get("tracks", []),
            custom_parameters=start.get("customParameters", {}) or {},
        )


@dataclass
class TwilioMediaEvent:
    """Parsed Twilio media event."""
    stream_sid: str
    track: str
    chunk: int
    timestamp: str
    payload: bytes  # Decoded audio bytes (mu-law)

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioMediaEvent":
        """Parse from Twilio message."""
        media = message.get("media", {})
        try:
            payload = base64.b64decode(media.get("payload", ""), validate=True)
        except (ValueError, TypeError):
            payload = b""

        return cls(
            stream_sid=message.get("streamSid", ""),
            track=media.get("track", "inbound"),
            chunk=int(media.get("chunk", 0) or 0),
            timestamp=str(media.get("timestamp", "")),
            payload=payload,
        )


@dataclass
class TwilioMarkEvent:
    """Parsed Twilio mark event."""
    stream_sid: str
    name: str

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioMarkEvent":
        mark = message.get("mark", {})
        return cls(stream_sid=message.get("streamSid", ""), name=mark.get("name", ""))


@dataclass
class TwilioDTMFEvent:
    """Parsed Twilio DTMF event."""
    stream_sid: str
    digit: str

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioDTMFEvent":
        dtmf = message.get("dtmf", {})
        return cls(stream_sid=message.get("streamSid", ""), digit=dtmf.get("digit", ""))


@dataclass
class TwilioStopEvent:
    """Parsed Twilio stop event."""
    stream_sid: str
    call_sid: str

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioStopEvent":
        stop = message.get("stop", {}) or {}
        return cls(
            stream_sid=message.get("streamSid", ""),
            call_sid=stop.get("callSid", ""),
        )


def parse_twilio_message(raw_message: str | bytes) -> tuple[TwilioEventType, Any]:
    """
    Parse a raw Twilio WebSocket message.

    Returns:
        Tuple of (event_type, parsed_event)

    Raises:
        ValueError: If message cannot be parsed
    """
    try:
        message = decoder.decode(raw_message.encode("utf-8") if isinstance(raw_message, str) else raw_message)
    except msgspec.DecodeError as e:
        logger.error("Failed to parse Twilio message", error=str(e))
        raise ValueError(f"Invalid JSON: {e}")

    if not isinstance(message, dict):
        raise ValueError("Twilio message must be a JSON object")

    event_type_str = message.get("event", "")
    try:
        event_type = TwilioEventType(event_type_str)
    except ValueError:
        logger.warning("Unknown Twilio event type", event_type=event_type_str)
        raise ValueError(f"Unknown event type: {event_type_str}")

    if event_type == TwilioEventType.START:
        return event_type, TwilioStartEvent.from_message(message)
    if event_type == TwilioEventType.MEDIA:
        return event_type, TwilioMediaEvent.from_message(message)
    if event_type == TwilioEventType.MARK:
        return event_type, TwilioMarkEvent.from_message(message)
    if event_type == TwilioEventType.DTMF:
        return event_type, TwilioDTMFEvent.from_message(message)
    if event_type == TwilioEventType.STOP:
        return event_type, TwilioStopEvent.from_message(message)
    return event_type, message


def create_media_message(stream_sid: str, audio_payload: bytes) -> str:
    """Create a Twilio media message from raw mu-law bytes (160 bytes per 20ms frame)."""
    message = {
        "event": "media",
        "streamSid": stream_sid,
        "media": {"payload": base64.b64encode(audio_payload).decode("utf-8")},
    }
    return encoder.encode(message).decode("utf-8")


def create_clear_message(stream_sid: str) -> str:
    """Create a Twilio clear message; drops audio Twilio has buffered but not played."""
    message = {"event": "clear", "streamSid": stream_sid}
    return encoder.encode(message).decode("utf-8")


@dataclass
class PlaybackState:
    """Outbound playback bookkeeping for one stream."""
    generation: int = 0
    frames_sent: int = 0


class TwilioTransport:
    """
    Outbound side of a Twilio media stream.

    Wraps the WebSocket send coroutine. A failed send is a dropped call leg
    and surfaces as `TransportError`.
    """

    def __init__(
        self,
        send_message: Callable[[str], Awaitable[None]],
        *,
        twilio_client: Optional[Any] = None,
    ):
        self._send_message = send_message
        self._twilio_client = twilio_client
        self.playback = PlaybackState()
        self._closed = False

    @classmethod
    def from_config(cls, send_message: Callable[[str], Awaitable[None]], config: Any) -> "TwilioTransport":
        client = None
        if config.twilio_account_sid and config.twilio_auth_token:
            from twilio.rest import Client as TwilioClient

            client = TwilioClient(config.twilio_account_sid, config.twilio_auth_token)
        return cls(send_message, twilio_client=client)

    @property
    def is_closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        self._closed = True

    async def _send(self, message: str) -> None:
        if self._closed:
            raise TransportError("Call leg already closed")
        try:
            await self._send_message(message)
        except TransportError:
            raise
        except Exception as e:
            self._closed = True
            raise TransportError(f"Failed to send to Twilio: {e}") from e

    async def send_audio(self, stream_id: str, payload: bytes) -> None:
        """Send one mu-law frame."""
        await self._send(create_media_message(stream_id, payload))
        self.playback.frames_sent += 1

    async def clear_output(self, stream_id: str) -> None:
        """Discard audio Twilio has buffered but not yet played."""
        self.playback.generation += 1
        logger.info("Clearing Twilio audio buffer", stream_sid=stream_id, generation=self.playback.generation)
        await self._send(create_clear_message(stream_id))

    async def hangup(self, call_id: str) -> bool:
        """Hang up the call via the Twilio REST API."""
        if not self._twilio_client or not call_id:
            logger.warning("Cannot hangup - missing Twilio client or call_sid", call_sid=call_id)
            return False
        try:
            await asyncio.to_thread(
                lambda: self._twilio_client.calls(call_id).update(status="completed")
            )
        except Exception as e:
            logger.error("Failed to hang up call", call_sid=call_id, error=str(e))
            return False
        logger.info("Call hung up", call_sid=call_id)
        return True

