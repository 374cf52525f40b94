"""
Media-stream bridge: one Twilio WebSocket <-> one call session.

The bridge parses Twilio messages, creates the session on `start`, feeds it
inbound audio and tears it down on `stop`. The business comes from the
directory entry for the dialed number, and the call record is opened at
`start` and closed with its outcome at teardown. It also drains the
session's event channel: terminal events schedule teardown in the registry
after the grace period, and every event is handed to the optional
`on_event` observer of the embedding layer.
"""

import asyncio
from typing import Any, Awaitable, Callable, Optional

import structlog

from src.telecaller.booking import BookingService
from src.telecaller.business import BusinessContext
from src.telecaller.directory import BusinessDirectory, CallRecord, InMemoryBusinessDirectory
from src.telecaller.events import (
    BargeIn,
    BookingReady,
    SessionCompleted,
    SessionError,
    SessionEvent,
    StateChanged,
)
from src.telecaller.pipeline_session import PipelineSession
from src.telecaller.realtime_session import RealtimeSession
from src.telecaller.registry import SessionRegistry
from src.telecaller.session import CallSession
from src.telecaller.twilio_protocol import (
    TwilioEventType,
    TwilioMediaEvent,
    TwilioStartEvent,
    TwilioTransport,
    parse_twilio_message,
)

logger = structlog.get_logger(__name__)

SessionFactory = Callable[..., CallSession]
EventObserver = Callable[[SessionEvent], Awaitable[None]]


def default_session_factory(config: Any) -> SessionFactory:
    return RealtimeSession if config.is_realtime else PipelineSession


class MediaStreamBridge:
    def __init__(
        self,
        send_message: Callable[[str], Awaitable[None]],
        registry: SessionRegistry,
        config: Any,
        *,
        booking_service: BookingService,
        business: Optional[BusinessContext] = None,
        directory: Optional[BusinessDirectory] = None,
        session_factory: Optional[SessionFactory] = None,
        transport_factory: Optional[Callable[[], Any]] = None,
        on_event: Optional[EventObserver] = None,
    ):
        self._send_message = send_message
        self.registry = registry
        self.config = config
        self.booking_service = booking_service
        self.business = business or BusinessContext.from_config(config)
        self.directory = directory or InMemoryBusinessDirectory()
        self._session_factory = session_factory or default_session_factory(config)
        self._transport_factory = transport_factory
        self._on_event = on_event

        self.session: Optional[CallSession] = None
        self.record: Optional[CallRecord] = None
        self._event_task: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def call_sid(self) -> str:
        return self.session.call_sid if self.session else ""

    async def handle_message(self, raw_message: str) -> None:
        """Handle one WebSocket message from Twilio."""
        try:
            event_type, event = parse_twilio_message(raw_message)
        except ValueError as e:
            logger.warning("Failed to parse Twilio message", error=str(e))
            return

        if event_type == TwilioEventType.CONNECTED:
            logger.debug("Twilio connected")

        elif event_type == TwilioEventType.START:
            await self._handle_start(event)

        elif event_type == TwilioEventType.MEDIA:
            await self._handle_media(event)

        elif event_type == TwilioEventType.MARK:
            logger.debug("Twilio mark ignored", call_sid=self.call_sid, mark_name=event.name)

        elif event_type == TwilioEventType.DTMF:
            logger.info("DTMF received", call_sid=self.call_sid, digit=event.digit)

        elif event_type == TwilioEventType.STOP:
            logger.info("Twilio stream stopped", call_sid=event.call_sid or self.call_sid)
            await self.close(reason="stop")

    async def _handle_start(self, event: TwilioStartEvent) -> None:
        if self.session is not None:
            logger.warning("Duplicate start event ignored", call_sid=event.call_sid)
            return

        existing = self.registry.get(event.call_sid)
        if existing is not None:
            # Reconnected leg for a call we already know: move it to this stream.
            logger.info("Rebinding call to new stream", call_sid=event.call_sid, stream_sid=event.stream_sid)
            await self.registry.remove(event.call_sid, reason="reconnect")

        transport = (
            self._transport_factory()
            if self._transport_factory
            else TwilioTransport.from_config(self._send_message, self.config)
        )
        business = await self.directory.resolve(event.to_number, self.business)
        business = business.with_overrides(event.custom_parameters)
        session = self._session_factory(
            call_sid=event.call_sid,
            stream_sid=event.stream_sid,
            transport=transport,
            config=self.config,
            business=business,
            booking_service=self.booking_service,
            from_number=event.from_number,
            to_number=event.to_number,
        )
        self.registry.register(session)
        self.session = session
        self.record = CallRecord(
            call_sid=event.call_sid,
            business_id=business.business_id,
            from_number=event.from_number,
            to_number=event.to_number,
        )
        await self.directory.open_call(self.record)
        self._event_task = asyncio.create_task(self._pump_events(session))

        logger.info(
            "Call started",
            call_sid=event.call_sid,
            stream_sid=event.stream_sid,
            business_id=business.business_id,
            language=business.speech_language,
            mode=session.mode,
        )
        await session.start()

    async def _handle_media(self, event: TwilioMediaEvent) -> None:
        if self.session is None or event.track not in ("inbound", "inbound_track"):
            return
        await self.session.ingest_audio(event.payload)

    async def _pump_events(self, session: CallSession) -> None:
        async for event in session.events:
            if isinstance(event, StateChanged):
                logger.info(
                    "Call state",
                    call_sid=event.call_sid,
                    old=event.old.value,
                    new=event.new.value,
                )
            elif isinstance(event, BargeIn):
                logger.info("Caller barged in", call_sid=event.call_sid, dropped_frames=event.dropped_frames)
            elif isinstance(event, BookingReady):
                logger.info(
                    "Booking ready",
                    call_sid=event.call_sid,
                    appointment_date=event.fields.appointment_date,
                    appointment_time=event.fields.appointment_time,
                )
            elif isinstance(event, SessionCompleted):
                logger.info("Booking call complete", call_sid=event.call_sid, booking_id=event.booking_id)
                self.registry.schedule_teardown(event.call_sid)
            elif isinstance(event, SessionError):
                log = logger.error if event.fatal else logger.warning
                log("Session error", call_sid=event.call_sid, cause=event.cause, fatal=event.fatal)
                if event.fatal:
                    self.registry.schedule_teardown(event.call_sid)

            if self._on_event is not None:
                try:
                    await self._on_event(event)
                except Exception as e:
                    logger.error("Event observer failed", event=type(event).__name__, error=str(e))

    async def close(self, reason: str = "stop") -> None:
        """End of the call leg: release the session and finish the event pump."""
        if self._closed:
            return
        self._closed = True
        session = self.session
        if session is None:
            return

        current = self.registry.get(session.call_sid)
        moved = current is not None and current is not session
        if current is session:
            await self.registry.remove(session.call_sid, reason=reason)
        else:
            # Already torn down, or the call moved to a newer stream.
            await session.close(reason=reason)
        if self._event_task is not None:
            try:
                await asyncio.wait_for(self._event_task, timeout=2.0)
            except asyncio.TimeoutError:
                self._event_task.cancel()
        summary = session.summary()
        logger.info("Call summary", call_sid=session.call_sid, **summary)
        if self.record is not None and not moved:
            # A newer stream owns the call record once the call moved.
            self.record.finish(session.state, session.fields, summary)
            await self.directory.close_call(self.record)
