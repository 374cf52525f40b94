"""
Lifecycle and business events published by a call session.

Sessions never call back into the layer that embeds them. They publish typed
events into an `EventChannel`, and the media-stream bridge drains the channel
in order. Ordering between state changes, barge-ins and bookings is therefore
exactly the order the session produced them.
"""

import asyncio
from dataclasses import dataclass
from typing import AsyncIterator, List, Optional, Union

import structlog

from src.telecaller.dialogue import BookingFields
from src.telecaller.state_machine import ConversationState

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class StateChanged:
    call_sid: str
    old: ConversationState
    new: ConversationState


@dataclass(frozen=True)
class BargeIn:
    call_sid: str
    dropped_frames: int = 0


@dataclass(frozen=True)
class BookingReady:
    call_sid: str
    fields: BookingFields


@dataclass(frozen=True)
class SessionCompleted:
    call_sid: str
    fields: BookingFields
    booking_id: Optional[str] = None


@dataclass(frozen=True)
class SessionError:
    call_sid: str
    cause: str
    fatal: bool = False


SessionEvent = Union[StateChanged, BargeIn, BookingReady, SessionCompleted, SessionError]


class EventChannel:
    """Unbounded FIFO of session events with an explicit close."""

    _CLOSED = object()

    def __init__(self) -> None:
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False
        self.published: int = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, event: SessionEvent) -> None:
        if self._closed:
            logger.debug("Dropping event on closed channel", event=type(event).__name__)
            return
        self._queue.put_nowait(event)
        self.published += 1

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(self._CLOSED)

    async def get(self) -> Optional[SessionEvent]:
        """Next event, or None once the channel is closed and empty."""
        item = await self._queue.get()
        if item is self._CLOSED:
            # Leave the marker for any other reader.
            self._queue.put_nowait(self._CLOSED)
            return None
        return item

    def drain(self) -> List[SessionEvent]:
        """Pop everything currently buffered without waiting."""
        events = []
        while True:
            try:
                item = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            if item is self._CLOSED:
                self._queue.put_nowait(self._CLOSED)
                break
            events.append(item)
        return events

    async def __aiter__(self) -> AsyncIterator[SessionEvent]:
        while True:
            event = await self.get()
            if event is None:
                return
            yield event
