"""
Session registry.

The only structure shared between calls. It is created by the application
lifespan and handed to each media-stream bridge; nothing reaches it through
module globals. Lookups work by call SID and by stream SID, since a call may
be given its stream after the session exists.

The registry is the sole owner of live sessions: teardown removes the
session from both indexes before closing it.
"""

import asyncio
import threading
from typing import Dict, List, Optional

import structlog

from src.telecaller.session import CallSession

logger = structlog.get_logger(__name__)


class SessionRegistry:
    def __init__(self, grace_seconds: float = 60.0):
        self.grace_seconds = grace_seconds
        self._lock = threading.Lock()
        self._by_call: Dict[str, CallSession] = {}
        self._by_stream: Dict[str, str] = {}
        self._teardowns: Dict[str, asyncio.Task] = {}
        self.created_total = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._by_call)

    def __contains__(self, call_sid: str) -> bool:
        with self._lock:
            return call_sid in self._by_call

    def register(self, session: CallSession) -> None:
        """Add a session. Raises ValueError if the call SID is already live."""
        with self._lock:
            if session.call_sid in self._by_call:
                raise ValueError(f"Session already registered for call {session.call_sid}")
            self._by_call[session.call_sid] = session
            if session.stream_sid:
                self._by_stream[session.stream_sid] = session.call_sid
            self.created_total += 1
        logger.info("Session registered", call_sid=session.call_sid, stream_sid=session.stream_sid)

    def get(self, call_sid: str) -> Optional[CallSession]:
        with self._lock:
            return self._by_call.get(call_sid)

    def get_by_stream(self, stream_sid: str) -> Optional[CallSession]:
        with self._lock:
            call_sid = self._by_stream.get(stream_sid)
            return self._by_call.get(call_sid) if call_sid else None

    def bind_stream(self, call_sid: str, stream_sid: str) -> None:
        with self._lock:
            session = self._by_call.get(call_sid)
            if session is None:
                raise KeyError(call_sid)
            if session.stream_sid and session.stream_sid != stream_sid:
                self._by_stream.pop(session.stream_sid, None)
            session.stream_sid = stream_sid
            self._by_stream[stream_sid] = call_sid

    def call_sids(self) -> List[str]:
        with self._lock:
            return list(self._by_call)

    def _detach(self, call_sid: str) -> Optional[CallSession]:
        with self._lock:
            session = self._by_call.pop(call_sid, None)
            if session is not None and session.stream_sid:
                if self._by_stream.get(session.stream_sid) == call_sid:
                    del self._by_stream[session.stream_sid]
            return session

    async def remove(self, call_sid: str, reason: str = "stop") -> bool:
        """Unindex and close a session now. Returns False if it was not live."""
        pending = self._teardowns.pop(call_sid, None)
        if pending is not None and pending is not asyncio.current_task() and not pending.done():
            pending.cancel()

        session = self._detach(call_sid)
        if session is None:
            return False
        await session.close(reason=reason)
        logger.info("Session removed", call_sid=call_sid, reason=reason, live=len(self))
        return True

    def schedule_teardown(self, call_sid: str, delay: Optional[float] = None, reason: str = "terminal") -> None:
        """Remove the session after a grace period so late events are still attributed."""
        if call_sid in self._teardowns or call_sid not in self:
            return
        delay = self.grace_seconds if delay is None else delay

        async def _teardown() -> None:
            await asyncio.sleep(delay)
            await self.remove(call_sid, reason=reason)

        task = asyncio.create_task(_teardown())
        self._teardowns[call_sid] = task
        task.add_done_callback(lambda _: self._teardowns.pop(call_sid, None))
        logger.debug("Session teardown scheduled", call_sid=call_sid, delay_s=delay)

    async def close_all(self) -> None:
        for call_sid in self.call_sids():
            await self.remove(call_sid, reason="shutdown")
        for task in list(self._teardowns.values()):
            task.cancel()
        self._teardowns.clear()
