"""
Audio output queue and pacer.

Synthesized speech arrives in arbitrarily sized chunks; the queue re-frames
it into 20ms Twilio frames and a single drain task sends them in order at a
steady 20ms cadence.

Every utterance gets an id from `begin_utterance()`. `interrupt()` clears the
buffer and retires the current id in one synchronous step, so:
- chunks pushed later with the retired id are dropped,
- a frame popped before the interrupt but not yet sent is discarded,
- the queue is empty and `is_speaking` is False the moment it returns.

The drain task sleeps on an `asyncio.Event` while idle; it never polls.
"""

import asyncio
from collections import deque
from typing import Awaitable, Callable, Deque, Optional

import structlog

from src.telecaller.audio import FRAME_DURATION_MS, FrameAssembler
from src.telecaller.errors import TelecallerError

logger = structlog.get_logger(__name__)


class AudioOutputQueue:
    def __init__(
        self,
        send_frame: Callable[[bytes], Awaitable[None]],
        *,
        pace_ms: int = FRAME_DURATION_MS,
        on_drained: Optional[Callable[[int], None]] = None,
        on_error: Optional[Callable[[Exception], None]] = None,
    ):
        self._send_frame = send_frame
        self._pace_s = max(pace_ms, 0) / 1000.0
        self._on_drained = on_drained
        self._on_error = on_error

        self._frames: Deque[bytes] = deque()
        self._assembler = FrameAssembler()
        self._wake = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

        self._utterance_id = 0
        self._speaking = False
        self._finished = False
        self._closed = False

        self.frames_sent = 0
        self.frames_dropped = 0
        self.late_resets = 0

    @property
    def utterance_id(self) -> int:
        return self._utterance_id

    @property
    def is_speaking(self) -> bool:
        return self._speaking

    def __len__(self) -> int:
        return len(self._frames)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._closed = False
            self._task = asyncio.create_task(self._drain_loop())

    async def stop(self) -> None:
        self._closed = True
        self.interrupt()
        self._wake.set()
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None

    def begin_utterance(self) -> int:
        """Open a new utterance; earlier utterance ids become stale."""
        if self._frames:
            # Utterances never overlap on the line.
            self.frames_dropped += len(self._frames)
            self._frames.clear()
        self._utterance_id += 1
        self._assembler.reset()
        self._speaking = True
        self._finished = False
        return self._utterance_id

    def push(self, utterance_id: int, chunk: bytes) -> bool:
        """Queue audio for `utterance_id`. Returns False if the utterance was retired."""
        if utterance_id != self._utterance_id or not self._speaking or self._finished:
            return False
        frames = self._assembler.push(chunk)
        if frames:
            self._frames.extend(frames)
            self._wake.set()
        return True

    def finish(self, utterance_id: int) -> None:
        """No more chunks for this utterance; `on_drained` fires once it is played out."""
        if utterance_id != self._utterance_id or not self._speaking:
            return
        self._frames.extend(self._assembler.flush())
        self._finished = True
        self._wake.set()

    def interrupt(self) -> int:
        """Drop everything queued and stop speaking. Returns the number of frames dropped."""
        dropped = len(self._frames)
        self._frames.clear()
        self._assembler.reset()
        self.frames_dropped += dropped
        if self._speaking:
            # Retire the id so late pushes and in-flight frames are discarded.
            self._utterance_id += 1
        self._speaking = False
        self._finished = False
        self._wake.set()
        return dropped

    async def _drain_loop(self) -> None:
        loop = asyncio.get_running_loop()
        next_send = loop.time()
        try:
            while not self._closed:
                if not self._frames:
                    if self._speaking and self._finished:
                        self._speaking = False
                        self._finished = False
                        if self._on_drained is not None:
                            self._on_drained(self._utterance_id)
                    self._wake.clear()
                    await self._wake.wait()
                    next_send = loop.time()
                    continue

                owner = self._utterance_id
                frame = self._frames.popleft()

                wait = next_send - loop.time()
                if wait > 0:
                    await asyncio.sleep(wait)
                if owner != self._utterance_id:
                    continue

                await self._send_frame(frame)
                self.frames_sent += 1
                next_send += self._pace_s

                # More than 2 frames behind: reset the schedule instead of bursting.
                if loop.time() > next_send + 2 * self._pace_s:
                    self.late_resets += 1
                    next_send = loop.time()
        except asyncio.CancelledError:
            pass
        except TelecallerError as e:
            logger.error("Audio output failed", error=str(e))
            self._speaking = False
            self._frames.clear()
            if self._on_error is not None:
                self._on_error(e)
