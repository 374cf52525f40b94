"""
Turn timer: decides that the caller has stopped talking.

Every speech signal re-arms the timer with a quiescence window. Only one
timer is ever pending; arming cancels the previous one. Expiry does not run
turn logic itself, it calls `on_expire(generation)` so the owner can post a
message to its inbox. The owner checks `is_current(generation)` when the
message is handled, which discards expiries that raced a later re-arm.
"""

import asyncio
from typing import Callable, Optional

import structlog

logger = structlog.get_logger(__name__)


class TurnTimer:
    def __init__(
        self,
        on_expire: Callable[[int], None],
        *,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ):
        self._on_expire = on_expire
        self._loop = loop
        self._handle: Optional[asyncio.TimerHandle] = None
        self._generation = 0
        self.window_ms: int = 0

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def arm(self, window_ms: int) -> int:
        """(Re)arm the timer and return its generation."""
        self.cancel()
        self._generation += 1
        self.window_ms = window_ms
        loop = self._loop or asyncio.get_running_loop()
        self._handle = loop.call_later(max(window_ms, 0) / 1000.0, self._fire, self._generation)
        return self._generation

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def is_current(self, generation: int) -> bool:
        return generation == self._generation and self._handle is None

    def _fire(self, generation: int) -> None:
        if generation != self._generation:
            return
        self._handle = None
        try:
            self._on_expire(generation)
        except Exception as e:
            logger.error("Turn timer callback failed", error=str(e))
