"""
Per-call session.

A `CallSession` binds the conversation state machine, the turn timer, the
audio output queue and a completion strategy into one unit of work for a
single call. Everything that mutates the session (speech signals, timer
expiries, dialogue replies, booking results, output drained) is posted to
the session inbox and handled by one run loop, so the state machine never
sees two transitions at once.

Barge-in is the exception to "post and wait": `barge_in()` clears the output
queue and flips `is_speaking` before its first await, and the drain task
re-checks ownership of every frame before sending it.

Two variants share this base:
- PipelineSession: Deepgram STT -> dialogue generator -> TTS
- RealtimeSession: OpenAI Realtime speech-to-speech
"""

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Tuple

import structlog

from src.telecaller.audio import create_silence_ulaw
from src.telecaller.booking import BookingService, book_appointment
from src.telecaller.business import BusinessContext
from src.telecaller.dialogue import BookingFields, CompletionStrategy, Speaker, TranscriptEntry
from src.telecaller.errors import (
    BookingError,
    InvalidTransition,
    RetryLimitExceeded,
    TelecallerError,
    TransportError,
)
from src.telecaller.events import (
    BargeIn,
    BookingReady,
    EventChannel,
    SessionCompleted,
    SessionError,
    StateChanged,
)
from src.telecaller.extraction import mask_phone, redact_for_logs
from src.telecaller.output_queue import AudioOutputQueue
from src.telecaller.signals import SpeechClosed, SpeechError, SpeechStarted
from src.telecaller.state_machine import ConversationState, ConversationStateMachine
from src.telecaller.turn_timer import TurnTimer

logger = structlog.get_logger(__name__)

STILL_THERE_PROMPT = "Are you still there?"
DEFAULT_CONFIRMATION = "You're all set. See you then!"


# Inbox messages that do not come from the speech pipeline.


@dataclass(frozen=True)
class TurnExpired:
    generation: int


@dataclass(frozen=True)
class SilenceExpired:
    generation: int


@dataclass(frozen=True)
class ExitDue:
    generation: int


@dataclass(frozen=True)
class OutputDrained:
    utterance_id: int


@dataclass(frozen=True)
class OutputFailed:
    error: Exception


@dataclass(frozen=True)
class UtteranceQueued:
    """All audio for an utterance has been handed to the output queue."""
    utterance_id: int


@dataclass(frozen=True)
class BookingResolved:
    booking_id: Optional[str] = None
    error: Optional[BookingError] = None


_STOP = object()


@dataclass
class SessionMetrics:
    """Counters for the call summary."""
    start_time: float = field(default_factory=time.time)
    end_time: float = 0.0
    turns: int = 0
    barge_ins: int = 0
    dialogue_errors: int = 0
    reprompts: int = 0
    booking_attempts: int = 0

    @property
    def duration_seconds(self) -> float:
        end = self.end_time if self.end_time > 0 else time.time()
        return end - self.start_time


class CallSession(ABC):
    """Base session: lifecycle, turn-taking, barge-in, booking hand-off."""

    mode: str = ""

    def __init__(
        self,
        *,
        call_sid: str,
        stream_sid: str,
        transport: Any,
        config: Any,
        business: BusinessContext,
        booking_service: BookingService,
        completion: CompletionStrategy,
        from_number: str = "",
        to_number: str = "",
        events: Optional[EventChannel] = None,
    ):
        self.call_sid = call_sid
        self.stream_sid = stream_sid
        self.from_number = from_number
        self.to_number = to_number
        self.transport = transport
        self.config = config
        self.business = business
        self.booking_service = booking_service
        self.completion = completion
        self.events = events or EventChannel()
        self.metrics = SessionMetrics()

        self._inbox: asyncio.Queue = asyncio.Queue()
        self._run_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()
        self._started = False
        self._closed = False

        self._state = ConversationStateMachine(self._on_state_change, call_sid=call_sid)
        self._transcript: List[TranscriptEntry] = []
        self._caller_parts: List[str] = []
        self._turn_in_flight = False
        self._unproductive = 0
        self._booking_id: Optional[str] = None
        self._pending_exit: Optional[str] = None

        self.output = AudioOutputQueue(
            self._send_frame,
            pace_ms=config.outbound_pace_ms,
            on_drained=lambda uid: self.post(OutputDrained(uid)),
            on_error=lambda e: self.post(OutputFailed(e)),
        )
        self.turn_timer = TurnTimer(lambda gen: self.post(TurnExpired(gen)))
        self._silence_timer = TurnTimer(lambda gen: self.post(SilenceExpired(gen)))
        self._exit_timer = TurnTimer(lambda gen: self.post(ExitDue(gen)))

    # ------------------------------------------------------------------
    # Public surface

    @property
    def state(self) -> ConversationState:
        return self._state.state

    @property
    def state_history(self) -> List[Tuple[ConversationState, ConversationState]]:
        return list(self._state.history)

    @property
    def transcript(self) -> Tuple[TranscriptEntry, ...]:
        return tuple(self._transcript)

    @property
    def fields(self) -> BookingFields:
        return self.completion.fields

    @property
    def booking_id(self) -> Optional[str]:
        return self._booking_id

    @property
    def is_speaking(self) -> bool:
        return self.output.is_speaking

    @property
    def is_processing_turn(self) -> bool:
        return self._turn_in_flight

    @property
    def pending_caller_text(self) -> str:
        return " ".join(self._caller_parts).strip()

    @property
    def is_closed(self) -> bool:
        return self._closed

    def post(self, message: Any) -> None:
        """Queue a message for the session's run loop."""
        if self._closed:
            return
        self._inbox.put_nowait(message)

    async def start(self) -> None:
        """Greet the caller; the speech pipeline warms up in the background."""
        if self._started:
            return
        self._started = True
        logger.info(
            "Session starting",
            call_sid=self.call_sid,
            stream_sid=self.stream_sid,
            mode=self.mode,
            completion=self.completion.mode,
            caller=mask_phone(self.from_number),
        )
        self.output.start()
        self._run_task = asyncio.create_task(self._run())
        self._state.transition(ConversationState.GREETING)
        self._open_speech()
        await self._greet()

    async def ingest_audio(self, payload: bytes) -> None:
        """Inbound caller audio from the transport."""
        if self._closed or not payload:
            return
        await self._forward_audio(payload)

    async def barge_in(self) -> None:
        """Caller spoke over the assistant: stop all output now."""
        if not self.output.is_speaking:
            return

        dropped = self.output.interrupt()
        self._cancel_local_output()
        self.metrics.barge_ins += 1
        logger.info(
            "Barge-in",
            call_sid=self.call_sid,
            stream_sid=self.stream_sid,
            state=self.state.value,
            dropped_frames=dropped,
        )
        self.events.publish(BargeIn(self.call_sid, dropped_frames=dropped))

        await self._cancel_remote_output()
        await self.transport.clear_output(self.stream_sid)
        # One silent frame so the cut is audible rather than a truncated syllable.
        await self.transport.send_audio(self.stream_sid, create_silence_ulaw())

        if self._pending_exit:
            self._run_exit()
            return
        if self.state in (ConversationState.SPEAKING, ConversationState.GREETING):
            self._state.transition(ConversationState.LISTENING)

    async def handle(self, message: Any) -> None:
        """Apply one inbox message."""
        if self._closed or self._state.is_terminal:
            return

        if isinstance(message, SpeechStarted):
            self._note_caller_activity()
            if self.output.is_speaking:
                await self.barge_in()
            await self._on_message(message)
        elif isinstance(message, SpeechError):
            self._on_speech_error(message)
        elif isinstance(message, SpeechClosed):
            logger.error("Speech pipeline closed", call_sid=self.call_sid, reason=message.reason)
            self._fail(f"speech pipeline closed: {message.reason}")
        elif isinstance(message, OutputDrained):
            self._on_output_drained(message)
        elif isinstance(message, OutputFailed):
            self._fail(str(message.error))
        elif isinstance(message, UtteranceQueued):
            self._on_utterance_queued(message)
        elif isinstance(message, SilenceExpired):
            await self._on_silence(message)
        elif isinstance(message, ExitDue):
            if self._pending_exit and self._exit_timer.is_current(message.generation):
                self._run_exit()
        elif isinstance(message, BookingResolved):
            await self._on_booking_resolved(message)
        else:
            await self._on_message(message)

    async def close(self, reason: str = "stop") -> None:
        """Tear down: timers, synthesis, speech pipeline, output, run loop."""
        if self._closed:
            return
        self._closed = True
        self.metrics.end_time = time.time()

        self.turn_timer.cancel()
        self._silence_timer.cancel()
        self._exit_timer.cancel()
        self._cancel_local_output()

        tasks = [t for t in self._tasks if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        await self.output.stop()
        await self._close_speech()

        if self._run_task and not self._run_task.done():
            self._inbox.put_nowait(_STOP)
            try:
                await asyncio.wait_for(self._run_task, timeout=2.0)
            except asyncio.TimeoutError:
                self._run_task.cancel()

        self.transport.close()
        self.events.close()
        logger.info("Session closed", call_sid=self.call_sid, reason=reason, **self.summary())

    def summary(self) -> Dict[str, Any]:
        fields = self.fields
        return {
            "state": self.state.value,
            "mode": self.mode,
            "duration_seconds": round(self.metrics.duration_seconds, 2),
            "turns": self.metrics.turns,
            "barge_ins": self.metrics.barge_ins,
            "dialogue_errors": self.metrics.dialogue_errors,
            "reprompts": self.metrics.reprompts,
            "booking_attempts": self.metrics.booking_attempts,
            "booking_id": self._booking_id,
            "fields_missing": fields.missing(),
            "transcript_entries": len(self._transcript),
            "frames_sent": self.output.frames_sent,
            "frames_dropped": self.output.frames_dropped,
            "late_resets": self.output.late_resets,
        }

    # ------------------------------------------------------------------
    # Hooks for the speech variants

    def _open_speech(self) -> None:
        """Start the speech pipeline without blocking the greeting. Optional."""

    @abstractmethod
    async def _close_speech(self) -> None:
        ...

    @abstractmethod
    async def _forward_audio(self, payload: bytes) -> None:
        ...

    @abstractmethod
    async def _greet(self) -> None:
        ...

    @abstractmethod
    async def _on_message(self, message: Any) -> None:
        """Variant-specific inbox messages (and SpeechStarted after barge-in)."""

    @abstractmethod
    async def _reprompt(self) -> None:
        ...

    @abstractmethod
    async def _say_goodbye(self, text: str) -> None:
        ...

    @abstractmethod
    async def _on_booking_succeeded(self) -> None:
        ...

    @abstractmethod
    async def _on_booking_failed(self, reason: str) -> None:
        ...

    def _cancel_local_output(self) -> None:
        """Stop producing audio for the current utterance (synchronous)."""

    async def _cancel_remote_output(self) -> None:
        """Cancel output at the speech service after a barge-in."""

    # ------------------------------------------------------------------
    # Internals

    async def _run(self) -> None:
        while True:
            message = await self._inbox.get()
            if message is _STOP:
                break
            try:
                await self.handle(message)
            except TransportError as e:
                logger.error("Transport failed", call_sid=self.call_sid, error=str(e))
                self._fail(str(e))
            except InvalidTransition as e:
                logger.error(
                    "Invalid state transition",
                    call_sid=self.call_sid,
                    message=type(message).__name__,
                    error=str(e),
                )

    async def _send_frame(self, frame: bytes) -> None:
        await self.transport.send_audio(self.stream_sid, frame)

    def _spawn(self, coro: Any) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _on_state_change(self, old: ConversationState, new: ConversationState) -> None:
        self.events.publish(StateChanged(self.call_sid, old, new))
        if new == ConversationState.LISTENING:
            self._silence_timer.arm(int(self.config.silence_reprompt_seconds * 1000))
            if self._caller_parts:
                # Speech that arrived while busy gets its turn now.
                self.turn_timer.arm(self.config.speech_final_ms)
        elif old == ConversationState.LISTENING:
            self._silence_timer.cancel()
        if new in (ConversationState.COMPLETED, ConversationState.FAILED):
            self.turn_timer.cancel()
            self._silence_timer.cancel()
            self._exit_timer.cancel()

    def _append(self, speaker: Speaker, text: str) -> None:
        self._transcript.append(TranscriptEntry(speaker=speaker, text=text))
        logger.info(
            "Transcript",
            call_sid=self.call_sid,
            speaker=speaker.value,
            text=redact_for_logs(text),
        )

    def _note_caller_activity(self) -> None:
        if self.state == ConversationState.LISTENING:
            self._silence_timer.arm(int(self.config.silence_reprompt_seconds * 1000))

    def _move_to(self, target: ConversationState) -> bool:
        """Transition if the lifecycle allows it from here; otherwise stay."""
        if self.state == target or not self._state.can_transition(target):
            return False
        return self._state.transition(target)

    async def _register_unproductive(self, reason: str) -> bool:
        """Count a wasted turn. Returns True once the retry ceiling ends the call."""
        self._unproductive += 1
        logger.info(
            "Unproductive turn",
            call_sid=self.call_sid,
            reason=reason,
            count=self._unproductive,
            limit=self.config.max_unproductive_turns,
        )
        if self._unproductive < self.config.max_unproductive_turns:
            return False
        self._pending_exit = "goodbye"
        self._exit_timer.arm(int(self.config.completion_delay_seconds * 1000))
        await self._say_goodbye(RetryLimitExceeded.spoken_message)
        return True

    def _on_speech_error(self, message: SpeechError) -> None:
        self.events.publish(SessionError(self.call_sid, message.message, fatal=message.fatal))
        if message.fatal:
            logger.error("Speech pipeline failed", call_sid=self.call_sid, error=message.message)
            self._fail(message.message, publish=False)
        else:
            logger.warning("Speech pipeline error", call_sid=self.call_sid, error=message.message)

    def _on_output_drained(self, message: OutputDrained) -> None:
        if message.utterance_id != self.output.utterance_id:
            return
        if self._pending_exit:
            self._run_exit()
            return
        if self.state == ConversationState.SPEAKING:
            self._state.transition(ConversationState.LISTENING)
        elif self.state == ConversationState.LISTENING:
            self._silence_timer.arm(int(self.config.silence_reprompt_seconds * 1000))

    def _on_utterance_queued(self, message: UtteranceQueued) -> None:
        if self.state == ConversationState.GREETING:
            self._state.transition(ConversationState.LISTENING)
        if self._pending_exit:
            # Bound the hand-off by what is left to play.
            remaining_ms = len(self.output) * self.config.outbound_pace_ms
            self._exit_timer.arm(int(self.config.completion_delay_seconds * 1000) + remaining_ms)

    async def _on_silence(self, message: SilenceExpired) -> None:
        if not self._silence_timer.is_current(message.generation):
            return
        if (
            self.state != ConversationState.LISTENING
            or self.output.is_speaking
            or self._turn_in_flight
            or self._caller_parts
            or self._pending_exit
        ):
            return
        self.metrics.reprompts += 1
        if await self._register_unproductive("silence"):
            return
        await self._reprompt()

    def _start_booking(self, fields: BookingFields) -> None:
        self.metrics.booking_attempts += 1
        self.events.publish(BookingReady(self.call_sid, fields))
        self._spawn(self._book(fields))

    async def _book(self, fields: BookingFields) -> None:
        if not self.config.booking_enabled:
            logger.info("Booking skipped by configuration", call_sid=self.call_sid)
            self.post(BookingResolved())
            return
        try:
            booking_id = await book_appointment(
                self.booking_service, fields, self.business, call_sid=self.call_sid
            )
        except BookingError as e:
            self.post(BookingResolved(error=e))
            return
        except Exception as e:
            logger.exception("Booking failed unexpectedly", call_sid=self.call_sid)
            self.post(BookingResolved(error=BookingError(str(e))))
            return
        self.post(BookingResolved(booking_id=booking_id))

    async def _on_booking_resolved(self, message: BookingResolved) -> None:
        if message.error is None:
            self.completion.lock()
            self._booking_id = message.booking_id
            self._pending_exit = "complete"
            self._exit_timer.arm(int(self.config.completion_delay_seconds * 1000))
            await self._on_booking_succeeded()
            return

        reason = message.error.reason
        logger.info("Booking rejected", call_sid=self.call_sid, reason=reason)
        self.completion.reopen()
        self.events.publish(SessionError(self.call_sid, reason, fatal=False))
        await self._on_booking_failed(reason)

    def _run_exit(self) -> None:
        action, self._pending_exit = self._pending_exit, None
        self._exit_timer.cancel()
        if action == "complete":
            self._complete()
        elif action == "goodbye":
            self._fail("retry limit reached", hangup=True)

    def _complete(self) -> None:
        if self._state.is_terminal:
            return
        self._state.transition(ConversationState.COMPLETED)
        logger.info("Session completed", call_sid=self.call_sid, booking_id=self._booking_id)
        self.events.publish(SessionCompleted(self.call_sid, self.fields, booking_id=self._booking_id))
        self._spawn(self.transport.hangup(self.call_sid))

    def _fail(self, cause: str, *, publish: bool = True, hangup: bool = False) -> None:
        if self._state.is_terminal:
            return
        self.output.interrupt()
        self._cancel_local_output()
        self._state.transition(ConversationState.FAILED)
        if publish:
            self.events.publish(SessionError(self.call_sid, cause, fatal=True))
        if hangup:
            self._spawn(self.transport.hangup(self.call_sid))

    def _recoverable_error(self, error: TelecallerError) -> None:
        self.metrics.dialogue_errors += 1
        self.events.publish(SessionError(self.call_sid, str(error) or type(error).__name__, fatal=False))
