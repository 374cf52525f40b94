"""
Speech-to-speech session on OpenAI Realtime.

The model owns turn detection (server VAD) and the dialogue; this session
owns everything around it: lifecycle state, the output queue and barge-in,
and booking. There is no structured reply channel, so completion is always
heuristic: both sides of the transcript are scanned for the booking fields
and a confirmation phrase from the assistant triggers the booking.

A rejected booking is fed back to the model as response instructions so the
caller hears why and can pick another time.
"""

from typing import Any, Optional

import structlog

from src.telecaller.dialogue import (
    CompletionStrategy,
    DialogueReply,
    HeuristicCompletion,
    Speaker,
)
from src.telecaller.errors import SpeechPipelineError
from src.telecaller.realtime import RealtimeClient, get_realtime_instructions
from src.telecaller.session import CallSession, UtteranceQueued
from src.telecaller.signals import (
    AssistantTranscript,
    AssistantTranscriptDelta,
    AudioDelta,
    AudioDone,
    ResponseCancelled,
    ResponseDone,
    ResponseStarted,
    SpeechError,
    SpeechStarted,
    SpeechStopped,
    UserTranscript,
)
from src.telecaller.state_machine import ConversationState

logger = structlog.get_logger(__name__)

REPROMPT_INSTRUCTIONS = "The caller has gone quiet. Briefly ask whether they are still there."


class RealtimeSession(CallSession):
    mode = "openai_realtime"

    def __init__(
        self,
        *,
        client: Optional[Any] = None,
        completion: Optional[CompletionStrategy] = None,
        **kwargs: Any,
    ):
        business = kwargs["business"]
        if completion is None:
            completion = HeuristicCompletion(caller_phone=kwargs.get("from_number", ""), clock=business.now)
        super().__init__(completion=completion, **kwargs)

        self.client = client or RealtimeClient(
            self.post, self.config, instructions=get_realtime_instructions(business)
        )
        self._response_utterance: Optional[int] = None
        self._discard_audio = False

    # ------------------------------------------------------------------
    # Speech service

    async def _greet(self) -> None:
        # The greeting comes from the model, so connect and greet in one step.
        self._spawn(self._connect_and_greet())

    async def _connect_and_greet(self) -> None:
        try:
            await self.client.connect()
        except SpeechPipelineError as e:
            self.post(SpeechError(message=str(e), fatal=True))
            return
        await self.client.create_response(
            instructions=f'Greet the caller with: "{self.business.greeting_text()}"'
        )
        self.post(UtteranceQueued(0))

    async def _close_speech(self) -> None:
        await self.client.close()

    async def _forward_audio(self, payload: bytes) -> None:
        await self.client.send_audio(payload)

    def _cancel_local_output(self) -> None:
        self._response_utterance = None
        self._discard_audio = True

    async def _cancel_remote_output(self) -> None:
        await self.client.cancel_response()

    # ------------------------------------------------------------------
    # Signals

    async def _on_message(self, message: Any) -> None:
        if isinstance(message, SpeechStarted):
            return
        if isinstance(message, SpeechStopped):
            self._note_caller_activity()
        elif isinstance(message, ResponseStarted):
            self._discard_audio = False
            self._response_utterance = None
            if self.state == ConversationState.LISTENING:
                self._state.transition(ConversationState.PROCESSING)
        elif isinstance(message, AudioDelta):
            self._on_audio_delta(message)
        elif isinstance(message, AudioDone):
            if self._response_utterance is not None:
                self.output.finish(self._response_utterance)
                self.post(UtteranceQueued(self._response_utterance))
        elif isinstance(message, ResponseCancelled):
            self._response_utterance = None
            self._move_to(ConversationState.LISTENING)
        elif isinstance(message, ResponseDone):
            if self.state == ConversationState.PROCESSING and self._response_utterance is None:
                # Text-only or empty response: nothing will drain.
                self._state.transition(ConversationState.LISTENING)
        elif isinstance(message, UserTranscript):
            self._on_user_transcript(message.text)
        elif isinstance(message, AssistantTranscriptDelta):
            pass
        elif isinstance(message, AssistantTranscript):
            self._on_assistant_transcript(message.text)
        else:
            logger.debug("Ignoring message", call_sid=self.call_sid, message=type(message).__name__)

    def _on_audio_delta(self, message: AudioDelta) -> None:
        if self._discard_audio:
            return
        if self._response_utterance is None or self._response_utterance != self.output.utterance_id:
            self._response_utterance = self.output.begin_utterance()
            if self.state == ConversationState.LISTENING:
                self._state.transition(ConversationState.PROCESSING)
            self._move_to(ConversationState.SPEAKING)
        self.output.push(self._response_utterance, message.payload)

    def _on_user_transcript(self, text: str) -> None:
        self._append(Speaker.CALLER, text)
        self.completion.observe_caller(text)
        self.metrics.turns += 1
        self._unproductive = 0

    def _on_assistant_transcript(self, text: str) -> None:
        self._append(Speaker.ASSISTANT, text)
        ready = self.completion.observe_assistant(DialogueReply.collecting(text))
        if ready is not None:
            self._start_booking(ready)

    # ------------------------------------------------------------------
    # Re-prompt, goodbye, booking outcome

    async def _reprompt(self) -> None:
        await self.client.create_response(instructions=REPROMPT_INSTRUCTIONS)

    async def _say_goodbye(self, text: str) -> None:
        await self.client.create_response(instructions=f'Say exactly: "{text}" Then stop.')

    async def _on_booking_succeeded(self) -> None:
        logger.info("Booking confirmed on live call", call_sid=self.call_sid, booking_id=self.booking_id)

    async def _on_booking_failed(self, reason: str) -> None:
        if self.output.is_speaking:
            # The model just confirmed a slot that does not exist; cut it off.
            self.output.interrupt()
            self._cancel_local_output()
            await self.client.cancel_response()
            await self.transport.clear_output(self.stream_sid)
            self._move_to(ConversationState.LISTENING)
        await self.client.create_response(
            instructions=(
                "The booking could not be made. Tell the caller exactly this: "
                f'"{reason}" Then help them choose another date or time. '
                "Do not say they are booked."
            )
        )

