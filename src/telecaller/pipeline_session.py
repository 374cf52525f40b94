"""
Pipeline session: Deepgram STT -> dialogue generator -> TTS.

Turn-taking is ours: speech signals re-arm the turn timer with a window that
depends on how strong the end-of-utterance evidence is, and an expiry with
accumulated caller text runs one dialogue turn. The generator call carries a
hard timeout; any failure becomes a spoken apology, never a dead line.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Optional

import structlog

from src.telecaller.dialogue import (
    CompletionStrategy,
    Speaker,
    create_completion_strategy,
)
from src.telecaller.errors import DialogueError, DialogueTimeout, SpeechPipelineError
from src.telecaller.llm import DialogueGenerator, LLMResponse
from src.telecaller.session import (
    DEFAULT_CONFIRMATION,
    STILL_THERE_PROMPT,
    CallSession,
    TurnExpired,
    UtteranceQueued,
)
from src.telecaller.signals import (
    SpeechError,
    SpeechFinal,
    SpeechStarted,
    Transcript,
    UtteranceBoundary,
)
from src.telecaller.state_machine import ConversationState
from src.telecaller.stt import DeepgramSTT
from src.telecaller.tts import TTSManager

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ReplyReady:
    response: Optional[LLMResponse] = None
    error: Optional[DialogueError] = None


class PipelineSession(CallSession):
    mode = "pipeline"

    def __init__(
        self,
        *,
        stt: Optional[Any] = None,
        tts: Optional[Any] = None,
        generator: Optional[Any] = None,
        completion: Optional[CompletionStrategy] = None,
        **kwargs: Any,
    ):
        config = kwargs["config"]
        business = kwargs["business"]
        if completion is None:
            completion = create_completion_strategy(
                config.completion_mode,
                caller_phone=kwargs.get("from_number", ""),
                clock=business.now,
            )
        super().__init__(completion=completion, **kwargs)

        self.stt = stt or DeepgramSTT(self.post, config, language=business.speech_language)
        self.tts = tts or TTSManager(config, language=business.speech_language)
        self.generator = generator or DialogueGenerator(config)
        self._speak_task: Optional[asyncio.Task] = None
        self._held_confirmation = ""

    # ------------------------------------------------------------------
    # Speech pipeline

    def _open_speech(self) -> None:
        self._spawn(self._start_stt())

    async def _start_stt(self) -> None:
        try:
            await self.stt.start()
        except SpeechPipelineError as e:
            self.post(SpeechError(message=str(e), fatal=True))

    async def _close_speech(self) -> None:
        await self.stt.close()
        await self.tts.stop()

    async def _forward_audio(self, payload: bytes) -> None:
        await self.stt.send_audio(payload)

    async def _greet(self) -> None:
        self._speak(self.business.greeting_text())

    def _cancel_local_output(self) -> None:
        if self._speak_task and not self._speak_task.done():
            self._speak_task.cancel()
        self._speak_task = None
        self.tts.cancel_current()

    async def _cancel_remote_output(self) -> None:
        await self.tts.cancel_context()

    # ------------------------------------------------------------------
    # Output

    def _speak(self, text: str) -> int:
        utterance_id = self.output.begin_utterance()
        self._append(Speaker.ASSISTANT, text)
        self._speak_task = self._spawn(self._synthesize(utterance_id, text))
        return utterance_id

    async def _synthesize(self, utterance_id: int, text: str) -> None:
        try:
            async for chunk in self.tts.synthesize_streaming(text):
                if chunk.audio_bytes and not self.output.push(utterance_id, chunk.audio_bytes):
                    # Retired by a barge-in.
                    return
        except SpeechPipelineError as e:
            logger.error("TTS failed", call_sid=self.call_sid, error=str(e))
            self.post(SpeechError(message=str(e), fatal=True))
            return
        except Exception as e:
            logger.exception("TTS failed unexpectedly", call_sid=self.call_sid)
            self.post(SpeechError(message=f"TTS failed: {e}", fatal=True))
            return
        self.output.finish(utterance_id)
        self.post(UtteranceQueued(utterance_id))

    def _say(self, text: str) -> None:
        """Speak an assistant turn, passing through processing if needed."""
        if self.state == ConversationState.LISTENING:
            self._state.transition(ConversationState.PROCESSING)
        self._state.transition(ConversationState.SPEAKING)
        self._speak(text)

    # ------------------------------------------------------------------
    # Turn-taking

    async def _on_message(self, message: Any) -> None:
        if isinstance(message, SpeechStarted):
            self._arm_turn(self.config.turn_silence_ms)
        elif isinstance(message, Transcript):
            if message.is_final and message.text.strip():
                self._caller_parts.append(message.text.strip())
            self._note_caller_activity()
            self._arm_turn(self.config.turn_silence_ms)
        elif isinstance(message, SpeechFinal):
            self._arm_turn(self.config.speech_final_ms)
        elif isinstance(message, UtteranceBoundary):
            self._arm_turn(self.config.utterance_end_ms)
        elif isinstance(message, TurnExpired):
            await self._on_turn_expired(message)
        elif isinstance(message, ReplyReady):
            await self._on_reply(message)
        else:
            logger.debug("Ignoring message", call_sid=self.call_sid, message=type(message).__name__)

    def _arm_turn(self, window_ms: int) -> None:
        if self.output.is_speaking:
            return
        self.turn_timer.arm(window_ms)

    async def _on_turn_expired(self, message: TurnExpired) -> None:
        if not self.turn_timer.is_current(message.generation):
            return
        text = self.pending_caller_text
        if not text:
            return
        if self._turn_in_flight or self.state != ConversationState.LISTENING:
            # Coalesced: the text stays and goes out with the next turn.
            return

        self._caller_parts.clear()
        history = self.transcript
        self._append(Speaker.CALLER, text)
        self.completion.observe_caller(text)
        self.metrics.turns += 1
        self._turn_in_flight = True
        self._state.transition(ConversationState.PROCESSING)
        self._spawn(self._generate(text, history))

    async def _generate(self, text: str, history: Any) -> None:
        try:
            response = await asyncio.wait_for(
                self.generator.generate(text, history, self.completion.fields, self.business),
                timeout=self.config.dialogue_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Dialogue generator timed out",
                call_sid=self.call_sid,
                timeout_s=self.config.dialogue_timeout_seconds,
            )
            self.post(ReplyReady(error=DialogueTimeout("dialogue generator timed out")))
            return
        except DialogueError as e:
            self.post(ReplyReady(error=e))
            return
        except Exception as e:
            logger.exception("Dialogue generator failed unexpectedly", call_sid=self.call_sid)
            self.post(ReplyReady(error=DialogueError(f"dialogue generator failed: {e}")))
            return
        logger.info(
            "Dialogue reply",
            call_sid=self.call_sid,
            status=response.reply.status.value,
            first_token_ms=round(response.first_token_ms, 2),
            total_ms=round(response.total_ms, 2),
        )
        self.post(ReplyReady(response=response))

    async def _on_reply(self, message: ReplyReady) -> None:
        self._turn_in_flight = False
        if self.state != ConversationState.PROCESSING:
            return

        if message.error is not None:
            self._recoverable_error(message.error)
            if await self._register_unproductive("dialogue error"):
                return
            self._say(message.error.spoken_message)
            return

        reply = message.response.reply
        ready = self.completion.observe_assistant(reply)
        if ready is not None:
            # Hold the confirmation until the booking succeeds.
            self._held_confirmation = reply.response
            self._start_booking(ready)
            return

        text = reply.response.strip()
        if not text:
            if await self._register_unproductive("empty reply"):
                return
            self._state.transition(ConversationState.LISTENING)
            return

        self._unproductive = 0
        self._say(text)

    # ------------------------------------------------------------------
    # Re-prompt, goodbye, booking outcome

    async def _reprompt(self) -> None:
        self._say(STILL_THERE_PROMPT)

    async def _say_goodbye(self, text: str) -> None:
        self._say(text)

    async def _on_booking_succeeded(self) -> None:
        self._unproductive = 0
        self._say(self._held_confirmation or DEFAULT_CONFIRMATION)

    async def _on_booking_failed(self, reason: str) -> None:
        self._held_confirmation = ""
        self._say(reason)
