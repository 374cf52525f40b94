"""
Dialogue generator on the OpenAI chat API.

Provides:
- System prompt built from the business context and the JSON reply contract
- Streaming and single-shot generation over the same request
- Mapping of API failures onto recoverable dialogue errors

The hard per-turn timeout is applied by the session, not here.
"""

import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, AsyncGenerator, Dict, List, Optional, Sequence

import openai
import structlog
from openai import AsyncOpenAI

from src.telecaller.business import BusinessContext
from src.telecaller.config import get_config
from src.telecaller.dialogue import BookingFields, DialogueReply, Speaker, TranscriptEntry
from src.telecaller.errors import DialogueError, DialogueRateLimited, DialogueTimeout

logger = structlog.get_logger(__name__)

MAX_HISTORY_ENTRIES = 40


@dataclass
class LLMResponse:
    """Response from the dialogue generator."""
    reply: DialogueReply
    raw_text: str
    first_token_ms: float = 0.0
    total_ms: float = 0.0


def get_system_prompt(business: BusinessContext, fields: Optional[BookingFields] = None, now: Optional[datetime] = None) -> str:
    """
    Build the system prompt for the booking assistant.

    Includes the business rules, the current local date/time (so the model
    can resolve "tomorrow"), what has been collected so far, and the JSON
    contract the reply must follow.
    """
    now = now or business.now()
    greeting_line = f'\n   - Use this greeting: "{business.greeting}"' if business.greeting else ""
    notes = f"\nADDITIONAL INSTRUCTIONS:\n{business.notes}\n" if business.notes else ""
    language = business.speech_language
    language_line = "" if language.startswith("en") else f"\n- Speak in the business language ({language})"

    collected = ""
    if fields is not None:
        collected = (
            "\nCOLLECTED SO FAR:\n"
            f"- Name: {fields.customer_name or 'unknown'}\n"
            f"- Date: {fields.appointment_date or 'unknown'}\n"
            f"- Time: {fields.appointment_time or 'unknown'}\n"
        )

    return f"""You are a friendly phone assistant booking appointments for {business.name}.

YOUR JOB:
1. Greet the caller warmly{greeting_line}
2. Collect: customer name, appointment date, and appointment time
3. Confirm the details back to the caller before booking
4. Give a short final confirmation once they agree

CONVERSATION RULES:
- This is a phone call: keep replies to 1-2 short sentences
- Ask ONE question at a time
- If the caller is unclear, ask for clarification naturally
- When you have everything, confirm it: "Just to confirm, [name], you'd like [date] at [time]. Is that right?"
- Never read out JSON, dates in YYYY-MM-DD form, or 24-hour times; speak naturally{language_line}
{notes}
BUSINESS RULES:
- Appointments last {business.appointment_duration_minutes} minutes
- Minimum notice: {business.minimum_notice_hours} hours
- Timezone: {business.timezone}
- Current date: {now.strftime("%A, %Y-%m-%d")}
- Current time: {now.strftime("%H:%M")}
{collected}
RESPONSE FORMAT (always a single JSON object):
When you have ALL three details AND the caller has confirmed them:
{{"status": "complete", "response": "Perfect, you're all set for [date] at [time]. See you then!", "customerName": "Jane Doe", "appointmentDate": "YYYY-MM-DD", "appointmentTime": "HH:MM"}}

Otherwise:
{{"status": "collecting", "response": "Your natural reply or next question"}}"""


def build_messages(
    utterance: str,
    history: Sequence[TranscriptEntry],
    fields: Optional[BookingFields],
    business: BusinessContext,
) -> List[Dict[str, str]]:
    messages = [{"role": "system", "content": get_system_prompt(business, fields)}]
    for entry in list(history)[-MAX_HISTORY_ENTRIES:]:
        role = "user" if entry.speaker == Speaker.CALLER else "assistant"
        messages.append({"role": role, "content": entry.text})
    messages.append({"role": "user", "content": utterance or "(silence)"})
    return messages


class DialogueGenerator:
    """
    OpenAI chat client for the booking dialogue.

    `history` is the call transcript before this utterance; the generator
    keeps no conversation state of its own.
    """

    def __init__(self, config: Optional[Any] = None, client: Optional[AsyncOpenAI] = None):
        if config is None:
            config = get_config()

        self.config = config
        self.model = config.openai_model
        self._client = client or AsyncOpenAI(api_key=config.openai_api_key, max_retries=0)

    async def generate_streaming(
        self,
        utterance: str,
        history: Sequence[TranscriptEntry],
        fields: Optional[BookingFields],
        business: BusinessContext,
    ) -> AsyncGenerator[str, None]:
        """
        Generate a reply as streamed text deltas.

        Raises:
            DialogueError: on API failure (rate limit and timeout are subclasses)
        """
        messages = build_messages(utterance, history, fields, business)
        try:
            stream = await self._client.chat.completions.create(
                model=self.model,
                messages=messages,
                stream=True,
                max_tokens=200,  # Keep responses short for voice
                temperature=0.7,
                response_format={"type": "json_object"},
            )
            async for chunk in stream:
                if chunk.choices and chunk.choices[0].delta.content:
                    yield chunk.choices[0].delta.content
        except openai.RateLimitError as e:
            logger.warning("Dialogue generator rate limited", error=str(e))
            raise DialogueRateLimited(str(e)) from e
        except openai.APITimeoutError as e:
            logger.warning("Dialogue generator timed out", error=str(e))
            raise DialogueTimeout(str(e)) from e
        except openai.APIError as e:
            logger.error("Dialogue generation failed", error=str(e))
            raise DialogueError(str(e)) from e

    async def generate(
        self,
        utterance: str,
        history: Sequence[TranscriptEntry],
        fields: Optional[BookingFields],
        business: BusinessContext,
    ) -> LLMResponse:
        """Generate a complete reply and parse it into the JSON contract."""
        start_time = time.time()
        first_token_time = None
        parts: List[str] = []

        async for delta in self.generate_streaming(utterance, history, fields, business):
            if first_token_time is None:
                first_token_time = time.time()
            parts.append(delta)

        raw_text = "".join(parts)
        end_time = time.time()
        return LLMResponse(
            reply=DialogueReply.parse_text(raw_text),
            raw_text=raw_text,
            first_token_ms=(first_token_time - start_time) * 1000 if first_token_time else 0.0,
            total_ms=(end_time - start_time) * 1000,
        )
