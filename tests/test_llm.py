"""
Tests for the dialogue generator.
"""

from datetime import datetime
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import openai
import pytest

from src.telecaller.business import BusinessContext
from src.telecaller.dialogue import BookingFields, Speaker, TranscriptEntry
from src.telecaller.errors import DialogueError, DialogueRateLimited, DialogueTimeout
from src.telecaller.llm import DialogueGenerator, build_messages, get_system_prompt

BUSINESS = BusinessContext(name="Bright Smile Dental")
REQUEST = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")


def chunk(text):
    return SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=text))])


async def stream_of(*parts):
    for part in parts:
        yield chunk(part)


def make_generator(create):
    client = MagicMock()
    client.chat.completions.create = create
    return DialogueGenerator(SimpleNamespace(openai_model="gpt-4o", openai_api_key="k"), client=client)


class TestPrompt:
    def test_prompt_carries_business_and_clock(self):
        prompt = get_system_prompt(BUSINESS, now=datetime(2025, 6, 10, 9, 30))

        assert "Bright Smile Dental" in prompt
        assert "Tuesday, 2025-06-10" in prompt
        assert '"status": "complete"' in prompt

    def test_prompt_lists_collected_fields(self):
        fields = BookingFields(customer_name="John Doe")
        prompt = get_system_prompt(BUSINESS, fields, now=datetime(2025, 6, 10))

        assert "- Name: John Doe" in prompt
        assert "- Date: unknown" in prompt

    def test_prompt_names_non_english_language(self):
        madrid = BusinessContext(name="Clinica Sol", timezone="Europe/Madrid")

        assert "Speak in the business language (es)" in get_system_prompt(madrid, now=datetime(2025, 6, 10))
        assert "business language" not in get_system_prompt(BUSINESS, now=datetime(2025, 6, 10))

    def test_messages_replay_history(self):
        history = [
            TranscriptEntry(Speaker.ASSISTANT, "Hi, what's your name?"),
            TranscriptEntry(Speaker.CALLER, "John"),
        ]

        messages = build_messages("tomorrow at 2", history, None, BUSINESS)

        assert [m["role"] for m in messages] == ["system", "assistant", "user", "user"]
        assert messages[-1]["content"] == "tomorrow at 2"


class TestGenerate:
    @pytest.mark.asyncio
    async def test_streamed_json_is_parsed(self):
        create = AsyncMock(return_value=stream_of('{"status": "collecting", ', '"response": "What day?"}'))
        generator = make_generator(create)

        response = await generator.generate("hi", [], None, BUSINESS)

        assert response.reply.response == "What day?"
        assert response.raw_text == '{"status": "collecting", "response": "What day?"}'
        assert response.total_ms >= response.first_token_ms >= 0
        kwargs = create.await_args.kwargs
        assert kwargs["model"] == "gpt-4o"
        assert kwargs["stream"] is True
        assert kwargs["response_format"] == {"type": "json_object"}

    @pytest.mark.asyncio
    async def test_plain_text_reply_is_collecting(self):
        generator = make_generator(AsyncMock(return_value=stream_of("Sure, ", "what day?")))

        response = await generator.generate("hi", [], None, BUSINESS)

        assert response.reply.response == "Sure, what day?"
        assert not response.reply.is_complete

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error, expected",
        [
            (
                openai.RateLimitError("slow down", response=httpx.Response(429, request=REQUEST), body=None),
                DialogueRateLimited,
            ),
            (openai.APITimeoutError(request=REQUEST), DialogueTimeout),
            (openai.APIConnectionError(request=REQUEST), DialogueError),
        ],
    )
    async def test_api_errors_map_to_dialogue_errors(self, error, expected):
        generator = make_generator(AsyncMock(side_effect=error))

        with pytest.raises(expected):
            await generator.generate("hi", [], None, BUSINESS)
