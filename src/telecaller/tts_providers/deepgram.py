from __future__ import annotations

import asyncio
import time
from typing import Any, AsyncGenerator, Optional

import httpx
import structlog

from src.telecaller.config import get_config
from src.telecaller.errors import SpeechPipelineError
from src.telecaller.tts_providers.base import TTSProvider
from src.telecaller.tts_types import TTSChunk

logger = structlog.get_logger(__name__)

DEEPGRAM_SPEAK_URL = "https://api.deepgram.com/v1/speak"

# Aura voices for languages other than English; English uses the configured model.
AURA_LANGUAGE_VOICES = {
    "es": "aura-2-celeste-es",
    "es-419": "aura-2-celeste-es",
}


def voice_for_language(language: Optional[str], default: str) -> str:
    if not language or language.lower().startswith("en"):
        return default
    voice = AURA_LANGUAGE_VOICES.get(language) or AURA_LANGUAGE_VOICES.get(language.split("-")[0])
    if voice is None:
        logger.warning("No Aura voice for language, using default", language=language, voice=default)
        return default
    return voice


class DeepgramAuraTTS(TTSProvider):
    """
    Deepgram Aura TTS over streaming HTTP.

    Requests raw 8kHz mu-law (`container=none`) so the body can be forwarded
    to Twilio as it downloads.
    """

    name = "deepgram"

    def __init__(
        self,
        config: Optional[Any] = None,
        client: Optional[httpx.AsyncClient] = None,
        voice: Optional[str] = None,
    ):
        super().__init__()
        self.config = config or get_config()
        self.voice = voice or self.config.deepgram_tts_model
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(10.0, read=30.0))
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None

    async def synthesize_streaming(
        self,
        text: str,
        *,
        voice_id: Optional[str] = None,
    ) -> AsyncGenerator[TTSChunk, None]:
        if not text or not text.strip():
            return

        self._is_cancelled = False
        params = {
            "model": voice_id or self.voice,
            "encoding": "mulaw",
            "sample_rate": "8000",
            "container": "none",
        }
        headers = {
            "Authorization": f"Token {self.config.deepgram_api_key}",
            "Content-Type": "application/json",
        }

        start_time = time.time()
        first_byte_time: Optional[float] = None
        total_audio_bytes = 0

        try:
            async with self._get_client().stream(
                "POST", DEEPGRAM_SPEAK_URL, params=params, headers=headers, json={"text": text}
            ) as response:
                if response.status_code != 200:
                    body = (await response.aread())[:200]
                    raise SpeechPipelineError(
                        f"Deepgram TTS returned {response.status_code}: {body!r}"
                    )
                async for audio in response.aiter_bytes():
                    if self._is_cancelled:
                        break
                    if not audio:
                        continue
                    if first_byte_time is None:
                        first_byte_time = time.time()
                    total_audio_bytes += len(audio)
                    yield TTSChunk(audio_bytes=audio)
        except asyncio.CancelledError:
            raise
        except SpeechPipelineError:
            raise
        except httpx.HTTPError as e:
            logger.error("Deepgram TTS failed", error=str(e))
            raise SpeechPipelineError(f"Deepgram TTS failed: {e}") from e

        end_time = time.time()
        self.metrics.record_synthesis(
            characters=len(text),
            audio_ms=total_audio_bytes / 8.0,
            first_byte_ms=((first_byte_time or end_time) - start_time) * 1000,
            total_ms=(end_time - start_time) * 1000,
        )

        if not self._is_cancelled:
            yield TTSChunk(audio_bytes=b"", is_final=True)
