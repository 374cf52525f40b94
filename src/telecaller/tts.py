from __future__ import annotations

from typing import Any, AsyncGenerator, Optional

import structlog

from src.telecaller.config import get_config
from src.telecaller.errors import SpeechPipelineError
from src.telecaller.tts_providers.base import TTSProvider
from src.telecaller.tts_providers.cartesia import CartesiaTTS
from src.telecaller.tts_providers.deepgram import DeepgramAuraTTS, voice_for_language
from src.telecaller.tts_types import TTSChunk, TTSMetrics

logger = structlog.get_logger(__name__)


class TTSManager:
    """
    Per-call TTS manager with a pluggable provider system.

    - `deepgram`: Aura over streaming HTTP (default; shares the STT key)
    - `cartesia`: streaming WebSocket TTS, with Aura as the fallback when
      Cartesia fails before producing any audio

    The Aura voice follows the call language.
    """

    def __init__(self, config: Optional[Any] = None, language: Optional[str] = None):
        self.config = config or get_config()
        self.language = language
        self.aura_voice = voice_for_language(language, self.config.deepgram_tts_model)
        self._provider: Optional[TTSProvider] = None
        self._fallback: Optional[TTSProvider] = None

    async def start(self) -> None:
        tts = (self.config.tts_provider or "deepgram").strip().lower()

        if tts == "deepgram":
            self._provider = DeepgramAuraTTS(self.config, voice=self.aura_voice)
            self._fallback = None
            return

        if tts == "cartesia":
            self._provider = CartesiaTTS(self.config)
            self._fallback = DeepgramAuraTTS(self.config, voice=self.aura_voice) if self.config.deepgram_api_key else None
            return

        raise ValueError(f"Unsupported TTS_PROVIDER: {self.config.tts_provider}")

    async def stop(self) -> None:
        self.cancel_current()
        if self._provider:
            await self._provider.close()
            self._provider = None
        if self._fallback:
            await self._fallback.close()
            self._fallback = None

    async def cancel_context(self) -> None:
        if self._provider:
            await self._provider.cancel_context()
        if self._fallback:
            await self._fallback.cancel_context()

    def cancel_current(self) -> None:
        if self._provider:
            self._provider.cancel()
        if self._fallback:
            self._fallback.cancel()

    @property
    def metrics(self) -> Optional[TTSMetrics]:
        return self._provider.metrics if self._provider else None

    async def synthesize_streaming(
        self,
        text: str,
        *,
        voice_id: Optional[str] = None,
    ) -> AsyncGenerator[TTSChunk, None]:
        if not self._provider:
            await self.start()

        provider = self._provider
        if not provider:
            yield TTSChunk(audio_bytes=b"", is_final=True)
            return

        produced_audio = False
        try:
            async for chunk in provider.synthesize_streaming(text, voice_id=voice_id):
                if chunk.audio_bytes:
                    produced_audio = True
                yield chunk
            return
        except SpeechPipelineError as e:
            if produced_audio or self._fallback is None:
                raise
            logger.warning(
                "TTS provider failed, falling back",
                provider=provider.name,
                fallback=self._fallback.name,
                error=str(e),
            )

        async for chunk in self._fallback.synthesize_streaming(text):
            yield chunk
