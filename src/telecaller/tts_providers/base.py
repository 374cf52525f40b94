from __future__ import annotations

from abc import ABC, abstractmethod
from typing import AsyncGenerator, Optional

from src.telecaller.tts_types import TTSChunk, TTSMetrics


class TTSProvider(ABC):
    name: str = ""

    def __init__(self) -> None:
        self._is_cancelled = False
        self.metrics = TTSMetrics()

    @abstractmethod
    def synthesize_streaming(
        self,
        text: str,
        *,
        voice_id: Optional[str] = None,
    ) -> AsyncGenerator[TTSChunk, None]:
        raise NotImplementedError

    async def cancel_context(self) -> None:
        self._is_cancelled = True

    def cancel(self) -> None:
        self._is_cancelled = True

    async def close(self) -> None:
        return None
