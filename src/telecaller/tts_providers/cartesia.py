from __future__ import annotations

import asyncio
import base64
import json
import time
import uuid
from typing import Any, AsyncGenerator, Optional

import structlog
import websockets

from src.telecaller.config import get_config
from src.telecaller.errors import SpeechPipelineError
from src.telecaller.tts_providers.base import TTSProvider
from src.telecaller.tts_types import TTSChunk

logger = structlog.get_logger(__name__)

# Cartesia can emit 8kHz mu-law directly; no conversion on our side.
CARTESIA_SAMPLE_RATE = 8000
CARTESIA_WS_URL = "wss://api.cartesia.ai/tts/websocket"
CARTESIA_API_VERSION = "2024-06-10"


class CartesiaTTS(TTSProvider):
    """
    Cartesia streaming TTS client using the WebSocket API.

    Produces Twilio-ready mu-law 8kHz audio.
    """

    name = "cartesia"

    def __init__(self, config: Optional[Any] = None):
        super().__init__()
        self.config = config or get_config()
        self._current_context_id: Optional[str] = None
        self._current_ws: Optional[Any] = None

    async def cancel_context(self) -> None:
        if self._current_ws and self._current_context_id:
            try:
                cancel_request = {"context_id": self._current_context_id, "cancel": True}
                await self._current_ws.send(json.dumps(cancel_request))
                logger.debug("Cartesia cancel context sent", context_id=self._current_context_id)
            except Exception as e:
                logger.warning("Cartesia cancel context failed", error=str(e))

        self._is_cancelled = True
        self._current_context_id = None

    async def synthesize_streaming(
        self,
        text: str,
        *,
        voice_id: Optional[str] = None,
    ) -> AsyncGenerator[TTSChunk, None]:
        if not text or not text.strip():
            return

        self._is_cancelled = False
        voice_id = voice_id or self.config.cartesia_voice_id

        start_time = time.time()
        first_byte_time: Optional[float] = None
        total_audio_bytes = 0

        url = (
            f"{CARTESIA_WS_URL}?api_key={self.config.cartesia_api_key}"
            f"&cartesia_version={CARTESIA_API_VERSION}"
        )

        try:
            async with websockets.connect(url, open_timeout=10) as ws:
                self._current_ws = ws
                context_id = uuid.uuid4().hex
                self._current_context_id = context_id

                request = {
                    "context_id": context_id,
                    "model_id": "sonic-english",
                    "transcript": text,
                    "voice": {"mode": "id", "id": voice_id},
                    "output_format": {
                        "container": "raw",
                        "encoding": "pcm_mulaw",
                        "sample_rate": CARTESIA_SAMPLE_RATE,
                    },
                    "continue": False,
                }
                await ws.send(json.dumps(request))

                async for message in ws:
                    if self._is_cancelled:
                        break

                    if isinstance(message, (bytes, bytearray)):
                        audio = bytes(message)
                    else:
                        try:
                            data = json.loads(message)
                        except json.JSONDecodeError:
                            continue
                        msg_type = data.get("type", "")
                        if msg_type == "done":
                            break
                        if msg_type == "error":
                            raise SpeechPipelineError(f"Cartesia error: {data.get('message') or data.get('error')}")
                        if msg_type != "chunk" or not data.get("data"):
                            continue
                        audio = base64.b64decode(data["data"])

                    if first_byte_time is None:
                        first_byte_time = time.time()
                    total_audio_bytes += len(audio)
                    yield TTSChunk(audio_bytes=audio)

        except asyncio.CancelledError:
            raise
        except SpeechPipelineError:
            raise
        except Exception as e:
            logger.error("Cartesia synthesis failed", error=str(e))
            raise SpeechPipelineError(f"Cartesia synthesis failed: {e}") from e
        finally:
            self._current_context_id = None
            self._current_ws = None

        end_time = time.time()
        self.metrics.record_synthesis(
            characters=len(text),
            audio_ms=total_audio_bytes / 8.0,
            first_byte_ms=((first_byte_time or end_time) - start_time) * 1000,
            total_ms=(end_time - start_time) * 1000,
        )

        if not self._is_cancelled:
            yield TTSChunk(audio_bytes=b"", is_final=True)
