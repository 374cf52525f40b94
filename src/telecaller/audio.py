"""
Audio framing utilities for Twilio Media Streams.

Every speech service in this project is asked for 8kHz mu-law directly
(Deepgram STT `encoding=mulaw`, Deepgram Aura `encoding=mulaw`, Cartesia
`pcm_mulaw`, OpenAI Realtime `g711_ulaw`), so the only work left here is
framing: Twilio plays back 20ms frames of 160 bytes.
"""

from typing import Generator, List

TWILIO_SAMPLE_RATE = 8000
FRAME_DURATION_MS = 20
TWILIO_FRAME_SIZE = int(TWILIO_SAMPLE_RATE * FRAME_DURATION_MS / 1000)  # 160 bytes for 20ms
ULAW_SILENCE_BYTE = b"\xff"


def chunk_audio(audio_bytes: bytes, chunk_size: int = TWILIO_FRAME_SIZE) -> Generator[bytes, None, None]:
    """
    Chunk audio into fixed-size frames.

    For Twilio, we want 20ms frames = 160 bytes of mu-law at 8kHz.

    Args:
        audio_bytes: Raw audio bytes
        chunk_size: Size of each chunk in bytes (default: 160 for 20ms mu-law)

    Yields:
        Audio chunks of the specified size
    """
    for i in range(0, len(audio_bytes), chunk_size):
        chunk = audio_bytes[i:i + chunk_size]
        # Pad the last chunk if needed
        if len(chunk) < chunk_size:
            chunk = chunk + ULAW_SILENCE_BYTE * (chunk_size - len(chunk))
        yield chunk


def chunk_audio_list(audio_bytes: bytes, chunk_size: int = TWILIO_FRAME_SIZE) -> List[bytes]:
    """Chunk audio into fixed-size frames and return as a list."""
    return list(chunk_audio(audio_bytes, chunk_size))


class FrameAssembler:
    """
    Re-frames a stream of arbitrarily sized TTS chunks into whole Twilio frames.

    Providers stream audio in whatever sizes the network hands them. Only
    complete 160-byte frames are released; the tail is kept until more audio
    arrives or `flush()` pads it with silence.
    """

    def __init__(self, frame_size: int = TWILIO_FRAME_SIZE):
        self.frame_size = frame_size
        self._remainder = b""

    def push(self, audio_bytes: bytes) -> List[bytes]:
        data = self._remainder + (audio_bytes or b"")
        whole = len(data) - (len(data) % self.frame_size)
        self._remainder = data[whole:]
        return [data[i:i + self.frame_size] for i in range(0, whole, self.frame_size)]

    def flush(self) -> List[bytes]:
        if not self._remainder:
            return []
        tail, self._remainder = self._remainder, b""
        return chunk_audio_list(tail, self.frame_size)

    def reset(self) -> None:
        self._remainder = b""

    @property
    def pending_bytes(self) -> int:
        return len(self._remainder)


def get_audio_duration_ms(audio_bytes: bytes, sample_rate: int = TWILIO_SAMPLE_RATE) -> float:
    """
    Calculate the duration of mu-law audio in milliseconds.

    Mu-law is one byte per sample.
    """
    if not audio_bytes:
        return 0.0
    return len(audio_bytes) / sample_rate * 1000


def create_silence_ulaw(duration_ms: int = FRAME_DURATION_MS) -> bytes:
    """
    Create silence in mu-law format.

    Args:
        duration_ms: Duration of silence in milliseconds

    Returns:
        Mu-law silence bytes
    """
    num_samples = int(TWILIO_SAMPLE_RATE * duration_ms / 1000)
    # 0xFF is the mu-law encoding for silence (0 amplitude)
    return ULAW_SILENCE_BYTE * num_samples
