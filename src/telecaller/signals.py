"""
Signals surfaced by the speech services.

Adapters (`DeepgramSTT`, `RealtimeClient`) never mutate a session. They hand
these messages to a `SignalSink` (the session's inbox), so every speech
signal is handled on the session's single logical sequence.
"""

from dataclasses import dataclass
from typing import Callable, Union


@dataclass(frozen=True)
class SpeechStarted:
    """Caller voice activity began."""


@dataclass(frozen=True)
class SpeechStopped:
    """Caller voice activity ended (server VAD, speech-to-speech only)."""


@dataclass(frozen=True)
class SpeechFinal:
    """Strong end-of-utterance signal from the recognizer's endpointing."""


@dataclass(frozen=True)
class UtteranceBoundary:
    """Gap-based utterance end (weaker than SpeechFinal)."""


@dataclass(frozen=True)
class Transcript:
    text: str
    is_final: bool
    confidence: float = 0.0


@dataclass(frozen=True)
class UserTranscript:
    """Completed caller transcript from a speech-to-speech session."""
    text: str


@dataclass(frozen=True)
class AssistantTranscriptDelta:
    text: str


@dataclass(frozen=True)
class AssistantTranscript:
    text: str


@dataclass(frozen=True)
class AudioDelta:
    payload: bytes


@dataclass(frozen=True)
class AudioDone:
    pass


@dataclass(frozen=True)
class ResponseStarted:
    response_id: str = ""


@dataclass(frozen=True)
class ResponseCancelled:
    response_id: str = ""


@dataclass(frozen=True)
class ResponseDone:
    """A response finished without being cancelled."""
    response_id: str = ""
    status: str = ""


@dataclass(frozen=True)
class SpeechError:
    message: str
    fatal: bool = False


@dataclass(frozen=True)
class SpeechClosed:
    reason: str = ""


SpeechSignal = Union[
    SpeechStarted,
    SpeechStopped,
    SpeechFinal,
    UtteranceBoundary,
    Transcript,
    UserTranscript,
    AssistantTranscriptDelta,
    AssistantTranscript,
    AudioDelta,
    AudioDone,
    ResponseStarted,
    ResponseCancelled,
    ResponseDone,
    SpeechError,
    SpeechClosed,
]

SignalSink = Callable[[SpeechSignal], None]
