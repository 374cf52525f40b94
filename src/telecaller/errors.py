"""
Error taxonomy for the call orchestrator.

Transport and speech-pipeline errors end the session. Dialogue and booking
errors are recoverable: the caller hears `spoken_message` and the conversation
goes back to listening.
"""

from typing import Optional


class TelecallerError(Exception):
    """Base class for orchestrator errors."""

    recoverable: bool = False
    spoken_message: str = "I'm sorry, something went wrong on my end."


class TransportError(TelecallerError):
    """The call leg dropped or an outbound send failed."""


class SpeechPipelineError(TelecallerError):
    """STT/TTS or speech-to-speech service failed to connect or disconnected."""


class DialogueError(TelecallerError):
    """The dialogue generator failed to produce a usable reply."""

    recoverable = True
    spoken_message = "I'm sorry, I didn't catch that. Could you say that again?"


class DialogueTimeout(DialogueError):
    spoken_message = "Sorry, that took me a moment. Could you repeat that for me?"


class DialogueRateLimited(DialogueError):
    spoken_message = "I'm experiencing high demand right now. Could you say that once more?"


class BookingError(TelecallerError):
    """The slot was rejected or the booking could not be stored."""

    recoverable = True
    spoken_message = "I wasn't able to book that time. Could you pick another time?"

    def __init__(self, message: str, reason: Optional[str] = None):
        super().__init__(message)
        self.reason = reason or self.spoken_message


class InvalidTransition(TelecallerError):
    """A state change that the conversation lifecycle does not allow."""


class RetryLimitExceeded(TelecallerError):
    """Too many consecutive empty or unintelligible turns."""

    spoken_message = (
        "I'm having trouble hearing you, so I'll let you go for now. "
        "Please call back any time. Goodbye!"
    )
