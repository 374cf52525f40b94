"""
Dialogue completion: decides when a conversation has produced a booking.

Two strategies implement one contract (`CompletionStrategy`):

- StructuredCompletion: the dialogue generator returns JSON each turn,
  `{"status": "collecting", "response": ...}` or
  `{"status": "complete", "response": ..., "customerName": ...,
  "appointmentDate": ..., "appointmentTime": ...}`. A `complete` reply is
  authoritative.
- HeuristicCompletion: for speech-to-speech sessions with no structured
  channel. Caller and assistant text are scanned for a name, a date and a
  time (first writer wins per field), and completion needs all three plus a
  confirmation phrase from the assistant.

Both fire at most once per booking attempt. After a failed booking the
session calls `reopen()`, which clears the rejected date/time; after a
successful one it calls `lock()` and no field changes again.

After a reopen the assistant is relaying the rejection, so its text never
refills the date or time until the caller has offered a new one, and it
never refills them with the rejected values.
"""

import json
import re
import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from src.telecaller.extraction import (
    extract_date_time,
    extract_name,
    is_confirmation,
    parse_time,
    resolve_date,
)

logger = structlog.get_logger(__name__)

_JSON_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)


class Speaker(str, Enum):
    CALLER = "caller"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class TranscriptEntry:
    """One utterance in the call transcript, replayed to the dialogue generator."""
    speaker: Speaker
    text: str
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class BookingFields:
    """Booking details collected from a call."""
    customer_name: Optional[str] = None
    appointment_date: Optional[str] = None  # YYYY-MM-DD
    appointment_time: Optional[str] = None  # HH:MM (24h)
    caller_phone: str = ""

    @property
    def is_complete(self) -> bool:
        return bool(self.customer_name and self.appointment_date and self.appointment_time)

    def missing(self) -> List[str]:
        return [
            name
            for name, value in (
                ("customer_name", self.customer_name),
                ("appointment_date", self.appointment_date),
                ("appointment_time", self.appointment_time),
            )
            if not value
        ]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class DialogueStatus(str, Enum):
    COLLECTING = "collecting"
    COMPLETE = "complete"


class DialogueReply(BaseModel):
    """One turn of the dialogue generator's JSON contract."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    status: DialogueStatus = DialogueStatus.COLLECTING
    response: str = ""
    customer_name: Optional[str] = Field(default=None, alias="customerName")
    appointment_date: Optional[str] = Field(default=None, alias="appointmentDate")
    appointment_time: Optional[str] = Field(default=None, alias="appointmentTime")

    @model_validator(mode="after")
    def _complete_needs_fields(self) -> "DialogueReply":
        # A "complete" reply missing a field cannot be booked; keep collecting.
        if self.status == DialogueStatus.COMPLETE and not (
            self.customer_name and self.appointment_date and self.appointment_time
        ):
            self.status = DialogueStatus.COLLECTING
        return self

    @property
    def is_complete(self) -> bool:
        return self.status == DialogueStatus.COMPLETE

    @classmethod
    def collecting(cls, text: str) -> "DialogueReply":
        return cls(status=DialogueStatus.COLLECTING, response=text)

    @classmethod
    def parse_text(cls, raw: str) -> "DialogueReply":
        """
        Parse generator output.

        Malformed or non-JSON output is never an error: it becomes a
        `collecting` reply whose response is the raw text.
        """
        text = (raw or "").strip()
        if not text:
            return cls.collecting("")

        candidate = text
        if not candidate.startswith("{"):
            # Models sometimes wrap JSON in prose or code fences.
            m = _JSON_OBJECT_RE.search(candidate)
            if not m:
                return cls.collecting(text)
            candidate = m.group(0)

        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            logger.debug("Dialogue reply is not JSON", preview=text[:60])
            return cls.collecting(text)
        if not isinstance(data, dict):
            return cls.collecting(text)

        try:
            reply = cls.model_validate(data)
        except ValidationError as e:
            logger.debug("Dialogue reply failed validation", error=str(e))
            return cls.collecting(str(data.get("response") or text))

        return reply


def normalize_date(value: Optional[str], now: datetime) -> Optional[str]:
    """Return `YYYY-MM-DD` for an ISO date or a spoken date expression."""
    if not value:
        return None
    return resolve_date(value.strip(), now)


def normalize_time(value: Optional[str]) -> Optional[str]:
    """Return `HH:MM` for a 24-hour or spoken time expression."""
    if not value:
        return None
    value = value.strip()
    parsed = parse_time(value)
    if parsed:
        return parsed
    # A bare hour like "14".
    if value.isdigit():
        return parse_time(f"{int(value)}:00")
    return None


Clock = Callable[[], datetime]


class CompletionStrategy(ABC):
    """
    Extracts booking fields and decides when a booking is ready.

    `observe_assistant` returns the completed fields exactly once per
    booking attempt; the session owns what happens next.
    """

    mode: str = ""

    def __init__(self, caller_phone: str = "", clock: Optional[Clock] = None):
        self._clock: Clock = clock or datetime.now
        self._fields = BookingFields(caller_phone=caller_phone)
        self._pending = False
        self._locked = False
        self._rejected_date: Optional[str] = None
        self._rejected_time: Optional[str] = None
        self._awaiting_caller_slot = False

    @property
    def fields(self) -> BookingFields:
        return self._fields

    @property
    def pending(self) -> bool:
        """A booking-ready result was handed out and has not been resolved."""
        return self._pending

    @property
    def locked(self) -> bool:
        return self._locked

    @property
    def accepting(self) -> bool:
        return not (self._pending or self._locked)

    def observe_caller(self, text: str) -> None:
        """Look at a finished caller utterance."""

    @abstractmethod
    def observe_assistant(self, reply: DialogueReply) -> Optional[BookingFields]:
        """Look at an assistant reply; return fields if the booking is ready."""

    def reopen(self) -> None:
        """The booking failed: drop the rejected slot and collect again."""
        if self._locked:
            return
        self._pending = False
        self._rejected_date = self._fields.appointment_date
        self._rejected_time = self._fields.appointment_time
        self._awaiting_caller_slot = True
        self._fields = replace(self._fields, appointment_date=None, appointment_time=None)

    def lock(self) -> None:
        """The booking succeeded: freeze the fields."""
        self._pending = False
        self._locked = True

    def _fire(self) -> BookingFields:
        self._pending = True
        logger.info(
            "Booking fields complete",
            mode=self.mode,
            appointment_date=self._fields.appointment_date,
            appointment_time=self._fields.appointment_time,
        )
        return self._fields

    def _fill(
        self,
        *,
        name: Optional[str] = None,
        day: Optional[str] = None,
        hhmm: Optional[str] = None,
        from_caller: bool = True,
    ) -> None:
        """First writer wins: only empty fields are filled."""
        if from_caller:
            if day or hhmm:
                self._awaiting_caller_slot = False
        elif self._awaiting_caller_slot:
            day = hhmm = None
        else:
            if day == self._rejected_date:
                day = None
            if hhmm == self._rejected_time:
                hhmm = None

        current = self._fields
        updates = {}
        if name and not current.customer_name:
            updates["customer_name"] = name
        if day and not current.appointment_date:
            updates["appointment_date"] = day
        if hhmm and not current.appointment_time:
            updates["appointment_time"] = hhmm
        if updates:
            self._fields = replace(current, **updates)
            logger.debug("Booking fields updated", mode=self.mode, fields=sorted(updates))


class StructuredCompletion(CompletionStrategy):
    mode = "structured"

    def observe_assistant(self, reply: DialogueReply) -> Optional[BookingFields]:
        if not self.accepting or not reply.is_complete:
            return None

        now = self._clock()
        day = normalize_date(reply.appointment_date, now)
        hhmm = normalize_time(reply.appointment_time)
        name = (reply.customer_name or "").strip()
        if not (day and hhmm and name):
            logger.warning(
                "Complete reply has unusable fields",
                appointment_date=reply.appointment_date,
                appointment_time=reply.appointment_time,
            )
            return None

        self._fields = replace(
            self._fields, customer_name=name, appointment_date=day, appointment_time=hhmm
        )
        return self._fire()


class HeuristicCompletion(CompletionStrategy):
    mode = "heuristic"

    def _scan(self, text: str, *, from_caller: bool) -> None:
        if not text or not self.accepting:
            return
        day, hhmm = extract_date_time(text, self._clock())
        self._fill(name=extract_name(text), day=day, hhmm=hhmm, from_caller=from_caller)

    def observe_caller(self, text: str) -> None:
        self._scan(text, from_caller=True)

    def observe_assistant(self, reply: DialogueReply) -> Optional[BookingFields]:
        if not self.accepting:
            return None
        self._scan(reply.response, from_caller=False)
        if self._fields.is_complete and is_confirmation(reply.response):
            return self._fire()
        return None


def create_completion_strategy(
    mode: str,
    *,
    caller_phone: str = "",
    clock: Optional[Clock] = None,
) -> CompletionStrategy:
    if mode == StructuredCompletion.mode:
        return StructuredCompletion(caller_phone=caller_phone, clock=clock)
    if mode == HeuristicCompletion.mode:
        return HeuristicCompletion(caller_phone=caller_phone, clock=clock)
    raise ValueError(f"Unknown completion mode: {mode}")
