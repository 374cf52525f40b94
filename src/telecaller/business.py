"""
Business context and booking rules.

A `BusinessContext` is what the assistant knows about the business it answers
for: name, timezone, greeting, extra notes, working hours and the booking
policy. It is built from configuration and may be overridden per call by the
stream's custom parameters.

The spoken language follows the business timezone unless set explicitly;
it picks the STT language and the TTS voice for the call.

Working hours use the `BUSINESS_HOURS_JSON` shape, one list of slots per
weekday: {"monday": [{"start": "09:00", "end": "17:00"}], "saturday": []}
"""

import json
from dataclasses import dataclass, field, replace
from datetime import datetime, time, timedelta
from typing import Any, Dict, List, Mapping, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog

from src.telecaller.errors import BookingError
from src.telecaller.extraction import WEEKDAYS

logger = structlog.get_logger(__name__)

Slot = Tuple[time, time]

# Timezone prefix -> Deepgram language code. Anything else is US English.
TIMEZONE_LANGUAGES: Tuple[Tuple[str, str], ...] = (
    ("america/mexico", "es-419"),
    ("europe/madrid", "es"),
    ("europe/paris", "fr"),
    ("europe/berlin", "de"),
    ("asia/tokyo", "ja"),
    ("asia/kolkata", "hi"),
)
DEFAULT_LANGUAGE = "en-US"

DEFAULT_WORKING_HOURS: Dict[str, List[Slot]] = {
    day: ([(time(9, 0), time(17, 0))] if day not in ("saturday", "sunday") else [])
    for day in WEEKDAYS
}


def _parse_hhmm(value: str) -> time:
    hours, minutes = str(value).strip().split(":", 1)
    return time(int(hours), int(minutes))


def parse_working_hours(raw: str) -> Dict[str, List[Slot]]:
    """Parse BUSINESS_HOURS_JSON; falls back to Mon-Fri 09:00-17:00 when empty or invalid."""
    if not raw or not raw.strip():
        return {day: list(slots) for day, slots in DEFAULT_WORKING_HOURS.items()}

    try:
        data = json.loads(raw)
        hours: Dict[str, List[Slot]] = {day: [] for day in WEEKDAYS}
        for day, slots in data.items():
            day_key = str(day).strip().lower()
            if day_key not in hours:
                continue
            hours[day_key] = [
                (_parse_hhmm(slot["start"]), _parse_hhmm(slot["end"])) for slot in (slots or [])
            ]
        return hours
    except (ValueError, KeyError, TypeError, AttributeError) as e:
        logger.warning("Invalid BUSINESS_HOURS_JSON, using defaults", error=str(e))
        return {day: list(slots) for day, slots in DEFAULT_WORKING_HOURS.items()}


def language_for_timezone(timezone: Optional[str]) -> str:
    tz = (timezone or "").strip().lower()
    for prefix, language in TIMEZONE_LANGUAGES:
        if tz.startswith(prefix):
            return language
    return DEFAULT_LANGUAGE


@dataclass(frozen=True)
class BusinessContext:
    name: str
    timezone: str = "America/New_York"
    business_id: Optional[str] = None
    greeting: str = ""
    notes: str = ""
    working_hours: Dict[str, List[Slot]] = field(default_factory=lambda: dict(DEFAULT_WORKING_HOURS))
    appointment_duration_minutes: int = 30
    minimum_notice_hours: int = 2
    language: str = ""

    @property
    def speech_language(self) -> str:
        return self.language or language_for_timezone(self.timezone)

    @property
    def tz(self) -> ZoneInfo:
        try:
            return ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning("Unknown business timezone, using UTC", timezone=self.timezone)
            return ZoneInfo("UTC")

    def now(self) -> datetime:
        return datetime.now(self.tz)

    def greeting_text(self) -> str:
        if self.greeting:
            return self.greeting
        return f"Hi, thanks for calling {self.name}! I can help you book an appointment. What's your name?"

    def with_overrides(self, params: Optional[Mapping[str, Any]]) -> "BusinessContext":
        """Apply per-call overrides from stream custom parameters."""
        if not params:
            return self
        updates: Dict[str, Any] = {}
        if params.get("businessId"):
            updates["business_id"] = str(params["businessId"])
        if params.get("businessName"):
            updates["name"] = str(params["businessName"])
        if params.get("timezone"):
            updates["timezone"] = str(params["timezone"])
        if params.get("greeting"):
            updates["greeting"] = str(params["greeting"])
        return replace(self, **updates) if updates else self

    @classmethod
    def from_config(cls, config: Any) -> "BusinessContext":
        return cls(
            name=config.business_name,
            timezone=config.business_timezone,
            greeting=config.business_greeting,
            notes=config.business_notes,
            working_hours=parse_working_hours(config.business_hours_json),
            appointment_duration_minutes=config.appointment_duration_minutes,
            minimum_notice_hours=config.minimum_notice_hours,
            language=config.business_language,
        )

    def merged_with(self, data: Mapping[str, Any]) -> "BusinessContext":
        """
        Overlay a directory entry on this context.

        Accepts the booking backend's camelCase keys or snake_case; missing
        keys keep the current value.
        """

        def pick(*keys: str) -> Any:
            for key in keys:
                value = data.get(key)
                if value not in (None, ""):
                    return value
            return None

        updates: Dict[str, Any] = {}
        for attr, keys in (
            ("business_id", ("id", "businessId", "business_id")),
            ("name", ("name", "businessName", "business_name")),
            ("timezone", ("timezone",)),
            ("greeting", ("greeting", "greetingMessage", "greeting_message")),
            ("notes", ("notes", "aiInstructions", "ai_instructions")),
            ("language", ("language",)),
        ):
            value = pick(*keys)
            if value is not None:
                updates[attr] = str(value)

        hours = pick("workingHours", "working_hours")
        if hours is not None:
            updates["working_hours"] = parse_working_hours(
                hours if isinstance(hours, str) else json.dumps(hours)
            )
        for attr, keys in (
            ("appointment_duration_minutes", ("appointmentDurationMinutes", "appointment_duration_minutes")),
            ("minimum_notice_hours", ("minimumNoticeHours", "minimum_notice_hours")),
        ):
            value = pick(*keys)
            if value is None:
                continue
            try:
                updates[attr] = int(value)
            except (TypeError, ValueError):
                logger.warning("Ignoring invalid directory value", field=attr, value=value)

        return replace(self, **updates) if updates else self


def appointment_window(
    appointment_date: str,
    appointment_time: str,
    business: BusinessContext,
) -> Tuple[datetime, datetime]:
    """
    Turn `YYYY-MM-DD` + `HH:MM` into a timezone-aware (start, end) in the
    business timezone.

    Raises:
        BookingError: if the date or time cannot be parsed
    """
    try:
        naive = datetime.strptime(f"{appointment_date} {appointment_time}", "%Y-%m-%d %H:%M")
    except (TypeError, ValueError) as e:
        raise BookingError(
            f"Unparseable appointment {appointment_date!r} {appointment_time!r}",
            reason="I didn't quite get the date and time. Could you tell me again when you'd like to come in?",
        ) from e
    start = naive.replace(tzinfo=business.tz)
    return start, start + timedelta(minutes=business.appointment_duration_minutes)


class BusinessRules:
    """Working-day, working-hours and minimum-notice checks."""

    def __init__(self, business: BusinessContext):
        self.business = business

    def validate(self, start: datetime, end: datetime, now: Optional[datetime] = None) -> Optional[str]:
        """Return a caller-facing reason if the slot is not bookable, else None."""
        tz = self.business.tz
        local_start = start.astimezone(tz)
        local_end = end.astimezone(tz)
        day_name = WEEKDAYS[local_start.weekday()]
        slots = self.business.working_hours.get(day_name) or []

        if not slots:
            return f"We're closed on {day_name.capitalize()}. Please choose another day."

        start_t = local_start.time()
        end_t = local_end.time()
        within = local_end.date() == local_start.date() and any(
            slot_start <= start_t and end_t <= slot_end for slot_start, slot_end in slots
        )
        if not within:
            first, last = slots[0][0], slots[-1][1]
            return (
                f"Our hours on {day_name.capitalize()} are {_spoken_time(first)} to {_spoken_time(last)}. "
                "Please choose a time within those hours."
            )

        now = now or datetime.now(tz)
        hours_until = (start - now).total_seconds() / 3600
        if hours_until < self.business.minimum_notice_hours:
            return (
                f"We need at least {self.business.minimum_notice_hours} hours notice. "
                "Please choose a later time."
            )

        return None


def _spoken_time(value: time) -> str:
    hour = value.hour % 12 or 12
    suffix = "AM" if value.hour < 12 else "PM"
    if value.minute:
        return f"{hour}:{value.minute:02d} {suffix}"
    return f"{hour} {suffix}"
