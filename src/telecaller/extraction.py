"""
Heuristic extraction of booking details from spoken text.

Used when the assistant has no structured output channel (speech-to-speech)
and to normalize whatever a structured reply contains. Coverage is
best-effort; the contract is behavioral:

- names only from an explicit "my name is X" / "name's X",
  filtered against conversational false positives
- dates resolved against an explicit "now" to ISO `YYYY-MM-DD`
- times normalized to 24-hour `HH:MM`
- confirmation recognized from a fixed phrase set
"""

import re
from datetime import date, datetime, timedelta
from typing import Optional, Tuple, Union

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")
MONTHS = (
    "january", "february", "march", "april", "may", "june",
    "july", "august", "september", "october", "november", "december",
)
_MONTH_ALIASES = {m[:3]: i + 1 for i, m in enumerate(MONTHS)}
_MONTH_ALIASES.update({m: i + 1 for i, m in enumerate(MONTHS)})
_MONTH_ALIASES["sept"] = 9

_HOUR_WORDS = {
    "one": 1, "two": 2, "three": 3, "four": 4, "five": 5, "six": 6,
    "seven": 7, "eight": 8, "nine": 9, "ten": 10, "eleven": 11, "twelve": 12,
}
_HOUR_TOKEN = r"(\d{1,2}|" + "|".join(_HOUR_WORDS) + r")"

CONFIRMATION_PHRASES = (
    "you're all set",
    "you are all set",
    "i've got you down",
    "i have you down",
    "see you then",
    "you're booked",
    "you are booked",
    "appointment confirmed",
    "appointment is confirmed",
    "have a great day",
)

# First words that follow "my name is" in ordinary speech without being a name.
NAME_STOPLIST = frozenset(
    {
        "a", "an", "the", "is", "not", "just", "actually", "really", "also",
        "um", "uh", "like", "so", "well", "yes", "no", "yeah", "okay", "ok", "sure",
        "hello", "hi", "hey", "can", "will", "could", "would", "should", "may", "might",
        "going", "looking", "trying", "wanting", "hoping", "calling", "booking",
        "scheduling", "here", "there", "what", "that", "this", "it", "on", "in",
    }
)

# Words that end a name when the recognizer drops punctuation.
_NAME_BREAKS = frozenset(
    {
        "and", "i", "i'm", "im", "i'd", "id", "at", "on", "for", "to", "please",
        "today", "tomorrow", "tonight", "next", "this", "but", "so", "um", "uh",
        "calling", "would", "like", "want", "need", "can", "could", "from", "with",
    }
    | set(WEEKDAYS)
    | set(MONTHS)
)

_NAME_RE = re.compile(r"\b(?:my\s+name\s+is|name's)\s+([^.,!?;]+)", re.IGNORECASE)
_NAME_TOKEN_RE = re.compile(r"^[A-Za-z][A-Za-z'\-]*$")

_ISO_DATE_RE = re.compile(r"\b(\d{4})-(\d{1,2})-(\d{1,2})\b")
_SLASH_DATE_RE = re.compile(r"\b(\d{1,2})/(\d{1,2})(?:/(\d{2,4}))?\b")
_RELATIVE_RE = re.compile(r"\b(day after tomorrow|today|tonight|tomorrow)\b", re.IGNORECASE)
_WEEKDAY_RE = re.compile(
    r"\b(?:(next|this|coming)\s+)?(" + "|".join(WEEKDAYS) + r")\b", re.IGNORECASE
)
_MONTH_NAMES = "|".join(sorted(_MONTH_ALIASES, key=len, reverse=True))
_MONTH_DAY_RE = re.compile(
    r"\b(" + _MONTH_NAMES + r")\.?\s+(\d{1,2})(?:st|nd|rd|th)?(?:,?\s+(\d{4}))?\b", re.IGNORECASE
)
_DAY_OF_MONTH_RE = re.compile(
    r"\b(\d{1,2})(?:st|nd|rd|th)?\s+of\s+(" + _MONTH_NAMES + r")\b(?:,?\s+(\d{4}))?", re.IGNORECASE
)

_NOON_RE = re.compile(r"\b(noon|midday|midnight)\b", re.IGNORECASE)
_AMPM_RE = re.compile(
    r"\b" + _HOUR_TOKEN + r"(?::(\d{2})|\s+(thirty|fifteen|forty[- ]five|o'clock))?\s*"
    r"(a\.?\s?m\.?|p\.?\s?m\.?)(?=\W|$)",
    re.IGNORECASE,
)
_DAYPART_RE = re.compile(
    r"\b" + _HOUR_TOKEN + r"(?::(\d{2}))?\s*(?:o'clock\s+)?in\s+the\s+(morning|afternoon|evening)\b",
    re.IGNORECASE,
)
_CLOCK_RE = re.compile(r"\b(\d{1,2}):(\d{2})\b")
_AT_HOUR_RE = re.compile(r"\bat\s+" + _HOUR_TOKEN + r"(?:\s+o'clock)?\b(?!\s*(?::|/|st|nd|rd|th))", re.IGNORECASE)

_MINUTE_WORDS = {"thirty": 30, "fifteen": 15, "forty-five": 45, "forty five": 45, "o'clock": 0}

DateLike = Union[date, datetime]


def _normalize_text(text: str) -> str:
    # Smart quotes from recognizers.
    return (text or "").replace("’", "'").replace("‘", "'")


def _today(now: DateLike) -> date:
    return now.date() if isinstance(now, datetime) else now


def _safe_date(year: int, month: int, day: int) -> Optional[date]:
    try:
        return date(year, month, day)
    except ValueError:
        return None


def _weekday_offset(target: int, current: int, qualifier: Optional[str]) -> int:
    days = target - current
    if qualifier == "this":
        if days < 0:
            days += 7
    elif days <= 0:
        # "next X", "coming X" and a bare weekday all mean the upcoming one.
        days += 7
    return days


def resolve_date(text: str, now: DateLike) -> Optional[str]:
    """
    Resolve the first date expression in `text` to `YYYY-MM-DD`.

    Handles today/tomorrow, next/this/bare weekdays, ISO dates, US slash
    dates, and "June 12" / "12th of June". Dates without a year that have
    already passed roll over to next year.
    """
    text = _normalize_text(text)
    today = _today(now)

    m = _RELATIVE_RE.search(text)
    if m:
        word = m.group(1).lower()
        offset = {"today": 0, "tonight": 0, "tomorrow": 1, "day after tomorrow": 2}[word]
        return (today + timedelta(days=offset)).isoformat()

    m = _ISO_DATE_RE.search(text)
    if m:
        resolved = _safe_date(int(m.group(1)), int(m.group(2)), int(m.group(3)))
        if resolved:
            return resolved.isoformat()

    m = _SLASH_DATE_RE.search(text)
    if m:
        year = _expand_year(m.group(3), today)
        resolved = _safe_date(year, int(m.group(1)), int(m.group(2)))
        if resolved:
            if m.group(3) is None and resolved < today:
                resolved = _safe_date(year + 1, resolved.month, resolved.day) or resolved
            return resolved.isoformat()

    for pattern, month_group, day_group in ((_MONTH_DAY_RE, 1, 2), (_DAY_OF_MONTH_RE, 2, 1)):
        m = pattern.search(text)
        if not m:
            continue
        month = _MONTH_ALIASES.get(m.group(month_group).lower().rstrip("."))
        if month is None:
            continue
        year = _expand_year(m.group(3), today)
        resolved = _safe_date(year, month, int(m.group(day_group)))
        if resolved:
            if m.group(3) is None and resolved < today:
                resolved = _safe_date(year + 1, month, resolved.day) or resolved
            return resolved.isoformat()

    m = _WEEKDAY_RE.search(text)
    if m:
        qualifier = (m.group(1) or "").lower() or None
        target = WEEKDAYS.index(m.group(2).lower())
        return (today + timedelta(days=_weekday_offset(target, today.weekday(), qualifier))).isoformat()

    return None


def _expand_year(raw: Optional[str], today: date) -> int:
    if not raw:
        return today.year
    year = int(raw)
    if year < 100:
        year += 2000
    return year


def _hour_value(token: str) -> Optional[int]:
    token = token.lower()
    if token in _HOUR_WORDS:
        return _HOUR_WORDS[token]
    try:
        return int(token)
    except ValueError:
        return None


def _format_time(hours: int, minutes: int) -> Optional[str]:
    if 0 <= hours < 24 and 0 <= minutes < 60:
        return f"{hours:02d}:{minutes:02d}"
    return None


def parse_time(text: str) -> Optional[str]:
    """
    Parse the first time-of-day expression in `text` to 24-hour `HH:MM`.

    Accepts noon/midnight, "2pm", "2:30 p.m.", "two pm", "3 in the afternoon",
    "14:30", and a bare "at 3". A bare hour from 1 to 7 is read as PM since
    nobody books a 3am appointment.
    """
    text = _normalize_text(text)

    m = _NOON_RE.search(text)
    if m:
        return "00:00" if m.group(1).lower() == "midnight" else "12:00"

    m = _AMPM_RE.search(text)
    if m:
        hours = _hour_value(m.group(1))
        if hours is None or not 1 <= hours <= 12:
            return None
        if m.group(2):
            minutes = int(m.group(2))
        else:
            minutes = _MINUTE_WORDS.get((m.group(3) or "o'clock").lower().replace("  ", " "), 0)
        is_pm = m.group(4).lower().startswith("p")
        if is_pm and hours != 12:
            hours += 12
        elif not is_pm and hours == 12:
            hours = 0
        return _format_time(hours, minutes)

    m = _DAYPART_RE.search(text)
    if m:
        hours = _hour_value(m.group(1))
        if hours is None or not 1 <= hours <= 12:
            return None
        minutes = int(m.group(2)) if m.group(2) else 0
        if m.group(3).lower() in ("afternoon", "evening") and hours != 12:
            hours += 12
        elif m.group(3).lower() == "morning" and hours == 12:
            hours = 0
        return _format_time(hours, minutes)

    m = _CLOCK_RE.search(text)
    if m:
        return _format_time(int(m.group(1)), int(m.group(2)))

    m = _AT_HOUR_RE.search(text)
    if m:
        hours = _hour_value(m.group(1))
        if hours is None or not 1 <= hours <= 12:
            return None
        if hours <= 7:
            hours += 12
        return _format_time(hours, 0)

    return None


def extract_date_time(text: str, now: DateLike) -> Tuple[Optional[str], Optional[str]]:
    """Extract `(date, time)` from free text; either may be None."""
    return resolve_date(text, now), parse_time(text)


def extract_name(text: str) -> Optional[str]:
    """
    Extract a name from "my name is X" / "name's X" (up to three words).

    Returns None when the words after the phrase are conversational filler.
    """
    m = _NAME_RE.search(_normalize_text(text))
    if not m:
        return None

    words = []
    for token in m.group(1).split():
        lowered = token.lower()
        if words and lowered in _NAME_BREAKS:
            break
        if not _NAME_TOKEN_RE.match(token):
            break
        words.append(token)
        if len(words) == 3:
            break

    if not words or words[0].lower() in NAME_STOPLIST or len(words[0]) < 2:
        return None

    return " ".join("-".join(part.capitalize() for part in w.split("-")) for w in words)


def is_confirmation(text: str) -> bool:
    """True if an assistant utterance confirms the booking."""
    lowered = _normalize_text(text).lower()
    return any(phrase in lowered for phrase in CONFIRMATION_PHRASES)


_PHONE_RE = re.compile(r"\+?\d[\d\-\s().]{6,}\d")


def _phone_or_keep(match: "re.Match") -> str:
    # Dates like 2025-06-11 have 8 digits; phone numbers have at least 10.
    digits = sum(ch.isdigit() for ch in match.group(0))
    return "[phone]" if digits >= 10 else match.group(0)


def redact_for_logs(text: str, max_len: int = 120) -> str:
    """Mask phone numbers and truncate a transcript before logging it."""
    if not text:
        return ""
    redacted = _PHONE_RE.sub(_phone_or_keep, text)
    if len(redacted) > max_len:
        redacted = redacted[:max_len] + "..."
    return redacted


def mask_phone(phone: str) -> str:
    """Keep only the last four digits of a phone number."""
    digits = re.sub(r"\D", "", phone or "")
    if len(digits) <= 4:
        return "***" if digits else ""
    return "***" + digits[-4:]
