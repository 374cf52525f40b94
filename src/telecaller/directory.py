"""
Business directory collaborator.

Resolves the business a call is for from the dialed number, and keeps one
record per call: opened when the stream starts, closed with a status and a
one-line summary when it ends.

- InMemoryBusinessDirectory: entries from BUSINESS_DIRECTORY_JSON, keyed by
  phone number; records kept in process memory.
- HttpBusinessDirectory: the same calls against a backend over httpx.

A directory that cannot answer never breaks a call: lookups fall back to
the configured business and record writes are logged and dropped.
"""

import json
import re
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Tuple

import httpx
import structlog

from src.telecaller.business import BusinessContext
from src.telecaller.dialogue import BookingFields
from src.telecaller.state_machine import ConversationState

logger = structlog.get_logger(__name__)

NO_BOOKING_SUMMARY = "Call ended without booking"

# Oldest call records are dropped past this many.
MAX_MEMORY_CALLS = 1000


def normalize_phone(number: Optional[str]) -> str:
    """E.164-ish key: digits with a leading +; bare 10-digit numbers are US."""
    digits = re.sub(r"\D", "", number or "")
    if not digits:
        return ""
    if len(digits) == 10:
        digits = "1" + digits
    return "+" + digits


def describe_outcome(state: ConversationState, fields: BookingFields) -> Tuple[str, str]:
    """Status and summary line for a finished call."""
    if state != ConversationState.COMPLETED:
        return "failed", NO_BOOKING_SUMMARY
    if not fields.customer_name:
        return "completed", NO_BOOKING_SUMMARY
    return "completed", (
        f"Booked appointment for {fields.customer_name} "
        f"on {fields.appointment_date} at {fields.appointment_time}"
    )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class CallRecord:
    call_sid: str
    business_id: Optional[str] = None
    from_number: str = ""
    to_number: str = ""
    status: str = "in_progress"
    summary: str = ""
    booking_id: Optional[str] = None
    started_at: datetime = field(default_factory=_utcnow)
    ended_at: Optional[datetime] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def finish(self, state: ConversationState, fields: BookingFields, details: Mapping[str, Any]) -> None:
        self.status, self.summary = describe_outcome(state, fields)
        self.booking_id = details.get("booking_id")
        self.ended_at = _utcnow()
        self.details = dict(details)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "callSid": self.call_sid,
            "businessId": self.business_id,
            "fromNumber": self.from_number,
            "toNumber": self.to_number,
            "status": self.status,
            "summary": self.summary,
            "bookingId": self.booking_id,
            "startedAt": self.started_at.isoformat(),
            "endedAt": self.ended_at.isoformat() if self.ended_at else None,
            "details": self.details,
        }


class BusinessDirectory(ABC):
    async def resolve(self, phone_number: str, default: BusinessContext) -> BusinessContext:
        """The business for a dialed number, layered over `default`."""
        key = normalize_phone(phone_number)
        if not key:
            return default
        entry = await self._lookup(key)
        if entry is None:
            logger.info("No directory entry for number, using default business", to_number=key)
            return default
        business = default.merged_with(entry)
        logger.info(
            "Business resolved",
            to_number=key,
            business_id=business.business_id,
            language=business.speech_language,
        )
        return business

    @abstractmethod
    async def _lookup(self, phone_number: str) -> Optional[Mapping[str, Any]]:
        ...

    @abstractmethod
    async def open_call(self, record: CallRecord) -> None:
        ...

    @abstractmethod
    async def close_call(self, record: CallRecord) -> None:
        ...

    async def close(self) -> None:
        return None


class InMemoryBusinessDirectory(BusinessDirectory):
    def __init__(
        self,
        entries: Optional[Mapping[str, Mapping[str, Any]]] = None,
        max_calls: int = MAX_MEMORY_CALLS,
    ):
        self._entries = {normalize_phone(number): dict(entry) for number, entry in (entries or {}).items()}
        self._max_calls = max_calls
        self.calls: "OrderedDict[str, CallRecord]" = OrderedDict()

    @classmethod
    def from_json(cls, raw: str) -> "InMemoryBusinessDirectory":
        if not raw or not raw.strip():
            return cls()
        try:
            data = json.loads(raw)
        except ValueError as e:
            logger.warning("Invalid BUSINESS_DIRECTORY_JSON, directory is empty", error=str(e))
            return cls()
        if not isinstance(data, dict):
            logger.warning("BUSINESS_DIRECTORY_JSON must map phone numbers to businesses")
            return cls()
        return cls({number: entry for number, entry in data.items() if isinstance(entry, dict)})

    async def _lookup(self, phone_number: str) -> Optional[Mapping[str, Any]]:
        return self._entries.get(phone_number)

    async def open_call(self, record: CallRecord) -> None:
        self.calls[record.call_sid] = record
        self.calls.move_to_end(record.call_sid)
        while len(self.calls) > self._max_calls:
            self.calls.popitem(last=False)

    async def close_call(self, record: CallRecord) -> None:
        self.calls[record.call_sid] = record


class HttpBusinessDirectory(BusinessDirectory):
    """
    Directory backend over HTTP.

    GET   {base}/businesses/lookup?phoneNumber=... -> business JSON, 404 if unknown
    POST  {base}/calls                             -> opens the call record
    PATCH {base}/calls/{callSid}                   -> closes it
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        *,
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"), headers=headers, timeout=timeout
        )

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _lookup(self, phone_number: str) -> Optional[Mapping[str, Any]]:
        try:
            response = await self._client.get("/businesses/lookup", params={"phoneNumber": phone_number})
        except httpx.HTTPError as e:
            logger.warning("Directory unreachable", error=str(e))
            return None
        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            logger.warning("Directory lookup failed", status_code=response.status_code)
            return None
        try:
            data = response.json()
        except ValueError:
            logger.warning("Directory returned invalid JSON")
            return None
        return data if isinstance(data, dict) else None

    async def _send(self, method: str, path: str, record: CallRecord) -> None:
        try:
            response = await self._client.request(method, path, json=record.to_payload())
        except httpx.HTTPError as e:
            logger.warning("Call record not saved", call_sid=record.call_sid, error=str(e))
            return
        if response.status_code >= 400:
            logger.warning("Call record rejected", call_sid=record.call_sid, status_code=response.status_code)

    async def open_call(self, record: CallRecord) -> None:
        await self._send("POST", "/calls", record)

    async def close_call(self, record: CallRecord) -> None:
        await self._send("PATCH", f"/calls/{record.call_sid}", record)


def create_business_directory(config: Any) -> BusinessDirectory:
    if config.directory_api_url:
        return HttpBusinessDirectory(config.directory_api_url, config.directory_api_key)
    return InMemoryBusinessDirectory.from_json(config.business_directory_json)
