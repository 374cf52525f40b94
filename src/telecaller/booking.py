"""
Booking collaborator.

The orchestrator treats storage as a black box with two calls:
`check_availability(start, end, business)` returning a verdict with a
caller-facing reason, and `create_booking(...)` returning a booking id.

- InMemoryBookingService: business rules plus an overlap check, kept in
  process memory. Used when no backend URL is configured and in tests.
- HttpBookingService: the same two calls against a booking backend over
  httpx.
"""

import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import httpx
import structlog

from src.telecaller.business import BusinessContext, BusinessRules, appointment_window
from src.telecaller.dialogue import BookingFields
from src.telecaller.errors import BookingError

logger = structlog.get_logger(__name__)

SLOT_TAKEN_REASON = "This time slot is already booked. Please choose another time."
BACKEND_DOWN_REASON = (
    "I'm having trouble reaching our calendar right now. Could you give me another time, "
    "or try again in a moment?"
)


@dataclass(frozen=True)
class Availability:
    available: bool
    reason: Optional[str] = None


@dataclass(frozen=True)
class BookingRecord:
    booking_id: str
    business_id: Optional[str]
    customer_name: str
    customer_phone: str
    start: datetime
    end: datetime
    call_sid: Optional[str] = None


class BookingService(ABC):
    @abstractmethod
    async def check_availability(
        self, start: datetime, end: datetime, business: BusinessContext
    ) -> Availability:
        raise NotImplementedError

    @abstractmethod
    async def create_booking(
        self,
        customer_name: str,
        phone: str,
        start: datetime,
        end: datetime,
        *,
        business: BusinessContext,
        call_sid: Optional[str] = None,
    ) -> str:
        """Create the booking and return its id. Raises BookingError."""
        raise NotImplementedError

    async def close(self) -> None:
        return None


class InMemoryBookingService(BookingService):
    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._clock = clock
        self._bookings: List[BookingRecord] = []

    @property
    def bookings(self) -> List[BookingRecord]:
        return list(self._bookings)

    def _conflicts(self, start: datetime, end: datetime, business_id: Optional[str]) -> bool:
        return any(
            b.business_id == business_id and b.start < end and b.end > start for b in self._bookings
        )

    async def check_availability(
        self, start: datetime, end: datetime, business: BusinessContext
    ) -> Availability:
        now = self._clock() if self._clock else None
        reason = BusinessRules(business).validate(start, end, now=now)
        if reason:
            return Availability(False, reason)
        if self._conflicts(start, end, business.business_id):
            return Availability(False, SLOT_TAKEN_REASON)
        return Availability(True)

    async def create_booking(
        self,
        customer_name: str,
        phone: str,
        start: datetime,
        end: datetime,
        *,
        business: BusinessContext,
        call_sid: Optional[str] = None,
    ) -> str:
        # Another call may have taken the slot since the availability check.
        if self._conflicts(start, end, business.business_id):
            raise BookingError("Slot taken between check and create", reason=SLOT_TAKEN_REASON)
        record = BookingRecord(
            booking_id=uuid.uuid4().hex,
            business_id=business.business_id,
            customer_name=customer_name,
            customer_phone=phone,
            start=start,
            end=end,
            call_sid=call_sid,
        )
        self._bookings.append(record)
        return record.booking_id


class HttpBookingService(BookingService):
    """
    Booking backend over HTTP.

    POST {base}/availability -> {"available": bool, "reason": str | null}
    POST {base}/bookings     -> {"id": str}
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

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = await self._client.post(path, json=payload)
        except httpx.HTTPError as e:
            logger.error("Booking backend unreachable", path=path, error=str(e))
            raise BookingError(f"Booking backend unreachable: {e}", reason=BACKEND_DOWN_REASON) from e

        if response.status_code == 409:
            body = _json_or_empty(response)
            raise BookingError("Booking conflict", reason=body.get("reason") or SLOT_TAKEN_REASON)
        if response.status_code >= 400:
            logger.error("Booking backend error", path=path, status_code=response.status_code)
            raise BookingError(
                f"Booking backend returned {response.status_code}", reason=BACKEND_DOWN_REASON
            )
        return _json_or_empty(response)

    async def check_availability(
        self, start: datetime, end: datetime, business: BusinessContext
    ) -> Availability:
        data = await self._post(
            "/availability",
            {"businessId": business.business_id, "start": start.isoformat(), "end": end.isoformat()},
        )
        return Availability(bool(data.get("available")), data.get("reason"))

    async def create_booking(
        self,
        customer_name: str,
        phone: str,
        start: datetime,
        end: datetime,
        *,
        business: BusinessContext,
        call_sid: Optional[str] = None,
    ) -> str:
        data = await self._post(
            "/bookings",
            {
                "businessId": business.business_id,
                "callSid": call_sid,
                "customerName": customer_name,
                "customerPhone": phone,
                "start": start.isoformat(),
                "end": end.isoformat(),
            },
        )
        booking_id = data.get("id")
        if not booking_id:
            raise BookingError("Booking backend returned no id", reason=BACKEND_DOWN_REASON)
        return str(booking_id)


def _json_or_empty(response: httpx.Response) -> Dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


async def book_appointment(
    service: BookingService,
    fields: BookingFields,
    business: BusinessContext,
    *,
    call_sid: Optional[str] = None,
) -> str:
    """
    Check availability, then create. Returns the booking id.

    Raises:
        BookingError: with a caller-facing `reason` on any rejection
    """
    start, end = appointment_window(fields.appointment_date, fields.appointment_time, business)
    verdict = await service.check_availability(start, end, business)
    if not verdict.available:
        reason = verdict.reason or SLOT_TAKEN_REASON
        logger.info("Slot unavailable", call_sid=call_sid, start=start.isoformat(), reason=reason)
        raise BookingError("Slot unavailable", reason=reason)

    booking_id = await service.create_booking(
        fields.customer_name or "",
        fields.caller_phone,
        start,
        end,
        business=business,
        call_sid=call_sid,
    )
    logger.info("Booking created", call_sid=call_sid, booking_id=booking_id, start=start.isoformat())
    return booking_id


def create_booking_service(config: Any) -> BookingService:
    if config.booking_api_url:
        return HttpBookingService(config.booking_api_url, config.booking_api_key)
    return InMemoryBookingService()
