"""
Tests for the business directory, call records and per-business language.
"""

import json
from dataclasses import replace

import httpx
import pytest
import respx

from src.telecaller.business import BusinessContext, language_for_timezone
from src.telecaller.dialogue import BookingFields
from src.telecaller.directory import (
    NO_BOOKING_SUMMARY,
    CallRecord,
    HttpBusinessDirectory,
    InMemoryBusinessDirectory,
    create_business_directory,
    describe_outcome,
    normalize_phone,
)
from src.telecaller.state_machine import ConversationState as S

DEFAULT = BusinessContext(name="Bright Smile Dental", timezone="America/New_York")
BOOKED = BookingFields(
    customer_name="John Doe",
    appointment_date="2025-06-11",
    appointment_time="14:00",
    caller_phone="+15125551234",
)


class TestLanguage:
    def test_timezone_picks_language(self):
        assert language_for_timezone("America/Mexico_City") == "es-419"
        assert language_for_timezone("Europe/Madrid") == "es"
        assert language_for_timezone("europe/paris") == "fr"

    def test_unknown_timezone_is_english(self):
        assert language_for_timezone("America/New_York") == "en-US"
        assert language_for_timezone("") == "en-US"
        assert language_for_timezone(None) == "en-US"

    def test_explicit_language_wins(self):
        business = BusinessContext(name="x", timezone="Europe/Madrid", language="en-GB")

        assert business.speech_language == "en-GB"

    def test_speech_language_follows_timezone(self):
        assert BusinessContext(name="x", timezone="Europe/Berlin").speech_language == "de"


class TestMergedWith:
    def test_camel_case_entry(self):
        business = DEFAULT.merged_with({
            "id": "biz_9",
            "name": "Clinica Sonrisa",
            "timezone": "America/Mexico_City",
            "greetingMessage": "Hola!",
            "aiInstructions": "Parking in the back.",
            "workingHours": {"saturday": [{"start": "10:00", "end": "14:00"}]},
            "appointmentDurationMinutes": "45",
        })

        assert business.business_id == "biz_9"
        assert business.name == "Clinica Sonrisa"
        assert business.greeting == "Hola!"
        assert business.notes == "Parking in the back."
        assert business.speech_language == "es-419"
        assert len(business.working_hours["saturday"]) == 1
        assert business.working_hours["monday"] == []
        assert business.appointment_duration_minutes == 45
        assert business.minimum_notice_hours == DEFAULT.minimum_notice_hours

    def test_empty_values_keep_defaults(self):
        business = DEFAULT.merged_with({"name": "", "timezone": None})

        assert business is DEFAULT

    def test_invalid_number_is_ignored(self):
        business = DEFAULT.merged_with({"minimumNoticeHours": "soon", "name": "Downtown"})

        assert business.minimum_notice_hours == DEFAULT.minimum_notice_hours
        assert business.name == "Downtown"


class TestCallRecords:
    def test_normalize_phone(self):
        assert normalize_phone("(512) 555-0000") == "+15125550000"
        assert normalize_phone("+44 20 7946 0000") == "+442079460000"
        assert normalize_phone("") == ""
        assert normalize_phone(None) == ""

    def test_outcome_of_booked_call(self):
        status, summary = describe_outcome(S.COMPLETED, BOOKED)

        assert status == "completed"
        assert summary == "Booked appointment for John Doe on 2025-06-11 at 14:00"

    def test_outcome_of_unfinished_call(self):
        assert describe_outcome(S.LISTENING, BOOKED) == ("failed", NO_BOOKING_SUMMARY)
        assert describe_outcome(S.FAILED, BookingFields()) == ("failed", NO_BOOKING_SUMMARY)

    def test_completed_without_name(self):
        assert describe_outcome(S.COMPLETED, BookingFields()) == ("completed", NO_BOOKING_SUMMARY)

    def test_finish_fills_status_and_booking(self):
        record = CallRecord(call_sid="CA1", business_id="biz_1")

        record.finish(S.COMPLETED, BOOKED, {"state": "completed", "booking_id": "bk_1"})

        payload = record.to_payload()
        assert payload["status"] == "completed"
        assert payload["bookingId"] == "bk_1"
        assert payload["endedAt"] is not None
        assert payload["details"]["state"] == "completed"


class TestInMemoryDirectory:
    @pytest.mark.asyncio
    async def test_resolve_by_number(self):
        directory = InMemoryBusinessDirectory({"+15125550000": {"id": "biz_1", "name": "Austin Dental"}})

        business = await directory.resolve("512-555-0000", DEFAULT)

        assert business.business_id == "biz_1"
        assert business.name == "Austin Dental"
        assert business.timezone == DEFAULT.timezone

    @pytest.mark.asyncio
    async def test_unknown_or_missing_number_uses_default(self):
        directory = InMemoryBusinessDirectory({"+15125550000": {"name": "Austin Dental"}})

        assert await directory.resolve("+15125559999", DEFAULT) is DEFAULT
        assert await directory.resolve("", DEFAULT) is DEFAULT

    def test_from_json(self):
        raw = json.dumps({"+15125550000": {"name": "Austin Dental"}, "+15125550001": "bogus"})

        directory = InMemoryBusinessDirectory.from_json(raw)

        assert list(directory._entries) == ["+15125550000"]

    @pytest.mark.parametrize("raw", ["", "{not json", "[1, 2]"])
    def test_from_json_invalid_is_empty(self, raw):
        assert InMemoryBusinessDirectory.from_json(raw)._entries == {}

    @pytest.mark.asyncio
    async def test_oldest_records_are_evicted(self):
        directory = InMemoryBusinessDirectory(max_calls=2)

        for sid in ("CA1", "CA2", "CA3"):
            await directory.open_call(CallRecord(call_sid=sid))

        assert list(directory.calls) == ["CA2", "CA3"]


class TestHttpDirectory:
    @pytest.mark.asyncio
    @respx.mock
    async def test_lookup(self):
        route = respx.get("https://dir.test/api/businesses/lookup").mock(
            return_value=httpx.Response(200, json={"id": "biz_5", "name": "Uptown Dental", "timezone": "Europe/Paris"})
        )
        directory = HttpBusinessDirectory("https://dir.test/api/", "secret")

        business = await directory.resolve("+15125550000", DEFAULT)
        await directory.close()

        assert business.business_id == "biz_5"
        assert business.speech_language == "fr"
        request = route.calls.last.request
        assert request.url.params["phoneNumber"] == "+15125550000"
        assert request.headers["Authorization"] == "Bearer secret"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status, body", [(404, ""), (500, ""), (200, "nope")])
    async def test_lookup_failures_use_default(self, status, body):
        with respx.mock:
            respx.get("https://dir.test/api/businesses/lookup").mock(
                return_value=httpx.Response(status, text=body)
            )
            directory = HttpBusinessDirectory("https://dir.test/api")

            assert await directory.resolve("+15125550000", DEFAULT) is DEFAULT
            await directory.close()

    @pytest.mark.asyncio
    @respx.mock
    async def test_unreachable_directory_uses_default(self):
        respx.get("https://dir.test/api/businesses/lookup").mock(side_effect=httpx.ConnectError("down"))
        directory = HttpBusinessDirectory("https://dir.test/api")

        assert await directory.resolve("+15125550000", DEFAULT) is DEFAULT
        await directory.close()

    @pytest.mark.asyncio
    @respx.mock
    async def test_call_record_is_posted_then_patched(self):
        opened = respx.post("https://dir.test/api/calls").mock(return_value=httpx.Response(201))
        closed = respx.patch("https://dir.test/api/calls/CA1").mock(return_value=httpx.Response(200))
        directory = HttpBusinessDirectory("https://dir.test/api")
        record = CallRecord(call_sid="CA1", business_id="biz_1", from_number="+15125551234")

        await directory.open_call(record)
        record.finish(S.COMPLETED, BOOKED, {"booking_id": "bk_1"})
        await directory.close_call(record)
        await directory.close()

        assert json.loads(opened.calls.last.request.content)["status"] == "in_progress"
        body = json.loads(closed.calls.last.request.content)
        assert body["status"] == "completed"
        assert body["summary"].startswith("Booked appointment for John Doe")
        assert body["bookingId"] == "bk_1"

    @pytest.mark.asyncio
    @respx.mock
    async def test_record_failures_are_not_raised(self):
        respx.post("https://dir.test/api/calls").mock(side_effect=httpx.ConnectError("down"))
        respx.patch("https://dir.test/api/calls/CA1").mock(return_value=httpx.Response(500))
        directory = HttpBusinessDirectory("https://dir.test/api")
        record = CallRecord(call_sid="CA1")

        await directory.open_call(record)
        await directory.close_call(record)
        await directory.close()


def test_factory(fast_config):
    assert isinstance(create_business_directory(fast_config), InMemoryBusinessDirectory)
    http = create_business_directory(replace(fast_config, directory_api_url="https://dir.test/api"))
    assert isinstance(http, HttpBusinessDirectory)
