"""
Unit tests for the Google Calendar provider.
"""

import pytest
import httpx
from unittest.mock import Mock, patch
from urllib.parse import parse_qs

from googleapiclient.errors import HttpError

from core.errors import AuthRefreshError, ProviderFetchError
from models import ExternalConnection
from services.calendar_providers import EventPayload, GoogleCalendarProvider

from calendar_fakes import at


def make_connection(**fields):
    values = {"id": "conn-g", "user_id": "clinician-1", "provider": "google", "calendar_ids": []}
    values.update(fields)
    return ExternalConnection(**values)


def http_error(status, body=b'{"error": {"message": "Not Found"}}'):
    resp = Mock()
    resp.status = status
    resp.reason = "error"
    return HttpError(resp, body)


class TestNormalizeEvent:

    def test_timed_event(self):
        raw = {
            "id": "g-1",
            "summary": "Dentist",
            "start": {"dateTime": "2030-03-04T09:00:00-06:00", "timeZone": "America/Chicago"},
            "end": {"dateTime": "2030-03-04T10:00:00-06:00", "timeZone": "America/Chicago"},
            "updated": "2030-03-01T12:00:00.000Z",
            "attendees": [{"email": "x@example.com"}],
        }

        event = GoogleCalendarProvider().normalize_event(raw, make_connection())

        assert event.start == at(4, 15)
        assert event.end == at(4, 16)
        assert event.title == "Dentist"
        assert event.start_timezone == "America/Chicago"
        assert event.participants == ("x@example.com",)
        assert event.updated_at == at(1, 12)

    def test_all_day_event_skipped(self):
        raw = {"id": "g-2", "start": {"date": "2030-03-04"}, "end": {"date": "2030-03-05"}}
        assert GoogleCalendarProvider().normalize_event(raw, make_connection()) is None

    def test_missing_summary_defaults_to_busy(self):
        raw = {
            "id": "g-3",
            "start": {"dateTime": "2030-03-04T09:00:00Z"},
            "end": {"dateTime": "2030-03-04T10:00:00Z"},
        }
        assert GoogleCalendarProvider().normalize_event(raw, make_connection()).title == "Busy"


class TestRefreshAccessToken:

    @pytest.mark.asyncio
    async def test_successful_refresh_posts_form(self):
        def handler(request):
            form = parse_qs(request.content.decode())
            assert form["grant_type"] == ["refresh_token"]
            assert form["client_id"] == ["google-client"]
            return httpx.Response(200, json={"access_token": "ya29.new", "expires_in": 3599})

        provider = GoogleCalendarProvider("google-client", "google-secret", transport=httpx.MockTransport(handler))
        grant = await provider.refresh_access_token("conn-g", "refresh")

        assert grant.access_token == "ya29.new"
        assert grant.expires_in == 3599

    @pytest.mark.asyncio
    async def test_invalid_grant(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(400, json={"error": "invalid_grant"}))
        provider = GoogleCalendarProvider("google-client", "google-secret", transport=transport)

        with pytest.raises(AuthRefreshError):
            await provider.refresh_access_token("conn-g", "revoked")


class TestEventOperations:

    @pytest.mark.asyncio
    async def test_list_events_pages_through_results(self):
        service = Mock()
        service.events.return_value.list.return_value.execute.side_effect = [
            {"items": [{"id": "g-1"}], "nextPageToken": "next"},
            {"items": [{"id": "g-2"}]},
        ]
        provider = GoogleCalendarProvider()

        with patch.object(provider, "_service", return_value=service):
            events = await provider.list_events(make_connection(), "token", at(4, 0), at(5, 0))

        assert [e["id"] for e in events] == ["g-1", "g-2"]
        assert events[0]["calendar_id"] == "primary"
        first_call = service.events.return_value.list.call_args_list[0]
        assert first_call.kwargs["timeMin"] == "2030-03-04T00:00:00Z"
        assert first_call.kwargs["singleEvents"] is True

    @pytest.mark.asyncio
    async def test_list_events_http_error(self):
        service = Mock()
        service.events.return_value.list.return_value.execute.side_effect = http_error(403)
        provider = GoogleCalendarProvider()

        with patch.object(provider, "_service", return_value=service):
            with pytest.raises(ProviderFetchError) as exc_info:
                await provider.list_events(make_connection(), "token", at(4, 0), at(5, 0))
        assert exc_info.value.status_code == 403

    @pytest.mark.asyncio
    async def test_create_event_body(self):
        service = Mock()
        service.events.return_value.insert.return_value.execute.return_value = {"id": "g-new"}
        provider = GoogleCalendarProvider()
        payload = EventPayload(title="Available", start=at(4, 15), end=at(4, 18), timezone="America/Chicago",
                               recurrence=("RRULE:FREQ=WEEKLY;BYDAY=MO",))

        with patch.object(provider, "_service", return_value=service):
            result = await provider.create_event(make_connection(), "token", payload)

        assert result == {"id": "g-new"}
        body = service.events.return_value.insert.call_args.kwargs["body"]
        assert body["start"] == {"dateTime": "2030-03-04T15:00:00Z", "timeZone": "America/Chicago"}
        assert body["recurrence"] == ["RRULE:FREQ=WEEKLY;BYDAY=MO"]

    @pytest.mark.asyncio
    async def test_delete_already_deleted_event(self):
        service = Mock()
        service.events.return_value.delete.return_value.execute.side_effect = http_error(404)
        provider = GoogleCalendarProvider()

        with patch.object(provider, "_service", return_value=service):
            await provider.delete_event(make_connection(), "token", "g-gone")
