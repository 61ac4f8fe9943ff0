# pyright: reportUnknownMemberType=false, reportUnknownVariableType=false, reportMissingTypeStubs=false
"""
Google Calendar provider.

Uses google-api-python-client for event operations and the Google OAuth2
token endpoint (via httpx) to refresh access tokens.
"""

import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from core.config import GOOGLE_CLIENT_ID, GOOGLE_CLIENT_SECRET
from core.constants import DEFAULT_TOKEN_LIFETIME_SECONDS, PROVIDER_REQUEST_TIMEOUT_SECONDS
from core.errors import AuthRefreshError, ProviderFetchError
from models import ExternalConnection
from services.calendar_providers.base import CalendarProvider, EventPayload, SyncedEvent, TokenGrant, normalize_status
from utils.datetime_utils import format_rfc3339, parse_iso_datetime

logger = logging.getLogger(__name__)

MAX_PAGES = 20


def _http_error_message(e: HttpError) -> str:
    try:
        error_details = json.loads(e.content.decode('utf-8')) if e.content else {}
    except (ValueError, UnicodeDecodeError):
        error_details = {}
    return error_details.get('error', {}).get('message', str(e))


class GoogleCalendarProvider(CalendarProvider):
    """Calendar provider backed by the Google Calendar v3 API."""

    name = "google"

    TOKEN_URL = "https://oauth2.googleapis.com/token"
    DEFAULT_CALENDAR_ID = 'primary'

    def __init__(
        self,
        client_id: str = GOOGLE_CLIENT_ID,
        client_secret: str = GOOGLE_CLIENT_SECRET,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self._transport = transport

    def _service(self, access_token: str) -> Any:
        credentials = Credentials(token=access_token)
        return build('calendar', 'v3', credentials=credentials, cache_discovery=False)

    async def refresh_access_token(self, connection_id: str, refresh_token: str) -> TokenGrant:
        """Refresh an expired access token at the Google OAuth2 token endpoint."""
        data = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=PROVIDER_REQUEST_TIMEOUT_SECONDS) as client:
                response = await client.post(self.TOKEN_URL, data=data)
        except httpx.HTTPError as e:
            raise ProviderFetchError(connection_id, f"Token endpoint unreachable: {e}")

        if response.status_code in (400, 401, 403):
            logger.warning(f"Google rejected refresh token for connection {connection_id}: {response.text}")
            raise AuthRefreshError(connection_id, f"Google rejected refresh token: {response.status_code}")
        if response.is_error:
            raise ProviderFetchError(
                connection_id, f"Token refresh failed: {response.status_code} {response.text}", response.status_code
            )

        token_data = response.json()
        return TokenGrant(
            access_token=token_data["access_token"],
            expires_in=int(token_data.get("expires_in") or DEFAULT_TOKEN_LIFETIME_SECONDS),
            refresh_token=token_data.get("refresh_token"),
        )

    async def list_events(
        self,
        connection: ExternalConnection,
        access_token: str,
        window_start: datetime,
        window_end: datetime,
    ) -> List[Dict[str, Any]]:
        calendar_ids = connection.calendar_ids or [self.DEFAULT_CALENDAR_ID]
        events: List[Dict[str, Any]] = []
        try:
            service = self._service(access_token)
            for calendar_id in calendar_ids:
                page_token: Optional[str] = None
                for _ in range(MAX_PAGES):
                    result = service.events().list(
                        calendarId=calendar_id,
                        timeMin=format_rfc3339(window_start),
                        timeMax=format_rfc3339(window_end),
                        singleEvents=True,
                        orderBy='startTime',
                        pageToken=page_token,
                    ).execute()
                    for raw in result.get('items', []):
                        raw.setdefault('calendar_id', calendar_id)
                        events.append(raw)
                    page_token = result.get('nextPageToken')
                    if not page_token:
                        break
        except HttpError as e:
            raise ProviderFetchError(
                connection.id, f"Failed to fetch Google events: {_http_error_message(e)}", e.resp.status
            )
        except Exception as e:
            raise ProviderFetchError(connection.id, f"Unexpected error fetching Google events: {e}")

        return events

    def normalize_event(self, raw: Dict[str, Any], connection: ExternalConnection) -> Optional[SyncedEvent]:
        start = raw.get('start') or {}
        end = raw.get('end') or {}
        if 'dateTime' not in start or 'dateTime' not in end:
            # All-day events carry 'date' only
            return None

        return SyncedEvent(
            connection_id=connection.id,
            external_event_id=str(raw['id']),
            calendar_id=raw.get('calendar_id'),
            provider=self.name,
            title=raw.get('summary') or "Busy",
            description=raw.get('description') or "",
            location=raw.get('location') or "",
            start=parse_iso_datetime(start['dateTime']),
            end=parse_iso_datetime(end['dateTime']),
            start_timezone=start.get('timeZone'),
            end_timezone=end.get('timeZone'),
            status=normalize_status(raw.get('status')),
            participants=tuple(sorted(a['email'] for a in raw.get('attendees') or [] if a.get('email'))),
            updated_at=parse_iso_datetime(raw['updated']) if raw.get('updated') else None,
        )

    def _event_body(self, payload: EventPayload) -> Dict[str, Any]:
        tz = payload.timezone or 'UTC'
        body: Dict[str, Any] = {
            'summary': payload.title or '',
            'description': payload.description or '',
            'location': payload.location or '',
            'start': {'dateTime': format_rfc3339(payload.start), 'timeZone': tz},
            'end': {'dateTime': format_rfc3339(payload.end), 'timeZone': tz},
        }
        if payload.recurrence:
            body['recurrence'] = list(payload.recurrence)
        return body

    async def create_event(self, connection: ExternalConnection, access_token: str, payload: EventPayload) -> Dict[str, Any]:
        calendar_id = payload.calendar_id or connection.primary_calendar_id or self.DEFAULT_CALENDAR_ID
        try:
            event = self._service(access_token).events().insert(
                calendarId=calendar_id,
                body=self._event_body(payload),
            ).execute()
        except HttpError as e:
            raise ProviderFetchError(
                connection.id, f"Failed to create calendar event: {_http_error_message(e)}", e.resp.status
            )
        logger.info(f"Google Calendar event created: {event.get('id')}")
        return event

    async def update_event(
        self, connection: ExternalConnection, access_token: str, external_event_id: str, payload: EventPayload
    ) -> Dict[str, Any]:
        calendar_id = payload.calendar_id or connection.primary_calendar_id or self.DEFAULT_CALENDAR_ID
        try:
            return self._service(access_token).events().patch(
                calendarId=calendar_id,
                eventId=external_event_id,
                body=self._event_body(payload),
            ).execute()
        except HttpError as e:
            raise ProviderFetchError(
                connection.id, f"Failed to update calendar event: {_http_error_message(e)}", e.resp.status
            )

    async def delete_event(self, connection: ExternalConnection, access_token: str, external_event_id: str) -> None:
        calendar_id = connection.primary_calendar_id or self.DEFAULT_CALENDAR_ID
        try:
            self._service(access_token).events().delete(
                calendarId=calendar_id,
                eventId=external_event_id,
            ).execute()
        except HttpError as e:
            if e.resp.status == 404:
                # Event already deleted, treat as success
                return
            raise ProviderFetchError(
                connection.id, f"Failed to delete calendar event: {_http_error_message(e)}", e.resp.status
            )
