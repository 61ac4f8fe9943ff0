"""
Nylas v3 calendar provider.

Talks to the Nylas REST API with httpx. Event windows are expressed as Unix
epoch seconds; event times come back as epoch seconds inside a `when`
object whose `object` field distinguishes timed events ('timespan') from
all-day ones ('date', 'datespan').
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx

from core.config import NYLAS_API_URI, NYLAS_CLIENT_ID, NYLAS_CLIENT_SECRET
from core.constants import DEFAULT_TOKEN_LIFETIME_SECONDS, PROVIDER_EVENTS_PAGE_LIMIT, PROVIDER_REQUEST_TIMEOUT_SECONDS
from core.errors import AuthRefreshError, ProviderFetchError
from models import ExternalConnection
from services.calendar_providers.base import CalendarProvider, EventPayload, SyncedEvent, TokenGrant, normalize_status
from utils.datetime_utils import from_epoch_seconds, to_epoch_seconds

logger = logging.getLogger(__name__)

# Status codes meaning the refresh token itself is no longer valid
_REJECTED_REFRESH_STATUSES = (400, 401, 403)

MAX_PAGES = 20


class NylasProvider(CalendarProvider):
    """Calendar provider backed by the Nylas v3 API."""

    name = "nylas"

    def __init__(
        self,
        api_uri: str = NYLAS_API_URI,
        client_id: str = NYLAS_CLIENT_ID,
        client_secret: str = NYLAS_CLIENT_SECRET,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_uri = api_uri.rstrip("/")
        self.client_id = client_id
        self.client_secret = client_secret
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.api_uri,
            transport=self._transport,
            timeout=PROVIDER_REQUEST_TIMEOUT_SECONDS,
        )

    @staticmethod
    def _auth_headers(access_token: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {access_token}", "Content-Type": "application/json"}

    async def refresh_access_token(self, connection_id: str, refresh_token: str) -> TokenGrant:
        """Exchange a refresh token at /v3/connect/token."""
        body = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }
        try:
            async with self._client() as client:
                response = await client.post("/v3/connect/token", json=body)
        except httpx.HTTPError as e:
            raise ProviderFetchError(connection_id, f"Token endpoint unreachable: {e}")

        if response.status_code in _REJECTED_REFRESH_STATUSES:
            logger.warning(f"Nylas rejected refresh token for connection {connection_id}: {response.text}")
            raise AuthRefreshError(connection_id, f"Nylas rejected refresh token: {response.status_code}")
        if response.is_error:
            raise ProviderFetchError(
                connection_id, f"Token refresh failed: {response.status_code} {response.text}", response.status_code
            )

        data = response.json()
        if not data.get("access_token"):
            raise ProviderFetchError(connection_id, "Token response did not include an access token")
        return TokenGrant(
            access_token=data["access_token"],
            expires_in=int(data.get("expires_in") or DEFAULT_TOKEN_LIFETIME_SECONDS),
            refresh_token=data.get("refresh_token"),
        )

    async def list_events(
        self,
        connection: ExternalConnection,
        access_token: str,
        window_start: datetime,
        window_end: datetime,
    ) -> List[Dict[str, Any]]:
        """List events in the window from the connection's calendars, following cursors."""
        calendar_ids = connection.calendar_ids or ["primary"]
        events: List[Dict[str, Any]] = []

        try:
            async with self._client() as client:
                for calendar_id in calendar_ids:
                    page_token: Optional[str] = None
                    for _ in range(MAX_PAGES):
                        params: Dict[str, Any] = {
                            "calendar_id": calendar_id,
                            "start": to_epoch_seconds(window_start),
                            "end": to_epoch_seconds(window_end),
                            "limit": PROVIDER_EVENTS_PAGE_LIMIT,
                            "expand_recurring": "true",
                        }
                        if page_token:
                            params["page_token"] = page_token

                        response = await client.get(
                            f"/v3/grants/{connection.provider_account_id}/events",
                            params=params,
                            headers=self._auth_headers(access_token),
                        )
                        if response.is_error:
                            raise ProviderFetchError(
                                connection.id,
                                f"Failed to fetch Nylas events: {response.status_code} {response.text}",
                                response.status_code,
                            )

                        payload = response.json()
                        for raw in payload.get("data") or []:
                            raw.setdefault("calendar_id", calendar_id)
                            events.append(raw)

                        page_token = payload.get("next_cursor")
                        if not page_token:
                            break
        except httpx.HTTPError as e:
            raise ProviderFetchError(connection.id, f"Nylas request failed: {e}")

        logger.debug(f"Fetched {len(events)} Nylas events for connection {connection.id}")
        return events

    def normalize_event(self, raw: Dict[str, Any], connection: ExternalConnection) -> Optional[SyncedEvent]:
        when = raw.get("when") or {}
        if when.get("object") != "timespan" or when.get("start_time") is None or when.get("end_time") is None:
            return None

        return SyncedEvent(
            connection_id=connection.id,
            external_event_id=str(raw["id"]),
            calendar_id=raw.get("calendar_id"),
            provider=self.name,
            title=raw.get("title") or "Busy",
            description=raw.get("description") or "",
            location=raw.get("location") or "",
            start=from_epoch_seconds(when["start_time"]),
            end=from_epoch_seconds(when["end_time"]),
            start_timezone=when.get("start_timezone"),
            end_timezone=when.get("end_timezone"),
            status=normalize_status(raw.get("status")),
            participants=tuple(sorted(p["email"] for p in raw.get("participants") or [] if p.get("email"))),
            updated_at=from_epoch_seconds(raw["updated_at"]) if raw.get("updated_at") else None,
        )

    def _event_body(self, payload: EventPayload) -> Dict[str, Any]:
        when: Dict[str, Any] = {
            "start_time": to_epoch_seconds(payload.start),
            "end_time": to_epoch_seconds(payload.end),
        }
        if payload.timezone:
            when["start_timezone"] = payload.timezone
            when["end_timezone"] = payload.timezone
        body: Dict[str, Any] = {"title": payload.title, "description": payload.description, "when": when}
        if payload.location:
            body["location"] = payload.location
        if payload.recurrence:
            body["recurrence"] = list(payload.recurrence)
        return body

    async def _send(
        self,
        connection: ExternalConnection,
        method: str,
        path: str,
        access_token: str,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        try:
            async with self._client() as client:
                return await client.request(
                    method, path, params=params, json=json_body, headers=self._auth_headers(access_token)
                )
        except httpx.HTTPError as e:
            raise ProviderFetchError(connection.id, f"Nylas request failed: {e}")

    async def create_event(self, connection: ExternalConnection, access_token: str, payload: EventPayload) -> Dict[str, Any]:
        calendar_id = payload.calendar_id or connection.primary_calendar_id or "primary"
        response = await self._send(
            connection,
            "POST",
            f"/v3/grants/{connection.provider_account_id}/events",
            access_token,
            params={"calendar_id": calendar_id},
            json_body=self._event_body(payload),
        )
        if response.is_error:
            raise ProviderFetchError(
                connection.id, f"Failed to create remote event: {response.status_code} {response.text}", response.status_code
            )
        return response.json()["data"]

    async def update_event(
        self, connection: ExternalConnection, access_token: str, external_event_id: str, payload: EventPayload
    ) -> Dict[str, Any]:
        calendar_id = payload.calendar_id or connection.primary_calendar_id or "primary"
        response = await self._send(
            connection,
            "PUT",
            f"/v3/grants/{connection.provider_account_id}/events/{external_event_id}",
            access_token,
            params={"calendar_id": calendar_id},
            json_body=self._event_body(payload),
        )
        if response.is_error:
            raise ProviderFetchError(
                connection.id, f"Failed to update remote event: {response.status_code} {response.text}", response.status_code
            )
        return response.json()["data"]

    async def delete_event(self, connection: ExternalConnection, access_token: str, external_event_id: str) -> None:
        calendar_id = connection.primary_calendar_id or "primary"
        response = await self._send(
            connection,
            "DELETE",
            f"/v3/grants/{connection.provider_account_id}/events/{external_event_id}",
            access_token,
            params={"calendar_id": calendar_id},
        )
        if response.is_error and response.status_code != 404:
            raise ProviderFetchError(
                connection.id, f"Failed to delete remote event: {response.status_code} {response.text}", response.status_code
            )
