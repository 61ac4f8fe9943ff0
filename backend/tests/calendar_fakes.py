"""
Test doubles and builders shared by the calendar sync tests.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from core.errors import CalendarSyncError, ProviderFetchError
from models import Appointment, ExternalConnection
from services.calendar_providers import CalendarProvider, EventPayload, SyncedEvent, TokenGrant
from services.connection_service import ConnectionService
from utils.datetime_utils import utc_now


def at(day: int, hour: int, minute: int = 0, month: int = 3, year: int = 2030) -> datetime:
    """Aware UTC instant, defaulting to March 2030."""
    return datetime(year, month, day, hour, minute, tzinfo=timezone.utc)


class FakeCalendarProvider(CalendarProvider):
    """
    In-memory external calendar.

    Events are stored as plain dicts with aware `start`/`end` datetimes.
    Set `refresh_error`, `list_error` or `write_error` to make the matching
    calls raise.
    """

    name = "nylas"

    def __init__(self) -> None:
        self.events: Dict[str, Dict[str, Any]] = {}
        self.refresh_calls = 0
        self.refresh_error: Optional[CalendarSyncError] = None
        self.list_error: Optional[CalendarSyncError] = None
        self.write_error: Optional[CalendarSyncError] = None
        self.failing_connection_ids: set = set()
        self.created: List[EventPayload] = []
        self.updated: List[str] = []
        self.deleted: List[str] = []
        self._next_id = 1

    def add_event(
        self,
        event_id: str,
        start: datetime,
        end: datetime,
        title: str = "Busy",
        **fields: Any,
    ) -> Dict[str, Any]:
        event = {"id": event_id, "title": title, "start": start, "end": end, **fields}
        self.events[event_id] = event
        return event

    async def refresh_access_token(self, connection_id: str, refresh_token: str) -> TokenGrant:
        self.refresh_calls += 1
        if self.refresh_error is not None:
            raise self.refresh_error
        return TokenGrant(access_token=f"access-{self.refresh_calls}", expires_in=3600, refresh_token=None)

    async def list_events(
        self,
        connection: ExternalConnection,
        access_token: str,
        window_start: datetime,
        window_end: datetime,
    ) -> List[Dict[str, Any]]:
        if self.list_error is not None:
            raise self.list_error
        if connection.id in self.failing_connection_ids:
            raise ProviderFetchError(connection.id, "Provider unavailable", 503)
        return [dict(e) for e in self.events.values() if e["start"] < window_end and e["end"] > window_start]

    def normalize_event(self, raw: Dict[str, Any], connection: ExternalConnection) -> Optional[SyncedEvent]:
        if raw.get("all_day"):
            return None
        return SyncedEvent(
            connection_id=connection.id,
            external_event_id=raw["id"],
            start=raw["start"],
            end=raw["end"],
            title=raw.get("title") or "Busy",
            description=raw.get("description") or "",
            status=raw.get("status") or "confirmed",
            provider=self.name,
            updated_at=raw.get("updated_at"),
        )

    async def create_event(self, connection: ExternalConnection, access_token: str, payload: EventPayload) -> Dict[str, Any]:
        if self.write_error is not None:
            raise self.write_error
        event_id = f"remote-{self._next_id}"
        self._next_id += 1
        self.created.append(payload)
        event = self.add_event(
            event_id,
            payload.start,
            payload.end,
            title=payload.title,
            description=payload.description,
            recurrence=list(payload.recurrence),
        )
        return dict(event)

    async def update_event(
        self, connection: ExternalConnection, access_token: str, external_event_id: str, payload: EventPayload
    ) -> Dict[str, Any]:
        if self.write_error is not None:
            raise self.write_error
        self.updated.append(external_event_id)
        event = self.add_event(
            external_event_id,
            payload.start,
            payload.end,
            title=payload.title,
            description=payload.description,
            recurrence=list(payload.recurrence),
        )
        return dict(event)

    async def delete_event(self, connection: ExternalConnection, access_token: str, external_event_id: str) -> None:
        if self.write_error is not None:
            raise self.write_error
        self.deleted.append(external_event_id)
        self.events.pop(external_event_id, None)


def create_connection(
    db: Session,
    user_id: str = "clinician-1",
    provider: str = "nylas",
    expires_in: timedelta = timedelta(hours=1),
    refresh_token: Optional[str] = "refresh-token",
) -> ExternalConnection:
    return ConnectionService(db).create_connection(
        user_id=user_id,
        provider=provider,
        access_token="access-token",
        refresh_token=refresh_token,
        token_expires_at=utc_now() + expires_in,
    )


def create_appointment(
    db: Session,
    start: datetime,
    end: datetime,
    clinician_id: str = "clinician-1",
    **fields: Any,
) -> Appointment:
    values: Dict[str, Any] = {
        "clinician_id": clinician_id,
        "start_at": start,
        "end_at": end,
        "timezone": "UTC",
        "type": "appointment",
        "status": "scheduled",
        "conflict_exempt": False,
    }
    values.update(fields)
    appointment = Appointment(**values)
    db.add(appointment)
    db.commit()
    return appointment
