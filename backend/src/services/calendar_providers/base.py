"""
External calendar provider interface and the normalized event shape.

Providers translate between their native event objects and `SyncedEvent`,
and raise the tagged errors from `core.errors` so callers never need to
inspect provider-specific exceptions.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from models import ExternalConnection


EXTERNAL_EVENT_STATUSES = ("confirmed", "tentative", "cancelled")


@dataclass(frozen=True)
class TokenGrant:
    """Result of a token refresh."""
    access_token: str
    expires_in: int
    refresh_token: Optional[str] = None


@dataclass(frozen=True)
class SyncedEvent:
    """
    Normalized external calendar event.

    Owned by its connection and only meaningful for the window it was
    fetched for. Never authoritative for scheduling; used for conflict
    display/avoidance and as input to two-way reconciliation.
    """
    connection_id: str
    external_event_id: str
    start: datetime
    end: datetime
    title: str = "Busy"
    description: str = ""
    location: str = ""
    start_timezone: Optional[str] = None
    end_timezone: Optional[str] = None
    status: str = "confirmed"
    calendar_id: Optional[str] = None
    provider: Optional[str] = None
    participants: Tuple[str, ...] = field(default_factory=tuple)
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "connection_id": self.connection_id,
            "external_event_id": self.external_event_id,
            "calendar_id": self.calendar_id,
            "provider": self.provider,
            "title": self.title,
            "description": self.description,
            "location": self.location,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "start_timezone": self.start_timezone,
            "end_timezone": self.end_timezone,
            "status": self.status,
            "participants": list(self.participants),
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass(frozen=True)
class EventPayload:
    """Outbound event content pushed to an external calendar."""
    title: str
    start: datetime
    end: datetime
    description: str = ""
    location: str = ""
    timezone: Optional[str] = None
    calendar_id: Optional[str] = None
    recurrence: Tuple[str, ...] = ()
    """RFC 5545 recurrence lines, e.g. ("RRULE:FREQ=WEEKLY;BYDAY=MO",)."""


def normalize_status(value: Optional[str]) -> str:
    status = (value or "confirmed").lower()
    return status if status in EXTERNAL_EVENT_STATUSES else "confirmed"


class CalendarProvider(ABC):
    """Interface every external calendar integration implements."""

    name: str

    @abstractmethod
    async def refresh_access_token(self, connection_id: str, refresh_token: str) -> TokenGrant:
        """
        Exchange a refresh token for a new access token.

        Raises:
            AuthRefreshError: The provider rejected the refresh token
            ProviderFetchError: Transport failure or provider-side error
        """

    @abstractmethod
    async def list_events(
        self,
        connection: ExternalConnection,
        access_token: str,
        window_start: datetime,
        window_end: datetime,
    ) -> List[Dict[str, Any]]:
        """
        Return provider-native events overlapping the window.

        Raises:
            ProviderFetchError: On any failure for this connection
        """

    @abstractmethod
    def normalize_event(self, raw: Dict[str, Any], connection: ExternalConnection) -> Optional[SyncedEvent]:
        """Convert a native event to SyncedEvent, or None for all-day events."""

    @abstractmethod
    async def create_event(self, connection: ExternalConnection, access_token: str, payload: EventPayload) -> Dict[str, Any]:
        """Create an event and return the provider-native result."""

    @abstractmethod
    async def update_event(
        self, connection: ExternalConnection, access_token: str, external_event_id: str, payload: EventPayload
    ) -> Dict[str, Any]:
        """Update an event and return the provider-native result."""

    @abstractmethod
    async def delete_event(self, connection: ExternalConnection, access_token: str, external_event_id: str) -> None:
        """Delete an event. Deleting an already missing event succeeds."""
