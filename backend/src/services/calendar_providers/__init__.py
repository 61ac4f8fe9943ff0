"""External calendar providers."""

from typing import Dict, Optional

from services.calendar_providers.base import (
    CalendarProvider,
    EventPayload,
    SyncedEvent,
    TokenGrant,
)
from services.calendar_providers.google_provider import GoogleCalendarProvider
from services.calendar_providers.nylas_provider import NylasProvider


class ProviderRegistry:
    """Looks up the provider implementation for a connection's provider id."""

    def __init__(self, providers: Optional[Dict[str, CalendarProvider]] = None) -> None:
        self._providers: Dict[str, CalendarProvider] = providers or {
            NylasProvider.name: NylasProvider(),
            GoogleCalendarProvider.name: GoogleCalendarProvider(),
        }

    def get(self, name: str) -> CalendarProvider:
        try:
            return self._providers[name]
        except KeyError:
            raise ValueError(f"Unsupported calendar provider: {name}")


__all__ = [
    "CalendarProvider",
    "EventPayload",
    "SyncedEvent",
    "TokenGrant",
    "GoogleCalendarProvider",
    "NylasProvider",
    "ProviderRegistry",
]
