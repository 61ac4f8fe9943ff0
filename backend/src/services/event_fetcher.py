"""
External event fetching across all of a user's calendar connections.

Connections are processed one after another. A failure on one connection is
recorded as an error entry for that connection and never aborts the fetch
for the others.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Set, Union

from core.errors import AuthRefreshError, ProviderFetchError, ValidationError
from models import ExternalConnection
from services.calendar_providers import ProviderRegistry, SyncedEvent
from services.connection_service import ConnectionService
from services.token_refresher import TokenRefresher
from utils.datetime_utils import ensure_utc

logger = logging.getLogger(__name__)

FetchError = Union[ProviderFetchError, AuthRefreshError]


@dataclass
class FetchResult:
    """Events from every connection that succeeded plus one error per connection that failed."""
    events: List[SyncedEvent] = field(default_factory=list)
    errors: List[FetchError] = field(default_factory=list)
    succeeded_connection_ids: List[str] = field(default_factory=list)

    @property
    def failed_connection_ids(self) -> Set[str]:
        return {error.connection_id for error in self.errors}

    @property
    def reconnect_required(self) -> bool:
        return any(isinstance(error, AuthRefreshError) for error in self.errors)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "events": [event.to_dict() for event in self.events],
            "errors": [error.to_dict() for error in self.errors],
            "succeeded_connection_ids": self.succeeded_connection_ids,
        }


class EventFetcher:
    """Retrieves and normalizes external events for a date window."""

    def __init__(
        self,
        connections: ConnectionService,
        refresher: TokenRefresher,
        providers: ProviderRegistry,
    ) -> None:
        self.connections = connections
        self.refresher = refresher
        self.providers = providers

    async def fetch_events(self, user_id: str, window_start: datetime, window_end: datetime) -> FetchResult:
        """
        Fetch events overlapping [window_start, window_end) from every active connection.

        Raises:
            ValidationError: If the window is empty, inverted, or uses naive datetimes
        """
        window_start, window_end = validate_window(window_start, window_end)

        result = FetchResult()
        connections = self.connections.list_active_connections(user_id)
        logger.info(f"Fetching events for user {user_id} from {len(connections)} active connections")

        for connection in connections:
            try:
                events = await self.fetch_connection_events(connection, window_start, window_end)
            except (ProviderFetchError, AuthRefreshError) as e:
                logger.warning(f"Fetch failed for connection {connection.id} ({e.kind.value}): {e.message}")
                result.errors.append(e)
                continue
            result.events.extend(events)
            result.succeeded_connection_ids.append(connection.id)

        logger.info(
            f"Fetched {len(result.events)} events for user {user_id}; "
            f"{len(result.errors)} connection(s) failed"
        )
        return result

    async def fetch_connection_events(
        self, connection: ExternalConnection, window_start: datetime, window_end: datetime
    ) -> List[SyncedEvent]:
        """
        Fetch and normalize events from a single connection.

        All-day and zero-length events are dropped. Any unexpected failure is wrapped in a
        ProviderFetchError carrying the connection id.
        """
        try:
            access_token = await self.refresher.get_access_token(connection)
            provider = self.providers.get(connection.provider)
            raw_events = await provider.list_events(connection, access_token, window_start, window_end)

            events: List[SyncedEvent] = []
            for raw in raw_events:
                event = provider.normalize_event(raw, connection)
                if event is None:
                    continue
                if event.end <= event.start:
                    logger.debug(f"Skipping zero-length event {event.external_event_id} on connection {connection.id}")
                    continue
                if event.start < window_end and event.end > window_start:
                    events.append(event)
            return events
        except (ProviderFetchError, AuthRefreshError):
            raise
        except Exception as e:
            logger.exception(f"Unexpected error fetching events for connection {connection.id}: {e}")
            raise ProviderFetchError(connection.id, f"Unexpected error: {e}")


def validate_window(window_start: datetime, window_end: datetime) -> tuple[datetime, datetime]:
    try:
        start = ensure_utc(window_start)
        end = ensure_utc(window_end)
    except ValueError as e:
        raise ValidationError(str(e), field="window")
    if start is None or end is None or start >= end:
        raise ValidationError("Window start must be before window end", field="window")
    return start, end
