"""
Services package for calendar sync business logic.

This package contains the service classes shared by the HTTP API and the
background scheduler.
"""

from .appointment_store import AppointmentStore
from .availability_reconciler import AvailabilityReconciler
from .calendar_sync_service import CalendarSyncService
from .conflict_detector import ConflictDetector
from .connection_service import ConnectionService
from .event_fetcher import EventFetcher
from .token_refresher import TokenRefresher

__all__ = [
    "AppointmentStore",
    "AvailabilityReconciler",
    "CalendarSyncService",
    "ConflictDetector",
    "ConnectionService",
    "EventFetcher",
    "TokenRefresher",
]
