# Package initialization
# Import all models to ensure relationships are properly established
from .appointment import Appointment
from .external_connection import ExternalConnection
from .external_event_mapping import ExternalEventMapping
from .recurring_availability import RecurringAvailabilitySlot, AvailabilitySyncStatus
from .sync_conflict import SyncConflict

__all__ = [
    "Appointment",
    "ExternalConnection",
    "ExternalEventMapping",
    "RecurringAvailabilitySlot",
    "AvailabilitySyncStatus",
    "SyncConflict",
]
