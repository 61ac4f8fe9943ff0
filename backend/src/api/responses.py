"""
Shared response models for API endpoints.

This module contains Pydantic response models for the calendar sync API
to keep serialization consistent across endpoints.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel


class ErrorEntryResponse(BaseModel):
    """A tagged error collected during a multi-part operation."""
    kind: str
    message: str
    connection_id: Optional[str] = None
    direction: Optional[str] = None
    status_code: Optional[int] = None
    reconnect_required: Optional[bool] = None
    user_message: Optional[str] = None
    index: Optional[int] = None
    record: Optional[Any] = None
    field: Optional[str] = None


class AppointmentResponse(BaseModel):
    """Response model for an appointment."""
    id: str
    clinician_id: str
    client_id: Optional[str] = None
    client_name: Optional[str] = None
    title: Optional[str] = None
    start_at: datetime
    end_at: datetime
    timezone: str
    type: str
    status: str
    notes: Optional[str] = None
    conflict_exempt: bool


class AppointmentListResponse(BaseModel):
    """Response model for listing appointments."""
    appointments: List[AppointmentResponse]


class IntervalResponse(BaseModel):
    """An absolute time interval."""
    start: datetime
    end: datetime
    kind: str
    source_id: Optional[str] = None
    status: Optional[str] = None
    label: Optional[str] = None


class ConflictResponse(BaseModel):
    """One conflicting candidate for a proposed interval."""
    conflict_type: str
    overlap_minutes: float
    candidate: IntervalResponse


class ConflictCheckResponse(BaseModel):
    """Response model for a conflict check."""
    conflict: bool
    conflicts: List[ConflictResponse]
    suggestions: List[IntervalResponse] = []
    errors: List[ErrorEntryResponse] = []


class SlotResponse(BaseModel):
    """Response model for a recurring availability slot."""
    id: str
    clinician_id: str
    day_of_week: str
    slot_number: int
    start_time: str  # Format: "HH:MM"
    end_time: str    # Format: "HH:MM"
    timezone: str
    is_active: bool
    sync_statuses: List["SyncStatusResponse"] = []


class WeeklyAvailabilityResponse(BaseModel):
    """Active slots grouped by day of week."""
    monday: List[SlotResponse]
    tuesday: List[SlotResponse]
    wednesday: List[SlotResponse]
    thursday: List[SlotResponse]
    friday: List[SlotResponse]
    saturday: List[SlotResponse]
    sunday: List[SlotResponse]


class SyncStatusResponse(BaseModel):
    """Sync state of one slot against one connection."""
    id: str
    slot_id: str
    connection_id: Optional[str] = None
    sync_status: str
    pending_action: str
    external_event_id: Optional[str] = None
    last_error: Optional[str] = None
    last_synced_at: Optional[datetime] = None


class ExpandedAvailabilityResponse(BaseModel):
    """Concrete availability intervals for a date range."""
    intervals: List[IntervalResponse]


class ExternalEventResponse(BaseModel):
    """Normalized external calendar event."""
    connection_id: str
    external_event_id: str
    calendar_id: Optional[str] = None
    provider: Optional[str] = None
    title: str
    description: str
    location: str
    start: datetime
    end: datetime
    start_timezone: Optional[str] = None
    end_timezone: Optional[str] = None
    status: str
    participants: List[str]
    updated_at: Optional[datetime] = None


class EventsResponse(BaseModel):
    """Response model for an external event fetch with partial failures."""
    events: List[ExternalEventResponse]
    errors: List[ErrorEntryResponse]
    succeeded_connection_ids: List[str]
    reconnect_required: bool


class DirectionCountsResponse(BaseModel):
    created: int
    updated: int
    deleted: int


class SyncConflictResponse(BaseModel):
    """Response model for a recorded sync conflict."""
    id: str
    connection_id: str
    local_appointment_id: Optional[str] = None
    external_event_id: Optional[str] = None
    conflict_type: str
    local_data: Optional[Dict[str, Any]] = None
    external_data: Optional[Dict[str, Any]] = None
    resolution_strategy: str
    resolved: bool
    resolved_at: Optional[datetime] = None
    created_at: datetime


class SyncConflictListResponse(BaseModel):
    conflicts: List[SyncConflictResponse]


class SyncSummaryResponse(BaseModel):
    """Response model for a two-way sync run."""
    inbound: DirectionCountsResponse
    outbound: DirectionCountsResponse
    conflicts: List[Dict[str, Any]]
    errors: List[ErrorEntryResponse]
    synced_connection_ids: List[str]
    skipped_connection_ids: List[str]


class ImportResultResponse(BaseModel):
    """Response model for an import."""
    total_events: int
    imported_events: int
    skipped_events: int
    imported_data: List[Dict[str, Any]]
    errors: List[ErrorEntryResponse]
    summary: str
    created_appointment_ids: List[str] = []
    persist_errors: List[Dict[str, Any]] = []


class IntegrityCheckResponse(BaseModel):
    name: str
    status: str  # "pass", "warn" or "fail"
    count: int
    detail: str


class IntegrityReportResponse(BaseModel):
    """Response model for the integrity report."""
    checks: List[IntegrityCheckResponse]
    healthy: bool


SlotResponse.model_rebuild()
