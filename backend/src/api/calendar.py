"""
Calendar API endpoints (v1).

Provides calendar sync functionality including:
- Appointment listing, creation and conflict checks
- Blocked time
- Recurring availability and its external sync status
- External event retrieval and two-way sync
- Sync conflict review and resolution
- Import/export in ICS, CSV and JSON
- Integrity report

All endpoints require the X-API-Key header.
"""

import logging
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Request, Response, UploadFile, status
from pydantic import BaseModel
from sqlalchemy.orm import Session

from api.responses import (
    AppointmentListResponse,
    AppointmentResponse,
    ConflictCheckResponse,
    ConflictResponse,
    DirectionCountsResponse,
    ErrorEntryResponse,
    EventsResponse,
    ExpandedAvailabilityResponse,
    ExternalEventResponse,
    ImportResultResponse,
    IntegrityCheckResponse,
    IntegrityReportResponse,
    IntervalResponse,
    SlotResponse,
    SyncConflictListResponse,
    SyncConflictResponse,
    SyncStatusResponse,
    SyncSummaryResponse,
    WeeklyAvailabilityResponse,
)
from auth.dependencies import require_api_key
from core.config import DEFAULT_PRACTICE_TIMEZONE
from core.database import get_db
from core.errors import ValidationError
from models import Appointment, AvailabilitySyncStatus, RecurringAvailabilitySlot, SyncConflict
from services import (
    AppointmentStore,
    AvailabilityReconciler,
    CalendarSyncService,
    ConnectionService,
    EventFetcher,
    TokenRefresher,
)
from services.calendar_providers import ProviderRegistry, SyncedEvent
from services.conflict_detector import IntervalKind, TimeInterval
from services.import_export_service import (
    CalendarFormat,
    ImportExportOptions,
    export_data,
    import_data,
    media_type,
    persist_imported,
)
from services.integrity_check_service import PASS, run_integrity_checks
from utils.datetime_utils import parse_iso_datetime, parse_time_string

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(require_api_key)])


# Request Models

class AppointmentCreateRequest(BaseModel):
    """Request model for creating an appointment."""
    clinician_id: str
    start_at: datetime
    end_at: datetime
    client_id: Optional[str] = None
    client_first_name: Optional[str] = None
    client_last_name: Optional[str] = None
    client_email: Optional[str] = None
    client_phone: Optional[str] = None
    title: Optional[str] = None
    timezone: str = "UTC"
    type: str = "appointment"
    status: str = "scheduled"
    notes: Optional[str] = None
    conflict_exempt: bool = False
    allow_conflict: bool = False  # Explicit override of the overlap check


class ConflictCheckRequest(BaseModel):
    """Request model for checking a proposed interval."""
    clinician_id: str
    start_at: datetime
    end_at: datetime
    exclude_appointment_id: Optional[str] = None
    include_external: bool = False
    suggest_alternatives: bool = False
    timezone: Optional[str] = None


class BlockedTimeRequest(BaseModel):
    """Request model for blocking time on a clinician's calendar."""
    clinician_id: str
    start_at: datetime
    end_at: datetime
    label: str = "Unavailable"
    timezone: str = "UTC"
    allow_conflict: bool = False


class SlotRequest(BaseModel):
    """Request model for creating or editing a recurring availability slot."""
    clinician_id: str
    start_time: str  # Format: "HH:MM"
    end_time: str    # Format: "HH:MM"
    timezone: Optional[str] = None


class SyncRequest(BaseModel):
    """Request model for a two-way sync run."""
    clinician_id: str
    start: datetime
    end: datetime


class ResolveConflictRequest(BaseModel):
    """Request model for resolving a sync conflict."""
    strategy: str
    data: Optional[Dict[str, Any]] = None  # Appointment fields for 'manual'


class ExportRequest(BaseModel):
    """Request model for exporting appointments."""
    clinician_id: str
    format: CalendarFormat
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    appointment_types: Optional[List[str]] = None
    include_client_info: bool = False
    include_notes: bool = False
    include_cancelled: bool = False


# Dependencies

def get_providers(request: Request) -> ProviderRegistry:
    providers = getattr(request.app.state, "providers", None)
    return providers or ProviderRegistry()


def _refresher(db: Session, providers: ProviderRegistry) -> TokenRefresher:
    return TokenRefresher(ConnectionService(db), providers)


# Serialization helpers

def _appointment_response(appointment: Appointment) -> AppointmentResponse:
    return AppointmentResponse(
        id=appointment.id,
        clinician_id=appointment.clinician_id,
        client_id=appointment.client_id,
        client_name=appointment.client_name,
        title=appointment.title,
        start_at=appointment.start_at,
        end_at=appointment.end_at,
        timezone=appointment.timezone,
        type=appointment.type,
        status=appointment.status,
        notes=appointment.notes,
        conflict_exempt=appointment.conflict_exempt,
    )


def _interval_response(interval: TimeInterval) -> IntervalResponse:
    return IntervalResponse(
        start=interval.start,
        end=interval.end,
        kind=interval.kind,
        source_id=interval.source_id,
        status=interval.status,
        label=interval.label,
    )


def _status_response(row: AvailabilitySyncStatus) -> SyncStatusResponse:
    return SyncStatusResponse(
        id=row.id,
        slot_id=row.slot_id,
        connection_id=row.connection_id,
        sync_status=row.sync_status,
        pending_action=row.pending_action,
        external_event_id=row.external_event_id,
        last_error=row.last_error,
        last_synced_at=row.last_synced_at,
    )


def _slot_response(slot: RecurringAvailabilitySlot) -> SlotResponse:
    return SlotResponse(
        id=slot.id,
        clinician_id=slot.clinician_id,
        day_of_week=slot.day_of_week,
        slot_number=slot.slot_number,
        start_time=slot.start_time.strftime("%H:%M"),
        end_time=slot.end_time.strftime("%H:%M"),
        timezone=slot.timezone,
        is_active=slot.is_active,
        sync_statuses=[_status_response(row) for row in slot.sync_statuses],
    )


def _event_response(event: SyncedEvent) -> ExternalEventResponse:
    return ExternalEventResponse(
        connection_id=event.connection_id,
        external_event_id=event.external_event_id,
        calendar_id=event.calendar_id,
        provider=event.provider,
        title=event.title,
        description=event.description,
        location=event.location,
        start=event.start,
        end=event.end,
        start_timezone=event.start_timezone,
        end_timezone=event.end_timezone,
        status=event.status,
        participants=list(event.participants),
        updated_at=event.updated_at,
    )


def _conflict_record_response(conflict: SyncConflict) -> SyncConflictResponse:
    return SyncConflictResponse(
        id=conflict.id,
        connection_id=conflict.connection_id,
        local_appointment_id=conflict.local_appointment_id,
        external_event_id=conflict.external_event_id,
        conflict_type=conflict.conflict_type,
        local_data=conflict.local_data,
        external_data=conflict.external_data,
        resolution_strategy=conflict.resolution_strategy,
        resolved=conflict.resolved,
        resolved_at=conflict.resolved_at,
        created_at=conflict.created_at,
    )


def _slot_time(value: str, field_name: str):
    try:
        return parse_time_string(value)
    except ValueError as e:
        raise ValidationError(str(e), field=field_name)


# Appointments

@router.get("/appointments", summary="List appointments in a window", response_model=AppointmentListResponse)
async def list_appointments(
    clinician_id: str = Query(...),
    start: datetime = Query(...),
    end: datetime = Query(...),
    statuses: Optional[List[str]] = Query(None, alias="status"),
    db: Session = Depends(get_db),
) -> AppointmentListResponse:
    store = AppointmentStore(db)
    appointments = store.list_in_window(clinician_id, start, end, statuses=statuses)
    return AppointmentListResponse(appointments=[_appointment_response(a) for a in appointments])


@router.post(
    "/appointments",
    summary="Create an appointment",
    response_model=AppointmentResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_appointment(
    request: AppointmentCreateRequest,
    db: Session = Depends(get_db),
) -> AppointmentResponse:
    data = request.model_dump(exclude={"allow_conflict"})
    appointment = AppointmentStore(db).create(data, allow_conflict=request.allow_conflict)
    return _appointment_response(appointment)


@router.post(
    "/appointments/check-conflicts",
    summary="Check a proposed interval for conflicts",
    response_model=ConflictCheckResponse,
)
async def check_conflicts(
    request: ConflictCheckRequest,
    http_request: Request,
    db: Session = Depends(get_db),
) -> ConflictCheckResponse:
    """
    Check a proposed interval against stored blocking appointments and,
    optionally, the clinician's external calendar events.

    External fetch failures are reported in `errors`; the check still runs
    against whatever was retrieved.
    """
    store = AppointmentStore(db)
    providers = get_providers(http_request)

    external: List[TimeInterval] = []
    errors: List[ErrorEntryResponse] = []
    if request.include_external:
        connections = ConnectionService(db)
        fetcher = EventFetcher(connections, _refresher(db, providers), providers)
        fetched = await fetcher.fetch_events(request.clinician_id, request.start_at, request.end_at)
        external = [TimeInterval.from_synced_event(e) for e in fetched.events]
        errors = [ErrorEntryResponse(**e.to_dict()) for e in fetched.errors]

    conflicts = store.check_conflicts(
        request.clinician_id,
        request.start_at,
        request.end_at,
        exclude_id=request.exclude_appointment_id,
        extra_candidates=external,
    )

    suggestions: List[IntervalResponse] = []
    if conflicts and request.suggest_alternatives:
        proposed = TimeInterval(
            start=request.start_at,
            end=request.end_at,
            kind=IntervalKind.PROPOSED.value,
            source_id=request.exclude_appointment_id,
        )
        nearby = [
            TimeInterval.from_appointment(a)
            for a in store.list_blocking(
                request.clinician_id, request.start_at - timedelta(days=1), request.end_at + timedelta(days=2)
            )
        ]
        found = store.detector.suggest_alternative_times(
            proposed, nearby + external, request.timezone or DEFAULT_PRACTICE_TIMEZONE
        )
        suggestions = [_interval_response(s) for s in found]

    return ConflictCheckResponse(
        conflict=bool(conflicts),
        conflicts=[
            ConflictResponse(
                conflict_type=c.conflict_type.value,
                overlap_minutes=c.overlap_minutes,
                candidate=_interval_response(c.candidate),
            )
            for c in conflicts
        ],
        suggestions=suggestions,
        errors=errors,
    )


@router.post(
    "/blocked-time",
    summary="Block time on a clinician's calendar",
    response_model=AppointmentResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_blocked_time(
    request: BlockedTimeRequest,
    db: Session = Depends(get_db),
) -> AppointmentResponse:
    appointment = AppointmentStore(db).create_blocked_time(
        request.clinician_id,
        request.start_at,
        request.end_at,
        label=request.label,
        timezone=request.timezone,
        allow_conflict=request.allow_conflict,
    )
    return _appointment_response(appointment)


# Recurring availability

@router.get("/availability", summary="Get weekly availability", response_model=WeeklyAvailabilityResponse)
async def get_availability(
    clinician_id: str = Query(...),
    db: Session = Depends(get_db),
) -> WeeklyAvailabilityResponse:
    weekly = AvailabilityReconciler(db).get_weekly_availability(clinician_id)
    return WeeklyAvailabilityResponse(
        **{day: [_slot_response(slot) for slot in slots] for day, slots in weekly.items()}
    )


@router.get(
    "/availability/expand",
    summary="Expand availability into concrete intervals",
    response_model=ExpandedAvailabilityResponse,
)
async def expand_availability(
    clinician_id: str = Query(...),
    start_date: date = Query(...),
    end_date: date = Query(...),
    db: Session = Depends(get_db),
) -> ExpandedAvailabilityResponse:
    intervals = AvailabilityReconciler(db).expand(clinician_id, start_date, end_date)
    return ExpandedAvailabilityResponse(intervals=[_interval_response(i) for i in intervals])


@router.put(
    "/availability/{day_of_week}/{slot_number}",
    summary="Create or edit a recurring availability slot",
    response_model=SlotResponse,
)
async def upsert_slot(
    day_of_week: str,
    slot_number: int,
    request: SlotRequest,
    db: Session = Depends(get_db),
) -> SlotResponse:
    slot = AvailabilityReconciler(db).upsert_slot(
        request.clinician_id,
        day_of_week,
        slot_number,
        _slot_time(request.start_time, "start_time"),
        _slot_time(request.end_time, "end_time"),
        request.timezone,
    )
    return _slot_response(slot)


@router.delete(
    "/availability/{day_of_week}/{slot_number}",
    summary="Remove a recurring availability slot",
    response_model=SlotResponse,
)
async def remove_slot(
    day_of_week: str,
    slot_number: int,
    clinician_id: str = Query(...),
    db: Session = Depends(get_db),
) -> SlotResponse:
    slot = AvailabilityReconciler(db).remove_slot(clinician_id, day_of_week, slot_number)
    return _slot_response(slot)


def _get_status_or_404(reconciler: AvailabilityReconciler, status_id: str) -> AvailabilitySyncStatus:
    row = reconciler.get_status(status_id)
    if row is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Sync status not found",
        )
    return row


@router.post(
    "/availability/sync-status/{status_id}/retry",
    summary="Retry a failed availability push",
    response_model=SyncStatusResponse,
)
async def retry_sync_status(status_id: str, db: Session = Depends(get_db)) -> SyncStatusResponse:
    reconciler = AvailabilityReconciler(db)
    row = reconciler.retry(_get_status_or_404(reconciler, status_id))
    return _status_response(row)


@router.post(
    "/availability/sync-status/{status_id}/resolve",
    summary="Resolve an availability sync conflict",
    response_model=SyncStatusResponse,
)
async def resolve_sync_status(status_id: str, db: Session = Depends(get_db)) -> SyncStatusResponse:
    reconciler = AvailabilityReconciler(db)
    row = reconciler.resolve_conflict(_get_status_or_404(reconciler, status_id))
    return _status_response(row)


# External events and sync

@router.get("/events", summary="Fetch external calendar events", response_model=EventsResponse)
async def get_events(
    http_request: Request,
    user_id: str = Query(...),
    start: datetime = Query(...),
    end: datetime = Query(...),
    db: Session = Depends(get_db),
) -> EventsResponse:
    providers = get_providers(http_request)
    fetcher = EventFetcher(ConnectionService(db), _refresher(db, providers), providers)
    result = await fetcher.fetch_events(user_id, start, end)
    return EventsResponse(
        events=[_event_response(e) for e in result.events],
        errors=[ErrorEntryResponse(**e.to_dict()) for e in result.errors],
        succeeded_connection_ids=result.succeeded_connection_ids,
        reconnect_required=result.reconnect_required,
    )


@router.post("/sync", summary="Run a two-way calendar sync", response_model=SyncSummaryResponse)
async def run_sync(
    request: SyncRequest,
    http_request: Request,
    db: Session = Depends(get_db),
) -> SyncSummaryResponse:
    service = CalendarSyncService(db, providers=get_providers(http_request))
    summary = await service.sync_bidirectional(request.clinician_id, request.start, request.end)
    data = summary.to_dict()
    return SyncSummaryResponse(
        inbound=DirectionCountsResponse(**data["inbound"]),
        outbound=DirectionCountsResponse(**data["outbound"]),
        conflicts=data["conflicts"],
        errors=[ErrorEntryResponse(**e) for e in data["errors"]],
        synced_connection_ids=data["synced_connection_ids"],
        skipped_connection_ids=data["skipped_connection_ids"],
    )


@router.get("/conflicts", summary="List sync conflicts", response_model=SyncConflictListResponse)
async def list_conflicts(
    http_request: Request,
    clinician_id: str = Query(...),
    include_resolved: bool = Query(False),
    db: Session = Depends(get_db),
) -> SyncConflictListResponse:
    service = CalendarSyncService(db, providers=get_providers(http_request))
    conflicts = service.list_conflicts(clinician_id, include_resolved=include_resolved)
    return SyncConflictListResponse(conflicts=[_conflict_record_response(c) for c in conflicts])


@router.post(
    "/conflicts/{conflict_id}/resolve",
    summary="Resolve a sync conflict",
    response_model=SyncConflictResponse,
)
async def resolve_conflict(
    conflict_id: str,
    request: ResolveConflictRequest,
    http_request: Request,
    db: Session = Depends(get_db),
) -> SyncConflictResponse:
    service = CalendarSyncService(db, providers=get_providers(http_request))
    conflict = service.get_conflict(conflict_id)
    if conflict is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Conflict not found",
        )

    manual_data = dict(request.data or {})
    for key in ("start_at", "end_at"):
        if isinstance(manual_data.get(key), str):
            try:
                manual_data[key] = parse_iso_datetime(manual_data[key])
            except ValueError as e:
                raise ValidationError(str(e), field=key)

    resolved = service.resolve(conflict, request.strategy, manual_data or None)
    return _conflict_record_response(resolved)


# Import / export

@router.post("/export", summary="Export appointments")
async def export_appointments(
    request: ExportRequest,
    db: Session = Depends(get_db),
) -> Response:
    date_range = (request.start, request.end) if request.start and request.end else None
    options = ImportExportOptions(
        format=request.format,
        date_range=date_range,
        appointment_types=request.appointment_types,
        include_client_info=request.include_client_info,
        include_notes=request.include_notes,
        include_cancelled=request.include_cancelled,
    )
    appointments = AppointmentStore(db).list_for_clinician(request.clinician_id)
    result = export_data(appointments, options)
    return Response(
        content=result.content,
        media_type=media_type(result.format),
        headers={
            "Content-Disposition": f'attachment; filename="{result.file_name}"',
            "X-Event-Count": str(result.event_count),
        },
    )


@router.post("/import", summary="Import appointments from a file", response_model=ImportResultResponse)
async def import_appointments(
    file: UploadFile = File(...),
    clinician_id: str = Form(...),
    format: Optional[CalendarFormat] = Form(None),
    start: Optional[datetime] = Form(None),
    end: Optional[datetime] = Form(None),
    persist: bool = Form(False),
    allow_conflict: bool = Form(False),
    db: Session = Depends(get_db),
) -> ImportResultResponse:
    """
    Parse an uploaded file. With `persist`, imported records are also
    created as appointments for the clinician.
    """
    raw = await file.read()
    try:
        content = raw.decode("utf-8-sig")
    except UnicodeDecodeError:
        raise ValidationError("Import file must be UTF-8 text", field="file")

    date_range = (start, end) if start and end else None
    options = ImportExportOptions(format=format, date_range=date_range)
    result = import_data(content, file.filename or "", options)

    created_ids: List[str] = []
    persist_errors: List[Dict[str, Any]] = []
    if persist:
        persisted = persist_imported(AppointmentStore(db), clinician_id, result, allow_conflict=allow_conflict)
        created_ids = [a.id for a in persisted.created]
        persist_errors = persisted.errors

    data = result.to_dict()
    return ImportResultResponse(
        total_events=data["total_events"],
        imported_events=data["imported_events"],
        skipped_events=data["skipped_events"],
        imported_data=data["imported_data"],
        errors=[ErrorEntryResponse(**e) for e in data["errors"]],
        summary=data["summary"],
        created_appointment_ids=created_ids,
        persist_errors=persist_errors,
    )


# Integrity

@router.get("/integrity", summary="Run data integrity checks", response_model=IntegrityReportResponse)
async def integrity_report(db: Session = Depends(get_db)) -> IntegrityReportResponse:
    checks = run_integrity_checks(db)
    return IntegrityReportResponse(
        checks=[IntegrityCheckResponse(**c.to_dict()) for c in checks],
        healthy=all(c.status == PASS for c in checks),
    )
