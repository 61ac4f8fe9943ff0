"""
Local appointment store accessor.

Reads and writes appointment rows scoped to a clinician and a time window,
validating input and refusing writes that would overlap a blocking
appointment unless the caller explicitly overrides the check.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from core.constants import BLOCKED_TIME_CLIENT_ID, BLOCKED_TIME_TYPE
from core.errors import ConflictDetected, ValidationError
from models import Appointment
from models.appointment import APPOINTMENT_STATUSES, INACTIVE_STATUSES
from services.conflict_detector import Conflict, ConflictDetector, IntervalKind, TimeInterval
from utils.datetime_utils import ensure_utc, get_zone

logger = logging.getLogger(__name__)

_EDITABLE_FIELDS = {
    "client_id",
    "client_first_name",
    "client_last_name",
    "client_email",
    "client_phone",
    "title",
    "start_at",
    "end_at",
    "timezone",
    "type",
    "status",
    "notes",
    "recurring_group_id",
    "conflict_exempt",
}


class AppointmentStore:
    """Persistence access for appointments."""

    def __init__(self, db: Session, detector: Optional[ConflictDetector] = None) -> None:
        self.db = db
        self.detector = detector or ConflictDetector()

    def get(self, appointment_id: str) -> Optional[Appointment]:
        return self.db.get(Appointment, appointment_id)

    def list_in_window(
        self,
        clinician_id: str,
        window_start: datetime,
        window_end: datetime,
        statuses: Optional[Iterable[str]] = None,
        types: Optional[Iterable[str]] = None,
    ) -> List[Appointment]:
        """
        List a clinician's appointments overlapping [window_start, window_end).

        Args:
            clinician_id: Owning clinician
            window_start: Window start (aware)
            window_end: Window end (aware)
            statuses: Optional status filter
            types: Optional appointment type filter
        """
        start = self._require_aware(window_start, "window_start")
        end = self._require_aware(window_end, "window_end")
        stmt = (
            select(Appointment)
            .where(
                Appointment.clinician_id == clinician_id,
                Appointment.start_at < end,
                Appointment.end_at > start,
            )
            .order_by(Appointment.start_at)
        )
        if statuses is not None:
            stmt = stmt.where(Appointment.status.in_(list(statuses)))
        if types is not None:
            stmt = stmt.where(Appointment.type.in_(list(types)))
        return list(self.db.scalars(stmt))

    def list_for_clinician(self, clinician_id: str) -> List[Appointment]:
        stmt = select(Appointment).where(Appointment.clinician_id == clinician_id).order_by(Appointment.start_at)
        return list(self.db.scalars(stmt))

    def list_blocking(self, clinician_id: str, window_start: datetime, window_end: datetime) -> List[Appointment]:
        """Appointments in the window that the blocking policy treats as occupying time."""
        return [
            appointment
            for appointment in self.list_in_window(clinician_id, window_start, window_end)
            if not appointment.conflict_exempt
            and self.detector.policy.is_blocking(TimeInterval.from_appointment(appointment))
        ]

    def check_conflicts(
        self,
        clinician_id: str,
        start_at: datetime,
        end_at: datetime,
        exclude_id: Optional[str] = None,
        extra_candidates: Iterable[TimeInterval] = (),
    ) -> List[Conflict]:
        """Every conflict a proposed interval would have with stored blocking rows and extra candidates."""
        proposed = TimeInterval(start=start_at, end=end_at, kind=IntervalKind.PROPOSED.value, source_id=exclude_id)
        candidates = [TimeInterval.from_appointment(a) for a in self.list_blocking(clinician_id, start_at, end_at)]
        candidates.extend(extra_candidates)
        return self.detector.find_all_conflicts(proposed, candidates)

    def create(self, data: Dict[str, Any], allow_conflict: bool = False) -> Appointment:
        """
        Create an appointment.

        Raises:
            ValidationError: Missing or malformed fields
            ConflictDetected: The interval overlaps a blocking appointment
        """
        if not data.get("clinician_id"):
            raise ValidationError("clinician_id is required", field="clinician_id")
        unknown = set(data) - _EDITABLE_FIELDS - {"clinician_id", "id"}
        if unknown:
            raise ValidationError(f"Unknown appointment fields: {', '.join(sorted(unknown))}")

        values = {
            "timezone": "UTC",
            "type": "appointment",
            "status": "scheduled",
            "conflict_exempt": False,
            **data,
        }
        self._validate(values)

        appointment = Appointment(**values)
        self._guard_conflicts(appointment, allow_conflict)
        self.db.add(appointment)
        self.db.commit()
        logger.info(f"Created appointment {appointment.id} for clinician {appointment.clinician_id}")
        return appointment

    def update(self, appointment: Appointment, allow_conflict: bool = False, **changes: Any) -> Appointment:
        """
        Apply changes to an appointment.

        Raises:
            ValidationError: Unknown fields or malformed values
            ConflictDetected: The new interval overlaps a blocking appointment
        """
        unknown = set(changes) - _EDITABLE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown appointment fields: {', '.join(sorted(unknown))}")

        current = {name: getattr(appointment, name) for name in _EDITABLE_FIELDS}
        current.update(changes)
        self._validate(current)

        for name, value in changes.items():
            setattr(appointment, name, current[name] if name in ("start_at", "end_at") else value)

        timing_changed = bool({"start_at", "end_at", "status", "conflict_exempt", "type"} & set(changes))
        if timing_changed:
            try:
                self._guard_conflicts(appointment, allow_conflict)
            except ConflictDetected:
                self.db.rollback()
                raise
        self.db.commit()
        return appointment

    def cancel(self, appointment: Appointment, reason: Optional[str] = None) -> Appointment:
        appointment.status = "cancelled"
        if reason:
            appointment.notes = f"{appointment.notes or ''}\nCancelled: {reason}".strip()
        self.db.commit()
        logger.info(f"Cancelled appointment {appointment.id}")
        return appointment

    def create_blocked_time(
        self,
        clinician_id: str,
        start_at: datetime,
        end_at: datetime,
        label: str = "Unavailable",
        timezone: str = "UTC",
        allow_conflict: bool = False,
    ) -> Appointment:
        """Block an interval on the clinician's calendar using the placeholder client."""
        return self.create(
            {
                "clinician_id": clinician_id,
                "client_id": BLOCKED_TIME_CLIENT_ID,
                "start_at": start_at,
                "end_at": end_at,
                "timezone": timezone,
                "type": BLOCKED_TIME_TYPE,
                "status": "scheduled",
                "title": label,
                "notes": f"Blocked time: {label}",
            },
            allow_conflict=allow_conflict,
        )

    def _guard_conflicts(self, appointment: Appointment, allow_conflict: bool) -> None:
        if allow_conflict or appointment.conflict_exempt:
            return
        if appointment.status in INACTIVE_STATUSES:
            return
        proposed = TimeInterval.from_appointment(appointment)
        if not self.detector.policy.is_blocking(proposed):
            return
        candidates = [
            TimeInterval.from_appointment(a)
            for a in self.list_blocking(appointment.clinician_id, appointment.start_at, appointment.end_at)
        ]
        result = self.detector.has_conflict(proposed, candidates)
        if result.conflict:
            logger.info(f"Rejected write for clinician {appointment.clinician_id}: overlaps {result.with_}")
            raise ConflictDetected(result)

    def _validate(self, values: Dict[str, Any]) -> None:
        start = self._require_aware(values.get("start_at"), "start_at")
        end = self._require_aware(values.get("end_at"), "end_at")
        if end <= start:
            raise ValidationError("End time must be after start time", field="end_at")
        values["start_at"] = start
        values["end_at"] = end

        if values.get("status") not in APPOINTMENT_STATUSES:
            raise ValidationError(f"Invalid status: {values.get('status')}", field="status")
        if not values.get("type"):
            raise ValidationError("Appointment type is required", field="type")
        try:
            get_zone(values.get("timezone") or "UTC")
        except ValueError as e:
            raise ValidationError(str(e), field="timezone")

    @staticmethod
    def _require_aware(value: Any, field_name: str) -> datetime:
        if not isinstance(value, datetime):
            raise ValidationError(f"{field_name} is required", field=field_name)
        try:
            aware = ensure_utc(value)
        except ValueError as e:
            raise ValidationError(str(e), field=field_name)
        assert aware is not None
        return aware
