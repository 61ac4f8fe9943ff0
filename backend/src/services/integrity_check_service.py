"""
Data integrity checks for calendar sync state.

Each check returns a row with a pass/warn/fail status, the number of
offending records and a human-readable detail.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from core.constants import BLOCKED_TIME_CLIENT_ID, BLOCKED_TIME_TYPE, EXTERNAL_EVENT_TYPE
from models import Appointment, AvailabilitySyncStatus, ExternalConnection, ExternalEventMapping, SyncConflict
from models.appointment import INACTIVE_STATUSES
from services.conflict_detector import ConflictDetector, TimeInterval
from services.connection_service import CIRCUIT_OPEN
from utils.datetime_utils import utc_now

logger = logging.getLogger(__name__)

PASS = "pass"
WARN = "warn"
FAIL = "fail"


@dataclass(frozen=True)
class IntegrityCheck:
    name: str
    status: str
    count: int
    detail: str

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "status": self.status, "count": self.count, "detail": self.detail}


def _check(name: str, count: int, ok: str, problem: str, severity: str = WARN) -> IntegrityCheck:
    if count == 0:
        return IntegrityCheck(name, PASS, 0, ok)
    return IntegrityCheck(name, severity, count, problem.format(count=count))


def check_overlapping_appointments(db: Session, detector: Optional[ConflictDetector] = None) -> IntegrityCheck:
    """Blocking appointments of the same clinician that overlap and are not conflict exempt."""
    detector = detector or ConflictDetector()
    stmt = select(Appointment).where(
        Appointment.status.not_in(INACTIVE_STATUSES),
        Appointment.conflict_exempt.is_(False),
        Appointment.type != EXTERNAL_EVENT_TYPE,
    )
    by_clinician: Dict[str, List[TimeInterval]] = defaultdict(list)
    for appointment in db.scalars(stmt):
        by_clinician[appointment.clinician_id].append(TimeInterval.from_appointment(appointment))

    count = sum(len(detector.find_overlapping_pairs(intervals)) for intervals in by_clinician.values())
    return _check(
        "overlapping_appointments",
        count,
        "No overlapping blocking appointments",
        "{count} overlapping pair(s) of blocking appointments",
        FAIL,
    )


def check_placeholder_client(db: Session) -> IntegrityCheck:
    """The blocked-time placeholder client must only appear on blocked time."""
    count = db.scalar(
        select(func.count())
        .select_from(Appointment)
        .where(Appointment.client_id == BLOCKED_TIME_CLIENT_ID, Appointment.type != BLOCKED_TIME_TYPE)
    ) or 0
    return _check(
        "placeholder_client_leak",
        count,
        "Placeholder client only used for blocked time",
        "{count} appointment(s) use the blocked-time placeholder client",
        FAIL,
    )


def check_expired_tokens(db: Session, now: Optional[datetime] = None) -> IntegrityCheck:
    now = now or utc_now()
    count = db.scalar(
        select(func.count())
        .select_from(ExternalConnection)
        .where(ExternalConnection.is_active.is_(True), ExternalConnection.token_expires_at < now)
    ) or 0
    return _check(
        "expired_tokens",
        count,
        "No active connection holds an expired token",
        "{count} active connection(s) hold an expired access token",
    )


def check_orphaned_mappings(db: Session) -> IntegrityCheck:
    stmt = (
        select(func.count())
        .select_from(ExternalEventMapping)
        .outerjoin(Appointment, ExternalEventMapping.appointment_id == Appointment.id)
        .where(Appointment.id.is_(None))
    )
    count = db.scalar(stmt) or 0
    return _check(
        "orphaned_mappings",
        count,
        "Every event mapping points at an existing appointment",
        "{count} event mapping(s) point at missing appointments",
        FAIL,
    )


def check_open_circuits(db: Session) -> IntegrityCheck:
    count = db.scalar(
        select(func.count())
        .select_from(ExternalConnection)
        .where(ExternalConnection.is_active.is_(True), ExternalConnection.circuit_breaker_state == CIRCUIT_OPEN)
    ) or 0
    return _check("open_circuits", count, "No open circuit breakers", "{count} connection(s) have an open circuit")


def check_unresolved_conflicts(db: Session) -> IntegrityCheck:
    count = db.scalar(select(func.count()).select_from(SyncConflict).where(SyncConflict.resolved.is_(False))) or 0
    return _check("unresolved_conflicts", count, "No unresolved sync conflicts", "{count} unresolved sync conflict(s)")


def check_failed_availability(db: Session) -> IntegrityCheck:
    count = db.scalar(
        select(func.count()).select_from(AvailabilitySyncStatus).where(AvailabilitySyncStatus.sync_status == "failed")
    ) or 0
    return _check(
        "failed_availability_sync",
        count,
        "No availability slots stuck in failed",
        "{count} availability slot sync(s) failed and await manual retry",
    )


def run_integrity_checks(db: Session, now: Optional[datetime] = None) -> List[IntegrityCheck]:
    """Run every integrity check and return one row per check."""
    results = [
        check_overlapping_appointments(db),
        check_placeholder_client(db),
        check_expired_tokens(db, now),
        check_orphaned_mappings(db),
        check_open_circuits(db),
        check_unresolved_conflicts(db),
        check_failed_availability(db),
    ]
    failing = [r.name for r in results if r.status != PASS]
    if failing:
        logger.warning(f"Integrity checks reporting problems: {', '.join(failing)}")
    return results
