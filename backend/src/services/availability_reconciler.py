"""
Recurring availability management and external sync reconciliation.

A clinician's weekly availability is stored as up to three slots per day,
each defined by local wall-clock times in an IANA zone. Slots are expanded
into concrete absolute intervals per date, and every slot tracks its sync
state against each external connection:

    pending  -> synced | failed
    synced   -> conflict | pending   (pending on local edit)
    failed   -> pending              (manual retry)
    conflict -> pending              (manual resolution only)

Failed pushes are never retried automatically.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, time, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from core.config import DEFAULT_PRACTICE_TIMEZONE
from core.constants import DAYS_OF_WEEK, MAX_AVAILABILITY_SLOTS_PER_DAY
from core.errors import AuthRefreshError, InvalidTransitionError, ProviderFetchError, ValidationError
from models import AvailabilitySyncStatus, ExternalConnection, RecurringAvailabilitySlot
from services.calendar_providers import EventPayload, ProviderRegistry, SyncedEvent
from services.conflict_detector import IntervalKind, TimeInterval
from services.token_refresher import TokenRefresher
from utils.datetime_utils import get_zone, to_zone, utc_now

logger = logging.getLogger(__name__)

_RRULE_DAYS = {
    "monday": "MO",
    "tuesday": "TU",
    "wednesday": "WE",
    "thursday": "TH",
    "friday": "FR",
    "saturday": "SA",
    "sunday": "SU",
}

ACTION_UPSERT = "upsert"
ACTION_REMOVE = "remove"


class SyncStatus(str, Enum):
    PENDING = "pending"
    SYNCED = "synced"
    FAILED = "failed"
    CONFLICT = "conflict"


ALLOWED_TRANSITIONS = {
    SyncStatus.PENDING: {SyncStatus.SYNCED, SyncStatus.FAILED},
    SyncStatus.SYNCED: {SyncStatus.CONFLICT, SyncStatus.PENDING},
    SyncStatus.FAILED: {SyncStatus.PENDING},
    SyncStatus.CONFLICT: {SyncStatus.PENDING},
}


def transition(row: AvailabilitySyncStatus, target: SyncStatus, manual: bool = False) -> None:
    """
    Move a sync status row to `target`.

    Leaving `conflict` requires `manual=True`.

    Raises:
        InvalidTransitionError: If the transition is not allowed
    """
    current = SyncStatus(row.sync_status)
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransitionError(current.value, target.value)
    if current is SyncStatus.CONFLICT and not manual:
        raise InvalidTransitionError(current.value, target.value)
    row.sync_status = target.value


def expand_slot(slot: RecurringAvailabilitySlot, start_date: date, end_date: date) -> List[TimeInterval]:
    """
    Expand a weekly slot into concrete intervals for every matching date in
    [start_date, end_date] (both inclusive).

    Wall-clock times are converted per date, so a 09:00 slot stays at 09:00
    local time on both sides of a DST change.
    """
    if end_date < start_date:
        raise ValidationError("end_date must not be before start_date", field="end_date")

    weekday = DAYS_OF_WEEK.index(slot.day_of_week)
    offset = (weekday - start_date.weekday()) % 7
    current = start_date + timedelta(days=offset)

    intervals: List[TimeInterval] = []
    while current <= end_date:
        intervals.append(
            TimeInterval.from_local(
                current,
                slot.start_time,
                slot.end_time,
                slot.timezone,
                kind=IntervalKind.AVAILABILITY.value,
                source_id=slot.id,
                label=f"{slot.day_of_week} slot {slot.slot_number}",
            )
        )
        current += timedelta(days=7)
    return intervals


def next_occurrence(slot: RecurringAvailabilitySlot, today: date) -> TimeInterval:
    return expand_slot(slot, today, today + timedelta(days=6))[0]


@dataclass
class PushSummary:
    synced: int = 0
    failed: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"synced": self.synced, "failed": self.failed, "errors": self.errors}


class AvailabilityReconciler:
    """Recurring availability slots and their per-connection sync state."""

    def __init__(
        self,
        db: Session,
        refresher: Optional[TokenRefresher] = None,
        providers: Optional[ProviderRegistry] = None,
    ) -> None:
        self.db = db
        self.refresher = refresher
        self.providers = providers

    # Slot queries

    def get_slot(self, clinician_id: str, day_of_week: str, slot_number: int) -> Optional[RecurringAvailabilitySlot]:
        stmt = select(RecurringAvailabilitySlot).where(
            RecurringAvailabilitySlot.clinician_id == clinician_id,
            RecurringAvailabilitySlot.day_of_week == day_of_week,
            RecurringAvailabilitySlot.slot_number == slot_number,
        )
        return self.db.scalars(stmt).first()

    def list_slots(self, clinician_id: str, include_inactive: bool = False) -> List[RecurringAvailabilitySlot]:
        stmt = select(RecurringAvailabilitySlot).where(RecurringAvailabilitySlot.clinician_id == clinician_id)
        if not include_inactive:
            stmt = stmt.where(RecurringAvailabilitySlot.is_active.is_(True))
        slots = list(self.db.scalars(stmt))
        return sorted(slots, key=lambda s: (DAYS_OF_WEEK.index(s.day_of_week), s.slot_number))

    def get_weekly_availability(self, clinician_id: str) -> Dict[str, List[RecurringAvailabilitySlot]]:
        """Active slots grouped by day name, every day present."""
        weekly: Dict[str, List[RecurringAvailabilitySlot]] = {day: [] for day in DAYS_OF_WEEK}
        for slot in self.list_slots(clinician_id):
            weekly[slot.day_of_week].append(slot)
        return weekly

    def expand(self, clinician_id: str, start_date: date, end_date: date) -> List[TimeInterval]:
        """Concrete availability intervals for all active slots in the date range."""
        intervals: List[TimeInterval] = []
        for slot in self.list_slots(clinician_id):
            intervals.extend(expand_slot(slot, start_date, end_date))
        return sorted(intervals, key=lambda i: i.start)

    def get_status(self, status_id: str) -> Optional[AvailabilitySyncStatus]:
        return self.db.get(AvailabilitySyncStatus, status_id)

    def list_statuses(self, clinician_id: str, status: Optional[SyncStatus] = None) -> List[AvailabilitySyncStatus]:
        stmt = (
            select(AvailabilitySyncStatus)
            .join(RecurringAvailabilitySlot)
            .where(RecurringAvailabilitySlot.clinician_id == clinician_id)
        )
        if status is not None:
            stmt = stmt.where(AvailabilitySyncStatus.sync_status == status.value)
        return list(self.db.scalars(stmt))

    # Slot mutations

    def upsert_slot(
        self,
        clinician_id: str,
        day_of_week: str,
        slot_number: int,
        start_time: time,
        end_time: time,
        timezone: Optional[str] = None,
    ) -> RecurringAvailabilitySlot:
        """
        Create or edit a recurring slot and mark it for external sync.

        Raises:
            ValidationError: Unknown day, slot number outside 1-3, end not after
                start, or unknown timezone
        """
        day_of_week = (day_of_week or "").lower()
        timezone = timezone or DEFAULT_PRACTICE_TIMEZONE
        self._validate_slot(day_of_week, slot_number, start_time, end_time, timezone)

        slot = self.get_slot(clinician_id, day_of_week, slot_number)
        if slot is None:
            slot = RecurringAvailabilitySlot(
                clinician_id=clinician_id,
                day_of_week=day_of_week,
                slot_number=slot_number,
                start_time=start_time,
                end_time=end_time,
                timezone=timezone,
                is_active=True,
            )
            self.db.add(slot)
            self.db.flush()
            logger.info(f"Created availability slot {day_of_week}#{slot_number} for clinician {clinician_id}")
        else:
            slot.start_time = start_time
            slot.end_time = end_time
            slot.timezone = timezone
            slot.is_active = True

        self._mark_pending(slot, ACTION_UPSERT)
        self.db.commit()
        return slot

    def remove_slot(self, clinician_id: str, day_of_week: str, slot_number: int) -> RecurringAvailabilitySlot:
        """
        Deactivate a slot and queue removal of its external event.

        Raises:
            ValidationError: If the slot does not exist
        """
        slot = self.get_slot(clinician_id, (day_of_week or "").lower(), slot_number)
        if slot is None or not slot.is_active:
            raise ValidationError(f"No availability slot {day_of_week}#{slot_number}", field="slot_number")
        slot.is_active = False
        self._mark_pending(slot, ACTION_REMOVE)
        self.db.commit()
        logger.info(f"Removed availability slot {day_of_week}#{slot_number} for clinician {clinician_id}")
        return slot

    def _mark_pending(self, slot: RecurringAvailabilitySlot, action: str) -> None:
        """
        Put every sync status row of the slot into pending with the given action.

        New slots get one row per active connection of the clinician, or a
        single unassigned row when no calendar is linked yet. Rows in conflict
        keep their status until resolved.
        """
        rows = list(slot.sync_statuses)
        connected_ids = {row.connection_id for row in rows}
        connection_ids = list(
            self.db.scalars(
                select(ExternalConnection.id).where(
                    ExternalConnection.user_id == slot.clinician_id,
                    ExternalConnection.is_active.is_(True),
                )
            )
        )
        for connection_id in connection_ids:
            if connection_id not in connected_ids:
                unassigned = next((r for r in rows if r.connection_id is None), None)
                if unassigned is not None:
                    unassigned.connection_id = connection_id
                    connected_ids.add(connection_id)
                    continue
                row = AvailabilitySyncStatus(slot=slot, connection_id=connection_id, sync_status=SyncStatus.PENDING.value)
                rows.append(row)
                connected_ids.add(connection_id)
        if not rows:
            rows.append(AvailabilitySyncStatus(slot=slot, connection_id=None, sync_status=SyncStatus.PENDING.value))

        for row in rows:
            row.pending_action = action
            if row.sync_status is None:
                row.sync_status = SyncStatus.PENDING.value
            current = SyncStatus(row.sync_status)
            if current in (SyncStatus.SYNCED, SyncStatus.FAILED):
                transition(row, SyncStatus.PENDING)

    # Status transitions

    def record_push_result(
        self,
        row: AvailabilitySyncStatus,
        success: bool,
        error: Optional[str] = None,
        external_event_id: Optional[str] = None,
    ) -> AvailabilitySyncStatus:
        """Record the outcome of pushing a pending slot: synced on success, failed otherwise."""
        if success:
            transition(row, SyncStatus.SYNCED)
            row.last_error = None
            row.last_synced_at = utc_now()
            if row.pending_action == ACTION_REMOVE:
                row.external_event_id = None
            elif external_event_id:
                row.external_event_id = external_event_id
        else:
            transition(row, SyncStatus.FAILED)
            row.last_error = error or "Unknown error"
        self.db.commit()
        return row

    def check_external(self, row: AvailabilitySyncStatus, external_event: Optional[SyncedEvent]) -> bool:
        """
        Compare a synced slot with what the external calendar currently holds.

        Returns True and moves the row to conflict when they disagree. Rows
        that are not synced are left alone.
        """
        if SyncStatus(row.sync_status) is not SyncStatus.SYNCED:
            return False

        if self._matches_external(row, external_event):
            return False

        transition(row, SyncStatus.CONFLICT)
        row.last_error = "External calendar disagrees with local availability"
        self.db.commit()
        logger.warning(f"Availability slot {row.slot_id} is in conflict with connection {row.connection_id}")
        return True

    def resolve_conflict(self, row: AvailabilitySyncStatus) -> AvailabilitySyncStatus:
        """Manually resolve a conflicted slot; it goes back to pending for the next push."""
        transition(row, SyncStatus.PENDING, manual=True)
        row.last_error = None
        self.db.commit()
        return row

    def retry(self, row: AvailabilitySyncStatus) -> AvailabilitySyncStatus:
        """Manual retry of a failed push."""
        if SyncStatus(row.sync_status) is not SyncStatus.FAILED:
            raise InvalidTransitionError(row.sync_status, SyncStatus.PENDING.value)
        transition(row, SyncStatus.PENDING)
        self.db.commit()
        return row

    # External push

    async def push_pending(self, connection: ExternalConnection, today: Optional[date] = None) -> PushSummary:
        """
        Push every pending slot of the connection's owner to the external calendar.

        Each slot's outcome is recorded independently. Failures move the slot
        to failed and are not retried here.
        """
        if self.refresher is None or self.providers is None:
            raise RuntimeError("AvailabilityReconciler was created without provider access")

        summary = PushSummary()
        rows = [
            row
            for row in self.list_statuses(connection.user_id, SyncStatus.PENDING)
            if row.connection_id in (connection.id, None)
        ]
        if not rows:
            return summary

        try:
            access_token = await self.refresher.get_access_token(connection)
        except (AuthRefreshError, ProviderFetchError) as e:
            for row in rows:
                row.connection_id = row.connection_id or connection.id
                self.record_push_result(row, success=False, error=e.message)
                summary.failed += 1
                summary.errors.append({"slot_id": row.slot_id, **e.to_dict()})
            return summary

        provider = self.providers.get(connection.provider)
        for row in rows:
            row.connection_id = row.connection_id or connection.id
            slot = row.slot
            try:
                external_event_id = await self._push_row(provider, connection, access_token, slot, row, today)
            except ProviderFetchError as e:
                self.record_push_result(row, success=False, error=e.message)
                summary.failed += 1
                summary.errors.append({"slot_id": slot.id, **e.to_dict()})
                continue
            except Exception as e:
                logger.exception(f"Unexpected error pushing slot {slot.id} to connection {connection.id}: {e}")
                self.record_push_result(row, success=False, error=f"Unexpected error: {e}")
                summary.failed += 1
                summary.errors.append({"slot_id": slot.id, "kind": "unexpected", "message": str(e)})
                continue
            self.record_push_result(row, success=True, external_event_id=external_event_id)
            summary.synced += 1

        logger.info(
            f"Pushed availability for connection {connection.id}: {summary.synced} synced, {summary.failed} failed"
        )
        return summary

    async def _push_row(
        self,
        provider: Any,
        connection: ExternalConnection,
        access_token: str,
        slot: RecurringAvailabilitySlot,
        row: AvailabilitySyncStatus,
        today: Optional[date],
    ) -> Optional[str]:
        if row.pending_action == ACTION_REMOVE:
            if row.external_event_id:
                await provider.delete_event(connection, access_token, row.external_event_id)
            return None

        occurrence = next_occurrence(slot, today or to_zone(utc_now(), slot.timezone).date())
        payload = EventPayload(
            title="Available",
            description=f"Recurring availability ({slot.day_of_week} slot {slot.slot_number})",
            start=occurrence.start,
            end=occurrence.end,
            timezone=slot.timezone,
            recurrence=(f"RRULE:FREQ=WEEKLY;BYDAY={_RRULE_DAYS[slot.day_of_week]}",),
        )
        if row.external_event_id:
            result = await provider.update_event(connection, access_token, row.external_event_id, payload)
        else:
            result = await provider.create_event(connection, access_token, payload)
        return str(result.get("id")) if result.get("id") else row.external_event_id

    # Helpers

    def _matches_external(self, row: AvailabilitySyncStatus, external_event: Optional[SyncedEvent]) -> bool:
        slot = row.slot
        if row.pending_action == ACTION_REMOVE or not slot.is_active:
            return external_event is None or external_event.status == "cancelled"
        if external_event is None or external_event.status == "cancelled":
            return False

        local_start = to_zone(external_event.start, slot.timezone)
        local_end = to_zone(external_event.end, slot.timezone)
        return (
            DAYS_OF_WEEK[local_start.weekday()] == slot.day_of_week
            and local_start.time() == slot.start_time
            and local_end.time() == slot.end_time
        )

    @staticmethod
    def _validate_slot(day_of_week: str, slot_number: int, start_time: time, end_time: time, timezone: str) -> None:
        if day_of_week not in DAYS_OF_WEEK:
            raise ValidationError(f"Invalid day of week: {day_of_week}", field="day_of_week")
        if not isinstance(slot_number, int) or not 1 <= slot_number <= MAX_AVAILABILITY_SLOTS_PER_DAY:
            raise ValidationError(
                f"Slot number must be between 1 and {MAX_AVAILABILITY_SLOTS_PER_DAY}", field="slot_number"
            )
        if end_time <= start_time:
            raise ValidationError("Slot end time must be after start time", field="end_time")
        try:
            get_zone(timezone)
        except ValueError as e:
            raise ValidationError(str(e), field="timezone")
