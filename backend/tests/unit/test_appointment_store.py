"""
Unit tests for the appointment store.
"""

import pytest
from datetime import datetime

from core.constants import BLOCKED_TIME_CLIENT_ID, BLOCKED_TIME_TYPE
from core.errors import ConflictDetected, ValidationError
from services.appointment_store import AppointmentStore

from calendar_fakes import at, create_appointment


@pytest.fixture
def store(db_session):
    return AppointmentStore(db_session)


def appointment_data(start, end, **fields):
    data = {"clinician_id": "clinician-1", "start_at": start, "end_at": end, "client_first_name": "Ada"}
    data.update(fields)
    return data


class TestCreate:

    def test_create_with_defaults(self, store):
        appointment = store.create(appointment_data(at(4, 9), at(4, 10)))

        assert appointment.id is not None
        assert appointment.status == "scheduled"
        assert appointment.type == "appointment"
        assert appointment.timezone == "UTC"
        assert appointment.created_at is not None

    def test_rejects_end_before_start(self, store):
        with pytest.raises(ValidationError) as exc_info:
            store.create(appointment_data(at(4, 10), at(4, 9)))
        assert exc_info.value.field == "end_at"

    def test_rejects_zero_length(self, store):
        with pytest.raises(ValidationError):
            store.create(appointment_data(at(4, 10), at(4, 10)))

    def test_rejects_naive_datetimes(self, store):
        with pytest.raises(ValidationError) as exc_info:
            store.create(appointment_data(datetime(2030, 3, 4, 9), datetime(2030, 3, 4, 10)))
        assert exc_info.value.field == "start_at"

    def test_rejects_unknown_status(self, store):
        with pytest.raises(ValidationError) as exc_info:
            store.create(appointment_data(at(4, 9), at(4, 10), status="maybe"))
        assert exc_info.value.field == "status"

    def test_rejects_unknown_timezone(self, store):
        with pytest.raises(ValidationError) as exc_info:
            store.create(appointment_data(at(4, 9), at(4, 10), timezone="Nowhere/Land"))
        assert exc_info.value.field == "timezone"

    def test_rejects_unknown_fields(self, store):
        with pytest.raises(ValidationError, match="Unknown appointment fields"):
            store.create(appointment_data(at(4, 9), at(4, 10), colour="red"))

    def test_rejects_overlap(self, store, db_session):
        existing = create_appointment(db_session, at(4, 9), at(4, 10))

        with pytest.raises(ConflictDetected) as exc_info:
            store.create(appointment_data(at(4, 9, 30), at(4, 10, 30)))

        assert exc_info.value.conflict.with_.source_id == existing.id
        assert exc_info.value.to_dict()["kind"] == "conflict"

    def test_back_to_back_is_allowed(self, store, db_session):
        create_appointment(db_session, at(4, 9), at(4, 10))
        store.create(appointment_data(at(4, 10), at(4, 11)))

    def test_cancelled_appointment_does_not_block(self, store, db_session):
        create_appointment(db_session, at(4, 9), at(4, 10), status="cancelled")
        store.create(appointment_data(at(4, 9), at(4, 10)))

    def test_other_clinician_does_not_block(self, store, db_session):
        create_appointment(db_session, at(4, 9), at(4, 10), clinician_id="clinician-2")
        store.create(appointment_data(at(4, 9), at(4, 10)))

    def test_allow_conflict_override(self, store, db_session):
        create_appointment(db_session, at(4, 9), at(4, 10))
        appointment = store.create(appointment_data(at(4, 9), at(4, 10)), allow_conflict=True)
        assert appointment.id is not None

    def test_conflict_exempt_appointment_never_blocks(self, store, db_session):
        create_appointment(db_session, at(4, 9), at(4, 10), conflict_exempt=True)
        store.create(appointment_data(at(4, 9), at(4, 10)))

    def test_pending_external_mirror_does_not_block(self, store, db_session):
        create_appointment(db_session, at(4, 9), at(4, 10), type="external_event", status="pending")
        store.create(appointment_data(at(4, 9), at(4, 10)))

    def test_scheduled_external_mirror_blocks(self, store, db_session):
        create_appointment(db_session, at(4, 9), at(4, 10), type="external_event", status="scheduled")
        with pytest.raises(ConflictDetected):
            store.create(appointment_data(at(4, 9), at(4, 10)))


class TestBlockedTime:

    def test_blocked_time_uses_placeholder_client(self, store):
        blocked = store.create_blocked_time("clinician-1", at(4, 12), at(4, 13), label="Lunch")

        assert blocked.client_id == BLOCKED_TIME_CLIENT_ID
        assert blocked.type == BLOCKED_TIME_TYPE
        assert blocked.is_blocked_time is True
        assert blocked.title == "Lunch"

    def test_blocked_time_blocks_appointments(self, store):
        store.create_blocked_time("clinician-1", at(4, 12), at(4, 13))

        with pytest.raises(ConflictDetected) as exc_info:
            store.create(appointment_data(at(4, 12, 30), at(4, 13, 30)))
        assert exc_info.value.conflict.with_.kind == "blocked_time"

    def test_blocked_time_cannot_overlap_appointment(self, store, db_session):
        create_appointment(db_session, at(4, 12), at(4, 13))
        with pytest.raises(ConflictDetected):
            store.create_blocked_time("clinician-1", at(4, 12), at(4, 12, 30))


class TestQueries:

    def test_list_in_window_half_open(self, store, db_session):
        create_appointment(db_session, at(4, 8), at(4, 9))
        inside = create_appointment(db_session, at(4, 9), at(4, 10))
        straddling = create_appointment(db_session, at(4, 11, 30), at(4, 12, 30))
        create_appointment(db_session, at(4, 12, 30), at(4, 13))

        result = store.list_in_window("clinician-1", at(4, 9), at(4, 12))

        assert [a.id for a in result] == [inside.id, straddling.id]

    def test_list_in_window_filters(self, store, db_session):
        create_appointment(db_session, at(4, 9), at(4, 10), status="cancelled")
        blocked = create_appointment(db_session, at(4, 11), at(4, 12), type=BLOCKED_TIME_TYPE)

        assert store.list_in_window("clinician-1", at(4, 0), at(5, 0), statuses=["scheduled"]) == [blocked]
        assert store.list_in_window("clinician-1", at(4, 0), at(5, 0), types=[BLOCKED_TIME_TYPE]) == [blocked]

    def test_list_in_window_requires_aware_bounds(self, store):
        with pytest.raises(ValidationError):
            store.list_in_window("clinician-1", datetime(2030, 3, 4), at(5, 0))

    def test_list_blocking_skips_exempt_and_inactive(self, store, db_session):
        blocking = create_appointment(db_session, at(4, 9), at(4, 10))
        create_appointment(db_session, at(4, 10), at(4, 11), status="no_show")
        create_appointment(db_session, at(4, 11), at(4, 12), conflict_exempt=True)

        assert store.list_blocking("clinician-1", at(4, 0), at(5, 0)) == [blocking]

    def test_check_conflicts_lists_every_overlap(self, store, db_session):
        first = create_appointment(db_session, at(4, 9), at(4, 10))
        second = create_appointment(db_session, at(4, 10, 30), at(4, 11, 30))

        conflicts = store.check_conflicts("clinician-1", at(4, 9, 30), at(4, 11))

        assert [c.candidate.source_id for c in conflicts] == [first.id, second.id]

    def test_check_conflicts_excludes_self(self, store, db_session):
        existing = create_appointment(db_session, at(4, 9), at(4, 10))
        assert store.check_conflicts("clinician-1", at(4, 9), at(4, 10), exclude_id=existing.id) == []


class TestUpdateAndCancel:

    def test_update_moves_appointment(self, store, db_session):
        appointment = create_appointment(db_session, at(4, 9), at(4, 10))

        store.update(appointment, start_at=at(4, 14), end_at=at(4, 15))

        assert appointment.start_at == at(4, 14)
        assert store.get(appointment.id).end_at == at(4, 15)

    def test_update_into_conflict_is_rolled_back(self, store, db_session):
        create_appointment(db_session, at(4, 14), at(4, 15))
        appointment = create_appointment(db_session, at(4, 9), at(4, 10))

        with pytest.raises(ConflictDetected):
            store.update(appointment, start_at=at(4, 14, 30), end_at=at(4, 15, 30))

        assert store.get(appointment.id).start_at == at(4, 9)

    def test_update_validates_new_interval(self, store, db_session):
        appointment = create_appointment(db_session, at(4, 9), at(4, 10))
        with pytest.raises(ValidationError):
            store.update(appointment, end_at=at(4, 8))

    def test_update_rejects_unknown_field(self, store, db_session):
        appointment = create_appointment(db_session, at(4, 9), at(4, 10))
        with pytest.raises(ValidationError):
            store.update(appointment, clinician_id="clinician-2")

    def test_cancel_appends_reason(self, store, db_session):
        appointment = create_appointment(db_session, at(4, 9), at(4, 10), notes="Initial visit")

        store.cancel(appointment, reason="Client request")

        assert appointment.status == "cancelled"
        assert appointment.notes == "Initial visit\nCancelled: Client request"
        assert appointment.is_active is False

    def test_cancelled_slot_can_be_rebooked(self, store, db_session):
        appointment = create_appointment(db_session, at(4, 9), at(4, 10))
        store.cancel(appointment)
        store.create(appointment_data(at(4, 9), at(4, 10)))
