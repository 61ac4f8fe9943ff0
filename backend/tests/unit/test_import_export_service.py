"""
Unit tests for calendar import and export.
"""

import csv
import io
import json
import pytest
from datetime import date

from icalendar import Calendar

from core.errors import ValidationError
from services.appointment_store import AppointmentStore
from services.import_export_service import (
    CalendarFormat,
    ImportExportOptions,
    detect_format,
    export_data,
    import_data,
    media_type,
    persist_imported,
)

from calendar_fakes import at, create_appointment

TODAY = date(2030, 3, 1)


@pytest.fixture
def appointments(db_session):
    return [
        create_appointment(
            db_session, at(4, 9), at(4, 10),
            client_first_name="Ada", client_last_name="Lovelace", client_email="ada@example.com",
            notes="Intake session",
        ),
        create_appointment(db_session, at(5, 9), at(5, 10), status="cancelled"),
        create_appointment(db_session, at(6, 9), at(6, 10), type="blocked_time"),
    ]


class TestFormats:

    @pytest.mark.parametrize("name,expected", [
        ("calendar.ics", CalendarFormat.ICS),
        ("export.CSV", CalendarFormat.CSV),
        ("events.json", CalendarFormat.JSON),
    ])
    def test_detect_format(self, name, expected):
        assert detect_format(name) == expected

    @pytest.mark.parametrize("name", ["calendar.xlsx", "no-extension"])
    def test_unsupported_extension(self, name):
        with pytest.raises(ValidationError):
            detect_format(name)

    def test_media_types(self):
        assert media_type(CalendarFormat.ICS) == "text/calendar"
        assert media_type(CalendarFormat.CSV) == "text/csv"

    def test_inverted_date_range_rejected(self):
        with pytest.raises(ValidationError):
            ImportExportOptions(date_range=(at(5, 0), at(4, 0)))


class TestExport:

    def test_ics_export(self, appointments):
        result = export_data(appointments, ImportExportOptions(format=CalendarFormat.ICS), today=TODAY)

        assert result.file_name == "appointments-2030-03-01.ics"
        assert result.event_count == 2
        calendar = Calendar.from_ical(result.content)
        events = calendar.walk("VEVENT")
        assert [str(e.get("summary")) for e in events] == ["Ada Lovelace - appointment", "Appointment - blocked_time"]
        assert events[0].get("dtstart").dt == at(4, 9)
        assert events[0].get("description") is None
        assert result.file_size == len(result.content.encode("utf-8"))

    def test_ics_export_with_client_info_and_notes(self, appointments):
        options = ImportExportOptions(format=CalendarFormat.ICS, include_client_info=True, include_notes=True)

        result = export_data(appointments[:1], options, today=TODAY)

        description = str(Calendar.from_ical(result.content).walk("VEVENT")[0].get("description"))
        assert "Client: Ada Lovelace" in description
        assert "Email: ada@example.com" in description
        assert description.endswith("Intake session")

    def test_include_cancelled(self, appointments):
        options = ImportExportOptions(format=CalendarFormat.JSON, include_cancelled=True)
        assert export_data(appointments, options, today=TODAY).event_count == 3

    def test_type_and_range_filters(self, appointments):
        options = ImportExportOptions(
            format=CalendarFormat.JSON,
            appointment_types=["appointment", "blocked_time"],
            date_range=(at(5, 0), at(6, 9)),
        )

        records = json.loads(export_data(appointments, options, today=TODAY).content)

        # Range bounds are inclusive
        assert [r["type"] for r in records] == ["blocked_time"]

    def test_csv_export_columns(self, appointments):
        options = ImportExportOptions(format=CalendarFormat.CSV, include_client_info=True)

        result = export_data(appointments, options, today=TODAY)

        rows = list(csv.DictReader(io.StringIO(result.content)))
        assert rows[0]["Subject"] == "Ada Lovelace - appointment"
        assert rows[0]["Start Date"] == "2030-03-04"
        assert rows[0]["Start Time"] == "09:00:00"
        assert rows[0]["Client Email"] == "ada@example.com"
        assert "Description" not in rows[0]

    def test_json_export_omits_client_by_default(self, appointments):
        result = export_data(appointments, ImportExportOptions(format=CalendarFormat.JSON), today=TODAY)
        records = json.loads(result.content)
        assert "client" not in records[0]
        assert records[0]["start"] == "2030-03-04T09:00:00+00:00"

    def test_format_required(self, appointments):
        with pytest.raises(ValidationError):
            export_data(appointments, ImportExportOptions(), today=TODAY)


ICS_FILE = """BEGIN:VCALENDAR
VERSION:2.0
PRODID:-//Example//EN
BEGIN:VEVENT
UID:1
SUMMARY:Follow-up
DTSTART:20300304T090000Z
DTEND:20300304T100000Z
STATUS:TENTATIVE
END:VEVENT
BEGIN:VEVENT
UID:2
SUMMARY:Holiday
DTSTART;VALUE=DATE:20300305
DTEND;VALUE=DATE:20300306
END:VEVENT
BEGIN:VEVENT
UID:3
SUMMARY:Floating
DTSTART:20300306T140000
DURATION:PT30M
END:VEVENT
END:VCALENDAR
"""


class TestImport:

    def test_ics_import(self):
        result = import_data(ICS_FILE, "calendar.ics")

        assert result.total_events == 3
        assert result.imported_events == 2
        assert result.imported_data[0]["status"] == "pending"
        assert result.imported_data[0]["start_at"] == at(4, 9).isoformat()
        # Floating times are read as UTC
        assert result.imported_data[1]["end_at"] == at(6, 14, 30).isoformat()
        assert result.errors[0].index == 1
        assert "All-day" in result.errors[0].message
        assert result.summary() == "2 imported, 0 skipped, 1 error"

    def test_invalid_ics_rejected(self):
        with pytest.raises(ValidationError):
            import_data("not a calendar", "calendar.ics")

    def test_csv_import_with_bad_row(self):
        content = (
            "Subject,Start Date,Start Time,End Date,End Time,Description\n"
            "Consult,2030-03-04,09:00,2030-03-04,10:00,First visit\n"
            "Broken,2030-03-04,,2030-03-04,10:00,\n"
            "Backwards,2030-03-04,11:00,2030-03-04,10:00,\n"
        )

        result = import_data(content, "export.csv")

        assert result.imported_events == 1
        assert result.imported_data[0]["notes"] == "First visit"
        assert [e.index for e in result.errors] == [1, 2]
        assert result.total_events == result.imported_events + result.skipped_events + len(result.errors)

    def test_csv_missing_columns_rejected(self):
        with pytest.raises(ValidationError, match="missing columns"):
            import_data("Subject,Start Date\nConsult,2030-03-04\n", "export.csv")

    def test_json_import_skips_out_of_range(self):
        content = json.dumps([
            {"title": "In range", "start": "2030-03-04T09:00:00Z", "end": "2030-03-04T10:00:00Z"},
            {"title": "Later", "start": "2030-04-04T09:00:00Z", "end": "2030-04-04T10:00:00Z"},
            {"title": "No end", "start": "2030-03-04T09:00:00Z"},
            {"title": "No offset", "start": "2030-03-04T09:00:00", "end": "2030-03-04T10:00:00"},
        ])
        options = ImportExportOptions(date_range=(at(1, 0), at(31, 23)))

        result = import_data(content, "events.json", options)

        assert result.imported_events == 1
        assert result.skipped_events == 1
        assert [e.index for e in result.errors] == [2, 3]
        assert result.to_dict()["errors"][0]["kind"] == "import_record"

    @pytest.mark.parametrize("content", ['{"title": "not an array"}', "{broken"])
    def test_json_must_be_array(self, content):
        with pytest.raises(ValidationError):
            import_data(content, "events.json")

    def test_explicit_format_overrides_extension(self):
        content = json.dumps([{"title": "A", "start": "2030-03-04T09:00:00Z", "end": "2030-03-04T10:00:00Z"}])
        result = import_data(content, "upload.txt", ImportExportOptions(format=CalendarFormat.JSON))
        assert result.imported_events == 1


class TestRoundTrip:

    @pytest.mark.parametrize("fmt", list(CalendarFormat))
    @pytest.mark.parametrize("flags", [
        {},
        {"include_client_info": True, "include_notes": True},
        {"include_cancelled": True},
        {"include_client_info": True, "include_notes": True, "include_cancelled": True},
    ])
    def test_exported_file_imports_every_event(self, appointments, fmt, flags):
        exported = export_data(appointments, ImportExportOptions(format=fmt, **flags), today=TODAY)

        result = import_data(exported.content, exported.file_name)

        assert exported.event_count > 0
        assert result.imported_events == exported.event_count
        assert result.errors == []
        assert sorted(d["start_at"] for d in result.imported_data) == sorted(
            a.start_at.isoformat() for a in appointments
            if flags.get("include_cancelled") or a.status != "cancelled"
        )


class TestPersistImported:

    def test_persist_creates_appointments_and_reports_conflicts(self, db_session):
        create_appointment(db_session, at(4, 9), at(4, 10))
        content = json.dumps([
            {"title": "Clashes", "start": "2030-03-04T09:30:00Z", "end": "2030-03-04T10:30:00Z"},
            {"title": "Free", "start": "2030-03-04T11:00:00Z", "end": "2030-03-04T12:00:00Z"},
        ])
        result = import_data(content, "events.json")

        persisted = persist_imported(AppointmentStore(db_session), "clinician-1", result, timezone="America/Chicago")

        assert [a.title for a in persisted.created] == ["Free"]
        assert persisted.created[0].timezone == "America/Chicago"
        assert persisted.errors[0]["index"] == 0
        assert persisted.errors[0]["kind"] == "conflict"

    def test_persist_with_override(self, db_session):
        create_appointment(db_session, at(4, 9), at(4, 10))
        content = json.dumps([{"title": "Clashes", "start": "2030-03-04T09:30:00Z", "end": "2030-03-04T10:30:00Z"}])

        persisted = persist_imported(
            AppointmentStore(db_session), "clinician-1", import_data(content, "events.json"), allow_conflict=True
        )

        assert len(persisted.created) == 1
        assert persisted.errors == []
