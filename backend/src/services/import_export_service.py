"""
Calendar import and export.

Converts appointments to and from three interchange formats:

- ICS (iCalendar, via the `icalendar` library)
- CSV with Outlook-style columns (Subject, Start Date, Start Time, ...)
- JSON array of event objects

Imports are tolerant: a malformed record is collected as an
`ImportRecordError` and the remaining records are still processed. Only a
file that cannot be read as the format at all is rejected outright.
"""

import csv
import io
import json
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from icalendar import Calendar, Event

from core.errors import ConflictDetected, ImportRecordError, ValidationError
from models import Appointment
from models.appointment import APPOINTMENT_STATUSES
from services.appointment_store import AppointmentStore
from utils.datetime_utils import UTC, ensure_utc, parse_iso_datetime, utc_now

logger = logging.getLogger(__name__)

CALENDAR_NAME = "Practice Appointments"
PRODID = "-//Practice Calendar Sync//Appointments//EN"

_ICS_STATUS = {
    "scheduled": "CONFIRMED",
    "confirmed": "CONFIRMED",
    "pending": "TENTATIVE",
    "cancelled": "CANCELLED",
    "no_show": "CANCELLED",
    "rescheduled": "CANCELLED",
}

_APPOINTMENT_STATUS = {
    "CONFIRMED": "confirmed",
    "TENTATIVE": "pending",
    "CANCELLED": "cancelled",
}

CSV_BASE_COLUMNS = ["Subject", "Start Date", "Start Time", "End Date", "End Time", "All Day Event", "Status", "Type"]
CSV_CLIENT_COLUMNS = ["Client First Name", "Client Last Name", "Client Email", "Client Phone"]
CSV_REQUIRED_COLUMNS = ("Subject", "Start Date", "Start Time", "End Date", "End Time")

EXCLUDED_BY_DEFAULT = ("cancelled", "no_show")


class CalendarFormat(str, Enum):
    ICS = "ics"
    CSV = "csv"
    JSON = "json"


_MEDIA_TYPES = {
    CalendarFormat.ICS: "text/calendar",
    CalendarFormat.CSV: "text/csv",
    CalendarFormat.JSON: "application/json",
}


def detect_format(file_name: str) -> CalendarFormat:
    """
    Infer the format from a file extension.

    Raises:
        ValidationError: If the extension is missing or unsupported
    """
    extension = file_name.rsplit(".", 1)[-1].lower() if "." in (file_name or "") else ""
    try:
        return CalendarFormat(extension)
    except ValueError:
        raise ValidationError(f"Unsupported file extension: {extension or '(none)'}", field="file_name")


def media_type(fmt: CalendarFormat) -> str:
    return _MEDIA_TYPES[fmt]


@dataclass
class ImportExportOptions:
    """
    Options shared by import and export.

    `date_range` bounds are inclusive and compared against record start
    instants. `include_cancelled` applies to export only.
    """
    format: Optional[CalendarFormat] = None
    date_range: Optional[Tuple[datetime, datetime]] = None
    appointment_types: Optional[List[str]] = None
    include_client_info: bool = False
    include_notes: bool = False
    include_cancelled: bool = False

    def __post_init__(self) -> None:
        if self.date_range is not None:
            try:
                start, end = (ensure_utc(d) for d in self.date_range)
            except ValueError as e:
                raise ValidationError(str(e), field="date_range")
            if start is None or end is None or end < start:
                raise ValidationError("date_range end must not be before start", field="date_range")
            self.date_range = (start, end)

    def in_range(self, start: datetime) -> bool:
        if self.date_range is None:
            return True
        return self.date_range[0] <= start <= self.date_range[1]


@dataclass
class ExportResult:
    file_name: str
    file_size: int
    event_count: int
    format: CalendarFormat
    content: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "file_name": self.file_name,
            "file_size": self.file_size,
            "event_count": self.event_count,
            "format": self.format.value,
        }


@dataclass
class ImportResult:
    """
    Outcome of an import. Every record is counted exactly once:
    total_events == imported_events + skipped_events + len(errors).
    """
    total_events: int = 0
    imported_events: int = 0
    skipped_events: int = 0
    imported_data: List[Dict[str, Any]] = field(default_factory=list)
    errors: List[ImportRecordError] = field(default_factory=list)

    def summary(self) -> str:
        error_label = "error" if len(self.errors) == 1 else "errors"
        return f"{self.imported_events} imported, {self.skipped_events} skipped, {len(self.errors)} {error_label}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_events": self.total_events,
            "imported_events": self.imported_events,
            "skipped_events": self.skipped_events,
            "imported_data": self.imported_data,
            "errors": [error.to_dict() for error in self.errors],
            "summary": self.summary(),
        }


@dataclass
class PersistResult:
    created: List[Appointment] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)


# Export

def filter_for_export(appointments: Iterable[Appointment], options: ImportExportOptions) -> List[Appointment]:
    selected = []
    for appointment in appointments:
        if not options.in_range(appointment.start_at):
            continue
        if options.appointment_types and appointment.type not in options.appointment_types:
            continue
        if not options.include_cancelled and appointment.status in EXCLUDED_BY_DEFAULT:
            continue
        selected.append(appointment)
    return sorted(selected, key=lambda a: a.start_at)


def export_data(
    appointments: Iterable[Appointment], options: ImportExportOptions, today: Optional[date] = None
) -> ExportResult:
    """
    Render appointments in the requested format.

    Date range, type filter and cancelled/no-show exclusion are applied
    before rendering.

    Raises:
        ValidationError: If no format was given
    """
    if options.format is None:
        raise ValidationError("Export format is required", field="format")
    fmt = CalendarFormat(options.format)
    selected = filter_for_export(appointments, options)

    renderers: Dict[CalendarFormat, Callable[[List[Appointment], ImportExportOptions], str]] = {
        CalendarFormat.ICS: _render_ics,
        CalendarFormat.CSV: _render_csv,
        CalendarFormat.JSON: _render_json,
    }
    content = renderers[fmt](selected, options)

    stamp = (today or utc_now().date()).strftime("%Y-%m-%d")
    file_name = f"appointments-{stamp}.{fmt.value}"
    logger.info(f"Exported {len(selected)} appointments as {fmt.value}")
    return ExportResult(
        file_name=file_name,
        file_size=len(content.encode("utf-8")),
        event_count=len(selected),
        format=fmt,
        content=content,
    )


def _display_title(appointment: Appointment) -> str:
    return f"{appointment.client_name or 'Appointment'} - {appointment.type}"


def _has_client_info(appointment: Appointment) -> bool:
    return any(
        (appointment.client_first_name, appointment.client_last_name, appointment.client_email, appointment.client_phone)
    )


def _ics_description(appointment: Appointment, options: ImportExportOptions) -> str:
    notes = (appointment.notes or "") if options.include_notes else ""
    if options.include_client_info and _has_client_info(appointment):
        client_block = "\n".join(
            [
                f"Client: {appointment.client_name or ''}",
                f"Email: {appointment.client_email or ''}",
                f"Phone: {appointment.client_phone or ''}",
            ]
        )
        return f"{client_block}\n\n{notes}" if options.include_notes else client_block
    return notes


def _render_ics(appointments: List[Appointment], options: ImportExportOptions) -> str:
    calendar = Calendar()
    calendar.add("prodid", PRODID)
    calendar.add("version", "2.0")
    calendar.add("x-wr-calname", CALENDAR_NAME)

    stamp = utc_now()
    for appointment in appointments:
        event = Event()
        event.add("uid", f"{appointment.id}@calendar-sync")
        event.add("dtstamp", stamp)
        event.add("dtstart", appointment.start_at.astimezone(UTC))
        event.add("dtend", appointment.end_at.astimezone(UTC))
        event.add("summary", _display_title(appointment))
        description = _ics_description(appointment, options)
        if description:
            event.add("description", description)
        event.add("status", _ICS_STATUS.get(appointment.status, "CONFIRMED"))
        event.add("x-appointment-type", appointment.type)
        calendar.add_component(event)

    return calendar.to_ical().decode("utf-8")


def _render_csv(appointments: List[Appointment], options: ImportExportOptions) -> str:
    columns = list(CSV_BASE_COLUMNS)
    if options.include_notes:
        columns.append("Description")
    if options.include_client_info:
        columns.extend(CSV_CLIENT_COLUMNS)

    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=columns)
    writer.writeheader()
    for appointment in appointments:
        start = appointment.start_at.astimezone(UTC)
        end = appointment.end_at.astimezone(UTC)
        row = {
            "Subject": _display_title(appointment),
            "Start Date": start.strftime("%Y-%m-%d"),
            "Start Time": start.strftime("%H:%M:%S"),
            "End Date": end.strftime("%Y-%m-%d"),
            "End Time": end.strftime("%H:%M:%S"),
            "All Day Event": "False",
            "Status": appointment.status,
            "Type": appointment.type,
        }
        if options.include_notes:
            row["Description"] = appointment.notes or ""
        if options.include_client_info:
            row["Client First Name"] = appointment.client_first_name or ""
            row["Client Last Name"] = appointment.client_last_name or ""
            row["Client Email"] = appointment.client_email or ""
            row["Client Phone"] = appointment.client_phone or ""
        writer.writerow(row)
    return buffer.getvalue()


def _render_json(appointments: List[Appointment], options: ImportExportOptions) -> str:
    records = []
    for appointment in appointments:
        record: Dict[str, Any] = {
            "id": appointment.id,
            "title": _display_title(appointment),
            "start": appointment.start_at.isoformat(),
            "end": appointment.end_at.isoformat(),
            "status": appointment.status,
            "type": appointment.type,
        }
        if options.include_notes:
            record["notes"] = appointment.notes or ""
        if options.include_client_info and _has_client_info(appointment):
            record["client"] = {
                "firstName": appointment.client_first_name,
                "lastName": appointment.client_last_name,
                "email": appointment.client_email,
                "phone": appointment.client_phone,
            }
        records.append(record)
    return json.dumps(records, indent=2)


# Import

def import_data(content: str, file_name: str, options: Optional[ImportExportOptions] = None) -> ImportResult:
    """
    Parse an import file into appointment data.

    The format comes from `options.format` or, if unset, the file
    extension. Records starting outside `options.date_range` are skipped.

    Raises:
        ValidationError: Unknown format, or the file is not a calendar, not a
            JSON array, or has no CSV header
    """
    options = options or ImportExportOptions()
    fmt = CalendarFormat(options.format) if options.format else detect_format(file_name)

    parsers: Dict[CalendarFormat, Callable[[str], List[Tuple[Any, Callable[[], Dict[str, Any]]]]]] = {
        CalendarFormat.ICS: _ics_records,
        CalendarFormat.CSV: _csv_records,
        CalendarFormat.JSON: _json_records,
    }
    records = parsers[fmt](content)

    result = ImportResult(total_events=len(records))
    for index, (raw, convert) in enumerate(records):
        try:
            data = convert()
        except (ValueError, KeyError, TypeError, AttributeError, ValidationError) as e:
            message = e.message if isinstance(e, ValidationError) else str(e)
            result.errors.append(ImportRecordError(index, message, raw))
            continue

        if not options.in_range(parse_iso_datetime(data["start_at"])):
            result.skipped_events += 1
            continue

        result.imported_data.append(data)
        result.imported_events += 1

    logger.info(f"Imported {file_name} ({fmt.value}): {result.summary()}")
    return result


def _appointment_data(
    title: str, start: datetime, end: datetime, notes: str, status: str, appointment_type: str
) -> Dict[str, Any]:
    if end <= start:
        raise ValidationError("End time must be after start time", field="end")
    if status not in APPOINTMENT_STATUSES:
        raise ValidationError(f"Invalid status: {status}", field="status")
    return {
        "title": title,
        "start_at": start.isoformat(),
        "end_at": end.isoformat(),
        "notes": notes,
        "status": status,
        "type": appointment_type or "appointment",
    }


def _ics_records(content: str) -> List[Tuple[Any, Callable[[], Dict[str, Any]]]]:
    try:
        calendar = Calendar.from_ical(content)
    except (ValueError, KeyError, IndexError) as e:
        raise ValidationError(f"Failed to parse iCalendar file: {e}", field="file")
    if getattr(calendar, "name", None) != "VCALENDAR":
        raise ValidationError("Failed to parse iCalendar file: no VCALENDAR component", field="file")

    return [
        (event.to_ical().decode("utf-8"), lambda event=event: _convert_ics_event(event))
        for event in calendar.walk("VEVENT")
    ]


def _ics_instant(value: Any, name: str) -> datetime:
    if value is None:
        raise ValidationError(f"Missing {name}", field=name)
    dt = value.dt
    if not isinstance(dt, datetime):
        raise ValidationError("All-day events are not supported", field=name)
    if dt.tzinfo is None:
        # Floating time
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def _convert_ics_event(event: Event) -> Dict[str, Any]:
    start = _ics_instant(event.get("dtstart"), "dtstart")
    if event.get("dtend") is not None:
        end = _ics_instant(event.get("dtend"), "dtend")
    elif event.get("duration") is not None and isinstance(event.get("duration").dt, timedelta):
        end = start + event.get("duration").dt
    else:
        raise ValidationError("Missing dtend", field="dtend")

    ics_status = str(event.get("status", "")).upper()
    return _appointment_data(
        title=str(event.get("summary", "")),
        start=start,
        end=end,
        notes=str(event.get("description", "")),
        status=_APPOINTMENT_STATUS.get(ics_status, "scheduled"),
        appointment_type=str(event.get("x-appointment-type", "")),
    )


def _csv_records(content: str) -> List[Tuple[Any, Callable[[], Dict[str, Any]]]]:
    reader = csv.DictReader(io.StringIO(content))
    header = reader.fieldnames or []
    missing = [column for column in CSV_REQUIRED_COLUMNS if column not in header]
    if missing:
        raise ValidationError(f"Failed to parse CSV file: missing columns {', '.join(missing)}", field="file")
    try:
        rows = list(reader)
    except csv.Error as e:
        raise ValidationError(f"Failed to parse CSV file: {e}", field="file")
    return [(row, lambda row=row: _convert_csv_row(row)) for row in rows]


def _csv_instant(day: str, clock: str) -> datetime:
    text = f"{day.strip()}T{clock.strip()}"
    for fmt in ("%Y-%m-%dT%H:%M:%S", "%Y-%m-%dT%H:%M"):
        try:
            return datetime.strptime(text, fmt).replace(tzinfo=UTC)
        except ValueError:
            continue
    raise ValidationError(f"Unparseable date/time: {text}")


def _convert_csv_row(row: Dict[str, Optional[str]]) -> Dict[str, Any]:
    if any(not row.get(column) for column in CSV_REQUIRED_COLUMNS):
        raise ValidationError("Missing required fields")
    return _appointment_data(
        title=row["Subject"] or "",
        start=_csv_instant(row["Start Date"] or "", row["Start Time"] or ""),
        end=_csv_instant(row["End Date"] or "", row["End Time"] or ""),
        notes=row.get("Description") or "",
        status=row.get("Status") or "scheduled",
        appointment_type=row.get("Type") or "appointment",
    )


def _json_records(content: str) -> List[Tuple[Any, Callable[[], Dict[str, Any]]]]:
    try:
        data = json.loads(content)
    except json.JSONDecodeError as e:
        raise ValidationError(f"Failed to parse JSON file: {e}", field="file")
    if not isinstance(data, list):
        raise ValidationError("JSON data must be an array of events", field="file")
    return [(item, lambda item=item: _convert_json_item(item)) for item in data]


def _convert_json_item(item: Any) -> Dict[str, Any]:
    if not isinstance(item, dict):
        raise ValidationError("Event must be an object")
    if not item.get("title") or not item.get("start") or not item.get("end"):
        raise ValidationError("Missing required fields")
    return _appointment_data(
        title=item["title"],
        start=parse_iso_datetime(item["start"]),
        end=parse_iso_datetime(item["end"]),
        notes=item.get("notes") or "",
        status=item.get("status") or "scheduled",
        appointment_type=item.get("type") or "appointment",
    )


# Persistence

def persist_imported(
    store: AppointmentStore,
    clinician_id: str,
    result: ImportResult,
    timezone: str = "UTC",
    allow_conflict: bool = False,
) -> PersistResult:
    """
    Create appointments from imported data.

    Records rejected by the store (validation or conflict) are collected
    with their position in `result.imported_data`.
    """
    persisted = PersistResult()
    for index, data in enumerate(result.imported_data):
        try:
            appointment = store.create(
                {
                    "clinician_id": clinician_id,
                    "title": data["title"],
                    "start_at": parse_iso_datetime(data["start_at"]),
                    "end_at": parse_iso_datetime(data["end_at"]),
                    "notes": data.get("notes") or None,
                    "status": data.get("status") or "scheduled",
                    "type": data.get("type") or "appointment",
                    "timezone": timezone,
                },
                allow_conflict=allow_conflict,
            )
        except (ValidationError, ConflictDetected) as e:
            persisted.errors.append({"index": index, **e.to_dict()})
            continue
        persisted.created.append(appointment)

    logger.info(f"Persisted {len(persisted.created)} imported appointments for clinician {clinician_id}")
    return persisted
