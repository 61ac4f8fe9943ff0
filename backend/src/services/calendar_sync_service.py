"""
Two-way synchronization between local appointments and external calendars.

Each mapping between an appointment and an external event stores a content
hash for both sides as of the last sync. On every run:

1. Remote -> local: new external events become `external_event`
   appointments, changed events update their appointment, and mapped events
   that disappeared from the window cancel their appointment.
2. Local -> remote: changed appointments are pushed, cancelled ones are
   deleted remotely, and unmapped active appointments are created remotely.
3. Local blocking appointments overlapping external events are recorded as
   time conflicts.

When both sides changed, or one side deleted what the other edited, nothing
is overwritten; a `SyncConflict` is recorded for resolution instead.
"""

import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set

from sqlalchemy import select
from sqlalchemy.orm import Session

from core.constants import EXTERNAL_EVENT_TYPE
from core.errors import AuthRefreshError, ProviderFetchError, ValidationError
from models import Appointment, ExternalConnection, ExternalEventMapping, SyncConflict
from services.appointment_store import AppointmentStore
from services.calendar_providers import CalendarProvider, EventPayload, ProviderRegistry, SyncedEvent
from services.conflict_detector import ConflictDetector, TimeInterval, intervals_overlap
from services.connection_service import ConnectionService
from services.event_fetcher import EventFetcher, validate_window
from services.token_refresher import TokenRefresher
from utils.datetime_utils import to_epoch_seconds, utc_now

logger = logging.getLogger(__name__)

TIME_CONFLICT = "time_conflict"
DATA_CONFLICT = "data_conflict"
DELETION_CONFLICT = "deletion_conflict"

RESOLUTION_STRATEGIES = ("local_wins", "external_wins", "manual", "newest_wins")

INBOUND = "inbound"
OUTBOUND = "outbound"


def event_hash(
    title: Optional[str],
    start: datetime,
    end: datetime,
    description: Optional[str] = None,
    location: Optional[str] = None,
    participants: Iterable[str] = (),
) -> str:
    """SHA-256 of the canonical JSON form of an event's content."""
    data = {
        "title": title or "",
        "start": to_epoch_seconds(start),
        "end": to_epoch_seconds(end),
        "description": description or "",
        "location": location or "",
        "participants": sorted(p for p in participants if p),
    }
    canonical = json.dumps(data, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def hash_synced_event(event: SyncedEvent) -> str:
    return event_hash(event.title, event.start, event.end, event.description, event.location, event.participants)


def mirror_status(event: SyncedEvent) -> str:
    """Appointment status for the local mirror of an external event; tentative events do not block."""
    return "pending" if event.status == "tentative" else "scheduled"


def hash_appointment(appointment: Appointment) -> str:
    return event_hash(
        appointment.title,
        appointment.start_at,
        appointment.end_at,
        appointment.notes,
        None,
        [appointment.client_email] if appointment.client_email else [],
    )


def appointment_snapshot(appointment: Appointment) -> Dict[str, Any]:
    return {
        "id": appointment.id,
        "title": appointment.title,
        "start_at": appointment.start_at.isoformat(),
        "end_at": appointment.end_at.isoformat(),
        "status": appointment.status,
        "type": appointment.type,
        "notes": appointment.notes,
        "updated_at": appointment.updated_at.isoformat() if appointment.updated_at else None,
        "hash": hash_appointment(appointment),
    }


def event_snapshot(event: SyncedEvent) -> Dict[str, Any]:
    data = event.to_dict()
    data["hash"] = hash_synced_event(event)
    return data


@dataclass
class DirectionCounts:
    created: int = 0
    updated: int = 0
    deleted: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {"created": self.created, "updated": self.updated, "deleted": self.deleted}


@dataclass
class SyncSummary:
    """Outcome of a two-way sync for one clinician."""
    inbound: DirectionCounts = field(default_factory=DirectionCounts)
    outbound: DirectionCounts = field(default_factory=DirectionCounts)
    conflicts: List[SyncConflict] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    synced_connection_ids: List[str] = field(default_factory=list)
    skipped_connection_ids: List[str] = field(default_factory=list)

    def add_error(self, connection_id: str, direction: str, error: Exception) -> None:
        entry: Dict[str, Any] = {"connection_id": connection_id, "direction": direction}
        if isinstance(error, (AuthRefreshError, ProviderFetchError, ValidationError)):
            entry.update(error.to_dict())
        else:
            entry.update({"kind": "unexpected", "message": str(error)})
        self.errors.append(entry)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "inbound": self.inbound.to_dict(),
            "outbound": self.outbound.to_dict(),
            "conflicts": [
                {
                    "id": c.id,
                    "conflict_type": c.conflict_type,
                    "local_appointment_id": c.local_appointment_id,
                    "external_event_id": c.external_event_id,
                }
                for c in self.conflicts
            ],
            "errors": self.errors,
            "synced_connection_ids": self.synced_connection_ids,
            "skipped_connection_ids": self.skipped_connection_ids,
        }


class CalendarSyncService:
    """Reconciles appointments with the events of every active connection."""

    def __init__(
        self,
        db: Session,
        connections: Optional[ConnectionService] = None,
        refresher: Optional[TokenRefresher] = None,
        providers: Optional[ProviderRegistry] = None,
        store: Optional[AppointmentStore] = None,
        detector: Optional[ConflictDetector] = None,
    ) -> None:
        self.db = db
        self.connections = connections or ConnectionService(db)
        self.providers = providers or ProviderRegistry()
        self.refresher = refresher or TokenRefresher(self.connections, self.providers)
        self.detector = detector or ConflictDetector()
        self.store = store or AppointmentStore(db, self.detector)
        self.fetcher = EventFetcher(self.connections, self.refresher, self.providers)

    # Entry point

    async def sync_bidirectional(self, clinician_id: str, window_start: datetime, window_end: datetime) -> SyncSummary:
        """
        Run a full two-way sync of the clinician's calendars over the window.

        Connections are processed sequentially. A connection whose circuit is
        open is skipped; a failing connection is recorded in the summary and
        counts against its circuit breaker without affecting the others.

        Raises:
            ValidationError: If the window is invalid
        """
        window_start, window_end = validate_window(window_start, window_end)
        summary = SyncSummary()

        for connection in self.connections.list_active_connections(clinician_id):
            if not self.connections.allow_request(connection):
                summary.skipped_connection_ids.append(connection.id)
                continue

            direction = INBOUND
            try:
                events = await self.fetcher.fetch_connection_events(connection, window_start, window_end)
                skip_ids = self.reconcile_remote_to_local(
                    connection, events, clinician_id, window_start, window_end, summary
                )
                direction = OUTBOUND
                remote_ids = {e.external_event_id for e in events if e.status != "cancelled"}
                await self.reconcile_local_to_remote(
                    connection, remote_ids, clinician_id, window_start, window_end, summary, skip_ids
                )
                summary.conflicts.extend(self.detect_time_conflicts(connection, events, clinician_id))
            except AuthRefreshError as e:
                # Connection already deactivated by the refresher
                summary.add_error(connection.id, direction, e)
                continue
            except ProviderFetchError as e:
                self.db.rollback()
                self.connections.record_failure(connection, e.message)
                summary.add_error(connection.id, direction, e)
                continue
            except Exception as e:
                self.db.rollback()
                logger.exception(f"Unexpected error syncing connection {connection.id}: {e}")
                self.connections.record_failure(connection, f"Unexpected error: {e}")
                summary.add_error(connection.id, direction, e)
                continue

            self.connections.record_success(connection)
            summary.synced_connection_ids.append(connection.id)

        logger.info(
            f"Sync for clinician {clinician_id}: inbound {summary.inbound.to_dict()}, "
            f"outbound {summary.outbound.to_dict()}, {len(summary.conflicts)} conflicts, "
            f"{len(summary.errors)} errors"
        )
        return summary

    # Remote -> local

    def reconcile_remote_to_local(
        self,
        connection: ExternalConnection,
        events: List[SyncedEvent],
        clinician_id: str,
        window_start: datetime,
        window_end: datetime,
        summary: Optional[SyncSummary] = None,
    ) -> Set[str]:
        """
        Apply external changes to local appointments.

        Returns the external event ids that ended up in a data or deletion
        conflict; the outbound pass leaves those alone.
        """
        summary = summary or SyncSummary()
        mappings = {m.external_event_id: m for m in self._mappings(connection.id)}
        conflicted: Set[str] = set()
        present: Set[str] = set()

        for event in events:
            if event.status == "cancelled":
                continue
            present.add(event.external_event_id)
            remote_hash = hash_synced_event(event)
            mapping = mappings.get(event.external_event_id)

            if mapping is None:
                self._create_inbound(connection, event, clinician_id, remote_hash)
                summary.inbound.created += 1
                continue

            appointment = mapping.appointment
            if appointment.type == EXTERNAL_EVENT_TYPE and appointment.is_active:
                appointment.status = mirror_status(event)
            remote_changed = mapping.last_sync_hash != remote_hash
            local_changed = self._local_changed(mapping, appointment)
            if not remote_changed:
                continue
            if local_changed:
                summary.conflicts.append(
                    self._record_conflict(connection, DATA_CONFLICT, appointment, event.external_event_id, event)
                )
                conflicted.add(event.external_event_id)
                continue

            self._apply_event(appointment, event)
            mapping.last_sync_hash = remote_hash
            mapping.last_local_hash = hash_appointment(appointment)
            summary.inbound.updated += 1

        for external_id, mapping in mappings.items():
            if external_id in present:
                continue
            appointment = mapping.appointment
            if not (appointment.start_at < window_end and appointment.end_at > window_start):
                continue
            if not appointment.is_active:
                continue
            if self._local_changed(mapping, appointment):
                summary.conflicts.append(
                    self._record_conflict(connection, DELETION_CONFLICT, appointment, external_id, None)
                )
                conflicted.add(external_id)
                continue

            appointment.status = "cancelled"
            appointment.notes = "Cancelled: Event deleted from external calendar."
            self.db.delete(mapping)
            summary.inbound.deleted += 1

        self.db.commit()
        return conflicted

    # Local -> remote

    async def reconcile_local_to_remote(
        self,
        connection: ExternalConnection,
        remote_ids: Set[str],
        clinician_id: str,
        window_start: datetime,
        window_end: datetime,
        summary: Optional[SyncSummary] = None,
        skip_ids: Iterable[str] = (),
    ) -> SyncSummary:
        """
        Push local changes in the window to the connection's calendar.

        Appointments mirrored from another connection are not pushed. Errors
        for individual appointments are recorded and the pass continues.
        """
        summary = summary or SyncSummary()
        skip = set(skip_ids)
        mappings = {m.appointment_id: m for m in self._mappings(connection.id)}
        access_token = await self.refresher.get_access_token(connection)
        provider = self.providers.get(connection.provider)

        for appointment in self.store.list_in_window(clinician_id, window_start, window_end):
            mapping = mappings.get(appointment.id)
            try:
                if mapping is None:
                    if appointment.is_active and appointment.type != EXTERNAL_EVENT_TYPE:
                        await self._create_outbound(provider, connection, access_token, appointment)
                        summary.outbound.created += 1
                    continue

                if mapping.external_event_id in skip:
                    continue
                if not appointment.is_active:
                    if mapping.external_event_id in remote_ids:
                        await provider.delete_event(connection, access_token, mapping.external_event_id)
                        summary.outbound.deleted += 1
                    self.db.delete(mapping)
                    continue
                if mapping.external_event_id not in remote_ids:
                    continue
                if self._local_changed(mapping, appointment):
                    await self._push_update(provider, connection, access_token, appointment, mapping)
                    summary.outbound.updated += 1
            except ProviderFetchError as e:
                logger.warning(f"Outbound sync failed for appointment {appointment.id}: {e.message}")
                summary.add_error(connection.id, OUTBOUND, e)

        self.db.commit()
        return summary

    # Time conflicts

    def detect_time_conflicts(
        self, connection: ExternalConnection, events: List[SyncedEvent], clinician_id: str
    ) -> List[SyncConflict]:
        """
        Record every local blocking appointment that overlaps a blocking external event.

        Mirrors of external events and the event's own mapped appointment are
        ignored. An unresolved conflict for the same pair is not duplicated.
        """
        blocking_events = [
            e for e in events if self.detector.policy.is_blocking(TimeInterval.from_synced_event(e))
        ]
        if not blocking_events:
            return []

        window_start = min(e.start for e in blocking_events)
        window_end = max(e.end for e in blocking_events)
        local = [
            a
            for a in self.store.list_blocking(clinician_id, window_start, window_end)
            if a.type != EXTERNAL_EVENT_TYPE
        ]
        mapped = {(m.appointment_id, m.external_event_id) for m in self._mappings(connection.id)}

        recorded: List[SyncConflict] = []
        for event in blocking_events:
            event_interval = TimeInterval.from_synced_event(event)
            for appointment in local:
                if (appointment.id, event.external_event_id) in mapped:
                    continue
                if not intervals_overlap(TimeInterval.from_appointment(appointment), event_interval):
                    continue
                if self._find_open_conflict(connection.id, appointment.id, event.external_event_id, TIME_CONFLICT):
                    continue
                recorded.append(
                    self._record_conflict(connection, TIME_CONFLICT, appointment, event.external_event_id, event)
                )
        self.db.commit()
        return recorded

    # Conflict resolution

    def list_conflicts(self, clinician_id: str, include_resolved: bool = False) -> List[SyncConflict]:
        stmt = (
            select(SyncConflict)
            .join(ExternalConnection, SyncConflict.connection_id == ExternalConnection.id)
            .where(ExternalConnection.user_id == clinician_id)
            .order_by(SyncConflict.created_at)
        )
        if not include_resolved:
            stmt = stmt.where(SyncConflict.resolved.is_(False))
        return list(self.db.scalars(stmt))

    def get_conflict(self, conflict_id: str) -> Optional[SyncConflict]:
        return self.db.get(SyncConflict, conflict_id)

    def resolve(
        self, conflict: SyncConflict, strategy: str, manual_data: Optional[Dict[str, Any]] = None
    ) -> SyncConflict:
        """
        Resolve a sync conflict.

        `local_wins` keeps the appointment; the next sync pushes it to the
        external calendar. `external_wins` applies the external snapshot (or
        cancels the appointment when the external event is gone).
        `newest_wins` picks whichever side was modified last. `manual`
        applies the caller-provided appointment fields, if any, and marks the
        conflict resolved.

        Raises:
            ValidationError: Unknown strategy or the conflict is already resolved
        """
        if strategy not in RESOLUTION_STRATEGIES:
            raise ValidationError(f"Unknown resolution strategy: {strategy}", field="strategy")
        if conflict.resolved:
            raise ValidationError(f"Conflict {conflict.id} is already resolved")

        appointment = self.store.get(conflict.local_appointment_id) if conflict.local_appointment_id else None
        mapping = self._mapping_for(conflict.connection_id, conflict.external_event_id)

        effective = strategy
        if strategy == "newest_wins":
            effective = self._newest_side(conflict, appointment)

        if effective == "local_wins":
            self._keep_local(conflict, mapping)
        elif effective == "external_wins":
            self._take_external(conflict, appointment, mapping)
        elif effective == "manual" and manual_data and appointment is not None:
            self.store.update(appointment, allow_conflict=True, **manual_data)

        conflict.resolution_strategy = strategy
        conflict.resolved = True
        conflict.resolved_at = utc_now()
        self.db.commit()
        logger.info(f"Resolved {conflict.conflict_type} {conflict.id} with {strategy}")
        return conflict

    def _keep_local(self, conflict: SyncConflict, mapping: Optional[ExternalEventMapping]) -> None:
        if mapping is None:
            return
        if conflict.conflict_type == DELETION_CONFLICT:
            # The remote event is gone; the next outbound pass recreates it
            self.db.delete(mapping)
        elif conflict.conflict_type == DATA_CONFLICT and conflict.external_data:
            # Accept the remote as seen, keep the local change pending for push
            mapping.last_sync_hash = conflict.external_data["hash"]

    def _take_external(
        self,
        conflict: SyncConflict,
        appointment: Optional[Appointment],
        mapping: Optional[ExternalEventMapping],
    ) -> None:
        if appointment is None:
            return
        if conflict.conflict_type == DATA_CONFLICT and conflict.external_data:
            data = conflict.external_data
            appointment.title = data.get("title")
            appointment.notes = data.get("description") or None
            appointment.start_at = datetime.fromisoformat(data["start"])
            appointment.end_at = datetime.fromisoformat(data["end"])
            if mapping is not None:
                mapping.last_sync_hash = data["hash"]
                mapping.last_local_hash = hash_appointment(appointment)
        else:
            self.store.cancel(appointment, reason=f"Resolved {conflict.conflict_type} in favor of external calendar")
            if mapping is not None:
                self.db.delete(mapping)

    @staticmethod
    def _newest_side(conflict: SyncConflict, appointment: Optional[Appointment]) -> str:
        external_updated = (conflict.external_data or {}).get("updated_at")
        if appointment is None:
            return "external_wins"
        if conflict.conflict_type == DELETION_CONFLICT or not external_updated:
            return "local_wins"
        if datetime.fromisoformat(external_updated) > appointment.updated_at:
            return "external_wins"
        return "local_wins"

    # Helpers

    def _mappings(self, connection_id: str) -> List[ExternalEventMapping]:
        stmt = select(ExternalEventMapping).where(ExternalEventMapping.connection_id == connection_id)
        return list(self.db.scalars(stmt))

    def _mapping_for(self, connection_id: str, external_event_id: Optional[str]) -> Optional[ExternalEventMapping]:
        if not external_event_id:
            return None
        stmt = select(ExternalEventMapping).where(
            ExternalEventMapping.connection_id == connection_id,
            ExternalEventMapping.external_event_id == external_event_id,
        )
        return self.db.scalars(stmt).first()

    @staticmethod
    def _local_changed(mapping: ExternalEventMapping, appointment: Appointment) -> bool:
        return mapping.last_local_hash is not None and hash_appointment(appointment) != mapping.last_local_hash

    def _create_inbound(
        self, connection: ExternalConnection, event: SyncedEvent, clinician_id: str, remote_hash: str
    ) -> Appointment:
        appointment = Appointment(
            clinician_id=clinician_id,
            type=EXTERNAL_EVENT_TYPE,
            status=mirror_status(event),
            timezone=event.start_timezone or "UTC",
            conflict_exempt=False,
        )
        self._apply_event(appointment, event)
        self.db.add(appointment)
        self.db.flush()
        self.db.add(
            ExternalEventMapping(
                appointment_id=appointment.id,
                connection_id=connection.id,
                external_event_id=event.external_event_id,
                sync_direction=INBOUND,
                last_sync_hash=remote_hash,
                last_local_hash=hash_appointment(appointment),
            )
        )
        logger.debug(f"Created appointment {appointment.id} for external event {event.external_event_id}")
        return appointment

    @staticmethod
    def _apply_event(appointment: Appointment, event: SyncedEvent) -> None:
        appointment.title = event.title
        appointment.notes = event.description or None
        appointment.start_at = event.start
        appointment.end_at = event.end

    @staticmethod
    def _payload(appointment: Appointment) -> EventPayload:
        return EventPayload(
            title=appointment.title or appointment.client_name or "Appointment",
            description=appointment.notes or "",
            start=appointment.start_at,
            end=appointment.end_at,
            timezone=appointment.timezone,
        )

    def _remote_hash(
        self, provider: CalendarProvider, connection: ExternalConnection, result: Dict[str, Any], payload: EventPayload
    ) -> str:
        event = provider.normalize_event(result, connection) if result else None
        if event is not None:
            return hash_synced_event(event)
        return event_hash(payload.title, payload.start, payload.end, payload.description, payload.location)

    async def _create_outbound(
        self, provider: CalendarProvider, connection: ExternalConnection, access_token: str, appointment: Appointment
    ) -> ExternalEventMapping:
        payload = self._payload(appointment)
        result = await provider.create_event(connection, access_token, payload)
        external_id = str(result.get("id") or "")
        if not external_id:
            raise ProviderFetchError(connection.id, "Provider did not return an event id")
        mapping = ExternalEventMapping(
            appointment_id=appointment.id,
            connection_id=connection.id,
            external_event_id=external_id,
            sync_direction=OUTBOUND,
            last_sync_hash=self._remote_hash(provider, connection, result, payload),
            last_local_hash=hash_appointment(appointment),
        )
        self.db.add(mapping)
        return mapping

    async def _push_update(
        self,
        provider: CalendarProvider,
        connection: ExternalConnection,
        access_token: str,
        appointment: Appointment,
        mapping: ExternalEventMapping,
    ) -> None:
        payload = self._payload(appointment)
        result = await provider.update_event(connection, access_token, mapping.external_event_id, payload)
        mapping.last_sync_hash = self._remote_hash(provider, connection, result, payload)
        mapping.last_local_hash = hash_appointment(appointment)

    def _find_open_conflict(
        self, connection_id: str, appointment_id: Optional[str], external_event_id: str, conflict_type: str
    ) -> Optional[SyncConflict]:
        stmt = select(SyncConflict).where(
            SyncConflict.connection_id == connection_id,
            SyncConflict.local_appointment_id == appointment_id,
            SyncConflict.external_event_id == external_event_id,
            SyncConflict.conflict_type == conflict_type,
            SyncConflict.resolved.is_(False),
        )
        return self.db.scalars(stmt).first()

    def _record_conflict(
        self,
        connection: ExternalConnection,
        conflict_type: str,
        appointment: Optional[Appointment],
        external_event_id: str,
        event: Optional[SyncedEvent],
    ) -> SyncConflict:
        appointment_id = appointment.id if appointment is not None else None
        existing = self._find_open_conflict(connection.id, appointment_id, external_event_id, conflict_type)
        if existing is not None:
            return existing

        conflict = SyncConflict(
            connection_id=connection.id,
            local_appointment_id=appointment_id,
            external_event_id=external_event_id,
            conflict_type=conflict_type,
            local_data=appointment_snapshot(appointment) if appointment is not None else None,
            external_data=event_snapshot(event) if event is not None else None,
            resolution_strategy="manual",
            resolved=False,
        )
        self.db.add(conflict)
        self.db.flush()
        logger.warning(
            f"Recorded {conflict_type} on connection {connection.id}: "
            f"appointment {appointment_id}, external event {external_event_id}"
        )
        return conflict
