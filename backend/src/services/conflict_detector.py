"""
Conflict and overlap detection on absolute time intervals.

Intervals are half-open: [start, end). Two intervals conflict iff
`a.start < b.end and a.end > b.start`, compared on timezone-aware UTC
instants, so intervals declared in different zones or across DST changes
compare correctly and touching endpoints never conflict.

Which candidates may block a proposed interval is decided by a
`BlockingPolicy`. The default policy blocks on blocked time, scheduled or
confirmed appointments, and external events that are neither tentative nor
cancelled.
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Optional

from core.constants import (
    ADJACENT_GAP_MINUTES,
    BLOCKED_TIME_TYPE,
    SUGGESTION_DAY_END_HOUR,
    SUGGESTION_DAY_START_HOUR,
    SUGGESTION_NEXT_DAY_STEP_MINUTES,
    SUGGESTION_SAME_DAY_STEP_MINUTES,
)
from models import Appointment
from services.calendar_providers import SyncedEvent
from utils.datetime_utils import ensure_utc, localize, to_zone

logger = logging.getLogger(__name__)


class IntervalKind(str, Enum):
    APPOINTMENT = "appointment"
    BLOCKED_TIME = "blocked_time"
    EXTERNAL_EVENT = "external_event"
    AVAILABILITY = "availability"
    PROPOSED = "proposed"


class ConflictType(str, Enum):
    OVERLAP = "overlap"
    CONTAINS = "contains"
    CONTAINED = "contained"
    BACK_TO_BACK = "back_to_back"
    ADJACENT = "adjacent"


# Relations that make two intervals conflict. The others are informational.
OVERLAPPING_TYPES = frozenset({ConflictType.OVERLAP, ConflictType.CONTAINS, ConflictType.CONTAINED})


@dataclass(frozen=True)
class TimeInterval:
    """An absolute [start, end) interval with the metadata the blocking policy needs."""

    start: datetime
    end: datetime
    kind: str = IntervalKind.APPOINTMENT.value
    source_id: Optional[str] = None
    status: Optional[str] = None
    label: Optional[str] = None

    def __post_init__(self) -> None:
        start = ensure_utc(self.start)
        end = ensure_utc(self.end)
        if start is None or end is None:
            raise ValueError("Interval start and end are required")
        if end < start:
            raise ValueError(f"Interval end {end.isoformat()} is before start {start.isoformat()}")
        object.__setattr__(self, "start", start)
        object.__setattr__(self, "end", end)

    @classmethod
    def from_local(
        cls, day: date, start_time: time, end_time: time, tz_name: str, **kwargs: Any
    ) -> "TimeInterval":
        """Build an interval from local wall-clock times in an IANA zone."""
        return cls(start=localize(day, start_time, tz_name), end=localize(day, end_time, tz_name), **kwargs)

    @classmethod
    def from_appointment(cls, appointment: Appointment) -> "TimeInterval":
        kind = IntervalKind.BLOCKED_TIME if appointment.type == BLOCKED_TIME_TYPE else IntervalKind.APPOINTMENT
        return cls(
            start=appointment.start_at,
            end=appointment.end_at,
            kind=kind.value,
            source_id=appointment.id,
            status=appointment.status,
            label=appointment.title or appointment.type,
        )

    @classmethod
    def from_synced_event(cls, event: SyncedEvent) -> "TimeInterval":
        return cls(
            start=event.start,
            end=event.end,
            kind=IntervalKind.EXTERNAL_EVENT.value,
            source_id=event.external_event_id,
            status=event.status,
            label=event.title,
        )

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def to_dict(self) -> Dict[str, Any]:
        return {
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "kind": self.kind,
            "source_id": self.source_id,
            "status": self.status,
            "label": self.label,
        }


def intervals_overlap(a: TimeInterval, b: TimeInterval) -> bool:
    """Half-open overlap test. Touching endpoints do not overlap."""
    return a.start < b.end and a.end > b.start


def overlap_minutes(a: TimeInterval, b: TimeInterval) -> float:
    start = max(a.start, b.start)
    end = min(a.end, b.end)
    if end <= start:
        return 0.0
    return (end - start).total_seconds() / 60


def classify(a: TimeInterval, b: TimeInterval, adjacent_gap_minutes: int = ADJACENT_GAP_MINUTES) -> Optional[ConflictType]:
    """
    Describe how `a` relates to `b`.

    Returns an overlapping type (overlap / contains / contained) when the
    intervals overlap, back_to_back when they touch, adjacent when separated
    by a small gap, otherwise None.
    """
    if intervals_overlap(a, b):
        if a.start == b.start and a.end == b.end:
            return ConflictType.OVERLAP
        if a.start <= b.start and a.end >= b.end:
            return ConflictType.CONTAINS
        if b.start <= a.start and b.end >= a.end:
            return ConflictType.CONTAINED
        return ConflictType.OVERLAP

    if a.end == b.start or b.end == a.start:
        return ConflictType.BACK_TO_BACK

    gap = min(abs(a.start - b.end), abs(b.start - a.end))
    if gap <= timedelta(minutes=adjacent_gap_minutes):
        return ConflictType.ADJACENT
    return None


@dataclass(frozen=True)
class BlockingPolicy:
    """
    Decides which candidate intervals can block a proposed interval.

    Tentative and cancelled external events are excluded by default; pass a
    different `excluded_external_statuses` to make them block.
    """

    blocking_kinds: FrozenSet[str] = frozenset(
        {IntervalKind.APPOINTMENT.value, IntervalKind.BLOCKED_TIME.value, IntervalKind.EXTERNAL_EVENT.value}
    )
    blocking_appointment_statuses: FrozenSet[str] = frozenset({"scheduled", "confirmed"})
    excluded_external_statuses: FrozenSet[str] = frozenset({"tentative", "cancelled"})

    def is_blocking(self, interval: TimeInterval) -> bool:
        if interval.kind not in self.blocking_kinds:
            return False
        if interval.kind == IntervalKind.EXTERNAL_EVENT.value:
            return (interval.status or "confirmed") not in self.excluded_external_statuses
        return interval.status is None or interval.status in self.blocking_appointment_statuses


DEFAULT_POLICY = BlockingPolicy()


@dataclass(frozen=True)
class Conflict:
    proposed: TimeInterval
    candidate: TimeInterval
    conflict_type: ConflictType
    overlap_minutes: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "conflict_type": self.conflict_type.value,
            "overlap_minutes": self.overlap_minutes,
            "proposed": self.proposed.to_dict(),
            "with": self.candidate.to_dict(),
        }


@dataclass(frozen=True)
class ConflictResult:
    conflict: bool
    with_: Optional[TimeInterval] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"conflict": self.conflict, "with": self.with_.to_dict() if self.with_ else None}


@dataclass
class ConflictDetector:
    """Checks proposed intervals against candidate intervals under a blocking policy."""

    policy: BlockingPolicy = field(default_factory=BlockingPolicy)

    def _blocking_candidates(self, proposed: TimeInterval, candidates: Iterable[TimeInterval]) -> Iterable[TimeInterval]:
        for candidate in candidates:
            if proposed.source_id is not None and candidate.source_id == proposed.source_id:
                # Same record being updated
                continue
            if self.policy.is_blocking(candidate):
                yield candidate

    def has_conflict(self, proposed: TimeInterval, candidates: Iterable[TimeInterval]) -> ConflictResult:
        """Return the first blocking candidate overlapping `proposed`."""
        for candidate in self._blocking_candidates(proposed, candidates):
            if intervals_overlap(proposed, candidate):
                return ConflictResult(conflict=True, with_=candidate)
        return ConflictResult(conflict=False)

    def find_all_conflicts(self, proposed: TimeInterval, candidates: Iterable[TimeInterval]) -> List[Conflict]:
        """Enumerate every blocking candidate overlapping `proposed`."""
        conflicts: List[Conflict] = []
        for candidate in self._blocking_candidates(proposed, candidates):
            relation = classify(proposed, candidate)
            if relation in OVERLAPPING_TYPES:
                conflicts.append(
                    Conflict(
                        proposed=proposed,
                        candidate=candidate,
                        conflict_type=relation,
                        overlap_minutes=overlap_minutes(proposed, candidate),
                    )
                )
        return conflicts

    def find_overlapping_pairs(self, intervals: List[TimeInterval]) -> List[Conflict]:
        """All overlapping pairs among blocking intervals, each pair reported once."""
        blocking = sorted((i for i in intervals if self.policy.is_blocking(i)), key=lambda i: (i.start, i.end))
        conflicts: List[Conflict] = []
        for index, current in enumerate(blocking):
            for other in blocking[index + 1:]:
                if other.start >= current.end:
                    break
                relation = classify(current, other)
                if relation in OVERLAPPING_TYPES:
                    conflicts.append(Conflict(current, other, relation, overlap_minutes(current, other)))
        return conflicts

    def suggest_alternative_times(
        self,
        proposed: TimeInterval,
        candidates: List[TimeInterval],
        tz_name: str,
        max_suggestions: int = 5,
    ) -> List[TimeInterval]:
        """
        Suggest conflict-free slots of the same duration.

        Tries 15-minute steps within business hours on the proposed day, then
        30-minute steps on the following day. Business hours are local to
        `tz_name`.
        """
        duration = proposed.duration
        local_day = to_zone(proposed.start, tz_name).date()
        suggestions: List[TimeInterval] = []

        passes = (
            (local_day, SUGGESTION_SAME_DAY_STEP_MINUTES),
            (local_day + timedelta(days=1), SUGGESTION_NEXT_DAY_STEP_MINUTES),
        )
        for day, step in passes:
            day_end = localize(day, time(SUGGESTION_DAY_END_HOUR), tz_name)
            minutes = SUGGESTION_DAY_START_HOUR * 60
            while minutes < SUGGESTION_DAY_END_HOUR * 60 and len(suggestions) < max_suggestions:
                start = localize(day, time(minutes // 60, minutes % 60), tz_name)
                minutes += step
                end = start + duration
                if start == proposed.start or end > day_end:
                    continue
                candidate = replace(proposed, start=start, end=end)
                if not self.has_conflict(candidate, candidates).conflict:
                    suggestions.append(candidate)
            if len(suggestions) >= max_suggestions:
                break

        return suggestions
