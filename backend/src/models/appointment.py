"""
Appointment model representing a scheduled interval on a clinician's calendar.

Appointments cover ordinary client sessions, internal blocked time (which
uses a placeholder client) and events imported from external calendars.
"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import String, Text, Boolean, Index, CheckConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.constants import BLOCKED_TIME_TYPE, MAX_STRING_LENGTH, MAX_TITLE_LENGTH
from core.database import Base, UTCDateTime


APPOINTMENT_STATUSES = (
    "scheduled",
    "confirmed",
    "pending",
    "cancelled",
    "hidden",
    "completed",
    "no_show",
    "rescheduled",
)

# Statuses that no longer occupy the clinician's time
INACTIVE_STATUSES = ("cancelled", "hidden", "no_show", "rescheduled")


def new_uuid() -> str:
    return str(uuid.uuid4())


class Appointment(Base):
    """
    A scheduled interval between a clinician and a client.

    Blocked time is stored as an appointment with the placeholder client id
    and type 'blocked_time'. It is a conflict source like any confirmed
    appointment, never conflict-exempt.
    """

    __tablename__ = "appointments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    """UUID of the appointment."""

    clinician_id: Mapped[str] = mapped_column(String(36), index=True)
    """Clinician who owns this appointment."""

    client_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    """Client attending the appointment. Placeholder id for blocked time, null for external events."""

    client_first_name: Mapped[Optional[str]] = mapped_column(String(MAX_STRING_LENGTH), nullable=True)
    client_last_name: Mapped[Optional[str]] = mapped_column(String(MAX_STRING_LENGTH), nullable=True)
    client_email: Mapped[Optional[str]] = mapped_column(String(MAX_STRING_LENGTH), nullable=True)
    client_phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    title: Mapped[Optional[str]] = mapped_column(String(MAX_TITLE_LENGTH), nullable=True)
    """Display title. Used for imported and externally synced events."""

    start_at: Mapped[datetime] = mapped_column(UTCDateTime)
    """Start instant (UTC)."""

    end_at: Mapped[datetime] = mapped_column(UTCDateTime)
    """End instant (UTC). Strictly after start_at."""

    timezone: Mapped[str] = mapped_column(String(64), default="UTC")
    """IANA zone the appointment was declared in. Used for display only."""

    type: Mapped[str] = mapped_column(String(100), default="appointment")
    """
    Appointment type. Notable values:
    - 'blocked_time': clinician-blocked interval
    - 'external_event': created from an external calendar event
    """

    status: Mapped[str] = mapped_column(String(20), default="scheduled")
    """Status, one of APPOINTMENT_STATUSES."""

    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    recurring_group_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    """Groups occurrences created from one recurring booking."""

    conflict_exempt: Mapped[bool] = mapped_column(Boolean, default=False)
    """
    When true this appointment may overlap others. Explicit opt-in only;
    blocked time is never exempt.
    """

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    # Relationships
    external_mappings = relationship(
        "ExternalEventMapping",
        back_populates="appointment",
        cascade="all, delete-orphan",
    )
    """Links to events in external calendars."""

    __table_args__ = (
        CheckConstraint("end_at > start_at", name="check_appointment_end_after_start"),
        CheckConstraint(
            "status IN ('scheduled', 'confirmed', 'pending', 'cancelled', 'hidden', "
            "'completed', 'no_show', 'rescheduled')",
            name="check_appointment_status",
        ),
        Index("idx_appointments_clinician_start", "clinician_id", "start_at"),
        Index("idx_appointments_clinician_status", "clinician_id", "status"),
    )

    @property
    def is_blocked_time(self) -> bool:
        return self.type == BLOCKED_TIME_TYPE

    @property
    def is_active(self) -> bool:
        """Whether the appointment still occupies the clinician's time."""
        return self.status not in INACTIVE_STATUSES

    @property
    def client_name(self) -> Optional[str]:
        parts = [p for p in (self.client_first_name, self.client_last_name) if p]
        return " ".join(parts) if parts else None

    @property
    def duration_minutes(self) -> int:
        return int((self.end_at - self.start_at).total_seconds() // 60)

    def __repr__(self) -> str:
        return (
            f"<Appointment(id={self.id}, clinician_id={self.clinician_id}, type={self.type}, "
            f"status={self.status}, start_at={self.start_at}, end_at={self.end_at})>"
        )
