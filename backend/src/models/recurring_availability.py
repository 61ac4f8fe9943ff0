"""
Recurring availability models.

A clinician's standing weekly availability is up to three slots per day of
week. Each slot carries a sync status row per external connection that
tracks whether the slot has been pushed to the external calendar.
"""

from datetime import datetime, time
from typing import Optional

from sqlalchemy import String, Text, Integer, Boolean, Time, ForeignKey, UniqueConstraint, CheckConstraint, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.constants import MAX_STRING_LENGTH
from core.database import Base, UTCDateTime
from models.appointment import new_uuid


class RecurringAvailabilitySlot(Base):
    """
    Weekly-recurring availability interval for a clinician.

    Start and end are local wall-clock times in `timezone`; they are
    converted to absolute instants per concrete date when expanded.
    """

    __tablename__ = "recurring_availability_slots"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)

    clinician_id: Mapped[str] = mapped_column(String(36), index=True)

    day_of_week: Mapped[str] = mapped_column(String(10))
    """Lowercase day name, 'monday' through 'sunday'."""

    slot_number: Mapped[int] = mapped_column(Integer)
    """Position of the slot within the day, 1 to 3."""

    start_time: Mapped[time] = mapped_column(Time)
    end_time: Mapped[time] = mapped_column(Time)

    timezone: Mapped[str] = mapped_column(String(64))
    """IANA zone the wall-clock times are expressed in."""

    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    """False once the clinician removed the slot. Kept until the removal is synced."""

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    sync_statuses = relationship("AvailabilitySyncStatus", back_populates="slot", cascade="all, delete-orphan")

    __table_args__ = (
        UniqueConstraint("clinician_id", "day_of_week", "slot_number", name="uq_slot_clinician_day_number"),
        CheckConstraint("slot_number BETWEEN 1 AND 3", name="check_slot_number_range"),
        CheckConstraint(
            "day_of_week IN ('monday', 'tuesday', 'wednesday', 'thursday', 'friday', 'saturday', 'sunday')",
            name="check_slot_day_of_week",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<RecurringAvailabilitySlot(clinician_id={self.clinician_id}, day={self.day_of_week}, "
            f"slot={self.slot_number}, {self.start_time}-{self.end_time} {self.timezone})>"
        )


class AvailabilitySyncStatus(Base):
    """
    External sync state of one availability slot against one connection.

    Transitions are enforced by the availability reconciler:
    pending -> synced | failed, synced -> conflict | pending,
    failed -> pending, conflict -> pending (manual resolution only).
    """

    __tablename__ = "availability_sync_status"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)

    slot_id: Mapped[str] = mapped_column(ForeignKey("recurring_availability_slots.id", ondelete="CASCADE"))

    connection_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("external_connections.id", ondelete="CASCADE"), nullable=True
    )
    """Target connection. Null until the clinician links a calendar."""

    sync_status: Mapped[str] = mapped_column(String(20), default="pending")

    pending_action: Mapped[str] = mapped_column(String(10), default="upsert")
    """What the next push must do: 'upsert' the external event or 'remove' it."""

    external_event_id: Mapped[Optional[str]] = mapped_column(String(MAX_STRING_LENGTH), nullable=True)

    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_synced_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    slot = relationship("RecurringAvailabilitySlot", back_populates="sync_statuses")

    __table_args__ = (
        UniqueConstraint("slot_id", "connection_id", name="uq_sync_status_slot_connection"),
        CheckConstraint(
            "sync_status IN ('pending', 'synced', 'failed', 'conflict')",
            name="check_sync_status_value",
        ),
        CheckConstraint("pending_action IN ('upsert', 'remove')", name="check_sync_pending_action"),
        Index("idx_sync_status_status", "sync_status"),
    )

    def __repr__(self) -> str:
        return f"<AvailabilitySyncStatus(slot_id={self.slot_id}, status={self.sync_status}, action={self.pending_action})>"
