"""Sync conflict model recording mismatches found during two-way sync."""

from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import String, Boolean, JSON, ForeignKey, CheckConstraint, Index
from sqlalchemy.orm import Mapped, mapped_column

from core.constants import MAX_STRING_LENGTH
from core.database import Base, UTCDateTime
from models.appointment import new_uuid


class SyncConflict(Base):
    """
    A detected mismatch between local and external state.

    Carries a snapshot of both sides so the conflict can be reviewed and
    resolved after the underlying records changed again.
    """

    __tablename__ = "sync_conflicts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)

    connection_id: Mapped[str] = mapped_column(ForeignKey("external_connections.id", ondelete="CASCADE"))

    local_appointment_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("appointments.id", ondelete="SET NULL"), nullable=True
    )

    external_event_id: Mapped[Optional[str]] = mapped_column(String(MAX_STRING_LENGTH), nullable=True)

    conflict_type: Mapped[str] = mapped_column(String(30))
    """
    - 'time_conflict': a local blocking appointment overlaps an external event
    - 'data_conflict': both sides changed since the last sync
    - 'deletion_conflict': one side deleted what the other side edited
    """

    local_data: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    external_data: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)

    resolution_strategy: Mapped[str] = mapped_column(String(20), default="manual")
    """One of 'local_wins', 'external_wins', 'manual', 'newest_wins'."""

    resolved: Mapped[bool] = mapped_column(Boolean, default=False)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "conflict_type IN ('time_conflict', 'data_conflict', 'deletion_conflict')",
            name="check_sync_conflict_type",
        ),
        CheckConstraint(
            "resolution_strategy IN ('local_wins', 'external_wins', 'manual', 'newest_wins')",
            name="check_sync_conflict_strategy",
        ),
        Index("idx_sync_conflicts_connection_resolved", "connection_id", "resolved"),
    )

    def __repr__(self) -> str:
        return f"<SyncConflict(id={self.id}, type={self.conflict_type}, resolved={self.resolved})>"
