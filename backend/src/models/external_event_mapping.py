"""Mapping between local appointments and events in external calendars."""

from datetime import datetime
from typing import Optional

from sqlalchemy import String, ForeignKey, UniqueConstraint, CheckConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.constants import MAX_STRING_LENGTH
from core.database import Base, UTCDateTime
from models.appointment import new_uuid


class ExternalEventMapping(Base):
    """
    Links one appointment to one external event on one connection.

    `last_sync_hash` and `last_local_hash` are content hashes of the two
    sides as of the last successful sync in either direction. A side whose
    current hash differs from its stored one changed since then.
    """

    __tablename__ = "external_calendar_mappings"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)

    appointment_id: Mapped[str] = mapped_column(ForeignKey("appointments.id", ondelete="CASCADE"), index=True)
    connection_id: Mapped[str] = mapped_column(ForeignKey("external_connections.id", ondelete="CASCADE"), index=True)

    external_event_id: Mapped[str] = mapped_column(String(MAX_STRING_LENGTH))

    sync_direction: Mapped[str] = mapped_column(String(10))
    """'inbound' when the event originated externally, 'outbound' when pushed from local."""

    last_sync_hash: Mapped[str] = mapped_column(String(64))
    """Hash of the external event as of the last sync."""

    last_local_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    """Hash of the local appointment as of the last sync."""

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    appointment = relationship("Appointment", back_populates="external_mappings")
    connection = relationship("ExternalConnection", back_populates="mappings")

    __table_args__ = (
        UniqueConstraint("connection_id", "external_event_id", name="uq_mapping_connection_event"),
        CheckConstraint("sync_direction IN ('inbound', 'outbound')", name="check_mapping_direction"),
    )

    def __repr__(self) -> str:
        return f"<ExternalEventMapping(appointment_id={self.appointment_id}, external_event_id={self.external_event_id})>"
