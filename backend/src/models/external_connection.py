"""
External calendar connection model.

One row per linked external calendar account. OAuth tokens are stored
encrypted with the application's Fernet key and decrypted only by the
connection service right before a provider call.
"""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import String, Text, Boolean, Integer, JSON, Index, CheckConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.constants import MAX_STRING_LENGTH
from core.database import Base, UTCDateTime
from models.appointment import new_uuid


class ExternalConnection(Base):
    """
    A linked external calendar account owned by a user.

    An active connection must carry a non-expired access token before it is
    used; the token refresher renews it otherwise.
    """

    __tablename__ = "external_connections"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)

    user_id: Mapped[str] = mapped_column(String(36), index=True)
    """Owning user (the clinician)."""

    provider: Mapped[str] = mapped_column(String(50))
    """Provider identifier: 'nylas' or 'google'."""

    grant_id: Mapped[Optional[str]] = mapped_column(String(MAX_STRING_LENGTH), nullable=True)
    """Provider-side grant/account id used in API paths. Falls back to id."""

    email: Mapped[Optional[str]] = mapped_column(String(MAX_STRING_LENGTH), nullable=True)

    calendar_ids: Mapped[Optional[List[str]]] = mapped_column(JSON, nullable=True)
    """Calendars to read/write. First entry is the write target; empty means primary."""

    access_token_encrypted: Mapped[str] = mapped_column(Text)
    refresh_token_encrypted: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    token_expires_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    """Access token expiry. Null is treated as already expired."""

    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Circuit breaker
    consecutive_failures: Mapped[int] = mapped_column(Integer, default=0)
    circuit_breaker_state: Mapped[str] = mapped_column(String(20), default="closed")
    """One of 'closed', 'open', 'half_open'."""
    circuit_last_tripped_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    last_synced_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    mappings = relationship("ExternalEventMapping", back_populates="connection", cascade="all, delete-orphan")

    __table_args__ = (
        CheckConstraint("provider IN ('nylas', 'google')", name="check_connection_provider"),
        CheckConstraint(
            "circuit_breaker_state IN ('closed', 'open', 'half_open')",
            name="check_circuit_breaker_state",
        ),
        Index("idx_external_connections_user_active", "user_id", "is_active"),
    )

    @property
    def provider_account_id(self) -> str:
        return self.grant_id or self.id

    @property
    def primary_calendar_id(self) -> Optional[str]:
        return self.calendar_ids[0] if self.calendar_ids else None

    def __repr__(self) -> str:
        return f"<ExternalConnection(id={self.id}, user_id={self.user_id}, provider={self.provider}, active={self.is_active})>"
