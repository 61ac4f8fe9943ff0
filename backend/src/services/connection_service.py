"""
External connection management.

Owns the lifecycle of linked external calendar accounts: storing encrypted
tokens, activation state, and the per-connection circuit breaker that stops
a repeatedly failing connection from being hammered on every sync.
"""

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from core.constants import CIRCUIT_FAILURE_THRESHOLD, CIRCUIT_OPEN_TIMEOUT
from core.errors import ValidationError
from models import ExternalConnection
from services.encryption_service import EncryptionService, get_encryption_service
from utils.datetime_utils import ensure_utc, utc_now

logger = logging.getLogger(__name__)

SUPPORTED_PROVIDERS = ("nylas", "google")

CIRCUIT_CLOSED = "closed"
CIRCUIT_OPEN = "open"
CIRCUIT_HALF_OPEN = "half_open"


class ConnectionService:
    """Service for reading and mutating external calendar connections."""

    def __init__(self, db: Session, encryption: Optional[EncryptionService] = None) -> None:
        self.db = db
        self.encryption = encryption or get_encryption_service()

    def create_connection(
        self,
        user_id: str,
        provider: str,
        access_token: str,
        refresh_token: Optional[str],
        token_expires_at: Optional[datetime],
        grant_id: Optional[str] = None,
        email: Optional[str] = None,
        calendar_ids: Optional[List[str]] = None,
    ) -> ExternalConnection:
        """
        Store a newly linked calendar account.

        Raises:
            ValidationError: If the provider is unsupported or the access token is empty
        """
        if provider not in SUPPORTED_PROVIDERS:
            raise ValidationError(f"Unsupported provider: {provider}", field="provider")
        if not access_token:
            raise ValidationError("Access token is required", field="access_token")

        connection = ExternalConnection(
            user_id=user_id,
            provider=provider,
            grant_id=grant_id,
            email=email,
            calendar_ids=calendar_ids or [],
            access_token_encrypted=self.encryption.encrypt_text(access_token),
            refresh_token_encrypted=self.encryption.encrypt_text(refresh_token) if refresh_token else None,
            token_expires_at=ensure_utc(token_expires_at),
            is_active=True,
            consecutive_failures=0,
            circuit_breaker_state=CIRCUIT_CLOSED,
        )
        self.db.add(connection)
        self.db.commit()
        logger.info(f"Created {provider} connection {connection.id} for user {user_id}")
        return connection

    def get_connection(self, connection_id: str) -> Optional[ExternalConnection]:
        return self.db.get(ExternalConnection, connection_id)

    def reload(self, connection: ExternalConnection) -> ExternalConnection:
        """Re-read the connection row so concurrent updates are visible."""
        self.db.refresh(connection)
        return connection

    def list_connections(self, user_id: str) -> List[ExternalConnection]:
        stmt = select(ExternalConnection).where(ExternalConnection.user_id == user_id).order_by(ExternalConnection.created_at)
        return list(self.db.scalars(stmt))

    def list_active_connections(self, user_id: str) -> List[ExternalConnection]:
        stmt = (
            select(ExternalConnection)
            .where(ExternalConnection.user_id == user_id, ExternalConnection.is_active.is_(True))
            .order_by(ExternalConnection.created_at)
        )
        return list(self.db.scalars(stmt))

    def users_with_active_connections(self) -> List[str]:
        stmt = select(ExternalConnection.user_id).where(ExternalConnection.is_active.is_(True)).distinct()
        return list(self.db.scalars(stmt))

    def get_access_token(self, connection: ExternalConnection) -> str:
        return self.encryption.decrypt_text(connection.access_token_encrypted)

    def get_refresh_token(self, connection: ExternalConnection) -> Optional[str]:
        if not connection.refresh_token_encrypted:
            return None
        return self.encryption.decrypt_text(connection.refresh_token_encrypted)

    def update_tokens(
        self,
        connection: ExternalConnection,
        access_token: str,
        token_expires_at: datetime,
        refresh_token: Optional[str] = None,
    ) -> ExternalConnection:
        """Persist a refreshed access token. The refresh token is only replaced when the provider rotated it."""
        connection.access_token_encrypted = self.encryption.encrypt_text(access_token)
        if refresh_token:
            connection.refresh_token_encrypted = self.encryption.encrypt_text(refresh_token)
        connection.token_expires_at = ensure_utc(token_expires_at)
        connection.last_error = None
        self.db.commit()
        return connection

    def deactivate(self, connection: ExternalConnection, reason: str) -> None:
        """Mark a connection inactive. The user has to reconnect the calendar."""
        connection.is_active = False
        connection.last_error = reason
        self.db.commit()
        logger.warning(f"Deactivated connection {connection.id}: {reason}")

    def reactivate(
        self,
        connection: ExternalConnection,
        access_token: str,
        refresh_token: Optional[str],
        token_expires_at: datetime,
    ) -> ExternalConnection:
        """Re-link a previously deactivated connection with fresh tokens."""
        connection.is_active = True
        connection.consecutive_failures = 0
        connection.circuit_breaker_state = CIRCUIT_CLOSED
        connection.circuit_last_tripped_at = None
        return self.update_tokens(connection, access_token, token_expires_at, refresh_token)

    def record_error(self, connection: ExternalConnection, message: str) -> None:
        connection.last_error = message
        self.db.commit()

    # Circuit breaker

    def allow_request(self, connection: ExternalConnection, now: Optional[datetime] = None) -> bool:
        """
        Check the circuit breaker before working on a connection.

        An open circuit blocks requests until the open timeout has elapsed,
        then moves to half-open and lets one attempt through.
        """
        if connection.circuit_breaker_state != CIRCUIT_OPEN:
            return True

        now = now or utc_now()
        tripped_at = connection.circuit_last_tripped_at
        if tripped_at is not None and now - tripped_at < CIRCUIT_OPEN_TIMEOUT:
            logger.info(
                f"Circuit is OPEN for connection {connection.id}; skipping until {tripped_at + CIRCUIT_OPEN_TIMEOUT}"
            )
            return False

        logger.info(f"Circuit breaker timeout elapsed for connection {connection.id}. Moving to HALF-OPEN")
        connection.circuit_breaker_state = CIRCUIT_HALF_OPEN
        self.db.commit()
        return True

    def record_success(self, connection: ExternalConnection, now: Optional[datetime] = None) -> None:
        if connection.consecutive_failures or connection.circuit_breaker_state != CIRCUIT_CLOSED:
            logger.info(f"Sync succeeded for connection {connection.id}. Resetting circuit breaker to CLOSED")
        connection.consecutive_failures = 0
        connection.circuit_breaker_state = CIRCUIT_CLOSED
        connection.last_error = None
        connection.last_synced_at = now or utc_now()
        self.db.commit()

    def record_failure(self, connection: ExternalConnection, message: str, now: Optional[datetime] = None) -> None:
        connection.consecutive_failures = (connection.consecutive_failures or 0) + 1
        connection.last_error = message
        if (
            connection.consecutive_failures >= CIRCUIT_FAILURE_THRESHOLD
            or connection.circuit_breaker_state == CIRCUIT_HALF_OPEN
        ):
            logger.warning(
                f"Opening circuit for connection {connection.id} after {connection.consecutive_failures} failures"
            )
            connection.circuit_breaker_state = CIRCUIT_OPEN
            connection.circuit_last_tripped_at = now or utc_now()
        self.db.commit()
