"""
Error taxonomy for calendar synchronization.

Every error raised by the sync core carries a `kind` tag so callers can
branch on the category instead of matching message text. Errors local to
one unit of work (one connection, one import record) are collected by the
caller; errors that invalidate a whole operation propagate.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    AUTH_REFRESH = "auth_refresh"
    PROVIDER_FETCH = "provider_fetch"
    VALIDATION = "validation"
    IMPORT_RECORD = "import_record"
    CONFLICT = "conflict"


class CalendarSyncError(Exception):
    """Base class for all tagged calendar sync errors."""

    kind: ErrorKind

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def details(self) -> Dict[str, Any]:
        """Extra structured fields for this error kind."""
        return {}

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"kind": self.kind.value, "message": self.message}
        data.update(self.details())
        return data


class AuthRefreshError(CalendarSyncError):
    """
    The provider rejected the refresh token.

    The connection has been deactivated; the user must reconnect the calendar.
    """

    kind = ErrorKind.AUTH_REFRESH
    user_message = "Your calendar connection has expired. Please reconnect your calendar."

    def __init__(self, connection_id: str, message: Optional[str] = None) -> None:
        super().__init__(message or f"Token refresh rejected for connection {connection_id}")
        self.connection_id = connection_id

    def details(self) -> Dict[str, Any]:
        return {
            "connection_id": self.connection_id,
            "reconnect_required": True,
            "user_message": self.user_message,
        }


class ProviderFetchError(CalendarSyncError):
    """Transient network or provider failure for a single connection."""

    kind = ErrorKind.PROVIDER_FETCH

    def __init__(self, connection_id: str, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.connection_id = connection_id
        self.status_code = status_code

    def details(self) -> Dict[str, Any]:
        return {"connection_id": self.connection_id, "status_code": self.status_code}


class ValidationError(CalendarSyncError):
    """Malformed input to a create/update operation. Never retried."""

    kind = ErrorKind.VALIDATION

    def __init__(self, message: str, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.field = field

    def details(self) -> Dict[str, Any]:
        return {"field": self.field} if self.field else {}


class InvalidTransitionError(ValidationError):
    """Illegal sync status transition for an availability slot."""

    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"Cannot transition sync status from '{current}' to '{target}'", field="sync_status")
        self.current = current
        self.target = target


class ImportRecordError(CalendarSyncError):
    """A single malformed record inside an import file."""

    kind = ErrorKind.IMPORT_RECORD

    def __init__(self, index: int, message: str, record: Any = None) -> None:
        super().__init__(message)
        self.index = index
        self.record = record

    def details(self) -> Dict[str, Any]:
        return {"index": self.index, "record": self.record}


class ConflictDetected(CalendarSyncError):
    """
    A proposed write overlaps a blocking interval.

    Not strictly a failure: the write is held back until the conflict is
    resolved or explicitly overridden.
    """

    kind = ErrorKind.CONFLICT

    def __init__(self, conflict: Any, message: Optional[str] = None) -> None:
        super().__init__(message or "Proposed time overlaps an existing blocking interval")
        self.conflict = conflict

    def details(self) -> Dict[str, Any]:
        to_dict = getattr(self.conflict, "to_dict", None)
        return {"conflict": to_dict() if callable(to_dict) else self.conflict}
