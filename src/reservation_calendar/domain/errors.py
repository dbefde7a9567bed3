"""Error taxonomy for reservation editing."""

from __future__ import annotations

import math
from datetime import datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from reservation_calendar.domain.availability import SchedulingConflictEntry
    from reservation_calendar.domain.conflicts import ConflictReport
    from reservation_calendar.domain.records import ReservationRecord


class ReservationError(Exception):
    """Base class for all reservation core errors.

    ``committed`` is set when an earlier write of a multi-write operation
    already landed, so callers can adopt the record it produced.
    """

    committed: ReservationRecord | None = None


class ValidationError(ReservationError):
    """Input rejected locally before any network call."""

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class RecordNotFound(ReservationError):
    """The requested record does not exist."""

    def __init__(self, record_id: str) -> None:
        super().__init__(f"Reservation {record_id} not found")
        self.record_id = record_id


class InvalidTransition(ValidationError):
    """The lifecycle does not allow this action from the current status."""

    def __init__(self, status: str, action: str) -> None:
        super().__init__(f"Cannot {action} a record in status {status!r}")
        self.status = status
        self.action = action


class VersionConflict(ReservationError):
    """A write presented a stale version token."""

    def __init__(self, report: ConflictReport) -> None:
        super().__init__(
            "This reservation was modified by another user. "
            "Discard your changes or reload the latest version."
        )
        self.report = report


class SchedulingConflict(ReservationError):
    """The requested rooms and times collide with approved bookings."""

    def __init__(self, conflicts: list[SchedulingConflictEntry]) -> None:
        super().__init__(
            f"Cannot approve: {len(conflicts)} scheduling conflict(s) detected."
        )
        self.conflicts = conflicts


class LockUnavailable(ReservationError):
    """Another reviewer currently holds the review lock."""

    def __init__(self, record_id: str, holder: str, expires_at: datetime) -> None:
        super().__init__(f"Reservation {record_id} is being reviewed by {holder}")
        self.record_id = record_id
        self.holder = holder
        self.expires_at = expires_at

    def minutes_remaining(self, now: datetime) -> int:
        """Whole minutes until the other reviewer's hold lapses."""
        seconds = (self.expires_at - now).total_seconds()
        return max(0, math.ceil(seconds / 60))


class TransportError(ReservationError):
    """A collaborator could not be reached or answered with a failure."""


class SessionStateError(ReservationError):
    """The edit session is not in a state that allows the operation."""


class SessionNotFound(ReservationError):
    """No edit session is registered under the given id."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Edit session {session_id} not found")
        self.session_id = session_id
