"""Domain models for review holds."""

import math
from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class LeaseStatus(str, Enum):
    """Coarse urgency of a hold's remaining lease."""

    ACTIVE = "active"
    WARNING = "warning"
    CRITICAL = "critical"
    EXPIRED = "expired"


@dataclass(frozen=True)
class ReviewHold:
    """A time-leased advisory lock taken while reviewing a record."""

    record_id: str
    holder: str
    expires_at: datetime

    def minutes_remaining(self, now: datetime) -> int:
        """Whole minutes left on the lease, rounded up."""
        return max(0, math.ceil((self.expires_at - now).total_seconds() / 60))

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass(frozen=True)
class HoldRefusal:
    """Returned by the lock service when someone else holds the record."""

    record_id: str
    holder: str
    expires_at: datetime


def lease_status(minutes_remaining: int) -> LeaseStatus:
    """Classify remaining lease minutes for user warnings."""
    if minutes_remaining <= 0:
        return LeaseStatus.EXPIRED
    if minutes_remaining > 10:
        return LeaseStatus.ACTIVE
    if minutes_remaining >= 5:
        return LeaseStatus.WARNING
    return LeaseStatus.CRITICAL
