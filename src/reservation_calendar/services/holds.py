"""Review holds: best-effort advisory locks taken during review."""

import logging
from dataclasses import dataclass
from typing import Protocol

from reservation_calendar.domain.errors import LockUnavailable, TransportError
from reservation_calendar.domain.holds import HoldRefusal, ReviewHold
from reservation_calendar.domain.records import RecordStatus, ReservationRecord

logger = logging.getLogger(__name__)


class LockService(Protocol):
    """Interface for the lease-based hold service."""

    async def acquire(self, record_id: str, holder: str) -> ReviewHold | HoldRefusal:
        """Take a hold for ``holder`` or report who already has it."""

    async def release(self, record_id: str, holder: str) -> None:
        """Drop the hold ``holder`` has on a record."""


@dataclass
class ReviewHoldService:
    """Takes and drops review holds, failing open when the service is down."""

    lock_service: LockService | None = None

    async def acquire_for(
        self, record: ReservationRecord, holder: str
    ) -> ReviewHold | None:
        """Hold a pending record for review.

        Returns ``None`` when no hold applies or the lock service is unreachable;
        raises ``LockUnavailable`` when another reviewer holds the record.
        """
        if self.lock_service is None or record.id is None:
            return None
        if record.status is not RecordStatus.PENDING:
            return None
        try:
            result = await self.lock_service.acquire(record.id, holder)
        except TransportError:
            logger.warning(
                "Lock service unavailable, opening %s without a hold", record.id
            )
            return None
        if isinstance(result, HoldRefusal):
            if result.holder == holder:
                return ReviewHold(
                    record_id=result.record_id,
                    holder=result.holder,
                    expires_at=result.expires_at,
                )
            raise LockUnavailable(result.record_id, result.holder, result.expires_at)
        logger.info("Review hold on %s taken by %s", record.id, holder)
        return result

    async def release(self, hold: ReviewHold | None) -> None:
        """Release a hold; failures are logged and never raised."""
        if self.lock_service is None or hold is None:
            return
        try:
            await self.lock_service.release(hold.record_id, hold.holder)
        except Exception:
            logger.exception("Failed to release review hold on %s", hold.record_id)
