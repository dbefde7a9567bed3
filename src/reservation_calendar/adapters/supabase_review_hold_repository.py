"""Supabase-backed review holds."""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from supabase import Client

from reservation_calendar.adapters.supabase_rows import run_query
from reservation_calendar.domain.holds import HoldRefusal, ReviewHold
from reservation_calendar.services.holds import LockService


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


@dataclass
class SupabaseReviewHoldRepository(LockService):
    """Lease-based holds stored one row per record; expired rows are overwritten."""

    client: Client
    lease_minutes: int = 30
    clock: Callable[[], datetime] = _utc_now

    async def acquire(self, record_id: str, holder: str) -> ReviewHold | HoldRefusal:
        now = self.clock()
        response = await run_query(
            lambda: self.client.table("review_holds")
            .select("record_id, holder, expires_at")
            .eq("record_id", record_id)
            .limit(1)
            .execute()
        )
        if response.data:
            row = response.data[0]
            expires_at = datetime.fromisoformat(row["expires_at"])
            if expires_at > now:
                if row["holder"] != holder:
                    return HoldRefusal(
                        record_id=record_id, holder=row["holder"], expires_at=expires_at
                    )
                return ReviewHold(
                    record_id=record_id, holder=holder, expires_at=expires_at
                )

        expires_at = now + timedelta(minutes=self.lease_minutes)
        await run_query(
            lambda: self.client.table("review_holds")
            .upsert(
                {
                    "record_id": record_id,
                    "holder": holder,
                    "acquired_at": now.isoformat(),
                    "expires_at": expires_at.isoformat(),
                },
                on_conflict="record_id",
            )
            .execute()
        )
        return ReviewHold(record_id=record_id, holder=holder, expires_at=expires_at)

    async def release(self, record_id: str, holder: str) -> None:
        await run_query(
            lambda: self.client.table("review_holds")
            .delete()
            .eq("record_id", record_id)
            .eq("holder", holder)
            .execute()
        )
