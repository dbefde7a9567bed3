"""Version-guarded reads and writes of shared reservation records."""

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Protocol

from reservation_calendar.domain.conflicts import ConflictReport
from reservation_calendar.domain.errors import (
    RecordNotFound,
    ValidationError,
    VersionConflict,
)
from reservation_calendar.domain.lifecycle import EditTarget, LifecycleAction
from reservation_calendar.domain.records import (
    OccurrenceException,
    RecordKind,
    RecordStatus,
    ReservationRecord,
    StatusHistoryEntry,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WriteRequest:
    """Everything one atomic write changes on a record."""

    action: LifecycleAction
    content: dict[str, object] = field(default_factory=dict)
    status: RecordStatus | None = None
    history_entry: StatusHistoryEntry | None = None
    rejection_reason: str | None = None
    external_event_id: str | None = None
    target: EditTarget | None = None
    force: bool = False


class ReservationRepository(Protocol):
    """Persistence interface with compare-and-swap writes on ``version``."""

    async def get_record(self, record_id: str) -> ReservationRecord | None:
        """Return the current record and version, if present."""

    async def create_record(
        self,
        kind: RecordKind,
        content: dict[str, object],
        history_entry: StatusHistoryEntry,
    ) -> ReservationRecord:
        """Persist a brand-new draft and return it with its first version."""

    async def write(
        self,
        record_id: str,
        expected_version: int,
        request: WriteRequest,
        *,
        expected_status: RecordStatus | None = None,
    ) -> ReservationRecord | ConflictReport:
        """Apply ``request`` only if the stored version still matches.

        Returns the updated record, or a conflict report with nothing applied.
        May raise ``SchedulingConflict`` when approval collides authoritatively.
        """

    async def list_exceptions(
        self, series_master_id: str, window_start: date, window_end: date
    ) -> list[OccurrenceException]:
        """Return stored occurrence overrides for a series inside a window."""


@dataclass
class GuardedWriter:
    """Applies the version protocol on top of a repository.

    Conflicts are surfaced as ``VersionConflict`` and never retried.
    """

    repository: ReservationRepository

    async def read(self, record_id: str) -> ReservationRecord:
        """Fetch the current state of a record."""
        record = await self.repository.get_record(record_id)
        if record is None:
            raise RecordNotFound(record_id)
        return record

    async def write(
        self,
        record: ReservationRecord,
        expected_version: int | None,
        request: WriteRequest,
        *,
        expected_status: RecordStatus | None = None,
    ) -> ReservationRecord:
        """Write under ``expected_version``; raise ``VersionConflict`` if stale."""
        if record.id is None:
            raise ValidationError("Record has not been saved yet")
        if expected_version is None:
            raise ValidationError("A version token is required for every write")
        result = await self.repository.write(
            record.id,
            expected_version,
            request,
            expected_status=expected_status,
        )
        if isinstance(result, ConflictReport):
            logger.warning(
                "Rejected %s on %s: %s (presented version %s, current %s)",
                request.action.value,
                record.id,
                result.kind.value,
                expected_version,
                result.current.version,
            )
            raise VersionConflict(result)
        return result


def attempted_state(
    request: WriteRequest, expected_status: RecordStatus | None
) -> dict[str, object]:
    """What the editor tried to write, for conflict reporting."""
    attempted = dict(request.content)
    if expected_status is not None:
        attempted["status"] = expected_status
    return attempted
