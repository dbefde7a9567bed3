"""Approval workflow for reservations.

Each transition is a version-guarded write. Approving with edits is two
writes in strict order: the content save under the editor's baseline version,
then the status change under the version the save returned.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Protocol

from reservation_calendar.domain.availability import (
    BookingWindow,
    SchedulingConflictEntry,
)
from reservation_calendar.domain.errors import (
    ReservationError,
    SchedulingConflict,
    ValidationError,
)
from reservation_calendar.domain.lifecycle import (
    EditScope,
    EditTarget,
    LifecycleAction,
    ensure_transition,
    target_status,
    validate_draft,
    validate_rejection_reason,
    validate_submission,
)
from reservation_calendar.domain.records import (
    RecordKind,
    RecordStatus,
    ReservationRecord,
    StatusHistoryEntry,
    apply_patch,
    content_of,
    normalize_patch,
)
from reservation_calendar.domain.recurrence import expand_series
from reservation_calendar.services.audit import AuditService
from reservation_calendar.services.mutations import GuardedWriter, WriteRequest

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


class CalendarPublisher(Protocol):
    """Interface for the shared calendar the approved events appear on."""

    async def publish(self, record: ReservationRecord) -> str:
        """Create the calendar event and return its external identifier."""

    async def unpublish(self, external_event_id: str) -> None:
        """Remove a previously published calendar event."""


class AvailabilityService(Protocol):
    """Interface for room availability queries."""

    async def find_conflicts(
        self,
        window: BookingWindow,
        buffer_minutes: int,
        exclude_record_id: str | None = None,
    ) -> list[SchedulingConflictEntry]:
        """Return approved bookings colliding with ``window``."""


@dataclass(frozen=True)
class ApprovalPolicy:
    """Tunable approval rules."""

    allow_force_approve: bool = False
    buffer_minutes: int = 0
    conflict_horizon_days: int = 90


@dataclass
class ApprovalService:
    """Moves reservations through draft, review, approval and deletion."""

    writer: GuardedWriter
    availability: AvailabilityService
    publisher: CalendarPublisher
    audit: AuditService
    policy: ApprovalPolicy = field(default_factory=ApprovalPolicy)
    clock: Clock = utc_now

    async def create_draft(
        self,
        content: dict[str, object],
        actor: str,
        kind: RecordKind = RecordKind.ROOM_RESERVATION,
    ) -> ReservationRecord:
        """Persist a brand-new draft; only a title is required."""
        normalized = normalize_patch(content)
        validate_draft(normalized)
        created = await self.writer.repository.create_record(
            kind, normalized, self._history(RecordStatus.DRAFT, actor)
        )
        logger.info("Draft %s created by %s", created.id, actor)
        await self.audit.record_change(actor, "create", None, created)
        return created

    async def save(
        self,
        record: ReservationRecord,
        baseline_version: int | None,
        patch: dict[str, object],
        actor: str,
        target: EditTarget | None = None,
    ) -> ReservationRecord:
        """Persist edited content without changing status."""
        if record.is_new:
            return await self.create_draft(
                content_of(apply_patch(record, patch)), actor, record.kind
            )
        ensure_transition(record.status, LifecycleAction.SAVE)
        working = apply_patch(record, patch)
        if record.status is RecordStatus.DRAFT:
            validate_draft(content_of(working))
        else:
            validate_submission(content_of(working))
        updated = await self.writer.write(
            record,
            baseline_version,
            WriteRequest(
                action=LifecycleAction.SAVE,
                content=normalize_patch(patch),
                target=target,
            ),
            expected_status=record.status,
        )
        logger.info("Saved %s at version %s", updated.id, updated.version)
        await self.audit.record_change(
            actor, LifecycleAction.SAVE.value, record, updated
        )
        return updated

    async def submit(
        self,
        record: ReservationRecord,
        baseline_version: int | None,
        patch: dict[str, object],
        actor: str,
    ) -> ReservationRecord:
        """Send a draft to review with its latest content in one write."""
        ensure_transition(record.status, LifecycleAction.SUBMIT)
        validate_submission(content_of(apply_patch(record, patch)))
        return await self._transition(
            record,
            baseline_version,
            LifecycleAction.SUBMIT,
            actor,
            content=normalize_patch(patch),
        )

    async def check_availability(
        self, record: ReservationRecord, target: EditTarget | None = None
    ) -> list[SchedulingConflictEntry]:
        """Return approved bookings the record would collide with."""
        if record.start is None or record.end is None or not record.room_ids:
            return []
        conflicts: dict[tuple[str, datetime], SchedulingConflictEntry] = {}
        for occurrence in await self._occurrences_to_check(record, target):
            found = await self.availability.find_conflicts(
                BookingWindow.of(occurrence),
                self.policy.buffer_minutes,
                exclude_record_id=record.id,
            )
            for entry in found:
                conflicts[(entry.record_id, entry.start)] = entry
        return sorted(
            conflicts.values(), key=lambda entry: (entry.start, entry.record_id)
        )

    async def approve(  # noqa: PLR0913
        self,
        record: ReservationRecord,
        baseline_version: int | None,
        patch: dict[str, object],
        actor: str,
        target: EditTarget | None = None,
        force: bool = False,
    ) -> ReservationRecord:
        """Approve a pending record, saving any edits first."""
        ensure_transition(record.status, LifecycleAction.APPROVE)
        if force and not self.policy.allow_force_approve:
            raise ValidationError("Force approval is not permitted", field="force")
        working = apply_patch(record, patch)
        validate_submission(content_of(working))
        if force:
            logger.warning("Force-approving %s by %s", record.id, actor)
        else:
            conflicts = await self.check_availability(working, target)
            if conflicts:
                raise SchedulingConflict(conflicts)

        saved = record
        version = baseline_version
        if patch:
            saved = await self.writer.write(
                record,
                version,
                WriteRequest(
                    action=LifecycleAction.SAVE,
                    content=normalize_patch(patch),
                    target=target,
                ),
                expected_status=RecordStatus.PENDING,
            )
            version = saved.version
            await self.audit.record_change(
                actor, LifecycleAction.SAVE.value, record, saved
            )

        try:
            return await self._publish_and_approve(
                saved, version, actor, target=target, force=force
            )
        except ReservationError as exc:
            if saved is not record:
                exc.committed = saved
            raise

    async def _publish_and_approve(
        self,
        record: ReservationRecord,
        version: int | None,
        actor: str,
        *,
        target: EditTarget | None,
        force: bool,
    ) -> ReservationRecord:
        external_event_id = await self.publisher.publish(record)
        try:
            return await self._transition(
                record,
                version,
                LifecycleAction.APPROVE,
                actor,
                external_event_id=external_event_id,
                target=target,
                force=force,
            )
        except Exception:
            await self._unpublish_quietly(external_event_id)
            raise

    async def reject(
        self,
        record: ReservationRecord,
        baseline_version: int | None,
        reason: str | None,
        actor: str,
        target: EditTarget | None = None,
    ) -> ReservationRecord:
        """Reject a pending record; a reason is mandatory."""
        cleaned = validate_rejection_reason(reason)
        ensure_transition(record.status, LifecycleAction.REJECT)
        return await self._transition(
            record,
            baseline_version,
            LifecycleAction.REJECT,
            actor,
            reason=cleaned,
            target=target,
        )

    async def delete(
        self,
        record: ReservationRecord,
        baseline_version: int | None,
        actor: str,
        target: EditTarget | None = None,
    ) -> ReservationRecord:
        """Soft-delete a record, or cancel one occurrence of a series."""
        ensure_transition(record.status, LifecycleAction.DELETE)
        deleted = await self._transition(
            record, baseline_version, LifecycleAction.DELETE, actor, target=target
        )
        whole_record = target is None or target.scope is EditScope.ALL_OCCURRENCES
        if whole_record and record.external_event_id:
            await self._unpublish_quietly(record.external_event_id)
        return deleted

    async def restore(
        self, record: ReservationRecord, version: int | None, actor: str
    ) -> ReservationRecord:
        """Bring a deleted record back to the status it had before deletion."""
        ensure_transition(record.status, LifecycleAction.RESTORE)
        return await self._transition(
            record, version, LifecycleAction.RESTORE, actor, reason="Restored by admin"
        )

    async def resubmit(
        self, record: ReservationRecord, version: int | None, actor: str
    ) -> ReservationRecord:
        """Send a rejected record back to review."""
        ensure_transition(record.status, LifecycleAction.RESUBMIT)
        return await self._transition(
            record,
            version,
            LifecycleAction.RESUBMIT,
            actor,
            reason="Resubmitted after rejection",
        )

    async def _transition(  # noqa: PLR0913
        self,
        record: ReservationRecord,
        version: int | None,
        action: LifecycleAction,
        actor: str,
        *,
        content: dict[str, object] | None = None,
        reason: str | None = None,
        external_event_id: str | None = None,
        target: EditTarget | None = None,
        force: bool = False,
    ) -> ReservationRecord:
        new_status = target_status(record.status, action, record.status_history)
        updated = await self.writer.write(
            record,
            version,
            WriteRequest(
                action=action,
                content=content or {},
                status=new_status,
                history_entry=self._history(new_status, actor, reason),
                rejection_reason=reason if action is LifecycleAction.REJECT else None,
                external_event_id=external_event_id,
                target=target,
                force=force,
            ),
            expected_status=record.status,
        )
        logger.info(
            "%s %s: %s -> %s",
            action.value.capitalize(),
            updated.id,
            record.status.value,
            updated.status.value,
        )
        await self.audit.record_change(actor, action.value, record, updated)
        return updated

    def _history(
        self, status: RecordStatus, actor: str, reason: str | None = None
    ) -> StatusHistoryEntry:
        return StatusHistoryEntry(
            status=status, changed_at=self.clock(), changed_by=actor, reason=reason
        )

    async def _occurrences_to_check(
        self, record: ReservationRecord, target: EditTarget | None
    ) -> list[ReservationRecord]:
        if not record.is_series_master or record.start is None:
            return [record]
        if target is not None and target.scope is EditScope.THIS_OCCURRENCE:
            day = target.occurrence_date
            single = expand_series(record, day, day)
            return single or [record]
        first_day = record.start.date()
        last_day = first_day + timedelta(days=self.policy.conflict_horizon_days)
        exceptions = []
        if record.id is not None:
            exceptions = await self.writer.repository.list_exceptions(
                record.id, first_day, last_day
            )
        return expand_series(record, first_day, last_day, exceptions)

    async def _unpublish_quietly(self, external_event_id: str) -> None:
        try:
            await self.publisher.unpublish(external_event_id)
        except Exception:
            logger.exception("Failed to remove calendar event %s", external_event_id)
