"""Edit session coordinator.

One session per open record. Sessions keep a private working copy and only
reconcile through version-guarded writes; nothing is shared between them.
Destructive actions need two invocations: the first arms the action, the
second commits it.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum
from uuid import uuid4

from reservation_calendar.domain.availability import SchedulingConflictEntry
from reservation_calendar.domain.conflicts import ConflictReport
from reservation_calendar.domain.errors import (
    ReservationError,
    SessionNotFound,
    SessionStateError,
    ValidationError,
    VersionConflict,
)
from reservation_calendar.domain.holds import LeaseStatus, ReviewHold, lease_status
from reservation_calendar.domain.lifecycle import (
    EditScope,
    EditTarget,
    validate_submission,
)
from reservation_calendar.domain.records import (
    RecordKind,
    RecordStatus,
    ReservationRecord,
    apply_patch,
    content_of,
    normalize_patch,
)
from reservation_calendar.domain.recurrence import expand_series
from reservation_calendar.services.approvals import ApprovalService, Clock, utc_now
from reservation_calendar.services.holds import ReviewHoldService

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    """Lifecycle of an edit session."""

    CLOSED = "closed"
    OPENING = "opening"
    OPEN = "open"
    CONFIRMING = "confirming"
    COMMITTING = "committing"
    CONFLICTED = "conflicted"


class ConfirmableAction(str, Enum):
    """Actions that need a second invocation before they take effect."""

    SAVE = "save"
    APPROVE = "approve"
    REJECT = "reject"
    DELETE = "delete"


class ActionStatus(str, Enum):
    NEEDS_CONFIRMATION = "needsConfirmation"
    COMMITTED = "committed"
    DROPPED = "dropped"


@dataclass(frozen=True)
class ActionResult:
    """Outcome of invoking an action on a session."""

    status: ActionStatus
    action: str
    record: ReservationRecord | None = None


class CloseOutcome(str, Enum):
    CLOSED = "closed"
    NEEDS_DRAFT_DECISION = "needsDraftDecision"
    DRAFT_SAVED = "draftSaved"


@dataclass(frozen=True)
class CloseResult:
    outcome: CloseOutcome
    record: ReservationRecord | None = None


@dataclass(frozen=True)
class SessionOptions:
    """Timing knobs shared by every session."""

    confirmation_timeout: timedelta = timedelta(seconds=30)
    preview_days: int = 90


_EDITABLE_STATES = {SessionState.OPEN, SessionState.CONFIRMING}

_CLOSES_SESSION = {
    ConfirmableAction.APPROVE,
    ConfirmableAction.REJECT,
    ConfirmableAction.DELETE,
}


class EditSession:
    """Coordinates one reviewer's edits to one reservation."""

    def __init__(  # noqa: PLR0913
        self,
        session_id: str,
        actor: str,
        approvals: ApprovalService,
        holds: ReviewHoldService,
        options: SessionOptions | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.session_id = session_id
        self.actor = actor
        self.approvals = approvals
        self.holds = holds
        self.options = options or SessionOptions()
        self.clock = clock

        self.state = SessionState.CLOSED
        self.record: ReservationRecord | None = None
        self.baseline_version: int | None = None
        self.working: ReservationRecord | None = None
        self.patch: dict[str, object] = {}
        self.dirty = False
        self.target: EditTarget | None = None
        self.hold: ReviewHold | None = None
        self.lease: LeaseStatus | None = None
        self.armed: ConfirmableAction | None = None
        self.armed_at: datetime | None = None
        self.occurrences: list[ReservationRecord] = []
        self.prefetched_conflicts: list[SchedulingConflictEntry] = []
        self.conflict: ConflictReport | None = None
        self._epoch = 0

    async def open(
        self,
        record_id: str,
        scope: EditScope | None = None,
        occurrence_date: date | None = None,
    ) -> ReservationRecord:
        """Load a record, take the review hold and prepare display data."""
        self._require(SessionState.CLOSED)
        self.state = SessionState.OPENING
        epoch = self._epoch
        try:
            record = await self.approvals.writer.read(record_id)
            if self._is_stale(epoch):
                return record
            hold = await self.holds.acquire_for(record, self.actor)
        except ReservationError:
            if not self._is_stale(epoch):
                self.state = SessionState.CLOSED
            raise
        if self._is_stale(epoch):
            await self.holds.release(hold)
            return record

        self.hold = hold
        self._adopt(record)
        try:
            if scope is not None:
                self.target = self._make_target(scope, occurrence_date)
            await self._resolve_display_data(epoch)
        except ReservationError:
            if not self._is_stale(epoch):
                await self._finish()
            raise
        if not self._is_stale(epoch):
            self.state = SessionState.OPEN
            logger.info(
                "Session %s opened %s for %s", self.session_id, record.id, self.actor
            )
        return record

    def open_new(
        self,
        fields: dict[str, object],
        kind: RecordKind = RecordKind.ROOM_RESERVATION,
    ) -> ReservationRecord:
        """Start editing a brand-new, not yet persisted draft."""
        self._require(SessionState.CLOSED)
        self._adopt(
            ReservationRecord(
                id=None, kind=kind, status=RecordStatus.DRAFT, version=None
            )
        )
        if fields:
            self._apply(fields)
        self.state = SessionState.OPEN
        return self.working

    def update(self, fields: dict[str, object]) -> ReservationRecord:
        """Apply local edits to the working copy."""
        self._require(*_EDITABLE_STATES)
        self._apply(fields)
        self._disarm()
        return self.working

    def set_edit_scope(
        self, scope: EditScope, occurrence_date: date | None = None
    ) -> EditTarget:
        self._require(*_EDITABLE_STATES)
        self.target = self._make_target(scope, occurrence_date)
        self._disarm()
        return self.target

    async def save(self) -> ActionResult:
        return await self._invoke(ConfirmableAction.SAVE, self._commit_save)

    async def approve(self, force: bool = False) -> ActionResult:
        async def commit() -> ReservationRecord:
            return await self.approvals.approve(
                self.record,
                self.baseline_version,
                self.patch,
                self.actor,
                target=self._write_target(),
                force=force,
            )

        return await self._invoke(ConfirmableAction.APPROVE, commit)

    async def reject(self, reason: str | None = None) -> ActionResult:
        async def commit() -> ReservationRecord:
            return await self.approvals.reject(
                self.record,
                self.baseline_version,
                reason,
                self.actor,
                target=self._write_target(),
            )

        return await self._invoke(ConfirmableAction.REJECT, commit)

    async def delete(self) -> ActionResult:
        async def commit() -> ReservationRecord:
            return await self.approvals.delete(
                self.record,
                self.baseline_version,
                self.actor,
                target=self._write_target(),
            )

        return await self._invoke(ConfirmableAction.DELETE, commit)

    async def submit(self) -> ActionResult:
        """Send a draft to review; a single invocation is enough."""
        self._require(*_EDITABLE_STATES)
        self._disarm()

        async def commit() -> ReservationRecord:
            record, version, patch = self.record, self.baseline_version, self.patch
            if record.is_new:
                validate_submission(content_of(self.working))
                record = await self.approvals.create_draft(
                    content_of(self.working), self.actor, record.kind
                )
                version, patch = record.version, {}
            try:
                return await self.approvals.submit(record, version, patch, self.actor)
            except ReservationError as exc:
                if record is not self.record:
                    exc.committed = record
                raise

        return await self._commit("submit", commit, closes=False)

    def cancel_confirmation(self) -> bool:
        """Disarm a pending confirmation; returns whether one was armed."""
        if self.state is not SessionState.CONFIRMING:
            return False
        self._disarm()
        return True

    async def tick(self) -> LeaseStatus | None:
        """Expire idle confirmations and enforce the review hold lease."""
        now = self.clock()
        if self.state is SessionState.CONFIRMING and self._confirmation_lapsed(now):
            logger.debug("Confirmation of %s timed out", self.armed)
            self._disarm()
        if self.hold is None or self.state is SessionState.CLOSED:
            return None
        self.lease = lease_status(self.hold.minutes_remaining(now))
        if self.lease is LeaseStatus.EXPIRED:
            logger.warning(
                "Review hold on %s expired, closing session %s",
                self.hold.record_id,
                self.session_id,
            )
            await self._finish()
        return self.lease

    async def watch(self, interval: float) -> None:
        """Tick until the session closes."""
        while self.state is not SessionState.CLOSED:
            await asyncio.sleep(interval)
            await self.tick()

    async def reload(self) -> ReservationRecord:
        """Discard local edits and adopt the current server state."""
        self._require(
            SessionState.OPEN, SessionState.CONFIRMING, SessionState.CONFLICTED
        )
        if self.record.is_new:
            raise SessionStateError("A new draft has nothing to reload")
        epoch = self._epoch
        record = await self.approvals.writer.read(self.record.id)
        if self._is_stale(epoch):
            return record
        self._adopt(record)
        self.state = SessionState.OPEN
        return record

    async def close(self, save_draft: bool | None = None) -> CloseResult:
        """Close the session, offering to keep an unsaved new draft."""
        if self.state is SessionState.CLOSED:
            return CloseResult(CloseOutcome.CLOSED)
        pending_draft = (
            self.dirty
            and self.record is not None
            and self.record.is_new
            and self.state is not SessionState.COMMITTING
        )
        if pending_draft and save_draft is None:
            return CloseResult(CloseOutcome.NEEDS_DRAFT_DECISION, self.working)
        if pending_draft and save_draft:
            created = await self.approvals.create_draft(
                content_of(self.working), self.actor, self.working.kind
            )
            await self._finish()
            return CloseResult(CloseOutcome.DRAFT_SAVED, created)
        await self._finish()
        return CloseResult(CloseOutcome.CLOSED)

    async def _invoke(
        self,
        action: ConfirmableAction,
        commit: Callable[[], Awaitable[ReservationRecord]],
    ) -> ActionResult:
        self._require(*_EDITABLE_STATES)
        now = self.clock()
        armed_for_this = (
            self.state is SessionState.CONFIRMING
            and self.armed is action
            and not self._confirmation_lapsed(now)
        )
        if not armed_for_this:
            self.state = SessionState.CONFIRMING
            self.armed = action
            self.armed_at = now
            return ActionResult(ActionStatus.NEEDS_CONFIRMATION, action.value)
        return await self._commit(
            action.value, commit, closes=action in _CLOSES_SESSION
        )

    async def _commit(
        self,
        action: str,
        commit: Callable[[], Awaitable[ReservationRecord]],
        closes: bool,
    ) -> ActionResult:
        self.armed = None
        self.armed_at = None
        self.state = SessionState.COMMITTING
        epoch = self._epoch
        try:
            record = await commit()
        except VersionConflict as exc:
            if self._is_stale(epoch):
                return self._dropped(action, None)
            if exc.committed is not None:
                self._adopt(exc.committed)
            self.conflict = exc.report
            self.state = SessionState.CONFLICTED
            raise
        except ReservationError as exc:
            if self._is_stale(epoch):
                return self._dropped(action, None)
            if exc.committed is not None:
                self._adopt(exc.committed)
            self.state = SessionState.OPEN
            raise
        if self._is_stale(epoch):
            return self._dropped(action, record)
        self._adopt(record)
        self.state = SessionState.OPEN
        if closes:
            await self._finish()
        return ActionResult(ActionStatus.COMMITTED, action, record)

    async def _commit_save(self) -> ReservationRecord:
        return await self.approvals.save(
            self.record,
            self.baseline_version,
            self.patch,
            self.actor,
            target=self._write_target(),
        )

    async def _resolve_display_data(self, epoch: int) -> None:
        record = self.record
        if record.is_series_master and record.start is not None:
            first_day = max(record.start.date(), self.clock().date())
            last_day = first_day + timedelta(days=self.options.preview_days)
            exceptions = await self.approvals.writer.repository.list_exceptions(
                record.id, first_day, last_day
            )
            if self._is_stale(epoch):
                return
            self.occurrences = expand_series(record, first_day, last_day, exceptions)
        try:
            conflicts = await self.approvals.check_availability(record, self.target)
        except ReservationError:
            logger.debug(
                "Availability prefetch failed for %s", record.id, exc_info=True
            )
            return
        if not self._is_stale(epoch):
            self.prefetched_conflicts = conflicts

    async def _finish(self) -> None:
        self._epoch += 1
        self.state = SessionState.CLOSED
        self.armed = None
        self.armed_at = None
        hold, self.hold = self.hold, None
        await self.holds.release(hold)
        logger.info("Session %s closed", self.session_id)

    def _adopt(self, record: ReservationRecord) -> None:
        self.record = record
        self.working = record
        self.baseline_version = record.version
        self.patch = {}
        self.dirty = False
        self.conflict = None

    def _apply(self, fields: dict[str, object]) -> None:
        normalized = normalize_patch(fields)
        self.working = apply_patch(self.working, normalized)
        self.patch.update(normalized)
        self.dirty = True

    def _disarm(self) -> None:
        self.armed = None
        self.armed_at = None
        if self.state is SessionState.CONFIRMING:
            self.state = SessionState.OPEN

    def _confirmation_lapsed(self, now: datetime) -> bool:
        if self.armed_at is None:
            return True
        return now - self.armed_at >= self.options.confirmation_timeout

    def _make_target(
        self, scope: EditScope, occurrence_date: date | None
    ) -> EditTarget:
        if not self.record.is_series_master:
            raise ValidationError(
                "Only recurring series have an edit scope", field="scope"
            )
        return EditTarget(
            scope=scope,
            series_master_id=self.record.id,
            occurrence_date=occurrence_date,
        )

    def _write_target(self) -> EditTarget | None:
        if self.record.is_series_master and self.target is None:
            raise ValidationError(
                "Choose whether to change this occurrence or the whole series",
                field="scope",
            )
        return self.target

    def _is_stale(self, epoch: int) -> bool:
        return epoch != self._epoch

    def _dropped(self, action: str, record: ReservationRecord | None) -> ActionResult:
        logger.warning(
            "Dropping %s result for closed session %s", action, self.session_id
        )
        return ActionResult(ActionStatus.DROPPED, action, record)

    def _require(self, *states: SessionState) -> None:
        if self.state not in states:
            raise SessionStateError(
                f"Session is {self.state.value}; expected one of "
                f"{', '.join(state.value for state in states)}"
            )


@dataclass
class EditSessionRegistry:
    """Independent edit sessions keyed by session id."""

    approvals: ApprovalService
    holds: ReviewHoldService
    options: SessionOptions = field(default_factory=SessionOptions)
    clock: Clock = utc_now
    sessions: dict[str, EditSession] = field(default_factory=dict)

    def create(self, actor: str) -> EditSession:
        session = EditSession(
            session_id=uuid4().hex,
            actor=actor,
            approvals=self.approvals,
            holds=self.holds,
            options=self.options,
            clock=self.clock,
        )
        self.sessions[session.session_id] = session
        return session

    async def open(
        self,
        actor: str,
        record_id: str,
        scope: EditScope | None = None,
        occurrence_date: date | None = None,
    ) -> EditSession:
        """Create a session and open ``record_id`` in it."""
        session = self.create(actor)
        try:
            await session.open(record_id, scope, occurrence_date)
        except ReservationError:
            self.sessions.pop(session.session_id, None)
            raise
        return session

    def open_new(
        self,
        actor: str,
        fields: dict[str, object],
        kind: RecordKind = RecordKind.ROOM_RESERVATION,
    ) -> EditSession:
        session = self.create(actor)
        try:
            session.open_new(fields, kind)
        except ReservationError:
            self.sessions.pop(session.session_id, None)
            raise
        return session

    def get(self, session_id: str) -> EditSession:
        session = self.sessions.get(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    async def close(
        self, session_id: str, save_draft: bool | None = None
    ) -> CloseResult:
        session = self.get(session_id)
        result = await session.close(save_draft)
        if session.state is SessionState.CLOSED:
            self.sessions.pop(session_id, None)
        return result

    async def sweep(self) -> None:
        """Tick every session and forget the ones that have closed."""
        for session_id, session in list(self.sessions.items()):
            if session.state is not SessionState.OPENING:
                await session.tick()
            if session.state is SessionState.CLOSED:
                self.sessions.pop(session_id, None)

    async def close_all(self) -> None:
        for session in list(self.sessions.values()):
            await session.close(save_draft=False)
        self.sessions.clear()
