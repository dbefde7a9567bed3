"""FastAPI application factory."""

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import date, timedelta
from enum import Enum

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from reservation_calendar.api.admin import router as admin_router
from reservation_calendar.api.models import (
    ActionRequest,
    NewSessionRequest,
    OpenSessionRequest,
    ReservationFields,
    ResubmitRequest,
    ScopeRequest,
    conflict_report_view,
    occurrence_view,
    record_view,
    scheduling_conflict_view,
    session_view,
)
from reservation_calendar.app_logging import configure_logging
from reservation_calendar.containers import AppContainer
from reservation_calendar.domain.errors import (
    LockUnavailable,
    RecordNotFound,
    SchedulingConflict,
    SessionNotFound,
    SessionStateError,
    TransportError,
    ValidationError,
    VersionConflict,
)
from reservation_calendar.domain.recurrence import (
    expand_series,
    format_recurrence_summary,
)
from reservation_calendar.services.edit_sessions import (
    ActionResult,
    ActionStatus,
    EditSession,
)


class SessionAction(str, Enum):
    """Actions exposed on ``/sessions/{id}/actions/{action}``."""

    SAVE = "save"
    APPROVE = "approve"
    REJECT = "reject"
    DELETE = "delete"
    SUBMIT = "submit"


def create_app(container: AppContainer) -> FastAPI:  # noqa: PLR0915
    """Create a FastAPI app configured with dependencies."""
    configure_logging()
    logger = logging.getLogger(__name__)

    async def sweep_sessions(interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await app.state.container.sessions.sweep()
            except Exception:
                logger.exception("Edit session sweep failed")

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        sweeper = asyncio.create_task(
            sweep_sessions(app.state.container.settings.lease_check_interval_seconds)
        )
        yield
        sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweeper
        await app.state.container.close_resources()

    app = FastAPI(lifespan=lifespan)
    app.state.container = container

    app.include_router(admin_router)

    @app.exception_handler(ValidationError)
    async def validation_error(_: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=422,
            content={"error": "validation", "message": str(exc), "field": exc.field},
        )

    @app.exception_handler(VersionConflict)
    async def version_conflict(_: Request, exc: VersionConflict) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content={
                "error": "version_conflict",
                "message": str(exc),
                **conflict_report_view(exc.report),
            },
        )

    @app.exception_handler(SchedulingConflict)
    async def scheduling_conflict(
        _: Request, exc: SchedulingConflict
    ) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content={
                "error": "scheduling_conflict",
                "message": str(exc),
                "conflicts": [scheduling_conflict_view(c) for c in exc.conflicts],
            },
        )

    @app.exception_handler(LockUnavailable)
    async def lock_unavailable(request: Request, exc: LockUnavailable) -> JSONResponse:
        clock = request.app.state.container.sessions.clock
        return JSONResponse(
            status_code=status.HTTP_423_LOCKED,
            content={
                "error": "locked",
                "message": str(exc),
                "holder": exc.holder,
                "expires_at": exc.expires_at.isoformat(),
                "minutes_remaining": exc.minutes_remaining(clock()),
            },
        )

    @app.exception_handler(RecordNotFound)
    @app.exception_handler(SessionNotFound)
    async def not_found(_: Request, exc: Exception) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND,
            content={"error": "not_found", "message": str(exc)},
        )

    @app.exception_handler(SessionStateError)
    async def session_state(_: Request, exc: SessionStateError) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content={"error": "session_state", "message": str(exc)},
        )

    @app.exception_handler(TransportError)
    async def transport_error(_: Request, exc: TransportError) -> JSONResponse:
        logger.warning("Upstream failure: %s", exc)
        return JSONResponse(
            status_code=status.HTTP_502_BAD_GATEWAY,
            content={"error": "upstream_unavailable", "message": str(exc)},
        )

    @app.get("/health")
    async def health() -> dict[str, str]:
        """Simple health check endpoint."""
        return {"status": "ok"}

    @app.get("/reservations/{record_id}/occurrences")
    async def list_occurrences(
        record_id: str,
        request: Request,
        start: date | None = None,
        end: date | None = None,
    ) -> dict[str, object]:
        """Expand a recurring reservation inside a date window."""
        state_container: AppContainer = request.app.state.container
        record = await state_container.writer.read(record_id)
        if record.recurrence is None:
            raise ValidationError("Reservation is not recurring", field="recurrence")
        window_start = start or record.recurrence.range.start_date
        window_end = end or window_start + timedelta(
            days=state_container.settings.occurrence_preview_days
        )
        if window_end < window_start:
            raise ValidationError("Window end is before its start", field="end")
        exceptions = await state_container.writer.repository.list_exceptions(
            record_id, window_start, window_end
        )
        occurrences = expand_series(record, window_start, window_end, exceptions)
        return {
            "record": record_view(record),
            "summary": format_recurrence_summary(record.recurrence),
            "occurrences": [occurrence_view(item) for item in occurrences],
        }

    @app.post("/reservations/{record_id}/resubmit")
    async def resubmit_reservation(
        record_id: str, payload: ResubmitRequest, request: Request
    ) -> dict[str, object]:
        """Send a rejected reservation back to review."""
        state_container: AppContainer = request.app.state.container
        record = await state_container.writer.read(record_id)
        resubmitted = await state_container.approval_service.resubmit(
            record, payload.version, payload.actor
        )
        return {"record": record_view(resubmitted)}

    @app.post("/sessions", status_code=status.HTTP_201_CREATED)
    async def open_session(
        payload: OpenSessionRequest, request: Request
    ) -> dict[str, object]:
        """Open an existing reservation in a new edit session."""
        state_container: AppContainer = request.app.state.container
        session = await state_container.sessions.open(
            payload.actor, payload.record_id, payload.scope, payload.occurrence_date
        )
        return session_view(session)

    @app.post("/sessions/new", status_code=status.HTTP_201_CREATED)
    async def open_new_session(
        payload: NewSessionRequest, request: Request
    ) -> dict[str, object]:
        """Start editing a brand-new draft."""
        state_container: AppContainer = request.app.state.container
        session = state_container.sessions.open_new(
            payload.actor, payload.content.to_patch(), payload.kind
        )
        return session_view(session)

    @app.get("/sessions/{session_id}")
    async def get_session(session_id: str, request: Request) -> dict[str, object]:
        state_container: AppContainer = request.app.state.container
        return session_view(state_container.sessions.get(session_id))

    @app.patch("/sessions/{session_id}")
    async def update_session(
        session_id: str, payload: ReservationFields, request: Request
    ) -> dict[str, object]:
        """Apply local edits to the session's working copy."""
        session = _session(request, session_id)
        session.update(payload.to_patch())
        return session_view(session)

    @app.put("/sessions/{session_id}/scope")
    async def set_scope(
        session_id: str, payload: ScopeRequest, request: Request
    ) -> dict[str, object]:
        session = _session(request, session_id)
        session.set_edit_scope(payload.scope, payload.occurrence_date)
        return session_view(session)

    @app.post("/sessions/{session_id}/actions/{action}")
    async def run_action(
        session_id: str,
        action: SessionAction,
        request: Request,
        payload: ActionRequest | None = None,
    ) -> dict[str, object]:
        """Invoke a session action; destructive ones need a second call."""
        session = _session(request, session_id)
        options = payload or ActionRequest()
        result = await _dispatch(session, action, options)
        if result.status is ActionStatus.COMMITTED:
            logger.info(
                "Session %s committed %s on %s",
                session_id,
                action.value,
                result.record.id if result.record else None,
            )
        return {
            "result": {
                "status": result.status.value,
                "action": result.action,
                "record": record_view(result.record),
            },
            "session": session_view(session),
        }

    @app.post("/sessions/{session_id}/cancel-confirmation")
    async def cancel_confirmation(
        session_id: str, request: Request
    ) -> dict[str, object]:
        session = _session(request, session_id)
        cancelled = session.cancel_confirmation()
        return {"cancelled": cancelled, "session": session_view(session)}

    @app.post("/sessions/{session_id}/reload")
    async def reload_session(session_id: str, request: Request) -> dict[str, object]:
        """Discard local edits and adopt the latest server state."""
        session = _session(request, session_id)
        await session.reload()
        return session_view(session)

    @app.delete("/sessions/{session_id}")
    async def close_session(
        session_id: str, request: Request, save_draft: bool | None = None
    ) -> dict[str, object]:
        """Close a session; unsaved new drafts prompt for a decision first."""
        state_container: AppContainer = request.app.state.container
        result = await state_container.sessions.close(session_id, save_draft)
        return {"outcome": result.outcome.value, "record": record_view(result.record)}

    return app


def _session(request: Request, session_id: str) -> EditSession:
    state_container: AppContainer = request.app.state.container
    return state_container.sessions.get(session_id)


async def _dispatch(
    session: EditSession, action: SessionAction, options: ActionRequest
) -> ActionResult:
    if action is SessionAction.SAVE:
        return await session.save()
    if action is SessionAction.APPROVE:
        return await session.approve(force=options.force)
    if action is SessionAction.REJECT:
        return await session.reject(options.reason)
    if action is SessionAction.DELETE:
        return await session.delete()
    return await session.submit()
