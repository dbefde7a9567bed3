"""Admin API endpoints with simple token auth."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status

from reservation_calendar.api.models import RestoreRequest, record_view, session_view

if TYPE_CHECKING:
    from reservation_calendar.containers import AppContainer

router = APIRouter(prefix="/admin", tags=["admin"])


def _get_admin_token(request: Request) -> str:
    container: AppContainer = request.app.state.container
    return container.settings.admin_token


async def require_admin(
    x_admin_token: str | None = Header(default=None),
    admin_token: str = Depends(_get_admin_token),
) -> None:
    """Ensure requests include a valid admin token."""
    if not x_admin_token or x_admin_token != admin_token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED)


@router.get("/health", dependencies=[Depends(require_admin)])
async def admin_health() -> dict[str, str]:
    """Admin health check endpoint."""
    return {"status": "ok"}


@router.get("/sessions", dependencies=[Depends(require_admin)])
async def list_sessions(request: Request) -> dict[str, object]:
    """Return the edit sessions currently held in memory."""
    container: AppContainer = request.app.state.container
    return {
        "sessions": [
            session_view(session) for session in container.sessions.sessions.values()
        ]
    }


@router.post(
    "/reservations/{record_id}/restore", dependencies=[Depends(require_admin)]
)
async def restore_reservation(
    record_id: str, payload: RestoreRequest, request: Request
) -> dict[str, object]:
    """Restore a soft-deleted reservation to its previous status."""
    container: AppContainer = request.app.state.container
    record = await container.writer.read(record_id)
    restored = await container.approval_service.restore(
        record, payload.version, payload.actor
    )
    return {"record": record_view(restored)}
