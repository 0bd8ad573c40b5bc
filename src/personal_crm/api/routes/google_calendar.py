"""Google Calendar integration routes.

Connect, inspect, sync and disconnect the caller's Google Calendar. JSON
bodies use camelCase field names. Sync errors are turned into responses by
the `CalendarSyncError` handler registered in `create_app`.
"""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from sqlalchemy.ext.asyncio import AsyncSession

from personal_crm.auth.dependencies import get_current_user
from personal_crm.calendar.oauth import GoogleOAuth, get_google_oauth
from personal_crm.calendar.service import CalendarSyncService, UserLockRegistry
from personal_crm.config import get_settings
from personal_crm.database.connection import get_db_session
from personal_crm.database.models import User

router = APIRouter()


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AuthUrlResponse(CamelModel):
    auth_url: str


class ConnectRequest(CamelModel):
    """Authorization code posted back by the frontend."""

    code: str
    redirect_uri: str | None = None


class ConnectResponse(CamelModel):
    connected: bool
    sync_enabled: bool
    primary_calendar_id: str | None
    email: str | None
    status: str


class StatusResponse(CamelModel):
    connected: bool
    sync_enabled: bool
    last_sync_at: datetime | None
    status: str
    primary_calendar_id: str | None
    pending_changes: int


class SyncResponse(CamelModel):
    events_imported: int
    events_exported: int
    conflicts: int
    synced_at: datetime
    message: str


def get_sync_locks(request: Request) -> UserLockRegistry:
    """Lock registry shared with the scheduler, created by the app lifespan."""
    locks = getattr(request.app.state, "sync_locks", None)
    if locks is None:
        locks = UserLockRegistry()
        request.app.state.sync_locks = locks
    return locks


def get_sync_service(
    db: AsyncSession = Depends(get_db_session),
    oauth: GoogleOAuth = Depends(get_google_oauth),
    locks: UserLockRegistry = Depends(get_sync_locks),
) -> CalendarSyncService:
    return CalendarSyncService(db, oauth, locks=locks)


@router.get("/auth-url", response_model=AuthUrlResponse)
async def get_auth_url(
    redirect_uri: str | None = Query(default=None, alias="redirectUri"),
    user: User = Depends(get_current_user),
    service: CalendarSyncService = Depends(get_sync_service),
) -> AuthUrlResponse:
    """Get the Google consent URL for connecting a calendar."""
    try:
        url = service.authorization_url(
            redirect_uri or get_settings().google_default_redirect_uri
        )
    except RuntimeError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=str(e),
        )
    return AuthUrlResponse(auth_url=url)


@router.post("/connect", response_model=ConnectResponse)
async def connect(
    body: ConnectRequest,
    user: User = Depends(get_current_user),
    service: CalendarSyncService = Depends(get_sync_service),
) -> ConnectResponse:
    """Finish the OAuth flow and store the user's Google credential."""
    result = await service.connect(
        user.id,
        body.code,
        body.redirect_uri or get_settings().google_default_redirect_uri,
    )
    return ConnectResponse(
        connected=result.connected,
        sync_enabled=result.sync_enabled,
        primary_calendar_id=result.primary_calendar_id,
        email=result.email,
        status=result.status,
    )


@router.post("/disconnect", status_code=status.HTTP_204_NO_CONTENT)
async def disconnect(
    user: User = Depends(get_current_user),
    service: CalendarSyncService = Depends(get_sync_service),
) -> Response:
    await service.disconnect(user.id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/status", response_model=StatusResponse)
async def get_status(
    user: User = Depends(get_current_user),
    service: CalendarSyncService = Depends(get_sync_service),
) -> StatusResponse:
    result = await service.get_status(user.id)
    return StatusResponse(
        connected=result.connected,
        sync_enabled=result.sync_enabled,
        last_sync_at=result.last_sync_at,
        status=result.status,
        primary_calendar_id=result.primary_calendar_id,
        pending_changes=result.pending_changes,
    )


@router.post("/sync", response_model=SyncResponse)
async def trigger_sync(
    user: User = Depends(get_current_user),
    service: CalendarSyncService = Depends(get_sync_service),
) -> SyncResponse:
    """Run a sync now and wait for it to finish."""
    report = await service.trigger_sync(user.id)
    return SyncResponse(
        events_imported=report.events_imported,
        events_exported=report.events_exported,
        conflicts=report.conflicts,
        synced_at=report.synced_at,
        message=report.message,
    )
