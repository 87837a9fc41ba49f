"""Calendar sync endpoints.

Provides:
- ``POST /api/calendar/sync`` run a sync pass for one user and semester
- ``GET /api/calendar/settings/{user_id}`` read (and lazily create) sync settings
- ``PATCH /api/calendar/settings/{user_id}`` toggle sync kinds / two-way sync
- ``POST /api/calendar/oauth/callback`` store the refresh token from a consent code
- ``DELETE /api/calendar/events/{user_id}/{external_event_id}`` propagate a local delete
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from studysync.api.models import (
    DeleteEventResponse,
    OAuthCallbackRequest,
    OAuthCallbackResponse,
    SettingsResponse,
    SettingsUpdate,
    SyncRequest,
    SyncResponse,
)
from studysync.calendar.models import SyncSettings
from studysync.calendar.sync import CalendarSyncOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/calendar", tags=["calendar"])


def _get_orchestrator() -> CalendarSyncOrchestrator:
    """Dependency stub -- overridden at app startup or in tests."""
    raise RuntimeError("Calendar sync orchestrator not initialized")


def _settings_response(settings: SyncSettings) -> SettingsResponse:
    return SettingsResponse(
        user_id=settings.user_id,
        sync_assessments=settings.sync_assessments,
        sync_study_sessions=settings.sync_study_sessions,
        sync_custom_events=settings.sync_custom_events,
        two_way_sync=settings.two_way_sync,
        last_full_sync_at=settings.last_full_sync_at,
    )


@router.post("/sync", response_model=SyncResponse)
async def sync_calendar(
    request: SyncRequest,
    orchestrator: CalendarSyncOrchestrator = Depends(_get_orchestrator),
) -> SyncResponse:
    summary = await orchestrator.sync(
        request.user_id,
        request.semester_id,
        timeout=request.timeout_s,
    )
    return SyncResponse(**summary.model_dump())


@router.get("/settings/{user_id}", response_model=SettingsResponse)
async def get_settings(
    user_id: str,
    orchestrator: CalendarSyncOrchestrator = Depends(_get_orchestrator),
) -> SettingsResponse:
    return _settings_response(await orchestrator.get_settings(user_id))


@router.patch("/settings/{user_id}", response_model=SettingsResponse)
async def update_settings(
    user_id: str,
    update: SettingsUpdate,
    orchestrator: CalendarSyncOrchestrator = Depends(_get_orchestrator),
) -> SettingsResponse:
    settings = await orchestrator.update_settings(user_id, update.changes())
    return _settings_response(settings)


@router.post("/oauth/callback", response_model=OAuthCallbackResponse)
async def oauth_callback(
    request: OAuthCallbackRequest,
    orchestrator: CalendarSyncOrchestrator = Depends(_get_orchestrator),
) -> OAuthCallbackResponse:
    """Exchange the consent code; the refresh token itself is never echoed back."""
    webhook = await orchestrator.connect_calendar(
        request.user_id,
        code=request.code,
        redirect_uri=request.redirect_uri,
    )
    return OAuthCallbackResponse(
        connected=True,
        webhook=webhook.action.value if webhook is not None else None,
    )


@router.delete(
    "/events/{user_id}/{external_event_id}",
    response_model=DeleteEventResponse,
)
async def delete_event(
    user_id: str,
    external_event_id: str,
    orchestrator: CalendarSyncOrchestrator = Depends(_get_orchestrator),
) -> DeleteEventResponse:
    result = await orchestrator.delete_external_event(user_id, external_event_id)
    logger.info(
        "Delete of Google event %s for user %s: %s",
        external_event_id,
        user_id,
        result.outcome.value,
    )
    result.raise_for_outcome()
    return DeleteEventResponse(
        external_event_id=external_event_id,
        outcome=result.outcome.value,
        deleted=True,
    )
