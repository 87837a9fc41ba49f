"""Request and response models for the calendar sync API."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class ErrorDetail(BaseModel):
    """Structured error payload."""

    code: str
    message: str
    user_id: str | None = None


class ErrorResponse(BaseModel):
    """Standard error response envelope."""

    error: ErrorDetail


class SyncRequest(BaseModel):
    user_id: str = Field(min_length=1)
    semester_id: str = Field(min_length=1)
    timeout_s: float | None = Field(default=None, gt=0)


class SyncResponse(BaseModel):
    success: bool = True
    synced_count: int
    created_count: int
    updated_count: int
    error_count: int
    message: str
    aborted: bool = False
    webhook: str | None = None


class SettingsResponse(BaseModel):
    user_id: str
    sync_assessments: bool
    sync_study_sessions: bool
    sync_custom_events: bool
    two_way_sync: bool
    last_full_sync_at: datetime | None = None


class SettingsUpdate(BaseModel):
    """Partial update; omitted fields keep their stored value."""

    sync_assessments: bool | None = None
    sync_study_sessions: bool | None = None
    sync_custom_events: bool | None = None
    two_way_sync: bool | None = None

    def changes(self) -> dict[str, bool]:
        return self.model_dump(exclude_none=True)


class OAuthCallbackRequest(BaseModel):
    user_id: str = Field(min_length=1)
    code: str = Field(min_length=1)
    redirect_uri: str = Field(min_length=1)


class OAuthCallbackResponse(BaseModel):
    connected: bool = True
    webhook: str | None = None


class DeleteEventResponse(BaseModel):
    external_event_id: str
    outcome: str
    deleted: bool
