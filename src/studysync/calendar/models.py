"""Local event data model for calendar sync.

Local rows are owned by the application database; the sync engine only reads
them and records the provider id it was given on create.
"""

from __future__ import annotations

from datetime import UTC, date, datetime, time, timedelta
from enum import StrEnum
from typing import TYPE_CHECKING, Annotated, Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

if TYPE_CHECKING:
    from studysync.calendar.mapper import ExternalEventPayload

ASSESSMENT_DURATION = timedelta(hours=1)


class EventKind(StrEnum):
    """Kinds of local events mirrored into the external calendar."""

    assessment = "assessment"
    study_session = "study_session"
    custom_event = "custom_event"


class SyncState(BaseModel):
    """Per-row link to the external calendar."""

    model_config = ConfigDict(frozen=True)

    external_event_id: str | None = None
    last_synced_at: datetime | None = None


class EventSpan(BaseModel):
    """When an event happens: timed (``start``/``end``) or all-day dates.

    All-day ``end_date`` is exclusive, matching the provider's convention.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    start: datetime | None = None
    end: datetime | None = None
    start_date: date | None = None
    end_date: date | None = None

    @model_validator(mode="after")
    def _check_shape(self) -> EventSpan:
        timed = self.start is not None or self.end is not None
        all_day = self.start_date is not None or self.end_date is not None
        if timed == all_day:
            raise ValueError("span must be either timed (start/end) or all-day (start_date/end_date)")
        if timed and (self.start is None or self.end is None):
            raise ValueError("timed span requires both start and end")
        if all_day and (self.start_date is None or self.end_date is None):
            raise ValueError("all-day span requires both start_date and end_date")
        if self.start is not None and self.start.tzinfo is None:
            raise ValueError("timed span start must be timezone-aware")
        if self.end is not None and self.end.tzinfo is None:
            raise ValueError("timed span end must be timezone-aware")
        return self

    @property
    def all_day(self) -> bool:
        return self.start_date is not None

    @classmethod
    def timed(cls, start: datetime, end: datetime) -> EventSpan:
        return cls(start=start, end=end)

    @classmethod
    def whole_days(cls, start_date: date, end_date: date | None = None) -> EventSpan:
        if end_date is None or end_date <= start_date:
            end_date = start_date + timedelta(days=1)
        return cls(start_date=start_date, end_date=end_date)


class Course(BaseModel):
    """Course a local event may belong to."""

    id: str
    name: str
    code: str | None = None


class _LocalEventBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    owner_id: str = Field(min_length=1)
    title: str
    course_id: str | None = None
    span: EventSpan
    description: str | None = None
    sync: SyncState = Field(default_factory=SyncState)

    @field_validator("description")
    @classmethod
    def _blank_description_is_none(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return value

    @property
    def external_event_id(self) -> str | None:
        return self.sync.external_event_id

    def to_payload(
        self,
        course: Course | None = None,
        *,
        timezone: str,
    ) -> ExternalEventPayload:
        from studysync.calendar.mapper import to_external_payload

        return to_external_payload(self, course, timezone=timezone)

    def mark_synced(self, external_event_id: str, synced_at: datetime) -> _LocalEventBase:
        """Return a copy linked to *external_event_id*."""
        return self.model_copy(
            update={
                "sync": SyncState(
                    external_event_id=external_event_id,
                    last_synced_at=synced_at,
                )
            }
        )


class Assessment(_LocalEventBase):
    """A graded item (exam, assignment, project, quiz, ...) with a due time."""

    kind: Literal["assessment"] = "assessment"
    assessment_type: str = "Assignment"
    weight: float | None = None

    @property
    def due_at(self) -> datetime:
        assert self.span.start is not None
        return self.span.start

    @classmethod
    def due(cls, due_at: datetime, **fields: object) -> Assessment:
        """Build an assessment whose external span is one hour from *due_at*."""
        return cls(span=EventSpan.timed(due_at, due_at + ASSESSMENT_DURATION), **fields)


class StudySession(_LocalEventBase):
    """A scheduled block in a study plan."""

    kind: Literal["study_session"] = "study_session"
    week_number: int = Field(ge=1)
    activity_type: str = "study"
    icon: str | None = None
    day: int | None = Field(default=None, ge=0, le=6)
    start_time: time | None = None
    duration_minutes: int | None = Field(default=None, ge=1)


class CustomEvent(_LocalEventBase):
    """A user-created event, optionally recurring."""

    kind: Literal["custom_event"] = "custom_event"
    event_type: str = "other"
    location: str | None = None
    recurrence_rule: str | None = None

    @property
    def all_day(self) -> bool:
        return self.span.all_day


LocalEvent = Annotated[Assessment | StudySession | CustomEvent, Field(discriminator="kind")]


class SyncSettings(BaseModel):
    """Per-user sync preferences; one row per user, created lazily."""

    model_config = ConfigDict(extra="ignore")

    user_id: str
    sync_assessments: bool = True
    sync_study_sessions: bool = True
    sync_custom_events: bool = True
    two_way_sync: bool = False
    last_sync_token: str | None = None
    last_full_sync_at: datetime | None = None

    def is_enabled(self, kind: EventKind) -> bool:
        if kind is EventKind.assessment:
            return self.sync_assessments
        if kind is EventKind.study_session:
            return self.sync_study_sessions
        return self.sync_custom_events


class WebhookSubscription(BaseModel):
    """Registered push-notification channel, at most one per user."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    channel_id: str
    # Older rows may lack the provider resource id; such channels cannot be stopped.
    resource_id: str | None = None
    expiration: datetime

    def expires_within(self, now: datetime, window: timedelta) -> bool:
        return self.expiration - now < window


class CalendarConnection(BaseModel):
    """A user's stored Google credential and calendar timezone."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    refresh_token: str = Field(min_length=1)
    timezone: str = "UTC"

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError):
            return "UTC"
        return value

    def __repr__(self) -> str:
        return (
            f"CalendarConnection(user_id={self.user_id!r}, refresh_token=<REDACTED>, "
            f"timezone={self.timezone!r})"
        )

    __str__ = __repr__


class SyncScope(BaseModel):
    """Which academic term a sync pass covers."""

    model_config = ConfigDict(frozen=True)

    semester_id: str
    start_date: date | None = None
    end_date: date | None = None


class SyncSummary(BaseModel):
    """Result of one sync pass."""

    synced_count: int = 0
    created_count: int = 0
    updated_count: int = 0
    error_count: int = 0
    message: str = ""
    aborted: bool = False
    webhook: str | None = None


def week_one_sunday(semester_start: date) -> date:
    """Sunday that starts the week containing *semester_start*."""
    # date.weekday(): Monday = 0 ... Sunday = 6
    return semester_start - timedelta(days=(semester_start.weekday() + 1) % 7)


def resolve_session_start(
    semester_start: date,
    week_number: int,
    day: int,
    start_time: time,
    timezone: str,
) -> datetime:
    """Absolute start of a study session.

    *day* uses 0 = Sunday ... 6 = Saturday. The wall-clock *start_time* is
    interpreted in *timezone*.
    """
    if week_number < 1:
        raise ValueError(f"week_number must be >= 1, got {week_number}")
    if not 0 <= day <= 6:
        raise ValueError(f"day must be between 0 and 6, got {day}")
    session_date = week_one_sunday(semester_start) + timedelta(days=(week_number - 1) * 7 + day)
    return datetime.combine(session_date, start_time, tzinfo=ZoneInfo(timezone))


def utc_now() -> datetime:
    return datetime.now(UTC)
