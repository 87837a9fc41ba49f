"""Pure mapping from local events to Google Calendar event payloads."""

from __future__ import annotations

import json
from datetime import date, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any
from zoneinfo import ZoneInfo

from pydantic import BaseModel, ConfigDict

if TYPE_CHECKING:
    from studysync.calendar.models import (
        Assessment,
        Course,
        CustomEvent,
        EventSpan,
        LocalEvent,
        StudySession,
    )

ASSESSMENT_TITLE_PREFIX = "📚"
DEFAULT_SESSION_ICON = "📖"
UNKNOWN_COURSE_NAME = "Unknown"

ASSESSMENT_REMINDER_MINUTES = (1440, 60)
STUDY_SESSION_REMINDER_MINUTES = (15,)


class ColorClass(StrEnum):
    """Google Calendar ``colorId`` buckets."""

    exam = "11"
    assignment = "9"
    project = "3"
    other_assessment = "8"
    study_session = "1"
    custom_event = "2"


_ASSESSMENT_COLORS = {
    "exam": ColorClass.exam,
    "assignment": ColorClass.assignment,
    "project": ColorClass.project,
}


class ReminderOverride(BaseModel):
    model_config = ConfigDict(frozen=True)

    method: str = "popup"
    minutes_before_start: int


class EventTime(BaseModel):
    """Either a ``dateTime`` + ``timeZone`` pair or an all-day ``date``."""

    model_config = ConfigDict(frozen=True)

    date_time: datetime | None = None
    time_zone: str | None = None
    all_day_date: date | None = None

    def to_google(self) -> dict[str, str]:
        if self.all_day_date is not None:
            return {"date": self.all_day_date.isoformat()}
        assert self.date_time is not None
        return {"dateTime": self.date_time.isoformat(), "timeZone": self.time_zone or "UTC"}


class ExternalEventPayload(BaseModel):
    """Provider-neutral description of one external calendar event."""

    model_config = ConfigDict(frozen=True)

    title: str
    description: str
    start: EventTime
    end: EventTime
    color_class: ColorClass
    location: str | None = None
    reminder_overrides: tuple[ReminderOverride, ...] = ()
    use_default_reminders: bool = False

    @property
    def summary(self) -> str:
        return self.title

    def to_google_body(self) -> dict[str, Any]:
        """Render the Calendar API event resource."""
        body: dict[str, Any] = {
            "summary": self.title,
            "description": self.description,
            "start": self.start.to_google(),
            "end": self.end.to_google(),
            "colorId": self.color_class.value,
        }
        if self.location:
            body["location"] = self.location
        reminders: dict[str, Any] = {"useDefault": self.use_default_reminders}
        if not self.use_default_reminders:
            reminders["overrides"] = [
                {"method": item.method, "minutes": item.minutes_before_start}
                for item in self.reminder_overrides
            ]
        body["reminders"] = reminders
        return body

    def canonical_json(self) -> str:
        return json.dumps(self.to_google_body(), sort_keys=True, separators=(",", ":"))


def to_external_payload(
    event: LocalEvent,
    course: Course | None = None,
    *,
    timezone: str,
) -> ExternalEventPayload:
    """Map *event* to the payload sent to the provider.

    *timezone* is the user's IANA zone; timed spans are rendered as local
    wall-clock time in that zone. Raises ``ValueError`` for an unknown event
    kind or an unusable span.
    """
    if event.kind == "assessment":
        return _assessment_payload(event, course, timezone)
    if event.kind == "study_session":
        return _study_session_payload(event, course, timezone)
    if event.kind == "custom_event":
        return _custom_event_payload(event, course, timezone)
    raise ValueError(f"Unsupported event kind: {event.kind!r}")


def _assessment_payload(
    event: Assessment, course: Course | None, timezone: str
) -> ExternalEventPayload:
    lines = [
        f"Course: {_course_name(course)}",
        f"Type: {event.assessment_type}",
    ]
    if event.weight:
        lines.append(f"Weight: {event.weight:g}%")
    start, end = _span_times(event.span, timezone)
    return ExternalEventPayload(
        title=f"{ASSESSMENT_TITLE_PREFIX} {event.title}",
        description=_join_description(lines, event.description),
        start=start,
        end=end,
        color_class=assessment_color(event.assessment_type),
        reminder_overrides=_popups(ASSESSMENT_REMINDER_MINUTES),
    )


def _study_session_payload(
    event: StudySession, course: Course | None, timezone: str
) -> ExternalEventPayload:
    lines = [
        f"Course: {_course_name(course)}",
        f"Activity: {event.activity_type}",
        f"Week {event.week_number}",
    ]
    start, end = _span_times(event.span, timezone)
    return ExternalEventPayload(
        title=f"{event.icon or DEFAULT_SESSION_ICON} {event.title}",
        description=_join_description(lines, event.description),
        start=start,
        end=end,
        color_class=ColorClass.study_session,
        reminder_overrides=_popups(STUDY_SESSION_REMINDER_MINUTES),
    )


def _custom_event_payload(
    event: CustomEvent, course: Course | None, timezone: str
) -> ExternalEventPayload:
    lines = []
    if course is not None:
        lines.append(f"Course: {course.name}")
    lines.append(f"Type: {event.event_type}")
    start, end = _span_times(event.span, timezone)
    return ExternalEventPayload(
        title=event.title,
        description=_join_description(lines, event.description),
        start=start,
        end=end,
        color_class=ColorClass.custom_event,
        location=event.location or None,
        use_default_reminders=True,
    )


def assessment_color(assessment_type: str | None) -> ColorClass:
    if not assessment_type:
        return ColorClass.other_assessment
    return _ASSESSMENT_COLORS.get(assessment_type.strip().lower(), ColorClass.other_assessment)


def _course_name(course: Course | None) -> str:
    if course is None or not course.name:
        return UNKNOWN_COURSE_NAME
    return course.name


def _join_description(lines: list[str], free_text: str | None) -> str:
    description = "\n".join(lines)
    if free_text:
        description += f"\n\n{free_text}"
    return description


def _popups(minutes: tuple[int, ...]) -> tuple[ReminderOverride, ...]:
    return tuple(ReminderOverride(minutes_before_start=value) for value in minutes)


def _span_times(span: EventSpan, timezone: str) -> tuple[EventTime, EventTime]:
    if span.all_day:
        return EventTime(all_day_date=span.start_date), EventTime(all_day_date=span.end_date)
    if span.start is None or span.end is None:
        raise ValueError("timed span is missing start or end")
    zone = ZoneInfo(timezone)
    return (
        EventTime(date_time=span.start.astimezone(zone), time_zone=timezone),
        EventTime(date_time=span.end.astimezone(zone), time_zone=timezone),
    )
