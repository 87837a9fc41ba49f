"""Persistence contract for calendar sync and its asyncpg implementation.

The schema belongs to the application database; rows are read and updated
by primary key only. The sync engine never creates or deletes local events.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import TYPE_CHECKING, Any, Protocol

from studysync.calendar.models import (
    Assessment,
    CalendarConnection,
    Course,
    CustomEvent,
    EventKind,
    EventSpan,
    LocalEvent,
    StudySession,
    SyncScope,
    SyncSettings,
    SyncState,
    WebhookSubscription,
    resolve_session_start,
)

if TYPE_CHECKING:
    from studysync.db import Database

logger = logging.getLogger(__name__)

SETTINGS_COLUMNS = frozenset(
    {"sync_assessments", "sync_study_sessions", "sync_custom_events", "two_way_sync"}
)

_DAY_INDEX = {
    "sunday": 0,
    "monday": 1,
    "tuesday": 2,
    "wednesday": 3,
    "thursday": 4,
    "friday": 5,
    "saturday": 6,
}

_EVENT_TABLES = {
    EventKind.assessment: "assignments",
    EventKind.study_session: "study_sessions",
    EventKind.custom_event: "custom_events",
}


@dataclass(frozen=True)
class RejectedRow:
    """A stored row that could not be turned into a local event."""

    kind: EventKind
    id: str
    reason: str


@dataclass
class EligibleEvents:
    events: list[LocalEvent] = field(default_factory=list)
    rejected: list[RejectedRow] = field(default_factory=list)


class CalendarSyncStore(Protocol):
    """Everything the sync engine reads from or writes to the event store."""

    async def load_connection(self, user_id: str) -> CalendarConnection | None:
        """Return the stored credential, or ``None`` when the user is not connected."""
        ...

    async def save_refresh_token(self, user_id: str, refresh_token: str) -> None:
        ...

    async def load_scope(self, semester_id: str) -> SyncScope | None:
        """Return the semester's date range, or ``None`` when it does not exist."""
        ...

    async def get_or_create_settings(self, user_id: str) -> SyncSettings:
        ...

    async def update_settings(self, user_id: str, changes: dict[str, bool]) -> SyncSettings:
        ...

    async def mark_full_sync(self, user_id: str, at: datetime) -> None:
        ...

    async def list_courses(self, scope: SyncScope) -> dict[str, Course]:
        ...

    async def list_eligible_events(
        self,
        kind: EventKind,
        *,
        user_id: str,
        scope: SyncScope,
        courses: dict[str, Course],
        now: datetime,
        timezone: str,
    ) -> EligibleEvents:
        """Rows of *kind* that should be pushed in this pass, in stable order.

        Rows that cannot be read as events are reported in ``rejected``
        instead of failing the whole listing.
        """
        ...

    async def save_sync_state(self, event: LocalEvent) -> None:
        """Persist ``event.sync`` (external id and last sync time) for one row."""
        ...

    async def get_webhook(self, user_id: str) -> WebhookSubscription | None:
        ...

    async def upsert_webhook(self, subscription: WebhookSubscription) -> None:
        ...

    async def delete_webhook(self, user_id: str) -> None:
        ...


class PostgresCalendarSyncStore:
    """asyncpg-backed store over the study planner tables.

    *default_timezone* applies to profiles without a timezone of their own.
    """

    def __init__(self, db: Database, *, default_timezone: str = "UTC") -> None:
        self._db = db
        self._default_timezone = default_timezone

    async def load_connection(self, user_id: str) -> CalendarConnection | None:
        row = await self._db.fetchrow(
            "SELECT google_refresh_token, timezone FROM profiles WHERE id = $1",
            user_id,
        )
        if row is None or not row["google_refresh_token"]:
            return None
        return CalendarConnection(
            user_id=user_id,
            refresh_token=row["google_refresh_token"],
            timezone=row["timezone"] or self._default_timezone,
        )

    async def save_refresh_token(self, user_id: str, refresh_token: str) -> None:
        await self._db.execute(
            "UPDATE profiles SET google_refresh_token = $2 WHERE id = $1",
            user_id,
            refresh_token,
        )

    async def load_scope(self, semester_id: str) -> SyncScope | None:
        row = await self._db.fetchrow(
            "SELECT id, start_date, end_date FROM semesters WHERE id = $1",
            semester_id,
        )
        if row is None:
            return None
        return SyncScope(
            semester_id=str(row["id"]),
            start_date=row["start_date"],
            end_date=row["end_date"],
        )

    async def get_or_create_settings(self, user_id: str) -> SyncSettings:
        row = await self._db.fetchrow(
            """
            INSERT INTO calendar_sync_settings (user_id)
            VALUES ($1)
            ON CONFLICT (user_id) DO UPDATE SET user_id = EXCLUDED.user_id
            RETURNING user_id, sync_assessments, sync_study_sessions, sync_custom_events,
                      two_way_sync, last_sync_token, last_full_sync_at
            """,
            user_id,
        )
        return _settings_from_row(row)

    async def update_settings(self, user_id: str, changes: dict[str, bool]) -> SyncSettings:
        unknown = set(changes) - SETTINGS_COLUMNS
        if unknown:
            raise ValueError(f"Unknown sync settings: {', '.join(sorted(unknown))}")

        await self.get_or_create_settings(user_id)
        if not changes:
            return await self.get_or_create_settings(user_id)

        columns = sorted(changes)
        assignments = ", ".join(f"{column} = ${index}" for index, column in enumerate(columns, 2))
        row = await self._db.fetchrow(
            f"""
            UPDATE calendar_sync_settings
            SET {assignments}
            WHERE user_id = $1
            RETURNING user_id, sync_assessments, sync_study_sessions, sync_custom_events,
                      two_way_sync, last_sync_token, last_full_sync_at
            """,
            user_id,
            *(bool(changes[column]) for column in columns),
        )
        return _settings_from_row(row)

    async def mark_full_sync(self, user_id: str, at: datetime) -> None:
        await self._db.execute(
            "UPDATE calendar_sync_settings SET last_full_sync_at = $2 WHERE user_id = $1",
            user_id,
            at,
        )

    async def list_courses(self, scope: SyncScope) -> dict[str, Course]:
        rows = await self._db.fetch(
            "SELECT id, name, code FROM courses WHERE semester_id = $1 ORDER BY id",
            scope.semester_id,
        )
        return {
            str(row["id"]): Course(id=str(row["id"]), name=row["name"] or "", code=row["code"])
            for row in rows
        }

    async def list_eligible_events(
        self,
        kind: EventKind,
        *,
        user_id: str,
        scope: SyncScope,
        courses: dict[str, Course],
        now: datetime,
        timezone: str,
    ) -> EligibleEvents:
        if kind is EventKind.assessment:
            return await self._eligible_assessments(user_id, courses, now)
        if kind is EventKind.study_session:
            return await self._eligible_sessions(user_id, scope, now, timezone)
        return await self._eligible_custom_events(user_id, now)

    async def save_sync_state(self, event: LocalEvent) -> None:
        table = _EVENT_TABLES[EventKind(event.kind)]
        await self._db.execute(
            f"UPDATE {table} SET calendar_event_id = $2, last_synced_at = $3 WHERE id = $1",
            event.id,
            event.sync.external_event_id,
            event.sync.last_synced_at,
        )

    async def get_webhook(self, user_id: str) -> WebhookSubscription | None:
        row = await self._db.fetchrow(
            "SELECT user_id, channel_id, resource_id, expiration "
            "FROM calendar_webhooks WHERE user_id = $1",
            user_id,
        )
        if row is None:
            return None
        return WebhookSubscription(
            user_id=str(row["user_id"]),
            channel_id=row["channel_id"],
            resource_id=row["resource_id"],
            expiration=row["expiration"],
        )

    async def upsert_webhook(self, subscription: WebhookSubscription) -> None:
        await self._db.execute(
            """
            INSERT INTO calendar_webhooks (user_id, channel_id, resource_id, expiration)
            VALUES ($1, $2, $3, $4)
            ON CONFLICT (user_id) DO UPDATE SET
                channel_id = EXCLUDED.channel_id,
                resource_id = EXCLUDED.resource_id,
                expiration = EXCLUDED.expiration
            """,
            subscription.user_id,
            subscription.channel_id,
            subscription.resource_id,
            subscription.expiration,
        )

    async def delete_webhook(self, user_id: str) -> None:
        await self._db.execute("DELETE FROM calendar_webhooks WHERE user_id = $1", user_id)

    # -- Per-kind eligibility ----------------------------------------------

    async def _eligible_assessments(
        self, user_id: str, courses: dict[str, Course], now: datetime
    ) -> EligibleEvents:
        if not courses:
            return EligibleEvents()
        rows = await self._db.fetch(
            """
            SELECT id, course_id, title, type, weight, description, due_date,
                   calendar_event_id, last_synced_at
            FROM assignments
            WHERE course_id = ANY($1::uuid[]) AND due_date >= $2
            ORDER BY due_date, id
            """,
            list(courses),
            now,
        )
        return _build_events(
            EventKind.assessment,
            rows,
            lambda row: Assessment.due(
                row["due_date"],
                id=str(row["id"]),
                owner_id=user_id,
                title=row["title"],
                course_id=_optional_id(row["course_id"]),
                description=row["description"],
                assessment_type=row["type"] or "Assignment",
                weight=row["weight"],
                sync=_sync_state(row),
            ),
        )

    async def _eligible_sessions(
        self, user_id: str, scope: SyncScope, now: datetime, timezone: str
    ) -> EligibleEvents:
        if scope.start_date is None:
            return EligibleEvents()
        semester_start = scope.start_date
        plan_id = await self._db.fetchval(
            """
            SELECT id FROM study_plans
            WHERE semester_id = $1 AND user_id = $2 AND status = 'active'
            ORDER BY created_at DESC
            LIMIT 1
            """,
            scope.semester_id,
            user_id,
        )
        if plan_id is None:
            return EligibleEvents()
        rows = await self._db.fetch(
            """
            SELECT id, course_id, title, icon, activity_type, week_number, day,
                   start_time, duration_minutes, description,
                   calendar_event_id, last_synced_at
            FROM study_sessions
            WHERE plan_id = $1
            ORDER BY week_number, id
            """,
            plan_id,
        )
        built = _build_events(
            EventKind.study_session,
            rows,
            lambda row: _session_from_row(row, user_id, semester_start, timezone),
        )
        # Past sessions are never pushed.
        built.events = [
            session
            for session in built.events
            if session.span.start is None or session.span.start >= now
        ]
        return built

    async def _eligible_custom_events(self, user_id: str, now: datetime) -> EligibleEvents:
        rows = await self._db.fetch(
            """
            SELECT id, user_id, course_id, title, description, start_time, end_time,
                   is_all_day, location, event_type, recurrence_rule,
                   calendar_event_id, last_synced_at
            FROM custom_events
            WHERE user_id = $1 AND start_time >= $2
            ORDER BY start_time, id
            """,
            user_id,
            now,
        )
        return _build_events(EventKind.custom_event, rows, _custom_event_from_row)


def _build_events(
    kind: EventKind,
    rows: Iterable[Any],
    build: Callable[[Any], LocalEvent],
) -> EligibleEvents:
    built = EligibleEvents()
    for row in rows:
        try:
            built.events.append(build(row))
        except (ValueError, TypeError) as exc:
            logger.warning("Skipping %s %s: %s", kind.value, row["id"], exc)
            built.rejected.append(RejectedRow(kind=kind, id=str(row["id"]), reason=str(exc)))
    return built


def _settings_from_row(row: Any) -> SyncSettings:
    return SyncSettings(
        user_id=str(row["user_id"]),
        sync_assessments=_flag(row["sync_assessments"]),
        sync_study_sessions=_flag(row["sync_study_sessions"]),
        sync_custom_events=_flag(row["sync_custom_events"]),
        two_way_sync=bool(row["two_way_sync"]),
        last_sync_token=row["last_sync_token"],
        last_full_sync_at=row["last_full_sync_at"],
    )


def _flag(value: bool | None) -> bool:
    # NULL kind flags take the default (enabled).
    return True if value is None else bool(value)


def _optional_id(value: Any) -> str | None:
    return None if value is None else str(value)


def _sync_state(row: Any) -> SyncState:
    return SyncState(
        external_event_id=row["calendar_event_id"] or None,
        last_synced_at=row["last_synced_at"],
    )


def parse_day(value: Any) -> int | None:
    """Accept a weekday name (``"Monday"``) or an index (0 = Sunday)."""
    if isinstance(value, int):
        return value if 0 <= value <= 6 else None
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized.isdigit():
            return parse_day(int(normalized))
        return _DAY_INDEX.get(normalized)
    return None


def parse_start_time(value: Any) -> time | None:
    """Accept a ``time`` or an ``HH:MM[:SS]`` string."""
    if isinstance(value, time):
        return value.replace(second=0, microsecond=0)
    if isinstance(value, str):
        try:
            hours, minutes, *_ = value.strip().split(":")
            return time(int(hours), int(minutes))
        except ValueError:
            return None
    return None


def _session_from_row(
    row: Any, user_id: str, semester_start: date, timezone: str
) -> StudySession:
    day = parse_day(row["day"])
    start_time = parse_start_time(row["start_time"])
    duration = row["duration_minutes"]
    if day is None or start_time is None or not duration or duration < 1:
        raise ValueError(
            f"unusable schedule (day={row['day']!r}, start_time={row['start_time']!r}, "
            f"duration_minutes={duration!r})"
        )

    start = resolve_session_start(semester_start, row["week_number"], day, start_time, timezone)
    return StudySession(
        id=str(row["id"]),
        owner_id=user_id,
        title=row["title"],
        course_id=_optional_id(row["course_id"]),
        span=EventSpan.timed(start, start + timedelta(minutes=duration)),
        description=row["description"],
        week_number=row["week_number"],
        activity_type=row["activity_type"] or "study",
        icon=row["icon"],
        day=day,
        start_time=start_time,
        duration_minutes=duration,
        sync=_sync_state(row),
    )


def _custom_event_from_row(row: Any) -> CustomEvent:
    start: datetime = row["start_time"]
    end: datetime = row["end_time"] or start
    if row["is_all_day"]:
        span = EventSpan.whole_days(start.date(), end.date())
    else:
        span = EventSpan.timed(start, end if end > start else start + timedelta(hours=1))
    return CustomEvent(
        id=str(row["id"]),
        owner_id=str(row["user_id"]),
        title=row["title"],
        course_id=_optional_id(row["course_id"]),
        span=span,
        description=row["description"],
        event_type=row["event_type"] or "other",
        location=row["location"],
        recurrence_rule=row["recurrence_rule"],
        sync=_sync_state(row),
    )
