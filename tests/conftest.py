"""Shared fixtures: an in-memory sync store and a fake Google OAuth/Calendar API."""

from __future__ import annotations

import asyncio
import json
from datetime import UTC, date, datetime, time, timedelta
from typing import Any
from urllib.parse import parse_qs

import httpx
import pytest

from studysync.calendar.google import GoogleCalendarClient, GoogleTokenManager
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
    WebhookSubscription,
)
from studysync.calendar.store import SETTINGS_COLUMNS, EligibleEvents, RejectedRow
from studysync.calendar.sync import CalendarSyncOrchestrator
from studysync.calendar.webhooks import WebhookLifecycleManager
from studysync.config import GoogleConfig, WebhookConfig

FIXED_NOW = datetime(2024, 9, 1, 12, 0, tzinfo=UTC)
TEST_USER = "user-1"
TEST_SEMESTER = "sem-1"

_API_PREFIX = "/calendar/v3"


class InMemoryCalendarStore:
    """Dict-backed stand-in for ``PostgresCalendarSyncStore``."""

    def __init__(self) -> None:
        self.connections: dict[str, CalendarConnection] = {}
        self.scopes: dict[str, SyncScope] = {}
        self.settings: dict[str, SyncSettings] = {}
        self.courses: dict[str, dict[str, Course]] = {}
        self.events: dict[EventKind, dict[str, LocalEvent]] = {kind: {} for kind in EventKind}
        self.webhooks: dict[str, WebhookSubscription] = {}
        self.full_syncs: list[tuple[str, datetime]] = []
        self.saved_states: list[tuple[str, str | None]] = []
        self.list_delay_s: float = 0.0
        self.rejected: dict[EventKind, list[RejectedRow]] = {kind: [] for kind in EventKind}

    def add_event(self, event: LocalEvent) -> LocalEvent:
        self.events[EventKind(event.kind)][event.id] = event
        return event

    def event(self, kind: EventKind, event_id: str) -> LocalEvent:
        return self.events[kind][event_id]

    async def load_connection(self, user_id: str) -> CalendarConnection | None:
        return self.connections.get(user_id)

    async def save_refresh_token(self, user_id: str, refresh_token: str) -> None:
        current = self.connections.get(user_id)
        timezone = current.timezone if current is not None else "UTC"
        self.connections[user_id] = CalendarConnection(
            user_id=user_id, refresh_token=refresh_token, timezone=timezone
        )

    async def load_scope(self, semester_id: str) -> SyncScope | None:
        return self.scopes.get(semester_id)

    async def get_or_create_settings(self, user_id: str) -> SyncSettings:
        if user_id not in self.settings:
            self.settings[user_id] = SyncSettings(user_id=user_id)
        return self.settings[user_id]

    async def update_settings(self, user_id: str, changes: dict[str, bool]) -> SyncSettings:
        unknown = set(changes) - SETTINGS_COLUMNS
        if unknown:
            raise ValueError(f"Unknown sync settings: {', '.join(sorted(unknown))}")
        current = await self.get_or_create_settings(user_id)
        self.settings[user_id] = current.model_copy(update=changes)
        return self.settings[user_id]

    async def mark_full_sync(self, user_id: str, at: datetime) -> None:
        self.full_syncs.append((user_id, at))
        current = await self.get_or_create_settings(user_id)
        self.settings[user_id] = current.model_copy(update={"last_full_sync_at": at})

    async def list_courses(self, scope: SyncScope) -> dict[str, Course]:
        return dict(self.courses.get(scope.semester_id, {}))

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
        if self.list_delay_s:
            await asyncio.sleep(self.list_delay_s)
        eligible = []
        for event in self.events[kind].values():
            if event.owner_id != user_id:
                continue
            if kind is EventKind.assessment and event.course_id not in courses:
                continue
            if _event_start(event) < now:
                continue
            eligible.append(event)
        return EligibleEvents(events=eligible, rejected=list(self.rejected[kind]))

    async def save_sync_state(self, event: LocalEvent) -> None:
        self.events[EventKind(event.kind)][event.id] = event
        self.saved_states.append((event.id, event.sync.external_event_id))

    async def get_webhook(self, user_id: str) -> WebhookSubscription | None:
        return self.webhooks.get(user_id)

    async def upsert_webhook(self, subscription: WebhookSubscription) -> None:
        self.webhooks[subscription.user_id] = subscription

    async def delete_webhook(self, user_id: str) -> None:
        self.webhooks.pop(user_id, None)


def _event_start(event: LocalEvent) -> datetime:
    if event.span.start is not None:
        return event.span.start
    assert event.span.start_date is not None
    return datetime.combine(event.span.start_date, time.min, tzinfo=UTC)


class FakeGoogleCalendar:
    """Routes OAuth token and Calendar API v3 requests to in-memory state."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.events: dict[str, dict[str, Any]] = {}
        self.deleted: set[str] = set()
        self.channels: dict[str, dict[str, Any]] = {}
        self.stopped: list[dict[str, Any]] = []
        self.token_status = 200
        self.omit_refresh_token = False
        self.fail_summaries: dict[str, int] = {}
        self.watch_status = 200
        self.stop_status = 204
        self.event_delay_s = 0.0
        self._next_id = 0

    @property
    def event_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path.startswith(f"{_API_PREFIX}/calendars")]

    def bodies(self, method: str, suffix: str = "/events") -> list[dict[str, Any]]:
        return [
            json.loads(request.content)
            for request in self.requests
            if request.method == method and request.url.path.endswith(suffix)
        ]

    async def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/token":
            return self._token(request)
        if path == f"{_API_PREFIX}/channels/stop":
            self.stopped.append(json.loads(request.content))
            return httpx.Response(self.stop_status)
        if path.endswith("/events/watch"):
            return self._watch(request)
        if self.event_delay_s:
            await asyncio.sleep(self.event_delay_s)
        if path.endswith("/events") and request.method == "POST":
            return self._create(request)
        event_id = path.rsplit("/", 1)[-1]
        if request.method == "PUT":
            return self._update(request, event_id)
        if request.method == "DELETE":
            return self._delete(event_id)
        return httpx.Response(400, json={"error": {"message": f"unexpected {request.method}"}})

    def _token(self, request: httpx.Request) -> httpx.Response:
        if self.token_status != 200:
            return httpx.Response(
                self.token_status,
                json={
                    "error": "invalid_grant",
                    "error_description": "Token has been expired or revoked.",
                },
            )
        form = parse_qs(request.content.decode())
        payload: dict[str, Any] = {"access_token": "access-123", "expires_in": 3599}
        if form["grant_type"] == ["authorization_code"] and not self.omit_refresh_token:
            payload["refresh_token"] = "refresh-from-code"
        return httpx.Response(200, json=payload)

    def _create(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        failure = self.fail_summaries.get(body.get("summary", ""))
        if failure is not None:
            return httpx.Response(failure, json={"error": {"message": "Simulated failure"}})
        self._next_id += 1
        event_id = f"evt-{self._next_id}"
        self.events[event_id] = body
        return httpx.Response(200, json={"id": event_id, "status": "confirmed"})

    def _update(self, request: httpx.Request, event_id: str) -> httpx.Response:
        body = json.loads(request.content)
        failure = self.fail_summaries.get(body.get("summary", ""))
        if failure is not None:
            return httpx.Response(failure, json={"error": {"message": "Simulated failure"}})
        if event_id not in self.events:
            return httpx.Response(404, json={"error": {"message": "Not Found"}})
        self.events[event_id] = body
        return httpx.Response(200, json={"id": event_id, "status": "confirmed"})

    def _delete(self, event_id: str) -> httpx.Response:
        if event_id in self.events:
            del self.events[event_id]
            self.deleted.add(event_id)
            return httpx.Response(204)
        if event_id in self.deleted:
            return httpx.Response(410, json={"error": {"message": "Resource has been deleted"}})
        return httpx.Response(404, json={"error": {"message": "Not Found"}})

    def _watch(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        if self.watch_status != 200:
            return httpx.Response(self.watch_status, json={"error": {"message": "Watch refused"}})
        self.channels[body["id"]] = body
        return httpx.Response(
            200,
            json={
                "kind": "api#channel",
                "id": body["id"],
                "resourceId": f"resource-{len(self.channels)}",
                "expiration": str(body["expiration"]),
            },
        )


def seed_semester(store: InMemoryCalendarStore) -> None:
    """One connected user, one semester and two courses; no events."""
    store.connections[TEST_USER] = CalendarConnection(
        user_id=TEST_USER, refresh_token="stored-refresh-token", timezone="UTC"
    )
    store.scopes[TEST_SEMESTER] = SyncScope(
        semester_id=TEST_SEMESTER,
        start_date=date(2024, 9, 2),
        end_date=date(2024, 12, 20),
    )
    store.courses[TEST_SEMESTER] = {
        "course-1": Course(id="course-1", name="Algorithms", code="CS201"),
        "course-2": Course(id="course-2", name="Linear Algebra", code="MA210"),
    }


def seed_events(store: InMemoryCalendarStore) -> None:
    """Four eligible future events and one past assessment."""
    store.add_event(
        Assessment.due(
            FIXED_NOW + timedelta(days=10),
            id="a-1",
            owner_id=TEST_USER,
            title="Midterm",
            course_id="course-1",
            assessment_type="Exam",
            weight=25,
        )
    )
    store.add_event(
        Assessment.due(
            FIXED_NOW + timedelta(days=3),
            id="a-2",
            owner_id=TEST_USER,
            title="Problem Set 1",
            course_id="course-2",
            assessment_type="Assignment",
        )
    )
    store.add_event(
        Assessment.due(
            FIXED_NOW - timedelta(days=1),
            id="a-past",
            owner_id=TEST_USER,
            title="Syllabus quiz",
            course_id="course-1",
            assessment_type="Quiz",
        )
    )
    start = FIXED_NOW + timedelta(days=1)
    store.add_event(
        StudySession(
            id="s-1",
            owner_id=TEST_USER,
            title="Review lecture notes",
            course_id="course-1",
            span=EventSpan.timed(start, start + timedelta(minutes=90)),
            week_number=1,
            activity_type="review",
            icon="🔄",
        )
    )
    store.add_event(
        CustomEvent(
            id="c-1",
            owner_id=TEST_USER,
            title="Study group",
            span=EventSpan.timed(
                FIXED_NOW + timedelta(days=2), FIXED_NOW + timedelta(days=2, hours=2)
            ),
            event_type="meeting",
            location="Library room 2",
        )
    )


@pytest.fixture
def google_config() -> GoogleConfig:
    return GoogleConfig(client_id="client-id", client_secret="client-secret")


@pytest.fixture
def webhook_config() -> WebhookConfig:
    return WebhookConfig(notification_url="https://hooks.example.com/calendar")


@pytest.fixture
def fake_google() -> FakeGoogleCalendar:
    return FakeGoogleCalendar()


@pytest.fixture
async def http_client(fake_google: FakeGoogleCalendar):
    async with httpx.AsyncClient(transport=httpx.MockTransport(fake_google.handle)) as client:
        yield client


@pytest.fixture
def store() -> InMemoryCalendarStore:
    store = InMemoryCalendarStore()
    seed_semester(store)
    return store


@pytest.fixture
def seeded_store(store: InMemoryCalendarStore) -> InMemoryCalendarStore:
    seed_events(store)
    return store


@pytest.fixture
def calendar_client(
    google_config: GoogleConfig, http_client: httpx.AsyncClient
) -> GoogleCalendarClient:
    return GoogleCalendarClient(google_config, http_client)


@pytest.fixture
def token_manager(google_config: GoogleConfig, http_client: httpx.AsyncClient) -> GoogleTokenManager:
    return GoogleTokenManager(google_config, http_client)


@pytest.fixture
def webhook_manager(
    webhook_config: WebhookConfig,
    calendar_client: GoogleCalendarClient,
    store: InMemoryCalendarStore,
) -> WebhookLifecycleManager:
    return WebhookLifecycleManager(
        webhook_config, calendar_client, store, clock=lambda: FIXED_NOW
    )


@pytest.fixture
def orchestrator(
    store: InMemoryCalendarStore,
    token_manager: GoogleTokenManager,
    calendar_client: GoogleCalendarClient,
    webhook_manager: WebhookLifecycleManager,
) -> CalendarSyncOrchestrator:
    return CalendarSyncOrchestrator(
        store=store,
        token_manager=token_manager,
        calendar_client=calendar_client,
        webhooks=webhook_manager,
        clock=lambda: FIXED_NOW,
    )
