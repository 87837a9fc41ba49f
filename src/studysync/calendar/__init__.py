"""Calendar sync: recurrence rules, event mapping, Google push and channel upkeep."""

from __future__ import annotations

from typing import TYPE_CHECKING

import httpx

from studysync.config import StudySyncConfig

from .errors import (
    CalendarAuthError,
    CalendarNotConnectedError,
    CalendarRequestError,
    CalendarResponseError,
    CalendarSyncError,
    CalendarTokenExchangeError,
    CalendarTokenRefreshError,
    SemesterNotFoundError,
    WebhookRenewalError,
)
from .google import (
    CallOutcome,
    GoogleCalendarClient,
    GoogleTokenManager,
    ProviderResult,
)
from .mapper import ColorClass, ExternalEventPayload, to_external_payload
from .models import (
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
    SyncSummary,
    WebhookSubscription,
    resolve_session_start,
)
from .recurrence import (
    EditScope,
    Occurrence,
    RecurrenceFrequency,
    RecurrenceOptions,
    build_rule,
    expand,
    parse_rule,
    select_occurrences,
)
from .store import CalendarSyncStore, PostgresCalendarSyncStore
from .sync import SYNC_KINDS, CalendarSyncOrchestrator
from .webhooks import WebhookAction, WebhookLifecycleManager, WebhookState

if TYPE_CHECKING:
    from studysync.db import Database

__all__ = [
    "SYNC_KINDS",
    "Assessment",
    "CalendarAuthError",
    "CalendarConnection",
    "CalendarNotConnectedError",
    "CalendarRequestError",
    "CalendarResponseError",
    "CalendarSyncError",
    "CalendarSyncOrchestrator",
    "CalendarSyncRuntime",
    "CalendarSyncStore",
    "CalendarTokenExchangeError",
    "CalendarTokenRefreshError",
    "CallOutcome",
    "ColorClass",
    "Course",
    "CustomEvent",
    "EditScope",
    "EventKind",
    "EventSpan",
    "ExternalEventPayload",
    "GoogleCalendarClient",
    "GoogleTokenManager",
    "LocalEvent",
    "Occurrence",
    "PostgresCalendarSyncStore",
    "ProviderResult",
    "RecurrenceFrequency",
    "RecurrenceOptions",
    "SemesterNotFoundError",
    "StudySession",
    "SyncScope",
    "SyncSettings",
    "SyncSummary",
    "WebhookAction",
    "WebhookLifecycleManager",
    "WebhookRenewalError",
    "WebhookState",
    "WebhookSubscription",
    "build_rule",
    "expand",
    "parse_rule",
    "resolve_session_start",
    "select_occurrences",
    "to_external_payload",
]


class CalendarSyncRuntime:
    """Wires the sync components for one process and owns their HTTP client."""

    def __init__(
        self,
        config: StudySyncConfig,
        store: CalendarSyncStore,
        *,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._owns_http_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(
            timeout=config.google.request_timeout_s
        )
        self.store = store
        self.token_manager = GoogleTokenManager(config.google, self.http_client)
        self.calendar_client = GoogleCalendarClient(config.google, self.http_client)
        self.webhooks = WebhookLifecycleManager(config.webhook, self.calendar_client, store)
        self.orchestrator = CalendarSyncOrchestrator(
            store=store,
            token_manager=self.token_manager,
            calendar_client=self.calendar_client,
            webhooks=self.webhooks,
        )

    @classmethod
    def from_database(
        cls,
        config: StudySyncConfig,
        db: Database,
        *,
        http_client: httpx.AsyncClient | None = None,
    ) -> CalendarSyncRuntime:
        """Build the runtime on a connected :class:`~studysync.db.Database`."""
        store = PostgresCalendarSyncStore(db, default_timezone=config.sync.default_timezone)
        return cls(config, store, http_client=http_client)

    async def shutdown(self) -> None:
        if self._owns_http_client:
            await self.http_client.aclose()
