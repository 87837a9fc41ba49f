"""One-way push of local academic events into Google Calendar.

A pass for one user runs kind by kind (assessments, study sessions, custom
events). Each eligible row is mapped to a provider payload and either created
(no external id yet) or updated in place. Per-item provider failures are
counted and logged; they never abort the pass. Missing or rejected
credentials abort it before anything is written.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol

from studysync.calendar.errors import (
    CalendarAuthError,
    CalendarNotConnectedError,
    SemesterNotFoundError,
)
from studysync.calendar.google import (
    CallOutcome,
    GoogleCalendarClient,
    GoogleTokenManager,
    ProviderResult,
)
from studysync.calendar.mapper import ExternalEventPayload
from studysync.calendar.models import (
    CalendarConnection,
    Course,
    EventKind,
    SyncScope,
    SyncSettings,
    SyncSummary,
    utc_now,
)
from studysync.calendar.store import CalendarSyncStore
from studysync.calendar.webhooks import (
    WebhookAction,
    WebhookLifecycleManager,
    WebhookRenewalResult,
)
from studysync.core.logging import bind_user_context

logger = logging.getLogger(__name__)


class Syncable(Protocol):
    """What the sync loop needs from a local row."""

    kind: str
    id: str
    course_id: str | None

    @property
    def external_event_id(self) -> str | None: ...

    def to_payload(
        self, course: Course | None = None, *, timezone: str
    ) -> ExternalEventPayload: ...


@dataclass(frozen=True)
class SyncKind:
    kind: EventKind
    label: str


# Processing order within a pass.
SYNC_KINDS: tuple[SyncKind, ...] = (
    SyncKind(EventKind.assessment, "assessment"),
    SyncKind(EventKind.study_session, "study session"),
    SyncKind(EventKind.custom_event, "custom event"),
)


@dataclass
class _UserLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    holders: int = 0


@dataclass
class _PassCounters:
    synced: int = 0
    created: int = 0
    updated: int = 0
    errors: int = 0


class CalendarSyncOrchestrator:
    """Runs sync passes and related calendar operations for users."""

    def __init__(
        self,
        *,
        store: CalendarSyncStore,
        token_manager: GoogleTokenManager,
        calendar_client: GoogleCalendarClient,
        webhooks: WebhookLifecycleManager,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._tokens = token_manager
        self._client = calendar_client
        self._webhooks = webhooks
        self._clock = clock
        # Dropped once no pass for the user is running or waiting.
        self._user_locks: dict[str, _UserLock] = {}

    async def sync(
        self,
        user_id: str,
        scope: SyncScope | str,
        *,
        timeout: float | None = None,
    ) -> SyncSummary:
        """Push every eligible local event of *user_id* in *scope*.

        *timeout* (seconds) bounds the item loop. When it elapses the pass
        stops, reports what it did with ``aborted=True``, and skips the
        full-sync stamp and the webhook step.

        Raises
        ------
        CalendarNotConnectedError
            The user has no stored credential.
        CalendarTokenRefreshError
            The credential was rejected or the token endpoint failed.
        SemesterNotFoundError
            *scope* names an unknown semester.
        """
        with bind_user_context(user_id):
            user_lock = self._user_locks.setdefault(user_id, _UserLock())
            user_lock.holders += 1
            try:
                async with user_lock.lock:
                    return await self._run_pass(user_id, scope, timeout)
            finally:
                user_lock.holders -= 1
                if not user_lock.holders:
                    del self._user_locks[user_id]

    async def _run_pass(
        self,
        user_id: str,
        scope: SyncScope | str,
        timeout: float | None,
    ) -> SyncSummary:
        connection = await self._require_connection(user_id)
        access_token = await self._tokens.get_access_token(connection.refresh_token)

        resolved_scope = await self._resolve_scope(scope)
        settings = await self._store.get_or_create_settings(user_id)
        courses = await self._store.list_courses(resolved_scope)

        counters = _PassCounters()
        aborted = False
        deadline = asyncio.timeout(timeout)
        try:
            async with deadline:
                for sync_kind in SYNC_KINDS:
                    if not settings.is_enabled(sync_kind.kind):
                        continue
                    await self._sync_kind(
                        sync_kind,
                        user_id=user_id,
                        scope=resolved_scope,
                        courses=courses,
                        connection=connection,
                        access_token=access_token,
                        counters=counters,
                    )
        except TimeoutError:
            # A timeout raised by the store or client is not a caller abort.
            if not deadline.expired():
                raise
            aborted = True
            logger.warning(
                "Calendar sync for user %s timed out after %ss; %d events synced before abort",
                user_id,
                timeout,
                counters.synced,
            )

        webhook_result: WebhookRenewalResult | None = None
        if not aborted:
            await self._store.mark_full_sync(user_id, self._clock())
            webhook_result = await self._maybe_ensure_channel(settings, user_id, access_token)

        summary = SyncSummary(
            synced_count=counters.synced,
            created_count=counters.created,
            updated_count=counters.updated,
            error_count=counters.errors,
            message=_summary_message(counters, aborted),
            aborted=aborted,
            webhook=webhook_result.action.value if webhook_result is not None else None,
        )
        logger.info(
            "Calendar sync finished for user %s: synced=%d created=%d updated=%d errors=%d%s",
            user_id,
            summary.synced_count,
            summary.created_count,
            summary.updated_count,
            summary.error_count,
            " (aborted)" if aborted else "",
        )
        return summary

    async def _sync_kind(
        self,
        sync_kind: SyncKind,
        *,
        user_id: str,
        scope: SyncScope,
        courses: dict[str, Course],
        connection: CalendarConnection,
        access_token: str,
        counters: _PassCounters,
    ) -> None:
        eligible = await self._store.list_eligible_events(
            sync_kind.kind,
            user_id=user_id,
            scope=scope,
            courses=courses,
            now=self._clock(),
            timezone=connection.timezone,
        )
        logger.debug("Syncing %d eligible %s rows", len(eligible.events), sync_kind.label)
        for rejected in eligible.rejected:
            counters.errors += 1
            logger.warning(
                "Failed to read %s %s: %s", sync_kind.label, rejected.id, rejected.reason
            )

        for event in eligible.events:
            course = courses.get(event.course_id) if event.course_id else None
            try:
                payload = event.to_payload(course, timezone=connection.timezone)
            except ValueError as exc:
                counters.errors += 1
                logger.warning("Failed to map %s %s: %s", sync_kind.label, event.id, exc)
                continue

            result = await self._push(event, payload, access_token)
            if result.outcome is not CallOutcome.success or result.external_id is None:
                counters.errors += 1
                logger.warning(
                    "Failed to sync %s %s (%s, status=%s): %s",
                    sync_kind.label,
                    event.id,
                    result.outcome.value,
                    result.status_code,
                    result.message,
                )
                continue

            created = event.external_event_id is None
            await self._store.save_sync_state(event.mark_synced(result.external_id, self._clock()))
            counters.synced += 1
            if created:
                counters.created += 1
            else:
                counters.updated += 1

    async def _push(
        self,
        event: Syncable,
        payload: ExternalEventPayload,
        access_token: str,
    ) -> ProviderResult:
        body = payload.to_google_body()
        if event.external_event_id is None:
            return await self._client.create_event(access_token, body)
        return await self._client.update_event(access_token, event.external_event_id, body)

    async def _maybe_ensure_channel(
        self,
        settings: SyncSettings,
        user_id: str,
        access_token: str,
    ) -> WebhookRenewalResult | None:
        if not settings.two_way_sync:
            return None
        result = await self._webhooks.ensure_channel(user_id, access_token)
        if result.action is WebhookAction.failed:
            logger.warning("Calendar push channel not renewed for user %s", user_id)
        return result

    async def delete_external_event(self, user_id: str, external_event_id: str) -> ProviderResult:
        """Remove a mirrored event after its local row was deleted.

        A provider 404/410 is reported as ``already_satisfied``; deleting the
        same id twice succeeds twice.
        """
        with bind_user_context(user_id):
            connection = await self._require_connection(user_id)
            access_token = await self._tokens.get_access_token(connection.refresh_token)
            result = await self._client.delete_event(access_token, external_event_id)
            if not result.ok:
                logger.warning(
                    "Failed to delete calendar event %s (%s): %s",
                    external_event_id,
                    result.outcome.value,
                    result.message,
                )
            return result

    async def connect_calendar(
        self,
        user_id: str,
        *,
        code: str,
        redirect_uri: str,
    ) -> WebhookRenewalResult | None:
        """Finish the OAuth consent flow and store the refresh token."""
        with bind_user_context(user_id):
            refresh_token = await self._tokens.exchange_authorization_code(
                code=code,
                redirect_uri=redirect_uri,
            )
            await self._store.save_refresh_token(user_id, refresh_token)
            settings = await self._store.get_or_create_settings(user_id)
            logger.info("Google Calendar connected for user %s", user_id)
            if not settings.two_way_sync:
                return None
            access_token = await self._tokens.get_access_token(refresh_token)
            return await self._webhooks.ensure_channel(user_id, access_token)

    async def get_settings(self, user_id: str) -> SyncSettings:
        return await self._store.get_or_create_settings(user_id)

    async def update_settings(self, user_id: str, changes: dict[str, bool]) -> SyncSettings:
        """Apply setting toggles; turning two-way sync off retires the channel."""
        with bind_user_context(user_id):
            previous = await self._store.get_or_create_settings(user_id)
            settings = await self._store.update_settings(user_id, changes)
            if previous.two_way_sync and not settings.two_way_sync:
                await self.retire_channel(user_id)
            return settings

    async def retire_channel(self, user_id: str) -> WebhookRenewalResult:
        """Stop and forget the user's channel; without a usable token only forget it."""
        connection = await self._store.load_connection(user_id)
        access_token: str | None = None
        if connection is not None:
            try:
                access_token = await self._tokens.get_access_token(connection.refresh_token)
            except CalendarAuthError as exc:
                logger.warning(
                    "Retiring calendar push channel for user %s without stopping it: %s",
                    user_id,
                    exc,
                )
        return await self._webhooks.retire(user_id, access_token)

    async def _require_connection(self, user_id: str) -> CalendarConnection:
        connection = await self._store.load_connection(user_id)
        if connection is None:
            raise CalendarNotConnectedError(user_id)
        return connection

    async def _resolve_scope(self, scope: SyncScope | str) -> SyncScope:
        semester_id = scope if isinstance(scope, str) else scope.semester_id
        if isinstance(scope, SyncScope) and scope.start_date is not None:
            return scope
        loaded = await self._store.load_scope(semester_id)
        if loaded is None:
            raise SemesterNotFoundError(semester_id)
        return loaded


def _summary_message(counters: _PassCounters, aborted: bool) -> str:
    message = (
        f"Synced {counters.synced} events "
        f"({counters.created} new, {counters.updated} updated)"
    )
    if counters.errors:
        message += f", {counters.errors} failed"
    if aborted:
        message += "; aborted before completion"
    return message
