"""Push-notification channel lifecycle: register, renew before expiry, retire.

A channel row moves through ``absent -> active -> expiring -> renewing ->
active``. Renewal stops the previous channel on a best-effort basis, then
registers a new one and replaces the stored row. While one renewal for a
user is in flight, further requests for that user report ``renewing`` and
leave the channel alone. Nothing here raises to the caller; failures are
logged and reported in :class:`WebhookRenewalResult`.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta
from enum import StrEnum
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict

from studysync.calendar.errors import WebhookRenewalError
from studysync.calendar.google import GoogleCalendarClient
from studysync.calendar.models import WebhookSubscription, utc_now
from studysync.config import WebhookConfig

if TYPE_CHECKING:
    from studysync.calendar.store import CalendarSyncStore

logger = logging.getLogger(__name__)


class WebhookState(StrEnum):
    absent = "absent"
    active = "active"
    expiring = "expiring"
    renewing = "renewing"


class WebhookAction(StrEnum):
    noop = "noop"
    renewed = "renewed"
    failed = "failed"
    retired = "retired"


class WebhookRenewalResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    action: WebhookAction
    # None when the stored channel could not be read.
    previous_state: WebhookState | None = None
    subscription: WebhookSubscription | None = None
    message: str | None = None


class WebhookLifecycleManager:
    """Keeps exactly one live push channel per user with two-way sync enabled."""

    def __init__(
        self,
        config: WebhookConfig,
        client: GoogleCalendarClient,
        store: CalendarSyncStore,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._config = config
        self._client = client
        self._store = store
        self._clock = clock
        self._renewing: set[str] = set()

    @property
    def renew_within(self) -> timedelta:
        return timedelta(hours=self._config.renew_within_hours)

    def classify(self, subscription: WebhookSubscription | None, now: datetime) -> WebhookState:
        if subscription is None:
            return WebhookState.absent
        if subscription.expires_within(now, self.renew_within):
            return WebhookState.expiring
        return WebhookState.active

    async def ensure_channel(self, user_id: str, access_token: str) -> WebhookRenewalResult:
        """Register or renew the user's channel when it is missing or close to expiry."""
        if user_id in self._renewing:
            return WebhookRenewalResult(
                action=WebhookAction.noop,
                previous_state=WebhookState.renewing,
            )

        self._renewing.add(user_id)
        try:
            return await self._ensure_channel(user_id, access_token)
        finally:
            self._renewing.discard(user_id)

    async def _ensure_channel(self, user_id: str, access_token: str) -> WebhookRenewalResult:
        now = self._clock()
        try:
            current = await self._store.get_webhook(user_id)
        except Exception as exc:
            logger.warning("Could not read calendar push channel for user %s: %s", user_id, exc)
            return WebhookRenewalResult(
                action=WebhookAction.failed,
                message=f"failed to read stored channel: {exc}",
            )

        state = self.classify(current, now)
        if state is WebhookState.active:
            return WebhookRenewalResult(
                action=WebhookAction.noop,
                previous_state=state,
                subscription=current,
            )

        logger.info(
            "Renewing calendar push channel for user %s (state=%s)",
            user_id,
            state.value,
        )
        try:
            subscription = await self._renew(user_id, access_token, current, now)
        except WebhookRenewalError as exc:
            logger.warning("Calendar push channel renewal failed for user %s: %s", user_id, exc)
            return WebhookRenewalResult(
                action=WebhookAction.failed,
                previous_state=state,
                subscription=current,
                message=str(exc),
            )
        return WebhookRenewalResult(
            action=WebhookAction.renewed,
            previous_state=state,
            subscription=subscription,
        )

    async def retire(self, user_id: str, access_token: str | None) -> WebhookRenewalResult:
        """Stop the user's channel (best-effort) and forget it."""
        current = await self._store.get_webhook(user_id)
        state = self.classify(current, self._clock())
        if current is None:
            return WebhookRenewalResult(action=WebhookAction.noop, previous_state=state)
        if access_token is not None:
            await self._stop_quietly(current, access_token)
        await self._store.delete_webhook(user_id)
        logger.info("Retired calendar push channel %s for user %s", current.channel_id, user_id)
        return WebhookRenewalResult(action=WebhookAction.retired, previous_state=state)

    def new_channel_id(self, user_id: str) -> str:
        return f"{self._config.channel_prefix}-{user_id}-{uuid.uuid4().hex}"

    async def _renew(
        self,
        user_id: str,
        access_token: str,
        current: WebhookSubscription | None,
        now: datetime,
    ) -> WebhookSubscription:
        address = self._config.notification_url
        if not address:
            raise WebhookRenewalError("webhook.notification_url is not configured")

        if current is not None:
            await self._stop_quietly(current, access_token)

        channel_id = self.new_channel_id(user_id)
        requested_expiration = now + timedelta(days=self._config.ttl_days)
        result = await self._client.watch_events(
            access_token,
            channel_id=channel_id,
            address=address,
            expiration=requested_expiration,
        )
        if not result.ok or result.resource_id is None:
            raise WebhookRenewalError(
                f"watch request failed ({result.outcome.value}, "
                f"status={result.status_code}): {result.message or 'no resource id returned'}"
            )

        subscription = WebhookSubscription(
            user_id=user_id,
            channel_id=channel_id,
            resource_id=result.resource_id,
            expiration=result.expiration or requested_expiration,
        )
        try:
            await self._store.upsert_webhook(subscription)
        except Exception as exc:
            raise WebhookRenewalError(f"failed to persist channel {channel_id}: {exc}") from exc
        return subscription

    async def _stop_quietly(self, subscription: WebhookSubscription, access_token: str) -> None:
        if subscription.resource_id is None:
            logger.info(
                "Not stopping calendar push channel %s: no resource id stored",
                subscription.channel_id,
            )
            return
        result = await self._client.stop_channel(
            access_token,
            channel_id=subscription.channel_id,
            resource_id=subscription.resource_id,
        )
        if not result.ok:
            logger.warning(
                "Ignoring failure to stop calendar push channel %s (%s): %s",
                subscription.channel_id,
                result.outcome.value,
                result.message,
            )
