"""Google OAuth token exchange and Calendar API calls used by the sync engine.

Every Calendar API wrapper returns a :class:`ProviderResult` instead of
raising, so a single failing item never aborts a sync pass. Token problems
are different: they raise :class:`CalendarAuthError` subclasses and abort the
whole pass.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, TypeVar
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from studysync.calendar.errors import (
    CalendarRequestError,
    CalendarResponseError,
    CalendarTokenExchangeError,
    CalendarTokenRefreshError,
    safe_google_error_message,
    sanitize_message,
)
from studysync.config import GoogleConfig

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = frozenset({408, 429})
ALREADY_GONE_STATUS_CODES = frozenset({404, 410})

_ModelT = TypeVar("_ModelT", bound=BaseModel)


class CallOutcome(StrEnum):
    """Named result of one provider call."""

    success = "success"
    already_satisfied = "already_satisfied"
    retryable = "retryable"
    fatal = "fatal"


class ProviderResult(BaseModel):
    """Outcome of a Calendar API call."""

    model_config = ConfigDict(frozen=True)

    outcome: CallOutcome
    status_code: int | None = None
    external_id: str | None = None
    resource_id: str | None = None
    expiration: datetime | None = None
    message: str | None = None

    @property
    def ok(self) -> bool:
        return self.outcome in (CallOutcome.success, CallOutcome.already_satisfied)

    def raise_for_outcome(self) -> None:
        if not self.ok:
            raise CalendarRequestError(
                status_code=self.status_code,
                message=self.message or self.outcome.value,
            )


class _TokenResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    access_token: str = Field(min_length=1)
    expires_in: int | None = None
    refresh_token: str | None = None
    token_type: str | None = None

    @field_validator("access_token")
    @classmethod
    def _strip_token(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("access_token must be a non-empty string")
        return normalized


class _EventResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    status: str | None = None


class _ChannelResponse(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str = Field(min_length=1)
    resource_id: str = Field(alias="resourceId", min_length=1)
    expiration: int | None = None

    @field_validator("expiration", mode="before")
    @classmethod
    def _coerce_expiration(cls, value: Any) -> Any:
        # Google returns the epoch-millisecond expiration as a string.
        if isinstance(value, str) and value.strip().isdigit():
            return int(value.strip())
        return value


class GoogleTokenManager:
    """Exchanges stored refresh tokens (and auth codes) for access tokens.

    No access token is cached between calls; each sync pass asks for a fresh
    one.
    """

    def __init__(self, config: GoogleConfig, http_client: httpx.AsyncClient | None = None) -> None:
        self._config = config
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=config.request_timeout_s)

    async def get_access_token(self, refresh_token: str) -> str:
        """Return a short-lived access token for *refresh_token*.

        Raises
        ------
        CalendarTokenRefreshError
            When the token endpoint rejects the grant, is unreachable, or
            answers with an unexpected body.
        """
        try:
            response = await self._http_client.post(
                self._config.token_url,
                data={
                    "client_id": self._config.client_id,
                    "client_secret": self._config.client_secret,
                    "refresh_token": refresh_token,
                    "grant_type": "refresh_token",
                },
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise CalendarTokenRefreshError(
                f"Google OAuth token refresh request failed: {sanitize_message(str(exc))}"
            ) from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise CalendarTokenRefreshError(
                "Google OAuth token refresh failed "
                f"({response.status_code}): {safe_google_error_message(response)}",
                status_code=response.status_code,
            )

        try:
            token = _parse_body(response, _TokenResponse)
        except CalendarResponseError as exc:
            raise CalendarTokenRefreshError(str(exc), status_code=response.status_code) from exc
        return token.access_token

    async def exchange_authorization_code(self, *, code: str, redirect_uri: str) -> str:
        """Exchange an OAuth authorization code and return the refresh token."""
        normalized_code = code.strip()
        if not normalized_code:
            raise CalendarTokenExchangeError("Authorization code must be a non-empty string")

        try:
            response = await self._http_client.post(
                self._config.token_url,
                data={
                    "code": normalized_code,
                    "client_id": self._config.client_id,
                    "client_secret": self._config.client_secret,
                    "redirect_uri": redirect_uri,
                    "grant_type": "authorization_code",
                },
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise CalendarTokenExchangeError(
                f"Google OAuth code exchange request failed: {sanitize_message(str(exc))}"
            ) from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise CalendarTokenExchangeError(
                "Google OAuth code exchange failed "
                f"({response.status_code}): {safe_google_error_message(response)}"
            )

        try:
            token = _parse_body(response, _TokenResponse)
        except CalendarResponseError as exc:
            raise CalendarTokenExchangeError(str(exc)) from exc

        refresh_token = (token.refresh_token or "").strip()
        if not refresh_token:
            raise CalendarTokenExchangeError(
                "Google did not return a refresh token; the user must re-consent "
                "with offline access"
            )
        return refresh_token

    async def shutdown(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()


class GoogleCalendarClient:
    """Thin Calendar API v3 client scoped to one calendar (``primary`` by default)."""

    def __init__(self, config: GoogleConfig, http_client: httpx.AsyncClient | None = None) -> None:
        self._config = config
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=config.request_timeout_s)
        self._calendar_path = f"/calendars/{quote(config.calendar_id, safe='')}"

    async def create_event(self, access_token: str, body: dict[str, Any]) -> ProviderResult:
        return await self._event_call(
            "POST",
            f"{self._calendar_path}/events",
            access_token,
            body,
        )

    async def update_event(
        self,
        access_token: str,
        event_id: str,
        body: dict[str, Any],
    ) -> ProviderResult:
        return await self._event_call(
            "PUT",
            f"{self._calendar_path}/events/{_encode_id(event_id)}",
            access_token,
            body,
        )

    async def delete_event(self, access_token: str, event_id: str) -> ProviderResult:
        """Delete an event; a missing event (404/410) counts as already deleted."""
        path = f"{self._calendar_path}/events/{_encode_id(event_id)}"
        response = await self._send("DELETE", path, access_token)
        if isinstance(response, ProviderResult):
            return response

        if response.status_code in ALREADY_GONE_STATUS_CODES:
            logger.debug(
                "delete_event: event '%s' not found (already deleted); treating as success",
                event_id,
            )
            return ProviderResult(
                outcome=CallOutcome.already_satisfied,
                status_code=response.status_code,
                external_id=event_id,
            )
        if not response.is_success:
            return _failure(response)
        return ProviderResult(
            outcome=CallOutcome.success,
            status_code=response.status_code,
            external_id=event_id,
        )

    async def watch_events(
        self,
        access_token: str,
        *,
        channel_id: str,
        address: str,
        expiration: datetime,
    ) -> ProviderResult:
        """Register a ``web_hook`` push channel for the calendar's events."""
        body = {
            "id": channel_id,
            "type": "web_hook",
            "address": address,
            "expiration": int(expiration.timestamp() * 1000),
        }
        response = await self._send("POST", f"{self._calendar_path}/events/watch", access_token, body)
        if isinstance(response, ProviderResult):
            return response
        if not response.is_success:
            return _failure(response)

        try:
            channel = _parse_body(response, _ChannelResponse)
        except CalendarResponseError as exc:
            return ProviderResult(
                outcome=CallOutcome.fatal,
                status_code=response.status_code,
                message=str(exc),
            )

        confirmed = (
            datetime.fromtimestamp(channel.expiration / 1000, tz=UTC)
            if channel.expiration is not None
            else expiration
        )
        return ProviderResult(
            outcome=CallOutcome.success,
            status_code=response.status_code,
            external_id=channel.id,
            resource_id=channel.resource_id,
            expiration=confirmed,
        )

    async def stop_channel(
        self,
        access_token: str,
        *,
        channel_id: str,
        resource_id: str,
    ) -> ProviderResult:
        """Stop a push channel; an unknown channel (404) counts as already stopped."""
        response = await self._send(
            "POST",
            "/channels/stop",
            access_token,
            {"id": channel_id, "resourceId": resource_id},
        )
        if isinstance(response, ProviderResult):
            return response
        if response.status_code == 404:
            return ProviderResult(
                outcome=CallOutcome.already_satisfied,
                status_code=404,
                external_id=channel_id,
            )
        if not response.is_success:
            return _failure(response)
        return ProviderResult(
            outcome=CallOutcome.success,
            status_code=response.status_code,
            external_id=channel_id,
        )

    async def shutdown(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    async def _event_call(
        self,
        method: str,
        path: str,
        access_token: str,
        body: dict[str, Any],
    ) -> ProviderResult:
        response = await self._send(method, path, access_token, body)
        if isinstance(response, ProviderResult):
            return response
        if not response.is_success:
            return _failure(response)

        try:
            event = _parse_body(response, _EventResponse)
        except CalendarResponseError as exc:
            return ProviderResult(
                outcome=CallOutcome.fatal,
                status_code=response.status_code,
                message=str(exc),
            )
        return ProviderResult(
            outcome=CallOutcome.success,
            status_code=response.status_code,
            external_id=event.id,
        )

    async def _send(
        self,
        method: str,
        path: str,
        access_token: str,
        json_body: dict[str, Any] | None = None,
    ) -> httpx.Response | ProviderResult:
        url = f"{self._config.api_base_url}{path}"
        try:
            return await self._http_client.request(
                method,
                url,
                json=json_body,
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as exc:
            message = sanitize_message(f"Google Calendar request failed: {exc}")
            logger.warning("%s %s transport failure: %s", method, path, message)
            return ProviderResult(outcome=CallOutcome.retryable, message=message)


def classify_status(status_code: int) -> CallOutcome:
    """Map an HTTP status to a :class:`CallOutcome`."""
    if 200 <= status_code < 300:
        return CallOutcome.success
    if status_code in RETRYABLE_STATUS_CODES or status_code >= 500:
        return CallOutcome.retryable
    return CallOutcome.fatal


def _failure(response: httpx.Response) -> ProviderResult:
    return ProviderResult(
        outcome=classify_status(response.status_code),
        status_code=response.status_code,
        message=safe_google_error_message(response),
    )


def _parse_body(response: httpx.Response, model: type[_ModelT]) -> _ModelT:
    try:
        payload = response.json()
    except ValueError as exc:
        raise CalendarResponseError(
            f"Google returned invalid JSON for a successful response ({response.status_code})"
        ) from exc
    if not isinstance(payload, dict):
        raise CalendarResponseError("Google returned an unexpected JSON payload shape")
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise CalendarResponseError(
            f"Google response did not match {model.__name__.lstrip('_')}: "
            f"{exc.error_count()} validation error(s)"
        ) from exc


def _encode_id(value: str) -> str:
    normalized = value.strip()
    if not normalized:
        raise ValueError("event_id must be a non-empty string")
    return quote(normalized, safe="")
