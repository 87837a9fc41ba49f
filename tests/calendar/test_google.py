"""Unit tests for Google token exchange and Calendar API outcome classification."""

from __future__ import annotations

import json
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from urllib.parse import parse_qs

import httpx
import pytest

from studysync.calendar.errors import (
    CalendarRequestError,
    CalendarTokenExchangeError,
    CalendarTokenRefreshError,
)
from studysync.calendar.google import (
    CallOutcome,
    GoogleCalendarClient,
    GoogleTokenManager,
    ProviderResult,
    classify_status,
)
from studysync.config import GoogleConfig

pytestmark = pytest.mark.unit

CONFIG = GoogleConfig(client_id="client-id", client_secret="client-secret")
EVENT_BODY = {"summary": "📚 Midterm", "start": {"date": "2024-09-10"}}


def _client(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestGoogleTokenManager:
    async def test_refresh_posts_form_grant(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"access_token": " access-1 ", "expires_in": 3599})

        async with _client(handler) as http_client:
            manager = GoogleTokenManager(CONFIG, http_client)
            assert await manager.get_access_token("refresh-1") == "access-1"

        assert str(seen[0].url) == "https://oauth2.googleapis.com/token"
        form = parse_qs(seen[0].content.decode())
        assert form == {
            "client_id": ["client-id"],
            "client_secret": ["client-secret"],
            "refresh_token": ["refresh-1"],
            "grant_type": ["refresh_token"],
        }

    async def test_no_token_caching(self):
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(200, json={"access_token": f"access-{calls}"})

        async with _client(handler) as http_client:
            manager = GoogleTokenManager(CONFIG, http_client)
            assert await manager.get_access_token("r") == "access-1"
            assert await manager.get_access_token("r") == "access-2"

    async def test_rejected_grant_raises_with_status(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                400,
                json={"error": "invalid_grant", "error_description": "Token has been revoked."},
            )

        async with _client(handler) as http_client:
            manager = GoogleTokenManager(CONFIG, http_client)
            with pytest.raises(CalendarTokenRefreshError) as exc_info:
                await manager.get_access_token("refresh-1")

        assert exc_info.value.status_code == 400
        assert "Token has been revoked." in str(exc_info.value)
        assert "client-secret" not in str(exc_info.value)

    async def test_transport_error_raises(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        async with _client(handler) as http_client:
            manager = GoogleTokenManager(CONFIG, http_client)
            with pytest.raises(CalendarTokenRefreshError, match="request failed"):
                await manager.get_access_token("refresh-1")

    @pytest.mark.parametrize("body", [{"token_type": "Bearer"}, {"access_token": "   "}, ["x"]])
    async def test_malformed_body_raises(self, body):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=body)

        async with _client(handler) as http_client:
            manager = GoogleTokenManager(CONFIG, http_client)
            with pytest.raises(CalendarTokenRefreshError):
                await manager.get_access_token("refresh-1")

    async def test_exchange_authorization_code(self):
        def handler(request: httpx.Request) -> httpx.Response:
            form = parse_qs(request.content.decode())
            assert form["grant_type"] == ["authorization_code"]
            assert form["code"] == ["code-1"]
            assert form["redirect_uri"] == ["https://app.example.com/callback"]
            return httpx.Response(200, json={"access_token": "a", "refresh_token": "r-1"})

        async with _client(handler) as http_client:
            manager = GoogleTokenManager(CONFIG, http_client)
            token = await manager.exchange_authorization_code(
                code="code-1", redirect_uri="https://app.example.com/callback"
            )
        assert token == "r-1"

    async def test_exchange_without_refresh_token_fails(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"access_token": "a"})

        async with _client(handler) as http_client:
            manager = GoogleTokenManager(CONFIG, http_client)
            with pytest.raises(CalendarTokenExchangeError, match="refresh token"):
                await manager.exchange_authorization_code(code="c", redirect_uri="https://x")


class TestGoogleCalendarClient:
    async def test_create_event_returns_external_id(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"id": "evt-1", "status": "confirmed"})

        async with _client(handler) as http_client:
            client = GoogleCalendarClient(CONFIG, http_client)
            result = await client.create_event("access-1", EVENT_BODY)

        assert result.outcome is CallOutcome.success
        assert result.external_id == "evt-1"
        assert seen[0].method == "POST"
        assert seen[0].url.path == "/calendar/v3/calendars/primary/events"
        assert seen[0].headers["Authorization"] == "Bearer access-1"
        assert json.loads(seen[0].content) == EVENT_BODY

    async def test_update_event_puts_to_event_path(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"id": "evt 1"})

        async with _client(handler) as http_client:
            client = GoogleCalendarClient(CONFIG, http_client)
            result = await client.update_event("access-1", "evt 1", EVENT_BODY)

        assert result.ok
        assert seen[0].method == "PUT"
        assert seen[0].url.raw_path == b"/calendar/v3/calendars/primary/events/evt%201"

    @pytest.mark.parametrize(
        ("status", "expected"),
        [
            (429, CallOutcome.retryable),
            (500, CallOutcome.retryable),
            (503, CallOutcome.retryable),
            (400, CallOutcome.fatal),
            (403, CallOutcome.fatal),
            (404, CallOutcome.fatal),
        ],
    )
    async def test_failed_create_is_classified(self, status: int, expected: CallOutcome):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(status, json={"error": {"message": "  Rate   limit\nexceeded  "}})

        async with _client(handler) as http_client:
            client = GoogleCalendarClient(CONFIG, http_client)
            result = await client.create_event("access-1", EVENT_BODY)

        assert result.outcome is expected
        assert result.status_code == status
        assert result.message == "Rate limit exceeded"
        assert not result.ok

    async def test_transport_error_is_retryable(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        async with _client(handler) as http_client:
            client = GoogleCalendarClient(CONFIG, http_client)
            result = await client.create_event("access-1", EVENT_BODY)

        assert result.outcome is CallOutcome.retryable
        assert result.status_code is None

    async def test_success_without_id_is_fatal(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"status": "confirmed"})

        async with _client(handler) as http_client:
            client = GoogleCalendarClient(CONFIG, http_client)
            result = await client.create_event("access-1", EVENT_BODY)

        assert result.outcome is CallOutcome.fatal
        assert "EventResponse" in (result.message or "")

    @pytest.mark.parametrize("status", [404, 410])
    async def test_delete_missing_event_is_already_satisfied(self, status: int):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(status, json={"error": {"message": "Not Found"}})

        async with _client(handler) as http_client:
            client = GoogleCalendarClient(CONFIG, http_client)
            result = await client.delete_event("access-1", "evt-1")

        assert result.outcome is CallOutcome.already_satisfied
        assert result.ok

    async def test_delete_success(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.method == "DELETE"
            return httpx.Response(204)

        async with _client(handler) as http_client:
            client = GoogleCalendarClient(CONFIG, http_client)
            result = await client.delete_event("access-1", "evt-1")

        assert result.outcome is CallOutcome.success

    async def test_watch_events_parses_channel(self):
        expiration = datetime(2024, 9, 8, 12, 0, tzinfo=UTC)
        seen: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            seen.append(body)
            return httpx.Response(
                200,
                json={
                    "id": body["id"],
                    "resourceId": "res-1",
                    "expiration": str(body["expiration"]),
                },
            )

        async with _client(handler) as http_client:
            client = GoogleCalendarClient(CONFIG, http_client)
            result = await client.watch_events(
                "access-1",
                channel_id="chan-1",
                address="https://hooks.example.com/calendar",
                expiration=expiration,
            )

        assert seen == [
            {
                "id": "chan-1",
                "type": "web_hook",
                "address": "https://hooks.example.com/calendar",
                "expiration": int(expiration.timestamp() * 1000),
            }
        ]
        assert result.resource_id == "res-1"
        assert result.expiration == expiration

    async def test_stop_channel_unknown_is_already_satisfied(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/calendar/v3/channels/stop"
            assert json.loads(request.content) == {"id": "chan-1", "resourceId": "res-1"}
            return httpx.Response(404)

        async with _client(handler) as http_client:
            client = GoogleCalendarClient(CONFIG, http_client)
            result = await client.stop_channel("access-1", channel_id="chan-1", resource_id="res-1")

        assert result.outcome is CallOutcome.already_satisfied

    async def test_owned_client_is_closed_on_shutdown(self):
        client = GoogleCalendarClient(CONFIG)
        await client.shutdown()
        assert client._http_client.is_closed


def test_raise_for_outcome():
    ProviderResult(outcome=CallOutcome.already_satisfied, status_code=404).raise_for_outcome()

    with pytest.raises(CalendarRequestError) as exc_info:
        ProviderResult(outcome=CallOutcome.retryable).raise_for_outcome()
    assert exc_info.value.status_code is None
    assert str(exc_info.value) == "Google Calendar API request failed (no response): retryable"


@pytest.mark.parametrize(
    ("status", "expected"),
    [
        (200, CallOutcome.success),
        (204, CallOutcome.success),
        (408, CallOutcome.retryable),
        (502, CallOutcome.retryable),
        (401, CallOutcome.fatal),
        (422, CallOutcome.fatal),
    ],
)
def test_classify_status(status: int, expected: CallOutcome):
    assert classify_status(status) is expected


def test_expiration_round_trips_through_milliseconds():
    expiration = datetime(2024, 9, 1, tzinfo=UTC) + timedelta(days=7)
    millis = int(expiration.timestamp() * 1000)
    assert datetime.fromtimestamp(millis / 1000, tz=UTC) == expiration
