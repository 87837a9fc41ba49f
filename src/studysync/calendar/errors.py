"""Error hierarchy shared by the calendar sync components."""

from __future__ import annotations

import re

import httpx


class CalendarSyncError(RuntimeError):
    """Base error for the calendar sync engine."""


class CalendarAuthError(CalendarSyncError):
    """Base error for credential and token problems; fatal for a whole pass."""


class CalendarNotConnectedError(CalendarAuthError):
    """Raised when a user has no stored refresh credential."""

    def __init__(self, user_id: str) -> None:
        self.user_id = user_id
        super().__init__(f"Google Calendar is not connected for user {user_id}")


class CalendarTokenRefreshError(CalendarAuthError):
    """Raised when the refresh-token exchange fails or is rejected."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class CalendarTokenExchangeError(CalendarAuthError):
    """Raised when an authorization code cannot be exchanged for a refresh token."""


class SemesterNotFoundError(CalendarSyncError):
    """Raised when a sync scope names a semester that does not exist."""

    def __init__(self, semester_id: str) -> None:
        self.semester_id = semester_id
        super().__init__(f"Semester not found: {semester_id}")


class CalendarRequestError(CalendarSyncError):
    """Raised when a Google Calendar API request fails."""

    def __init__(self, *, status_code: int | None, message: str) -> None:
        self.status_code = status_code
        self.message = message
        status = status_code if status_code is not None else "no response"
        super().__init__(f"Google Calendar API request failed ({status}): {message}")


class CalendarResponseError(CalendarSyncError):
    """Raised when a provider response does not have the expected shape."""


class WebhookRenewalError(CalendarSyncError):
    """Raised inside the webhook manager when a channel cannot be (re)registered."""


_MAX_ERROR_MESSAGE_CHARS = 200


def redact_credentials(message: str) -> str:
    """Redact credential values from an error message.

    Handles ``key=value``, ``key: value`` and JSON-style quoted pairs for
    client secrets, refresh tokens and access tokens.
    """
    redacted = message
    redacted = re.sub(
        r"(?i)\b(client_secret|refresh_token|access_token|token)\s*=\s*([^\s,;]+)",
        r"\1=[REDACTED]",
        redacted,
    )
    redacted = re.sub(
        r"""(?i)(['"]?(?:client_secret|refresh_token|access_token|token)['"]?\s*:\s*)(['"]).*?\2""",
        r'\1"[REDACTED]"',
        redacted,
    )
    redacted = re.sub(
        r"(?i)\b(client_secret|refresh_token|access_token|token)\s*:\s*([^\s,;\"']+)",
        r"\1: [REDACTED]",
        redacted,
    )
    return redacted


def sanitize_message(message: str) -> str:
    """Redact, collapse whitespace, and truncate a message for logs and callers."""
    return " ".join(redact_credentials(message).split())[:_MAX_ERROR_MESSAGE_CHARS]


def safe_google_error_message(response: httpx.Response) -> str:
    """Extract a short, credential-free error message from a Google response."""
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return sanitize_message(message)
        description = payload.get("error_description")
        if isinstance(description, str) and description.strip():
            return sanitize_message(description)
        if isinstance(error_payload, str) and error_payload.strip():
            return sanitize_message(error_payload)

    raw_text = response.text.strip()
    if raw_text:
        return sanitize_message(raw_text)
    return "Request failed without an error payload"
