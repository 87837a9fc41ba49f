"""Sync engine configuration loading and validation.

Reads ``studysync.toml`` from a config directory (or builds the same object
from environment variables), resolves ``${VAR}`` references, and returns a
validated :class:`StudySyncConfig` that is passed explicitly into every
component.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from studysync.db import db_params_from_env

CONFIG_FILENAME = "studysync.toml"

DEFAULT_GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
DEFAULT_GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
DEFAULT_CALENDAR_ID = "primary"
DEFAULT_REQUEST_TIMEOUT_S = 30.0
DEFAULT_CHANNEL_PREFIX = "studysync-calendar"
DEFAULT_CHANNEL_TTL_DAYS = 7
DEFAULT_RENEW_WITHIN_HOURS = 24
DEFAULT_MAX_OCCURRENCES = 1000

# Matches ${VAR_NAME} with alphanumeric and underscore names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class ConfigError(Exception):
    """Raised when configuration is missing, malformed, or invalid."""


@dataclass
class GoogleConfig:
    """OAuth client and Calendar API settings from the [google] section."""

    client_id: str
    client_secret: str
    token_url: str = DEFAULT_GOOGLE_TOKEN_URL
    api_base_url: str = DEFAULT_GOOGLE_CALENDAR_API_BASE_URL
    calendar_id: str = DEFAULT_CALENDAR_ID
    request_timeout_s: float = DEFAULT_REQUEST_TIMEOUT_S

    def __repr__(self) -> str:
        return (
            f"GoogleConfig(client_id={self.client_id!r}, client_secret=<REDACTED>, "
            f"calendar_id={self.calendar_id!r})"
        )


@dataclass
class WebhookConfig:
    """Push-notification channel settings from the [webhook] section.

    ``notification_url`` is the service's own inbound endpoint that the
    provider calls on change. Channels are not registered when it is unset.
    """

    notification_url: str | None = None
    channel_prefix: str = DEFAULT_CHANNEL_PREFIX
    ttl_days: int = DEFAULT_CHANNEL_TTL_DAYS
    renew_within_hours: int = DEFAULT_RENEW_WITHIN_HOURS


@dataclass
class SyncConfig:
    """Sync pass defaults from the [sync] section."""

    default_timezone: str = "UTC"
    max_occurrences: int = DEFAULT_MAX_OCCURRENCES
    pass_timeout_s: float | None = None


@dataclass
class DatabaseConfig:
    """Connection parameters for the backing relational store."""

    name: str = "postgres"
    host: str = "localhost"
    port: int = 5432
    user: str = "postgres"
    password: str = "postgres"
    ssl: str | None = None


@dataclass
class LoggingConfig:
    """Logging configuration from the [logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class StudySyncConfig:
    """Parsed and validated configuration for the sync engine."""

    google: GoogleConfig
    webhook: WebhookConfig = field(default_factory=WebhookConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings. Non-string leaf values are returned
    unchanged.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set.
    """
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]

    if isinstance(value, str):
        return _resolve_string(value)

    return value


def _resolve_string(s: str) -> str:
    """Replace all ``${VAR_NAME}`` occurrences in *s* with env var values.

    Collects all missing variable names and reports them in a single error.
    """
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)

    if missing:
        vars_str = ", ".join(missing)
        raise ConfigError(
            f"Unresolved environment variable(s) in config value: {vars_str} (original: {s!r})"
        )

    return result


def _require_str(section: dict[str, Any], key: str, section_name: str) -> str:
    value = section.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"Missing required field: {section_name}.{key}")
    return value.strip()


def _optional_str(section: dict[str, Any], key: str, section_name: str) -> str | None:
    value = section.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ConfigError(f"{section_name}.{key} must be a string when set")
    return value.strip() or None


def _positive_int(section: dict[str, Any], key: str, section_name: str, default: int) -> int:
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ConfigError(f"{section_name}.{key} must be a positive integer, got {value!r}")
    return value


def _parse_google(data: dict[str, Any]) -> GoogleConfig:
    section = data.get("google")
    if not isinstance(section, dict):
        raise ConfigError("Missing [google] section in config")

    timeout = section.get("request_timeout_s", DEFAULT_REQUEST_TIMEOUT_S)
    if isinstance(timeout, bool) or not isinstance(timeout, int | float) or timeout <= 0:
        raise ConfigError(f"google.request_timeout_s must be a positive number, got {timeout!r}")

    return GoogleConfig(
        client_id=_require_str(section, "client_id", "google"),
        client_secret=_require_str(section, "client_secret", "google"),
        token_url=_optional_str(section, "token_url", "google") or DEFAULT_GOOGLE_TOKEN_URL,
        api_base_url=(
            _optional_str(section, "api_base_url", "google")
            or DEFAULT_GOOGLE_CALENDAR_API_BASE_URL
        ).rstrip("/"),
        calendar_id=_optional_str(section, "calendar_id", "google") or DEFAULT_CALENDAR_ID,
        request_timeout_s=float(timeout),
    )


def _parse_webhook(data: dict[str, Any]) -> WebhookConfig:
    section = data.get("webhook", {})
    if not isinstance(section, dict):
        raise ConfigError("[webhook] must be a table")
    return WebhookConfig(
        notification_url=_optional_str(section, "notification_url", "webhook"),
        channel_prefix=(
            _optional_str(section, "channel_prefix", "webhook") or DEFAULT_CHANNEL_PREFIX
        ),
        ttl_days=_positive_int(section, "ttl_days", "webhook", DEFAULT_CHANNEL_TTL_DAYS),
        renew_within_hours=_positive_int(
            section, "renew_within_hours", "webhook", DEFAULT_RENEW_WITHIN_HOURS
        ),
    )


def _parse_sync(data: dict[str, Any]) -> SyncConfig:
    section = data.get("sync", {})
    if not isinstance(section, dict):
        raise ConfigError("[sync] must be a table")

    pass_timeout = section.get("pass_timeout_s")
    if pass_timeout is not None and (
        isinstance(pass_timeout, bool)
        or not isinstance(pass_timeout, int | float)
        or pass_timeout <= 0
    ):
        raise ConfigError(f"sync.pass_timeout_s must be a positive number, got {pass_timeout!r}")

    return SyncConfig(
        default_timezone=_optional_str(section, "default_timezone", "sync") or "UTC",
        max_occurrences=_positive_int(
            section, "max_occurrences", "sync", DEFAULT_MAX_OCCURRENCES
        ),
        pass_timeout_s=float(pass_timeout) if pass_timeout is not None else None,
    )


def _parse_database(data: dict[str, Any]) -> DatabaseConfig:
    section = data.get("database", {})
    if not isinstance(section, dict):
        raise ConfigError("[database] must be a table")

    # Connection params come from DATABASE_URL / POSTGRES_* unless overridden here.
    params = db_params_from_env()
    port = section.get("port", params["port"])
    try:
        port = int(port)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"database.port must be an integer, got {port!r}") from exc

    return DatabaseConfig(
        name=_optional_str(section, "name", "database") or str(params["database"] or "postgres"),
        host=_optional_str(section, "host", "database") or str(params["host"]),
        port=port,
        user=_optional_str(section, "user", "database") or str(params["user"]),
        password=_optional_str(section, "password", "database") or str(params["password"]),
        ssl=_optional_str(section, "ssl", "database") or params["ssl"],
    )


def _parse_logging(data: dict[str, Any]) -> LoggingConfig:
    section = data.get("logging", {})
    if not isinstance(section, dict):
        raise ConfigError("[logging] must be a table")
    log_level = str(section.get("level", "INFO")).upper()
    log_format = str(section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(f"Invalid logging.format: {log_format!r}. Expected 'text' or 'json'.")
    return LoggingConfig(
        level=log_level,
        format=log_format,
        log_root=_optional_str(section, "log_root", "logging"),
    )


def parse_config(data: dict[str, Any]) -> StudySyncConfig:
    """Validate an already-decoded config mapping."""
    data = resolve_env_vars(data)
    return StudySyncConfig(
        google=_parse_google(data),
        webhook=_parse_webhook(data),
        sync=_parse_sync(data),
        database=_parse_database(data),
        logging=_parse_logging(data),
    )


def load_config(config_dir: Path) -> StudySyncConfig:
    """Load and validate ``studysync.toml`` from *config_dir*.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or lacks required fields.
    """
    toml_path = config_dir / CONFIG_FILENAME

    if not toml_path.exists():
        raise ConfigError(f"Config file not found: {toml_path}")

    try:
        data = tomllib.loads(toml_path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    return parse_config(data)


def config_from_env() -> StudySyncConfig:
    """Build a config from environment variables only.

    Reads ``GOOGLE_CLIENT_ID``/``GOOGLE_CLIENT_SECRET`` (required),
    ``STUDYSYNC_WEBHOOK_URL``, ``STUDYSYNC_LOG_LEVEL``, ``STUDYSYNC_LOG_FORMAT``
    and the usual ``DATABASE_URL``/``POSTGRES_*`` variables.
    """
    data: dict[str, Any] = {
        "google": {
            "client_id": os.environ.get("GOOGLE_CLIENT_ID", ""),
            "client_secret": os.environ.get("GOOGLE_CLIENT_SECRET", ""),
        },
        "webhook": {},
        "logging": {
            "level": os.environ.get("STUDYSYNC_LOG_LEVEL", "INFO"),
            "format": os.environ.get("STUDYSYNC_LOG_FORMAT", "text"),
        },
        "database": {},
    }
    webhook_url = os.environ.get("STUDYSYNC_WEBHOOK_URL")
    if webhook_url:
        data["webhook"]["notification_url"] = webhook_url
    db_name = os.environ.get("STUDYSYNC_DB_NAME")
    if db_name:
        data["database"]["name"] = db_name
    return parse_config(data)
