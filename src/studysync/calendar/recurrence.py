"""Recurrence rules for custom events.

A rule is stored as a single restricted RFC 5545 ``RRULE`` string next to the
base occurrence of a custom event. This module:

- builds the string from :class:`RecurrenceOptions` (``build_rule``),
- parses it back (``parse_rule``), the exact inverse of ``build_rule``,
- expands a base span into concrete :class:`Occurrence` values inside a
  query window (``expand``), using ``dateutil.rrule`` for the cadence,
- selects the occurrences targeted by a "this / this and future / all"
  edit (``select_occurrences``).

Weekdays are numbered 0 = Sunday … 6 = Saturday throughout.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Sequence
from datetime import date, datetime, time, timedelta
from enum import StrEnum
from typing import Any

from dateutil import rrule as _rrule
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

logger = logging.getLogger(__name__)

DEFAULT_MAX_OCCURRENCES = 1000
RRULE_PREFIX = "RRULE:"


class RecurrenceFrequency(StrEnum):
    """Repeat cadence selectable for a custom event."""

    none = "none"
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"
    yearly = "yearly"
    custom_weekly = "custom_weekly"


class EditScope(StrEnum):
    """Which occurrences of a series an edit or delete applies to."""

    this = "this"
    this_and_future = "this_and_future"
    all = "all"


_FREQ_TOKENS: dict[RecurrenceFrequency, str] = {
    RecurrenceFrequency.daily: "DAILY",
    RecurrenceFrequency.weekly: "WEEKLY",
    RecurrenceFrequency.monthly: "MONTHLY",
    RecurrenceFrequency.yearly: "YEARLY",
    RecurrenceFrequency.custom_weekly: "WEEKLY",
}
_FREQ_BY_TOKEN: dict[str, RecurrenceFrequency] = {
    "DAILY": RecurrenceFrequency.daily,
    "WEEKLY": RecurrenceFrequency.weekly,
    "MONTHLY": RecurrenceFrequency.monthly,
    "YEARLY": RecurrenceFrequency.yearly,
}
_DATEUTIL_FREQ: dict[RecurrenceFrequency, int] = {
    RecurrenceFrequency.daily: _rrule.DAILY,
    RecurrenceFrequency.weekly: _rrule.WEEKLY,
    RecurrenceFrequency.monthly: _rrule.MONTHLY,
    RecurrenceFrequency.yearly: _rrule.YEARLY,
    RecurrenceFrequency.custom_weekly: _rrule.WEEKLY,
}

# Index is our weekday number (0 = Sunday).
_WEEKDAY_TOKENS = ("SU", "MO", "TU", "WE", "TH", "FR", "SA")
_WEEKDAY_BY_TOKEN = {token: index for index, token in enumerate(_WEEKDAY_TOKENS)}
_DATEUTIL_WEEKDAYS = (
    _rrule.SU,
    _rrule.MO,
    _rrule.TU,
    _rrule.WE,
    _rrule.TH,
    _rrule.FR,
    _rrule.SA,
)

_UNTIL_PATTERN = re.compile(r"^(\d{8})(T\d{6}Z?)?$")
# Components other clients emit that carry no meaning for the supported subset.
_IGNORED_COMPONENTS = frozenset({"WKST"})


class RecurrenceOptions(BaseModel):
    """User-facing recurrence choices.

    Options are normalised on construction so that every instance is a
    valid rule:

    - ``interval`` falls back to 1 when unset or not positive;
    - ``by_weekday`` is cleared unless ``frequency`` is ``custom_weekly``;
    - ``custom_weekly`` without any weekday becomes plain ``weekly``;
    - when both ``count`` and ``until`` are given, ``count`` is kept.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    frequency: RecurrenceFrequency
    interval: int = Field(default=1, ge=1)
    by_weekday: frozenset[int] = frozenset()
    count: int | None = Field(default=None, ge=1)
    until: date | None = None

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        normalized = dict(data)

        interval = normalized.get("interval")
        if interval is None or (isinstance(interval, int) and interval <= 0):
            normalized["interval"] = 1

        until = normalized.get("until")
        if isinstance(until, datetime):
            normalized["until"] = until.date()

        frequency = normalized.get("frequency")
        weekdays = normalized.get("by_weekday") or ()
        if frequency == RecurrenceFrequency.custom_weekly and not weekdays:
            normalized["frequency"] = RecurrenceFrequency.weekly
        elif frequency != RecurrenceFrequency.custom_weekly:
            normalized["by_weekday"] = frozenset()

        if normalized.get("count") is not None and normalized.get("until") is not None:
            logger.warning(
                "Recurrence options set both count and until; keeping count=%s",
                normalized["count"],
            )
            normalized["until"] = None
        return normalized

    @field_validator("by_weekday")
    @classmethod
    def _validate_weekdays(cls, value: frozenset[int]) -> frozenset[int]:
        invalid = sorted(day for day in value if day < 0 or day > 6)
        if invalid:
            raise ValueError(f"by_weekday values must be between 0 and 6, got {invalid}")
        return value

    @property
    def repeats(self) -> bool:
        return self.frequency is not RecurrenceFrequency.none


class Occurrence(BaseModel):
    """One concrete instance of a (possibly single-item) series."""

    model_config = ConfigDict(frozen=True)

    series_id: str
    occurrence_id: str
    start: datetime
    end: datetime

    @classmethod
    def for_series(cls, series_id: str, start: datetime, end: datetime) -> Occurrence:
        return cls(
            series_id=series_id,
            occurrence_id=occurrence_identity(series_id, start),
            start=start,
            end=end,
        )


def occurrence_identity(series_id: str, occurrence_start: datetime) -> str:
    """Stable identity of the occurrence of *series_id* starting at *occurrence_start*."""
    return f"{series_id}:{occurrence_start.isoformat()}"


def build_rule(options: RecurrenceOptions) -> str | None:
    """Encode *options* as an ``RRULE:`` string, or ``None`` when it does not repeat."""
    if not options.repeats:
        return None

    parts = [f"FREQ={_FREQ_TOKENS[options.frequency]}", f"INTERVAL={options.interval}"]
    if options.by_weekday:
        parts.append("BYDAY=" + ",".join(_WEEKDAY_TOKENS[day] for day in sorted(options.by_weekday)))
    if options.count is not None:
        parts.append(f"COUNT={options.count}")
    elif options.until is not None:
        parts.append(f"UNTIL={options.until.strftime('%Y%m%d')}")
    return RRULE_PREFIX + ";".join(parts)


def parse_rule(rule: str | None) -> RecurrenceOptions | None:
    """Decode a rule string produced by :func:`build_rule`.

    Returns ``None`` for ``None``/empty input and for strings outside the
    supported subset (unknown frequency, ordinal weekdays, unknown parts).
    """
    if rule is None:
        return None
    body = _extract_rrule_body(rule)
    if body is None:
        return None

    components: dict[str, str] = {}
    for part in body.split(";"):
        if not part.strip():
            continue
        key, sep, value = part.partition("=")
        key = key.strip().upper()
        if not sep or not key or key in components:
            return None
        components[key] = value.strip()

    frequency = _FREQ_BY_TOKEN.get(components.pop("FREQ", "").upper())
    if frequency is None:
        return None

    data: dict[str, Any] = {"frequency": frequency}
    try:
        if "INTERVAL" in components:
            data["interval"] = int(components.pop("INTERVAL"))
        if "COUNT" in components:
            data["count"] = int(components.pop("COUNT"))
    except ValueError:
        return None

    if "UNTIL" in components:
        until = _parse_until(components.pop("UNTIL"))
        if until is None:
            return None
        data["until"] = until

    if "BYDAY" in components:
        weekdays = _parse_weekdays(components.pop("BYDAY"))
        if weekdays is None:
            return None
        if weekdays and frequency is RecurrenceFrequency.weekly:
            data["frequency"] = RecurrenceFrequency.custom_weekly
        data["by_weekday"] = weekdays

    if set(components) - _IGNORED_COMPONENTS:
        return None

    try:
        return RecurrenceOptions(**data)
    except ValidationError:
        return None


def _extract_rrule_body(rule: str) -> str | None:
    lines = [line.strip() for line in rule.strip().splitlines() if line.strip()]
    for line in lines:
        if line.upper().startswith(RRULE_PREFIX):
            return line[len(RRULE_PREFIX) :]
    if len(lines) == 1 and "FREQ=" in lines[0].upper() and ":" not in lines[0]:
        return lines[0]
    return None


def _parse_until(value: str) -> date | None:
    match = _UNTIL_PATTERN.match(value.strip().upper())
    if match is None:
        return None
    try:
        return datetime.strptime(match.group(1), "%Y%m%d").date()
    except ValueError:
        return None


def _parse_weekdays(value: str) -> frozenset[int] | None:
    days: set[int] = set()
    for token in value.split(","):
        normalized = token.strip().upper()
        if not normalized:
            continue
        day = _WEEKDAY_BY_TOKEN.get(normalized)
        if day is None:
            return None
        days.add(day)
    return frozenset(days)


def occurrence_duration(base_start: datetime, base_end: datetime) -> timedelta:
    """Duration of each occurrence.

    An end after the start is taken as is. Otherwise only the end's time of
    day counts: it lands on the start's day, or on the next day when it is at
    or before the start's time of day.
    """
    if base_end > base_start:
        return base_end - base_start
    end_day = base_start.date()
    if base_end.time() <= base_start.time():
        end_day += timedelta(days=1)
    return datetime.combine(end_day, base_end.time(), tzinfo=base_start.tzinfo) - base_start


def _to_dateutil(options: RecurrenceOptions, base_start: datetime) -> _rrule.rrule:
    kwargs: dict[str, Any] = {
        "dtstart": base_start,
        "interval": options.interval,
    }
    if options.by_weekday:
        kwargs["byweekday"] = [_DATEUTIL_WEEKDAYS[day] for day in sorted(options.by_weekday)]
    if options.count is not None:
        kwargs["count"] = options.count
    elif options.until is not None:
        # UNTIL is a date: the whole day is included, in the series' own timezone.
        kwargs["until"] = datetime.combine(options.until, time.max, tzinfo=base_start.tzinfo)
    return _rrule.rrule(_DATEUTIL_FREQ[options.frequency], **kwargs)


def expand(
    base_start: datetime,
    base_end: datetime,
    rule: str | RecurrenceOptions | None,
    window_start: datetime,
    window_end: datetime,
    *,
    series_id: str,
    max_occurrences: int = DEFAULT_MAX_OCCURRENCES,
) -> list[Occurrence]:
    """Expand a base span into the occurrences that intersect a window.

    The window is half-open: occurrences starting at or after *window_end*
    are not generated, and occurrences ending at or before *window_start*
    are excluded. All datetimes must agree on timezone awareness.
    """
    if window_end <= window_start:
        return []

    duration = occurrence_duration(base_start, base_end)
    options = rule if isinstance(rule, RecurrenceOptions) else parse_rule(rule)
    if isinstance(rule, str) and options is None:
        logger.warning(
            "Unparseable recurrence rule for series %s; using the base occurrence only",
            series_id,
        )

    if options is None or not options.repeats:
        base = Occurrence.for_series(series_id, base_start, base_start + duration)
        if base.start < window_end and base.end > window_start:
            return [base]
        return []

    recurrence = _to_dateutil(options, base_start)
    occurrences: list[Occurrence] = []
    # xafter honours COUNT from dtstart while skipping straight to the window.
    for start in recurrence.xafter(window_start - duration, inc=False):
        if start >= window_end:
            break
        occurrences.append(Occurrence.for_series(series_id, start, start + duration))
        if len(occurrences) >= max_occurrences:
            logger.warning(
                "Recurrence expansion for series %s truncated at %d occurrences",
                series_id,
                max_occurrences,
            )
            break
    return occurrences


def select_occurrences(
    occurrences: Sequence[Occurrence],
    target_occurrence_id: str,
    scope: EditScope,
) -> list[Occurrence]:
    """Return the occurrences an edit of *target_occurrence_id* applies to.

    Raises ``ValueError`` when the target is not among *occurrences*.
    """
    target = next(
        (item for item in occurrences if item.occurrence_id == target_occurrence_id),
        None,
    )
    if target is None:
        raise ValueError(f"Unknown occurrence: {target_occurrence_id}")

    same_series = [item for item in occurrences if item.series_id == target.series_id]
    if scope is EditScope.this:
        return [target]
    if scope is EditScope.this_and_future:
        return [item for item in same_series if item.start >= target.start]
    return same_series


def describe_rule(options: RecurrenceOptions) -> str:
    """Short human-readable description, e.g. ``"every 2 weeks on Mon, Wed, 5 times"``."""
    if not options.repeats:
        return "does not repeat"

    units = {
        RecurrenceFrequency.daily: "day",
        RecurrenceFrequency.weekly: "week",
        RecurrenceFrequency.custom_weekly: "week",
        RecurrenceFrequency.monthly: "month",
        RecurrenceFrequency.yearly: "year",
    }
    unit = units[options.frequency]
    text = f"every {unit}" if options.interval == 1 else f"every {options.interval} {unit}s"
    if options.by_weekday:
        names = _weekday_names(sorted(options.by_weekday))
        text += f" on {', '.join(names)}"
    if options.count is not None:
        text += f", {options.count} time" + ("" if options.count == 1 else "s")
    elif options.until is not None:
        text += f", until {options.until.isoformat()}"
    return text


def _weekday_names(days: Iterable[int]) -> list[str]:
    labels = ("Sun", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat")
    return [labels[day] for day in days]
