"""CLI for studysync: run calendar sync passes and inspect recurrence rules."""

from __future__ import annotations

import asyncio
import logging
import sys
from datetime import date, datetime
from pathlib import Path

import click

from studysync.calendar.errors import CalendarSyncError
from studysync.calendar.recurrence import (
    RecurrenceFrequency,
    RecurrenceOptions,
    build_rule,
    describe_rule,
    expand,
    parse_rule,
)
from studysync.config import (
    DEFAULT_MAX_OCCURRENCES,
    ConfigError,
    StudySyncConfig,
    config_from_env,
    load_config,
)
from studysync.core.logging import configure_logging

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = Path(".")

_WEEKDAY_NAMES = ("sun", "mon", "tue", "wed", "thu", "fri", "sat")


@click.group()
@click.version_option(version="0.1.0")
@click.option(
    "--config-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=DEFAULT_CONFIG_DIR,
    show_default=True,
    help="Directory containing studysync.toml",
)
@click.pass_context
def cli(ctx: click.Context, config_dir: Path) -> None:
    """Mirror study planner events into Google Calendar."""
    ctx.ensure_object(dict)
    ctx.obj["config_dir"] = config_dir
    configure_logging(level="INFO", fmt="text")


def _load(ctx: click.Context) -> StudySyncConfig:
    config_dir: Path = ctx.obj["config_dir"]
    try:
        if (config_dir / "studysync.toml").exists():
            config = load_config(config_dir)
        else:
            config = config_from_env()
    except ConfigError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        sys.exit(1)
    configure_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_root=config.logging.log_root,
    )
    return config


@cli.command()
@click.option("--user", "user_id", required=True, help="User whose events are pushed")
@click.option("--semester", "semester_id", required=True, help="Semester to sync")
@click.option("--timeout", type=float, default=None, help="Abort the pass after N seconds")
@click.pass_context
def sync(ctx: click.Context, user_id: str, semester_id: str, timeout: float | None) -> None:
    """Run one sync pass for a user."""
    config = _load(ctx)
    effective_timeout = timeout if timeout is not None else config.sync.pass_timeout_s
    try:
        summary = asyncio.run(_run_sync(config, user_id, semester_id, effective_timeout))
    except CalendarSyncError as exc:
        logger.debug("Sync pass for user %s failed", user_id, exc_info=True)
        click.echo(f"Sync failed: {exc}", err=True)
        sys.exit(1)

    click.echo(summary.message)
    if summary.webhook is not None:
        click.echo(f"Push channel: {summary.webhook}")
    if summary.error_count or summary.aborted:
        sys.exit(2)


async def _run_sync(
    config: StudySyncConfig,
    user_id: str,
    semester_id: str,
    timeout: float | None,
):
    from studysync.calendar import CalendarSyncRuntime
    from studysync.db import Database

    db = Database.from_config(config.database)
    await db.connect()
    runtime = CalendarSyncRuntime.from_database(config, db)
    try:
        return await runtime.orchestrator.sync(user_id, semester_id, timeout=timeout)
    finally:
        await runtime.shutdown()
        await db.close()


def _configured_max_occurrences(ctx: click.Context) -> int:
    config_dir: Path = ctx.obj["config_dir"]
    if not (config_dir / "studysync.toml").exists():
        return DEFAULT_MAX_OCCURRENCES
    try:
        return load_config(config_dir).sync.max_occurrences
    except ConfigError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        sys.exit(1)


@cli.command("expand")
@click.argument("rule", required=False)
@click.option("--start", "base_start", type=click.DateTime(), required=True, help="Base start")
@click.option("--end", "base_end", type=click.DateTime(), required=True, help="Base end")
@click.option("--from", "window_start", type=click.DateTime(), required=True, help="Window start")
@click.option("--to", "window_end", type=click.DateTime(), required=True, help="Window end")
@click.option("--series", "series_id", default="series", show_default=True)
@click.option(
    "--limit",
    type=int,
    default=None,
    help="Maximum occurrences [default: sync.max_occurrences from studysync.toml, else 1000]",
)
@click.pass_context
def expand_cmd(
    ctx: click.Context,
    rule: str | None,
    base_start: datetime,
    base_end: datetime,
    window_start: datetime,
    window_end: datetime,
    series_id: str,
    limit: int | None,
) -> None:
    """Print the occurrences of RULE inside a window."""
    if rule is not None and parse_rule(rule) is None:
        click.echo(f"Unsupported recurrence rule: {rule}", err=True)
        sys.exit(1)
    if limit is None:
        limit = _configured_max_occurrences(ctx)
    occurrences = expand(
        base_start,
        base_end,
        rule,
        window_start,
        window_end,
        series_id=series_id,
        max_occurrences=limit,
    )
    for occurrence in occurrences:
        click.echo(f"{occurrence.start.isoformat()}  {occurrence.end.isoformat()}")
    click.echo(f"{len(occurrences)} occurrence(s)")


@cli.group()
def rrule() -> None:
    """Build and parse recurrence rules."""


@rrule.command("build")
@click.option(
    "--freq",
    "frequency",
    type=click.Choice([item.value for item in RecurrenceFrequency]),
    required=True,
)
@click.option("--interval", type=int, default=1, show_default=True)
@click.option(
    "--weekday",
    "weekdays",
    multiple=True,
    type=click.Choice(_WEEKDAY_NAMES, case_sensitive=False),
    help="Repeat on this weekday (custom_weekly only); may be repeated",
)
@click.option("--count", type=int, default=None)
@click.option("--until", type=click.DateTime(formats=["%Y-%m-%d"]), default=None)
def rrule_build(
    frequency: str,
    interval: int,
    weekdays: tuple[str, ...],
    count: int | None,
    until: datetime | None,
) -> None:
    """Print the rule string for the given options."""
    until_date: date | None = until.date() if until is not None else None
    try:
        options = RecurrenceOptions(
            frequency=RecurrenceFrequency(frequency),
            interval=interval,
            by_weekday=frozenset(_WEEKDAY_NAMES.index(day.lower()) for day in weekdays),
            count=count,
            until=until_date,
        )
    except ValueError as exc:
        click.echo(f"Invalid recurrence options: {exc}", err=True)
        sys.exit(1)
    click.echo(build_rule(options) or "(does not repeat)")


@rrule.command("parse")
@click.argument("rule")
def rrule_parse(rule: str) -> None:
    """Print the options encoded in RULE."""
    options = parse_rule(rule)
    if options is None:
        click.echo(f"Unsupported recurrence rule: {rule}", err=True)
        sys.exit(1)
    click.echo(options.model_dump_json())
    click.echo(describe_rule(options))


@cli.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", type=int, default=8000, show_default=True)
@click.pass_context
def serve(ctx: click.Context, host: str, port: int) -> None:
    """Run the calendar sync HTTP API."""
    import uvicorn

    from studysync.api.app import create_app

    config = _load(ctx)
    click.echo(f"Serving calendar sync API on http://{host}:{port}")
    uvicorn.run(create_app(config), host=host, port=port, log_config=None)
