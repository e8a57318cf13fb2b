"""CLI entry point for ScrollTrack."""

from __future__ import annotations

import json
import logging
import sys
from datetime import date
from pathlib import Path
from typing import Any, Iterator

import click
from pydantic import ValidationError

from scrolltrack.aggregator import ScrollSessionAggregator
from scrolltrack.config import (
    DEFAULT_DB_PATH,
    DEFAULT_DRAFT_PATH,
    ConfigError,
    Thresholds,
    load_thresholds,
)
from scrolltrack.dates import local_date_string, now_ms
from scrolltrack.db import EventStore
from scrolltrack.drafts import JsonDraftStore
from scrolltrack.models import RawEvent, ScrollSessionRecord
from scrolltrack.processors.daily import reprocess_date
from scrolltrack.session_manager import SessionManager
from scrolltrack.tracker import LiveTracker


def format_relative_time(timestamp_ms: int, *, now: int | None = None) -> str:
    """Format epoch milliseconds as relative time (e.g., '5 minutes ago').

    Args:
        timestamp_ms: Event time in epoch milliseconds
        now: Optional current time for testing (defaults to now)
    """
    if now is None:
        now = now_ms()
    seconds = (now - timestamp_ms) / 1000

    if seconds < 60:
        # Includes future timestamps from clock skew
        return "just now"
    elif seconds < 3600:
        minutes = int(seconds / 60)
        return f"{minutes} minute{'s' if minutes != 1 else ''} ago"
    elif seconds < 86400:
        hours = int(seconds / 3600)
        return f"{hours} hour{'s' if hours != 1 else ''} ago"
    else:
        days = int(seconds / 86400)
        return f"{days} day{'s' if days != 1 else ''} ago"


def format_duration(ms: int) -> str:
    """Format milliseconds as 'Xh Ym', 'Ym', or '<1m'.

    Args:
        ms: Duration in milliseconds.

    Returns:
        Formatted duration string.
    """
    if ms < 60_000:  # Less than 1 minute
        return "<1m" if ms > 0 else "0m"
    total_minutes = ms // 60_000
    hours = total_minutes // 60
    minutes = total_minutes % 60
    if hours > 0:
        return f"{hours}h {minutes:2d}m"
    return f"{minutes}m"


def parse_event(data: Any) -> RawEvent:
    """Validate one decoded JSON object as a RawEvent.

    local_date_string is derived from timestamp_ms when the producer left it out.

    Raises:
        ValidationError: If the object is not a valid event.
    """
    if isinstance(data, dict) and "local_date_string" not in data:
        timestamp = data.get("timestamp_ms")
        if isinstance(timestamp, int) and not isinstance(timestamp, bool):
            data = {**data, "local_date_string": local_date_string(timestamp)}
    return RawEvent.model_validate(data)


def iter_events(lines: Any) -> Iterator[RawEvent | None]:
    """Parse JSONL lines one at a time, skipping blank lines.

    Yields the parsed event for each non-blank line, or None after warning
    on stderr for a line that is not valid JSON or not a valid event.
    """
    for line_number, line in enumerate(lines, 1):
        stripped = line.strip()
        if not stripped:
            continue

        try:
            event = parse_event(json.loads(stripped))
        except json.JSONDecodeError as e:
            click.echo(f"Warning: line {line_number}: invalid JSON: {e}", err=True)
            event = None
        except ValidationError as e:
            click.echo(f"Warning: line {line_number}: validation error: {e}", err=True)
            event = None
        yield event


def read_events(lines: Any) -> tuple[list[RawEvent], bool]:
    """Parse JSONL lines, warning on stderr for each bad line.

    Returns:
        The valid events and whether any non-blank input was seen.
    """
    events: list[RawEvent] = []
    has_input = False
    for event in iter_events(lines):
        has_input = True
        if event is not None:
            events.append(event)
    return events, has_input


def _load_config(config: Path | None) -> Thresholds:
    try:
        return load_thresholds(config)
    except ConfigError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


def _validate_date(date_string: str | None) -> str:
    if date_string is None:
        return local_date_string(now_ms())
    try:
        return date.fromisoformat(date_string).isoformat()
    except ValueError:
        click.echo(f"Invalid date format: {date_string}. Use YYYY-MM-DD.", err=True)
        sys.exit(1)


db_option = click.option(
    "--db",
    type=click.Path(path_type=Path),
    default=DEFAULT_DB_PATH,
    help="Path to SQLite database",
)

config_option = click.option(
    "--config",
    type=click.Path(path_type=Path),
    default=None,
    help="YAML file overriding default thresholds",
)


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
def main(verbose: bool) -> None:
    """ScrollTrack local CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        stream=sys.stderr,
    )


@main.command("import")
@db_option
def import_events(db: Path) -> None:
    """Import events from stdin (JSONL format).

    Duplicate events (same content) are silently skipped.

    Example usage:
        adb shell cat /sdcard/events.jsonl | scrolltrack import
        cat events.jsonl | scrolltrack import
    """
    events, has_input = read_events(sys.stdin)

    imported_count = 0
    with EventStore.open(db) as store:
        for event in events:
            if store.insert_event(event):
                imported_count += 1

    click.echo(f"Imported {imported_count} events")

    # Exit code 1 if we had input but no valid events (all lines were errors)
    if has_input and not events:
        sys.exit(1)


@main.command("process")
@db_option
@config_option
@click.option("--date", "date_string", help="Local date YYYY-MM-DD (default: today)")
@click.option("--hide", multiple=True, help="Package to leave out of the results (repeatable)")
def process_command(db: Path, config: Path | None, date_string: str | None, hide: tuple[str, ...]) -> None:
    """Rebuild derived records for one date from stored events.

    Running it twice for the same date gives the same rows.
    """
    if not db.exists():
        click.echo("No database found", err=True)
        sys.exit(1)

    thresholds = _load_config(config)
    date_string = _validate_date(date_string)
    filter_set = frozenset(thresholds.hidden_packages | set(hide))

    with EventStore.open(db) as store:
        result = reprocess_date(store, date_string, filter_set, now_ms=now_ms(), thresholds=thresholds)

    click.echo(f"Processed {date_string}:")
    click.echo(f"  Scroll sessions: {len(result.scroll_sessions)}")
    click.echo(f"  Unlock sessions: {len(result.unlock_sessions)}")
    click.echo(f"  Apps with usage: {len(result.app_usage)}")
    click.echo(f"  Insights: {len(result.insights)}")


@main.command("track")
@db_option
@config_option
@click.option(
    "--draft",
    type=click.Path(path_type=Path),
    default=DEFAULT_DRAFT_PATH,
    help="Path to the in-progress session draft",
)
def track_command(db: Path, config: Path | None, draft: Path) -> None:
    """Feed live events from stdin (JSONL) through the session tracker.

    A draft left by an interrupted run is recovered first. Finalized scroll
    sessions are merged and written to the database.
    """
    thresholds = _load_config(config)
    written: list[int] = []

    def write_sessions(sessions: list[ScrollSessionRecord]) -> None:
        # Runs on the flush thread, so it gets its own connection.
        with EventStore.open(db) as store:
            store.insert_scroll_sessions(sessions)
        written.append(len(sessions))

    def replay_clock() -> int:
        return tracker.last_event_ms or now_ms()

    aggregator = ScrollSessionAggregator(write_sessions, thresholds=thresholds)
    manager = SessionManager(JsonDraftStore(draft), aggregator, thresholds=thresholds, clock=replay_clock)
    tracker = LiveTracker(manager, aggregator, hidden_packages=thresholds.hidden_packages)

    tracker.start()
    has_input = False
    valid_count = 0
    try:
        for event in iter_events(sys.stdin):
            has_input = True
            if event is None:
                continue
            valid_count += 1
            tracker.submit(event)
        tracker.join()
    finally:
        tracker.stop(end_time=tracker.last_event_ms)

    click.echo(f"Tracked {valid_count} events, wrote {sum(written)} scroll sessions")

    if has_input and valid_count == 0:
        sys.exit(1)


@main.command("report")
@db_option
@click.option("--date", "date_string", help="Local date YYYY-MM-DD (default: today)")
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
def report_command(db: Path, date_string: str | None, output_json: bool) -> None:
    """Show the processed summary, app usage and insights for a date."""
    if not db.exists():
        click.echo("No database found", err=True)
        sys.exit(1)

    date_string = _validate_date(date_string)

    with EventStore.open(db) as store:
        summary = store.get_device_summary(date_string)
        app_usage = store.get_app_usage(date_string)
        insights = store.get_insights(date_string)
        scroll_sessions = store.get_scroll_sessions(date_string)

    if output_json:
        click.echo(json.dumps({
            "date": date_string,
            "summary": summary.model_dump(mode="json") if summary else None,
            "app_usage": [r.model_dump(mode="json") for r in app_usage],
            "insights": [i.model_dump(mode="json") for i in insights],
            "scroll_sessions": [s.model_dump(mode="json") for s in scroll_sessions],
        }, indent=2))
        return

    click.echo(f"ScrollTrack Report: {date_string}")
    click.echo()

    if summary is None:
        click.echo("No processed data for this date.")
        click.echo()
        click.echo(f"Run 'scrolltrack process --date {date_string}' first.")
        return

    click.echo(f"Screen time:     {format_duration(summary.total_usage_time_millis)}")
    click.echo(f"Unlocked time:   {format_duration(summary.total_unlocked_duration_millis)}")
    click.echo(
        f"Unlocks:         {summary.total_unlock_count} "
        f"({summary.intentional_unlock_count} intentional, {summary.glance_unlock_count} glances)"
    )
    click.echo(f"App opens:       {summary.total_app_opens}")
    click.echo(f"Notifications:   {summary.total_notification_count}")

    scroll_by_package: dict[str, int] = {}
    for session in scroll_sessions:
        scroll_by_package[session.package_name] = (
            scroll_by_package.get(session.package_name, 0) + session.scroll_amount
        )

    if app_usage:
        click.echo()
        click.echo("Apps:")
        width = max(len(r.package_name) for r in app_usage)
        for record in app_usage:
            click.echo(
                f"  {record.package_name:<{width}}  {format_duration(record.usage_time_millis):>7}  "
                f"active {format_duration(record.active_time_millis):>7}  "
                f"opens {record.app_open_count:>3}  "
                f"scroll {scroll_by_package.get(record.package_name, 0)}"
            )

    if insights:
        click.echo()
        click.echo("Insights:")
        for insight in insights:
            value = insight.string_value if insight.string_value is not None else insight.long_value
            if insight.string_value is not None and insight.long_value is not None:
                value = f"{insight.string_value} ({insight.long_value})"
            click.echo(f"  {insight.insight_key}: {value}")


@main.command("status")
@db_option
def status_command(db: Path) -> None:
    """Show event collection status.

    Displays the last event time for each source and overall stats.
    """
    if not db.exists():
        click.echo("No database found", err=True)
        sys.exit(1)

    with EventStore.open(db) as store:
        sources = store.get_last_event_per_source()

    if not sources:
        click.echo("No events recorded")
        return

    click.echo(f"Database: {db}")
    click.echo()

    total_events = sum(s["event_count"] for s in sources)
    click.echo(f"Total events: {total_events}")
    click.echo()

    click.echo("Last event per source:")
    for source in sources:
        relative = format_relative_time(source["last_timestamp_ms"])
        click.echo(f"  {source['source']}: {relative} ({source['event_count']} events)")
