"""Single entry point for (re)computing one day's derived records."""

from __future__ import annotations

import logging
from datetime import tzinfo
from typing import Iterable

from pydantic import BaseModel

from scrolltrack.config import DEFAULT_THRESHOLDS, Thresholds
from scrolltrack.dates import end_of_day_ms, start_of_day_ms
from scrolltrack.db import EventStore
from scrolltrack.models import (
    DailyAppUsageRecord,
    DailyDeviceSummary,
    DailyInsight,
    RawEvent,
    ScrollSessionRecord,
    UnlockSessionRecord,
)
from scrolltrack.processors.app_usage import calculate_app_usage, infer_foreground_app
from scrolltrack.processors.insights import generate_insights
from scrolltrack.processors.scroll_sessions import calculate_scroll_sessions
from scrolltrack.processors.unlock_sessions import calculate_unlock_sessions

logger = logging.getLogger(__name__)


class DailyProcessingResult(BaseModel):
    """Everything derived for one date. Replaces that date's stored rows."""

    date_string: str
    unlock_sessions: list[UnlockSessionRecord]
    scroll_sessions: list[ScrollSessionRecord]
    app_usage: list[DailyAppUsageRecord]
    device_summary: DailyDeviceSummary
    insights: list[DailyInsight]


def process_day(
    date_string: str,
    events: Iterable[RawEvent],
    filter_set: set[str] | frozenset[str] = frozenset(),
    *,
    initial_foreground_app: str | None = None,
    now_ms: int | None = None,
    tz: tzinfo | None = None,
    thresholds: Thresholds = DEFAULT_THRESHOLDS,
) -> DailyProcessingResult:
    """Run every calculator over the same events.

    Pure: the same inputs always give an equal result.
    """
    events = sorted(events, key=lambda e: e.timestamp_ms)

    unlock_sessions = calculate_unlock_sessions(events, filter_set, thresholds=thresholds)
    scroll_sessions = calculate_scroll_sessions(
        events, filter_set, merge_gap_ms=thresholds.session_merge_gap_ms
    )
    app_usage, device_summary = calculate_app_usage(
        events,
        filter_set,
        date_string,
        unlock_sessions,
        initial_foreground_app=initial_foreground_app,
        now_ms=now_ms,
        tz=tz,
        thresholds=thresholds,
    )
    insights = generate_insights(
        date_string,
        unlock_sessions,
        events,
        filter_set,
        tz=tz,
        night_owl_window_ms=thresholds.night_owl_window_ms,
    )

    return DailyProcessingResult(
        date_string=date_string,
        unlock_sessions=unlock_sessions,
        scroll_sessions=scroll_sessions,
        app_usage=app_usage,
        device_summary=device_summary,
        insights=insights,
    )


def reprocess_date(
    store: EventStore,
    date_string: str,
    filter_set: set[str] | frozenset[str] = frozenset(),
    *,
    now_ms: int | None = None,
    tz: tzinfo | None = None,
    thresholds: Thresholds = DEFAULT_THRESHOLDS,
) -> DailyProcessingResult:
    """Load a date's events from store, process them, and replace its rows.

    The foreground app at the start of the day is inferred from the events
    in the foreground_lookback_ms before midnight.
    """
    period_start = start_of_day_ms(date_string, tz)
    period_end = end_of_day_ms(date_string, tz) + 1

    events = store.get_events(start_ms=period_start, end_ms=period_end)
    lookback = store.get_events(
        start_ms=period_start - thresholds.foreground_lookback_ms, end_ms=period_start
    )
    initial_foreground_app = infer_foreground_app(lookback)
    logger.info(
        f"Processing {date_string}: {len(events)} events, "
        f"initial foreground app {initial_foreground_app}"
    )

    result = process_day(
        date_string,
        events,
        filter_set,
        initial_foreground_app=initial_foreground_app,
        now_ms=now_ms,
        tz=tz,
        thresholds=thresholds,
    )
    store.replace_day(result)
    return result
