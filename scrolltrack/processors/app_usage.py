"""Foreground usage, active time and app opens per package for one day."""

from __future__ import annotations

import logging
from collections import Counter, defaultdict
from datetime import tzinfo
from typing import Iterable

from scrolltrack.config import DEFAULT_THRESHOLDS, Thresholds
from scrolltrack.dates import end_of_day_ms, start_of_day_ms
from scrolltrack.models import (
    FOREGROUND_EVENT_TYPES,
    UNLOCK_EVENT_TYPES,
    DailyAppUsageRecord,
    DailyDeviceSummary,
    EventType,
    RawEvent,
    SessionType,
    UnlockSessionRecord,
)

logger = logging.getLogger(__name__)

Interval = tuple[int, int]

CLOSE_EVENT_TYPES = {EventType.ACTIVITY_PAUSED, EventType.ACTIVITY_STOPPED}

# Resumes directly after one of these always count as a new app open.
OPEN_TRIGGER_EVENT_TYPES = UNLOCK_EVENT_TYPES | {EventType.RETURN_TO_HOME}


def _interaction_window(event_type: EventType, thresholds: Thresholds) -> int:
    if event_type in (EventType.SCROLL_MEASURED, EventType.SCROLL_INFERRED):
        return thresholds.active_time_scroll_window_ms
    if event_type == EventType.ACCESSIBILITY_TYPING:
        return thresholds.active_time_type_window_ms
    if event_type in (EventType.ACCESSIBILITY_CLICK, EventType.ACCESSIBILITY_FOCUS):
        return thresholds.active_time_tap_window_ms
    if event_type == EventType.USER_INTERACTION:
        return thresholds.active_time_interaction_window_ms
    return 0


def infer_foreground_app(events: Iterable[RawEvent]) -> str | None:
    """Return the package left in the foreground at the end of events.

    Used to seed the day's first interval from a lookback window before the
    period start.
    """
    current: str | None = None
    for event in sorted(events, key=lambda e: e.timestamp_ms):
        if event.event_type == EventType.ACTIVITY_RESUMED:
            current = event.package_name
        elif event.event_type in CLOSE_EVENT_TYPES:
            if current == event.package_name:
                current = None
        elif event.event_type == EventType.SCREEN_NON_INTERACTIVE:
            current = None
    return current


def foreground_intervals(
    events: Iterable[RawEvent],
    period_start: int,
    period_end: int,
    *,
    initial_foreground_app: str | None = None,
    quick_switch_threshold_ms: int = DEFAULT_THRESHOLDS.quick_switch_threshold_ms,
) -> dict[str, list[Interval]]:
    """Reconstruct foreground intervals per package.

    Intervals are half-open [start, end) in epoch milliseconds, clipped to
    the period. Only one package is in the foreground at a time.
    """
    state_events = sorted(
        (e for e in events if e.event_type in FOREGROUND_EVENT_TYPES),
        key=lambda e: e.timestamp_ms,
    )
    intervals: dict[str, list[Interval]] = defaultdict(list)
    current: tuple[str, int] | None = None
    if initial_foreground_app is not None:
        current = (initial_foreground_app, period_start)

    def close(end: int) -> None:
        package, start = current  # type: ignore[misc]
        if end > start:
            intervals[package].append((start, end))

    for i, event in enumerate(state_events):
        t = min(max(event.timestamp_ms, period_start), period_end)

        if event.event_type == EventType.ACTIVITY_RESUMED:
            if current is not None and current[0] != event.package_name:
                # Missed pause: the previous app left the foreground just before.
                close(t - 1)
                current = None
            if current is None:
                current = (event.package_name, t)

        elif event.event_type in CLOSE_EVENT_TYPES:
            if current is None or current[0] != event.package_name:
                continue
            end = t
            if i + 1 < len(state_events):
                following = state_events[i + 1]
                if (
                    following.event_type == EventType.ACTIVITY_RESUMED
                    and following.package_name != event.package_name
                    and following.timestamp_ms - event.timestamp_ms <= quick_switch_threshold_ms
                ):
                    end = max(t, min(following.timestamp_ms, period_end) - 1)
            close(end)
            current = None

        elif event.event_type == EventType.SCREEN_NON_INTERACTIVE:
            if current is not None:
                close(t)
                current = None

    if current is not None:
        close(period_end)

    return dict(intervals)


def calculate_active_time(
    interaction_events: Iterable[RawEvent],
    intervals: list[Interval],
    thresholds: Thresholds = DEFAULT_THRESHOLDS,
) -> int:
    """Sum of the package's interaction windows that fall inside its intervals.

    Each interaction opens a forward window sized by its kind; overlapping
    windows are merged before intersecting with the foreground intervals.
    """
    windows = []
    for event in interaction_events:
        length = _interaction_window(event.event_type, thresholds)
        if length > 0:
            windows.append((event.timestamp_ms, event.timestamp_ms + length))
    if not windows or not intervals:
        return 0

    windows.sort()
    merged = [windows[0]]
    for start, end in windows[1:]:
        last_start, last_end = merged[-1]
        if start <= last_end:
            merged[-1] = (last_start, max(last_end, end))
        else:
            merged.append((start, end))

    total = 0
    for interval_start, interval_end in intervals:
        for start, end in merged:
            overlap = min(end, interval_end) - max(start, interval_start)
            if overlap > 0:
                total += overlap
    return total


def count_app_opens(
    events: Iterable[RawEvent],
    debounce_ms: int = DEFAULT_THRESHOLDS.app_open_debounce_ms,
) -> dict[str, int]:
    """Count resumes that represent the user opening an app.

    A resume right after an unlock or return-to-home always counts.
    Otherwise it does not count while the package is already in the
    foreground, nor within debounce_ms of that package's last counted open.
    """
    opens: Counter[str] = Counter()
    last_open_at: dict[str, int] = {}
    foreground: str | None = None
    last_relevant: EventType | None = None

    for event in sorted(events, key=lambda e: e.timestamp_ms):
        package = event.package_name

        if event.event_type == EventType.ACTIVITY_RESUMED:
            if last_relevant in OPEN_TRIGGER_EVENT_TYPES:
                counted = True
            elif foreground == package:
                counted = False
            elif package in last_open_at and event.timestamp_ms - last_open_at[package] < debounce_ms:
                counted = False
            else:
                counted = True

            if counted:
                opens[package] += 1
                last_open_at[package] = event.timestamp_ms
            foreground = package
            last_relevant = event.event_type

        elif event.event_type in OPEN_TRIGGER_EVENT_TYPES:
            last_relevant = event.event_type
        elif event.event_type in CLOSE_EVENT_TYPES:
            if foreground == package:
                foreground = None
        elif event.event_type == EventType.SCREEN_NON_INTERACTIVE:
            foreground = None

    return dict(opens)


def calculate_app_usage(
    events: Iterable[RawEvent],
    filter_set: set[str] | frozenset[str],
    date_string: str,
    unlock_sessions: list[UnlockSessionRecord],
    *,
    initial_foreground_app: str | None = None,
    now_ms: int | None = None,
    tz: tzinfo | None = None,
    thresholds: Thresholds = DEFAULT_THRESHOLDS,
) -> tuple[list[DailyAppUsageRecord], DailyDeviceSummary]:
    """Build per-package usage rows and the device summary for one date.

    Intervals are reconstructed from every event so hidden packages still
    end a visible app's interval; hidden packages are removed from the output.

    Args:
        events: The day's raw events.
        filter_set: Hidden packages.
        date_string: Local date being processed.
        unlock_sessions: The day's unlock sessions, for the summary.
        initial_foreground_app: Package in the foreground at period start.
        now_ms: Caps the period end when processing the current day.
        tz: Time zone of date_string. None means local.
        thresholds: Timing thresholds.

    Returns:
        Usage rows sorted by package name, and the device summary.
    """
    events = list(events)
    period_start = start_of_day_ms(date_string, tz)
    period_end = end_of_day_ms(date_string, tz) + 1
    if now_ms is not None:
        period_end = max(period_start, min(period_end, now_ms))

    intervals = foreground_intervals(
        events,
        period_start,
        period_end,
        initial_foreground_app=initial_foreground_app,
        quick_switch_threshold_ms=thresholds.quick_switch_threshold_ms,
    )
    app_opens = count_app_opens(events, thresholds.app_open_debounce_ms)

    interactions: dict[str, list[RawEvent]] = defaultdict(list)
    notifications: Counter[str] = Counter()
    for event in events:
        if event.package_name in filter_set:
            continue
        if event.event_type == EventType.NOTIFICATION_POSTED:
            notifications[event.package_name] += 1
        elif _interaction_window(event.event_type, thresholds) > 0:
            interactions[event.package_name].append(event)

    visible_opens = {p: n for p, n in app_opens.items() if p not in filter_set}
    packages = (
        {p for p in intervals if p not in filter_set}
        | set(visible_opens)
        | set(notifications)
    )

    records: list[DailyAppUsageRecord] = []
    for package in sorted(packages):
        package_intervals = intervals.get(package, [])
        usage = sum(end - start for start, end in package_intervals)
        if usage < thresholds.minimum_session_duration_ms and notifications[package] == 0:
            continue
        active = calculate_active_time(interactions.get(package, []), package_intervals, thresholds)
        records.append(DailyAppUsageRecord(
            package_name=package,
            date_string=date_string,
            usage_time_millis=usage,
            active_time_millis=min(active, usage),
            app_open_count=visible_opens.get(package, 0),
            notification_count=notifications[package],
        ))

    unlock_timestamps = [s.unlock_timestamp for s in unlock_sessions]
    summary = DailyDeviceSummary(
        date_string=date_string,
        total_usage_time_millis=sum(r.usage_time_millis for r in records),
        total_unlocked_duration_millis=sum(s.duration_millis or 0 for s in unlock_sessions),
        total_unlock_count=len(unlock_sessions),
        intentional_unlock_count=sum(1 for s in unlock_sessions if s.session_type == SessionType.INTENTIONAL),
        glance_unlock_count=sum(1 for s in unlock_sessions if s.session_type == SessionType.GLANCE),
        total_notification_count=sum(notifications.values()),
        total_app_opens=sum(visible_opens.values()),
        first_unlock_timestamp_utc=min(unlock_timestamps, default=None),
        last_unlock_timestamp_utc=max(unlock_timestamps, default=None),
    )

    logger.debug(
        f"App usage for {date_string}: {len(records)} packages, "
        f"{summary.total_usage_time_millis} ms total"
    )
    return records, summary
