"""Daily insights derived from unlock sessions and raw events."""

from __future__ import annotations

from collections import Counter
from datetime import tzinfo
from typing import Iterable

from scrolltrack.config import DEFAULT_THRESHOLDS
from scrolltrack.dates import local_hour, start_of_day_ms
from scrolltrack.models import (
    DailyInsight,
    EventType,
    InsightKey,
    RawEvent,
    SessionEndReason,
    SessionType,
    UnlockSessionRecord,
)


def _top(counts: Counter[str]) -> tuple[str, int] | None:
    """Most common key, ties broken alphabetically."""
    if not counts:
        return None
    return min(counts.items(), key=lambda item: (-item[1], item[0]))


def generate_insights(
    date_string: str,
    unlock_sessions: list[UnlockSessionRecord],
    events: Iterable[RawEvent],
    filter_set: set[str] | frozenset[str] = frozenset(),
    *,
    tz: tzinfo | None = None,
    night_owl_window_ms: int = DEFAULT_THRESHOLDS.night_owl_window_ms,
) -> list[DailyInsight]:
    """Derive the day's insight rows.

    Keys without supporting data produce no row.

    Returns:
        Insights sorted by key.
    """
    resumes = sorted(
        (e for e in events
         if e.event_type == EventType.ACTIVITY_RESUMED and e.package_name not in filter_set),
        key=lambda e: e.timestamp_ms,
    )
    insights: list[DailyInsight] = []

    def add(key: InsightKey, **values: object) -> None:
        insights.append(DailyInsight(date_string=date_string, insight_key=key.value, **values))

    if unlock_sessions:
        unlock_times = [s.unlock_timestamp for s in unlock_sessions]
        first_unlock = min(unlock_times)
        add(InsightKey.FIRST_UNLOCK_TIME, long_value=first_unlock)
        add(InsightKey.LAST_UNLOCK_TIME, long_value=max(unlock_times))

        glances = sum(1 for s in unlock_sessions if s.session_type == SessionType.GLANCE)
        meaningful = sum(
            1 for s in unlock_sessions
            if s.session_type in (SessionType.INTENTIONAL, None)
            or s.session_end_reason == SessionEndReason.INTERRUPTED.value
        )
        add(InsightKey.GLANCE_COUNT, long_value=glances)
        add(InsightKey.MEANINGFUL_UNLOCK_COUNT, long_value=meaningful)

        first_app = next((e for e in resumes if e.timestamp_ms > first_unlock), None)
        if first_app is not None:
            add(InsightKey.FIRST_APP_USED, string_value=first_app.package_name, long_value=first_app.timestamp_ms)

        hours = Counter(local_hour(t, tz) for t in unlock_times)
        busiest_hour = min(hours.items(), key=lambda item: (-item[1], item[0]))[0]
        add(InsightKey.BUSIEST_UNLOCK_HOUR, long_value=busiest_hour)

        compulsive = _top(Counter(
            s.first_app_package_name for s in unlock_sessions
            if s.is_compulsive and s.first_app_package_name is not None
        ))
        if compulsive is not None:
            add(InsightKey.TOP_COMPULSIVE_APP, string_value=compulsive[0], long_value=compulsive[1])

        notified = _top(Counter(
            s.triggering_notification_package_name for s in unlock_sessions
            if s.triggering_notification_package_name is not None
        ))
        if notified is not None:
            add(InsightKey.TOP_NOTIFICATION_UNLOCK_APP, string_value=notified[0], long_value=notified[1])

    if resumes:
        last_app = resumes[-1]
        add(InsightKey.LAST_APP_USED, string_value=last_app.package_name, long_value=last_app.timestamp_ms)

    day_start = start_of_day_ms(date_string, tz)
    night_owl = [e for e in resumes if day_start <= e.timestamp_ms <= day_start + night_owl_window_ms]
    if night_owl:
        add(InsightKey.NIGHT_OWL_LAST_APP, string_value=night_owl[-1].package_name, long_value=night_owl[-1].timestamp_ms)

    insights.sort(key=lambda i: i.insight_key)
    return insights
