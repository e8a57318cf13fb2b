"""Rebuild scroll sessions from a day's raw scroll events."""

from __future__ import annotations

import logging
from typing import Iterable

from scrolltrack.config import DEFAULT_THRESHOLDS
from scrolltrack.models import (
    SCROLL_EVENT_TYPES,
    DataType,
    EventType,
    RawEvent,
    ScrollSessionRecord,
    SessionEndReason,
)

logger = logging.getLogger(__name__)


def calculate_scroll_sessions(
    events: Iterable[RawEvent],
    filter_set: set[str] | frozenset[str] = frozenset(),
    *,
    merge_gap_ms: int = DEFAULT_THRESHOLDS.session_merge_gap_ms,
) -> list[ScrollSessionRecord]:
    """Group scroll events into sessions.

    A package that produced any measured scroll in this batch is represented
    only by its measured events; its inferred events are dropped. Events then
    extend the current session while package and data type match and the gap
    from the session's last event is at most merge_gap_ms.

    Args:
        events: Raw events for the period, in any order.
        filter_set: Hidden packages to leave out.
        merge_gap_ms: Maximum gap between consecutive events of one session.

    Returns:
        Sessions in chronological order, each dated by its first event.
    """
    scroll_events = [
        e for e in events
        if e.event_type in SCROLL_EVENT_TYPES and e.package_name not in filter_set
    ]
    measured_packages = {e.package_name for e in scroll_events if e.is_measured_scroll}
    scroll_events = [
        e for e in scroll_events
        if e.is_measured_scroll or e.package_name not in measured_packages
    ]
    scroll_events.sort(key=lambda e: e.timestamp_ms)

    sessions: list[ScrollSessionRecord] = []
    current: ScrollSessionRecord | None = None

    for event in scroll_events:
        delta_x, delta_y = event.scroll_deltas()
        if delta_x + delta_y == 0:
            continue
        data_type = DataType.MEASURED if event.event_type == EventType.SCROLL_MEASURED else DataType.INFERRED

        if (
            current is not None
            and current.package_name == event.package_name
            and current.data_type == data_type
            and event.timestamp_ms - current.session_end_time <= merge_gap_ms
        ):
            current = current.model_copy(update={
                "session_end_time": event.timestamp_ms,
                "scroll_amount_x": current.scroll_amount_x + delta_x,
                "scroll_amount_y": current.scroll_amount_y + delta_y,
                "scroll_amount": current.scroll_amount + delta_x + delta_y,
            })
            continue

        if current is not None:
            sessions.append(current)
        current = ScrollSessionRecord(
            package_name=event.package_name,
            scroll_amount_x=delta_x,
            scroll_amount_y=delta_y,
            scroll_amount=delta_x + delta_y,
            session_start_time=event.timestamp_ms,
            session_end_time=event.timestamp_ms,
            date_string=event.local_date_string,
            data_type=data_type,
            session_end_reason=SessionEndReason.PROCESSED.value,
        )

    if current is not None:
        sessions.append(current)

    logger.debug(f"Built {len(sessions)} scroll sessions from {len(scroll_events)} scroll events")
    return sessions
