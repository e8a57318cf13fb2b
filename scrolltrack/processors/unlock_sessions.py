"""Unlock-to-lock sessions reconstructed from a day's raw events."""

from __future__ import annotations

import bisect
import logging
from typing import Iterable

from scrolltrack.config import DEFAULT_THRESHOLDS, Thresholds
from scrolltrack.models import (
    LOCK_EVENT_TYPES,
    UNLOCK_EVENT_TYPES,
    EventType,
    RawEvent,
    SessionEndReason,
    SessionType,
    UnlockSessionRecord,
)

logger = logging.getLogger(__name__)


def _first_resume_after(
    resumes: list[RawEvent],
    resume_times: list[int],
    start: int,
    end: int | None,
) -> RawEvent | None:
    i = bisect.bisect_right(resume_times, start)
    if i < len(resumes) and (end is None or resumes[i].timestamp_ms < end):
        return resumes[i]
    return None


def _triggering_notification(
    notifications: list[RawEvent],
    notification_times: list[int],
    unlock_timestamp: int,
    window_ms: int,
) -> str | None:
    i = bisect.bisect_right(notification_times, unlock_timestamp) - 1
    if i >= 0 and unlock_timestamp - notifications[i].timestamp_ms < window_ms:
        return notifications[i].package_name
    return None


def calculate_unlock_sessions(
    events: Iterable[RawEvent],
    filter_set: set[str] | frozenset[str] = frozenset(),
    *,
    thresholds: Thresholds = DEFAULT_THRESHOLDS,
) -> list[UnlockSessionRecord]:
    """Pair unlock events with the following lock.

    An unlock while a session is open closes the stale session as GHOST,
    unless it follows the open session's unlock within
    unlock_event_follow_window_ms (one physical unlock emits several
    unlock-class events). service_stopped closes the open session as
    INTERRUPTED. A session still open at the end is returned open.

    Returns:
        Sessions ordered by unlock time. At most the last one is open.
    """
    events = sorted(events, key=lambda e: e.timestamp_ms)
    resumes = [
        e for e in events
        if e.event_type == EventType.ACTIVITY_RESUMED and e.package_name not in filter_set
    ]
    resume_times = [e.timestamp_ms for e in resumes]
    notifications = [
        e for e in events
        if e.event_type == EventType.NOTIFICATION_POSTED and e.package_name not in filter_set
    ]
    notification_times = [e.timestamp_ms for e in notifications]

    def with_first_app(session: UnlockSessionRecord, end: int | None) -> UnlockSessionRecord:
        first = _first_resume_after(resumes, resume_times, session.unlock_timestamp, end)
        if first is None:
            return session.model_copy(update={"first_app_package_name": None, "is_compulsive": False})
        return session.model_copy(update={
            "first_app_package_name": first.package_name,
            "is_compulsive": first.timestamp_ms - session.unlock_timestamp
            <= thresholds.compulsive_check_threshold_ms,
        })

    def close(session: UnlockSessionRecord, end: int, reason: SessionEndReason) -> UnlockSessionRecord:
        duration = max(0, end - session.unlock_timestamp)
        session_type = (
            SessionType.GLANCE if duration < thresholds.minimum_glance_duration_ms else SessionType.INTENTIONAL
        )
        closed = session.model_copy(update={
            "lock_timestamp": end,
            "duration_millis": duration,
            "session_type": session_type,
            "session_end_reason": reason.value,
        })
        return with_first_app(closed, end)

    sessions: list[UnlockSessionRecord] = []
    open_session: UnlockSessionRecord | None = None

    for event in events:
        if event.event_type in UNLOCK_EVENT_TYPES:
            if open_session is not None:
                if event.timestamp_ms - open_session.unlock_timestamp <= thresholds.unlock_event_follow_window_ms:
                    continue
                logger.warning(
                    f"Unlock at {event.timestamp_ms} while session from "
                    f"{open_session.unlock_timestamp} is open, closing it as ghost"
                )
                sessions.append(close(open_session, event.timestamp_ms, SessionEndReason.GHOST))

            open_session = UnlockSessionRecord(
                unlock_timestamp=event.timestamp_ms,
                date_string=event.local_date_string,
                unlock_event_type=event.event_type.value,
                triggering_notification_package_name=_triggering_notification(
                    notifications,
                    notification_times,
                    event.timestamp_ms,
                    thresholds.notification_unlock_window_ms,
                ),
            )

        elif open_session is not None and event.event_type in LOCK_EVENT_TYPES:
            sessions.append(close(open_session, event.timestamp_ms, SessionEndReason.LOCKED))
            open_session = None

        elif open_session is not None and event.event_type == EventType.SERVICE_STOPPED:
            sessions.append(close(open_session, event.timestamp_ms, SessionEndReason.INTERRUPTED))
            open_session = None

    if open_session is not None:
        sessions.append(with_first_app(open_session, None))

    logger.debug(f"Built {len(sessions)} unlock sessions")
    return sessions
