"""Event and record models for scrolltrack."""

from __future__ import annotations

import hashlib
import json
from enum import Enum

from pydantic import BaseModel, ConfigDict, field_validator


class EventType(str, Enum):
    """Closed set of raw event kinds produced by the device event source."""

    ACTIVITY_RESUMED = "activity_resumed"
    ACTIVITY_PAUSED = "activity_paused"
    ACTIVITY_STOPPED = "activity_stopped"
    SCREEN_INTERACTIVE = "screen_interactive"
    SCREEN_NON_INTERACTIVE = "screen_non_interactive"
    KEYGUARD_SHOWN = "keyguard_shown"
    KEYGUARD_HIDDEN = "keyguard_hidden"
    USER_PRESENT = "user_present"
    USER_UNLOCKED = "user_unlocked"
    USER_INTERACTION = "user_interaction"
    RETURN_TO_HOME = "return_to_home"
    SCROLL_MEASURED = "scroll_measured"
    SCROLL_INFERRED = "scroll_inferred"
    ACCESSIBILITY_CLICK = "accessibility_click"
    ACCESSIBILITY_FOCUS = "accessibility_focus"
    ACCESSIBILITY_TYPING = "accessibility_typing"
    NOTIFICATION_POSTED = "notification_posted"
    NOTIFICATION_REMOVED = "notification_removed"
    SERVICE_STARTED = "service_started"
    SERVICE_STOPPED = "service_stopped"


# Integer codes written by older collectors (UsageEvents constants plus the
# app's own extensions).
LEGACY_EVENT_CODES: dict[int, EventType] = {
    1: EventType.SERVICE_STARTED,
    2: EventType.SERVICE_STOPPED,
    5: EventType.ACTIVITY_RESUMED,
    6: EventType.ACTIVITY_PAUSED,
    7: EventType.ACTIVITY_STOPPED,
    10: EventType.USER_INTERACTION,
    11: EventType.SCREEN_INTERACTIVE,
    12: EventType.SCREEN_NON_INTERACTIVE,
    13: EventType.KEYGUARD_SHOWN,
    14: EventType.KEYGUARD_HIDDEN,
    15: EventType.USER_PRESENT,
    16: EventType.USER_UNLOCKED,
    17: EventType.RETURN_TO_HOME,
    20: EventType.SCROLL_MEASURED,
    21: EventType.SCROLL_INFERRED,
    22: EventType.ACCESSIBILITY_CLICK,
    23: EventType.ACCESSIBILITY_FOCUS,
    24: EventType.ACCESSIBILITY_TYPING,
    30: EventType.NOTIFICATION_POSTED,
    31: EventType.NOTIFICATION_REMOVED,
}

UNLOCK_EVENT_TYPES = frozenset({
    EventType.USER_UNLOCKED,
    EventType.USER_PRESENT,
    EventType.KEYGUARD_HIDDEN,
})

LOCK_EVENT_TYPES = frozenset({EventType.SCREEN_NON_INTERACTIVE})

SCROLL_EVENT_TYPES = frozenset({EventType.SCROLL_MEASURED, EventType.SCROLL_INFERRED})

FOREGROUND_EVENT_TYPES = frozenset({
    EventType.ACTIVITY_RESUMED,
    EventType.ACTIVITY_PAUSED,
    EventType.ACTIVITY_STOPPED,
    EventType.SCREEN_NON_INTERACTIVE,
})


def classify_event_type(raw: EventType | str | int | None) -> EventType | None:
    """Map a source event tag to an EventType.

    Accepts an EventType, its value ("activity_resumed"), its name
    ("ACTIVITY_RESUMED"), or a legacy integer code (as int or digit string).

    Returns:
        The matching EventType, or None when the tag is unknown.
    """
    if raw is None:
        return None
    if isinstance(raw, EventType):
        return raw
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return LEGACY_EVENT_CODES.get(raw)
    if not isinstance(raw, str):
        return None

    tag = raw.strip()
    if tag.isdigit():
        return LEGACY_EVENT_CODES.get(int(tag))
    try:
        return EventType(tag.lower())
    except ValueError:
        pass
    try:
        return EventType[tag.upper()]
    except KeyError:
        return None


class DataType(str, Enum):
    MEASURED = "MEASURED"
    INFERRED = "INFERRED"


class SessionType(str, Enum):
    GLANCE = "Glance"
    INTENTIONAL = "Intentional"


class SessionEndReason(str, Enum):
    """Why a scroll or unlock session ended."""

    APP_SWITCH = "APP_SWITCH"
    SCREEN_OFF = "SCREEN_OFF"
    SERVICE_INTERRUPT = "SERVICE_INTERRUPT"
    SERVICE_DESTROY = "SERVICE_DESTROY"
    RECOVERED_DRAFT = "RECOVERED_DRAFT"
    PROCESSED = "PROCESSED"
    LOCKED = "LOCKED"
    GHOST = "GHOST"
    INTERRUPTED = "INTERRUPTED"


class InsightKey(str, Enum):
    FIRST_UNLOCK_TIME = "first_unlock_time"
    LAST_UNLOCK_TIME = "last_unlock_time"
    GLANCE_COUNT = "glance_count"
    MEANINGFUL_UNLOCK_COUNT = "meaningful_unlock_count"
    FIRST_APP_USED = "first_app_used"
    LAST_APP_USED = "last_app_used"
    NIGHT_OWL_LAST_APP = "night_owl_last_app"
    BUSIEST_UNLOCK_HOUR = "busiest_unlock_hour"
    TOP_COMPULSIVE_APP = "top_compulsive_app"
    TOP_NOTIFICATION_UNLOCK_APP = "top_notification_unlock_app"


class RawEvent(BaseModel):
    """A single timestamped device event.

    ID is computed from content hash, not provided.
    """

    model_config = ConfigDict(frozen=True)

    package_name: str
    class_name: str | None = None
    event_type: EventType
    timestamp_ms: int
    local_date_string: str
    source: str = "unknown"
    scroll_delta_x: int | None = None
    scroll_delta_y: int | None = None
    value: int | None = None

    @field_validator("event_type", mode="before")
    @classmethod
    def _classify(cls, raw: object) -> EventType:
        event_type = classify_event_type(raw)  # type: ignore[arg-type]
        if event_type is None:
            raise ValueError(f"unknown event type: {raw!r}")
        return event_type

    @property
    def is_measured_scroll(self) -> bool:
        return self.event_type == EventType.SCROLL_MEASURED

    def scroll_deltas(self) -> tuple[int, int]:
        """Return absolute (x, y) scroll deltas.

        Falls back to the legacy single-axis ``value`` as a vertical delta
        when neither axis was recorded.
        """
        if self.scroll_delta_x is None and self.scroll_delta_y is None:
            return 0, abs(self.value or 0)
        return abs(self.scroll_delta_x or 0), abs(self.scroll_delta_y or 0)

    def compute_id(self) -> str:
        """Compute deterministic ID from content hash.

        All fields that differentiate events are included to avoid collisions.
        """
        content = "|".join([
            self.source,
            self.event_type.value,
            str(self.timestamp_ms),
            self.package_name,
            self.class_name or "",
            json.dumps(
                [self.scroll_delta_x, self.scroll_delta_y, self.value],
            ),
        ])
        return hashlib.sha256(content.encode()).hexdigest()[:32]


class ScrollSessionRecord(BaseModel):
    package_name: str
    scroll_amount_x: int = 0
    scroll_amount_y: int = 0
    scroll_amount: int
    session_start_time: int
    session_end_time: int
    date_string: str
    data_type: DataType = DataType.INFERRED
    session_end_reason: str


class DailyAppUsageRecord(BaseModel):
    package_name: str
    date_string: str
    usage_time_millis: int
    active_time_millis: int = 0
    app_open_count: int = 0
    notification_count: int = 0


class DailyDeviceSummary(BaseModel):
    """Device-level totals for one date. One row per date."""

    date_string: str
    total_usage_time_millis: int = 0
    total_unlocked_duration_millis: int = 0
    total_unlock_count: int = 0
    intentional_unlock_count: int = 0
    glance_unlock_count: int = 0
    total_notification_count: int = 0
    total_app_opens: int = 0
    first_unlock_timestamp_utc: int | None = None
    last_unlock_timestamp_utc: int | None = None


class UnlockSessionRecord(BaseModel):
    """An unlock-to-lock span. Open while lock_timestamp is None."""

    unlock_timestamp: int
    lock_timestamp: int | None = None
    duration_millis: int | None = None
    date_string: str
    first_app_package_name: str | None = None
    triggering_notification_package_name: str | None = None
    unlock_event_type: str = EventType.USER_UNLOCKED.value
    session_type: SessionType | None = None
    session_end_reason: str | None = None
    is_compulsive: bool = False

    @property
    def is_open(self) -> bool:
        return self.lock_timestamp is None


class DailyInsight(BaseModel):
    date_string: str
    insight_key: str
    string_value: str | None = None
    long_value: int | None = None
    double_value: float | None = None


class SessionDraft(BaseModel):
    """Durable snapshot of the in-progress live scroll session."""

    package_name: str
    activity_name: str | None = None
    scroll_amount: int
    scroll_amount_x: int = 0
    scroll_amount_y: int = 0
    start_time: int
    last_update_time: int
    is_measured: bool = False
