"""SQLite store for raw device events and derived daily records."""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterable, TypeVar

from pydantic import BaseModel

from scrolltrack.models import (
    DailyAppUsageRecord,
    DailyDeviceSummary,
    DailyInsight,
    RawEvent,
    ScrollSessionRecord,
    UnlockSessionRecord,
)

if TYPE_CHECKING:
    from scrolltrack.processors.daily import DailyProcessingResult

SCHEMA = """
CREATE TABLE IF NOT EXISTS raw_events (
    id TEXT PRIMARY KEY,
    package_name TEXT NOT NULL,
    class_name TEXT,
    event_type TEXT NOT NULL,
    timestamp_ms INTEGER NOT NULL,
    local_date_string TEXT NOT NULL,
    source TEXT NOT NULL,
    scroll_delta_x INTEGER,
    scroll_delta_y INTEGER,
    value INTEGER
);

CREATE TABLE IF NOT EXISTS scroll_sessions (
    package_name TEXT NOT NULL,
    scroll_amount_x INTEGER NOT NULL DEFAULT 0,
    scroll_amount_y INTEGER NOT NULL DEFAULT 0,
    scroll_amount INTEGER NOT NULL,
    session_start_time INTEGER NOT NULL,
    session_end_time INTEGER NOT NULL,
    date_string TEXT NOT NULL,
    data_type TEXT NOT NULL,
    session_end_reason TEXT NOT NULL,
    PRIMARY KEY (package_name, date_string, session_start_time)
);

CREATE TABLE IF NOT EXISTS daily_app_usage (
    package_name TEXT NOT NULL,
    date_string TEXT NOT NULL,
    usage_time_millis INTEGER NOT NULL,
    active_time_millis INTEGER NOT NULL DEFAULT 0,
    app_open_count INTEGER NOT NULL DEFAULT 0,
    notification_count INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (package_name, date_string)
);

CREATE TABLE IF NOT EXISTS daily_device_summary (
    date_string TEXT PRIMARY KEY,
    total_usage_time_millis INTEGER NOT NULL DEFAULT 0,
    total_unlocked_duration_millis INTEGER NOT NULL DEFAULT 0,
    total_unlock_count INTEGER NOT NULL DEFAULT 0,
    intentional_unlock_count INTEGER NOT NULL DEFAULT 0,
    glance_unlock_count INTEGER NOT NULL DEFAULT 0,
    total_notification_count INTEGER NOT NULL DEFAULT 0,
    total_app_opens INTEGER NOT NULL DEFAULT 0,
    first_unlock_timestamp_utc INTEGER,
    last_unlock_timestamp_utc INTEGER
);

CREATE TABLE IF NOT EXISTS unlock_sessions (
    unlock_timestamp INTEGER NOT NULL,
    lock_timestamp INTEGER,
    duration_millis INTEGER,
    date_string TEXT NOT NULL,
    first_app_package_name TEXT,
    triggering_notification_package_name TEXT,
    unlock_event_type TEXT NOT NULL,
    session_type TEXT,
    session_end_reason TEXT,
    is_compulsive INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (date_string, unlock_timestamp)
);

CREATE TABLE IF NOT EXISTS daily_insights (
    date_string TEXT NOT NULL,
    insight_key TEXT NOT NULL,
    string_value TEXT,
    long_value INTEGER,
    double_value REAL,
    PRIMARY KEY (date_string, insight_key)
);

CREATE INDEX IF NOT EXISTS idx_raw_events_timestamp ON raw_events(timestamp_ms);
CREATE INDEX IF NOT EXISTS idx_raw_events_date ON raw_events(local_date_string);
CREATE INDEX IF NOT EXISTS idx_scroll_sessions_date ON scroll_sessions(date_string);
CREATE INDEX IF NOT EXISTS idx_daily_app_usage_date ON daily_app_usage(date_string);
CREATE INDEX IF NOT EXISTS idx_unlock_sessions_date ON unlock_sessions(date_string);
"""

logger = logging.getLogger(__name__)

EVENT_COLUMNS = (
    "package_name",
    "class_name",
    "event_type",
    "timestamp_ms",
    "local_date_string",
    "source",
    "scroll_delta_x",
    "scroll_delta_y",
    "value",
)

# SQLite's default limit is 999 bound parameters per statement.
BATCH_SIZE = 500

M = TypeVar("M", bound=BaseModel)


def _row_to_event(row: sqlite3.Row) -> RawEvent:
    return RawEvent.model_validate({column: row[column] for column in EVENT_COLUMNS})


def _insert_sql(table: str, columns: Iterable[str], verb: str = "INSERT OR REPLACE") -> str:
    columns = list(columns)
    placeholders = ", ".join("?" * len(columns))
    return f"{verb} INTO {table} ({', '.join(columns)}) VALUES ({placeholders})"


def _record_params(record: BaseModel) -> tuple[Any, ...]:
    return tuple(record.model_dump(mode="json").values())


class EventStore:
    """SQLite-backed event store.

    Not thread-safe. Each thread should have its own EventStore instance.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self._init_schema()

    def __enter__(self) -> "EventStore":
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object) -> None:
        self.close()

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()

    def _init_schema(self) -> None:
        """Initialize database schema."""
        self._conn.executescript(SCHEMA)
        self._conn.commit()

    @classmethod
    def open(cls, path: Path) -> EventStore:
        """Open or create a database at the given path."""
        path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(path)
        conn.row_factory = sqlite3.Row
        return cls(conn)

    @classmethod
    def open_in_memory(cls) -> EventStore:
        """Create an in-memory database for testing."""
        conn = sqlite3.connect(":memory:")
        conn.row_factory = sqlite3.Row
        return cls(conn)

    # Raw events

    def insert_event(self, event: RawEvent) -> bool:
        """Insert an event into the store.

        Uses INSERT OR IGNORE for idempotent inserts (same ID = no-op).

        Returns:
            True if the event was inserted, False if it already existed.
        """
        cursor = self._conn.execute(
            _insert_sql("raw_events", ("id",) + EVENT_COLUMNS, verb="INSERT OR IGNORE"),
            (
                event.compute_id(),
                event.package_name,
                event.class_name,
                event.event_type.value,
                event.timestamp_ms,
                event.local_date_string,
                event.source,
                event.scroll_delta_x,
                event.scroll_delta_y,
                event.value,
            ),
        )
        self._conn.commit()
        return cursor.rowcount > 0

    def get_events(
        self,
        *,
        start_ms: int | None = None,
        end_ms: int | None = None,
        event_type: str | None = None,
        limit: int | None = None,
    ) -> list[RawEvent]:
        """Query events, optionally filtered by time range and type.

        Args:
            start_ms: Epoch milliseconds (inclusive lower bound)
            end_ms: Epoch milliseconds (exclusive upper bound)
            event_type: Filter by event type value
            limit: Maximum number of events to return

        Returns:
            Events ordered by timestamp, ties in insertion order.
        """
        query = f"SELECT {', '.join(EVENT_COLUMNS)} FROM raw_events WHERE 1=1"
        params: list[str | int] = []

        if start_ms is not None:
            query += " AND timestamp_ms >= ?"
            params.append(start_ms)
        if end_ms is not None:
            query += " AND timestamp_ms < ?"
            params.append(end_ms)
        if event_type is not None:
            query += " AND event_type = ?"
            params.append(event_type)

        query += " ORDER BY timestamp_ms ASC, rowid ASC"

        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        cursor = self._conn.execute(query, params)
        return [_row_to_event(row) for row in cursor.fetchall()]

    def get_events_for_date(self, date_string: str) -> list[RawEvent]:
        """Get all events the collector stamped with the given local date."""
        cursor = self._conn.execute(
            f"""
            SELECT {', '.join(EVENT_COLUMNS)} FROM raw_events
            WHERE local_date_string = ?
            ORDER BY timestamp_ms ASC, rowid ASC
            """,
            (date_string,),
        )
        return [_row_to_event(row) for row in cursor.fetchall()]

    def get_last_event_per_source(self) -> list[dict[str, Any]]:
        """Get the most recent event timestamp for each source.

        Returns list of dicts with keys: source, last_timestamp_ms, event_count.
        Ordered by last_timestamp_ms descending (most recent first).
        """
        cursor = self._conn.execute("""
            SELECT
                source,
                MAX(timestamp_ms) as last_timestamp_ms,
                COUNT(*) as event_count
            FROM raw_events
            GROUP BY source
            ORDER BY last_timestamp_ms DESC
        """)
        return [dict(row) for row in cursor.fetchall()]

    # Derived records

    def insert_scroll_sessions(self, sessions: list[ScrollSessionRecord]) -> None:
        """Upsert scroll sessions in one transaction.

        Keyed on (package, date, start), so rewriting a session that was
        later extended by a merge replaces the earlier row.
        """
        if not sessions:
            return
        sql = _insert_sql("scroll_sessions", ScrollSessionRecord.model_fields)
        with self._conn:
            self._conn.executemany(sql, [_record_params(s) for s in sessions])
        logger.debug(f"Wrote {len(sessions)} scroll sessions")

    def replace_day(self, result: DailyProcessingResult) -> None:
        """Atomically replace every derived row for result.date_string.

        Deletes and inserts happen inside one transaction, so readers see
        either the previous day's rows or the new ones.
        """
        date_string = result.date_string
        with self._conn:
            for table in (
                "scroll_sessions",
                "daily_app_usage",
                "daily_device_summary",
                "unlock_sessions",
                "daily_insights",
            ):
                self._conn.execute(f"DELETE FROM {table} WHERE date_string = ?", (date_string,))

            self._conn.executemany(
                _insert_sql("scroll_sessions", ScrollSessionRecord.model_fields),
                [_record_params(s) for s in result.scroll_sessions],
            )
            self._conn.executemany(
                _insert_sql("daily_app_usage", DailyAppUsageRecord.model_fields),
                [_record_params(r) for r in result.app_usage],
            )
            self._conn.execute(
                _insert_sql("daily_device_summary", DailyDeviceSummary.model_fields),
                _record_params(result.device_summary),
            )
            self._conn.executemany(
                _insert_sql("unlock_sessions", UnlockSessionRecord.model_fields),
                [_record_params(u) for u in result.unlock_sessions],
            )
            self._conn.executemany(
                _insert_sql("daily_insights", DailyInsight.model_fields),
                [_record_params(i) for i in result.insights],
            )
        logger.info(
            f"Replaced derived data for {date_string}: "
            f"{len(result.scroll_sessions)} scroll sessions, "
            f"{len(result.app_usage)} app usage rows, "
            f"{len(result.unlock_sessions)} unlock sessions, "
            f"{len(result.insights)} insights"
        )

    def _select(self, model: type[M], table: str, where: str, params: Iterable[Any], order_by: str) -> list[M]:
        columns = ", ".join(model.model_fields)
        cursor = self._conn.execute(
            f"SELECT {columns} FROM {table} WHERE {where} ORDER BY {order_by}", list(params)
        )
        return [model.model_validate(dict(row)) for row in cursor.fetchall()]

    def get_scroll_sessions(self, date_string: str) -> list[ScrollSessionRecord]:
        return self._select(
            ScrollSessionRecord, "scroll_sessions", "date_string = ?", (date_string,),
            "session_start_time, package_name",
        )

    def get_scroll_sessions_in_range(self, start_date: str, end_date: str) -> list[ScrollSessionRecord]:
        """Scroll sessions with start_date <= date_string <= end_date."""
        return self._select(
            ScrollSessionRecord, "scroll_sessions", "date_string BETWEEN ? AND ?",
            (start_date, end_date), "session_start_time, package_name",
        )

    def get_app_usage(self, date_string: str) -> list[DailyAppUsageRecord]:
        return self._select(
            DailyAppUsageRecord, "daily_app_usage", "date_string = ?", (date_string,),
            "usage_time_millis DESC, package_name",
        )

    def get_app_usage_in_range(self, start_date: str, end_date: str) -> list[DailyAppUsageRecord]:
        return self._select(
            DailyAppUsageRecord, "daily_app_usage", "date_string BETWEEN ? AND ?",
            (start_date, end_date), "date_string, usage_time_millis DESC, package_name",
        )

    def get_app_usage_for_package(
        self, package_name: str, date_strings: list[str]
    ) -> list[DailyAppUsageRecord]:
        """Usage rows for one package on the given dates.

        Uses batching (500 dates per query) to stay under SQLite's 999-parameter limit.
        """
        results: list[DailyAppUsageRecord] = []
        for i in range(0, len(date_strings), BATCH_SIZE):
            batch = date_strings[i : i + BATCH_SIZE]
            placeholders = ",".join("?" * len(batch))
            results.extend(self._select(
                DailyAppUsageRecord, "daily_app_usage",
                f"package_name = ? AND date_string IN ({placeholders})",
                [package_name] + batch, "date_string",
            ))
        results.sort(key=lambda r: r.date_string)
        return results

    def get_scroll_sessions_for_package(
        self, package_name: str, date_strings: list[str]
    ) -> list[ScrollSessionRecord]:
        """Scroll sessions for one package on the given dates, batched like get_app_usage_for_package."""
        results: list[ScrollSessionRecord] = []
        for i in range(0, len(date_strings), BATCH_SIZE):
            batch = date_strings[i : i + BATCH_SIZE]
            placeholders = ",".join("?" * len(batch))
            results.extend(self._select(
                ScrollSessionRecord, "scroll_sessions",
                f"package_name = ? AND date_string IN ({placeholders})",
                [package_name] + batch, "session_start_time",
            ))
        results.sort(key=lambda r: r.session_start_time)
        return results

    def get_device_summary(self, date_string: str) -> DailyDeviceSummary | None:
        rows = self._select(
            DailyDeviceSummary, "daily_device_summary", "date_string = ?", (date_string,), "date_string",
        )
        return rows[0] if rows else None

    def get_device_summaries_in_range(self, start_date: str, end_date: str) -> list[DailyDeviceSummary]:
        return self._select(
            DailyDeviceSummary, "daily_device_summary", "date_string BETWEEN ? AND ?",
            (start_date, end_date), "date_string",
        )

    def get_unlock_sessions(self, date_string: str) -> list[UnlockSessionRecord]:
        return self._select(
            UnlockSessionRecord, "unlock_sessions", "date_string = ?", (date_string,), "unlock_timestamp",
        )

    def get_insights(self, date_string: str) -> list[DailyInsight]:
        return self._select(
            DailyInsight, "daily_insights", "date_string = ?", (date_string,), "insight_key",
        )
