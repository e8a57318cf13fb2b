"""Buffers finalized live scroll sessions and flushes them in merged batches."""

from __future__ import annotations

import logging
import threading
from typing import Callable

from scrolltrack.config import DEFAULT_THRESHOLDS, Thresholds
from scrolltrack.models import DataType, ScrollSessionRecord

logger = logging.getLogger(__name__)

SessionWriter = Callable[[list[ScrollSessionRecord]], None]


def _combine(current: ScrollSessionRecord, following: ScrollSessionRecord) -> ScrollSessionRecord:
    measured = DataType.MEASURED in (current.data_type, following.data_type)
    return current.model_copy(update={
        "scroll_amount_x": current.scroll_amount_x + following.scroll_amount_x,
        "scroll_amount_y": current.scroll_amount_y + following.scroll_amount_y,
        "scroll_amount": current.scroll_amount + following.scroll_amount,
        "session_end_time": max(current.session_end_time, following.session_end_time),
        "data_type": DataType.MEASURED if measured else DataType.INFERRED,
        "session_end_reason": following.session_end_reason,
    })


def merge_sessions(sessions: list[ScrollSessionRecord], merge_gap_ms: int) -> list[ScrollSessionRecord]:
    """Coalesce same-package sessions separated by at most merge_gap_ms.

    Sessions on different date strings are never merged. The result is
    ordered by start time, then package name.
    """
    groups: dict[tuple[str, str], list[ScrollSessionRecord]] = {}
    for session in sessions:
        groups.setdefault((session.package_name, session.date_string), []).append(session)

    merged: list[ScrollSessionRecord] = []
    for group in groups.values():
        group.sort(key=lambda s: (s.session_start_time, s.session_end_time))
        current = group[0]
        for following in group[1:]:
            if following.session_start_time - current.session_end_time <= merge_gap_ms:
                current = _combine(current, following)
            else:
                merged.append(current)
                current = following
        merged.append(current)

    merged.sort(key=lambda s: (s.session_start_time, s.package_name))
    return merged


class ScrollSessionAggregator:
    """Collects sessions from the SessionManager and writes them periodically.

    The writer receives one merged batch per flush. If it raises, the whole
    drained batch goes back into the buffer and is retried on the next flush.
    The last written session per package is remembered so a session that
    arrives in a later batch within the merge gap extends the stored row
    (same package, date and start) instead of producing a second one.

    Args:
        writer: Called with the merged sessions of each flush.
        thresholds: Supplies session_merge_gap_ms and flush_interval_ms.
    """

    def __init__(self, writer: SessionWriter, *, thresholds: Thresholds = DEFAULT_THRESHOLDS) -> None:
        self._writer = writer
        self._merge_gap_ms = thresholds.session_merge_gap_ms
        self._flush_interval_s = thresholds.flush_interval_ms / 1000

        self._lock = threading.Lock()
        self._flush_lock = threading.Lock()
        self._buffer: list[ScrollSessionRecord] = []
        self._last_written: dict[str, ScrollSessionRecord] = {}

        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._buffer)

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def add_session(self, session: ScrollSessionRecord) -> None:
        self.add_sessions([session])

    def add_sessions(self, sessions: list[ScrollSessionRecord]) -> None:
        """Buffer sessions as one unit, e.g. both fragments of a midnight split."""
        with self._lock:
            self._buffer.extend(sessions)
        for session in sessions:
            logger.debug(f"Buffered session for {session.package_name} ({session.scroll_amount})")

    def flush(self) -> int:
        """Drain the buffer, merge, and hand the result to the writer.

        Returns:
            Number of records written (0 when empty or on failure).
        """
        with self._flush_lock:
            with self._lock:
                drained = self._buffer
                self._buffer = []

            if not drained:
                logger.debug("Flush requested with empty buffer")
                return 0

            tails = [
                self._last_written[package]
                for package in {s.package_name for s in drained}
                if package in self._last_written
            ]
            merged = merge_sessions(tails + drained, self._merge_gap_ms)
            unchanged = {id(t) for t in tails}
            to_write = [s for s in merged if id(s) not in unchanged]

            try:
                self._writer(to_write)
            except Exception as e:
                logger.error(f"Flush of {len(drained)} sessions failed, re-buffering: {e}")
                with self._lock:
                    self._buffer = drained + self._buffer
                return 0

            for session in to_write:
                previous = self._last_written.get(session.package_name)
                if previous is None or session.session_start_time >= previous.session_start_time:
                    self._last_written[session.package_name] = session

            logger.info(f"Flushed {len(drained)} sessions as {len(to_write)} records")
            return len(to_write)

    def start(self) -> None:
        """Start the periodic flush thread."""
        if self.is_running:
            logger.warning("Aggregator flush thread already running")
            return

        self._stop_event.clear()
        self._thread = threading.Thread(target=self._flush_loop, daemon=True)
        self._thread.start()
        logger.info(f"Aggregator started (flush every {self._flush_interval_s:.0f}s)")

    def stop(self, *, final_flush: bool = True) -> None:
        """Stop the flush thread, letting an in-flight flush finish."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=self._flush_interval_s + 5.0)
            self._thread = None
        if final_flush:
            self.flush()
        logger.info("Aggregator stopped")

    def _flush_loop(self) -> None:
        while not self._stop_event.wait(self._flush_interval_s):
            try:
                self.flush()
            except Exception as e:
                logger.error(f"Error in periodic flush: {e}")
