"""Live scroll session state machine.

Tracks the foreground app and its accumulated scroll as events arrive,
finalizes sessions into ScrollSessionRecords (split at local midnight), and
keeps a debounced draft on disk so a session interrupted by process death
can be recovered on the next start.

All mutating calls are expected from a single thread (see LiveTracker). The
lock only guards the snapshot read by the draft-save timer thread.
"""

from __future__ import annotations

import logging
import threading
from datetime import tzinfo
from typing import Any, Callable, Protocol

from scrolltrack.config import DEFAULT_THRESHOLDS, Thresholds
from scrolltrack.dates import end_of_day_ms, local_date_string, now_ms, start_of_day_ms
from scrolltrack.drafts import DraftStore, DraftStoreError
from scrolltrack.models import DataType, ScrollSessionRecord, SessionDraft, SessionEndReason

logger = logging.getLogger(__name__)


class SessionSink(Protocol):
    def add_sessions(self, sessions: list[ScrollSessionRecord]) -> None: ...


def _apportion(amount: int, part_ms: int, total_ms: int) -> int:
    """round_half_up(amount * part_ms / total_ms) in exact integer arithmetic."""
    return (2 * amount * part_ms + total_ms) // (2 * total_ms)


class SessionManager:
    """Owns the in-progress live scroll session.

    Args:
        draft_store: Single-slot durable backing for the in-progress session.
        sink: Receives finalized records (normally a ScrollSessionAggregator).
        thresholds: Supplies draft_save_delay_ms.
        clock: Returns the current time in epoch milliseconds.
        timer_factory: Called as timer_factory(seconds, callback); must return
            an object with start() and cancel(). Defaults to threading.Timer.
        tz: Time zone for local dates. None means the machine's local zone.
    """

    def __init__(
        self,
        draft_store: DraftStore,
        sink: SessionSink,
        *,
        thresholds: Thresholds = DEFAULT_THRESHOLDS,
        clock: Callable[[], int] = now_ms,
        timer_factory: Callable[[float, Callable[[], None]], Any] = threading.Timer,
        tz: tzinfo | None = None,
    ) -> None:
        self._draft_store = draft_store
        self._sink = sink
        self._draft_save_delay_s = thresholds.draft_save_delay_ms / 1000
        self._clock = clock
        self._timer_factory = timer_factory
        self._tz = tz

        self._lock = threading.Lock()
        self._draft_timer: Any = None
        # Bumped on every reset so a timer scheduled for an earlier session
        # never writes a draft after that session was finalized.
        self._generation = 0
        # Sessions the sink refused, oldest first. While any remain, the draft
        # slot holds the oldest one and is not reused for the live session.
        self._undelivered: list[tuple[SessionDraft, list[ScrollSessionRecord]]] = []

        self._package: str | None = None
        self._activity: str | None = None
        self._scroll_x = 0
        self._scroll_y = 0
        self._start_time = 0
        self._is_measured = False

    @property
    def current_package(self) -> str | None:
        return self._package

    @property
    def current_activity(self) -> str | None:
        return self._activity

    @property
    def scroll_amount(self) -> int:
        return self._scroll_x + self._scroll_y

    @property
    def is_tracking(self) -> bool:
        return self._package is not None and self._start_time != 0

    @property
    def undelivered_count(self) -> int:
        return len(self._undelivered)

    def start_new_session(self, package_name: str, activity_name: str | None, start_time: int) -> None:
        """Switch tracking to package_name.

        A different package with accumulated scroll is finalized first with
        APP_SWITCH one millisecond before the new start. Activity changes
        within the same package keep accumulating.
        """
        self._deliver_undelivered()
        if self._package is not None and self._package != package_name and self.scroll_amount > 0:
            self.finalize(start_time - 1, SessionEndReason.APP_SWITCH)

        with self._lock:
            if self._package != package_name or self._start_time == 0:
                self._reset_locked()
                self._package = package_name
                self._start_time = start_time
                logger.info(f"New session: {package_name} ({activity_name}) at {start_time}")
            self._activity = activity_name

    def update_scroll(self, delta_y: int, is_measured: bool = False, delta_x: int = 0) -> None:
        """Add a scroll delta to the current session and schedule a draft save."""
        if not self.is_tracking:
            logger.warning(
                f"Scroll delta ({delta_x}, {delta_y}) received with no active session, ignoring"
            )
            return

        with self._lock:
            self._scroll_x += abs(delta_x)
            self._scroll_y += abs(delta_y)
            if is_measured:
                self._is_measured = True
        logger.debug(f"Scroll in {self._package}: +({delta_x}, {delta_y}), total {self.scroll_amount}")
        self._schedule_draft_save()

    def finalize(
        self,
        end_time: int,
        reason: SessionEndReason | str,
        reset_state: bool = True,
    ) -> list[ScrollSessionRecord]:
        """Close the current session and hand its record(s) to the sink.

        Returns:
            The records emitted (empty for a trivial session, or when the
            sink failed and the session was kept as a draft instead).
        """
        reason = reason.value if isinstance(reason, SessionEndReason) else reason
        self._deliver_undelivered()

        with self._lock:
            if self._package is None:
                return []
            draft = self._snapshot_locked(end_time)
            package = self._package
            start_time = self._start_time
            scroll_x, scroll_y = self._scroll_x, self._scroll_y
            data_type = DataType.MEASURED if self._is_measured else DataType.INFERRED
            if reset_state:
                self._reset_locked()

        if draft is None:
            logger.info(f"Skipping save for session ({package}) with no start time or zero scroll")
            if not self._undelivered:
                self._clear_draft()
            return []

        records = self._build_records(
            package, start_time, end_time, scroll_x, scroll_y, data_type, reason,
        )
        try:
            self._sink.add_sessions(records)
        except Exception as e:
            logger.error(f"Failed to hand off session for {package}, keeping draft: {e}")
            with self._lock:
                self._undelivered.append((draft, records))
                if len(self._undelivered) == 1:
                    self._write_draft(draft)
            return []

        if not self._undelivered:
            self._clear_draft()
        return records

    def recover_session(self) -> list[ScrollSessionRecord]:
        """Finalize a draft left behind by a previous process, if any.

        The draft's last_update_time is used as the end time.
        """
        if not self._deliver_undelivered():
            return []

        draft = self._draft_store.get()
        if draft is None:
            logger.info("No draft session to recover")
            return []

        logger.info(
            f"Recovering draft session for {draft.package_name}: "
            f"scroll={draft.scroll_amount}, start={draft.start_time}"
        )
        scroll_x = draft.scroll_amount_x
        scroll_y = draft.scroll_amount_y
        if scroll_x + scroll_y != draft.scroll_amount:
            # Drafts written before per-axis tracking only carry the total.
            scroll_x, scroll_y = 0, draft.scroll_amount

        with self._lock:
            self._reset_locked()
            self._package = draft.package_name
            self._activity = draft.activity_name
            self._scroll_x = scroll_x
            self._scroll_y = scroll_y
            self._start_time = draft.start_time
            self._is_measured = draft.is_measured

        return self.finalize(draft.last_update_time, SessionEndReason.RECOVERED_DRAFT)

    def handle_stop(
        self,
        reason: SessionEndReason | str,
        end_time: int | None = None,
    ) -> list[ScrollSessionRecord]:
        """Persist a draft synchronously, then finalize with reason."""
        reason = reason.value if isinstance(reason, SessionEndReason) else reason
        if end_time is None:
            end_time = self._clock()
        logger.info(f"Handling stop ({reason}), saving final session data")

        with self._lock:
            draft = self._snapshot_locked(end_time)
        if draft is not None and not self._undelivered:
            self._write_draft(draft)
        return self.finalize(end_time, reason)

    def shutdown(self) -> None:
        """Cancel any pending debounced draft save."""
        with self._lock:
            self._cancel_timer_locked()

    def _build_records(
        self,
        package: str,
        start_time: int,
        end_time: int,
        scroll_x: int,
        scroll_y: int,
        data_type: DataType,
        reason: str,
    ) -> list[ScrollSessionRecord]:
        effective_end = max(start_time, end_time)
        start_date = local_date_string(start_time, self._tz)
        end_date = local_date_string(effective_end, self._tz)

        def record(start: int, end: int, date_string: str, x: int, y: int) -> ScrollSessionRecord:
            return ScrollSessionRecord(
                package_name=package,
                scroll_amount_x=x,
                scroll_amount_y=y,
                scroll_amount=x + y,
                session_start_time=start,
                session_end_time=end,
                date_string=date_string,
                data_type=data_type,
                session_end_reason=reason,
            )

        if start_date == end_date:
            logger.info(
                f"Scroll session for {package} on {start_date}: "
                f"{scroll_x + scroll_y} over {effective_end - start_time} ms"
            )
            return [record(start_time, effective_end, start_date, scroll_x, scroll_y)]

        total = scroll_x + scroll_y
        start_day_end = end_of_day_ms(start_date, self._tz)
        total_duration = effective_end - start_time
        duration_in_start_day = start_day_end - start_time + 1

        first_total = min(_apportion(total, duration_in_start_day, total_duration), total)
        first_x = min(_apportion(scroll_x, duration_in_start_day, total_duration), scroll_x, first_total)
        first_y = first_total - first_x
        if first_y > scroll_y:
            first_y = scroll_y
            first_x = first_total - scroll_y

        logger.info(
            f"Session for {package} spans midnight ({start_date} to {end_date}), "
            f"splitting {total} into {first_total} + {total - first_total}"
        )
        fragments = [
            record(start_time, start_day_end, start_date, first_x, first_y),
            record(
                start_of_day_ms(end_date, self._tz), effective_end, end_date,
                scroll_x - first_x, scroll_y - first_y,
            ),
        ]
        return [fragment for fragment in fragments if fragment.scroll_amount > 0]

    def _snapshot_locked(self, last_update_time: int) -> SessionDraft | None:
        total = self._scroll_x + self._scroll_y
        if self._package is None or self._start_time == 0 or total == 0:
            return None
        return SessionDraft(
            package_name=self._package,
            activity_name=self._activity,
            scroll_amount=total,
            scroll_amount_x=self._scroll_x,
            scroll_amount_y=self._scroll_y,
            start_time=self._start_time,
            last_update_time=last_update_time,
            is_measured=self._is_measured,
        )

    def _schedule_draft_save(self) -> None:
        with self._lock:
            self._cancel_timer_locked()
            generation = self._generation
            timer = self._timer_factory(
                self._draft_save_delay_s, lambda: self._save_scheduled_draft(generation)
            )
            timer.daemon = True
            self._draft_timer = timer
            timer.start()

    def _save_scheduled_draft(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation or self._undelivered:
                return
            self._draft_timer = None
            draft = self._snapshot_locked(self._clock())
            if draft is None:
                return
            self._write_draft(draft)
        logger.debug(f"Draft saved for {draft.package_name}, amount {draft.scroll_amount}")

    def _deliver_undelivered(self) -> bool:
        """Retry sessions the sink refused earlier, oldest first.

        Returns:
            True when nothing is left undelivered.
        """
        while self._undelivered:
            draft, records = self._undelivered[0]
            try:
                self._sink.add_sessions(records)
            except Exception as e:
                logger.error(f"Sink still failing, keeping {len(self._undelivered)} sessions: {e}")
                return False

            logger.info(f"Delivered kept session for {draft.package_name} ({draft.scroll_amount})")
            with self._lock:
                self._undelivered.pop(0)
                if self._undelivered:
                    self._write_draft(self._undelivered[0][0])
                    continue
                current = self._snapshot_locked(self._clock())
                if current is not None:
                    self._write_draft(current)
                    continue
            self._clear_draft()
        return True

    def _write_draft(self, draft: SessionDraft) -> None:
        try:
            self._draft_store.save(draft)
        except DraftStoreError as e:
            logger.error(f"Draft save failed for {draft.package_name}: {e}")

    def _clear_draft(self) -> None:
        try:
            self._draft_store.clear()
        except DraftStoreError as e:
            logger.error(f"Draft clear failed: {e}")

    def _cancel_timer_locked(self) -> None:
        if self._draft_timer is not None:
            self._draft_timer.cancel()
            self._draft_timer = None

    def _reset_locked(self) -> None:
        self._cancel_timer_locked()
        self._generation += 1
        self._package = None
        self._activity = None
        self._scroll_x = 0
        self._scroll_y = 0
        self._start_time = 0
        self._is_measured = False
