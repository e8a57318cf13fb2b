"""Live event intake: one worker thread drives the session state machine."""

from __future__ import annotations

import logging
import queue
import threading

from scrolltrack.aggregator import ScrollSessionAggregator
from scrolltrack.models import SCROLL_EVENT_TYPES, EventType, RawEvent, SessionEndReason
from scrolltrack.session_manager import SessionManager

logger = logging.getLogger(__name__)

_STOP = object()


class LiveTracker:
    """Serializes live events onto the SessionManager.

    submit() may be called from any thread. Events are handled in submission
    order by a single worker, which is the only caller of SessionManager
    mutations while the tracker runs.

    Args:
        session_manager: The live state machine.
        aggregator: Sink the session manager writes to; started and stopped
            with the tracker.
        hidden_packages: Packages whose events are ignored.
    """

    def __init__(
        self,
        session_manager: SessionManager,
        aggregator: ScrollSessionAggregator,
        hidden_packages: set[str] | frozenset[str] = frozenset(),
    ) -> None:
        self.session_manager = session_manager
        self.aggregator = aggregator
        self.hidden_packages = hidden_packages

        self._queue: queue.Queue[object] = queue.Queue()
        self._thread: threading.Thread | None = None
        self.last_event_ms: int | None = None
        self.handled_count = 0

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Recover any leftover draft, then start the aggregator and worker."""
        if self.is_running:
            logger.warning("Tracker already running")
            return

        self.session_manager.recover_session()
        self.aggregator.start()
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()
        logger.info("Live tracker started")

    def submit(self, event: RawEvent) -> None:
        self._queue.put(event)

    def join(self) -> None:
        """Block until every submitted event has been handled."""
        self._queue.join()

    def stop(
        self,
        reason: SessionEndReason = SessionEndReason.SERVICE_DESTROY,
        end_time: int | None = None,
    ) -> None:
        """Drain the queue, finalize the open session, and flush.

        Args:
            reason: End reason for the session still open at shutdown.
            end_time: Finalize time; the current time when None.
        """
        if self._thread is not None:
            self._queue.put(_STOP)
            self._thread.join()
            self._thread = None

        self.session_manager.handle_stop(reason, end_time)
        self.session_manager.shutdown()
        self.aggregator.stop()
        logger.info(f"Live tracker stopped after {self.handled_count} events")

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                self.handle_event(item)  # type: ignore[arg-type]
            except Exception as e:
                logger.error(f"Error handling live event: {e}")
            finally:
                self._queue.task_done()

    def handle_event(self, event: RawEvent) -> None:
        """Apply one event to the session manager."""
        if event.package_name in self.hidden_packages:
            return

        self.last_event_ms = event.timestamp_ms
        self.handled_count += 1
        manager = self.session_manager

        if event.event_type == EventType.ACTIVITY_RESUMED:
            manager.start_new_session(event.package_name, event.class_name, event.timestamp_ms)

        elif event.event_type in SCROLL_EVENT_TYPES:
            if manager.current_package != event.package_name:
                manager.start_new_session(event.package_name, event.class_name, event.timestamp_ms)
            delta_x, delta_y = event.scroll_deltas()
            manager.update_scroll(delta_y, is_measured=event.is_measured_scroll, delta_x=delta_x)

        elif event.event_type == EventType.SCREEN_NON_INTERACTIVE:
            manager.finalize(event.timestamp_ms, SessionEndReason.SCREEN_OFF)

        elif event.event_type == EventType.SERVICE_STOPPED:
            manager.handle_stop(SessionEndReason.SERVICE_INTERRUPT, event.timestamp_ms)
