"""
Session Tracker - Turns foreground-window polling into session records.

Every poll compares the observed (app, title) with the open session:
- nothing open: open a session
- same window: keep it open (occasionally refreshing memory/CPU)
- different window: close and persist the old one, open a new one
- no window: nothing happens, the open session keeps running

Sessions shorter than the minimum duration are dropped when closed.
"""

import logging
import random
import threading
from datetime import datetime
from typing import Callable, Dict, List, Optional

import config
from core.errors import CapabilityUnavailable, PersistenceError
from core.scheduler import PeriodicTask
from tracking.browser import extract_search_from_title
from tracking.categorizer import categorize
from tracking.session import SearchRecord, Session

logger = logging.getLogger(__name__)


class SessionTracker:
    """
    Converts the window observer's polling stream into durable Sessions.

    The tracker exclusively owns the one open session. Callers see it only
    through `current`, which returns a copy.
    """

    def __init__(
        self,
        store,
        observer=None,
        sampler=None,
        poll_interval_ms: int = None,
        min_duration: float = None,
        rules: Optional[Dict[str, List[str]]] = None,
        clock: Callable[[], datetime] = datetime.now,
        refresh_probability: float = None,
        rng: Callable[[], float] = random.random,
    ):
        """
        Initialize the tracker.

        Args:
            store: SessionStore that receives closed sessions and searches.
            observer: WindowObserver (object with get_active_window(), or a
                callable returning WindowInfo or None). Defaults to the
                platform WindowDetector.
            sampler: Optional ResourceSampler for per-process memory/CPU.
            poll_interval_ms: Poll cadence in milliseconds.
            min_duration: Sessions shorter than this (seconds) are dropped.
            rules: User categorization rules passed to categorize().
            clock: Returns the current local time.
            refresh_probability: Chance per unchanged tick to refresh the
                open session's resource fields.
            rng: Returns a float in [0, 1), used with refresh_probability.
        """
        if observer is None:
            from screen.window_detector import WindowDetector
            observer = WindowDetector()

        self.store = store
        self.observer = observer
        self.sampler = sampler
        self.poll_interval_ms = poll_interval_ms or config.POLL_INTERVAL_MS
        self.min_duration = config.MIN_SESSION_SECONDS if min_duration is None else min_duration
        self.rules = rules
        self._clock = clock
        self.refresh_probability = (
            config.RESOURCE_REFRESH_PROBABILITY if refresh_probability is None else refresh_probability
        )
        self._rng = rng

        self._lock = threading.RLock()
        self._current: Optional[Session] = None
        self._task: Optional[PeriodicTask] = None

        self.total_logged = 0
        self.total_switches = 0
        self.total_errors = 0

    # --- Lifecycle ---

    def start(self) -> None:
        """Start polling on a background thread."""
        if self._task is None:
            self._task = PeriodicTask("session-poll", self.poll_interval_ms / 1000.0, self.tick)
        self._task.start()
        logger.info(f"Session tracking started (poll every {self.poll_interval_ms}ms)")

    def stop_polling(self) -> None:
        """Stop the poll task without closing the open session."""
        if self._task is not None:
            self._task.stop()

    def stop(self) -> None:
        """Stop polling, then close and persist the open session."""
        self.stop_polling()
        self.flush()
        logger.info(f"Session tracking stopped ({self.total_logged} logged, {self.total_switches} switches)")

    @property
    def is_running(self) -> bool:
        return self._task is not None and self._task.is_running

    # --- Polling ---

    def _observe(self):
        get_window = getattr(self.observer, "get_active_window", self.observer)
        return get_window()

    def tick(self) -> None:
        """Process one observation. Failures are logged and counted, never raised."""
        try:
            window = self._observe()
        except CapabilityUnavailable as e:
            self.total_errors += 1
            logger.warning(f"Window observation unavailable: {e}")
            return
        except Exception as e:
            self.total_errors += 1
            logger.error(f"Window observation failed: {e}")
            return

        if window is None:
            return

        now = self._clock()
        with self._lock:
            current = self._current
            if current is None:
                self._current = self._open(window, now)
                return

            if current.same_window(window.app_name, window.window_title):
                if self.sampler is not None and self._rng() < self.refresh_probability:
                    self._refresh_resources(current, window.pid or current.pid)
                return

            self._close_current(now)
            self._current = self._open(window, now)
            self.total_switches += 1

    def _open(self, window, now: datetime) -> Session:
        session = Session(
            app_name=window.app_name,
            window_title=window.window_title,
            start_time=now,
            category=categorize(window.app_name, window.window_title, self.rules),
            pid=window.pid,
        )
        self._refresh_resources(session, window.pid)
        self._record_title_search(window.app_name, window.window_title, now)
        logger.debug(f"Session opened: {session.app_name} - {session.window_title[:60]} [{session.category}]")
        return session

    def _refresh_resources(self, session: Session, pid: int) -> None:
        if self.sampler is None or not pid:
            return
        info = self.sampler.get_process_resource(pid)
        if info is not None:
            session.memory_mb = info.memory_mb
            session.cpu_percent = info.cpu_percent

    def _record_title_search(self, app_name: str, window_title: str, now: datetime) -> None:
        found = extract_search_from_title(window_title, app_name)
        if found is None:
            return
        browser, query, source = found
        try:
            self.store.insert_search(SearchRecord(timestamp=now, browser=browser, query=query, source=source))
        except PersistenceError as e:
            self.total_errors += 1
            logger.error(f"Failed to store search '{query}': {e}")

    # --- Closing ---

    def _close_current(self, now: datetime) -> Optional[Session]:
        """Close the open session; persist it if long enough. Caller holds the lock."""
        current = self._current
        if current is None:
            return None
        self._current = None

        closed = current.close(now)
        if closed.duration_seconds < self.min_duration:
            logger.debug(f"Dropped short session: {closed.app_name} ({closed.duration_seconds:.1f}s)")
            return None

        try:
            self.store.insert_session(closed)
        except PersistenceError as e:
            self.total_errors += 1
            logger.error(f"Failed to store session for {closed.app_name}: {e}")
            return None

        self.total_logged += 1
        return closed

    def flush(self, now: datetime = None) -> Optional[Session]:
        """
        Close the open session now.

        Returns:
            The persisted session, or None if nothing was open, the session
            was too short, or storing it failed.
        """
        with self._lock:
            return self._close_current(now or self._clock())

    @property
    def current(self) -> Optional[Session]:
        """Copy of the open session with its live duration, or None."""
        with self._lock:
            if self._current is None:
                return None
            return self._current.snapshot(self._clock())
