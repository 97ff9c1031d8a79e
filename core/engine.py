"""
TrackingEngine - Orchestrates one background tracking run.

Owns the periodic work of `tracecli start`: the session poll, resource
sampling and optional browser history sync, plus an attached focus run.
Has no terminal dependencies; the CLI polls get_status() and renders.

Shutdown order (stop()):
    1. stop every periodic task
    2. flush the open session
    3. recompute today's aggregates
    4. stop an attached focus run (releases its lock, stores its record)
"""

import logging
import threading
from datetime import datetime
from typing import Callable, Dict, Optional

import config
from core.errors import PersistenceError
from tracking.browser import BrowserHistorySync
from tracking.resource_sampler import ResourceSampler
from tracking.session_tracker import SessionTracker

logger = logging.getLogger(__name__)


class TrackingEngine:
    """
    Core tracking engine.

    Handles:
    - Lifecycle of the SessionTracker, ResourceSampler and BrowserHistorySync
    - Ordered shutdown so no open session or focus record is lost
    - Status reporting for the presentation layer
    """

    def __init__(
        self,
        store,
        observer=None,
        tracker: SessionTracker = None,
        sampler: ResourceSampler = None,
        browser_sync: BrowserHistorySync = None,
        enable_browser_sync: bool = None,
        rules: Dict = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """
        Args:
            store: SessionStore shared by every component.
            observer: WindowObserver for the tracker (defaults to the platform detector).
            tracker: Prebuilt SessionTracker (built from store/observer when None).
            sampler: Prebuilt ResourceSampler (built from store when None).
            browser_sync: Prebuilt BrowserHistorySync.
            enable_browser_sync: Build a BrowserHistorySync when none is given
                (defaults to config.BROWSER_SYNC_ENABLED).
            rules: User categorization rules for the tracker.
            clock: Returns the current local time.
        """
        self.store = store
        self._clock = clock
        self.sampler = sampler or ResourceSampler(store=store)
        self.tracker = tracker or SessionTracker(store, observer=observer, sampler=self.sampler, rules=rules, clock=clock)

        if enable_browser_sync is None:
            enable_browser_sync = config.BROWSER_SYNC_ENABLED
        if browser_sync is None and enable_browser_sync:
            browser_sync = BrowserHistorySync(store, clock=clock)
        self.browser_sync = browser_sync

        self.focus = None
        self.is_running = False
        self.start_time: Optional[datetime] = None
        self._stop_lock = threading.Lock()

        # ---- Callbacks (set by the CLI) ----
        self.on_stopped: Optional[Callable[[Dict], None]] = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def attach_focus(self, focus) -> None:
        """Attach a started FocusEngine so shutdown also ends it."""
        self.focus = focus

    def start(self) -> Dict:
        """
        Start all periodic tasks.

        Returns:
            {"success": bool, "error": str | None}
        """
        if self.is_running:
            return {"success": False, "error": "Tracking already running"}

        self.start_time = self._clock()
        self.is_running = True
        self.sampler.start()
        self.tracker.start()
        if self.browser_sync is not None:
            self.browser_sync.start()

        logger.info("Tracking engine started")
        return {"success": True, "error": None}

    def stop(self) -> Dict:
        """
        Stop everything in order. Safe to call more than once.

        Returns:
            {"success": bool, "daily_stats": DailyAggregate | None,
             "focus_record": FocusSessionRecord | None}
        """
        with self._stop_lock:
            if not self.is_running:
                return {"success": False, "daily_stats": None, "focus_record": None}
            self.is_running = False

            # 1. Periodic tasks
            self.tracker.stop_polling()
            self.sampler.stop()
            if self.browser_sync is not None:
                self.browser_sync.stop()
            if self.focus is not None:
                self.focus.stop_ticking()

            # 2. Open session
            self.tracker.flush()

            # 3. Today's aggregates
            daily_stats = None
            try:
                daily_stats = self.store.recompute_aggregates(self._clock().date())
            except PersistenceError as e:
                logger.error(f"Failed to recompute today's aggregates: {e}")

            # 4. Focus run: release its lock and store its record
            focus_record = self.focus.stop() if self.focus is not None else None

        logger.info(
            f"Tracking engine stopped ({self.tracker.total_logged} sessions logged, "
            f"{self.tracker.total_switches} switches)"
        )
        result = {"success": True, "daily_stats": daily_stats, "focus_record": focus_record}
        self._notify_stopped(result)
        return result

    def get_status(self) -> Dict:
        """
        Get current engine status (polled by the CLI).

        Returns:
            dict with keys: is_running, elapsed_seconds, current_session,
            total_logged, total_switches, total_errors, system, focus.
        """
        elapsed = 0.0
        if self.is_running and self.start_time:
            elapsed = (self._clock() - self.start_time).total_seconds()

        return {
            "is_running": self.is_running,
            "elapsed_seconds": elapsed,
            "current_session": self.tracker.current,
            "total_logged": self.tracker.total_logged,
            "total_switches": self.tracker.total_switches,
            "total_errors": self.tracker.total_errors,
            "system": self.sampler.latest_info,
            "focus": self.focus.snapshot() if self.focus is not None else None,
        }

    # ------------------------------------------------------------------
    # Callback helpers
    # ------------------------------------------------------------------

    def _notify_stopped(self, result: Dict) -> None:
        if self.on_stopped:
            try:
                self.on_stopped(result)
            except Exception as e:
                logger.debug(f"on_stopped callback error: {e}")
