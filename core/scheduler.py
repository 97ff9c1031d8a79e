"""
Cancellable periodic tasks.

Each PeriodicTask owns one daemon thread. The callback runs to completion
(or failure) before the next tick is scheduled, so ticks of the same task
never overlap. Exceptions raised by the callback are logged and the task
keeps running.
"""

import logging
import threading
import time
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class PeriodicTask:
    """
    Runs a callback every `interval` seconds on a background thread.

    Usage:
        task = PeriodicTask("poll", 1.0, tracker.tick)
        task.start()
        ...
        task.stop()
    """

    def __init__(
        self,
        name: str,
        interval: float,
        callback: Callable[[], None],
        run_immediately: bool = False,
    ):
        """
        Args:
            name: Label used for the thread name and log messages.
            interval: Seconds between tick starts.
            callback: Zero-argument callable invoked each tick.
            run_immediately: If True, the first tick fires on start instead of
                after one interval.
        """
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.name = name
        self.interval = interval
        self.callback = callback
        self.run_immediately = run_immediately
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.tick_count = 0
        self.error_count = 0

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the background thread. Starting a running task is a no-op."""
        if self.is_running:
            logger.debug(f"Task {self.name} already running")
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name=f"task-{self.name}", daemon=True)
        self._thread.start()
        logger.debug(f"Task {self.name} started (every {self.interval}s)")

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        """
        Stop the task and wait for an in-flight tick to finish.

        Safe to call from inside the callback itself; in that case the
        thread is not joined and exits after the current tick.
        """
        self._stop_event.set()
        thread = self._thread
        if thread is None:
            return
        if thread is not threading.current_thread():
            thread.join(timeout)
            if thread.is_alive():
                logger.warning(f"Task {self.name} did not stop within {timeout}s")
        self._thread = None
        logger.debug(f"Task {self.name} stopped after {self.tick_count} ticks")

    def _run(self) -> None:
        next_run = time.monotonic()
        if not self.run_immediately:
            next_run += self.interval
        while True:
            delay = max(0.0, next_run - time.monotonic())
            if self._stop_event.wait(delay):
                break
            self._run_once()
            next_run += self.interval
            # Skip missed slots instead of firing a burst after a slow tick
            now = time.monotonic()
            if next_run < now:
                next_run = now

    def _run_once(self) -> None:
        self.tick_count += 1
        try:
            self.callback()
        except Exception:
            self.error_count += 1
            logger.exception(f"Task {self.name} tick failed")
