"""
Tests for tracking/session_tracker.py - polling stream to session records.
"""

import sys
import tempfile
import unittest
from datetime import datetime, timedelta
from pathlib import Path
from unittest.mock import MagicMock

# Ensure project root is on the path
sys.path.insert(0, str(Path(__file__).parent.parent))

from core.errors import CapabilityUnavailable, PersistenceError
from screen.window_detector import WindowInfo
from tracking.resource_sampler import ProcessInfo
from tracking.session_tracker import SessionTracker
from tracking.store import SessionStore


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: datetime = datetime(2024, 5, 1, 9, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class ScriptedObserver:
    """Returns whatever window is currently set."""

    def __init__(self):
        self.window = None

    def get_active_window(self):
        return self.window

    def show(self, app: str, title: str, pid: int = 100):
        self.window = WindowInfo(app_name=app, window_title=title, pid=pid)


class TestSessionBoundaries(unittest.TestCase):
    """Window changes open and close sessions."""

    def setUp(self):
        self.clock = FakeClock()
        self.observer = ScriptedObserver()
        self.store = MagicMock()
        self.tracker = SessionTracker(self.store, observer=self.observer, min_duration=2, clock=self.clock)

    def _stored(self):
        return [c.args[0] for c in self.store.insert_session.call_args_list]

    def test_first_observation_opens_session(self):
        self.observer.show("code.exe", "main.py - project")
        self.tracker.tick()

        current = self.tracker.current
        self.assertIsNotNone(current)
        self.assertEqual(current.app_name, "code.exe")
        self.assertEqual(current.category, "Development")
        self.assertEqual(current.start_time, self.clock.now)
        self.assertEqual(self.tracker.total_switches, 0)

    def test_short_session_dropped_long_session_kept(self):
        """A for 1s then B for 10s with min_duration=2 stores only B."""
        self.observer.show("a.exe", "A")
        self.tracker.tick()
        self.clock.advance(1)
        self.observer.show("b.exe", "B")
        self.tracker.tick()
        self.clock.advance(10)
        self.tracker.flush()

        stored = self._stored()
        self.assertEqual(len(stored), 1)
        self.assertEqual(stored[0].app_name, "b.exe")
        self.assertAlmostEqual(stored[0].duration_seconds, 10.0)
        self.assertEqual(self.tracker.total_logged, 1)
        self.assertEqual(self.tracker.total_switches, 1)

    def test_identical_window_is_not_a_boundary(self):
        self.observer.show("code.exe", "main.py")
        for _ in range(5):
            self.tracker.tick()
            self.clock.advance(1)

        self.store.insert_session.assert_not_called()
        self.assertEqual(self.tracker.total_switches, 0)
        self.assertAlmostEqual(self.tracker.current.duration_seconds, 5.0)

    def test_title_change_in_same_app_is_a_boundary(self):
        self.observer.show("code.exe", "main.py")
        self.tracker.tick()
        self.clock.advance(3)
        self.observer.show("code.exe", "utils.py")
        self.tracker.tick()

        stored = self._stored()
        self.assertEqual(len(stored), 1)
        self.assertEqual(stored[0].window_title, "main.py")
        self.assertEqual(self.tracker.current.window_title, "utils.py")

    def test_no_window_keeps_session_open(self):
        self.observer.show("code.exe", "main.py")
        self.tracker.tick()
        self.observer.window = None
        self.clock.advance(30)
        self.tracker.tick()

        self.store.insert_session.assert_not_called()
        self.assertEqual(self.tracker.current.app_name, "code.exe")
        self.assertAlmostEqual(self.tracker.current.duration_seconds, 30.0)

    def test_flush_with_nothing_open(self):
        self.assertIsNone(self.tracker.flush())
        self.store.insert_session.assert_not_called()

    def test_current_is_a_copy(self):
        self.observer.show("code.exe", "main.py")
        self.tracker.tick()
        snapshot = self.tracker.current
        snapshot.app_name = "changed"
        self.assertEqual(self.tracker.current.app_name, "code.exe")

    def test_stop_flushes_open_session(self):
        self.observer.show("code.exe", "main.py")
        self.tracker.tick()
        self.clock.advance(5)
        self.tracker.stop()

        self.assertEqual(len(self._stored()), 1)
        self.assertIsNone(self.tracker.current)


class TestFailureHandling(unittest.TestCase):
    """Failures are logged and counted, and the next tick still works."""

    def setUp(self):
        self.clock = FakeClock()
        self.store = MagicMock()

    def test_observer_failure_counted(self):
        observer = MagicMock()
        observer.get_active_window.side_effect = CapabilityUnavailable("no display")
        tracker = SessionTracker(self.store, observer=observer, clock=self.clock)

        tracker.tick()
        tracker.tick()

        self.assertEqual(tracker.total_errors, 2)
        self.assertIsNone(tracker.current)

    def test_unexpected_observer_error_counted(self):
        observer = MagicMock()
        observer.get_active_window.side_effect = RuntimeError("boom")
        tracker = SessionTracker(self.store, observer=observer, clock=self.clock)

        tracker.tick()
        self.assertEqual(tracker.total_errors, 1)

    def test_persistence_failure_counted_and_session_dropped(self):
        observer = ScriptedObserver()
        self.store.insert_session.side_effect = PersistenceError("disk full")
        tracker = SessionTracker(self.store, observer=observer, min_duration=2, clock=self.clock)

        observer.show("code.exe", "main.py")
        tracker.tick()
        self.clock.advance(5)
        observer.show("slack.exe", "general")
        tracker.tick()

        self.assertEqual(tracker.total_errors, 1)
        self.assertEqual(tracker.total_logged, 0)
        self.assertEqual(tracker.current.app_name, "slack.exe")

    def test_callable_observer_supported(self):
        window = WindowInfo(app_name="code.exe", window_title="x")
        tracker = SessionTracker(self.store, observer=lambda: window, clock=self.clock)
        tracker.tick()
        self.assertEqual(tracker.current.app_name, "code.exe")


class TestResourcesAndSearches(unittest.TestCase):
    """Resource fields come from the sampler; search titles are recorded."""

    def setUp(self):
        self.clock = FakeClock()
        self.observer = ScriptedObserver()
        self.store = MagicMock()
        self.sampler = MagicMock()
        self.sampler.get_process_resource.return_value = ProcessInfo(
            pid=100, app_name="code.exe", memory_mb=250.0, cpu_percent=3.5
        )

    def test_open_reads_resources(self):
        tracker = SessionTracker(self.store, observer=self.observer, sampler=self.sampler, clock=self.clock)
        self.observer.show("code.exe", "main.py", pid=100)
        tracker.tick()

        self.sampler.get_process_resource.assert_called_once_with(100)
        self.assertEqual(tracker.current.memory_mb, 250.0)
        self.assertEqual(tracker.current.cpu_percent, 3.5)

    def test_refresh_on_unchanged_tick_when_rng_hits(self):
        tracker = SessionTracker(
            self.store, observer=self.observer, sampler=self.sampler, clock=self.clock,
            refresh_probability=0.1, rng=lambda: 0.05,
        )
        self.observer.show("code.exe", "main.py", pid=100)
        tracker.tick()
        self.sampler.get_process_resource.return_value = ProcessInfo(
            pid=100, app_name="code.exe", memory_mb=300.0, cpu_percent=9.0
        )
        tracker.tick()

        self.assertEqual(self.sampler.get_process_resource.call_count, 2)
        self.assertEqual(tracker.current.memory_mb, 300.0)

    def test_no_refresh_when_rng_misses(self):
        tracker = SessionTracker(
            self.store, observer=self.observer, sampler=self.sampler, clock=self.clock,
            refresh_probability=0.1, rng=lambda: 0.5,
        )
        self.observer.show("code.exe", "main.py", pid=100)
        tracker.tick()
        tracker.tick()
        tracker.tick()

        self.assertEqual(self.sampler.get_process_resource.call_count, 1)

    def test_search_title_recorded_on_open(self):
        tracker = SessionTracker(self.store, observer=self.observer, clock=self.clock)
        self.observer.show("chrome.exe", "python dataclasses - Google Search - Google Chrome")
        tracker.tick()

        self.store.insert_search.assert_called_once()
        search = self.store.insert_search.call_args.args[0]
        self.assertEqual(search.query, "python dataclasses")
        self.assertEqual(search.source, "Google")
        self.assertEqual(search.browser, "chrome")

    def test_search_only_recorded_once_per_session(self):
        tracker = SessionTracker(self.store, observer=self.observer, clock=self.clock)
        self.observer.show("chrome.exe", "rust lifetimes - Google Search - Google Chrome")
        tracker.tick()
        tracker.tick()
        self.assertEqual(self.store.insert_search.call_count, 1)


class TestTrackerWithStore(unittest.TestCase):
    """Tracker writing into a real SQLite store."""

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.store = SessionStore(Path(self.tmpdir.name) / "trace.db")

    def tearDown(self):
        self.store.close()
        self.tmpdir.cleanup()

    def test_sessions_persisted_and_aggregated(self):
        clock = FakeClock()
        observer = ScriptedObserver()
        tracker = SessionTracker(self.store, observer=observer, min_duration=2, clock=clock)

        for app, title, seconds in [
            ("code.exe", "main.py", 60),
            ("a.exe", "blip", 1),
            ("slack.exe", "general", 30),
        ]:
            observer.show(app, title)
            tracker.tick()
            clock.advance(seconds)
        tracker.flush()

        sessions = self.store.sessions_for_date("2024-05-01")
        self.assertEqual([s.app_name for s in sessions], ["code.exe", "slack.exe"])

        stats = self.store.recompute_daily_stats("2024-05-01")
        self.assertEqual(stats.session_count, 2)
        self.assertAlmostEqual(stats.total_seconds, 90.0)
        self.assertAlmostEqual(stats.productive_seconds, 60.0)
        self.assertEqual(stats.top_app, "code.exe")


if __name__ == "__main__":
    unittest.main()
