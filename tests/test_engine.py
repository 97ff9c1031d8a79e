"""
Tests for core/engine.py - TrackingEngine lifecycle and shutdown ordering.
"""

import sys
import unittest
from datetime import date, datetime
from pathlib import Path
from unittest.mock import MagicMock

# Ensure project root is on the path
sys.path.insert(0, str(Path(__file__).parent.parent))

from core.engine import TrackingEngine
from core.errors import PersistenceError


class TestTrackingEngine(unittest.TestCase):
    """Test cases for the tracking engine with mocked components."""

    def setUp(self):
        self.manager = MagicMock()
        self.store = MagicMock()
        self.tracker = MagicMock()
        self.sampler = MagicMock()
        self.browser_sync = MagicMock()
        self.focus = MagicMock()
        for name in ("store", "tracker", "sampler", "browser_sync", "focus"):
            self.manager.attach_mock(getattr(self, name), name)

        self.now = datetime(2024, 5, 1, 18, 0, 0)
        self.engine = TrackingEngine(
            self.store,
            tracker=self.tracker,
            sampler=self.sampler,
            browser_sync=self.browser_sync,
            clock=lambda: self.now,
        )

    def _call_names(self):
        return [c[0] for c in self.manager.mock_calls]

    def test_start_starts_all_tasks(self):
        result = self.engine.start()

        self.assertTrue(result["success"])
        self.assertTrue(self.engine.is_running)
        self.tracker.start.assert_called_once()
        self.sampler.start.assert_called_once()
        self.browser_sync.start.assert_called_once()

    def test_start_twice_fails(self):
        self.engine.start()
        result = self.engine.start()
        self.assertFalse(result["success"])
        self.assertIn("already", result["error"])

    def test_shutdown_order(self):
        self.engine.start()
        self.engine.attach_focus(self.focus)
        self.manager.reset_mock()

        self.engine.stop()

        names = [n for n in self._call_names() if n in (
            "tracker.stop_polling", "sampler.stop", "browser_sync.stop", "focus.stop_ticking",
            "tracker.flush", "store.recompute_aggregates", "focus.stop",
        )]
        self.assertEqual(names, [
            "tracker.stop_polling", "sampler.stop", "browser_sync.stop", "focus.stop_ticking",
            "tracker.flush", "store.recompute_aggregates", "focus.stop",
        ])
        self.store.recompute_aggregates.assert_called_once_with(date(2024, 5, 1))

    def test_stop_result(self):
        self.store.recompute_aggregates.return_value = "stats"
        self.focus.stop.return_value = "record"
        self.engine.start()
        self.engine.attach_focus(self.focus)

        result = self.engine.stop()
        self.assertEqual(result, {"success": True, "daily_stats": "stats", "focus_record": "record"})
        self.assertFalse(self.engine.is_running)

    def test_stop_is_idempotent(self):
        self.engine.start()
        self.engine.stop()
        result = self.engine.stop()

        self.assertFalse(result["success"])
        self.tracker.flush.assert_called_once()
        self.store.recompute_aggregates.assert_called_once()

    def test_recompute_failure_still_stops_focus(self):
        self.store.recompute_aggregates.side_effect = PersistenceError("locked")
        self.engine.start()
        self.engine.attach_focus(self.focus)

        result = self.engine.stop()
        self.assertTrue(result["success"])
        self.assertIsNone(result["daily_stats"])
        self.focus.stop.assert_called_once()

    def test_without_browser_sync(self):
        engine = TrackingEngine(
            self.store, tracker=self.tracker, sampler=self.sampler, enable_browser_sync=False,
        )
        self.assertIsNone(engine.browser_sync)
        engine.start()
        engine.stop()

    def test_on_stopped_callback_errors_ignored(self):
        self.engine.on_stopped = MagicMock(side_effect=RuntimeError("render"))
        self.engine.start()
        result = self.engine.stop()
        self.assertTrue(result["success"])
        self.engine.on_stopped.assert_called_once_with(result)

    def test_status(self):
        self.tracker.total_logged = 4
        self.tracker.total_switches = 5
        self.tracker.total_errors = 1
        self.focus.snapshot.return_value = {"status": "focused"}
        self.engine.start()
        self.engine.attach_focus(self.focus)

        self.now = datetime(2024, 5, 1, 18, 1, 30)
        status = self.engine.get_status()

        self.assertTrue(status["is_running"])
        self.assertEqual(status["elapsed_seconds"], 90)
        self.assertEqual(status["total_logged"], 4)
        self.assertEqual(status["total_switches"], 5)
        self.assertEqual(status["total_errors"], 1)
        self.assertEqual(status["focus"], {"status": "focused"})
        self.assertIs(status["current_session"], self.tracker.current)

    def test_status_when_idle(self):
        status = self.engine.get_status()
        self.assertFalse(status["is_running"])
        self.assertEqual(status["elapsed_seconds"], 0)
        self.assertIsNone(status["focus"])


if __name__ == "__main__":
    unittest.main()
