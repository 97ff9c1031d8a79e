"""
Tests for core/scheduler.py - PeriodicTask.
"""

import sys
import threading
import time
import unittest
from pathlib import Path

# Ensure project root is on the path
sys.path.insert(0, str(Path(__file__).parent.parent))

from core.scheduler import PeriodicTask


class TestPeriodicTask(unittest.TestCase):

    def test_invalid_interval(self):
        with self.assertRaises(ValueError):
            PeriodicTask("bad", 0, lambda: None)

    def test_runs_repeatedly_until_stopped(self):
        reached = threading.Event()
        calls = []

        def callback():
            calls.append(1)
            if len(calls) >= 3:
                reached.set()

        task = PeriodicTask("count", 0.01, callback, run_immediately=True)
        task.start()
        self.assertTrue(reached.wait(5))
        task.stop()

        self.assertFalse(task.is_running)
        count = len(calls)
        time.sleep(0.05)
        self.assertEqual(len(calls), count)
        self.assertGreaterEqual(task.tick_count, 3)

    def test_errors_do_not_stop_task(self):
        reached = threading.Event()
        calls = []

        def callback():
            calls.append(1)
            if len(calls) >= 2:
                reached.set()
            raise RuntimeError("tick failed")

        task = PeriodicTask("failing", 0.01, callback, run_immediately=True)
        task.start()
        self.assertTrue(reached.wait(5))
        task.stop()
        self.assertGreaterEqual(task.error_count, 2)

    def test_stop_from_inside_callback(self):
        done = threading.Event()
        holder = {}

        def callback():
            holder["task"].stop()
            done.set()

        task = PeriodicTask("self-stop", 0.01, callback, run_immediately=True)
        holder["task"] = task
        task.start()
        self.assertTrue(done.wait(5))
        self.assertEqual(task.tick_count, 1)

    def test_start_twice_is_noop(self):
        task = PeriodicTask("twice", 10, lambda: None)
        task.start()
        thread = task._thread
        task.start()
        self.assertIs(task._thread, thread)
        task.stop()

    def test_stop_before_start(self):
        PeriodicTask("never", 1, lambda: None).stop()


if __name__ == "__main__":
    unittest.main()
