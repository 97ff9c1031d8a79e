"""Unit tests for analytics module."""

import unittest
from datetime import date, datetime, timedelta
import sys
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from tracking.analytics import (
    compute_app_usage,
    compute_daily_aggregate,
    compute_streaks,
    focus_score,
    format_duration,
    format_memory,
    generate_summary_text,
    productivity_score,
)
from tracking.session import Session


def make_session(app, category, seconds, start=datetime(2024, 5, 1, 9, 0), memory=0.0, cpu=0.0, title="t"):
    return Session(
        app_name=app,
        window_title=title,
        start_time=start,
        category=category,
        memory_mb=memory,
        cpu_percent=cpu,
    ).close(start + timedelta(seconds=seconds))


class TestFormatting(unittest.TestCase):
    """Display helpers."""

    def test_format_duration(self):
        self.assertEqual(format_duration(0), "0 sec")
        self.assertEqual(format_duration(1), "1 sec")
        self.assertEqual(format_duration(90), "1 min 30 secs")
        self.assertEqual(format_duration(3725), "1 hr 2 mins")
        self.assertEqual(format_duration(7200), "2 hrs")
        self.assertEqual(format_duration(-5), "0 sec")

    def test_format_duration_full_precision(self):
        self.assertEqual(format_duration(3605, full_precision=True), "1 hr 0 mins 5 secs")

    def test_format_duration_truncates(self):
        self.assertEqual(format_duration(59.9), "59 secs")

    def test_format_memory(self):
        self.assertEqual(format_memory(0.5), "512 KB")
        self.assertEqual(format_memory(250), "250.0 MB")
        self.assertEqual(format_memory(2048), "2.00 GB")


class TestScores(unittest.TestCase):

    def test_focus_score(self):
        self.assertEqual(focus_score(0, 0), 100.0)
        self.assertAlmostEqual(focus_score(90, 10), 90.0)
        self.assertEqual(focus_score(0, 10), 0.0)

    def test_productivity_score(self):
        self.assertEqual(productivity_score(0, 0), 0.0)
        self.assertAlmostEqual(productivity_score(30, 120), 25.0)


class TestDailyAggregate(unittest.TestCase):
    """Folding sessions into one day's statistics."""

    def test_empty_day(self):
        stats = compute_daily_aggregate("2024-05-01", [])
        self.assertEqual(stats.total_seconds, 0)
        self.assertEqual(stats.session_count, 0)
        self.assertEqual(stats.top_app, "")
        self.assertEqual(stats.productivity_score, 0.0)

    def test_totals_and_top(self):
        sessions = [
            make_session("code.exe", "Development", 600),
            make_session("chrome.exe", "Research", 300),
            make_session("spotify.exe", "Distraction", 120),
            make_session("slack.exe", "Communication", 180),
            make_session("code.exe", "Development", 60),
        ]
        stats = compute_daily_aggregate("2024-05-01", sessions)

        self.assertEqual(stats.session_count, 5)
        self.assertAlmostEqual(stats.total_seconds, 1260)
        self.assertAlmostEqual(stats.productive_seconds, 960)
        self.assertAlmostEqual(stats.distraction_seconds, 120)
        self.assertEqual(stats.top_app, "code.exe")
        self.assertEqual(stats.top_category, "Development")

    def test_ties_broken_by_name(self):
        sessions = [
            make_session("zoom.exe", "Communication", 100),
            make_session("atom.exe", "Other", 100),
        ]
        stats = compute_daily_aggregate("2024-05-01", sessions)
        self.assertEqual(stats.top_app, "atom.exe")
        self.assertEqual(stats.top_category, "Communication")

    def test_order_independent(self):
        sessions = [
            make_session("a.exe", "Other", 50),
            make_session("b.exe", "Development", 70),
            make_session("c.exe", "Distraction", 20),
        ]
        self.assertEqual(
            compute_daily_aggregate("2024-05-01", sessions),
            compute_daily_aggregate("2024-05-01", list(reversed(sessions))),
        )

    def test_summary_text(self):
        stats = compute_daily_aggregate("2024-05-01", [
            make_session("code.exe", "Development", 3600),
            make_session("spotify.exe", "Distraction", 600),
        ])
        text = generate_summary_text(stats)
        self.assertIn("1 hr 10 mins", text)
        self.assertIn("code.exe", text)
        self.assertIn("Distractions took 10 mins", text)

    def test_summary_text_no_activity(self):
        stats = compute_daily_aggregate("2024-05-01", [])
        self.assertEqual(generate_summary_text(stats), "No activity was tracked for this day.")


class TestAppUsage(unittest.TestCase):
    """Per-app aggregation."""

    def test_grouped_and_sorted(self):
        sessions = [
            make_session("code.exe", "Development", 100, memory=200, cpu=2),
            make_session("chrome.exe", "Browsing", 50, memory=500, cpu=10),
            make_session("code.exe", "Development", 300, memory=400, cpu=4),
        ]
        usage = compute_app_usage("2024-05-01", sessions)

        self.assertEqual([u.app_name for u in usage], ["chrome.exe", "code.exe"])
        code = usage[1]
        self.assertEqual(code.launch_count, 2)
        self.assertAlmostEqual(code.total_duration, 400)
        self.assertAlmostEqual(code.avg_memory_mb, 300)
        self.assertAlmostEqual(code.avg_cpu_percent, 3)
        self.assertEqual(code.role, "Text Editor & IDE (Visual Studio Code)")

    def test_category_is_dominant_one(self):
        sessions = [
            make_session("chrome.exe", "Distraction", 100),
            make_session("chrome.exe", "Research", 400),
            make_session("chrome.exe", "Browsing", 50),
        ]
        usage = compute_app_usage("2024-05-01", sessions)
        self.assertEqual(usage[0].category, "Research")


class TestStreaks(unittest.TestCase):
    """Consecutive-day streaks."""

    def test_no_data(self):
        self.assertEqual(
            compute_streaks([], today=date(2024, 5, 10)),
            {"current_streak": 0, "longest_streak": 0, "total_days_tracked": 0},
        )

    def test_current_and_longest(self):
        days = ["2024-05-01", "2024-05-02", "2024-05-03", "2024-05-04", "2024-05-08", "2024-05-09", "2024-05-10"]
        info = compute_streaks(days, today=date(2024, 5, 10))
        self.assertEqual(info["current_streak"], 3)
        self.assertEqual(info["longest_streak"], 4)
        self.assertEqual(info["total_days_tracked"], 7)

    def test_current_streak_zero_without_today(self):
        info = compute_streaks(["2024-05-08", "2024-05-09"], today=date(2024, 5, 10))
        self.assertEqual(info["current_streak"], 0)
        self.assertEqual(info["longest_streak"], 2)

    def test_duplicates_ignored(self):
        info = compute_streaks(["2024-05-10", "2024-05-10"], today=date(2024, 5, 10))
        self.assertEqual(info, {"current_streak": 1, "longest_streak": 1, "total_days_tracked": 1})


if __name__ == "__main__":
    unittest.main()
