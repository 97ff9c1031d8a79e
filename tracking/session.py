"""Activity and focus session records."""

from dataclasses import dataclass, asdict, replace
from datetime import datetime
from typing import Any, Dict, Optional


@dataclass
class Session:
    """
    A contiguous interval spent on one (application, window title) pair.

    While open, end_time is None and duration_seconds is 0. close() fixes
    the end time and duration; a closed session is never mutated again.
    """
    app_name: str
    window_title: str
    start_time: datetime
    category: str
    pid: int = 0
    memory_mb: float = 0.0
    cpu_percent: float = 0.0
    end_time: Optional[datetime] = None
    duration_seconds: float = 0.0

    @property
    def is_open(self) -> bool:
        return self.end_time is None

    def same_window(self, app_name: str, window_title: str) -> bool:
        return self.app_name == app_name and self.window_title == window_title

    def elapsed(self, now: datetime) -> float:
        """Seconds from start to `now` (or to end_time once closed)."""
        end = self.end_time or now
        return max(0.0, (end - self.start_time).total_seconds())

    def close(self, end_time: datetime) -> "Session":
        """Return a closed copy of this session ending at end_time."""
        return replace(self, end_time=end_time, duration_seconds=self.elapsed(end_time))

    def snapshot(self, now: datetime) -> "Session":
        """Copy with duration_seconds filled in, for display of an open session."""
        return replace(self, duration_seconds=self.elapsed(now))

    def to_row(self) -> Dict[str, Any]:
        row = asdict(self)
        row["start_time"] = self.start_time.isoformat()
        row["end_time"] = self.end_time.isoformat() if self.end_time else None
        return row

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Session":
        end = row.get("end_time")
        return cls(
            app_name=row["app_name"],
            window_title=row["window_title"],
            start_time=datetime.fromisoformat(row["start_time"]),
            end_time=datetime.fromisoformat(end) if end else None,
            duration_seconds=float(row.get("duration_seconds") or 0.0),
            category=row.get("category") or "Other",
            memory_mb=float(row.get("memory_mb") or 0.0),
            cpu_percent=float(row.get("cpu_percent") or 0.0),
            pid=int(row.get("pid") or 0),
        )


@dataclass(frozen=True)
class FocusSessionRecord:
    """The single row written when a focus or pomodoro run stops."""
    start_time: datetime
    end_time: datetime
    target_minutes: int
    actual_focus_seconds: float
    interruption_count: int
    focus_score: float
    goal_label: str
    distraction_seconds: float = 0.0

    def to_row(self) -> Dict[str, Any]:
        row = asdict(self)
        row["start_time"] = self.start_time.isoformat()
        row["end_time"] = self.end_time.isoformat()
        return row


@dataclass(frozen=True)
class SearchRecord:
    """A search query seen in a window title or browser history."""
    timestamp: datetime
    browser: str
    query: str
    source: str = "Unknown"
    url: str = ""


@dataclass(frozen=True)
class BrowserUrl:
    """One visited URL from browser history."""
    timestamp: datetime
    browser: str
    url: str
    title: str = ""
    domain: str = ""
    visit_duration: float = 0.0
