"""
Pure statistics over activity sessions.

Aggregates are folded from the list of Sessions for a date. Nothing here
touches the database, so the same sessions always produce the same
aggregates regardless of how often they are recomputed.
"""

from collections import defaultdict
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Dict, Iterable, List, Optional, Sequence

from tracking.categorizer import get_app_role, is_distraction, is_productive
from tracking.session import Session


@dataclass(frozen=True)
class DailyAggregate:
    date: str
    total_seconds: float
    productive_seconds: float
    distraction_seconds: float
    top_app: str
    top_category: str
    session_count: int

    @property
    def productivity_score(self) -> float:
        return productivity_score(self.productive_seconds, self.total_seconds)


@dataclass(frozen=True)
class AppUsageAggregate:
    date: str
    app_name: str
    total_duration: float
    avg_memory_mb: float
    avg_cpu_percent: float
    launch_count: int
    category: str
    role: str


def format_duration(seconds: float, full_precision: bool = False) -> str:
    """
    Format duration in seconds to human-readable string.

    All calculations use float seconds for precision, with truncation to
    int happening ONLY here at display time.

    Args:
        seconds: Duration in seconds (truncated to int for display)
        full_precision: If True, always show all non-zero time components
                       including seconds even when hours > 0.

    Returns:
        Formatted string like "1 min 30 secs", "45 secs", "2 hrs 15 mins"

    Examples:
        >>> format_duration(90)
        '1 min 30 secs'
        >>> format_duration(3725)
        '1 hr 2 mins'
        >>> format_duration(0)
        '0 sec'
    """
    total_seconds = int(seconds) if seconds >= 0 else 0

    hours = total_seconds // 3600
    remaining_seconds = total_seconds % 3600
    mins = remaining_seconds // 60
    secs = remaining_seconds % 60

    parts = []

    if hours > 0:
        hr_unit = "hr" if hours == 1 else "hrs"
        parts.append(f"{hours} {hr_unit}")

    if mins > 0 or (full_precision and hours > 0):
        min_unit = "min" if mins == 1 else "mins"
        parts.append(f"{mins} {min_unit}")

    if secs > 0 or full_precision:
        if hours == 0 or full_precision:
            sec_unit = "sec" if secs == 1 else "secs"
            parts.append(f"{secs} {sec_unit}")

    return " ".join(parts) if parts else "0 sec"


def format_memory(mb: float) -> str:
    if mb < 1:
        return f"{mb * 1024:.0f} KB"
    if mb < 1024:
        return f"{mb:.1f} MB"
    return f"{mb / 1024:.2f} GB"


def focus_score(focus_seconds: float, distraction_seconds: float) -> float:
    """
    Focus score = focus / (focus + distraction) * 100.

    Returns 100 when nothing has been counted yet.
    """
    total = focus_seconds + distraction_seconds
    if total <= 0:
        return 100.0
    return (focus_seconds / total) * 100.0


def productivity_score(productive_seconds: float, total_seconds: float) -> float:
    """Share of tracked time spent in productive categories, 0 when nothing tracked."""
    if total_seconds <= 0:
        return 0.0
    return (productive_seconds / total_seconds) * 100.0


def _top_key(totals: Dict[str, float]) -> str:
    """Key with the largest total; ties go to the alphabetically first key."""
    if not totals:
        return ""
    return min(totals.items(), key=lambda item: (-item[1], item[0]))[0]


def compute_daily_aggregate(day: str, sessions: Iterable[Session]) -> DailyAggregate:
    """
    Fold one day's sessions into its DailyAggregate.

    Args:
        day: ISO date string (YYYY-MM-DD).
        sessions: Closed sessions whose start_time falls on `day`.
    """
    total = productive = distraction = 0.0
    count = 0
    by_app: Dict[str, float] = defaultdict(float)
    by_category: Dict[str, float] = defaultdict(float)

    for session in sessions:
        duration = float(session.duration_seconds)
        total += duration
        count += 1
        if is_productive(session.category):
            productive += duration
        elif is_distraction(session.category):
            distraction += duration
        by_app[session.app_name] += duration
        by_category[session.category] += duration

    return DailyAggregate(
        date=day,
        total_seconds=total,
        productive_seconds=productive,
        distraction_seconds=distraction,
        top_app=_top_key(by_app),
        top_category=_top_key(by_category),
        session_count=count,
    )


def compute_app_usage(day: str, sessions: Iterable[Session]) -> List[AppUsageAggregate]:
    """
    Fold one day's sessions into per-app aggregates, sorted by app name.

    An app's category is the one it spent the most time in that day.
    """
    grouped: Dict[str, List[Session]] = defaultdict(list)
    for session in sessions:
        grouped[session.app_name].append(session)

    result = []
    for app_name in sorted(grouped):
        app_sessions = grouped[app_name]
        n = len(app_sessions)
        by_category: Dict[str, float] = defaultdict(float)
        for s in app_sessions:
            by_category[s.category] += float(s.duration_seconds)
        result.append(AppUsageAggregate(
            date=day,
            app_name=app_name,
            total_duration=sum(float(s.duration_seconds) for s in app_sessions),
            avg_memory_mb=sum(s.memory_mb for s in app_sessions) / n,
            avg_cpu_percent=sum(s.cpu_percent for s in app_sessions) / n,
            launch_count=n,
            category=_top_key(by_category),
            role=get_app_role(app_name),
        ))
    return result


def compute_streaks(active_dates: Sequence[str], today: Optional[date] = None) -> Dict[str, int]:
    """
    Streak information from the dates that have any tracked time.

    Returns:
        {"current_streak", "longest_streak", "total_days_tracked"}; the
        current streak counts back from today and is 0 if today has no data.
    """
    days = sorted({date.fromisoformat(d) for d in active_dates})
    if not days:
        return {"current_streak": 0, "longest_streak": 0, "total_days_tracked": 0}

    longest = current = 1
    for prev, cur in zip(days, days[1:]):
        if cur - prev == timedelta(days=1):
            current += 1
            longest = max(longest, current)
        else:
            current = 1

    today = today or date.today()
    present = set(days)
    streak = 0
    check = today
    while check in present:
        streak += 1
        check -= timedelta(days=1)

    return {"current_streak": streak, "longest_streak": longest, "total_days_tracked": len(days)}


def generate_summary_text(stats: DailyAggregate) -> str:
    """One-paragraph plain summary of a day, used when AI is unavailable."""
    if stats.total_seconds <= 0:
        return "No activity was tracked for this day."
    score = stats.productivity_score
    text = (
        f"You tracked {format_duration(stats.total_seconds)} across {stats.session_count} sessions, "
        f"{format_duration(stats.productive_seconds)} of it productive ({score:.0f}%)."
    )
    if stats.top_app:
        text += f" Most of your time went to {stats.top_app}."
    if stats.distraction_seconds > 0:
        text += f" Distractions took {format_duration(stats.distraction_seconds)}."
    return text
