"""
SQLite persistence for TraceCLI.

SessionStore is the only writer of the database. Sessions, snapshots,
searches, URLs and focus sessions are append-only. Daily and per-app
aggregates are recomputed from the sessions on demand and upserted, so
recomputing them any number of times gives the same rows.

All access goes through one connection guarded by a re-entrant lock;
every public write is a single transaction.
"""

import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Union

import config
from core.errors import PersistenceError
from tracking.analytics import (
    AppUsageAggregate,
    DailyAggregate,
    compute_app_usage,
    compute_daily_aggregate,
    compute_streaks,
    productivity_score,
)
from tracking.session import BrowserUrl, FocusSessionRecord, SearchRecord, Session

logger = logging.getLogger(__name__)

DayLike = Union[str, date, None]

SCHEMA = """
    -- Core activity tracking (append-only)
    CREATE TABLE IF NOT EXISTS activity_log (
        id               INTEGER PRIMARY KEY AUTOINCREMENT,
        app_name         TEXT    NOT NULL,
        window_title     TEXT    NOT NULL,
        start_time       TEXT    NOT NULL,
        end_time         TEXT    NOT NULL,
        duration_seconds REAL    NOT NULL,
        category         TEXT    NOT NULL DEFAULT 'Other',
        memory_mb        REAL    DEFAULT 0,
        cpu_percent      REAL    DEFAULT 0,
        pid              INTEGER DEFAULT 0
    );

    -- Search query extraction
    CREATE TABLE IF NOT EXISTS search_history (
        id          INTEGER PRIMARY KEY AUTOINCREMENT,
        timestamp   TEXT    NOT NULL,
        browser     TEXT    NOT NULL,
        query       TEXT    NOT NULL,
        url         TEXT    NOT NULL,
        source      TEXT    NOT NULL DEFAULT 'Unknown'
    );

    -- Daily productivity summary (recomputed)
    CREATE TABLE IF NOT EXISTS daily_stats (
        date                TEXT    PRIMARY KEY,
        total_seconds       REAL    NOT NULL DEFAULT 0,
        productive_seconds  REAL    NOT NULL DEFAULT 0,
        distraction_seconds REAL    NOT NULL DEFAULT 0,
        top_app             TEXT    NOT NULL DEFAULT '',
        top_category        TEXT    NOT NULL DEFAULT '',
        session_count       INTEGER NOT NULL DEFAULT 0
    );

    -- System-wide process snapshots (append-only)
    CREATE TABLE IF NOT EXISTS process_snapshots (
        id          INTEGER PRIMARY KEY AUTOINCREMENT,
        timestamp   TEXT    NOT NULL,
        app_name    TEXT    NOT NULL,
        pid         INTEGER NOT NULL,
        memory_mb   REAL    NOT NULL DEFAULT 0,
        cpu_percent REAL    NOT NULL DEFAULT 0,
        status      TEXT    NOT NULL DEFAULT 'running',
        num_threads INTEGER NOT NULL DEFAULT 0
    );

    -- Per-app daily aggregate (recomputed)
    CREATE TABLE IF NOT EXISTS app_usage_history (
        date                TEXT    NOT NULL,
        app_name            TEXT    NOT NULL,
        total_duration      REAL    NOT NULL DEFAULT 0,
        total_memory_avg_mb REAL    NOT NULL DEFAULT 0,
        total_cpu_avg       REAL    NOT NULL DEFAULT 0,
        launch_count        INTEGER NOT NULL DEFAULT 0,
        category            TEXT    NOT NULL DEFAULT 'Other',
        role                TEXT    NOT NULL DEFAULT '',
        PRIMARY KEY (date, app_name)
    );

    -- Full browser URL history
    CREATE TABLE IF NOT EXISTS browser_urls (
        id              INTEGER PRIMARY KEY AUTOINCREMENT,
        timestamp       TEXT    NOT NULL,
        browser         TEXT    NOT NULL,
        url             TEXT    NOT NULL,
        title           TEXT    NOT NULL DEFAULT '',
        visit_duration  REAL    NOT NULL DEFAULT 0,
        domain          TEXT    NOT NULL DEFAULT ''
    );

    -- One row per finished focus / pomodoro run
    CREATE TABLE IF NOT EXISTS focus_sessions (
        id                   INTEGER PRIMARY KEY AUTOINCREMENT,
        start_time           TEXT    NOT NULL,
        end_time             TEXT    NOT NULL,
        target_minutes       INTEGER NOT NULL DEFAULT 25,
        actual_focus_seconds REAL    NOT NULL DEFAULT 0,
        distraction_seconds  REAL    NOT NULL DEFAULT 0,
        interruption_count   INTEGER NOT NULL DEFAULT 0,
        focus_score          REAL    NOT NULL DEFAULT 0,
        goal_label           TEXT    NOT NULL DEFAULT ''
    );

    CREATE INDEX IF NOT EXISTS idx_activity_start ON activity_log(start_time);
    CREATE INDEX IF NOT EXISTS idx_activity_app ON activity_log(app_name);
    CREATE INDEX IF NOT EXISTS idx_search_timestamp ON search_history(timestamp);
    CREATE INDEX IF NOT EXISTS idx_snapshot_timestamp ON process_snapshots(timestamp);
    CREATE INDEX IF NOT EXISTS idx_snapshot_app ON process_snapshots(app_name);
    CREATE INDEX IF NOT EXISTS idx_app_usage_name ON app_usage_history(app_name);
    CREATE INDEX IF NOT EXISTS idx_browser_urls_timestamp ON browser_urls(timestamp);
    CREATE INDEX IF NOT EXISTS idx_browser_urls_domain ON browser_urls(domain);
    CREATE INDEX IF NOT EXISTS idx_focus_start ON focus_sessions(start_time);
"""


def _day(value: DayLike) -> str:
    """Normalize a date argument to YYYY-MM-DD (today when None)."""
    if value is None:
        return date.today().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return date.fromisoformat(value).isoformat()


def _ts(value: datetime) -> str:
    return value.isoformat()


class SessionStore:
    """
    Durable storage plus aggregate recomputation.

    Usage:
        store = SessionStore()              # config.DB_PATH
        store.insert_session(session)
        stats = store.recompute_daily_stats()
        store.close()
    """

    def __init__(self, db_path: Union[str, Path] = None):
        """
        Open (and create if needed) the database.

        Args:
            db_path: SQLite file path (defaults to config.DB_PATH).
        """
        self.db_path = Path(db_path) if db_path else config.DB_PATH
        self._lock = threading.RLock()
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode = WAL")
            self._conn.execute("PRAGMA synchronous = NORMAL")
            self._conn.executescript(SCHEMA)
        except (sqlite3.Error, OSError) as e:
            raise PersistenceError(f"Cannot open database {self.db_path}: {e}") from e
        logger.debug(f"Database ready at {self.db_path}")

    def close(self) -> None:
        with self._lock:
            try:
                self._conn.close()
            except sqlite3.Error as e:
                logger.warning(f"Error closing database: {e}")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """One serialized transaction; rolled back and re-raised as PersistenceError on failure."""
        with self._lock:
            try:
                with self._conn:
                    yield self._conn
            except sqlite3.Error as e:
                raise PersistenceError(str(e)) from e

    def _query(self, sql: str, params: Iterable[Any] = ()) -> List[Dict[str, Any]]:
        with self._lock:
            try:
                return [dict(row) for row in self._conn.execute(sql, tuple(params)).fetchall()]
            except sqlite3.Error as e:
                raise PersistenceError(str(e)) from e

    def _query_one(self, sql: str, params: Iterable[Any] = ()) -> Optional[Dict[str, Any]]:
        rows = self._query(sql, params)
        return rows[0] if rows else None

    # ------------------------------------------------------------------
    # Append-only writes
    # ------------------------------------------------------------------

    def insert_session(self, session: Session) -> None:
        """Persist a closed session."""
        if session.end_time is None:
            raise ValueError("Only closed sessions can be stored")
        row = session.to_row()
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO activity_log
                (app_name, window_title, start_time, end_time, duration_seconds, category, memory_mb, cpu_percent, pid)
                VALUES (:app_name, :window_title, :start_time, :end_time, :duration_seconds,
                        :category, :memory_mb, :cpu_percent, :pid)
                """,
                row,
            )

    def insert_search(self, search: SearchRecord) -> None:
        with self._transaction() as conn:
            conn.execute(
                "INSERT INTO search_history (timestamp, browser, query, url, source) VALUES (?, ?, ?, ?, ?)",
                (_ts(search.timestamp), search.browser, search.query, search.url or "", search.source or "Unknown"),
            )

    def insert_browser_urls(self, urls: List[BrowserUrl], searches: List[SearchRecord] = ()) -> None:
        """Insert a batch of visited URLs (and the searches parsed from them) in one transaction."""
        with self._transaction() as conn:
            conn.executemany(
                """
                INSERT INTO browser_urls (timestamp, browser, url, title, visit_duration, domain)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                [(_ts(u.timestamp), u.browser, u.url, u.title or "", u.visit_duration, u.domain or "") for u in urls],
            )
            conn.executemany(
                "INSERT INTO search_history (timestamp, browser, query, url, source) VALUES (?, ?, ?, ?, ?)",
                [(_ts(s.timestamp), s.browser, s.query, s.url or "", s.source or "Unknown") for s in searches],
            )

    def bulk_insert_snapshots(self, snapshots) -> None:
        """Insert one sampler tick worth of ProcessSnapshots atomically."""
        if not snapshots:
            return
        with self._transaction() as conn:
            conn.executemany(
                """
                INSERT INTO process_snapshots (timestamp, app_name, pid, memory_mb, cpu_percent, status, num_threads)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (_ts(s.timestamp), s.app_name, s.pid, s.memory_mb, s.cpu_percent, s.status, s.num_threads)
                    for s in snapshots
                ],
            )

    def insert_focus_session(self, record: FocusSessionRecord) -> int:
        """Persist a finished focus run. Returns the new row id."""
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO focus_sessions
                (start_time, end_time, target_minutes, actual_focus_seconds, distraction_seconds,
                 interruption_count, focus_score, goal_label)
                VALUES (:start_time, :end_time, :target_minutes, :actual_focus_seconds, :distraction_seconds,
                        :interruption_count, :focus_score, :goal_label)
                """,
                record.to_row(),
            )
            return cursor.lastrowid

    # ------------------------------------------------------------------
    # Aggregates
    # ------------------------------------------------------------------

    def sessions_for_date(self, day: DayLike = None) -> List[Session]:
        """All stored sessions that started on `day`, oldest first."""
        rows = self._query(
            "SELECT * FROM activity_log WHERE start_time LIKE ? || '%' ORDER BY start_time, id",
            (_day(day),),
        )
        return [Session.from_row(r) for r in rows]

    def recompute_daily_stats(self, day: DayLike = None) -> DailyAggregate:
        """Rebuild and upsert the DailyAggregate for `day` from its sessions."""
        day = _day(day)
        with self._lock:
            stats = compute_daily_aggregate(day, self.sessions_for_date(day))
            with self._transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO daily_stats
                    (date, total_seconds, productive_seconds, distraction_seconds, top_app, top_category, session_count)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(date) DO UPDATE SET
                        total_seconds = excluded.total_seconds,
                        productive_seconds = excluded.productive_seconds,
                        distraction_seconds = excluded.distraction_seconds,
                        top_app = excluded.top_app,
                        top_category = excluded.top_category,
                        session_count = excluded.session_count
                    """,
                    (stats.date, stats.total_seconds, stats.productive_seconds, stats.distraction_seconds,
                     stats.top_app, stats.top_category, stats.session_count),
                )
        return stats

    def recompute_app_usage(self, day: DayLike = None) -> List[AppUsageAggregate]:
        """Rebuild and upsert every (day, app) aggregate; drops rows with no sessions behind them."""
        day = _day(day)
        with self._lock:
            apps = compute_app_usage(day, self.sessions_for_date(day))
            with self._transaction() as conn:
                conn.executemany(
                    """
                    INSERT INTO app_usage_history
                    (date, app_name, total_duration, total_memory_avg_mb, total_cpu_avg, launch_count, category, role)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(date, app_name) DO UPDATE SET
                        total_duration = excluded.total_duration,
                        total_memory_avg_mb = excluded.total_memory_avg_mb,
                        total_cpu_avg = excluded.total_cpu_avg,
                        launch_count = excluded.launch_count,
                        category = excluded.category,
                        role = excluded.role
                    """,
                    [
                        (a.date, a.app_name, a.total_duration, a.avg_memory_mb, a.avg_cpu_percent,
                         a.launch_count, a.category, a.role)
                        for a in apps
                    ],
                )
                names = [a.app_name for a in apps]
                placeholders = ",".join("?" * len(names))
                if names:
                    conn.execute(
                        f"DELETE FROM app_usage_history WHERE date = ? AND app_name NOT IN ({placeholders})",
                        (day, *names),
                    )
                else:
                    conn.execute("DELETE FROM app_usage_history WHERE date = ?", (day,))
        return apps

    def recompute_aggregates(self, day: DayLike = None) -> DailyAggregate:
        """Recompute both aggregate tables for `day`."""
        with self._lock:
            stats = self.recompute_daily_stats(day)
            self.recompute_app_usage(day)
        return stats

    # ------------------------------------------------------------------
    # Read models
    # ------------------------------------------------------------------

    @staticmethod
    def _daily_from_row(row: Dict[str, Any]) -> DailyAggregate:
        return DailyAggregate(
            date=row["date"],
            total_seconds=row["total_seconds"],
            productive_seconds=row["productive_seconds"],
            distraction_seconds=row["distraction_seconds"],
            top_app=row["top_app"],
            top_category=row["top_category"],
            session_count=row["session_count"],
        )

    def get_daily_stats(self, day: DayLike = None) -> Optional[DailyAggregate]:
        row = self._query_one("SELECT * FROM daily_stats WHERE date = ?", (_day(day),))
        return self._daily_from_row(row) if row else None

    def get_stats_range(self, limit: int = 7) -> List[DailyAggregate]:
        """Most recent daily aggregates, newest first."""
        rows = self._query("SELECT * FROM daily_stats ORDER BY date DESC LIMIT ?", (limit,))
        return [self._daily_from_row(r) for r in rows]

    def get_app_usage(self, day: DayLike = None) -> List[AppUsageAggregate]:
        rows = self._query(
            "SELECT * FROM app_usage_history WHERE date = ? ORDER BY total_duration DESC, app_name",
            (_day(day),),
        )
        return [
            AppUsageAggregate(
                date=r["date"],
                app_name=r["app_name"],
                total_duration=r["total_duration"],
                avg_memory_mb=r["total_memory_avg_mb"],
                avg_cpu_percent=r["total_cpu_avg"],
                launch_count=r["launch_count"],
                category=r["category"],
                role=r["role"],
            )
            for r in rows
        ]

    def query_sessions(self, day: DayLike = None, limit: int = 100) -> List[Session]:
        rows = self._query(
            "SELECT * FROM activity_log WHERE start_time LIKE ? || '%' ORDER BY start_time DESC, id DESC LIMIT ?",
            (_day(day), limit),
        )
        return [Session.from_row(r) for r in rows]

    def get_category_breakdown(self, day: DayLike = None) -> List[Dict[str, Any]]:
        return self._query(
            """
            SELECT category, SUM(duration_seconds) AS total_seconds, COUNT(*) AS switch_count
            FROM activity_log
            WHERE start_time LIKE ? || '%'
            GROUP BY category
            ORDER BY total_seconds DESC, category
            """,
            (_day(day),),
        )

    def get_app_breakdown(self, day: DayLike = None) -> List[Dict[str, Any]]:
        return self._query(
            """
            SELECT app_name,
                   SUM(duration_seconds) AS total_seconds,
                   COUNT(*) AS switch_count,
                   AVG(memory_mb) AS avg_memory_mb,
                   AVG(cpu_percent) AS avg_cpu_percent,
                   MAX(memory_mb) AS peak_memory_mb
            FROM activity_log
            WHERE start_time LIKE ? || '%'
            GROUP BY app_name
            ORDER BY total_seconds DESC, app_name
            """,
            (_day(day),),
        )

    def get_app_analytics(self, app_name: str, day: DayLike = None) -> Optional[Dict[str, Any]]:
        """Per-app detail: totals, top window titles and resource timeline for one day."""
        day = _day(day)
        stats = self._query_one(
            """
            SELECT COUNT(*) AS session_count,
                   SUM(duration_seconds) AS total_seconds,
                   AVG(memory_mb) AS avg_memory_mb,
                   MAX(memory_mb) AS peak_memory_mb,
                   AVG(cpu_percent) AS avg_cpu,
                   MAX(cpu_percent) AS peak_cpu,
                   MIN(start_time) AS first_seen,
                   MAX(end_time) AS last_seen
            FROM activity_log
            WHERE app_name = ? AND start_time LIKE ? || '%'
            """,
            (app_name, day),
        )
        if not stats or not stats["session_count"]:
            return None

        stats["top_titles"] = self._query(
            """
            SELECT window_title, SUM(duration_seconds) AS total_seconds, COUNT(*) AS count
            FROM activity_log
            WHERE app_name = ? AND start_time LIKE ? || '%'
            GROUP BY window_title
            ORDER BY total_seconds DESC
            LIMIT 15
            """,
            (app_name, day),
        )
        stats["resource_timeline"] = self._query(
            """
            SELECT timestamp, memory_mb, cpu_percent, num_threads
            FROM process_snapshots
            WHERE app_name = ? AND timestamp LIKE ? || '%'
            ORDER BY timestamp ASC
            """,
            (app_name, day),
        )
        return stats

    def get_app_history(self, app_name: str, days: int = 14) -> List[Dict[str, Any]]:
        return self._query(
            """
            SELECT date, total_duration AS total_seconds, launch_count AS session_count,
                   total_memory_avg_mb AS avg_memory_mb, total_cpu_avg AS avg_cpu
            FROM app_usage_history
            WHERE app_name = ?
            ORDER BY date DESC
            LIMIT ?
            """,
            (app_name, days),
        )

    def get_all_tracked_apps(self) -> List[Dict[str, Any]]:
        return self._query(
            """
            SELECT app_name, SUM(total_duration) AS total_seconds
            FROM app_usage_history
            GROUP BY app_name
            ORDER BY total_seconds DESC
            """
        )

    def get_top_memory_apps(self, day: DayLike = None, limit: int = 10) -> List[Dict[str, Any]]:
        return self._query(
            """
            SELECT app_name, AVG(memory_mb) AS avg_memory_mb, MAX(memory_mb) AS peak_memory_mb,
                   COUNT(DISTINCT pid) AS instance_count, AVG(cpu_percent) AS avg_cpu
            FROM process_snapshots
            WHERE timestamp LIKE ? || '%'
            GROUP BY app_name
            ORDER BY avg_memory_mb DESC
            LIMIT ?
            """,
            (_day(day), limit),
        )

    def get_top_cpu_apps(self, day: DayLike = None, limit: int = 10) -> List[Dict[str, Any]]:
        return self._query(
            """
            SELECT app_name, AVG(cpu_percent) AS avg_cpu, MAX(cpu_percent) AS peak_cpu,
                   AVG(memory_mb) AS avg_memory_mb, COUNT(DISTINCT pid) AS instance_count
            FROM process_snapshots
            WHERE timestamp LIKE ? || '%'
            GROUP BY app_name
            ORDER BY avg_cpu DESC
            LIMIT ?
            """,
            (_day(day), limit),
        )

    def get_snapshot_count(self, day: DayLike = None) -> int:
        """Number of sampler ticks stored for `day`."""
        row = self._query_one(
            "SELECT COUNT(DISTINCT timestamp) AS count FROM process_snapshots WHERE timestamp LIKE ? || '%'",
            (_day(day),),
        )
        return row["count"] if row else 0

    def query_searches(self, day: DayLike = None) -> List[Dict[str, Any]]:
        return self._query(
            "SELECT * FROM search_history WHERE timestamp LIKE ? || '%' ORDER BY timestamp DESC",
            (_day(day),),
        )

    def query_browser_urls(self, day: DayLike = None, limit: int = 50) -> List[Dict[str, Any]]:
        return self._query(
            "SELECT * FROM browser_urls WHERE timestamp LIKE ? || '%' ORDER BY timestamp DESC LIMIT ?",
            (_day(day), limit),
        )

    def get_latest_browser_visit(self, browser: str) -> Optional[datetime]:
        """Timestamp of the newest stored URL for a browser, used to avoid re-importing history."""
        row = self._query_one("SELECT MAX(timestamp) AS latest FROM browser_urls WHERE browser = ?", (browser,))
        if not row or not row["latest"]:
            return None
        return datetime.fromisoformat(row["latest"])

    def get_domain_breakdown(self, day: DayLike = None) -> List[Dict[str, Any]]:
        return self._query(
            """
            SELECT domain, COUNT(*) AS visit_count, SUM(visit_duration) AS total_duration
            FROM browser_urls
            WHERE timestamp LIKE ? || '%' AND domain != ''
            GROUP BY domain
            ORDER BY visit_count DESC
            LIMIT 30
            """,
            (_day(day),),
        )

    def get_focus_stats(self) -> Dict[str, Any]:
        return self._query_one(
            """
            SELECT COUNT(*) AS total_sessions,
                   COALESCE(SUM(actual_focus_seconds), 0) AS total_focus_seconds,
                   COALESCE(AVG(focus_score), 0) AS avg_focus_score,
                   COALESCE(SUM(interruption_count), 0) AS total_interruptions,
                   COALESCE(MAX(focus_score), 0) AS best_score
            FROM focus_sessions
            """
        )

    def query_focus_sessions(self, day: DayLike = None, limit: int = 20) -> List[Dict[str, Any]]:
        """Recent focus runs, optionally restricted to runs that started on `day`."""
        if day is not None:
            return self._query(
                "SELECT * FROM focus_sessions WHERE start_time LIKE ? || '%' ORDER BY start_time DESC LIMIT ?",
                (_day(day), limit),
            )
        return self._query("SELECT * FROM focus_sessions ORDER BY start_time DESC LIMIT ?", (limit,))

    def get_productivity_heatmap(self, weeks: int = 52, today: date = None) -> List[Dict[str, Any]]:
        """Daily totals with a 0-100 productivity score, oldest first."""
        cutoff = (today or date.today()) - timedelta(days=weeks * 7)
        rows = self._query(
            "SELECT date, total_seconds, productive_seconds FROM daily_stats WHERE date >= ? ORDER BY date ASC",
            (cutoff.isoformat(),),
        )
        for row in rows:
            row["score"] = round(productivity_score(row["productive_seconds"], row["total_seconds"]))
        return rows

    def get_streak_info(self, today: date = None) -> Dict[str, int]:
        rows = self._query("SELECT date FROM daily_stats WHERE total_seconds > 0 ORDER BY date ASC")
        return compute_streaks([r["date"] for r in rows], today)
