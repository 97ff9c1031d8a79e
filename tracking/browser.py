"""
Browser history and search extraction.

Chromium-family browsers keep history in an SQLite file that is locked
while the browser runs, so it is copied to a temporary directory before
reading. Search queries are recognised from search-engine URLs and from
search-results window titles.
"""

import logging
import re
import shutil
import sqlite3
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple
from urllib.parse import unquote_plus, urlparse

import config
from core.errors import PersistenceError
from core.scheduler import PeriodicTask
from tracking.session import BrowserUrl, SearchRecord

logger = logging.getLogger(__name__)

# Chrome timestamps are microseconds since 1601-01-01 UTC
_CHROME_EPOCH = datetime(1601, 1, 1)

SEARCH_PATTERNS = [
    ("Google", re.compile(r"google\..*[?&]q=([^&]+)", re.IGNORECASE)),
    ("Bing", re.compile(r"bing\.com.*[?&]q=([^&]+)", re.IGNORECASE)),
    ("YouTube", re.compile(r"youtube\.com/results.*[?&]search_query=([^&]+)", re.IGNORECASE)),
    ("DuckDuckGo", re.compile(r"duckduckgo\.com.*[?&]q=([^&]+)", re.IGNORECASE)),
    ("GitHub", re.compile(r"github\.com/search.*[?&]q=([^&]+)", re.IGNORECASE)),
    ("StackOverflow", re.compile(r"stackoverflow\.com/search.*[?&]q=([^&]+)", re.IGNORECASE)),
]

TITLE_SEARCH_PATTERNS = [
    ("Google", re.compile(r"(.+?) - Google Search", re.IGNORECASE)),
    ("Bing", re.compile(r"(.+?) - Bing", re.IGNORECASE)),
    ("Search", re.compile(r"(.+?) - Search", re.IGNORECASE)),
]

# Browsers whose window titles are checked for search results
TITLE_SEARCH_BROWSERS = {
    "chrome.exe": "chrome",
    "msedge.exe": "msedge",
    "brave.exe": "brave",
    "firefox.exe": "firefox",
    "google chrome": "chrome",
    "microsoft edge": "msedge",
    "brave browser": "brave",
    "firefox": "firefox",
}

INTERNAL_URL_PREFIXES = ("chrome://", "edge://", "brave://", "about:", "chrome-extension://")


def get_browser_history_paths() -> Dict[str, Path]:
    """Default-profile History files of Chromium-family browsers for this platform."""
    home = Path.home()
    if sys.platform == "win32":
        local = home / "AppData" / "Local"
        return {
            "Chrome": local / "Google" / "Chrome" / "User Data" / "Default" / "History",
            "Edge": local / "Microsoft" / "Edge" / "User Data" / "Default" / "History",
            "Brave": local / "BraveSoftware" / "Brave-Browser" / "User Data" / "Default" / "History",
        }
    if sys.platform == "darwin":
        support = home / "Library" / "Application Support"
        return {
            "Chrome": support / "Google" / "Chrome" / "Default" / "History",
            "Edge": support / "Microsoft Edge" / "Default" / "History",
            "Brave": support / "BraveSoftware" / "Brave-Browser" / "Default" / "History",
        }
    config_dir = home / ".config"
    return {
        "Chrome": config_dir / "google-chrome" / "Default" / "History",
        "Brave": config_dir / "BraveSoftware" / "Brave-Browser" / "Default" / "History",
    }


def chrome_time_to_datetime(chrome_timestamp: int) -> datetime:
    """Convert a Chrome timestamp to a naive local datetime."""
    utc = _CHROME_EPOCH + timedelta(microseconds=chrome_timestamp)
    return utc.replace(tzinfo=timezone.utc).astimezone().replace(tzinfo=None)


def datetime_to_chrome_time(value: datetime) -> int:
    """Inverse of chrome_time_to_datetime for naive local datetimes."""
    utc = value.astimezone(timezone.utc).replace(tzinfo=None)
    return (utc - _CHROME_EPOCH) // timedelta(microseconds=1)


def parse_search_url(url: str) -> Optional[Tuple[str, str]]:
    """
    Extract a search query from a search-engine URL.

    Returns:
        (query, source) or None if the URL is not a recognised search.
    """
    for source, pattern in SEARCH_PATTERNS:
        match = pattern.search(url)
        if match:
            query = unquote_plus(match.group(1)).strip()
            if query:
                return query, source
    return None


def extract_search_from_title(window_title: str, app_name: str) -> Optional[Tuple[str, str, str]]:
    """
    Recognise a browser search-results window title.

    Args:
        window_title: Foreground window title.
        app_name: Process name of the window's owner.

    Returns:
        (browser, query, source) or None.
    """
    browser = TITLE_SEARCH_BROWSERS.get(app_name.lower().strip())
    if browser is None or not window_title:
        return None
    for source, pattern in TITLE_SEARCH_PATTERNS:
        match = pattern.search(window_title)
        if match and match.group(1).strip():
            return browser, match.group(1).strip(), source
    return None


def get_domain(url: str) -> str:
    try:
        host = urlparse(url).hostname or ""
    except ValueError:
        return ""
    return host[4:] if host.startswith("www.") else host


class BrowserHistoryReader:
    """Reads visited URLs from copies of browser History databases."""

    def __init__(self, history_paths: Dict[str, Path] = None, limit: int = 1000):
        self.history_paths = history_paths if history_paths is not None else get_browser_history_paths()
        self.limit = limit

    def available_browsers(self) -> List[str]:
        return [name for name, path in self.history_paths.items() if path.exists()]

    def read_visits(self, browser: str, since: datetime) -> List[Tuple[str, str, datetime]]:
        """
        Visits newer than `since`, oldest first.

        Returns:
            List of (url, title, visit_time). Empty if the browser's history
            is missing or unreadable.
        """
        source = self.history_paths.get(browser)
        if source is None or not source.exists():
            return []

        cutoff = datetime_to_chrome_time(since)
        with tempfile.TemporaryDirectory(prefix="tracecli_history_") as tmp_dir:
            tmp_db = Path(tmp_dir) / f"{browser}_History"
            try:
                shutil.copyfile(source, tmp_db)
            except OSError as e:
                logger.warning(f"Could not copy {browser} history: {e}")
                return []

            conn = None
            try:
                conn = sqlite3.connect(f"file:{tmp_db}?mode=ro", uri=True)
                rows = conn.execute(
                    """
                    SELECT url, title, last_visit_time
                    FROM urls
                    WHERE last_visit_time > ?
                    ORDER BY last_visit_time DESC
                    LIMIT ?
                    """,
                    (cutoff, self.limit),
                ).fetchall()
            except sqlite3.Error as e:
                logger.warning(f"Could not read {browser} history: {e}")
                return []
            finally:
                if conn is not None:
                    conn.close()

        return [(url, title or "", chrome_time_to_datetime(t)) for url, title, t in reversed(rows)]


class BrowserHistorySync:
    """
    Periodically imports new browser URLs and searches into the store.

    Each browser resumes from the newest visit already stored for it, so
    a visit is imported once. The first sync looks back `initial_lookback`.
    """

    def __init__(
        self,
        store,
        reader: BrowserHistoryReader = None,
        interval_seconds: float = None,
        initial_lookback: timedelta = timedelta(hours=1),
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.store = store
        self.reader = reader or BrowserHistoryReader()
        self.interval_seconds = interval_seconds or config.BROWSER_SYNC_INTERVAL_SECONDS
        self.initial_lookback = initial_lookback
        self._clock = clock
        self._task: Optional[PeriodicTask] = None
        self.total_urls = 0
        self.total_searches = 0

    def start(self) -> None:
        if self._task is None:
            self._task = PeriodicTask("browser-sync", self.interval_seconds, self.sync, run_immediately=True)
        self._task.start()

    def stop(self) -> None:
        if self._task is not None:
            self._task.stop()

    def sync(self) -> int:
        """Import new visits from every available browser. Returns the number of URLs stored."""
        imported = 0
        for browser in self.reader.available_browsers():
            try:
                imported += self._sync_browser(browser)
            except PersistenceError as e:
                logger.error(f"Failed to store {browser} history: {e}")
        if imported:
            logger.debug(f"Imported {imported} browser visits")
        return imported

    def _sync_browser(self, browser: str) -> int:
        since = self.store.get_latest_browser_visit(browser) or (self._clock() - self.initial_lookback)
        urls = []
        searches = []
        for url, title, visited in self.reader.read_visits(browser, since):
            if url.startswith(INTERNAL_URL_PREFIXES):
                continue
            urls.append(BrowserUrl(timestamp=visited, browser=browser, url=url, title=title, domain=get_domain(url)))
            parsed = parse_search_url(url)
            if parsed:
                query, source = parsed
                searches.append(SearchRecord(timestamp=visited, browser=browser, query=query, source=source, url=url))

        if urls:
            self.store.insert_browser_urls(urls, searches)
            self.total_urls += len(urls)
            self.total_searches += len(searches)
        return len(urls)
