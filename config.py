"""Configuration settings for TraceCLI."""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict

from dotenv import load_dotenv


def get_base_dir() -> Path:
    """Get the directory containing this file (the project root)."""
    return Path(__file__).parent


def get_user_data_dir() -> Path:
    """
    Get the directory for user-writable data (database, lock, rules).

    TRACE_DATA_DIR overrides the default of ~/.tracecli. The directory is
    not created here; writers create it on first use.

    Returns:
        Path to the user data directory.
    """
    override = os.getenv("TRACE_DATA_DIR", "")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".tracecli"


def _get_int(name: str, default: int) -> int:
    """Read an integer environment variable, falling back on bad values."""
    raw = os.getenv(name, "")
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logging.getLogger(__name__).warning(
            f"{name}={raw!r} is not an integer, using {default}"
        )
        return default


# Load environment variables from the project root .env
# This ensures .env is found regardless of current working directory
load_dotenv(get_base_dir() / ".env")

BASE_DIR = get_base_dir()
USER_DATA_DIR = get_user_data_dir()

# Paths
DB_PATH = USER_DATA_DIR / "trace.db"
FOCUS_LOCK_FILE = USER_DATA_DIR / "focus.lock"
RULES_PATH = USER_DATA_DIR / "user_rules.json"

# Activity tracking
POLL_INTERVAL_MS = _get_int("POLL_INTERVAL_MS", 1000)
MIN_SESSION_SECONDS = _get_int("MIN_SESSION_SECONDS", 2)
RESOURCE_REFRESH_PROBABILITY = 0.1  # Chance per unchanged tick to refresh memory/cpu

# Resource sampling
SAMPLER_INTERVAL_SECONDS = _get_int("SAMPLER_INTERVAL_SECONDS", 30)
SAMPLER_TOP_N = _get_int("SAMPLER_TOP_N", 50)

# Browser history sync
BROWSER_SYNC_ENABLED = os.getenv("BROWSER_SYNC_ENABLED", "true").lower() in ("true", "1", "yes")
BROWSER_SYNC_INTERVAL_SECONDS = _get_int("BROWSER_SYNC_INTERVAL_SECONDS", 300)

# Focus sessions
FOCUS_TICK_SECONDS = 1
FOCUS_LOCK_STALE_SECONDS = _get_int("FOCUS_LOCK_STALE_SECONDS", 60 * 60)
FOCUS_LOCK_REFRESH_SECONDS = 60  # Holder touches the lock file this often
RELEVANCE_CACHE_MAX = 50
DEFAULT_FOCUS_GOAL = "Deep Work"

# Pomodoro
POMODORO_WORK_MINUTES = 25
POMODORO_SHORT_BREAK_MINUTES = 5
POMODORO_LONG_BREAK_MINUTES = 15
POMODORO_LONG_BREAK_EVERY = 4

# Processes that never count as focus or distraction
FOCUS_WHITELIST = frozenset({
    "explorer.exe", "searchhost.exe", "shellexperiencehost.exe", "taskmgr.exe",
    "cmd.exe", "powershell.exe", "windowsterminal.exe", "wt.exe",
    "windows command processor", "windows explorer", "task manager", "system settings",
    "tracecli", "terminal", "powershell", "cmd", "system",
    "finder", "loginwindow", "system preferences", "activity monitor", "iterm2",
})

# AI Configuration
# Options: "openai" or "gemini"
AI_PROVIDER = os.getenv("AI_PROVIDER", "gemini").lower()
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
GEMINI_API_KEY = os.getenv("GEMINI_API_KEY", "")
GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-2.0-flash")
AI_REQUEST_TIMEOUT = 30.0
AI_MAX_RETRIES = 3
AI_RETRY_DELAY = 1  # Seconds, doubled per attempt

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")  # Can override in .env: DEBUG, INFO, WARNING, ERROR
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_FILE = os.getenv("LOG_FILE", "")  # Empty means console only


# --- User categorization rules ---

DEFAULT_RULES: Dict[str, list] = {
    "productive_processes": [],
    "distraction_processes": [],
    "productive_keywords": [],
    "distraction_keywords": [],
}


def load_rules(path: Path = None) -> Dict[str, Any]:
    """
    Load user categorization rules, merged over the defaults.

    Args:
        path: Rules file (defaults to RULES_PATH).

    Returns:
        Dict with the four rule lists. Missing or corrupt files yield defaults.
    """
    path = path or RULES_PATH
    rules = {key: list(value) for key, value in DEFAULT_RULES.items()}
    if not path.exists():
        return rules
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        logging.getLogger(__name__).warning(f"Failed to load rules from {path}: {e}")
        return rules
    for key in DEFAULT_RULES:
        values = data.get(key)
        if isinstance(values, list):
            rules[key] = [str(v) for v in values]
    return rules


def save_rules(rules: Dict[str, Any], path: Path = None) -> None:
    """
    Save user categorization rules atomically (temp file, then replace).

    Args:
        rules: Rules dict as returned by load_rules().
        path: Rules file (defaults to RULES_PATH).
    """
    path = path or RULES_PATH
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_fd, temp_path = tempfile.mkstemp(suffix=".tmp", prefix="user_rules_", dir=path.parent)
    try:
        with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
            json.dump(rules, f, indent=4)
        os.replace(temp_path, path)
    except Exception:
        try:
            os.unlink(temp_path)
        except OSError:
            pass
        raise
