"""
Rule-based categorization of (app, window title) pairs.

Everything here is a pure function of its inputs: no I/O, no state.
User rules (see config.load_rules) are passed in explicitly.
"""

import re
from typing import Dict, List, Optional

# Categories
DEVELOPMENT = "Development"
BROWSING = "Browsing"
RESEARCH = "Research"
COMMUNICATION = "Communication"
PRODUCTIVITY = "Productivity"
DISTRACTION = "Distraction"
OTHER = "Other"

CATEGORIES = (DEVELOPMENT, BROWSING, RESEARCH, COMMUNICATION, PRODUCTIVITY, DISTRACTION, OTHER)
PRODUCTIVE_CATEGORIES = frozenset({DEVELOPMENT, RESEARCH, PRODUCTIVITY})
DISTRACTION_CATEGORIES = frozenset({DISTRACTION})

CATEGORY_EMOJI = {
    DEVELOPMENT: "💻",
    BROWSING: "🌐",
    RESEARCH: "📚",
    COMMUNICATION: "💬",
    PRODUCTIVITY: "📝",
    DISTRACTION: "🎮",
    OTHER: "❓",
}

DEV_PROCESSES = frozenset({
    "code.exe", "code - insiders.exe", "idea64.exe", "webstorm64.exe", "pycharm64.exe",
    "windowsterminal.exe", "powershell.exe", "cmd.exe", "wt.exe", "terminal.exe",
    "code", "pycharm", "intellij idea", "webstorm", "xcode", "terminal", "iterm2",
    "sublime_text.exe", "sublime text", "cursor", "cursor.exe",
})

BROWSER_PROCESSES = frozenset({
    "chrome.exe", "msedge.exe", "firefox.exe", "brave.exe", "opera.exe", "vivaldi.exe", "arc.exe",
    "google chrome", "microsoft edge", "firefox", "brave browser", "opera", "vivaldi", "arc", "safari",
})

# Substrings that mark a process as browser-class even when not listed above
BROWSER_MARKERS = ("chrome", "edge", "firefox", "browser")

COMMUNICATION_PROCESSES = frozenset({
    "slack.exe", "discord.exe", "teams.exe", "zoom.exe", "skype.exe", "thunderbird.exe",
    "outlook.exe", "telegram.exe", "signal.exe",
    "slack", "microsoft teams", "zoom.us", "mail", "messages", "telegram", "signal",
})

PRODUCTIVITY_PROCESSES = frozenset({
    "winword.exe", "excel.exe", "powerpnt.exe", "onenote.exe", "notion.exe", "obsidian.exe",
    "typora.exe", "figma.exe", "acrobat.exe", "acrord32.exe",
    "microsoft word", "microsoft excel", "microsoft powerpoint", "notion", "obsidian",
    "figma", "pages", "numbers", "keynote",
})

DISTRACTION_PROCESSES = frozenset({
    "spotify.exe", "vlc.exe", "wmplayer.exe", "netflix.exe", "steam.exe",
    "epicgameslauncher.exe", "battle.net.exe", "tiktok.exe", "whatsapp.exe",
    "spotify", "vlc", "steam", "music", "tv", "whatsapp",
})

RESEARCH_PATTERNS = [
    re.compile(p, re.IGNORECASE) for p in (
        r"stack\s*overflow", r"github\.com", r"documentation", r"\bdocs\b", r"pypi\.org",
        r"npmjs\.com", r"chatgpt", r"claude", r"google\..*search",
    )
]

DISTRACTION_PATTERNS = [
    re.compile(p, re.IGNORECASE) for p in (
        r"youtube", r"netflix", r"twitch\.tv", r"\breddit\b", r"twitter|x\.com",
        r"facebook", r"instagram", r"discord",
    )
]

APP_ROLES = {
    "code.exe": "Text Editor & IDE (Visual Studio Code)",
    "chrome.exe": "Web Browser (Google Chrome)",
    "msedge.exe": "Web Browser (Microsoft Edge)",
    "firefox.exe": "Web Browser (Mozilla Firefox)",
    "slack.exe": "Team Messaging (Slack)",
    "discord.exe": "Chat & Voice (Discord)",
    "spotify.exe": "Music Streaming (Spotify)",
    "explorer.exe": "File Manager (Windows Explorer)",
    "taskmgr.exe": "System Monitor (Task Manager)",
}


def _matches_any(value: str, needles: List[str]) -> bool:
    value = value.lower()
    return any(n and n.lower() in value for n in needles)


def is_browser(app_name: str) -> bool:
    """True if the process is browser-class."""
    app_lower = app_name.lower().strip()
    return app_lower in BROWSER_PROCESSES or any(m in app_lower for m in BROWSER_MARKERS)


def categorize(app_name: str, window_title: str, rules: Optional[Dict[str, List[str]]] = None) -> str:
    """
    Map an (app, title) pair to a category.

    User rules are checked first: a distraction match wins over a productive
    match. Then built-in process lists, then title patterns for browsers.

    Args:
        app_name: Process name as reported by the window observer.
        window_title: Foreground window title.
        rules: Optional user rules dict (see config.DEFAULT_RULES).

    Returns:
        One of CATEGORIES.
    """
    app_lower = app_name.lower().strip()
    title = window_title or ""

    if rules:
        distraction_procs = [p.lower() for p in rules.get("distraction_processes", [])]
        productive_procs = [p.lower() for p in rules.get("productive_processes", [])]
        if app_lower in distraction_procs or _matches_any(title, rules.get("distraction_keywords", [])):
            return DISTRACTION
        if app_lower in productive_procs or _matches_any(title, rules.get("productive_keywords", [])):
            return PRODUCTIVITY

    if app_lower in DEV_PROCESSES:
        return DEVELOPMENT

    if is_browser(app_lower):
        for pattern in DISTRACTION_PATTERNS:
            if pattern.search(title):
                return DISTRACTION
        for pattern in RESEARCH_PATTERNS:
            if pattern.search(title):
                return RESEARCH
        return BROWSING

    if app_lower in COMMUNICATION_PROCESSES:
        return COMMUNICATION
    if app_lower in PRODUCTIVITY_PROCESSES:
        return PRODUCTIVITY
    if app_lower in DISTRACTION_PROCESSES:
        return DISTRACTION

    return OTHER


def is_productive(category: str) -> bool:
    return category in PRODUCTIVE_CATEGORIES


def is_distraction(category: str) -> bool:
    return category in DISTRACTION_CATEGORIES


def get_app_role(app_name: str) -> str:
    """Human-readable role of an application, e.g. "Web Browser"."""
    app_lower = app_name.lower().strip()
    if app_lower in APP_ROLES:
        return APP_ROLES[app_lower]

    if app_lower in DEV_PROCESSES:
        return "Development Tool"
    if is_browser(app_lower):
        return "Web Browser"
    if app_lower in COMMUNICATION_PROCESSES:
        return "Communication App"
    if app_lower in PRODUCTIVITY_PROCESSES:
        return "Productivity App"
    if app_lower in DISTRACTION_PROCESSES:
        return "Entertainment / Media"

    return "Application" if app_lower.endswith(".exe") else "Unknown Process"


def get_category_emoji(category: str) -> str:
    return CATEGORY_EMOJI.get(category, CATEGORY_EMOJI[OTHER])
