"""
Foreground window observation.

WindowDetector is the default WindowObserver: it reports the focused
application, its window title and its process ID.

Backends:
- macOS: AppleScript (System Events) via osascript
- Windows: user32 through ctypes, psutil for the process name
- Linux/X11: xdotool, psutil for the process name

get_active_window() returns None when there simply is no foreground
window (locked screen, empty desktop) and raises CapabilityUnavailable
when the platform query itself fails.
"""

import os
import sys
import shutil
import subprocess
import logging
from typing import Optional
from dataclasses import dataclass

import psutil

from core.errors import CapabilityUnavailable
from tracking.categorizer import is_browser

logger = logging.getLogger(__name__)

QUERY_TIMEOUT_SECONDS = 2
_FIELD_SEPARATOR = "|||"

_MACOS_SCRIPT = f'''
tell application "System Events"
    set frontApp to first application process whose frontmost is true
    set appName to name of frontApp
    set appPid to unix id of frontApp
    try
        set windowTitle to name of front window of frontApp
    on error
        set windowTitle to ""
    end try
    return appName & "{_FIELD_SEPARATOR}" & appPid & "{_FIELD_SEPARATOR}" & windowTitle
end tell
'''

# osascript stderr fragments that mean Accessibility/Automation is not granted
_MACOS_PERMISSION_MARKERS = ("not allowed", "assistive", "-10827", "-1743")

# xdotool stderr when the X server itself is unreachable
_X11_DISPLAY_MARKERS = ("can't open display", "cannot open display")


@dataclass(frozen=True)
class WindowInfo:
    """Identity of the foreground window."""
    app_name: str
    window_title: str
    pid: int = 0
    url: str = ""
    is_browser: bool = False


def parse_osascript_output(output: str) -> Optional[WindowInfo]:
    """
    Parse "app|||pid|||title" as printed by the macOS script.

    The title is the last field and may itself contain the separator.
    """
    parts = output.strip().split(_FIELD_SEPARATOR, 2)
    if not parts[0]:
        return None
    app_name = parts[0]
    pid = int(parts[1]) if len(parts) > 1 and parts[1].strip().isdigit() else 0
    title = parts[2] if len(parts) > 2 else ""
    return _window(app_name, title, pid)


def _window(app_name: str, title: str, pid: int) -> WindowInfo:
    return WindowInfo(app_name=app_name, window_title=title, pid=pid, is_browser=is_browser(app_name))


def _process_name(pid: int) -> str:
    """Executable name for a PID (e.g. "chrome.exe"), "Unknown" if unavailable."""
    try:
        return psutil.Process(pid).name()
    except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess) as e:
        logger.debug(f"Could not get process name for {pid}: {e}")
        return "Unknown"


class WindowDetector:
    """
    Platform-native WindowObserver.

    Instances are callable, so a detector can be passed wherever a plain
    `() -> WindowInfo | None` function is expected.
    """

    def __init__(self, platform: str = None):
        """
        Args:
            platform: sys.platform value to use (defaults to the running platform).
        """
        self.platform = platform or sys.platform
        self._has_permission: Optional[bool] = None

    def __call__(self) -> Optional[WindowInfo]:
        return self.get_active_window()

    def get_active_window(self) -> Optional[WindowInfo]:
        """
        Query the foreground window.

        Returns:
            WindowInfo, or None if no window currently has focus.

        Raises:
            CapabilityUnavailable: the platform query failed or is not permitted.
        """
        if self.platform == "darwin":
            query = self._query_macos
        elif self.platform == "win32":
            query = self._query_windows
        elif self.platform.startswith("linux"):
            query = self._query_x11
        else:
            raise CapabilityUnavailable(f"Window detection is not supported on {self.platform}")

        try:
            info = query()
        except subprocess.TimeoutExpired as e:
            raise CapabilityUnavailable(f"Window query timed out: {e}") from e
        except OSError as e:
            raise CapabilityUnavailable(f"Window query failed: {e}") from e

        self._has_permission = True
        return info

    def _run(self, args) -> subprocess.CompletedProcess:
        return subprocess.run(args, capture_output=True, text=True, timeout=QUERY_TIMEOUT_SECONDS)

    def _query_macos(self) -> Optional[WindowInfo]:
        result = self._run(["osascript", "-e", _MACOS_SCRIPT])
        if result.returncode != 0:
            stderr = result.stderr.strip()
            if any(marker in stderr.lower() for marker in _MACOS_PERMISSION_MARKERS):
                self._has_permission = False
                raise CapabilityUnavailable(f"Accessibility permission required: {stderr}")
            raise CapabilityUnavailable(f"AppleScript failed with code {result.returncode}: {stderr}")
        return parse_osascript_output(result.stdout)

    def _query_windows(self) -> Optional[WindowInfo]:
        import ctypes
        from ctypes import wintypes

        user32 = ctypes.windll.user32
        hwnd = user32.GetForegroundWindow()
        if not hwnd:
            # Locked screen or secure desktop
            return None

        length = user32.GetWindowTextLengthW(hwnd)
        buffer = ctypes.create_unicode_buffer(length + 1)
        user32.GetWindowTextW(hwnd, buffer, length + 1)

        pid = wintypes.DWORD()
        user32.GetWindowThreadProcessId(hwnd, ctypes.byref(pid))
        return _window(_process_name(pid.value), buffer.value, pid.value)

    def _query_x11(self) -> Optional[WindowInfo]:
        if shutil.which("xdotool") is None:
            raise CapabilityUnavailable("xdotool is not installed")
        if not os.environ.get("DISPLAY"):
            raise CapabilityUnavailable("No X display (DISPLAY is not set)")

        title = self._run(["xdotool", "getactivewindow", "getwindowname"])
        if title.returncode != 0:
            stderr = title.stderr.strip()
            if any(marker in stderr.lower() for marker in _X11_DISPLAY_MARKERS):
                raise CapabilityUnavailable(f"X display unavailable: {stderr}")
            # No active window, e.g. a bare desktop
            logger.debug(f"xdotool: {stderr}")
            return None

        pid_result = self._run(["xdotool", "getactivewindow", "getwindowpid"])
        pid_text = pid_result.stdout.strip()
        pid = int(pid_text) if pid_result.returncode == 0 and pid_text.isdigit() else 0
        app_name = _process_name(pid) if pid else "Unknown"
        return _window(app_name, title.stdout.rstrip("\n"), pid)

    def check_permission(self) -> bool:
        """
        Probe the platform once and report whether window queries work.

        Returns:
            True if a query succeeded, False otherwise.
        """
        if self._has_permission is not None:
            return self._has_permission
        try:
            window = self.get_active_window()
        except CapabilityUnavailable as e:
            logger.warning(f"Window tracking unavailable: {e}")
            self._has_permission = False
            return False

        if window:
            logger.debug(f"Permission check passed, got window: {window.app_name}")
        return True

    def get_permission_instructions(self) -> str:
        """
        Get instructions for enabling window tracking.

        Returns:
            Platform-specific instructions string.
        """
        if self.platform == "darwin":
            return (
                "Window tracking requires TWO permissions:\n\n"
                "1. ACCESSIBILITY permission:\n"
                "   • System Settings → Privacy & Security → Accessibility\n"
                "   • Add your terminal app and enable the checkbox\n\n"
                "2. AUTOMATION permission (System Events):\n"
                "   • System Settings → Privacy & Security → Automation\n"
                "   • Enable 'System Events' under your terminal app\n\n"
                "After enabling, restart tracecli."
            )
        elif self.platform == "win32":
            return (
                "Window tracking should work automatically on Windows.\n"
                "If you're having issues, try running as Administrator."
            )
        elif self.platform.startswith("linux"):
            return (
                "Window tracking on Linux needs an X11 session and xdotool:\n"
                "   sudo apt install xdotool   (or your distribution's equivalent)"
            )
        else:
            return f"Window tracking is not supported on {self.platform}"
