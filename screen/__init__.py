"""Foreground window observation."""

from screen.window_detector import WindowDetector, WindowInfo

__all__ = ["WindowDetector", "WindowInfo"]
