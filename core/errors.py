"""Exception types shared by the tracking and focus components."""

from typing import Optional


class TraceError(Exception):
    """Base class for TraceCLI errors."""


class CapabilityUnavailable(TraceError):
    """A window or process query could not be answered."""


class PersistenceError(TraceError):
    """A database operation failed."""


class OracleUnavailable(TraceError):
    """The AI provider is not configured or could not be reached."""


class LockConflictError(TraceError):
    """Another focus or pomodoro run holds the session lock."""

    def __init__(self, owner_pid: Optional[int] = None):
        self.owner_pid = owner_pid
        pid_info = f" (PID: {owner_pid})" if owner_pid else ""
        super().__init__(f"Another focus or pomodoro session is already running{pid_info}")
