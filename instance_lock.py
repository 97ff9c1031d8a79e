"""
Focus Lock - Prevents more than one focus or pomodoro run at a time.

Two guards share the same contract:
- FileSessionGuard: a lock file at a fixed location holding the owner's PID.
  Works across processes. A lock whose file has not been touched for
  FOCUS_LOCK_STALE_SECONDS (one hour by default), or whose owner process
  is gone, is treated as abandoned and reclaimed.
- InMemorySessionGuard: the same semantics inside one long-running process.

The holder calls refresh() periodically so a long run keeps its lock fresh.
"""

import os
import time
import logging
import threading
from pathlib import Path
from typing import Callable, Optional

import psutil

import config

logger = logging.getLogger(__name__)


def _is_process_running(pid: int) -> bool:
    """True if a process with this PID exists (zombies count as gone)."""
    if pid <= 0:
        return False
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        # Exists but belongs to another user
        return True


class ExclusiveSessionGuard:
    """
    Interface for single-run exclusion.

    acquire() returns True when the caller now owns the guard and False
    when another live, non-stale owner holds it.
    """

    def acquire(self) -> bool:
        raise NotImplementedError

    def release(self) -> None:
        raise NotImplementedError

    def refresh(self) -> None:
        """Mark the held guard as still in use."""

    def owner_pid(self) -> Optional[int]:
        return None

    def is_acquired(self) -> bool:
        raise NotImplementedError

    def __enter__(self):
        """Context manager entry."""
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit - release lock."""
        self.release()
        return False


class FileSessionGuard(ExclusiveSessionGuard):
    """
    Lock file guard.

    The file is created atomically (O_CREAT | O_EXCL) and holds the owner's
    PID. Its modification time is the heartbeat used for staleness.

    Usage:
        guard = FileSessionGuard()
        if not guard.acquire():
            print("Another focus session is already running")
            sys.exit(1)
        # ... run focus session ...
        guard.release()
    """

    def __init__(
        self,
        lock_file: Path = None,
        stale_seconds: float = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the guard.

        Args:
            lock_file: Path to lock file (default: config.FOCUS_LOCK_FILE)
            stale_seconds: Age after which a lock is abandoned
                (default: config.FOCUS_LOCK_STALE_SECONDS)
            clock: Wall clock in epoch seconds, compared against file mtime.
        """
        self.lock_file = Path(lock_file) if lock_file else config.FOCUS_LOCK_FILE
        self.stale_seconds = config.FOCUS_LOCK_STALE_SECONDS if stale_seconds is None else stale_seconds
        self._clock = clock
        self._acquired = False

    def _try_create(self) -> bool:
        """Create the lock file with our PID. Returns False if it already exists."""
        try:
            fd = os.open(str(self.lock_file), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        except OSError as e:
            logger.error(f"Failed to create lock file {self.lock_file}: {e}")
            return False
        try:
            os.write(fd, str(os.getpid()).encode('utf-8'))
        finally:
            os.close(fd)
        return True

    def _read_pid(self) -> Optional[int]:
        try:
            content = self.lock_file.read_text().strip()
        except OSError:
            return None
        return int(content) if content.isdigit() else None

    def _check_and_clean_stale_lock(self) -> bool:
        """
        Check if the existing lock is stale. If stale, remove it.

        Returns:
            True if a stale lock was cleaned up, False otherwise.
        """
        try:
            age = self._clock() - self.lock_file.stat().st_mtime
        except FileNotFoundError:
            # Released between our create attempt and now
            return True
        except OSError as e:
            logger.debug(f"Error checking stale lock: {e}")
            return False

        old_pid = self._read_pid()
        if age > self.stale_seconds:
            reason = f"older than {self.stale_seconds:.0f}s"
        elif old_pid is not None and old_pid != os.getpid() and not _is_process_running(old_pid):
            reason = f"owner process {old_pid} is not running"
        else:
            logger.debug(f"Focus lock held by PID {old_pid} ({age:.0f}s old)")
            return False

        logger.info(f"Removing stale focus lock ({reason})")
        try:
            self.lock_file.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Failed to remove stale lock file: {e}")
            return False
        return True

    def acquire(self) -> bool:
        """
        Try to acquire the focus lock.

        Returns:
            True if lock acquired (no other run active)
            False if another run holds a fresh lock
        """
        if self._acquired:
            return False

        try:
            self.lock_file.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.error(f"Cannot create lock directory {self.lock_file.parent}: {e}")
            return False

        if self._try_create():
            self._acquired = True
            logger.debug(f"Focus lock acquired (PID: {os.getpid()})")
            return True

        if self._check_and_clean_stale_lock() and self._try_create():
            self._acquired = True
            logger.info("Focus lock acquired after cleaning stale lock")
            return True

        return False

    def release(self) -> None:
        """Release the lock and remove the lock file if it is still ours."""
        if not self._acquired:
            return
        self._acquired = False
        try:
            if self._read_pid() == os.getpid():
                self.lock_file.unlink()
            logger.debug("Focus lock released")
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Error releasing focus lock: {e}")

    def refresh(self) -> None:
        """Touch the lock file so it is not considered stale."""
        if not self._acquired:
            return
        now = self._clock()
        try:
            os.utime(self.lock_file, (now, now))
        except OSError as e:
            logger.warning(f"Failed to refresh focus lock: {e}")

    def owner_pid(self) -> Optional[int]:
        """PID recorded in the lock file, or None if absent or unreadable."""
        if not self.lock_file.exists():
            return None
        return self._read_pid()

    def is_acquired(self) -> bool:
        """Check if lock is currently held by this guard."""
        return self._acquired


class _MemorySlot:
    """The single run slot shared by in-memory guards."""

    def __init__(self):
        self.lock = threading.Lock()
        self.holder: Optional["InMemorySessionGuard"] = None
        self.held_since: Optional[float] = None


class InMemorySessionGuard(ExclusiveSessionGuard):
    """
    Guard for a long-running daemon that hosts several runs in one process.

    Each engine gets its own guard; guards made with share() compete for
    the same slot. Only the guard currently holding the slot can refresh
    or release it, so a late release from a reclaimed holder is a no-op.
    """

    def __init__(
        self,
        stale_seconds: float = None,
        clock: Callable[[], float] = time.monotonic,
        slot: _MemorySlot = None,
    ):
        self.stale_seconds = config.FOCUS_LOCK_STALE_SECONDS if stale_seconds is None else stale_seconds
        self._clock = clock
        self._slot = slot or _MemorySlot()

    def share(self) -> "InMemorySessionGuard":
        """Another guard competing for the same slot."""
        return InMemorySessionGuard(self.stale_seconds, self._clock, self._slot)

    def acquire(self) -> bool:
        slot = self._slot
        with slot.lock:
            now = self._clock()
            if slot.holder is not None:
                if now - slot.held_since <= self.stale_seconds:
                    return False
                logger.info("Reclaiming stale in-memory focus lock")
            slot.holder = self
            slot.held_since = now
            return True

    def release(self) -> None:
        slot = self._slot
        with slot.lock:
            if slot.holder is self:
                slot.holder = None
                slot.held_since = None

    def refresh(self) -> None:
        slot = self._slot
        with slot.lock:
            if slot.holder is self:
                slot.held_since = self._clock()

    def owner_pid(self) -> Optional[int]:
        return os.getpid() if self._slot.holder is not None else None

    def is_acquired(self) -> bool:
        return self._slot.holder is self


def get_existing_pid(lock_file: Path = None) -> Optional[int]:
    """
    Try to read the PID of an existing focus run from the lock file.

    Returns:
        PID of existing run, or None if not readable
    """
    return FileSessionGuard(lock_file).owner_pid()
