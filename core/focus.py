"""
Contextual focus sessions.

FocusEngine locks onto the first non-whitelisted application the user
works in and then classifies every tick:

    WAITING_FOR_CONTEXT  no lock yet (initial state)
    LOCKED_FOCUSED       in the locked app (or a relevant browser tab)
    LOCKED_DISTRACTED    in another app (or an off-goal browser tab)
    NEUTRAL              a whitelisted system app; time is not counted

Focused ticks add to focus_seconds, distracted ticks to
distraction_seconds. A distracted tick whose title differs from the
previous tick's title is one interruption. The run ends when
focus_seconds reaches the target or when stop() is called, and exactly
one FocusSessionRecord is stored.

PomodoroTimer cycles WORK and BREAK phases on the same engine and only
ends on stop().
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Optional, Set

import config
from core.errors import LockConflictError, PersistenceError
from core.scheduler import PeriodicTask
from instance_lock import ExclusiveSessionGuard, FileSessionGuard
from tracking.analytics import focus_score
from tracking.categorizer import is_browser
from tracking.session import FocusSessionRecord

logger = logging.getLogger(__name__)


class FocusStatus(Enum):
    WAITING_FOR_CONTEXT = "waiting_for_context"
    LOCKED_FOCUSED = "focused"
    LOCKED_DISTRACTED = "distracted"
    NEUTRAL = "neutral"


class Phase(Enum):
    WORK = "work"
    BREAK = "break"


@dataclass
class FocusState:
    """Mutable lock state and counters of one run. Owned by its engine."""
    target_minutes: int
    goal_label: str
    status: FocusStatus = FocusStatus.WAITING_FOR_CONTEXT
    phase: Phase = Phase.WORK
    locked_app: Optional[str] = None
    locked_title: Optional[str] = None
    current_app: Optional[str] = None
    last_title: Optional[str] = None
    focus_seconds: float = 0.0
    distraction_seconds: float = 0.0
    interruption_count: int = 0
    phase_elapsed: float = 0.0

    @property
    def target_seconds(self) -> float:
        return self.target_minutes * 60.0

    @property
    def score(self) -> float:
        return focus_score(self.focus_seconds, self.distraction_seconds)

    def reset_counters(self) -> None:
        self.focus_seconds = 0.0
        self.distraction_seconds = 0.0
        self.interruption_count = 0
        self.phase_elapsed = 0.0


def is_whitelisted(app_name: str, whitelist: Iterable[str] = None) -> bool:
    """
    True if the process never counts as focus or distraction.

    Matches case-insensitively, with or without a ".exe" suffix, and any
    process whose name contains "terminal".
    """
    names = config.FOCUS_WHITELIST if whitelist is None else whitelist
    app_lower = app_name.lower().strip()
    if "terminal" in app_lower:
        return True
    stem = app_lower[:-4] if app_lower.endswith(".exe") else app_lower
    return app_lower in names or stem in names or f"{stem}.exe" in names


class FocusEngine:
    """
    Context-lock state machine for one focus run.

    Usage:
        engine = FocusEngine(25, "Write report", oracle=RelevanceOracle(), store=store)
        engine.start()      # raises LockConflictError if another run is active
        engine.wait()       # until the goal is reached or stop() is called
    """

    def __init__(
        self,
        target_minutes: int,
        goal_label: str = None,
        observer=None,
        oracle=None,
        store=None,
        guard: ExclusiveSessionGuard = None,
        clock: Callable[[], datetime] = datetime.now,
        tick_seconds: float = None,
        whitelist: Iterable[str] = None,
        on_update: Optional[Callable[[Dict[str, Any]], None]] = None,
        on_complete: Optional[Callable[[Dict[str, Any]], None]] = None,
    ):
        """
        Args:
            target_minutes: Focus time needed to complete the run.
            goal_label: What the user is working on; also sent to the oracle.
            observer: WindowObserver (defaults to the platform WindowDetector).
            oracle: RelevanceOracle for browser tabs. None disables queries and
                every tab of the locked browser counts as focused.
            store: SessionStore that receives the final record (optional).
            guard: Single-run guard (defaults to a FileSessionGuard).
            clock: Returns the current local time.
            tick_seconds: Tick length; also the time credited per tick.
            whitelist: Process names exempt from classification.
            on_update: Called with snapshot() after every evaluated tick.
            on_complete: Called with snapshot() when the target is reached.
        """
        if target_minutes <= 0:
            raise ValueError("target_minutes must be positive")
        if observer is None:
            from screen.window_detector import WindowDetector
            observer = WindowDetector()

        self.state = FocusState(target_minutes=target_minutes, goal_label=goal_label or config.DEFAULT_FOCUS_GOAL)
        self.observer = observer
        self.oracle = oracle
        self.store = store
        self.guard = guard if guard is not None else FileSessionGuard()
        self._clock = clock
        self.tick_seconds = tick_seconds or config.FOCUS_TICK_SECONDS
        self.whitelist = frozenset(w.lower() for w in whitelist) if whitelist is not None else config.FOCUS_WHITELIST
        self.on_update = on_update
        self.on_complete = on_complete
        self.cache_max = config.RELEVANCE_CACHE_MAX

        self._lock = threading.RLock()
        self._cache_lock = threading.Lock()
        self._relevance_cache: Dict[str, bool] = {}
        self._pending: Set[str] = set()

        self._task: Optional[PeriodicTask] = None
        self._holds_lock = False
        self._running = False
        self._stopped = False
        self._done = threading.Event()
        self._last_lock_refresh: Optional[datetime] = None

        self.start_time: Optional[datetime] = None
        self.end_time: Optional[datetime] = None
        self.record: Optional[FocusSessionRecord] = None

    @property
    def relevance_goal(self) -> str:
        return self.state.goal_label

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, schedule: bool = True) -> None:
        """
        Acquire the single-run guard and begin ticking.

        Args:
            schedule: If False, no background task is started and the caller
                drives tick() directly.

        Raises:
            LockConflictError: another focus or pomodoro run is active.
        """
        if self._running or self._stopped:
            raise RuntimeError("A focus engine can only be started once")

        if not self.guard.acquire():
            raise LockConflictError(self.guard.owner_pid())
        self._holds_lock = True

        self.start_time = self._clock()
        self._last_lock_refresh = self.start_time
        self._running = True
        logger.info(f"Focus run started: {self.state.goal_label} ({self.state.target_minutes} min)")

        if schedule:
            self._task = PeriodicTask("focus", self.tick_seconds, self.tick)
            self._task.start()

    def stop(self) -> Optional[FocusSessionRecord]:
        """
        End the run: stop ticking, release the guard and store the record.

        Safe to call more than once; only the first call has an effect.

        Returns:
            The FocusSessionRecord of this run, or None if it never started.
        """
        with self._lock:
            if self._stopped or not self._running:
                return self.record
            self._stopped = True
            self._running = False
            self.end_time = self._clock()

        if self._task is not None:
            self._task.stop()

        if self._holds_lock:
            self.guard.release()
            self._holds_lock = False

        self.record = self._build_record()
        if self.store is not None:
            try:
                self.store.insert_focus_session(self.record)
            except PersistenceError as e:
                logger.error(f"Failed to store focus session: {e}")

        logger.info(
            f"Focus run ended: {self.record.actual_focus_seconds:.0f}s focused, "
            f"{self.record.interruption_count} interruptions, score {self.record.focus_score:.0f}%"
        )
        self._done.set()
        return self.record

    def stop_ticking(self) -> None:
        """Stop the background tick task. The run stays open until stop()."""
        if self._task is not None:
            self._task.stop()

    def wait(self, timeout: float = None) -> bool:
        """Block until the run ends. Returns False on timeout."""
        return self._done.wait(timeout)

    @property
    def is_running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Ticking
    # ------------------------------------------------------------------

    def _observe(self):
        get_window = getattr(self.observer, "get_active_window", self.observer)
        try:
            return get_window()
        except Exception as e:
            logger.warning(f"Window observation failed: {e}")
            return None

    def tick(self) -> None:
        """Evaluate one observation and credit one tick of time."""
        if not self._running:
            return

        window = self._observe()
        with self._lock:
            if not self._running:
                return
            advanced = self._advance(window)
            finished = advanced and self._after_tick()
            snapshot = self.snapshot() if advanced else None

        if snapshot is not None:
            self._notify(self.on_update, snapshot)

        if finished:
            self.stop()
            self._notify(self.on_complete, self.snapshot())
            return

        # Skipped ticks refresh too, or an idle run would look stale
        self._maybe_refresh_lock()

    def _advance(self, window) -> bool:
        """Apply one observation. Returns False when the tick is skipped."""
        if window is None:
            return False
        self._evaluate(window.app_name, window.window_title)
        return True

    def _evaluate(self, app_name: str, title: str) -> None:
        state = self.state
        state.current_app = app_name

        if is_whitelisted(app_name, self.whitelist):
            state.status = FocusStatus.NEUTRAL
        elif state.locked_app is None:
            state.locked_app = app_name
            state.locked_title = title
            state.status = FocusStatus.LOCKED_FOCUSED
            logger.info(f"Context locked to {app_name}")
        elif app_name.lower() == state.locked_app.lower():
            if is_browser(app_name):
                state.status = self._browser_status(title)
            else:
                state.status = FocusStatus.LOCKED_FOCUSED
        else:
            state.status = FocusStatus.LOCKED_DISTRACTED

        if state.status == FocusStatus.LOCKED_FOCUSED:
            state.focus_seconds += self.tick_seconds
        elif state.status == FocusStatus.LOCKED_DISTRACTED:
            state.distraction_seconds += self.tick_seconds
            if title != state.last_title:
                state.interruption_count += 1

        state.last_title = title

    def _after_tick(self) -> bool:
        """Returns True when the run is complete."""
        return self.state.focus_seconds >= self.state.target_seconds

    @staticmethod
    def _notify(callback, *args) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as e:
            logger.debug(f"Focus callback error: {e}")

    def _maybe_refresh_lock(self) -> None:
        if not self._holds_lock:
            return
        now = self._clock()
        if self._last_lock_refresh is None or now - self._last_lock_refresh >= timedelta(
            seconds=config.FOCUS_LOCK_REFRESH_SECONDS
        ):
            self.guard.refresh()
            self._last_lock_refresh = now

    # ------------------------------------------------------------------
    # Browser relevance
    # ------------------------------------------------------------------

    def _browser_status(self, title: str) -> FocusStatus:
        """Cached verdict for a tab title; optimistic FOCUSED while unknown."""
        issue_query = False
        with self._cache_lock:
            cached = self._relevance_cache.get(title)
            if cached is not None:
                return FocusStatus.LOCKED_FOCUSED if cached else FocusStatus.LOCKED_DISTRACTED
            if self.oracle is not None and title not in self._pending:
                if len(self._relevance_cache) > self.cache_max:
                    self._relevance_cache.clear()
                self._pending.add(title)
                issue_query = True

        if issue_query:
            logger.debug(f"Checking relevance of tab: {title[:60]}")
            self.oracle.check_relevance_async(self.relevance_goal, title, self._on_verdict)
        return FocusStatus.LOCKED_FOCUSED

    def _on_verdict(self, title: str, relevant: bool) -> None:
        with self._cache_lock:
            self._relevance_cache[title] = relevant
            self._pending.discard(title)

    def cached_verdict(self, title: str) -> Optional[bool]:
        with self._cache_lock:
            return self._relevance_cache.get(title)

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    @property
    def score(self) -> float:
        return self.state.score

    def _elapsed(self) -> float:
        if self.start_time is None:
            return 0.0
        end = self.end_time or self._clock()
        return max(0.0, (end - self.start_time).total_seconds())

    def _remaining(self) -> float:
        return max(0.0, self.state.target_seconds - self.state.focus_seconds)

    def snapshot(self) -> Dict[str, Any]:
        """Current state for rendering."""
        with self._lock:
            state = self.state
            return {
                "status": state.status.value,
                "phase": state.phase.value,
                "goal": state.goal_label,
                "locked_app": state.locked_app,
                "current_app": state.current_app,
                "elapsed": self._elapsed(),
                "target": state.target_seconds,
                "remaining": self._remaining(),
                "focus_seconds": state.focus_seconds,
                "distraction_seconds": state.distraction_seconds,
                "interruptions": state.interruption_count,
                "score": state.score,
            }

    def _build_record(self) -> FocusSessionRecord:
        state = self.state
        return FocusSessionRecord(
            start_time=self.start_time,
            end_time=self.end_time,
            target_minutes=state.target_minutes,
            actual_focus_seconds=state.focus_seconds,
            distraction_seconds=state.distraction_seconds,
            interruption_count=state.interruption_count,
            focus_score=state.score,
            goal_label=state.goal_label,
        )


class PomodoroTimer(FocusEngine):
    """
    Work/break cycles on top of the focus engine.

    WORK phases run the context lock as usual; BREAK phases just count
    down. Every `long_break_every`-th completed work phase is followed by
    a long break. Counters reset at each phase change, and the context
    lock is kept. The run ends only on stop(); the stored record carries
    the totals of all work phases.
    """

    WORK_LABEL = "Pomodoro Work"
    SHORT_BREAK_LABEL = "Short Break"
    LONG_BREAK_LABEL = "Long Break"

    def __init__(
        self,
        work_minutes: int = None,
        short_break_minutes: int = None,
        long_break_minutes: int = None,
        long_break_every: int = None,
        goal: str = None,
        on_phase_change: Optional[Callable[[Phase, str], None]] = None,
        **kwargs,
    ):
        """
        Args:
            work_minutes: Length of a work phase.
            short_break_minutes: Length of a regular break.
            long_break_minutes: Length of every long_break_every-th break.
            long_break_every: Work phases per long break.
            goal: Optional goal used for browser relevance checks.
            on_phase_change: Called as on_phase_change(phase, label) at each boundary.
            **kwargs: Passed to FocusEngine (observer, oracle, store, guard, ...).
        """
        self.work_minutes = work_minutes or config.POMODORO_WORK_MINUTES
        self.short_break_minutes = short_break_minutes or config.POMODORO_SHORT_BREAK_MINUTES
        self.long_break_minutes = long_break_minutes or config.POMODORO_LONG_BREAK_MINUTES
        self.long_break_every = long_break_every or config.POMODORO_LONG_BREAK_EVERY
        super().__init__(self.work_minutes, self.WORK_LABEL, **kwargs)
        self.goal = goal
        self.on_phase_change = on_phase_change

        self.completed_work_phases = 0
        self._total_focus = 0.0
        self._total_distraction = 0.0
        self._total_interruptions = 0

    @property
    def relevance_goal(self) -> str:
        return self.goal or self.state.goal_label

    def _advance(self, window) -> bool:
        if self.state.phase == Phase.BREAK:
            self.state.phase_elapsed += self.tick_seconds
            self.state.status = FocusStatus.NEUTRAL
            if window is not None:
                self.state.current_app = window.app_name
                self.state.last_title = window.window_title
            return True
        return super()._advance(window)

    def _after_tick(self) -> bool:
        state = self.state
        if state.phase == Phase.WORK and state.focus_seconds >= state.target_seconds:
            self._bank_work_totals()
            self.completed_work_phases += 1
            if self.completed_work_phases % self.long_break_every == 0:
                self._enter_phase(Phase.BREAK, self.long_break_minutes, self.LONG_BREAK_LABEL)
            else:
                self._enter_phase(Phase.BREAK, self.short_break_minutes, self.SHORT_BREAK_LABEL)
        elif state.phase == Phase.BREAK and state.phase_elapsed >= state.target_seconds:
            self._enter_phase(Phase.WORK, self.work_minutes, self.WORK_LABEL)
        return False

    def _bank_work_totals(self) -> None:
        self._total_focus += self.state.focus_seconds
        self._total_distraction += self.state.distraction_seconds
        self._total_interruptions += self.state.interruption_count

    def _enter_phase(self, phase: Phase, minutes: int, label: str) -> None:
        state = self.state
        state.phase = phase
        state.target_minutes = minutes
        state.goal_label = label
        state.reset_counters()
        if phase == Phase.WORK:
            # Re-evaluated on the next observation
            state.status = FocusStatus.WAITING_FOR_CONTEXT if state.locked_app is None else FocusStatus.LOCKED_FOCUSED
        logger.info(f"Pomodoro phase: {label} ({minutes} min)")
        self._notify(self.on_phase_change, phase, label)

    def _remaining(self) -> float:
        if self.state.phase == Phase.BREAK:
            return max(0.0, self.state.target_seconds - self.state.phase_elapsed)
        return super()._remaining()

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            snap = super().snapshot()
            snap["completed_work_phases"] = self.completed_work_phases
            return snap

    def _build_record(self) -> FocusSessionRecord:
        focus = self._total_focus
        distraction = self._total_distraction
        interruptions = self._total_interruptions
        if self.state.phase == Phase.WORK:
            focus += self.state.focus_seconds
            distraction += self.state.distraction_seconds
            interruptions += self.state.interruption_count
        return FocusSessionRecord(
            start_time=self.start_time,
            end_time=self.end_time,
            target_minutes=self.work_minutes,
            actual_focus_seconds=focus,
            distraction_seconds=distraction,
            interruption_count=interruptions,
            focus_score=focus_score(focus, distraction),
            goal_label=self.WORK_LABEL,
        )
