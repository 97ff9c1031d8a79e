"""
System and process telemetry.

ResourceSampler takes a snapshot every SAMPLER_INTERVAL_SECONDS: system
memory/CPU plus the top-N processes by resident memory, written to the
store in one batch. SessionTracker also uses it for single-PID lookups.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional

import psutil

import config
from core.errors import PersistenceError
from core.scheduler import PeriodicTask

logger = logging.getLogger(__name__)

_MB = 1024 * 1024
_GB = 1024 ** 3


@dataclass(frozen=True)
class ProcessInfo:
    pid: int
    app_name: str
    memory_mb: float
    cpu_percent: float
    status: str = "running"
    num_threads: int = 0


@dataclass(frozen=True)
class SystemInfo:
    total_ram_gb: float
    used_ram_gb: float
    ram_percent: float
    cpu_percent: float
    cpu_count: int
    disk_used_gb: float = 0.0
    disk_total_gb: float = 0.0
    disk_percent: float = 0.0


@dataclass(frozen=True)
class ProcessSnapshot:
    timestamp: datetime
    app_name: str
    pid: int
    memory_mb: float
    cpu_percent: float
    status: str
    num_threads: int

    @classmethod
    def from_process(cls, timestamp: datetime, proc: ProcessInfo) -> "ProcessSnapshot":
        return cls(
            timestamp=timestamp,
            app_name=proc.app_name,
            pid=proc.pid,
            memory_mb=proc.memory_mb,
            cpu_percent=proc.cpu_percent,
            status=proc.status,
            num_threads=proc.num_threads,
        )


class PsutilProcessProvider:
    """
    ProcessInfoProvider backed by psutil.

    psutil reports CPU usage relative to the previous call on the same
    Process object, so objects are cached per PID between lookups.
    """

    def __init__(self):
        self._procs: Dict[int, psutil.Process] = {}
        self._lock = threading.Lock()

    def _process(self, pid: int) -> psutil.Process:
        with self._lock:
            proc = self._procs.get(pid)
            if proc is None or not proc.is_running():
                proc = psutil.Process(pid)
                self._procs[pid] = proc
                # Prime the CPU counter; the first reading is always 0.0
                proc.cpu_percent(interval=None)
            return proc

    def resource(self, pid: int) -> Optional[ProcessInfo]:
        """Resource usage of one process, or None if it is gone or inaccessible."""
        if pid <= 0:
            return None
        try:
            proc = self._process(pid)
            with proc.oneshot():
                return ProcessInfo(
                    pid=pid,
                    app_name=proc.name(),
                    memory_mb=round(proc.memory_info().rss / _MB, 2),
                    cpu_percent=round(proc.cpu_percent(interval=None), 2),
                    status=proc.status(),
                    num_threads=proc.num_threads(),
                )
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess) as e:
            with self._lock:
                self._procs.pop(pid, None)
            logger.debug(f"No resource info for PID {pid}: {e}")
            return None

    def snapshot_all(self) -> List[ProcessInfo]:
        """Every visible process. Inaccessible fields are reported as zero."""
        result = []
        attrs = ["pid", "name", "memory_info", "cpu_percent", "num_threads", "status"]
        for proc in psutil.process_iter(attrs):
            info = proc.info
            mem = info.get("memory_info")
            result.append(ProcessInfo(
                pid=info["pid"],
                app_name=info.get("name") or "",
                memory_mb=round(mem.rss / _MB, 2) if mem else 0.0,
                cpu_percent=round(info.get("cpu_percent") or 0.0, 2),
                status=info.get("status") or "unknown",
                num_threads=info.get("num_threads") or 0,
            ))
        self._prune({p.pid for p in result})
        return result

    def _prune(self, live_pids) -> None:
        """Forget cached Process objects whose PID has exited."""
        with self._lock:
            for pid in [pid for pid in self._procs if pid not in live_pids]:
                del self._procs[pid]

    def system(self) -> SystemInfo:
        mem = psutil.virtual_memory()
        return SystemInfo(
            total_ram_gb=round(mem.total / _GB, 2),
            used_ram_gb=round(mem.used / _GB, 2),
            ram_percent=round(mem.percent, 2),
            cpu_percent=round(psutil.cpu_percent(interval=None), 2),
            cpu_count=psutil.cpu_count() or 0,
        )


def get_system_info(provider: PsutilProcessProvider = None) -> SystemInfo:
    """System memory/CPU plus usage of the disk holding the data directory."""
    info = (provider or PsutilProcessProvider()).system()
    try:
        disk_root = config.USER_DATA_DIR.anchor or "/"
        disk = psutil.disk_usage(disk_root)
    except OSError as e:
        logger.debug(f"Disk usage unavailable: {e}")
        return info
    return SystemInfo(
        total_ram_gb=info.total_ram_gb,
        used_ram_gb=info.used_ram_gb,
        ram_percent=info.ram_percent,
        cpu_percent=info.cpu_percent,
        cpu_count=info.cpu_count,
        disk_used_gb=round(disk.used / _GB, 2),
        disk_total_gb=round(disk.total / _GB, 2),
        disk_percent=round(disk.percent, 2),
    )


def get_running_processes(sort_by: str = "memory", provider: PsutilProcessProvider = None) -> List[ProcessInfo]:
    """All processes sorted by memory (default) or cpu, highest first."""
    procs = (provider or PsutilProcessProvider()).snapshot_all()
    if sort_by == "cpu":
        return sorted(procs, key=lambda p: p.cpu_percent, reverse=True)
    return sorted(procs, key=lambda p: p.memory_mb, reverse=True)


class ResourceSampler:
    """
    Periodic telemetry collector.

    Each tick is best-effort: failures are logged and the next tick runs
    as scheduled.
    """

    def __init__(
        self,
        store=None,
        provider=None,
        interval_seconds: float = None,
        top_n: int = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """
        Args:
            store: SessionStore receiving ProcessSnapshots (optional).
            provider: ProcessInfoProvider (defaults to PsutilProcessProvider).
            interval_seconds: Seconds between samples.
            top_n: Number of processes kept per sample.
            clock: Timestamp source for snapshots.
        """
        self.store = store
        self.provider = provider or PsutilProcessProvider()
        self.interval_seconds = interval_seconds or config.SAMPLER_INTERVAL_SECONDS
        self.top_n = top_n or config.SAMPLER_TOP_N
        self._clock = clock
        self._task: Optional[PeriodicTask] = None

        self.latest_info: Optional[SystemInfo] = None
        self.latest_processes: List[ProcessInfo] = []
        self.samples_taken = 0

    def start(self) -> None:
        """Start sampling; the first sample is taken immediately."""
        if self._task is None:
            self._task = PeriodicTask("resource-sampler", self.interval_seconds, self.tick, run_immediately=True)
        self._task.start()

    def stop(self) -> None:
        if self._task is not None:
            self._task.stop()

    def tick(self) -> None:
        """Take one sample and persist it."""
        try:
            info = self.provider.system()
            processes = sorted(self.provider.snapshot_all(), key=lambda p: p.memory_mb, reverse=True)
        except (psutil.Error, OSError) as e:
            logger.warning(f"Resource sampling failed: {e}")
            return

        self.latest_info = info
        self.latest_processes = processes[:self.top_n]
        self.samples_taken += 1

        if self.store is None:
            return

        timestamp = self._clock()
        snapshots = [ProcessSnapshot.from_process(timestamp, p) for p in self.latest_processes]
        try:
            self.store.bulk_insert_snapshots(snapshots)
        except PersistenceError as e:
            logger.error(f"Failed to store {len(snapshots)} process snapshots: {e}")

    def get_process_resource(self, pid: int) -> Optional[ProcessInfo]:
        """Current usage of one process, or None when unavailable."""
        try:
            return self.provider.resource(pid)
        except (psutil.Error, OSError) as e:
            logger.debug(f"Process lookup for {pid} failed: {e}")
            return None
