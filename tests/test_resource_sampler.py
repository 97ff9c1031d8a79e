"""
Tests for tracking/resource_sampler.py - periodic process telemetry.
"""

import os
import sys
import unittest
from datetime import datetime
from pathlib import Path
from unittest.mock import MagicMock, patch

import psutil

# Ensure project root is on the path
sys.path.insert(0, str(Path(__file__).parent.parent))

from core.errors import PersistenceError
from tracking.resource_sampler import (
    ProcessInfo,
    PsutilProcessProvider,
    ResourceSampler,
    SystemInfo,
    get_running_processes,
    get_system_info,
)


class FakeProvider:
    """ProcessInfoProvider with canned data."""

    def __init__(self, processes):
        self.processes = processes
        self.fail = None

    def system(self):
        if self.fail:
            raise self.fail
        return SystemInfo(total_ram_gb=16.0, used_ram_gb=8.0, ram_percent=50.0, cpu_percent=12.0, cpu_count=8)

    def snapshot_all(self):
        return list(self.processes)

    def resource(self, pid):
        for p in self.processes:
            if p.pid == pid:
                return p
        return None


class TestResourceSampler(unittest.TestCase):

    def setUp(self):
        self.provider = FakeProvider([
            ProcessInfo(pid=1, app_name="small.exe", memory_mb=10, cpu_percent=1),
            ProcessInfo(pid=2, app_name="chrome.exe", memory_mb=900, cpu_percent=5),
            ProcessInfo(pid=3, app_name="code.exe", memory_mb=400, cpu_percent=20),
        ])
        self.store = MagicMock()
        self.now = datetime(2024, 5, 1, 9, 0, 0)
        self.sampler = ResourceSampler(self.store, provider=self.provider, top_n=2, clock=lambda: self.now)

    def test_tick_keeps_top_n_by_memory(self):
        self.sampler.tick()

        self.assertEqual([p.app_name for p in self.sampler.latest_processes], ["chrome.exe", "code.exe"])
        self.assertEqual(self.sampler.latest_info.ram_percent, 50.0)
        self.assertEqual(self.sampler.samples_taken, 1)

    def test_tick_writes_one_batch_with_shared_timestamp(self):
        self.sampler.tick()

        self.store.bulk_insert_snapshots.assert_called_once()
        snapshots = self.store.bulk_insert_snapshots.call_args.args[0]
        self.assertEqual(len(snapshots), 2)
        self.assertTrue(all(s.timestamp == self.now for s in snapshots))
        self.assertEqual(snapshots[0].pid, 2)

    def test_provider_failure_skips_tick(self):
        self.provider.fail = psutil.AccessDenied()
        self.sampler.tick()
        self.store.bulk_insert_snapshots.assert_not_called()
        self.assertEqual(self.sampler.samples_taken, 0)

    def test_store_failure_does_not_raise(self):
        self.store.bulk_insert_snapshots.side_effect = PersistenceError("disk full")
        self.sampler.tick()
        self.assertEqual(self.sampler.samples_taken, 1)

    def test_without_store(self):
        sampler = ResourceSampler(provider=self.provider)
        sampler.tick()
        self.assertEqual(sampler.samples_taken, 1)

    def test_get_process_resource(self):
        self.assertEqual(self.sampler.get_process_resource(3).memory_mb, 400)
        self.assertIsNone(self.sampler.get_process_resource(99))

    def test_get_process_resource_swallows_psutil_errors(self):
        provider = MagicMock()
        provider.resource.side_effect = psutil.NoSuchProcess(42)
        sampler = ResourceSampler(provider=provider)
        self.assertIsNone(sampler.get_process_resource(42))

    def test_running_processes_sorting(self):
        by_memory = get_running_processes(provider=self.provider)
        self.assertEqual(by_memory[0].app_name, "chrome.exe")
        by_cpu = get_running_processes("cpu", provider=self.provider)
        self.assertEqual(by_cpu[0].app_name, "code.exe")

    def test_system_info_adds_disk_usage(self):
        disk = MagicMock(used=100 * 1024 ** 3, total=400 * 1024 ** 3, percent=25.0)
        with patch("tracking.resource_sampler.psutil.disk_usage", return_value=disk):
            info = get_system_info(provider=self.provider)
        self.assertEqual(info.total_ram_gb, 16.0)
        self.assertEqual(info.disk_used_gb, 100.0)
        self.assertEqual(info.disk_total_gb, 400.0)
        self.assertEqual(info.disk_percent, 25.0)

    def test_system_info_without_disk(self):
        with patch("tracking.resource_sampler.psutil.disk_usage", side_effect=OSError("unmounted")):
            info = get_system_info(provider=self.provider)
        self.assertEqual(info.cpu_count, 8)
        self.assertEqual(info.disk_total_gb, 0.0)


class TestPsutilProvider(unittest.TestCase):
    """Against the real process table."""

    def setUp(self):
        self.provider = PsutilProcessProvider()

    def test_own_process(self):
        info = self.provider.resource(os.getpid())
        self.assertIsNotNone(info)
        self.assertEqual(info.pid, os.getpid())
        self.assertGreater(info.memory_mb, 0)

    def test_invalid_pid(self):
        self.assertIsNone(self.provider.resource(0))

    def test_snapshot_contains_self(self):
        pids = {p.pid for p in self.provider.snapshot_all()}
        self.assertIn(os.getpid(), pids)

    def test_system_info(self):
        info = self.provider.system()
        self.assertGreater(info.total_ram_gb, 0)
        self.assertGreater(info.cpu_count, 0)

    def test_snapshot_forgets_exited_processes(self):
        self.provider.resource(os.getpid())
        self.provider._procs[999999999] = MagicMock()

        self.provider.snapshot_all()
        self.assertNotIn(999999999, self.provider._procs)
        self.assertIn(os.getpid(), self.provider._procs)


if __name__ == "__main__":
    unittest.main()
