"""Tests for cross-process lock coordination.

Covers:
1. Mutual exclusion across threads and processes
2. Cooldown after release
3. Stale and corrupted record recovery
4. Fail-safe behavior on storage errors
"""

import json
import os
import subprocess
import sys
import threading
import time
from pathlib import Path

import psutil
import pytest

from conftest import FakeClock, FakeLiveness, InMemoryLockStore

from hookd.errors import CorruptLockRecordError
from hookd.locks import (
    AcquireStatus,
    FileLockStore,
    LockCoordinator,
    LockKey,
    LockRecord,
    ProcessLivenessChecker,
)

HOLDER = 4242


def make_coordinator(alive=(HOLDER,), now=1000.0):
    store = InMemoryLockStore()
    clock = FakeClock(now)
    coordinator = LockCoordinator(store=store, liveness=FakeLiveness(alive), clock=clock)
    return coordinator, store, clock


class TestLockKey:
    """Tests for workspace-scoped lock keys."""

    def test_same_project_same_key(self, tmp_path):
        """The same root always maps to the same key."""
        assert LockKey.for_project("lint", tmp_path) == LockKey.for_project("lint", str(tmp_path))

    def test_check_types_do_not_share_keys(self, tmp_path):
        """Lint and test locks for one project are distinct."""
        lint = LockKey.for_project("lint", tmp_path)
        test = LockKey.for_project("test", tmp_path)
        assert lint != test
        assert lint.workspace_id == test.workspace_id

    def test_filename_format(self, tmp_path):
        """Record file is hookd-<type>-<16 hex chars>.json."""
        key = LockKey.for_project("test", tmp_path)
        assert key.filename.startswith("hookd-test-")
        assert key.filename.endswith(".json")
        assert len(key.workspace_id) == 16
        int(key.workspace_id, 16)


class TestLockRecord:
    """Tests for lock record (de)serialization."""

    def test_default_record_is_free(self):
        assert not LockRecord().is_held

    def test_round_trip(self):
        record = LockRecord(holder_pid=12, acquired_at=5.5, released_at=3.0)
        assert LockRecord.from_dict(record.to_dict()) == record

    @pytest.mark.parametrize(
        "data",
        [
            [],
            {"holder_pid": "12"},
            {"holder_pid": True},
            {"holder_pid": 1, "released_at": "yesterday"},
        ],
    )
    def test_malformed_record_rejected(self, data):
        """Anything but the expected shape is a ValueError."""
        with pytest.raises(ValueError):
            LockRecord.from_dict(data)


class TestLockCoordinator:
    """Tests for acquire/release semantics with injected fakes."""

    def test_first_acquire_ok(self):
        """A never-seen key is free."""
        coordinator, store, _ = make_coordinator()
        key = LockKey("lint", "abc")

        assert coordinator.acquire(key, HOLDER, cooldown=2) is AcquireStatus.OK
        assert store.records[key].holder_pid == HOLDER
        assert store.records[key].acquired_at == 1000.0

    def test_live_holder_is_busy(self):
        """A second acquire while the holder lives is Busy."""
        coordinator, _, _ = make_coordinator()
        key = LockKey("lint", "abc")

        assert coordinator.acquire(key, HOLDER, cooldown=0) is AcquireStatus.OK
        assert coordinator.acquire(key, HOLDER + 1, cooldown=0) is AcquireStatus.BUSY

    def test_cooldown_window(self):
        """Release at t=0 with 2s cooldown: t=1 is Cooling, t=3 is OK."""
        coordinator, _, clock = make_coordinator(now=0.0)
        key = LockKey("lint", "abc")

        assert coordinator.acquire(key, HOLDER, cooldown=2) is AcquireStatus.OK
        coordinator.release(key)

        clock.set(1.0)
        assert coordinator.acquire(key, HOLDER, cooldown=2) is AcquireStatus.COOLING

        clock.set(3.0)
        assert coordinator.acquire(key, HOLDER, cooldown=2) is AcquireStatus.OK

    def test_stale_holder_reclaimed_despite_cooldown(self):
        """A dead holder is reclaimed even inside the cooldown window."""
        coordinator, store, _ = make_coordinator(alive=())
        key = LockKey("lint", "abc")
        store.records[key] = LockRecord(holder_pid=999999, acquired_at=999.0, released_at=999.5)

        assert coordinator.acquire(key, HOLDER, cooldown=60) is AcquireStatus.OK
        assert store.records[key].holder_pid == HOLDER

    def test_stale_holder_keeps_release_history(self):
        """Reclaiming keeps the previous released_at timestamp."""
        coordinator, store, _ = make_coordinator(alive=())
        key = LockKey("lint", "abc")
        store.records[key] = LockRecord(holder_pid=999999, acquired_at=10.0, released_at=5.0)

        coordinator.acquire(key, HOLDER, cooldown=0)

        assert store.records[key].released_at == 5.0

    def test_corrupt_record_reclaimed(self):
        """An unparseable record is treated as stale."""
        coordinator, store, _ = make_coordinator()
        key = LockKey("lint", "abc")
        store.corrupt.add(key)

        assert coordinator.acquire(key, HOLDER, cooldown=2) is AcquireStatus.OK
        assert store.records[key].holder_pid == HOLDER

    def test_store_failure_reports_busy(self):
        """Storage errors never grant the lock."""
        coordinator, store, _ = make_coordinator()
        store.fail = True

        assert coordinator.acquire(LockKey("lint", "abc"), HOLDER, cooldown=0) is AcquireStatus.BUSY

    def test_release_sets_released_at(self):
        """Release clears the holder and stamps the release time."""
        coordinator, store, clock = make_coordinator()
        key = LockKey("lint", "abc")
        coordinator.acquire(key, HOLDER, cooldown=0)

        clock.advance(7)
        coordinator.release(key)

        record = store.records[key]
        assert record.holder_pid == 0
        assert record.acquired_at == 1000.0
        assert record.released_at == 1007.0

    def test_release_without_record_is_safe(self):
        """Releasing a never-acquired key does not raise."""
        coordinator, store, _ = make_coordinator()
        key = LockKey("test", "never")

        coordinator.release(key)
        coordinator.release(key)

        assert store.records[key].holder_pid == 0

    def test_release_swallows_store_errors(self):
        coordinator, store, _ = make_coordinator()
        store.fail = True

        coordinator.release(LockKey("lint", "abc"))

    def test_concurrent_threads_single_winner(self):
        """Exactly one of many racing threads gets OK."""
        coordinator, _, _ = make_coordinator()
        key = LockKey("lint", "race")
        barrier = threading.Barrier(16)
        results = []
        results_lock = threading.Lock()

        def worker():
            barrier.wait()
            status = coordinator.acquire(key, HOLDER, cooldown=0)
            with results_lock:
                results.append(status)

        threads = [threading.Thread(target=worker) for _ in range(16)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(AcquireStatus.OK) == 1
        assert results.count(AcquireStatus.BUSY) == 15


class TestFileLockStore:
    """Tests for the on-disk record store."""

    def test_missing_record_reads_none(self, tmp_path):
        store = FileLockStore(tmp_path)
        assert store.read(LockKey("lint", "abc")) is None

    def test_write_then_read(self, tmp_path):
        store = FileLockStore(tmp_path)
        key = LockKey("lint", "abc")
        record = LockRecord(holder_pid=7, acquired_at=1.5, released_at=0.5)

        store.write(key, record)

        assert store.read(key) == record
        assert json.loads(store.record_path(key).read_text())["holder_pid"] == 7

    def test_write_leaves_no_temp_files(self, tmp_path):
        store = FileLockStore(tmp_path)
        store.write(LockKey("lint", "abc"), LockRecord())
        assert [p.name for p in tmp_path.iterdir()] == ["hookd-lint-abc.json"]

    def test_corrupt_record_raises(self, tmp_path):
        store = FileLockStore(tmp_path)
        key = LockKey("lint", "abc")
        store.record_path(key).write_text("{not json")

        with pytest.raises(CorruptLockRecordError):
            store.read(key)

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX permissions")
    def test_record_is_private(self, tmp_path):
        """Records are written with mode 0600."""
        store = FileLockStore(tmp_path)
        key = LockKey("lint", "abc")
        store.write(key, LockRecord())

        assert (store.record_path(key).stat().st_mode & 0o777) == 0o600

    def test_corrupt_file_reclaimed_on_disk(self, tmp_path):
        """A garbage record file is overwritten by the next holder."""
        store = FileLockStore(tmp_path)
        key = LockKey("lint", "abc")
        store.record_path(key).write_text("\x00\x00garbage")
        coordinator = LockCoordinator(store=store)

        assert coordinator.acquire(key, os.getpid(), cooldown=0) is AcquireStatus.OK
        assert store.read(key).holder_pid == os.getpid()


class TestProcessLiveness:
    """Tests for the psutil-backed liveness probe."""

    def test_self_is_alive(self):
        assert ProcessLivenessChecker().is_alive(os.getpid())

    @pytest.mark.parametrize("pid", [0, -1])
    def test_non_positive_pids_are_dead(self, pid):
        assert not ProcessLivenessChecker().is_alive(pid)

    @pytest.mark.skipif(sys.platform == "win32", reason="uses sh")
    def test_reaped_child_is_dead(self):
        proc = subprocess.Popen(["sh", "-c", "exit 0"])
        proc.wait()
        assert not ProcessLivenessChecker().is_alive(proc.pid)


class TestCrossProcess:
    """Tests using the real file store and real processes."""

    def test_stale_pid_999999_reclaimed(self, tmp_path):
        """A record held by a non-existent PID is reclaimable."""
        if psutil.pid_exists(999999):
            pytest.skip("PID 999999 exists on this machine")
        store = FileLockStore(tmp_path)
        key = LockKey.for_project("lint", tmp_path)
        store.write(key, LockRecord(holder_pid=999999, acquired_at=time.time(), released_at=time.time()))

        coordinator = LockCoordinator(store=store)

        assert coordinator.acquire(key, os.getpid(), cooldown=2) is AcquireStatus.OK

    @pytest.mark.skipif(sys.platform == "win32", reason="uses sleep")
    def test_live_foreign_holder_blocks_until_it_dies(self, tmp_path):
        """A record held by another live process is Busy; once it exits, OK."""
        holder = subprocess.Popen(["sleep", "30"])
        try:
            store = FileLockStore(tmp_path)
            key = LockKey.for_project("test", tmp_path)
            store.write(key, LockRecord(holder_pid=holder.pid, acquired_at=time.time()))

            coordinator = LockCoordinator(store=store)
            assert coordinator.acquire(key, os.getpid(), cooldown=0) is AcquireStatus.BUSY
        finally:
            holder.kill()
            holder.wait()

        assert coordinator.acquire(key, os.getpid(), cooldown=0) is AcquireStatus.OK

    def test_separate_coordinators_share_the_lock(self, tmp_path):
        """Two coordinators over one directory (daemon + fallback) exclude each other."""
        daemon_side = LockCoordinator(store=FileLockStore(tmp_path))
        fallback_side = LockCoordinator(store=FileLockStore(Path(tmp_path)))
        key = LockKey.for_project("lint", tmp_path / "proj")

        assert daemon_side.acquire(key, os.getpid(), cooldown=0) is AcquireStatus.OK
        assert fallback_side.acquire(key, os.getpid(), cooldown=0) is AcquireStatus.BUSY

        daemon_side.release(key)
        assert fallback_side.acquire(key, os.getpid(), cooldown=0) is AcquireStatus.OK

    def test_threads_over_file_store_single_winner(self, tmp_path):
        store = FileLockStore(tmp_path)
        coordinator = LockCoordinator(store=store)
        key = LockKey.for_project("lint", tmp_path)
        barrier = threading.Barrier(8)
        results = []
        results_lock = threading.Lock()

        def worker():
            barrier.wait()
            status = coordinator.acquire(key, os.getpid(), cooldown=0)
            with results_lock:
                results.append(status)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(AcquireStatus.OK) == 1
