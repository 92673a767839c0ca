"""
Cross-process lock coordination with cooldown and stale-lock recovery.

Each (check type, workspace) pair owns one small JSON record on disk:

    {"holder_pid": 4242, "acquired_at": 1700000000.5, "released_at": 1699999990.1}

``holder_pid == 0`` means nobody holds the lock. Records are overwritten in
place and never deleted, so the last release time survives and drives the
cooldown window.

The read-decide-write sequence of acquire/release runs under an exclusive
file lock on a sibling ``.lock`` file (fcntl.flock on Unix, msvcrt.locking
on Windows) plus an in-process threading.Lock per key, so daemon threads and
separate fallback processes all serialize on the same key.
"""

import hashlib
import json
import logging
import os
import sys
import tempfile
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import IO, Iterator, Optional

import psutil

from hookd.errors import CorruptLockRecordError, LockStoreError

# Platform-specific imports for file locking
if sys.platform == "win32":
    import msvcrt
else:
    import fcntl

logger = logging.getLogger(__name__)

LOCK_FILE_MODE = 0o600

# How long acquire/release may wait for another process holding the record
# file lock before giving up and reporting the key as busy.
STORE_LOCK_TIMEOUT = 2.0
STORE_LOCK_POLL = 0.01


class AcquireStatus(str, Enum):
    """Result of a lock acquisition attempt."""

    OK = "ok"
    BUSY = "busy"
    COOLING = "cooling"


@dataclass(frozen=True)
class LockKey:
    """Identifies one lock: a check type scoped to a workspace."""

    check_type: str
    workspace_id: str

    @classmethod
    def for_project(cls, check_type: str, project_root: str | Path) -> "LockKey":
        """Build the key for a project root directory.

        The workspace identifier is a SHA-256 prefix of the absolute path,
        so the same project always maps to the same record.
        """
        root = os.path.abspath(str(project_root))
        hash_val = hashlib.sha256(root.encode()).hexdigest()[:16]
        return cls(check_type=check_type, workspace_id=hash_val)

    @property
    def filename(self) -> str:
        return f"hookd-{self.check_type}-{self.workspace_id}.json"

    def __str__(self) -> str:
        return f"{self.check_type}:{self.workspace_id}"


@dataclass(frozen=True)
class LockRecord:
    """Persisted state of one lock."""

    holder_pid: int = 0
    acquired_at: float = 0.0
    released_at: float = 0.0

    @property
    def is_held(self) -> bool:
        return self.holder_pid != 0

    def to_dict(self) -> dict:
        return {
            "holder_pid": self.holder_pid,
            "acquired_at": self.acquired_at,
            "released_at": self.released_at,
        }

    @classmethod
    def from_dict(cls, data: object) -> "LockRecord":
        """Parse a record, raising ValueError on anything malformed."""
        if not isinstance(data, dict):
            raise ValueError("lock record must be a JSON object")
        holder_pid = data.get("holder_pid", 0)
        acquired_at = data.get("acquired_at", 0.0)
        released_at = data.get("released_at", 0.0)
        if isinstance(holder_pid, bool) or not isinstance(holder_pid, int):
            raise ValueError(f"holder_pid must be an integer, got {holder_pid!r}")
        for name, value in (("acquired_at", acquired_at), ("released_at", released_at)):
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValueError(f"{name} must be a number, got {value!r}")
        return cls(
            holder_pid=holder_pid,
            acquired_at=float(acquired_at),
            released_at=float(released_at),
        )


class Clock:
    """Wall-clock time source; tests substitute a controllable one."""

    def now(self) -> float:
        return time.time()


class ProcessLivenessChecker:
    """Answers whether a PID belongs to a running process.

    Zombies count as dead: a holder that exited but has not been reaped
    will never release its lock.
    """

    def is_alive(self, pid: int) -> bool:
        if pid <= 0:
            return False
        try:
            if not psutil.pid_exists(pid):
                return False
            return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
        except psutil.NoSuchProcess:
            return False
        except psutil.AccessDenied:
            # Exists but belongs to someone else
            return True


def default_lock_dir() -> Path:
    """Directory holding lock records: <tmpdir>/hookd-locks."""
    return Path(tempfile.gettempdir()) / "hookd-locks"


def _try_lock_file(handle: IO) -> bool:
    """Try once to take an exclusive lock on an open file."""
    if sys.platform == "win32":
        try:
            msvcrt.locking(handle.fileno(), msvcrt.LK_NBLCK, 1)
            return True
        except OSError:
            return False
    try:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        return True
    except (BlockingIOError, OSError):
        return False


def _unlock_file(handle: IO) -> None:
    if sys.platform == "win32":
        msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)
    else:
        fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


class FileLockStore:
    """Lock records stored as JSON files in a directory.

    Args:
        directory: Where records live (created on first use)
        lock_timeout: Seconds to wait for another process's record lock
    """

    def __init__(self, directory: Optional[Path] = None, lock_timeout: float = STORE_LOCK_TIMEOUT):
        self.directory = Path(directory) if directory is not None else default_lock_dir()
        self.lock_timeout = lock_timeout
        self._key_locks: dict[LockKey, threading.Lock] = {}
        self._key_locks_guard = threading.Lock()

    def record_path(self, key: LockKey) -> Path:
        return self.directory / key.filename

    def _thread_lock(self, key: LockKey) -> threading.Lock:
        with self._key_locks_guard:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._key_locks[key] = lock
            return lock

    @contextmanager
    def locked(self, key: LockKey) -> Iterator[None]:
        """Hold exclusive access to a key's record, across threads and processes.

        Raises:
            LockStoreError: If the lock file cannot be opened or another
                process keeps it locked past ``lock_timeout``.
        """
        thread_lock = self._thread_lock(key)
        if not thread_lock.acquire(timeout=self.lock_timeout):
            raise LockStoreError(f"Timed out waiting for in-process lock on {key}")
        try:
            try:
                self.directory.mkdir(parents=True, exist_ok=True)
                handle = open(self.record_path(key).with_suffix(".lock"), "a+")
            except OSError as e:
                raise LockStoreError(f"Cannot open lock file for {key}: {e}") from e

            try:
                deadline = time.monotonic() + self.lock_timeout
                while not _try_lock_file(handle):
                    if time.monotonic() >= deadline:
                        raise LockStoreError(f"Timed out waiting for record lock on {key}")
                    time.sleep(STORE_LOCK_POLL)
                try:
                    yield
                finally:
                    try:
                        _unlock_file(handle)
                    except OSError as e:
                        logger.debug(f"Failed to unlock record lock for {key}: {e}")
            finally:
                handle.close()
        finally:
            thread_lock.release()

    def read(self, key: LockKey) -> Optional[LockRecord]:
        """Read a key's record.

        Returns:
            The record, or None if it was never written.

        Raises:
            CorruptLockRecordError: If the file exists but cannot be parsed.
            LockStoreError: On any other I/O failure.
        """
        path = self.record_path(key)
        try:
            raw = path.read_text()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise LockStoreError(f"Cannot read lock record {path}: {e}") from e

        try:
            return LockRecord.from_dict(json.loads(raw))
        except (json.JSONDecodeError, ValueError) as e:
            raise CorruptLockRecordError(f"Unparseable lock record {path}: {e}") from e

    def write(self, key: LockKey, record: LockRecord) -> None:
        """Atomically replace a key's record (temp file + rename).

        Raises:
            LockStoreError: If the record cannot be written.
        """
        path = self.record_path(key)
        tmp_path = path.with_name(f"{path.name}.{os.getpid()}.{threading.get_ident()}.tmp")
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, LOCK_FILE_MODE)
            with os.fdopen(fd, "w") as f:
                json.dump(record.to_dict(), f)
            os.replace(tmp_path, path)
        except OSError as e:
            try:
                tmp_path.unlink()
            except OSError:
                pass
            raise LockStoreError(f"Cannot write lock record {path}: {e}") from e


class LockCoordinator:
    """Mutual exclusion plus cooldown per LockKey.

    Args:
        store: Record storage (FileLockStore in production)
        liveness: PID liveness probe used to detect stale holders
        clock: Time source for acquire/release timestamps
    """

    def __init__(
        self,
        store: Optional[FileLockStore] = None,
        liveness: Optional[ProcessLivenessChecker] = None,
        clock: Optional[Clock] = None,
    ):
        self.store = store if store is not None else FileLockStore()
        self.liveness = liveness if liveness is not None else ProcessLivenessChecker()
        self.clock = clock if clock is not None else Clock()

    def _read_record(self, key: LockKey) -> Optional[LockRecord]:
        try:
            return self.store.read(key)
        except CorruptLockRecordError as e:
            # Treated like a stale lock: nobody can be relying on a record
            # nobody can parse.
            logger.warning(f"{e}; reclaiming")
            return None

    def acquire(self, key: LockKey, holder_id: int, cooldown: float) -> AcquireStatus:
        """Try to take the lock for ``key`` on behalf of ``holder_id``.

        Args:
            key: Lock to acquire
            holder_id: PID recorded as the holder
            cooldown: Seconds after the last release during which the key
                rejects new holders

        Returns:
            OK if acquired, BUSY if a live process holds it (or storage
            failed), COOLING if the last release is too recent.
        """
        try:
            with self.store.locked(key):
                record = self._read_record(key)
                now = self.clock.now()

                if record is not None and record.is_held:
                    if self.liveness.is_alive(record.holder_pid):
                        logger.debug(f"Lock {key} busy (held by PID {record.holder_pid})")
                        return AcquireStatus.BUSY
                    # Holder died without releasing: reclaim regardless of cooldown
                    logger.info(f"Reclaiming stale lock {key} from dead PID {record.holder_pid}")
                elif record is not None and now - record.released_at < cooldown:
                    logger.debug(
                        f"Lock {key} cooling ({now - record.released_at:.2f}s since release, "
                        f"cooldown {cooldown}s)"
                    )
                    return AcquireStatus.COOLING

                released_at = record.released_at if record is not None else 0.0
                self.store.write(
                    key,
                    LockRecord(holder_pid=holder_id, acquired_at=now, released_at=released_at),
                )
                logger.debug(f"Lock {key} acquired by PID {holder_id}")
                return AcquireStatus.OK
        except LockStoreError as e:
            # Never risk two holders: an unreadable store means "busy"
            logger.warning(f"Lock store error on acquire {key}: {e}")
            return AcquireStatus.BUSY

    def release(self, key: LockKey) -> None:
        """Mark ``key`` free and start its cooldown window.

        Safe to call when the lock is not held or was never created.
        Storage failures are logged, not raised.
        """
        try:
            with self.store.locked(key):
                record = self._read_record(key)
                acquired_at = record.acquired_at if record is not None else 0.0
                self.store.write(
                    key,
                    LockRecord(holder_pid=0, acquired_at=acquired_at, released_at=self.clock.now()),
                )
                logger.debug(f"Lock {key} released")
        except LockStoreError as e:
            logger.error(f"Lock store error on release {key}: {e}")
