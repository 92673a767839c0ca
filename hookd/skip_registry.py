"""Per-directory opt-out flags for the lint and test hooks.

The registry is one JSON object mapping absolute directory paths to the
check types skipped there:

    {"/home/me/src/legacy": ["lint"], "/home/me/src/scratch": ["lint", "test"]}

It is loaded lazily on first access and cached until the file changes on
disk, so a skip written by another process (the CLI) is seen by a running
daemon on its next lookup. Every mutation persists the full map first and swaps
the in-memory snapshot only after the write succeeded, so memory and disk
never disagree.
"""

from __future__ import annotations

import json
import logging
import os
import sys
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Hashable, Iterator, Optional

from hookd.errors import InvalidPathError, RegistryCorruptedError

if sys.platform == "win32":
    import msvcrt
else:
    import fcntl

logger = logging.getLogger(__name__)

REGISTRY_FILE_MODE = 0o600


class SkipType(str, Enum):
    LINT = "lint"
    TEST = "test"
    ALL = "all"

    @classmethod
    def parse(cls, value: str) -> "SkipType":
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise ValueError(f"Invalid skip type: {value!r} (expected lint, test or all)") from None

    def expand(self) -> tuple["SkipType", ...]:
        """``all`` stands for lint and test; concrete types stand for themselves."""
        if self is SkipType.ALL:
            return (SkipType.LINT, SkipType.TEST)
        return (self,)


@dataclass(frozen=True)
class SkipEntry:
    path: str
    types: frozenset[SkipType]


Snapshot = dict[str, frozenset[SkipType]]


def default_registry_path() -> Path:
    """Location of the registry: ~/.claude/skip-registry.json."""
    return Path.home() / ".claude" / "skip-registry.json"


def normalize_directory(directory: str | Path) -> str:
    """Validate and normalize a directory key.

    Raises:
        InvalidPathError: If the path is empty or not absolute.
    """
    text = str(directory)
    if not text:
        raise InvalidPathError("Directory path is empty")
    if not os.path.isabs(text):
        raise InvalidPathError(f"Directory path must be absolute: {text}")
    return os.path.normpath(text)


def _parse_types(path: str, raw: object) -> frozenset[SkipType]:
    if not isinstance(raw, list):
        raise RegistryCorruptedError(f"Entry for {path} must be a list, got {type(raw).__name__}")
    types = set()
    for item in raw:
        if not isinstance(item, str):
            raise RegistryCorruptedError(f"Entry for {path} contains non-string {item!r}")
        try:
            types.update(SkipType.parse(item).expand())
        except ValueError as e:
            raise RegistryCorruptedError(f"Entry for {path}: {e}") from e
    return frozenset(types)


def parse_registry(data: object) -> Snapshot:
    """Convert the decoded JSON document into a snapshot.

    Raises:
        RegistryCorruptedError: If the document does not have the expected shape.
    """
    if not isinstance(data, dict):
        raise RegistryCorruptedError("Skip registry must be a JSON object")
    snapshot: Snapshot = {}
    for path, raw in data.items():
        types = _parse_types(path, raw)
        if types:
            snapshot[path] = types
    return snapshot


def serialize_registry(snapshot: Snapshot) -> dict[str, list[str]]:
    return {
        path: sorted(t.value for t in types)
        for path, types in sorted(snapshot.items())
    }


class JsonRegistryStore:
    """Reads and atomically rewrites the registry JSON file."""

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path is not None else default_registry_path()

    def load(self) -> Optional[object]:
        """Return the decoded document, or None if the file does not exist.

        Raises:
            RegistryCorruptedError: If the file is not valid JSON.
            OSError: If the file exists but cannot be read.
        """
        try:
            raw = self.path.read_text()
        except FileNotFoundError:
            return None
        if not raw.strip():
            return {}
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            raise RegistryCorruptedError(f"Skip registry {self.path} is not valid JSON: {e}") from e

    def version(self) -> Optional[tuple[int, int, int]]:
        """Identity of the file as last written, or None if it does not exist.

        Every save replaces the file, so the inode changes even when two
        writes land within the same mtime tick.
        """
        try:
            st = self.path.stat()
        except FileNotFoundError:
            return None
        return (st.st_ino, st.st_mtime_ns, st.st_size)

    @contextmanager
    def _file_lock(self) -> Iterator[None]:
        lock_path = self.path.with_name(self.path.name + ".lock")
        with open(lock_path, "a+") as handle:
            if sys.platform == "win32":
                msvcrt.locking(handle.fileno(), msvcrt.LK_LOCK, 1)
            else:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                if sys.platform == "win32":
                    msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)
                else:
                    fcntl.flock(handle.fileno(), fcntl.LOCK_UN)

    def save(self, data: dict[str, list[str]]) -> None:
        """Replace the file with ``data`` (temp file + rename, under a file lock).

        Raises:
            OSError: If the file cannot be written.
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(f"{self.path.name}.{os.getpid()}.tmp")
        with self._file_lock():
            try:
                fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, REGISTRY_FILE_MODE)
                with os.fdopen(fd, "w") as f:
                    json.dump(data, f, indent=2)
                    f.write("\n")
                os.replace(tmp_path, self.path)
            except OSError:
                try:
                    tmp_path.unlink()
                except OSError:
                    pass
                raise


class _ReadWriteLock:
    """Many concurrent readers or one writer."""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writing = False

    @contextmanager
    def reading(self) -> Iterator[None]:
        with self._cond:
            while self._writing:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def writing(self) -> Iterator[None]:
        with self._cond:
            while self._writing or self._readers:
                self._cond.wait()
            self._writing = True
        try:
            yield
        finally:
            with self._cond:
                self._writing = False
                self._cond.notify_all()


class SkipRegistry:
    """Thread-safe, lazily loaded view of the skip registry.

    Readers only wait for the brief snapshot swap at the end of a write;
    the write itself (building the new map and persisting it) happens while
    readers keep serving the previous snapshot. Writers exclude each other.

    Args:
        store: Backing storage (JsonRegistryStore in production)
    """

    def __init__(self, store: Optional[JsonRegistryStore] = None):
        self.store = store if store is not None else JsonRegistryStore()
        self._rw = _ReadWriteLock()
        self._write_lock = threading.Lock()
        self._load_lock = threading.Lock()
        self._snapshot: Optional[Snapshot] = None
        self._version: Optional[Hashable] = None

    def _ensure_loaded(self) -> Snapshot:
        with self._rw.reading():
            snapshot, version = self._snapshot, self._version
        current = self.store.version()
        if snapshot is not None and current == version:
            return snapshot

        with self._load_lock:
            with self._rw.reading():
                if self._snapshot is not None and self._version == current:
                    return self._snapshot
            # Version first: a write racing the load only causes another reload
            current = self.store.version()
            data = self.store.load()
            loaded = parse_registry(data) if data is not None else {}
            with self._rw.writing():
                self._snapshot = loaded
                self._version = current
            logger.debug(f"Loaded skip registry with {len(loaded)} entries")
            return loaded

    def get_skip_types(self, directory: str | Path) -> frozenset[SkipType]:
        """Return the check types skipped in ``directory`` (empty if none)."""
        key = normalize_directory(directory)
        return self._ensure_loaded().get(key, frozenset())

    def is_skipped(self, directory: str | Path, skip_type: SkipType) -> bool:
        skipped = self.get_skip_types(directory)
        return all(t in skipped for t in skip_type.expand())

    def list_all(self) -> list[SkipEntry]:
        """All directories with skips, sorted by path."""
        snapshot = self._ensure_loaded()
        return [SkipEntry(path=path, types=types) for path, types in sorted(snapshot.items())]

    def _mutate(self, directory: str | Path, update: Callable[[frozenset[SkipType]], frozenset[SkipType]]) -> bool:
        key = normalize_directory(directory)
        with self._write_lock:
            current = self._ensure_loaded()
            before = current.get(key, frozenset())
            after = update(before)
            if after == before:
                return False

            new_snapshot = dict(current)
            if after:
                new_snapshot[key] = after
            else:
                new_snapshot.pop(key, None)

            # Persist first; the cached snapshot only changes once disk has it
            self.store.save(serialize_registry(new_snapshot))
            version = self.store.version()
            with self._rw.writing():
                self._snapshot = new_snapshot
                self._version = version
            return True

    def add_skip(self, directory: str | Path, skip_type: SkipType) -> bool:
        """Skip ``skip_type`` (lint, test or all) in ``directory``.

        Returns:
            True if the registry changed.
        """
        return self._mutate(directory, lambda types: types | frozenset(skip_type.expand()))

    def remove_skip(self, directory: str | Path, skip_type: SkipType) -> bool:
        """Stop skipping ``skip_type`` in ``directory``; drops the entry when empty."""
        return self._mutate(directory, lambda types: types - frozenset(skip_type.expand()))

    def clear(self, directory: str | Path) -> bool:
        """Remove every skip for ``directory``."""
        return self._mutate(directory, lambda types: frozenset())
