"""Shared fakes and fixtures for hookd tests.

Fakes cover the injectable capabilities: command runner, lock store,
registry store, clock, liveness probe and transport.
"""

import json
import os
import shutil
import tempfile
import threading
from contextlib import contextmanager
from pathlib import Path

import pytest

from hookd.config import HookSettings, Settings
from hookd.errors import CorruptLockRecordError, LockStoreError
from hookd.runner import CommandResult, CommandSpec


class FakeClock:
    """Clock whose time only moves when told to."""

    def __init__(self, now: float = 1000.0):
        self._now = now

    def now(self) -> float:
        return self._now

    def advance(self, seconds: float) -> None:
        self._now += seconds

    def set(self, now: float) -> None:
        self._now = now


class FakeLiveness:
    """Liveness probe backed by an explicit set of live PIDs."""

    def __init__(self, alive=None):
        self.alive = set(alive or ())

    def is_alive(self, pid: int) -> bool:
        return pid in self.alive


class InMemoryLockStore:
    """Lock store keeping records in a dict."""

    def __init__(self):
        self.records = {}
        self.corrupt = set()
        self.fail = False
        self._lock = threading.RLock()

    @contextmanager
    def locked(self, key):
        if self.fail:
            raise LockStoreError("disk on fire")
        with self._lock:
            yield

    def read(self, key):
        if key in self.corrupt:
            raise CorruptLockRecordError(f"garbage in record for {key}")
        return self.records.get(key)

    def write(self, key, record):
        if self.fail:
            raise LockStoreError("disk on fire")
        self.corrupt.discard(key)
        self.records[key] = record


class InMemoryRegistryStore:
    """Registry store holding the decoded document in memory."""

    def __init__(self, data=None):
        self.data = data
        self.saves = 0
        self.fail_saves = False

    def load(self):
        return json.loads(json.dumps(self.data)) if self.data is not None else None

    def version(self):
        return json.dumps(self.data, sort_keys=True) if self.data is not None else None

    def save(self, data):
        if self.fail_saves:
            raise OSError("read-only file system")
        self.saves += 1
        self.data = json.loads(json.dumps(data))


class FakeCommandRunner:
    """Command runner returning canned results per check type.

    Set ``gate`` to make runs block until the event is set; ``started`` is
    set when a run begins.
    """

    def __init__(self, results=None):
        self.results = dict(results or {})
        self.calls = []
        self.gate = None
        self.started = threading.Event()
        self._lock = threading.Lock()

    def run(self, spec: CommandSpec, timeout: float) -> CommandResult:
        with self._lock:
            self.calls.append((spec, timeout))
        self.started.set()
        if self.gate is not None:
            self.gate.wait(timeout=10)
        return self.results.get(spec.check_type, CommandResult(returncode=0))


class FakeTransport:
    """Transport returning a canned response or raising a canned error."""

    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    def call(self, request, timeout):
        self.calls.append((request, timeout))
        if self.error is not None:
            raise self.error
        return self.response


def make_payload(file_path, tool_name="Edit", event="PostToolUse", cwd="/"):
    """Editor hook payload for an edit of ``file_path``."""
    key = "notebook_path" if tool_name == "NotebookEdit" else "file_path"
    return json.dumps(
        {
            "hook_event_name": event,
            "session_id": "test-session",
            "cwd": str(cwd),
            "tool_name": tool_name,
            "tool_input": {key: str(file_path)},
        }
    )


@pytest.fixture
def settings():
    """Default timeouts with cooldown disabled."""
    return Settings(lint=HookSettings(30, 0), test=HookSettings(60, 0))


@pytest.fixture
def project(tmp_path):
    """A project root with a .git marker and an edited file under src/."""
    root = tmp_path / "project"
    (root / ".git").mkdir(parents=True)
    (root / "src").mkdir()
    edited = root / "src" / "main.py"
    edited.write_text("print('hi')\n")
    return root


@pytest.fixture
def short_tmp():
    """Short temp directory under /tmp; AF_UNIX paths are limited to ~104 bytes."""
    path = Path(tempfile.mkdtemp(prefix="hookd-", dir="/tmp" if os.path.isdir("/tmp") else None))
    yield path
    shutil.rmtree(path, ignore_errors=True)
