"""Activity stats for the hook daemon.

Tracks per-method hook activity:
- Invocations, passes, failures and timeouts
- Runs skipped because the lock was busy or cooling, or the directory
  opted out

and server-level counters (uptime, requests, errors, active connections)
reported by the ``stats`` method.
"""

from __future__ import annotations

import threading
import time
from copy import deepcopy
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Optional

__all__ = ["HookStats", "ServerStats", "format_uptime"]


@dataclass
class HookStats:
    """Stats for a single hook method.

    ``invocations`` counts every request; the outcome counters only count
    requests that actually ran a command.
    """

    hook_name: str
    invocations: int = 0
    passes: int = 0
    failures: int = 0
    timeouts: int = 0
    skipped: int = 0
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def record(self, outcome: str) -> None:
        """Record one invocation.

        Args:
            outcome: One of "pass", "fail", "timeout" or "skipped"
        """
        self.invocations += 1
        if outcome == "pass":
            self.passes += 1
        elif outcome == "fail":
            self.failures += 1
        elif outcome == "timeout":
            self.timeouts += 1
        else:
            self.skipped += 1

    @property
    def runs(self) -> int:
        return self.passes + self.failures + self.timeouts

    @property
    def pass_rate(self) -> float:
        """Pass rate over executed runs as percentage (0-100)."""
        if self.runs == 0:
            return 100.0
        return (self.passes / self.runs) * 100

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dict for JSON."""
        return {
            "hook_name": self.hook_name,
            "invocations": self.invocations,
            "passes": self.passes,
            "failures": self.failures,
            "timeouts": self.timeouts,
            "skipped": self.skipped,
            "pass_rate": round(self.pass_rate, 2),
            "started_at": self.started_at.isoformat(),
        }


def format_uptime(seconds: float) -> str:
    total = int(seconds)
    mins, secs = divmod(total, 60)
    hours, mins = divmod(mins, 60)
    return f"{hours}h {mins}m {secs}s"


class ServerStats:
    """Thread-safe counters shared by all connection handlers."""

    def __init__(self, socket_path: Optional[str] = None):
        self.socket_path = socket_path
        self.start_time = time.time()
        self._lock = threading.Lock()
        self._request_count = 0
        self._error_count = 0
        self._active_connections = 0
        self._hooks: dict[str, HookStats] = {}

    def record_request(self) -> None:
        with self._lock:
            self._request_count += 1

    def record_error(self) -> None:
        with self._lock:
            self._error_count += 1

    def connection_opened(self) -> None:
        with self._lock:
            self._active_connections += 1

    def connection_closed(self) -> None:
        with self._lock:
            self._active_connections -= 1

    @property
    def active_connections(self) -> int:
        with self._lock:
            return self._active_connections

    def record_hook(self, method: str, outcome: str) -> None:
        with self._lock:
            stats = self._hooks.get(method)
            if stats is None:
                stats = HookStats(hook_name=method)
                self._hooks[method] = stats
            stats.record(outcome)

    def snapshot(self) -> dict[str, Any]:
        """Consistent copy of all counters."""
        with self._lock:
            hooks = {name: deepcopy(stats) for name, stats in self._hooks.items()}
            return {
                "uptime": time.time() - self.start_time,
                "requests": self._request_count,
                "errors": self._error_count,
                "active_connections": self._active_connections,
                "socket": self.socket_path,
                "hooks": {name: stats.to_dict() for name, stats in sorted(hooks.items())},
            }

    def render(self) -> str:
        """Human-readable report printed by ``hookd status``."""
        snap = self.snapshot()
        lines = [
            "Server Stats:",
            f"  Uptime: {format_uptime(snap['uptime'])}",
            f"  Requests: {snap['requests']}",
            f"  Errors: {snap['errors']}",
            f"  Active Connections: {snap['active_connections']}",
            f"  Socket: {snap['socket'] or '(in-process)'}",
        ]
        for name, hook in snap["hooks"].items():
            lines.append(
                f"  {name}: {hook['invocations']} invocations, {hook['passes']} passed, "
                f"{hook['failures']} failed, {hook['timeouts']} timed out, {hook['skipped']} skipped"
            )
        return "\n".join(lines) + "\n"
