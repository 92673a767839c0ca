"""
Hook daemon package.

Provides a long-lived server that owns the lock coordinator, hook runner
and skip registry, and answers lint/test/validate/stats requests over a
local socket.
"""

from hookd.daemon.core import MAX_CONNECTIONS, HookDaemon
from hookd.daemon.startup import (
    default_socket_path,
    is_socket_connectable,
    query_daemon,
    resolve_socket_path,
    run_daemon,
    stop_daemon,
)

__all__ = [
    "HookDaemon",
    "MAX_CONNECTIONS",
    "default_socket_path",
    "is_socket_connectable",
    "query_daemon",
    "resolve_socket_path",
    "run_daemon",
    "stop_daemon",
]
