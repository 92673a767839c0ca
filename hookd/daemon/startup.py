"""
Daemon lifecycle management: socket/pid paths, run, stop, query.

Uses file locking on the PID file as the primary synchronization mechanism.
The lock is held for the daemon's entire lifetime, preventing duplicates.
Cross-platform: fcntl.flock() on Unix, msvcrt.locking() on Windows.
"""

import getpass
import hashlib
import logging
import os
import socket
import sys
import tempfile
from pathlib import Path
from typing import IO, Optional

from hookd.config import Settings
from hookd.errors import TransportError
from hookd.protocol import Request, Response, read_message

# Platform-specific imports for file locking
if sys.platform == "win32":
    import msvcrt
else:
    import fcntl

logger = logging.getLogger(__name__)

SOCKET_NAME = "hookd.sock"


def default_socket_path() -> Path:
    """Per-user socket path: $XDG_RUNTIME_DIR/hookd.sock, else <tmpdir>/hookd-<uid>.sock."""
    runtime_dir = os.environ.get("XDG_RUNTIME_DIR")
    if runtime_dir:
        return Path(runtime_dir) / SOCKET_NAME
    uid = os.getuid() if hasattr(os, "getuid") else getpass.getuser()
    return Path(tempfile.gettempdir()) / f"hookd-{uid}.sock"


def resolve_socket_path(settings: Settings) -> Path:
    return settings.socket_path if settings.socket_path is not None else default_socket_path()


def get_pid_path(socket_path: Path) -> Path:
    """PID file sits next to the socket."""
    return socket_path.with_suffix(".pid")


def get_connection_info(socket_path: Path) -> tuple[str, int | None]:
    """Return (address, port) - port is None for Unix sockets.

    On Windows, uses TCP on localhost with a deterministic port.
    On Unix (Linux/macOS), uses Unix domain sockets.
    """
    if sys.platform == "win32":
        # TCP on localhost with deterministic port from hash
        hash_val = hashlib.sha256(str(socket_path).encode()).hexdigest()[:16]
        port = 49152 + (int(hash_val, 16) % 10000)
        return ("127.0.0.1", port)
    return (str(socket_path), None)


def connect(socket_path: Path, timeout: float) -> socket.socket:
    """Open a client connection to the daemon.

    Raises:
        TransportError: If the socket is missing or the connect fails.
    """
    addr, port = get_connection_info(socket_path)
    if port is None and not socket_path.exists():
        raise TransportError(f"Daemon not running (socket not found: {socket_path})")

    family = socket.AF_INET if port is not None else socket.AF_UNIX
    client = socket.socket(family, socket.SOCK_STREAM)
    client.settimeout(timeout)
    try:
        client.connect((addr, port) if port is not None else addr)
    except OSError as e:
        client.close()
        raise TransportError(f"Cannot connect to daemon at {addr}: {e}") from e
    return client


def exchange(socket_path: Path, request: Request, connect_timeout: float, response_timeout: float) -> Response:
    """Send one request and read its response over a fresh connection.

    Raises:
        TransportError: On any connect, send, receive or decode failure.
    """
    client = connect(socket_path, connect_timeout)
    try:
        client.settimeout(response_timeout)
        client.sendall(request.encode())
        return Response.decode(read_message(client))
    except OSError as e:
        raise TransportError(f"Daemon exchange failed: {e}") from e
    finally:
        client.close()


def is_socket_connectable(socket_path: Path, timeout: float = 1.0) -> bool:
    """Check if daemon socket exists and accepts connections."""
    try:
        connect(socket_path, timeout).close()
        return True
    except TransportError:
        return False


def try_acquire_pidfile_lock(pid_path: Path) -> Optional[IO]:
    """Try to acquire exclusive lock on PID file.

    Returns:
        File handle if lock acquired (caller must keep it open!), None if locked by another process.
    """
    try:
        pid_path.parent.mkdir(parents=True, exist_ok=True)
        # Open in append mode to create if not exists, don't truncate
        pidfile = open(pid_path, "a+")
    except OSError as e:
        logger.debug(f"Failed to open PID file: {e}")
        return None

    if sys.platform == "win32":
        try:
            msvcrt.locking(pidfile.fileno(), msvcrt.LK_NBLCK, 1)
            return pidfile
        except OSError:
            pidfile.close()
            return None
    try:
        fcntl.flock(pidfile.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        return pidfile
    except (BlockingIOError, OSError):
        pidfile.close()
        return None


def write_pid_to_locked_file(pidfile: IO, pid: int) -> None:
    """Write PID to an already-locked file."""
    pidfile.seek(0)
    pidfile.truncate()
    pidfile.write(str(pid))
    pidfile.flush()


def run_daemon(settings: Settings, socket_path: Optional[Path] = None) -> int:
    """Run the daemon in the foreground until it is signalled or told to stop.

    Returns:
        Process exit code: 0 after a clean shutdown, 1 if another daemon
        already owns the socket.
    """
    from hookd.daemon.core import HookDaemon
    from hookd.handlers import create_handlers
    from hookd.stats import ServerStats

    socket_path = socket_path if socket_path is not None else resolve_socket_path(settings)
    pid_path = get_pid_path(socket_path)

    pidfile = try_acquire_pidfile_lock(pid_path)
    if pidfile is None:
        print(f"Daemon already running (PID file locked: {pid_path})", file=sys.stderr)
        return 1

    try:
        write_pid_to_locked_file(pidfile, os.getpid())
        stats = ServerStats(socket_path=str(socket_path))
        handlers = create_handlers(settings, stats=stats)
        daemon = HookDaemon(socket_path, handlers, stats=stats)
        try:
            daemon.run()
        except RuntimeError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
        return 0
    finally:
        # Unlink while still holding the lock so a new daemon never loses its file
        try:
            pid_path.unlink()
        except OSError:
            pass
        pidfile.close()  # Releases the lock


def stop_daemon(socket_path: Path, timeout: float = 5.0) -> bool:
    """Ask the daemon to shut down.

    Returns:
        True if a daemon acknowledged, False if none was reachable.
    """
    try:
        exchange(socket_path, Request(method="shutdown"), connect_timeout=1.0, response_timeout=timeout)
        return True
    except TransportError:
        return False


def query_daemon(socket_path: Path, method: str, params: str = "", timeout: float = 5.0) -> Response:
    """Send a request straight to the daemon, without fallback.

    Raises:
        TransportError: If the daemon is unreachable.
    """
    return exchange(socket_path, Request(method=method, params=params), connect_timeout=1.0, response_timeout=timeout)
