"""
Hook daemon core - the HookDaemon server class.

Owns one set of handlers (lock coordinator, hook runner, skip registry)
and serves them over a Unix socket (TCP on localhost on Windows). Every
accepted connection is handled on its own thread, so a slow lint run never
delays the next request.
"""

import errno
import logging
import os
import signal
import socket
import sys
import threading
import time
from pathlib import Path
from typing import Any, Optional

from hookd.daemon.startup import get_connection_info
from hookd.errors import ProtocolError
from hookd.handlers import HookHandlers
from hookd.protocol import MAX_MESSAGE_SIZE, Request, Response, read_message
from hookd.stats import ServerStats

# Maximum concurrent connections - prevents resource exhaustion from
# connection floods or misbehaving clients. Hook traffic is a handful of
# connections per edit.
MAX_CONNECTIONS = 100

# Seconds a client gets to send its request line
REQUEST_READ_TIMEOUT = 5.0

# Extra seconds beyond the longest hook timeout that shutdown waits for
# in-flight handlers
SHUTDOWN_GRACE = 5.0

logger = logging.getLogger(__name__)


class HookDaemon:
    """
    Hook daemon serving lint/test/validate/stats requests.

    Listens on a local socket; each connection carries exactly one request
    and one response. Shuts down on SIGINT/SIGTERM or a ``shutdown`` request,
    letting in-flight hooks finish first.
    """

    def __init__(
        self,
        socket_path: Path,
        handlers: HookHandlers,
        stats: Optional[ServerStats] = None,
        accept_timeout: float = 1.0,
    ):
        """
        Initialize the daemon.

        Args:
            socket_path: Where to listen
            handlers: Request handlers shared by all connections
            stats: Counters for the ``stats`` method (defaults to the handlers' own)
            accept_timeout: How often the accept loop checks for shutdown
        """
        self.socket_path = Path(socket_path)
        self.handlers = handlers
        self.stats = stats if stats is not None else handlers.stats
        self.accept_timeout = accept_timeout

        self._socket: Optional[socket.socket] = None
        self._bound = False
        self._shutdown_requested = threading.Event()
        self._ready = threading.Event()

        self._connection_semaphore = threading.Semaphore(MAX_CONNECTIONS)
        self._workers: set[threading.Thread] = set()
        self._workers_lock = threading.Lock()
        self._connection_seq = 0

    @property
    def ready(self) -> threading.Event:
        """Set once the daemon is listening."""
        return self._ready

    def request_shutdown(self) -> None:
        self._shutdown_requested.set()

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown_requested.is_set()

    def handle_request(self, request: Request) -> Response:
        """Handle one decoded request."""
        self.stats.record_request()

        if request.method == "shutdown":
            self.request_shutdown()
            return Response(result="shutting down")

        start = time.monotonic()
        response = self.handlers.handle(request)
        duration = time.monotonic() - start

        if response.error is not None:
            self.stats.record_error()
            logger.info(f"{request.method} failed in {duration:.3f}s: {response.error}")
        else:
            logger.info(f"{request.method} completed in {duration:.3f}s (exit {response.exit_code})")
        return response

    def _create_server_socket(self) -> socket.socket:
        """Create appropriate socket for platform.

        On Windows, creates a TCP socket bound to localhost.
        On Unix, creates a Unix domain socket (mode 0600).

        Returns:
            Configured and bound socket ready for listening.
        """
        addr, port = get_connection_info(self.socket_path)

        if port is not None:
            sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((addr, port))
            logger.info(f"Listening on {addr}:{port}")
        else:
            self.socket_path.parent.mkdir(parents=True, exist_ok=True)
            sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
            # Try to bind without deleting an existing socket first - a bind
            # failure means either a live daemon or a stale file.
            try:
                sock.bind(addr)
            except OSError as e:
                if e.errno != errno.EADDRINUSE:
                    sock.close()
                    raise
                try:
                    probe = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
                    probe.settimeout(1.0)
                    probe.connect(addr)
                    probe.close()
                    sock.close()
                    raise RuntimeError(f"Another daemon is already listening on {addr}")
                except (ConnectionRefusedError, FileNotFoundError):
                    # Stale socket - remove and retry
                    try:
                        self.socket_path.unlink()
                    except FileNotFoundError:
                        pass
                    sock.bind(addr)
            self._bound = True
            os.chmod(addr, 0o600)
            logger.info(f"Listening on {addr}")

        sock.listen(64)
        sock.settimeout(self.accept_timeout)
        return sock

    def _cleanup_socket(self) -> None:
        """Close the listener and remove the socket file."""
        if self._socket:
            self._socket.close()
            self._socket = None
        _, port = get_connection_info(self.socket_path)
        # Never remove a socket file that belongs to another daemon
        if port is None and self._bound:
            self._bound = False
            try:
                self.socket_path.unlink()
            except FileNotFoundError:
                pass
        logger.info("Socket cleaned up")

    def _serve_connection(self, conn: socket.socket) -> None:
        """Read one request, dispatch it, write one response, close."""
        self.stats.connection_opened()
        try:
            conn.settimeout(REQUEST_READ_TIMEOUT)
            try:
                request = Request.decode(read_message(conn, MAX_MESSAGE_SIZE))
            except ProtocolError as e:
                logger.warning(f"Rejecting malformed request: {e}")
                self.stats.record_error()
                response = Response.failure(f"Invalid request: {e}")
            else:
                # The hook may legitimately run for its whole timeout
                conn.settimeout(None)
                response = self.handle_request(request)
            conn.sendall(response.encode())
        except BrokenPipeError:
            # Client disconnected before receiving response - normal occurrence
            logger.debug("Client disconnected before receiving response")
        except socket.timeout:
            logger.debug("Client did not send a request in time")
        except Exception:
            logger.exception("Error handling connection")
            self.stats.record_error()
            try:
                conn.sendall(Response.failure("Internal daemon error").encode())
            except OSError:
                pass
        finally:
            conn.close()
            self.stats.connection_closed()
            self._connection_semaphore.release()
            with self._workers_lock:
                self._workers.discard(threading.current_thread())

    def _reject_connection(self, conn: socket.socket) -> None:
        try:
            conn.settimeout(1.0)
            conn.sendall(
                Response.failure(
                    f"Server busy: maximum {MAX_CONNECTIONS} concurrent connections reached"
                ).encode()
            )
        except OSError:
            pass
        finally:
            conn.close()
        logger.warning(f"Connection rejected: at {MAX_CONNECTIONS} connection limit")

    def _accept_one(self) -> None:
        """Accept a single connection and hand it to a worker thread."""
        if not self._socket:
            return

        try:
            conn, _ = self._socket.accept()
        except socket.timeout:
            return
        except OSError:
            if not self.shutdown_requested:
                logger.exception("Accept failed")
            return

        # Non-blocking acquire to immediately reject when at limit
        if not self._connection_semaphore.acquire(blocking=False):
            self._reject_connection(conn)
            return

        self._connection_seq += 1
        worker = threading.Thread(
            target=self._serve_connection,
            args=(conn,),
            name=f"hookd-conn-{self._connection_seq}",
            daemon=True,
        )
        with self._workers_lock:
            self._workers.add(worker)
        worker.start()

    def _wait_for_workers(self) -> None:
        """Let in-flight handlers finish, bounded by the longest hook timeout."""
        settings = self.handlers.settings
        budget = max(settings.lint.timeout_seconds, settings.test.timeout_seconds) + SHUTDOWN_GRACE
        deadline = time.monotonic() + budget

        with self._workers_lock:
            workers = list(self._workers)
        if workers:
            logger.info(f"Waiting for {len(workers)} in-flight request(s) to finish")
        for worker in workers:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            worker.join(timeout=remaining)

        with self._workers_lock:
            leftover = [w for w in self._workers if w.is_alive()]
        if leftover:
            logger.warning(f"{len(leftover)} request(s) still running after {budget}s, exiting anyway")

    def run(self) -> None:
        """Run the daemon main loop."""
        # Signal handlers just set the flag - logging is not async-signal-safe,
        # so the signal is reported after the handler returns.
        pending_signal: list[int] = []

        def _signal_handler(signum: int, frame: Any) -> None:
            pending_signal.append(signum)
            self._shutdown_requested.set()

        # signal.signal() only works from the main thread; embedded/test
        # daemons rely on request_shutdown() instead
        if threading.current_thread() is threading.main_thread():
            signal.signal(signal.SIGINT, _signal_handler)
            if sys.platform != "win32":
                signal.signal(signal.SIGTERM, _signal_handler)

        try:
            self._socket = self._create_server_socket()
            self._ready.set()
            logger.info(f"Hook daemon started (PID {os.getpid()})")

            while not self.shutdown_requested:
                self._accept_one()

            if pending_signal:
                signame = signal.Signals(pending_signal[0]).name
                logger.info(f"Received {signame}, initiating graceful shutdown")
            else:
                logger.info("Shutdown requested")

        except KeyboardInterrupt:
            logger.info("Received interrupt, shutting down")
        finally:
            # Stop accepting first, then drain
            if self._socket:
                self._socket.close()
                self._socket = None
            self._wait_for_workers()
            self._cleanup_socket()
            logger.info("Daemon stopped")
