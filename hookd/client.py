"""
Client for the hook daemon, with in-process fallback.

``Client.call`` tries the daemon first. Any transport failure (socket
missing, connection refused, timeout, malformed or error response) runs the
same request through a local HookHandlers instead, so the caller sees the
same (result, exit_code) whichever path answered.
"""

import logging
import os
from pathlib import Path
from typing import Callable, Optional

from hookd.config import Settings
from hookd.daemon.startup import exchange, resolve_socket_path
from hookd.errors import TransportError
from hookd.handlers import HookHandlers, create_handlers
from hookd.hook_input import with_default_cwd
from hookd.protocol import Request, Response

logger = logging.getLogger(__name__)

# Dialing must stay fast: a stuck daemon should cost the hook at most this
DEFAULT_DIAL_TIMEOUT = 1.0

# Reply budget for methods that do not run a hook command
DEFAULT_RESPONSE_TIMEOUT = 5.0

# Added to a hook's own timeout when waiting for the daemon's reply; covers
# lock acquisition and process teardown
RESPONSE_MARGIN = 10.0

HOOK_METHODS = ("lint", "test", "validate")


class Transport:
    """Delivers one request to the daemon and returns its response."""

    def call(self, request: Request, timeout: float) -> Response:
        """Raises TransportError when the daemon cannot answer."""
        raise NotImplementedError


class UnixSocketTransport(Transport):
    """Transport over the daemon's local socket (TCP on localhost on Windows)."""

    def __init__(self, socket_path: Path, dial_timeout: float = DEFAULT_DIAL_TIMEOUT):
        self.socket_path = Path(socket_path)
        self.dial_timeout = dial_timeout

    def call(self, request: Request, timeout: float) -> Response:
        return exchange(self.socket_path, request, connect_timeout=self.dial_timeout, response_timeout=timeout)


class Client:
    """Calls the daemon, falling back to in-process handlers.

    Args:
        transport: How to reach the daemon; None always uses the fallback
        fallback_factory: Builds the local handlers, only when first needed
        settings: Supplies hook timeouts for the reply deadline
    """

    def __init__(
        self,
        transport: Optional[Transport],
        fallback_factory: Callable[[], HookHandlers],
        settings: Optional[Settings] = None,
    ):
        self.transport = transport
        self.fallback_factory = fallback_factory
        self.settings = settings if settings is not None else Settings()
        self._fallback: Optional[HookHandlers] = None

    def response_timeout(self, method: str) -> float:
        if method in HOOK_METHODS:
            return self.settings.for_check(method).timeout_seconds + RESPONSE_MARGIN
        return DEFAULT_RESPONSE_TIMEOUT

    @property
    def fallback(self) -> HookHandlers:
        if self._fallback is None:
            self._fallback = self.fallback_factory()
        return self._fallback

    def call(self, method: str, params: str = "") -> Response:
        """Run ``method`` on the daemon, or locally if the daemon can't."""
        if method in HOOK_METHODS:
            params = with_default_cwd(params, os.getcwd())
        request = Request(method=method, params=params)

        if self.transport is None:
            logger.debug(f"Server disabled, running {method} in-process")
            return self.fallback.handle(request)

        try:
            response = self.transport.call(request, self.response_timeout(method))
        except TransportError as e:
            logger.debug(f"Server unavailable, running {method} in-process ({e})")
            return self.fallback.handle(request)

        if response.error is not None:
            logger.debug(f"Server returned an error for {method}, running in-process ({response.error})")
            return self.fallback.handle(request)

        logger.debug(f"Using server for {method}")
        return response


def create_client(settings: Settings) -> Client:
    """Client wired to the configured socket and the production handlers."""
    transport: Optional[Transport] = None
    if not settings.no_server:
        transport = UnixSocketTransport(resolve_socket_path(settings))
    return Client(transport, fallback_factory=lambda: create_handlers(settings), settings=settings)
