"""
Wire format between the hook client and the daemon.

One connection carries exactly one exchange, each message a single line of
JSON terminated by a newline:

    -> {"method": "lint", "params": "<raw hook payload>"}
    <- {"result": "Lints pass. Continue with your task.", "exit_code": 2, "error": null}
"""

import json
import socket
from dataclasses import dataclass
from typing import Optional

from hookd.errors import ProtocolError

# Maximum message size: 10MB - prevents OOM from a peer that never sends
# the newline terminator
MAX_MESSAGE_SIZE = 10 * 1024 * 1024

# Process exit codes understood by the editor
EXIT_OK = 0
EXIT_INTERNAL_ERROR = 1
EXIT_SHOW_MESSAGE = 2


@dataclass(frozen=True)
class Request:
    method: str
    params: str = ""

    def encode(self) -> bytes:
        return json.dumps({"method": self.method, "params": self.params}).encode() + b"\n"

    @classmethod
    def decode(cls, line: bytes) -> "Request":
        data = _decode_object(line)
        method = data.get("method")
        params = data.get("params", "")
        if not isinstance(method, str) or not method:
            raise ProtocolError("Request is missing 'method'")
        if params is None:
            params = ""
        if not isinstance(params, str):
            raise ProtocolError("Request 'params' must be a string")
        return cls(method=method, params=params)


@dataclass(frozen=True)
class Response:
    result: str = ""
    exit_code: int = EXIT_OK
    error: Optional[str] = None

    @classmethod
    def failure(cls, message: str) -> "Response":
        return cls(result="", exit_code=EXIT_INTERNAL_ERROR, error=message)

    def encode(self) -> bytes:
        return (
            json.dumps({"result": self.result, "exit_code": self.exit_code, "error": self.error}).encode()
            + b"\n"
        )

    @classmethod
    def decode(cls, line: bytes) -> "Response":
        data = _decode_object(line)
        result = data.get("result", "")
        exit_code = data.get("exit_code")
        error = data.get("error")
        if not isinstance(result, str):
            raise ProtocolError("Response 'result' must be a string")
        if isinstance(exit_code, bool) or not isinstance(exit_code, int):
            raise ProtocolError("Response is missing an integer 'exit_code'")
        if error is not None and not isinstance(error, str):
            raise ProtocolError("Response 'error' must be a string or null")
        return cls(result=result, exit_code=exit_code, error=error)


def _decode_object(line: bytes) -> dict:
    try:
        data = json.loads(line.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ProtocolError(f"Invalid message: {e}") from e
    if not isinstance(data, dict):
        raise ProtocolError("Message must be a JSON object")
    return data


def read_message(conn: socket.socket, limit: int = MAX_MESSAGE_SIZE) -> bytes:
    """Read one newline-terminated message from ``conn``.

    Returns:
        The message without its terminator.

    Raises:
        ProtocolError: If the peer closes before a complete message or the
            message exceeds ``limit`` bytes.
        OSError: On socket errors, including timeouts.
    """
    data = b""
    while b"\n" not in data:
        chunk = conn.recv(4096)
        if not chunk:
            if data.strip():
                # Peer closed without the terminator; accept what was sent
                return data.strip()
            raise ProtocolError("Connection closed before a message was received")
        data += chunk
        if len(data) > limit:
            raise ProtocolError(f"Message exceeds {limit} byte limit")
    line, _, _ = data.partition(b"\n")
    return line
