"""Error taxonomy for playchannel.

Every error raised by the library derives from :class:`Error` and carries an
:class:`ErrorKind` so callers can branch on ``exc.kind`` instead of matching
on classes or messages.
"""

from __future__ import annotations

import builtins
from enum import Enum


class ErrorKind(str, Enum):
    ALREADY_HANDLED = "already_handled"
    PROTOCOL = "protocol"
    CONNECTION_CLOSED = "connection_closed"
    TARGET_CLOSED = "target_closed"
    TIMEOUT = "timeout"
    INVALID_ARGUMENT = "invalid_argument"
    REMOTE = "remote"
    GENERIC = "generic"


class Error(Exception):
    """Base class for all playchannel errors."""

    kind: ErrorKind = ErrorKind.GENERIC

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class AlreadyHandled(Error):
    """Raised when a second terminal action is attempted on a route or dialog."""

    kind = ErrorKind.ALREADY_HANDLED


class ProtocolError(Error):
    """Raised for malformed or unmatched incoming messages."""

    kind = ErrorKind.PROTOCOL


class ConnectionClosed(Error):
    """Raised when the connection is gone while an operation is outstanding."""

    kind = ErrorKind.CONNECTION_CLOSED


class TargetClosed(Error):
    """Raised when the owning page, context or object is closed."""

    kind = ErrorKind.TARGET_CLOSED


class TimeoutError(Error, builtins.TimeoutError):
    """Raised when a waiter or remote operation exceeds its timeout."""

    kind = ErrorKind.TIMEOUT


class InvalidArgument(Error, ValueError):
    """Raised for unsupported argument types and malformed URL patterns."""

    kind = ErrorKind.INVALID_ARGUMENT


class RemoteError(Error):
    """Raised when the driver reports an error in a call result."""

    kind = ErrorKind.REMOTE

    remote_name: str
    remote_stack: str

    def __init__(self, message: str, remote_name: str = "Error", remote_stack: str = "") -> None:
        self.remote_name = remote_name
        self.remote_stack = remote_stack
        super().__init__(message)


_TARGET_CLOSED_MARKERS = (
    "Target closed",
    "Target page, context or browser has been closed",
)


def parse_remote_error(payload: dict) -> Error:
    """Convert the ``error`` member of a result message into an exception."""
    if not isinstance(payload, dict):
        return ProtocolError(f"Malformed error payload: {payload!r}")
    inner = payload.get("error", payload)
    if not isinstance(inner, dict):
        return ProtocolError(f"Malformed error payload: {payload!r}")
    name = inner.get("name") or "Error"
    message = inner.get("message") or ""
    stack = inner.get("stack") or ""
    if name == "TimeoutError":
        return TimeoutError(message)
    if name == "TargetClosedError" or any(marker in message for marker in _TARGET_CLOSED_MARKERS):
        return TargetClosed(message)
    return RemoteError(message, remote_name=name, remote_stack=stack)
