"""
Protocol Messages & Wire Helpers.

This module contains:
1. Data Structures: the TypedDicts for every message exchanged with the driver
2. Classification: classify_message
3. Wire helpers: header list conversion, base64 payloads, debug logging
"""

from __future__ import annotations

import base64
import logging
from collections.abc import Mapping
from typing import Any, Literal, TypedDict, Union

from ..errors import InvalidArgument, ProtocolError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


class OutgoingCall(TypedDict):
    id: int
    guid: str
    method: str
    params: dict[str, Any]
    metadata: dict[str, Any]


class CreateParams(TypedDict):
    type: str
    guid: str
    initializer: dict[str, Any]


class CreateMessage(TypedDict):
    guid: str
    method: Literal["__create__"]
    params: CreateParams


class DisposeMessage(TypedDict):
    guid: str
    method: Literal["__dispose__"]


class AdoptMessage(TypedDict):
    guid: str
    method: Literal["__adopt__"]
    params: dict[str, Any]


class ResultMessage(TypedDict, total=False):
    id: int
    result: Any
    error: dict[str, Any]


class EventMessage(TypedDict):
    guid: str
    method: str
    params: dict[str, Any]


class HeaderEntry(TypedDict):
    name: str
    value: str


IncomingMessage = Union[CreateMessage, DisposeMessage, AdoptMessage, ResultMessage, EventMessage]
MessageKind = Literal["result", "create", "dispose", "adopt", "event"]

# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


def classify_message(message: Any) -> MessageKind:
    """Return the kind of an inbound message, raising ProtocolError if malformed."""
    if not isinstance(message, dict):
        raise ProtocolError(f"Protocol message must be an object, got {type(message).__name__}")

    if "id" in message:
        if not isinstance(message["id"], int):
            raise ProtocolError(f"Result message has a non-integer id: {message['id']!r}")
        return "result"

    guid = message.get("guid")
    method = message.get("method")
    if not isinstance(guid, str) or not isinstance(method, str):
        raise ProtocolError(f"Message has neither an id nor a guid/method pair: {message!r}")

    if method == "__create__":
        params = message.get("params")
        if (
            not isinstance(params, dict)
            or not isinstance(params.get("guid"), str)
            or not isinstance(params.get("type"), str)
        ):
            raise ProtocolError(f"Malformed __create__ message: {message!r}")
        return "create"
    if method == "__dispose__":
        return "dispose"
    if method == "__adopt__":
        params = message.get("params")
        if not isinstance(params, dict) or not isinstance(params.get("guid"), str):
            raise ProtocolError(f"Malformed __adopt__ message: {message!r}")
        return "adopt"
    return "event"


# ---------------------------------------------------------------------------
# Wire helpers
# ---------------------------------------------------------------------------


def serialize_headers(headers: Mapping[str, str]) -> list[HeaderEntry]:
    """Convert a header mapping into the driver's name/value list."""
    entries: list[HeaderEntry] = []
    for name, value in headers.items():
        if not isinstance(name, str):
            raise InvalidArgument(f"Header names must be strings, got {type(name).__name__}")
        entries.append(HeaderEntry(name=name, value=str(value)))
    return entries


def parse_headers(entries: list[HeaderEntry] | None) -> dict[str, str]:
    """Convert a driver header list into a dict keyed by lower-cased name.

    Repeated headers are joined the way browsers expose them: ``set-cookie``
    with newlines, everything else with ``", "``.
    """
    headers: dict[str, str] = {}
    for entry in entries or []:
        name = entry["name"].lower()
        value = entry["value"]
        if name in headers:
            separator = "\n" if name == "set-cookie" else ", "
            headers[name] = headers[name] + separator + value
        else:
            headers[name] = value
    return headers


def to_base64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def from_base64(data: str | None) -> bytes | None:
    if data is None:
        return None
    return base64.b64decode(data)


def post_data_bytes(post_data: str | bytes | None) -> bytes | None:
    """Normalize a caller supplied post body into bytes."""
    if post_data is None:
        return None
    if isinstance(post_data, bytes):
        return post_data
    if isinstance(post_data, str):
        return post_data.encode("utf-8")
    raise InvalidArgument(f"post_data must be either str or bytes, found: {type(post_data).__name__}")


def log_protocol(direction: Literal["SEND", "RECV"], message: Mapping[str, Any]) -> None:
    """Log one protocol message; callers gate this on the debug flag."""
    logger.debug("%s %s", "->" if direction == "SEND" else "<-", _abbreviate(message))


def _abbreviate(message: Mapping[str, Any], limit: int = 500) -> str:
    text = repr(dict(message))
    if len(text) > limit:
        return text[:limit] + "..."
    return text
