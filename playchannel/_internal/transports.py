"""
Driver Transport Layer.

This module contains:
- Transport Protocol
- QueueTransport (in-process driver, embedding and tests)
- PipeTransport (driver subprocess over stdio)
"""

from __future__ import annotations

import contextlib
import json
import logging
import queue
import struct
import threading
from typing import IO, Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

# Guard against a corrupted length header allocating the world.
MAX_MESSAGE_SIZE = 256 * 1024 * 1024


@runtime_checkable
class Transport(Protocol):
    """Protocol for driver transport mechanisms.

    ``send`` must be thread-safe and must not wait for the peer to consume the
    message. ``recv`` blocks until a message is available and returns ``None``
    once the peer has closed the stream.
    """

    def send(self, message: dict[str, Any]) -> None:
        """Send a message to the driver."""
        ...

    def recv(self) -> dict[str, Any] | None:
        """Receive a message from the driver. Blocks until available."""
        ...

    def close(self) -> None:
        """Close the transport. Further send/recv calls may fail."""
        ...


class QueueTransport:
    """Transport over a pair of :class:`queue.Queue` objects.

    The driver side puts inbound messages on ``recv_queue`` and reads outbound
    messages from ``send_queue``. Putting ``None`` on ``recv_queue`` ends the
    stream.
    """

    def __init__(
        self,
        send_queue: queue.Queue[dict[str, Any]] | None = None,
        recv_queue: queue.Queue[dict[str, Any] | None] | None = None,
    ) -> None:
        self.send_queue: queue.Queue[dict[str, Any]] = send_queue if send_queue is not None else queue.Queue()
        self.recv_queue: queue.Queue[dict[str, Any] | None] = (
            recv_queue if recv_queue is not None else queue.Queue()
        )
        self._closed = False

    def send(self, message: dict[str, Any]) -> None:
        if self._closed:
            raise ConnectionError("Transport closed")
        self.send_queue.put(message)

    def recv(self) -> dict[str, Any] | None:
        return self.recv_queue.get()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        # Unblock a reader parked in recv().
        self.recv_queue.put(None)


class PipeTransport:
    """Transport over the stdio pipes of a driver subprocess.

    Each message is JSON encoded and prefixed with its length as a 4-byte
    little-endian unsigned integer, which is the framing the driver speaks.
    """

    def __init__(self, reader: IO[bytes], writer: IO[bytes]) -> None:
        self._reader = reader
        self._writer = writer
        self._lock = threading.Lock()
        self._recv_lock = threading.Lock()

    def send(self, message: dict[str, Any]) -> None:
        """Serialize to JSON with length prefix."""
        try:
            data = json.dumps(message, separators=(",", ":")).encode("utf-8")
        except TypeError as e:
            logger.error(
                "Cannot serialize protocol message:\n"
                "  Method: %s\n"
                "  Error: %s",
                message.get("method"),
                e,
            )
            raise
        frame = struct.pack("<I", len(data)) + data
        with self._lock:
            self._writer.write(frame)
            self._writer.flush()

    def recv(self) -> dict[str, Any] | None:
        """Receive a length-prefixed JSON message, or None at end of stream."""
        with self._recv_lock:
            header = self._read_exactly(4)
            if not header:
                return None
            if len(header) < 4:
                raise ConnectionError("Pipe closed inside length header")
            length = struct.unpack("<I", header)[0]
            if length > MAX_MESSAGE_SIZE:
                raise ValueError(f"Message too large: {length} bytes")
            data = self._read_exactly(length)
            if len(data) < length:
                raise ConnectionError(f"Incomplete message: got {len(data)}/{length} bytes")
            return json.loads(data.decode("utf-8"))

    def _read_exactly(self, n: int) -> bytes:
        chunks = []
        remaining = n
        while remaining > 0:
            chunk = self._reader.read(remaining)
            if not chunk:
                break
            chunks.append(chunk)
            remaining -= len(chunk)
        return b"".join(chunks)

    def close(self) -> None:
        """Close both pipes."""
        with contextlib.suppress(Exception):
            self._writer.close()
        with contextlib.suppress(Exception):
            self._reader.close()
