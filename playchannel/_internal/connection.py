"""
Connection & Object Registry.

This module contains:
- Connection (pending-call table, object arena, inbound dispatch)
- PendingCall bookkeeping
- guid <-> proxy conversion for call params and results
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
import uuid
from collections.abc import Coroutine
from typing import Any, TypedDict

from ..config import ConnectionConfig, resolve_config
from ..errors import ConnectionClosed, Error, ProtocolError, parse_remote_error
from .channel_owner import ChannelOwner, RootChannelOwner
from .messages import OutgoingCall, classify_message, log_protocol
from .object_factory import ObjectFactoryRegistry
from .transports import Transport

logger = logging.getLogger(__name__)


class PendingCall(TypedDict):
    id: int
    guid: str
    method: str
    future: asyncio.Future[Any]


class Connection:
    """Client side of the driver protocol.

    Inbound messages are read on a background thread and handed to the event
    loop in arrival order, so every dispatch runs on the loop thread one at a
    time. Outbound calls go straight to the transport and never wait for the
    reply; only awaiting the returned future does.
    """

    def __init__(
        self,
        transport: Transport,
        config: ConnectionConfig | None = None,
        *,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        self.id = str(uuid.uuid4())
        self._transport = transport
        self._config = resolve_config(config)
        self._loop = loop if loop is not None else asyncio.get_running_loop()
        self._debug = bool(self._config.get("debug_protocol"))

        self.lock = threading.Lock()
        self._last_id = 0
        self.pending: dict[int, PendingCall] = {}
        self._objects: dict[str, ChannelOwner] = {}
        self._tasks: set[asyncio.Task[Any]] = set()
        self._closed_error: ConnectionClosed | None = None
        self._stopping = False
        self._recv_thread: threading.Thread | None = None
        self.closed_future: asyncio.Future[None] = self._loop.create_future()
        self._factories = ObjectFactoryRegistry.get_instance()
        self._root = RootChannelOwner(self)

    @property
    def is_closed(self) -> bool:
        return self._closed_error is not None

    @property
    def default_timeout_ms(self) -> float:
        return self._config["default_timeout_ms"]

    @property
    def file_reader(self) -> Any:
        return self._config["file_reader"]

    @property
    def root(self) -> RootChannelOwner:
        return self._root

    # -----------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------

    def run(self) -> None:
        """Start reading inbound messages on a daemon thread."""
        if self._recv_thread is not None:
            raise RuntimeError(f"Connection {self.id} is already running")
        self._recv_thread = threading.Thread(
            target=self._recv_loop, name=f"playchannel-recv-{self.id[:8]}", daemon=True
        )
        self._recv_thread.start()

    async def initialize(self) -> ChannelOwner:
        """Send ``initialize`` to the root object and return the top-level object."""
        return await self._root.initialize(self._config["sdk_language"])

    def close(self, reason: str = "Connection closed") -> None:
        """Fail every outstanding call and waiter, then close the transport."""
        if self._closed_error is not None:
            return
        self._stopping = True
        self._closed_error = ConnectionClosed(reason)
        logger.debug(f"Connection {self.id}: closing ({reason})")

        with self.lock:
            pending = list(self.pending.values())
            self.pending.clear()
        for call in pending:
            if not call["future"].done():
                call["future"].set_exception(ConnectionClosed(f"{call['method']}: {reason}"))

        for guid in list(self._root._child_guids):
            self._dispose_object(guid, reason)
        self._root._mark_closed(reason)

        try:
            self._transport.close()
        except Exception as exc:
            logger.warning(f"Connection {self.id}: transport close failed: {exc}")

        if not self.closed_future.done():
            self.closed_future.set_result(None)

    async def wait_until_closed(self) -> None:
        await self.closed_future

    # -----------------------------------------------------------------------
    # Outbound
    # -----------------------------------------------------------------------

    def call(self, guid: str, method: str, params: dict[str, Any] | None = None) -> asyncio.Future[Any]:
        """Send ``method`` to the object *guid* and return a future for its result.

        Must be called on the connection's event loop thread.
        """
        future: asyncio.Future[Any] = self._loop.create_future()
        if self._closed_error is not None:
            future.set_exception(ConnectionClosed(f"{method}: {self._closed_error.message}"))
            return future

        with self.lock:
            self._last_id += 1
            call_id = self._last_id
            self.pending[call_id] = PendingCall(id=call_id, guid=guid, method=method, future=future)

        message = OutgoingCall(
            id=call_id,
            guid=guid,
            method=method,
            params=self._replace_objects_with_guids(params or {}),
            metadata={"wallTime": int(time.time() * 1000)},
        )
        if self._debug:
            log_protocol("SEND", message)
        try:
            self._transport.send(dict(message))
        except Exception as exc:
            with self.lock:
                self.pending.pop(call_id, None)
            logger.error(f"Connection send failed for {method}: {exc}")
            if not future.done():
                future.set_exception(ConnectionClosed(f"{method}: {exc}"))
        return future

    def create_task(self, coro: Coroutine[Any, Any, Any], description: str) -> asyncio.Task[Any]:
        """Run *coro* on the connection loop, logging failures nobody awaited."""
        task = self._loop.create_task(coro)
        self._tasks.add(task)

        def done(finished: asyncio.Task[Any]) -> None:
            self._tasks.discard(finished)
            if finished.cancelled():
                return
            exc = finished.exception()
            if exc is not None:
                logger.error("Task %s failed", description, exc_info=exc)

        task.add_done_callback(done)
        return task

    # -----------------------------------------------------------------------
    # Inbound
    # -----------------------------------------------------------------------

    def dispatch(self, message: dict[str, Any]) -> None:
        """Handle one inbound message. Raises ProtocolError for bad input."""
        if self._debug:
            log_protocol("RECV", message)
        kind = classify_message(message)

        if kind == "result":
            self._dispatch_result(message)
            return

        guid = message["guid"]
        method = message["method"]
        params = message.get("params") or {}

        if kind == "create":
            parent = self._objects.get(guid)
            if parent is None:
                raise ProtocolError(f'Cannot find parent object {guid} to create {params["guid"]}')
            self._create_remote_object(parent, params["type"], params["guid"], params.get("initializer") or {})
            return

        obj = self._objects.get(guid)
        if obj is None:
            raise ProtocolError(f'Cannot find object to "{method}": {guid}')

        if kind == "dispose":
            self._dispose_object(guid, params.get("reason") or f"{obj._type} was disposed")
        elif kind == "adopt":
            self._adopt(obj, params["guid"])
        else:
            obj._dispatch_event(method, self._replace_guids_with_objects(params))

    def _dispatch_result(self, message: dict[str, Any]) -> None:
        with self.lock:
            call = self.pending.pop(message["id"], None)
        if call is None:
            raise ProtocolError(f"Received result for unknown call id {message['id']}")
        future = call["future"]
        if future.done():
            logger.debug(f"Result for call {call['id']} ({call['method']}) arrived after its future settled")
            return
        if message.get("error") is not None:
            future.set_exception(parse_remote_error(message["error"]))
        else:
            future.set_result(self._replace_guids_with_objects(message.get("result")))

    def _dispatch_safe(self, message: dict[str, Any]) -> None:
        try:
            self.dispatch(message)
        except Error as exc:
            logger.error(f"Connection {self.id}: dropping inbound message: {exc}")
        except Exception:
            logger.exception(f"Connection {self.id}: dispatch crashed")

    def _recv_loop(self) -> None:
        while True:
            try:
                message = self._transport.recv()
            except Exception as exc:
                if self._stopping:
                    logger.debug(f"Connection {self.id} shutting down ({exc})")
                else:
                    logger.error(f"Connection recv failed (connection_id={self.id}): {exc}")
                self._post(self.close, f"Transport failed: {exc}")
                break

            if message is None:
                self._post(self.close, "Driver closed the connection")
                break
            if not self._post(self._dispatch_safe, message):
                break

    def _post(self, callback: Any, argument: Any) -> bool:
        try:
            self._loop.call_soon_threadsafe(callback, argument)
        except RuntimeError as e:
            if "Event loop is closed" in str(e):
                logger.warning(f"Connection {self.id}: loop closed, dropping inbound traffic")
                return False
            raise
        return True

    # -----------------------------------------------------------------------
    # Object arena
    # -----------------------------------------------------------------------

    def get_object(self, guid: str) -> ChannelOwner | None:
        return self._objects.get(guid)

    def _register_object(self, obj: ChannelOwner) -> None:
        if obj._guid in self._objects:
            raise ProtocolError(f"Object {obj._guid} is already registered")
        self._objects[obj._guid] = obj
        if obj._parent_guid is not None:
            parent = self._objects.get(obj._parent_guid)
            if parent is None:
                raise ProtocolError(f"Parent {obj._parent_guid} of {obj._guid} is not registered")
            parent._child_guids.add(obj._guid)

    def _create_remote_object(
        self, parent: ChannelOwner, type_name: str, guid: str, initializer: dict[str, Any]
    ) -> ChannelOwner:
        initializer = self._replace_guids_with_objects(initializer)
        obj = self._factories.create(parent, type_name, guid, initializer)
        logger.debug("Created %s under %s", obj, parent._guid or "<root>")
        return obj

    def _dispose_object(self, guid: str, reason: str) -> None:
        obj = self._objects.get(guid)
        if obj is None:
            return
        for child_guid in list(obj._child_guids):
            self._dispose_object(child_guid, reason)
        del self._objects[guid]
        parent = self._objects.get(obj._parent_guid) if obj._parent_guid is not None else None
        if parent is not None:
            parent._child_guids.discard(guid)
        obj._on_dispose(reason)

    def _adopt(self, new_parent: ChannelOwner, child_guid: str) -> None:
        child = self._objects.get(child_guid)
        if child is None:
            raise ProtocolError(f"Cannot adopt unknown object {child_guid}")
        old_parent = child._parent
        if old_parent is not None:
            old_parent._child_guids.discard(child_guid)
        child._parent_guid = new_parent._guid
        new_parent._child_guids.add(child_guid)

    def _replace_guids_with_objects(self, payload: Any) -> Any:
        if isinstance(payload, list):
            return [self._replace_guids_with_objects(item) for item in payload]
        if isinstance(payload, dict):
            guid = payload.get("guid")
            if isinstance(guid, str) and guid in self._objects:
                return self._objects[guid]
            return {key: self._replace_guids_with_objects(value) for key, value in payload.items()}
        return payload

    def _replace_objects_with_guids(self, payload: Any) -> Any:
        if isinstance(payload, ChannelOwner):
            return {"guid": payload._guid}
        if isinstance(payload, list):
            return [self._replace_objects_with_guids(item) for item in payload]
        if isinstance(payload, dict):
            return {key: self._replace_objects_with_guids(value) for key, value in payload.items()}
        return payload
