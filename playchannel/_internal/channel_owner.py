"""
Local proxies for driver-managed objects.

This module contains:
- ChannelOwner (base proxy with event listeners and ownership links)
- GenericChannelOwner (fallback for type tags without a factory)
- RootChannelOwner (the implicit root of every ownership tree)
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

from .waiter import Waiter, wait_for_event

if TYPE_CHECKING:
    from .connection import Connection

logger = logging.getLogger(__name__)

Listener = Callable[..., Any]


class ChannelOwner:
    """Local mirror of an object living in the driver process.

    The parent is referenced by guid only; the connection's arena resolves it.
    Children are tracked as a set of guids so disposal can cascade without
    walking Python object references.
    """

    def __init__(
        self,
        parent: ChannelOwner | Connection,
        type_name: str,
        guid: str,
        initializer: dict[str, Any],
    ) -> None:
        if isinstance(parent, ChannelOwner):
            self._connection: Connection = parent._connection
            self._parent_guid: str | None = parent._guid
        else:
            self._connection = parent
            self._parent_guid = None
        self._type = type_name
        self._guid = guid
        self._initializer: MappingProxyType[str, Any] = MappingProxyType(dict(initializer))
        self._child_guids: set[str] = set()
        self._listeners: dict[str, list[Listener]] = {}
        self._channel_handlers: dict[str, Callable[[dict[str, Any]], None]] = {}
        self._waiters: set[Waiter] = set()
        self._closed_reason: str | None = None
        self._was_disposed = False
        self._connection._register_object(self)

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} type={self._type} guid={self._guid}>"

    @property
    def _parent(self) -> ChannelOwner | None:
        if self._parent_guid is None:
            return None
        return self._connection.get_object(self._parent_guid)

    @property
    def _children(self) -> list[ChannelOwner]:
        return [child for guid in self._child_guids if (child := self._connection.get_object(guid)) is not None]

    def _send(self, method: str, params: dict[str, Any] | None = None) -> asyncio.Future[Any]:
        return self._connection.call(self._guid, method, params)

    # -----------------------------------------------------------------------
    # Events
    # -----------------------------------------------------------------------

    def on(self, event: str, listener: Listener) -> None:
        self._listeners.setdefault(event, []).append(listener)

    def once(self, event: str, listener: Listener) -> None:
        def wrapper(*args: Any) -> Any:
            self.remove_listener(event, wrapper)
            return listener(*args)

        wrapper._original = listener  # type: ignore[attr-defined]
        self.on(event, wrapper)

    def remove_listener(self, event: str, listener: Listener) -> None:
        listeners = self._listeners.get(event)
        if not listeners:
            return
        for index, registered in enumerate(listeners):
            if registered is listener or getattr(registered, "_original", None) is listener:
                del listeners[index]
                break
        if not listeners:
            del self._listeners[event]

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, ()))

    def emit(self, event: str, *args: Any) -> None:
        for listener in list(self._listeners.get(event, ())):
            try:
                result = listener(*args)
                if inspect.iscoroutine(result):
                    self._connection.create_task(result, f"{event} listener")
            except Exception:
                logger.exception("Listener for %s on %s failed", event, self)

    def wait_for_event(
        self,
        event: str,
        predicate: Callable[[Any], bool] | None = None,
        timeout: float | None = None,
    ) -> asyncio.Future[Any]:
        """Return a future for the next *event* matching *predicate*.

        Registration happens before this method returns, so call it before
        triggering the action that produces the event.
        """
        return wait_for_event(self, event, predicate, timeout)

    def _on_channel_event(self, method: str, handler: Callable[[dict[str, Any]], None]) -> None:
        self._channel_handlers[method] = handler

    def _dispatch_event(self, method: str, params: dict[str, Any]) -> None:
        handler = self._channel_handlers.get(method)
        if handler is not None:
            handler(params)
        else:
            self.emit(method, params)

    # -----------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------

    def _mark_closed(self, reason: str) -> None:
        """Reject every pending waiter; idempotent."""
        if self._closed_reason is None:
            self._closed_reason = reason
        for waiter in list(self._waiters):
            waiter.close(reason)

    def _on_dispose(self, reason: str) -> None:
        self._was_disposed = True
        self._mark_closed(reason)
        self._listeners.clear()
        self._channel_handlers.clear()


class GenericChannelOwner(ChannelOwner):
    """Proxy for a driver type this client has no dedicated class for."""

    @property
    def initializer(self) -> MappingProxyType[str, Any]:
        return self._initializer

    def send(self, method: str, params: dict[str, Any] | None = None) -> asyncio.Future[Any]:
        return self._send(method, params)


class RootChannelOwner(ChannelOwner):
    def __init__(self, connection: Connection) -> None:
        super().__init__(connection, "Root", "", {})

    async def initialize(self, sdk_language: str) -> ChannelOwner:
        result = await self._send("initialize", {"sdkLanguage": sdk_language})
        return result["playwright"]
