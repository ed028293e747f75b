"""One-shot waiters resolved by events observed after registration."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from ..errors import Error, TargetClosed, TimeoutError

if TYPE_CHECKING:
    from .channel_owner import ChannelOwner

logger = logging.getLogger(__name__)


class Waiter:
    """Future-backed waiter bound to an owning object.

    A waiter never looks at events emitted before it was created. Whatever
    settles it first (a matching event, a rejecting event, the timeout, or the
    owner being closed) wins; every listener and timer is removed at that
    moment.
    """

    def __init__(self, owner: ChannelOwner, description: str) -> None:
        self._owner = owner
        self._description = description
        self._loop = owner._connection._loop
        self._future: asyncio.Future[Any] = self._loop.create_future()
        self._cleanups: list[Callable[[], None]] = []
        owner._waiters.add(self)
        self._cleanups.append(lambda: owner._waiters.discard(self))

    @property
    def future(self) -> asyncio.Future[Any]:
        return self._future

    def wait_for_event(
        self,
        emitter: ChannelOwner,
        event: str,
        predicate: Callable[[Any], bool] | None = None,
    ) -> asyncio.Future[Any]:
        """Resolve with the first *event* payload from *emitter* accepted by *predicate*."""

        def listener(payload: Any = None) -> None:
            try:
                if predicate is not None and not predicate(payload):
                    return
            except Exception as exc:
                self.reject(exc)
                return
            self.fulfill(payload)

        emitter.on(event, listener)
        self._cleanups.append(lambda: emitter.remove_listener(event, listener))
        return self._future

    def reject_on_event(
        self,
        emitter: ChannelOwner,
        event: str,
        error_factory: Callable[[], Exception],
        predicate: Callable[[Any], bool] | None = None,
    ) -> None:
        def listener(payload: Any = None) -> None:
            if predicate is not None and not predicate(payload):
                return
            self.reject(error_factory())

        emitter.on(event, listener)
        self._cleanups.append(lambda: emitter.remove_listener(event, listener))

    def reject_on_timeout(self, timeout_ms: float | None, message: str) -> None:
        if not timeout_ms:
            return
        handle = self._loop.call_later(timeout_ms / 1000, lambda: self.reject(TimeoutError(message)))
        self._cleanups.append(handle.cancel)

    def fulfill(self, value: Any) -> None:
        if self._future.done():
            return
        self._cleanup()
        self._future.set_result(value)

    def reject(self, error: BaseException) -> None:
        if self._future.done():
            return
        self._cleanup()
        logger.debug("Waiter for %s rejected: %s", self._description, error)
        self._future.set_exception(error)

    def close(self, reason: str) -> None:
        """Fail the waiter because its owner went away."""
        self.reject(TargetClosed(f"{self._description}: {reason}"))

    def _cleanup(self) -> None:
        cleanups, self._cleanups = self._cleanups, []
        for cleanup in cleanups:
            cleanup()


def wait_for_event(
    owner: ChannelOwner,
    event: str,
    predicate: Callable[[Any], bool] | None = None,
    timeout: float | None = None,
    *,
    close_event: str | None = None,
    close_error: Callable[[], Error] | None = None,
) -> asyncio.Future[Any]:
    """Register a waiter on *owner* and return its future.

    ``timeout`` is in milliseconds; ``None`` uses the connection default and
    ``0`` waits forever. When *close_event* (e.g. a page crash) fires before a
    match the future fails with ``close_error()`` (``TargetClosed`` by
    default). Closing the owner always fails it with ``TargetClosed``.
    """
    if timeout is None:
        timeout = owner._connection.default_timeout_ms
    waiter = Waiter(owner, f'waiting for event "{event}"')
    if owner._closed_reason is not None:
        waiter.close(owner._closed_reason)
        return waiter.future
    waiter.reject_on_timeout(timeout, f'Timeout {timeout}ms exceeded while waiting for event "{event}"')
    if close_event is not None:
        waiter.reject_on_event(
            owner,
            close_event,
            close_error or (lambda: TargetClosed(f"{owner._type} closed before event \"{event}\"")),
        )
    return waiter.wait_for_event(owner, event, predicate)
