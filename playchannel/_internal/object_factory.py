"""Type tag -> proxy factory registry for objects created by the driver."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .channel_owner import ChannelOwner

logger = logging.getLogger(__name__)

ObjectFactory = Callable[["ChannelOwner", str, str, "dict[str, Any]"], "ChannelOwner"]


class ObjectFactoryRegistry:
    """Singleton registry mapping driver type tags to proxy factories.

    Provides O(1) lookup for the factory of a type tag. Registration happens at
    import time of the proxy modules; lookups happen on every ``__create__``.
    Unknown tags resolve to :class:`GenericChannelOwner` so a newer driver never
    breaks an older client.
    """

    _instance: ObjectFactoryRegistry | None = None

    def __init__(self) -> None:
        self._factories: dict[str, ObjectFactory] = {}

    @classmethod
    def get_instance(cls) -> ObjectFactoryRegistry:
        """Return the singleton instance, creating it if necessary."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    def register(self, type_name: str, factory: ObjectFactory) -> None:
        """Register the factory used to build proxies for *type_name*."""
        if type_name in self._factories:
            logger.debug("Overwriting existing factory for %s", type_name)
        self._factories[type_name] = factory
        logger.debug("Registered factory for type: %s", type_name)

    def get_factory(self, type_name: str) -> ObjectFactory | None:
        """Return the factory for *type_name*, or None if not registered."""
        return self._factories.get(type_name)

    def has_factory(self, type_name: str) -> bool:
        return type_name in self._factories

    def unregister(self, type_name: str) -> None:
        self._factories.pop(type_name, None)

    def create(
        self, parent: ChannelOwner, type_name: str, guid: str, initializer: dict[str, Any]
    ) -> ChannelOwner:
        factory = self._factories.get(type_name)
        if factory is None:
            from .channel_owner import GenericChannelOwner

            logger.debug("No factory for type %s, using GenericChannelOwner", type_name)
            return GenericChannelOwner(parent, type_name, guid, initializer)
        return factory(parent, type_name, guid, initializer)


def proxy_type(type_name: str) -> Callable[[type[ChannelOwner]], type[ChannelOwner]]:
    """Class decorator registering a ChannelOwner subclass for *type_name*."""

    def decorator(cls: type[ChannelOwner]) -> type[ChannelOwner]:
        ObjectFactoryRegistry.get_instance().register(type_name, cls)
        return cls

    return decorator
