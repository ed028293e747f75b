"""
playchannel - Asynchronous object-channel client for a browser automation driver.

playchannel speaks the driver's object protocol: it mirrors every object the
driver creates as a local proxy, matches replies to outstanding calls, and
lets Python handlers intercept, rewrite, synthesize or abort the network
requests issued by the remotely driven browser.

Key Features:
    - Ownership tree of remote objects with cascading disposal
    - Non-blocking calls resolved through asyncio futures
    - Route handler chains with fallback and per-field override merging
    - Waiters for pages, popups, dialogs and network events

Basic Usage:
    >>> import asyncio
    >>> import playchannel
    >>> async def main(reader, writer):
    ...     connection = playchannel.Connection(playchannel.PipeTransport(reader, writer))
    ...     connection.run()
    ...     await connection.initialize()
    ...     # ...obtain a BrowserContext or Page proxy from the driver, then:
    ...     async def handler(route):
    ...         if route.request.resource_type == "image":
    ...             await route.abort()
    ...         else:
    ...             route.fallback(headers={**route.request.headers, "x-trace": "1"})
    ...     await page.route("**/*", handler)
"""

from ._internal.channel_owner import ChannelOwner, GenericChannelOwner
from ._internal.connection import Connection
from ._internal.network import APIRequestContext, APIResponse, Request, Response, Route
from ._internal.object_factory import ObjectFactoryRegistry, proxy_type
from ._internal.page import BrowserContext, Dialog, Frame, Page
from ._internal.transports import PipeTransport, QueueTransport, Transport
from .config import ConnectionConfig
from .errors import (
    AlreadyHandled,
    ConnectionClosed,
    Error,
    ErrorKind,
    InvalidArgument,
    ProtocolError,
    RemoteError,
    TargetClosed,
    TimeoutError,
)
from .interfaces import FileReader

__version__ = "0.1.0"

__all__ = [
    "APIRequestContext",
    "APIResponse",
    "AlreadyHandled",
    "BrowserContext",
    "ChannelOwner",
    "Connection",
    "ConnectionClosed",
    "ConnectionConfig",
    "Dialog",
    "Error",
    "ErrorKind",
    "FileReader",
    "Frame",
    "GenericChannelOwner",
    "InvalidArgument",
    "ObjectFactoryRegistry",
    "Page",
    "PipeTransport",
    "ProtocolError",
    "QueueTransport",
    "RemoteError",
    "Request",
    "Response",
    "Route",
    "TargetClosed",
    "TimeoutError",
    "Transport",
    "proxy_type",
]
