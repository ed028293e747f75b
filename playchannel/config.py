from __future__ import annotations

import logging
import os
from typing import TYPE_CHECKING, TypedDict

from .errors import InvalidArgument

if TYPE_CHECKING:
    from .interfaces import FileReader

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 30000.0
DEFAULT_SDK_LANGUAGE = "python"


class ConnectionConfig(TypedDict, total=False):
    """Configuration for a :class:`~playchannel.Connection`.

    Every key is optional; missing keys fall back to the module defaults.
    """

    default_timeout_ms: float
    """Timeout applied to waiters created without an explicit timeout. ``0`` disables it."""

    sdk_language: str
    """Language tag reported to the driver in the ``initialize`` call."""

    debug_protocol: bool
    """Log every inbound and outbound protocol message at DEBUG level."""

    file_reader: FileReader
    """Collaborator used by ``Route.fulfill(path=...)`` to load files."""


def resolve_config(config: ConnectionConfig | None) -> ConnectionConfig:
    """Fill in defaults and validate a user-supplied configuration."""
    resolved: ConnectionConfig = {
        "default_timeout_ms": DEFAULT_TIMEOUT_MS,
        "sdk_language": DEFAULT_SDK_LANGUAGE,
        "debug_protocol": bool(os.environ.get("PLAYCHANNEL_DEBUG_PROTOCOL")),
    }
    if config:
        resolved.update(config)

    timeout = resolved["default_timeout_ms"]
    if not isinstance(timeout, (int, float)) or isinstance(timeout, bool) or timeout < 0:
        raise InvalidArgument(f"default_timeout_ms must be a non-negative number, got {timeout!r}")

    if "file_reader" not in resolved:
        from ._internal.file_reader import LocalFileReader

        resolved["file_reader"] = LocalFileReader()

    logger.debug("Resolved connection config: %s", {k: v for k, v in resolved.items() if k != "file_reader"})
    return resolved
