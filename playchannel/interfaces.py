"""Public collaborator protocols for playchannel.

These interfaces define the contract between the protocol core and the
pieces it deliberately does not implement itself. They enable structural
typing so collaborators can be supplied without inheriting from concrete
base classes.
"""

from __future__ import annotations

from pathlib import Path
from typing import Protocol, Union, runtime_checkable

StrPath = Union[str, Path]


@runtime_checkable
class FileReader(Protocol):
    """Interface used by ``Route.fulfill(path=...)`` to load response bodies."""

    def read_bytes(self, path: StrPath) -> bytes:
        """Return the full contents of *path*."""

    def mime_type(self, path: StrPath) -> str:
        """Return the content type inferred from the extension of *path*."""
