"""Default file reader used to fulfill routes from local files."""

from __future__ import annotations

import logging
import mimetypes
from pathlib import Path

from ..errors import InvalidArgument
from ..interfaces import StrPath

logger = logging.getLogger(__name__)

DEFAULT_MIME_TYPE = "application/octet-stream"


class LocalFileReader:
    """Reads files from the local filesystem and guesses types with :mod:`mimetypes`."""

    def read_bytes(self, path: StrPath) -> bytes:
        try:
            return Path(path).read_bytes()
        except OSError as exc:
            raise InvalidArgument(f"Failed to read from file: {path}") from exc

    def mime_type(self, path: StrPath) -> str:
        mime, _ = mimetypes.guess_type(str(path))
        if mime is None:
            logger.debug("No mime type known for %s, using %s", path, DEFAULT_MIME_TYPE)
            return DEFAULT_MIME_TYPE
        return mime
