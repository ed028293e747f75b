"""URL pattern matching for route handlers and request waiters."""

from __future__ import annotations

import re
from collections.abc import Callable
from typing import Any, Union
from urllib.parse import urljoin

from ..errors import InvalidArgument

URLMatch = Union[str, "re.Pattern[str]", Callable[[str], bool]]

_ESCAPED_CHARS = frozenset("$^+.*()|\\?{}[]")


def glob_to_regex(glob: str) -> re.Pattern[str]:
    """Compile a URL glob.

    ``**`` matches any run of characters, ``*`` any run without ``/``,
    ``{a,b}`` either alternative. Everything else is literal.
    """
    tokens = ["^"]
    in_group = False
    i = 0
    while i < len(glob):
        c = glob[i]
        if c == "\\" and i + 1 < len(glob):
            escaped = glob[i + 1]
            tokens.append("\\" + escaped if escaped in _ESCAPED_CHARS else escaped)
            i += 2
            continue
        if c == "*":
            if i + 1 < len(glob) and glob[i + 1] == "*":
                while i + 1 < len(glob) and glob[i + 1] == "*":
                    i += 1
                tokens.append(".*")
            else:
                tokens.append("[^/]*")
        elif c == "{":
            if in_group:
                raise InvalidArgument(f"Nested groups are not supported in URL glob: {glob!r}")
            in_group = True
            tokens.append("(")
        elif c == "}":
            if not in_group:
                raise InvalidArgument(f"Unbalanced '}}' in URL glob: {glob!r}")
            in_group = False
            tokens.append(")")
        elif c == ",":
            tokens.append("|" if in_group else "\\,")
        else:
            tokens.append("\\" + c if c in _ESCAPED_CHARS else c)
        i += 1
    if in_group:
        raise InvalidArgument(f"Unterminated '{{' in URL glob: {glob!r}")
    tokens.append("$")
    return re.compile("".join(tokens))


_REGEX_FLAGS = ((re.IGNORECASE, "i"), (re.MULTILINE, "m"), (re.DOTALL, "s"))


class URLMatcher:
    def __init__(self, match: URLMatch, base_url: str | None = None) -> None:
        self.match = match
        self._regex: re.Pattern[str] | None = None
        self._predicate: Callable[[str], bool] | None = None
        if isinstance(match, str):
            if base_url and not match.startswith("*"):
                match = urljoin(base_url, match)
                self.match = match
            self._regex = glob_to_regex(match)
        elif isinstance(match, re.Pattern):
            self._regex = match
        elif callable(match):
            self._predicate = match
        else:
            raise InvalidArgument(f"URL pattern must be a str, re.Pattern or callable, got {type(match).__name__}")

    def matches(self, url: str) -> bool:
        if self._predicate is not None:
            return bool(self._predicate(url))
        assert self._regex is not None
        if isinstance(self.match, str):
            return bool(self._regex.match(url))
        return bool(self._regex.search(url))

    def to_protocol(self) -> dict[str, Any]:
        """Describe the pattern for ``setNetworkInterceptionPatterns``."""
        if isinstance(self.match, str):
            return {"glob": self.match}
        if isinstance(self.match, re.Pattern):
            flags = "".join(letter for flag, letter in _REGEX_FLAGS if self.match.flags & flag)
            return {"regexSource": self.match.pattern, "regexFlags": flags}
        return {"glob": "**/*"}

    def __eq__(self, other: object) -> bool:
        return isinstance(other, URLMatcher) and self.match == other.match

    def __hash__(self) -> int:
        return hash(self.match) if not isinstance(self.match, re.Pattern) else hash(self.match.pattern)
