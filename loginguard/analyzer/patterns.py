"""Compiled-pattern cache shared across scans.

Rule documents carry JavaScript-flavoured regexes (``flags`` strings such
as ``"gi"``). Patterns are compiled once per ``(pattern, flags)`` pair and
reused by every scan; invalid patterns are remembered too so a broken rule
only logs once.
"""

from __future__ import annotations

import logging
import re
import threading
from typing import Optional

logger = logging.getLogger(__name__)

_FLAG_MAP = {
    "i": re.IGNORECASE,
    "m": re.MULTILINE,
    "s": re.DOTALL,
}

# JS named groups use (?<name>...); Python wants (?P<name>...)
_JS_NAMED_GROUP = re.compile(r"\(\?<(?=[A-Za-z_])")


class PatternError(ValueError):
    """Raised when a rule pattern cannot be compiled."""


def translate_flags(flags: str | None) -> int:
    """Map a JS flag string to ``re`` flags. ``g``/``u``/``y`` carry no meaning here."""
    value = 0
    for char in flags or "":
        value |= _FLAG_MAP.get(char, 0)
    return value


class PatternCache:
    """Thread-safe memo of compiled regular expressions."""

    def __init__(self) -> None:
        self._compiled: dict[tuple[str, str], Optional[re.Pattern]] = {}
        self._lock = threading.Lock()

    def compile(self, pattern: str, flags: str | None = "i") -> re.Pattern:
        """Return the compiled pattern, raising PatternError if it is invalid."""
        key = (pattern, flags or "")
        try:
            compiled = self._compiled[key]
        except KeyError:
            compiled = self._compile_uncached(pattern, flags)
            with self._lock:
                self._compiled.setdefault(key, compiled)
        if compiled is None:
            raise PatternError(f"invalid pattern: {pattern!r}")
        return compiled

    def try_compile(self, pattern: str, flags: str | None = "i") -> Optional[re.Pattern]:
        """Like compile() but returns None for invalid patterns."""
        try:
            return self.compile(pattern, flags)
        except PatternError:
            return None

    def is_valid(self, pattern: str, flags: str | None = "i") -> bool:
        return self.try_compile(pattern, flags) is not None

    @staticmethod
    def _compile_uncached(pattern: str, flags: str | None) -> Optional[re.Pattern]:
        source = _JS_NAMED_GROUP.sub("(?P<", pattern or "")
        try:
            return re.compile(source, translate_flags(flags))
        except (re.error, TypeError) as exc:
            logger.warning("Invalid rule pattern %r: %s", pattern, exc)
            return None

    def __len__(self) -> int:
        return len(self._compiled)

    def clear(self) -> None:
        with self._lock:
            self._compiled.clear()


# Global instance
patterns = PatternCache()
