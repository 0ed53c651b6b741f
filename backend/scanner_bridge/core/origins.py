"""Origin allow-list checks for incoming WebSocket handshakes."""
import re
from typing import Iterable, Optional


def _pattern_to_regex(pattern: str) -> "re.Pattern[str]":
    parts = (re.escape(part) for part in pattern.split("*"))
    return re.compile(".*".join(parts))


def is_origin_allowed(origin: Optional[str], allowed: Iterable[str]) -> bool:
    """Return True when ``origin`` may connect.

    Clients that send no origin (CLI tools, native apps) are always admitted.
    Entries containing ``*`` are wildcard patterns, everything else must match
    exactly.
    """
    if not origin:
        return True

    for pattern in allowed:
        if "*" in pattern:
            if _pattern_to_regex(pattern).fullmatch(origin):
                return True
        elif pattern == origin:
            return True
    return False
