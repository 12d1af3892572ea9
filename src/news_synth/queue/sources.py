"""Source identity helpers used when items enter the queue."""

from __future__ import annotations

import re
from urllib.parse import urlparse

UNKNOWN_SOURCE = "unknown"

_ANGLE_ADDRESS = re.compile(r"<([^>]+)>")
_DISPLAY_NAME = re.compile(r'^"?([^"<]+)"?\s*<')


def normalize_source_identifier(email: str | None, url: str | None) -> str:
    """Collapse a sender address or article URL into a stable source key.

    ``"Newsletter <news@example.com>"`` becomes ``news@example.com``; a bare
    address is lower-cased; otherwise the URL host without ``www.`` is used.
    """

    if email:
        match = _ANGLE_ADDRESS.search(email)
        if match:
            return match.group(1).strip().lower()
        if "@" in email:
            return email.strip().lower()

    if url:
        hostname = urlparse(url.strip()).hostname
        if hostname:
            return hostname.removeprefix("www.")

    return UNKNOWN_SOURCE


def extract_source_display_name(email: str | None) -> str | None:
    """Return the human-readable part of ``Name <address>``, if any."""

    if not email:
        return None
    match = _DISPLAY_NAME.match(email)
    if match is None:
        return None
    name = match.group(1).strip()
    if not name or "@" in name:
        return None
    return name
