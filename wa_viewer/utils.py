"""
Utility functions shared by the store, the search engine and the
attachment resolver.
"""

import logging
import re
from typing import Optional

logger = logging.getLogger(__name__)

# RFC-4122 shaped: 8-4-4-4-12 hex groups
UUID_PATTERN = re.compile(
    r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}",
    re.IGNORECASE,
)


def fold_text(value: Optional[str]) -> Optional[str]:
    """
    Case-fold text for case-insensitive substring search.

    Registered as an SQL function on every store connection so that store
    queries and in-memory filtering agree on non-ASCII text.
    """
    if value is None:
        return None
    return value.casefold()


def strip_extension(name: str) -> str:
    """
    Remove the last extension from a file name.

    Example: "audio.opus" -> "audio", "archive.tar.gz" -> "archive.tar"
    """
    last_dot = name.rfind(".")
    if last_dot <= 0:
        return name
    return name[:last_dot]


def get_extension(name: str) -> str:
    """Lowercase extension without the dot, or "" when there is none."""
    last_dot = name.rfind(".")
    if last_dot <= 0:
        return ""
    return name[last_dot + 1:].lower()


def extract_uuid(text: str) -> Optional[str]:
    """
    Find the first UUID embedded anywhere in `text`.

    Returns:
        Lowercased UUID, or None if `text` carries no UUID
    """
    match = UUID_PATTERN.search(text or "")
    if not match:
        return None
    return match.group(0).lower()
