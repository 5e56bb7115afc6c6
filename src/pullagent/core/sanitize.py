"""Identifier validation and filename sanitization.

Object keys embed the agent id and a sanitized display name, so both are
restricted to a storage-safe character set before a key is built.
"""

from __future__ import annotations

import re

FALLBACK_FILENAME = "file"
MAX_FILENAME_LENGTH = 128
MAX_AGENT_ID_LENGTH = 128

AGENT_ID_PATTERN = re.compile(r"[A-Za-z0-9_-]+")

_SEPARATORS = re.compile(r"[\\/]")
_WHITESPACE = re.compile(r"\s+")
_DISALLOWED = re.compile(r"[^A-Za-z0-9._-]")


def sanitize_filename(name: str | None) -> str:
    """Reduce an arbitrary name to a safe object key segment.

    Keeps only the last path component (both "/" and "\\" count as
    separators), turns whitespace runs into a single underscore, drops
    every character outside [A-Za-z0-9._-], lower-cases and truncates to
    128 characters. Never raises.

    Args:
        name: Caller-supplied name, possibly None or hostile.

    Returns:
        A non-empty segment, or "file" if nothing usable remains.
    """
    if not name:
        return FALLBACK_FILENAME

    base = _SEPARATORS.split(name)[-1]
    if not base:
        return FALLBACK_FILENAME

    segment = _WHITESPACE.sub("_", base)
    segment = _DISALLOWED.sub("", segment)
    segment = segment.lower()[:MAX_FILENAME_LENGTH]

    return segment or FALLBACK_FILENAME


def is_valid_agent_id(agent_id: object) -> bool:
    """Check that an agent id is a non-empty alphanumeric/hyphen/underscore string."""
    return (
        isinstance(agent_id, str)
        and len(agent_id) <= MAX_AGENT_ID_LENGTH
        and AGENT_ID_PATTERN.fullmatch(agent_id) is not None
    )


def build_object_key(agent_id: str, transfer_id: str, display_name: str | None) -> str:
    """Build the storage key for a transfer: agent_id/transfer_id-name."""
    return f"{agent_id}/{transfer_id}-{sanitize_filename(display_name)}"
