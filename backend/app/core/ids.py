"""
Identifier helpers.

Agent output and request bodies carry identifiers as loose strings; the
database wants real UUIDs.
"""
import uuid
from typing import Any, Optional


def parse_uuid(value: Any) -> Optional[uuid.UUID]:
    """Return ``value`` as a UUID, or None when it is not one."""
    if isinstance(value, uuid.UUID):
        return value
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return uuid.UUID(value.strip())
    except ValueError:
        return None
