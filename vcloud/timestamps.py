"""Timezone-aware UTC timestamp utilities.

Workflow state and remote task records use these helpers so every
serialized timestamp carries an explicit offset.
"""

from datetime import datetime, timezone
from typing import Optional


def now() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""
    return datetime.now(timezone.utc)


def isonow() -> str:
    """Return the current UTC time as an ISO 8601 string with +00:00 offset."""
    return now().isoformat()


def parse_timestamp(iso_str: str) -> datetime:
    """Parse an ISO timestamp, assuming UTC if no timezone info.

    Accepts the trailing "Z" the control plane emits.
    """
    if iso_str.endswith("Z"):
        iso_str = iso_str[:-1] + "+00:00"
    dt = datetime.fromisoformat(iso_str)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def parse_optional_timestamp(iso_str: Optional[str]) -> Optional[datetime]:
    """Parse a remote timestamp, returning None when absent or malformed."""
    if not iso_str:
        return None
    try:
        return parse_timestamp(iso_str)
    except ValueError:
        return None
