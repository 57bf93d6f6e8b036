"""
Timestamp parsing for vendor payloads.

GitHub and Linear send ISO-8601 strings, Slack sends epoch seconds as a
string ("1700000000.000100"), and some exports carry epoch milliseconds.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

# Numeric values above this are epoch milliseconds
MILLISECONDS_THRESHOLD = 1e10


def to_epoch_seconds(value: Any) -> float | None:
    """
    Convert a vendor timestamp to epoch seconds.

    Args:
        value: int/float (seconds or ms), numeric string, ISO string or datetime

    Returns:
        Epoch seconds, or None when the value cannot be parsed
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        candidate = value if value.tzinfo else value.replace(tzinfo=UTC)
        return candidate.timestamp()
    if isinstance(value, int | float):
        return value / 1000.0 if value > MILLISECONDS_THRESHOLD else float(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            numeric = float(text)
        except ValueError:
            pass
        else:
            return numeric / 1000.0 if numeric > MILLISECONDS_THRESHOLD else numeric
        try:
            candidate = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
        if candidate.tzinfo is None:
            candidate = candidate.replace(tzinfo=UTC)
        return candidate.timestamp()
    return None


def isoformat(seconds: float) -> str:
    """Epoch seconds -> ISO-8601 UTC string with a Z suffix."""
    return datetime.fromtimestamp(seconds, tz=UTC).isoformat().replace("+00:00", "Z")
