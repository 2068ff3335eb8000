"""Timezone-aware timestamp helpers.

Every timestamp that crosses the provider boundary or the database is
normalized to an aware UTC datetime before it is compared.
"""

from datetime import datetime, timezone
from typing import Iterable, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on round trip)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value) -> Optional[datetime]:
    """Parse an ISO-8601 string or epoch milliseconds. Unparseable input yields None."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return ensure_utc(datetime.fromisoformat(text))
        except ValueError:
            return None
    return None


def latest(candidates: Iterable[Optional[datetime]]) -> Optional[datetime]:
    """Maximum of the non-empty candidates, or None."""
    values = [ensure_utc(c) for c in candidates if c is not None]
    return max(values) if values else None


def advance(current: Optional[datetime], candidate: Optional[datetime]) -> Optional[datetime]:
    """Return the candidate only when it moves the stored value forward.

    Returns None when the stored value should be kept.
    """
    if candidate is None:
        return None
    candidate = ensure_utc(candidate)
    current = ensure_utc(current)
    if current is None or candidate > current:
        return candidate
    return None


def isoformat(value: Optional[datetime]) -> Optional[str]:
    value = ensure_utc(value)
    return value.isoformat() if value else None
