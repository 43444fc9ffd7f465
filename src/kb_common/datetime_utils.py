"""UTC datetime utilities."""

from datetime import datetime, timedelta, timezone


def utc_now() -> datetime:
    """Return timezone-aware UTC now."""
    return datetime.now(timezone.utc)


def hours_ago(hours: int) -> datetime:
    """Return the UTC instant `hours` before now (auto-release cutoffs)."""
    return utc_now() - timedelta(hours=hours)
