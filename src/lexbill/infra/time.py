"""Time utilities for consistent timestamp handling."""

from datetime import datetime, timedelta, timezone


def utc_now() -> datetime:
    """Return current UTC timestamp (timezone-aware)."""
    return datetime.now(timezone.utc)


def charge_expiry(created_at: datetime, ttl_days: int) -> datetime:
    """Return the instant a pending charge created at created_at expires."""
    return created_at + timedelta(days=ttl_days)


def is_past(moment: datetime | None, now: datetime | None = None) -> bool:
    """True if moment is set and not after now."""
    if moment is None:
        return False
    return moment <= (now or utc_now())
