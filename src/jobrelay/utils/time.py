"""Time utilities for jobrelay."""

from datetime import UTC, datetime


def utc_now() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(UTC)


def seconds_since(moment: datetime | None, *, now: datetime | None = None) -> float | None:
    """Elapsed seconds since ``moment``, or None when it was never set.

    Naive datetimes are treated as UTC (SQLite round-trips drop tzinfo).
    """
    if moment is None:
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return ((now or utc_now()) - moment).total_seconds()

