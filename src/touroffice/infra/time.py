"""Time utilities. All timestamps are timezone-aware UTC."""

from datetime import datetime, timezone


def utc_now() -> datetime:
    """Return current UTC timestamp (timezone-aware)."""
    return datetime.now(timezone.utc)


def is_past(moment: datetime | None, *, now: datetime | None = None) -> bool:
    """True if ``moment`` is set and strictly before ``now``.

    Naive datetimes are treated as UTC.
    """
    if moment is None:
        return False
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment < (now or utc_now())
