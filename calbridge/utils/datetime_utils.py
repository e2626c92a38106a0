"""Datetime helpers shared by the stores and the sync engine."""

from datetime import date, datetime, time, timezone


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | date | None) -> datetime | None:
    """
    Normalize a datetime (or all-day date) to an aware UTC datetime.

    Naive datetimes are assumed to already be UTC, which is how CalDAV servers
    report floating LAST-MODIFIED values in practice.
    """
    if value is None:
        return None
    if not isinstance(value, datetime):
        value = datetime.combine(value, time.min)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_iso(value: datetime | None) -> str | None:
    """Fixed-width ISO-8601 string; stored values compare correctly as text in SQLite."""
    if value is None:
        return None
    return ensure_utc(value).isoformat(timespec="microseconds")


def from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    return ensure_utc(datetime.fromisoformat(value))
