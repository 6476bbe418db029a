"""Delay arithmetic and timestamp (de)serialization."""

from datetime import datetime, timedelta, timezone


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def next_due_at(from_: datetime, delay_days: int = 0, delay_hours: int = 0) -> datetime:
    """Return the instant a step becomes due, ``delay`` after ``from_``.

    A zero delay returns ``from_`` unchanged: the step is due now, not on
    some later tick.
    """
    return from_ + timedelta(days=delay_days, hours=delay_hours)


def to_iso(value: datetime | None) -> str | None:
    """Serialize as UTC ISO-8601 with fixed microsecond precision.

    The fixed width keeps stored values lexically ordered, which the
    next_due_at index and range filters rely on.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_ts(value) -> datetime | None:
    """Parse a timestamp column value from Supabase."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
