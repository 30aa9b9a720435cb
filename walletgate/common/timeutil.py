"""UTC clock helpers shared by services."""

from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes read back from sqlite."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
