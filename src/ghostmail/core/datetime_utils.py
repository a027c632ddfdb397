"""Datetime helpers shared across the application."""

from __future__ import annotations

from datetime import UTC, datetime

__all__ = [
    "utcnow",
    "serialize_datetime",
    "parse_datetime",
    "parse_provider_timestamp",
    "as_utc",
    "ensure_utc",
]


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(tz=UTC)


def as_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime, assuming UTC when naive."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def ensure_utc(value: datetime | None) -> datetime | None:
    return None if value is None else as_utc(value)


def serialize_datetime(value: datetime | None) -> str | None:
    """Serialise ``value`` to ISO 8601 in UTC."""
    if value is None:
        return None
    return as_utc(value).isoformat()


def parse_datetime(value: str | None) -> datetime | None:
    """Parse an ISO 8601 string into an aware UTC ``datetime``."""
    if not value:
        return None
    return ensure_utc(datetime.fromisoformat(value))


def parse_provider_timestamp(value: str | None) -> datetime | None:
    """Parse an API timestamp, with or without fractional seconds or ``Z``."""
    if not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return ensure_utc(datetime.fromisoformat(text))
    except ValueError:
        return None
