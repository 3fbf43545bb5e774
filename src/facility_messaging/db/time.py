# src/facility_messaging/db/time.py
"""Time and identifier helpers for database models."""

import uuid
from datetime import UTC, datetime


def utcnow() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""
    return datetime.now(UTC)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes read back from backends without tz support."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def new_id() -> str:
    """Return a random row identifier.

    Identifiers are UUID4 hex strings and carry no chronological order.
    """
    return uuid.uuid4().hex
