"""Common helper functions for the service layer."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone


def coerce_uuid(value):
    """Convert value to UUID, returning None if value is None."""
    if value is None:
        return None
    if isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


def ensure_utc_aware(value: datetime | None) -> datetime | None:
    """Treat naive datetimes as UTC.

    SQLite drops tzinfo on round-trip, Postgres does not.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def utc_now() -> datetime:
    return datetime.now(timezone.utc)
