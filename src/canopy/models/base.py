"""Shared helpers for table models."""
from datetime import datetime, timezone


def utcnow() -> datetime:
    """
    Naive UTC timestamp.

    Datetime columns are declared as plain sqlalchemy DateTime (no timezone),
    so every stored and compared time is naive UTC.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)
