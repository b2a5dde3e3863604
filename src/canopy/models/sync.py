"""Sync audit log and per-site lock models."""
from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

from canopy.models.base import utcnow


class SyncRun(SQLModel, table=True):
    """Records each location sync run for audit. Append-only."""

    id: Optional[int] = Field(default=None, primary_key=True)
    site_id: str = Field(index=True)
    started_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    duration_ms: int = 0
    direction: str = "bidirectional"  # "pull", "push", "bidirectional"
    status: str = "success"  # "success", "partial", "failed"

    found: int = 0
    created: int = 0
    updated: int = 0
    matched: int = 0
    orphaned: int = 0
    pushed: int = 0

    error_message: Optional[str] = None


class SiteSyncLock(SQLModel, table=True):
    """Persisted "sync in progress" flag. A row past expires_at is stale."""

    site_id: str = Field(primary_key=True)
    owner: str
    acquired_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    expires_at: datetime = Field(sa_type=DateTime)
