"""Internal registry models: sites and their rooms."""
from datetime import datetime
from typing import Optional
from uuid import uuid4

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

from canopy.models.base import utcnow


def _new_id() -> str:
    return str(uuid4())


class Site(SQLModel, table=True):
    """A licensed operating site. Linked to Metrc once license_number is set."""

    id: str = Field(default_factory=_new_id, primary_key=True)
    name: str
    license_number: Optional[str] = None  # Metrc facility license, e.g. "LIC-0001"
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)


class Room(SQLModel, table=True):
    """
    One physical operating location inside a site.

    A room is linked to at most one Metrc location through
    external_location_id; the unique index keeps the mapping 1:1.
    """

    id: str = Field(default_factory=_new_id, primary_key=True)
    site_id: str = Field(index=True)
    name: str
    room_type: str = "mixed"  # "veg", "flower", "mother", "clone", "dry", ...
    capacity_pods: int = 8
    is_active: bool = True

    # Metrc linkage
    external_location_id: Optional[int] = Field(default=None, unique=True, index=True)
    external_location_name: Optional[str] = None  # name as of last sync
    external_location_type_name: Optional[str] = None

    sync_status: str = "not_synced"  # see canopy.sync.status.SyncStatus
    sync_error_detail: Optional[str] = None
    created_by_internal: bool = False  # True once the push phase created it upstream
    last_synced_at: Optional[datetime] = Field(default=None, sa_type=DateTime)

    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
