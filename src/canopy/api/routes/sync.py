"""Location sync trigger and status routes."""
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlmodel import Session, select

from canopy.config import get_settings
from canopy.db.engine import get_engine, get_session
from canopy.metrc.client import MetrcClient
from canopy.metrc.credentials import (
    MissingCredentialsError,
    SiteCredentials,
    credentials_from_settings,
)
from canopy.models.room import Room, Site
from canopy.sync.engine import LocationSyncService, SyncResult
from canopy.sync.locking import SiteSyncLock, SyncInProgressError
from canopy.sync.repository import SyncRunRecorder
from canopy.sync.status import SyncStatus, parse_status

router = APIRouter()

_site_lock: Optional[SiteSyncLock] = None


class RoomSyncView(BaseModel):
    id: str
    name: str
    room_type: str
    capacity_pods: int
    external_location_id: Optional[int]
    external_location_name: Optional[str]
    sync_status: str
    sync_error_detail: Optional[str]
    last_synced_at: Optional[datetime]


class SiteSyncStatusResponse(BaseModel):
    site_id: str
    site_name: str
    license_number: Optional[str]
    last_synced_at: Optional[datetime]
    last_run_status: Optional[str]
    rooms: List[RoomSyncView]
    counts: Dict[str, int]


class SyncRunView(BaseModel):
    id: int
    started_at: datetime
    duration_ms: int
    direction: str
    status: str
    found: int
    created: int
    updated: int
    matched: int
    orphaned: int
    pushed: int
    error_message: Optional[str]


def get_site_lock(engine=Depends(get_engine)) -> SiteSyncLock:
    """One lock registry per engine for the life of the process."""
    global _site_lock
    if _site_lock is None or _site_lock.engine is not engine:
        _site_lock = SiteSyncLock(engine, get_settings().sync_lock_timeout_seconds)
    return _site_lock


def resolve_credentials(site: Site) -> SiteCredentials:
    """Credentials for a site. Single-tenant: keys come from settings."""
    return credentials_from_settings(site.license_number, get_settings())


def _build_client(credentials: SiteCredentials) -> MetrcClient:
    return MetrcClient.from_settings(credentials, get_settings())


async def _run_location_sync(engine, site_id: str, credentials: SiteCredentials) -> SyncResult:
    async with _build_client(credentials) as client:
        service = LocationSyncService(client=client, engine=engine)
        return await service.sync(site_id, credentials)


def _get_site(session: Session, site_id: str) -> Site:
    site = session.get(Site, site_id)
    if not site or not site.is_active:
        raise HTTPException(status_code=404, detail="Site not found")
    return site


@router.post("/{site_id}/sync-locations")
async def trigger_location_sync(
    site_id: str,
    session: Session = Depends(get_session),
    engine=Depends(get_engine),
    site_lock: SiteSyncLock = Depends(get_site_lock),
) -> Dict[str, Any]:
    """
    Reconcile the site's rooms with its Metrc locations, pull then push.
    Runs inline and returns the full result; only one run per site at a time.
    """
    site = _get_site(session, site_id)
    if not site.license_number:
        raise HTTPException(
            status_code=400,
            detail="Site is not linked to a Metrc facility. Please link the site first.",
        )

    credentials = resolve_credentials(site)
    try:
        credentials.validate()
    except MissingCredentialsError as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    try:
        async with site_lock.hold(site_id):
            result = await _run_location_sync(engine, site_id, credentials)
    except SyncInProgressError as exc:
        raise HTTPException(status_code=409, detail=str(exc))

    if result.fatal_error:
        message = "Location sync failed"
    elif result.errors:
        message = "Locations synced with some errors"
    else:
        message = "Locations synced successfully"

    return {
        "success": result.success,
        "message": message,
        "status": result.status,
        "fatal_error": result.fatal_error,
        "sync_result": {
            "locations_found": result.locations_found,
            "rooms_created": result.rooms_created,
            "rooms_updated": result.rooms_updated,
            "rooms_matched": result.rooms_matched,
            "rooms_orphaned": result.rooms_orphaned,
            "rooms_pushed": result.rooms_pushed,
            "errors": result.errors,
        },
        "items": [item.to_dict() for item in result.items],
        "push_items": [item.to_dict() for item in result.push_items],
        "duration_ms": result.duration_ms,
    }


@router.get("/{site_id}/sync-locations", response_model=SiteSyncStatusResponse)
def location_sync_status(
    site_id: str,
    session: Session = Depends(get_session),
    engine=Depends(get_engine),
):
    """Active rooms of the site with their sync status, plus per-status counts."""
    site = _get_site(session, site_id)
    rooms = session.exec(
        select(Room)
        .where(Room.site_id == site_id, Room.is_active == True)  # noqa: E712
        .order_by(Room.name)
    ).all()
    last_run = SyncRunRecorder(engine).latest_run(site_id)

    counts = {status.value: 0 for status in SyncStatus}
    for room in rooms:
        counts[parse_status(room.sync_status).value] += 1
    counts["total"] = len(rooms)

    return SiteSyncStatusResponse(
        site_id=site.id,
        site_name=site.name,
        license_number=site.license_number,
        last_synced_at=last_run.started_at if last_run else None,
        last_run_status=last_run.status if last_run else None,
        rooms=[RoomSyncView.model_validate(room, from_attributes=True) for room in rooms],
        counts=counts,
    )


@router.get("/{site_id}/sync-runs", response_model=List[SyncRunView])
def list_sync_runs(
    site_id: str,
    limit: int = 20,
    session: Session = Depends(get_session),
    engine=Depends(get_engine),
):
    """Recent sync audit records for the site, newest first."""
    _get_site(session, site_id)
    runs = SyncRunRecorder(engine).recent_runs(site_id, limit)
    return [SyncRunView.model_validate(run, from_attributes=True) for run in runs]
