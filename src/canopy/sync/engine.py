"""
LocationSyncService: reconciles a site's rooms with its Metrc locations.

Flow for one site:
  1. Validate credentials (missing → run fails, nothing is called)
  2. Pull: list Metrc locations, active rooms and the links inactive rooms
     still hold, compute the plan, apply created / updated / orphaned
     decisions item by item
  3. Re-read rooms and re-fetch Metrc locations
  4. Push: for every unlinked room Metrc does not know by name, create the
     location, look it up by name to learn its Id, link the room
  5. Append one SyncRun audit row and return the SyncResult

Pull runs before push so a room that already exists upstream gets linked
instead of created twice.

No phase raises. Item failures are collected in SyncResult.errors and
processing moves on; run-wide failures (credentials, the initial location
list) end the run and are reported in SyncResult.fatal_error. Failure to
resolve a location type aborts the push phase only.

Idempotency: a second run with nothing changed writes no room and calls
no Metrc write endpoint; only the SyncRun row is appended.

Callers must serialize runs per site (see canopy.sync.locking).
"""
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from canopy.metrc.credentials import MissingCredentialsError, SiteCredentials
from canopy.metrc.normalizer import ExternalLocation, LocationType, dedupe_locations
from canopy.models.base import utcnow
from canopy.models.room import Room
from canopy.models.sync import SyncRun
from canopy.sync.matcher import (
    CREATED,
    ORPHANED,
    UPDATED,
    DiffItem,
    compute_sync_plan,
    find_push_candidates,
    map_location_type_to_room_type,
)
from canopy.sync.repository import RoomRepository, SyncRunRecorder
from canopy.sync.status import SyncStatus, can_transition, parse_status
from canopy.sync.validation import validate_location_name

logger = logging.getLogger(__name__)

ORPHAN_DETAIL = "external record no longer exists"

PUSHED = "pushed"
PUSH_ERROR = "push_error"
SKIPPED = "skipped"


@dataclass
class PushResultItem:
    room_id: str
    room_name: str
    action: str  # pushed | push_error | skipped
    external_location_id: Optional[int] = None
    external_location_name: Optional[str] = None
    details: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "room_id": self.room_id,
            "room_name": self.room_name,
            "action": self.action,
            "external_location_id": self.external_location_id,
            "external_location_name": self.external_location_name,
            "details": self.details,
        }


@dataclass
class SyncResult:
    site_id: str
    synced_at: datetime = field(default_factory=utcnow)
    locations_found: int = 0
    rooms_created: int = 0
    rooms_updated: int = 0
    rooms_matched: int = 0
    rooms_orphaned: int = 0
    rooms_pushed: int = 0
    items: List[DiffItem] = field(default_factory=list)
    push_items: List[PushResultItem] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    fatal_error: Optional[str] = None
    direction: str = "pull"
    duration_ms: int = 0

    @property
    def success(self) -> bool:
        return self.fatal_error is None and not self.errors

    @property
    def succeeded_count(self) -> int:
        """Pull decisions applied without error plus rooms pushed."""
        applied = sum(1 for item in self.items if item.error is None)
        return applied + self.rooms_pushed

    @property
    def status(self) -> str:
        if self.success:
            return "success"
        if self.succeeded_count == 0:
            return "failed"
        return "partial"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "site_id": self.site_id,
            "synced_at": self.synced_at.isoformat(),
            "status": self.status,
            "direction": self.direction,
            "locations_found": self.locations_found,
            "rooms_created": self.rooms_created,
            "rooms_updated": self.rooms_updated,
            "rooms_matched": self.rooms_matched,
            "rooms_orphaned": self.rooms_orphaned,
            "rooms_pushed": self.rooms_pushed,
            "items": [item.to_dict() for item in self.items],
            "push_items": [item.to_dict() for item in self.push_items],
            "errors": list(self.errors),
            "fatal_error": self.fatal_error,
            "duration_ms": self.duration_ms,
        }


def resolve_default_location_type(types: Sequence[LocationType]) -> Optional[LocationType]:
    """Prefer a type named like "default" or "general", else the first one."""
    for location_type in types:
        lowered = location_type.name.lower()
        if "default" in lowered or "general" in lowered:
            return location_type
    return types[0] if types else None


class LocationSyncService:
    """Orchestrates one bidirectional room ↔ Metrc location sync per call."""

    def __init__(self, client, engine, *, rooms: Optional[RoomRepository] = None,
                 recorder: Optional[SyncRunRecorder] = None):
        """
        Args:
            client: MetrcClient instance (or AsyncMock in tests).
            engine: SQLAlchemy engine (SQLModel create_engine result).
            rooms: Registry repository; defaults to RoomRepository(engine).
            recorder: Audit sink; defaults to SyncRunRecorder(engine).
        """
        self.client = client
        self.engine = engine
        self.rooms = rooms or RoomRepository(engine)
        self.recorder = recorder or SyncRunRecorder(engine)

    async def sync(self, site_id: str, credentials: SiteCredentials) -> SyncResult:
        """
        Run pull then push for one site.

        Args:
            site_id: Internal site id whose active rooms are reconciled.
            credentials: Already-resolved Metrc credentials for the site.

        Returns:
            The SyncResult, also when the run failed part-way.
        """
        started_at = utcnow()
        clock = time.monotonic()
        result = SyncResult(site_id=site_id, synced_at=started_at)

        try:
            credentials.validate()
        except MissingCredentialsError as exc:
            result.fatal_error = str(exc)
            logger.error("Location sync for site %s aborted: %s", site_id, exc)
        else:
            if await self._pull_phase(site_id, credentials, result):
                await self._push_phase(site_id, credentials, result)

        result.duration_ms = int((time.monotonic() - clock) * 1000)
        logger.info(
            "Location sync for site %s finished: status=%s found=%d created=%d "
            "updated=%d matched=%d orphaned=%d pushed=%d errors=%d (%d ms)",
            site_id, result.status, result.locations_found, result.rooms_created,
            result.rooms_updated, result.rooms_matched, result.rooms_orphaned,
            result.rooms_pushed, len(result.errors), result.duration_ms,
        )
        self._record_run(started_at, result)
        return result

    # ─── Pull phase ───────────────────────────────────────────────────────────

    async def _pull_phase(self, site_id: str, credentials: SiteCredentials,
                          result: SyncResult) -> bool:
        """Apply Metrc → registry decisions. Returns False on a run-wide failure."""
        try:
            locations = dedupe_locations(
                await self.client.list_locations(credentials.license_number)
            )
        except Exception as exc:
            result.fatal_error = f"Failed to fetch locations from Metrc: {exc}"
            logger.error("Location sync for site %s aborted: %s", site_id, result.fatal_error)
            return False

        try:
            rooms = self.rooms.list_active_rooms(site_id)
            inactive_links = self.rooms.inactive_links(site_id)
        except Exception as exc:
            result.fatal_error = f"Failed to read rooms: {_describe_error(exc)}"
            logger.error("Location sync for site %s aborted: %s", site_id, result.fatal_error)
            return False

        plan = compute_sync_plan(locations, rooms, inactive_links)
        result.locations_found = len(locations)
        result.items = plan.items
        result.rooms_matched = plan.matched_count
        result.rooms_orphaned = plan.orphaned_count
        logger.info(
            "Pull for site %s: %d Metrc locations, %d rooms → %d created, "
            "%d updated, %d matched, %d orphaned planned",
            site_id, len(locations), len(rooms), plan.created_count,
            plan.updated_count, plan.matched_count, plan.orphaned_count,
        )

        rooms_by_id = {room.id: room for room in rooms}
        now = utcnow()
        for item in plan.items:
            try:
                if item.action == CREATED:
                    self._create_room(site_id, item, now)
                    result.rooms_created += 1
                elif item.action == UPDATED:
                    self._update_room(rooms_by_id[item.room_id], item, now)
                    result.rooms_updated += 1
                elif item.action == ORPHANED:
                    self._orphan_room(rooms_by_id[item.room_id])
            except Exception as exc:
                message = _pull_error_message(item, exc)
                item.error = message
                result.errors.append(message)
                logger.warning("Site %s: %s", site_id, message)

        return True

    def _create_room(self, site_id: str, item: DiffItem, now: datetime) -> None:
        room = Room(
            site_id=site_id,
            name=item.external_location_name,
            room_type=map_location_type_to_room_type(item.external_location_type_name),
            external_location_id=item.external_location_id,
            external_location_name=item.external_location_name,
            external_location_type_name=item.external_location_type_name,
            sync_status=SyncStatus.SYNCED.value,
            created_by_internal=False,
            last_synced_at=now,
        )
        created = self.rooms.insert_room(room)
        item.room_id = created.id

    def _update_room(self, room: Room, item: DiffItem, now: datetime) -> None:
        # Once linked, Metrc is the system of record for the name
        fields: Dict[str, Any] = {
            "name": item.external_location_name,
            "external_location_id": item.external_location_id,
            "external_location_name": item.external_location_name,
            "last_synced_at": now,
        }
        if item.external_location_type_name is not None:
            fields["external_location_type_name"] = item.external_location_type_name
        if can_transition(room.sync_status, SyncStatus.SYNCED):
            fields["sync_status"] = SyncStatus.SYNCED.value
            fields["sync_error_detail"] = None
        self.rooms.update_room(room.id, fields)

    def _orphan_room(self, room: Room) -> None:
        # The external id stays on the room so a reappearing location re-links by id
        status = parse_status(room.sync_status)
        if status == SyncStatus.OUT_OF_SYNC:
            return
        if not can_transition(status, SyncStatus.OUT_OF_SYNC):
            logger.info(
                "Room %s is orphaned but stays %s", room.id, status.value
            )
            return
        self.rooms.update_room(room.id, {
            "sync_status": SyncStatus.OUT_OF_SYNC.value,
            "sync_error_detail": ORPHAN_DETAIL,
        })

    # ─── Push phase ───────────────────────────────────────────────────────────

    async def _push_phase(self, site_id: str, credentials: SiteCredentials,
                          result: SyncResult) -> None:
        """Create Metrc locations for rooms Metrc does not have."""
        # Fresh state: the pull just linked rooms and renamed others
        try:
            rooms = self.rooms.list_active_rooms(site_id)
            locations = dedupe_locations(
                await self.client.list_locations(credentials.license_number)
            )
        except Exception as exc:
            message = f"Push skipped: failed to refresh state before push: {_describe_error(exc)}"
            result.errors.append(message)
            logger.error("Site %s: %s", site_id, message)
            return

        candidates = find_push_candidates(locations, rooms)
        if not candidates:
            return

        result.direction = "bidirectional"
        logger.info("Push for site %s: %d room(s) to create in Metrc", site_id, len(candidates))

        location_type = await self._resolve_location_type(site_id, result)
        if location_type is None:
            for room in candidates:
                result.push_items.append(PushResultItem(
                    room_id=room.id,
                    room_name=room.name,
                    action=SKIPPED,
                    details="No Metrc location type available",
                ))
            return

        created_names = set()
        for room in candidates:
            item = await self._push_room(room, location_type, created_names)
            result.push_items.append(item)
            if item.action == PUSHED:
                result.rooms_pushed += 1
            elif item.action == PUSH_ERROR:
                result.errors.append(item.details)
                logger.warning("Site %s: %s", site_id, item.details)

    async def _resolve_location_type(self, site_id: str,
                                     result: SyncResult) -> Optional[LocationType]:
        try:
            location_type = resolve_default_location_type(
                await self.client.list_location_types()
            )
        except Exception as exc:
            message = f"Failed to fetch location types from Metrc: {exc}"
        else:
            if location_type is not None:
                return location_type
            message = "Failed to resolve a location type: Metrc returned no location types"
        result.errors.append(message)
        logger.error("Site %s: push aborted: %s", site_id, message)
        return None

    async def _push_room(self, room: Room, location_type: LocationType,
                         created_names: set) -> PushResultItem:
        def failed(details: str, created: Optional[ExternalLocation] = None) -> PushResultItem:
            return PushResultItem(
                room_id=room.id,
                room_name=room.name,
                action=PUSH_ERROR,
                external_location_id=created.id if created else None,
                external_location_name=created.name if created else None,
                details=details,
            )

        # Metrc gets the trimmed name; create and lookup must agree on it
        name = room.name.strip()
        if name in created_names:
            return PushResultItem(
                room_id=room.id,
                room_name=room.name,
                action=SKIPPED,
                details="A Metrc location with this name was created earlier in this run",
            )

        validation = validate_location_name(room.name)
        for warning in validation.warnings:
            logger.warning('Room "%s" (%s): %s', room.name, room.id, warning)
        if not validation.is_valid:
            return failed(
                f'Room "{room.name}" cannot be pushed to Metrc: {"; ".join(validation.errors)}'
            )

        try:
            await self.client.create_location(name, location_type.id, location_type.name)
        except Exception as exc:
            return failed(f'Failed to push room "{room.name}" to Metrc: {exc}')
        created_names.add(name)

        # Metrc does not return the new Id; find it by name
        try:
            created = await self.client.find_location_by_name(name)
        except Exception as exc:
            return failed(f'Created Metrc location for room "{room.name}" but lookup failed: {exc}')
        if created is None:
            return failed(f'Failed to verify created location for room "{room.name}"')

        try:
            self.rooms.update_room(room.id, {
                "name": created.name,
                "external_location_id": created.id,
                "external_location_name": created.name,
                "external_location_type_name": created.type_name or location_type.name,
                "sync_status": SyncStatus.SYNCED.value,
                "sync_error_detail": None,
                "created_by_internal": True,
                "last_synced_at": utcnow(),
            })
        except Exception as exc:
            return failed(
                f'Failed to update room "{room.name}" after Metrc push: {_describe_error(exc)}',
                created,
            )

        return PushResultItem(
            room_id=room.id,
            room_name=room.name,
            action=PUSHED,
            external_location_id=created.id,
            external_location_name=created.name,
            details="Created new location in Metrc",
        )

    # ─── Audit ────────────────────────────────────────────────────────────────

    def _record_run(self, started_at: datetime, result: SyncResult) -> None:
        messages = ([result.fatal_error] if result.fatal_error else []) + result.errors
        record = SyncRun(
            site_id=result.site_id,
            started_at=started_at,
            duration_ms=result.duration_ms,
            direction=result.direction,
            status=result.status,
            found=result.locations_found,
            created=result.rooms_created,
            updated=result.rooms_updated,
            matched=result.rooms_matched,
            orphaned=result.rooms_orphaned,
            pushed=result.rooms_pushed,
            error_message="; ".join(messages) or None,
        )
        try:
            self.recorder.record_sync_run(record)
        except Exception:
            logger.exception("Failed to write sync run record for site %s", result.site_id)


def _describe_error(exc: Exception) -> str:
    """Short message for an error; database errors give the driver message, not the SQL."""
    return str(getattr(exc, "orig", None) or exc)


def _pull_error_message(item: DiffItem, exc: Exception) -> str:
    reason = _describe_error(exc)
    if item.action == CREATED:
        return f'Failed to create room "{item.external_location_name}": {reason}'
    if item.action == UPDATED:
        return f'Failed to update room {item.room_id} from "{item.external_location_name}": {reason}'
    return f"Failed to mark orphaned room {item.room_id}: {reason}"
