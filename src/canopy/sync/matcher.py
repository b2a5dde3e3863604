"""
Room ↔ Metrc location matcher.

Pure functions: no DB or network access. The sync engine feeds in the
current external locations and the active rooms of one site, gets back a
plan, and applies it.

Matching, per external location, first rule wins:

  1. Id match: a room already holds this external_location_id.
     "matched", or "updated" when the room has drifted (names, type,
     or a status that should return to synced).
  2. Name match: an unlinked, unclaimed room with exactly the same name
     (case-sensitive, no trimming). "updated": the room gets linked.
     Ties go to the earliest-created room; the rest wait for the next run.
  3. No match: "created": a new room is built from the location.

Rooms that hold an external id nobody visited in step 1 are "orphaned".

A location still held by an inactive room of the site is "matched" to that
room and left alone: the external id stays reserved, nothing is created.
"""
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from canopy.metrc.normalizer import ExternalLocation, dedupe_locations
from canopy.models.room import Room
from canopy.sync.status import SyncStatus, can_transition, parse_status

CREATED = "created"
UPDATED = "updated"
MATCHED = "matched"
ORPHANED = "orphaned"

INACTIVE_LINK_DETAIL = "Location is linked to an inactive room; left unchanged"


@dataclass
class DiffItem:
    """One pull-phase decision."""

    action: str  # created | updated | matched | orphaned
    external_location_id: int
    external_location_name: str
    external_location_type_name: Optional[str] = None
    room_id: Optional[str] = None
    linked: bool = False  # updated by a first-time name link
    details: Optional[str] = None
    error: Optional[str] = None  # set when applying the decision failed

    def to_dict(self) -> Dict[str, object]:
        return {
            "action": self.action,
            "external_location_id": self.external_location_id,
            "external_location_name": self.external_location_name,
            "external_location_type_name": self.external_location_type_name,
            "room_id": self.room_id,
            "details": self.details,
            "error": self.error,
        }


@dataclass
class SyncPlan:
    items: List[DiffItem] = field(default_factory=list)

    def _count(self, action: str) -> int:
        return sum(1 for item in self.items if item.action == action)

    @property
    def created_count(self) -> int:
        return self._count(CREATED)

    @property
    def updated_count(self) -> int:
        return self._count(UPDATED)

    @property
    def matched_count(self) -> int:
        return self._count(MATCHED)

    @property
    def orphaned_count(self) -> int:
        return self._count(ORPHANED)


def _creation_order(room: Room):
    return (room.created_at, room.id)


def compute_sync_plan(
    external_locations: Iterable[ExternalLocation],
    internal_rooms: Sequence[Room],
    inactive_links: Optional[Mapping[int, str]] = None,
) -> SyncPlan:
    """Classify every external location and every linked room.

    Args:
        external_locations: Active Metrc locations of the facility.
        internal_rooms: Active rooms of the site.
        inactive_links: external_location_id -> room id for inactive rooms
            of the site that are still linked.
    """
    inactive_links = inactive_links or {}
    plan = SyncPlan()
    rooms = sorted(internal_rooms, key=_creation_order)

    linked: Dict[int, Room] = {}
    unlinked_by_name: Dict[str, List[Room]] = defaultdict(list)
    for room in rooms:
        if room.external_location_id is not None:
            linked.setdefault(room.external_location_id, room)
        else:
            unlinked_by_name[room.name].append(room)

    visited = set()
    claimed = set()

    for loc in dedupe_locations(external_locations):
        room = linked.get(loc.id)
        if room is not None:
            visited.add(room.id)
            drift = _describe_drift(room, loc)
            plan.items.append(DiffItem(
                action=UPDATED if drift else MATCHED,
                external_location_id=loc.id,
                external_location_name=loc.name,
                external_location_type_name=loc.type_name,
                room_id=room.id,
                details=drift,
            ))
            continue

        if loc.id in inactive_links:
            plan.items.append(DiffItem(
                action=MATCHED,
                external_location_id=loc.id,
                external_location_name=loc.name,
                external_location_type_name=loc.type_name,
                room_id=inactive_links[loc.id],
                details=INACTIVE_LINK_DETAIL,
            ))
            continue

        candidates = [r for r in unlinked_by_name.get(loc.name, []) if r.id not in claimed]
        if candidates:
            winner = candidates[0]
            claimed.add(winner.id)
            plan.items.append(DiffItem(
                action=UPDATED,
                external_location_id=loc.id,
                external_location_name=loc.name,
                external_location_type_name=loc.type_name,
                room_id=winner.id,
                linked=True,
                details="Linked existing room by name match",
            ))
            continue

        plan.items.append(DiffItem(
            action=CREATED,
            external_location_id=loc.id,
            external_location_name=loc.name,
            external_location_type_name=loc.type_name,
            details="New room will be created from Metrc location",
        ))

    for room in rooms:
        if room.external_location_id is None or room.id in visited:
            continue
        plan.items.append(DiffItem(
            action=ORPHANED,
            external_location_id=room.external_location_id,
            external_location_name=room.external_location_name or room.name,
            external_location_type_name=room.external_location_type_name,
            room_id=room.id,
            details="Room exists locally but the Metrc location no longer exists",
        ))

    return plan


def _describe_drift(room: Room, loc: ExternalLocation) -> Optional[str]:
    """Why an id-matched room needs a write, or None when it is current."""
    reasons = []
    if room.external_location_name != loc.name:
        reasons.append(
            f'Name changed in Metrc from "{room.external_location_name}" to "{loc.name}"'
        )
    elif room.name != loc.name:
        reasons.append(f'Local name "{room.name}" reset to Metrc name "{loc.name}"')
    if loc.type_name is not None and room.external_location_type_name != loc.type_name:
        reasons.append(f'Location type is now "{loc.type_name}"')
    status = parse_status(room.sync_status)
    if status != SyncStatus.SYNCED and can_transition(status, SyncStatus.SYNCED):
        reasons.append(f"Status {status.value} restored to synced")
    return "; ".join(reasons) or None


def find_push_candidates(
    external_locations: Iterable[ExternalLocation],
    internal_rooms: Sequence[Room],
) -> List[Room]:
    """Rooms that should be created in Metrc.

    Active, unlinked, not in sync_error, and not sharing a name (as entered
    or trimmed) with a location Metrc already has. Rooms are pushed under
    the trimmed name.
    """
    external_names = {loc.name for loc in external_locations}
    candidates = [
        room
        for room in internal_rooms
        if room.is_active
        and room.external_location_id is None
        and parse_status(room.sync_status) != SyncStatus.SYNC_ERROR
        and room.name not in external_names
        and room.name.strip() not in external_names
    ]
    return sorted(candidates, key=_creation_order)


def map_location_type_to_room_type(location_type_name: Optional[str]) -> str:
    """Best-effort room type for a room created from a Metrc location."""
    name = (location_type_name or "").lower()
    keywords = (
        (("veg",), "veg"),
        (("flower", "bloom"), "flower"),
        (("mother", "stock"), "mother"),
        (("clone", "propagation"), "clone"),
        (("dry", "harvest"), "dry"),
        (("cure",), "cure"),
        (("processing", "trim"), "processing"),
        (("storage", "vault", "inventory"), "storage"),
    )
    for needles, room_type in keywords:
        if any(needle in name for needle in needles):
            return room_type
    return "mixed"
