"""
SQLModel-backed collaborators of the sync engine.

RoomRepository is the internal registry (read active rooms and the links
still held by inactive ones, insert, update by id). SyncRunRecorder is the
append-only audit sink. Each call opens its own short session so a failed
write never poisons the next one.
"""
from typing import Any, Dict, List, Optional

from sqlmodel import Session, select

from canopy.models.room import Room
from canopy.models.sync import SyncRun

# Columns the engine is allowed to write on an existing room
UPDATABLE_FIELDS = frozenset({
    "name",
    "external_location_id",
    "external_location_name",
    "external_location_type_name",
    "sync_status",
    "sync_error_detail",
    "created_by_internal",
    "last_synced_at",
})


class RoomRepository:
    def __init__(self, engine):
        self.engine = engine

    def list_active_rooms(self, site_id: str) -> List[Room]:
        """Active rooms of a site, oldest first. Returned rows are detached."""
        with Session(self.engine) as s:
            rooms = s.exec(
                select(Room)
                .where(Room.site_id == site_id, Room.is_active == True)  # noqa: E712
                .order_by(Room.created_at, Room.id)
            ).all()
            for room in rooms:
                s.expunge(room)
            return list(rooms)

    def inactive_links(self, site_id: str) -> Dict[int, str]:
        """external_location_id -> room id for inactive rooms of a site still holding a link."""
        with Session(self.engine) as s:
            rows = s.exec(
                select(Room.external_location_id, Room.id)
                .where(
                    Room.site_id == site_id,
                    Room.is_active == False,  # noqa: E712
                    Room.external_location_id.is_not(None),
                )
            ).all()
            return {external_id: room_id for external_id, room_id in rows}

    def insert_room(self, room: Room) -> Room:
        """
        Raises:
            sqlalchemy.exc.IntegrityError: e.g. the external id is already linked.
        """
        with Session(self.engine) as s:
            s.add(room)
            s.commit()
            s.refresh(room)
            s.expunge(room)
        return room

    def update_room(self, room_id: str, fields: Dict[str, Any]) -> Room:
        """Write a subset of columns on one room.

        Raises:
            LookupError: if the room does not exist.
            ValueError: for a column outside UPDATABLE_FIELDS.
            sqlalchemy.exc.IntegrityError: on a unique violation.
        """
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update room fields: {', '.join(sorted(unknown))}")

        with Session(self.engine) as s:
            room = s.get(Room, room_id)
            if room is None:
                raise LookupError(f"Room {room_id} not found")
            for key, value in fields.items():
                setattr(room, key, value)
            s.add(room)
            s.commit()
            s.refresh(room)
            s.expunge(room)
        return room


class SyncRunRecorder:
    def __init__(self, engine):
        self.engine = engine

    def record_sync_run(self, record: SyncRun) -> SyncRun:
        with Session(self.engine) as s:
            s.add(record)
            s.commit()
            s.refresh(record)
            s.expunge(record)
        return record

    def latest_run(self, site_id: str) -> Optional[SyncRun]:
        with Session(self.engine) as s:
            return s.exec(
                select(SyncRun)
                .where(SyncRun.site_id == site_id)
                .order_by(SyncRun.started_at.desc(), SyncRun.id.desc())
            ).first()

    def recent_runs(self, site_id: str, limit: int = 20) -> List[SyncRun]:
        with Session(self.engine) as s:
            return list(s.exec(
                select(SyncRun)
                .where(SyncRun.site_id == site_id)
                .order_by(SyncRun.started_at.desc(), SyncRun.id.desc())
                .limit(limit)
            ).all())
