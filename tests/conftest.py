"""Shared test fixtures."""
from datetime import datetime, timedelta
from typing import Generator, List, Optional

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

# Import all models so SQLModel.metadata knows about them
from canopy.metrc.credentials import SiteCredentials
from canopy.metrc.normalizer import ExternalLocation, LocationType
from canopy.models.room import Room, Site  # noqa: F401
from canopy.models.sync import SiteSyncLock, SyncRun  # noqa: F401

SITE_ID = "site-1"
LICENSE = "LIC-0001"


@pytest.fixture(name="engine")
def engine_fixture():
    """In-memory SQLite engine. Tables recreated fresh for each test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(name="test_session")
def test_session_fixture(engine) -> Generator[Session, None, None]:
    """Provides a DB session connected to in-memory SQLite."""
    with Session(engine) as session:
        yield session


@pytest.fixture(name="site")
def site_fixture(test_session: Session) -> Site:
    site = Site(id=SITE_ID, name="North Facility", license_number=LICENSE)
    test_session.add(site)
    test_session.commit()
    test_session.refresh(site)
    return site


@pytest.fixture(name="credentials")
def credentials_fixture() -> SiteCredentials:
    return SiteCredentials(
        license_number=LICENSE,
        user_api_key="user-key",
        vendor_api_key="vendor-key",
    )


# ─── Fake Metrc ───────────────────────────────────────────────────────────────

class FakeMetrcClient:
    """
    In-memory stand-in for MetrcClient.

    Created locations show up in later list calls with fresh Ids, like the
    real API. Every call is recorded in .calls for assertions.
    """

    def __init__(self, locations: Optional[List[ExternalLocation]] = None,
                 types: Optional[List[LocationType]] = None):
        self.locations = list(locations or [])
        self.types = list(types) if types is not None else [
            LocationType(id=7, name="Default Location Type"),
        ]
        self.calls: List[tuple] = []
        self.next_id = 1000
        self.fail_create_for = set()  # names whose create raises
        self.list_error: Optional[Exception] = None
        self.types_error: Optional[Exception] = None
        self.hide_created = False  # created locations never become visible

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return None

    async def list_locations(self, license_number=None):
        self.calls.append(("list_locations", license_number))
        if self.list_error is not None:
            raise self.list_error
        return list(self.locations)

    async def list_location_types(self):
        self.calls.append(("list_location_types",))
        if self.types_error is not None:
            raise self.types_error
        return list(self.types)

    async def create_location(self, name, type_id, type_name):
        self.calls.append(("create_location", name, type_id, type_name))
        if name in self.fail_create_for:
            raise RuntimeError("Metrc API error (400): invalid location")
        self.next_id += 1
        if not self.hide_created:
            self.locations.append(ExternalLocation(
                id=self.next_id, name=name, type_id=type_id, type_name=type_name,
            ))

    async def find_location_by_name(self, name):
        self.calls.append(("find_location_by_name", name))
        matches = [loc for loc in self.locations if loc.name == name]
        return max(matches, key=lambda loc: loc.id) if matches else None

    def count(self, method: str) -> int:
        return sum(1 for call in self.calls if call[0] == method)


def make_room(session: Session, name: str, *, site_id: str = SITE_ID,
              minutes_ago: int = 0, **fields) -> Room:
    """Persist a room; minutes_ago spaces out created_at for ordering."""
    room = Room(
        site_id=site_id,
        name=name,
        created_at=datetime(2026, 1, 1, 12, 0) - timedelta(minutes=minutes_ago),
        **fields,
    )
    session.add(room)
    session.commit()
    session.refresh(room)
    return room


@pytest.fixture(name="metrc")
def metrc_fixture() -> FakeMetrcClient:
    return FakeMetrcClient()


@pytest.fixture(name="add_room")
def add_room_fixture(test_session: Session):
    def _add(name: str, **fields) -> Room:
        return make_room(test_session, name, **fields)
    return _add
