"""Tests for the pure room ↔ location matcher."""
from datetime import datetime, timedelta

import pytest

from canopy.metrc.normalizer import ExternalLocation
from canopy.models.room import Room
from canopy.sync.matcher import (
    CREATED,
    INACTIVE_LINK_DETAIL,
    MATCHED,
    ORPHANED,
    UPDATED,
    compute_sync_plan,
    find_push_candidates,
    map_location_type_to_room_type,
)


def _room(name, *, minutes_ago=0, **fields):
    return Room(
        site_id="site-1",
        name=name,
        created_at=datetime(2026, 1, 1, 12, 0) - timedelta(minutes=minutes_ago),
        **fields,
    )


def _synced(name, location_id, **fields):
    return _room(
        name,
        external_location_id=location_id,
        external_location_name=name,
        sync_status="synced",
        **fields,
    )


class TestComputeSyncPlan:
    def test_unknown_location_is_created(self):
        plan = compute_sync_plan([ExternalLocation(id=1, name="Veg Room A")], [])
        assert [i.action for i in plan.items] == [CREATED]
        assert plan.items[0].room_id is None
        assert plan.created_count == 1

    def test_id_match_without_drift_is_matched(self):
        room = _synced("Flower 1", 5)
        plan = compute_sync_plan([ExternalLocation(id=5, name="Flower 1")], [room])
        assert plan.items[0].action == MATCHED
        assert plan.items[0].room_id == room.id
        assert plan.items[0].details is None

    def test_id_match_with_renamed_location_is_updated(self):
        room = _synced("Flower 1", 5)
        plan = compute_sync_plan([ExternalLocation(id=5, name="Flower One")], [room])
        item = plan.items[0]
        assert item.action == UPDATED
        assert "Flower One" in item.details
        assert not item.linked

    def test_id_match_with_locally_renamed_room_is_updated(self):
        room = _synced("Flower 1", 5)
        room.name = "My flower room"
        plan = compute_sync_plan([ExternalLocation(id=5, name="Flower 1")], [room])
        assert plan.items[0].action == UPDATED

    def test_type_change_counts_as_drift(self):
        room = _synced("Flower 1", 5, external_location_type_name="Default")
        loc = ExternalLocation(id=5, name="Flower 1", type_name="Flowering")
        plan = compute_sync_plan([loc], [room])
        assert plan.items[0].action == UPDATED

    def test_out_of_sync_room_reappearing_is_updated(self):
        room = _synced("Dry Room", 9)
        room.sync_status = "out_of_sync"
        plan = compute_sync_plan([ExternalLocation(id=9, name="Dry Room")], [room])
        assert plan.items[0].action == UPDATED
        assert "out_of_sync" in plan.items[0].details

    def test_sync_error_room_with_same_name_stays_matched(self):
        room = _synced("Dry Room", 9)
        room.sync_status = "sync_error"
        plan = compute_sync_plan([ExternalLocation(id=9, name="Dry Room")], [room])
        assert plan.items[0].action == MATCHED

    def test_name_match_links_unlinked_room(self):
        room = _room("Clone Room")
        plan = compute_sync_plan([ExternalLocation(id=3, name="Clone Room")], [room])
        item = plan.items[0]
        assert item.action == UPDATED
        assert item.linked
        assert item.room_id == room.id

    def test_name_match_is_case_sensitive(self):
        room = _room("clone room")
        plan = compute_sync_plan([ExternalLocation(id=3, name="Clone Room")], [room])
        assert plan.items[0].action == CREATED

    def test_name_match_does_not_trim(self):
        room = _room("Clone Room ")
        plan = compute_sync_plan([ExternalLocation(id=3, name="Clone Room")], [room])
        assert plan.items[0].action == CREATED

    def test_name_match_ignores_already_linked_rooms(self):
        """A linked room with the same name is never relinked to another location."""
        room = _synced("Mother Room", 1)
        locations = [
            ExternalLocation(id=1, name="Mother Room"),
            ExternalLocation(id=2, name="Mother Room"),
        ]
        plan = compute_sync_plan(locations, [room])
        assert [i.action for i in plan.items] == [MATCHED, CREATED]

    def test_duplicate_names_link_earliest_room_only(self):
        older = _room("Storage", minutes_ago=10)
        newer = _room("Storage", minutes_ago=1)
        plan = compute_sync_plan([ExternalLocation(id=4, name="Storage")], [newer, older])
        assert len(plan.items) == 1
        assert plan.items[0].room_id == older.id

    def test_two_locations_same_name_claim_two_rooms(self):
        older = _room("Storage", minutes_ago=10)
        newer = _room("Storage", minutes_ago=1)
        locations = [ExternalLocation(id=4, name="Storage"), ExternalLocation(id=8, name="Storage")]
        plan = compute_sync_plan(locations, [newer, older])
        assert [i.room_id for i in plan.items] == [older.id, newer.id]

    def test_linked_room_missing_upstream_is_orphaned(self):
        room = _synced("Trim Room", 12)
        plan = compute_sync_plan([], [room])
        item = plan.items[0]
        assert item.action == ORPHANED
        assert item.external_location_id == 12
        assert item.room_id == room.id

    def test_unlinked_rooms_never_orphaned(self):
        plan = compute_sync_plan([], [_room("Local only")])
        assert plan.items == []

    def test_duplicate_location_ids_processed_once(self):
        locations = [ExternalLocation(id=1, name="A"), ExternalLocation(id=1, name="A")]
        plan = compute_sync_plan(locations, [])
        assert plan.created_count == 1

    def test_every_location_gets_exactly_one_item(self):
        rooms = [_synced("A", 1), _room("B")]
        locations = [
            ExternalLocation(id=1, name="A"),
            ExternalLocation(id=2, name="B"),
            ExternalLocation(id=3, name="C"),
        ]
        plan = compute_sync_plan(locations, rooms)
        assert sorted(i.external_location_id for i in plan.items) == [1, 2, 3]
        assert (plan.matched_count, plan.updated_count, plan.created_count) == (1, 1, 1)

    def test_location_held_by_inactive_room_is_matched(self):
        plan = compute_sync_plan(
            [ExternalLocation(id=5, name="Old Veg")], [], inactive_links={5: "closed-room"},
        )
        assert [i.action for i in plan.items] == [MATCHED]
        assert plan.items[0].room_id == "closed-room"
        assert plan.items[0].details == INACTIVE_LINK_DETAIL
        assert plan.created_count == 0

    def test_inactive_link_beats_name_match(self):
        room = _room("Old Veg")
        plan = compute_sync_plan(
            [ExternalLocation(id=5, name="Old Veg")], [room], inactive_links={5: "closed-room"},
        )
        assert plan.items[0].action == MATCHED
        assert plan.items[0].room_id == "closed-room"


class TestFindPushCandidates:
    def test_unlinked_room_unknown_upstream_is_candidate(self):
        room = _room("Veg Room B")
        assert find_push_candidates([], [room]) == [room]

    def test_linked_room_is_not_candidate(self):
        assert find_push_candidates([], [_synced("Veg", 1)]) == []

    def test_room_matching_external_name_is_not_candidate(self):
        room = _room("Veg Room A")
        assert find_push_candidates([ExternalLocation(id=1, name="Veg Room A")], [room]) == []

    def test_room_whose_trimmed_name_exists_upstream_is_not_candidate(self):
        room = _room("Veg Room A ")
        assert find_push_candidates([ExternalLocation(id=1, name="Veg Room A")], [room]) == []

    def test_sync_error_room_is_not_candidate(self):
        room = _room("Broken", sync_status="sync_error")
        assert find_push_candidates([], [room]) == []

    def test_inactive_room_is_not_candidate(self):
        room = _room("Closed", is_active=False)
        assert find_push_candidates([], [room]) == []

    def test_candidates_ordered_by_creation(self):
        newer = _room("B", minutes_ago=1)
        older = _room("A", minutes_ago=5)
        assert find_push_candidates([], [newer, older]) == [older, newer]


class TestMapLocationType:
    @pytest.mark.parametrize("type_name, expected", [
        ("Vegetative", "veg"),
        ("Flowering Room", "flower"),
        ("Mother Stock", "mother"),
        ("Clone / Propagation", "clone"),
        ("Drying", "dry"),
        ("Cure Room", "cure"),
        ("Trim Processing", "processing"),
        ("Vault", "storage"),
        ("Default Location Type", "mixed"),
        (None, "mixed"),
    ])
    def test_keywords(self, type_name, expected):
        assert map_location_type_to_room_type(type_name) == expected
