"""Tests for the room sync-status state machine."""
import pytest

from canopy.sync.status import (
    INITIAL_STATUS,
    InvalidTransitionError,
    SyncStatus,
    can_transition,
    parse_status,
    transition,
)


class TestParseStatus:
    def test_known_value(self):
        assert parse_status("synced") == SyncStatus.SYNCED

    def test_none_is_not_synced(self):
        assert parse_status(None) == SyncStatus.NOT_SYNCED

    def test_unknown_value_is_not_synced(self):
        assert parse_status("garbage") == SyncStatus.NOT_SYNCED

    def test_initial_status(self):
        assert INITIAL_STATUS == SyncStatus.NOT_SYNCED


class TestTransitions:
    @pytest.mark.parametrize("current, target", [
        ("not_synced", "synced"),
        ("not_synced", "sync_error"),
        ("not_synced", "pending_sync"),
        ("pending_sync", "synced"),
        ("pending_sync", "not_synced"),
        ("synced", "synced"),
        ("synced", "out_of_sync"),
        ("out_of_sync", "synced"),
    ])
    def test_allowed(self, current, target):
        assert can_transition(current, target)

    @pytest.mark.parametrize("current, target", [
        ("synced", "not_synced"),
        ("out_of_sync", "not_synced"),
        ("out_of_sync", "sync_error"),
        ("not_synced", "out_of_sync"),
    ])
    def test_disallowed(self, current, target):
        assert not can_transition(current, target)

    def test_sync_error_is_manual_only(self):
        assert not can_transition("sync_error", "synced")
        assert can_transition("sync_error", "synced", manual=True)

    def test_transition_returns_target(self):
        assert transition("synced", "out_of_sync") == SyncStatus.OUT_OF_SYNC

    def test_transition_raises_on_disallowed(self):
        with pytest.raises(InvalidTransitionError) as exc_info:
            transition("out_of_sync", "not_synced")
        assert exc_info.value.current == SyncStatus.OUT_OF_SYNC
        assert "not_synced" in str(exc_info.value)

    def test_no_state_is_terminal(self):
        for status in SyncStatus:
            assert any(
                can_transition(status, target, manual=True)
                for target in SyncStatus if target != status
            )
