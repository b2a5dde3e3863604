"""
Room sync-status state machine.

    not_synced   → synced | sync_error | pending_sync
    pending_sync → synced | sync_error | not_synced
    synced       → synced | out_of_sync
    out_of_sync  → synced            (only through a fresh id match)
    sync_error   → synced | sync_error  (manual retry only)

No state is terminal. sync_error is set by the calling layer for
credential/config failures; the reconciliation engine never clears it.
"""
from enum import Enum
from typing import Dict, FrozenSet, Optional


class SyncStatus(str, Enum):
    NOT_SYNCED = "not_synced"
    PENDING_SYNC = "pending_sync"
    SYNCED = "synced"
    OUT_OF_SYNC = "out_of_sync"
    SYNC_ERROR = "sync_error"


INITIAL_STATUS = SyncStatus.NOT_SYNCED

TRANSITIONS: Dict[SyncStatus, FrozenSet[SyncStatus]] = {
    SyncStatus.NOT_SYNCED: frozenset(
        {SyncStatus.SYNCED, SyncStatus.SYNC_ERROR, SyncStatus.PENDING_SYNC}
    ),
    SyncStatus.PENDING_SYNC: frozenset(
        {SyncStatus.SYNCED, SyncStatus.SYNC_ERROR, SyncStatus.NOT_SYNCED}
    ),
    SyncStatus.SYNCED: frozenset({SyncStatus.SYNCED, SyncStatus.OUT_OF_SYNC}),
    SyncStatus.OUT_OF_SYNC: frozenset({SyncStatus.SYNCED}),
    SyncStatus.SYNC_ERROR: frozenset({SyncStatus.SYNCED, SyncStatus.SYNC_ERROR}),
}

# States the engine may not move a room out of on its own
MANUAL_ONLY: FrozenSet[SyncStatus] = frozenset({SyncStatus.SYNC_ERROR})


class InvalidTransitionError(ValueError):
    def __init__(self, current: SyncStatus, target: SyncStatus):
        self.current = current
        self.target = target
        super().__init__(f"Cannot move sync status from {current.value} to {target.value}")


def parse_status(value: Optional[str]) -> SyncStatus:
    """Read a stored status. NULL or unknown values count as not_synced."""
    if isinstance(value, SyncStatus):
        return value
    try:
        return SyncStatus(value)
    except ValueError:
        return INITIAL_STATUS


def can_transition(current, target, *, manual: bool = False) -> bool:
    """Whether a room may move from current to target.

    Args:
        current: Stored status (str or SyncStatus).
        target: Desired status.
        manual: True for operator-driven retries; engine calls pass False.
    """
    current = parse_status(current)
    target = SyncStatus(target)
    if current in MANUAL_ONLY and not manual:
        return False
    return target in TRANSITIONS[current]


def transition(current, target, *, manual: bool = False) -> SyncStatus:
    """Validate and return the new status.

    Raises:
        InvalidTransitionError: if the move is not allowed.
    """
    current_status = parse_status(current)
    target_status = SyncStatus(target)
    if not can_transition(current_status, target_status, manual=manual):
        raise InvalidTransitionError(current_status, target_status)
    return target_status
