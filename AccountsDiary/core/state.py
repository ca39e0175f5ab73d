"""Sync-state machine for local entries.

Every entry carries one of four states. Local writes, remote pushes and remote pulls
are expressed as events; :func:`transition` returns the state an entry moves to.

.. code-block:: text

    create          -> new
    modify  new     -> new
    modify  edited  -> edited
    modify  synced  -> edited
    push    new     -> synced
    push    edited  -> synced
    delete  *       -> deleted   (any state but deleted)
    pull    None    -> synced
    pull    synced  -> synced
    pull    new     -> new       (local wins)
    pull    edited  -> edited    (local wins)
    pull    deleted -> deleted   (pending tombstone wins)

There is no way out of ``deleted``: a tombstone is purged once the remote side
acknowledges it.
"""
import enum
from typing import Dict, Optional, Tuple

from ..status import status


class SyncState(enum.StrEnum):
    New = 'new'
    Edited = 'edited'
    Synced = 'synced'
    Deleted = 'deleted'


class SyncEvent(enum.StrEnum):
    Create = 'create'
    Modify = 'modify'
    Push = 'push'
    Delete = 'delete'
    Pull = 'pull'


TRANSITIONS: Dict[Tuple[SyncEvent, Optional[SyncState]], SyncState] = {
    (SyncEvent.Create, None): SyncState.New,

    (SyncEvent.Modify, SyncState.New): SyncState.New,
    (SyncEvent.Modify, SyncState.Edited): SyncState.Edited,
    (SyncEvent.Modify, SyncState.Synced): SyncState.Edited,

    (SyncEvent.Push, SyncState.New): SyncState.Synced,
    (SyncEvent.Push, SyncState.Edited): SyncState.Synced,

    (SyncEvent.Delete, SyncState.New): SyncState.Deleted,
    (SyncEvent.Delete, SyncState.Edited): SyncState.Deleted,
    (SyncEvent.Delete, SyncState.Synced): SyncState.Deleted,

    (SyncEvent.Pull, None): SyncState.Synced,
    (SyncEvent.Pull, SyncState.Synced): SyncState.Synced,
    (SyncEvent.Pull, SyncState.New): SyncState.New,
    (SyncEvent.Pull, SyncState.Edited): SyncState.Edited,
    (SyncEvent.Pull, SyncState.Deleted): SyncState.Deleted,
}


def coerce(value: Optional[str]) -> Optional[SyncState]:
    """Convert a stored string to a SyncState, keeping None as None.

    Raises:
        status.InvalidTransitionException: If value is not a known state.
    """
    if value is None or value == '':
        return None
    try:
        return SyncState(value)
    except ValueError as e:
        raise status.InvalidTransitionException(f'Unknown sync state: "{value}"') from e


def transition(current: Optional[str], event: str) -> SyncState:
    """Return the state reached from `current` on `event`.

    Args:
        current: The current state, or None for an entry that does not exist yet.
        event: One of the SyncEvent values.

    Returns:
        SyncState: The next state.

    Raises:
        status.InvalidTransitionException: If the event is not defined for the state.
    """
    try:
        event = SyncEvent(event)
    except ValueError as e:
        raise status.InvalidTransitionException(f'Unknown sync event: "{event}"') from e

    key = (event, coerce(current))
    if key not in TRANSITIONS:
        raise status.InvalidTransitionException(f'Cannot apply "{event}" to an entry in state "{current}".')
    return TRANSITIONS[key]


def is_synced(state: Optional[str]) -> bool:
    """Return the boolean cache stored alongside the state."""
    return coerce(state) == SyncState.Synced


def local_wins(current: Optional[str]) -> bool:
    """Return True if a pulled remote row must not overwrite the local entry."""
    return transition(current, SyncEvent.Pull) != SyncState.Synced
