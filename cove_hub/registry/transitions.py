"""
Device status state machine.
"""

from ..storage.models import DeviceStatus

S = DeviceStatus

ALLOWED_TRANSITIONS: dict[DeviceStatus, frozenset[DeviceStatus]] = {
    S.DISCOVERED: frozenset({S.PAIRING, S.PAIRED, S.REMOVED}),
    S.PAIRING: frozenset({S.DISCOVERED, S.PAIRED, S.REMOVED}),
    S.PAIRED: frozenset({S.ONLINE, S.OFFLINE, S.ERROR, S.REMOVED}),
    S.ONLINE: frozenset({S.OFFLINE, S.ERROR, S.REMOVED}),
    S.OFFLINE: frozenset({S.ONLINE, S.ERROR, S.REMOVED}),
    S.ERROR: frozenset({S.ONLINE, S.OFFLINE, S.REMOVED}),
    S.REMOVED: frozenset(),
}

# Statuses a device may be created in
INITIAL_STATUSES = frozenset({S.DISCOVERED, S.PAIRING, S.PAIRED})

# Statuses that require a completed pairing
PAIRED_STATUSES = frozenset({S.PAIRED, S.ONLINE, S.OFFLINE, S.ERROR})


def can_transition(current: DeviceStatus, target: DeviceStatus) -> bool:
    """Whether a device may move from ``current`` to ``target``.

    Staying in the same status is always allowed.
    """
    if current == target:
        return True
    return target in ALLOWED_TRANSITIONS[current]
