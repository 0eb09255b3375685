from __future__ import annotations

from enum import Enum


class LifecycleState(str, Enum):
    PROVISIONING = "provisioning"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    RESTORING = "restoring"
    RESTORE_FAILED = "restore_failed"
    DEACTIVATED = "deactivated"


# Explicit state machine; DEACTIVATED is terminal.
_ALLOWED: dict[LifecycleState, set[LifecycleState]] = {
    LifecycleState.PROVISIONING: {LifecycleState.ACTIVE},
    LifecycleState.ACTIVE: {
        LifecycleState.SUSPENDED,
        LifecycleState.RESTORING,
        LifecycleState.DEACTIVATED,
    },
    LifecycleState.SUSPENDED: {LifecycleState.ACTIVE, LifecycleState.DEACTIVATED},
    LifecycleState.RESTORING: {LifecycleState.ACTIVE, LifecycleState.RESTORE_FAILED},
    LifecycleState.RESTORE_FAILED: {LifecycleState.RESTORING},
    LifecycleState.DEACTIVATED: set(),
}

# Only ACTIVE tenants accept routed application traffic.
ROUTABLE_STATES = frozenset({LifecycleState.ACTIVE})


def transition_allowed(current: LifecycleState | str, target: LifecycleState | str) -> bool:
    return LifecycleState(target) in _ALLOWED.get(LifecycleState(current), set())
