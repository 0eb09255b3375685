from __future__ import annotations

import pytest

from tenantfleet.core.errors import InvalidStateTransition
from tenantfleet.domain.lifecycle import LifecycleState, transition_allowed
from tenantfleet.services.registry import normalize_expected, validate_update


@pytest.mark.parametrize(
    ("current", "target"),
    [
        (LifecycleState.PROVISIONING, LifecycleState.ACTIVE),
        (LifecycleState.ACTIVE, LifecycleState.SUSPENDED),
        (LifecycleState.SUSPENDED, LifecycleState.ACTIVE),
        (LifecycleState.ACTIVE, LifecycleState.RESTORING),
        (LifecycleState.RESTORING, LifecycleState.ACTIVE),
        (LifecycleState.RESTORING, LifecycleState.RESTORE_FAILED),
        (LifecycleState.RESTORE_FAILED, LifecycleState.RESTORING),
        (LifecycleState.SUSPENDED, LifecycleState.DEACTIVATED),
    ],
)
def test_allowed_transitions(current: LifecycleState, target: LifecycleState) -> None:
    assert transition_allowed(current, target)


@pytest.mark.parametrize(
    ("current", "target"),
    [
        (LifecycleState.DEACTIVATED, LifecycleState.ACTIVE),
        (LifecycleState.SUSPENDED, LifecycleState.RESTORING),
        (LifecycleState.RESTORE_FAILED, LifecycleState.ACTIVE),
        (LifecycleState.RESTORING, LifecycleState.SUSPENDED),
        (LifecycleState.PROVISIONING, LifecycleState.SUSPENDED),
    ],
)
def test_rejected_transitions(current: LifecycleState, target: LifecycleState) -> None:
    assert not transition_allowed(current, target)


def test_deactivated_is_terminal() -> None:
    assert not any(transition_allowed(LifecycleState.DEACTIVATED, target) for target in LifecycleState)


def test_validate_update_rejects_immutable_fields() -> None:
    with pytest.raises(ValueError):
        validate_update("acme", frozenset({LifecycleState.ACTIVE}), None, {"database_locator": "x"})


def test_validate_update_rejects_transition_outside_state_machine() -> None:
    expected = normalize_expected(LifecycleState.SUSPENDED)
    with pytest.raises(InvalidStateTransition) as excinfo:
        validate_update("acme", expected, LifecycleState.RESTORING, {})
    assert excinfo.value.current == "suspended"
    assert excinfo.value.target == "restoring"


def test_normalize_expected_accepts_strings_and_collections() -> None:
    assert normalize_expected("active") == frozenset({LifecycleState.ACTIVE})
    assert normalize_expected([LifecycleState.ACTIVE, "suspended"]) == frozenset(
        {LifecycleState.ACTIVE, LifecycleState.SUSPENDED}
    )
