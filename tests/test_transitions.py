from __future__ import annotations

import pytest

from pyplug.exceptions import InvalidTransitionError
from pyplug.models.state import ResourceState as S
from pyplug.state.transitions import ALLOWED_TRANSITIONS, TransitionValidator, export_state_schema


def test_every_state_has_a_table_entry() -> None:
    assert set(ALLOWED_TRANSITIONS) == set(S)


@pytest.mark.parametrize(
    ("from_state", "to_state"),
    [
        (S.UNKNOWN, S.INSTALLED_ACTIVE),
        (S.UNKNOWN, S.CHECKING),
        (S.CHECKING, S.AVAILABLE),
        (S.AVAILABLE, S.INSTALLED_INACTIVE),
        (S.INSTALLED_INACTIVE, S.INSTALLED_ACTIVE),
        (S.INSTALLED_ACTIVE, S.INSTALLED_INACTIVE),
        (S.NOT_PLUGIN, S.CHECKING),
        (S.ERROR, S.AVAILABLE),
    ],
)
def test_allowed_moves(from_state: S, to_state: S) -> None:
    assert TransitionValidator().is_allowed(from_state, to_state)


@pytest.mark.parametrize(
    ("from_state", "to_state"),
    [
        (S.CHECKING, S.INSTALLED_ACTIVE),
        (S.AVAILABLE, S.INSTALLED_ACTIVE),
        (S.AVAILABLE, S.CHECKING),
        (S.NOT_PLUGIN, S.ERROR),
        (S.ERROR, S.INSTALLED_INACTIVE),
        (S.ERROR, S.INSTALLED_ACTIVE),
        (S.INSTALLED_ACTIVE, S.AVAILABLE),
        (S.UNKNOWN, S.UNKNOWN),
    ],
)
def test_disallowed_moves(from_state: S, to_state: S) -> None:
    assert not TransitionValidator().is_allowed(from_state, to_state)


def test_validate_raises_with_context() -> None:
    with pytest.raises(InvalidTransitionError) as exc_info:
        TransitionValidator().validate(S.AVAILABLE, S.CHECKING, resource="acme/widget")

    err = exc_info.value
    assert err.resource == "acme/widget"
    assert err.details == {"from": "available", "to": "checking"}
    assert err.to_dict()["kind"] == "invalid_transition"


def test_custom_table_replaces_default() -> None:
    validator = TransitionValidator({S.ERROR: frozenset({S.INSTALLED_INACTIVE})})

    assert validator.is_allowed(S.ERROR, S.INSTALLED_INACTIVE)
    assert validator.allowed_targets(S.UNKNOWN) == frozenset()


def test_export_state_schema_lists_states_and_transitions() -> None:
    schema = export_state_schema()

    assert schema["title"] == "ResourceState"
    assert set(schema["enum"]) == {state.value for state in S}
    assert schema["x-transitions"]["checking"] == ["available", "error", "not_plugin"]
    assert schema["x-transitions"]["error"] == ["available", "checking", "not_plugin"]
