"""Allowed state transitions.

``unknown`` is permissive because first contact may resolve to anything.
Leaving ``error`` is restricted to non-installed outcomes: recovery has to
re-derive the truth (through ``checking`` or a refresh) rather than assume
an install succeeded.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from pydantic import TypeAdapter

from pyplug.exceptions import InvalidTransitionError
from pyplug.models.state import ResourceState

S = ResourceState

ALLOWED_TRANSITIONS: Mapping[ResourceState, frozenset[ResourceState]] = {
    S.UNKNOWN: frozenset(
        {S.CHECKING, S.AVAILABLE, S.NOT_PLUGIN, S.ERROR, S.INSTALLED_INACTIVE, S.INSTALLED_ACTIVE}
    ),
    S.CHECKING: frozenset({S.AVAILABLE, S.NOT_PLUGIN, S.ERROR}),
    S.AVAILABLE: frozenset({S.INSTALLED_INACTIVE, S.ERROR}),
    S.INSTALLED_INACTIVE: frozenset({S.INSTALLED_ACTIVE, S.ERROR}),
    S.INSTALLED_ACTIVE: frozenset({S.INSTALLED_INACTIVE, S.ERROR}),
    S.NOT_PLUGIN: frozenset({S.CHECKING, S.AVAILABLE}),
    S.ERROR: frozenset({S.CHECKING, S.AVAILABLE, S.NOT_PLUGIN}),
}


class TransitionValidator:
    """Checks transitions against a table (defaults to :data:`ALLOWED_TRANSITIONS`)."""

    def __init__(self, table: Mapping[ResourceState, frozenset[ResourceState]] | None = None) -> None:
        self._table = dict(table if table is not None else ALLOWED_TRANSITIONS)

    def allowed_targets(self, from_state: ResourceState) -> frozenset[ResourceState]:
        return self._table.get(from_state, frozenset())

    def is_allowed(self, from_state: ResourceState, to_state: ResourceState) -> bool:
        return to_state in self.allowed_targets(from_state)

    def validate(self, from_state: ResourceState, to_state: ResourceState, *, resource: str = "") -> None:
        """Raise :class:`InvalidTransitionError` for a disallowed transition."""
        if not self.is_allowed(from_state, to_state):
            raise InvalidTransitionError(
                f"transition {from_state.value} -> {to_state.value} is not allowed",
                resource=resource,
                details={"from": from_state.value, "to": to_state.value},
            )

    def as_dict(self) -> dict[str, list[str]]:
        return {src.value: sorted(dst.value for dst in targets) for src, targets in self._table.items()}


def export_state_schema() -> dict[str, Any]:
    """JSON Schema of the state set plus the transition table.

    Other consumers (a browser UI, a second service) generate their copy
    of the state enumeration from this document.
    """
    schema = TypeAdapter(ResourceState).json_schema()
    schema["title"] = "ResourceState"
    schema["x-transitions"] = TransitionValidator().as_dict()
    return schema
