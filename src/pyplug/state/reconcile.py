"""Reconciling persisted states with what the host reports.

A persisted state can go stale when the host changes outside pyplug
(a component removed by hand, activated from another tool). Only states
that claim something about the host are checked; ``unknown``,
``checking``, ``not_plugin`` and ``error`` carry no such claim and are
returned unchanged.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING

from pyplug.models.host import HostStatus
from pyplug.models.state import ResourceState

if TYPE_CHECKING:
    from pyplug.host import HostInspector

_logger = logging.getLogger(__name__)


def reconcile_with_host(persisted: ResourceState, host: HostStatus) -> ResourceState:
    """Pure drift correction for one resource."""
    if not persisted.claims_host_reality:
        return persisted

    if persisted is ResourceState.AVAILABLE:
        if host.present:
            return ResourceState.INSTALLED_ACTIVE if host.active else ResourceState.INSTALLED_INACTIVE
        return persisted

    # installed_inactive / installed_active
    if not host.present:
        return ResourceState.AVAILABLE
    if persisted is ResourceState.INSTALLED_INACTIVE and host.active:
        return ResourceState.INSTALLED_ACTIVE
    if persisted is ResourceState.INSTALLED_ACTIVE and not host.active:
        return ResourceState.INSTALLED_INACTIVE
    return persisted


class Reconciler:
    """Queries the host inspector and corrects persisted states."""

    def __init__(self, host: HostInspector) -> None:
        self._host = host

    def reconcile(self, resource: str, persisted: ResourceState) -> ResourceState:
        if not persisted.claims_host_reality:
            return persisted
        status = self._host.probe(resource)
        reconciled = reconcile_with_host(persisted, status)
        if reconciled is not persisted:
            _logger.info("Reconciled %s: %s -> %s", resource, persisted.value, reconciled.value)
        return reconciled

    def reconcile_all(self, persisted: Mapping[str, ResourceState]) -> dict[str, ResourceState]:
        """Return only the entries whose state changed."""
        changes: dict[str, ResourceState] = {}
        for resource, state in persisted.items():
            reconciled = self.reconcile(resource, state)
            if reconciled is not state:
                changes[resource] = reconciled
        return changes
