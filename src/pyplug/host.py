"""Host inspection and control.

The host is wherever installed components live. :class:`FilesystemHost`
treats every directory below ``plugins_dir`` that holds an entry point as
an installed component, and keeps the set of active entry points in the
shared key/value backend.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from pathlib import Path
from typing import Protocol

from pyplug._constants import ACTIVE_SET_KEY
from pyplug._fs import locate_entry_point
from pyplug._kv import KeyValueBackend
from pyplug.exceptions import ActivationError
from pyplug.models.host import HostStatus
from pyplug.state.matching import find_host_match

_logger = logging.getLogger(__name__)


class HostInspector(Protocol):
    """Reports whether a resource is present/active on the host."""

    def probe(self, resource: str) -> HostStatus:
        ...


class HostController(HostInspector, Protocol):
    """A host the pipeline can also activate and deactivate components on."""

    def activate(self, entry_point: str) -> None:
        ...

    def deactivate(self, entry_point: str) -> None:
        ...

    def is_active(self, entry_point: str) -> bool:
        ...


class FilesystemHost:
    """Host backed by a plugins directory and an active set."""

    def __init__(
        self,
        plugins_dir: Path,
        backend: KeyValueBackend,
        *,
        entry_point_globs: Sequence[str] = ("*.php",),
        entry_point_header: str = "Plugin Name:",
    ) -> None:
        self._plugins_dir = Path(plugins_dir)
        self._backend = backend
        self._globs = tuple(entry_point_globs)
        self._header = entry_point_header

    @property
    def plugins_dir(self) -> Path:
        return self._plugins_dir

    def _active_set(self) -> set[str]:
        return set(self._backend.get(ACTIVE_SET_KEY) or [])

    def _save_active_set(self, active: set[str]) -> None:
        self._backend.set(ACTIVE_SET_KEY, sorted(active))

    def installed(self) -> list[str]:
        """Entry points of all installed components, relative to ``plugins_dir``."""
        if not self._plugins_dir.is_dir():
            return []
        found: list[str] = []
        for directory in sorted(p for p in self._plugins_dir.iterdir() if p.is_dir()):
            entry = locate_entry_point(directory, self._globs, self._header)
            if entry is not None:
                found.append(entry.relative_to(self._plugins_dir).as_posix())
        return found

    def find_entry_point(self, resource: str) -> str | None:
        return find_host_match(resource, self.installed())

    def probe(self, resource: str) -> HostStatus:
        entry_point = self.find_entry_point(resource)
        if entry_point is None:
            return HostStatus(present=False, active=False)
        return HostStatus(present=True, active=self.is_active(entry_point), entry_point=entry_point)

    def is_active(self, entry_point: str) -> bool:
        return entry_point in self._active_set()

    def activate(self, entry_point: str) -> None:
        if not (self._plugins_dir / entry_point).is_file():
            raise ActivationError(f"entry point {entry_point} does not exist", details={"entry_point": entry_point})
        active = self._active_set()
        active.add(entry_point)
        self._save_active_set(active)
        _logger.info("Activated %s", entry_point)

    def deactivate(self, entry_point: str) -> None:
        active = self._active_set()
        active.discard(entry_point)
        self._save_active_set(active)
        _logger.info("Deactivated %s", entry_point)
