"""Content-version keyed processing cache.

Decisions computed for a resource (detection results, rendered state
payloads) are cached together with the resource's content version. A
lookup only hits when the caller supplies the exact same version, so a
change on the source side invalidates the entry without any explicit
bookkeeping.
"""

from __future__ import annotations

import copy
import logging
import time
from collections.abc import Callable
from typing import Any

from pyplug._constants import CACHE_PREFIX, DEFAULT_CACHE_TTL
from pyplug._kv import KeyValueBackend
from pyplug.broadcast import EventBroadcaster
from pyplug.models.cache import CacheEntry
from pyplug.models.events import EventType

_logger = logging.getLogger(__name__)


def _key(resource: str) -> str:
    return f"{CACHE_PREFIX}{resource}"


class ProcessingCache:
    """Per-resource cache of previously computed decisions."""

    def __init__(
        self,
        backend: KeyValueBackend,
        *,
        ttl: float = DEFAULT_CACHE_TTL,
        events: EventBroadcaster | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._backend = backend
        self._events = events
        self._ttl = ttl
        self._clock = clock

    def _entry(self, resource: str) -> CacheEntry | None:
        raw = self._backend.get(_key(resource))
        if not isinstance(raw, dict):
            return None
        return CacheEntry.model_validate(raw)

    def get(self, resource: str, content_version: str) -> Any | None:
        """Return the cached payload, or ``None`` on a miss.

        A stored entry whose version differs from *content_version* is a
        miss; it is left in place and overwritten by the next :meth:`set`.
        """
        if not resource:
            return None
        entry = self._entry(resource)
        if entry is None:
            _logger.debug("Processing cache MISS for %s (no entry)", resource)
            return None
        if not entry.matches(content_version):
            _logger.debug(
                "Processing cache STALE for %s (cached: %r, current: %r)",
                resource,
                entry.content_version,
                content_version,
            )
            return None
        _logger.debug("Processing cache HIT for %s", resource)
        return copy.deepcopy(entry.payload)

    def set(self, resource: str, content_version: str, payload: Any) -> None:
        if not resource:
            return
        entry = CacheEntry(
            resource_key=resource,
            content_version=content_version,
            payload=copy.deepcopy(payload),
            cached_at=self._clock(),
        )
        self._backend.set(_key(resource), entry.model_dump(mode="json"), self._ttl)
        _logger.debug("Processing cache SAVE for %s (version %r)", resource, content_version)

    def invalidate(self, resource: str) -> bool:
        """Drop the entry for *resource*. Returns whether one existed."""
        removed = self._backend.delete(_key(resource))
        if removed:
            _logger.debug("Processing cache INVALIDATED for %s", resource)
            if self._events is not None:
                self._events.log_event(resource, EventType.CACHE_INVALIDATED)
        return removed

    def entry(self, resource: str) -> CacheEntry | None:
        """The raw entry regardless of version (diagnostics)."""
        return self._entry(resource)
