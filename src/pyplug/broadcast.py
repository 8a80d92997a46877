"""Bounded event logs for diagnostics and live-update consumers.

Two ring buffers are kept in the key/value backend: one per resource and
one global broadcast feed. Both evict oldest-first; they are notification
aids, not an audit log (see :mod:`pyplug.audit` for that).
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from typing import Any

from pydantic_core import to_jsonable_python

from pyplug._constants import (
    BROADCAST_LAST_ID_KEY,
    BROADCAST_PREFIX,
    DEFAULT_EVENT_LOG_TTL,
    EVENTS_PREFIX,
    GLOBAL_EVENT_CAPACITY,
    RESOURCE_EVENT_CAPACITY,
)
from pyplug._kv import KeyValueBackend
from pyplug._redact import redact, redact_for_log
from pyplug.models._base import utc_from_epoch
from pyplug.models.events import Event

_logger = logging.getLogger(__name__)


def _event_key(prefix: str, event_id: int) -> str:
    # Zero padding keeps lexical key order equal to id order.
    return f"{prefix}{event_id:020d}"


def _resource_prefix(resource: str) -> str:
    return f"{EVENTS_PREFIX}{resource}#"


class EventBroadcaster:
    """Append-only ring buffers with a strictly increasing event id.

    Every event is written under its own key and ids come from the
    backend's atomic counter, so several processes can append to the same
    buffers without losing or renumbering events.
    """

    def __init__(
        self,
        backend: KeyValueBackend,
        *,
        global_capacity: int = GLOBAL_EVENT_CAPACITY,
        resource_capacity: int = RESOURCE_EVENT_CAPACITY,
        ttl: float = DEFAULT_EVENT_LOG_TTL,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._backend = backend
        self._global_capacity = global_capacity
        self._resource_capacity = resource_capacity
        self._ttl = ttl
        self._clock = clock

    def _make_event(self, resource: str, event_type: str, data: Mapping[str, Any] | None) -> Event:
        return Event(
            id=self._backend.increment(BROADCAST_LAST_ID_KEY),
            event_type=str(event_type),
            resource=resource,
            payload=to_jsonable_python(redact(dict(data or {})), serialize_unknown=True),
            timestamp=utc_from_epoch(self._clock()),
        )

    def _append(self, prefix: str, event: Event, capacity: int) -> None:
        self._backend.set(_event_key(prefix, event.id), event.model_dump(mode="json"), self._ttl)
        keys = self._backend.keys(prefix)
        # Concurrent trims may race on the same keys; deleting twice is harmless.
        for key in keys[: max(len(keys) - capacity, 0)]:
            self._backend.delete(key)

    def _load(self, keys: list[str]) -> list[Event]:
        events: list[Event] = []
        for key in keys:
            raw = self._backend.get(key)
            if raw is not None:
                events.append(Event.model_validate(raw))
        return events

    def log_event(self, resource: str, event_type: str, data: Mapping[str, Any] | None = None) -> Event:
        """Append an event to the resource's bounded log."""
        event = self._make_event(resource, event_type, data)
        self._append(_resource_prefix(resource), event, self._resource_capacity)
        _logger.debug("event %s %s %s", resource, event.event_type, redact_for_log(event.payload))
        return event

    def broadcast(self, event_type: str, payload: Mapping[str, Any] | None = None) -> Event:
        """Append an event to the resource log and the global feed.

        The resource is taken from ``payload["resource"]``.
        """
        data = dict(payload or {})
        resource = str(data.get("resource") or "unknown")
        event = self._make_event(resource, event_type, data)
        self._append(_resource_prefix(resource), event, self._resource_capacity)
        self._append(BROADCAST_PREFIX, event, self._global_capacity)
        _logger.debug("broadcast #%d %s %s", event.id, event.event_type, resource)
        return event

    def get_events_since(self, last_id: int) -> list[Event]:
        """Global events with ``id > last_id``, oldest first."""
        newer = [key for key in self._backend.keys(BROADCAST_PREFIX) if int(key[len(BROADCAST_PREFIX) :]) > last_id]
        return self._load(newer)

    def get_events(self, resource: str, limit: int = 10) -> list[Event]:
        """Newest ``limit`` events of one resource, oldest first."""
        if limit <= 0:
            return []
        return self._load(self._backend.keys(_resource_prefix(resource))[-limit:])

    @property
    def last_id(self) -> int:
        return int(self._backend.get(BROADCAST_LAST_ID_KEY, 0) or 0)
