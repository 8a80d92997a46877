"""Processing cache entry."""

from __future__ import annotations

from typing import Any

from pyplug.models._base import PyplugBaseModel


class CacheEntry(PyplugBaseModel):
    """A cached decision, valid only for one content version."""

    resource_key: str
    content_version: str
    payload: Any
    cached_at: float

    def matches(self, content_version: str) -> bool:
        return self.content_version == content_version
