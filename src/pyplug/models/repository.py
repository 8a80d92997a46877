"""Repository metadata returned by a source."""

from __future__ import annotations

from pyplug.models._base import SourceModel, UtcTimestamp


class RepositoryInfo(SourceModel):
    """Subset of the repository metadata the pipeline needs."""

    full_name: str
    name: str
    default_branch: str = "main"
    html_url: str | None = None
    description: str | None = None
    archived: bool = False
    updated_at: UtcTimestamp = None

    @property
    def owner(self) -> str:
        return self.full_name.split("/", 1)[0]

    @property
    def content_version(self) -> str:
        """Last-modified marker the processing cache is keyed by.

        The source's original string is preferred so the token compares
        exactly as the source produced it.
        """
        raw_value = self.raw.get("updated_at")
        if isinstance(raw_value, str) and raw_value:
            return raw_value
        return self.updated_at.isoformat() if self.updated_at is not None else ""
