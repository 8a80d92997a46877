"""Base model for pyplug data types.

Every model inherits from :class:`PyplugBaseModel` which is frozen and
ignores unknown keys. Models parsed from a remote source inherit from
:class:`SourceModel`, which additionally stashes the original payload in
``raw``.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, model_validator


def utc_from_epoch(value: float) -> datetime:
    """Convert epoch seconds to an aware UTC datetime."""
    return datetime.fromtimestamp(value, tz=UTC)


def parse_timestamp(value: Any) -> datetime | None:
    """Coerce epoch numbers and ISO-8601 strings to aware UTC datetimes."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    if isinstance(value, (int, float)):
        return utc_from_epoch(float(value))
    if isinstance(value, str):
        # GitHub sends "2024-01-15T12:00:00Z".
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)
    raise ValueError(f"unsupported timestamp value: {value!r}")


UtcTimestamp = Annotated[datetime | None, BeforeValidator(parse_timestamp)]
"""Annotated type that accepts epoch seconds or ISO strings."""


class PyplugBaseModel(BaseModel):
    """Base for pyplug models."""

    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        populate_by_name=True,
    )


class SourceModel(PyplugBaseModel):
    """Base for models parsed from a remote source payload."""

    raw: dict[str, Any] = Field(default_factory=dict, repr=False)
    """Original response dict."""

    @model_validator(mode="before")
    @classmethod
    def _stash_raw(cls, values: Any) -> Any:
        if not isinstance(values, dict):
            return values
        # Explicit raw= wins over the auto-stashed payload.
        if "raw" in values:
            return values
        cleaned = {k: v for k, v in values.items() if v is not None}
        cleaned["raw"] = dict(values)
        return cleaned
