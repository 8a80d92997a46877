"""Associating resource keys with identifiers reported by the host.

The host names an installed component after its directory (or entry file
stem), which rarely matches the repository name exactly. Two identifiers
are considered the same component when they fall in one of these
equivalence classes, tested in order:

1. equal after :func:`normalize_slug` (case folded, every character outside
   ``[a-z0-9]`` dropped): ``My_Plugin`` ~ ``my-plugin`` ~ ``myplugin``;
2. one normalized form is a prefix of the other: ``widget`` ~ ``widget-main``;
3. equal after mapping ``_`` to ``-`` (or back) in the lower-cased forms;
4. one lower-cased form contains the other: ``acme-widget-pro`` ~ ``widget``.

Empty identifiers never match anything.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from pathlib import PurePosixPath

_NON_ALNUM = re.compile(r"[^a-z0-9]")


def slug_from_key(resource: str) -> str:
    """``"owner/name"`` -> ``"name"``."""
    return resource.rstrip("/").rsplit("/", 1)[-1]


def split_key(resource: str) -> tuple[str, str]:
    """``"owner/name"`` -> ``("owner", "name")``; owner is empty without a slash."""
    if "/" not in resource:
        return "", resource
    owner, name = resource.split("/", 1)
    return owner, name


def normalize_slug(value: str) -> str:
    return _NON_ALNUM.sub("", value.lower())


def identifiers_match(slug: str, host_id: str) -> bool:
    """Whether *slug* and *host_id* name the same component."""
    norm_slug = normalize_slug(slug)
    norm_host = normalize_slug(host_id)
    if not norm_slug or not norm_host:
        return False

    if norm_slug == norm_host:
        return True
    if norm_host.startswith(norm_slug) or norm_slug.startswith(norm_host):
        return True

    slug_lower = slug.lower()
    host_lower = host_id.lower()
    if slug_lower.replace("_", "-") == host_lower.replace("_", "-"):
        return True
    if slug_lower.replace("-", "_") == host_lower.replace("-", "_"):
        return True

    return slug_lower in host_lower or host_lower in slug_lower


def find_host_match(resource: str, entry_points: Iterable[str]) -> str | None:
    """First entry point (``"dir/file.ext"``) whose directory or stem matches."""
    slug = slug_from_key(resource)
    for entry_point in entry_points:
        path = PurePosixPath(entry_point)
        directory = path.parent.name if path.parent.name else path.stem
        if identifiers_match(slug, directory) or identifiers_match(slug, path.stem):
            return entry_point
    return None


def matches_search(resource: str, term: str) -> bool:
    """Case-insensitive containment of *term* in the key, owner or name."""
    needle = term.strip().lower()
    if not needle:
        return True
    owner, name = split_key(resource)
    return needle in resource.lower() or needle in name.lower() or needle in owner.lower()
