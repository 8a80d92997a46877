"""Filesystem helpers for the installer.

Everything destructive goes through :func:`safe_rmtree`, which refuses to
touch anything whose resolved path is not inside one of the permitted
roots.
"""

from __future__ import annotations

import logging
import shutil
import zipfile
from collections.abc import Iterable, Sequence
from pathlib import Path, PurePosixPath

from pyplug._constants import ENTRY_POINT_SCAN_BYTES
from pyplug.exceptions import UnsafePathError

_logger = logging.getLogger(__name__)


def is_within(path: Path, roots: Iterable[Path]) -> bool:
    """Whether the real path of *path* is strictly below one of *roots*."""
    real = path.resolve()
    for root in roots:
        real_root = root.resolve()
        if real != real_root and real.is_relative_to(real_root):
            return True
    return False


def safe_rmtree(path: Path, allowed_roots: Sequence[Path]) -> bool:
    """Delete a file or directory tree confined to *allowed_roots*.

    Returns ``False`` when there was nothing to delete. Raises
    :class:`UnsafePathError` for paths outside the roots (symlinks are
    resolved first, so a link pointing outside is refused too).
    """
    if not path.exists() and not path.is_symlink():
        return False
    if not is_within(path, allowed_roots):
        raise UnsafePathError(
            f"refusing to delete {path}: outside permitted roots",
            details={"path": str(path), "roots": [str(r) for r in allowed_roots]},
        )
    if path.is_symlink() or path.is_file():
        path.unlink()
    else:
        shutil.rmtree(path)
    _logger.debug("Deleted %s", path)
    return True


def zip_supported() -> bool:
    return any(name == "zip" for name, _exts, _desc in shutil.get_unpack_formats())


def _member_target(name: str, strip_root: str | None) -> PurePosixPath | None:
    member = PurePosixPath(name)
    if member.is_absolute() or ".." in member.parts:
        raise ValueError(f"unsafe archive path: {name}")
    parts = member.parts
    if strip_root is not None:
        parts = parts[1:]
    if not parts:
        return None
    return PurePosixPath(*parts)


def _single_root(names: Sequence[str]) -> str | None:
    roots = {PurePosixPath(n).parts[0] for n in names if PurePosixPath(n).parts}
    if len(roots) != 1:
        return None
    root = next(iter(roots))
    # A lone top-level *file* is not a wrapper directory.
    if all(PurePosixPath(n).parts == (root,) for n in names):
        return None
    return root


def safe_extract_zip(archive_path: Path, target_dir: Path) -> list[str]:
    """Unpack *archive_path* into *target_dir*.

    A single top-level folder (as produced by source archive downloads) is
    stripped. Absolute paths, ``..`` segments and symlink members are
    rejected with :class:`ValueError`; corrupt archives raise
    :class:`zipfile.BadZipFile`.
    """
    with zipfile.ZipFile(archive_path, "r") as archive:
        infos = archive.infolist()
        names = [info.filename for info in infos]
        strip_root = _single_root(names)
        extracted: list[str] = []
        target_dir.mkdir(parents=True, exist_ok=True)
        for info in infos:
            # Unix mode bits live in the high word; 0o120000 marks a symlink.
            if (info.external_attr >> 16) & 0o170000 == 0o120000:
                raise ValueError(f"archive contains link entry: {info.filename}")
            relative = _member_target(info.filename, strip_root)
            if relative is None:
                continue
            destination = target_dir.joinpath(*relative.parts)
            if info.is_dir():
                destination.mkdir(parents=True, exist_ok=True)
                continue
            destination.parent.mkdir(parents=True, exist_ok=True)
            with archive.open(info) as src, destination.open("wb") as dst:
                shutil.copyfileobj(src, dst)
            extracted.append(relative.as_posix())
    return extracted


def _has_header(path: Path, header: str) -> bool:
    try:
        with path.open("rb") as handle:
            head = handle.read(ENTRY_POINT_SCAN_BYTES)
    except OSError:
        return False
    return header.encode("utf-8") in head


def locate_entry_point(directory: Path, globs: Sequence[str], header: str) -> Path | None:
    """Find the entry file of an unpacked component.

    Looks at the top level first, then one directory down; candidates must
    match one of *globs* and contain *header* near the start.
    """
    if not directory.is_dir():
        return None
    levels = [directory, *sorted(p for p in directory.iterdir() if p.is_dir())]
    for level in levels:
        for pattern in globs:
            for candidate in sorted(level.glob(pattern)):
                if candidate.is_file() and _has_header(candidate, header):
                    return candidate
    return None
