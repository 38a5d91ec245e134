"""Path utilities shared by staging, conflict detection and backups.

Package paths arrive in many shapes ("BepInEx\\plugins\\a.dll",
"./BepInEx/plugins/a.dll"). Everything inside the library uses one
normalised, forward-slash, target-relative form.
"""

import hashlib
import logging
import os
import re
from pathlib import Path

from .exceptions import UnsafePathError

logger = logging.getLogger(__name__)


def normalize_relative_path(path: str | Path) -> str:
    """Normalise a target-relative path.

    Args:
        path: Relative path with either separator style

    Returns:
        Forward-slash path without leading "./"

    Raises:
        UnsafePathError: If the path is absolute or climbs out with ".."

    Examples:
        >>> normalize_relative_path("BepInEx\\\\plugins\\\\a.dll")
        'BepInEx/plugins/a.dll'
        >>> normalize_relative_path("../outside.dll")
        Traceback (most recent call last):
        ...
        modsafe.exceptions.UnsafePathError: Path escapes target directory: ../outside.dll
    """
    text = str(path).replace("\\", "/").strip()
    if text.startswith("/") or (len(text) > 1 and text[1] == ":"):
        raise UnsafePathError(f"Absolute path not allowed: {path}", context={"path": str(path)})

    parts = [p for p in text.split("/") if p not in ("", ".")]
    if not parts:
        raise UnsafePathError(f"Empty relative path: {path!r}", context={"path": str(path)})
    if ".." in parts:
        raise UnsafePathError(f"Path escapes target directory: {path}", context={"path": str(path)})
    return "/".join(parts)


def slug(value: str, default: str = "backup") -> str:
    """File-name safe form of ``value``."""
    return re.sub(r"[^\w.-]+", "_", value).strip("_") or default


def target_key(root: Path, name: str = "") -> str:
    """Stable per-target directory name: readable prefix plus a hash of the resolved root."""
    digest = hashlib.sha1(str(root.resolve()).encode("utf-8")).hexdigest()[:8]
    return f"{slug(name or root.name, default='target')}-{digest}"


def ownership_key(relative_path: str) -> str:
    """Case-insensitive key used to compare file claims between packages."""
    return relative_path.replace("\\", "/").lower()


def resolve_inside(root: Path, relative_path: str) -> Path:
    """Join ``relative_path`` onto ``root`` and refuse anything escaping it."""
    candidate = root / normalize_relative_path(relative_path)
    if not candidate.resolve().is_relative_to(root.resolve()):
        raise UnsafePathError(
            f"Path escapes target directory: {relative_path}",
            context={"root": str(root), "path": relative_path},
        )
    return candidate


def prune_empty_dirs(start: Path, stop: Path) -> None:
    """Remove empty directories from ``start`` upward, never removing ``stop``."""
    current = start
    stop = stop.resolve()
    while current.resolve() != stop and current.resolve().is_relative_to(stop):
        try:
            current.rmdir()
        except OSError:
            return
        logger.debug(f"Removed empty directory {current}")
        current = current.parent


def iter_files(directory: Path) -> list[Path]:
    """All regular files below ``directory`` in a stable order."""
    if not directory.is_dir():
        return []
    return sorted(p for p in directory.rglob("*") if p.is_file())


def same_volume(a: Path, b: Path) -> bool:
    """True when ``a`` and ``b`` (or their nearest existing parents) share a device."""

    def _device(path: Path) -> int | None:
        for candidate in (path, *path.parents):
            try:
                return os.stat(candidate).st_dev
            except OSError:
                continue
        return None

    dev_a, dev_b = _device(a), _device(b)
    return dev_a is not None and dev_a == dev_b
