"""Strategies for placing a file (or directory) at a new location.

The stager never calls ``shutil``/``os.link`` directly; it asks a
``LinkStrategy`` to materialise a source at a destination. Copying is the
default and works everywhere; the link strategies trade isolation for speed
and disk space and are only offered where the platform supports them.
"""

import logging
import os
import shutil
import subprocess
from pathlib import Path
from typing import Protocol

from .utils import same_volume

logger = logging.getLogger(__name__)


class LinkStrategy(Protocol):
    name: str

    def supports(self, source: Path, destination: Path) -> bool:
        """True if this strategy can place ``source`` at ``destination``."""
        ...

    def link(self, source: Path, destination: Path) -> None:
        """Place ``source`` at ``destination`` (parent directories are created)."""
        ...


class CopyStrategy:
    name = "copy"

    def supports(self, source: Path, destination: Path) -> bool:
        return True

    def link(self, source: Path, destination: Path) -> None:
        destination.parent.mkdir(parents=True, exist_ok=True)
        if source.is_dir():
            shutil.copytree(source, destination, dirs_exist_ok=True)
        else:
            shutil.copy2(source, destination)


class HardlinkStrategy:
    """Hard links share the inode, so the source must never be modified in place afterwards."""

    name = "hardlink"

    def supports(self, source: Path, destination: Path) -> bool:
        return source.is_file() and same_volume(source, destination.parent)

    def link(self, source: Path, destination: Path) -> None:
        destination.parent.mkdir(parents=True, exist_ok=True)
        os.link(source, destination)


class SymlinkStrategy:
    name = "symlink"

    def supports(self, source: Path, destination: Path) -> bool:
        # Unprivileged Windows accounts need developer mode for symlinks
        return os.name != "nt" and source.exists()

    def link(self, source: Path, destination: Path) -> None:
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.symlink_to(source.resolve(), target_is_directory=source.is_dir())


class JunctionStrategy:
    """NTFS directory junctions (no privilege required, directories only)."""

    name = "junction"

    def supports(self, source: Path, destination: Path) -> bool:
        return os.name == "nt" and source.is_dir()

    def link(self, source: Path, destination: Path) -> None:
        destination.parent.mkdir(parents=True, exist_ok=True)
        completed = subprocess.run(
            ["cmd", "/c", "mklink", "/J", str(destination), str(source.resolve())],
            capture_output=True,
            text=True,
            check=False,
        )
        if completed.returncode != 0:
            raise OSError(f"mklink /J failed for {destination}: {completed.stderr.strip() or completed.stdout.strip()}")


_STRATEGIES: dict[str, type] = {
    "copy": CopyStrategy,
    "hardlink": HardlinkStrategy,
    "symlink": SymlinkStrategy,
    "junction": JunctionStrategy,
}


class FallbackLinkStrategy:
    """Tries each strategy in order and uses the first one that supports the pair."""

    def __init__(self, strategies: list[LinkStrategy]):
        self.strategies = strategies
        self.name = "+".join(s.name for s in strategies)

    def supports(self, source: Path, destination: Path) -> bool:
        return any(s.supports(source, destination) for s in self.strategies)

    def link(self, source: Path, destination: Path) -> None:
        for strategy in self.strategies:
            if strategy.supports(source, destination):
                strategy.link(source, destination)
                return
        raise OSError(f"No link strategy can place {source} at {destination}")


def choose_link_strategy(preferred: str | list[str] | None = None) -> LinkStrategy:
    """
    Build the strategy chain for ``preferred``.

    Copying is always appended as the last resort, so the returned strategy
    supports every source/destination pair.

    Args:
        preferred: Strategy name or ordered names ("symlink", "junction",
            "hardlink", "copy"); None means copy

    Raises:
        ValueError: If a name is unknown
    """
    names = [preferred] if isinstance(preferred, str) else list(preferred or [])
    chain: list[LinkStrategy] = []
    for name in names:
        key = name.strip().lower()
        if key not in _STRATEGIES:
            raise ValueError(f"Unknown link strategy: {name}")
        if key != "copy":
            chain.append(_STRATEGIES[key]())
    chain.append(CopyStrategy())

    if len(chain) == 1:
        return chain[0]
    logger.debug(f"Link strategy chain: {[s.name for s in chain]}")
    return FallbackLinkStrategy(chain)
