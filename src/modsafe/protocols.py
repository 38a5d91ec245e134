"""Protocols for collaborators injected by the application.

The library never discovers games, talks to package registries, or decides
where state lives. Apps provide these implementations; tests substitute
fixed in-memory ones.
"""

from collections.abc import Callable
from pathlib import Path
from typing import Protocol
from typing import runtime_checkable

from .models import InstalledPackageRecord
from .models import OperationResult
from .models import TargetInstallation
from .schema import DependencySpec

# (phase, message, percent 0-100)
ProgressCallback = Callable[[str, str, int], None]


def noop_progress(_phase: str, _msg: str, _pct: int) -> None:
    pass


@runtime_checkable
class InstalledPackageSource(Protocol):
    """Read-only view of what is installed in a target.

    The services never scan the filesystem to decide what is installed; this
    collaborator is the single source of truth.
    """

    async def list_installed(self, target: TargetInstallation) -> list[InstalledPackageRecord]:
        """Return every installed package record for ``target``."""
        ...


@runtime_checkable
class InstalledPackageStore(InstalledPackageSource, Protocol):
    """Writable installed-package state."""

    async def save_record(self, target: TargetInstallation, record: InstalledPackageRecord) -> None:
        """Add or replace the record with ``record.id``."""
        ...

    async def remove_record(self, target: TargetInstallation, package_id: str) -> None:
        """Remove the record for ``package_id`` (no-op if absent)."""
        ...

    async def replace_all(self, target: TargetInstallation, records: list[InstalledPackageRecord]) -> None:
        """Replace the whole installed set (used by restore)."""
        ...


class PackageSourceProtocol(Protocol):
    """Locates installable archives for dependencies.

    Example implementations:
    - a registry client downloading release assets into a cache
    - a local directory of downloaded archives
    """

    async def locate(self, dependency: DependencySpec) -> Path | None:
        """Return a local archive satisfying ``dependency``, or None if unavailable."""
        ...


class PackageInstallerProtocol(Protocol):
    """Installs a package archive into a target (implemented by ModInstaller)."""

    async def install_archive(self, archive_path: Path, target: TargetInstallation) -> OperationResult:
        """Install the archive at ``archive_path`` into ``target``."""
        ...
