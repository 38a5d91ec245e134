"""Installed-package state file.

Tracks which packages are installed in a target, one JSON file per target
at ``<root>/<state_dir>/installed.json``.

The file is re-read on every query rather than cached, so the installed set
seen after a commit, uninstall or restore is always rebuilt from disk.

State format (JSON):
{
  "version": "1.0",
  "packages": {
    "example-mod": {
      "id": "example-mod",
      "version": "1.2.0",
      "enabled": true,
      "installed_at": "2026-10-18T12:00:00Z",
      "files": ["BepInEx/plugins/example-mod/Example.dll"],
      ...
    }
  }
}
"""

import json
import logging
import os
import tempfile
from pathlib import Path

from pydantic import ValidationError

from .exceptions import PackageStateError
from .models import InstalledPackageRecord
from .models import TargetInstallation

logger = logging.getLogger(__name__)

STATE_FILE_NAME = "installed.json"


class InstalledPackageState:
    """
    JSON-backed installed-package store (implements InstalledPackageStore).

    Apps may substitute any other store (database, launcher profile); the
    services only rely on the protocol.
    """

    VERSION = "1.0"

    def __init__(self, state_dir: str = ".modsafe"):
        """Initialize store with the state directory name relative to each target root.

        Example:
            >>> state = InstalledPackageState(state_dir=".modsafe")
            >>> records = await state.list_installed(target)
        """
        self.state_dir = state_dir

    def state_path(self, target: TargetInstallation) -> Path:
        return target.root / self.state_dir / STATE_FILE_NAME

    def _load(self, target: TargetInstallation) -> dict[str, InstalledPackageRecord]:
        path = self.state_path(target)
        if not path.exists():
            return {}

        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise PackageStateError(f"Failed to read state file {path}: {e}", context={"path": str(path)}) from e

        if data.get("version") != self.VERSION:
            logger.warning(f"State file version mismatch: expected {self.VERSION}, got {data.get('version')}")

        try:
            packages = {
                package_id: InstalledPackageRecord.model_validate(entry)
                for package_id, entry in data.get("packages", {}).items()
            }
        except ValidationError as e:
            raise PackageStateError(f"Corrupt state file {path}: {e}", context={"path": str(path)}) from e

        logger.debug(f"Loaded {len(packages)} installed packages from {path}")
        return packages

    def _save(self, target: TargetInstallation, packages: dict[str, InstalledPackageRecord]) -> None:
        path = self.state_path(target)
        path.parent.mkdir(parents=True, exist_ok=True)

        data = {
            "version": self.VERSION,
            "packages": {package_id: record.model_dump(mode="json") for package_id, record in packages.items()},
        }

        # Write-then-rename so a crash never leaves a truncated state file
        fd, tmp_name = tempfile.mkstemp(prefix=".installed-", suffix=".tmp", dir=path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        logger.debug(f"Saved state file with {len(packages)} packages")

    async def list_installed(self, target: TargetInstallation) -> list[InstalledPackageRecord]:
        """List all installed package records for ``target``."""
        return list(self._load(target).values())

    async def get_record(self, target: TargetInstallation, package_id: str) -> InstalledPackageRecord | None:
        """Get the record for ``package_id`` (case-insensitive), or None."""
        wanted = package_id.lower()
        for record in self._load(target).values():
            if record.id.lower() == wanted:
                return record
        return None

    async def is_installed(self, target: TargetInstallation, package_id: str) -> bool:
        return await self.get_record(target, package_id) is not None

    async def save_record(self, target: TargetInstallation, record: InstalledPackageRecord) -> None:
        """Add or update a package record."""
        packages = self._load(target)
        packages[record.id] = record
        self._save(target, packages)
        logger.debug(f"Recorded {record.id} {record.version}")

    async def remove_record(self, target: TargetInstallation, package_id: str) -> None:
        """Remove a package record."""
        packages = self._load(target)
        if package_id in packages:
            del packages[package_id]
            self._save(target, packages)
            logger.debug(f"Removed {package_id} from state file")

    async def replace_all(self, target: TargetInstallation, records: list[InstalledPackageRecord]) -> None:
        """Replace the installed set wholesale."""
        self._save(target, {record.id: record for record in records})
        logger.debug(f"Replaced installed set with {len(records)} records")
