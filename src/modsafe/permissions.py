"""Write-capability and elevation checks for a target directory.

Results are computed on every call from real test writes; nothing is
cached, since permissions can change between operations. Requesting
elevation (relaunching the process) is left to the application.
"""

import ctypes
import logging
import os
import sys
import tempfile
import uuid
from pathlib import Path

from .models import TargetInstallation
from .models import UserPermissions

logger = logging.getLogger(__name__)

_WINDOWS_PROTECTED = (
    "c:/program files/",
    "c:/program files (x86)/",
    "c:/windows/",
)
_POSIX_PROTECTED = ("/usr/", "/opt/", "/bin/", "/sbin/", "/etc/", "/system/", "/library/")


def _windows_protected_roots() -> tuple[str, ...]:
    roots = list(_WINDOWS_PROTECTED)
    for var in ("ProgramFiles", "ProgramFiles(x86)", "SystemRoot"):
        if value := os.environ.get(var):
            roots.append(value.replace("\\", "/").rstrip("/").lower() + "/")
    return tuple(roots)


def is_elevated() -> bool:
    """True when the current process runs as root / Administrator."""
    if os.name == "nt":
        try:
            return bool(ctypes.windll.shell32.IsUserAnAdmin())
        except (AttributeError, OSError):
            return False
    return os.geteuid() == 0


def _nearest_existing(path: Path) -> Path | None:
    for candidate in (path, *path.parents):
        if candidate.is_dir():
            return candidate
    return None


def _try_write(directory: Path) -> bool:
    marker = directory / f".modsafe_write_test_{uuid.uuid4().hex}"
    try:
        marker.write_bytes(b"modsafe")
        marker.unlink()
        return True
    except OSError as e:
        logger.debug(f"Write check failed in {directory}: {e}")
        return False


class PermissionsService:
    """Answers "can we write here, and does this operation need elevation?"."""

    # Operation -> which capability it needs
    OPERATIONS = {
        "install-loader": "write",
        "uninstall-loader": "write",
        "install-package": "write",
        "uninstall-package": "write",
        "create-backup": "write",
        "restore-backup": "write",
        "create-system-files": "system",
    }

    def is_protected_location(self, path: Path | str) -> bool:
        """True for OS-managed install locations (Program Files, /usr, /opt, ...)."""
        text = str(Path(path).absolute()).replace("\\", "/").lower().rstrip("/") + "/"
        if os.name == "nt" or sys.platform == "win32":
            return text.startswith(_windows_protected_roots())
        return text.startswith(_POSIX_PROTECTED)

    def _can_create_system_files(self) -> bool:
        if os.name == "nt":
            system_dir = Path(os.environ.get("SystemRoot", "C:/Windows")) / "System32"
            return _try_write(system_dir)
        return _try_write(Path(tempfile.gettempdir()))

    async def check_permissions(self, target: TargetInstallation) -> UserPermissions:
        """
        Probe write access to the target root.

        When the root does not exist yet, the nearest existing ancestor is
        checked instead (the directory would be created there).

        Args:
            target: Target installation

        Returns:
            UserPermissions snapshot for this call
        """
        elevated = is_elevated()
        nearest = _nearest_existing(target.root)
        can_write = nearest is not None and _try_write(nearest)
        can_system = self._can_create_system_files()
        protected = self.is_protected_location(target.root)

        reasons = []
        if not can_write:
            reasons.append("Cannot write to target directory")
        if not can_system:
            reasons.append("Cannot create system files")
        if protected and not elevated:
            reasons.append("Target is installed in a protected location")

        permissions = UserPermissions(
            is_elevated=elevated,
            can_write=can_write,
            can_create_system_files=can_system,
            requires_elevation=bool(reasons),
            elevation_reason=", ".join(reasons) or None,
        )
        logger.debug(f"Permissions for {target.root}: {permissions}")
        return permissions

    async def requires_elevation(self, operation: str, target: TargetInstallation) -> bool:
        """
        Decide whether ``operation`` on ``target`` needs elevated rights.

        Protected locations always require elevation. Otherwise known
        operations need only the capability they touch; unknown operations
        fall back to the overall permission verdict.
        """
        if self.is_protected_location(target.root):
            return True

        permissions = await self.check_permissions(target)
        capability = self.OPERATIONS.get(operation.strip().lower())
        if capability == "write":
            return not permissions.can_write
        if capability == "system":
            return not permissions.can_create_system_files
        return permissions.requires_elevation
