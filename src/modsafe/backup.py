"""Backups and restore points.

A backup is a single zip stored outside the target:

    backup_manifest.json    RestorePoint metadata, installed package records, file list
    files/<relative path>   loader directory and every file owned by an installed package

The archive is self-contained: restoring needs nothing from the live target,
so it can be applied to an empty directory to rebuild the same installed set.
"""

import asyncio
import json
import logging
import os
import shutil
import tempfile
import threading
import uuid
import zipfile
from datetime import UTC
from datetime import datetime
from datetime import timedelta
from pathlib import Path

from pydantic import ValidationError

from .archive import extract_archive
from .config import InstallerSettings
from .exceptions import ModSafeError
from .linking import CopyStrategy
from .models import InstalledPackageRecord
from .models import OperationResult
from .models import RestorePoint
from .models import TargetInstallation
from .operations import on_disk_path
from .operations import run_stage
from .protocols import InstalledPackageStore
from .protocols import ProgressCallback
from .protocols import noop_progress
from .stager import InstallationStager
from .utils import iter_files
from .utils import normalize_relative_path
from .utils import ownership_key
from .utils import slug
from .utils import target_key

logger = logging.getLogger(__name__)

BACKUP_MANIFEST_FILE_NAME = "backup_manifest.json"
FILES_PREFIX = "files/"
AUTOMATIC_PREFIX = "auto_"


class BackupCancelled(Exception):
    pass


def _write_archive(
    destination: Path,
    manifest: dict,
    files: list[tuple[Path, str]],
    cancelled: threading.Event,
    progress: ProgressCallback,
) -> list[str]:
    """Write the backup zip; returns files skipped because they could not be read.

    Modification times outside the zip range (before 1980) are clamped.
    """
    skipped = []
    try:
        with zipfile.ZipFile(destination, "w", compression=zipfile.ZIP_DEFLATED, strict_timestamps=False) as zf:
            for index, (source, relative) in enumerate(files):
                if cancelled.is_set():
                    raise BackupCancelled()
                try:
                    zf.write(source, arcname=FILES_PREFIX + relative)
                except OSError as e:
                    logger.warning(f"Skipping unreadable file in backup: {relative} ({e})")
                    skipped.append(relative)
                progress("backup", f"Archived {relative}", int((index + 1) * 100 / max(len(files), 1)))

            manifest["skipped_files"] = skipped
            manifest["files"] = [r for _, r in files if r not in skipped]
            zf.writestr(BACKUP_MANIFEST_FILE_NAME, json.dumps(manifest, indent=2))
    except BaseException:
        destination.unlink(missing_ok=True)
        raise
    return skipped


def read_restore_point(backup_path: Path) -> RestorePoint | None:
    """Read the restore point metadata of a backup archive (None if not a valid backup)."""
    try:
        with zipfile.ZipFile(backup_path, "r") as zf:
            data = json.loads(zf.read(BACKUP_MANIFEST_FILE_NAME))
    except (OSError, KeyError, zipfile.BadZipFile, json.JSONDecodeError) as e:
        logger.debug(f"Not a readable backup: {backup_path} ({e})")
        return None

    data["backup_path"] = str(backup_path)
    try:
        point = RestorePoint.model_validate(data)
    except ValidationError as e:
        logger.warning(f"Invalid backup manifest in {backup_path}: {e}")
        return None
    return point.model_copy(update={"size": backup_path.stat().st_size})


class BackupManager:
    """
    Create, list, restore and prune backups of a target.

    Args:
        store: Installed-package store (records are snapshotted and restored)
        settings: Installer settings (backup_dir, retention limits)
        stager: Stager used to apply restores (created from settings if omitted)
    """

    def __init__(
        self,
        store: InstalledPackageStore,
        settings: InstallerSettings | None = None,
        stager: InstallationStager | None = None,
    ):
        self.store = store
        self.settings = settings or InstallerSettings()
        self.stager = stager or InstallationStager(settings=self.settings)

    # --- Locations ---

    @staticmethod
    def _target_key(target: TargetInstallation) -> str:
        return target_key(target.root, target.name)

    def _fallback_root(self, target: TargetInstallation) -> Path:
        return Path(tempfile.gettempdir()) / "modsafe-backups" / self._target_key(target)

    def _candidate_roots(self, target: TargetInstallation) -> list[Path]:
        return [self.settings.backup_dir / self._target_key(target), self._fallback_root(target)]

    def backup_root(self, target: TargetInstallation) -> Path:
        """
        Directory holding this target's backups.

        The configured backup_dir is used when writable and outside the
        target; otherwise a directory under the system temp location.
        """
        preferred = self.settings.backup_dir / self._target_key(target)
        inside_target = preferred.resolve().is_relative_to(target.root.resolve())
        if not inside_target:
            try:
                preferred.mkdir(parents=True, exist_ok=True)
                marker = preferred / f".write_test_{uuid.uuid4().hex}"
                marker.write_bytes(b"")
                marker.unlink()
                return preferred
            except OSError as e:
                logger.warning(f"Backup directory {preferred} not writable ({e}), using temp location")
        else:
            logger.warning(f"Backup directory {preferred} is inside the target, using temp location")

        fallback = self._fallback_root(target)
        fallback.mkdir(parents=True, exist_ok=True)
        return fallback

    # --- Create ---

    def _collect_files(self, target: TargetInstallation, records: list[InstalledPackageRecord]) -> list[tuple[Path, str]]:
        files: dict[str, tuple[Path, str]] = {}
        loader_root = target.root / target.loader_dir
        for path in iter_files(loader_root):
            relative = path.relative_to(target.root).as_posix()
            files.setdefault(ownership_key(relative), (path, relative))

        for record in records:
            for owned in record.files:
                relative = on_disk_path(record, normalize_relative_path(owned))
                path = target.root / relative
                if path.is_file():
                    files.setdefault(ownership_key(relative), (path, relative))
                else:
                    logger.debug(f"Owned file missing, not backed up: {relative}")
        return sorted(files.values(), key=lambda item: item[1])

    async def create_backup(
        self,
        target: TargetInstallation,
        name: str,
        description: str | None = None,
        tags: list[str] | None = None,
        automatic: bool | None = None,
        progress: ProgressCallback | None = None,
    ) -> OperationResult:
        """
        Snapshot the target's installed packages into a backup archive.

        Unreadable files are skipped and listed in ``skipped_files``; failing
        to write the archive itself is a hard failure. The archive is written
        under a ``.partial`` name and renamed into place when complete.

        Returns:
            OperationResult whose data is the RestorePoint
        """
        progress = progress or noop_progress
        try:
            records = await self.store.list_installed(target)
        except ModSafeError as e:
            return OperationResult.fail(e.message, message="Backup creation failed")

        created = datetime.now(UTC)
        point_id = uuid.uuid4().hex
        point = RestorePoint(
            id=point_id,
            name=name,
            created=created,
            backup_path=Path(),
            description=description or "",
            packages=records,
            loader_version=target.loader_version,
            target_root=str(target.root),
            is_automatic=name.startswith(AUTOMATIC_PREFIX) if automatic is None else automatic,
            tags=tags or [],
        )

        try:
            root = self.backup_root(target)
        except OSError as e:
            return OperationResult.fail(str(e), message="Backup creation failed")

        final_path = root / f"{slug(name)}_{created:%Y%m%d_%H%M%S}_{point_id[:8]}.zip"
        partial_path = final_path.with_name(final_path.name + ".partial")
        files = self._collect_files(target, records)
        manifest = point.model_dump(mode="json", exclude={"backup_path", "size"})

        cancelled = threading.Event()
        writer = asyncio.ensure_future(
            asyncio.to_thread(_write_archive, partial_path, manifest, files, cancelled, progress)
        )
        try:
            skipped = await asyncio.shield(writer)
            os.replace(partial_path, final_path)
        except asyncio.CancelledError:
            cancelled.set()
            # The worker thread may still be writing; let it stop before removing its output
            try:
                await writer
            except (BackupCancelled, OSError) as e:
                logger.debug(f"Backup writer for '{name}' stopped: {e!r}")
            partial_path.unlink(missing_ok=True)
            logger.info(f"Backup '{name}' cancelled")
            raise
        except OSError as e:
            partial_path.unlink(missing_ok=True)
            logger.warning(f"Backup '{name}' failed: {e}")
            return OperationResult.fail(str(e), message="Backup creation failed")

        point = point.model_copy(
            update={"backup_path": final_path, "size": final_path.stat().st_size, "skipped_files": skipped}
        )
        logger.info(f"Created backup '{name}' with {len(files) - len(skipped)} files at {final_path}")
        message = f"Backup '{name}' created"
        if skipped:
            message += f" ({len(skipped)} files skipped)"
        return OperationResult.ok(message, data=point)

    async def create_automatic_backup(self, target: TargetInstallation, operation: str) -> OperationResult:
        """Backup taken before a mutating operation, named ``auto_<operation>``."""
        return await self.create_backup(
            target,
            f"{AUTOMATIC_PREFIX}{slug(operation)}",
            description=f"Automatic backup before {operation}",
            tags=["automatic", operation],
            automatic=True,
        )

    # --- List / delete ---

    async def list_backups(self, target: TargetInstallation) -> list[RestorePoint]:
        """All readable backups of ``target``, newest first."""
        points = []
        for root in self._candidate_roots(target):
            if not root.is_dir():
                continue
            for path in root.glob("*.zip"):
                point = read_restore_point(path)
                if point is not None:
                    points.append(point)
        points.sort(key=lambda p: p.created, reverse=True)
        return points

    async def delete_backup(self, backup_path: Path) -> OperationResult:
        backup_path = Path(backup_path)
        if not backup_path.is_file():
            return OperationResult.fail(f"Backup not found: {backup_path}", message="Backup deletion failed")
        if read_restore_point(backup_path) is None:
            return OperationResult.fail(f"Not a backup archive: {backup_path}", message="Backup deletion failed")
        try:
            backup_path.unlink()
        except OSError as e:
            return OperationResult.fail(str(e), message="Backup deletion failed")
        logger.info(f"Deleted backup {backup_path}")
        return OperationResult.ok(f"Deleted backup {backup_path.name}")

    async def cleanup_backups(
        self,
        target: TargetInstallation,
        max_count: int | None = None,
        max_age: timedelta | None = None,
    ) -> OperationResult:
        """
        Delete old backups, oldest first.

        Keeps at most ``max_count`` backups and drops those older than
        ``max_age``; both default to the configured retention.

        Returns:
            OperationResult whose data is {"deleted": count, "bytes": reclaimed}
        """
        max_count = max_count if max_count is not None else self.settings.max_backups
        max_age = max_age if max_age is not None else self.settings.max_backup_age

        points = await self.list_backups(target)
        now = datetime.now(UTC)
        doomed = []
        for index, point in enumerate(points):
            too_many = max_count is not None and index >= max_count
            too_old = max_age is not None and now - point.created > max_age
            if too_many or too_old:
                doomed.append(point)

        deleted = 0
        reclaimed = 0
        for point in reversed(doomed):
            try:
                point.backup_path.unlink()
            except OSError as e:
                logger.warning(f"Could not delete backup {point.backup_path}: {e}")
                continue
            deleted += 1
            reclaimed += point.size

        if deleted:
            logger.info(f"Removed {deleted} old backups ({reclaimed} bytes)")
        return OperationResult.ok(
            f"Removed {deleted} backups, reclaimed {reclaimed} bytes", data={"deleted": deleted, "bytes": reclaimed}
        )

    # --- Restore ---

    def _check_archive(self, backup_path: Path) -> tuple[RestorePoint | None, str | None]:
        if not backup_path.is_file():
            return None, f"Backup not found: {backup_path}"
        if not zipfile.is_zipfile(backup_path):
            return None, f"Not a zip archive: {backup_path}"
        point = read_restore_point(backup_path)
        if point is None:
            return None, f"Backup manifest missing or invalid: {backup_path}"
        with zipfile.ZipFile(backup_path, "r") as zf:
            bad = zf.testzip()
        if bad is not None:
            return None, f"Corrupt entry in backup: {bad}"
        return point, None

    async def restore_backup(
        self,
        backup_path: Path,
        target: TargetInstallation,
        pre_restore_backup: bool = True,
        progress: ProgressCallback | None = None,
    ) -> OperationResult:
        """
        Restore a backup into ``target``.

        The archive is checked first, then (optionally) the current state is
        backed up. Files are restored through one stage, which also removes
        files owned by currently installed packages that the backup does not
        contain. The installed records are rewritten last.

        Returns:
            OperationResult whose data is the restored RestorePoint
        """
        backup_path = Path(backup_path)
        point, problem = await asyncio.to_thread(self._check_archive, backup_path)
        if point is None:
            return OperationResult.fail(problem, message="Backup restore failed")

        if pre_restore_backup:
            safety = await self.create_automatic_backup(target, "restore")
            if not safety.success:
                return OperationResult.fail(
                    safety.error or "pre-restore backup failed",
                    message="Could not back up current state; nothing was restored",
                )

        target.root.mkdir(parents=True, exist_ok=True)
        work_dir = Path(tempfile.mkdtemp(prefix="modsafe_restore_"))
        try:
            await asyncio.to_thread(extract_archive, backup_path, work_dir)
            files_root = work_dir / FILES_PREFIX.rstrip("/")
            files = [(path, path.relative_to(files_root).as_posix()) for path in iter_files(files_root)]
            restored = {ownership_key(rel) for _, rel in files}

            current = await self.store.list_installed(target)
            stale = []
            for record in current:
                for owned in record.files:
                    relative = on_disk_path(record, owned)
                    if ownership_key(relative) not in restored and (target.root / relative).is_file():
                        stale.append(relative)

            if files or stale:
                result = await run_stage(
                    self.stager,
                    target,
                    files=files,
                    removals=stale,
                    progress=progress,
                    link_strategy=CopyStrategy(),
                )
                if not result.success:
                    return OperationResult.fail(result.error or "restore failed", message="Backup restore failed")

            await self.store.replace_all(target, point.packages)
        except ModSafeError as e:
            return OperationResult.fail(e.message, message="Backup restore failed")
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)

        logger.info(f"Restored backup '{point.name}' into {target.root} ({len(point.packages)} packages)")
        return OperationResult.ok(f"Backup '{point.name}' restored successfully", data=point)
