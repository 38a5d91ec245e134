"""Package and loader installation flows.

``ModInstaller`` wires the services together. Every mutating flow runs in
the same order:

    permission check -> extract / parse -> checksum / signature -> resolve
    -> conflicts -> backup -> stage / validate / commit -> record -> cleanup

Apps decide WHERE things live (target, settings) and WHERE dependency
archives come from (``PackageSourceProtocol``); the installer is mechanism.
"""

import logging
import os
import shutil
import tempfile
from pathlib import Path

from .archive import ExtractedPackage
from .archive import extract_archive
from .archive import open_package_async
from .archive import plan_payload
from .backup import BackupManager
from .config import InstallerSettings
from .conflicts import ConflictDetectionService
from .conflicts import candidate_record
from .exceptions import ModSafeError
from .linking import CopyStrategy
from .models import ConflictKind
from .models import ConflictSeverity
from .models import FileSignature
from .models import InstalledPackageRecord
from .models import OperationResult
from .models import RestorePoint
from .models import TargetInstallation
from .operations import on_disk_path
from .operations import run_stage
from .operations import set_package_enabled
from .operations import without_file
from .permissions import PermissionsService
from .protocols import InstalledPackageStore
from .protocols import PackageSourceProtocol
from .protocols import ProgressCallback
from .protocols import noop_progress
from .resolver import DependencyResolver
from .schema import DependencySpec
from .schema import PackageDescriptor
from .stager import InstallationStager
from .state import InstalledPackageState
from .utils import ownership_key
from .utils import slug
from .utils import target_key
from .verification import VerificationService
from .versioning import compare_versions

logger = logging.getLogger(__name__)


class ModInstaller:
    """
    Install, update, toggle and remove packages and the plugin loader.

    Implements ``PackageInstallerProtocol`` (``install_archive``) so the
    resolver can install missing dependencies through the same flow.

    Every collaborator can be injected; defaults are built from ``settings``.

    Example:
        >>> installer = ModInstaller(settings=InstallerSettings())
        >>> target = TargetInstallation(root=Path("/games/Example"), loader_version="5.4.21")
        >>> result = await installer.install_package(Path("example-mod.zip"), target)
    """

    def __init__(
        self,
        settings: InstallerSettings | None = None,
        store: InstalledPackageStore | None = None,
        package_source: PackageSourceProtocol | None = None,
        verification: VerificationService | None = None,
        permissions: PermissionsService | None = None,
        resolver: DependencyResolver | None = None,
        stager: InstallationStager | None = None,
        backups: BackupManager | None = None,
        conflicts: ConflictDetectionService | None = None,
    ):
        self.settings = settings or InstallerSettings()
        self.store = store or InstalledPackageState(self.settings.state_dir)
        self.verification = verification or VerificationService()
        self.permissions = permissions or PermissionsService()
        self.resolver = resolver or DependencyResolver(
            self.store,
            package_source=package_source,
            installer=self,
            loader_id=self.settings.loader_id,
            loader_package_ids=self.settings.loader_package_ids,
        )
        self.stager = stager or InstallationStager(self.verification, self.resolver, self.settings)
        self.backups = backups or BackupManager(self.store, self.settings, self.stager)
        self.conflicts = conflicts or ConflictDetectionService(
            self.store,
            store=self.store,
            stager=self.stager,
            backup_manager=self.backups,
            resolver=self.resolver,
            loader_id=self.settings.loader_id,
            loader_package_ids=self.settings.loader_package_ids,
        )

    # --- Helpers ---

    async def _check_access(self, operation: str, target: TargetInstallation) -> OperationResult | None:
        """Failure result when ``operation`` cannot proceed without elevation, else None."""
        if not target.root.is_dir():
            return OperationResult.fail(f"Target directory does not exist: {target.root}", message="Invalid target")
        if not await self.permissions.requires_elevation(operation, target):
            return None
        permissions = await self.permissions.check_permissions(target)
        if permissions.is_elevated and permissions.can_write:
            return None
        return OperationResult.fail(
            permissions.elevation_reason or f"{operation} requires elevated permissions",
            message="Elevation required",
        )

    async def _record(self, target: TargetInstallation, package_id: str) -> InstalledPackageRecord | None:
        wanted = package_id.lower()
        for record in await self.store.list_installed(target):
            if record.id.lower() == wanted:
                return record
        return None

    async def _backup(self, target: TargetInstallation, operation: str) -> tuple[RestorePoint | None, str | None]:
        if not self.settings.backup_before_install:
            return None, None
        result = await self.backups.create_automatic_backup(target, operation)
        if not result.success:
            return None, result.error or "backup failed"
        return result.data, None

    def _package_cache(self, target: TargetInstallation) -> Path:
        """Extracted packages that a linked install into ``target`` points at."""
        return self.settings.data_dir / "packages" / target_key(target.root, target.name)

    def _work_dir(self, target: TargetInstallation) -> Path:
        """Temporary extraction directory (inside the package cache for linked installs)."""
        if self.settings.link_strategy == "copy":
            return Path(tempfile.mkdtemp(prefix="modsafe_pkg_"))
        cache = self._package_cache(target)
        cache.mkdir(parents=True, exist_ok=True)
        return Path(tempfile.mkdtemp(prefix=".extract_", dir=cache))

    def _keep_extracted(
        self, package: ExtractedPackage, work_dir: Path, target: TargetInstallation
    ) -> tuple[ExtractedPackage, Path | None]:
        """
        Move a linked install's files to ``<cache>/<id>/<version>`` so links outlive the operation.

        An existing directory for the same id and version is reused, since
        files already installed may link into it.

        Returns:
            The package re-rooted in the cache, and the directory if this call created it
        """
        descriptor = package.descriptor
        kept = self._package_cache(target) / slug(descriptor.id, "package") / slug(descriptor.version, "0")
        created = None
        if not kept.exists():
            kept.parent.mkdir(parents=True, exist_ok=True)
            os.replace(work_dir, kept)
            created = kept
        payload = [(kept / source.relative_to(work_dir), relative) for source, relative in package.payload]
        root = kept / package.root.relative_to(work_dir)
        return ExtractedPackage(root=root, descriptor=descriptor, payload=payload), created

    def _drop_extracted(self, target: TargetInstallation, package_id: str, version: str | None = None) -> None:
        """Remove cached extractions of a package (one version, or all of them)."""
        cached = self._package_cache(target) / slug(package_id, "package")
        if version is not None:
            cached = cached / slug(version, "0")
        if cached.exists():
            shutil.rmtree(cached, ignore_errors=True)
            logger.debug(f"Removed cached package files {cached}")

    @staticmethod
    def _failure(result: OperationResult, restore_point: RestorePoint | None, message: str) -> OperationResult:
        indeterminate = result.data if isinstance(result.data, list) else []
        error = result.error or "operation failed"
        if indeterminate:
            error += f"; files left indeterminate: {', '.join(indeterminate)}"
        if restore_point is not None:
            error += f"; restore point: {restore_point.backup_path}"
        return OperationResult.fail(
            error,
            message=message,
            data={"indeterminate": indeterminate, "restore_point": restore_point},
        )

    # --- Packages ---

    async def install_archive(self, archive_path: Path, target: TargetInstallation) -> OperationResult:
        """Install a dependency archive (``PackageInstallerProtocol``)."""
        return await self.install_package(archive_path, target)

    async def install_package(
        self,
        archive: Path,
        target: TargetInstallation,
        expected_checksum: str | None = None,
        signature: FileSignature | None = None,
        install_dependencies: bool = False,
        accept_conflicts: bool = False,
        override_critical: bool = False,
        force: bool | None = None,
        progress: ProgressCallback | None = None,
    ) -> OperationResult:
        """
        Install (or update) a package archive into ``target``.

        Args:
            archive: Package zip with a manifest.json
            target: Target installation
            expected_checksum: Digest of the archive published by the catalog
            signature: Publisher signature of the archive
            install_dependencies: Install missing dependencies through the package source
            accept_conflicts: Proceed despite non-critical conflicts
            override_critical: Proceed despite critical conflicts
            force: Reinstall the same or an older version (defaults to settings.force_reinstall)
            progress: Optional progress callback

        Returns:
            OperationResult whose data is the InstalledPackageRecord
        """
        return await self._install(
            Path(archive),
            target,
            update_only=False,
            expected_checksum=expected_checksum,
            signature=signature,
            install_dependencies=install_dependencies,
            accept_conflicts=accept_conflicts,
            override_critical=override_critical,
            force=self.settings.force_reinstall if force is None else force,
            progress=progress or noop_progress,
        )

    async def update_package(
        self,
        archive: Path,
        target: TargetInstallation,
        expected_checksum: str | None = None,
        signature: FileSignature | None = None,
        install_dependencies: bool = False,
        accept_conflicts: bool = False,
        override_critical: bool = False,
        progress: ProgressCallback | None = None,
    ) -> OperationResult:
        """Update an installed package to the (newer) version in ``archive``."""
        return await self._install(
            Path(archive),
            target,
            update_only=True,
            expected_checksum=expected_checksum,
            signature=signature,
            install_dependencies=install_dependencies,
            accept_conflicts=accept_conflicts,
            override_critical=override_critical,
            force=False,
            progress=progress or noop_progress,
        )

    async def _verify_archive(
        self, archive: Path, expected_checksum: str | None, signature: FileSignature | None
    ) -> OperationResult | None:
        if expected_checksum and self.settings.verify_checksums:
            check = await self.verification.verify_checksum(archive, expected_checksum, self.settings.checksum_algorithm)
            if not check.passed:
                return OperationResult.fail(check.details, message=check.message)
        if signature is not None and self.settings.verify_signatures:
            check = await self.verification.verify_signature(archive, signature)
            if not check.passed:
                return OperationResult.fail(check.details, message=check.message)
        return None

    async def _resolve(
        self, descriptor: PackageDescriptor, target: TargetInstallation, install_dependencies: bool
    ) -> OperationResult | None:
        resolution = await self.resolver.resolve_dependencies(descriptor, target)
        if not resolution.loader_compatible:
            return OperationResult.fail(
                f"{descriptor.id} requires loader {resolution.required_loader_version}, "
                f"found {resolution.loader_version or 'none'}",
                message="Loader incompatible",
                data=resolution,
            )
        if resolution.conflicts:
            return OperationResult.fail(
                "; ".join(c.description for c in resolution.conflicts),
                message="Dependency conflicts",
                data=resolution,
            )
        if resolution.missing:
            if not install_dependencies:
                return OperationResult.fail(
                    f"Missing dependencies: {', '.join(str(d) for d in resolution.missing)}",
                    message="Dependencies not satisfied",
                    data=resolution,
                )
            installed = await self.resolver.install_missing_dependencies(resolution, target)
            if not installed.success:
                return installed
            resolution = await self.resolver.resolve_dependencies(descriptor, target)
            if not resolution.is_valid:
                return OperationResult.fail(
                    f"Dependencies still unsatisfied: {', '.join(str(d) for d in resolution.missing)}",
                    message="Dependencies not satisfied",
                    data=resolution,
                )
        return None

    async def _install(
        self,
        archive: Path,
        target: TargetInstallation,
        update_only: bool,
        expected_checksum: str | None,
        signature: FileSignature | None,
        install_dependencies: bool,
        accept_conflicts: bool,
        override_critical: bool,
        force: bool,
        progress: ProgressCallback,
    ) -> OperationResult:
        if denied := await self._check_access("install-package", target):
            return denied

        progress("verify", f"Verifying {archive.name}", 0)
        if failed := await self._verify_archive(archive, expected_checksum, signature):
            return failed

        work_dir = self._work_dir(target)
        created = None
        try:
            try:
                package: ExtractedPackage = await open_package_async(archive, work_dir, target)
            except ModSafeError as e:
                return OperationResult.fail(e.message, message="Invalid package archive")
            descriptor = package.descriptor
            logger.info(f"Installing {descriptor.id} {descriptor.version} into {target.root}")

            existing = await self._record(target, descriptor.id)
            if existing is not None and existing.is_loader:
                return OperationResult.fail(f"{descriptor.id} is the plugin loader; use install_loader")
            if update_only and existing is None:
                return OperationResult.fail(f"{descriptor.id} is not installed", message="Nothing to update")
            if existing is not None and not force:
                order = compare_versions(descriptor.version, existing.version)
                if order == 0:
                    return OperationResult.ok(f"{descriptor.id} {existing.version} is already installed", data=existing)
                if order < 0:
                    return OperationResult.fail(
                        f"{descriptor.id} {existing.version} is newer than {descriptor.version}",
                        message="Newer version installed",
                    )

            progress("resolve", f"Resolving dependencies of {descriptor.id}", 10)
            if failed := await self._resolve(descriptor, target, install_dependencies):
                return failed

            relative_files = [relative for _, relative in package.payload]
            progress("conflicts", "Checking for conflicts", 20)
            conflicts = await self.conflicts.detect_conflicts(target, candidate_record(descriptor, relative_files))
            # Same id is this install's own update, not a conflict
            conflicts = [c for c in conflicts if c.kind != ConflictKind.VERSION]
            critical = [c for c in conflicts if c.severity == ConflictSeverity.CRITICAL]
            blocking = [c for c in conflicts if c.severity in (ConflictSeverity.WARNING, ConflictSeverity.ERROR)]
            if critical and not override_critical:
                return OperationResult.fail(
                    "; ".join(c.description for c in critical), message="Critical conflicts", data=conflicts
                )
            if blocking and not accept_conflicts:
                return OperationResult.fail(
                    "; ".join(c.description for c in blocking), message="Conflicts detected", data=conflicts
                )

            progress("backup", "Creating restore point", 30)
            restore_point, backup_error = await self._backup(target, f"install_{descriptor.id}")
            if backup_error:
                return OperationResult.fail(backup_error, message="Could not create a restore point; nothing was changed")

            if self.settings.link_strategy != "copy":
                package, created = self._keep_extracted(package, work_dir, target)

            stale = []
            if existing is not None:
                new_keys = {ownership_key(r) for r in relative_files}
                stale = [on_disk_path(existing, f) for f in existing.files if ownership_key(f) not in new_keys]
                if not existing.enabled:
                    # Replacing a disabled copy: drop its renamed files
                    stale += [on_disk_path(existing, f) for f in existing.files if ownership_key(f) in new_keys]

            progress("install", f"Installing {len(relative_files)} files", 40)
            result = await run_stage(
                self.stager, target, files=package.payload, removals=stale, package=descriptor, progress=progress
            )
            if not result.success:
                logger.warning(f"Install of {descriptor.id} failed: {result.error}")
                if created is not None:
                    shutil.rmtree(created, ignore_errors=True)
                return self._failure(result, restore_point, "Package installation failed")

            record = InstalledPackageRecord(
                id=descriptor.id,
                version=descriptor.version,
                name=descriptor.name,
                files=relative_files,
                dependencies=[str(d) for d in descriptor.dependencies],
                conflicts=list(descriptor.conflicts),
                load_before=list(descriptor.load_before),
                load_after=list(descriptor.load_after),
            )
            await self.store.save_record(target, record)
            if existing is not None and existing.version != descriptor.version:
                self._drop_extracted(target, existing.id, existing.version)

            # Overwritten files now belong to this package
            for conflict in conflicts:
                if conflict.kind != ConflictKind.FILE:
                    continue
                for owner_id in conflict.participants:
                    if owner_id.lower() == descriptor.id.lower():
                        continue
                    owner = await self._record(target, owner_id)
                    if owner is not None:
                        await self.store.save_record(target, without_file(owner, conflict.files[0]))

            progress("done", f"Installed {descriptor.id} {descriptor.version}", 100)
            logger.info(f"Successfully installed {descriptor.id} {descriptor.version}")
            return OperationResult.ok(f"Installed {descriptor.id} {descriptor.version}", data=record)
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)

    async def uninstall_package(
        self, package_id: str, target: TargetInstallation, force: bool = False
    ) -> OperationResult:
        """
        Remove a package's files and record.

        Refuses while other enabled packages depend on it unless ``force``.
        """
        if denied := await self._check_access("uninstall-package", target):
            return denied

        record = await self._record(target, package_id)
        if record is None:
            return OperationResult.fail(f"{package_id} is not installed", message="Package not found")
        if record.is_loader:
            return OperationResult.fail(f"{package_id} is the plugin loader; use uninstall_loader")

        if not force:
            dependents = []
            for other in await self.store.list_installed(target):
                if other.id == record.id or not other.enabled:
                    continue
                if any(DependencySpec.parse(d).id.lower() == record.id.lower() for d in other.dependencies):
                    dependents.append(other.id)
            if dependents:
                return OperationResult.fail(
                    f"Required by: {', '.join(dependents)}", message=f"{record.id} is still needed", data=dependents
                )

        restore_point, backup_error = await self._backup(target, f"uninstall_{record.id}")
        if backup_error:
            return OperationResult.fail(backup_error, message="Could not create a restore point; nothing was changed")

        removals = [on_disk_path(record, f) for f in record.files]
        result = await run_stage(self.stager, target, removals=removals)
        if not result.success:
            return self._failure(result, restore_point, "Package uninstall failed")

        await self.store.remove_record(target, record.id)
        self._drop_extracted(target, record.id)
        logger.info(f"Uninstalled {record.id} {record.version}")
        return OperationResult.ok(f"Uninstalled {record.id}", data=record)

    async def _toggle(self, package_id: str, target: TargetInstallation, enabled: bool) -> OperationResult:
        if denied := await self._check_access("install-package", target):
            return denied
        record = await self._record(target, package_id)
        if record is None:
            return OperationResult.fail(f"{package_id} is not installed", message="Package not found")
        if record.is_loader:
            return OperationResult.fail("The plugin loader cannot be enabled or disabled")
        return await set_package_enabled(self.stager, self.store, target, record, enabled)

    async def enable_package(self, package_id: str, target: TargetInstallation) -> OperationResult:
        """Re-enable a disabled package (renames its files back from ``.disabled``)."""
        return await self._toggle(package_id, target, True)

    async def disable_package(self, package_id: str, target: TargetInstallation) -> OperationResult:
        """Disable a package without deleting files (renames them to ``.disabled``)."""
        return await self._toggle(package_id, target, False)

    # --- Loader ---

    @staticmethod
    def _loader_root(work_dir: Path, target: TargetInstallation) -> Path:
        """Unwrap a single top-level directory unless it is the loader directory itself."""
        entries = [p for p in work_dir.iterdir() if not p.name.startswith("__MACOSX")]
        if len(entries) == 1 and entries[0].is_dir() and entries[0].name.lower() != target.loader_dir.lower():
            return entries[0]
        return work_dir

    async def install_loader(
        self,
        archive: Path,
        target: TargetInstallation,
        version: str,
        expected_checksum: str | None = None,
        progress: ProgressCallback | None = None,
    ) -> OperationResult:
        """
        Install or replace the plugin loader from its release archive.

        The archive is laid out as it lands in the target (``BepInEx/``,
        ``winhttp.dll``, ``doorstop_config.ini``, ...).

        Returns:
            OperationResult whose data is the loader's InstalledPackageRecord
        """
        archive = Path(archive)
        progress = progress or noop_progress
        if denied := await self._check_access("install-loader", target):
            return denied
        if failed := await self._verify_archive(archive, expected_checksum, None):
            return failed

        loader_id = self.settings.loader_id
        work_dir = Path(tempfile.mkdtemp(prefix="modsafe_loader_"))
        try:
            try:
                descriptor = PackageDescriptor(id=loader_id, version=version, name=loader_id)
                extract_archive(archive, work_dir)
                payload = plan_payload(self._loader_root(work_dir, target), descriptor, target, verbatim=True)
            except (ModSafeError, ValueError) as e:
                return OperationResult.fail(str(e), message="Invalid loader archive")
            if not payload:
                return OperationResult.fail(f"{archive.name} is empty", message="Invalid loader archive")

            restore_point, backup_error = await self._backup(target, "install_loader")
            if backup_error:
                return OperationResult.fail(backup_error, message="Could not create a restore point; nothing was changed")

            relative_files = [relative for _, relative in payload]
            existing = await self._record(target, loader_id)
            stale = []
            if existing is not None:
                new_keys = {ownership_key(r) for r in relative_files}
                stale = [f for f in existing.files if ownership_key(f) not in new_keys]

            progress("install", f"Installing {loader_id} {version}", 20)
            # The extraction directory is temporary, so the loader is always copied
            result = await run_stage(
                self.stager, target, files=payload, removals=stale, progress=progress, link_strategy=CopyStrategy()
            )
            if not result.success:
                return self._failure(result, restore_point, "Loader installation failed")

            record = InstalledPackageRecord(
                id=loader_id, version=version, name=loader_id, files=relative_files, is_loader=True
            )
            await self.store.save_record(target, record)
            logger.info(f"Installed {loader_id} {version} into {target.root}")
            return OperationResult.ok(f"Installed {loader_id} {version}", data=record)
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)

    async def uninstall_loader(self, target: TargetInstallation, force: bool = False) -> OperationResult:
        """
        Remove the plugin loader's files and record.

        Refuses while packages are installed unless ``force``.
        """
        if denied := await self._check_access("uninstall-loader", target):
            return denied

        installed = await self.store.list_installed(target)
        loader = next((r for r in installed if r.is_loader), None)
        if loader is None:
            return OperationResult.fail("No plugin loader is installed", message="Loader not found")
        packages = [r.id for r in installed if not r.is_loader]
        if packages and not force:
            return OperationResult.fail(
                f"Installed packages need the loader: {', '.join(packages)}",
                message="Loader still in use",
                data=packages,
            )

        restore_point, backup_error = await self._backup(target, "uninstall_loader")
        if backup_error:
            return OperationResult.fail(backup_error, message="Could not create a restore point; nothing was changed")

        result = await run_stage(self.stager, target, removals=list(loader.files))
        if not result.success:
            return self._failure(result, restore_point, "Loader uninstall failed")

        await self.store.remove_record(target, loader.id)
        logger.info(f"Uninstalled {loader.id} {loader.version}")
        return OperationResult.ok(f"Uninstalled {loader.id}", data=loader)
