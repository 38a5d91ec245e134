"""Dependency resolver - check a package's requirements against a target.

The installed set always comes from the injected ``InstalledPackageSource``
(or an explicit list), never from scanning the filesystem. Resolution is a
presence-and-compatibility check; there is no multi-version solving.

Per dependency:
- absent -> missing (optional dependencies are skipped)
- more than one installed version of the id -> version_mismatch conflict
- present but disabled, or constraint unsatisfied -> missing, with installed_version noted
- installed dependency that itself depends on the package -> circular conflict
- otherwise -> resolved

Dependencies naming the plugin loader (its id or one of the configured loader
package ids, matched exactly) are not looked up as packages; they contribute
the loader requirement checked against ``target.loader_version``.
"""

import logging
from collections import defaultdict
from collections.abc import Iterable

from .exceptions import PackageManifestError
from .models import DependencyConflict
from .models import DependencyConflictKind
from .models import InstalledPackageRecord
from .models import OperationResult
from .models import TargetInstallation
from .protocols import InstalledPackageSource
from .protocols import PackageInstallerProtocol
from .protocols import PackageSourceProtocol
from .schema import DependencyResolution
from .schema import DependencySpec
from .schema import PackageDescriptor
from .versioning import satisfies

logger = logging.getLogger(__name__)


class DependencyResolver:
    """
    Resolve package dependencies against the installed set of a target.

    Apps inject the installed-package source and, for installing missing
    dependencies, a package source and an installer.
    """

    def __init__(
        self,
        installed_source: InstalledPackageSource,
        package_source: PackageSourceProtocol | None = None,
        installer: PackageInstallerProtocol | None = None,
        loader_id: str = "BepInEx",
        loader_package_ids: Iterable[str] = ("BepInEx-BepInExPack",),
    ):
        self.installed_source = installed_source
        self.package_source = package_source
        self.installer = installer
        self.loader_id = loader_id
        self.loader_ids = frozenset(i.lower() for i in (loader_id, *loader_package_ids))

    def is_loader_dependency(self, dependency: DependencySpec) -> bool:
        # Exact ids only: plugins such as "Owner-BepInEx_ConfigurationManager" are packages
        return dependency.id.lower() in self.loader_ids

    def required_loader_version(self, package: PackageDescriptor) -> str | None:
        """Loader range declared by the package, directly or as a loader dependency."""
        if package.loader_version:
            return package.loader_version
        for dependency in package.dependencies:
            if self.is_loader_dependency(dependency) and dependency.constraint:
                return dependency.constraint
        return None

    def check_loader_compatibility(self, package: PackageDescriptor, target: TargetInstallation) -> bool:
        """
        Check the package's loader requirement against the target.

        No declared requirement is compatible with anything; a declared
        requirement with no loader installed is incompatible.
        """
        required = self.required_loader_version(package)
        if not required:
            return True
        if not target.loader_version:
            return False
        return satisfies(target.loader_version, required)

    async def resolve_dependencies(
        self,
        package: PackageDescriptor,
        target: TargetInstallation,
        installed: list[InstalledPackageRecord] | None = None,
    ) -> DependencyResolution:
        """
        Resolve ``package``'s dependencies.

        Deterministic: the same package and installed set always give the
        same resolution, in declaration order.

        Args:
            package: Package being installed
            target: Target installation
            installed: Installed records to use instead of querying the source

        Returns:
            DependencyResolution
        """
        if installed is None:
            installed = await self.installed_source.list_installed(target)

        by_id: dict[str, list[InstalledPackageRecord]] = defaultdict(list)
        for record in installed:
            by_id[record.id.lower()].append(record)

        required_loader = self.required_loader_version(package)
        resolution = DependencyResolution(
            loader_version=target.loader_version,
            required_loader_version=required_loader,
            loader_compatible=self.check_loader_compatibility(package, target),
        )
        if not resolution.loader_compatible:
            logger.info(
                f"{package.id} requires loader {required_loader}, target has {target.loader_version or 'none'}"
            )

        for dependency in package.dependencies:
            if self.is_loader_dependency(dependency):
                continue

            matches = by_id.get(dependency.id.lower(), [])
            if not matches:
                if dependency.optional:
                    logger.debug(f"Optional dependency {dependency.id} not installed, skipping")
                else:
                    resolution.missing.append(dependency)
                continue

            versions = sorted({record.version for record in matches})
            if len(versions) > 1:
                resolution.conflicts.append(
                    DependencyConflict(
                        package_id=dependency.id,
                        kind=DependencyConflictKind.VERSION_MISMATCH,
                        description=f"Multiple versions of {dependency.id} installed: {', '.join(versions)}",
                        required_version=dependency.constraint,
                        installed_versions=versions,
                    )
                )
                continue

            record = matches[0]
            if not record.enabled:
                logger.warning(f"{dependency.id} {record.version} is installed but disabled")
                if dependency.optional:
                    continue
                resolution.missing.append(dependency.model_copy(update={"installed_version": record.version}))
                continue

            if self._depends_on(record, package.id):
                resolution.conflicts.append(
                    DependencyConflict(
                        package_id=dependency.id,
                        kind=DependencyConflictKind.CIRCULAR_DEPENDENCY,
                        description=f"{dependency.id} depends back on {package.id}",
                        required_version=dependency.constraint,
                        installed_versions=versions,
                    )
                )
                continue

            if not satisfies(record.version, dependency.constraint):
                logger.debug(f"{dependency.id} {record.version} does not satisfy {dependency.constraint}")
                resolution.missing.append(dependency.model_copy(update={"installed_version": record.version}))
                continue

            resolution.resolved.append(dependency)

        logger.debug(
            f"Resolved {package.id}: {len(resolution.resolved)} resolved, "
            f"{len(resolution.missing)} missing, {len(resolution.conflicts)} conflicts"
        )
        return resolution

    @staticmethod
    def _depends_on(record: InstalledPackageRecord, package_id: str) -> bool:
        wanted = package_id.lower()
        for raw in record.dependencies:
            try:
                if DependencySpec.parse(raw).id.lower() == wanted:
                    return True
            except PackageManifestError:
                continue
        return False

    async def install_missing_dependencies(
        self, resolution: DependencyResolution, target: TargetInstallation
    ) -> OperationResult:
        """
        Install every missing dependency of a resolution.

        All dependencies are located first; if any cannot be found nothing is
        installed and the failure names every unresolved id. Install failures
        are collected and reported together.

        Returns:
            OperationResult whose data is the list of installed dependency ids
        """
        if not resolution.missing:
            return OperationResult.ok("No missing dependencies", data=[])
        if self.package_source is None or self.installer is None:
            return OperationResult.fail(
                "No package source or installer configured",
                message="Dependency installation unavailable",
            )

        located = []
        unresolved = []
        for dependency in resolution.missing:
            archive = await self.package_source.locate(dependency)
            if archive is None:
                unresolved.append(dependency.id)
            else:
                located.append((dependency, archive))

        if unresolved:
            return OperationResult.fail(
                f"Could not locate dependencies: {', '.join(unresolved)}",
                message="Dependency installation failed",
                data=unresolved,
            )

        installed = []
        failed = []
        for dependency, archive in located:
            logger.info(f"Installing dependency {dependency.id} from {archive}")
            result = await self.installer.install_archive(archive, target)
            if result.success:
                installed.append(dependency.id)
            else:
                logger.warning(f"Dependency {dependency.id} failed to install: {result.error}")
                failed.append(f"{dependency.id} ({result.error})")

        if failed:
            return OperationResult.fail(
                f"Failed to install dependencies: {', '.join(failed)}",
                message="Dependency installation failed",
                data=installed,
            )
        return OperationResult.ok(f"Installed {len(installed)} dependencies", data=installed)
