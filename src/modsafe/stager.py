"""Staged installation - transactional file placement into a target.

Every change to a target directory goes through a stage:

    pending -> staging -> validating -> testing -> ready -> committed
                                                       \\-> failed / rolled_back

Files are first placed in a private temp area, checksummed and validated;
only a ``ready`` stage may be committed. Commit journals every target file it
touches (the previous content is moved into the stage's rollback area) so a
failure or cancellation part-way through reverts the whole batch.

Target-mutating moves run inline between ``await`` points: cancellation can
only land between two fully journalled steps.
"""

import asyncio
import logging
import os
import shutil
import tempfile
import uuid
from pathlib import Path

from .config import InstallerSettings
from .exceptions import ModSafeError
from .exceptions import StageStateError
from .exceptions import UnsafePathError
from .linking import LinkStrategy
from .linking import choose_link_strategy
from .models import InstallationStage
from .models import InstallationStageStatus
from .models import OperationResult
from .models import StagedFile
from .models import TargetInstallation
from .models import ValidationKind
from .models import ValidationResult
from .protocols import ProgressCallback
from .protocols import noop_progress
from .resolver import DependencyResolver
from .utils import normalize_relative_path
from .utils import ownership_key
from .utils import prune_empty_dirs
from .utils import resolve_inside
from .utils import same_volume
from .verification import VerificationService

logger = logging.getLogger(__name__)

EXECUTABLE_EXTENSIONS = {".exe", ".dll", ".so", ".dylib", ".sh", ".bat", ".cmd"}

_EXECUTABLE_MAGIC = (
    b"MZ",  # PE
    b"\x7fELF",
    b"\xfe\xed\xfa\xce",  # Mach-O 32
    b"\xfe\xed\xfa\xcf",  # Mach-O 64
    b"\xce\xfa\xed\xfe",
    b"\xcf\xfa\xed\xfe",
    b"\xca\xfe\xba\xbe",  # Mach-O universal
)

_STAGEABLE = (
    InstallationStageStatus.PENDING,
    InstallationStageStatus.STAGING,
    InstallationStageStatus.VALIDATING,
)
_VALIDATABLE = (
    InstallationStageStatus.PENDING,
    InstallationStageStatus.VALIDATING,
    InstallationStageStatus.TESTING,
    InstallationStageStatus.READY,
    InstallationStageStatus.FAILED,
)

SourceEntry = Path | str | tuple[Path | str, str]


def has_executable_header(path: Path) -> bool:
    """Check the first bytes of an executable-looking file.

    PE, ELF and Mach-O headers pass. Scripts need a shebang (.sh) or are
    accepted as text (.bat/.cmd); .dll files are accepted regardless.
    """
    suffix = path.suffix.lower()
    with open(path, "rb") as f:
        head = f.read(4)
    if not head:
        return False
    if head.startswith(_EXECUTABLE_MAGIC):
        return True
    if suffix == ".sh":
        return head.startswith(b"#!")
    return suffix in (".dll", ".bat", ".cmd")


class InstallationStager:
    """
    Create, fill, validate, commit and roll back installation stages.

    Args:
        verification: Verification service used for checksums and file checks
        resolver: Optional resolver; when set, stages carrying a package and
            installation get a dependency validation result
        settings: Installer settings (staging dir, checksum algorithm, link strategy)
        link_strategy: Strategy used to place sources into the temp area
    """

    def __init__(
        self,
        verification: VerificationService | None = None,
        resolver: DependencyResolver | None = None,
        settings: InstallerSettings | None = None,
        link_strategy: LinkStrategy | None = None,
    ):
        self.verification = verification or VerificationService()
        self.resolver = resolver
        self.settings = settings or InstallerSettings()
        self.link_strategy = link_strategy or choose_link_strategy(self.settings.link_strategy)

    # --- Creation ---

    async def create_stage(
        self,
        target_path: Path,
        package=None,
        installation: TargetInstallation | None = None,
    ) -> InstallationStage:
        """
        Create a new stage with its own temp area.

        Every stage gets a fresh ``mkdtemp`` directory, so concurrently created
        stages never share a temp path.
        """
        stage_id = uuid.uuid4().hex
        base = self.settings.staging_dir
        if base is not None:
            base.mkdir(parents=True, exist_ok=True)
        temp_path = Path(tempfile.mkdtemp(prefix=f"modsafe_stage_{stage_id[:8]}_", dir=base))

        stage = InstallationStage(
            stage_id=stage_id,
            temp_path=temp_path,
            target_path=Path(target_path),
            package=package,
            installation=installation,
        )
        stage.payload_path.mkdir()
        logger.debug(f"Created stage {stage_id} at {temp_path}")
        return stage

    # --- Staging ---

    @staticmethod
    def _normalize_sources(source_files: list[SourceEntry]) -> list[tuple[Path, str]]:
        entries = []
        for entry in source_files:
            if isinstance(entry, tuple):
                source, relative = entry
                entries.append((Path(source), normalize_relative_path(relative)))
            else:
                source = Path(entry)
                entries.append((source, normalize_relative_path(source.name)))
        return entries

    @staticmethod
    def _is_readable(path: Path) -> bool:
        try:
            with open(path, "rb"):
                return True
        except OSError:
            return False

    @staticmethod
    def _expected_for(relative: str, expected: dict[str, str]) -> str | None:
        key = ownership_key(relative)
        for path, digest in expected.items():
            if ownership_key(path) == key:
                return digest
        return None

    async def stage_files(
        self,
        stage: InstallationStage,
        source_files: list[SourceEntry],
        expected_checksums: dict[str, str] | None = None,
        progress: ProgressCallback | None = None,
        link_strategy: LinkStrategy | None = None,
    ) -> OperationResult:
        """
        Copy (or link) source files into the stage's temp area.

        Args:
            stage: Stage in pending, staging or validating state
            source_files: Paths (placed at their file name) or
                ``(path, target_relative_path)`` pairs
            expected_checksums: Declared digests by target-relative path;
                the attached package's ``checksums`` are used when omitted
            progress: Optional progress callback
            link_strategy: Overrides the configured strategy for this call
                (sources that will not outlive the stage must be copied)

        Returns:
            OperationResult; on failure the stage state is unchanged and the
            files placed by this call are removed

        Raises:
            StageStateError: If the stage can no longer accept files
        """
        if stage.status not in _STAGEABLE:
            raise StageStateError(
                f"Cannot stage files in a stage that is {stage.status}",
                context={"stage_id": stage.stage_id, "status": str(stage.status)},
            )
        if not source_files:
            return OperationResult.ok("No files to stage", data=[])

        progress = progress or noop_progress
        strategy = link_strategy or self.link_strategy
        try:
            entries = self._normalize_sources(source_files)
        except UnsafePathError as e:
            return OperationResult.fail(e.message, message="File staging failed")

        unreadable = [str(source) for source, _ in entries if not source.is_file() or not self._is_readable(source)]
        if unreadable:
            return OperationResult.fail(
                f"Source files not readable: {', '.join(unreadable)}",
                message="File staging failed",
                data=unreadable,
            )

        declared = dict(getattr(stage.package, "checksums", None) or {})
        declared.update(expected_checksums or {})

        previous_status = stage.status
        previous_files = list(stage.files)
        placed: list[Path] = []
        stage.status = InstallationStageStatus.STAGING

        def _undo() -> None:
            for path in placed:
                path.unlink(missing_ok=True)
            stage.files = previous_files
            stage.status = previous_status

        try:
            for index, (source, relative) in enumerate(entries):
                staged_path = stage.payload_path / relative
                if staged_path.exists() or staged_path.is_symlink():
                    staged_path.unlink()
                strategy.link(source, staged_path)
                placed.append(staged_path)

                checksum = await self.verification.calculate_checksum(staged_path, self.settings.checksum_algorithm)
                key = ownership_key(relative)
                stage.files = [f for f in stage.files if ownership_key(f.relative_path) != key]
                stage.files.append(
                    StagedFile(
                        source_path=source,
                        staged_path=staged_path,
                        relative_path=relative,
                        checksum=checksum,
                        size=staged_path.stat().st_size,
                        is_executable=staged_path.suffix.lower() in EXECUTABLE_EXTENSIONS,
                        expected_checksum=self._expected_for(relative, declared),
                    )
                )
                logger.debug(f"Staged {relative} ({checksum[:12]})")
                progress("staging", f"Staged {relative}", int((index + 1) * 100 / len(entries)))
        except (OSError, ModSafeError) as e:
            _undo()
            logger.warning(f"Staging failed for stage {stage.stage_id}: {e}")
            return OperationResult.fail(str(e), message="File staging failed")
        except BaseException:
            _undo()
            raise

        stage.status = InstallationStageStatus.VALIDATING
        return OperationResult.ok(f"Staged {len(entries)} files successfully", data=[e[1] for e in entries])

    async def stage_removals(self, stage: InstallationStage, relative_paths: list[str]) -> OperationResult:
        """
        Schedule target files for deletion at commit.

        Removed files are moved into the rollback area at commit, so a failed
        or rolled-back stage restores them.
        """
        if stage.status not in _STAGEABLE:
            raise StageStateError(
                f"Cannot stage removals in a stage that is {stage.status}",
                context={"stage_id": stage.stage_id, "status": str(stage.status)},
            )
        if not relative_paths:
            return OperationResult.ok("No removals to stage", data=[])

        try:
            normalized = [normalize_relative_path(p) for p in relative_paths]
        except UnsafePathError as e:
            return OperationResult.fail(e.message, message="Removal staging failed")

        known = {ownership_key(p) for p in stage.removals}
        for relative in normalized:
            if ownership_key(relative) not in known:
                stage.removals.append(relative)
                known.add(ownership_key(relative))

        stage.status = InstallationStageStatus.VALIDATING
        return OperationResult.ok(f"Staged {len(normalized)} removals", data=normalized)

    # --- Validation ---

    async def _validate_file(self, staged: StagedFile) -> ValidationResult:
        path = staged.staged_path
        checks = [
            await self.verification.verify_file_integrity(path, expected_size=staged.size),
            await self.verification.verify_checksum(path, staged.checksum, self.settings.checksum_algorithm),
        ]
        if staged.expected_checksum and self.settings.verify_checksums:
            checks.append(
                await self.verification.verify_checksum(path, staged.expected_checksum, self.settings.checksum_algorithm)
            )
        if staged.is_executable:
            checks.append(self._validate_executable(path))
        checks.append(await self.verification.verify_permissions(path, require_write=False))

        failures = [c for c in checks if not c.passed]
        if failures:
            return ValidationResult(
                kind=failures[0].kind,
                passed=False,
                message=f"Validation failed for {staged.relative_path}",
                details="; ".join(f"{c.message}: {c.details}" for c in failures),
                path=path,
            )
        return ValidationResult(
            kind=ValidationKind.FILE_INTEGRITY,
            passed=True,
            message=f"Validation passed for {staged.relative_path}",
            details=", ".join(str(c.kind) for c in checks),
            path=path,
        )

    @staticmethod
    def _validate_executable(path: Path) -> ValidationResult:
        try:
            valid = has_executable_header(path)
        except OSError as e:
            return ValidationResult(
                kind=ValidationKind.FILE_INTEGRITY, passed=False, message="Executable file validation error",
                details=str(e), path=path,
            )
        return ValidationResult(
            kind=ValidationKind.FILE_INTEGRITY,
            passed=valid,
            message="Executable file validation passed" if valid else "Executable file validation failed",
            details="File appears to be a valid executable" if valid else "File does not appear to be a valid executable",
            path=path,
        )

    async def _validate_removal(self, stage: InstallationStage, relative: str) -> ValidationResult:
        kind = ValidationKind.PERMISSIONS
        try:
            target_file = resolve_inside(stage.target_path, relative)
        except UnsafePathError as e:
            return ValidationResult(kind=kind, passed=False, message=f"Unsafe removal {relative}", details=e.message)

        if not target_file.exists():
            return ValidationResult(
                kind=kind, passed=True, message=f"{relative} already absent", path=target_file
            )
        if target_file.is_dir():
            return ValidationResult(
                kind=kind, passed=False, message=f"Cannot remove {relative}", details="Path is a directory",
                path=target_file,
            )
        result = await self.verification.verify_permissions(target_file.parent, require_write=True)
        return ValidationResult(
            kind=kind,
            passed=result.passed,
            message=f"Removal of {relative} {'permitted' if result.passed else 'not permitted'}",
            details=result.details,
            path=target_file,
        )

    async def _validate_dependencies(self, stage: InstallationStage) -> ValidationResult:
        resolution = await self.resolver.resolve_dependencies(stage.package, stage.installation)
        problems = [f"missing {d}" for d in resolution.missing]
        problems += [c.description for c in resolution.conflicts]
        if not resolution.loader_compatible:
            problems.append(
                f"requires loader {resolution.required_loader_version}, found {resolution.loader_version or 'none'}"
            )
        return ValidationResult(
            kind=ValidationKind.DEPENDENCY,
            passed=resolution.is_valid,
            message="Dependencies satisfied" if resolution.is_valid else "Dependency check failed",
            details="; ".join(problems),
        )

    async def validate_stage(self, stage: InstallationStage) -> list[ValidationResult]:
        """
        Validate every staged file and removal.

        Produces one aggregated result per staged file (integrity, staging
        checksum, declared checksum, executable header, read permission), one
        per removal, and a dependency result when the stage carries a package,
        an installation and a resolver is configured. All checks run; the
        stage becomes ``ready`` only if every result passed.

        Re-running is idempotent while the staged files are unchanged.

        Raises:
            StageStateError: If the stage is committed or rolled back
        """
        if stage.status not in _VALIDATABLE:
            raise StageStateError(
                f"Cannot validate a stage that is {stage.status}",
                context={"stage_id": stage.stage_id, "status": str(stage.status)},
            )

        stage.status = InstallationStageStatus.TESTING
        results = [await self._validate_file(staged) for staged in stage.files]
        results += [await self._validate_removal(stage, relative) for relative in stage.removals]
        if self.resolver is not None and stage.package is not None and stage.installation is not None:
            results.append(await self._validate_dependencies(stage))

        stage.validation_results = results
        passed = all(r.passed for r in results)
        stage.status = InstallationStageStatus.READY if passed else InstallationStageStatus.FAILED
        logger.debug(f"Stage {stage.stage_id} validated: {sum(r.passed for r in results)}/{len(results)} passed")
        return results

    # --- Commit / rollback ---

    def _place_file(self, staged_path: Path, destination: Path, cross_volume: bool) -> None:
        destination.parent.mkdir(parents=True, exist_ok=True)
        if not cross_volume:
            os.replace(staged_path, destination)
            return
        # Copy next to the destination first so the final step is still a rename
        sibling = destination.with_name(f".{destination.name}.{uuid.uuid4().hex[:8]}.partial")
        try:
            shutil.copy2(staged_path, sibling, follow_symlinks=False)
            os.replace(sibling, destination)
        except BaseException:
            sibling.unlink(missing_ok=True)
            raise

    @staticmethod
    def _set_aside(stage: InstallationStage, relative: str, destination: Path) -> None:
        """Journal ``relative`` and move any existing target file into the rollback area."""
        if not (destination.exists() or destination.is_symlink()):
            stage.journal.append((relative, None))
            return
        backup = stage.rollback_path / relative
        backup.parent.mkdir(parents=True, exist_ok=True)
        # Journal first: revert only restores a backup that actually exists
        stage.journal.append((relative, backup))
        shutil.move(destination, backup)

    def _revert(self, stage: InstallationStage) -> list[str]:
        """Undo journalled changes in reverse order; returns paths left indeterminate."""
        indeterminate = []
        for relative, backup in reversed(stage.journal):
            destination = stage.target_path / relative
            try:
                if backup is None:
                    destination.unlink(missing_ok=True)
                    prune_empty_dirs(destination.parent, stage.target_path)
                elif backup.exists() or backup.is_symlink():
                    destination.unlink(missing_ok=True)
                    destination.parent.mkdir(parents=True, exist_ok=True)
                    shutil.move(backup, destination)
            except OSError as e:
                logger.error(f"Rollback failed for {relative} in stage {stage.stage_id}: {e}")
                indeterminate.append(relative)
        stage.journal.clear()
        return indeterminate

    def _discard_temp(self, stage: InstallationStage) -> None:
        if stage.temp_path.exists():
            shutil.rmtree(stage.temp_path, ignore_errors=True)
            logger.debug(f"Removed stage temp area {stage.temp_path}")

    async def commit_stage(self, stage: InstallationStage, progress: ProgressCallback | None = None) -> OperationResult:
        """
        Move staged files into the target and apply staged removals.

        All-or-none: any failure or cancellation reverts every change made so
        far in reverse order. On success the stage becomes ``committed`` and its
        temp area is deleted.

        Returns:
            OperationResult; on failure ``data`` lists files left indeterminate
            by a failed rollback (normally empty)

        Raises:
            StageStateError: If the stage is not ``ready``
        """
        if stage.status != InstallationStageStatus.READY:
            raise StageStateError(
                f"Stage is not ready for commit (status: {stage.status})",
                context={"stage_id": stage.stage_id, "status": str(stage.status)},
            )

        progress = progress or noop_progress
        target = stage.target_path
        target.mkdir(parents=True, exist_ok=True)
        stage.rollback_path.mkdir(parents=True, exist_ok=True)
        cross_volume = not same_volume(stage.temp_path, target)
        total = len(stage.files) + len(stage.removals) or 1
        done = 0

        try:
            for staged in stage.files:
                destination = resolve_inside(target, staged.relative_path)
                self._set_aside(stage, staged.relative_path, destination)
                self._place_file(staged.staged_path, destination, cross_volume)
                done += 1
                progress("committing", f"Installed {staged.relative_path}", int(done * 100 / total))
                await asyncio.sleep(0)

            for relative in stage.removals:
                destination = resolve_inside(target, relative)
                if destination.exists() or destination.is_symlink():
                    backup = stage.rollback_path / relative
                    backup.parent.mkdir(parents=True, exist_ok=True)
                    stage.journal.append((relative, backup))
                    shutil.move(destination, backup)
                    prune_empty_dirs(destination.parent, target)
                done += 1
                progress("committing", f"Removed {relative}", int(done * 100 / total))
                await asyncio.sleep(0)
        except (OSError, ModSafeError) as e:
            indeterminate = self._revert(stage)
            stage.status = InstallationStageStatus.FAILED
            logger.warning(f"Commit of stage {stage.stage_id} failed and was rolled back: {e}")
            return OperationResult.fail(
                str(e),
                message="Stage commit failed" + (" (rollback incomplete)" if indeterminate else ""),
                data=indeterminate,
            )
        except BaseException:
            indeterminate = self._revert(stage)
            stage.status = InstallationStageStatus.FAILED
            if indeterminate:
                logger.error(f"Cancelled commit left files indeterminate: {indeterminate}")
            raise

        stage.status = InstallationStageStatus.COMMITTED
        stage.journal.clear()
        self._discard_temp(stage)
        logger.info(
            f"Committed stage {stage.stage_id}: {len(stage.files)} files, {len(stage.removals)} removals into {target}"
        )
        return OperationResult.ok(f"Committed {len(stage.files)} files and {len(stage.removals)} removals", data=[])

    async def rollback_stage(self, stage: InstallationStage) -> OperationResult:
        """
        Revert the stage's target changes and discard its temp area.

        Legal from any non-terminal state and from ``failed``; a second call on
        a rolled-back stage is a no-op success.

        Raises:
            StageStateError: If the stage is committed
        """
        if stage.status == InstallationStageStatus.COMMITTED:
            raise StageStateError(
                "Cannot roll back a committed stage; restore a backup instead",
                context={"stage_id": stage.stage_id},
            )
        if stage.status == InstallationStageStatus.ROLLED_BACK:
            return OperationResult.ok("Stage already rolled back")

        indeterminate = self._revert(stage)
        self._discard_temp(stage)
        stage.status = InstallationStageStatus.ROLLED_BACK
        if indeterminate:
            return OperationResult.fail(
                f"Could not restore: {', '.join(indeterminate)}",
                message="Stage rollback incomplete",
                data=indeterminate,
            )
        logger.debug(f"Rolled back stage {stage.stage_id}")
        return OperationResult.ok("Stage rolled back successfully")

    async def cleanup_stage(self, stage: InstallationStage) -> OperationResult:
        """Delete the stage's temp area (safe in any state, any number of times)."""
        self._discard_temp(stage)
        return OperationResult.ok("Stage cleanup completed")
