"""Single-stage file transactions shared by the installer, conflict resolution and restore.

Each helper runs one complete stage (create -> stage -> validate -> commit)
and always cleans the temp area; a stage that fails validation or commit is
rolled back before returning.
"""

import logging
from pathlib import Path

from .linking import CopyStrategy
from .linking import LinkStrategy
from .models import InstallationStage
from .models import InstalledPackageRecord
from .models import OperationResult
from .models import TargetInstallation
from .protocols import InstalledPackageStore
from .protocols import ProgressCallback
from .stager import InstallationStager
from .utils import ownership_key
from .utils import resolve_inside

logger = logging.getLogger(__name__)

DISABLED_SUFFIX = ".disabled"


async def run_stage(
    stager: InstallationStager,
    target: TargetInstallation,
    files: list[tuple[Path, str]] | None = None,
    removals: list[str] | None = None,
    package=None,
    expected_checksums: dict[str, str] | None = None,
    progress: ProgressCallback | None = None,
    link_strategy: LinkStrategy | None = None,
) -> OperationResult:
    """
    Apply ``files`` and ``removals`` to the target as one transaction.

    Returns:
        OperationResult whose data is the committed InstallationStage, or on
        failure the list of target files left indeterminate
    """
    stage: InstallationStage = await stager.create_stage(target.root, package=package, installation=target)
    try:
        if files:
            staged = await stager.stage_files(
                stage, files, expected_checksums=expected_checksums, progress=progress, link_strategy=link_strategy
            )
            if not staged.success:
                await stager.rollback_stage(stage)
                return OperationResult.fail(staged.error or "staging failed", message=staged.message, data=[])
        if removals:
            scheduled = await stager.stage_removals(stage, removals)
            if not scheduled.success:
                await stager.rollback_stage(stage)
                return OperationResult.fail(scheduled.error or "staging failed", message=scheduled.message, data=[])

        results = await stager.validate_stage(stage)
        failed = [r for r in results if not r.passed]
        if failed:
            await stager.rollback_stage(stage)
            return OperationResult.fail(
                "; ".join(f"{r.message}: {r.details}" if r.details else r.message for r in failed),
                message="Stage validation failed",
                data=[],
            )

        committed = await stager.commit_stage(stage, progress=progress)
        if not committed.success:
            await stager.rollback_stage(stage)
            return OperationResult.fail(
                committed.error or "commit failed",
                message=committed.message,
                data=committed.data or [],
            )
        return OperationResult.ok(committed.message, data=stage)
    finally:
        await stager.cleanup_stage(stage)


def disabled_name(relative_path: str) -> str:
    return relative_path + DISABLED_SUFFIX


def on_disk_path(record: InstalledPackageRecord, relative_path: str) -> str:
    """Where a record's file currently lives (disabled packages carry the suffix)."""
    return relative_path if record.enabled else disabled_name(relative_path)


async def rename_files(
    stager: InstallationStager,
    target: TargetInstallation,
    renames: list[tuple[str, str]],
    progress: ProgressCallback | None = None,
) -> OperationResult:
    """Rename target files (old, new) through one stage; missing sources are skipped.

    Sources are copied since the originals are removed by the same stage.
    """
    files = []
    removals = []
    for old, new in renames:
        source = resolve_inside(target.root, old)
        if not source.is_file():
            logger.debug(f"Rename source missing, skipping: {old}")
            continue
        files.append((source, new))
        removals.append(old)
    if not files:
        return OperationResult.ok("Nothing to rename")
    return await run_stage(
        stager, target, files=files, removals=removals, progress=progress, link_strategy=CopyStrategy()
    )


async def set_package_enabled(
    stager: InstallationStager,
    store: InstalledPackageStore,
    target: TargetInstallation,
    record: InstalledPackageRecord,
    enabled: bool,
) -> OperationResult:
    """
    Enable or disable a package by renaming its files to/from ``.disabled``.

    Files are never deleted; the record is updated only after the renames
    commit.
    """
    if record.enabled == enabled:
        state = "enabled" if enabled else "disabled"
        return OperationResult.ok(f"{record.id} is already {state}", data=record)

    if enabled:
        renames = [(disabled_name(f), f) for f in record.files]
    else:
        renames = [(f, disabled_name(f)) for f in record.files]

    result = await rename_files(stager, target, renames)
    if not result.success:
        return result

    updated = record.model_copy(update={"enabled": enabled})
    await store.save_record(target, updated)
    logger.info(f"{'Enabled' if enabled else 'Disabled'} {record.id}")
    return OperationResult.ok(f"{'Enabled' if enabled else 'Disabled'} {record.id}", data=updated)


def without_file(record: InstalledPackageRecord, relative_path: str) -> InstalledPackageRecord:
    key = ownership_key(relative_path)
    return record.model_copy(update={"files": [f for f in record.files if ownership_key(f) != key]})
