"""Conflict detection and resolution between packages in a target.

Detectors are registered with ``@register_detector`` and each looks for one
kind of conflict over the enabled installed records plus an optional
install candidate:

- file:       the same path claimed by two packages
- version:    the same package id present twice
- dependency: requirers whose constraints on one id cannot all hold
- declared:   a package listing another in its ``conflicts``
- load_order: a cycle in load_before / load_after
- config:     a loader config file naming more than one package

Resolution actions are routed through the stager (file changes), the
installed-package store (record changes) and the backup manager (a restore
point is taken before anything changes).
"""

import graphlib
import hashlib
import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass
from dataclasses import field
from pathlib import Path
from typing import Protocol

from .exceptions import PackageManifestError
from .exceptions import UnsafePathError
from .models import ActionType
from .models import Conflict
from .models import ConflictKind
from .models import ConflictResolution
from .models import ConflictSeverity
from .models import InstalledPackageRecord
from .models import OperationResult
from .models import ResolutionAction
from .models import ResolutionType
from .models import TargetInstallation
from .models import ValidationKind
from .models import ValidationResult
from .operations import rename_files
from .operations import run_stage
from .operations import set_package_enabled
from .operations import without_file
from .protocols import InstalledPackageSource
from .protocols import InstalledPackageStore
from .schema import DependencyResolution
from .schema import DependencySpec
from .schema import PackageDescriptor
from .utils import normalize_relative_path
from .utils import ownership_key
from .versioning import newest
from .versioning import parse_version
from .versioning import satisfies

logger = logging.getLogger(__name__)

_CRITICAL_EXTENSIONS = {".dll", ".exe"}
_INFO_EXTENSIONS = {".txt"}
_MANUAL_ACTIONS = {ActionType.CHANGE_LOAD_ORDER, ActionType.MERGE_CONFIG}
_FILE_ACTIONS = {ActionType.RENAME_FILE, ActionType.MOVE_FILE, ActionType.DELETE_FILE, ActionType.REPLACE_FILE}


def _conflict_id(kind: ConflictKind, *parts: str) -> str:
    digest = hashlib.sha1("|".join(sorted(p.lower() for p in parts)).encode("utf-8")).hexdigest()
    return f"{kind}-{digest[:12]}"


def file_severity(relative_path: str) -> ConflictSeverity:
    """Severity of two packages claiming ``relative_path``."""
    suffix = Path(relative_path).suffix.lower()
    if suffix in _CRITICAL_EXTENSIONS:
        return ConflictSeverity.CRITICAL
    if suffix in _INFO_EXTENSIONS:
        return ConflictSeverity.INFO
    return ConflictSeverity.WARNING


def candidate_record(descriptor: PackageDescriptor, files: list[str] | None = None) -> InstalledPackageRecord:
    """Prospective record for a package that is about to be installed."""
    return InstalledPackageRecord(
        id=descriptor.id,
        version=descriptor.version,
        name=descriptor.name,
        files=list(files if files is not None else descriptor.files),
        dependencies=[str(d) for d in descriptor.dependencies],
        conflicts=list(descriptor.conflicts),
        load_before=list(descriptor.load_before),
        load_after=list(descriptor.load_after),
    )


@dataclass
class DetectionContext:
    target: TargetInstallation
    # Enabled records in install order; the candidate (if any) is last
    records: list[InstalledPackageRecord]
    # Same-id records the candidate would replace (only the version detector sees them)
    superseded: list[InstalledPackageRecord] = field(default_factory=list)
    candidate: InstalledPackageRecord | None = None
    # Lower-cased ids that name the loader in dependency lists
    loader_ids: frozenset[str] = frozenset({"bepinex", "bepinex-bepinexpack"})

    def present(self, package_id: str) -> InstalledPackageRecord | None:
        wanted = package_id.lower()
        for record in self.records:
            if record.id.lower() == wanted:
                return record
        return None


# ---------------------------------------------------------------------------
# Protocol + Registry
# ---------------------------------------------------------------------------


class ConflictDetector(Protocol):
    """Interface that all conflict detectors must satisfy."""

    kind: ConflictKind

    def detect(self, context: DetectionContext) -> list[Conflict]: ...


_DETECTORS: list[type[ConflictDetector]] = []


def register_detector(cls: type[ConflictDetector]) -> type[ConflictDetector]:
    """Class decorator that adds a detector to the global registry."""
    if cls not in _DETECTORS:
        _DETECTORS.append(cls)
    return cls


def get_all_detectors() -> list[ConflictDetector]:
    """Instantiate and return all registered detectors."""
    return [cls() for cls in _DETECTORS]  # type: ignore[misc]


# ---------------------------------------------------------------------------
# Built-in detectors
# ---------------------------------------------------------------------------


@register_detector
class FileConflictDetector:
    """Same normalised path claimed by more than one package."""

    kind = ConflictKind.FILE

    def detect(self, context: DetectionContext) -> list[Conflict]:
        owners: dict[str, list[str]] = {}
        display: dict[str, str] = {}
        for record in context.records:
            for path in record.files:
                key = ownership_key(path)
                display.setdefault(key, path)
                ids = owners.setdefault(key, [])
                if record.id not in ids:
                    ids.append(record.id)

        conflicts = []
        for key, ids in owners.items():
            if len(ids) < 2:
                continue
            path = display[key]
            winner = ids[-1]
            conflicts.append(
                Conflict(
                    conflict_id=_conflict_id(self.kind, key, *ids),
                    kind=self.kind,
                    participants=ids,
                    severity=file_severity(path),
                    description=f"{path} is provided by {', '.join(ids)}",
                    files=[path],
                    resolution=ConflictResolution(
                        resolution_type=ResolutionType.AUTOMATIC,
                        description=f"Use {winner}'s copy of {path}",
                        can_auto_resolve=True,
                        actions=[
                            ResolutionAction(
                                action_type=ActionType.REPLACE_FILE,
                                description=f"Transfer ownership of {path} to {winner}",
                                target=path,
                                parameters={"owner": winner, "previous_owners": ids[:-1]},
                            )
                        ],
                    ),
                )
            )
        return conflicts


@register_detector
class VersionConflictDetector:
    """The same package id present more than once."""

    kind = ConflictKind.VERSION

    def detect(self, context: DetectionContext) -> list[Conflict]:
        groups: dict[str, list[InstalledPackageRecord]] = {}
        for record in [*context.superseded, *context.records]:
            groups.setdefault(record.id.lower(), []).append(record)

        conflicts = []
        for records in groups.values():
            if len(records) < 2:
                continue
            package_id = records[-1].id
            versions = [r.version for r in records]
            keep = newest(versions)
            # Keeping a version already on disk is bookkeeping; anything else is an install
            on_disk = any(
                r is not context.candidate and parse_version(r.version) == parse_version(keep) for r in records
            )
            conflicts.append(
                Conflict(
                    conflict_id=_conflict_id(self.kind, package_id, *versions),
                    kind=self.kind,
                    participants=[f"{r.id}@{r.version}" for r in records],
                    severity=ConflictSeverity.ERROR,
                    description=f"{package_id} is present in versions {', '.join(versions)}",
                    resolution=ConflictResolution(
                        resolution_type=ResolutionType.AUTOMATIC if on_disk else ResolutionType.MANUAL,
                        description=(
                            f"Keep {package_id} {keep}"
                            if on_disk
                            else f"Install {package_id} {keep} with update_package"
                        ),
                        can_auto_resolve=on_disk,
                        actions=[
                            ResolutionAction(
                                action_type=ActionType.UPDATE_PACKAGE,
                                description=f"Update {package_id} to {keep}",
                                target=package_id,
                                parameters={"keep_version": keep, "versions": versions},
                            )
                        ],
                    ),
                )
            )
        return conflicts


def _sample_versions(constraints: list[str], installed: str | None) -> list[str]:
    versions = [installed] if installed else []
    for constraint in constraints:
        for raw in re.findall(r"\d+(?:\.\d+)*", constraint):
            versions.append(raw)
            # Just above the bound, for strict ">" constraints
            versions.append(f"{raw}.0.0.1")
    return versions


@register_detector
class DependencyConflictDetector:
    """Two requirers whose constraints on the same id cannot be met by one version."""

    kind = ConflictKind.DEPENDENCY

    def detect(self, context: DetectionContext) -> list[Conflict]:
        requirements: dict[str, list[tuple[str, DependencySpec]]] = {}
        for record in context.records:
            for raw in record.dependencies:
                try:
                    spec = DependencySpec.parse(raw)
                except PackageManifestError:
                    continue
                if spec.id.lower() in context.loader_ids or not spec.constraint:
                    continue
                requirements.setdefault(spec.id.lower(), []).append((record.id, spec))

        conflicts = []
        for requirers in requirements.values():
            if len({r for r, _ in requirers}) < 2:
                continue
            dep_id = requirers[0][1].id
            constraints = [spec.constraint for _, spec in requirers]
            present = context.present(dep_id)
            samples = _sample_versions(constraints, present.version if present else None)
            if any(all(satisfies(v, c) for c in constraints) for v in samples):
                continue

            ids = [r for r, _ in requirers]
            conflicts.append(
                Conflict(
                    conflict_id=_conflict_id(self.kind, dep_id, *ids),
                    kind=self.kind,
                    participants=ids,
                    severity=ConflictSeverity.ERROR,
                    description=f"No version of {dep_id} satisfies "
                    + ", ".join(f"{r} ({s.constraint})" for r, s in requirers),
                    resolution=ConflictResolution(
                        resolution_type=ResolutionType.USER_CHOICE,
                        description=f"Disable one of the packages requiring {dep_id}",
                        actions=[
                            ResolutionAction(
                                action_type=ActionType.DISABLE_PACKAGE, description=f"Disable {r}", target=r
                            )
                            for r in ids
                        ],
                    ),
                )
            )
        return conflicts


@register_detector
class DeclaredConflictDetector:
    """A package declaring another present package as incompatible (either side)."""

    kind = ConflictKind.DECLARED

    def detect(self, context: DetectionContext) -> list[Conflict]:
        seen: set[frozenset[str]] = set()
        conflicts = []
        for record in context.records:
            for raw in record.conflicts:
                try:
                    other_id = DependencySpec.parse(raw).id
                except PackageManifestError:
                    continue
                other = context.present(other_id)
                if other is None or other.id.lower() == record.id.lower():
                    continue
                pair = frozenset((record.id.lower(), other.id.lower()))
                if pair in seen:
                    continue
                seen.add(pair)
                ids = [other.id, record.id]
                conflicts.append(
                    Conflict(
                        conflict_id=_conflict_id(self.kind, *ids),
                        kind=self.kind,
                        participants=ids,
                        severity=ConflictSeverity.CRITICAL,
                        description=f"{record.id} is incompatible with {other.id}",
                        resolution=ConflictResolution(
                            resolution_type=ResolutionType.USER_CHOICE,
                            description="Disable one of the incompatible packages",
                            actions=[
                                ResolutionAction(
                                    action_type=ActionType.DISABLE_PACKAGE, description=f"Disable {i}", target=i
                                )
                                for i in ids
                            ],
                        ),
                    )
                )
        return conflicts


@register_detector
class LoadOrderConflictDetector:
    """Cycle in the load_before / load_after graph."""

    kind = ConflictKind.LOAD_ORDER

    def detect(self, context: DetectionContext) -> list[Conflict]:
        ids = {r.id.lower(): r.id for r in context.records}
        # node -> predecessors (things that must load first)
        graph: dict[str, set[str]] = {key: set() for key in ids}
        for record in context.records:
            me = record.id.lower()
            for other in record.load_before:
                if other.lower() in ids:
                    graph[other.lower()].add(me)
            for other in record.load_after:
                if other.lower() in ids:
                    graph[me].add(other.lower())

        try:
            graphlib.TopologicalSorter(graph).prepare()
        except graphlib.CycleError as e:
            cycle = list(dict.fromkeys(e.args[1]))
            participants = [ids[node] for node in cycle]
            return [
                Conflict(
                    conflict_id=_conflict_id(self.kind, *participants),
                    kind=self.kind,
                    participants=participants,
                    severity=ConflictSeverity.ERROR,
                    description=f"Load order cycle: {' -> '.join(ids[n] for n in e.args[1])}",
                    resolution=ConflictResolution(
                        resolution_type=ResolutionType.MANUAL,
                        description="Edit load_before/load_after to break the cycle",
                        actions=[
                            ResolutionAction(
                                action_type=ActionType.CHANGE_LOAD_ORDER,
                                description="Reorder packages",
                                parameters={"cycle": participants},
                            )
                        ],
                    ),
                )
            ]
        return []


@register_detector
class ConfigConflictDetector:
    """A loader config file mentioning more than one package id."""

    kind = ConflictKind.CONFIG

    def detect(self, context: DetectionContext) -> list[Conflict]:
        config_dir = context.target.root / context.target.config_dir
        if not config_dir.is_dir() or len(context.records) < 2:
            return []

        patterns = {
            r.id: re.compile(rf"(?<![\w-]){re.escape(r.id)}(?![\w-])", re.IGNORECASE) for r in context.records
        }
        conflicts = []
        for cfg in sorted(config_dir.rglob("*.cfg")):
            try:
                text = f"{cfg.name}\n{cfg.read_text(encoding='utf-8', errors='replace')}"
            except OSError as e:
                logger.debug(f"Skipping unreadable config {cfg}: {e}")
                continue
            named = [pid for pid, pattern in patterns.items() if pattern.search(text)]
            if len(named) < 2:
                continue
            relative = cfg.relative_to(context.target.root).as_posix()
            conflicts.append(
                Conflict(
                    conflict_id=_conflict_id(self.kind, relative, *named),
                    kind=self.kind,
                    participants=named,
                    severity=ConflictSeverity.INFO,
                    description=f"{relative} is shared by {', '.join(named)}",
                    files=[relative],
                    resolution=ConflictResolution(
                        resolution_type=ResolutionType.MANUAL,
                        description=f"Review and merge settings in {relative}",
                        actions=[
                            ResolutionAction(
                                action_type=ActionType.MERGE_CONFIG, description="Merge configuration", target=relative
                            )
                        ],
                    ),
                )
            )
        return conflicts


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class BackupProvider(Protocol):
    async def create_automatic_backup(self, target: TargetInstallation, operation: str) -> OperationResult: ...


class ConflictDetectionService:
    """
    Run detectors and apply conflict resolutions.

    Args:
        installed_source: Installed-package source (store needed for resolving)
        store: Writable store for record actions (defaults to installed_source
            when it is a store)
        stager: Stager for file actions
        backup_manager: Takes a restore point before any resolution is applied
        resolver: Dependency resolver for install_dependency actions
        loader_id: Loader package id (excluded from dependency conflicts)
        loader_package_ids: Other ids that name the loader in dependency lists
    """

    def __init__(
        self,
        installed_source: InstalledPackageSource,
        store: InstalledPackageStore | None = None,
        stager=None,
        backup_manager: BackupProvider | None = None,
        resolver=None,
        loader_id: str = "BepInEx",
        loader_package_ids: Iterable[str] = ("BepInEx-BepInExPack",),
    ):
        self.installed_source = installed_source
        if store is None and isinstance(installed_source, InstalledPackageStore):
            store = installed_source
        self.store = store
        self.stager = stager
        self.backup_manager = backup_manager
        self.resolver = resolver
        self.loader_id = loader_id
        self.loader_ids = frozenset(i.lower() for i in (loader_id, *loader_package_ids))

    async def _context(
        self, target: TargetInstallation, candidate: InstalledPackageRecord | PackageDescriptor | None
    ) -> DetectionContext:
        installed = await self.installed_source.list_installed(target)
        records = sorted((r for r in installed if r.enabled), key=lambda r: r.installed_at)
        if isinstance(candidate, PackageDescriptor):
            candidate = candidate_record(candidate)

        superseded = []
        if candidate is not None:
            superseded = [r for r in records if r.id.lower() == candidate.id.lower()]
            records = [r for r in records if r.id.lower() != candidate.id.lower()] + [candidate]
        return DetectionContext(
            target=target, records=records, superseded=superseded, candidate=candidate, loader_ids=self.loader_ids
        )

    async def detect_conflicts(
        self,
        target: TargetInstallation,
        candidate: InstalledPackageRecord | PackageDescriptor | None = None,
    ) -> list[Conflict]:
        """
        Detect conflicts among enabled installed packages (and a candidate).

        A candidate sharing an id with an installed package yields a version
        conflict; the installed copy is otherwise treated as replaced.

        Returns:
            Conflicts, most severe first
        """
        context = await self._context(target, candidate)
        conflicts: list[Conflict] = []
        for detector in get_all_detectors():
            try:
                found = detector.detect(context)
            except Exception:
                logger.exception(f"Detector {detector.kind} failed for {target.root}")
                continue
            if found:
                logger.debug(f"Detector {detector.kind} found {len(found)} conflicts")
            conflicts.extend(found)

        conflicts.sort(key=lambda c: (-c.severity.rank, c.kind, c.conflict_id))
        logger.info(f"Detected {len(conflicts)} conflicts in {target.root}")
        return conflicts

    def get_resolution_options(self, conflict: Conflict) -> list[ConflictResolution]:
        """All resolutions a user could pick for ``conflict`` (attached one first)."""
        options: list[ConflictResolution] = []
        if conflict.resolution is not None:
            options.append(conflict.resolution)

        if conflict.kind == ConflictKind.FILE and conflict.files:
            path = conflict.files[0]
            # Claimants are in install order, so the last one's bytes are on disk
            current = conflict.participants[-1]
            for owner in conflict.participants:
                others = [p for p in conflict.participants if p != owner]
                options.append(
                    ConflictResolution(
                        resolution_type=ResolutionType.USER_CHOICE if owner == current else ResolutionType.MANUAL,
                        description=(
                            f"Keep {owner}'s copy of {path}"
                            if owner == current
                            else f"Reinstall {owner} to restore its copy of {path}"
                        ),
                        can_auto_resolve=owner == current,
                        actions=[
                            ResolutionAction(
                                action_type=ActionType.REPLACE_FILE,
                                target=path,
                                parameters={"owner": owner, "previous_owners": others},
                            )
                        ],
                    )
                )
            for owner in conflict.participants:
                options.append(
                    ConflictResolution(
                        resolution_type=ResolutionType.USER_CHOICE,
                        description=f"Disable {owner}",
                        can_auto_resolve=True,
                        actions=[ResolutionAction(action_type=ActionType.DISABLE_PACKAGE, target=owner)],
                    )
                )
        elif conflict.kind in (ConflictKind.DEPENDENCY, ConflictKind.DECLARED):
            for participant in conflict.participants:
                options.append(
                    ConflictResolution(
                        resolution_type=ResolutionType.USER_CHOICE,
                        description=f"Disable {participant}",
                        can_auto_resolve=True,
                        actions=[ResolutionAction(action_type=ActionType.DISABLE_PACKAGE, target=participant)],
                    )
                )

        options.append(
            ConflictResolution(
                resolution_type=ResolutionType.USER_CHOICE,
                description="Ignore this conflict",
                can_auto_resolve=True,
                actions=[ResolutionAction(action_type=ActionType.SKIP, description="Leave as is")],
            )
        )

        unique: list[ConflictResolution] = []
        for option in options:
            if option not in unique:
                unique.append(option)
        return unique

    def validate_resolution(self, conflict: Conflict, resolution: ConflictResolution) -> ValidationResult:
        """Check that ``resolution`` is applicable to ``conflict`` before applying it."""
        kind = ValidationKind.FILE_INTEGRITY if conflict.kind == ConflictKind.FILE else ValidationKind.DEPENDENCY
        problems = []
        if not resolution.actions:
            problems.append("resolution has no actions")

        participants = {p.split("@", 1)[0].lower() for p in conflict.participants}
        files = {ownership_key(f) for f in conflict.files}
        for action in resolution.actions:
            if action.action_type in _MANUAL_ACTIONS:
                problems.append(f"{action.action_type} must be performed manually")
            elif action.action_type == ActionType.DISABLE_PACKAGE and action.target.lower() not in participants:
                problems.append(f"{action.target} is not part of this conflict")
            elif action.action_type in _FILE_ACTIONS:
                try:
                    normalize_relative_path(action.target)
                except UnsafePathError as e:
                    problems.append(e.message)
                    continue
                if files and ownership_key(action.target) not in files:
                    problems.append(f"{action.target} is not part of this conflict")
                if action.action_type == ActionType.REPLACE_FILE:
                    owner = str(action.parameters.get("owner", "")).lower()
                    if owner not in participants:
                        problems.append(f"new owner {owner or '(none)'} is not part of this conflict")
                    elif conflict.kind == ConflictKind.FILE and owner != conflict.participants[-1].lower():
                        problems.append(f"the copy on disk belongs to {conflict.participants[-1]}, not {owner}")
                elif action.action_type in (ActionType.RENAME_FILE, ActionType.MOVE_FILE):
                    destination = action.parameters.get("destination")
                    if not destination:
                        problems.append(f"{action.action_type} of {action.target} needs a destination")
                    else:
                        try:
                            normalize_relative_path(str(destination))
                        except UnsafePathError as e:
                            problems.append(e.message)
            elif action.action_type == ActionType.UPDATE_PACKAGE and not action.parameters.get("keep_version"):
                problems.append(f"update of {action.target} names no version to keep")

        if problems:
            return ValidationResult(
                kind=kind, passed=False, message="Resolution is not applicable", details="; ".join(problems)
            )
        return ValidationResult(kind=kind, passed=True, message="Resolution is applicable")

    async def resolve_conflict(
        self,
        conflict: Conflict,
        target: TargetInstallation,
        override_critical: bool = False,
        resolution: ConflictResolution | None = None,
    ) -> OperationResult:
        """
        Apply a resolution to a conflict.

        Uses the conflict's attached resolution unless the caller passes one
        picked from ``get_resolution_options``. Non auto-resolvable and
        critical conflicts are refused unless ``override_critical`` is set.
        A restore point is taken first.

        Returns:
            OperationResult; on refusal the caller should present
            ``get_resolution_options(conflict)``
        """
        resolution = resolution or conflict.resolution
        if resolution is None or not resolution.can_auto_resolve:
            return OperationResult.fail(
                f"Conflict {conflict.conflict_id} cannot be resolved automatically",
                message="Choose a resolution with get_resolution_options",
                data=self.get_resolution_options(conflict),
            )
        if conflict.is_blocking and not override_critical:
            return OperationResult.fail(
                f"Conflict {conflict.conflict_id} is critical",
                message="Critical conflicts need an explicit override",
                data=self.get_resolution_options(conflict),
            )

        check = self.validate_resolution(conflict, resolution)
        if not check.passed:
            return OperationResult.fail(check.details, message=check.message)

        if all(a.action_type == ActionType.SKIP for a in resolution.actions):
            return OperationResult.ok(f"Conflict {conflict.conflict_id} left unresolved by choice")

        if self.backup_manager is not None:
            backup = await self.backup_manager.create_automatic_backup(target, f"resolve_{conflict.kind}")
            if not backup.success:
                return OperationResult.fail(
                    backup.error or "backup failed", message="Could not create a restore point; nothing was changed"
                )

        applied = []
        for action in resolution.actions:
            result = await self._apply_action(action, target)
            if not result.success:
                logger.warning(f"Resolution action {action.action_type} failed: {result.error}")
                return OperationResult.fail(
                    result.error or "action failed",
                    message=f"Resolution stopped at {action.action_type}",
                    data=applied,
                )
            applied.append(action)

        logger.info(f"Resolved conflict {conflict.conflict_id} ({conflict.kind})")
        return OperationResult.ok(f"Resolved {conflict.kind} conflict", data=applied)

    async def _record(self, target: TargetInstallation, package_id: str) -> InstalledPackageRecord | None:
        wanted = package_id.split("@", 1)[0].lower()
        for record in await self.installed_source.list_installed(target):
            if record.id.lower() == wanted:
                return record
        return None

    def _require(self, *parts: str) -> str | None:
        missing = [name for name in parts if getattr(self, name) is None]
        if missing:
            return f"Resolution needs: {', '.join(missing)}"
        return None

    async def _apply_action(self, action: ResolutionAction, target: TargetInstallation) -> OperationResult:
        match action.action_type:
            case ActionType.SKIP:
                return OperationResult.ok("Skipped")

            case ActionType.REPLACE_FILE:
                if error := self._require("store"):
                    return OperationResult.fail(error)
                owner = action.parameters.get("owner")
                for previous in action.parameters.get("previous_owners", []):
                    if previous == owner:
                        continue
                    record = await self._record(target, previous)
                    if record is not None:
                        await self.store.save_record(target, without_file(record, action.target))
                return OperationResult.ok(f"{action.target} now belongs to {owner}")

            case ActionType.DELETE_FILE:
                if error := self._require("stager", "store"):
                    return OperationResult.fail(error)
                result = await run_stage(self.stager, target, removals=[action.target])
                if result.success:
                    for record in await self.installed_source.list_installed(target):
                        if ownership_key(action.target) in {ownership_key(f) for f in record.files}:
                            await self.store.save_record(target, without_file(record, action.target))
                return result

            case ActionType.RENAME_FILE | ActionType.MOVE_FILE:
                if error := self._require("stager", "store"):
                    return OperationResult.fail(error)
                new_path = normalize_relative_path(action.parameters["destination"])
                result = await rename_files(self.stager, target, [(action.target, new_path)])
                if result.success:
                    key = ownership_key(action.target)
                    for record in await self.installed_source.list_installed(target):
                        if key in {ownership_key(f) for f in record.files}:
                            files = [new_path if ownership_key(f) == key else f for f in record.files]
                            await self.store.save_record(target, record.model_copy(update={"files": files}))
                return result

            case ActionType.DISABLE_PACKAGE:
                if error := self._require("stager", "store"):
                    return OperationResult.fail(error)
                record = await self._record(target, action.target)
                if record is None:
                    return OperationResult.fail(f"{action.target} is not installed")
                return await set_package_enabled(self.stager, self.store, target, record, enabled=False)

            case ActionType.UPDATE_PACKAGE:
                keep = action.parameters.get("keep_version")
                record = await self._record(target, action.target)
                if record is not None and parse_version(record.version) == parse_version(keep):
                    return OperationResult.ok(f"Installed {action.target} {keep} kept")
                installed = record.version if record is not None else "nothing"
                return OperationResult.fail(
                    f"{action.target} {keep} is not installed (found {installed}); install it with update_package",
                    message="Update required",
                    data={"update": action.target, "version": keep},
                )

            case ActionType.INSTALL_DEPENDENCY:
                if error := self._require("resolver"):
                    return OperationResult.fail(error)
                spec = DependencySpec.parse(action.parameters.get("dependency", action.target))
                return await self.resolver.install_missing_dependencies(DependencyResolution(missing=[spec]), target)

            case _:
                return OperationResult.fail(f"{action.action_type} must be performed manually")

