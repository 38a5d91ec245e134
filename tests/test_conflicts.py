"""Tests for ConflictDetectionService and the built-in detectors."""

import tempfile
from datetime import UTC
from datetime import datetime
from pathlib import Path

import pytest
from modsafe import BackupManager
from modsafe import ConflictDetectionService
from modsafe import ConflictKind
from modsafe import ConflictSeverity
from modsafe import InstallationStager
from modsafe import InstalledPackageRecord
from modsafe import InstalledPackageState
from modsafe import InstallerSettings
from modsafe import OperationResult
from modsafe import PackageDescriptor
from modsafe import TargetInstallation
from modsafe.conflicts import file_severity
from modsafe.models import ActionType
from modsafe.models import ConflictResolution
from modsafe.models import ResolutionAction
from modsafe.models import ResolutionType


def record(package_id: str, month: int, version: str = "1.0.0", **kwargs) -> InstalledPackageRecord:
    return InstalledPackageRecord(
        id=package_id, version=version, installed_at=datetime(2024, month, 1, tzinfo=UTC), **kwargs
    )


class Env:
    """Target, store and a fully wired service under one temp directory."""

    def __init__(self, tmpdir: str, resolver=None):
        tmp = Path(tmpdir)
        root = tmp / "game"
        root.mkdir()
        self.target = TargetInstallation(root=root, loader_version="5.4.21")
        self.settings = InstallerSettings(data_dir=tmp / "data", backup_dir=tmp / "backups", staging_dir=tmp / "stage")
        self.store = InstalledPackageState()
        self.stager = InstallationStager(settings=self.settings)
        self.backups = BackupManager(self.store, self.settings, self.stager)
        self.service = ConflictDetectionService(
            self.store, stager=self.stager, backup_manager=self.backups, resolver=resolver
        )

    async def add(self, *records: InstalledPackageRecord) -> None:
        for r in records:
            await self.store.save_record(self.target, r)

    def write(self, relative: str, content: bytes = b"MZ data") -> Path:
        path = self.target.root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
        return path


def test_file_severity():
    assert file_severity("BepInEx/plugins/a.dll") == ConflictSeverity.CRITICAL
    assert file_severity("tool.EXE") == ConflictSeverity.CRITICAL
    assert file_severity("BepInEx/config/a.cfg") == ConflictSeverity.WARNING
    assert file_severity("README.txt") == ConflictSeverity.INFO


@pytest.mark.asyncio
async def test_no_conflicts_for_disjoint_packages():
    with tempfile.TemporaryDirectory() as tmpdir:
        env = Env(tmpdir)
        await env.add(record("a", 1, files=["BepInEx/plugins/a/A.dll"]), record("b", 2, files=["BepInEx/plugins/b/B.dll"]))

        assert await env.service.detect_conflicts(env.target) == []


@pytest.mark.asyncio
async def test_file_conflict():
    """The same path (compared case-insensitively) claimed twice; the later install wins."""
    with tempfile.TemporaryDirectory() as tmpdir:
        env = Env(tmpdir)
        await env.add(
            record("late", 2, files=["bepinex/plugins/shared.dll"]),
            record("early", 1, files=["BepInEx/plugins/Shared.dll"]),
        )

        conflicts = await env.service.detect_conflicts(env.target)

        assert len(conflicts) == 1
        conflict = conflicts[0]
        assert conflict.kind == ConflictKind.FILE
        assert conflict.severity == ConflictSeverity.CRITICAL
        assert conflict.participants == ["early", "late"]
        action = conflict.resolution.actions[0]
        assert action.action_type == ActionType.REPLACE_FILE
        assert action.parameters["owner"] == "late"


@pytest.mark.asyncio
async def test_disabled_packages_are_ignored():
    with tempfile.TemporaryDirectory() as tmpdir:
        env = Env(tmpdir)
        await env.add(
            record("a", 1, files=["BepInEx/plugins/Shared.dll"]),
            record("b", 2, files=["BepInEx/plugins/Shared.dll"], enabled=False),
        )

        assert await env.service.detect_conflicts(env.target) == []


@pytest.mark.asyncio
async def test_candidate_same_id_is_version_conflict():
    """A candidate replacing an installed id conflicts on version, not on its own files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        env = Env(tmpdir)
        await env.add(record("mod", 1, version="1.0.0", files=["BepInEx/plugins/mod/Mod.dll"]))
        candidate = PackageDescriptor(id="mod", version="2.0.0", files=["BepInEx/plugins/mod/Mod.dll"])

        conflicts = await env.service.detect_conflicts(env.target, candidate)

        assert [c.kind for c in conflicts] == [ConflictKind.VERSION]
        assert conflicts[0].participants == ["mod@1.0.0", "mod@2.0.0"]
        assert conflicts[0].resolution.actions[0].parameters["keep_version"] == "2.0.0"


@pytest.mark.asyncio
async def test_dependency_conflict():
    with tempfile.TemporaryDirectory() as tmpdir:
        env = Env(tmpdir)
        await env.add(
            record("new-ui", 1, dependencies=["core-lib>=2.0"]),
            record("old-ui", 2, dependencies=["core-lib<2.0"]),
            record("fine", 3, dependencies=["core-lib>=1.0"]),
            record("loader-user", 4, dependencies=["BepInEx-BepInExPack-5.4.2100"]),
        )

        conflicts = await env.service.detect_conflicts(env.target)

        assert len(conflicts) == 1
        assert conflicts[0].kind == ConflictKind.DEPENDENCY
        assert conflicts[0].participants == ["new-ui", "old-ui", "fine"]
        assert conflicts[0].resolution.resolution_type == ResolutionType.USER_CHOICE


@pytest.mark.asyncio
async def test_compatible_ranges_do_not_conflict():
    with tempfile.TemporaryDirectory() as tmpdir:
        env = Env(tmpdir)
        await env.add(record("a", 1, dependencies=["core-lib>=1.0"]), record("b", 2, dependencies=["core-lib<2.0"]))

        assert await env.service.detect_conflicts(env.target) == []


@pytest.mark.asyncio
async def test_declared_conflict_reported_once():
    with tempfile.TemporaryDirectory() as tmpdir:
        env = Env(tmpdir)
        await env.add(record("a", 1, conflicts=["b"]), record("b", 2, conflicts=["A"]), record("c", 3, conflicts=["gone"]))

        conflicts = await env.service.detect_conflicts(env.target)

        assert len(conflicts) == 1
        assert conflicts[0].kind == ConflictKind.DECLARED
        assert conflicts[0].severity == ConflictSeverity.CRITICAL
        assert sorted(conflicts[0].participants) == ["a", "b"]


@pytest.mark.asyncio
async def test_load_order_cycle():
    with tempfile.TemporaryDirectory() as tmpdir:
        env = Env(tmpdir)
        await env.add(
            record("a", 1, load_before=["b"]),
            record("b", 2, load_before=["c"]),
            record("c", 3, load_after=["b"], load_before=["a"]),
        )

        conflicts = await env.service.detect_conflicts(env.target)

        assert len(conflicts) == 1
        conflict = conflicts[0]
        assert conflict.kind == ConflictKind.LOAD_ORDER
        assert sorted(conflict.participants) == ["a", "b", "c"]
        assert conflict.resolution.resolution_type == ResolutionType.MANUAL

        refused = await env.service.resolve_conflict(conflict, env.target)
        assert not refused.success
        assert refused.data


@pytest.mark.asyncio
async def test_config_conflict():
    """A config file naming two packages (by whole id) is reported as info."""
    with tempfile.TemporaryDirectory() as tmpdir:
        env = Env(tmpdir)
        await env.add(record("alpha", 1), record("beta", 2), record("gam", 3))
        env.write("BepInEx/config/com.example.alpha.cfg", b"[beta]\nEnabled = true\ngamma = 1\n")

        conflicts = await env.service.detect_conflicts(env.target)

        assert len(conflicts) == 1
        assert conflicts[0].kind == ConflictKind.CONFIG
        assert conflicts[0].severity == ConflictSeverity.INFO
        assert conflicts[0].participants == ["alpha", "beta"]
        assert conflicts[0].files == ["BepInEx/config/com.example.alpha.cfg"]


@pytest.mark.asyncio
async def test_conflicts_sorted_most_severe_first():
    with tempfile.TemporaryDirectory() as tmpdir:
        env = Env(tmpdir)
        await env.add(
            record("a", 1, files=["notes.txt"]),
            record("b", 2, files=["notes.txt", "BepInEx/config/shared.cfg"], conflicts=["c"]),
            record("c", 3, files=["BepInEx/config/shared.cfg"]),
        )

        conflicts = await env.service.detect_conflicts(env.target)

        severities = [c.severity for c in conflicts]
        assert severities == [ConflictSeverity.CRITICAL, ConflictSeverity.WARNING, ConflictSeverity.INFO]


@pytest.mark.asyncio
async def test_failing_detector_is_skipped(monkeypatch):
    import modsafe.conflicts as conflicts_module

    class BrokenDetector:
        kind = ConflictKind.CONFIG

        def detect(self, context):
            raise RuntimeError("boom")

    monkeypatch.setattr(conflicts_module, "_DETECTORS", [*conflicts_module._DETECTORS, BrokenDetector])
    with tempfile.TemporaryDirectory() as tmpdir:
        env = Env(tmpdir)
        await env.add(record("a", 1, conflicts=["b"]), record("b", 2))

        conflicts = await env.service.detect_conflicts(env.target)

        assert [c.kind for c in conflicts] == [ConflictKind.DECLARED]


@pytest.mark.asyncio
async def test_resolve_refuses_critical_without_override():
    with tempfile.TemporaryDirectory() as tmpdir:
        env = Env(tmpdir)
        await env.add(
            record("a", 1, files=["BepInEx/plugins/Shared.dll"]), record("b", 2, files=["BepInEx/plugins/Shared.dll"])
        )
        env.write("BepInEx/plugins/Shared.dll")
        conflict = (await env.service.detect_conflicts(env.target))[0]

        refused = await env.service.resolve_conflict(conflict, env.target)
        assert not refused.success
        assert refused.message == "Critical conflicts need an explicit override"
        assert await env.backups.list_backups(env.target) == []

        resolved = await env.service.resolve_conflict(conflict, env.target, override_critical=True)
        assert resolved.success
        a = await env.store.get_record(env.target, "a")
        b = await env.store.get_record(env.target, "b")
        assert a.files == []
        assert b.files == ["BepInEx/plugins/Shared.dll"]
        assert len(await env.backups.list_backups(env.target)) == 1
        assert await env.service.detect_conflicts(env.target) == []


@pytest.mark.asyncio
async def test_resolve_warning_file_conflict():
    with tempfile.TemporaryDirectory() as tmpdir:
        env = Env(tmpdir)
        await env.add(
            record("a", 1, files=["BepInEx/config/shared.cfg"]), record("b", 2, files=["BepInEx/config/shared.cfg"])
        )
        env.write("BepInEx/config/shared.cfg", b"[General]")
        conflict = (await env.service.detect_conflicts(env.target))[0]

        result = await env.service.resolve_conflict(conflict, env.target)

        assert result.success
        assert (env.target.root / "BepInEx/config/shared.cfg").exists()
        assert (await env.store.get_record(env.target, "a")).files == []


@pytest.mark.asyncio
async def test_resolution_options_and_disable_choice():
    """A user-chosen disable renames the package's files and marks it disabled."""
    with tempfile.TemporaryDirectory() as tmpdir:
        env = Env(tmpdir)
        await env.add(
            record("a", 1, files=["BepInEx/plugins/a/A.dll"], conflicts=["b"]),
            record("b", 2, files=["BepInEx/plugins/b/B.dll"]),
        )
        env.write("BepInEx/plugins/a/A.dll")
        env.write("BepInEx/plugins/b/B.dll")
        conflict = (await env.service.detect_conflicts(env.target))[0]

        options = env.service.get_resolution_options(conflict)
        assert options[-1].actions[0].action_type == ActionType.SKIP
        disable_b = next(o for o in options if o.description == "Disable b")

        result = await env.service.resolve_conflict(conflict, env.target, override_critical=True, resolution=disable_b)

        assert result.success
        assert (env.target.root / "BepInEx/plugins/b/B.dll.disabled").exists()
        assert not (env.target.root / "BepInEx/plugins/b/B.dll").exists()
        assert not (await env.store.get_record(env.target, "b")).enabled
        assert await env.service.detect_conflicts(env.target) == []


@pytest.mark.asyncio
async def test_skip_resolution_changes_nothing():
    with tempfile.TemporaryDirectory() as tmpdir:
        env = Env(tmpdir)
        await env.add(record("a", 1, files=["notes.txt"]), record("b", 2, files=["notes.txt"]))
        conflict = (await env.service.detect_conflicts(env.target))[0]
        skip = env.service.get_resolution_options(conflict)[-1]

        result = await env.service.resolve_conflict(conflict, env.target, resolution=skip)

        assert result.success
        assert await env.backups.list_backups(env.target) == []
        assert len(await env.service.detect_conflicts(env.target)) == 1


@pytest.mark.asyncio
async def test_validate_resolution_rejects_outsiders():
    with tempfile.TemporaryDirectory() as tmpdir:
        env = Env(tmpdir)
        await env.add(record("a", 1, conflicts=["b"]), record("b", 2))
        conflict = (await env.service.detect_conflicts(env.target))[0]
        bogus = ConflictResolution(
            resolution_type=ResolutionType.USER_CHOICE,
            description="Disable someone else",
            can_auto_resolve=True,
            actions=[ResolutionAction(action_type=ActionType.DISABLE_PACKAGE, target="stranger")],
        )

        check = env.service.validate_resolution(conflict, bogus)
        result = await env.service.resolve_conflict(conflict, env.target, override_critical=True, resolution=bogus)

        assert not check.passed
        assert "stranger" in check.details
        assert not result.success


class RecordingResolver:
    """Stands in for DependencyResolver; records what it was asked to install."""

    def __init__(self):
        self.requests = []

    async def install_missing_dependencies(self, resolution, target):
        self.requests.append(list(resolution.missing))
        return OperationResult.ok("Installed", data=[d.id for d in resolution.missing])


def custom(action_type: ActionType, target: str = "", **parameters) -> ConflictResolution:
    return ConflictResolution(
        resolution_type=ResolutionType.USER_CHOICE,
        description=f"{action_type} {target}",
        can_auto_resolve=True,
        actions=[ResolutionAction(action_type=action_type, target=target, parameters=parameters)],
    )


@pytest.mark.asyncio
async def test_plugin_named_after_loader_is_a_dependency():
    """Only exact loader ids are skipped; a plugin with the loader's name in its id still conflicts."""
    with tempfile.TemporaryDirectory() as tmpdir:
        env = Env(tmpdir)
        await env.add(
            record("a", 1, dependencies=["Azumatt-Official_BepInEx_ConfigurationManager>=18.0"]),
            record("b", 2, dependencies=["Azumatt-Official_BepInEx_ConfigurationManager<18.0"]),
        )

        conflicts = await env.service.detect_conflicts(env.target)

        assert [c.kind for c in conflicts] == [ConflictKind.DEPENDENCY]
        assert conflicts[0].participants == ["a", "b"]


@pytest.mark.asyncio
async def test_keep_option_only_for_copy_on_disk():
    """Keeping an earlier claimant's copy cannot be done by bookkeeping, so it is not offered as automatic."""
    with tempfile.TemporaryDirectory() as tmpdir:
        env = Env(tmpdir)
        shared = "BepInEx/config/x.cfg"
        await env.add(record("a", 1, files=[shared]), record("b", 2, files=[shared]))
        env.write(shared, b"B-CONTENT")
        conflict = (await env.service.detect_conflicts(env.target))[0]

        options = env.service.get_resolution_options(conflict)
        keep = {
            o.actions[0].parameters["owner"]: o for o in options if o.actions[0].action_type == ActionType.REPLACE_FILE
        }
        assert not keep["a"].can_auto_resolve
        assert keep["a"].resolution_type == ResolutionType.MANUAL
        assert keep["b"].can_auto_resolve

        refused = await env.service.resolve_conflict(conflict, env.target, resolution=keep["a"])
        forced = keep["a"].model_copy(update={"can_auto_resolve": True})
        check = env.service.validate_resolution(conflict, forced)
        assert not refused.success
        assert not check.passed
        assert "belongs to b" in check.details
        assert not (await env.service.resolve_conflict(conflict, env.target, resolution=forced)).success
        assert (env.target.root / shared).read_bytes() == b"B-CONTENT"
        assert (await env.store.get_record(env.target, "a")).files == [shared]

        kept = await env.service.resolve_conflict(conflict, env.target, resolution=keep["b"])
        assert kept.success
        assert (await env.store.get_record(env.target, "a")).files == []
        assert (await env.store.get_record(env.target, "b")).files == [shared]
        assert (env.target.root / shared).read_bytes() == b"B-CONTENT"


@pytest.mark.asyncio
async def test_version_conflict_needing_install_is_not_automatic():
    """Keeping a version that is not on disk needs update_package; keeping the installed one is bookkeeping."""
    with tempfile.TemporaryDirectory() as tmpdir:
        env = Env(tmpdir)
        await env.add(record("mod", 1, version="1.0.0", files=["BepInEx/plugins/mod/Mod.dll"]))
        newer = PackageDescriptor(id="mod", version="2.0.0")
        older = PackageDescriptor(id="mod", version="0.9.0")

        upgrade = (await env.service.detect_conflicts(env.target, newer))[0]
        assert not upgrade.resolution.can_auto_resolve
        assert upgrade.resolution.resolution_type == ResolutionType.MANUAL
        assert "update_package" in upgrade.resolution.description
        assert not (await env.service.resolve_conflict(upgrade, env.target)).success

        forced = upgrade.resolution.model_copy(update={"can_auto_resolve": True})
        result = await env.service.resolve_conflict(upgrade, env.target, resolution=forced)
        assert not result.success
        assert "update_package" in result.error
        assert (await env.store.get_record(env.target, "mod")).version == "1.0.0"

        downgrade = (await env.service.detect_conflicts(env.target, older))[0]
        assert downgrade.resolution.can_auto_resolve
        kept = await env.service.resolve_conflict(downgrade, env.target)
        assert kept.success
        assert (await env.store.get_record(env.target, "mod")).version == "1.0.0"


@pytest.mark.asyncio
async def test_delete_file_resolution():
    with tempfile.TemporaryDirectory() as tmpdir:
        env = Env(tmpdir)
        await env.add(record("a", 1, files=["notes.txt"]), record("b", 2, files=["notes.txt"]))
        env.write("notes.txt", b"notes")
        conflict = (await env.service.detect_conflicts(env.target))[0]
        delete = custom(ActionType.DELETE_FILE, "notes.txt")

        result = await env.service.resolve_conflict(conflict, env.target, resolution=delete)

        assert result.success, result.error
        assert not (env.target.root / "notes.txt").exists()
        assert (await env.store.get_record(env.target, "a")).files == []
        assert (await env.store.get_record(env.target, "b")).files == []
        assert await env.service.detect_conflicts(env.target) == []


@pytest.mark.asyncio
async def test_rename_file_resolution():
    with tempfile.TemporaryDirectory() as tmpdir:
        env = Env(tmpdir)
        shared = "BepInEx/config/shared.cfg"
        await env.add(record("a", 1, files=[shared]), record("b", 2, files=[shared]))
        env.write(shared, b"[General]")
        conflict = (await env.service.detect_conflicts(env.target))[0]
        rename = custom(ActionType.RENAME_FILE, shared, destination="BepInEx/config/shared.old.cfg")

        result = await env.service.resolve_conflict(conflict, env.target, resolution=rename)

        assert result.success, result.error
        assert not (env.target.root / shared).exists()
        assert (env.target.root / "BepInEx/config/shared.old.cfg").read_bytes() == b"[General]"
        assert (await env.store.get_record(env.target, "a")).files == ["BepInEx/config/shared.old.cfg"]


@pytest.mark.asyncio
async def test_move_without_destination_is_rejected():
    with tempfile.TemporaryDirectory() as tmpdir:
        env = Env(tmpdir)
        shared = "BepInEx/config/shared.cfg"
        await env.add(record("a", 1, files=[shared]), record("b", 2, files=[shared]))
        env.write(shared, b"[General]")
        conflict = (await env.service.detect_conflicts(env.target))[0]

        missing = env.service.validate_resolution(conflict, custom(ActionType.MOVE_FILE, shared))
        escaping = env.service.validate_resolution(conflict, custom(ActionType.MOVE_FILE, shared, destination="../x.cfg"))
        result = await env.service.resolve_conflict(conflict, env.target, resolution=custom(ActionType.MOVE_FILE, shared))

        assert not missing.passed
        assert "destination" in missing.details
        assert not escaping.passed
        assert not result.success
        assert (env.target.root / shared).exists()
        assert await env.backups.list_backups(env.target) == []


@pytest.mark.asyncio
async def test_install_dependency_resolution():
    with tempfile.TemporaryDirectory() as tmpdir:
        resolver = RecordingResolver()
        env = Env(tmpdir, resolver=resolver)
        await env.add(
            record("new-ui", 1, dependencies=["core-lib>=2.0"]), record("old-ui", 2, dependencies=["core-lib<2.0"])
        )
        conflict = (await env.service.detect_conflicts(env.target))[0]
        install = custom(ActionType.INSTALL_DEPENDENCY, "core-lib", dependency="core-lib>=2.0")

        result = await env.service.resolve_conflict(conflict, env.target, resolution=install)

        assert result.success, result.error
        assert [(d.id, d.constraint) for d in resolver.requests[0]] == [("core-lib", ">=2.0")]


@pytest.mark.asyncio
async def test_install_dependency_needs_resolver():
    with tempfile.TemporaryDirectory() as tmpdir:
        env = Env(tmpdir)
        await env.add(
            record("new-ui", 1, dependencies=["core-lib>=2.0"]), record("old-ui", 2, dependencies=["core-lib<2.0"])
        )
        conflict = (await env.service.detect_conflicts(env.target))[0]

        result = await env.service.resolve_conflict(
            conflict, env.target, resolution=custom(ActionType.INSTALL_DEPENDENCY, "core-lib")
        )

        assert not result.success
        assert "resolver" in result.error
