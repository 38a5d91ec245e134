"""Tests for package manifests and archive handling."""

import json
import tempfile
import zipfile
from pathlib import Path

import pytest
from modsafe import PackageDescriptor
from modsafe import PackageManifestError
from modsafe import TargetInstallation
from modsafe import UnsafePathError
from modsafe.archive import find_package_root
from modsafe.archive import open_package
from modsafe.schema import DependencySpec


def make_archive(path: Path, files: dict[str, bytes | str]) -> Path:
    with zipfile.ZipFile(path, "w") as zf:
        for name, content in files.items():
            zf.writestr(name, content)
    return path


def test_dependency_spec_forms():
    """Dependency strings in every supported form."""
    plain = DependencySpec.parse("core-lib")
    assert plain.id == "core-lib"
    assert plain.constraint is None

    ranged = DependencySpec.parse("core-lib>=2.0")
    assert ranged.id == "core-lib"
    assert ranged.constraint == ">=2.0"

    tilde = DependencySpec.parse("ui-kit~1.4")
    assert tilde.id == "ui-kit"
    assert tilde.constraint == "~1.4"

    thunderstore = DependencySpec.parse("BepInEx-BepInExPack-5.4.2100")
    assert thunderstore.id == "BepInEx-BepInExPack"
    assert thunderstore.constraint == ">=5.4.2100"

    mapping = DependencySpec.parse({"id": "ui-kit", "version": "^1.4", "optional": True})
    assert mapping.id == "ui-kit"
    assert mapping.constraint == "^1.4"
    assert mapping.optional


def test_dependency_spec_rejects_empty():
    with pytest.raises(PackageManifestError):
        DependencySpec.parse("  ")
    with pytest.raises(PackageManifestError):
        DependencySpec.parse({"version": "1.0"})


def test_descriptor_from_native_manifest():
    with tempfile.TemporaryDirectory() as tmpdir:
        manifest = Path(tmpdir) / "manifest.json"
        manifest.write_text(
            json.dumps(
                {
                    "id": "example-mod",
                    "name": "Example Mod",
                    "version": "1.2.0",
                    "author": "someone",
                    "dependencies": ["core-lib>=2.0"],
                    "conflicts": ["legacy-example"],
                    "loader_version": ">=5.4",
                }
            )
        )

        descriptor = PackageDescriptor.from_manifest(manifest)

        assert descriptor.id == "example-mod"
        assert descriptor.version == "1.2.0"
        assert descriptor.dependencies[0].id == "core-lib"
        assert descriptor.conflicts == ["legacy-example"]
        assert descriptor.loader_version == ">=5.4"


def test_descriptor_from_thunderstore_manifest():
    """Thunderstore manifests use name/version_number and namespaced dependencies."""
    descriptor = PackageDescriptor.from_dict(
        {
            "name": "Cool_Mod",
            "version_number": "1.2.3",
            "website_url": "https://example.invalid",
            "dependencies": ["BepInEx-BepInExPack-5.4.2100"],
        }
    )

    assert descriptor.id == "Cool_Mod"
    assert descriptor.name == "Cool Mod"
    assert descriptor.version == "1.2.3"
    assert descriptor.author == "Unknown"
    assert descriptor.dependencies[0].constraint == ">=5.4.2100"


def test_descriptor_rejects_bad_version_and_missing_id():
    with pytest.raises(PackageManifestError):
        PackageDescriptor.from_dict({"id": "x", "version": "latest"})
    with pytest.raises(PackageManifestError):
        PackageDescriptor.from_dict({"version": "1.0"})


def test_from_manifest_missing_or_invalid():
    with tempfile.TemporaryDirectory() as tmpdir:
        missing = Path(tmpdir) / "manifest.json"
        with pytest.raises(PackageManifestError, match="not found"):
            PackageDescriptor.from_manifest(missing)

        missing.write_text("{not json")
        with pytest.raises(PackageManifestError, match="Invalid manifest"):
            PackageDescriptor.from_manifest(missing)


def test_find_package_root_flat_and_wrapped():
    with tempfile.TemporaryDirectory() as tmpdir:
        flat = Path(tmpdir) / "flat"
        flat.mkdir()
        (flat / "manifest.json").write_text("{}")
        assert find_package_root(flat) == flat

        wrapped = Path(tmpdir) / "wrapped"
        inner = wrapped / "example-mod-1.0"
        inner.mkdir(parents=True)
        (inner / "manifest.json").write_text("{}")
        assert find_package_root(wrapped) == inner

        empty = Path(tmpdir) / "empty"
        empty.mkdir()
        assert find_package_root(empty) is None


def test_open_package_maps_payload():
    """Files without a declared layout land under the package's plugin folder."""
    with tempfile.TemporaryDirectory() as tmpdir:
        tmp = Path(tmpdir)
        target = TargetInstallation(root=tmp / "game")
        archive = make_archive(
            tmp / "cool.zip",
            {
                "manifest.json": json.dumps({"id": "cool-mod", "version": "1.0.0"}),
                "icon.png": b"png",
                "README.md": "# Cool",
                "Cool.dll": b"MZ\x90\x00",
                "plugins/Extra.dll": b"MZ\x90\x00",
                "BepInEx/config/cool.cfg": "[General]",
            },
        )

        package = open_package(archive, tmp / "work", target)

        mapped = sorted(relative for _, relative in package.payload)
        assert mapped == [
            "BepInEx/config/cool.cfg",
            "BepInEx/plugins/Extra.dll",
            "BepInEx/plugins/cool-mod/Cool.dll",
        ]
        assert package.descriptor.id == "cool-mod"


def test_open_package_declared_files():
    with tempfile.TemporaryDirectory() as tmpdir:
        tmp = Path(tmpdir)
        target = TargetInstallation(root=tmp / "game")
        archive = make_archive(
            tmp / "declared.zip",
            {
                "pkg/manifest.json": json.dumps(
                    {"id": "declared", "version": "2.0", "files": ["BepInEx/plugins/declared/D.dll"]}
                ),
                "pkg/BepInEx/plugins/declared/D.dll": b"MZ",
                "pkg/notes.txt": "not installed",
            },
        )

        package = open_package(archive, tmp / "work", target)

        assert [relative for _, relative in package.payload] == ["BepInEx/plugins/declared/D.dll"]


def test_open_package_declared_file_missing():
    with tempfile.TemporaryDirectory() as tmpdir:
        tmp = Path(tmpdir)
        archive = make_archive(
            tmp / "broken.zip",
            {"manifest.json": json.dumps({"id": "broken", "version": "1.0", "files": ["BepInEx/plugins/x.dll"]})},
        )

        with pytest.raises(PackageManifestError, match="missing from archive"):
            open_package(archive, tmp / "work", TargetInstallation(root=tmp / "game"))


def test_open_package_rejects_traversal():
    with tempfile.TemporaryDirectory() as tmpdir:
        tmp = Path(tmpdir)
        archive = make_archive(
            tmp / "evil.zip",
            {"manifest.json": json.dumps({"id": "evil", "version": "1.0"}), "../evil.dll": b"MZ"},
        )

        with pytest.raises(UnsafePathError):
            open_package(archive, tmp / "work", TargetInstallation(root=tmp / "game"))
        assert not (tmp / "evil.dll").exists()


def test_open_package_without_manifest():
    with tempfile.TemporaryDirectory() as tmpdir:
        tmp = Path(tmpdir)
        archive = make_archive(tmp / "bare.zip", {"Some.dll": b"MZ"})

        with pytest.raises(PackageManifestError, match="No manifest.json"):
            open_package(archive, tmp / "work", TargetInstallation(root=tmp / "game"))
