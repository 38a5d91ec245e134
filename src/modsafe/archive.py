"""Package archive extraction and payload mapping.

A package archive is a zip holding ``manifest.json`` either at its root or
inside a single wrapper directory. Loader archives carry no manifest and are
laid out exactly as they land in the target.
"""

import asyncio
import logging
import zipfile
from dataclasses import dataclass
from pathlib import Path

from .exceptions import PackageManifestError
from .exceptions import UnsafePathError
from .models import TargetInstallation
from .schema import MANIFEST_FILE_NAME
from .schema import PackageDescriptor
from .utils import iter_files
from .utils import normalize_relative_path

logger = logging.getLogger(__name__)

# Package metadata at the package root, never installed
METADATA_FILES = {"manifest.json", "icon.png", "readme.md", "changelog.md", "license", "license.txt", "license.md"}

# Loader sub-directories a package may ship without the loader prefix
LOADER_SUBDIRS = {"plugins", "config", "patchers", "core", "monomod"}


@dataclass(frozen=True, slots=True)
class ExtractedPackage:
    root: Path
    descriptor: PackageDescriptor
    # (source file, target-relative path)
    payload: list[tuple[Path, str]]


def extract_archive(archive_path: Path, destination: Path) -> Path:
    """
    Extract a zip archive, refusing entries that escape ``destination``.

    Raises:
        PackageManifestError: If the archive is missing or not a valid zip
        UnsafePathError: If an entry would be written outside ``destination``
    """
    if not archive_path.is_file():
        raise PackageManifestError(f"Archive not found: {archive_path}", context={"archive": str(archive_path)})

    destination.mkdir(parents=True, exist_ok=True)
    root = destination.resolve()
    try:
        with zipfile.ZipFile(archive_path, "r") as zf:
            for info in zf.infolist():
                target = (destination / info.filename).resolve()
                if not target.is_relative_to(root):
                    raise UnsafePathError(
                        f"Archive entry escapes extraction directory: {info.filename}",
                        context={"archive": str(archive_path), "entry": info.filename},
                    )
            zf.extractall(destination)
    except zipfile.BadZipFile as e:
        raise PackageManifestError(f"Invalid archive {archive_path}: {e}", context={"archive": str(archive_path)}) from e

    logger.debug(f"Extracted {archive_path.name} to {destination}")
    return destination


def find_package_root(directory: Path) -> Path | None:
    """Find the package root by locating manifest.json.

    Supports both structures:
    - Flat: directory/manifest.json
    - Wrapped: directory/<single-dir>/manifest.json

    Returns:
        Path to the directory holding manifest.json, or None if not found
    """
    if (directory / MANIFEST_FILE_NAME).exists():
        return directory

    for item in sorted(directory.iterdir()):
        if item.is_dir() and not item.name.startswith(".") and (item / MANIFEST_FILE_NAME).exists():
            return item

    return None


def _map_path(relative: str, package_id: str, target: TargetInstallation) -> str:
    loader_prefix = target.loader_dir.lower() + "/"
    if relative.lower().startswith(loader_prefix):
        return relative
    first = relative.split("/", 1)[0].lower()
    if first in LOADER_SUBDIRS and "/" in relative:
        return f"{target.loader_dir}/{relative}"
    return f"{target.plugins_dir}/{package_id}/{relative}"


def plan_payload(
    package_root: Path,
    descriptor: PackageDescriptor,
    target: TargetInstallation,
    verbatim: bool = False,
) -> list[tuple[Path, str]]:
    """
    Map extracted files to target-relative paths.

    When the manifest declares ``files`` they are taken as target-relative
    paths inside the package root. Otherwise every non-metadata file is
    placed under the loader directory (if already laid out that way) or under
    ``<plugins_dir>/<id>/``. ``verbatim`` keeps archive paths unchanged
    (loader archives).

    Raises:
        PackageManifestError: If a declared file is missing from the archive
    """
    if descriptor.files and not verbatim:
        payload = []
        for declared in descriptor.files:
            relative = normalize_relative_path(declared)
            source = package_root / relative
            if not source.is_file():
                raise PackageManifestError(
                    f"Declared file missing from archive: {relative}",
                    context={"id": descriptor.id, "file": relative},
                )
            payload.append((source, relative))
        return payload

    payload = []
    for source in iter_files(package_root):
        relative = source.relative_to(package_root).as_posix()
        if "/" not in relative and relative.lower() in METADATA_FILES and not verbatim:
            continue
        payload.append((source, relative if verbatim else _map_path(relative, descriptor.id, target)))
    return payload


def open_package(
    archive_path: Path,
    work_dir: Path,
    target: TargetInstallation,
    fallback_id: str | None = None,
) -> ExtractedPackage:
    """
    Extract a package archive and read its manifest.

    Args:
        archive_path: Package zip
        work_dir: Empty directory to extract into (caller owns its cleanup)
        target: Target installation (for payload mapping)
        fallback_id: Id used when the manifest names none (defaults to the archive stem)

    Raises:
        PackageManifestError: If no manifest is found or it is invalid
        UnsafePathError: If the archive tries to escape the work directory
    """
    extract_archive(archive_path, work_dir)
    root = find_package_root(work_dir)
    if root is None:
        raise PackageManifestError(
            f"No {MANIFEST_FILE_NAME} found in {archive_path.name}",
            context={"archive": str(archive_path)},
        )

    descriptor = PackageDescriptor.from_manifest(root / MANIFEST_FILE_NAME, fallback_id=fallback_id or archive_path.stem)
    payload = plan_payload(root, descriptor, target)
    logger.debug(f"Opened package {descriptor.id} {descriptor.version} with {len(payload)} files")
    return ExtractedPackage(root=root, descriptor=descriptor, payload=payload)


async def open_package_async(
    archive_path: Path,
    work_dir: Path,
    target: TargetInstallation,
    fallback_id: str | None = None,
) -> ExtractedPackage:
    """``open_package`` on a worker thread."""
    return await asyncio.to_thread(open_package, archive_path, work_dir, target, fallback_id)
