"""Package manifest schema - Parse manifest.json files.

A package archive carries a ``manifest.json`` at its root (or inside a single
wrapper directory). Both the native format and Thunderstore-style manifests
(``version_number``, ``Namespace-Name-1.2.3`` dependency strings) are read.

Minimal manifest::

    {
      "id": "example-mod",
      "name": "Example Mod",
      "version": "1.2.0",
      "author": "someone",
      "dependencies": ["core-lib>=2.0", {"id": "ui-kit", "version": "~1.4", "optional": true}],
      "conflicts": ["legacy-example"],
      "loader_version": ">=5.4",
      "files": ["BepInEx/plugins/example-mod/Example.dll"],
      "checksums": {"BepInEx/plugins/example-mod/Example.dll": "<sha256>"}
    }
"""

import json
import re
from pathlib import Path
from typing import Any

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field
from pydantic import field_validator

from .exceptions import PackageManifestError
from .models import DependencyConflict
from .models import FileSignature
from .versioning import parse_version

MANIFEST_FILE_NAME = "manifest.json"

_CONSTRAINT = re.compile(r"^(.+?)\s*(>=|<=|==|!=|~=|>|<|~|\^)\s*(.+)$")
_THUNDERSTORE = re.compile(r"^([A-Za-z0-9_]+)-([A-Za-z0-9_]+)-(\d+(?:\.\d+){1,3})$")


class DependencySpec(BaseModel):
    """A declared requirement on another package."""

    model_config = ConfigDict(frozen=True)

    id: str
    constraint: str | None = None
    optional: bool = False
    # Filled in by the resolver when a present package fails the constraint
    installed_version: str | None = None

    @classmethod
    def parse(cls, value: "str | dict[str, Any] | DependencySpec") -> "DependencySpec":
        """Parse a dependency declaration.

        Accepts ``"id"``, ``"id>=1.0"``, ``"id~1.2"``, Thunderstore strings
        (``"Namespace-Name-1.2.3"`` meaning at least that version) or a mapping
        with ``id``/``name``, ``version``/``constraint`` and ``optional`` keys.
        """
        if isinstance(value, DependencySpec):
            return value

        if isinstance(value, dict):
            dep_id = value.get("id") or value.get("name")
            if not dep_id:
                raise PackageManifestError(f"Dependency entry has no id: {value!r}")
            constraint = value.get("version") or value.get("constraint")
            return cls(id=str(dep_id).strip(), constraint=constraint, optional=bool(value.get("optional", False)))

        text = str(value).strip()
        if not text:
            raise PackageManifestError("Empty dependency declaration")

        match = _CONSTRAINT.match(text)
        if match:
            return cls(id=match.group(1).strip(), constraint=f"{match.group(2)}{match.group(3).strip()}")

        match = _THUNDERSTORE.match(text)
        if match:
            return cls(id=f"{match.group(1)}-{match.group(2)}", constraint=f">={match.group(3)}")

        return cls(id=text)

    def __str__(self) -> str:
        return f"{self.id}{self.constraint or ''}"


class DependencyResolution(BaseModel):
    """Result of resolving a package's requirements against a target."""

    resolved: list[DependencySpec] = Field(default_factory=list)
    missing: list[DependencySpec] = Field(default_factory=list)
    conflicts: list[DependencyConflict] = Field(default_factory=list)
    loader_compatible: bool = True
    loader_version: str | None = None
    required_loader_version: str | None = None

    @property
    def is_valid(self) -> bool:
        return not self.missing and not self.conflicts and self.loader_compatible


class PackageDescriptor(BaseModel):
    """
    Package (mod or loader) metadata from manifest.json.

    ``files`` are target-relative paths; when a manifest declares none, the
    archive payload is placed under the target's plugin directory instead.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    version: str
    name: str = ""
    author: str = ""
    description: str = ""
    dependencies: list[DependencySpec] = Field(default_factory=list)
    conflicts: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    files: list[str] = Field(default_factory=list)
    checksums: dict[str, str] = Field(default_factory=dict)
    loader_version: str | None = None
    load_before: list[str] = Field(default_factory=list)
    load_after: list[str] = Field(default_factory=list)
    signature: FileSignature | None = None
    website_url: str | None = None

    @field_validator("id")
    @classmethod
    def _id_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("package id must not be empty")
        return value.strip()

    @field_validator("version")
    @classmethod
    def _version_comparable(cls, value: str) -> str:
        if parse_version(value) is None:
            raise ValueError(f"package version is not comparable: {value!r}")
        return value.strip()

    @field_validator("dependencies", mode="before")
    @classmethod
    def _parse_dependencies(cls, value: Any) -> Any:
        if value is None:
            return []
        return [DependencySpec.parse(item) for item in value]

    @classmethod
    def from_manifest(cls, manifest_path: Path, fallback_id: str | None = None) -> "PackageDescriptor":
        """
        Load package metadata from a manifest.json file.

        Args:
            manifest_path: Path to manifest.json
            fallback_id: Id to use when the manifest has neither ``id`` nor ``name``

        Returns:
            PackageDescriptor instance

        Raises:
            PackageManifestError: If the file is missing, not JSON, or lacks an id
        """
        if not manifest_path.exists():
            raise PackageManifestError(
                f"manifest.json not found: {manifest_path}", context={"manifest_path": str(manifest_path)}
            )

        try:
            with open(manifest_path, encoding="utf-8-sig") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise PackageManifestError(
                f"Invalid manifest {manifest_path}: {e}", context={"manifest_path": str(manifest_path)}
            ) from e

        if not isinstance(data, dict):
            raise PackageManifestError(f"Manifest {manifest_path} is not a JSON object")

        return cls.from_dict(data, fallback_id=fallback_id)

    @classmethod
    def from_dict(cls, data: dict[str, Any], fallback_id: str | None = None) -> "PackageDescriptor":
        """Build a descriptor from already-decoded manifest data."""
        package_id = data.get("id") or data.get("name") or fallback_id
        if not package_id:
            raise PackageManifestError("Manifest has no id or name", context={"keys": sorted(data)})

        raw_name = data.get("name") or package_id
        signature = data.get("signature")

        try:
            return cls(
                id=package_id,
                # Thunderstore manifests use version_number
                version=data.get("version") or data.get("version_number") or "1.0.0",
                name=str(raw_name).replace("_", " "),
                author=data.get("author", "Unknown"),
                description=data.get("description", ""),
                dependencies=data.get("dependencies", []),
                conflicts=data.get("conflicts", data.get("incompatibilities", [])),
                tags=data.get("tags", []),
                files=data.get("files", []),
                checksums=data.get("checksums", {}),
                loader_version=data.get("loader_version"),
                load_before=data.get("load_before", []),
                load_after=data.get("load_after", []),
                signature=FileSignature(**signature) if isinstance(signature, dict) else None,
                website_url=data.get("website_url"),
            )
        except ValueError as e:
            raise PackageManifestError(f"Invalid manifest for '{package_id}': {e}", context={"id": package_id}) from e
