"""Data model shared by the installation services.

Value objects are frozen pydantic models; the installation stage is the one
mutable work-area and is updated in place by the stager.
"""

from datetime import UTC
from datetime import datetime
from enum import StrEnum
from pathlib import Path
from typing import Any

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field


def _utcnow() -> datetime:
    return datetime.now(UTC)


# --- Enumerations ---


class InstallationStageStatus(StrEnum):
    PENDING = "pending"
    STAGING = "staging"
    VALIDATING = "validating"
    TESTING = "testing"
    READY = "ready"
    COMMITTED = "committed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class ValidationKind(StrEnum):
    CHECKSUM = "checksum"
    SIGNATURE = "signature"
    FILE_INTEGRITY = "file_integrity"
    PERMISSIONS = "permissions"
    DEPENDENCY = "dependency"


class ConflictKind(StrEnum):
    FILE = "file"
    VERSION = "version"
    DEPENDENCY = "dependency"
    LOAD_ORDER = "load_order"
    CONFIG = "config"
    DECLARED = "declared"


class ConflictSeverity(StrEnum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    ConflictSeverity.INFO: 0,
    ConflictSeverity.WARNING: 1,
    ConflictSeverity.ERROR: 2,
    ConflictSeverity.CRITICAL: 3,
}


class ResolutionType(StrEnum):
    AUTOMATIC = "automatic"
    USER_CHOICE = "user_choice"
    MANUAL = "manual"


class ActionType(StrEnum):
    RENAME_FILE = "rename_file"
    MOVE_FILE = "move_file"
    DELETE_FILE = "delete_file"
    REPLACE_FILE = "replace_file"
    INSTALL_DEPENDENCY = "install_dependency"
    UPDATE_PACKAGE = "update_package"
    DISABLE_PACKAGE = "disable_package"
    CHANGE_LOAD_ORDER = "change_load_order"
    MERGE_CONFIG = "merge_config"
    SKIP = "skip"


class DependencyConflictKind(StrEnum):
    VERSION_MISMATCH = "version_mismatch"
    CIRCULAR_DEPENDENCY = "circular_dependency"


# --- Operation results ---


class OperationResult(BaseModel):
    """Uniform result returned by every public operation.

    ``data`` carries the operation-specific payload (a RestorePoint, a
    DependencyResolution, a list of conflicts, ...).
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    success: bool
    message: str = ""
    error: str | None = None
    data: Any = None

    @classmethod
    def ok(cls, message: str = "Operation completed successfully", data: Any = None) -> "OperationResult":
        return cls(success=True, message=message, data=data)

    @classmethod
    def fail(cls, error: str, message: str = "Operation failed", data: Any = None) -> "OperationResult":
        return cls(success=False, message=message, error=error, data=data)


class ValidationResult(BaseModel):
    """Outcome of a single check (immutable once produced)."""

    model_config = ConfigDict(frozen=True)

    kind: ValidationKind
    passed: bool
    message: str
    details: str = ""
    path: Path | None = None
    timestamp: datetime = Field(default_factory=_utcnow)


# --- Target and installed state ---


class TargetInstallation(BaseModel):
    """The application directory tree being mutated."""

    model_config = ConfigDict(frozen=True)

    root: Path
    loader_version: str | None = None
    is_valid: bool = True
    name: str = ""
    loader_dir: str = "BepInEx"
    plugins_dir: str = "BepInEx/plugins"
    config_dir: str = "BepInEx/config"


class InstalledPackageRecord(BaseModel):
    """Persisted fact that a package is present in a target."""

    model_config = ConfigDict(frozen=True)

    id: str
    version: str
    name: str = ""
    enabled: bool = True
    installed_at: datetime = Field(default_factory=_utcnow)
    files: list[str] = Field(default_factory=list)
    dependencies: list[str] = Field(default_factory=list)
    conflicts: list[str] = Field(default_factory=list)
    load_before: list[str] = Field(default_factory=list)
    load_after: list[str] = Field(default_factory=list)
    is_loader: bool = False


class FileSignature(BaseModel):
    """Detached Ed25519 signature over a file's checksum."""

    model_config = ConfigDict(frozen=True)

    signature: str
    public_key: str
    algorithm: str = "sha256"


# --- Dependency resolution ---


class DependencyConflict(BaseModel):
    model_config = ConfigDict(frozen=True)

    package_id: str
    kind: DependencyConflictKind
    description: str
    required_version: str | None = None
    installed_versions: list[str] = Field(default_factory=list)


# --- Conflicts ---


class ResolutionAction(BaseModel):
    model_config = ConfigDict(frozen=True)

    action_type: ActionType
    description: str = ""
    target: str = ""
    parameters: dict[str, Any] = Field(default_factory=dict)


class ConflictResolution(BaseModel):
    model_config = ConfigDict(frozen=True)

    resolution_type: ResolutionType
    description: str
    can_auto_resolve: bool = False
    actions: list[ResolutionAction] = Field(default_factory=list)


class Conflict(BaseModel):
    """A detected incompatibility between packages or with the target state."""

    model_config = ConfigDict(frozen=True)

    conflict_id: str
    kind: ConflictKind
    participants: list[str]
    severity: ConflictSeverity
    description: str
    files: list[str] = Field(default_factory=list)
    resolution: ConflictResolution | None = None

    @property
    def is_blocking(self) -> bool:
        return self.severity == ConflictSeverity.CRITICAL


# --- Staging ---


class StagedFile(BaseModel):
    """One file inside a stage."""

    source_path: Path
    staged_path: Path
    relative_path: str
    checksum: str
    size: int
    is_executable: bool = False
    expected_checksum: str | None = None


class InstallationStage(BaseModel):
    """Transactional work area owned by one install/uninstall operation."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    stage_id: str
    temp_path: Path
    target_path: Path
    status: InstallationStageStatus = InstallationStageStatus.PENDING
    files: list[StagedFile] = Field(default_factory=list)
    removals: list[str] = Field(default_factory=list)
    validation_results: list[ValidationResult] = Field(default_factory=list)
    created: datetime = Field(default_factory=_utcnow)
    package: Any = None
    installation: TargetInstallation | None = None
    # (relative_path, rollback copy or None when the file did not exist before)
    journal: list[tuple[str, Path | None]] = Field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status in (
            InstallationStageStatus.COMMITTED,
            InstallationStageStatus.FAILED,
            InstallationStageStatus.ROLLED_BACK,
        )

    @property
    def rollback_path(self) -> Path:
        return self.temp_path / "__rollback__"

    @property
    def payload_path(self) -> Path:
        return self.temp_path / "payload"


# --- Backups ---


class RestorePoint(BaseModel):
    """Snapshot of installed packages and loader state."""

    id: str
    name: str
    created: datetime
    backup_path: Path
    description: str = ""
    packages: list[InstalledPackageRecord] = Field(default_factory=list)
    loader_version: str | None = None
    target_root: str = ""
    size: int = 0
    is_automatic: bool = False
    tags: list[str] = Field(default_factory=list)
    skipped_files: list[str] = Field(default_factory=list)


# --- Permissions ---


class UserPermissions(BaseModel):
    """Elevation and write capability snapshot (computed per call)."""

    model_config = ConfigDict(frozen=True)

    is_elevated: bool = False
    can_write: bool = False
    can_create_system_files: bool = False
    requires_elevation: bool = False
    elevation_reason: str | None = None
