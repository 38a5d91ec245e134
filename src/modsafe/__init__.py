"""modsafe - Safe, reversible installation of plugin packages into application directories.

Installs are staged, verified, dependency-aware, conflict-aware and backed
up. Apps inject policy (targets, settings, installed-package state, package
sources); the library is mechanism.
"""

from .backup import BackupManager
from .config import InstallerSettings
from .conflicts import ConflictDetectionService
from .conflicts import register_detector
from .exceptions import ModSafeError
from .exceptions import PackageManifestError
from .exceptions import PackageStateError
from .exceptions import StageStateError
from .exceptions import UnsafePathError
from .exceptions import VerificationError
from .installer import ModInstaller
from .linking import LinkStrategy
from .linking import choose_link_strategy
from .models import Conflict
from .models import ConflictKind
from .models import ConflictResolution
from .models import ConflictSeverity
from .models import FileSignature
from .models import InstallationStage
from .models import InstallationStageStatus
from .models import InstalledPackageRecord
from .models import OperationResult
from .models import RestorePoint
from .models import TargetInstallation
from .models import UserPermissions
from .models import ValidationKind
from .models import ValidationResult
from .permissions import PermissionsService
from .protocols import InstalledPackageSource
from .protocols import InstalledPackageStore
from .protocols import PackageInstallerProtocol
from .protocols import PackageSourceProtocol
from .protocols import ProgressCallback
from .resolver import DependencyResolver
from .schema import DependencyResolution
from .schema import DependencySpec
from .schema import PackageDescriptor
from .stager import InstallationStager
from .state import InstalledPackageState
from .verification import VerificationService

__all__ = [
    # Services
    "InstallationStager",
    "VerificationService",
    "DependencyResolver",
    "ConflictDetectionService",
    "BackupManager",
    "PermissionsService",
    "ModInstaller",
    "register_detector",
    # Configuration and state
    "InstallerSettings",
    "InstalledPackageState",
    # Protocols
    "InstalledPackageSource",
    "InstalledPackageStore",
    "PackageSourceProtocol",
    "PackageInstallerProtocol",
    "ProgressCallback",
    "LinkStrategy",
    "choose_link_strategy",
    # Models
    "PackageDescriptor",
    "DependencySpec",
    "DependencyResolution",
    "TargetInstallation",
    "InstalledPackageRecord",
    "InstallationStage",
    "InstallationStageStatus",
    "ValidationKind",
    "ValidationResult",
    "Conflict",
    "ConflictKind",
    "ConflictResolution",
    "ConflictSeverity",
    "FileSignature",
    "RestorePoint",
    "UserPermissions",
    "OperationResult",
    # Exceptions
    "ModSafeError",
    "StageStateError",
    "PackageManifestError",
    "UnsafePathError",
    "VerificationError",
    "PackageStateError",
]

__version__ = "0.1.0"
