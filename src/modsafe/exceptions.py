"""modsafe exceptions.

Expected failures (checksum mismatch, missing dependency, conflicts) are
reported through result objects. These exceptions are for conditions the
caller cannot recover from locally: misuse of the staging state machine,
unparseable manifests, paths escaping the target.
"""


class ModSafeError(Exception):
    """Base exception for modsafe operations."""

    def __init__(self, message: str, context: dict | None = None):
        """Initialize with message and optional context.

        Args:
            message: Human-readable error message
            context: Optional dict with additional context (file paths, ids, etc.)
        """
        super().__init__(message)
        self.message = message
        self.context = context or {}


class StageStateError(ModSafeError):
    """Illegal installation stage transition (programmer error)."""


class PackageManifestError(ModSafeError):
    """Invalid or missing package manifest."""


class UnsafePathError(ModSafeError):
    """A package path resolves outside the target directory."""


class VerificationError(ModSafeError):
    """A checksum could not be computed."""


class PackageStateError(ModSafeError):
    """The installed-package state file is unreadable."""
