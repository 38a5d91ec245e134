"""File checksum, signature, integrity and permission verification.

Every ``verify_*`` method is read-only and returns a ``ValidationResult``;
expected failures (missing file, mismatch, bad signature) never raise, so
callers can collect a full diagnostic set. Only programmer errors (``None``
paths, unknown algorithms) raise.
"""

import asyncio
import base64
import binascii
import hashlib
import logging
import uuid
from pathlib import Path

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519

from .exceptions import VerificationError
from .models import FileSignature
from .models import ValidationKind
from .models import ValidationResult

logger = logging.getLogger(__name__)

SUPPORTED_ALGORITHMS = ("sha256", "sha1", "sha384", "sha512", "md5")
DEFAULT_ALGORITHM = "sha256"

_CHUNK_SIZE = 1024 * 1024


def _require_path(path: Path | str | None) -> Path:
    if path is None:
        raise ValueError("path must not be None")
    return Path(path)


def _new_hash(algorithm: str):
    name = algorithm.lower().replace("-", "")
    if name not in SUPPORTED_ALGORITHMS:
        raise ValueError(f"Unsupported hash algorithm: {algorithm}")
    return hashlib.new(name)


def _hash_file(path: Path, algorithm: str) -> str:
    digest = _new_hash(algorithm)
    with open(path, "rb") as f:
        while chunk := f.read(_CHUNK_SIZE):
            digest.update(chunk)
    return digest.hexdigest()


def _load_public_key(public_key: str) -> ed25519.Ed25519PublicKey:
    text = public_key.strip()
    if text.startswith("-----BEGIN"):
        key = serialization.load_pem_public_key(text.encode("ascii"))
        if not isinstance(key, ed25519.Ed25519PublicKey):
            raise ValueError("Public key is not Ed25519 format")
        return key
    return ed25519.Ed25519PublicKey.from_public_bytes(base64.b64decode(text, validate=True))


class VerificationService:
    """Checksums, Ed25519 signatures, integrity and permission checks."""

    async def calculate_checksum(self, path: Path | str | None, algorithm: str = DEFAULT_ALGORITHM) -> str:
        """
        Calculate a file digest.

        Args:
            path: File to hash
            algorithm: One of SUPPORTED_ALGORITHMS (sha256 is the default)

        Returns:
            Lowercase hex digest

        Raises:
            ValueError: If path is None or the algorithm is unsupported
            VerificationError: If the file cannot be read
        """
        file_path = _require_path(path)
        _new_hash(algorithm)
        try:
            return await asyncio.to_thread(_hash_file, file_path, algorithm)
        except OSError as e:
            raise VerificationError(
                f"Failed to calculate checksum for {file_path}: {e}",
                context={"path": str(file_path), "algorithm": algorithm},
            ) from e

    async def verify_checksum(
        self,
        path: Path | str | None,
        expected: str | None,
        algorithm: str = DEFAULT_ALGORITHM,
    ) -> ValidationResult:
        """Compare a file's digest with ``expected`` (case-insensitive)."""
        file_path = _require_path(path)
        kind = ValidationKind.CHECKSUM

        if not file_path.is_file():
            return ValidationResult(
                kind=kind, passed=False, message="File does not exist", details=f"File not found: {file_path}",
                path=file_path,
            )
        if not expected:
            return ValidationResult(
                kind=kind, passed=False, message="No expected checksum provided",
                details="Expected checksum is required for verification", path=file_path,
            )

        try:
            actual = await self.calculate_checksum(file_path, algorithm)
        except VerificationError as e:
            return ValidationResult(
                kind=kind, passed=False, message="Checksum verification error", details=e.message, path=file_path
            )

        if actual == expected.strip().lower():
            return ValidationResult(
                kind=kind, passed=True, message="Checksum verification successful",
                details=f"Checksum matches: {actual}", path=file_path,
            )
        return ValidationResult(
            kind=kind, passed=False, message="Checksum verification failed",
            details=f"Expected: {expected}, Calculated: {actual}", path=file_path,
        )

    async def verify_signature(self, path: Path | str | None, signature: FileSignature | None) -> ValidationResult:
        """
        Verify an Ed25519 signature over the file's hex digest.

        The signed message is the lowercase hex digest (``signature.algorithm``)
        encoded as UTF-8, so publishers can sign without re-reading large files.
        """
        file_path = _require_path(path)
        kind = ValidationKind.SIGNATURE

        if not file_path.is_file():
            return ValidationResult(
                kind=kind, passed=False, message="File does not exist", details=f"File not found: {file_path}",
                path=file_path,
            )
        if signature is None or not signature.signature or not signature.public_key:
            return ValidationResult(
                kind=kind, passed=False, message="Invalid signature data", details="Missing signature or public key",
                path=file_path,
            )

        try:
            public_key = _load_public_key(signature.public_key)
            raw_signature = base64.b64decode(signature.signature, validate=True)
        except (ValueError, binascii.Error) as e:
            return ValidationResult(
                kind=kind, passed=False, message="Invalid signature data", details=str(e), path=file_path
            )

        try:
            digest = await self.calculate_checksum(file_path, signature.algorithm)
        except (VerificationError, ValueError) as e:
            return ValidationResult(
                kind=kind, passed=False, message="Signature verification error", details=str(e), path=file_path
            )

        try:
            public_key.verify(raw_signature, digest.encode("utf-8"))
        except InvalidSignature:
            return ValidationResult(
                kind=kind, passed=False, message="Signature verification failed",
                details="File signature does not match or is invalid", path=file_path,
            )
        return ValidationResult(
            kind=kind, passed=True, message="Signature verification successful", details="File signature is valid",
            path=file_path,
        )

    async def verify_file_integrity(self, path: Path | str | None, expected_size: int | None = None) -> ValidationResult:
        """
        Check that a file exists, is fully readable and has the expected size.

        Zero-length files fail unless ``expected_size`` is explicitly 0.
        """
        file_path = _require_path(path)
        kind = ValidationKind.FILE_INTEGRITY

        if not file_path.is_file():
            return ValidationResult(
                kind=kind, passed=False, message="File does not exist", details=f"File not found: {file_path}",
                path=file_path,
            )

        try:
            size = file_path.stat().st_size
            read = await asyncio.to_thread(self._read_all, file_path)
        except OSError as e:
            return ValidationResult(
                kind=kind, passed=False, message="File integrity check failed", details=f"Unreadable: {e}",
                path=file_path,
            )

        problems = []
        if read != size:
            problems.append(f"read {read} of {size} bytes")
        if size == 0 and expected_size != 0:
            problems.append("file is empty")
        if expected_size is not None and size != expected_size:
            problems.append(f"expected {expected_size} bytes, found {size}")

        if problems:
            return ValidationResult(
                kind=kind, passed=False, message="File integrity check failed", details="; ".join(problems),
                path=file_path,
            )
        return ValidationResult(
            kind=kind, passed=True, message="File integrity check passed",
            details=f"File is accessible and valid ({size} bytes)", path=file_path,
        )

    @staticmethod
    def _read_all(path: Path) -> int:
        total = 0
        with open(path, "rb") as f:
            while chunk := f.read(_CHUNK_SIZE):
                total += len(chunk)
        return total

    async def verify_permissions(self, path: Path | str | None, require_write: bool = False) -> ValidationResult:
        """
        Check read (and optionally write) access by actually opening the path.

        Files are opened for reading, and for appending when write access is
        required (nothing is written). Directories are checked by creating and
        deleting a marker file.
        """
        file_path = _require_path(path)
        kind = ValidationKind.PERMISSIONS

        if not file_path.exists():
            return ValidationResult(
                kind=kind, passed=False, message="File does not exist", details=f"File not found: {file_path}",
                path=file_path,
            )

        if file_path.is_dir():
            can_read = self._can_list(file_path)
            can_write = self._can_write_marker(file_path) if require_write else True
        else:
            can_read = self._can_open(file_path, "rb")
            can_write = self._can_open(file_path, "ab") if require_write else True

        passed = can_read and can_write
        return ValidationResult(
            kind=kind,
            passed=passed,
            message="Permission check passed" if passed else "Permission check failed",
            details=f"Read: {can_read}, Write: {can_write} (Required: {require_write})",
            path=file_path,
        )

    @staticmethod
    def _can_open(path: Path, mode: str) -> bool:
        try:
            with open(path, mode):
                return True
        except OSError:
            return False

    @staticmethod
    def _can_list(path: Path) -> bool:
        try:
            next(path.iterdir(), None)
            return True
        except OSError:
            return False

    @staticmethod
    def _can_write_marker(directory: Path) -> bool:
        marker = directory / f".modsafe_write_test_{uuid.uuid4().hex}"
        try:
            marker.write_bytes(b"")
            marker.unlink()
            return True
        except OSError:
            logger.debug(f"Write check failed in {directory}")
            return False
