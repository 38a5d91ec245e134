"""Tests for VerificationService."""

import base64
import hashlib
import tempfile
from pathlib import Path

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from modsafe import FileSignature
from modsafe import ValidationKind
from modsafe import VerificationError
from modsafe import VerificationService


def sign_file(path: Path, key: Ed25519PrivateKey, pem: bool = False) -> FileSignature:
    digest = hashlib.sha256(path.read_bytes()).hexdigest()
    public = key.public_key()
    if pem:
        public_key = public.public_bytes(
            serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo
        ).decode("ascii")
    else:
        public_key = base64.b64encode(
            public.public_bytes(serialization.Encoding.Raw, serialization.PublicFormat.Raw)
        ).decode("ascii")
    signature = base64.b64encode(key.sign(digest.encode("utf-8"))).decode("ascii")
    return FileSignature(signature=signature, public_key=public_key)


@pytest.mark.asyncio
async def test_checksum_round_trip():
    """A file verifies against its own digest and fails after a one-byte change."""
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "plugin.dll"
        path.write_bytes(b"MZ" + bytes(range(200)))
        service = VerificationService()

        checksum = await service.calculate_checksum(path)
        assert checksum == hashlib.sha256(path.read_bytes()).hexdigest()

        result = await service.verify_checksum(path, checksum)
        assert result.passed
        assert result.kind == ValidationKind.CHECKSUM

        upper = await service.verify_checksum(path, checksum.upper())
        assert upper.passed

        data = bytearray(path.read_bytes())
        data[10] ^= 0xFF
        path.write_bytes(bytes(data))

        mutated = await service.verify_checksum(path, checksum)
        assert not mutated.passed
        assert mutated.message == "Checksum verification failed"


@pytest.mark.asyncio
async def test_checksum_algorithms():
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "a.txt"
        path.write_text("hello")
        service = VerificationService()

        assert await service.calculate_checksum(path, "md5") == hashlib.md5(b"hello").hexdigest()
        assert await service.calculate_checksum(path, "SHA-512") == hashlib.sha512(b"hello").hexdigest()

        with pytest.raises(ValueError):
            await service.calculate_checksum(path, "crc32")
        with pytest.raises(ValueError):
            await service.calculate_checksum(None)


@pytest.mark.asyncio
async def test_checksum_missing_file():
    """Missing files fail verification but raise from calculate_checksum."""
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "missing.dll"
        service = VerificationService()

        result = await service.verify_checksum(path, "00")
        assert not result.passed
        assert result.message == "File does not exist"

        with pytest.raises(VerificationError):
            await service.calculate_checksum(path)


@pytest.mark.asyncio
async def test_checksum_without_expected_value():
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "a.txt"
        path.write_text("x")

        result = await VerificationService().verify_checksum(path, "")

        assert not result.passed
        assert result.message == "No expected checksum provided"


@pytest.mark.asyncio
async def test_signature_valid_raw_and_pem_keys():
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "package.zip"
        path.write_bytes(b"PK\x03\x04 signed payload")
        key = Ed25519PrivateKey.generate()
        service = VerificationService()

        raw = await service.verify_signature(path, sign_file(path, key))
        pem = await service.verify_signature(path, sign_file(path, key, pem=True))

        assert raw.passed
        assert pem.passed
        assert raw.kind == ValidationKind.SIGNATURE


@pytest.mark.asyncio
async def test_signature_rejects_tampered_file_and_wrong_key():
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "package.zip"
        path.write_bytes(b"original")
        key = Ed25519PrivateKey.generate()
        signature = sign_file(path, key)
        service = VerificationService()

        path.write_bytes(b"tampered")
        tampered = await service.verify_signature(path, signature)
        assert not tampered.passed
        assert tampered.message == "Signature verification failed"

        path.write_bytes(b"original")
        other = sign_file(path, Ed25519PrivateKey.generate())
        mixed = FileSignature(signature=signature.signature, public_key=other.public_key)
        assert not (await service.verify_signature(path, mixed)).passed


@pytest.mark.asyncio
async def test_signature_invalid_data():
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "package.zip"
        path.write_bytes(b"data")
        service = VerificationService()

        missing = await service.verify_signature(path, None)
        garbage = await service.verify_signature(path, FileSignature(signature="not base64!!", public_key="also not"))

        assert not missing.passed
        assert missing.message == "Invalid signature data"
        assert not garbage.passed
        assert garbage.message == "Invalid signature data"


@pytest.mark.asyncio
async def test_file_integrity():
    """Empty files fail unless zero bytes were expected; sizes are checked."""
    with tempfile.TemporaryDirectory() as tmpdir:
        tmp = Path(tmpdir)
        empty = tmp / "empty.cfg"
        empty.write_bytes(b"")
        full = tmp / "full.dll"
        full.write_bytes(b"\x00" * 100)
        service = VerificationService()

        assert not (await service.verify_file_integrity(empty)).passed
        assert (await service.verify_file_integrity(empty, expected_size=0)).passed
        assert (await service.verify_file_integrity(full, expected_size=100)).passed

        mismatch = await service.verify_file_integrity(full, expected_size=99)
        assert not mismatch.passed
        assert "expected 99 bytes" in mismatch.details

        assert not (await service.verify_file_integrity(tmp / "missing")).passed


@pytest.mark.asyncio
async def test_permissions():
    with tempfile.TemporaryDirectory() as tmpdir:
        tmp = Path(tmpdir)
        path = tmp / "a.txt"
        path.write_text("x")
        service = VerificationService()

        assert (await service.verify_permissions(path)).passed
        assert (await service.verify_permissions(path, require_write=True)).passed
        assert (await service.verify_permissions(tmp, require_write=True)).passed
        assert not (await service.verify_permissions(tmp / "missing")).passed
        # Directory write check leaves nothing behind
        assert [p.name for p in tmp.iterdir()] == ["a.txt"]
