"""Tests for version parsing and constraint matching."""

import pytest
from modsafe.versioning import compare_versions
from modsafe.versioning import newest
from modsafe.versioning import parse_version
from modsafe.versioning import satisfies
from modsafe.versioning import to_specifier
from packaging.specifiers import InvalidSpecifier
from packaging.version import Version


def test_parse_version_loose_formats():
    """Loosely formatted versions still parse and order numerically."""
    assert parse_version("1.2.3") == Version("1.2.3")
    assert parse_version("v5.4.21") == Version("5.4.21")
    assert parse_version("r5.4-beta") == Version("5.4")
    assert parse_version("5.4.2100") > parse_version("5.4.21")


def test_parse_version_rejects_non_numeric():
    assert parse_version(None) is None
    assert parse_version("") is None
    assert parse_version("latest") is None


@pytest.mark.parametrize(
    ("version", "constraint", "expected"),
    [
        ("1.2.3", "1.2.3", True),
        ("1.2.4", "1.2.3", False),
        ("2.0", ">=1.0", True),
        ("0.9", ">=1.0", False),
        ("1.2.5", "~1.2.0", True),
        ("1.3.0", "~1.2.0", False),
        ("1.9.0", "^1.2.0", True),
        ("2.0.0", "^1.2.0", False),
        ("1.5", ">=1.0,<2.0", True),
        ("2.0", ">=1.0,<2.0", False),
        ("1.0.0-beta", ">=0.9", True),
    ],
)
def test_satisfies(version, constraint, expected):
    assert satisfies(version, constraint) is expected


def test_empty_constraint_always_satisfied():
    assert satisfies("1.0", None)
    assert satisfies(None, "")


def test_unparseable_never_satisfies_real_constraint():
    assert not satisfies("latest", ">=1.0")
    assert not satisfies("1.0", ">=banana")


def test_to_specifier_rejects_garbage():
    with pytest.raises(InvalidSpecifier):
        to_specifier(">=banana")


def test_compare_and_newest():
    assert compare_versions("1.10", "1.9") == 1
    assert compare_versions("1.0", "1.0.0") == 0
    assert compare_versions("garbage", "0.1") == -1
    assert newest(["1.0", "2.0", "1.5"]) == "2.0"
    assert newest([]) is None
