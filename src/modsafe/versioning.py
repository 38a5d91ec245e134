"""Version parsing and constraint matching.

Package and loader versions found in the wild are only loosely semantic
("v5.4.21", "5.4.2100", "1.0.0-beta"). They are normalised into
``packaging.version.Version`` and constraints are translated into
``packaging.specifiers.SpecifierSet`` so comparisons follow PEP 440 ordering.

Supported constraint forms:
- ``1.2.3``            exact match
- ``>=1.2`` ``<=1.2`` ``>1.2`` ``<1.2`` ``==1.2`` ``!=1.2``
- ``~1.2.3``           >=1.2.3, <1.3.0
- ``^1.2.3``           >=1.2.3, <2.0.0
- comma separated combinations, e.g. ``>=1.0,<2.0``
"""

import logging
import re

from packaging.specifiers import InvalidSpecifier
from packaging.specifiers import SpecifierSet
from packaging.version import InvalidVersion
from packaging.version import Version

logger = logging.getLogger(__name__)

_NON_NUMERIC = re.compile(r"[^\d.]")
_OPERATOR = re.compile(r"^(>=|<=|==|!=|>|<|~=|~|\^)?\s*(.+)$")


def parse_version(value: str | None) -> Version | None:
    """Parse a loosely formatted version string.

    Falls back to stripping every non-numeric character, so "r5.4-beta"
    still orders as 5.4.

    Returns:
        Parsed version, or None if nothing numeric remains
    """
    if value is None:
        return None
    text = value.strip()
    if not text:
        return None
    try:
        return Version(text)
    except InvalidVersion:
        pass

    cleaned = _NON_NUMERIC.sub("", text).strip(".")
    cleaned = re.sub(r"\.{2,}", ".", cleaned)
    if not cleaned:
        return None
    try:
        return Version(cleaned)
    except InvalidVersion:
        logger.debug(f"Unparseable version string: {value!r}")
        return None


def _release_parts(version: Version, size: int = 3) -> list[int]:
    parts = list(version.release)
    while len(parts) < size:
        parts.append(0)
    return parts


def _translate_clause(clause: str) -> str:
    match = _OPERATOR.match(clause.strip())
    if not match:
        raise InvalidSpecifier(clause)
    operator, raw = match.group(1), match.group(2).strip()
    version = parse_version(raw)
    if version is None:
        raise InvalidSpecifier(clause)

    if operator in (None, "=="):
        return f"=={version}"
    if operator == "~":
        major, minor, _ = _release_parts(version)
        return f">={version},<{major}.{minor + 1}.0"
    if operator == "^":
        major = _release_parts(version)[0]
        return f">={version},<{major + 1}.0.0"
    if operator == "~=" and len(version.release) < 2:
        # PEP 440 rejects "~=1"; treat it like a caret range
        return f">={version},<{version.release[0] + 1}.0.0"
    return f"{operator}{version}"


def to_specifier(constraint: str | None) -> SpecifierSet:
    """Translate a constraint string into a SpecifierSet.

    Raises:
        InvalidSpecifier: If the constraint cannot be understood
    """
    if constraint is None or not constraint.strip():
        return SpecifierSet()
    clauses = [c for c in constraint.split(",") if c.strip()]
    return SpecifierSet(",".join(_translate_clause(c) for c in clauses))


def satisfies(version: str | None, constraint: str | None) -> bool:
    """Check whether ``version`` satisfies ``constraint``.

    An empty constraint is satisfied by any version, including none.
    Unparseable versions or constraints never satisfy a real constraint.
    """
    if constraint is None or not constraint.strip():
        return True
    parsed = parse_version(version)
    if parsed is None:
        return False
    try:
        specifier = to_specifier(constraint)
    except InvalidSpecifier:
        logger.warning(f"Invalid version constraint: {constraint!r}")
        return False
    return specifier.contains(parsed, prereleases=True)


def compare_versions(a: str | None, b: str | None) -> int:
    """Compare two version strings; unparseable versions sort lowest."""
    va = parse_version(a) or Version("0")
    vb = parse_version(b) or Version("0")
    if va < vb:
        return -1
    if va > vb:
        return 1
    return 0


def newest(versions: list[str]) -> str | None:
    """Return the highest of ``versions`` (None for an empty list)."""
    if not versions:
        return None
    return max(versions, key=lambda v: parse_version(v) or Version("0"))
