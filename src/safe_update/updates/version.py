"""
Semantic version parsing and comparison.

Release sources commonly tag versions as ``v1.2.3``; the leading ``v`` is
stripped by ``normalize_version`` before parsing.
"""

from __future__ import annotations

import re
from typing import Any

from safe_update.errors import InvalidVersionError

# Accepts: 1.0.0, 1.2.3, 2.0.0-beta.1, 1.0.0-alpha+build.123
SEMVER_PATTERN = re.compile(
    r"^(?P<major>0|[1-9]\d*)"
    r"\.(?P<minor>0|[1-9]\d*)"
    r"\.(?P<patch>0|[1-9]\d*)"
    r"(?:-(?P<prerelease>(?:0|[1-9]\d*|\d*[a-zA-Z-][0-9a-zA-Z-]*)"
    r"(?:\.(?:0|[1-9]\d*|\d*[a-zA-Z-][0-9a-zA-Z-]*))*))?"
    r"(?:\+(?P<buildmetadata>[0-9a-zA-Z-]+(?:\.[0-9a-zA-Z-]+)*))?$"
)


def normalize_version(version: str) -> str:
    """Strip whitespace and a leading 'v'/'V' tag prefix."""
    version = version.strip()
    if version[:1] in ("v", "V"):
        version = version[1:]
    return version


def parse_semantic_version(version: str) -> dict[str, Any]:
    """
    Parse and validate a semantic version string.

    Args:
        version: Version string (e.g., "1.0.0", "1.2.3-beta.1").

    Returns:
        Dictionary with major, minor, patch, prerelease and buildmetadata.

    Raises:
        InvalidVersionError: If version string is invalid.
    """
    if not version:
        raise InvalidVersionError(
            "Version string cannot be empty",
            details={"version": version},
        )

    match = SEMVER_PATTERN.match(version)
    if not match:
        raise InvalidVersionError(
            f"Invalid semantic version: {version}",
            details={
                "version": version,
                "format": "MAJOR.MINOR.PATCH[-PRERELEASE][+BUILDMETADATA]",
            },
        )

    return {
        "major": int(match.group("major")),
        "minor": int(match.group("minor")),
        "patch": int(match.group("patch")),
        "prerelease": match.group("prerelease"),
        "buildmetadata": match.group("buildmetadata"),
    }


def _compare_prerelease(pre1: str, pre2: str) -> int:
    """Compare dot-separated prerelease identifiers per semver precedence."""
    for a, b in zip(pre1.split("."), pre2.split("."), strict=False):
        if a == b:
            continue
        a_num, b_num = a.isdigit(), b.isdigit()
        if a_num and b_num:
            return -1 if int(a) < int(b) else 1
        if a_num != b_num:
            # Numeric identifiers sort before alphanumeric ones
            return -1 if a_num else 1
        return -1 if a < b else 1

    len1, len2 = len(pre1.split(".")), len(pre2.split("."))
    if len1 == len2:
        return 0
    return -1 if len1 < len2 else 1


def compare_versions(v1: str, v2: str) -> int:
    """
    Compare two semantic versions.

    Returns:
        -1 if v1 < v2, 0 if v1 == v2, 1 if v1 > v2

    Raises:
        InvalidVersionError: If either version is invalid.
    """
    p1 = parse_semantic_version(normalize_version(v1))
    p2 = parse_semantic_version(normalize_version(v2))

    for key in ("major", "minor", "patch"):
        if p1[key] < p2[key]:
            return -1
        if p1[key] > p2[key]:
            return 1

    pre1 = p1["prerelease"]
    pre2 = p2["prerelease"]

    # A release sorts after any of its prereleases
    if pre1 is None and pre2 is not None:
        return 1
    if pre1 is not None and pre2 is None:
        return -1
    if pre1 is not None and pre2 is not None:
        return _compare_prerelease(pre1, pre2)

    return 0
