"""
Directory name normalization for extracted release packages.

Release archives wrap the unit in a directory whose name depends on how the
release was produced: a tagged release (``unit-v1.2.3``), a plain version
(``unit-1.2.3``), a commit snapshot (``owner-unit-abc1234``) or a branch
snapshot (``unit-main``). The host expects the unit under exactly one name,
so the extracted directory is renamed before it is installed.

Only the closed set of patterns below is accepted. A name that matches none
of them is rejected rather than guessed at.
"""

from __future__ import annotations

import re
import shutil
from pathlib import Path
from typing import NamedTuple

from safe_update.config import AppConfig
from safe_update.errors import (
    InstallFailedError,
    InvalidStructureError,
    SourceDirectoryMissingError,
    UnrecognizedPatternError,
)
from safe_update.logging import get_logger
from safe_update.updates.operations import safe_remove_directory

logger = get_logger(__name__)

_SEMVER_SUFFIX = r"\d+\.\d+\.\d+(?:[-+][0-9A-Za-z.+-]+)?"


class DirectoryPattern(NamedTuple):
    """A named directory naming convention."""

    name: str
    regex: re.Pattern[str]


def build_patterns(unit_name: str, owner: str | None = None) -> tuple[DirectoryPattern, ...]:
    """
    Build the pattern table for a unit.

    Order matters: the branch pattern also matches version names, so the
    version patterns are tried first.
    """
    name = re.escape(unit_name)
    owner_part = re.escape(owner) if owner else r"[A-Za-z0-9_.]+(?:-[A-Za-z0-9_.]+)*?"
    flags = re.IGNORECASE

    return (
        DirectoryPattern("exact", re.compile(rf"^{name}$", flags)),
        DirectoryPattern("version_tagged", re.compile(rf"^{name}-v{_SEMVER_SUFFIX}$", flags)),
        DirectoryPattern("version", re.compile(rf"^{name}-{_SEMVER_SUFFIX}$", flags)),
        DirectoryPattern("commit", re.compile(rf"^{owner_part}-{name}-[0-9a-f]{{7,40}}$", flags)),
        DirectoryPattern("branch", re.compile(rf"^{name}-[A-Za-z0-9][A-Za-z0-9._-]*$", flags)),
    )


class DirectoryNormalizer:
    """
    Renames an extracted unit directory to the name the host expects.

    Attributes:
        unit_name: Expected directory name of the unit.
        entry_point: File that must exist inside the unit directory.
        patterns: Accepted naming conventions, tried in order.
    """

    def __init__(
        self,
        unit_name: str,
        entry_point: str,
        *,
        owner: str | None = None,
    ) -> None:
        self.unit_name = unit_name
        self.entry_point = entry_point
        self.patterns = build_patterns(unit_name, owner)

    @classmethod
    def from_config(cls, config: AppConfig) -> DirectoryNormalizer:
        """Create a DirectoryNormalizer from application configuration."""
        return cls(
            config.unit.name,
            config.unit.entry_point,
            owner=config.unit.owner,
        )

    def match_pattern(self, directory_name: str) -> str | None:
        """Return the name of the first pattern matching ``directory_name``."""
        for pattern in self.patterns:
            if pattern.regex.match(directory_name):
                return pattern.name
        return None

    def normalize(
        self,
        extracted_dir: Path | str,
        parent_dir: Path | str,
        expected_name: str,
    ) -> Path:
        """
        Rename ``extracted_dir`` to ``parent_dir / expected_name``.

        Args:
            extracted_dir: Directory produced by extracting the package.
            parent_dir: Directory the normalized unit should live in.
            expected_name: Directory name the host expects.

        Returns:
            Path of the normalized directory. When ``expected_name`` is not
            this unit, or the directory is already correctly named and
            placed, ``extracted_dir`` is returned unchanged.

        Raises:
            SourceDirectoryMissingError: If ``extracted_dir`` does not exist.
            UnrecognizedPatternError: If the name matches no known pattern.
            InvalidStructureError: If the entry-point file is missing.
            InstallFailedError: If the rename fails.
        """
        extracted_dir = Path(extracted_dir)
        parent_dir = Path(parent_dir)

        if expected_name != self.unit_name:
            logger.debug(
                "Not this unit, leaving directory untouched",
                extra={"expected_name": expected_name, "unit_name": self.unit_name},
            )
            return extracted_dir

        if not extracted_dir.is_dir():
            raise SourceDirectoryMissingError(
                f"Extracted directory not found: {extracted_dir}",
                details={"source_dir": str(extracted_dir)},
            )

        target = parent_dir / expected_name
        if extracted_dir.name == expected_name and extracted_dir.parent.resolve() == parent_dir.resolve():
            return extracted_dir

        directory_name = extracted_dir.name
        pattern = self.match_pattern(directory_name)
        if pattern is None:
            raise UnrecognizedPatternError(
                f"Unrecognized directory name in release package: {directory_name}",
                details={"directory_name": directory_name, "expected_name": expected_name},
            )

        if not (extracted_dir / self.entry_point).is_file():
            raise InvalidStructureError(
                f"Release package is missing {self.entry_point}",
                details={"source_dir": str(extracted_dir), "entry_point": self.entry_point},
            )

        if target.exists():
            logger.info("Removing stale directory", extra={"path": str(target)})
            safe_remove_directory(target)

        try:
            parent_dir.mkdir(parents=True, exist_ok=True)
            shutil.move(str(extracted_dir), str(target))
        except OSError as e:
            raise InstallFailedError(
                f"Failed to rename {directory_name} to {expected_name}: {e}",
                details={"source_dir": str(extracted_dir), "target_dir": str(target)},
            ) from e

        if not (target / self.entry_point).is_file():
            raise InvalidStructureError(
                f"Renamed directory is missing {self.entry_point}",
                details={"target_dir": str(target), "entry_point": self.entry_point},
            )

        logger.info(
            "Normalized directory name",
            extra={"from": directory_name, "to": expected_name, "pattern": pattern},
        )
        return target
