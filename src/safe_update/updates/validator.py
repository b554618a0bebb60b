"""
Download validation for release packages.

A downloaded package is checked twice before anything touches the
installation:

1. Size: the actual size must be within a tolerance (default +/-5%) of the
   size declared by the registry. The tolerance absorbs compression and
   metadata differences between the registry's figure and the transfer.
2. Archive: the file must open as a zip archive, contain at least one
   entry, and pass a CRC check of every member.

A package that fails either check is deleted immediately. A separate
sweep removes stale packages left behind by interrupted runs.
"""

from __future__ import annotations

import time
import zipfile
import zlib
from pathlib import Path

from safe_update.config import AppConfig
from safe_update.errors import (
    CorruptArchiveError,
    EmptyArchiveError,
    InvalidFormatError,
    SizeMismatchError,
    UpdateError,
)
from safe_update.logging import get_logger

logger = get_logger(__name__)

# Every package this engine downloads is named "<prefix>...<suffix>"
DOWNLOAD_PREFIX = "safe-update-"
DOWNLOAD_SUFFIX = ".zip"

DEFAULT_SIZE_TOLERANCE = 0.05
DEFAULT_ORPHAN_MAX_AGE_SECONDS = 86400

# Local file header / empty-archive end-of-central-directory signatures
_ZIP_MAGIC = (b"PK\x03\x04", b"PK\x05\x06")


def _format_mb(size: int) -> str:
    return f"{size / 1048576:.2f} MB"


class DownloadValidator:
    """
    Validates downloaded release packages and cleans up rejected files.

    Attributes:
        download_dir: Directory packages are downloaded into.
        size_tolerance: Allowed relative deviation from the declared size.
    """

    def __init__(
        self,
        download_dir: Path | str,
        *,
        size_tolerance: float = DEFAULT_SIZE_TOLERANCE,
    ) -> None:
        self.download_dir = Path(download_dir)
        self.size_tolerance = size_tolerance

    @classmethod
    def from_config(cls, config: AppConfig) -> DownloadValidator:
        """Create a DownloadValidator from application configuration."""
        return cls(config.paths.download_dir, size_tolerance=config.policy.size_tolerance)

    def validate_size(self, path: Path, expected_size: int | None) -> None:
        """
        Check the package size against the registry-declared size.

        Passes when ``abs(actual - expected) / expected <= size_tolerance``
        (the boundary is inclusive). An unknown expected size (None or 0)
        skips the check; the archive check still catches truncated files.

        Raises:
            SizeMismatchError: If the size is outside the tolerance or the
                file size cannot be read.
        """
        try:
            actual_size = path.stat().st_size
        except OSError as e:
            raise SizeMismatchError(
                "Could not determine downloaded file size",
                details={"path": str(path), "expected_size": expected_size, "error": str(e)},
            ) from e

        if not expected_size:
            logger.debug(
                "No declared package size, skipping size validation",
                extra={"path": str(path), "actual_size": actual_size},
            )
            return

        deviation = abs(actual_size - expected_size)
        if deviation > expected_size * self.size_tolerance:
            raise SizeMismatchError(
                "Download verification failed: file size mismatch. "
                f"Expected {_format_mb(expected_size)}, got {_format_mb(actual_size)}",
                details={
                    "expected_size": expected_size,
                    "actual_size": actual_size,
                    "deviation_ratio": round(deviation / expected_size, 4),
                    "tolerance": self.size_tolerance,
                },
            )

    def validate_archive(self, path: Path) -> int:
        """
        Check that ``path`` is a readable, non-empty zip archive.

        Returns:
            Number of entries in the archive.

        Raises:
            InvalidFormatError: If the file cannot be opened as a zip archive.
            EmptyArchiveError: If the archive has no entries.
            CorruptArchiveError: If listing or CRC-checking entries fails.
        """
        try:
            with open(path, "rb") as f:
                magic = f.read(4)
        except OSError as e:
            raise InvalidFormatError(
                "Downloaded file could not be opened for validation",
                details={"path": str(path), "error": str(e)},
            ) from e

        if magic not in _ZIP_MAGIC:
            raise InvalidFormatError(
                "Downloaded file is not a valid zip archive",
                details={"path": str(path)},
            )

        try:
            archive = zipfile.ZipFile(path)
        except (zipfile.BadZipFile, OSError) as e:
            raise InvalidFormatError(
                f"Downloaded file is not a valid zip archive: {e}",
                details={"path": str(path), "error": str(e)},
            ) from e

        with archive:
            try:
                entries = archive.infolist()
            except (zipfile.BadZipFile, OSError, EOFError) as e:
                raise CorruptArchiveError(
                    f"Could not list archive entries: {e}",
                    details={"path": str(path), "error": str(e)},
                ) from e

            if not entries:
                raise EmptyArchiveError(
                    "Downloaded zip archive is empty",
                    details={"path": str(path)},
                )

            try:
                bad_member = archive.testzip()
            except (zipfile.BadZipFile, zlib.error, OSError, EOFError) as e:
                raise CorruptArchiveError(
                    f"Archive integrity check failed: {e}",
                    details={"path": str(path), "entries": len(entries), "error": str(e)},
                ) from e

            if bad_member is not None:
                raise CorruptArchiveError(
                    f"Archive member failed CRC check: {bad_member}",
                    details={"path": str(path), "member": bad_member},
                )

        return len(entries)

    def validate(self, path: Path, expected_size: int | None) -> None:
        """
        Run the size and archive checks, deleting the file on failure.

        Raises:
            UpdateError: The first failing check's error, after cleanup.
        """
        try:
            self.validate_size(path, expected_size)
            entries = self.validate_archive(path)
        except UpdateError as e:
            logger.warning(
                f"Download validation failed: {e.message}",
                extra={"path": str(path), "error_code": e.error_code},
            )
            self.cleanup_invalid(path)
            raise

        logger.info(
            "Download validated",
            extra={"path": str(path), "entries": entries},
        )

    def cleanup_invalid(self, path: Path) -> bool:
        """
        Delete a rejected download immediately.

        Returns:
            True if the file was deleted, False if it did not exist or
            could not be removed.
        """
        if not path.exists():
            return False

        try:
            path.unlink()
        except OSError as e:
            logger.error(
                "Failed to remove invalid download",
                extra={"path": str(path), "error": str(e)},
            )
            return False

        logger.info("Removed invalid download", extra={"file": path.name})
        return True

    def cleanup_orphans(
        self,
        max_age_seconds: float = DEFAULT_ORPHAN_MAX_AGE_SECONDS,
    ) -> int:
        """
        Delete leftover packages downloaded by this engine.

        Intended to run periodically (once a day). Only files named with
        this engine's download prefix and suffix are considered.

        Args:
            max_age_seconds: Minimum age of a file before it is removed.

        Returns:
            Number of files deleted.
        """
        if not self.download_dir.is_dir():
            return 0

        cutoff = time.time() - max_age_seconds
        deleted = 0

        for entry in self.download_dir.iterdir():
            if not entry.is_file():
                continue
            if not (entry.name.startswith(DOWNLOAD_PREFIX) and entry.name.endswith(DOWNLOAD_SUFFIX)):
                continue

            try:
                modified = entry.stat().st_mtime
            except OSError:
                continue
            if modified >= cutoff:
                continue

            try:
                entry.unlink()
            except OSError as e:
                logger.warning(
                    "Failed to remove orphaned download",
                    extra={"file": entry.name, "error": str(e)},
                )
                continue

            deleted += 1
            logger.info(
                "Removed orphaned download",
                extra={"file": entry.name, "age_hours": round((time.time() - modified) / 3600, 1)},
            )

        if deleted:
            logger.info(f"Orphan cleanup removed {deleted} file(s)")
        return deleted
