"""
Tests for download validation.

Tests cover:
- Size tolerance (inclusive +/-5% boundary)
- Archive format, emptiness and integrity checks
- Immediate cleanup of rejected downloads
- Orphaned download sweep
"""

from __future__ import annotations

import os
import time
import zipfile
from pathlib import Path

import pytest

from conftest import make_release_zip
from safe_update.config import AppConfig
from safe_update.errors import (
    CorruptArchiveError,
    EmptyArchiveError,
    InvalidFormatError,
    SizeMismatchError,
)
from safe_update.updates.validator import DownloadValidator


def _file_of_size(path: Path, size: int) -> Path:
    with open(path, "wb") as f:
        f.truncate(size)
    return path


@pytest.fixture
def validator(tmp_path: Path) -> DownloadValidator:
    """Validator working in a temporary download directory."""
    return DownloadValidator(tmp_path)


# =============================================================================
# Size validation
# =============================================================================


class TestValidateSize:
    """Tests for validate_size."""

    def test_within_tolerance(self, tmp_path: Path, validator: DownloadValidator) -> None:
        """Test 5,000,000 bytes passes against a declared 5,242,880."""
        path = _file_of_size(tmp_path / "pkg.zip", 5_000_000)
        validator.validate_size(path, 5_242_880)

    def test_outside_tolerance(self, tmp_path: Path, validator: DownloadValidator) -> None:
        """Test 4,900,000 bytes fails against a declared 5,242,880."""
        path = _file_of_size(tmp_path / "pkg.zip", 4_900_000)

        with pytest.raises(SizeMismatchError) as exc_info:
            validator.validate_size(path, 5_242_880)

        assert exc_info.value.details["expected_size"] == 5_242_880
        assert exc_info.value.details["actual_size"] == 4_900_000

    @pytest.mark.parametrize("actual", [95, 105, 100])
    def test_boundary_is_inclusive(
        self, tmp_path: Path, validator: DownloadValidator, actual: int
    ) -> None:
        """Test exactly 5% deviation either way passes."""
        path = _file_of_size(tmp_path / "pkg.zip", actual)
        validator.validate_size(path, 100)

    @pytest.mark.parametrize("actual", [94, 106])
    def test_just_past_boundary(
        self, tmp_path: Path, validator: DownloadValidator, actual: int
    ) -> None:
        """Test 6% deviation fails."""
        path = _file_of_size(tmp_path / "pkg.zip", actual)
        with pytest.raises(SizeMismatchError):
            validator.validate_size(path, 100)

    @pytest.mark.parametrize("expected", [None, 0])
    def test_unknown_expected_size_skips(
        self, tmp_path: Path, validator: DownloadValidator, expected: int | None
    ) -> None:
        """Test the check is skipped without a declared size."""
        path = _file_of_size(tmp_path / "pkg.zip", 10)
        validator.validate_size(path, expected)

    def test_missing_file(self, tmp_path: Path, validator: DownloadValidator) -> None:
        """Test an unreadable file is a size mismatch."""
        with pytest.raises(SizeMismatchError):
            validator.validate_size(tmp_path / "missing.zip", 100)

    def test_custom_tolerance(self, tmp_path: Path) -> None:
        """Test a wider configured tolerance."""
        path = _file_of_size(tmp_path / "pkg.zip", 80)
        DownloadValidator(tmp_path, size_tolerance=0.2).validate_size(path, 100)


# =============================================================================
# Archive validation
# =============================================================================


class TestValidateArchive:
    """Tests for validate_archive."""

    def test_valid_archive(self, tmp_path: Path, validator: DownloadValidator) -> None:
        """Test a good package reports its entry count."""
        path = make_release_zip(tmp_path / "pkg.zip", "unit", "1.0.0")
        assert validator.validate_archive(path) == 3

    def test_not_an_archive(self, tmp_path: Path, validator: DownloadValidator) -> None:
        """Test an HTML error page saved as .zip is rejected."""
        path = tmp_path / "pkg.zip"
        path.write_text("<html>Not Found</html>")

        with pytest.raises(InvalidFormatError):
            validator.validate_archive(path)

    def test_empty_archive(self, tmp_path: Path, validator: DownloadValidator) -> None:
        """Test a zip with zero entries is rejected."""
        path = tmp_path / "empty.zip"
        with zipfile.ZipFile(path, "w"):
            pass

        with pytest.raises(EmptyArchiveError):
            validator.validate_archive(path)

    def test_corrupt_member(self, tmp_path: Path, validator: DownloadValidator) -> None:
        """Test a damaged member fails the integrity check."""
        path = tmp_path / "pkg.zip"
        payload = b"A" * 4096
        with zipfile.ZipFile(path, "w", compression=zipfile.ZIP_STORED) as zf:
            zf.writestr("unit/main.py", payload)

        data = bytearray(path.read_bytes())
        offset = data.index(payload)
        data[offset : offset + 10] = b"B" * 10
        path.write_bytes(bytes(data))

        with pytest.raises(CorruptArchiveError):
            validator.validate_archive(path)

    def test_truncated_archive(self, tmp_path: Path, validator: DownloadValidator) -> None:
        """Test a truncated download is rejected."""
        full = make_release_zip(tmp_path / "full.zip", "unit", "1.0.0")
        path = tmp_path / "pkg.zip"
        path.write_bytes(full.read_bytes()[:60])

        with pytest.raises((InvalidFormatError, CorruptArchiveError)):
            validator.validate_archive(path)


# =============================================================================
# validate / cleanup
# =============================================================================


class TestValidateAndCleanup:
    """Tests for validate, cleanup_invalid and cleanup_orphans."""

    def test_validate_deletes_rejected_file(
        self, tmp_path: Path, validator: DownloadValidator
    ) -> None:
        """Test a rejected download is removed before the error propagates."""
        path = tmp_path / "safe-update-unit-1.0.0-abc.zip"
        path.write_text("garbage")

        with pytest.raises(InvalidFormatError):
            validator.validate(path, None)
        assert not path.exists()

    def test_validate_keeps_good_file(self, tmp_path: Path, validator: DownloadValidator) -> None:
        """Test a valid download is kept."""
        path = make_release_zip(tmp_path / "pkg.zip", "unit", "1.0.0")
        validator.validate(path, path.stat().st_size)
        assert path.exists()

    def test_cleanup_invalid_missing(self, tmp_path: Path, validator: DownloadValidator) -> None:
        """Test cleanup of an absent file reports False."""
        assert validator.cleanup_invalid(tmp_path / "nope.zip") is False

    def test_cleanup_orphans(self, tmp_path: Path, validator: DownloadValidator) -> None:
        """Test only old files carrying the engine prefix are removed."""
        old_ours = tmp_path / "safe-update-unit-1.0.0-aaaa.zip"
        new_ours = tmp_path / "safe-update-unit-1.0.1-bbbb.zip"
        old_foreign = tmp_path / "other-package.zip"
        old_not_zip = tmp_path / "safe-update-notes.txt"
        for path in (old_ours, new_ours, old_foreign, old_not_zip):
            path.write_bytes(b"x")

        two_days_ago = time.time() - 2 * 86400
        for path in (old_ours, old_foreign, old_not_zip):
            os.utime(path, (two_days_ago, two_days_ago))

        assert validator.cleanup_orphans(86400) == 1
        assert not old_ours.exists()
        assert new_ours.exists()
        assert old_foreign.exists()
        assert old_not_zip.exists()

    def test_cleanup_orphans_missing_dir(self, tmp_path: Path) -> None:
        """Test a missing download directory is a no-op."""
        assert DownloadValidator(tmp_path / "missing").cleanup_orphans() == 0

    def test_from_config(self, app_config: AppConfig) -> None:
        """Test construction from configuration."""
        validator = DownloadValidator.from_config(app_config)

        assert str(validator.download_dir) == app_config.paths.download_dir
        assert validator.size_tolerance == 0.05
