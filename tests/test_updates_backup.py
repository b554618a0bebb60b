"""
Tests for backup and restore.

Tests cover:
- Backup creation, naming and error cases
- Disk space preflight
- Restore round trip, including the version marker
- Restore error cases (missing, corrupted, timeout)
- Backup retention helpers
"""

from __future__ import annotations

import os
import shutil
import time
import zipfile
from collections import namedtuple
from pathlib import Path
from unittest.mock import patch

import pytest

from conftest import make_unit_dir
from safe_update.config import AppConfig
from safe_update.errors import (
    BackupCorruptedError,
    BackupCreationError,
    BackupDirNotWritableError,
    BackupNotFoundError,
    InsufficientDiskSpaceError,
    RestoreTimeoutError,
    SourceDirectoryMissingError,
)
from safe_update.updates.backup import BackupManager
from safe_update.updates.operations import read_version_marker

_DiskUsage = namedtuple("_DiskUsage", ["total", "used", "free", "percent"])


@pytest.fixture
def unit_dir(tmp_path: Path) -> Path:
    """An installed unit at version 1.0.0."""
    return make_unit_dir(tmp_path / "units" / "unit", "1.0.0")


@pytest.fixture
def manager(tmp_path: Path) -> BackupManager:
    """BackupManager writing into a temporary backup directory."""
    return BackupManager(tmp_path / "backups", unit_name="unit")


# =============================================================================
# Backup creation
# =============================================================================


class TestCreateBackup:
    """Tests for create_backup."""

    def test_creates_archive(self, manager: BackupManager, unit_dir: Path) -> None:
        """Test a backup archive is written with the expected name and content."""
        backup = manager.create_backup("1.0.0", unit_dir)
        path = Path(backup.file_path)

        assert path.parent == manager.backup_dir
        assert path.name.startswith("unit-1.0.0-backup-")
        assert path.suffix == ".zip"
        assert backup.source_version == "1.0.0"
        assert backup.size_bytes == path.stat().st_size > 0

        with zipfile.ZipFile(path) as zf:
            names = zf.namelist()
        assert "unit/main.py" in names
        assert "unit/VERSION" in names
        assert "unit/lib/helpers.py" in names

    def test_backup_dir_override(self, manager: BackupManager, unit_dir: Path, tmp_path: Path) -> None:
        """Test an explicit backup directory is honoured."""
        other = tmp_path / "elsewhere"
        backup = manager.create_backup("1.0.0", unit_dir, other)
        assert Path(backup.file_path).parent == other

    def test_missing_source(self, manager: BackupManager, tmp_path: Path) -> None:
        """Test a missing installation directory is reported."""
        with pytest.raises(SourceDirectoryMissingError):
            manager.create_backup("1.0.0", tmp_path / "missing")

    @pytest.mark.skipif(
        hasattr(os, "geteuid") and os.geteuid() == 0,
        reason="root bypasses directory permissions",
    )
    def test_read_only_backup_dir(self, tmp_path: Path, unit_dir: Path) -> None:
        """Test a 0555 backup directory fails with no file left behind."""
        backup_dir = tmp_path / "readonly"
        backup_dir.mkdir()
        backup_dir.chmod(0o555)
        try:
            manager = BackupManager(backup_dir, unit_name="unit")
            with pytest.raises(BackupDirNotWritableError):
                manager.create_backup("1.0.0", unit_dir)
            assert list(backup_dir.iterdir()) == []
        finally:
            backup_dir.chmod(0o755)

    def test_unwritable_backup_dir_probe(self, manager: BackupManager, unit_dir: Path) -> None:
        """Test a failed write probe maps to BackupDirNotWritableError."""
        with (
            patch("safe_update.updates.backup.is_writable_directory", return_value=False),
            pytest.raises(BackupDirNotWritableError),
        ):
            manager.create_backup("1.0.0", unit_dir)

    def test_backup_dir_cannot_be_created(self, tmp_path: Path, unit_dir: Path) -> None:
        """Test a backup directory below a file cannot be created."""
        blocker = tmp_path / "blocker"
        blocker.write_text("x")
        manager = BackupManager(blocker / "backups")

        with pytest.raises(BackupDirNotWritableError) as exc_info:
            manager.create_backup("1.0.0", unit_dir)

        assert exc_info.value.details["path"] == str(blocker / "backups")

    def test_insufficient_disk_space(self, manager: BackupManager, unit_dir: Path) -> None:
        """Test the free-space preflight reports required and available bytes."""
        with (
            patch(
                "safe_update.updates.backup.psutil.disk_usage",
                return_value=_DiskUsage(1000, 1000, 10, 99.0),
            ),
            pytest.raises(InsufficientDiskSpaceError) as exc_info,
        ):
            manager.create_backup("1.0.0", unit_dir)

        details = exc_info.value.details
        assert details["available_bytes"] == 10
        assert details["required_bytes"] > details["available_bytes"]
        assert list(manager.backup_dir.iterdir()) == []

    def test_archive_failure_leaves_no_file(self, manager: BackupManager, unit_dir: Path) -> None:
        """Test a failure while archiving removes the partial file."""
        with (
            patch.object(BackupManager, "_write_archive", side_effect=OSError("I/O error")),
            pytest.raises(BackupCreationError),
        ):
            manager.create_backup("1.0.0", unit_dir)

        assert list(manager.backup_dir.iterdir()) == []

    def test_from_config(self, app_config: AppConfig) -> None:
        """Test construction from configuration."""
        manager = BackupManager.from_config(app_config)

        assert str(manager.backup_dir) == app_config.paths.backup_dir
        assert manager.unit_name == "unit"
        assert manager.restore_timeout == 10.0


# =============================================================================
# Restore
# =============================================================================


class TestRestoreBackup:
    """Tests for restore_backup."""

    def test_round_trip_restores_marker(self, manager: BackupManager, unit_dir: Path) -> None:
        """Test restoring brings back files and the version marker."""
        backup = manager.create_backup("1.0.0", unit_dir)

        (unit_dir / "VERSION").write_text("2.0.0\n")
        (unit_dir / "lib" / "helpers.py").unlink()
        (unit_dir / "new_file.py").write_text("added by update")

        manager.restore_backup(backup.file_path, unit_dir)

        assert read_version_marker(unit_dir, "VERSION") == "1.0.0"
        assert (unit_dir / "lib" / "helpers.py").read_text() == "VALUE = 1\n"
        assert not (unit_dir / "new_file.py").exists()

    def test_restore_is_idempotent(self, manager: BackupManager, unit_dir: Path) -> None:
        """Test restoring twice gives the same result."""
        backup = manager.create_backup("1.0.0", unit_dir)

        manager.restore_backup(backup.file_path, unit_dir)
        manager.restore_backup(backup.file_path, unit_dir)

        assert read_version_marker(unit_dir, "VERSION") == "1.0.0"
        assert sorted(p.name for p in unit_dir.parent.iterdir()) == ["unit"]

    def test_restore_when_install_missing(self, manager: BackupManager, unit_dir: Path) -> None:
        """Test restoring recreates a deleted installation."""
        backup = manager.create_backup("1.0.0", unit_dir)
        shutil.rmtree(unit_dir)

        manager.restore_backup(backup.file_path, unit_dir)

        assert (unit_dir / "main.py").is_file()

    def test_missing_backup(self, manager: BackupManager, unit_dir: Path) -> None:
        """Test restoring a missing archive."""
        with pytest.raises(BackupNotFoundError):
            manager.restore_backup(manager.backup_dir / "nope.zip", unit_dir)

    def test_corrupted_backup(self, manager: BackupManager, unit_dir: Path, tmp_path: Path) -> None:
        """Test a non-archive backup fails and leaves the install untouched."""
        bad = tmp_path / "bad.zip"
        bad.write_text("not a zip")

        with pytest.raises(BackupCorruptedError):
            manager.restore_backup(bad, unit_dir)
        assert read_version_marker(unit_dir, "VERSION") == "1.0.0"

    def test_restore_timeout(self, tmp_path: Path, unit_dir: Path) -> None:
        """Test an exhausted time budget aborts without touching the install."""
        manager = BackupManager(tmp_path / "backups", restore_timeout=-1)
        backup = manager.create_backup("1.0.0", unit_dir)
        (unit_dir / "VERSION").write_text("2.0.0\n")

        with pytest.raises(RestoreTimeoutError):
            manager.restore_backup(backup.file_path, unit_dir)

        assert read_version_marker(unit_dir, "VERSION") == "2.0.0"
        assert sorted(p.name for p in unit_dir.parent.iterdir()) == ["unit"]


# =============================================================================
# Retention
# =============================================================================


class TestRetention:
    """Tests for delete_backup, list_backups and cleanup_old_backups."""

    def test_delete_is_idempotent(self, manager: BackupManager, unit_dir: Path) -> None:
        """Test deleting twice."""
        backup = manager.create_backup("1.0.0", unit_dir)

        assert manager.delete_backup(backup.file_path) is True
        assert manager.delete_backup(backup.file_path) is False

    def test_delete_refuses_outside_backup_dir(
        self, manager: BackupManager, tmp_path: Path
    ) -> None:
        """Test files outside the backup directory are left alone."""
        outside = tmp_path / "important.zip"
        outside.write_text("x")

        assert manager.delete_backup(outside) is False
        assert outside.exists()

    def test_list_and_cleanup_old(self, manager: BackupManager, unit_dir: Path) -> None:
        """Test old backups are swept and recent ones kept."""
        old = Path(manager.create_backup("1.0.0", unit_dir).file_path)
        recent = Path(manager.create_backup("1.0.0", unit_dir).file_path)
        week_ago = time.time() - 8 * 86400
        os.utime(old, (week_ago, week_ago))

        assert manager.list_backups() == [recent, old]
        assert manager.cleanup_old_backups(7 * 86400) == 1
        assert manager.list_backups() == [recent]
