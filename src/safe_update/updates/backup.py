"""
Backup and restore of the installed unit.

Before a new version is installed, the current installation directory is
archived into a zip file in the backup directory. If any later step fails,
the orchestrator restores that archive over the installation.

Guarantees:
- A backup is either complete or absent: a failed write removes the
  partial archive before the error is raised.
- A restore never destroys the current contents before the backup has been
  fully extracted: extraction goes to a sibling staging directory which is
  then swapped into place.
- A restore has a time budget checked between archive members.
"""

from __future__ import annotations

import os
import time
import uuid
import zipfile
import zlib
from datetime import datetime
from pathlib import Path

import psutil

from safe_update.config import AppConfig
from safe_update.errors import (
    BackupCorruptedError,
    BackupCreationError,
    BackupDirNotWritableError,
    BackupNotFoundError,
    InstallFailedError,
    InsufficientDiskSpaceError,
    RestoreFailedError,
    RestoreTimeoutError,
    SourceDirectoryMissingError,
)
from safe_update.logging import get_logger
from safe_update.updates.models import BackupArchive, utc_now
from safe_update.updates.operations import (
    directory_size,
    ensure_directory,
    extract_zip,
    find_extracted_root,
    install_directory,
    is_writable_directory,
    safe_remove_directory,
)

logger = get_logger(__name__)

DEFAULT_DISK_SPACE_MARGIN = 1.1
DEFAULT_RESTORE_TIMEOUT = 10.0


class BackupManager:
    """
    Creates, restores and prunes backup archives of the installed unit.

    Attributes:
        backup_dir: Directory holding backup archives.
        unit_name: Name of the unit, used in archive file names.
        disk_space_margin: Multiplier applied to the source size when
            checking free space.
        restore_timeout: Time budget for a restore, in seconds.
    """

    def __init__(
        self,
        backup_dir: Path | str,
        *,
        unit_name: str = "unit",
        disk_space_margin: float = DEFAULT_DISK_SPACE_MARGIN,
        restore_timeout: float = DEFAULT_RESTORE_TIMEOUT,
    ) -> None:
        self.backup_dir = Path(backup_dir)
        self.unit_name = unit_name
        self.disk_space_margin = disk_space_margin
        self.restore_timeout = restore_timeout

    @classmethod
    def from_config(cls, config: AppConfig) -> BackupManager:
        """Create a BackupManager from application configuration."""
        return cls(
            config.paths.backup_dir,
            unit_name=config.unit.name,
            disk_space_margin=config.policy.disk_space_margin,
            restore_timeout=config.policy.restore_timeout_seconds,
        )

    # =========================================================================
    # Backup
    # =========================================================================

    def _backup_filename(self, version: str) -> str:
        timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
        return f"{self.unit_name}-{version}-backup-{timestamp}-{uuid.uuid4().hex[:6]}.zip"

    def _prepare_backup_dir(self, backup_dir: Path) -> None:
        ensure_directory(backup_dir, error_cls=BackupDirNotWritableError)

        if not is_writable_directory(backup_dir):
            raise BackupDirNotWritableError(
                "Backup directory is not writable. Check file permissions.",
                details={"path": str(backup_dir)},
            )

    def _check_disk_space(self, source_dir: Path, backup_dir: Path) -> int:
        source_size = directory_size(source_dir)
        required = int(source_size * self.disk_space_margin)
        available = psutil.disk_usage(str(backup_dir)).free

        if required > available:
            raise InsufficientDiskSpaceError(
                "Insufficient disk space to create backup",
                details={
                    "required_bytes": required,
                    "available_bytes": available,
                    "source_bytes": source_size,
                },
            )
        return source_size

    def _write_archive(self, source_dir: Path, archive_path: Path) -> None:
        """Zip ``source_dir`` with entries rooted at its directory name."""
        root_name = source_dir.name
        with zipfile.ZipFile(archive_path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            zf.write(source_dir, arcname=root_name)
            for root, dirs, files in os.walk(source_dir):
                dirs.sort()
                root_path = Path(root)
                relative_root = Path(root_name) / root_path.relative_to(source_dir)
                for name in dirs:
                    zf.write(root_path / name, arcname=str(relative_root / name))
                for name in sorted(files):
                    zf.write(root_path / name, arcname=str(relative_root / name))

    def create_backup(
        self,
        version: str,
        source_dir: Path | str,
        backup_dir: Path | str | None = None,
    ) -> BackupArchive:
        """
        Archive the installation directory before it is replaced.

        Args:
            version: Version currently installed in ``source_dir``.
            source_dir: Installation directory to archive.
            backup_dir: Overrides the configured backup directory.

        Returns:
            The written BackupArchive.

        Raises:
            SourceDirectoryMissingError: If ``source_dir`` does not exist.
            BackupDirNotWritableError: If the backup directory cannot be
                created or written.
            InsufficientDiskSpaceError: If free space is below the source
                size times the safety margin.
            BackupCreationError: If archiving fails; no partial file remains.
        """
        source_dir = Path(source_dir)
        target_dir = Path(backup_dir) if backup_dir is not None else self.backup_dir

        if not source_dir.is_dir():
            raise SourceDirectoryMissingError(
                f"Installation directory not found: {source_dir}",
                details={"source_dir": str(source_dir)},
            )

        self._prepare_backup_dir(target_dir)
        source_size = self._check_disk_space(source_dir, target_dir)

        archive_path = target_dir / self._backup_filename(version)
        logger.info(
            "Creating backup",
            extra={
                "version": version,
                "source_dir": str(source_dir),
                "backup_path": str(archive_path),
                "source_bytes": source_size,
            },
        )

        try:
            self._write_archive(source_dir, archive_path)
            size_bytes = archive_path.stat().st_size
        except (OSError, ValueError, zipfile.LargeZipFile) as e:
            archive_path.unlink(missing_ok=True)
            raise BackupCreationError(
                f"Failed to create backup archive: {e}",
                details={"backup_path": str(archive_path), "error": str(e)},
            ) from e

        if size_bytes == 0:
            archive_path.unlink(missing_ok=True)
            raise BackupCreationError(
                "Backup archive is empty",
                details={"backup_path": str(archive_path)},
            )

        backup = BackupArchive(
            source_version=version,
            file_path=str(archive_path),
            created_at=utc_now(),
            size_bytes=size_bytes,
        )
        logger.info(
            "Backup created",
            extra={"backup_path": backup.file_path, "size_bytes": size_bytes},
        )
        return backup

    # =========================================================================
    # Restore
    # =========================================================================

    def _verify_archive(self, backup_path: Path) -> None:
        if not zipfile.is_zipfile(backup_path):
            raise BackupCorruptedError(
                "Backup file is corrupted and cannot be restored",
                details={"backup_path": str(backup_path)},
            )
        try:
            with zipfile.ZipFile(backup_path) as zf:
                bad_member = zf.testzip()
        except (zipfile.BadZipFile, zlib.error, OSError, EOFError) as e:
            raise BackupCorruptedError(
                f"Backup integrity check failed: {e}",
                details={"backup_path": str(backup_path), "error": str(e)},
            ) from e
        if bad_member is not None:
            raise BackupCorruptedError(
                f"Backup member failed CRC check: {bad_member}",
                details={"backup_path": str(backup_path), "member": bad_member},
            )

    def restore_backup(self, backup_path: Path | str, target_dir: Path | str) -> None:
        """
        Restore a backup archive over ``target_dir``.

        Raises:
            BackupNotFoundError: If the archive does not exist.
            BackupCorruptedError: If the archive is invalid, fails its CRC
                check or contains unsafe paths.
            RestoreTimeoutError: If the restore exceeds its time budget.
            RestoreFailedError: On any other filesystem failure.
        """
        backup_path = Path(backup_path)
        target_dir = Path(target_dir)

        if not backup_path.is_file():
            raise BackupNotFoundError(
                "Backup file not found, cannot restore previous version",
                details={"backup_path": str(backup_path)},
            )

        deadline = time.monotonic() + self.restore_timeout
        self._verify_archive(backup_path)

        staging = target_dir.parent / f".{target_dir.name}.restore-{uuid.uuid4().hex[:8]}"
        logger.info(
            "Restoring backup",
            extra={"backup_path": str(backup_path), "target_dir": str(target_dir)},
        )

        try:
            extract_zip(backup_path, staging, deadline=deadline)
            restored_root = find_extracted_root(staging)
            if time.monotonic() > deadline:
                raise TimeoutError("Restore deadline passed before swap")
            install_directory(restored_root, target_dir)
        except TimeoutError as e:
            raise RestoreTimeoutError(
                f"Restore exceeded {self.restore_timeout:g}s time budget",
                details={
                    "backup_path": str(backup_path),
                    "timeout_seconds": self.restore_timeout,
                },
            ) from e
        except (zipfile.BadZipFile, ValueError) as e:
            raise BackupCorruptedError(
                f"Backup archive could not be extracted: {e}",
                details={"backup_path": str(backup_path), "error": str(e)},
            ) from e
        except InstallFailedError as e:
            raise RestoreFailedError(
                f"Could not move restored files into place: {e.message}",
                details={"backup_path": str(backup_path), **e.details},
            ) from e
        except OSError as e:
            raise RestoreFailedError(
                f"Restore failed: {e}",
                details={"backup_path": str(backup_path), "error": str(e)},
            ) from e
        finally:
            safe_remove_directory(staging)

        logger.info(
            "Backup restored",
            extra={"backup_path": str(backup_path), "target_dir": str(target_dir)},
        )

    # =========================================================================
    # Retention
    # =========================================================================

    def delete_backup(self, backup_path: Path | str) -> bool:
        """
        Delete a backup archive. Safe to call repeatedly.

        Only files inside the backup directory are deleted.

        Returns:
            True if a file was deleted, False otherwise.
        """
        backup_path = Path(backup_path)
        if backup_path.resolve().parent != self.backup_dir.resolve():
            logger.warning(
                "Refusing to delete file outside the backup directory",
                extra={"backup_path": str(backup_path), "backup_dir": str(self.backup_dir)},
            )
            return False

        if not backup_path.is_file():
            return False

        try:
            backup_path.unlink()
        except OSError as e:
            logger.error(
                "Failed to delete backup",
                extra={"backup_path": str(backup_path), "error": str(e)},
            )
            return False

        logger.info("Deleted backup", extra={"backup_path": str(backup_path)})
        return True

    def list_backups(self) -> list[Path]:
        """Backup archives of this unit, newest first."""
        if not self.backup_dir.is_dir():
            return []

        backups = [
            path
            for path in self.backup_dir.glob(f"{self.unit_name}-*-backup-*.zip")
            if path.is_file()
        ]
        return sorted(backups, key=lambda p: p.stat().st_mtime, reverse=True)

    def cleanup_old_backups(self, max_age_seconds: float) -> int:
        """
        Delete backups older than ``max_age_seconds``.

        Returns:
            Number of archives deleted.
        """
        cutoff = time.time() - max_age_seconds
        deleted = 0
        for path in self.list_backups():
            try:
                if path.stat().st_mtime >= cutoff:
                    continue
            except OSError:
                continue
            if self.delete_backup(path):
                deleted += 1

        if deleted:
            logger.info(f"Removed {deleted} old backup(s)")
        return deleted
