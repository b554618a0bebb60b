"""
Update orchestrator for the Safe Self-Update Engine.

This module implements the UpdateOrchestrator class that drives one update
attempt through its states and rolls the installation back when a step
after the backup fails.

Session states:
- checking: Resolving the target release
- downloading: Fetching the release package
- validating: Checking package size and archive integrity
- backing_up: Archiving the current installation
- extracting: Unpacking the package into a staging directory
- normalizing: Renaming the extracted directory to the unit name
- installing: Moving the new version into place
- verifying: Checking the installed entry point and version marker
- complete: Update installed
- failed: Update aborted (installation untouched, or restore failed)
- rolled_back: Update failed and the backup was restored

Only one update of a unit runs at a time. The orchestrator takes an
expiring lock in a shared store before a session starts, refreshes it while
the session runs and releases it once the session reaches a terminal state
and has been written to history.
"""

from __future__ import annotations

import asyncio
import contextlib
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from safe_update.config import AppConfig
from safe_update.errors import (
    CorruptArchiveError,
    DownloadFailedError,
    InstallFailedError,
    InvalidTransitionError,
    InvalidTriggerError,
    InvalidVersionError,
    RegistryUnreachableError,
    RestoreFailedError,
    SessionNotFoundError,
    SourceDirectoryMissingError,
    UpdateError,
    UpdateInProgressError,
    VerificationFailedError,
    VersionMismatchError,
)
from safe_update.logging import get_logger
from safe_update.updates.backup import BackupManager
from safe_update.updates.download import HttpPackageDownloader, PackageDownloader
from safe_update.updates.history import HistoryLogger, severity_for
from safe_update.updates.lock import LockStore, SQLiteLockStore, lock_name_for
from safe_update.updates.messages import get_message
from safe_update.updates.models import (
    BackupArchive,
    HistoryEntry,
    ReleaseInfo,
    SessionError,
    TriggerLocation,
    UpdateSession,
    UpdateStatus,
    utc_now,
)
from safe_update.updates.normalizer import DirectoryNormalizer
from safe_update.updates.operations import (
    extract_zip,
    find_extracted_root,
    install_directory,
    read_json,
    read_version_marker,
    remove_file,
    safe_remove_directory,
    write_json_atomic,
)
from safe_update.updates.registry import ReleaseResolver
from safe_update.updates.validator import DownloadValidator
from safe_update.updates.version import compare_versions, normalize_version

logger = get_logger(__name__)


# Valid state transitions
_VALID_TRANSITIONS: dict[UpdateStatus, set[UpdateStatus]] = {
    UpdateStatus.CHECKING: {UpdateStatus.DOWNLOADING, UpdateStatus.FAILED},
    UpdateStatus.DOWNLOADING: {UpdateStatus.VALIDATING, UpdateStatus.FAILED},
    UpdateStatus.VALIDATING: {UpdateStatus.BACKING_UP, UpdateStatus.FAILED},
    UpdateStatus.BACKING_UP: {UpdateStatus.EXTRACTING, UpdateStatus.FAILED},
    UpdateStatus.EXTRACTING: {
        UpdateStatus.NORMALIZING,
        UpdateStatus.FAILED,
        UpdateStatus.ROLLED_BACK,
    },
    UpdateStatus.NORMALIZING: {
        UpdateStatus.INSTALLING,
        UpdateStatus.FAILED,
        UpdateStatus.ROLLED_BACK,
    },
    UpdateStatus.INSTALLING: {
        UpdateStatus.VERIFYING,
        UpdateStatus.FAILED,
        UpdateStatus.ROLLED_BACK,
    },
    UpdateStatus.VERIFYING: {
        UpdateStatus.COMPLETE,
        UpdateStatus.FAILED,
        UpdateStatus.ROLLED_BACK,
    },
    UpdateStatus.COMPLETE: set(),
    UpdateStatus.FAILED: set(),
    UpdateStatus.ROLLED_BACK: set(),
}

# Progress shown when a state is entered
_PROGRESS: dict[UpdateStatus, int] = {
    UpdateStatus.CHECKING: 5,
    UpdateStatus.DOWNLOADING: 15,
    UpdateStatus.VALIDATING: 40,
    UpdateStatus.BACKING_UP: 50,
    UpdateStatus.EXTRACTING: 60,
    UpdateStatus.NORMALIZING: 70,
    UpdateStatus.INSTALLING: 80,
    UpdateStatus.VERIFYING: 90,
    UpdateStatus.COMPLETE: 100,
    UpdateStatus.ROLLED_BACK: 100,
}

_PRE_BACKUP_STATES = frozenset(
    {
        UpdateStatus.CHECKING,
        UpdateStatus.DOWNLOADING,
        UpdateStatus.VALIDATING,
        UpdateStatus.BACKING_UP,
    }
)


@dataclass
class _SessionResources:
    """Files and outcomes tracked while a session runs."""

    work_dir: Path
    package_path: Path | None = None
    backup: BackupArchive | None = None
    restore_failed: bool = False


class UpdateOrchestrator:
    """
    Drives update sessions through the state machine.

    This class orchestrates:
    - Resolving the release (with retries)
    - Downloading and validating the package
    - Backing up the installation
    - Extracting, normalizing and installing the new version
    - Verifying the result
    - Restoring the backup on failure
    - Recording every finished session in the history

    Attributes:
        config: Application configuration.
        resolver: Release registry client.
        downloader: Package downloader.
        validator: Download validator.
        backup_manager: Backup manager.
        normalizer: Directory normalizer.
        lock_store: Shared lock store.
        history: History logger.

    Example:
        >>> orchestrator = UpdateOrchestrator.from_config(load_config())
        >>> session_id = await orchestrator.request_update(None, TriggerLocation.COMMAND_LINE, "admin")
        >>> orchestrator.get_status(session_id).status
        <UpdateStatus.COMPLETE: 'complete'>
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        resolver: ReleaseResolver | None = None,
        downloader: PackageDownloader | None = None,
        validator: DownloadValidator | None = None,
        backup_manager: BackupManager | None = None,
        normalizer: DirectoryNormalizer | None = None,
        lock_store: LockStore | None = None,
        history: HistoryLogger | None = None,
    ) -> None:
        """
        Initialize the orchestrator.

        Components not passed in are built from ``config``.
        """
        self.config = config
        self.resolver = resolver or ReleaseResolver.from_config(config)
        self.downloader = downloader or HttpPackageDownloader.from_config(config)
        self.validator = validator or DownloadValidator.from_config(config)
        self.backup_manager = backup_manager or BackupManager.from_config(config)
        self.normalizer = normalizer or DirectoryNormalizer.from_config(config)
        self.lock_store = lock_store or SQLiteLockStore.from_config(config)
        self.history = history or HistoryLogger.from_config(config)

        self._install_dir = Path(config.unit.install_dir)
        self._state_file = Path(config.paths.state_file)
        self._lock_name = lock_name_for(config.unit.name)
        self._latest: UpdateSession | None = None
        self._tasks: set[asyncio.Task[None]] = set()

    @classmethod
    def from_config(cls, config: AppConfig) -> UpdateOrchestrator:
        """Create an orchestrator with default components."""
        return cls(config)

    # =========================================================================
    # Public API
    # =========================================================================

    def current_version(self) -> str | None:
        """Version marker of the live installation, if readable."""
        marker = read_version_marker(self._install_dir, self.config.unit.version_file)
        return normalize_version(marker) if marker else None

    async def check_for_update(self, force: bool = False) -> ReleaseInfo:
        """
        Report the latest release and whether it is newer than the install.

        Args:
            force: Bypass the registry cache.

        Raises:
            RegistryUnreachableError: After all retries failed.
            RegistryRateLimitedError: If the registry throttles the request.
            InsecureDownloadUrlError: If the release URL is unsafe.
        """
        release = await self._resolve_release(None, force=force)
        current = self.current_version()

        update_available = True
        if current is not None:
            try:
                update_available = compare_versions(release.version, current) > 0
            except InvalidVersionError:
                logger.warning(
                    "Installed version marker is not a semantic version",
                    extra={"current_version": current},
                )

        return release.model_copy(
            update={"current_version": current, "update_available": update_available}
        )

    async def request_update(
        self,
        target_version: str | None = None,
        trigger_location: TriggerLocation | str = TriggerLocation.COMMAND_LINE,
        actor: str = "system",
    ) -> str:
        """
        Run an update to completion.

        Args:
            target_version: Version to install; None means the latest release.
            trigger_location: Where the request came from.
            actor: User or process identity asking for the update.

        Returns:
            The session id. The outcome is available from ``get_status``.

        Raises:
            UpdateInProgressError: If another update holds the lock.
            InvalidTriggerError: If ``trigger_location`` is not a known location.
        """
        session = self._begin_session(target_version, trigger_location, actor)
        await self._run_session(session)
        return session.id

    async def start_update(
        self,
        target_version: str | None = None,
        trigger_location: TriggerLocation | str = TriggerLocation.COMMAND_LINE,
        actor: str = "system",
    ) -> str:
        """
        Take the lock and run the update as a background task.

        Returns:
            The session id, immediately.

        Raises:
            UpdateInProgressError: If another update holds the lock.
            InvalidTriggerError: If ``trigger_location`` is not a known location.
        """
        session = self._begin_session(target_version, trigger_location, actor)
        task = asyncio.create_task(self._run_session(session))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return session.id

    async def wait_for_updates(self) -> None:
        """Wait for background sessions started by ``start_update``."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks))

    def get_status(self, session_id: str) -> UpdateSession:
        """
        Snapshot of a session.

        The session running (or last run) in this process is answered from
        memory; otherwise the persisted state file is consulted so other
        processes can poll a session.

        Raises:
            SessionNotFoundError: If no session with ``session_id`` is known.
        """
        if self._latest is not None and self._latest.id == session_id:
            return self._latest.model_copy(deep=True)

        try:
            data = read_json(self._state_file)
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to load update state: {e}")
            data = None

        if isinstance(data, dict) and data.get("id") == session_id:
            return UpdateSession.model_validate(data)

        raise SessionNotFoundError(
            f"Update session not found: {session_id}",
            details={"session_id": session_id},
        )

    def get_history(self, limit: int = 5) -> list[HistoryEntry]:
        """Most recent finished sessions, newest first."""
        return self.history.get_history(limit)

    def cleanup_orphans(self) -> int:
        """
        Remove stale downloads and staging directories.

        Returns:
            Number of files and directories removed.
        """
        max_age = self.config.policy.orphan_max_age_seconds
        removed = self.validator.cleanup_orphans(max_age)

        staging_dir = Path(self.config.paths.staging_dir)
        if staging_dir.is_dir():
            cutoff = utc_now().timestamp() - max_age
            for entry in staging_dir.iterdir():
                try:
                    stale = entry.is_dir() and entry.stat().st_mtime < cutoff
                except OSError:
                    continue
                if stale and safe_remove_directory(entry):
                    removed += 1
        return removed

    def delete_backup(self, backup_path: Path | str) -> bool:
        """Delete a retained backup archive. Idempotent."""
        return self.backup_manager.delete_backup(backup_path)

    def cleanup_old_backups(self, max_age_seconds: float | None = None) -> int:
        """Delete retained backups older than the configured age."""
        if max_age_seconds is None:
            max_age_seconds = self.config.policy.backup_max_age_seconds
        return self.backup_manager.cleanup_old_backups(max_age_seconds)

    # =========================================================================
    # Session lifecycle
    # =========================================================================

    def _begin_session(
        self,
        target_version: str | None,
        trigger_location: TriggerLocation | str,
        actor: str,
    ) -> UpdateSession:
        """Create a session and take the lock before anything is awaited."""
        try:
            trigger = TriggerLocation(trigger_location)
        except ValueError as e:
            raise InvalidTriggerError(
                f"Unknown trigger location: {trigger_location}",
                details={
                    "trigger_location": str(trigger_location),
                    "valid_triggers": ", ".join(t.value for t in TriggerLocation),
                },
            ) from e

        session = UpdateSession(
            current_version=self.current_version(),
            target_version=normalize_version(target_version) if target_version else None,
            trigger_location=trigger,
            actor=actor,
            progress_percent=_PROGRESS[UpdateStatus.CHECKING],
        )

        ttl = self.config.policy.lock_ttl_seconds
        if not self.lock_store.acquire(self._lock_name, session.id, ttl, actor=actor):
            holder = self.lock_store.get(self._lock_name)
            raise UpdateInProgressError(
                "An update is already in progress",
                details=holder.to_dict() if holder else {"holder": None, "started_at": None},
            )

        self._latest = session
        self._save_state(session)
        logger.info(
            "Update session started",
            extra={
                "session_id": session.id,
                "current_version": session.current_version,
                "target_version": session.target_version,
                "trigger_location": session.trigger_location.value,
                "actor": actor,
            },
        )
        return session

    async def _run_session(self, session: UpdateSession) -> None:
        """Run the pipeline; record history and release the lock afterwards."""
        resources = _SessionResources(
            work_dir=Path(self.config.paths.staging_dir) / session.id,
        )
        heartbeat = asyncio.create_task(self._keep_lock_alive(session))
        try:
            try:
                await self._execute(session, resources)
            except UpdateError as e:
                await self._handle_failure(session, resources, e)
            except Exception as e:
                logger.exception(
                    "Unexpected error during update",
                    extra={"session_id": session.id, "status": session.status.value},
                )
                error_cls = InstallFailedError if resources.backup else DownloadFailedError
                await self._handle_failure(
                    session,
                    resources,
                    error_cls(
                        f"Unexpected error: {e}",
                        details={"error": str(e), "type": type(e).__name__},
                    ),
                )
            finally:
                heartbeat.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await heartbeat
                if not session.is_terminal:
                    session.error = SessionError(
                        code="internal",
                        message="Update was interrupted",
                        context={"status": session.status.value},
                    )
                    self._transition_to(session, UpdateStatus.FAILED)
                await asyncio.to_thread(self._remove_session_files, resources)
                self._record_history(session, resources)
        finally:
            self._release_lock(session)

    async def _keep_lock_alive(self, session: UpdateSession) -> None:
        """Refresh the update lock every third of its TTL until cancelled."""
        ttl = self.config.policy.lock_ttl_seconds
        while True:
            await asyncio.sleep(ttl / 3)
            try:
                held = await asyncio.to_thread(
                    self.lock_store.refresh, self._lock_name, session.id, ttl
                )
            except Exception as e:
                logger.error(
                    "Failed to refresh update lock",
                    extra={"session_id": session.id, "error": str(e)},
                )
                continue
            if not held:
                logger.error(
                    "Update lock lost while session is running",
                    extra={"session_id": session.id, "status": session.status.value},
                )
                return

    async def _execute(self, session: UpdateSession, resources: _SessionResources) -> None:
        install_dir = self._install_dir

        release = await self._resolve_release(session.target_version)
        session.target_version = release.version
        self._transition_to(session, UpdateStatus.DOWNLOADING)

        resources.package_path = await self.downloader.download(
            release, Path(self.config.paths.download_dir)
        )
        self._transition_to(session, UpdateStatus.VALIDATING)

        await asyncio.to_thread(
            self.validator.validate, resources.package_path, release.size_bytes
        )
        self._transition_to(session, UpdateStatus.BACKING_UP)

        backup = await asyncio.to_thread(
            self.backup_manager.create_backup,
            session.current_version or "unknown",
            install_dir,
        )
        resources.backup = backup
        session.backup_path = backup.file_path
        self._transition_to(session, UpdateStatus.EXTRACTING)

        extracted_root = await asyncio.to_thread(
            self._extract, resources.package_path, resources.work_dir / "contents"
        )
        self._transition_to(session, UpdateStatus.NORMALIZING)

        normalized = await asyncio.to_thread(
            self.normalizer.normalize,
            extracted_root,
            resources.work_dir,
            self.config.unit.name,
        )
        self._transition_to(session, UpdateStatus.INSTALLING)

        await asyncio.to_thread(install_directory, normalized, install_dir)
        self._transition_to(session, UpdateStatus.VERIFYING)

        await asyncio.to_thread(self._verify_install, install_dir, release.version)
        self._transition_to(session, UpdateStatus.COMPLETE)

        await asyncio.to_thread(self.backup_manager.delete_backup, backup.file_path)
        logger.info(
            f"Update completed: {session.current_version} -> {session.target_version}",
            extra={"session_id": session.id},
        )

    async def _handle_failure(
        self,
        session: UpdateSession,
        resources: _SessionResources,
        error: UpdateError,
    ) -> None:
        """Record the error and restore the backup when one exists."""
        if session.is_terminal:
            logger.error(
                f"Error after session finished: {error.message}",
                extra={"session_id": session.id, "error_code": error.error_code},
            )
            return

        session.error = SessionError(
            code=error.error_code,
            message=error.message,
            context=error.details,
        )
        logger.error(
            f"Update failed in {session.status.value}: {error.message}",
            extra={"session_id": session.id, "error_code": error.error_code},
        )

        if resources.backup is None or session.status in _PRE_BACKUP_STATES:
            self._transition_to(session, UpdateStatus.FAILED)
            return

        backup_path = resources.backup.file_path
        logger.warning(
            "Restoring backup after failed update",
            extra={"session_id": session.id, "backup_path": backup_path},
        )

        try:
            await asyncio.to_thread(
                self.backup_manager.restore_backup, backup_path, self._install_dir
            )
        except Exception as e:
            restore_error = (
                e
                if isinstance(e, UpdateError)
                else RestoreFailedError(str(e), details={"error": str(e)})
            )
            resources.restore_failed = True
            message = get_message(
                restore_error.error_code,
                {**restore_error.details, "error": restore_error.message},
                release_url=self.config.unit.public_release_url,
            )
            session.error = SessionError(
                code=restore_error.error_code,
                message=message.render(),
                context={
                    **restore_error.details,
                    "backup_path": backup_path,
                    "release_url": self.config.unit.public_release_url,
                    "original_error": error.to_dict(),
                },
            )
            logger.critical(
                "Automatic restore failed, manual recovery required",
                extra={
                    "session_id": session.id,
                    "backup_path": backup_path,
                    "error_code": restore_error.error_code,
                    "release_url": self.config.unit.public_release_url,
                },
            )
            self._transition_to(session, UpdateStatus.FAILED)
            return

        self._transition_to(session, UpdateStatus.ROLLED_BACK)
        await asyncio.to_thread(self.backup_manager.delete_backup, backup_path)

    # =========================================================================
    # Pipeline steps
    # =========================================================================

    async def _resolve_release(
        self,
        target_version: str | None,
        *,
        force: bool = False,
    ) -> ReleaseInfo:
        """Resolve a release, retrying when the registry is unreachable."""
        attempts = self.config.registry.retries + 1
        attempt = 1
        while True:
            try:
                if target_version is None:
                    return await self.resolver.resolve(force=force)
                return await self.resolver.release_for(target_version)
            except RegistryUnreachableError as e:
                if attempt >= attempts:
                    raise
                logger.warning(
                    f"Registry attempt {attempt}/{attempts} failed: {e.message}",
                    extra={"retry_delay_seconds": self.config.registry.retry_delay_seconds},
                )
                await asyncio.sleep(self.config.registry.retry_delay_seconds)
                attempt += 1

    def _extract(self, package_path: Path, dest: Path) -> Path:
        """Extract the package and return the unit's top-level directory."""
        try:
            extract_zip(package_path, dest)
            return find_extracted_root(dest)
        except (zipfile.BadZipFile, ValueError) as e:
            raise CorruptArchiveError(
                f"Could not extract release package: {e}",
                details={"path": str(package_path), "error": str(e)},
            ) from e
        except FileNotFoundError as e:
            raise SourceDirectoryMissingError(
                "Release package extracted to nothing",
                details={"path": str(package_path), "staging_dir": str(dest)},
            ) from e
        except OSError as e:
            raise InstallFailedError(
                f"Could not extract release package: {e}",
                details={"path": str(package_path), "error": str(e)},
            ) from e

    def _verify_install(self, install_dir: Path, target_version: str) -> None:
        """
        Check the installed unit.

        Raises:
            VerificationFailedError: If the entry point is missing.
            VersionMismatchError: If the version marker names another version.
        """
        entry_point = install_dir / self.config.unit.entry_point
        if not entry_point.is_file():
            raise VerificationFailedError(
                f"Installed unit is missing {self.config.unit.entry_point}",
                details={"install_dir": str(install_dir), "entry_point": str(entry_point)},
            )

        marker = read_version_marker(install_dir, self.config.unit.version_file)
        if marker is not None and normalize_version(marker) != target_version:
            raise VersionMismatchError(
                f"Version mismatch after update. Expected {target_version}, got {marker}",
                details={"expected_version": target_version, "actual_version": marker},
            )

    # =========================================================================
    # State handling
    # =========================================================================

    def _transition_to(self, session: UpdateSession, new_status: UpdateStatus) -> None:
        """
        Move a session to a new state.

        Raises:
            InvalidTransitionError: If the transition is not in the table.
        """
        current = session.status
        if new_status not in _VALID_TRANSITIONS[current]:
            raise InvalidTransitionError(
                f"Invalid state transition from {current.value} to {new_status.value}",
                details={
                    "from_status": current.value,
                    "to_status": new_status.value,
                    "valid_transitions": sorted(s.value for s in _VALID_TRANSITIONS[current]),
                },
            )

        logger.info(
            f"State transition: {current.value} -> {new_status.value}",
            extra={
                "session_id": session.id,
                "old_state": current.value,
                "new_state": new_status.value,
                "target_version": session.target_version,
            },
        )

        session.status = new_status
        if new_status in _PROGRESS:
            session.progress_percent = _PROGRESS[new_status]
        if new_status.is_terminal:
            session.completed_at = utc_now()

        self._save_state(session)

    def _save_state(self, session: UpdateSession) -> None:
        """Persist the session for cross-process polling."""
        try:
            write_json_atomic(self._state_file, session.model_dump(mode="json"))
            logger.debug(
                "Saved update state",
                extra={"path": str(self._state_file), "state": session.status.value},
            )
        except OSError as e:
            logger.warning(f"Failed to save update state: {e}")

    def _remove_session_files(self, resources: _SessionResources) -> None:
        safe_remove_directory(resources.work_dir)
        if resources.package_path is not None:
            remove_file(resources.package_path)

    def _record_history(self, session: UpdateSession, resources: _SessionResources) -> None:
        error = session.error
        entry = HistoryEntry(
            timestamp=session.completed_at or utc_now(),
            trigger_location=session.trigger_location,
            current_version=session.current_version,
            target_version=session.target_version,
            status=session.status,
            actor=session.actor,
            error_code=error.code if error else None,
            error_message=error.message if error else None,
            severity=severity_for(
                session.status,
                backup_created=resources.backup is not None,
                restore_failed=resources.restore_failed,
            ),
        )
        try:
            self.history.log(entry)
        except Exception as e:
            logger.exception(
                "Failed to write update history",
                extra={"session_id": session.id, "error": str(e)},
            )

    def _release_lock(self, session: UpdateSession) -> None:
        try:
            self.lock_store.release(self._lock_name, session.id)
        except Exception as e:
            # The lock expires on its own
            logger.error(
                "Failed to release update lock",
                extra={"session_id": session.id, "error": str(e)},
            )


def session_summary(session: UpdateSession) -> dict[str, Any]:
    """Compact, JSON-friendly view of a session for display."""
    summary: dict[str, Any] = {
        "id": session.id,
        "status": session.status.value,
        "progress_percent": session.progress_percent,
        "current_version": session.current_version,
        "target_version": session.target_version,
        "started_at": session.started_at.isoformat(),
        "completed_at": session.completed_at.isoformat() if session.completed_at else None,
    }
    if session.error is not None:
        summary["error"] = session.error.model_dump()
    if session.backup_path and session.status == UpdateStatus.FAILED:
        summary["backup_path"] = session.backup_path
    return summary
