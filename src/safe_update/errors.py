"""
Error types for the Safe Self-Update Engine.

This module defines the UpdateError base class and one subclass per failure
code. Components raise these errors; the update orchestrator catches them at
the pipeline boundary and records them on the session as structured errors
(code + message + context) instead of letting them escape to callers.

Error codes are stable strings and are the keys used by the messaging table
in ``safe_update.updates.messages``.
"""

from __future__ import annotations

from typing import Any


class UpdateError(Exception):
    """
    Base exception class for update engine errors.

    Attributes:
        error_code: Stable error code string (e.g., "size_mismatch",
            "backup_not_found", "update_in_progress").
        message: Human-readable error message.
        details: Structured context (sizes, paths, versions, ...).

    Example:
        >>> raise UpdateError(
        ...     error_code="size_mismatch",
        ...     message="Downloaded package size does not match",
        ...     details={"expected_size": 100, "actual_size": 50},
        ... )
    """

    error_code: str = "internal"

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        *,
        error_code: str | None = None,
    ) -> None:
        """
        Initialize an UpdateError.

        Args:
            message: Human-readable error message.
            details: Optional dictionary with structured error details.
            error_code: Overrides the class-level error code.
        """
        super().__init__(message)
        if error_code is not None:
            self.error_code = error_code
        self.message = message
        self.details = details or {}

    def __repr__(self) -> str:
        """Return a detailed string representation."""
        return (
            f"{self.__class__.__name__}("
            f"error_code={self.error_code!r}, "
            f"message={self.message!r}, "
            f"details={self.details!r})"
        )

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the error to a dictionary for serialization.

        Returns:
            Dictionary with error_code, message, and details.
        """
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


# =============================================================================
# Release registry
# =============================================================================


class RegistryUnreachableError(UpdateError):
    """The release registry could not be reached or returned an unusable response."""

    error_code = "registry_unreachable"


class RegistryRateLimitedError(UpdateError):
    """The release registry throttled the request."""

    error_code = "registry_rate_limited"


class InsecureDownloadUrlError(UpdateError):
    """A download URL failed the HTTPS / allowed-host checks."""

    error_code = "insecure_download_url"


class InvalidVersionError(UpdateError):
    """A version string is not a valid semantic version."""

    error_code = "invalid_version"


class DownloadFailedError(UpdateError):
    """The release package could not be downloaded."""

    error_code = "download_failed"


# =============================================================================
# Download validation
# =============================================================================


class SizeMismatchError(UpdateError):
    """Downloaded package size is outside the tolerated range."""

    error_code = "size_mismatch"


class InvalidFormatError(UpdateError):
    """Downloaded file is not a compressed archive."""

    error_code = "invalid_format"


class EmptyArchiveError(UpdateError):
    """Downloaded archive contains no entries."""

    error_code = "empty_archive"


class CorruptArchiveError(UpdateError):
    """Downloaded archive could not be listed or failed its integrity check."""

    error_code = "corrupt_archive"


# =============================================================================
# Backup
# =============================================================================


class BackupDirNotWritableError(UpdateError):
    """The backup directory cannot be created or written."""

    error_code = "backup_dir_not_writable"


class InsufficientDiskSpaceError(UpdateError):
    """Not enough free space to write the backup archive."""

    error_code = "insufficient_disk_space"


class BackupCreationError(UpdateError):
    """Archiving the installation failed part way through."""

    error_code = "backup_creation_failed"


class BackupNotFoundError(UpdateError):
    """The backup archive to restore does not exist."""

    error_code = "backup_not_found"


class BackupCorruptedError(UpdateError):
    """The backup archive is not a valid archive or fails its integrity check."""

    error_code = "backup_corrupted"


class RestoreTimeoutError(UpdateError):
    """Restoring the backup exceeded its time budget."""

    error_code = "restore_timeout"


class RestoreFailedError(UpdateError):
    """Restoring the backup failed for a reason other than the ones above."""

    error_code = "restore_failed"


# =============================================================================
# Directory normalization and install
# =============================================================================


class SourceDirectoryMissingError(UpdateError):
    """The extracted (or installed) directory does not exist."""

    error_code = "source_directory_missing"


class InvalidStructureError(UpdateError):
    """The directory lacks the unit's entry-point file."""

    error_code = "invalid_structure"


class UnrecognizedPatternError(UpdateError):
    """The extracted directory name matches none of the known conventions."""

    error_code = "unrecognized_pattern"


class InstallFailedError(UpdateError):
    """Moving the new version into place failed."""

    error_code = "install_failed"


class VerificationFailedError(UpdateError):
    """The installed unit failed post-install verification."""

    error_code = "verification_failed"


class VersionMismatchError(UpdateError):
    """The installed version marker does not match the target version."""

    error_code = "version_mismatch"


# =============================================================================
# Orchestration
# =============================================================================


class UpdateInProgressError(UpdateError):
    """Another update of the same unit holds the update lock."""

    error_code = "update_in_progress"


class SessionNotFoundError(UpdateError):
    """No session with the requested id is known."""

    error_code = "session_not_found"


class InvalidTransitionError(UpdateError):
    """The state machine was asked for a transition its table does not allow."""

    error_code = "invalid_transition"


class InvalidTriggerError(UpdateError):
    """An update was requested from an unknown trigger location."""

    error_code = "invalid_trigger"


class InvalidConfigurationError(UpdateError):
    """The configuration cannot serve the request; retrying will not help."""

    error_code = "invalid_configuration"
