"""
Update pipeline of the Safe Self-Update Engine.

This package implements the complete update functionality:
- Release resolution against a remote registry, with caching
- Package download and validation (size tolerance, archive integrity)
- Backup and restore of the installation directory
- Directory name normalization for extracted packages
- Cross-process update lock with expiry
- State machine orchestrating an update with automatic rollback
- Bounded update history and user-facing error messages
"""

from safe_update.updates.backup import BackupManager
from safe_update.updates.download import HttpPackageDownloader, PackageDownloader
from safe_update.updates.history import HistoryLogger, severity_for
from safe_update.updates.lock import LockInfo, LockStore, SQLiteLockStore
from safe_update.updates.messages import ErrorMessage, get_message
from safe_update.updates.models import (
    BackupArchive,
    HistoryEntry,
    ReleaseInfo,
    SessionError,
    Severity,
    TriggerLocation,
    UpdateSession,
    UpdateStatus,
)
from safe_update.updates.normalizer import DirectoryNormalizer, DirectoryPattern
from safe_update.updates.registry import ReleaseResolver, validate_download_url
from safe_update.updates.state_machine import UpdateOrchestrator
from safe_update.updates.validator import DownloadValidator
from safe_update.updates.version import compare_versions, parse_semantic_version

__all__ = [
    # Models
    "BackupArchive",
    "HistoryEntry",
    "ReleaseInfo",
    "SessionError",
    "Severity",
    "TriggerLocation",
    "UpdateSession",
    "UpdateStatus",
    # Registry and download
    "ReleaseResolver",
    "validate_download_url",
    "PackageDownloader",
    "HttpPackageDownloader",
    "DownloadValidator",
    # Backup and install
    "BackupManager",
    "DirectoryNormalizer",
    "DirectoryPattern",
    # Coordination
    "LockInfo",
    "LockStore",
    "SQLiteLockStore",
    "UpdateOrchestrator",
    # History and messages
    "HistoryLogger",
    "severity_for",
    "ErrorMessage",
    "get_message",
    # Versions
    "compare_versions",
    "parse_semantic_version",
]
