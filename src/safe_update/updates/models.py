"""
Data model for the update engine.

- UpdateStatus / TriggerLocation / Severity enums
- UpdateSession: one update attempt, mutated only by the orchestrator
- BackupArchive: point-in-time snapshot of the installation directory
- HistoryEntry: immutable audit record
- ReleaseInfo: latest release as reported by the registry
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


class UpdateStatus(str, Enum):
    """
    States of an update session.

    Happy path:
        checking -> downloading -> validating -> backing_up -> extracting
        -> normalizing -> installing -> verifying -> complete

    Exits:
        failed: reachable from every non-terminal state
        rolled_back: reachable once the backup exists and was restored
    """

    CHECKING = "checking"
    DOWNLOADING = "downloading"
    VALIDATING = "validating"
    BACKING_UP = "backing_up"
    EXTRACTING = "extracting"
    NORMALIZING = "normalizing"
    INSTALLING = "installing"
    VERIFYING = "verifying"
    COMPLETE = "complete"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"

    @property
    def is_terminal(self) -> bool:
        """Whether the session has finished."""
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {UpdateStatus.COMPLETE, UpdateStatus.FAILED, UpdateStatus.ROLLED_BACK}
)


class TriggerLocation(str, Enum):
    """Where an update request came from. Supplied by the caller."""

    INTERACTIVE_UI = "interactive_ui"
    COMMAND_LINE = "command_line"
    SCHEDULED = "scheduled"
    BULK_OPERATION = "bulk_operation"


class Severity(str, Enum):
    """Severity of a history entry."""

    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class SessionError(BaseModel):
    """Structured error recorded on a session."""

    code: str = Field(..., description="Stable error code")
    message: str = Field(..., description="Human-readable message")
    context: dict[str, Any] = Field(
        default_factory=dict,
        description="Structured error context",
    )


class UpdateSession(BaseModel):
    """
    One attempt to update the installed unit.

    Attributes:
        id: Opaque identifier, unique per attempt.
        current_version: Version installed when the attempt started.
        target_version: Version being installed (resolved during checking
            when the caller asked for the latest release).
        trigger_location: Origin of the request.
        actor: User or process identity that asked for the update.
        status: Current state.
        progress_percent: Coarse progress indicator for display.
        backup_path: Backup archive of this attempt, once written.
        started_at: When the attempt was created.
        completed_at: When a terminal state was reached.
        error: Structured error for failed / rolled back sessions.
    """

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    current_version: str | None = None
    target_version: str | None = None
    trigger_location: TriggerLocation = TriggerLocation.COMMAND_LINE
    actor: str = "system"
    status: UpdateStatus = UpdateStatus.CHECKING
    progress_percent: int = Field(default=0, ge=0, le=100)
    backup_path: str | None = None
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: datetime | None = None
    error: SessionError | None = None

    @property
    def is_terminal(self) -> bool:
        """Whether the session has finished."""
        return self.status.is_terminal


class BackupArchive(BaseModel):
    """A point-in-time snapshot of the installation directory."""

    model_config = ConfigDict(frozen=True)

    source_version: str
    file_path: str
    created_at: datetime = Field(default_factory=utc_now)
    size_bytes: int = Field(default=0, ge=0)


class HistoryEntry(BaseModel):
    """Immutable audit record of one finished update attempt."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(default_factory=utc_now)
    trigger_location: TriggerLocation
    current_version: str | None = None
    target_version: str | None = None
    status: UpdateStatus
    actor: str
    error_code: str | None = None
    error_message: str | None = None
    severity: Severity = Severity.INFO


class ReleaseInfo(BaseModel):
    """
    Release metadata returned by the registry.

    Attributes:
        version: Semantic version without a leading 'v'.
        download_url: Where the release package can be fetched.
        size_bytes: Declared package size, when the registry reports one.
        notes: Release notes / changelog.
        published_at: Publication timestamp as reported.
        current_version: Installed version (filled by check_for_update).
        update_available: Whether version is newer than current_version.
    """

    version: str
    download_url: str
    size_bytes: int | None = Field(default=None, ge=0)
    notes: str = ""
    published_at: str | None = None
    current_version: str | None = None
    update_available: bool | None = None
