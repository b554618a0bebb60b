"""
Update history store.

Every finished update attempt is recorded as an immutable HistoryEntry in
a small JSON file. The file keeps only the most recent entries (five by
default), oldest dropped first, and is rewritten with an atomic rename so a
crash never leaves a half-written history.

Entries are also emitted to the application log at the level matching
their severity.
"""

from __future__ import annotations

import logging
from pathlib import Path

from pydantic import ValidationError

from safe_update.config import AppConfig
from safe_update.logging import get_logger
from safe_update.updates.models import HistoryEntry, Severity, UpdateStatus
from safe_update.updates.operations import read_json, write_json_atomic

logger = get_logger(__name__)

DEFAULT_HISTORY_LIMIT = 5

_LOG_LEVELS = {
    Severity.INFO: logging.INFO,
    Severity.WARNING: logging.WARNING,
    Severity.ERROR: logging.ERROR,
    Severity.CRITICAL: logging.CRITICAL,
}


def severity_for(
    status: UpdateStatus,
    *,
    backup_created: bool = False,
    restore_failed: bool = False,
) -> Severity:
    """
    Classify a terminal status.

    - complete: INFO
    - failed before a backup existed: WARNING (nothing was touched)
    - rolled_back: ERROR (the update failed but the unit was restored)
    - restore failed: CRITICAL (the unit may be broken)
    """
    if restore_failed:
        return Severity.CRITICAL
    if status == UpdateStatus.COMPLETE:
        return Severity.INFO
    if status == UpdateStatus.ROLLED_BACK:
        return Severity.ERROR
    if status == UpdateStatus.FAILED and not backup_created:
        return Severity.WARNING
    return Severity.ERROR


class HistoryLogger:
    """
    Bounded, newest-first history of update attempts.

    Attributes:
        history_file: JSON file holding the entries.
        limit: Maximum number of entries kept.
    """

    def __init__(self, history_file: Path | str, *, limit: int = DEFAULT_HISTORY_LIMIT) -> None:
        self.history_file = Path(history_file)
        self.limit = limit

    @classmethod
    def from_config(cls, config: AppConfig) -> HistoryLogger:
        """Create a HistoryLogger from application configuration."""
        return cls(config.paths.history_file, limit=config.policy.history_limit)

    def _load(self) -> list[HistoryEntry]:
        """Read stored entries, newest first. A damaged file reads as empty."""
        try:
            data = read_json(self.history_file)
        except (OSError, ValueError) as e:
            logger.warning(
                "Could not read update history, starting fresh",
                extra={"history_file": str(self.history_file), "error": str(e)},
            )
            return []

        if not data:
            return []
        if not isinstance(data, list):
            logger.warning(
                "Update history is not a list, starting fresh",
                extra={"history_file": str(self.history_file), "type": type(data).__name__},
            )
            return []

        entries: list[HistoryEntry] = []
        for item in data:
            try:
                entries.append(HistoryEntry.model_validate(item))
            except ValidationError as e:
                logger.warning(
                    "Skipping invalid history entry",
                    extra={"history_file": str(self.history_file), "error": str(e)},
                )
        return entries

    def log(self, entry: HistoryEntry) -> None:
        """
        Record an entry, dropping the oldest beyond the limit.

        Raises:
            OSError: If the history file cannot be written.
        """
        entries = [entry, *self._load()][: self.limit]
        write_json_atomic(
            self.history_file,
            [item.model_dump(mode="json") for item in entries],
        )

        logger.log(
            _LOG_LEVELS[entry.severity],
            f"Update {entry.status.value}: {entry.current_version} -> {entry.target_version}",
            extra={
                "trigger_location": entry.trigger_location.value,
                "status": entry.status.value,
                "actor": entry.actor,
                "error_code": entry.error_code,
                "error_message": entry.error_message,
                "severity": entry.severity.value,
            },
        )

    def get_history(self, limit: int = DEFAULT_HISTORY_LIMIT) -> list[HistoryEntry]:
        """Most recent entries, newest first."""
        if limit <= 0:
            return []
        return self._load()[:limit]

    def clear(self) -> None:
        """Remove all history entries."""
        write_json_atomic(self.history_file, [])
        logger.info("Update history cleared", extra={"history_file": str(self.history_file)})
