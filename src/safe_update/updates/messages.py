"""
User-facing messages for update error codes.

Every message names what went wrong and the corrective step an operator
should take. Failures that may leave the unit broken point at the public
release page so the unit can be reinstalled by hand.

``get_message`` is a pure lookup: it does not log and has no side effects.
"""

from __future__ import annotations

from collections import defaultdict
from typing import Any, NamedTuple

from pydantic import BaseModel, Field

from safe_update.updates.models import Severity

DEFAULT_RELEASE_URL = "https://github.com/example/unit/releases/latest"


class ErrorMessage(BaseModel):
    """
    Rendered message for one error code.

    Attributes:
        code: Error code the message was rendered for.
        user_message: What went wrong, with context values filled in.
        corrective_action: What the operator should do next.
        includes_registry_url: Whether the public release URL is embedded.
        severity: How serious the condition is.
    """

    code: str
    user_message: str
    corrective_action: str
    includes_registry_url: bool = False
    severity: Severity = Severity.ERROR
    release_url: str | None = Field(
        default=None,
        description="Public release URL when includes_registry_url is set",
    )

    def render(self) -> str:
        """Message and corrective action as one line."""
        return f"{self.user_message} {self.corrective_action}"


class _Template(NamedTuple):
    user_message: str
    corrective_action: str
    severity: Severity
    includes_url: bool = False


_TEMPLATES: dict[str, _Template] = {
    # Registry
    "registry_unreachable": _Template(
        "Could not reach the release registry.",
        "Check your network connection and try again.",
        Severity.WARNING,
    ),
    "registry_rate_limited": _Template(
        "The release registry is rate limiting requests.",
        "Wait a few minutes before checking for updates again.",
        Severity.WARNING,
    ),
    "insecure_download_url": _Template(
        "The release download URL failed security validation ({url}).",
        "Only HTTPS downloads from trusted hosts are accepted. Download manually from: {release_url}",
        Severity.ERROR,
        True,
    ),
    "invalid_version": _Template(
        "Invalid version: {version}.",
        "Use a semantic version such as 1.2.3.",
        Severity.WARNING,
    ),
    "download_failed": _Template(
        "Download failed.",
        "Check your internet connection and try again. If the problem persists, download manually from: {release_url}",
        Severity.WARNING,
        True,
    ),
    # Download validation
    "size_mismatch": _Template(
        "Download verification failed: file size mismatch. Expected {expected_size_h}, got {actual_size_h}.",
        "Please try again.",
        Severity.WARNING,
    ),
    "invalid_format": _Template(
        "Downloaded file is not a valid zip archive.",
        "Please try again.",
        Severity.WARNING,
    ),
    "empty_archive": _Template(
        "Downloaded zip archive is empty.",
        "Please try again later or download manually from: {release_url}",
        Severity.WARNING,
        True,
    ),
    "corrupt_archive": _Template(
        "Downloaded file appears to be corrupted.",
        "Please try again.",
        Severity.WARNING,
    ),
    # Backup
    "backup_dir_not_writable": _Template(
        "Cannot create backup directory: {path}.",
        "Check write permissions on the backup directory (recommended: 755).",
        Severity.WARNING,
    ),
    "insufficient_disk_space": _Template(
        "Insufficient disk space to create backup.",
        "Free at least {required_mb} MB and try again.",
        Severity.WARNING,
    ),
    "backup_creation_failed": _Template(
        "Backup creation failed. Update aborted to prevent data loss.",
        "Please try again.",
        Severity.WARNING,
    ),
    "backup_not_found": _Template(
        "Backup file not found. Cannot restore previous version.",
        "Reinstall manually from: {release_url}",
        Severity.CRITICAL,
        True,
    ),
    "backup_corrupted": _Template(
        "Backup file is corrupted. Cannot restore previous version.",
        "Reinstall manually from: {release_url}",
        Severity.CRITICAL,
        True,
    ),
    "restore_timeout": _Template(
        "Restoration exceeded the {timeout_seconds} second timeout.",
        "Reinstall manually from: {release_url}",
        Severity.CRITICAL,
        True,
    ),
    "restore_failed": _Template(
        "Update failed and automatic restoration also failed ({error}).",
        "Reinstall manually from: {release_url}",
        Severity.CRITICAL,
        True,
    ),
    # Normalization, install and verification
    "source_directory_missing": _Template(
        "The extracted release directory is missing.",
        "Please try again.",
        Severity.ERROR,
    ),
    "invalid_structure": _Template(
        "The release package does not contain {entry_point}.",
        "Download the official release package from: {release_url}",
        Severity.ERROR,
        True,
    ),
    "unrecognized_pattern": _Template(
        "Unrecognized directory name in release package: {directory_name}.",
        "Download the official release package from: {release_url}",
        Severity.ERROR,
        True,
    ),
    "install_failed": _Template(
        "Could not install the new version.",
        "Check write permissions on the installation directory and try again.",
        Severity.ERROR,
    ),
    "verification_failed": _Template(
        "The new version failed verification after install.",
        "The previous version has been restored. Please try again.",
        Severity.ERROR,
    ),
    "version_mismatch": _Template(
        "Version mismatch after update. Expected {expected_version}, got {actual_version}.",
        "Please verify the installed unit or reinstall from: {release_url}",
        Severity.ERROR,
        True,
    ),
    # Orchestration
    "update_in_progress": _Template(
        "An update is already in progress (started {started_at} by {actor}).",
        "Wait for it to finish before starting another update.",
        Severity.INFO,
    ),
    "session_not_found": _Template(
        "No update session with id {session_id}.",
        "Check the session id and try again.",
        Severity.INFO,
    ),
    "invalid_transition": _Template(
        "The update reached an unexpected state ({from_status} -> {to_status}).",
        "Please try again.",
        Severity.ERROR,
    ),
    "invalid_trigger": _Template(
        "Unknown update trigger: {trigger_location}.",
        "Use one of: {valid_triggers}.",
        Severity.WARNING,
    ),
    "invalid_configuration": _Template(
        "The configuration cannot serve this request: {reason}.",
        "Fix the configuration file and try again.",
        Severity.WARNING,
    ),
}

_GENERIC_TEMPLATE = _Template(
    "An unexpected error occurred during the update ({code}).",
    "Please try again or reinstall manually from: {release_url}",
    Severity.ERROR,
    True,
)


def _format_size(size: Any) -> str:
    try:
        size = int(size)
    except (TypeError, ValueError):
        return "unknown"
    if size >= 1048576:
        return f"{size / 1048576:.2f} MB"
    if size >= 1024:
        return f"{size / 1024:.2f} KB"
    return f"{size} B"


def _prepare_context(context: dict[str, Any], code: str, release_url: str) -> dict[str, Any]:
    """Add derived display values and default every missing key to 'unknown'."""
    values: dict[str, Any] = defaultdict(lambda: "unknown")
    values.update(context)
    values["code"] = code
    values["release_url"] = release_url

    if "expected_size" in context:
        values["expected_size_h"] = _format_size(context["expected_size"])
    if "actual_size" in context:
        values["actual_size_h"] = _format_size(context["actual_size"])
    if "required_bytes" in context:
        try:
            values["required_mb"] = f"{int(context['required_bytes']) / 1048576:.2f}"
        except (TypeError, ValueError):
            pass
    if isinstance(context.get("timeout_seconds"), (int, float)):
        values["timeout_seconds"] = f"{context['timeout_seconds']:g}"
    return values


def get_message(
    code: str,
    context: dict[str, Any] | None = None,
    *,
    release_url: str = DEFAULT_RELEASE_URL,
) -> ErrorMessage:
    """
    Render the user-facing message for an error code.

    Args:
        code: Error code (see ``safe_update.errors``).
        context: Error details used to fill in the message.
        release_url: Public release page for manual reinstall.

    Returns:
        The rendered ErrorMessage. Unknown codes get a generic message
        that includes the release URL.

    Example:
        >>> get_message("insufficient_disk_space", {"required_bytes": 52428800}).corrective_action
        'Free at least 50.00 MB and try again.'
    """
    template = _TEMPLATES.get(code, _GENERIC_TEMPLATE)
    values = _prepare_context(context or {}, code, release_url)

    return ErrorMessage(
        code=code,
        user_message=template.user_message.format_map(values),
        corrective_action=template.corrective_action.format_map(values),
        includes_registry_url=template.includes_url,
        severity=template.severity,
        release_url=release_url if template.includes_url else None,
    )


def known_codes() -> frozenset[str]:
    """Error codes with a dedicated message."""
    return frozenset(_TEMPLATES)
