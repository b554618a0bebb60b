"""
Tests for the command-line interface.

Tests cover:
- Argument parsing
- Exit codes for each session outcome
- JSON output and error reporting
"""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest
import yaml

from safe_update.cli import (
    EXIT_ERROR,
    EXIT_IN_PROGRESS,
    EXIT_OK,
    EXIT_RECOVERABLE,
    EXIT_UNRECOVERABLE,
    build_parser,
    exit_code_for,
    main,
)
from safe_update.config import AppConfig
from safe_update.errors import RegistryRateLimitedError, UpdateInProgressError
from safe_update.updates.models import ReleaseInfo, SessionError, UpdateSession, UpdateStatus
from safe_update.updates.state_machine import UpdateOrchestrator


@pytest.fixture
def config_file(tmp_path: Path, app_config: AppConfig) -> Path:
    """YAML configuration file matching the app_config fixture."""
    path = tmp_path / "config.yml"
    path.write_text(yaml.safe_dump(app_config.model_dump(mode="json")))
    return path


def _session(status: UpdateStatus, code: str | None = None) -> UpdateSession:
    return UpdateSession(
        id="s1",
        current_version="1.0.0",
        target_version="1.1.0",
        status=status,
        error=SessionError(code=code, message="failed") if code else None,
    )


class TestParser:
    """Tests for build_parser."""

    def test_update_arguments(self) -> None:
        """Test update options are parsed."""
        args = build_parser().parse_args(
            ["update", "--version", "1.2.3", "--trigger", "scheduled", "--actor", "cron"]
        )

        assert args.command == "update"
        assert args.target_version == "1.2.3"
        assert args.trigger == "scheduled"
        assert args.actor == "cron"

    def test_invalid_trigger(self) -> None:
        """Test unknown trigger locations are rejected."""
        with pytest.raises(SystemExit):
            build_parser().parse_args(["update", "--trigger", "somewhere"])

    def test_command_required(self) -> None:
        """Test a subcommand must be given."""
        with pytest.raises(SystemExit):
            build_parser().parse_args([])


class TestExitCodeFor:
    """Tests for exit_code_for."""

    @pytest.mark.parametrize(
        ("status", "code", "expected"),
        [
            (UpdateStatus.COMPLETE, None, EXIT_OK),
            (UpdateStatus.ROLLED_BACK, "install_failed", EXIT_RECOVERABLE),
            (UpdateStatus.FAILED, "download_failed", EXIT_RECOVERABLE),
            (UpdateStatus.FAILED, "restore_failed", EXIT_UNRECOVERABLE),
            (UpdateStatus.FAILED, "backup_corrupted", EXIT_UNRECOVERABLE),
        ],
    )
    def test_exit_codes(self, status: UpdateStatus, code: str | None, expected: int) -> None:
        """Test each outcome maps to its exit code."""
        assert exit_code_for(_session(status, code)) == expected


class TestMain:
    """Tests for main."""

    def test_update_complete(self, config_file: Path, capsys: pytest.CaptureFixture[str]) -> None:
        """Test a completed update prints the session and exits 0."""
        with (
            patch.object(UpdateOrchestrator, "request_update", AsyncMock(return_value="s1")),
            patch.object(
                UpdateOrchestrator, "get_status", return_value=_session(UpdateStatus.COMPLETE)
            ),
        ):
            code = main(["--config", str(config_file), "update"])

        assert code == EXIT_OK
        output = json.loads(capsys.readouterr().out)
        assert output["status"] == "complete"
        assert output["target_version"] == "1.1.0"

    def test_update_restore_failed(
        self, config_file: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        """Test a failed restore exits 4 and prints the recovery message."""
        with (
            patch.object(UpdateOrchestrator, "request_update", AsyncMock(return_value="s1")),
            patch.object(
                UpdateOrchestrator,
                "get_status",
                return_value=_session(UpdateStatus.FAILED, "restore_failed"),
            ),
        ):
            code = main(["--config", str(config_file), "update"])

        assert code == EXIT_UNRECOVERABLE
        assert "https://github.com/acme/unit/releases/latest" in capsys.readouterr().err

    def test_update_in_progress(
        self, config_file: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        """Test lock contention exits 2."""
        error = UpdateInProgressError(
            "An update is already in progress",
            details={"holder": "other", "started_at": "2025-01-01T00:00:00+00:00"},
        )
        with patch.object(UpdateOrchestrator, "request_update", AsyncMock(side_effect=error)):
            code = main(["--config", str(config_file), "update"])

        assert code == EXIT_IN_PROGRESS
        assert "already in progress" in capsys.readouterr().err

    def test_check(self, config_file: Path, capsys: pytest.CaptureFixture[str]) -> None:
        """Test check prints the release information."""
        release = ReleaseInfo(
            version="1.1.0",
            download_url="https://github.com/acme/unit/unit.zip",
            current_version="1.0.0",
            update_available=True,
        )
        with patch.object(
            UpdateOrchestrator, "check_for_update", AsyncMock(return_value=release)
        ) as mock_check:
            code = main(["--config", str(config_file), "check", "--force"])

        assert code == EXIT_OK
        mock_check.assert_awaited_once_with(force=True)
        assert json.loads(capsys.readouterr().out)["update_available"] is True

    def test_check_rate_limited(
        self, config_file: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        """Test engine errors exit 1 with a user-facing message."""
        with patch.object(
            UpdateOrchestrator,
            "check_for_update",
            AsyncMock(side_effect=RegistryRateLimitedError("Rate limited")),
        ):
            code = main(["--config", str(config_file), "check"])

        assert code == EXIT_ERROR
        assert "rate limiting" in capsys.readouterr().err

    def test_unknown_session(self, config_file: Path, capsys: pytest.CaptureFixture[str]) -> None:
        """Test status of an unknown session exits 1."""
        code = main(["--config", str(config_file), "status", "nope"])

        assert code == EXIT_ERROR
        assert "nope" in capsys.readouterr().err

    def test_history_empty(self, config_file: Path, capsys: pytest.CaptureFixture[str]) -> None:
        """Test history prints a JSON list."""
        code = main(["--config", str(config_file), "history"])

        assert code == EXIT_OK
        assert json.loads(capsys.readouterr().out) == []

    def test_cleanup(self, config_file: Path, capsys: pytest.CaptureFixture[str]) -> None:
        """Test cleanup reports removal counts."""
        code = main(["--config", str(config_file), "cleanup"])

        assert code == EXIT_OK
        assert json.loads(capsys.readouterr().out) == {
            "orphans_removed": 0,
            "backups_removed": 0,
        }

    def test_missing_config(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        """Test a missing configuration file exits 1."""
        code = main(["--config", str(tmp_path / "missing.yml"), "history"])

        assert code == EXIT_ERROR
        assert "invalid configuration" in capsys.readouterr().err

