"""
Pytest configuration for the Safe Self-Update Engine tests.
"""

from __future__ import annotations

import zipfile
from pathlib import Path

import pytest

from safe_update.config import AppConfig

# Configure pytest-asyncio mode
pytest_plugins = ["pytest_asyncio"]


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers",
        "integration: marks tests as integration tests (deselect with '-m \"not integration\"')",
    )


# =============================================================================
# Helpers
# =============================================================================


def make_unit_dir(path: Path, version: str, *, entry_point: str = "main.py") -> Path:
    """Create an installed-unit directory with an entry point and version marker."""
    path.mkdir(parents=True, exist_ok=True)
    (path / entry_point).write_text(f"print('unit {version}')\n")
    (path / "VERSION").write_text(f"{version}\n")
    (path / "lib").mkdir(exist_ok=True)
    (path / "lib" / "helpers.py").write_text("VALUE = 1\n")
    return path


def make_release_zip(
    path: Path,
    root_name: str,
    version: str,
    *,
    entry_point: str = "main.py",
) -> Path:
    """Create a release package whose files sit under ``root_name/``."""
    with zipfile.ZipFile(path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        zf.writestr(f"{root_name}/{entry_point}", f"print('unit {version}')\n")
        zf.writestr(f"{root_name}/VERSION", f"{version}\n")
        zf.writestr(f"{root_name}/lib/helpers.py", "VALUE = 2\n")
    return path


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def app_config(tmp_path: Path) -> AppConfig:
    """Configuration with every path inside a temporary directory."""
    state = tmp_path / "state"
    return AppConfig(
        unit={
            "name": "unit",
            "entry_point": "main.py",
            "owner": "acme",
            "version_file": "VERSION",
            "install_dir": str(tmp_path / "units" / "unit"),
            "public_release_url": "https://github.com/acme/unit/releases/latest",
        },
        registry={
            "url": "https://api.github.com/repos/acme/unit/releases/latest",
            "retries": 2,
            "retry_delay_seconds": 0,
            "download_url_template": "https://github.com/acme/unit/releases/download/v{version}/{name}-v{version}.zip",
        },
        paths={
            "backup_dir": str(state / "backups"),
            "download_dir": str(state / "downloads"),
            "staging_dir": str(state / "staging"),
            "state_file": str(state / "session.json"),
            "history_file": str(state / "history.json"),
            "lock_db": str(state / "locks.db"),
        },
        logging={"level": "debug", "log_to_stdout": False},
    )
