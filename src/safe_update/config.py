"""
Configuration management for the Safe Self-Update Engine.

This module implements the AppConfig Pydantic model and configuration loading.

Configuration is loaded from multiple sources with layered precedence:
1. Built-in defaults (Pydantic model defaults)
2. YAML config file (/etc/safe-update/config.yml or --config path)
3. Environment variables (SAFE_UPDATE_* prefix, __ for nesting)
4. Command-line overrides (highest precedence)
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator

DEFAULT_CONFIG_PATH = Path("/etc/safe-update/config.yml")
DEFAULT_ENV_PREFIX = "SAFE_UPDATE_"

# =============================================================================
# Installed Unit Configuration
# =============================================================================


class UnitConfig(BaseModel):
    """The single installed unit this engine keeps up to date.

    Attributes:
        name: Directory name the host expects for the unit (its slug).
        entry_point: File that must exist inside the unit directory.
        owner: Release-source owner used in commit-style archive names.
        version_file: Version marker file inside the unit directory.
        install_dir: Live installation directory.
        public_release_url: Public page operators use for manual reinstall.
    """

    name: str = Field(
        default="unit",
        description="Expected directory name of the installed unit",
    )
    entry_point: str = Field(
        default="main.py",
        description="Entry-point file that must exist in the unit directory",
    )
    owner: str | None = Field(
        default=None,
        description="Release-source owner for '{owner}-{name}-{commit}' archives",
    )
    version_file: str | None = Field(
        default="VERSION",
        description="Version marker file inside the unit directory (None disables)",
    )
    install_dir: str = Field(
        default="/opt/safe-update/units/unit",
        description="Live installation directory of the unit",
    )
    public_release_url: str = Field(
        default="https://github.com/example/unit/releases/latest",
        description="Public release page used in manual-recovery messages",
    )

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Reject names that cannot be a single directory component."""
        if not v or "/" in v or v in {".", ".."}:
            raise ValueError(f"Invalid unit name: {v!r}")
        return v


# =============================================================================
# Release Registry Configuration
# =============================================================================


class RegistryConfig(BaseModel):
    """Remote release registry configuration.

    Attributes:
        url: Endpoint returning the latest release as JSON.
        timeout_seconds: HTTP timeout for registry and download requests.
        cache_ttl_seconds: How long a resolved release is reused.
        retries: Extra registry attempts made by the orchestrator.
        retry_delay_seconds: Delay between registry attempts.
        allowed_download_hosts: Hosts a download URL may point at.
        download_url_template: Builds a download URL for a pinned version.
        headers: Extra request headers (e.g. an Accept header or token).
    """

    url: str = Field(
        default="https://api.github.com/repos/example/unit/releases/latest",
        description="Latest-release endpoint",
    )
    timeout_seconds: float = Field(
        default=15.0,
        gt=0,
        description="HTTP timeout in seconds",
    )
    cache_ttl_seconds: int = Field(
        default=43200,
        ge=0,
        description="Release cache TTL in seconds",
    )
    retries: int = Field(
        default=2,
        ge=0,
        le=10,
        description="Extra registry attempts after the first failure",
    )
    retry_delay_seconds: float = Field(
        default=2.0,
        ge=0,
        description="Delay between registry attempts",
    )
    allowed_download_hosts: list[str] = Field(
        default_factory=lambda: [
            "github.com",
            "api.github.com",
            "objects.githubusercontent.com",
        ],
        description="Hosts download URLs may point at",
    )
    download_url_template: str = Field(
        default="https://github.com/example/unit/releases/download/v{version}/{name}-v{version}.zip",
        description="Download URL template for a specific version",
    )
    headers: dict[str, str] = Field(
        default_factory=lambda: {"Accept": "application/vnd.github.v3+json"},
        description="Extra HTTP headers for registry requests",
    )


# =============================================================================
# Filesystem Layout Configuration
# =============================================================================


class PathsConfig(BaseModel):
    """Working directories and state files.

    Attributes:
        backup_dir: Where backup archives are written.
        download_dir: Temporary location for downloaded packages.
        staging_dir: Scratch space for extraction and normalization.
        state_file: Latest session state (JSON).
        history_file: Update history store (JSON).
        lock_db: SQLite database backing the update lock.
    """

    backup_dir: str = Field(
        default="/var/lib/safe-update/backups",
        description="Backup archive directory",
    )
    download_dir: str = Field(
        default="/var/lib/safe-update/downloads",
        description="Downloaded package directory",
    )
    staging_dir: str = Field(
        default="/var/lib/safe-update/staging",
        description="Extraction staging directory",
    )
    state_file: str = Field(
        default="/var/lib/safe-update/session.json",
        description="Latest session state file",
    )
    history_file: str = Field(
        default="/var/lib/safe-update/history.json",
        description="Update history file",
    )
    lock_db: str = Field(
        default="/var/lib/safe-update/locks.db",
        description="SQLite lock store path",
    )


# =============================================================================
# Update Policy Configuration
# =============================================================================


class UpdatePolicyConfig(BaseModel):
    """Limits and tolerances applied during an update.

    Attributes:
        size_tolerance: Allowed relative deviation from the declared size.
        disk_space_margin: Multiplier applied to the source size before backup.
        restore_timeout_seconds: Time budget for restoring a backup.
        lock_ttl_seconds: Expiry of the update lock.
        orphan_max_age_seconds: Age after which stray downloads are removed.
        backup_max_age_seconds: Age after which retained backups are removed.
        history_limit: Number of history entries kept.
    """

    size_tolerance: float = Field(
        default=0.05,
        description="Relative size tolerance (0.05 = +/-5%)",
    )
    disk_space_margin: float = Field(
        default=1.1,
        ge=1.0,
        description="Safety multiplier for the backup disk space estimate",
    )
    restore_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        description="Restore time budget in seconds",
    )
    lock_ttl_seconds: int = Field(
        default=600,
        ge=1,
        description="Update lock expiry in seconds",
    )
    orphan_max_age_seconds: int = Field(
        default=86400,
        ge=0,
        description="Maximum age of orphaned downloads",
    )
    backup_max_age_seconds: int = Field(
        default=7 * 86400,
        ge=0,
        description="Maximum age of retained backups for the cleanup sweep",
    )
    history_limit: int = Field(
        default=5,
        ge=1,
        description="Maximum number of history entries",
    )

    @field_validator("size_tolerance")
    @classmethod
    def validate_size_tolerance(cls, v: float) -> float:
        """Keep the tolerance a fraction in [0, 1)."""
        if not 0 <= v < 1:
            raise ValueError(f"Invalid size tolerance: {v}. Must be in [0, 1)")
        return v


# =============================================================================
# Logging Configuration
# =============================================================================


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level.
        json_format: Emit JSON lines instead of plain text.
        log_to_stdout: Whether to log to stdout.
        log_file: Optional log file path.
    """

    level: str = Field(
        default="info",
        description="Log level: debug, info, warning, error, critical",
    )
    json_format: bool = Field(
        default=True,
        description="Emit JSON formatted log lines",
    )
    log_to_stdout: bool = Field(
        default=True,
        description="Whether to log to stdout",
    )
    log_file: str | None = Field(
        default=None,
        description="Optional log file path",
    )

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate and normalize log level."""
        valid_levels = {"debug", "info", "warn", "warning", "error", "critical"}
        v_lower = v.lower()
        if v_lower not in valid_levels:
            raise ValueError(
                f"Invalid log level: {v}. Must be one of: {', '.join(sorted(valid_levels))}"
            )
        if v_lower == "warn":
            return "warning"
        return v_lower


# =============================================================================
# Main Application Configuration
# =============================================================================


class AppConfig(BaseModel):
    """
    Main application configuration model.

    Attributes:
        unit: The installed unit being updated.
        registry: Release registry settings.
        paths: Working directories and state files.
        policy: Update limits and tolerances.
        logging: Logging configuration.
    """

    unit: UnitConfig = Field(
        default_factory=UnitConfig,
        description="Installed unit settings",
    )
    registry: RegistryConfig = Field(
        default_factory=RegistryConfig,
        description="Release registry settings",
    )
    paths: PathsConfig = Field(
        default_factory=PathsConfig,
        description="Working directories and state files",
    )
    policy: UpdatePolicyConfig = Field(
        default_factory=UpdatePolicyConfig,
        description="Update limits and tolerances",
    )
    logging: LoggingConfig = Field(
        default_factory=LoggingConfig,
        description="Logging configuration",
    )


# =============================================================================
# Configuration Loading Functions
# =============================================================================


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """
    Deep merge two dictionaries.

    Args:
        base: The base dictionary.
        override: The dictionary with values to override.

    Returns:
        A new dictionary with merged values.
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _load_yaml_config(config_path: Path) -> dict[str, Any]:
    """
    Load configuration from a YAML file.

    Raises:
        FileNotFoundError: If the config file doesn't exist.
        yaml.YAMLError: If the YAML is invalid.
    """
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path) as f:
        return yaml.safe_load(f) or {}


def _parse_env_value(value: str) -> Any:
    """
    Parse an environment variable value to appropriate Python type.

    Args:
        value: String value from environment variable.

    Returns:
        Parsed value (bool, int, float, list, or string).
    """
    if value.lower() in ("true", "yes", "on"):
        return True
    if value.lower() in ("false", "no", "off"):
        return False

    try:
        return int(value)
    except ValueError:
        pass

    try:
        return float(value)
    except ValueError:
        pass

    if "," in value:
        return [_parse_env_value(item.strip()) for item in value.split(",")]

    return value


def _load_env_config(prefix: str = DEFAULT_ENV_PREFIX) -> dict[str, Any]:
    """
    Load configuration from environment variables.

    Nested keys use a double underscore separator, e.g.
    ``SAFE_UPDATE_UNIT__NAME=choice-uft``.

    Args:
        prefix: Environment variable prefix.

    Returns:
        Dictionary with configuration values.
    """
    result: dict[str, Any] = {}

    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue

        parts = key[len(prefix) :].lower().split("__")

        current = result
        for part in parts[:-1]:
            current = current.setdefault(part, {})

        current[parts[-1]] = _parse_env_value(value)

    return result


def load_config(
    config_path: Path | str | None = None,
    env_prefix: str = DEFAULT_ENV_PREFIX,
    overrides: dict[str, Any] | None = None,
) -> AppConfig:
    """
    Load configuration from all sources with layered precedence.

    Args:
        config_path: Path to YAML configuration file. If None, the default
            path is used when it exists.
        env_prefix: Prefix for environment variables.
        overrides: Highest-precedence values (typically from the CLI).

    Returns:
        Fully configured AppConfig instance.

    Raises:
        FileNotFoundError: If specified config file doesn't exist.
        ValidationError: If configuration is invalid.

    Example:
        >>> config = load_config("/etc/safe-update/config.yml")
        >>> config.unit.name
        'choice-uft'
    """
    config_dict: dict[str, Any] = {}

    if config_path is None:
        if DEFAULT_CONFIG_PATH.exists():
            config_path = DEFAULT_CONFIG_PATH
    elif isinstance(config_path, str):
        config_path = Path(config_path)

    if config_path is not None:
        config_dict = _deep_merge(config_dict, _load_yaml_config(config_path))

    config_dict = _deep_merge(config_dict, _load_env_config(env_prefix))

    if overrides:
        config_dict = _deep_merge(config_dict, overrides)

    return AppConfig(**config_dict)
